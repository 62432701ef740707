import inspect
from typing import Any, Callable, Generic, TypeVar

import structlog

from gatekeeper.core.exceptions import ConfigurationError

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


class Registry(Generic[F]):
    """Named callables referenced from policies by string."""

    kind = "callable"

    def __init__(self) -> None:
        self._entries: dict[str, F] = {}

    def register(self, name: str) -> Callable[[F], F]:
        def decorator(func: F) -> F:
            self.add(name, func)
            return func

        return decorator

    def add(self, name: str, func: F) -> None:
        if not name:
            raise ConfigurationError(f"{self.kind} name must not be empty")
        if not callable(func):
            raise ConfigurationError(f"{self.kind} {name!r} is not callable")
        if name in self._entries and self._entries[name] is not func:
            raise ConfigurationError(f"{self.kind} {name!r} is already registered")
        self._check(name, func)
        self._entries[name] = func
        logger.debug("registry_entry_added", kind=self.kind, name=name)

    def get(self, name: str) -> F:
        try:
            return self._entries[name]
        except KeyError:
            raise ConfigurationError(f"unknown {self.kind} {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def as_dict(self) -> dict[str, F]:
        return self._entries

    def _check(self, name: str, func: F) -> None:
        pass


class FallbackRegistry(Registry[Callable[..., Any]]):
    """
    Alternate handlers invoked with the denied call's own arguments.

    Fallbacks may be plain functions or coroutine functions.
    """

    kind = "fallback"

    async def invoke(self, name: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        func = self.get(name)
        try:
            inspect.signature(func).bind(*args, **kwargs)
        except TypeError as exc:
            raise ConfigurationError(f"fallback {name!r} does not accept the call's arguments: {exc}") from exc
        except ValueError:
            pass
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


class KeyGeneratorRegistry(Registry[Callable[[dict[str, Any]], str]]):
    """Callables mapping the invocation context map to a key base."""

    kind = "key generator"

    def _check(self, name: str, func: Callable[[dict[str, Any]], str]) -> None:
        if inspect.iscoroutinefunction(func):
            raise ConfigurationError(f"key generator {name!r} must be synchronous")
        try:
            inspect.signature(func).bind({})
        except TypeError as exc:
            raise ConfigurationError(
                f"key generator {name!r} must accept a single context argument"
            ) from exc
        except ValueError:
            # builtins without a signature
            pass
