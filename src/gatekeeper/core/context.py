"""
Request context capture and limiter key derivation.

The HTTP middleware stores a RequestContext in a ContextVar for the duration
of a request; the decision handler combines it with the bound call arguments
(an Invocation) to build the limiter key and the map that key templates and
guard conditions are evaluated against.
"""

import time
from collections.abc import Mapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from gatekeeper.core.exceptions import ConfigurationError, ExpressionError
from gatekeeper.core.expressions import ExpressionEvaluator, has_markers
from gatekeeper.core.policy import Dimension, RateLimitPolicy

logger = structlog.get_logger()

UNKNOWN = "unknown"
ANONYMOUS = "anonymous"

# Checked in order; the first non-empty, non-"unknown" value wins.
IP_HEADERS = (
    "x-forwarded-for",
    "proxy-client-ip",
    "wl-proxy-client-ip",
    "http_client_ip",
    "http_x_forwarded_for",
    "x-real-ip",
)


def client_ip_from_headers(headers: Mapping[str, str], peer: str | None = None) -> str:
    """
    Resolve the caller address behind proxies.

    Only the first hop of a comma-separated list is used. IPv6 loopback is
    reported as 127.0.0.1.
    """
    address = None
    for name in IP_HEADERS:
        value = headers.get(name)
        if value and value.strip().lower() != UNKNOWN:
            address = value
            break
    if address is None:
        address = peer or UNKNOWN
        if address in ("::1", "0:0:0:0:0:0:0:1"):
            address = "127.0.0.1"
    return address.split(",")[0].strip() or UNKNOWN


@dataclass(frozen=True)
class RequestContext:
    client_ip: str = UNKNOWN
    principal: str | None = None
    role: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    device_id: str | None = None
    app_id: str | None = None
    path: str | None = None
    method: str | None = None
    now_ms: int = field(default_factory=lambda: int(time.time() * 1000))


_request_context: ContextVar[RequestContext | None] = ContextVar("request_context", default=None)


def current_request() -> RequestContext | None:
    return _request_context.get()


def set_request(context: RequestContext | None):
    """Bind `context` to the running task. Returns a token for `reset_request`."""
    return _request_context.set(context)


def reset_request(token) -> None:
    _request_context.reset(token)


@dataclass(frozen=True)
class Invocation:
    """
    One call of a guarded operation.

    Attributes:
        operation: Qualified operation name, e.g. "music.play_song".
        args: Positional arguments as passed.
        arguments: Bound arguments by parameter name, in signature order.
        request: Ambient request context, None outside HTTP handling.
    """

    operation: str
    args: tuple[Any, ...] = ()
    arguments: Mapping[str, Any] = field(default_factory=dict)
    request: RequestContext | None = None

    @property
    def values(self) -> list[Any]:
        """Argument values in signature order, falling back to positionals."""
        return list(self.arguments.values()) if self.arguments else list(self.args)


class KeyBuilder:
    """
    Derives limiter keys of the form

        {prefix}:{dimension}:{algorithm}:{base}[:{dimension part}]

    Identical (policy, context) pairs always yield the same key, and keys for
    different dimensions, algorithms or operations never collide.
    """

    def __init__(
        self,
        prefix: str = "rate_limit",
        evaluator: ExpressionEvaluator | None = None,
        key_generators: Mapping[str, Callable[[dict[str, Any]], str]] | None = None,
    ):
        self.prefix = prefix
        self.evaluator = evaluator or ExpressionEvaluator()
        self.key_generators = key_generators if key_generators is not None else {}

    def context_map(self, invocation: Invocation) -> dict[str, Any]:
        """Variables visible to key templates, guard conditions and key generators."""
        request = invocation.request
        now_ms = request.now_ms if request is not None else int(time.time() * 1000)
        moment = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
        values = invocation.values

        context: dict[str, Any] = {
            "operation": invocation.operation,
            "timestamp": now_ms,
            "hour": moment.hour,
            "day_of_week": moment.isoweekday(),
            "args": tuple(values),
        }
        hotspot = self.hotspot_value(values)
        if hotspot is not None:
            context["hotspot_param"] = hotspot

        if request is not None:
            context["request"] = request
            for name in ("client_ip", "role", "user_agent", "referer", "device_id", "app_id", "path", "method"):
                value = getattr(request, name)
                if value is not None:
                    context[name] = value
            if request.principal is not None:
                context["principal"] = request.principal
                context["user_id"] = request.principal

        # Bound arguments shadow ambient fields of the same name
        context.update(invocation.arguments)
        return context

    def base(self, policy: RateLimitPolicy, invocation: Invocation, context: dict[str, Any]) -> str:
        if policy.key_generator:
            generator = self.key_generators.get(policy.key_generator)
            if generator is None:
                raise ConfigurationError(f"unknown key generator {policy.key_generator!r}")
            try:
                return str(generator(context))
            except Exception as exc:
                logger.warning(
                    "key_expression_failed",
                    key_generator=policy.key_generator,
                    operation=invocation.operation,
                    error=str(exc) or type(exc).__name__,
                )
                return policy.key or invocation.operation

        template = policy.key or invocation.operation
        if not has_markers(template):
            return template
        try:
            return self.evaluator.resolve_template(template, context)
        except ExpressionError as exc:
            logger.warning(
                "key_expression_failed",
                template=template,
                operation=invocation.operation,
                error=str(exc),
            )
            return template

    def build(
        self,
        policy: RateLimitPolicy,
        invocation: Invocation,
        context: dict[str, Any] | None = None,
    ) -> str:
        if context is None:
            context = self.context_map(invocation)
        key = f"{self.prefix}:{policy.dimension.value}:{policy.algorithm.value}:{self.base(policy, invocation, context)}"

        if policy.dimension == Dimension.COMPOSITE:
            parts = [self._part(d, invocation) for d in policy.composite_of]
        else:
            parts = [self._part(policy.dimension, invocation)]
        suffix = ":".join(part for part in parts if part)
        return f"{key}:{suffix}" if suffix else key

    def _part(self, dimension: Dimension, invocation: Invocation) -> str:
        request = invocation.request or RequestContext()
        if dimension == Dimension.IP:
            return f"ip:{request.client_ip or UNKNOWN}"
        if dimension == Dimension.USER:
            return f"user:{request.principal or ANONYMOUS}"
        if dimension == Dimension.API:
            return f"api:{request.path or invocation.operation}"
        if dimension == Dimension.PARAMETER:
            return f"param:{self.hotspot_value(invocation.values) or UNKNOWN}"
        if dimension == Dimension.DEVICE:
            return f"device:{request.device_id or UNKNOWN}"
        if dimension == Dimension.APP:
            return f"app:{request.app_id or UNKNOWN}"
        return ""

    @staticmethod
    def hotspot_value(args: list[Any] | tuple[Any, ...]) -> str | None:
        """First string argument, else the first argument as text."""
        for arg in args:
            if isinstance(arg, str):
                return arg
        if args:
            return str(args[0])
        return None
