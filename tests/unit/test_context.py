import pytest

from gatekeeper.core.context import (
    Invocation,
    KeyBuilder,
    RequestContext,
    client_ip_from_headers,
    current_request,
    reset_request,
    set_request,
)
from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.core.policy import RateLimitPolicy

NOW = 1_700_000_040_000  # 2023-11-14 22:14 UTC


def request(**overrides) -> RequestContext:
    fields = {"client_ip": "10.0.0.1", "path": "/login", "method": "POST", "now_ms": NOW}
    fields.update(overrides)
    return RequestContext(**fields)


@pytest.fixture
def builder() -> KeyBuilder:
    return KeyBuilder(prefix="rate_limit")


# =============================================================================
# Client Address
# =============================================================================


class TestClientAddress:
    def test_forwarded_for_first_hop(self) -> None:
        headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.2"}

        assert client_ip_from_headers(headers, peer="10.0.0.3") == "203.0.113.9"

    def test_unknown_values_are_skipped(self) -> None:
        headers = {"x-forwarded-for": "unknown", "x-real-ip": "198.51.100.4"}

        assert client_ip_from_headers(headers) == "198.51.100.4"

    def test_falls_back_to_peer(self) -> None:
        assert client_ip_from_headers({}, peer="192.0.2.1") == "192.0.2.1"

    def test_ipv6_loopback_is_normalized(self) -> None:
        assert client_ip_from_headers({}, peer="::1") == "127.0.0.1"

    def test_nothing_known(self) -> None:
        assert client_ip_from_headers({}) == "unknown"


# =============================================================================
# Ambient Request
# =============================================================================


class TestAmbientRequest:
    def test_set_and_reset(self) -> None:
        assert current_request() is None
        token = set_request(request())

        assert current_request().client_ip == "10.0.0.1"

        reset_request(token)
        assert current_request() is None


# =============================================================================
# Key Derivation
# =============================================================================


class TestKeys:
    def test_ip_key_layout(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="login", algorithm="fixed_window", dimension="ip")
        invocation = Invocation("auth.login", request=request())

        assert builder.build(policy, invocation) == "rate_limit:ip:fixed_window:login:ip:10.0.0.1"

    def test_same_inputs_same_key(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="login", dimension="ip")
        invocation = Invocation("auth.login", request=request())

        assert builder.build(policy, invocation) == builder.build(policy, invocation)

    def test_dimensions_and_algorithms_do_not_collide(self, builder: KeyBuilder) -> None:
        invocation = Invocation("auth.login", request=request(principal="alice"))
        keys = {
            builder.build(RateLimitPolicy(key="login", dimension=dimension, algorithm=algorithm), invocation)
            for dimension in ("ip", "user", "global")
            for algorithm in ("fixed_window", "token_bucket")
        }

        assert len(keys) == 6

    def test_different_addresses_get_different_keys(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="login", dimension="ip")

        first = builder.build(policy, Invocation("auth.login", request=request(client_ip="10.0.0.1")))
        second = builder.build(policy, Invocation("auth.login", request=request(client_ip="10.0.0.2")))

        assert first != second

    def test_global_has_no_suffix(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="search", algorithm="counter")

        assert builder.build(policy, Invocation("catalog.search")) == "rate_limit:global:counter:search"

    def test_operation_name_is_the_default_base(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(algorithm="counter")

        assert builder.build(policy, Invocation("catalog.search")) == "rate_limit:global:counter:catalog.search"

    def test_user_dimension_without_principal(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="feed", dimension="user", algorithm="counter")

        assert builder.build(policy, Invocation("feed", request=request())).endswith(":user:anonymous")

    def test_composite_combines_parts_in_order(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="pay", dimension="composite", algorithm="counter")
        invocation = Invocation("pay", request=request(principal="alice"))

        assert builder.build(policy, invocation) == "rate_limit:composite:counter:pay:ip:10.0.0.1:user:alice"

    def test_parameter_uses_first_string_argument(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="play", dimension="parameter", algorithm="counter")
        invocation = Invocation("music.play", args=(3, "song-9"), arguments={"volume": 3, "song_id": "song-9"})

        assert builder.build(policy, invocation) == "rate_limit:parameter:counter:play:param:song-9"

    def test_device_and_app(self, builder: KeyBuilder) -> None:
        invocation = Invocation("sync", request=request(device_id="d-1"))

        assert builder.build(RateLimitPolicy(key="s", dimension="device"), invocation).endswith(":device:d-1")
        assert builder.build(RateLimitPolicy(key="s", dimension="app"), invocation).endswith(":app:unknown")

    def test_template_is_resolved(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="song:#song_id", algorithm="counter")
        invocation = Invocation("music.play", args=("s-1",), arguments={"song_id": "s-1"})

        assert builder.build(policy, invocation) == "rate_limit:global:counter:song:s-1"

    def test_failed_template_uses_literal_text(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key="song:#missing", algorithm="counter")

        assert builder.build(policy, Invocation("music.play")) == "rate_limit:global:counter:song:#missing"

    def test_key_generator(self) -> None:
        builder = KeyBuilder(key_generators={"by_tenant": lambda ctx: f"tenant-{ctx['tenant']}"})
        policy = RateLimitPolicy(key_generator="by_tenant", algorithm="counter")
        invocation = Invocation("report", args=("acme",), arguments={"tenant": "acme"})

        assert builder.build(policy, invocation) == "rate_limit:global:counter:tenant-acme"

    @pytest.mark.parametrize(("key", "base"), [("", "report"), ("reports", "reports")])
    def test_raising_key_generator_falls_back(self, key: str, base: str) -> None:
        builder = KeyBuilder(key_generators={"by_tenant": lambda ctx: ctx["tenant"]})
        policy = RateLimitPolicy(key=key, key_generator="by_tenant", algorithm="counter")

        assert builder.build(policy, Invocation("report")) == f"rate_limit:global:counter:{base}"

    def test_unknown_key_generator(self, builder: KeyBuilder) -> None:
        policy = RateLimitPolicy(key_generator="missing")

        with pytest.raises(ConfigurationError):
            builder.build(policy, Invocation("report"))


# =============================================================================
# Context Map
# =============================================================================


class TestContextMap:
    def test_request_fields_and_clock(self, builder: KeyBuilder) -> None:
        context = builder.context_map(
            Invocation("feed", args=("x",), arguments={"q": "x"}, request=request(principal="bob", role="admin"))
        )

        assert context["client_ip"] == "10.0.0.1"
        assert context["user_id"] == "bob"
        assert context["role"] == "admin"
        assert context["hour"] == 22
        assert context["timestamp"] == NOW
        assert context["args"] == ("x",)
        assert context["hotspot_param"] == "x"

    def test_arguments_shadow_request_fields(self, builder: KeyBuilder) -> None:
        context = builder.context_map(
            Invocation("feed", arguments={"role": "param-role"}, request=request(role="admin"))
        )

        assert context["role"] == "param-role"
