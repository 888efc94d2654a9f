"""Unit tests for request classification, key derivation and enforcement."""

import logging
from unittest.mock import MagicMock, Mock

import pytest

from app.adapters.counter_store.in_memory import InMemoryCounterStore
from app.core.auth import Identity, IdentityResolver
from app.core.config import AppSettings, LimitPolicy, PolicyName, RateLimitSettings, default_policies
from app.core.errors import ConfigurationAppError, RateLimitExceededError, StoreUnavailableError
from app.services.rate_governor import RateGovernor, action_policy
from tests.conftest import build_settings, make_request, small_policies

USER = Identity(user_id="u1")
ADMIN = Identity(user_id="admin-1", role="admin")


class TestClassify:
    @pytest.mark.parametrize(
        "path,method,identity,expected",
        [
            ("/api/auth/login", "POST", None, PolicyName.AUTH),
            ("/api/auth/register", "POST", USER, PolicyName.AUTH),
            ("/api/auth/forgot-password", "POST", None, PolicyName.PASSWORD_RESET),
            ("/api/auth/reset-password", "POST", None, PolicyName.PASSWORD_RESET),
            ("/api/auth/verify-email", "GET", None, PolicyName.EMAIL),
            ("/api/auth/resend-verification", "POST", None, PolicyName.EMAIL),
            ("/api/upload/avatar", "POST", USER, PolicyName.UPLOAD),
            ("/api/chat/messages", "POST", USER, PolicyName.CHAT),
            ("/api/chat/messages/1", "DELETE", USER, PolicyName.CHAT),
            ("/api/chat/messages", "GET", USER, PolicyName.API),
            ("/api/chat/messages", "GET", None, PolicyName.PUBLIC),
            ("/api/contacts/search", "GET", USER, PolicyName.SEARCH),
            ("/api/contacts", "GET", USER, PolicyName.API),
            ("/api/contacts", "GET", None, PolicyName.PUBLIC),
        ],
    )
    def test_priority_chain(self, governor: RateGovernor, path, method, identity, expected) -> None:
        assert governor.classify(make_request(path, method=method), identity) is expected

    def test_search_query_parameter(self, governor: RateGovernor) -> None:
        request = make_request("/api/contacts", query={"q": "ada"})
        assert governor.classify(request, USER) is PolicyName.SEARCH

    def test_login_wins_over_search_query(self, governor: RateGovernor) -> None:
        request = make_request("/api/auth/login", method="POST", query={"q": "x", "version": "v1"})
        assert governor.classify(request, None) is PolicyName.AUTH

    def test_upload_wins_over_chat(self, governor: RateGovernor) -> None:
        request = make_request("/api/chat/upload", method="POST")
        assert governor.classify(request, USER) is PolicyName.UPLOAD


class TestDeriveKey:
    def test_authenticated_user_key(self, governor: RateGovernor) -> None:
        assert governor.derive_key(make_request(), USER, PolicyName.API) == "api:user:u1"

    def test_anonymous_uses_client_address(self, governor: RateGovernor) -> None:
        request = make_request(client_host="1.2.3.4")
        assert governor.derive_key(request, None, PolicyName.AUTH) == "auth:1.2.3.4"

    def test_forwarded_for_only_when_trusted(self, store: InMemoryCounterStore) -> None:
        request = make_request(headers={"X-Forwarded-For": "9.9.9.9, 10.0.0.1"}, client_host="10.0.0.2")

        untrusted = RateGovernor(RateLimitSettings(), store, IdentityResolver(AppSettings()))
        trusted = RateGovernor(
            RateLimitSettings(), store, IdentityResolver(AppSettings(trust_forwarded_for=True))
        )

        assert untrusted.derive_key(request, None, PolicyName.PUBLIC) == "public:10.0.0.2"
        assert trusted.derive_key(request, None, PolicyName.PUBLIC) == "public:9.9.9.9"


class TestCheckAndIncrement:
    @pytest.mark.parametrize("policy_name", [p for p in PolicyName if p is not PolicyName.AUTH])
    def test_max_requests_allowed_then_denied(self, governor: RateGovernor, policy_name: PolicyName) -> None:
        _, policy = governor.policy(policy_name)
        key = f"{policy_name.value}:user:u1"

        for i in range(policy.max):
            decision = governor.check_and_increment(key, policy_name)
            assert decision.allowed is True
            assert decision.remaining == policy.max - (i + 1)

        denied = governor.check_and_increment(key, policy_name)
        assert denied.allowed is False
        assert denied.retry_after_seconds == round(policy.window_ms / 1000)
        assert denied.limit == policy.max

    def test_denial_does_not_increment(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        for _ in range(10):
            governor.check_and_increment("api:user:u1", PolicyName.API)
        assert store.get("api:user:u1") == 3

    def test_reset_at_is_fixed_by_first_request(self, governor: RateGovernor, clock: Mock) -> None:
        first = governor.check_and_increment("api:user:u1", PolicyName.API)
        clock.return_value = 1030.0
        second = governor.check_and_increment("api:user:u1", PolicyName.API)

        assert first.reset_at == pytest.approx(1060.0)
        assert second.reset_at == pytest.approx(1060.0)

    def test_window_expiry_restores_quota(self, governor: RateGovernor, clock: Mock) -> None:
        for _ in range(4):
            governor.check_and_increment("api:user:u1", PolicyName.API)

        clock.return_value = 1060.0
        decision = governor.check_and_increment("api:user:u1", PolicyName.API)

        assert decision.allowed is True
        assert decision.remaining == 2

    def test_keys_do_not_interfere(self, governor: RateGovernor) -> None:
        for _ in range(4):
            governor.check_and_increment("api:user:u1", PolicyName.API)

        assert governor.check_and_increment("api:user:u2", PolicyName.API).allowed is True
        assert governor.check_and_increment("search:user:u1", PolicyName.SEARCH).allowed is True

    def test_store_unavailable_allows_and_warns(self, governor: RateGovernor, caplog) -> None:
        governor.store = MagicMock()
        governor.store.increment_below.side_effect = StoreUnavailableError(code="COUNTER_STORE_UNAVAILABLE", message="down")

        with caplog.at_level(logging.WARNING, logger="app.services.rate_governor"):
            decision = governor.check_and_increment("api:user:u1", PolicyName.API)

        assert decision.allowed is True
        assert decision.limit is None
        assert any(r.getMessage() == "counter_store.unavailable" for r in caplog.records)

    def test_unknown_policy_falls_back_to_public(self, governor: RateGovernor, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="app.services.rate_governor"):
            name, policy = governor.policy("nonexistent")

        assert name is PolicyName.PUBLIC
        assert policy.max == 2
        assert any(r.getMessage() == "rate_limit.unknown_policy" for r in caplog.records)


class TestDeferredCounting:
    """The auth tier only counts failed attempts."""

    def test_successful_logins_are_not_counted(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        for _ in range(10):
            decision = governor.check_and_increment("auth:1.2.3.4", PolicyName.AUTH)
            assert decision.allowed is True
            assert decision.deferred is True
            governor.record_outcome(decision, 200)

        assert store.get("auth:1.2.3.4") is None

    def test_failed_logins_saturate(self, governor: RateGovernor) -> None:
        for _ in range(5):
            decision = governor.check_and_increment("auth:1.2.3.4", PolicyName.AUTH)
            assert decision.allowed is True
            governor.record_outcome(decision, 401)

        denied = governor.check_and_increment("auth:1.2.3.4", PolicyName.AUTH)
        assert denied.allowed is False
        assert denied.limit == 5
        assert denied.retry_after_seconds == 900

    def test_deferred_remaining_counts_the_current_attempt(self, governor: RateGovernor) -> None:
        first = governor.check_and_increment("auth:1.2.3.4", PolicyName.AUTH)
        assert first.remaining == 4
        governor.record_outcome(first, 401)

        second = governor.check_and_increment("auth:1.2.3.4", PolicyName.AUTH)
        assert second.remaining == 3

    def test_skip_failed_requests_policy(self, store: InMemoryCounterStore, clock: Mock) -> None:
        policies = small_policies(
            upload=LimitPolicy(
                window_ms=1000, max=1, message="m", error_code="RATE_LIMIT_UPLOAD", skip_failed_requests=True
            )
        )
        config = build_settings(policies=policies)
        governor = RateGovernor(config.rate_limit, store, IdentityResolver(config.app), clock=clock)

        decision = governor.check_and_increment("upload:user:u1", PolicyName.UPLOAD)
        governor.record_outcome(decision, 500)
        assert store.get("upload:user:u1") is None

        governor.record_outcome(decision, 201)
        assert store.get("upload:user:u1") == 1

    def test_record_outcome_ignores_non_deferred(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        decision = governor.check_and_increment("api:user:u1", PolicyName.API)
        governor.record_outcome(decision, 500)
        assert store.get("api:user:u1") == 1


class TestEvaluate:
    def test_admin_is_exempt(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        for _ in range(20):
            decision = governor.evaluate(make_request("/api/contacts"), ADMIN)
            assert decision.allowed is True
            assert decision.exempt is True
        assert len(store) == 0

    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_health_paths_are_exempt(self, governor: RateGovernor, path: str) -> None:
        for _ in range(5):
            assert governor.evaluate(make_request(path), None).exempt is True

    def test_disabled_governor_allows_everything(self, store: InMemoryCounterStore) -> None:
        config = build_settings(enabled=False)
        governor = RateGovernor(config.rate_limit, store, IdentityResolver(config.app))
        for _ in range(5):
            assert governor.evaluate(make_request(), None).allowed is True

    def test_auth_denial_logged_to_security_logger(self, governor: RateGovernor, caplog) -> None:
        request = make_request("/api/auth/login", method="POST")
        for _ in range(5):
            governor.record_outcome(governor.evaluate(request, None), 401)

        with caplog.at_level(logging.INFO):
            decision = governor.evaluate(request, None)

        assert decision.allowed is False
        security = [r for r in caplog.records if r.name == "app.security"]
        assert len(security) == 1
        assert security[0].getMessage() == "rate_limit.auth_denied"
        assert security[0].policy == "auth"

    def test_public_denial_not_on_security_logger(self, governor: RateGovernor, caplog) -> None:
        request = make_request("/api/contacts")
        governor.evaluate(request, None)
        governor.evaluate(request, None)

        with caplog.at_level(logging.INFO):
            assert governor.evaluate(request, None).allowed is False

        assert not [r for r in caplog.records if r.name == "app.security"]
        assert any(r.getMessage() == "rate_limit.denied" for r in caplog.records)

    def test_tier_scaling(self, store: InMemoryCounterStore) -> None:
        policies = small_policies()
        policies[PolicyName.API] = policies[PolicyName.API].model_copy(update={"scale_by_tier": True})
        config = build_settings(policies=policies)
        governor = RateGovernor(config.rate_limit, store, IdentityResolver(config.app))

        pro = Identity(user_id="u3", tier="pro")
        decision = governor.evaluate(make_request(), pro)

        assert decision.limit == 9
        assert governor.evaluate(make_request(), USER).limit == 3


class TestAdministration:
    def test_get_status_is_read_only(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        governor.check_and_increment("api:user:u1", PolicyName.API)

        status = governor.get_status("u1", PolicyName.API)
        governor.get_status("u1", "api")

        assert status.available is True
        assert status.limit == 3
        assert status.remaining == 2
        assert status.window_ms == 60_000
        assert status.reset_time is not None
        assert store.get("api:user:u1") == 1

    def test_get_status_for_unknown_user(self, governor: RateGovernor) -> None:
        status = governor.get_status("nobody", PolicyName.API)
        assert status.remaining == 3
        assert status.reset_time is None

    def test_clear_restores_quota(self, governor: RateGovernor) -> None:
        for _ in range(4):
            governor.check_and_increment("api:user:u1", PolicyName.API)
        assert governor.get_status("u1", PolicyName.API).available is False

        assert governor.clear("u1", "api") is True

        decision = governor.check_and_increment("api:user:u1", PolicyName.API)
        assert decision.allowed is True
        assert decision.remaining == 2

    def test_clear_with_store_down(self, governor: RateGovernor) -> None:
        governor.store = MagicMock()
        governor.store.delete.side_effect = StoreUnavailableError(code="COUNTER_STORE_UNAVAILABLE", message="down")

        assert governor.clear("u1", PolicyName.API) is False

    def test_policy_table_is_sanitized(self, governor: RateGovernor) -> None:
        table = governor.policy_table()

        assert set(table) == {p.value for p in PolicyName}
        assert table["auth"] == {"windowMs": 900_000, "max": 5}
        assert all(set(v) == {"windowMs", "max"} for v in table.values())


def test_incomplete_policy_table_rejected(store: InMemoryCounterStore) -> None:
    config = RateLimitSettings()
    config.policies = {PolicyName.API: default_policies()[PolicyName.API]}

    with pytest.raises(ConfigurationAppError) as exc_info:
        RateGovernor(config, store, IdentityResolver(AppSettings()))
    assert exc_info.value.code == "MISCONFIGURED_POLICY"


class TestActionLimits:
    def test_action_policy_derives_error_code(self) -> None:
        rule = action_policy("profile update", 60_000, 2)
        assert rule.error_code == "RATE_LIMIT_PROFILE_UPDATE"
        assert rule.message == "Too many profile update attempts. Please try again later."
        assert rule.defers_counting is False

    def test_keyed_per_user_then_denied(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        request = make_request("/api/users/me", method="PUT")
        for expected_remaining in (1, 0):
            decision = governor.check_action(request, USER, "export", window_ms=60_000, max_attempts=2)
            assert decision.allowed is True
            assert decision.remaining == expected_remaining

        denied = governor.check_action(request, USER, "export", window_ms=60_000, max_attempts=2)

        assert denied.allowed is False
        assert denied.action == "export"
        assert store.get("export:u1") == 2

        error = governor.exceeded_error(denied)
        assert isinstance(error, RateLimitExceededError)
        assert error.code == "RATE_LIMIT_EXPORT"
        assert error.details == {"retryAfter": 60, "limit": 2, "windowMs": 60_000}

    def test_anonymous_keyed_by_address(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        request = make_request(client_host="9.9.9.9")
        governor.check_action(request, None, "invite", window_ms=60_000, max_attempts=3)
        assert store.get("invite:9.9.9.9") == 1

    def test_independent_of_policy_counters(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        request = make_request()
        governor.evaluate(request, USER)
        governor.check_action(request, USER, "export", window_ms=60_000, max_attempts=5)

        assert store.get("api:user:u1") == 1
        assert store.get("export:u1") == 1

    def test_admin_is_exempt(self, governor: RateGovernor, store: InMemoryCounterStore) -> None:
        for _ in range(5):
            decision = governor.check_action(make_request(), ADMIN, "export", window_ms=60_000, max_attempts=1)
            assert decision.exempt is True
        assert store.get("export:admin-1") is None
