"""Multi-tier rate limiting.

Each request is classified into a named policy, keyed per user (or per
network address for anonymous callers), and checked against a fixed-window
counter in the injected store.

Counter lifecycle per key::

    ABSENT -> ACTIVE (count < max) -> SATURATED (count == max) -> ABSENT

A key returns to ABSENT when the store expires it at the end of the window
or when an administrator clears it. Saturation does not extend the window.

Store failures never block traffic: the affected check is allowed and a
warning is logged.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from fastapi import Request

from app.adapters.counter_store.base import AbstractCounterStore
from app.core.auth import Identity, IdentityResolver
from app.core.config import LimitPolicy, PolicyName, RateLimitSettings
from app.core.errors import ConfigurationAppError, RateLimitExceededError, StoreUnavailableError
from app.core.logging import SECURITY_LOGGER_NAME, hash_identifier

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
SEARCH_QUERY_PARAM = "q"


@dataclass(frozen=True)
class Decision:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        policy: Policy the request was classified into (None when exempt).
        key: Limiting key (None when exempt).
        limit: Effective max for the window (None when unbounded).
        remaining: Requests left in the window after this one is counted
            (None when unbounded). Deferred decisions assume the request
            will count; a skipped outcome leaves one more.
        reset_at: UNIX epoch seconds when the window ends, if known.
        retry_after_seconds: Suggested wait when denied.
        deferred: True when the counter is updated after the response.
        exempt: True for exempt identities/paths.
        action: Action name for action-scoped checks.
        rule: Policy applied to the counter, if any.
    """

    allowed: bool
    policy: PolicyName | None = None
    key: str | None = None
    limit: int | None = None
    remaining: int | None = None
    reset_at: float | None = None
    retry_after_seconds: int | None = None
    deferred: bool = False
    exempt: bool = False
    action: str | None = None
    rule: LimitPolicy | None = field(default=None, compare=False, repr=False)

    @classmethod
    def unbounded(cls, *, exempt: bool = False, policy: PolicyName | None = None, key: str | None = None) -> "Decision":
        return cls(allowed=True, policy=policy, key=key, exempt=exempt)

    def context(self) -> dict[str, Any] | None:
        """Rate limit block exposed to downstream handlers, or None if unbounded."""
        if self.limit is None:
            return None
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "resetTime": _iso(self.reset_at) if self.reset_at is not None else None,
        }


@dataclass(frozen=True)
class RateLimitStatus:
    available: bool
    limit: int | None = None
    remaining: int | None = None
    reset_time: datetime | None = None
    window_ms: int | None = None
    message: str | None = None


def _iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def user_key(policy: PolicyName, user_id: str) -> str:
    return f"{policy.value}:user:{user_id}"


def action_policy(action: str, window_ms: int, max_attempts: int) -> LimitPolicy:
    """Build the ad-hoc policy for an action-scoped limit.

    The error code is ``RATE_LIMIT_<ACTION>`` with spaces and dashes mapped
    to underscores.

    Raises:
        pydantic.ValidationError: If window_ms or max_attempts is not positive.
    """
    code = re.sub(r"[\s-]+", "_", action.strip()).upper()
    return LimitPolicy(
        window_ms=window_ms,
        max=max_attempts,
        message=f"Too many {action} attempts. Please try again later.",
        error_code=f"RATE_LIMIT_{code}",
    )


class RateGovernor:
    """Classifies requests and enforces per-policy windowed limits."""

    def __init__(
        self,
        config: RateLimitSettings,
        store: AbstractCounterStore,
        identity_resolver: IdentityResolver,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the governor.

        Args:
            config: Validated rate limit settings including the policy table.
            store: Counter store handle; lifecycle is owned by the caller.
            identity_resolver: Resolves caller identity and network address.
            clock: Time source returning UNIX time in seconds.

        Raises:
            ConfigurationAppError: If the policy table is not exhaustive.
        """
        missing = [p.value for p in PolicyName if p not in config.policies]
        if missing:
            raise ConfigurationAppError(
                code="MISCONFIGURED_POLICY",
                message=f"Rate limit policies missing: {', '.join(missing)}",
                details={"missing": missing},
            )

        self._policies: Mapping[PolicyName, LimitPolicy] = dict(config.policies)
        self._exempt_paths = frozenset(config.exempt_paths)
        self._exempt_roles = frozenset(config.exempt_roles)
        self._tier_multipliers = dict(config.tier_multipliers)
        self.enabled = config.enabled
        self.store = store
        self.identities = identity_resolver
        self._clock = clock

    # Classification -----------------------------------------------------

    def classify(self, request: Request, identity: Identity | None) -> PolicyName:
        """Map a request to a policy using a fixed first-match chain."""
        path = request.url.path
        method = request.method.upper()

        if "/auth/login" in path or "/auth/register" in path:
            return PolicyName.AUTH
        if "/auth/forgot-password" in path or "/auth/reset-password" in path:
            return PolicyName.PASSWORD_RESET
        if "/auth/verify-email" in path or "/auth/resend-verification" in path:
            return PolicyName.EMAIL
        if "/upload" in path:
            return PolicyName.UPLOAD
        if "/chat" in path and method in MUTATING_METHODS:
            return PolicyName.CHAT
        if "/search" in path or request.query_params.get(SEARCH_QUERY_PARAM):
            return PolicyName.SEARCH
        if identity is not None:
            return PolicyName.API
        return PolicyName.PUBLIC

    def derive_key(self, request: Request, identity: Identity | None, policy: PolicyName) -> str:
        if identity is not None:
            return user_key(policy, identity.user_id)
        return f"{policy.value}:{self.identities.client_address(request)}"

    def policy(self, name: PolicyName | str) -> tuple[PolicyName, LimitPolicy]:
        """Look up a policy, falling back to ``public`` for unknown names."""
        try:
            policy_name = PolicyName(name)
            return policy_name, self._policies[policy_name]
        except (ValueError, KeyError):
            logger.warning("rate_limit.unknown_policy", extra={"policy": str(name), "fallback": "public"})
            return PolicyName.PUBLIC, self._policies[PolicyName.PUBLIC]

    def is_exempt(self, request: Request, identity: Identity | None) -> bool:
        if request.url.path in self._exempt_paths:
            return True
        return identity is not None and identity.role in self._exempt_roles

    def effective_max(self, policy: LimitPolicy, identity: Identity | None) -> int:
        if not policy.scale_by_tier or identity is None:
            return policy.max
        return policy.max * self._tier_multipliers.get(identity.tier, 1)

    # Enforcement --------------------------------------------------------

    def evaluate(self, request: Request, identity: Identity | None) -> Decision:
        """Run the full pre-request gate for a request."""
        if not self.enabled or self.is_exempt(request, identity):
            return Decision.unbounded(exempt=True)

        policy_name, policy = self.policy(self.classify(request, identity))
        key = self.derive_key(request, identity, policy_name)
        decision = self.check_and_increment(
            key,
            policy_name,
            limit=self.effective_max(policy, identity),
        )

        if not decision.allowed:
            self._log_denial(decision, request)
        return decision

    def check_and_increment(
        self,
        key: str,
        policy_name: PolicyName,
        *,
        limit: int | None = None,
    ) -> Decision:
        """Check key against its policy and consume one unit when allowed.

        Policies that skip successful or failed requests only read the counter
        here; ``record_outcome`` increments once the response is known.

        Args:
            key: Limiting key from ``derive_key``.
            policy_name: Policy governing key.
            limit: Effective max; defaults to the policy max.

        Returns:
            Decision for the request. Unbounded allow if the store is down.
        """
        policy_name, policy = self.policy(policy_name)
        return self._check(key, policy, limit if limit is not None else policy.max, policy_name=policy_name)

    def check_action(
        self,
        request: Request,
        identity: Identity | None,
        action: str,
        *,
        window_ms: int,
        max_attempts: int,
    ) -> Decision:
        """Check a one-off limit scoped to a named action.

        The counter is keyed ``{action}:{user_id}``, or ``{action}:{address}``
        for anonymous callers, and is independent of the policy table.
        Exemptions apply as for classified requests.
        """
        if not self.enabled or self.is_exempt(request, identity):
            return Decision.unbounded(exempt=True)

        rule = action_policy(action, window_ms, max_attempts)
        subject = identity.user_id if identity is not None else self.identities.client_address(request)
        decision = self._check(f"{action}:{subject}", rule, rule.max, action=action)

        if not decision.allowed:
            self._log_denial(decision, request)
        return decision

    def _check(
        self,
        key: str,
        policy: LimitPolicy,
        limit: int,
        *,
        policy_name: PolicyName | None = None,
        action: str | None = None,
    ) -> Decision:
        now = self._clock()

        try:
            if policy.defers_counting:
                count = self.store.get(key) or 0
                ttl_ms = self.store.ttl_remaining(key) if count else None
                accepted = count < limit
                # reported as if this request will be counted
                remaining = limit - count - 1
                deferred = True
            else:
                update = self.store.increment_below(key, limit, policy.window_ms)
                count, ttl_ms, accepted = update.count, update.ttl_ms, update.accepted
                remaining = limit - count
                deferred = False
        except StoreUnavailableError as exc:
            self._log_store_unavailable("check_and_increment", key, exc)
            return Decision.unbounded(policy=policy_name, key=key)

        reset_at = now + (ttl_ms if ttl_ms is not None else policy.window_ms) / 1000

        if not accepted:
            return Decision(
                allowed=False,
                policy=policy_name,
                key=key,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after_seconds=round(policy.window_ms / 1000),
                deferred=deferred,
                action=action,
                rule=policy,
            )

        return Decision(
            allowed=True,
            policy=policy_name,
            key=key,
            limit=limit,
            remaining=max(0, remaining),
            reset_at=reset_at,
            deferred=deferred,
            action=action,
            rule=policy,
        )

    def _rule(self, decision: Decision) -> LimitPolicy:
        if decision.rule is not None:
            return decision.rule
        return self.policy(decision.policy)[1]

    def record_outcome(self, decision: Decision, status_code: int) -> None:
        """Post-response hook counting deferred requests by outcome."""
        if not decision.deferred or not decision.allowed or decision.key is None:
            return

        policy = self._rule(decision)
        succeeded = status_code < 400
        if succeeded and policy.skip_successful_requests:
            return
        if not succeeded and policy.skip_failed_requests:
            return

        try:
            self.store.increment_with_ttl(decision.key, policy.window_ms)
        except StoreUnavailableError as exc:
            self._log_store_unavailable("record_outcome", decision.key, exc)

    def exceeded_error(self, decision: Decision) -> RateLimitExceededError:
        """Build the 429 error for a denied decision."""
        policy = self._rule(decision)
        return RateLimitExceededError(
            code=policy.error_code,
            message=policy.message,
            retry_after=decision.retry_after_seconds or round(policy.window_ms / 1000),
            limit=decision.limit or policy.max,
            window_ms=policy.window_ms,
        )

    # Administration -----------------------------------------------------

    def get_status(self, user_id: str, policy_name: PolicyName | str) -> RateLimitStatus:
        """Read-only view of a user's counter for a policy."""
        policy_name, policy = self.policy(policy_name)
        key = user_key(policy_name, user_id)

        try:
            count = self.store.get(key) or 0
            ttl_ms = self.store.ttl_remaining(key)
        except StoreUnavailableError as exc:
            self._log_store_unavailable("get_status", key, exc)
            return RateLimitStatus(available=True, message="Rate limit store unavailable")

        remaining = max(0, policy.max - count)
        reset_time = None
        if ttl_ms is not None and ttl_ms > 0:
            reset_time = datetime.fromtimestamp(self._clock() + ttl_ms / 1000, tz=timezone.utc)

        return RateLimitStatus(
            available=remaining > 0,
            limit=policy.max,
            remaining=remaining,
            reset_time=reset_time,
            window_ms=policy.window_ms,
        )

    def clear(self, user_id: str, policy_name: PolicyName | str) -> bool:
        """Delete a user's counter for a policy, restoring full quota."""
        policy_name, _ = self.policy(policy_name)
        key = user_key(policy_name, user_id)

        try:
            existed = self.store.delete(key)
        except StoreUnavailableError as exc:
            self._log_store_unavailable("clear", key, exc)
            return False

        logger.info(
            "rate_limit.cleared",
            extra={"policy": policy_name.value, "user_id": user_id, "existed": existed},
        )
        return True

    def policy_table(self) -> dict[str, dict[str, int]]:
        """Sanitized policy configuration (window and max only)."""
        return {
            name.value: {"windowMs": policy.window_ms, "max": policy.max}
            for name, policy in self._policies.items()
        }

    # Logging ------------------------------------------------------------

    def _log_denial(self, decision: Decision, request: Request) -> None:
        fields = {
            "policy": decision.policy.value if decision.policy else None,
            "action": decision.action,
            "key_hash": hash_identifier(decision.key or ""),
            "limit": decision.limit,
            "retry_after_s": decision.retry_after_seconds,
            "path": request.url.path,
            "method": request.method,
        }
        logger.info("rate_limit.denied", extra=fields)
        if decision.policy is PolicyName.AUTH:
            security_logger.warning("rate_limit.auth_denied", extra=fields)

    def _log_store_unavailable(self, operation: str, key: str, exc: StoreUnavailableError) -> None:
        logger.warning(
            "counter_store.unavailable",
            extra={
                "operation": operation,
                "key_hash": hash_identifier(key),
                "error_code": exc.code,
                "fallback": "allow",
            },
        )
