"""Tier policy table: static quota limits per (action, tier)."""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Union

from .errors import UnknownActionError

logger = logging.getLogger(__name__)

# Sentinel for "no limit" in both TierLimit.max_requests and Decision.remaining
UNLIMITED = -1


class Tier(Enum):
    """Subscription tiers, least generous first."""
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @classmethod
    def parse(cls, value: Union["Tier", str, None]) -> Optional["Tier"]:
        """Return the matching tier, or None if value is not a known tier."""
        if isinstance(value, Tier):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


_TIER_ORDER = (Tier.FREE, Tier.PRO, Tier.ENTERPRISE)


class ActionKind(Enum):
    """Metered operations."""
    AI_CHAT = "ai_chat"
    AI_SUGGESTION = "ai_suggestion"
    RESUME_CREATE = "resume_create"
    API_REQUEST = "api_request"
    AUTH_ATTEMPT = "auth_attempt"

    @classmethod
    def parse(cls, value: Union["ActionKind", str]) -> "ActionKind":
        if isinstance(value, ActionKind):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnknownActionError(str(value)) from None


class WindowKind(Enum):
    """How a quota window resets."""
    ROLLING = "rolling"    # fixed duration from the first use after expiry
    CALENDAR = "calendar"  # first instant of each UTC month


class FailureMode(Enum):
    """What callers should do when the counter store is down."""
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class TierLimit:
    """Quota parameters for one tier of one action."""

    max_requests: int
    window_kind: WindowKind
    window_duration: timedelta

    def __post_init__(self):
        if self.max_requests < UNLIMITED:
            raise ValueError("max_requests must be >= 0, or UNLIMITED")
        if self.window_duration <= timedelta(0):
            raise ValueError("window_duration must be positive")

    @property
    def unlimited(self) -> bool:
        return self.max_requests == UNLIMITED

    @property
    def gated(self) -> bool:
        """The tier has no allowance at all for this action."""
        return self.max_requests == 0


@dataclass(frozen=True)
class QuotaPolicy:
    """Per-action policy shared by every subject of a tier."""

    action: ActionKind
    tier_limits: Mapping[Tier, TierLimit]
    count_only_failures: bool = False
    failure_mode: FailureMode = FailureMode.CLOSED

    def __post_init__(self):
        missing = [tier.value for tier in Tier if tier not in self.tier_limits]
        if missing:
            raise ValueError(f"Policy for {self.action.value} is missing tiers: {missing}")
        object.__setattr__(self, "tier_limits", MappingProxyType(dict(self.tier_limits)))


@dataclass(frozen=True)
class TierPolicyTable:
    """Read-only lookup of quota limits, built once at process start."""

    policies: Mapping[ActionKind, QuotaPolicy] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "policies", MappingProxyType(dict(self.policies)))

    @classmethod
    def from_policies(cls, policies: Iterable[QuotaPolicy]) -> "TierPolicyTable":
        return cls({policy.action: policy for policy in policies})

    def actions(self):
        return list(self.policies.keys())

    def policy_for(self, action: Union[ActionKind, str]) -> QuotaPolicy:
        kind = ActionKind.parse(action)
        policy = self.policies.get(kind)
        if policy is None:
            raise UnknownActionError(kind.value)
        return policy

    def limit_for(self, action: Union[ActionKind, str],
                  tier: Union[Tier, str, None]) -> TierLimit:
        """
        Resolve the limit for an action and tier.

        Unknown tiers get the most restrictive tier's limit instead of an error.
        """
        policy = self.policy_for(action)
        resolved = Tier.parse(tier)
        if resolved is None:
            logger.warning(f"Unknown tier {tier!r} for {policy.action.value}, using {Tier.FREE.value} limits")
            resolved = _TIER_ORDER[0]
        return policy.tier_limits[resolved]

    def required_tier(self, action: Union[ActionKind, str]) -> Optional[Tier]:
        """Lowest tier with a nonzero allowance for the action."""
        policy = self.policy_for(action)
        for tier in _TIER_ORDER:
            if not policy.tier_limits[tier].gated:
                return tier
        return None


def build_policy_table(settings) -> TierPolicyTable:
    """Convert QuotaSettings from config into the immutable runtime table."""
    policies = []
    for name, action_config in settings.actions.items():
        action = ActionKind.parse(name)
        window_kind = WindowKind(action_config.window_kind)
        duration = timedelta(seconds=action_config.window_seconds)
        limits: Dict[Tier, TierLimit] = {
            tier: TierLimit(
                max_requests=getattr(action_config, tier.value),
                window_kind=window_kind,
                window_duration=duration,
            )
            for tier in Tier
        }
        policies.append(QuotaPolicy(
            action=action,
            tier_limits=limits,
            count_only_failures=action_config.count_only_failures,
            failure_mode=FailureMode(action_config.failure_mode),
        ))

    table = TierPolicyTable.from_policies(policies)
    logger.info(f"Quota policy table built for actions: {[a.value for a in table.actions()]}")
    return table
