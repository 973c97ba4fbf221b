"""FastAPI integration: subject resolution and quota enforcement per route."""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse

from ..config import HttpServerConfig
from ..rate_limiting import (
    ActionKind,
    Decision,
    DenialReason,
    FailureMode,
    QuotaDeniedError,
    QuotaEvaluator,
    StoreUnavailableError,
    Tier,
    TwoPhaseRequiredError,
)
from ..security import Account, AccountDirectory
from ..utils.request_context import subject_for_account, subject_for_address

logger = logging.getLogger(__name__)

ACCOUNT_HEADER = "X-Account-Id"


def client_address(request: Request, trust_forwarded_for: bool = True) -> str:
    """Get client IP address, handling proxy headers."""
    if trust_forwarded_for:
        forwarded = request.headers.get('X-Forwarded-For')
        if forwarded:
            return forwarded.split(',')[0].strip()
        real_ip = request.headers.get('X-Real-IP')
        if real_ip:
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def denial_body(decision: Decision) -> Dict[str, Any]:
    """JSON body for a denied check; enough for a client to render without parsing text."""
    tier_gate = decision.reason == DenialReason.TIER_GATE
    return {
        "error": decision.message,
        "code": "UPGRADE_REQUIRED" if tier_gate else "QUOTA_EXHAUSTED",
        "reason": decision.reason.value if decision.reason else None,
        "action": decision.action.value,
        "upgradeRequired": decision.upgrade_required,
        "retryAfter": decision.retry_after_seconds,
        "currentTier": decision.tier.value,
        "requiredTier": decision.required_tier.value if decision.required_tier else None,
        "limit": decision.limit,
        "remaining": decision.remaining,
        "resetAt": decision.reset_at.isoformat() if decision.reset_at else None,
    }


def denial_response(decision: Decision) -> JSONResponse:
    headers = {}
    if decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return JSONResponse(status_code=429, content=denial_body(decision), headers=headers)


def store_unavailable_response() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "error": "Quota service temporarily unavailable",
            "code": "QUOTA_STORE_UNAVAILABLE",
        },
        headers={"Retry-After": "5"},
    )


def apply_rate_limit_headers(response: Response, decision: Decision) -> None:
    if decision.unlimited:
        return
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if decision.reset_at is not None:
        response.headers["X-RateLimit-Reset"] = str(int(decision.reset_at.timestamp()))


async def resolve_account(request: Request, accounts: AccountDirectory) -> Account:
    """Load the account the upstream auth layer identified, or answer 401."""
    account_id = request.headers.get(ACCOUNT_HEADER)
    if not account_id:
        raise HTTPException(status_code=401, detail="Authentication required")

    account = await accounts.find_account_by_id(account_id)
    if account is None:
        raise HTTPException(status_code=401, detail="Unknown account")
    return account


class QuotaGuard:
    """
    Route dependency that meters one action per request.

    Account-keyed actions need an authenticated account and use its tier;
    address-keyed actions meter the client IP on the free tier. Denials raise
    QuotaDeniedError, which the app turns into a 429. When the counter store is
    down the action's failure mode decides: closed answers 503, open lets the
    request through. Actions that count only failed attempts cannot be
    guarded this way since the outcome is unknown before the handler runs.
    """

    def __init__(self, action: ActionKind, evaluator: QuotaEvaluator,
                 accounts: AccountDirectory, http_config: Optional[HttpServerConfig] = None,
                 key_by_address: bool = False):
        self.action = action
        self.evaluator = evaluator
        self.accounts = accounts
        self.http_config = http_config or HttpServerConfig()
        self.key_by_address = key_by_address
        policy = evaluator.policies.policy_for(action)
        if policy.count_only_failures:
            raise TwoPhaseRequiredError(action.value)
        self.failure_mode = policy.failure_mode

    async def __call__(self, request: Request, response: Response) -> Optional[Decision]:
        if self.key_by_address:
            subject = subject_for_address(client_address(request, self.http_config.trust_forwarded_for))
            tier = Tier.FREE
        else:
            account = await resolve_account(request, self.accounts)
            subject = subject_for_account(account.account_id)
            tier = account.tier

        try:
            decision = await self.evaluator.check(subject, self.action, tier)
        except StoreUnavailableError:
            if self.failure_mode == FailureMode.OPEN:
                logger.warning(f"Quota store unavailable, letting {self.action.value} through for {subject}")
                return None
            raise

        if not decision.allowed:
            raise QuotaDeniedError(decision)

        apply_rate_limit_headers(response, decision)
        return decision
