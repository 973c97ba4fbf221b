"""Request context for metered actions."""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

logger = logging.getLogger(__name__)

# Context variables for request tracking
current_subject: ContextVar[Optional[str]] = ContextVar('current_subject', default=None)
current_action: ContextVar[Optional[str]] = ContextVar('current_action', default=None)


@contextmanager
def quota_context(subject: str, action: Optional[str] = None):
    """Bind the subject and action being metered for the duration of the block."""
    subject_token = current_subject.set(subject)
    action_token = current_action.set(action)
    try:
        yield
    finally:
        current_action.reset(action_token)
        current_subject.reset(subject_token)


def subject_for_account(account_id: str) -> str:
    return f"user:{account_id}"


def subject_for_address(address: str) -> str:
    return f"ip:{address}"
