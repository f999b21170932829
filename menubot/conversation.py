"""
Conversation states, expiry policy and the error types shared by the engine.

The stored state of a sender is never trusted as-is: every read goes through
effective_state(), which downgrades stale conversations to the main menu.
Nothing here writes back to storage.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    MAIN_MENU = "MAIN_MENU"
    TOURS = "TOURS"
    TRANSFERS = "TRANSFERS"
    AGENT = "AGENT"


class Direction(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


# Any state older than this falls back to the main menu
CONVERSATION_TTL = timedelta(hours=24)

# A human agent session expires sooner than the general window
AGENT_SESSION_TTL = timedelta(hours=4)

# Provider rule: freeform (non-template) messages need a recent interaction
FREEFORM_WINDOW = timedelta(hours=24)


# =============================================================================
# Errors
# =============================================================================

class MenubotError(Exception):
    """Base class for errors raised by the conversation engine."""


class StorageError(MenubotError):
    """The conversation store or message log could not be read or written."""


class PolicyViolation(MenubotError):
    """An outbound message is not allowed for this sender right now."""

    def __init__(self, sender_id: str, reason: str):
        self.sender_id = sender_id
        self.reason = reason
        super().__init__(f"{reason} (sender={sender_id})")


class DeliveryError(MenubotError):
    """The provider could not be reached or rejected the payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# Timestamps
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize an instant as ISO-8601 UTC with an explicit offset."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a stored ISO-8601 timestamp.

    Returns None for missing or unparseable values so callers can treat the
    conversation as having no prior interaction. Naive values are read as UTC.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        logger.warning(f"Unparseable conversation timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_state(value: Optional[str]) -> ConversationState:
    """Map a stored state value to the enum; empty or unknown means main menu."""
    if not value:
        return ConversationState.MAIN_MENU
    try:
        return ConversationState(value)
    except ValueError:
        logger.warning(f"Unknown stored conversation state: {value!r}")
        return ConversationState.MAIN_MENU


# =============================================================================
# Expiry Policy
# =============================================================================

def effective_state(
    stored_state: Optional[str],
    last_updated: Optional[str],
    now: Optional[datetime] = None,
) -> ConversationState:
    """
    Apply the expiry policy to a stored conversation.

    - no timestamp (no record, or unparseable) -> MAIN_MENU
    - older than 24h -> MAIN_MENU
    - AGENT and older than 4h -> MAIN_MENU
    - otherwise the stored state
    """
    updated_at = parse_timestamp(last_updated)
    if updated_at is None:
        return ConversationState.MAIN_MENU

    now = now or utcnow()
    age = now - updated_at
    state = coerce_state(stored_state)

    if age > CONVERSATION_TTL:
        return ConversationState.MAIN_MENU
    if state == ConversationState.AGENT and age > AGENT_SESSION_TTL:
        return ConversationState.MAIN_MENU
    return state


def within_freeform_window(last_updated: Optional[str], now: Optional[datetime] = None) -> bool:
    """True if the sender interacted recently enough for a freeform message."""
    updated_at = parse_timestamp(last_updated)
    if updated_at is None:
        return False
    now = now or utcnow()
    return now - updated_at <= FREEFORM_WINDOW
