"""
Normalization of WhatsApp Cloud API webhook deliveries.

Provider payloads are not schema-validated: each nested item is extracted
on a best-effort basis and anything that does not look like a text message
is skipped without affecting its siblings. Only a payload with no
recognizable batch at all is rejected.

    {"entry": [{"changes": [{"value": {"messages": [
        {"from": "5491123456789", "text": {"body": "Hola"}}
    ]}}]}]}
"""

import logging
from typing import Any, Iterator, List, NamedTuple, Optional

from menubot.conversation import MenubotError

logger = logging.getLogger(__name__)


class InvalidWebhookPayload(MenubotError):
    """The payload does not contain a recognizable delivery batch."""


class InboundEvent(NamedTuple):
    sender_id: str
    body: str


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


def extract_event(message: Any) -> Optional[InboundEvent]:
    """Normalize a single provider message, or None if it must be skipped."""
    message = _as_dict(message)
    if message is None:
        return None
    sender_id = message.get("from")
    if not isinstance(sender_id, str) or not sender_id:
        return None
    text = _as_dict(message.get("text"))
    if text is None:
        return None
    body = text.get("body")
    if not isinstance(body, str):
        return None
    return InboundEvent(sender_id=sender_id, body=body)


class WebhookBatch:
    """
    Lazy, single-pass sequence of inbound events from one delivery.

    `skipped` counts the items dropped so far; it is final once the batch
    has been fully consumed.
    """

    def __init__(self, entries: List[Any]):
        self._entries = entries
        self.skipped = 0

    def __iter__(self) -> Iterator[InboundEvent]:
        for entry in self._entries:
            entry = _as_dict(entry)
            if entry is None:
                self._skip("entry is not an object")
                continue
            changes = _as_list(entry.get("changes"))
            if not changes:
                self._skip("entry without changes")
                continue
            for change in changes:
                change = _as_dict(change)
                value = _as_dict(change.get("value")) if change else None
                if value is None:
                    self._skip("change without value")
                    continue
                # Status callbacks (sent/delivered/read) carry no messages
                for message in _as_list(value.get("messages")):
                    event = extract_event(message)
                    if event is None:
                        self._skip("message is not a text message")
                        continue
                    yield event

    def _skip(self, reason: str) -> None:
        self.skipped += 1
        logger.debug(f"Skipping webhook item: {reason}")


def parse_webhook(payload: Any) -> WebhookBatch:
    """
    Validate the top-level shape of a delivery and return its events.

    Raises:
        InvalidWebhookPayload: no non-empty `entry` list at the top level.
    """
    if not isinstance(payload, dict):
        raise InvalidWebhookPayload("payload is not a JSON object")
    entries = payload.get("entry")
    if not isinstance(entries, list) or not entries:
        raise InvalidWebhookPayload("payload has no entries")
    return WebhookBatch(entries)
