"""
Tests for freeform agent messages.

Tests cover:
- POST /send-message validation (400)
- 24h window policy (403) with no log entry
- Close command ending the session with the goodbye template
- Delivery failures (502) and storage failures (500)
- OutboundDispatcher.send_template / send_freeform directly
"""

import json
from datetime import timedelta

import httpx
import pytest

import menubot.dispatcher as dispatcher_module
from menubot.conversation import (
    ConversationState,
    DeliveryError,
    Direction,
    PolicyViolation,
    StorageError,
    utcnow,
)
from menubot.models import MessageLogEntry
from menubot.storage import SessionLocal, get_conversation, get_messages, set_conversation_state

SENDER = "5491123456789"


def send(client, payload):
    return client.post(
        "/send-message",
        content=payload if isinstance(payload, str) else json.dumps(payload),
        headers={"Content-Type": "application/json"},
    )


def seed_state(state: ConversationState, hours_ago: float = 0):
    """Store a conversation state written `hours_ago` hours in the past."""
    with SessionLocal() as db:
        set_conversation_state(db, SENDER, state, now=utcnow() - timedelta(hours=hours_ago))


def outbound_bodies(sender_id: str = SENDER):
    with SessionLocal() as db:
        entries, _ = get_messages(db, sender_id=sender_id, direction=Direction.OUTBOUND)
        return [entry.body for entry in entries]


def stored_state(sender_id: str = SENDER):
    with SessionLocal() as db:
        return get_conversation(db, sender_id).state


class TestSendMessageEndpoint:
    """POST /send-message from the agent panel."""

    def test_sends_text_within_window(self, client, provider):
        """A recent conversation accepts a literal text reply."""
        seed_state(ConversationState.MAIN_MENU, hours_ago=2)

        response = send(client, {"sender_id": SENDER, "body": "Hola, ¿cómo estás?"})

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert provider.payloads == [{
            "messaging_product": "whatsapp",
            "to": SENDER,
            "type": "text",
            "text": {"body": "Hola, ¿cómo estás?"},
        }]
        assert outbound_bodies() == ["Hola, ¿cómo estás?"]

    def test_text_attaches_agent(self, client):
        """A delivered agent reply moves the conversation to AGENT."""
        seed_state(ConversationState.TOURS, hours_ago=1)

        send(client, {"sender_id": SENDER, "body": "Te ayudo yo"})

        assert stored_state() == "AGENT"

    def test_rejected_after_25_hours(self, client, provider):
        """Outside the 24h window the send is refused and nothing is logged."""
        seed_state(ConversationState.MAIN_MENU, hours_ago=25)

        response = send(client, {"sender_id": SENDER, "body": "Hola"})

        assert response.status_code == 403
        assert "24 hours" in response.json()["detail"]
        assert provider.payloads == []
        assert outbound_bodies() == []

    def test_rejected_for_unknown_sender(self, client, provider):
        """A sender who never wrote cannot be messaged."""
        response = send(client, {"sender_id": "5490000000000", "body": "Hola"})

        assert response.status_code == 403
        assert provider.payloads == []

    def test_close_command_sends_goodbye(self, client, provider, catalog):
        """/cerrar ends the session with the goodbye template."""
        seed_state(ConversationState.AGENT, hours_ago=1)

        response = send(client, {"sender_id": SENDER, "body": "/cerrar"})

        assert response.status_code == 200
        assert provider.templates == [(SENDER, "goodbye_es")]
        assert provider.texts == []
        assert stored_state() == "MAIN_MENU"
        assert outbound_bodies() == [catalog["goodbye_es"]]

    def test_delivery_failure_returns_502(self, client, provider):
        """A provider rejection is a 502 and leaves state and log untouched."""
        seed_state(ConversationState.MAIN_MENU, hours_ago=1)
        provider.status_code = 400

        response = send(client, {"sender_id": SENDER, "body": "Hola"})

        assert response.status_code == 502
        assert outbound_bodies() == []
        assert stored_state() == "MAIN_MENU"

    def test_storage_failure_returns_500(self, client, provider, monkeypatch):
        """A conversation store failure is a 500 and nothing is sent."""
        def failing_lookup(db, sender_id):
            raise StorageError("database is locked")

        monkeypatch.setattr(dispatcher_module, "get_conversation", failing_lookup)

        response = send(client, {"sender_id": SENDER, "body": "Hola"})

        assert response.status_code == 500
        assert response.json() == {"detail": "Failed to access conversation store"}
        assert provider.payloads == []

    @pytest.mark.parametrize("payload", [
        "not valid json",
        {"body": "Hola"},
        {"sender_id": SENDER},
        {"sender_id": 5491123456789, "body": "Hola"},
        {"sender_id": SENDER, "body": ["Hola"]},
        {"sender_id": "", "body": "Hola"},
        {"sender_id": SENDER, "body": ""},
    ])
    def test_invalid_request(self, client, provider, payload):
        """Malformed JSON, missing, wrong-typed or empty fields are a 400."""
        seed_state(ConversationState.MAIN_MENU)

        response = send(client, payload)

        assert response.status_code == 400
        assert provider.payloads == []

    def test_get_not_allowed(self, client):
        """Only POST is routed."""
        assert client.get("/send-message").status_code == 405


class TestOutboundDispatcher:
    """OutboundDispatcher used directly with a session."""

    def test_send_template_logs_resolved_body(self, dispatcher, provider, db, catalog):
        """The logged body is the catalog text, not the template id."""
        body = dispatcher.send_template(SENDER, "tours_es")

        assert body == catalog["tours_es"]
        assert provider.templates == [(SENDER, "tours_es")]
        entry = db.query(MessageLogEntry).one()
        assert (entry.direction, entry.body) == ("OUTBOUND", catalog["tours_es"])

    def test_unknown_template_is_delivered_with_empty_log_body(self, dispatcher, provider, db):
        """A template missing from the catalog is still sent and logged as empty."""
        body = dispatcher.send_template(SENDER, "promo_es")

        assert body == ""
        assert provider.templates == [(SENDER, "promo_es")]
        assert db.query(MessageLogEntry).one().body == ""

    def test_send_template_failure_skips_log(self, dispatcher, provider, db):
        """A failed delivery raises and writes no log entry."""
        provider.error = httpx.ConnectTimeout("timed out")

        with pytest.raises(DeliveryError):
            dispatcher.send_template(SENDER, "tours_es")

        assert db.query(MessageLogEntry).count() == 0

    def test_freeform_window_is_measured_from_last_update(self, dispatcher, db):
        """The 24h window is measured from last_updated, whatever the state."""
        now = utcnow()
        set_conversation_state(db, SENDER, ConversationState.TOURS, now=now - timedelta(hours=25))

        with pytest.raises(PolicyViolation) as exc_info:
            dispatcher.send_freeform(SENDER, "Hola", now=now)

        assert exc_info.value.sender_id == SENDER
        assert db.query(MessageLogEntry).count() == 0

    def test_close_command_is_trimmed(self, dispatcher, provider, db):
        """Whitespace around /cerrar is ignored."""
        set_conversation_state(db, SENDER, ConversationState.AGENT)

        assert dispatcher.send_freeform(SENDER, " /cerrar \n") == "goodbye_es"
        assert provider.texts == []
