"""
Outbound dispatch and the inbound conversation engine.

Inbound:  log -> read effective state -> transition -> write state -> reply
Outbound: deliver -> resolve body -> log

A message is only logged as OUTBOUND after the provider accepted the
request; nothing is retried.
"""

import logging
from datetime import datetime
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from menubot.conversation import (
    ConversationState,
    DeliveryError,
    Direction,
    PolicyViolation,
    StorageError,
    within_freeform_window,
)
from menubot.metrics import record_inbound_event, record_outbound_message, record_transition
from menubot.storage import (
    append_message,
    get_conversation,
    get_effective_state,
    set_conversation_state,
)
from menubot.templates import TemplateCatalog
from menubot.transitions import GOODBYE_TEMPLATE, next_transition
from menubot.webhook import InboundEvent, WebhookBatch
from menubot.whatsapp import WhatsAppClient

logger = logging.getLogger(__name__)

# Freeform body that ends an agent session instead of being delivered
CLOSE_SESSION_COMMAND = "/cerrar"


class InboundOutcome(NamedTuple):
    sender_id: str
    previous_state: ConversationState
    next_state: ConversationState
    template_id: Optional[str]


class OutboundDispatcher:
    """
    Sends replies to one sender and keeps the store and log in step.

    One instance per request: it holds that request's database session.
    """

    def __init__(self, db: Session, catalog: TemplateCatalog, client: WhatsAppClient):
        self.db = db
        self.catalog = catalog
        self.client = client

    def send_template(self, sender_id: str, template_id: str, now: Optional[datetime] = None) -> str:
        """
        Deliver a template and log its resolved body.

        Returns:
            The body written to the message log ("" if the template is not
            in the catalog).

        Raises:
            DeliveryError: the provider was unreachable or rejected the message.
            StorageError: the message log write failed.
        """
        try:
            self.client.send_template(sender_id, template_id)
        except DeliveryError:
            record_outbound_message("template", "failed")
            raise
        record_outbound_message("template", "sent")

        body = self.catalog.resolve(template_id)
        append_message(self.db, sender_id, Direction.OUTBOUND, body, now=now)
        logger.info(f"Template {template_id} sent to {sender_id}")
        return body

    def send_freeform(self, sender_id: str, body: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Send an agent-written message to a sender.

        Only allowed within 24h of the sender's last interaction. The close
        command resets the sender to the main menu and sends the goodbye
        template instead of the literal text; any other body attaches the
        conversation to the agent.

        Returns:
            The template id sent in place of the body, or None for a text message.

        Raises:
            PolicyViolation: no interaction within the freeform window.
            DeliveryError: the provider was unreachable or rejected the message.
            StorageError: the store or log could not be accessed.
        """
        record = get_conversation(self.db, sender_id)
        if record is None or not within_freeform_window(record.last_updated, now=now):
            record_outbound_message("text", "rejected")
            logger.warning(f"Freeform message to {sender_id} rejected: outside 24h window")
            raise PolicyViolation(sender_id, "sender has no interaction within the last 24 hours")

        if body.strip() == CLOSE_SESSION_COMMAND:
            logger.info(f"Closing agent session for {sender_id}")
            set_conversation_state(self.db, sender_id, ConversationState.MAIN_MENU, now=now)
            self.send_template(sender_id, GOODBYE_TEMPLATE, now=now)
            return GOODBYE_TEMPLATE

        try:
            self.client.send_text(sender_id, body)
        except DeliveryError:
            record_outbound_message("text", "failed")
            raise
        record_outbound_message("text", "sent")

        append_message(self.db, sender_id, Direction.OUTBOUND, body, now=now)
        set_conversation_state(self.db, sender_id, ConversationState.AGENT, now=now)
        logger.info(f"Freeform message sent to {sender_id}")
        return None

    def handle_inbound(self, event: InboundEvent, now: Optional[datetime] = None) -> InboundOutcome:
        """
        Run one inbound message through the conversation engine.

        Raises:
            StorageError: the state could not be read or written; no reply is sent.
            DeliveryError: the reply could not be delivered; the new state stays written.
        """
        append_message(self.db, event.sender_id, Direction.INBOUND, event.body, now=now)

        current = get_effective_state(self.db, event.sender_id, now=now)
        transition = next_transition(current, event.body)

        # While an agent is attached, only the agent's replies move last_updated
        if not (current == transition.next_state == ConversationState.AGENT):
            set_conversation_state(self.db, event.sender_id, transition.next_state, now=now)
        record_transition(current.value, transition.next_state.value)
        logger.info(
            f"Transition for {event.sender_id}: {current.value} -> {transition.next_state.value}, "
            f"reply={transition.template_id}"
        )

        if transition.template_id is not None:
            self.send_template(event.sender_id, transition.template_id, now=now)

        return InboundOutcome(
            sender_id=event.sender_id,
            previous_state=current,
            next_state=transition.next_state,
            template_id=transition.template_id,
        )


class BatchResult(NamedTuple):
    processed: int
    failed: int
    skipped: int
    storage_failed: int = 0


def process_batch(dispatcher: OutboundDispatcher, batch: WebhookBatch) -> BatchResult:
    """
    Handle every event of one webhook delivery, in order.

    A storage or delivery failure aborts only the event it happened in.
    Storage failures are also counted in `storage_failed` so the caller can
    report the delivery as a server error once the batch is done.
    """
    processed = failed = storage_failed = 0
    for event in batch:
        try:
            dispatcher.handle_inbound(event)
        except StorageError:
            failed += 1
            storage_failed += 1
            record_inbound_event("storage_error")
            logger.exception(f"Storage error while handling message from {event.sender_id}")
        except DeliveryError:
            failed += 1
            record_inbound_event("delivery_error")
            logger.exception(f"Reply to {event.sender_id} could not be delivered")
        else:
            processed += 1
            record_inbound_event("processed")

    record_inbound_event("skipped", batch.skipped)
    return BatchResult(
        processed=processed,
        failed=failed,
        skipped=batch.skipped,
        storage_failed=storage_failed,
    )
