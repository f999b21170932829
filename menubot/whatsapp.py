import logging
from typing import Iterator, Optional

import httpx

from menubot.conversation import DeliveryError

logger = logging.getLogger(__name__)

MESSAGING_PRODUCT = "whatsapp"


def build_template_payload(to: str, template_id: str, language: str) -> dict:
    return {
        "messaging_product": MESSAGING_PRODUCT,
        "to": to,
        "type": "template",
        "template": {
            "name": template_id,
            "language": {"code": language},
        },
    }


def build_text_payload(to: str, body: str) -> dict:
    return {
        "messaging_product": MESSAGING_PRODUCT,
        "to": to,
        "type": "text",
        "text": {"body": body},
    }


class WhatsAppClient:
    """Blocking client for the WhatsApp Cloud API."""

    def __init__(
        self,
        messages_url: str,
        token: str,
        language: str = "es_AR",
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.messages_url = messages_url
        self.language = language
        self._client = http_client or httpx.Client(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def send_template(self, to: str, template_id: str) -> dict:
        """Deliver a pre-approved template message in the configured locale."""
        return self._post(build_template_payload(to, template_id, self.language))

    def send_text(self, to: str, body: str) -> dict:
        """Deliver a freeform text message."""
        return self._post(build_text_payload(to, body))

    def _post(self, payload: dict) -> dict:
        try:
            response = self._client.post(self.messages_url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp API unreachable: {e}")
            raise DeliveryError(f"provider unreachable: {e}") from e

        if response.status_code >= 400:
            logger.error(
                f"WhatsApp API rejected {payload['type']} message: "
                f"status={response.status_code} body={response.text}"
            )
            raise DeliveryError(
                f"provider rejected message with status {response.status_code}",
                status_code=response.status_code,
            )

        logger.info(f"WhatsApp API accepted {payload['type']} message, status={response.status_code}")
        try:
            return response.json()
        except ValueError:
            return {}

    def iter_templates(self, url: str) -> Iterator[dict]:
        """
        Yield the raw message templates of the business account.

        Follows `paging.next` until the provider stops returning one.

        Raises:
            httpx.HTTPError: the catalog could not be fetched.
        """
        next_url: Optional[str] = url
        while next_url:
            response = self._client.get(next_url, headers=self._headers)
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("template listing is not a JSON object")
            templates = data.get("data")
            if not isinstance(templates, list):
                raise ValueError("template listing has no data array")
            yield from templates
            paging = data.get("paging")
            next_url = paging.get("next") if isinstance(paging, dict) else None
