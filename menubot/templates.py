"""
Template catalog: template name -> human-readable body.

Built once before the server starts accepting requests and shared read-only
by every handler afterwards. There is no reload path.
"""

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

BODY_COMPONENT = "BODY"


class TemplateCatalog(Mapping):
    """Immutable mapping of template id to body text."""

    def __init__(self, templates: Optional[Mapping] = None):
        self._templates = MappingProxyType(dict(templates or {}))

    def __getitem__(self, template_id: str) -> str:
        return self._templates[template_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    def resolve(self, template_id: str) -> str:
        """Body text for a template, or an empty string if it is unknown."""
        body = self._templates.get(template_id)
        if body is None:
            logger.warning(f"Template not found in catalog: {template_id}")
            return ""
        return body


def extract_body(template: Any) -> Optional[tuple]:
    """
    Pull (name, body) out of one provider template.

    The body is the text of the first BODY component; a template without one
    has an empty body. Returns None if the template is malformed.
    """
    if not isinstance(template, dict):
        return None
    name = template.get("name")
    if not isinstance(name, str) or not name:
        return None
    components = template.get("components")
    if not isinstance(components, list):
        return None

    for component in components:
        if isinstance(component, dict) and component.get("type") == BODY_COMPONENT:
            text = component.get("text")
            if not isinstance(text, str):
                return None
            return name, text
    return name, ""


def build_catalog(templates: Iterable[Any]) -> TemplateCatalog:
    """Build a catalog from raw provider templates, skipping malformed ones."""
    entries = {}
    for template in templates:
        extracted = extract_body(template)
        if extracted is None:
            logger.warning(f"Skipping malformed template: {template!r}")
            continue
        name, body = extracted
        entries[name] = body
    logger.info(f"Template catalog loaded with {len(entries)} templates")
    return TemplateCatalog(entries)


def load_template_catalog(client, url: str) -> TemplateCatalog:
    """
    Fetch the business account's templates once at startup.

    An unset URL yields an empty catalog; outbound templates are still
    delivered, only their logged bodies are empty.
    """
    if not url:
        logger.warning("WHATSAPP_BUSINESS_URL not configured, template catalog is empty")
        return TemplateCatalog()
    logger.info("Fetching message templates from provider")
    return build_catalog(client.iter_templates(url))
