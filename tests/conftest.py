"""
Pytest configuration and shared fixtures.

Environment variables are seeded here before any app import so the cached
settings pick them up. The WhatsApp API is replaced by an httpx
MockTransport that records every payload.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_menubot.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WHATSAPP_URL", "http://whatsapp.test/v18.0/123/messages")
os.environ.setdefault("WHATSAPP_TOKEN", "test-token")
# No catalog fetch and no signature check unless a test asks for them
os.environ.pop("WHATSAPP_BUSINESS_URL", None)
os.environ.pop("WHATSAPP_APP_SECRET", None)

import httpx
import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from menubot.config import get_settings
get_settings.cache_clear()

import menubot.models  # noqa: F401,E402  register tables
from menubot.dispatcher import OutboundDispatcher
from menubot.main import app, get_catalog, get_whatsapp_client
from menubot.storage import Base, SessionLocal, engine
from menubot.templates import TemplateCatalog
from menubot.whatsapp import WhatsAppClient


TEST_TEMPLATES = {
    "greeting_es": "¡Hola! 1) Tours 2) Traslados",
    "tours_es": "¡Bienvenido a la sección de TOURS!",
    "transport_es": "¡Bienvenido a la sección de TRASLADOS!",
    "404_es": "Esta opción todavía no está disponible.",
    "agent_es": "Un agente se comunicará contigo.",
    "goodbye_es": "¡Gracias por escribirnos!",
}


class FakeProvider:
    """Records payloads posted to the WhatsApp API and answers them."""

    def __init__(self):
        self.payloads = []
        self.status_code = 200
        self.error = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.error is not None:
            raise self.error
        payload = json.loads(request.content)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": {"message": "rejected"}})
        self.payloads.append(payload)
        return httpx.Response(self.status_code, json={"messages": [{"id": f"wamid.{len(self.payloads)}"}]})

    @property
    def templates(self):
        return [(p["to"], p["template"]["name"]) for p in self.payloads if p["type"] == "template"]

    @property
    def texts(self):
        return [(p["to"], p["text"]["body"]) for p in self.payloads if p["type"] == "text"]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def whatsapp(provider):
    client = WhatsAppClient(
        messages_url=os.environ["WHATSAPP_URL"],
        token="test-token",
        http_client=httpx.Client(transport=httpx.MockTransport(provider.handler)),
    )
    yield client
    client.close()


@pytest.fixture
def catalog() -> TemplateCatalog:
    return TemplateCatalog(TEST_TEMPLATES)


@pytest.fixture
def db():
    """Session on a fresh schema."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def dispatcher(db, catalog, whatsapp) -> OutboundDispatcher:
    return OutboundDispatcher(db=db, catalog=catalog, client=whatsapp)


@pytest.fixture
def client(catalog, whatsapp):
    """Test client with a fresh database and the fake provider wired in."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_whatsapp_client] = lambda: whatsapp

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
