"""
Pytest configuration and shared fixtures.

Settings are read from the environment when chatrelay.config is first
imported, so test defaults are put in place before any chatrelay import.
Variables already exported (e.g. from .env.test) take precedence.
"""

import hashlib
import hmac
import json
import os
import tempfile

import pytest

os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.gettempdir(), 'chatrelay_test.db')}",
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("SIMULATE_STATUS_UPDATES", "false")

# Clear settings cache so the values above are the ones used
from chatrelay.config import get_settings  # noqa: E402
get_settings.cache_clear()

from chatrelay.storage import Base, SqlMessageStore, engine  # noqa: E402


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


def compute_signature(body: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def webhook_body(messages=None, statuses=None, contacts=None) -> str:
    """Serialize a provider delivery with one ``messages`` change."""
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "acct",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "contacts": contacts or [],
                    "messages": messages or [],
                    "statuses": statuses or [],
                },
            }],
        }],
    })


def text_message(message_id: str, sender: str, text: str, ts: int = 1754400000) -> dict:
    return {
        "id": message_id,
        "from": sender,
        "timestamp": str(ts),
        "type": "text",
        "text": {"body": text},
    }


def post_webhook(client, body: str, signature: str = None):
    """POST a delivery, signed with the test secret unless told otherwise."""
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": signature if signature is not None else compute_signature(body),
        }
    )


class FakeConnection:
    """Stands in for a WebSocket: collects every frame pushed to it."""

    def __init__(self, fail: bool = False):
        self.frames: list[dict] = []
        self.fail = fail
        self.close_code = None

    async def send_json(self, data) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.frames]


@pytest.fixture(scope="function")
def store():
    """SQL store on freshly created tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield SqlMessageStore()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    from fastapi.testclient import TestClient
    from chatrelay.main import app

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)
