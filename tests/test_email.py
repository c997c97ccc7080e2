import json

import httpx
import pytest

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.services import email

pytestmark = pytest.mark.asyncio


@pytest.fixture
def configured(monkeypatch):
    settings = get_settings().model_copy(update={"resend_api_key": "re_test", "public_host": "https://ledger.test/"})
    monkeypatch.setattr(email, "get_settings", lambda: settings)
    return settings


async def test_send_email_posts_to_resend(configured):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        message_id = await email.send_email("a@example.com", "Hi", "<p>hi</p>", client=client)

    assert message_id == "msg_1"
    assert str(seen[0].url) == configured.resend_api_url
    assert seen[0].headers["Authorization"] == "Bearer re_test"
    body = json.loads(seen[0].content)
    assert body["to"] == ["a@example.com"]
    assert body["from"] == configured.email_from


async def test_send_email_raises_on_provider_error(configured):
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"message": "boom"}))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await email.send_email("a@example.com", "Hi", "<p>hi</p>", client=client)


async def test_send_email_requires_api_key(monkeypatch):
    settings = get_settings().model_copy(update={"resend_api_key": ""})
    monkeypatch.setattr(email, "get_settings", lambda: settings)
    with pytest.raises(BadRequestError):
        await email.send_email("a@example.com", "Hi", "<p>hi</p>")


def test_verification_link(configured):
    assert email.verification_link("tok") == "https://ledger.test/v1/auth/verify-account/tok"
