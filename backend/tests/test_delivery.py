# tests/test_delivery.py
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import httpx
import pytest

from teamhub.core.errors import DeliveryFailed
from teamhub.services.delivery import InvitationMessage, WebhookInvitationSender

BUSINESS_ID = uuid.UUID("6a3f0c52-8f5e-4d0b-9a34-2f1f3c1d7e01")


def make_message(**overrides) -> InvitationMessage:
    fields = dict(
        email="dana@example.com",
        token="tok-123",
        expires_at=datetime(2030, 1, 2, 12, 0, tzinfo=timezone.utc),
        business_id=BUSINESS_ID,
        role="staff",
        accept_url="https://app.example.com/accept",
    )
    fields.update(overrides)
    return InvitationMessage(**fields)


def test_link_carries_token_and_business():
    assert make_message().link == (
        f"https://app.example.com/accept?token=tok-123&business_id={BUSINESS_ID}"
    )
    existing_query = make_message(accept_url="https://app.example.com/accept?lang=sw")
    assert existing_query.link.startswith("https://app.example.com/accept?lang=sw&token=tok-123")


@pytest.mark.asyncio
async def test_webhook_posts_invitation_payload():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sender = WebhookInvitationSender("https://mail.example.com/hooks/invite", client=client)
        await sender.send(make_message(is_resend=True, message="Welcome aboard"))

    assert len(seen) == 1
    assert str(seen[0].url) == "https://mail.example.com/hooks/invite"
    body = json.loads(seen[0].content)
    assert body["email"] == "dana@example.com"
    assert body["business_id"] == str(BUSINESS_ID)
    assert body["role"] == "staff"
    assert body["is_resend"] is True
    assert body["message"] == "Welcome aboard"
    assert body["expires_at"] == "2030-01-02T12:00:00+00:00"
    assert "token=tok-123" in body["accept_url"]


@pytest.mark.asyncio
async def test_webhook_error_status_becomes_delivery_failure():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as client:
        sender = WebhookInvitationSender("https://mail.example.com/hooks/invite", client=client)
        with pytest.raises(DeliveryFailed) as exc:
            await sender.send(make_message())
    assert "503" in exc.value.message


@pytest.mark.asyncio
async def test_unreachable_webhook_becomes_delivery_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sender = WebhookInvitationSender("https://mail.example.com/hooks/invite", client=client)
        with pytest.raises(DeliveryFailed):
            await sender.send(make_message())
