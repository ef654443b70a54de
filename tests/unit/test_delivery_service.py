"""
Unit tests for quote_approvals/services/delivery_service.py

Tests: channel routing, Brevo request shape, missing API key, 4xx handling,
       exhausted retries, webhook delivery.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from quote_approvals.errors import DeliveryFailure

from quote_approvals.services.delivery_service import (
    BREVO_API_URL,
    HttpDeliveryGateway,
    LoggingGateway,
    _RetryableDeliveryError,
)

PAYLOAD = {"event_type": "reminder", "approval_id": "a-1", "summary": "Quote Q-1 is waiting"}


def _response(status_code: int, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300
    response.json.return_value = body or {}
    response.text = ""
    return response


@pytest.mark.asyncio
async def test_logging_gateway_accepts_everything():
    result = await LoggingGateway().send("sms", "+15550100", PAYLOAD)
    assert result.ok is True


@pytest.mark.asyncio
async def test_email_without_api_key_fails_without_network():
    gateway = HttpDeliveryGateway()
    with patch("quote_approvals.services.delivery_service.settings") as settings, \
         patch("quote_approvals.services.delivery_service._post_with_retry", new=AsyncMock()) as post:
        settings.BREVO_API_KEY = None
        result = await gateway.send("email", "rep@example.com", PAYLOAD)

    assert result.ok is False
    post.assert_not_awaited()


@pytest.mark.asyncio
async def test_email_posts_to_brevo():
    gateway = HttpDeliveryGateway()
    post = AsyncMock(return_value=_response(201, {"messageId": "m-1"}))
    with patch("quote_approvals.services.delivery_service.settings") as settings, \
         patch("quote_approvals.services.delivery_service._post_with_retry", new=post):
        settings.BREVO_API_KEY = "key"
        settings.APP_NAME = "Quote Approvals"
        settings.EMAIL_FROM_ADDRESS = "noreply@example.com"
        result = await gateway.send("email", "rep@example.com", PAYLOAD)

    assert result.ok is True
    url, headers, body = post.await_args.args
    assert url == BREVO_API_URL
    assert headers["api-key"] == "key"
    assert body["to"] == [{"email": "rep@example.com"}]
    assert body["textContent"] == "Quote Q-1 is waiting"


@pytest.mark.asyncio
async def test_email_client_error_is_failure():
    gateway = HttpDeliveryGateway()
    with patch("quote_approvals.services.delivery_service.settings") as settings, \
         patch("quote_approvals.services.delivery_service._post_with_retry",
               new=AsyncMock(return_value=_response(400))):
        settings.BREVO_API_KEY = "key"
        result = await gateway.send("email", "rep@example.com", PAYLOAD)

    assert result.ok is False
    assert "400" in result.error


@pytest.mark.asyncio
async def test_webhook_retries_exhausted_is_failure():
    gateway = HttpDeliveryGateway()
    with patch("quote_approvals.services.delivery_service._post_with_retry",
               new=AsyncMock(side_effect=_RetryableDeliveryError("503"))):
        result = await gateway.send("webhook", "https://hooks.example.com/q", PAYLOAD)

    assert result.ok is False


@pytest.mark.asyncio
async def test_webhook_success():
    gateway = HttpDeliveryGateway()
    post = AsyncMock(return_value=_response(204))
    with patch("quote_approvals.services.delivery_service._post_with_retry", new=post):
        result = await gateway.send("webhook", "https://hooks.example.com/q", PAYLOAD)

    assert result.ok is True
    assert post.await_args.args[0] == "https://hooks.example.com/q"


@pytest.mark.asyncio
async def test_other_channels_use_fallback():
    fallback = AsyncMock()
    gateway = HttpDeliveryGateway(fallback=fallback)
    await gateway.send("slack", "#deal-desk", PAYLOAD)
    fallback.send.assert_awaited_once_with("slack", "#deal-desk", PAYLOAD)


@pytest.mark.asyncio
async def test_webhook_rejection_raises_delivery_failure():
    gateway = HttpDeliveryGateway()
    with patch("quote_approvals.services.delivery_service._post_with_retry",
               new=AsyncMock(return_value=_response(410))):
        with pytest.raises(DeliveryFailure) as exc_info:
            await gateway._send_webhook("https://hooks.example.com/q", PAYLOAD)
        result = await gateway.send("webhook", "https://hooks.example.com/q", PAYLOAD)

    assert exc_info.value.code == "NOTIFICATION_DELIVERY_FAILED"
    assert result.ok is False
    assert result.error == "Webhook returned 410"
