"""
Notification delivery boundary: send(channel, recipient, payload).

The engine decides whether and when to send; transports live here:
  - email   → Brevo REST API
  - webhook → JSON POST to the recipient URL
  - sms / push / slack / teams → structured log line (no transport wired)

Retries up to 3 times with exponential back-off on 5xx and network errors.
Anything still failing comes back as DeliveryResult(ok=False) and the
dispatcher records a ``failed`` NotificationLog for the next tick to retry.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log
import structlog

from quote_approvals.config import settings
from quote_approvals.errors import DeliveryFailure

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

# Module-level singleton: reuses TLS connections across calls
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
        )
    return _http_client


@dataclass
class DeliveryResult:
    ok: bool
    error: Optional[str] = None


class DeliveryGateway(Protocol):
    async def send(self, channel: str, recipient: str, payload: dict) -> DeliveryResult: ...


class LoggingGateway:
    """Accepts every message and logs it; the default when no transport is configured."""

    async def send(self, channel: str, recipient: str, payload: dict) -> DeliveryResult:
        logger.info(
            "notification_delivered_log",
            channel=channel,
            recipient=recipient,
            event_type=payload.get("event_type"),
            approval_id=payload.get("approval_id"),
        )
        return DeliveryResult(ok=True)


class _RetryableDeliveryError(Exception):
    """Raised for 5xx or network errors that warrant a retry."""


@retry(
    retry=retry_if_exception_type(_RetryableDeliveryError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    before_sleep=before_sleep_log(_std_logger, logging.WARNING),
    reraise=True,
)
async def _post_with_retry(url: str, headers: dict, payload: dict) -> httpx.Response:
    client = get_http_client()
    try:
        response = await client.post(url, headers=headers, json=payload)
    except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
        logger.warning("delivery_network_error_retrying", error=str(exc), url=url)
        raise _RetryableDeliveryError(str(exc)) from exc

    if response.status_code >= 500:
        logger.warning("delivery_5xx_retrying", status_code=response.status_code, url=url)
        raise _RetryableDeliveryError(f"{url} returned {response.status_code}")
    return response


class HttpDeliveryGateway:
    def __init__(self, fallback: Optional[DeliveryGateway] = None):
        self.fallback = fallback or LoggingGateway()

    async def send(self, channel: str, recipient: str, payload: dict) -> DeliveryResult:
        try:
            if channel == "email":
                await self._send_email(recipient, payload)
            elif channel == "webhook":
                await self._send_webhook(recipient, payload)
            else:
                return await self.fallback.send(channel, recipient, payload)
        except DeliveryFailure as e:
            return DeliveryResult(ok=False, error=e.message)
        return DeliveryResult(ok=True)

    async def _send_email(self, recipient: str, payload: dict) -> None:
        if not settings.BREVO_API_KEY:
            logger.warning("brevo_api_key_missing", message="Email sending skipped")
            raise DeliveryFailure("BREVO_API_KEY not configured", subject_id=recipient)

        headers = {
            "accept": "application/json",
            "api-key": settings.BREVO_API_KEY,
            "content-type": "application/json",
        }
        body = {
            "sender": {"name": settings.APP_NAME, "email": settings.EMAIL_FROM_ADDRESS},
            "to": [{"email": recipient}],
            "subject": payload.get("subject", f"[{settings.APP_NAME}] Quote approval update"),
            "params": payload,
        }
        if payload.get("template_id"):
            body["templateId"] = payload["template_id"]
        else:
            body["textContent"] = payload.get("summary", "")

        try:
            response = await _post_with_retry(BREVO_API_URL, headers, body)
        except _RetryableDeliveryError as exc:
            logger.error("email_all_retries_exhausted", error=str(exc), to=recipient)
            raise DeliveryFailure(str(exc), subject_id=recipient) from exc

        if response.status_code in (201, 202):
            logger.info(
                "email_sent_brevo",
                to=recipient,
                message_id=response.json().get("messageId"),
            )
            return

        # 4xx: client error, no point retrying
        logger.error(
            "email_failed_brevo",
            status_code=response.status_code,
            response=response.text[:500],
            to=recipient,
        )
        raise DeliveryFailure(f"Brevo returned {response.status_code}", subject_id=recipient)

    async def _send_webhook(self, url: str, payload: dict) -> None:
        try:
            response = await _post_with_retry(url, {"content-type": "application/json"}, payload)
        except _RetryableDeliveryError as exc:
            logger.error("webhook_all_retries_exhausted", error=str(exc), url=url)
            raise DeliveryFailure(str(exc), subject_id=url) from exc

        if not response.is_success:
            logger.error("webhook_failed", status_code=response.status_code, url=url)
            raise DeliveryFailure(f"Webhook returned {response.status_code}", subject_id=url)


def create_gateway() -> DeliveryGateway:
    if settings.BREVO_API_KEY:
        return HttpDeliveryGateway()
    return LoggingGateway()
