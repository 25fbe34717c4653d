"""
Send channels for outgoing notification email.

A channel takes (to_address, subject, body) and returns the provider's
message id, or raises SendError. TransientSendError is worth retrying;
PermanentSendError (bad address, hard bounce) is not.
"""
import uuid
from typing import Awaitable, Callable, Protocol

import httpx
from pydantic import BaseModel

from lms_notify.config import Settings, settings as default_settings
from lms_notify.errors import TransientSendError, PermanentSendError
from lms_notify.logging_config import get_logger


logger = get_logger(component="send_channel")

# Provider rejected the message itself; resending the same request won't help
PERMANENT_STATUS_CODES = frozenset({400, 422})


class SendResult(BaseModel):
    """Outcome of a successful send."""
    provider_message_id: str | None = None


class SendChannel(Protocol):
    """Interface every send channel implements."""

    async def send(self, to_address: str, subject: str, body: str) -> SendResult:
        ...


class HttpEmailChannel:
    """
    Email provider reached over an HTTP JSON API.
    
    POSTs {from, to, subject, text} with a bearer token and reads the
    message id from the JSON response ("id" or "message_id") or the
    X-Message-Id header.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        from_address: str = "library@example.com",
        from_name: str = "Library Management System",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout
        self._client = client

    async def send(self, to_address: str, subject: str, body: str) -> SendResult:
        payload = {
            "from": {"email": self.from_address, "name": self.from_name},
            "to": [{"email": to_address}],
            "subject": subject,
            "text": body,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientSendError(f"Email provider timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransientSendError(f"Email provider unreachable: {e}") from e

        if response.status_code in PERMANENT_STATUS_CODES:
            raise PermanentSendError(
                f"Email provider rejected message: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise TransientSendError(
                f"Email provider error: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        return SendResult(provider_message_id=self._message_id(response))

    @staticmethod
    def _message_id(response: httpx.Response) -> str | None:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            message_id = data.get("id") or data.get("message_id")
            if message_id:
                return str(message_id)
        return response.headers.get("X-Message-Id")


class LoggingChannel:
    """Development channel: logs the email instead of sending it."""

    async def send(self, to_address: str, subject: str, body: str) -> SendResult:
        message_id = f"log-{uuid.uuid4().hex}"
        logger.info(
            "email_logged",
            to=to_address,
            subject=subject,
            body_length=len(body),
            provider_message_id=message_id,
        )
        return SendResult(provider_message_id=message_id)


class CallableChannel:
    """
    Wraps an async function (to_address, subject, body) -> message id.

    The function may return a SendResult, a message id string or None.
    """

    def __init__(self, func: Callable[[str, str, str], Awaitable[SendResult | str | None]]):
        self.func = func

    async def send(self, to_address: str, subject: str, body: str) -> SendResult:
        result = await self.func(to_address, subject, body)
        if isinstance(result, SendResult):
            return result
        return SendResult(provider_message_id=result)


def build_channel(settings: Settings | None = None) -> SendChannel:
    """Pick the configured channel: HTTP provider if a URL is set, else logging."""
    settings = settings or default_settings
    if settings.EMAIL_PROVIDER_URL:
        return HttpEmailChannel(
            url=settings.EMAIL_PROVIDER_URL,
            api_key=settings.EMAIL_PROVIDER_API_KEY,
            from_address=settings.EMAIL_FROM_ADDRESS,
            from_name=settings.EMAIL_FROM_NAME,
            timeout=settings.NOTIFY_SEND_TIMEOUT_SECONDS,
        )
    logger.warning("email_provider_not_configured", channel="logging")
    return LoggingChannel()
