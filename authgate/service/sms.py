from __future__ import annotations

from typing import Any, Optional, Tuple

import httpx

from authgate.logging import get_logger
from authgate.service.email import DeliveryError

logger = get_logger(__name__)


def _redact_phone(phone: str) -> str:
    if len(phone) <= 4:
        return "***"
    return f"***{phone[-4:]}"


def _parse_lookup_response(body: Any) -> Tuple[Optional[int], Optional[str]]:
    """Return (provider status, message id) from a lookup response body."""
    if not isinstance(body, dict):
        return None, None
    status = (body.get("return") or {}).get("status")
    message_id = None
    entries = body.get("entries")
    if entries:
        raw_id = entries[0].get("messageid")
        if isinstance(raw_id, (int, str)):
            message_id = str(raw_id)
    return (int(status) if status is not None else None), message_id


class SmsService:
    """Sends verification codes through an HTTP verify-lookup provider.

    Without an API key the code is logged instead (dev mode).
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: Optional[str] = None,
        template: str = "sendSMS",
        timeout_seconds: float = 10.0,
        allow_dev_mode: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.template = template
        self.timeout_seconds = timeout_seconds
        self.allow_dev_mode = allow_dev_mode
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def normalize_phone(phone: str) -> str:
        return "".join((phone or "").split())

    async def send_otp(self, identifier: str, code: str) -> Optional[str]:
        """Deliver ``code`` to ``identifier``; returns the provider message id if any."""
        receptor = self.normalize_phone(identifier)
        if not self.is_configured:
            if not self.allow_dev_mode:
                logger.error("sms_not_configured", to=_redact_phone(receptor))
                raise DeliveryError("SMS delivery is not configured.")
            logger.info("sms_dev_mode", to=_redact_phone(receptor), otp_value=code)
            return None

        url = self.api_url.format(api_key=self.api_key)
        params = {"receptor": receptor, "token": code, "template": self.template, "type": "sms"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(url, data=params)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_send_http_error",
                to=_redact_phone(receptor),
                status_code=exc.response.status_code,
            )
            raise DeliveryError("Unable to send verification SMS.") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "sms_send_failed",
                to=_redact_phone(receptor),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise DeliveryError("Unable to send verification SMS.") from exc

        try:
            status, message_id = _parse_lookup_response(body)
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            logger.error(
                "sms_provider_malformed_response",
                to=_redact_phone(receptor),
                error_type=type(exc).__name__,
            )
            raise DeliveryError("Unable to send verification SMS.") from exc
        if status is not None and status != 200:
            logger.error("sms_provider_rejected", to=_redact_phone(receptor), provider_status=status)
            raise DeliveryError("Unable to send verification SMS.")
        logger.info("sms_sent", to=_redact_phone(receptor), message_id=message_id)
        return message_id


__all__ = ["SmsService"]
