import asyncio
import logging
from typing import Optional

import telnyx

from config import settings

_LOGGER = logging.getLogger(__name__)

FROM_NUM = settings.TELNYX_FROM_NUMBER
TELNYX_API_KEY = settings.TELNYX_API_KEY
if TELNYX_API_KEY:
    telnyx.api_key = TELNYX_API_KEY


class SmsDeliveryError(RuntimeError):
    """The provider rejected the message or did not answer in time."""


def send_sms(to: str, body: str, from_number: Optional[str] = FROM_NUM) -> None:
    """Blocking send through Telnyx. Logs instead of sending in dev mode."""
    if not TELNYX_API_KEY or not from_number:
        _LOGGER.info("[SMS] DEV mode: would send to %s: %s", to, body)
        return
    telnyx.Message.create(from_=from_number, to=to, text=body)


class SmsSender:
    """Async notification sender used by the reminder sweep and the SMS webhook.

    The Telnyx client is synchronous, so each send runs in a worker thread and
    is bounded by ``timeout`` seconds.
    """

    def __init__(self, from_number: Optional[str] = FROM_NUM, timeout: float = settings.SMS_SEND_TIMEOUT):
        self.from_number = from_number
        self.timeout = timeout

    async def send(self, to: str, body: str) -> None:
        if not to:
            raise SmsDeliveryError("no destination number")
        try:
            await asyncio.wait_for(
                asyncio.to_thread(send_sms, to, body, self.from_number),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise SmsDeliveryError(f"send to {to} timed out after {self.timeout}s") from exc
        except telnyx.error.TelnyxError as exc:
            raise SmsDeliveryError(f"Telnyx rejected message to {to}: {exc}") from exc
