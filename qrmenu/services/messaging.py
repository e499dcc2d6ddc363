"""
WhatsApp messaging gateway.

`LogMessagingGateway` is the development implementation: it logs the
message and keeps it in an outbox. `WhatsAppCloudGateway` posts to the
WhatsApp Cloud API. Neither raises on delivery failure; callers get a
NotificationResult.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

import requests

from qrmenu.core.config import Settings
from qrmenu.utils.phone import mask_phone

log = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    """Result from sending a message."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class MessagingGateway(ABC):

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""

    @abstractmethod
    async def send_whatsapp_message(self, phone: str, content: str) -> NotificationResult:
        """Deliver `content` to the WhatsApp account registered for `phone` (E.164)."""


class LogMessagingGateway(MessagingGateway):
    """Development gateway: messages go to the log and to `outbox`."""

    def __init__(self):
        self.outbox: List[Tuple[str, str]] = []

    @property
    def provider_name(self) -> str:
        return "log"

    async def send_whatsapp_message(self, phone: str, content: str) -> NotificationResult:
        self.outbox.append((phone, content))
        log.info("[WHATSAPP] to=%s\n%s", mask_phone(phone), content)
        return NotificationResult(success=True, message_id=f"log-{len(self.outbox)}",
                                  provider=self.provider_name)


class WhatsAppCloudGateway(MessagingGateway):
    """Text messages through the WhatsApp Cloud API (graph.facebook.com)."""

    def __init__(self, api_url: str, phone_number_id: str, access_token: str, timeout_sec: int = 10):
        self.url = f"{api_url.rstrip('/')}/{phone_number_id}/messages"
        self.access_token = access_token
        self.timeout_sec = timeout_sec

    @property
    def provider_name(self) -> str:
        return "whatsapp_cloud"

    def _post(self, phone: str, content: str) -> NotificationResult:
        payload = {
            "messaging_product": "whatsapp",
            "to": phone.lstrip("+"),
            "type": "text",
            "text": {"preview_url": True, "body": content},
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout_sec,
            )
        except requests.exceptions.Timeout:
            log.warning("WhatsApp API timeout sending to %s", mask_phone(phone))
            return NotificationResult(success=False, error_message="timeout", provider=self.provider_name)
        except requests.exceptions.RequestException as e:
            log.warning("WhatsApp API request failed for %s: %s", mask_phone(phone), e)
            return NotificationResult(success=False, error_message=str(e), provider=self.provider_name)

        if response.status_code >= 400:
            log.warning("WhatsApp API returned %s for %s: %s",
                        response.status_code, mask_phone(phone), response.text[:200])
            return NotificationResult(success=False, error_message=f"HTTP {response.status_code}",
                                      provider=self.provider_name)

        data = response.json()
        messages = data.get("messages") or [{}]
        return NotificationResult(success=True, message_id=messages[0].get("id"),
                                  provider=self.provider_name)

    async def send_whatsapp_message(self, phone: str, content: str) -> NotificationResult:
        # requests is blocking; keep it off the event loop
        return await asyncio.to_thread(self._post, phone, content)


def build_gateway(settings: Settings) -> MessagingGateway:
    if settings.whatsapp_provider == "cloud":
        return WhatsAppCloudGateway(
            settings.whatsapp_api_url,
            settings.whatsapp_phone_number_id,
            settings.whatsapp_access_token,
            settings.whatsapp_timeout_sec,
        )
    return LogMessagingGateway()
