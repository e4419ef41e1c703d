"""
Chat transport client.

The WhatsApp session itself lives in a bridge sidecar; this service only
talks to its HTTP API. Socket lifecycle, reconnects and QR pairing are the
bridge's problem.
"""
import logging
from typing import Optional, Protocol

import requests

from core.config import settings
from core.exceptions import TransientDeliveryError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def is_connected(self) -> bool:
        ...

    def send(self, destination_jid: str, text: str) -> None:
        """Deliver one message. Raises on failure."""
        ...


class HttpBridgeTransport:
    """Transport backed by the bridge's REST endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.TRANSPORT_BRIDGE_URL).rstrip("/")
        self.token = token if token is not None else settings.TRANSPORT_BRIDGE_TOKEN
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def is_connected(self) -> bool:
        try:
            r = requests.get(f"{self.base_url}/status", headers=self._headers(), timeout=self.timeout)
            if r.status_code != 200:
                logger.warning(f"Bridge status check returned HTTP {r.status_code}")
                return False
            return bool(r.json().get("connected", False))
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Bridge status check failed: {e}")
            return False

    def send(self, destination_jid: str, text: str) -> None:
        try:
            r = requests.post(
                f"{self.base_url}/messages",
                json={"jid": destination_jid, "text": text},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientDeliveryError(f"Bridge request failed: {e}") from e

        if r.status_code >= 400:
            raise TransientDeliveryError(f"Bridge rejected message: HTTP {r.status_code} {r.text[:200]}")
