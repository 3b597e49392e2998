# faceaccess/notifier.py
import logging
import time
from typing import Dict, Optional

import requests

from .config import NOTIFY_DEBOUNCE_SECONDS, REQUEST_TIMEOUT, SERVER_URL, WEBHOOK_URL

logger = logging.getLogger(__name__)


class RecognitionNotifier:
    """
    Sends granted recognitions to a webhook and/or the server's
    /log-recognition endpoint, at most once per label per debounce window.
    Delivery failures are logged and dropped.
    """

    def __init__(
        self,
        webhook_url: str = WEBHOOK_URL,
        server_url: str = SERVER_URL,
        debounce: float = NOTIFY_DEBOUNCE_SECONDS,
        session: Optional[requests.Session] = None,
        clock=time.monotonic,
    ):
        self.webhook_url = webhook_url.strip()
        self.server_url = server_url.rstrip("/")
        self.debounce = debounce
        self.http = session or requests.Session()
        self.clock = clock
        self._last_sent: Dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url or self.server_url)

    def should_notify(self, label: str) -> bool:
        last = self._last_sent.get(label)
        return last is None or self.clock() - last > self.debounce

    def _post(self, url: str, payload: dict) -> bool:
        try:
            resp = self.http.post(url, json=payload, timeout=REQUEST_TIMEOUT)
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"Notification to {url} failed: {e}")
            return False

    def notify(self, label: str, event: dict) -> bool:
        """Returns True when the event was sent (not debounced)."""
        if not self.enabled or not self.should_notify(label):
            return False
        self._last_sent[label] = self.clock()
        if self.webhook_url:
            self._post(self.webhook_url, {"label": label, **event})
        if self.server_url:
            self._post(
                f"{self.server_url}/log-recognition",
                {
                    "name": label,
                    "expression": event.get("expression") or "neutral",
                    "confidence": event.get("confidence"),
                    "age": event.get("age"),
                    "gender": event.get("gender"),
                },
            )
        logger.info(f"Recognition of {label} sent")
        return True
