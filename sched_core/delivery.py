"""
DELIVERY
========

Delivery sinks: where a finished run's text (and the ``send_message_to_group``
tool's messages) end up.

``LogDeliverySink``
    Writes the message to the log and keeps the last few in memory. Default
    for local runs and dry runs.

``WebhookDeliverySink``
    POSTs ``{"destination": ..., "text": ...}`` to a bridge service that owns
    the messaging-transport connection.

Contract: ``send(destination, text) -> bool``. Sinks report transport trouble
by returning False; they do not raise.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)


class DeliverySink(ABC):

    @abstractmethod
    def send(self, destination: str, text: str) -> bool:
        """Send ``text`` to the named destination. True on success."""


class LogDeliverySink(DeliverySink):

    def __init__(self, keep_last: int = 50):
        self._sent: Deque[Tuple[str, str]] = deque(maxlen=keep_last)
        self._lock = threading.Lock()

    def send(self, destination: str, text: str) -> bool:
        logger.info("Delivery to %r (%d chars):\n%s", destination, len(text), text)
        with self._lock:
            self._sent.append((destination, text))
        return True

    @property
    def sent(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._sent)


class WebhookDeliverySink(DeliverySink):

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 15,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        if not url:
            raise ValueError("WebhookDeliverySink requires a URL")
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._session = session or requests.Session()

    def send(self, destination: str, text: str) -> bool:
        try:
            resp = self._session.post(
                self.url,
                json={"destination": destination, "text": text},
                headers=self.headers,
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            body = e.response.text[:500] if e.response is not None else ""
            logger.error("Delivery to %r failed: HTTP %s: %s", destination, status, body)
            return False
        except requests.exceptions.RequestException as e:
            logger.error("Delivery to %r failed: %s", destination, e)
            return False

        logger.info("Delivered %d chars to %r via webhook", len(text), destination)
        return True
