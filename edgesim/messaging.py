"""Publish channel used for status, traces and live sensor readings."""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import requests

from edgesim.errors import NotConfigured, PublishFailure

logger = logging.getLogger(__name__)


class Publisher(ABC):
    @abstractmethod
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class NullPublisher(Publisher):
    """Drops every message."""

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Dropping message on {topic}")


class MemoryPublisher(Publisher):
    """In-process channel that keeps every message it receives."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: List[Tuple[str, Dict[str, Any]]] = []
        self.closed = False

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise PublishFailure(f"publisher closed, cannot publish on {topic}")
        with self._lock:
            self._messages.append((topic, payload))

    def messages(self, topic: Optional[str] = None) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            if topic is None:
                return list(self._messages)
            return [m for m in self._messages if m[0] == topic]

    def payloads(self, topic: str) -> List[Dict[str, Any]]:
        return [payload for _, payload in self.messages(topic)]

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()

    def close(self) -> None:
        self.closed = True


class HttpPublisher(Publisher):
    """POSTs each message as JSON to ``{base_url}/{topic}``."""

    def __init__(self, base_url: Optional[str], timeout_s: float = 5.0, token: Optional[str] = None) -> None:
        if not base_url:
            raise NotConfigured("HttpPublisher requires a base URL")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._session: Optional[requests.Session] = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self._session is None:
            raise PublishFailure(f"publisher closed, cannot publish on {topic}")
        url = f"{self.base_url}/{topic.lstrip('/')}"
        try:
            resp = self._session.post(url, data=json.dumps(payload, default=str), timeout=self.timeout_s)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise PublishFailure(f"publish to {url} failed: {e}") from e

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
            logger.info(f"Closed HTTP publisher for {self.base_url}")


def build_publisher(url: Optional[str]) -> Publisher:
    if url:
        return HttpPublisher(url)
    return NullPublisher()
