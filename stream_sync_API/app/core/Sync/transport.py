# stream_sync_API/app/core/Sync/transport.py
from abc import ABC, abstractmethod
from typing import Any, Dict, List
import json
import logging

import requests

from .models import SyncDocument, PullResult
from .exceptions import TransportError

logger = logging.getLogger(__name__)


class SyncTransport(ABC):
    """Abstract base class for sync transport layers."""

    @abstractmethod
    def pull(self, owner: str, since: int) -> PullResult:
        """
        Fetches every document of `owner` updated strictly after `since`, tombstones included.

        Raises:
            TransportError: If fetching fails.
        """
        pass

    @abstractmethod
    def push(self, owner: str, documents: List[SyncDocument]) -> int:
        """
        Sends whole documents to the remote store.

        Returns:
            The server time reported for the accepted push.

        Raises:
            TransportError: If sending fails or is not acknowledged.
        """
        pass


class HttpApiTransport(SyncTransport):
    """Talks to the `/sync/pull` and `/sync/push` endpoints over HTTP/JSON."""

    def __init__(self, base_url: str, timeout: float = 15):
        if not base_url:
            raise ValueError("HttpApiTransport needs a base URL")
        if not base_url.endswith('/'):
            base_url += '/'
        self.base_url = base_url
        self.timeout = timeout
        logger.info(f"HTTP Transport initialized for URL: {self.base_url}")

    def _get_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = requests.post(url, json=payload, headers=self._get_headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"HTTP request to {url} failed: {e}")
            raise TransportError(f"Request to {path} failed: {e}") from e

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            data = None

        if not response.ok:
            error_code = data.get("error") if isinstance(data, dict) else None
            message = data.get("message") if isinstance(data, dict) else None
            logger.error(f"{path} returned HTTP {response.status_code}: {error_code or ''} {message or ''}".strip())
            raise TransportError(message or f"{path} failed", status_code=response.status_code, error_code=error_code)

        if not isinstance(data, dict):
            raise TransportError(f"Invalid JSON response received from {path}", status_code=response.status_code)
        return data

    def pull(self, owner: str, since: int) -> PullResult:
        logger.debug(f"Pulling documents for owner since {since}")
        data = self._post("sync/pull", {"userId": owner, "since": since})

        items = data.get("items")
        server_time = data.get("timestamp")
        if not isinstance(items, list) or isinstance(server_time, bool) or not isinstance(server_time, int):
            raise TransportError("Invalid response format from pull: expected items list and integer timestamp")

        documents = []
        for item in items:
            try:
                documents.append(SyncDocument.from_dict(item))
            except (ValueError, AttributeError) as e:
                # A partially understood snapshot must not advance the watermark.
                raise TransportError(f"Malformed document in pull response: {e}") from e

        logger.info(f"Pulled {len(documents)} remote documents.")
        return PullResult(documents=documents, server_time=server_time)

    def push(self, owner: str, documents: List[SyncDocument]) -> int:
        payload = {"userId": owner, "items": [doc.to_dict() for doc in documents]}
        logger.debug(f"Pushing {len(documents)} documents")
        data = self._post("sync/push", payload)

        if data.get("success") is not True:
            raise TransportError(f"Server did not acknowledge push: {data!r}")
        server_time = data.get("timestamp")
        if isinstance(server_time, bool) or not isinstance(server_time, int):
            raise TransportError("Invalid response format from push: missing timestamp")

        logger.info(f"Successfully pushed {len(documents)} documents.")
        return server_time
