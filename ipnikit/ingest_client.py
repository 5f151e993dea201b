"""HTTP client for the indexer ingest API."""

from __future__ import annotations

import http
from typing import Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

import requests

from .find_client import APIRequestError
from .ingest_model import make_ingest_request, make_register_request
from .peer import PeerID, PrivateKey

REGISTER_PATH = "register"
INDEX_CONTENT_PATH = "ingest/content"


class IngestError(APIRequestError):
    """Raised when the indexer rejects an ingest request."""


class Client:
    """HTTP client for the indexer ingest API."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        parts = urlsplit(base_url)
        if parts.scheme not in ("http", "https"):
            raise ValueError(f"url must have http or https scheme: {base_url}")
        parts = parts._replace(path="", fragment="")
        self.index_content_url = urlunsplit(parts._replace(path="/" + INDEX_CONTENT_PATH))
        self.register_url = urlunsplit(parts._replace(path="/" + REGISTER_PATH))
        self._session = session if session is not None else requests.Session()
        self._timeout = timeout

    def index_content(
        self,
        provider_id: PeerID,
        private_key: PrivateKey,
        multihash: bytes,
        context_id: bytes,
        metadata: bytes,
        addrs: Optional[Sequence[str]],
    ) -> None:
        """Index a single multihash directly on the indexer."""
        data = make_ingest_request(
            provider_id, private_key, multihash, context_id, metadata, addrs
        )
        self._post(self.index_content_url, data)

    def register(
        self, provider_id: PeerID, private_key: PrivateKey, addrs: Optional[Sequence[str]]
    ) -> None:
        """Register a provider and its addresses directly with the indexer."""
        data = make_register_request(provider_id, private_key, addrs)
        self._post(self.register_url, data)

    def _post(self, url: str, data: bytes) -> None:
        resp = self._session.post(
            url,
            data=data,
            headers={"Content-Type": "application/octet-stream"},
            timeout=self._timeout,
        )
        if resp.status_code != http.HTTPStatus.OK:
            err = APIRequestError.from_response(resp.status_code, resp.content)
            raise IngestError(err.status, err.message)