"""HTTP clients for the indexer find API and for double-hashed store lookups."""

from __future__ import annotations

import base64
import binascii
import http
import json
from typing import Optional, Sequence
from urllib.parse import SplitResult, quote, urlsplit, urlunsplit

import requests

from .find_model import (
    EncryptedMultihashResult,
    FindRequest,
    FindResponse,
    ProviderInfo,
    Stats,
    marshal_find_request,
    unmarshal_find_response,
    unmarshal_stats,
)
from .multiformats import b58encode
from .peer import PeerID

FIND_PATH = "multihash"
PROVIDERS_PATH = "providers"
STATS_PATH = "stats"
METADATA_PATH = "metadata"


def _status_text(status: int) -> str:
    try:
        return http.HTTPStatus(status).phrase
    except ValueError:
        return ""


class APIRequestError(Exception):
    """Raised when the server answers a request with an error status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    @classmethod
    def from_response(cls, status: int, body: bytes) -> "APIRequestError":
        """Build an error from a response status and body."""
        text = bytes(body).decode("utf-8", "replace").strip()
        phrase = _status_text(status) or f"status {status}"
        return cls(status, f"{phrase}: {text}" if text else phrase)


def _parse_base_url(base_url: str, keep_path: bool) -> SplitResult:
    parts = urlsplit(base_url)
    if parts.scheme not in ("http", "https"):
        raise ValueError(f"url must have http or https scheme: {base_url}")
    if not keep_path:
        parts = parts._replace(path="")
    return parts._replace(fragment="")


def _join(base: SplitResult, *segments: str) -> str:
    path = base.path.rstrip("/") + "/" + "/".join(quote(s, safe="") for s in segments)
    return urlunsplit(base._replace(path=path))


class _HTTPBase:
    def __init__(
        self, session: Optional[requests.Session], timeout: Optional[float]
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self._timeout = timeout

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        return self._session.request(method, url, timeout=self._timeout, **kwargs)

    def _get_json_ok(self, url: str) -> bytes:
        resp = self._request("GET", url, headers={"Accept": "application/json"})
        if resp.status_code != http.HTTPStatus.OK:
            raise APIRequestError.from_response(resp.status_code, resp.content)
        return resp.content


class Client(_HTTPBase):
    """HTTP client for the indexer find API."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(session, timeout)
        self._base = _parse_base_url(base_url, keep_path=False)
        self.find_url = _join(self._base, FIND_PATH)
        self.providers_url = _join(self._base, PROVIDERS_PATH)
        self.stats_url = _join(self._base, STATS_PATH)

    def find(self, multihash: bytes) -> FindResponse:
        """Look up provider records for a single multihash."""
        url = _join(self._base, FIND_PATH, b58encode(bytes(multihash)))
        return self._send_find("GET", url)

    def find_batch(self, multihashes: Sequence[bytes]) -> FindResponse:
        """Look up provider records for a batch of multihashes."""
        if not multihashes:
            return FindResponse()
        data = marshal_find_request(FindRequest([bytes(m) for m in multihashes]))
        return self._send_find("POST", self.find_url, data)

    def list_providers(self) -> list[ProviderInfo]:
        """Return information about every provider known to the indexer."""
        body = self._get_json_ok(self.providers_url)
        docs = json.loads(body)
        if docs is None:
            return []
        if not isinstance(docs, list):
            raise ValueError("expected a JSON list of providers")
        return [ProviderInfo.from_dict(d) for d in docs]

    def get_provider(self, provider_id: PeerID) -> ProviderInfo:
        """Return information about one provider."""
        body = self._get_json_ok(_join(self._base, PROVIDERS_PATH, str(provider_id)))
        doc = json.loads(body)
        if not isinstance(doc, dict):
            raise ValueError("expected a JSON object")
        return ProviderInfo.from_dict(doc)

    def get_stats(self) -> Stats:
        """Return indexer statistics."""
        return unmarshal_stats(self._get_json_ok(self.stats_url))

    def _send_find(self, method: str, url: str, data: Optional[bytes] = None) -> FindResponse:
        resp = self._request(
            method, url, data=data, headers={"Content-Type": "application/json"}
        )
        if resp.status_code != http.HTTPStatus.OK:
            if resp.status_code == http.HTTPStatus.NOT_FOUND:
                return FindResponse()
            raise APIRequestError(
                resp.status_code,
                f"batch find query failed: {_status_text(resp.status_code)}",
            )
        return unmarshal_find_response(resp.content)


class DHStoreClient(_HTTPBase):
    """HTTP client for encrypted multihash and metadata lookups."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(session, timeout)
        self._base = _parse_base_url(base_url, keep_path=True)

    def find_multihash(self, dhmh: bytes) -> list[EncryptedMultihashResult]:
        """Look up a double-hashed multihash; empty if not found."""
        url = _join(self._base, FIND_PATH, b58encode(bytes(dhmh)))
        body = self._get_or_none(url)
        if body is None:
            return []
        return unmarshal_find_response(body).encrypted_multihash_results

    def find_metadata(self, hvk: bytes) -> Optional[bytes]:
        """Look up encrypted metadata by value-key hash; None if not found."""
        url = _join(self._base, METADATA_PATH, b58encode(bytes(hvk)))
        body = self._get_or_none(url)
        if body is None:
            return None
        doc = json.loads(body)
        if not isinstance(doc, dict):
            raise ValueError("expected a JSON object")
        value = doc.get("EncryptedMetadata")
        if value is None:
            return b""
        if not isinstance(value, str):
            raise ValueError("encrypted metadata must be a base64 string")
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid base64 value: {exc}") from None

    def _get_or_none(self, url: str) -> Optional[bytes]:
        resp = self._request("GET", url, headers={"Accept": "application/json"})
        if resp.status_code == http.HTTPStatus.NOT_FOUND:
            return None
        if resp.status_code != http.HTTPStatus.OK:
            raise APIRequestError.from_response(resp.status_code, resp.content)
        return resp.content