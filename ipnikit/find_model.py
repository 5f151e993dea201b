"""Find requests, responses, provider information and statistics."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from . import maurl  # noqa: F401  registers the httpath protocol
from .multiformats import Cid
from .peer import AddrInfo

_COMPACT = (",", ":")


def _b64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode()


def _unb64(value: Any) -> bytes:
    if value is None:
        return b""
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 value: {exc}") from None


def _loads(data: bytes) -> dict:
    doc = json.loads(bytes(data))
    if not isinstance(doc, dict):
        raise ValueError("expected a JSON object")
    return doc


@dataclass
class FindRequest:
    """A client request for one or more multihashes."""

    multihashes: list[bytes] = field(default_factory=list)


@dataclass
class ProviderResult:
    """One provider of indexed content."""

    context_id: bytes = b""
    metadata: bytes = b""
    provider: Optional[AddrInfo] = None

    def equal(self, other: "ProviderResult") -> bool:
        """Compare results, ignoring the provider addresses."""
        if bytes(self.context_id) != bytes(other.context_id):
            return False
        if bytes(self.metadata) != bytes(other.metadata):
            return False
        mine = self.provider.id if self.provider else None
        theirs = other.provider.id if other.provider else None
        return mine == theirs


@dataclass
class MultihashResult:
    """All provider results for a single multihash."""

    multihash: bytes = b""
    provider_results: list[ProviderResult] = field(default_factory=list)


@dataclass
class EncryptedMultihashResult:
    """All encrypted value keys for a single double-hashed multihash."""

    multihash: bytes = b""
    encrypted_value_keys: list[bytes] = field(default_factory=list)


@dataclass
class FindResponse:
    """The answer to a find query."""

    multihash_results: list[MultihashResult] = field(default_factory=list)
    encrypted_multihash_results: list[EncryptedMultihashResult] = field(default_factory=list)

    def __str__(self) -> str:
        return "".join(
            json.dumps(_multihash_result_to_dict(r), indent=2) + "\n"
            for r in self.multihash_results
        )

    def pretty_print(self) -> None:
        """Print the response for command-line output."""
        print(str(self))


def _provider_result_to_dict(pr: ProviderResult) -> dict:
    doc: dict[str, Any] = {}
    if pr.context_id:
        doc["ContextID"] = _b64(pr.context_id)
    if pr.metadata:
        doc["Metadata"] = _b64(pr.metadata)
    if pr.provider is not None:
        doc["Provider"] = pr.provider.to_json()
    return doc


def _provider_result_from_dict(doc: dict) -> ProviderResult:
    provider = doc.get("Provider")
    return ProviderResult(
        context_id=_unb64(doc.get("ContextID")),
        metadata=_unb64(doc.get("Metadata")),
        provider=AddrInfo.from_json(provider) if provider else None,
    )


def _multihash_result_to_dict(mr: MultihashResult) -> dict:
    return {
        "Multihash": _b64(mr.multihash),
        "ProviderResults": [_provider_result_to_dict(p) for p in mr.provider_results],
    }


def _multihash_result_from_dict(doc: dict) -> MultihashResult:
    return MultihashResult(
        multihash=_unb64(doc.get("Multihash")),
        provider_results=[_provider_result_from_dict(p) for p in doc.get("ProviderResults") or ()],
    )


def _encrypted_to_dict(er: EncryptedMultihashResult) -> dict:
    doc: dict[str, Any] = {}
    if er.multihash:
        doc["Multihash"] = _b64(er.multihash)
    if er.encrypted_value_keys:
        doc["EncryptedValueKeys"] = [_b64(k) for k in er.encrypted_value_keys]
    return doc


def _encrypted_from_dict(doc: dict) -> EncryptedMultihashResult:
    return EncryptedMultihashResult(
        multihash=_unb64(doc.get("Multihash")),
        encrypted_value_keys=[_unb64(k) for k in doc.get("EncryptedValueKeys") or ()],
    )


def marshal_find_request(request: FindRequest) -> bytes:
    """Serialize a find request as JSON."""
    doc = {"Multihashes": [_b64(m) for m in request.multihashes]}
    return json.dumps(doc, separators=_COMPACT).encode()


def unmarshal_find_request(data: bytes) -> FindRequest:
    """Parse a JSON find request."""
    doc = _loads(data)
    return FindRequest([_unb64(m) for m in doc.get("Multihashes") or ()])


def marshal_find_response(response: FindResponse) -> bytes:
    """Serialize a find response as JSON."""
    doc: dict[str, Any] = {}
    if response.multihash_results:
        doc["MultihashResults"] = [_multihash_result_to_dict(r) for r in response.multihash_results]
    if response.encrypted_multihash_results:
        doc["EncryptedMultihashResults"] = [
            _encrypted_to_dict(r) for r in response.encrypted_multihash_results
        ]
    return json.dumps(doc, separators=_COMPACT).encode()


def unmarshal_find_response(data: bytes) -> FindResponse:
    """Parse a JSON find response."""
    doc = _loads(data)
    try:
        return FindResponse(
            multihash_results=[
                _multihash_result_from_dict(r) for r in doc.get("MultihashResults") or ()
            ],
            encrypted_multihash_results=[
                _encrypted_from_dict(r) for r in doc.get("EncryptedMultihashResults") or ()
            ],
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"malformed find response: {exc}") from None


@dataclass
class ContextualExtendedProviders:
    """Extended providers published for a specific context ID."""

    override: bool = False
    context_id: str = ""
    providers: list[AddrInfo] = field(default_factory=list)
    metadatas: list[bytes] = field(default_factory=list)


@dataclass
class ExtendedProviders:
    """Chain-level and context-level extended provider sets."""

    providers: list[AddrInfo] = field(default_factory=list)
    contextual: list[ContextualExtendedProviders] = field(default_factory=list)
    metadatas: list[bytes] = field(default_factory=list)


def _contextual_to_dict(c: ContextualExtendedProviders) -> dict:
    doc: dict[str, Any] = {
        "Override": c.override,
        "ContextID": c.context_id,
        "Providers": [p.to_json() for p in c.providers],
    }
    if c.metadatas:
        doc["Metadatas"] = [_b64(m) for m in c.metadatas]
    return doc


def _contextual_from_dict(doc: dict) -> ContextualExtendedProviders:
    return ContextualExtendedProviders(
        override=bool(doc.get("Override", False)),
        context_id=doc.get("ContextID") or "",
        providers=[AddrInfo.from_json(p) for p in doc.get("Providers") or ()],
        metadatas=[_unb64(m) for m in doc.get("Metadatas") or ()],
    )


def _extended_to_dict(ep: ExtendedProviders) -> dict:
    doc: dict[str, Any] = {}
    if ep.providers:
        doc["Providers"] = [p.to_json() for p in ep.providers]
    if ep.contextual:
        doc["Contextual"] = [_contextual_to_dict(c) for c in ep.contextual]
    if ep.metadatas:
        doc["Metadatas"] = [_b64(m) for m in ep.metadatas]
    return doc


def _extended_from_dict(doc: dict) -> ExtendedProviders:
    return ExtendedProviders(
        providers=[AddrInfo.from_json(p) for p in doc.get("Providers") or ()],
        contextual=[_contextual_from_dict(c) for c in doc.get("Contextual") or ()],
        metadatas=[_unb64(m) for m in doc.get("Metadatas") or ()],
    )


def _cid_to_json(cid: Optional[Cid]) -> Optional[dict]:
    return {"/": str(cid)} if cid is not None else None


def _cid_from_json(value: Any) -> Optional[Cid]:
    if not value:
        return None
    text = value.get("/") if isinstance(value, dict) else None
    if not text:
        return None
    return Cid.parse(text)


@dataclass
class ProviderInfo:
    """What an indexer knows about a provider."""

    addr_info: AddrInfo
    last_advertisement: Optional[Cid] = None
    last_advertisement_time: str = ""
    lag: int = 0
    publisher: Optional[AddrInfo] = None
    extended_providers: Optional[ExtendedProviders] = None
    frozen_at: Optional[Cid] = None
    frozen_at_time: str = ""
    inactive: bool = False
    last_error: str = ""
    last_error_time: str = ""

    def to_dict(self) -> dict:
        doc: dict[str, Any] = {
            "AddrInfo": self.addr_info.to_json(),
            "LastAdvertisement": _cid_to_json(self.last_advertisement),
        }
        if self.last_advertisement_time:
            doc["LastAdvertisementTime"] = self.last_advertisement_time
        if self.lag:
            doc["Lag"] = self.lag
        if self.publisher is not None:
            doc["Publisher"] = self.publisher.to_json()
        if self.extended_providers is not None:
            doc["ExtendedProviders"] = _extended_to_dict(self.extended_providers)
        doc["FrozenAt"] = _cid_to_json(self.frozen_at)
        if self.frozen_at_time:
            doc["FrozenAtTime"] = self.frozen_at_time
        if self.inactive:
            doc["Inactive"] = True
        if self.last_error:
            doc["LastError"] = self.last_error
        if self.last_error_time:
            doc["LastErrorTime"] = self.last_error_time
        return doc

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderInfo":
        try:
            publisher = data.get("Publisher")
            extended = data.get("ExtendedProviders")
            return cls(
                addr_info=AddrInfo.from_json(data["AddrInfo"]),
                last_advertisement=_cid_from_json(data.get("LastAdvertisement")),
                last_advertisement_time=data.get("LastAdvertisementTime") or "",
                lag=int(data.get("Lag") or 0),
                publisher=AddrInfo.from_json(publisher) if publisher else None,
                extended_providers=_extended_from_dict(extended) if extended is not None else None,
                frozen_at=_cid_from_json(data.get("FrozenAt")),
                frozen_at_time=data.get("FrozenAtTime") or "",
                inactive=bool(data.get("Inactive", False)),
                last_error=data.get("LastError") or "",
                last_error_time=data.get("LastErrorTime") or "",
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"malformed provider info: {exc}") from None


@dataclass
class Stats:
    """Indexer statistics."""

    entries_estimate: int = 0
    entries_count: int = 0


def marshal_stats(stats: Stats) -> bytes:
    """Serialize stats as JSON."""
    doc = {"EntriesEstimate": stats.entries_estimate, "EntriesCount": stats.entries_count}
    return json.dumps(doc, separators=_COMPACT).encode()


def unmarshal_stats(data: bytes) -> Stats:
    """Parse JSON stats."""
    doc = _loads(data)
    estimate = doc.get("EntriesEstimate") or 0
    count = doc.get("EntriesCount") or 0
    if not isinstance(estimate, int) or not isinstance(count, int):
        raise ValueError("stats values must be integers")
    return Stats(estimate, count)