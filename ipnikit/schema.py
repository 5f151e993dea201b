"""Advertisements and entry chunks: the records an indexer ingests.

An advertisement tells an indexer that a provider's content changed. The
``is_rm`` flag and the ``entries`` link decide what the indexer does:

    is_rm   entries      action
    false   NO_ENTRIES   update metadata
    false   data         update metadata and index entries
    true    NO_ENTRIES   delete content with the context ID
    true    data         delete specific multihash indexes

Deleting entries still needs a context ID, because a multihash can map to
several context ID and metadata values. When removing content the metadata
is ignored. Every advertisement updates the provider's addresses.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .multiformats import (
    DAG_JSON,
    RAW,
    SHA2_256,
    Cid,
    MultiformatError,
    multihash_encode,
    multihash_sum,
)
from .peer import PeerID, PrivateKey
from .record import EnvelopeError, consume_typed_envelope, seal

log = logging.getLogger(__name__)

MAX_CONTEXT_ID_LEN = 64
MAX_METADATA_LEN = 1024

AD_SIGNATURE_CODEC = b"/indexer/ingest/adSignature"
AD_SIGNATURE_DOMAIN = "indexer"
EP_SIGNATURE_CODEC = b"/indexer/ingest/extendedProviderSignature"

# Size of a current-format signature payload; other sizes are the old format.
_SIG_SIZE = 34

NO_ENTRIES = Cid(1, RAW, multihash_sum(b"", SHA2_256, 16))
"""Marks an advertisement that carries no entries."""


class SchemaError(ValueError):
    """Raised when a node does not fit the schema or a signature is bad."""


# DAG-JSON codec.


def _b64_raw(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode().rstrip("=")


def _to_json(value: Any) -> Any:
    if isinstance(value, Cid):
        return {"/": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"/": {"bytes": _b64_raw(value)}}
    if isinstance(value, dict):
        out = {}
        for key in sorted(value, key=lambda k: k.encode() if isinstance(k, str) else b""):
            if not isinstance(key, str):
                raise SchemaError("map keys must be strings")
            out[key] = _to_json(value[key])
        return out
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise SchemaError(f"cannot encode {type(value).__name__} as dag-json")


def encode_dag_json(node: Any) -> bytes:
    """Encode a node (dicts, lists, scalars, bytes and Cids) as DAG-JSON."""
    try:
        return json.dumps(
            _to_json(node), separators=(",", ":"), ensure_ascii=False, allow_nan=False
        ).encode()
    except ValueError as exc:
        if isinstance(exc, SchemaError):
            raise
        raise SchemaError(str(exc)) from None


def _object_hook(obj: dict) -> Any:
    if list(obj) == ["/"]:
        inner = obj["/"]
        if isinstance(inner, str):
            return Cid.parse(inner)
        if isinstance(inner, dict) and list(inner) == ["bytes"] and isinstance(inner["bytes"], str):
            text = inner["bytes"]
            try:
                return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)
            except binascii.Error as exc:
                raise SchemaError(f"invalid bytes value: {exc}") from None
    return obj


def decode_dag_json(data: bytes) -> Any:
    """Decode DAG-JSON into dicts, lists, scalars, bytes and Cids."""
    try:
        return json.loads(bytes(data), object_hook=_object_hook)
    except (ValueError, MultiformatError) as exc:
        if isinstance(exc, SchemaError):
            raise
        raise SchemaError(f"invalid dag-json: {exc}") from None


def link_for(node: Any) -> Cid:
    """Return the CIDv1 (dag-json, sha2-256) that links to node."""
    if hasattr(node, "to_node"):
        node = node.to_node()
    return Cid(1, DAG_JSON, multihash_sum(encode_dag_json(node), SHA2_256))


# Schema types.


@dataclass
class Provider:
    """An extended provider listed in an advertisement."""

    id: str = ""
    addresses: list[str] = field(default_factory=list)
    metadata: bytes = b""
    signature: bytes = b""


@dataclass
class ExtendedProvider:
    """Extended providers of an advertisement and whether they override."""

    providers: list[Provider] = field(default_factory=list)
    override: bool = False


@dataclass
class EntryChunk:
    """A chunk of multihash entries, linked to the next chunk."""

    entries: list[bytes] = field(default_factory=list)
    next: Optional[Cid] = None

    def to_node(self) -> dict:
        """Return the node representation of this chunk."""
        node: dict[str, Any] = {"Entries": [bytes(e) for e in self.entries]}
        if self.next is not None:
            node["Next"] = self.next
        return node


class _Checker:
    def __init__(self, node: Any, kind: str) -> None:
        if not isinstance(node, dict):
            raise SchemaError(f"{kind} node must be a map")
        self.node = node

    def get(self, name: str, check: Callable[[Any], Any], optional: bool = False) -> Any:
        value = self.node.get(name)
        if value is None:
            if optional:
                return None
            raise SchemaError(f"missing required field {name}")
        return check(value)

    def only(self, allowed: set[str]) -> None:
        unknown = set(self.node) - allowed
        if unknown:
            raise SchemaError(f"unknown fields: {', '.join(sorted(unknown))}")


def _as(kind: type, name: str) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if kind is int and isinstance(value, bool) or not isinstance(value, kind):
            raise SchemaError(f"expected {name}, got {type(value).__name__}")
        return value if kind is not bytes else bytes(value)
    return check


_str = _as(str, "string")
_bytes = _as(bytes, "bytes")
_bool = _as(bool, "bool")
_link = _as(Cid, "link")


def _list_of(check: Callable[[Any], Any]) -> Callable[[Any], list]:
    def inner(value: Any) -> list:
        if not isinstance(value, list):
            raise SchemaError(f"expected list, got {type(value).__name__}")
        return [check(v) for v in value]
    return inner


def _provider_from_node(node: Any) -> Provider:
    c = _Checker(node, "Provider")
    c.only({"ID", "Addresses", "Metadata", "Signature"})
    return Provider(
        id=c.get("ID", _str),
        addresses=c.get("Addresses", _list_of(_str)),
        metadata=c.get("Metadata", _bytes, optional=True) or b"",
        signature=c.get("Signature", _bytes, optional=True) or b"",
    )


def _extended_from_node(node: Any) -> ExtendedProvider:
    c = _Checker(node, "ExtendedProvider")
    c.only({"Providers", "Override"})
    return ExtendedProvider(
        providers=c.get("Providers", _list_of(_provider_from_node)),
        override=c.get("Override", _bool),
    )


# Signature records.


@dataclass
class _AdSignatureRecord:
    adv_id: bytes = b""

    def domain(self) -> str:
        return AD_SIGNATURE_DOMAIN

    def codec(self) -> bytes:
        return AD_SIGNATURE_CODEC

    def marshal_record(self) -> bytes:
        return self.adv_id

    def unmarshal_record(self, data: bytes) -> None:
        self.adv_id = bytes(data)


@dataclass
class _EpSignatureRecord:
    payload: bytes = b""

    def domain(self) -> str:
        return AD_SIGNATURE_DOMAIN

    def codec(self) -> bytes:
        return EP_SIGNATURE_CODEC

    def marshal_record(self) -> bytes:
        return self.payload

    def unmarshal_record(self, data: bytes) -> None:
        self.payload = bytes(data)


_MISSING_MAIN_PROVIDER = (
    "extended providers must contain provider from the encapsulating advertisement"
)


@dataclass
class Advertisement:
    """An announcement of changes to a provider's content."""

    previous_id: Optional[Cid] = None
    provider: str = ""
    addresses: list[str] = field(default_factory=list)
    signature: bytes = b""
    entries: Optional[Cid] = None
    context_id: bytes = b""
    metadata: bytes = b""
    is_rm: bool = False
    extended_provider: Optional[ExtendedProvider] = None

    def to_node(self) -> dict:
        """Return the node representation of this advertisement."""
        if self.entries is None:
            raise SchemaError("advertisement has no entries link")
        node: dict[str, Any] = {
            "Provider": self.provider,
            "Addresses": list(self.addresses),
            "Signature": bytes(self.signature),
            "Entries": self.entries,
            "ContextID": bytes(self.context_id),
            "Metadata": bytes(self.metadata),
            "IsRm": self.is_rm,
        }
        if self.previous_id is not None:
            node["PreviousID"] = self.previous_id
        if self.extended_provider is not None:
            node["ExtendedProvider"] = {
                "Providers": [
                    {
                        "ID": p.id,
                        "Addresses": list(p.addresses),
                        "Metadata": bytes(p.metadata),
                        "Signature": bytes(p.signature),
                    }
                    for p in self.extended_provider.providers
                ],
                "Override": self.extended_provider.override,
            }
        return node

    def validate(self) -> None:
        """Check the context ID and metadata size limits."""
        if len(self.context_id) > MAX_CONTEXT_ID_LEN:
            raise SchemaError("context id too long")
        if len(self.metadata) > MAX_METADATA_LEN:
            raise SchemaError("metadata too long")

    def _prefix(self) -> bytes:
        if self.entries is None:
            raise SchemaError("advertisement has no entries link")
        previous = self.previous_id.to_bytes() if self.previous_id is not None else b""
        return previous + self.entries.to_bytes()

    def _signature_payload(self, old_format: bool) -> bytes:
        buf = self._prefix() + self.provider.encode()
        buf += b"".join(a.encode() for a in self.addresses)
        buf += bytes(self.metadata) + (b"\x01" if self.is_rm else b"\x00")
        if old_format:
            return multihash_encode(buf, SHA2_256)
        return multihash_sum(buf, SHA2_256)

    def _extended_payload(self, p: Provider) -> bytes:
        if self.is_rm:
            raise SchemaError("rm ads are not supported for extended provider signatures")
        override = self.extended_provider is not None and self.extended_provider.override
        buf = (
            self._prefix()
            + self.provider.encode()
            + bytes(self.context_id)
            + p.id.encode()
            + b"".join(a.encode() for a in p.addresses)
            + bytes(p.metadata)
            + (b"\x01" if override else b"\x00")
        )
        return multihash_sum(buf, SHA2_256)

    def _sign_ad(self, key: PrivateKey) -> None:
        envelope = seal(_AdSignatureRecord(self._signature_payload(False)), key)
        self.signature = envelope.marshal()

    def sign(self, key: PrivateKey) -> None:
        """Sign the advertisement; fails if it has extended providers."""
        if self.extended_provider is not None:
            raise SchemaError("the ad can not be signed because it has extended providers")
        self._sign_ad(key)

    def sign_with_extended_providers(
        self, key: PrivateKey, key_fetcher: Callable[[str], PrivateKey]
    ) -> None:
        """Sign by the main provider and by every extended provider."""
        self._sign_ad(key)
        if self.extended_provider is None:
            return
        seen_main = False
        for p in self.extended_provider.providers:
            if p.id == self.provider:
                seen_main = True
            payload = self._extended_payload(p)
            priv = key if p.id == self.provider else key_fetcher(p.id)
            p.signature = seal(_EpSignatureRecord(payload), priv).marshal()
        if not seen_main and self.extended_provider.providers:
            raise SchemaError(_MISSING_MAIN_PROVIDER)

    def verify_signature(self) -> PeerID:
        """Verify all signatures and return the peer ID of the main signer.

        The signer may differ from the provider; callers decide whether the
        signer is allowed to sign for the provider.
        """
        rec = _AdSignatureRecord()
        envelope = consume_typed_envelope(self.signature, rec)
        old_format = len(rec.adv_id) != _SIG_SIZE
        if self._signature_payload(old_format) != rec.adv_id:
            raise SchemaError("invalid signature")
        signer_id = PeerID.from_public_key(envelope.public_key)
        if old_format:
            log.warning("advertisement has deprecated signature format, signer %s", signer_id)

        if self.extended_provider is not None:
            seen_main = False
            for p in self.extended_provider.providers:
                ep_rec = _EpSignatureRecord()
                consume_typed_envelope(p.signature, ep_rec)
                if self._extended_payload(p) != ep_rec.payload:
                    raise SchemaError("invalid signature")
                if p.id == self.provider:
                    seen_main = True
            if not seen_main and self.extended_provider.providers:
                raise SchemaError(_MISSING_MAIN_PROVIDER)
        return signer_id


def _convert(kind: str, build: Callable[[], Any]) -> Any:
    try:
        return build()
    except (SchemaError, EnvelopeError, MultiformatError, TypeError) as exc:
        raise SchemaError(f"faild to convert node prototype: {exc}") from None


def unwrap_advertisement(node: Any) -> Advertisement:
    """Build an Advertisement from its node representation."""
    def build() -> Advertisement:
        c = _Checker(node, "Advertisement")
        c.only({"PreviousID", "Provider", "Addresses", "Signature", "Entries",
                "ContextID", "Metadata", "IsRm", "ExtendedProvider"})
        return Advertisement(
            previous_id=c.get("PreviousID", _link, optional=True),
            provider=c.get("Provider", _str),
            addresses=c.get("Addresses", _list_of(_str)),
            signature=c.get("Signature", _bytes),
            entries=c.get("Entries", _link),
            context_id=c.get("ContextID", _bytes),
            metadata=c.get("Metadata", _bytes),
            is_rm=c.get("IsRm", _bool),
            extended_provider=c.get("ExtendedProvider", _extended_from_node, optional=True),
        )
    return _convert("Advertisement", build)


def unwrap_entry_chunk(node: Any) -> EntryChunk:
    """Build an EntryChunk from its node representation."""
    def build() -> EntryChunk:
        c = _Checker(node, "EntryChunk")
        c.only({"Entries", "Next"})
        return EntryChunk(
            entries=c.get("Entries", _list_of(_bytes)),
            next=c.get("Next", _link, optional=True),
        )
    return _convert("EntryChunk", build)