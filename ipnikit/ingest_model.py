"""Signed ingest and register requests sent directly to an indexer."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .multiformats import Multiaddr, MultiformatError
from .peer import PeerID, PrivateKey
from .record import (
    PEER_RECORD_DOMAIN,
    EnvelopeError,
    PeerRecord,
    Record,
    consume_envelope,
    register_type,
    seal,
    timestamp_seq,
)

INGEST_REQUEST_ENVELOPE_DOMAIN = "indexer-ingest-request-record"
INGEST_REQUEST_ENVELOPE_PAYLOAD_TYPE = b"indexer-ingest-request"


def _decode_b64(value: object) -> bytes:
    if value is None:
        return b""
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 value: {exc}") from None


@dataclass
class IngestRequest:
    """A request to index a single multihash."""

    multihash: bytes = b""
    provider_id: Optional[PeerID] = None
    context_id: bytes = b""
    metadata: bytes = b""
    addrs: list[str] = field(default_factory=list)
    seq: int = 0

    def domain(self) -> str:
        return INGEST_REQUEST_ENVELOPE_DOMAIN

    def codec(self) -> bytes:
        return INGEST_REQUEST_ENVELOPE_PAYLOAD_TYPE

    def marshal_record(self) -> bytes:
        doc = {
            "Multihash": base64.b64encode(bytes(self.multihash)).decode(),
            "ProviderID": str(self.provider_id) if self.provider_id else "",
            "ContextID": base64.b64encode(bytes(self.context_id)).decode(),
            "Metadata": base64.b64encode(bytes(self.metadata)).decode(),
            "Addrs": list(self.addrs),
            "Seq": self.seq,
        }
        return json.dumps(doc, separators=(",", ":")).encode()

    def unmarshal_record(self, data: bytes) -> None:
        doc = json.loads(bytes(data))
        if not isinstance(doc, dict):
            raise ValueError("ingest request must be a JSON object")
        provider = doc.get("ProviderID") or ""
        seq = doc.get("Seq") or 0
        if not isinstance(seq, int) or seq < 0:
            raise ValueError("invalid sequence number")
        self.multihash = _decode_b64(doc.get("Multihash"))
        self.provider_id = PeerID.decode(provider) if provider else None
        self.context_id = _decode_b64(doc.get("ContextID"))
        self.metadata = _decode_b64(doc.get("Metadata"))
        self.addrs = [str(a) for a in doc.get("Addrs") or ()]
        self.seq = seq


register_type(IngestRequest)


def _make_request_envelope(record: Record, private_key: PrivateKey) -> bytes:
    try:
        envelope = seal(record, private_key)
    except EnvelopeError as exc:
        raise EnvelopeError(f"could not sign request: {exc}") from exc
    return envelope.marshal()


def make_ingest_request(
    provider_id: PeerID,
    private_key: PrivateKey,
    multihash: bytes,
    context_id: bytes,
    metadata: bytes,
    addrs: Optional[Sequence[str]],
) -> bytes:
    """Create a signed ingest request and return its serialized envelope."""
    request = IngestRequest(
        multihash=bytes(multihash),
        provider_id=provider_id,
        context_id=bytes(context_id),
        metadata=bytes(metadata),
        addrs=list(addrs or ()),
        seq=timestamp_seq(),
    )
    return _make_request_envelope(request, private_key)


def read_ingest_request(data: bytes) -> IngestRequest:
    """Verify a signed ingest request envelope and return the request."""
    try:
        _, record = consume_envelope(data, INGEST_REQUEST_ENVELOPE_DOMAIN)
    except ValueError as exc:
        raise EnvelopeError(f"cannot consume register request envelope: {exc}") from exc
    if not isinstance(record, IngestRequest):
        raise EnvelopeError("unmarshaled request is not an IngestRequest")
    return record


def make_register_request(
    provider_id: PeerID, private_key: PrivateKey, addrs: Optional[Sequence[str]]
) -> bytes:
    """Create a signed peer record announcing the provider's addresses."""
    if not addrs:
        raise ValueError("missing address")
    maddrs = []
    for text in addrs:
        try:
            maddrs.append(Multiaddr(text))
        except MultiformatError as exc:
            raise ValueError(f"bad address: {exc}") from exc
    record = PeerRecord(peer_id=provider_id, addrs=maddrs)
    return _make_request_envelope(record, private_key)


def read_register_request(data: bytes) -> PeerRecord:
    """Verify a register request, checking it was signed by the provider."""
    try:
        envelope, record = consume_envelope(data, PEER_RECORD_DOMAIN)
    except ValueError as exc:
        raise EnvelopeError(f"cannot consume register request envelope: {exc}") from exc
    if not isinstance(record, PeerRecord):
        raise EnvelopeError("unmarshaled register request record is not a PeerRecord")
    signer_id = PeerID.from_public_key(envelope.public_key)
    if signer_id != record.peer_id:
        raise EnvelopeError("request not signed by provider")
    return record