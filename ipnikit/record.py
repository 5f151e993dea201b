"""Signed envelopes carrying typed records, and peer records."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Iterator, Optional, Protocol as TypingProtocol

from .multiformats import Multiaddr, MultiformatError, decode_varint, encode_varint
from .peer import PeerID, PrivateKey, PublicKey


class EnvelopeError(ValueError):
    """Raised when an envelope cannot be sealed, parsed or verified."""


class Record(TypingProtocol):
    def domain(self) -> str: ...
    def codec(self) -> bytes: ...
    def marshal_record(self) -> bytes: ...
    def unmarshal_record(self, data: bytes) -> None: ...


def _pb_bytes(number: int, value: bytes) -> bytes:
    return encode_varint(number << 3 | 2) + encode_varint(len(value)) + value


def _pb_varint(number: int, value: int) -> bytes:
    return encode_varint(number << 3) + encode_varint(value)


def _pb_fields(data: bytes) -> Iterator[tuple[int, object]]:
    pos = 0
    try:
        while pos < len(data):
            tag, n = decode_varint(data[pos:])
            pos += n
            number, wire = tag >> 3, tag & 7
            if wire == 0:
                value, n = decode_varint(data[pos:])
                pos += n
                yield number, value
            elif wire == 2:
                length, n = decode_varint(data[pos:])
                pos += n
                if pos + length > len(data):
                    raise EnvelopeError("protobuf field truncated")
                yield number, data[pos:pos + length]
                pos += length
            else:
                raise EnvelopeError(f"unsupported protobuf wire type {wire}")
    except MultiformatError as exc:
        raise EnvelopeError(f"malformed protobuf: {exc}") from None


def _signed_data(domain: str, payload_type: bytes, payload: bytes) -> bytes:
    return b"".join(encode_varint(len(p)) + p for p in (domain.encode(), payload_type, payload))


@dataclass(frozen=True)
class Envelope:
    """A payload signed by a public key within a domain."""

    public_key: PublicKey
    payload_type: bytes
    payload: bytes
    signature: bytes

    def marshal(self) -> bytes:
        return (
            _pb_bytes(1, self.public_key.marshal())
            + _pb_bytes(2, self.payload_type)
            + _pb_bytes(3, self.payload)
            + _pb_bytes(5, self.signature)
        )

    @classmethod
    def unmarshal(cls, data: bytes) -> "Envelope":
        values: dict[int, bytes] = {}
        for number, value in _pb_fields(bytes(data)):
            if number in (1, 2, 3, 5) and isinstance(value, bytes):
                values[number] = value
        if 1 not in values:
            raise EnvelopeError("envelope has no public key")
        try:
            key = PublicKey.unmarshal(values[1])
        except ValueError as exc:
            raise EnvelopeError(str(exc)) from None
        return cls(key, values.get(2, b""), values.get(3, b""), values.get(5, b""))

    def _verify(self, domain: str) -> None:
        data = _signed_data(domain, self.payload_type, self.payload)
        if not self.public_key.verify(data, self.signature):
            raise EnvelopeError("invalid signature or incorrect domain")


_REGISTRY: dict[bytes, type] = {}


def register_type(record_class: type) -> None:
    """Register a record class so envelopes of its codec can be consumed."""
    _REGISTRY[bytes(record_class().codec())] = record_class


def seal(record: Record, private_key: PrivateKey) -> Envelope:
    """Sign a record and wrap it in an envelope."""
    payload = record.marshal_record()
    payload_type = bytes(record.codec())
    domain = record.domain()
    if not domain:
        raise EnvelopeError("envelope domain must not be empty")
    if not payload_type:
        raise EnvelopeError("payload type must not be empty")
    signature = private_key.sign(_signed_data(domain, payload_type, payload))
    return Envelope(private_key.public_key(), payload_type, payload, signature)


def consume_envelope(data: bytes, domain: str) -> tuple[Envelope, Record]:
    """Parse and verify an envelope, returning it and its decoded record."""
    envelope = Envelope.unmarshal(data)
    envelope._verify(domain)
    try:
        record_class = _REGISTRY[envelope.payload_type]
    except KeyError:
        raise EnvelopeError("payload type is not registered") from None
    record = record_class()
    try:
        record.unmarshal_record(envelope.payload)
    except (ValueError, KeyError, TypeError) as exc:
        raise EnvelopeError(f"failed to unmarshal record: {exc}") from None
    return envelope, record


def consume_typed_envelope(data: bytes, record: Record) -> Envelope:
    """Parse and verify an envelope, decoding its payload into record."""
    envelope = Envelope.unmarshal(data)
    envelope._verify(record.domain())
    try:
        record.unmarshal_record(envelope.payload)
    except (ValueError, KeyError, TypeError) as exc:
        raise EnvelopeError(f"failed to unmarshal record: {exc}") from None
    return envelope


_seq_lock = threading.Lock()
_last_seq = 0


def timestamp_seq() -> int:
    """Return a nanosecond timestamp that strictly increases between calls."""
    global _last_seq
    with _seq_lock:
        _last_seq = max(time.time_ns(), _last_seq + 1)
        return _last_seq


PEER_RECORD_DOMAIN = "libp2p-routing-state"
PEER_RECORD_CODEC = b"\x03\x01"


@dataclass
class PeerRecord:
    """A signed statement of a peer's addresses."""

    peer_id: Optional[PeerID] = None
    addrs: list[Multiaddr] = field(default_factory=list)
    seq: int = field(default_factory=timestamp_seq)

    def domain(self) -> str:
        return PEER_RECORD_DOMAIN

    def codec(self) -> bytes:
        return PEER_RECORD_CODEC

    def marshal_record(self) -> bytes:
        out = _pb_bytes(1, self.peer_id.to_bytes() if self.peer_id else b"")
        out += _pb_varint(2, self.seq)
        for addr in self.addrs:
            out += _pb_bytes(3, _pb_bytes(1, addr.to_bytes()))
        return out

    def unmarshal_record(self, data: bytes) -> None:
        peer_id = None
        seq = 0
        addrs = []
        for number, value in _pb_fields(bytes(data)):
            if number == 1 and isinstance(value, bytes):
                peer_id = PeerID.from_bytes(value)
            elif number == 2 and isinstance(value, int):
                seq = value
            elif number == 3 and isinstance(value, bytes):
                for sub, raw in _pb_fields(value):
                    if sub == 1 and isinstance(raw, bytes):
                        addrs.append(Multiaddr.from_bytes(raw))
        self.peer_id, self.seq, self.addrs = peer_id, seq, addrs


register_type(PeerRecord)