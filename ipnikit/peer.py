"""Peer identities, Ed25519 keys and peer address information."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .multiformats import (
    IDENTITY,
    P_P2P,
    SHA2_256,
    Cid,
    Component,
    Multiaddr,
    MultiformatError,
    b58decode,
    b58encode,
    decode_varint,
    encode_varint,
    multihash_decode,
    multihash_encode,
    multihash_sum,
    protocol_with_code,
)

_KEY_TYPE_ED25519 = 1
_LIBP2P_KEY_CODEC = 0x72
_MAX_INLINE_KEY_LENGTH = 42


@dataclass(frozen=True)
class PublicKey:
    """An Ed25519 public key."""

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != 32:
            raise ValueError("ed25519 public key must be 32 bytes")

    def verify(self, data: bytes, signature: bytes) -> bool:
        """Return True if signature is valid for data."""
        try:
            Ed25519PublicKey.from_public_bytes(self.raw).verify(bytes(signature), bytes(data))
        except InvalidSignature:
            return False
        return True

    def marshal(self) -> bytes:
        """Serialize the key in the libp2p protobuf key format."""
        return (
            b"\x08" + encode_varint(_KEY_TYPE_ED25519)
            + b"\x12" + encode_varint(len(self.raw)) + self.raw
        )

    @classmethod
    def unmarshal(cls, data: bytes) -> "PublicKey":
        """Parse a key in the libp2p protobuf key format."""
        data = bytes(data)
        key_type: Optional[int] = None
        raw: Optional[bytes] = None
        pos = 0
        try:
            while pos < len(data):
                tag, n = decode_varint(data[pos:])
                pos += n
                number, wire = tag >> 3, tag & 7
                if wire == 0:
                    value, n = decode_varint(data[pos:])
                    pos += n
                    if number == 1:
                        key_type = value
                elif wire == 2:
                    length, n = decode_varint(data[pos:])
                    pos += n
                    if pos + length > len(data):
                        raise ValueError("public key data truncated")
                    if number == 2:
                        raw = data[pos:pos + length]
                    pos += length
                else:
                    raise ValueError(f"unexpected wire type {wire}")
        except MultiformatError as exc:
            raise ValueError(f"malformed public key: {exc}") from None
        if key_type != _KEY_TYPE_ED25519:
            raise ValueError(f"unsupported key type {key_type}")
        if raw is None:
            raise ValueError("public key data missing")
        return cls(raw)


class PrivateKey:
    """An Ed25519 private key."""

    __slots__ = ("_key",)

    def __init__(self, key: Ed25519PrivateKey) -> None:
        self._key = key

    @classmethod
    def generate(cls) -> "PrivateKey":
        return cls(Ed25519PrivateKey.generate())

    def sign(self, data: bytes) -> bytes:
        return self._key.sign(bytes(data))

    def public_key(self) -> PublicKey:
        return PublicKey(self._key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))


@dataclass(frozen=True)
class PeerID:
    """A peer identity: a multihash of the peer's public key."""

    raw: bytes

    @classmethod
    def from_public_key(cls, key: PublicKey) -> "PeerID":
        marshalled = key.marshal()
        if len(marshalled) <= _MAX_INLINE_KEY_LENGTH:
            return cls(multihash_encode(marshalled, IDENTITY))
        return cls(multihash_sum(marshalled, SHA2_256))

    @classmethod
    def from_bytes(cls, data: bytes) -> "PeerID":
        data = bytes(data)
        multihash_decode(data)
        return cls(data)

    @classmethod
    def decode(cls, text: str) -> "PeerID":
        """Parse a peer ID from base58 or from a libp2p-key CID."""
        if text.startswith(("Qm", "1")):
            return cls.from_bytes(b58decode(text))
        cid = Cid.parse(text)
        if cid.codec != _LIBP2P_KEY_CODEC:
            raise MultiformatError(f"cid codec {cid.codec:#x} is not libp2p-key")
        return cls.from_bytes(cid.multihash)

    def to_bytes(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return b58encode(self.raw)


@dataclass
class AddrInfo:
    """A peer ID with the addresses the peer can be reached at."""

    id: PeerID
    addrs: list[Multiaddr] = field(default_factory=list)

    def to_json(self) -> dict:
        return {"ID": str(self.id), "Addrs": [str(a) for a in self.addrs]}

    @classmethod
    def from_json(cls, data: dict) -> "AddrInfo":
        return cls(PeerID.decode(data["ID"]), [Multiaddr(a) for a in data.get("Addrs") or ()])


def split_addr(addr: Optional[Multiaddr]) -> tuple[Optional[Multiaddr], Optional[PeerID]]:
    """Split a trailing /p2p component off an address."""
    if addr is None:
        return None, None
    comps = addr.components()
    if not comps or comps[-1].protocol.code != P_P2P:
        return addr, None
    pid = PeerID.from_bytes(comps[-1].raw)
    transport = Multiaddr.from_components(comps[:-1]) if len(comps) > 1 else None
    return transport, pid


def addr_infos_from_p2p_addrs(addrs: Iterable[Multiaddr]) -> list[AddrInfo]:
    """Group /p2p addresses by peer, preserving first-seen order."""
    infos: dict[PeerID, AddrInfo] = {}
    for addr in addrs:
        transport, pid = split_addr(addr)
        if pid is None:
            raise ValueError(f"invalid p2p multiaddr: {addr}")
        info = infos.setdefault(pid, AddrInfo(pid))
        if transport is not None:
            info.addrs.append(transport)
    return list(infos.values())


def addr_info_to_p2p_addrs(info: AddrInfo) -> list[Multiaddr]:
    """Return the peer's addresses, each ending in its /p2p component."""
    if info.id is None or not info.id.raw:
        raise ValueError("empty peer ID")
    p2p = Component(protocol_with_code(P_P2P), info.id.to_bytes())
    if not info.addrs:
        return [Multiaddr.from_components([p2p])]
    return [addr.encapsulate(p2p) for addr in info.addrs]