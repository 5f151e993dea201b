"""Varints, base58, multihashes, CIDs and multiaddrs."""

from __future__ import annotations

import base64
import hashlib
import ipaddress
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {ch: i for i, ch in enumerate(_B58_ALPHABET)}

# Multihash codes.
IDENTITY = 0x00
SHA1 = 0x11
SHA2_256 = 0x12
SHA2_512 = 0x13
DBL_SHA2_256 = 0x56

# Multicodec content types.
RAW = 0x55
DAG_PB = 0x70
DAG_CBOR = 0x71
DAG_JSON = 0x0129


class MultiformatError(ValueError):
    """Raised when a multiformat value cannot be encoded or decoded."""


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as an unsigned LEB128 varint."""
    if value < 0:
        raise MultiformatError("varint cannot be negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes) -> tuple[int, int]:
    """Decode a varint at the start of data, returning (value, bytes read)."""
    value = 0
    for i, byte in enumerate(data):
        if i >= 9:
            raise MultiformatError("varint too long")
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            if byte == 0 and i > 0:
                raise MultiformatError("varint not minimally encoded")
            return value, i + 1
    raise MultiformatError("varint truncated")


def b58encode(data: bytes) -> str:
    """Encode bytes with the bitcoin base58 alphabet."""
    zeros = len(data) - len(data.lstrip(b"\0"))
    num = int.from_bytes(data, "big")
    chars = []
    while num:
        num, rem = divmod(num, 58)
        chars.append(_B58_ALPHABET[rem])
    return "1" * zeros + "".join(reversed(chars))


def b58decode(text: str) -> bytes:
    """Decode a bitcoin base58 string."""
    if not text:
        raise MultiformatError("empty base58 string")
    num = 0
    for ch in text:
        try:
            num = num * 58 + _B58_INDEX[ch]
        except KeyError:
            raise MultiformatError(f"invalid base58 character {ch!r}") from None
    zeros = len(text) - len(text.lstrip("1"))
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\0" * zeros + body


@dataclass(frozen=True)
class DecodedMultihash:
    """The parts of a multihash."""

    code: int
    length: int
    digest: bytes


def multihash_encode(digest: bytes, code: int) -> bytes:
    """Wrap a digest into a multihash with the given code."""
    return encode_varint(code) + encode_varint(len(digest)) + bytes(digest)


def _read_multihash(data: bytes) -> tuple[DecodedMultihash, int]:
    code, n1 = decode_varint(data)
    length, n2 = decode_varint(data[n1:])
    start = n1 + n2
    end = start + length
    if len(data) < end:
        raise MultiformatError("multihash digest shorter than declared length")
    return DecodedMultihash(code, length, bytes(data[start:end])), end


def multihash_decode(data: bytes) -> DecodedMultihash:
    """Decode a complete multihash."""
    decoded, used = _read_multihash(bytes(data))
    if used != len(data):
        raise MultiformatError("trailing bytes after multihash")
    return decoded


def multihash_from_bytes(data: bytes) -> tuple[int, bytes]:
    """Read a multihash from the start of data, returning (length, multihash)."""
    data = bytes(data)
    _, used = _read_multihash(data)
    return used, data[:used]


_HASHERS: dict[int, Callable[[bytes], bytes]] = {
    SHA1: lambda d: hashlib.sha1(d).digest(),
    SHA2_256: lambda d: hashlib.sha256(d).digest(),
    SHA2_512: lambda d: hashlib.sha512(d).digest(),
    DBL_SHA2_256: lambda d: hashlib.sha256(hashlib.sha256(d).digest()).digest(),
    IDENTITY: lambda d: bytes(d),
}


def multihash_sum(data: bytes, code: int, length: int = -1) -> bytes:
    """Hash data and return the multihash; length -1 keeps the full digest."""
    try:
        hasher = _HASHERS[code]
    except KeyError:
        raise MultiformatError(f"unsupported multihash code {code:#x}") from None
    digest = hasher(bytes(data))
    if length >= 0 and code != IDENTITY:
        if length > len(digest):
            raise MultiformatError("requested length greater than digest length")
        digest = digest[:length]
    return multihash_encode(digest, code)


@dataclass(frozen=True)
class Cid:
    """A content identifier."""

    version: int
    codec: int
    multihash: bytes

    def to_bytes(self) -> bytes:
        if self.version == 0:
            return bytes(self.multihash)
        return encode_varint(self.version) + encode_varint(self.codec) + bytes(self.multihash)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Cid":
        data = bytes(data)
        if len(data) == 34 and data[0] == SHA2_256 and data[1] == 32:
            return cls(0, DAG_PB, data)
        version, n1 = decode_varint(data)
        if version != 1:
            raise MultiformatError(f"unsupported cid version {version}")
        codec, n2 = decode_varint(data[n1:])
        rest = data[n1 + n2:]
        multihash_decode(rest)
        return cls(1, codec, rest)

    @classmethod
    def parse(cls, text: str) -> "Cid":
        if len(text) == 46 and text.startswith("Qm"):
            return cls.from_bytes(b58decode(text))
        if text.startswith("b"):
            body = text[1:].upper()
            body += "=" * (-len(body) % 8)
            try:
                raw = base64.b32decode(body)
            except ValueError as exc:
                raise MultiformatError(f"invalid base32 cid: {exc}") from None
            return cls.from_bytes(raw)
        if text.startswith("z"):
            return cls.from_bytes(b58decode(text[1:]))
        raise MultiformatError(f"unsupported cid encoding: {text!r}")

    def __str__(self) -> str:
        if self.version == 0:
            return b58encode(self.multihash)
        return "b" + base64.b32encode(self.to_bytes()).decode().lower().rstrip("=")


# Multiaddr protocol registry.

LENGTH_PREFIXED = -1


@dataclass(frozen=True)
class Protocol:
    """A multiaddr protocol description.

    size is 0 for no value, a positive number of bits for fixed-size values
    and LENGTH_PREFIXED for variable-size values.
    """

    name: str
    code: int
    size: int
    path: bool = False
    to_bytes: Optional[Callable[[str], bytes]] = None
    to_string: Optional[Callable[[bytes], str]] = None
    validate: Optional[Callable[[bytes], None]] = None


_BY_NAME: dict[str, Protocol] = {}
_BY_CODE: dict[int, Protocol] = {}


def add_protocol(protocol: Protocol) -> None:
    """Register a protocol; names and codes must be unique."""
    if protocol.name in _BY_NAME:
        raise MultiformatError(f"protocol by the name {protocol.name!r} already exists")
    if protocol.code in _BY_CODE:
        raise MultiformatError(f"protocol code {protocol.code} already taken")
    _BY_NAME[protocol.name] = protocol
    _BY_CODE[protocol.code] = protocol


def protocol_with_name(name: str) -> Protocol:
    try:
        return _BY_NAME[name]
    except KeyError:
        raise MultiformatError(f"no protocol with name {name!r}") from None


def protocol_with_code(code: int) -> Protocol:
    try:
        return _BY_CODE[code]
    except KeyError:
        raise MultiformatError(f"no protocol with code {code}") from None


def _ip4_stb(s: str) -> bytes:
    try:
        return ipaddress.IPv4Address(s).packed
    except ValueError as exc:
        raise MultiformatError(str(exc)) from None


def _ip6_stb(s: str) -> bytes:
    try:
        return ipaddress.IPv6Address(s).packed
    except ValueError as exc:
        raise MultiformatError(str(exc)) from None


def _port_stb(s: str) -> bytes:
    try:
        port = int(s)
    except ValueError:
        raise MultiformatError(f"invalid port {s!r}") from None
    if not 0 <= port <= 0xFFFF:
        raise MultiformatError(f"port {port} out of range")
    return port.to_bytes(2, "big")


def _cidr_stb(s: str) -> bytes:
    try:
        value = int(s)
    except ValueError:
        raise MultiformatError(f"invalid cidr {s!r}") from None
    if not 0 <= value <= 255:
        raise MultiformatError(f"cidr {value} out of range")
    return bytes([value])


def _no_slash(b: bytes) -> None:
    if b"/" in b:
        raise MultiformatError(f"value {b.decode(errors='replace')!r} contains a slash")


def _non_empty_no_slash(b: bytes) -> None:
    if not b:
        raise MultiformatError("empty value")
    _no_slash(b)


def _p2p_stb(s: str) -> bytes:
    raw = b58decode(s)
    _p2p_validate(raw)
    return raw


def _p2p_validate(b: bytes) -> None:
    multihash_decode(b)


def _utf8(s: str) -> bytes:
    return s.encode()


def _from_utf8(b: bytes) -> str:
    return b.decode()


_IP4 = dict(to_bytes=_ip4_stb, to_string=lambda b: str(ipaddress.IPv4Address(b)))
_IP6 = dict(to_bytes=_ip6_stb, to_string=lambda b: str(ipaddress.IPv6Address(b)))
_PORT = dict(to_bytes=_port_stb, to_string=lambda b: str(int.from_bytes(b, "big")))
_DNS = dict(to_bytes=_utf8, to_string=_from_utf8, validate=_non_empty_no_slash)

P_IP4, P_TCP, P_DCCP, P_IP6, P_IP6ZONE, P_IPCIDR = 4, 6, 33, 41, 42, 43
P_DNS, P_DNS4, P_DNS6, P_DNSADDR = 53, 54, 55, 56
P_SCTP, P_UDP, P_P2P, P_UNIX, P_HTTPS = 132, 273, 421, 400, 443
P_TLS, P_SNI, P_QUIC, P_QUIC_V1, P_WEBTRANSPORT = 448, 449, 460, 461, 465
P_WS, P_WSS, P_HTTP = 477, 478, 480

for _proto in (
    Protocol("ip4", P_IP4, 32, **_IP4),
    Protocol("tcp", P_TCP, 16, **_PORT),
    Protocol("dccp", P_DCCP, 16, **_PORT),
    Protocol("ip6", P_IP6, 128, **_IP6),
    Protocol("ip6zone", P_IP6ZONE, LENGTH_PREFIXED, to_bytes=_utf8,
             to_string=_from_utf8, validate=_non_empty_no_slash),
    Protocol("ipcidr", P_IPCIDR, 8, to_bytes=_cidr_stb, to_string=lambda b: str(b[0])),
    Protocol("dns", P_DNS, LENGTH_PREFIXED, **_DNS),
    Protocol("dns4", P_DNS4, LENGTH_PREFIXED, **_DNS),
    Protocol("dns6", P_DNS6, LENGTH_PREFIXED, **_DNS),
    Protocol("dnsaddr", P_DNSADDR, LENGTH_PREFIXED, **_DNS),
    Protocol("sctp", P_SCTP, 16, **_PORT),
    Protocol("udp", P_UDP, 16, **_PORT),
    Protocol("p2p", P_P2P, LENGTH_PREFIXED, to_bytes=_p2p_stb,
             to_string=b58encode, validate=_p2p_validate),
    Protocol("unix", P_UNIX, LENGTH_PREFIXED, path=True, to_bytes=_utf8, to_string=_from_utf8),
    Protocol("https", P_HTTPS, 0),
    Protocol("tls", P_TLS, 0),
    Protocol("sni", P_SNI, LENGTH_PREFIXED, **_DNS),
    Protocol("quic", P_QUIC, 0),
    Protocol("quic-v1", P_QUIC_V1, 0),
    Protocol("webtransport", P_WEBTRANSPORT, 0),
    Protocol("ws", P_WS, 0),
    Protocol("wss", P_WSS, 0),
    Protocol("http", P_HTTP, 0),
):
    add_protocol(_proto)


@dataclass(frozen=True)
class Component:
    """A single protocol and its raw value within a multiaddr."""

    protocol: Protocol
    raw: bytes = b""

    def __post_init__(self) -> None:
        proto = self.protocol
        if proto.size == 0 and self.raw:
            raise MultiformatError(f"protocol {proto.name} takes no value")
        if proto.size > 0 and len(self.raw) != proto.size // 8:
            raise MultiformatError(f"invalid value length for {proto.name}")
        if proto.validate is not None:
            proto.validate(self.raw)

    @classmethod
    def from_string(cls, name: str, value: str = "") -> "Component":
        proto = protocol_with_name(name)
        if proto.size == 0:
            if value:
                raise MultiformatError(f"protocol {name} takes no value")
            return cls(proto)
        if proto.to_bytes is None:
            raise MultiformatError(f"protocol {name} has no transcoder")
        return cls(proto, proto.to_bytes(value))

    @property
    def value(self) -> str:
        if self.protocol.size == 0 or self.protocol.to_string is None:
            return ""
        return self.protocol.to_string(self.raw)

    def to_bytes(self) -> bytes:
        out = encode_varint(self.protocol.code)
        if self.protocol.size == LENGTH_PREFIXED:
            out += encode_varint(len(self.raw))
        return out + self.raw

    def __str__(self) -> str:
        if self.protocol.size == 0:
            return "/" + self.protocol.name
        if self.protocol.path:
            value = self.value
            return f"/{self.protocol.name}{'' if value.startswith('/') else '/'}{value}"
        return f"/{self.protocol.name}/{self.value}"


def _parse_string(text: str) -> list[Component]:
    text = text.rstrip("/")
    if not text:
        raise MultiformatError("empty multiaddr")
    if not text.startswith("/"):
        raise MultiformatError("multiaddr must begin with /")
    parts = text[1:].split("/")
    comps = []
    it = iter(enumerate(parts))
    for i, name in it:
        proto = protocol_with_name(name)
        if proto.size == 0:
            comps.append(Component(proto))
            continue
        if proto.path:
            comps.append(Component.from_string(name, "/" + "/".join(parts[i + 1:])))
            break
        try:
            _, value = next(it)
        except StopIteration:
            raise MultiformatError(f"unexpected end of multiaddr after {name}") from None
        comps.append(Component.from_string(name, value))
    return comps


def _parse_bytes(data: bytes) -> list[Component]:
    comps = []
    pos = 0
    while pos < len(data):
        code, n = decode_varint(data[pos:])
        pos += n
        proto = protocol_with_code(code)
        if proto.size == LENGTH_PREFIXED:
            size, n = decode_varint(data[pos:])
            pos += n
        else:
            size = proto.size // 8
        if pos + size > len(data):
            raise MultiformatError("multiaddr value truncated")
        comps.append(Component(proto, data[pos:pos + size]))
        pos += size
    return comps


class Multiaddr:
    """A self-describing network address."""

    __slots__ = ("_components",)

    def __init__(self, text: str) -> None:
        self._components: tuple[Component, ...] = tuple(_parse_string(text))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Multiaddr":
        data = bytes(data)
        if not data:
            raise MultiformatError("empty multiaddr")
        return cls.from_components(_parse_bytes(data))

    @classmethod
    def from_components(cls, components: Iterable[Component]) -> "Multiaddr":
        obj = cls.__new__(cls)
        obj._components = tuple(components)
        return obj

    def to_bytes(self) -> bytes:
        return b"".join(c.to_bytes() for c in self._components)

    def __str__(self) -> str:
        return "".join(str(c) for c in self._components)

    def __repr__(self) -> str:
        return f"Multiaddr({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Multiaddr):
            return NotImplemented
        return self.to_bytes() == other.to_bytes()

    def __hash__(self) -> int:
        return hash(self.to_bytes())

    def components(self) -> list[Component]:
        return list(self._components)

    def protocols(self) -> list[Protocol]:
        return [c.protocol for c in self._components]

    def value_for_protocol(self, code: int) -> str:
        for comp in self._components:
            if comp.protocol.code == code:
                return comp.value
        raise MultiformatError(f"protocol {code} not found in multiaddr")

    def encapsulate(self, other: "Multiaddr | Component") -> "Multiaddr":
        extra = [other] if isinstance(other, Component) else other.components()
        return Multiaddr.from_components([*self._components, *extra])

    def split_first(self) -> tuple[Optional[Component], Optional["Multiaddr"]]:
        if not self._components:
            return None, None
        rest = self._components[1:]
        return self._components[0], (Multiaddr.from_components(rest) if rest else None)