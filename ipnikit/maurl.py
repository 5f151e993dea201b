"""Conversion between multiaddrs and URLs.

Importing this module registers the "httpath" multiaddr protocol, which
carries the path of a URL as a percent-escaped string.
"""

from __future__ import annotations

import ipaddress
import re
from urllib.parse import SplitResult, quote, unquote, urlsplit

from .multiformats import (
    LENGTH_PREFIXED,
    P_DNS,
    P_DNS4,
    P_DNS6,
    P_HTTP,
    P_HTTPS,
    P_IP4,
    P_IP6,
    P_TCP,
    P_TLS,
    P_UDP,
    P_WS,
    P_WSS,
    Component,
    Multiaddr,
    MultiformatError,
    Protocol,
    add_protocol,
    protocol_with_name,
)


def _path_validate(b: bytes) -> None:
    if b"/" in b:
        raise MultiformatError(f"encoded path '{b.decode(errors='replace')}' contains a slash")


HTTPATH = Protocol(
    "httpath", 0x300200, LENGTH_PREFIXED,
    to_bytes=lambda s: s.encode(), to_string=lambda b: b.decode(), validate=_path_validate,
)
try:
    add_protocol(HTTPATH)
except MultiformatError:
    HTTPATH = protocol_with_name("httpath")

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _host_of(maddr: Multiaddr) -> str:
    comps = maddr.components()
    if not comps or comps[0].protocol.code not in (P_IP4, P_IP6, P_DNS, P_DNS4, P_DNS6):
        raise MultiformatError(f"{maddr} is not a 'thin waist' address")
    host = comps[0].value
    if comps[0].protocol.code == P_IP6:
        ip = ipaddress.IPv6Address(host)
        if ip.ipv4_mapped is None:
            host = f"[{host}]"
    if len(comps) > 1 and comps[1].protocol.code in (P_TCP, P_UDP):
        host = f"{host}:{comps[1].value}"
    return host


def to_url(maddr: Multiaddr) -> SplitResult:
    """Convert a multiaddr such as /dns/host/https/httpath/... to a URL."""
    host = _host_of(maddr)
    values = {}
    for comp in maddr.components():
        values.setdefault(comp.protocol.code, comp.value)

    scheme = "http"
    if P_HTTPS in values:
        scheme = "https"
    elif P_HTTP in values:
        if P_TLS in values:
            scheme = "https"
    elif P_WSS in values:
        scheme = "wss"
    elif P_WS in values:
        scheme = "wss" if P_TLS in values else "ws"

    path = ""
    if HTTPATH.code in values:
        escaped = values[HTTPATH.code]
        path = "" if _BAD_ESCAPE.search(escaped) else unquote(escaped)

    return SplitResult(scheme, host, path, "", "")


def from_url(url) -> Multiaddr:
    """Convert a URL (string or parsed) to a multiaddr."""
    parts = urlsplit(url) if isinstance(url, str) else url
    host = parts.hostname or ""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        comps = [Component.from_string("dns", host)]
    else:
        comps = [Component.from_string("ip4" if ip.version == 4 else "ip6", str(ip))]

    try:
        port = parts.port
    except ValueError as exc:
        raise MultiformatError(str(exc)) from None
    if port is not None:
        comps.append(Component.from_string("tcp", str(port)))

    comps.append(Component.from_string(parts.scheme))
    if parts.path:
        comps.append(Component(HTTPATH, quote(parts.path, safe="$&+:=@").encode()))
    return Multiaddr.from_components(comps)