from urllib.parse import urlsplit

import pytest

from ipnikit.maurl import from_url, to_url
from ipnikit.multiformats import Multiaddr, MultiformatError


@pytest.mark.parametrize(
    "sample",
    [
        "http://www.google.com/path/to/rsrc",
        "https://protocol.ai",
        "http://192.168.0.1:8080/admin",
        "https://[2a00:1450:400e:80d::200e]:443/",
        "https://[2a00:1450:400e:80d::200e]/",
    ],
)
def test_roundtrip(sample):
    u = urlsplit(sample)
    u2 = to_url(from_url(u))
    assert u2.scheme == u.scheme
    assert u2.netloc == u.netloc
    assert u2.path == u.path


@pytest.mark.parametrize(
    "sample,expect",
    [
        ("/ip4/192.169.0.1/tls/http", "https://192.169.0.1"),
        ("/ip4/192.169.0.1/https", "https://192.169.0.1"),
        ("/ip4/192.169.0.1/http", "http://192.169.0.1"),
        ("/dns4/protocol.ai/tls/ws", "wss://protocol.ai"),
        ("/dns4/protocol.ai/wss", "wss://protocol.ai"),
        ("/dns4/protocol.ai/ws", "ws://protocol.ai"),
    ],
)
def test_tls_protos(sample, expect):
    assert to_url(Multiaddr(sample)).geturl() == expect


def test_httpath_in_multiaddr_string():
    ma = Multiaddr("/dns4/ipni.io/tcp/443/https/httpath/http-cid-data")
    u = to_url(ma)
    assert u.geturl() == "https://ipni.io:443/http-cid-data"


def test_httpath_rejects_slash():
    with pytest.raises(MultiformatError):
        from_url("http://example.com/a").encapsulate(Multiaddr("/httpath/a%2Fb"))
        Multiaddr("/httpath/a/b")


def test_to_url_requires_host():
    with pytest.raises(MultiformatError):
        to_url(Multiaddr("/tcp/80/http"))