import base64
import json

import pytest
import requests
import responses

from ipnikit.find_client import APIRequestError, Client, DHStoreClient
from ipnikit.find_model import (
    EncryptedMultihashResult,
    FindResponse,
    MultihashResult,
    ProviderInfo,
    ProviderResult,
    Stats,
    marshal_find_response,
    marshal_stats,
    unmarshal_find_request,
)
from ipnikit.multiformats import SHA2_256, Multiaddr, b58encode, multihash_sum
from ipnikit.peer import AddrInfo, PeerID, PrivateKey

BASE = "http://indexer.example.com"


@pytest.fixture
def rsps():
    with responses.RequestsMock() as mock:
        yield mock


def _peer_id():
    return PeerID.from_public_key(PrivateKey.generate().public_key())


def _mh(data: bytes) -> bytes:
    return multihash_sum(data, SHA2_256)


def test_rejects_non_http_scheme():
    with pytest.raises(ValueError, match="http or https"):
        Client("ftp://indexer.example.com")


def test_find_returns_response(rsps):
    mh = _mh(b"hello")
    pid = _peer_id()
    expected = FindResponse(
        multihash_results=[
            MultihashResult(mh, [ProviderResult(b"ctx", b"meta", AddrInfo(pid))])
        ]
    )
    rsps.add(
        responses.GET,
        f"{BASE}/multihash/{b58encode(mh)}",
        body=marshal_find_response(expected),
        status=200,
    )
    got = Client(BASE + "/ignored/path").find(mh)
    assert got.multihash_results[0].multihash == mh
    assert got.multihash_results[0].provider_results[0].equal(
        expected.multihash_results[0].provider_results[0]
    )
    assert rsps.calls[0].request.headers["Content-Type"] == "application/json"


def test_find_not_found_is_empty(rsps):
    mh = _mh(b"missing")
    rsps.add(responses.GET, f"{BASE}/multihash/{b58encode(mh)}", status=404)
    got = Client(BASE).find(mh)
    assert got.multihash_results == []
    assert got.encrypted_multihash_results == []


def test_find_server_error_raises(rsps):
    mh = _mh(b"boom")
    rsps.add(responses.GET, f"{BASE}/multihash/{b58encode(mh)}", status=500)
    with pytest.raises(APIRequestError) as exc:
        Client(BASE).find(mh)
    assert exc.value.status == 500
    assert str(exc.value).startswith("batch find query failed")


def test_find_batch_empty_makes_no_request(rsps):
    got = Client(BASE).find_batch([])
    assert got.multihash_results == []
    assert len(rsps.calls) == 0


def test_find_batch_posts_request(rsps):
    mhs = [_mh(b"a"), _mh(b"b")]
    rsps.add(responses.POST, f"{BASE}/multihash", body=b"{}", status=200)
    got = Client(BASE).find_batch(mhs)
    assert got.multihash_results == []
    sent = unmarshal_find_request(rsps.calls[0].request.body)
    assert sent.multihashes == mhs


def test_list_providers(rsps):
    pids = [_peer_id(), _peer_id()]
    infos = [
        ProviderInfo(AddrInfo(p, [Multiaddr("/ip4/127.0.0.1/tcp/9999")]), lag=i)
        for i, p in enumerate(pids)
    ]
    rsps.add(
        responses.GET,
        f"{BASE}/providers",
        body=json.dumps([i.to_dict() for i in infos]),
        status=200,
    )
    got = Client(BASE).list_providers()
    assert [g.addr_info.id for g in got] == pids
    assert [g.lag for g in got] == [0, 1]
    assert rsps.calls[0].request.headers["Accept"] == "application/json"


def test_get_provider(rsps):
    pid = _peer_id()
    info = ProviderInfo(AddrInfo(pid), last_error="failed")
    rsps.add(
        responses.GET, f"{BASE}/providers/{pid}", body=json.dumps(info.to_dict()), status=200
    )
    got = Client(BASE).get_provider(pid)
    assert got.addr_info.id == pid
    assert got.last_error == "failed"


def test_get_provider_not_found_raises(rsps):
    pid = _peer_id()
    rsps.add(responses.GET, f"{BASE}/providers/{pid}", body=b"no such provider", status=404)
    with pytest.raises(APIRequestError) as exc:
        Client(BASE).get_provider(pid)
    assert exc.value.status == 404
    assert "no such provider" in str(exc.value)


def test_get_stats(rsps):
    rsps.add(responses.GET, f"{BASE}/stats", body=marshal_stats(Stats(10, 7)), status=200)
    assert Client(BASE).get_stats() == Stats(10, 7)


def test_connection_error_propagates(rsps):
    with pytest.raises(requests.ConnectionError):
        Client(BASE).get_stats()


def test_dhstore_find_multihash(rsps):
    dhmh = _mh(b"double")
    keys = [b"key-one", b"key-two"]
    body = marshal_find_response(
        FindResponse(encrypted_multihash_results=[EncryptedMultihashResult(dhmh, keys)])
    )
    rsps.add(
        responses.GET, f"{BASE}/store/multihash/{b58encode(dhmh)}", body=body, status=200
    )
    got = DHStoreClient(BASE + "/store").find_multihash(dhmh)
    assert got == [EncryptedMultihashResult(dhmh, keys)]


def test_dhstore_find_multihash_not_found(rsps):
    dhmh = _mh(b"none")
    rsps.add(responses.GET, f"{BASE}/multihash/{b58encode(dhmh)}", status=404)
    assert DHStoreClient(BASE).find_multihash(dhmh) == []


def test_dhstore_find_metadata(rsps):
    hvk = _mh(b"value-key")[2:]
    encrypted = b"encrypted-metadata"
    rsps.add(
        responses.GET,
        f"{BASE}/metadata/{b58encode(hvk)}",
        body=json.dumps({"EncryptedMetadata": base64.b64encode(encrypted).decode()}),
        status=200,
    )
    assert DHStoreClient(BASE).find_metadata(hvk) == encrypted


def test_dhstore_find_metadata_not_found(rsps):
    hvk = b"\x01\x02\x03"
    rsps.add(responses.GET, f"{BASE}/metadata/{b58encode(hvk)}", status=404)
    assert DHStoreClient(BASE).find_metadata(hvk) is None


def test_dhstore_error_status_raises(rsps):
    hvk = b"\x04\x05"
    rsps.add(responses.GET, f"{BASE}/metadata/{b58encode(hvk)}", status=503)
    with pytest.raises(APIRequestError) as exc:
        DHStoreClient(BASE).find_metadata(hvk)
    assert exc.value.status == 503