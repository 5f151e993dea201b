import os

import pytest

from ipnikit.multiformats import (
    DAG_JSON,
    RAW,
    SHA2_256,
    Cid,
    multihash_decode,
    multihash_sum,
)
from ipnikit.peer import PeerID, PrivateKey
from ipnikit.record import EnvelopeError
from ipnikit.schema import (
    NO_ENTRIES,
    Advertisement,
    EntryChunk,
    ExtendedProvider,
    Provider,
    SchemaError,
    decode_dag_json,
    encode_dag_json,
    link_for,
    unwrap_advertisement,
    unwrap_entry_chunk,
)


def random_multihashes(n):
    return [multihash_sum(os.urandom(32), SHA2_256) for _ in range(n)]


def random_addrs(n):
    return [f"/ip4/127.0.0.1/tcp/{int.from_bytes(os.urandom(2), 'big')}" for _ in range(n)]


def identity():
    priv = PrivateKey.generate()
    return priv, PeerID.from_public_key(priv.public_key())


def entries_link():
    return link_for(EntryChunk(entries=random_multihashes(10)).to_node())


def generate_advertisement():
    mhs = random_multihashes(7)
    return Advertisement(
        previous_id=Cid(1, RAW, mhs[0]),
        provider=str(PeerID(mhs[1])),
        addresses=[str(PeerID(mhs[2]))],
        entries=Cid(1, RAW, mhs[3]),
        context_id=mhs[4],
        metadata=mhs[5],
        signature=mhs[6],
        is_rm=False,
    )


def generate_entry_chunk():
    mhs = random_multihashes(100)
    return EntryChunk(entries=mhs, next=Cid(1, RAW, mhs[0]))


def plain_ad(provider="12D3KooWKRyzVWW6ChFjQjK4miCty85Niy48tpPV95XdKu1BcvMA"):
    return Advertisement(
        provider=provider,
        addresses=["/ip4/127.0.0.1/tcp/9999"],
        entries=entries_link(),
        context_id=b"test-context-id",
        metadata=b"test-metadata",
    )


def no_extended(_pid):
    raise ValueError("there are no extended providers")


@pytest.mark.parametrize(
    "signer",
    [
        lambda ad, key: ad.sign(key),
        lambda ad, key: ad.sign_with_extended_providers(key, no_extended),
    ],
)
def test_sign_and_verify(signer):
    priv, peer_id = identity()
    ad = plain_ad()
    signer(ad, priv)

    signer_id = ad.verify_signature()
    assert signer_id == peer_id

    prov_id = PeerID.decode(ad.provider)
    assert signer_id != prov_id

    ad.provider = ""
    with pytest.raises(SchemaError, match="invalid signature"):
        ad.verify_signature()


def test_sign_fails_if_ad_has_extended_providers():
    priv, peer_id = identity()
    _, ep1 = identity()
    ad = plain_ad(str(peer_id))
    ad.extended_provider = ExtendedProvider(
        providers=[Provider(id=str(ep1), addresses=random_addrs(2), metadata=b"ep1-metadata")]
    )
    with pytest.raises(SchemaError, match="the ad can not be signed because it has extended"):
        ad.sign(priv)


def test_sign_with_extended_providers_and_verify():
    ep1_priv, ep1 = identity()
    ep2_priv, ep2 = identity()
    mp_priv, mp = identity()
    mp_addrs = random_addrs(2)
    ad = Advertisement(
        provider=str(mp),
        addresses=mp_addrs,
        entries=entries_link(),
        context_id=b"test-context-id",
        metadata=b"test-metadata",
        extended_provider=ExtendedProvider(providers=[
            Provider(id=str(ep1), addresses=random_addrs(2), metadata=b"ep1-metadata"),
            Provider(id=str(ep2), addresses=random_addrs(2), metadata=b"ep2-metadata"),
            Provider(id=str(mp), addresses=mp_addrs, metadata=b"main-metadata"),
        ]),
    )
    keys = {str(ep1): ep1_priv, str(ep2): ep2_priv}

    def fetch(pid):
        if pid not in keys:
            raise ValueError(f"Unknown provider {pid}")
        return keys[pid]

    ad.sign_with_extended_providers(mp_priv, fetch)
    assert all(p.signature for p in ad.extended_provider.providers)
    assert ad.verify_signature() == mp


def test_sign_fails_if_main_provider_not_in_extended_list():
    ep1_priv, ep1 = identity()
    mp_priv, mp = identity()
    ad = plain_ad(str(mp))
    ad.extended_provider = ExtendedProvider(
        providers=[Provider(id=str(ep1), addresses=random_addrs(2), metadata=b"ep1-metadata")]
    )
    with pytest.raises(SchemaError, match="extended providers must contain provider"):
        ad.sign_with_extended_providers(mp_priv, lambda pid: ep1_priv)


def test_key_fetcher_error_propagates():
    mp_priv, mp = identity()
    _, ep1 = identity()
    ad = plain_ad(str(mp))
    ad.extended_provider = ExtendedProvider(
        providers=[Provider(id=str(ep1), addresses=random_addrs(1))]
    )

    def fetch(pid):
        raise ValueError(f"Unknown provider {pid}")

    with pytest.raises(ValueError, match="Unknown provider"):
        ad.sign_with_extended_providers(mp_priv, fetch)


def test_rm_ads_cannot_have_extended_signatures():
    mp_priv, mp = identity()
    ad = plain_ad(str(mp))
    ad.is_rm = True
    ad.extended_provider = ExtendedProvider(providers=[Provider(id=str(mp))])
    with pytest.raises(SchemaError, match="rm ads are not supported"):
        ad.sign_with_extended_providers(mp_priv, no_extended)


@pytest.fixture
def extended_ad():
    ep1_priv, ep1 = identity()
    mp_priv, mp = identity()
    mp_addrs = random_addrs(2)
    ad = Advertisement(
        provider=str(mp),
        addresses=mp_addrs,
        entries=entries_link(),
        context_id=b"test-context-id",
        metadata=b"test-metadata",
        extended_provider=ExtendedProvider(providers=[
            Provider(id=str(mp), addresses=mp_addrs, metadata=b"main-metadata"),
            Provider(id=str(ep1), addresses=random_addrs(2), metadata=b"ep1-metadata"),
        ]),
    )

    def fetch(pid):
        if pid != str(ep1):
            raise ValueError(f"Unknown provider {pid}")
        return ep1_priv

    ad.sign_with_extended_providers(mp_priv, fetch)
    assert ad.verify_signature() == mp
    return ad


def test_verification_fails_if_ad_provider_identity_incorrect(extended_ad):
    _, other = identity()
    extended_ad.provider = str(other)
    with pytest.raises(SchemaError):
        extended_ad.verify_signature()


def test_verification_fails_if_extended_provider_identity_incorrect(extended_ad):
    _, other = identity()
    extended_ad.extended_provider.providers[1].id = str(other)
    with pytest.raises(SchemaError, match="invalid signature"):
        extended_ad.verify_signature()


def test_verification_fails_if_extended_provider_metadata_incorrect(extended_ad):
    extended_ad.extended_provider.providers[1].metadata = os.urandom(10)
    with pytest.raises(SchemaError, match="invalid signature"):
        extended_ad.verify_signature()


def test_verification_fails_if_extended_provider_addrs_incorrect(extended_ad):
    extended_ad.extended_provider.providers[1].addresses = random_addrs(10)
    with pytest.raises(SchemaError, match="invalid signature"):
        extended_ad.verify_signature()


def test_verification_fails_if_override_incorrect(extended_ad):
    extended_ad.extended_provider.override = not extended_ad.extended_provider.override
    with pytest.raises(SchemaError, match="invalid signature"):
        extended_ad.verify_signature()


def test_verification_fails_if_context_id_incorrect(extended_ad):
    extended_ad.context_id = b"ABC"
    with pytest.raises(SchemaError):
        extended_ad.verify_signature()


def test_verification_fails_if_main_provider_not_in_extended_list(extended_ad):
    extended_ad.extended_provider.providers = extended_ad.extended_provider.providers[1:]
    with pytest.raises(SchemaError) as info:
        extended_ad.verify_signature()
    assert str(info.value) == (
        "extended providers must contain provider from the encapsulating advertisement"
    )


def test_verification_fails_without_signature():
    ad = plain_ad()
    with pytest.raises(EnvelopeError):
        ad.verify_signature()


def test_old_ads_can_be_read_with_new_structs():
    mhs = random_multihashes(7)
    old_node = {
        "PreviousID": Cid(1, RAW, mhs[0]),
        "Provider": str(PeerID(mhs[1])),
        "Addresses": [str(PeerID(mhs[2]))],
        "Entries": Cid(1, RAW, mhs[3]),
        "ContextID": mhs[4],
        "Metadata": mhs[5],
        "Signature": mhs[6],
        "IsRm": False,
    }
    ad = unwrap_advertisement(old_node)
    assert ad.previous_id == old_node["PreviousID"]
    assert ad.provider == old_node["Provider"]
    assert ad.addresses == old_node["Addresses"]
    assert ad.signature == mhs[6]
    assert ad.entries == old_node["Entries"]
    assert ad.context_id == mhs[4]
    assert ad.metadata == mhs[5]
    assert ad.is_rm is False
    assert ad.extended_provider is None

    chunk = generate_entry_chunk()
    assert unwrap_entry_chunk(chunk.to_node()) == chunk


def test_new_ads_without_extended_providers_have_old_fields_only():
    ad = generate_advertisement()
    node = ad.to_node()
    assert set(node) == {"PreviousID", "Provider", "Addresses", "Signature",
                         "Entries", "ContextID", "Metadata", "IsRm"}
    assert node["Provider"] == ad.provider
    assert node["Entries"] == ad.entries


def test_advertisement_serde():
    ad = generate_advertisement()
    assert unwrap_advertisement(ad.to_node()) == ad

    data = encode_dag_json(ad.to_node())
    assert unwrap_advertisement(decode_dag_json(data)) == ad


def test_advertisement_with_extended_provider_serde(extended_ad):
    data = encode_dag_json(extended_ad.to_node())
    got = unwrap_advertisement(decode_dag_json(data))
    assert got == extended_ad
    assert got.verify_signature() == PeerID.decode(extended_ad.provider)


def test_entry_chunk_serde():
    chunk = generate_entry_chunk()
    node = chunk.to_node()
    link = link_for(node)
    assert link.codec == DAG_JSON
    assert link == link_for(chunk)
    got = unwrap_entry_chunk(decode_dag_json(encode_dag_json(node)))
    assert got == chunk


def test_mismatching_node_is_error():
    chunk_node = generate_entry_chunk().to_node()
    with pytest.raises(SchemaError) as info:
        unwrap_advertisement(chunk_node)
    assert str(info.value).startswith("faild to convert node prototype")

    ad_node = generate_advertisement().to_node()
    with pytest.raises(SchemaError) as info:
        unwrap_entry_chunk(ad_node)
    assert str(info.value).startswith("faild to convert node prototype")


def test_wrong_field_type_is_error():
    node = generate_advertisement().to_node()
    node["IsRm"] = "no"
    with pytest.raises(SchemaError, match="faild to convert node prototype"):
        unwrap_advertisement(node)


def test_no_entries_value():
    assert NO_ENTRIES.version == 1
    assert NO_ENTRIES.codec == RAW
    decoded = multihash_decode(NO_ENTRIES.multihash)
    assert decoded.code == SHA2_256
    assert decoded.digest == bytes.fromhex("e3b0c44298fc1c149afbf4c8996fb924")


def test_validate_limits():
    ad = plain_ad()
    ad.context_id = b"x" * 65
    with pytest.raises(SchemaError, match="context id too long"):
        ad.validate()
    ad.context_id = b"x" * 64
    ad.metadata = b"m" * 1025
    with pytest.raises(SchemaError, match="metadata too long"):
        ad.validate()


def test_dag_json_encoding_pinned():
    assert encode_dag_json({"b": 1, "a": b"\x01"}) == b'{"a":{"/":{"bytes":"AQ"}},"b":1}'
    cid = NO_ENTRIES
    assert encode_dag_json({"l": cid}) == ('{"l":{"/":"%s"}}' % cid).encode()
    assert decode_dag_json(b'{"l":{"/":"%s"}}' % str(cid).encode()) == {"l": cid}


def test_dag_json_invalid():
    with pytest.raises(SchemaError):
        decode_dag_json(b"{not json")
    with pytest.raises(SchemaError):
        encode_dag_json({"x": object()})


def test_to_node_requires_entries():
    with pytest.raises(SchemaError, match="no entries link"):
        Advertisement(provider="p").to_node()