# ipnikit

Building blocks for talking to network indexers from Python.

- **Multiformats** (`ipnikit.multiformats`): unsigned varints, base58,
  multihashes, CIDs and multiaddrs.
- **Multiaddr and URL conversion** (`ipnikit.maurl`): `to_url` and
  `from_url`. Importing the module registers the `httpath` multiaddr
  protocol, which carries a percent-escaped URL path.
- **Peers and signed records** (`ipnikit.peer`, `ipnikit.record`): Ed25519
  keys (`PrivateKey`, `PublicKey`), `PeerID`, `AddrInfo`, signed envelopes
  (`seal`, `consume_envelope`, `consume_typed_envelope`) and `PeerRecord`.
- **Advertisements** (`ipnikit.schema`): `Advertisement` and `EntryChunk`,
  DAG-JSON encoding (`encode_dag_json`, `decode_dag_json`, `link_for`),
  signing and signature checks, including extended providers.
- **Models** (`ipnikit.find_model`, `ipnikit.ingest_model`): find requests and
  responses, provider information and stats as JSON; signed ingest and
  register requests.
- **HTTP clients** (`ipnikit.find_client`, `ipnikit.ingest_client`): the find
  API (`find`, `find_batch`, `list_providers`, `get_provider`, `get_stats`),
  raw double-hashed store lookups (`DHStoreClient`), and the ingest API
  (`index_content`, `register`).

## Installation

```
pip install ipnikit
```

## Examples

Convert between URLs and multiaddrs:

```python
from ipnikit.maurl import from_url, to_url

maddr = from_url("https://example.com/path/to/root")
print(maddr)                   # /dns/example.com/https/httpath/%2Fpath%2Fto%2Froot
print(to_url(maddr).geturl())  # https://example.com/path/to/root
```

Sign and verify an advertisement:

```python
from ipnikit.peer import PeerID, PrivateKey
from ipnikit.schema import Advertisement, EntryChunk, link_for

key = PrivateKey.generate()
entries = link_for(EntryChunk(entries=[]).to_node())
ad = Advertisement(
    provider=str(PeerID.from_public_key(key.public_key())),
    addresses=["/ip4/127.0.0.1/tcp/9999"],
    entries=entries,
    context_id=b"ctx",
    metadata=b"meta",
)
ad.sign(key)
print(ad.verify_signature())   # the signer's peer ID
```

Make and check a signed register request:

```python
from ipnikit.ingest_model import make_register_request, read_register_request
from ipnikit.peer import PeerID, PrivateKey

key = PrivateKey.generate()
pid = PeerID.from_public_key(key.public_key())
data = make_register_request(pid, key, ["/ip4/127.0.0.1/tcp/9999"])
record = read_register_request(data)
print(record.peer_id == pid)   # True
```

Query an indexer:

```python
from ipnikit.find_client import Client

client = Client("https://indexer.example.com")
print(client.get_stats())
```

Failures are raised as exceptions: `MultiformatError` for malformed
multiformats, `EnvelopeError` for bad signed envelopes, `SchemaError` for
advertisement problems, and `APIRequestError` / `IngestError` for error
responses from a server.

## What it does not do

- `DHStoreClient` returns encrypted multihash results and encrypted metadata
  as they come from the server; the package has no helpers to compute second
  multihashes or to decrypt value keys and metadata.
- There are no helpers for filtering private addresses or picking out HTTP
  addresses from a list of multiaddrs.
- The ingest client does not send announcements; it only indexes single
  multihashes and registers providers.
- There is no command-line program, and nothing that subscribes to or syncs
  advertisement chains.

## Running the tests

```
pip install -e ".[test]"
pytest
```