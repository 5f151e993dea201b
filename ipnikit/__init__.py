"""Multiformats, peer records, advertisements and HTTP clients for network indexers."""

__version__ = "0.1.0"

__all__ = [
    "multiformats",
    "maurl",
    "peer",
    "record",
    "ingest_model",
    "find_model",
    "schema",
    "find_client",
    "ingest_client",
]