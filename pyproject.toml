[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ipnikit"
version = "0.1.0"
description = "Client-side toolkit for network indexers: multiaddrs, peer records, advertisements and find/ingest HTTP clients"
requires-python = ">=3.10"
keywords = ["ipni", "indexer", "multiaddr", "multihash", "cid", "advertisement", "libp2p"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "cryptography",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["ipnikit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
