[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mmxnode"
version = "0.1.0"
description = "Building blocks of a proof-of-space-and-time cryptocurrency node: hashes, bech32m addresses, secp256k1 keys, transactions, a wallet, a VDF time lord and a peer router"
requires-python = ">=3.10"
keywords = ["blockchain", "cryptocurrency", "wallet", "vdf", "bech32m", "secp256k1", "p2p"]
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
    "Topic :: Office/Business :: Financial",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Networking",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["mmxnode"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
