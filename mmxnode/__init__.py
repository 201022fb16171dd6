"""Hashes, addresses, keys, transactions, wallet, time lord and peer router of a cryptocurrency node."""

__version__ = "0.1.0"

__all__ = ["keys", "params", "peers", "router", "timelord", "transaction", "types", "wallet"]