"""Transactions, their inputs and outputs, and the public-key contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .keys import PubKey, Signature
from .types import Address, FixedBytes, Hash, TxioKey


@dataclass
class TxIn:
    """Spends a previous output; ``solution`` indexes the transaction's solutions."""

    prev: TxioKey = field(default_factory=TxioKey)
    solution: Optional[int] = None


@dataclass(frozen=True)
class TxOut:
    address: Address = field(default_factory=Address)
    contract: Address = field(default_factory=Address)
    amount: int = 0


@dataclass(frozen=True)
class Utxo(TxOut):
    """An output together with the height it was created at."""

    height: int = 0


@dataclass(frozen=True)
class UtxoEntry:
    key: TxioKey = field(default_factory=TxioKey)
    output: Utxo = field(default_factory=Utxo)


@dataclass(frozen=True)
class StxoEntry:
    key: TxioKey = field(default_factory=TxioKey)
    output: Utxo = field(default_factory=Utxo)
    spent: TxioKey = field(default_factory=TxioKey)


@dataclass(frozen=True)
class PubKeySolution:
    pubkey: PubKey = field(default_factory=PubKey)
    signature: Signature = field(default_factory=Signature)


@dataclass(frozen=True)
class PubKeyContract:
    """Outputs owned by the holder of the key hashing to ``address``."""

    address: Address = field(default_factory=Address)

    def validate(self, operation, solution, txid):
        if operation is None and isinstance(solution, PubKeySolution):
            if solution.pubkey.get_addr() != self.address:
                return False
            return solution.signature.verify(solution.pubkey, txid)
        return False


def encode_value(value):
    """Return the bytes a value contributes to a transaction hash."""
    if isinstance(value, TxIn):
        return encode_value(value.prev)
    if isinstance(value, TxOut):
        return encode_value(value.address) + encode_value(value.contract) + encode_value(value.amount)
    if isinstance(value, TxioKey):
        return encode_value(value.txid) + encode_value(value.index)
    if isinstance(value, FixedBytes):
        return bytes(value)
    if isinstance(value, int):
        return value.to_bytes(8, "little", signed=value < 0)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"cannot encode {type(value).__name__}")


@dataclass
class Transaction:
    version: int = 0
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    execute: list = field(default_factory=list)
    solutions: list = field(default_factory=list)
    id: Hash = field(default_factory=Hash)

    def calc_hash(self):
        """Hash the version, inputs, outputs and operations; solutions are excluded."""
        parts = [encode_value(self.version)]
        parts.extend(encode_value(tx_in) for tx_in in self.inputs)
        parts.extend(encode_value(tx_out) for tx_out in self.outputs)
        parts.extend(encode_value(op.calc_hash() if op is not None else Hash())
                     for op in self.execute)
        return Hash.digest(b"".join(parts))

    def finalize(self):
        self.id = self.calc_hash()

    def is_valid(self):
        return self.calc_hash() == self.id

    def get_solution(self, index):
        if 0 <= index < len(self.solutions):
            return self.solutions[index]
        return None

    def calc_min_fee(self, params):
        if params is None:
            raise ValueError("missing chain parameters")
        return ((len(self.inputs) + len(self.outputs)) * params.min_txfee_io
                + len(self.solutions) * params.min_txfee_sign
                + len(self.execute) * params.min_txfee_exec)