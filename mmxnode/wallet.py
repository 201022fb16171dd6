"""A wallet that selects outputs, builds and signs transactions for a node."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from .keys import EcdsaWallet, Signature
from .params import ChainParams
from .transaction import PubKeySolution, Transaction, TxIn, TxOut, Utxo, UtxoEntry
from .types import Address, Hash, TxioKey

logger = logging.getLogger(__name__)

_PENDING_HEIGHT = 0xFFFFFFFF


class WalletError(Exception):
    """Raised when a wallet operation cannot be carried out."""


def _gather_inputs(tx, spent_txo, utxo_list, amount, contract):
    """Add inputs of ``contract`` until ``amount`` is covered; return the excess."""
    change = 0
    for entry in utxo_list:
        if amount == 0:
            break
        out = entry.output
        if out.contract != contract or entry.key in spent_txo:
            continue
        if out.amount > amount:
            change += out.amount - amount
            amount = 0
        else:
            amount -= out.amount
        tx.inputs.append(TxIn(prev=entry.key))
        spent_txo.add(entry.key)
    if amount != 0:
        raise WalletError("not enough funds")
    return change


class Wallet:
    """Spends the outputs of one of several seeds, tracking pending change."""

    def __init__(self, seeds, node, params=None, num_addresses=100, default_wallet=0):
        self._seeds = list(seeds)
        self._node = node
        self._params = params if params is not None else ChainParams()
        self._num_addresses = num_addresses
        self._wallet: Optional[EcdsaWallet] = None
        self._wallet_index: Optional[int] = None
        self._spent_txo: Set[TxioKey] = set()
        self._change_utxo: Dict[TxioKey, TxOut] = {}
        self.open_wallet(default_wallet)

    def _require_wallet(self) -> EcdsaWallet:
        if self._wallet is None:
            raise WalletError("no wallet open")
        return self._wallet

    def open_wallet(self, index):
        if self._wallet_index == index:
            return
        self.open_wallet_ex(index, self._num_addresses)

    def open_wallet_ex(self, index, num_addresses):
        if not 0 <= index < len(self._seeds):
            raise WalletError("invalid wallet index")
        self.close_wallet()
        seed = self._seeds[index]
        if seed is None:
            raise WalletError("failed to open wallet")
        self._wallet = EcdsaWallet(seed, num_addresses)
        self._wallet_index = index
        logger.info("Loaded wallet %d with %d addresses", index, num_addresses)

    def close_wallet(self):
        self._wallet = None
        self._wallet_index = None

    def send(self, amount, dst_addr, contract=None):
        """Build, sign and submit a transaction; return its id."""
        wallet = self._require_wallet()
        contract = contract if contract is not None else Address()
        if amount == 0:
            raise WalletError("amount cannot be zero")
        params = self._params

        utxo_list = self.get_utxo_list()
        addr_map = {entry.key: entry.output.address for entry in utxo_list}
        # oldest coins first, they are more likely to be spendable right now
        utxo_list.sort(key=lambda entry: entry.output.height)

        spent_txo = set(self._spent_txo)
        tx = Transaction()
        tx.outputs.append(TxOut(address=dst_addr, contract=contract, amount=amount))
        change = _gather_inputs(tx, spent_txo, utxo_list, amount, contract)

        if contract != Address() and change > 0:
            # token change cannot pay the fee
            tx.outputs.append(TxOut(address=wallet.get_address(0), contract=contract, amount=change))
            change = 0

        def signer_of(tx_in):
            try:
                return addr_map[tx_in.prev]
            except KeyError:
                raise WalletError("cannot sign input") from None

        while True:
            used_addr = {signer_of(tx_in) for tx_in in tx.inputs}
            tx_fees = (tx.calc_min_fee(params) + params.min_txfee_io
                       + len(used_addr) * params.min_txfee_sign)
            if change > tx_fees:
                tx.outputs.append(TxOut(address=wallet.get_address(0), amount=change - tx_fees))
                break
            if change == tx_fees:
                break
            left = tx_fees - change
            change += _gather_inputs(tx, spent_txo, utxo_list, left, Address())
            change += left
        tx.finalize()

        solution_map: Dict[Address, int] = {}
        for tx_in in tx.inputs:
            addr = signer_of(tx_in)
            if addr in solution_map:
                tx_in.solution = solution_map[addr]
                continue
            secret, pubkey = wallet.get_keypair(addr)
            tx_in.solution = len(tx.solutions)
            solution_map[addr] = tx_in.solution
            tx.solutions.append(PubKeySolution(pubkey=pubkey, signature=Signature.sign(secret, tx.id)))

        self._node.add_transaction(tx)
        logger.info("Sent %d with fee %d / %d to %s (%s)",
                    amount, tx_fees, tx.calc_min_fee(params), dst_addr, tx.id)

        self._spent_txo = spent_txo
        for tx_in in tx.inputs:
            self._change_utxo.pop(tx_in.prev, None)
        for index, out in enumerate(tx.outputs):
            if wallet.find_address(out.address) is not None:
                self._change_utxo[TxioKey(tx.id, index)] = out
        return tx.id

    def get_utxo_list(self) -> List[UtxoEntry]:
        """Return unspent outputs, without the ones we spent and with pending change."""
        wallet = self._require_wallet()
        result = []
        for entry in self._node.get_utxo_list(wallet.get_all_addresses()):
            if entry.key not in self._spent_txo:
                result.append(entry)
            self._change_utxo.pop(entry.key, None)
        for key, out in self._change_utxo.items():
            utxo = Utxo(address=out.address, contract=out.contract, amount=out.amount,
                        height=_PENDING_HEIGHT)
            result.append(UtxoEntry(key=key, output=utxo))
        return result

    def get_utxo_list_for(self, contract):
        return [entry for entry in self.get_utxo_list() if entry.output.contract == contract]

    def get_stxo_list(self):
        wallet = self._require_wallet()
        return list(self._node.get_stxo_list(wallet.get_all_addresses()))

    def get_stxo_list_for(self, contract):
        return [entry for entry in self.get_stxo_list() if entry.output.contract == contract]

    def get_history(self, min_height):
        wallet = self._require_wallet()
        return self._node.get_history_for(wallet.get_all_addresses(), min_height)

    def get_balance(self, contract=None):
        contract = contract if contract is not None else Address()
        return sum(entry.output.amount for entry in self.get_utxo_list_for(contract))

    def get_address(self, index):
        return self._require_wallet().get_address(index)

    def get_master_seed(self, index):
        if not 0 <= index < len(self._seeds):
            raise WalletError("invalid wallet index")
        seed = self._seeds[index]
        if seed is None:
            raise WalletError("failed to read key file")
        return Hash(seed)