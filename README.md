# mmxnode

Building blocks of a proof-of-space-and-time cryptocurrency node, used as a
library. Every component takes its collaborators (the node it queries, a
publish callback, a network transport) as constructor arguments, so it can be
wired into any event loop or driven directly from tests.

## Modules

- `mmxnode.types`
  - `FixedBytes`: an immutable, zero-padded value of a fixed size, with
    `from_hex`, `hex`, `is_zero` and ordering by bytes.
  - `Hash`: 32 bytes; `Hash.digest(data)` is SHA-256, plus `ones`, `empty`
    and `to_int` (little-endian).
  - `Address`: a 32-byte address written as a bech32m string with prefix
    `mmx` (`to_string`, `from_string`).
  - `TxioKey`: `(txid, index)` naming one transaction output.
  - `bech32m_encode(hrp, data)` and `bech32m_decode(text)` on 5-bit words.
- `mmxnode.keys`
  - `PubKey`: compressed 33-byte secp256k1 key; `from_secret`, and
    `get_addr` (the SHA-256 of the key).
  - `Signature`: 64-byte compact low-s ECDSA signature over a 32-byte hash;
    `sign` and `verify`.
  - `EcdsaWallet(seed, num_addresses)`: derives `num_addresses + 1` key pairs
    from a 32-byte seed; `get_address`, `get_all_addresses`, `find_address`
    (index or `None`), `get_keypair` (by index or by address),
    `generate_secret` and `generate_keypair`.
- `mmxnode.params`
  - `ChainParams`: frozen dataclass of consensus parameters with defaults.
  - `validate_params`, `check_plot_filter`, `calc_proof_score`,
    `calc_block_reward`, `calc_total_netspace`.
- `mmxnode.transaction`
  - `TxIn`, `TxOut`, `Utxo`, `UtxoEntry`, `StxoEntry`.
  - `Transaction`: `calc_hash` (version, inputs, outputs and operations;
    solutions are not hashed), `finalize`, `is_valid`, `get_solution`,
    `calc_min_fee(params)`.
  - `PubKeySolution` and `PubKeyContract.validate(operation, solution, txid)`.
  - `encode_value`: the byte encoding used for hashing.
- `mmxnode.wallet`
  - `Wallet(seeds, node, params=None, num_addresses=100, default_wallet=0)`:
    opens one of several seeds, lists unspent outputs (without those it has
    already spent, with its own pending change), and `send(amount, dst_addr,
    contract=None)` picks the oldest outputs first, adds fee and change
    outputs, signs each input address once and calls
    `node.add_transaction(tx)`. Errors raise `WalletError`. The node must
    provide `get_utxo_list`, `get_stxo_list`, `get_history_for` and
    `add_transaction`.
- `mmxnode.timelord`
  - `compute_vdf(value, num_iters)`: repeated SHA-256.
  - `TimeLord(publish, max_history=1000, restart_holdoff=10000)`: runs two
    hash chains in a background thread (`start_vdf`, `stop_vdf`, or one
    `step` at a time), applies `TimeInfusion` values via `handle_infusion`,
    and for each `IntervalRequest` given to `handle_request` calls
    `publish` with a `ProofOfTime` made of `TimeSegment`s once the
    interval is covered.
- `mmxnode.peers`
  - `encode_frame` and `FrameDecoder`: 6-byte header (type code, payload
    length) framing; bad headers or oversized messages raise `FrameError`.
  - `Peer`, `SyncJob`, `SyncState`, `is_public_address`, `random_subset`.
- `mmxnode.router`
  - `Router(node, transport, params, node_id)`: tracks connected peers,
    relays blocks, transactions and proofs it has not seen, answers peer
    `Request`s with `Return`s, and fetches blocks at a height from several
    synced peers with `get_blocks_at(height, callback)`. `load_peers` and
    `save_peers` keep the known peer list as a JSON file.

## Example

```python
from mmxnode.types import Hash, Address
from mmxnode.keys import EcdsaWallet, Signature

seed = Hash.digest(b"example seed")
wallet = EcdsaWallet(seed, 10)

addr = wallet.get_address(0)
text = addr.to_string()                 # "mmx1..."
assert Address.from_string(text) == addr

secret, pubkey = wallet.get_keypair(addr)
message = Hash.digest(b"payload")
sig = Signature.sign(secret, message)
assert sig.verify(pubkey, message)
```

## What this package does not do

- There is no command-line program and no long-running node process.
- There is no blockchain storage or block validation; the wallet and router
  call a `node` object that you supply.
- There is no socket layer. `Router` sends and receives through the
  `transport` you give it (`encode`, `decode`, `send`, `disconnect`, `pause`,
  `resume`, `connect`), and has no timers of its own: call `update`, `query`,
  `connect`, `discover` and `print_stats` periodically yourself.
- There is no proof-of-space plot handling, no farmer or harvester, no BLS
  keys and no HTTP API.
- The wallet takes seeds directly; it does not read or create key files.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```