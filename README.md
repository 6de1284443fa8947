# chainindex

`chainindex` keeps an index of a blockchain in an ordered key-value store:
raw transactions, confirmations, transaction outputs, spend edges, block
headers and per-script history. On top of that index it answers the
questions a wallet server asks: which transactions touched a script, which
outputs are still unspent, which input spent an output, and summary
statistics per script.

It needs nothing beyond the Python standard library (3.10 or later).

## Modules

- `chainindex.db`: `DB`, a byte-ordered key-value store kept as a SQLite
  file (`store.sqlite`) in its own directory. It offers `get`, `put`,
  `put_sync`, batched `write` with a `DBFlush` mode, `flush`, prefix scans
  in both directions (`iter_scan`, `iter_scan_from`, `iter_scan_reverse`,
  each yielding `DBRow` objects), `full_compaction` and
  `enable_auto_compaction`. Opening writes a version marker under key `V`
  (with an extra byte in light mode); opening a directory whose marker does
  not match raises `ElectrsError("Incompatible database found. Please reindex.")`.
  `DB` is a context manager.
- `chainindex.rows`: the row layouts `TxRow`, `TxConfRow`, `TxOutRow`,
  `TxEdgeRow`, `BlockRow` and `TxHistoryRow`, the value types `OutPoint`,
  `BlockId`, `FundingInfo`, `SpendingInfo` and `ScriptStats`, cache key
  helpers `stats_cache_key` and `utxo_cache_key`, the address-search helpers
  `addr_search_row` and `addr_search_filter`, and `compute_script_hash`
  (SHA-256 of an output script). History keys store the height big-endian
  so that a scan returns entries in chain order.
- `chainindex.indexing`: `Transaction`, `TxInput`, `TxOutput` (non-witness
  serialization, `txid` as double SHA-256), `BlockEntry` and
  `IndexerConfig` (`light_mode`, `address_search`, `index_unspendables`,
  `network` among `bitcoin`, `testnet`, `signet`, `regtest`). The functions
  `add_transaction`, `add_blocks`, `index_transaction`, `index_blocks` and
  `get_previous_txos` turn blocks into rows; `load_blockhashes` reads block
  markers back. `Store.open(path)` opens the `txstore`, `history` and
  `cache` databases under one directory; `done_initial_sync()` is true once
  a tip has been stored under key `t`.
- `chainindex.chainquery`: `ChainQuery(store, headers)` reads the index.
  `headers` is a `HeaderIndex` that the caller fills with `add(blockhash,
  height, time)`; only blocks in it count as confirmed. Queries:
  `tx_confirming_block`, `history_txids`, `utxo`, `stats`, `lookup_spend`,
  `lookup_raw_txn`, `lookup_txo` and `address_search`. UTXO sets and stats
  are cached in the cache database once a script has more than 100 history
  entries; `utxo` raises `TooPopular` when the set grows past `limit`. The
  pure functions `utxo_delta` and `stats_delta` do the accumulation.
- `chainindex.blkfiles`: `parse_blocks(blob, magic)` splits the contents
  of a `blk*.dat` file into `(raw block, size)` pairs, skipping bytes that
  are not the magic and records that hold only a magic and size;
  `read_blk_files` and `iter_blocks` do the same over a list of paths.
  `FetchFrom` names the two block sources.
- `chainindex.precache`: `to_scripthash` builds a script hash from an
  `address` (base58 P2PKH/P2SH or bech32/bech32m segwit, mainnet, testnet or
  regtest), a hex `scripthash` or a hex `scriptpubkey`;
  `scripthashes_from_file` reads `type,value` lines; `precache(chain,
  scripthashes)` calls `chain.stats` for each on a pool of 16 threads.
- `chainindex.registry`: `AssetRegistry` loads asset metadata from
  `<directory>/<2-char prefix>/<asset id>.json` (`fs_sync`, or
  `spawn_sync` for a background thread syncing every 15 seconds) and lists
  it with `list(start_index, limit, sorting)`. `AssetSorting.from_query_params`
  reads `sort_field` (`name`, `domain`, `ticker`; default `ticker`) and
  `sort_dir` (`asc`, `desc`; default `asc`).
- `chainindex.metrics`: `Metrics` registers `Counter`, `Gauge` and
  `Histogram` metrics and labelled families (`MetricVec`), renders them in
  the Prometheus text format with `render()`, and `start()` serves them
  over HTTP while exporting process CPU time, resident memory and open file
  descriptors (read by `parse_stats` from `/proc`).
- `chainindex.errors`: `ElectrsError` and its subclasses
  `ConnectionFailure`, `Interrupted` and `TooPopular`.

## Examples

Script hashes:

```python
from chainindex.rows import compute_script_hash
from chainindex.precache import to_scripthash

script = bytes.fromhex("76a914" + "00" * 20 + "88ac")
assert to_scripthash("scriptpubkey", script.hex()) == compute_script_hash(script)
```

Indexing a block and querying it:

```python
from chainindex.chainquery import ChainQuery, HeaderIndex
from chainindex.indexing import (
    BlockEntry, IndexerConfig, Store, Transaction, TxInput, TxOutput,
    add_blocks, index_blocks,
)
from chainindex.rows import compute_script_hash

script = bytes.fromhex("76a914" + "11" * 20 + "88ac")
coinbase = Transaction([TxInput(bytes(32), 0xFFFF_FFFF)], [TxOutput(5_000_000_000, script)])
block = BlockEntry(hash=b"\x01" * 32, height=0, header=bytes(80), txdata=[coinbase])
config = IndexerConfig(address_search=True)

with Store.open("index-dir") as store:
    store.txstore_db.write(add_blocks([block], config))
    store.history_db.write(index_blocks([block], {}, config))
    headers = HeaderIndex()
    headers.add(block.hash, 0)
    chain = ChainQuery(store, headers)
    utxos = chain.utxo(compute_script_hash(script), 100)
    addresses = chain.address_search("1", 10)
```

Blocks that spend earlier outputs need those outputs passed to
`index_blocks`; `get_previous_txos` lists them and `ChainQuery.lookup_txo`
reads them back from the transaction database.

Listing registry assets, sorted by name in descending order:

```python
from chainindex.registry import AssetRegistry, AssetSorting

registry = AssetRegistry("assets-dir")
registry.fs_sync()
sorting = AssetSorting.from_query_params({"sort_field": "name", "sort_dir": "desc"})
total, page = registry.list(0, 25, sorting)
```

Splitting a block file into raw blocks:

```python
from chainindex.blkfiles import parse_blocks

with open("blk00000.dat", "rb") as f:
    blocks = parse_blocks(f.read(), 0xD9B4BEF9)
```

## What it does not do

- It does not talk to a node: there is no RPC client, so blocks, headers
  and mempool transactions must be supplied by the caller, and the best
  chain is whatever the caller puts into `HeaderIndex`.
- It does not decode raw blocks from `blk*.dat` files into `BlockEntry`
  objects; `parse_blocks` only cuts the file into raw block bytes.
- Transactions are handled in their non-witness serialization only, and
  `BlockEntry.weight` is simply four times its size.
- There is no mempool tracking, no Electrum protocol server, no REST API
  and no command-line program. The only server is the metrics endpoint
  started by `Metrics.start()`.

## Testing

The test suite uses pytest and is installed with the `test` extra:

```
pip install -e .[test]
pytest
```