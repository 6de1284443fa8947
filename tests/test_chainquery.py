import pytest

from chainindex.chainquery import (
    ChainQuery,
    HeaderIndex,
    SpendingInput,
    Utxo,
    stats_delta,
    utxo_delta,
)
from chainindex.errors import TooPopular
from chainindex.indexing import (
    COINBASE_VOUT,
    NULL_TXID,
    BlockEntry,
    IndexerConfig,
    Store,
    Transaction,
    TxInput,
    TxOutput,
    add_blocks,
    index_blocks,
    script_to_address,
)
from chainindex.rows import (
    BlockId,
    FundingInfo,
    OutPoint,
    ScriptStats,
    SpendingInfo,
    TxHistoryRow,
    compute_script_hash,
    stats_cache_row,
    utxo_cache_row,
)

SCRIPT_A = b"\x76\xa9\x14" + bytes(20) + b"\x88\xac"
SCRIPT_B = b"\x00\x14" + bytes([7]) * 20
HASH0 = bytes([0x11]) * 32
HASH1 = bytes([0x22]) * 32
HEADER = bytes(80)

TX1 = Transaction([TxInput(NULL_TXID, COINBASE_VOUT, b"\x01")], [TxOutput(5000, SCRIPT_A)])
TX2 = Transaction([TxInput(TX1.txid, 0)], [TxOutput(4000, SCRIPT_B)])


@pytest.fixture
def chain(tmp_path):
    config = IndexerConfig(address_search=True)
    blocks = [
        BlockEntry(HASH0, 0, HEADER, [TX1]),
        BlockEntry(HASH1, 1, HEADER, [TX2]),
    ]
    store = Store.open(tmp_path)
    store.txstore_db.write(add_blocks(blocks, config))
    prev = {OutPoint(TX1.txid, 0): TX1.outputs[0]}
    store.history_db.write(index_blocks(blocks, prev, config))
    headers = HeaderIndex()
    headers.add(HASH0, 0, 100)
    headers.add(HASH1, 1, 200)
    yield ChainQuery(store, headers)
    store.close()


def test_header_index_lookup_and_replace():
    headers = HeaderIndex()
    first = headers.add(HASH0, 3, 10)
    assert headers.by_hash(HASH0) == first
    assert headers.by_height(3) == BlockId(3, HASH0, 10)
    headers.add(HASH1, 3, 11)
    assert headers.by_hash(HASH0) is None
    assert headers.by_height(3).hash == HASH1
    assert len(headers) == 1


def test_tx_confirming_block(chain):
    assert chain.tx_confirming_block(TX1.txid) == BlockId(0, HASH0, 100)
    assert chain.tx_confirming_block(TX2.txid) == BlockId(1, HASH1, 200)
    assert chain.tx_confirming_block(bytes(32)) is None


def test_orphaned_block_is_not_confirming(chain):
    chain.headers.add(bytes([0x33]) * 32, 1, 300)
    assert chain.tx_confirming_block(TX2.txid) is None


def test_history_txids(chain):
    scripthash = compute_script_hash(SCRIPT_A)
    result = chain.history_txids(scripthash, 10)
    assert [txid for txid, _ in result] == [TX1.txid, TX2.txid]
    assert [b.height for _, b in result] == [0, 1]
    assert chain.history_txids(scripthash, 1) == [(TX1.txid, BlockId(0, HASH0, 100))]


def test_utxo(chain):
    assert chain.utxo(compute_script_hash(SCRIPT_A), 10) == []
    utxos = chain.utxo(compute_script_hash(SCRIPT_B), 10)
    assert utxos == [Utxo(TX2.txid, 0, 4000, BlockId(1, HASH1, 200))]
    assert utxos[0].outpoint == OutPoint(TX2.txid, 0)


def test_utxo_too_popular(chain):
    with pytest.raises(TooPopular):
        chain.utxo(compute_script_hash(SCRIPT_B), 0)


def test_utxo_uses_cache(chain):
    scripthash = compute_script_hash(b"\x51")
    other = bytes([9]) * 32
    chain.store.cache_db.write([utxo_cache_row(scripthash, {(other, 2): (0, 7)}, HASH0)])
    assert chain.utxo(scripthash, 10) == [Utxo(other, 2, 7, BlockId(0, HASH0, 100))]


def test_utxo_cache_for_orphaned_block_is_ignored(chain):
    scripthash = compute_script_hash(SCRIPT_B)
    stale = bytes([0x44]) * 32
    chain.store.cache_db.write([utxo_cache_row(scripthash, {(bytes(32), 0): (0, 1)}, stale)])
    assert [u.txid for u in chain.utxo(scripthash, 10)] == [TX2.txid]


def test_stats(chain):
    stats = chain.stats(compute_script_hash(SCRIPT_A))
    assert stats == ScriptStats(
        tx_count=2,
        funded_txo_count=1,
        spent_txo_count=1,
        funded_txo_sum=5000,
        spent_txo_sum=5000,
    )


def test_stats_uses_cache(chain):
    scripthash = compute_script_hash(SCRIPT_A)
    cached = ScriptStats(9, 8, 7, 6, 5)
    chain.store.cache_db.write([stats_cache_row(scripthash, cached, HASH1)])
    assert chain.stats(scripthash) == cached


def test_lookup_spend(chain):
    spend = chain.lookup_spend(OutPoint(TX1.txid, 0))
    assert spend == SpendingInput(TX2.txid, 0, BlockId(1, HASH1, 200))
    assert chain.lookup_spend(OutPoint(TX2.txid, 0)) is None


def test_lookup_raw_txn_round_trip(chain):
    raw = chain.lookup_raw_txn(TX2.txid)
    assert raw == TX2.serialize()
    assert Transaction.from_bytes(raw).txid == TX2.txid
    assert chain.lookup_raw_txn(bytes(32)) is None


def test_lookup_txo(chain):
    assert chain.lookup_txo(OutPoint(TX1.txid, 0)) == TxOutput(5000, SCRIPT_A)
    assert chain.lookup_txo(OutPoint(TX1.txid, 1)) is None


def test_address_search(chain):
    address = script_to_address(SCRIPT_A)
    found = chain.address_search(address[:3], 10)
    assert address in found
    assert all(item.startswith(address[:3]) for item in found)
    assert chain.address_search(address[:3], 0) == []


def _funding(txid, vout, value, height):
    return TxHistoryRow(ord("H"), bytes(32), height, FundingInfo(txid, vout, value))


def _spending(txid, prev_txid, prev_vout, value, height):
    return TxHistoryRow(
        ord("H"), bytes(32), height, SpendingInfo(txid, 0, prev_txid, prev_vout, value)
    )


def test_utxo_delta_adds_and_removes():
    b0 = BlockId(0, HASH0, 1)
    b1 = BlockId(1, HASH1, 2)
    ta, tb = bytes([1]) * 32, bytes([2]) * 32
    history = [
        (_funding(ta, 0, 10, 0), b0),
        (_funding(ta, 1, 20, 0), b0),
        (_spending(tb, ta, 0, 10, 1), b1),
    ]
    init = {}
    utxos, lastblock, processed = utxo_delta(history, init, 5)
    assert utxos == {OutPoint(ta, 1): (b0, 20)}
    assert lastblock == HASH1
    assert processed == 3
    assert init == {}


def test_utxo_delta_limit():
    b0 = BlockId(0, HASH0, 1)
    history = [(_funding(bytes([1]) * 32, i, 1, 0), b0) for i in range(3)]
    with pytest.raises(TooPopular):
        utxo_delta(history, {}, 2)


def test_stats_delta_counts_txs_once_per_block():
    b0 = BlockId(0, HASH0, 1)
    ta = bytes([1]) * 32
    history = [(_funding(ta, 0, 10, 0), b0), (_funding(ta, 1, 20, 0), b0)]
    initial = ScriptStats()
    stats, lastblock = stats_delta(history, initial)
    assert stats.tx_count == 1
    assert stats.funded_txo_count == 2
    assert stats.funded_txo_sum == 30
    assert lastblock == HASH0
    assert initial == ScriptStats()


def test_stats_delta_empty_history():
    start = ScriptStats(1, 2, 3, 4, 5)
    stats, lastblock = stats_delta([], start)
    assert stats == start
    assert lastblock is None