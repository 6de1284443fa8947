"""Read-side queries over the transaction, history and cache databases."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from itertools import islice
from typing import Iterable, Iterator

from .db import DBFlush
from .errors import ElectrsError, TooPopular
from .indexing import Store, TxOutput
from .rows import (
    HISTORY_CODE,
    BlockId,
    FundingInfo,
    OutPoint,
    ScriptStats,
    TxConfRow,
    TxEdgeRow,
    TxHistoryRow,
    TxOutRow,
    TxRow,
    addr_search_filter,
    decode_stats_cache,
    decode_utxo_cache,
    stats_cache_key,
    stats_cache_row,
    utxo_cache_key,
    utxo_cache_row,
)

logger = logging.getLogger(__name__)

MIN_HISTORY_ITEMS_TO_CACHE = 100

UtxoMap = dict[OutPoint, tuple[BlockId, int]]


class HeaderIndex:
    """Blocks of the best chain, looked up by hash or by height."""

    def __init__(self) -> None:
        self._by_hash: dict[bytes, BlockId] = {}
        self._by_height: dict[int, BlockId] = {}
        self._lock = threading.RLock()

    def add(self, blockhash: bytes, height: int, time: int = 0) -> BlockId:
        """Put a block at a height, replacing any block that was there."""
        blockid = BlockId(height, bytes(blockhash), time)
        with self._lock:
            replaced = self._by_height.get(height)
            if replaced is not None:
                self._by_hash.pop(replaced.hash, None)
            stale = self._by_hash.get(blockid.hash)
            if stale is not None:
                self._by_height.pop(stale.height, None)
            self._by_height[height] = blockid
            self._by_hash[blockid.hash] = blockid
        return blockid

    def by_hash(self, blockhash: bytes) -> BlockId | None:
        """The block with this hash, or None if it is not in the best chain."""
        with self._lock:
            return self._by_hash.get(bytes(blockhash))

    def by_height(self, height: int) -> BlockId | None:
        with self._lock:
            return self._by_height.get(height)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_height)


@dataclass(frozen=True)
class Utxo:
    """An unspent output of a script."""

    txid: bytes
    vout: int
    value: int
    confirmed: BlockId | None = None

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)


@dataclass(frozen=True)
class SpendingInput:
    """The input that spends an output."""

    txid: bytes
    vin: int
    confirmed: BlockId | None = None


def utxo_delta(
    history: Iterable[tuple[TxHistoryRow, BlockId]],
    init_utxos: UtxoMap,
    limit: int,
) -> tuple[UtxoMap, bytes | None, int]:
    """Apply confirmed history entries to a UTXO set.

    Returns the new set, the hash of the last block seen and the number of
    entries processed. Raises TooPopular once the set grows beyond limit.
    """
    utxos = dict(init_utxos)
    processed = 0
    lastblock = None
    for row, blockid in history:
        processed += 1
        lastblock = blockid.hash
        if isinstance(row.txinfo, FundingInfo):
            utxos[row.get_funded_outpoint()] = (blockid, row.txinfo.value)
        else:
            utxos.pop(row.get_funded_outpoint(), None)
        if len(utxos) > limit:
            raise TooPopular()
    return utxos, lastblock, processed


def stats_delta(
    history: Iterable[tuple[TxHistoryRow, BlockId]],
    init_stats: ScriptStats,
) -> tuple[ScriptStats, bytes | None]:
    """Add confirmed history entries to script stats."""
    stats = dataclasses.replace(init_stats)
    seen_txids: set[bytes] = set()
    lastblock = None
    for row, blockid in history:
        if lastblock != blockid.hash:
            seen_txids.clear()
        txid = row.get_txid()
        if txid not in seen_txids:
            seen_txids.add(txid)
            stats.tx_count += 1
        if isinstance(row.txinfo, FundingInfo):
            stats.funded_txo_count += 1
            stats.funded_txo_sum += row.txinfo.value
        else:
            stats.spent_txo_count += 1
            stats.spent_txo_sum += row.txinfo.value
        lastblock = blockid.hash
    return stats, lastblock


def _unique(items: Iterable[bytes]) -> Iterator[bytes]:
    seen: set[bytes] = set()
    for item in items:
        if item not in seen:
            seen.add(item)
            yield item


class ChainQuery:
    """Answers questions about confirmed transactions from the index."""

    def __init__(self, store: Store, headers: HeaderIndex) -> None:
        self.store = store
        self.headers = headers

    def _history_scan(
        self, code: int, hash: bytes, start_height: int
    ) -> Iterator[TxHistoryRow]:
        rows = self.store.history_db.iter_scan_from(
            TxHistoryRow.filter(code, hash),
            TxHistoryRow.prefix_height(code, hash, start_height),
        )
        return map(TxHistoryRow.from_row, rows)

    def _confirmed_history(
        self, scripthash: bytes, start_height: int, exact_height: bool = False
    ) -> Iterator[tuple[TxHistoryRow, BlockId]]:
        for row in self._history_scan(HISTORY_CODE, scripthash, start_height):
            blockid = self.tx_confirming_block(row.get_txid())
            if blockid is None:
                continue
            # Entries confirmed in a block that was later re-orged out and
            # confirmed again elsewhere are dropped.
            if exact_height and blockid.height != row.confirmed_height:
                continue
            yield row, blockid

    def tx_confirming_block(self, txid: bytes) -> BlockId | None:
        """The best-chain block that confirms txid, or None."""
        for db_row in self.store.txstore_db.iter_scan(TxConfRow.filter(txid)):
            blockid = self.headers.by_hash(TxConfRow.from_row(db_row).blockhash)
            if blockid is not None:
                return blockid
        return None

    def history_txids(
        self, scripthash: bytes, limit: int
    ) -> list[tuple[bytes, BlockId]]:
        """Confirmed txids touching a script, oldest first."""
        txids = _unique(
            row.get_txid() for row in self._history_scan(HISTORY_CODE, scripthash, 0)
        )
        confirmed = (
            (txid, blockid)
            for txid in txids
            if (blockid := self.tx_confirming_block(txid)) is not None
        )
        return list(islice(confirmed, limit))

    def _load_utxo_cache(self, scripthash: bytes) -> tuple[UtxoMap, int] | None:
        raw = self.store.cache_db.get(utxo_cache_key(scripthash))
        if raw is None:
            return None
        cached, blockhash = decode_utxo_cache(raw)
        tip = self.headers.by_hash(blockhash)
        if tip is None:
            return None
        utxos: UtxoMap = {}
        for (txid, vout), (height, value) in cached.items():
            blockid = self.headers.by_height(height)
            if blockid is None:
                raise ElectrsError("missing blockheader for valid utxo cache entry")
            utxos[OutPoint(txid, vout)] = (blockid, value)
        return utxos, tip.height

    def utxo(self, scripthash: bytes, limit: int) -> list[Utxo]:
        """Confirmed unspent outputs of a script, at most limit of them."""
        cached = self._load_utxo_cache(scripthash)
        had_cache = cached is not None
        if cached is None:
            init_utxos, start_height = {}, 0
        else:
            init_utxos, start_height = cached[0], cached[1] + 1

        utxos, lastblock, processed = utxo_delta(
            self._confirmed_history(scripthash, start_height), init_utxos, limit
        )

        if lastblock is not None and (
            had_cache or processed > MIN_HISTORY_ITEMS_TO_CACHE
        ):
            entries = {
                (outpoint.txid, outpoint.vout): (blockid.height, value)
                for outpoint, (blockid, value) in utxos.items()
            }
            self.store.cache_db.write(
                [utxo_cache_row(scripthash, entries, lastblock)], DBFlush.ENABLE
            )

        return [
            Utxo(outpoint.txid, outpoint.vout, value, blockid)
            for outpoint, (blockid, value) in utxos.items()
        ]

    def stats(self, scripthash: bytes) -> ScriptStats:
        """Confirmed funding and spending totals of a script."""
        init_stats, start_height = ScriptStats(), 0
        raw = self.store.cache_db.get(stats_cache_key(scripthash))
        if raw is not None:
            cached_stats, blockhash = decode_stats_cache(raw)
            tip = self.headers.by_hash(blockhash)
            if tip is not None:
                init_stats, start_height = cached_stats, tip.height + 1

        stats, lastblock = stats_delta(
            self._confirmed_history(scripthash, start_height, exact_height=True),
            init_stats,
        )

        if (
            lastblock is not None
            and stats.funded_txo_count + stats.spent_txo_count
            > MIN_HISTORY_ITEMS_TO_CACHE
        ):
            self.store.cache_db.write(
                [stats_cache_row(scripthash, stats, lastblock)], DBFlush.ENABLE
            )
        return stats

    def lookup_spend(self, outpoint: OutPoint) -> SpendingInput | None:
        """The confirmed input spending outpoint, or None."""
        for db_row in self.store.history_db.iter_scan(TxEdgeRow.filter(outpoint)):
            edge = TxEdgeRow.from_row(db_row)
            blockid = self.tx_confirming_block(edge.spending_txid)
            if blockid is not None:
                return SpendingInput(edge.spending_txid, edge.spending_vin, blockid)
        return None

    def lookup_raw_txn(self, txid: bytes) -> bytes | None:
        return self.store.txstore_db.get(TxRow.key(txid))

    def lookup_txo(self, outpoint: OutPoint) -> TxOutput | None:
        raw = self.store.txstore_db.get(TxOutRow.key(outpoint))
        return None if raw is None else TxOutput.from_bytes(raw)

    def address_search(self, prefix: str, limit: int) -> list[str]:
        """Indexed addresses that start with prefix, in sorted order."""
        rows = self.store.history_db.iter_scan(addr_search_filter(prefix))
        return [row.key[1:].decode() for row in islice(rows, limit)]