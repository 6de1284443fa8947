"""Key and value layouts of the rows kept in the index databases.

Keys are laid out field by field, with no length prefixes for fixed-size
hashes. History keys use big-endian integers so that a byte-ordered scan
visits them by confirmation height. Every other row uses little-endian
integers.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Iterable, Mapping, Union

from .db import DBRow
from .errors import ElectrsError

HASH_LEN = 32
U32_MAX = 0xFFFF_FFFF

HISTORY_CODE = ord("H")
TX_CODE = ord("T")
TX_CONF_CODE = ord("C")
TX_OUT_CODE = ord("O")
TX_EDGE_CODE = ord("S")
BLOCK_HEADER_CODE = ord("B")
BLOCK_TXIDS_CODE = ord("X")
BLOCK_META_CODE = ord("M")
BLOCK_DONE_CODE = ord("D")
STATS_CACHE_CODE = ord("A")
UTXO_CACHE_CODE = ord("U")

_FUNDING_VARIANT = 0
_SPENDING_VARIANT = 1

_FUNDING_BIG = struct.Struct(">32sHQ")
_SPENDING_BIG = struct.Struct(">32sH32sHQ")
_HISTORY_PREFIX = struct.Struct(">B32sI")
_VARIANT_BIG = struct.Struct(">I")
_TX_CONF_KEY = struct.Struct("<B32s32s")
_TX_OUT_KEY = struct.Struct("<B32sH")
_TX_EDGE_KEY = struct.Struct("<B32sH32sH")
_CODE_HASH = struct.Struct("<B32s")
_STATS_VALUE = struct.Struct("<QQQQQ32s")
_LEN = struct.Struct("<Q")
_UTXO_ENTRY = struct.Struct("<32sIIQ")


def full_hash(data: bytes) -> bytes:
    """Return data as a 32-byte hash, refusing any other length."""
    data = bytes(data)
    if len(data) != HASH_LEN:
        raise ValueError(f"expected a {HASH_LEN}-byte hash, got {len(data)} bytes")
    return data


def compute_script_hash(script: bytes) -> bytes:
    """SHA-256 of a serialized output script."""
    return hashlib.sha256(bytes(script)).digest()


class _Reader:
    def __init__(self, data: bytes, what: str) -> None:
        self._data = bytes(data)
        self._pos = 0
        self._what = what

    def unpack(self, layout: struct.Struct) -> tuple:
        end = self._pos + layout.size
        if end > len(self._data):
            raise ElectrsError(f"failed to parse {self._what}: truncated data")
        values = layout.unpack_from(self._data, self._pos)
        self._pos = end
        return values

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise ElectrsError(f"failed to parse {self._what}: trailing bytes")


@dataclass(frozen=True, order=True)
class OutPoint:
    """A transaction output, named by its txid and index."""

    txid: bytes
    vout: int


@dataclass(frozen=True)
class BlockId:
    """Where a block sits in the best chain."""

    height: int
    hash: bytes
    time: int


@dataclass(frozen=True)
class FundingInfo:
    """An output paying to a script."""

    txid: bytes
    vout: int
    value: int


@dataclass(frozen=True)
class SpendingInfo:
    """An input spending an output that paid to a script."""

    txid: bytes
    vin: int
    prev_txid: bytes
    prev_vout: int
    value: int


TxHistoryInfo = Union[FundingInfo, SpendingInfo]


@dataclass
class ScriptStats:
    """Aggregated funding and spending counts of one script."""

    tx_count: int = 0
    funded_txo_count: int = 0
    spent_txo_count: int = 0
    funded_txo_sum: int = 0
    spent_txo_sum: int = 0


def _encode_txinfo(info: TxHistoryInfo) -> bytes:
    if isinstance(info, FundingInfo):
        return _VARIANT_BIG.pack(_FUNDING_VARIANT) + _FUNDING_BIG.pack(
            full_hash(info.txid), info.vout, info.value
        )
    if isinstance(info, SpendingInfo):
        return _VARIANT_BIG.pack(_SPENDING_VARIANT) + _SPENDING_BIG.pack(
            full_hash(info.txid),
            info.vin,
            full_hash(info.prev_txid),
            info.prev_vout,
            info.value,
        )
    raise TypeError(f"unsupported history entry: {info!r}")


def _decode_txinfo(reader: _Reader) -> TxHistoryInfo:
    (variant,) = reader.unpack(_VARIANT_BIG)
    if variant == _FUNDING_VARIANT:
        return FundingInfo(*reader.unpack(_FUNDING_BIG))
    if variant == _SPENDING_VARIANT:
        return SpendingInfo(*reader.unpack(_SPENDING_BIG))
    raise ElectrsError(f"failed to parse TxHistoryKey: unknown variant {variant}")


@dataclass(frozen=True)
class TxHistoryRow:
    """A funding or spending event in the history of a script."""

    code: int
    hash: bytes
    confirmed_height: int
    txinfo: TxHistoryInfo

    @classmethod
    def for_script(
        cls, script: bytes, confirmed_height: int, txinfo: TxHistoryInfo
    ) -> "TxHistoryRow":
        return cls(HISTORY_CODE, compute_script_hash(script), confirmed_height, txinfo)

    @staticmethod
    def filter(code: int, hash_prefix: bytes) -> bytes:
        return bytes([code]) + bytes(hash_prefix)

    @staticmethod
    def prefix_height(code: int, hash: bytes, height: int) -> bytes:
        return _HISTORY_PREFIX.pack(code, full_hash(hash), height)

    @staticmethod
    def prefix_end(code: int, hash: bytes) -> bytes:
        return _HISTORY_PREFIX.pack(code, full_hash(hash), U32_MAX)

    def into_row(self) -> DBRow:
        key = self.prefix_height(self.code, self.hash, self.confirmed_height)
        return DBRow(key + _encode_txinfo(self.txinfo), b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxHistoryRow":
        reader = _Reader(row.key, "TxHistoryKey")
        code, hash_, height = reader.unpack(_HISTORY_PREFIX)
        txinfo = _decode_txinfo(reader)
        reader.finish()
        return cls(code, hash_, height, txinfo)

    def get_txid(self) -> bytes:
        return self.txinfo.txid

    def get_funded_outpoint(self) -> OutPoint:
        """The output that was funded, or the previous output that was spent."""
        info = self.txinfo
        if isinstance(info, FundingInfo):
            return OutPoint(info.txid, info.vout)
        return OutPoint(info.prev_txid, info.prev_vout)


@dataclass(frozen=True)
class TxRow:
    """A raw transaction, keyed by its txid."""

    txid: bytes
    raw: bytes

    @staticmethod
    def key(prefix: bytes) -> bytes:
        return bytes([TX_CODE]) + bytes(prefix)

    def into_row(self) -> DBRow:
        return DBRow(self.key(full_hash(self.txid)), bytes(self.raw))


@dataclass(frozen=True)
class TxConfRow:
    """Marks a transaction as included in a block."""

    txid: bytes
    blockhash: bytes

    @staticmethod
    def filter(prefix: bytes) -> bytes:
        return bytes([TX_CONF_CODE]) + bytes(prefix)

    def into_row(self) -> DBRow:
        key = _TX_CONF_KEY.pack(
            TX_CONF_CODE, full_hash(self.txid), full_hash(self.blockhash)
        )
        return DBRow(key, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxConfRow":
        reader = _Reader(row.key, "TxConfKey")
        _, txid, blockhash = reader.unpack(_TX_CONF_KEY)
        reader.finish()
        return cls(txid, blockhash)


@dataclass(frozen=True)
class TxOutRow:
    """A serialized transaction output, keyed by its outpoint."""

    txid: bytes
    vout: int
    txout: bytes

    @staticmethod
    def key(outpoint: OutPoint) -> bytes:
        return _TX_OUT_KEY.pack(
            TX_OUT_CODE, full_hash(outpoint.txid), outpoint.vout & 0xFFFF
        )

    def into_row(self) -> DBRow:
        return DBRow(self.key(OutPoint(self.txid, self.vout)), bytes(self.txout))


@dataclass(frozen=True)
class TxEdgeRow:
    """Links a funded output to the input that spends it."""

    funding_txid: bytes
    funding_vout: int
    spending_txid: bytes
    spending_vin: int

    @staticmethod
    def filter(outpoint: OutPoint) -> bytes:
        return _TX_OUT_KEY.pack(
            TX_EDGE_CODE, full_hash(outpoint.txid), outpoint.vout & 0xFFFF
        )

    def into_row(self) -> DBRow:
        key = _TX_EDGE_KEY.pack(
            TX_EDGE_CODE,
            full_hash(self.funding_txid),
            self.funding_vout,
            full_hash(self.spending_txid),
            self.spending_vin,
        )
        return DBRow(key, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxEdgeRow":
        reader = _Reader(row.key, "TxEdgeKey")
        _, funding_txid, funding_vout, spending_txid, spending_vin = reader.unpack(
            _TX_EDGE_KEY
        )
        reader.finish()
        return cls(funding_txid, funding_vout, spending_txid, spending_vin)


def encode_txids(txids: Iterable[bytes]) -> bytes:
    """Serialize a list of txids as a length-prefixed sequence."""
    txids = [full_hash(txid) for txid in txids]
    return _LEN.pack(len(txids)) + b"".join(txids)


def decode_txids(value: bytes) -> list[bytes]:
    """Inverse of encode_txids."""
    reader = _Reader(value, "block txids")
    (count,) = reader.unpack(_LEN)
    hash_layout = struct.Struct("32s")
    txids = [reader.unpack(hash_layout)[0] for _ in range(count)]
    reader.finish()
    return txids


@dataclass(frozen=True)
class BlockRow:
    """Per-block rows: header, txid list, metadata and completion marker."""

    code: int
    hash: bytes
    value: bytes = b""

    @classmethod
    def new_header(cls, hash: bytes, header: bytes) -> "BlockRow":
        return cls(BLOCK_HEADER_CODE, hash, bytes(header))

    @classmethod
    def new_txids(cls, hash: bytes, txids: Iterable[bytes]) -> "BlockRow":
        return cls(BLOCK_TXIDS_CODE, hash, encode_txids(txids))

    @classmethod
    def new_meta(cls, hash: bytes, meta: bytes) -> "BlockRow":
        return cls(BLOCK_META_CODE, hash, bytes(meta))

    @classmethod
    def new_done(cls, hash: bytes) -> "BlockRow":
        return cls(BLOCK_DONE_CODE, hash)

    @staticmethod
    def header_filter() -> bytes:
        return bytes([BLOCK_HEADER_CODE])

    @staticmethod
    def done_filter() -> bytes:
        return bytes([BLOCK_DONE_CODE])

    @staticmethod
    def txids_key(hash: bytes) -> bytes:
        return bytes([BLOCK_TXIDS_CODE]) + full_hash(hash)

    @staticmethod
    def meta_key(hash: bytes) -> bytes:
        return bytes([BLOCK_META_CODE]) + full_hash(hash)

    def into_row(self) -> DBRow:
        return DBRow(_CODE_HASH.pack(self.code, full_hash(self.hash)), bytes(self.value))

    @classmethod
    def from_row(cls, row: DBRow) -> "BlockRow":
        reader = _Reader(row.key, "BlockKey")
        code, hash_ = reader.unpack(_CODE_HASH)
        reader.finish()
        return cls(code, hash_, row.value)


def stats_cache_key(scripthash: bytes) -> bytes:
    return bytes([STATS_CACHE_CODE]) + bytes(scripthash)


def utxo_cache_key(scripthash: bytes) -> bytes:
    return bytes([UTXO_CACHE_CODE]) + bytes(scripthash)


def stats_cache_row(scripthash: bytes, stats: ScriptStats, blockhash: bytes) -> DBRow:
    """Cached stats of a script, valid up to the given block."""
    value = _STATS_VALUE.pack(
        stats.tx_count,
        stats.funded_txo_count,
        stats.spent_txo_count,
        stats.funded_txo_sum,
        stats.spent_txo_sum,
        full_hash(blockhash),
    )
    return DBRow(_CODE_HASH.pack(STATS_CACHE_CODE, full_hash(scripthash)), value)


def decode_stats_cache(value: bytes) -> tuple[ScriptStats, bytes]:
    reader = _Reader(value, "stats cache")
    *counts, blockhash = reader.unpack(_STATS_VALUE)
    reader.finish()
    return ScriptStats(*counts), blockhash


def utxo_cache_row(
    scripthash: bytes,
    utxos: Mapping[tuple[bytes, int], tuple[int, int]],
    blockhash: bytes,
) -> DBRow:
    """Cached unspent outputs of a script: (txid, vout) -> (height, value)."""
    entries = sorted(utxos.items())
    value = _LEN.pack(len(entries)) + b"".join(
        _UTXO_ENTRY.pack(full_hash(txid), vout, height, amount)
        for (txid, vout), (height, amount) in entries
    )
    value += full_hash(blockhash)
    return DBRow(_CODE_HASH.pack(UTXO_CACHE_CODE, full_hash(scripthash)), value)


def decode_utxo_cache(
    value: bytes,
) -> tuple[dict[tuple[bytes, int], tuple[int, int]], bytes]:
    reader = _Reader(value, "utxo cache")
    (count,) = reader.unpack(_LEN)
    utxos = {}
    for _ in range(count):
        txid, vout, height, amount = reader.unpack(_UTXO_ENTRY)
        utxos[(txid, vout)] = (height, amount)
    (blockhash,) = reader.unpack(struct.Struct("32s"))
    reader.finish()
    return utxos, blockhash


def addr_search_row(address: str) -> DBRow:
    """Row that makes an address findable by prefix search."""
    return DBRow(b"a" + address.encode(), b"")


def addr_search_filter(prefix: str) -> bytes:
    return b"a" + prefix.encode()