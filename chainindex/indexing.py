"""Turning blocks into the rows of the transaction and history databases."""

from __future__ import annotations

import hashlib
import logging
import struct
import threading
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from .db import DB, DBRow
from .errors import ElectrsError
from .rows import (
    BlockRow,
    FundingInfo,
    OutPoint,
    SpendingInfo,
    TxConfRow,
    TxEdgeRow,
    TxHistoryRow,
    TxOutRow,
    TxRow,
    addr_search_row,
)

logger = logging.getLogger(__name__)

NULL_TXID = bytes(32)
COINBASE_VOUT = 0xFFFF_FFFF
OP_RETURN = 0x6A

_U16 = 0xFFFF
_BLOCK_META = struct.Struct("<III")
_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_GEN = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3

# network -> (p2pkh version, p2sh version, bech32 human readable part)
_NETWORKS = {
    "bitcoin": (0x00, 0x05, "bc"),
    "testnet": (0x6F, 0xC4, "tb"),
    "signet": (0x6F, 0xC4, "tb"),
    "regtest": (0x6F, 0xC4, "bcrt"),
}


def _sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFF_FFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


class _Cursor:
    def __init__(self, data: bytes, what: str) -> None:
        self._data = bytes(data)
        self._pos = 0
        self._what = what

    def read(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ElectrsError(f"failed to parse {self._what}: truncated data")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str):
        layout = struct.Struct(fmt)
        return layout.unpack(self.read(layout.size))[0]

    def varint(self) -> int:
        first = self.read(1)[0]
        if first < 0xFD:
            return first
        return self.unpack({0xFD: "<H", 0xFE: "<I", 0xFF: "<Q"}[first])

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise ElectrsError(f"failed to parse {self._what}: trailing bytes")


@dataclass(frozen=True)
class TxInput:
    """A transaction input and the output it refers to."""

    prev_txid: bytes
    prev_vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFF_FFFF

    @property
    def previous_output(self) -> OutPoint:
        return OutPoint(self.prev_txid, self.prev_vout)

    @property
    def has_prevout(self) -> bool:
        """False for coinbase inputs, which spend nothing."""
        return not (self.prev_txid == NULL_TXID and self.prev_vout == COINBASE_VOUT)

    def serialize(self) -> bytes:
        return (
            bytes(self.prev_txid)
            + struct.pack("<I", self.prev_vout)
            + _varint(len(self.script_sig))
            + bytes(self.script_sig)
            + struct.pack("<I", self.sequence)
        )


@dataclass(frozen=True)
class TxOutput:
    """An amount locked by an output script."""

    value: int
    script_pubkey: bytes

    @property
    def is_spendable(self) -> bool:
        """False for outputs that provably can never be spent."""
        return not (self.script_pubkey and self.script_pubkey[0] == OP_RETURN)

    def serialize(self) -> bytes:
        return (
            struct.pack("<Q", self.value)
            + _varint(len(self.script_pubkey))
            + bytes(self.script_pubkey)
        )

    @classmethod
    def _read(cls, cursor: _Cursor) -> "TxOutput":
        value = cursor.unpack("<Q")
        script = cursor.read(cursor.varint())
        return cls(value, script)

    @classmethod
    def from_bytes(cls, data: bytes) -> "TxOutput":
        cursor = _Cursor(data, "TxOut")
        txout = cls._read(cursor)
        cursor.finish()
        return txout


@dataclass(frozen=True)
class Transaction:
    """A transaction in its non-witness serialization."""

    inputs: Sequence[TxInput]
    outputs: Sequence[TxOutput]
    version: int = 1
    locktime: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))

    def serialize(self) -> bytes:
        parts = [struct.pack("<i", self.version), _varint(len(self.inputs))]
        parts.extend(txin.serialize() for txin in self.inputs)
        parts.append(_varint(len(self.outputs)))
        parts.extend(txout.serialize() for txout in self.outputs)
        parts.append(struct.pack("<I", self.locktime))
        return b"".join(parts)

    @cached_property
    def txid(self) -> bytes:
        return _sha256d(self.serialize())

    @classmethod
    def from_bytes(cls, data: bytes) -> "Transaction":
        cursor = _Cursor(data, "Transaction")
        version = cursor.unpack("<i")
        inputs = []
        for _ in range(cursor.varint()):
            prev_txid = cursor.read(32)
            prev_vout = cursor.unpack("<I")
            script_sig = cursor.read(cursor.varint())
            sequence = cursor.unpack("<I")
            inputs.append(TxInput(prev_txid, prev_vout, script_sig, sequence))
        outputs = [TxOutput._read(cursor) for _ in range(cursor.varint())]
        locktime = cursor.unpack("<I")
        cursor.finish()
        return cls(inputs, outputs, version, locktime)


@dataclass(frozen=True)
class BlockEntry:
    """A fetched block together with its position in the chain."""

    hash: bytes
    height: int
    header: bytes
    txdata: Sequence[Transaction] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "txdata", tuple(self.txdata))

    @property
    def size(self) -> int:
        return (
            len(self.header)
            + len(_varint(len(self.txdata)))
            + sum(len(tx.serialize()) for tx in self.txdata)
        )

    @property
    def weight(self) -> int:
        return self.size * 4

    def meta(self) -> bytes:
        """Serialized (tx_count, size, weight) of the block."""
        return _BLOCK_META.pack(len(self.txdata), self.size, self.weight)


@dataclass(frozen=True)
class IndexerConfig:
    """The settings that decide which rows get written."""

    light_mode: bool = False
    address_search: bool = False
    index_unspendables: bool = False
    network: str = "bitcoin"

    def __post_init__(self) -> None:
        if self.network not in _NETWORKS:
            raise ValueError(f"unknown network {self.network!r}")


def _base58check_encode(payload: bytes) -> str:
    data = payload + _sha256d(payload)[:4]
    number = int.from_bytes(data, "big")
    chars = []
    while number:
        number, digit = divmod(number, 58)
        chars.append(_B58_ALPHABET[digit])
    leading = len(data) - len(data.lstrip(b"\x00"))
    return "1" * leading + "".join(reversed(chars))


def _polymod(values: Iterable[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for bit, gen in enumerate(_BECH32_GEN):
            if (top >> bit) & 1:
                chk ^= gen
    return chk


def _to_5bit(data: bytes) -> list[int]:
    acc = 0
    bits = 0
    out = []
    for byte in data:
        acc = ((acc << 8) | byte) & 0xFFFF
        bits += 8
        while bits >= 5:
            bits -= 5
            out.append((acc >> bits) & 31)
    if bits:
        out.append((acc << (5 - bits)) & 31)
    return out


def _segwit_address(hrp: str, version: int, program: bytes) -> str:
    data = [version] + _to_5bit(program)
    const = _BECH32_CONST if version == 0 else _BECH32M_CONST
    expanded = [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]
    polymod = _polymod(expanded + data + [0] * 6) ^ const
    checksum = [(polymod >> (5 * (5 - i))) & 31 for i in range(6)]
    return hrp + "1" + "".join(_BECH32_CHARSET[d] for d in data + checksum)


def script_to_address(script: bytes, network: str = "bitcoin") -> str | None:
    """Return the address of a standard output script, or None."""
    try:
        p2pkh, p2sh, hrp = _NETWORKS[network]
    except KeyError:
        raise ValueError(f"unknown network {network!r}") from None
    script = bytes(script)
    if (
        len(script) == 25
        and script[:3] == b"\x76\xa9\x14"
        and script[23:] == b"\x88\xac"
    ):
        return _base58check_encode(bytes([p2pkh]) + script[3:23])
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return _base58check_encode(bytes([p2sh]) + script[2:22])
    if (
        4 <= len(script) <= 42
        and script[1] == len(script) - 2
        and (script[0] == 0 or 0x51 <= script[0] <= 0x60)
    ):
        version = 0 if script[0] == 0 else script[0] - 0x50
        program = script[2:]
        if version == 0 and len(program) not in (20, 32):
            return None
        return _segwit_address(hrp, version, program)
    return None


def load_blockhashes(db: DB, prefix: bytes) -> set[bytes]:
    """Hashes of every block row under prefix."""
    return {BlockRow.from_row(row).hash for row in db.iter_scan(prefix)}


def _load_blockheaders(db: DB) -> dict[bytes, bytes]:
    return {
        block.hash: block.value
        for block in map(BlockRow.from_row, db.iter_scan(BlockRow.header_filter()))
    }


class Store:
    """The three databases of the index and what was loaded from them."""

    def __init__(self, txstore_db: DB, history_db: DB, cache_db: DB) -> None:
        self.txstore_db = txstore_db
        self.history_db = history_db
        self.cache_db = cache_db
        self.lock = threading.RLock()
        self.added_blockhashes = load_blockhashes(txstore_db, BlockRow.done_filter())
        logger.debug("%d blocks were added", len(self.added_blockhashes))
        self.indexed_blockhashes = load_blockhashes(
            history_db, BlockRow.done_filter()
        )
        logger.debug("%d blocks were indexed", len(self.indexed_blockhashes))
        self.headers = _load_blockheaders(txstore_db) if self.tip is not None else {}

    @classmethod
    def open(cls, path, light_mode: bool = False) -> "Store":
        path = Path(path)
        opened: list[DB] = []
        try:
            for name in ("txstore", "history", "cache"):
                opened.append(DB.open(path / name, light_mode))
            return cls(*opened)
        except BaseException:
            for db in opened:
                db.close()
            raise

    @property
    def tip(self) -> bytes | None:
        """Hash of the last synced block, if any."""
        return self.txstore_db.get(b"t")

    def done_initial_sync(self) -> bool:
        return self.tip is not None

    def close(self) -> None:
        for db in (self.txstore_db, self.history_db, self.cache_db):
            db.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def add_transaction(
    tx: Transaction, blockhash: bytes, iconfig: IndexerConfig
) -> list[DBRow]:
    """Rows that record a confirmed transaction and its spendable outputs."""
    rows = [TxConfRow(tx.txid, blockhash).into_row()]
    if not iconfig.light_mode:
        rows.append(TxRow(tx.txid, tx.serialize()).into_row())
    for index, txo in enumerate(tx.outputs):
        if txo.is_spendable:
            rows.append(TxOutRow(tx.txid, index, txo.serialize()).into_row())
    return rows


def add_blocks(
    block_entries: Iterable[BlockEntry], iconfig: IndexerConfig
) -> list[DBRow]:
    """Rows for the transactions, header, txids and metadata of each block."""
    rows: list[DBRow] = []
    for block in block_entries:
        for tx in block.txdata:
            rows.extend(add_transaction(tx, block.hash, iconfig))
        if not iconfig.light_mode:
            txids = [tx.txid for tx in block.txdata]
            rows.append(BlockRow.new_txids(block.hash, txids).into_row())
            rows.append(BlockRow.new_meta(block.hash, block.meta()).into_row())
        rows.append(BlockRow.new_header(block.hash, block.header).into_row())
        rows.append(BlockRow.new_done(block.hash).into_row())
    return rows


def index_transaction(
    tx: Transaction,
    confirmed_height: int,
    previous_txos: Mapping[OutPoint, TxOutput],
    iconfig: IndexerConfig,
) -> list[DBRow]:
    """History rows for every funded and spent output, plus spend edges."""
    rows: list[DBRow] = []
    txid = tx.txid
    for index, txo in enumerate(tx.outputs):
        if not (txo.is_spendable or iconfig.index_unspendables):
            continue
        history = TxHistoryRow.for_script(
            txo.script_pubkey,
            confirmed_height,
            FundingInfo(txid, index & _U16, txo.value),
        )
        rows.append(history.into_row())
        if iconfig.address_search:
            address = script_to_address(txo.script_pubkey, iconfig.network)
            if address is not None:
                rows.append(addr_search_row(address))
    for index, txi in enumerate(tx.inputs):
        if not txi.has_prevout:
            continue
        prevout = txi.previous_output
        prev_txo = previous_txos.get(prevout)
        if prev_txo is None:
            raise ElectrsError(
                f"missing previous txo {prevout.txid[::-1].hex()}:{prevout.vout}"
            )
        history = TxHistoryRow.for_script(
            prev_txo.script_pubkey,
            confirmed_height,
            SpendingInfo(
                txid,
                index & _U16,
                txi.prev_txid,
                txi.prev_vout & _U16,
                prev_txo.value,
            ),
        )
        rows.append(history.into_row())
        edge = TxEdgeRow(txi.prev_txid, txi.prev_vout & _U16, txid, index & _U16)
        rows.append(edge.into_row())
    return rows


def index_blocks(
    block_entries: Iterable[BlockEntry],
    previous_txos: Mapping[OutPoint, TxOutput],
    iconfig: IndexerConfig,
) -> list[DBRow]:
    """History rows of every transaction, and a marker for each indexed block."""
    rows: list[DBRow] = []
    for block in block_entries:
        for tx in block.txdata:
            rows.extend(index_transaction(tx, block.height, previous_txos, iconfig))
        rows.append(BlockRow.new_done(block.hash).into_row())
    return rows


def get_previous_txos(block_entries: Iterable[BlockEntry]) -> set[OutPoint]:
    """Outputs spent by the inputs of the given blocks."""
    return {
        txin.previous_output
        for block in block_entries
        for tx in block.txdata
        for txin in tx.inputs
        if txin.has_prevout
    }