"""Warm the stats cache for a list of scripts read from a file."""

from __future__ import annotations

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from string import hexdigits
from typing import Iterable

from .errors import ElectrsError
from .rows import HASH_LEN, compute_script_hash

logger = logging.getLogger(__name__)

PRECACHE_THREADS = 16

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_P2PKH_VERSIONS = frozenset({0x00, 0x6F})
_P2SH_VERSIONS = frozenset({0x05, 0xC4})
_BECH32_HRPS = frozenset({"bc", "tb", "bcrt"})
_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3
_BECH32_GEN = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)

_OP_DUP = 0x76
_OP_HASH160 = 0xA9
_OP_EQUAL = 0x87
_OP_EQUALVERIFY = 0x88
_OP_CHECKSIG = 0xAC


def _invalid_address() -> ElectrsError:
    return ElectrsError("invalid address")


def _base58check_decode(text: str) -> bytes:
    number = 0
    for char in text:
        digit = _B58_ALPHABET.find(char)
        if digit < 0:
            raise _invalid_address()
        number = number * 58 + digit
    body = number.to_bytes((number.bit_length() + 7) // 8, "big")
    leading = len(text) - len(text.lstrip("1"))
    raw = b"\x00" * leading + body
    if len(raw) < 5:
        raise _invalid_address()
    payload, checksum = raw[:-4], raw[-4:]
    if hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4] != checksum:
        raise _invalid_address()
    return payload


def _polymod(values: Iterable[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for bit, gen in enumerate(_BECH32_GEN):
            if (top >> bit) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: Iterable[int], from_bits: int, to_bits: int) -> bytes:
    acc = 0
    bits = 0
    out = bytearray()
    max_value = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & max_value)
    if bits >= from_bits or (acc << (to_bits - bits)) & max_value:
        raise _invalid_address()
    return bytes(out)


def _segwit_script(address: str) -> bytes:
    if address.lower() != address and address.upper() != address:
        raise _invalid_address()
    address = address.lower()
    sep = address.rfind("1")
    if sep < 1 or sep + 8 > len(address) or len(address) > 90:
        raise _invalid_address()
    hrp = address[:sep]
    if hrp not in _BECH32_HRPS:
        raise _invalid_address()
    try:
        data = [_BECH32_CHARSET.index(c) for c in address[sep + 1 :]]
    except ValueError:
        raise _invalid_address() from None
    const = _polymod(_hrp_expand(hrp) + data)
    if const not in (_BECH32_CONST, _BECH32M_CONST):
        raise _invalid_address()
    version = data[0]
    program = _convert_bits(data[1:-6], 5, 8)
    if version > 16 or not 2 <= len(program) <= 40:
        raise _invalid_address()
    if version == 0:
        if const != _BECH32_CONST or len(program) not in (20, 32):
            raise _invalid_address()
        opcode = 0
    else:
        if const != _BECH32M_CONST:
            raise _invalid_address()
        opcode = 0x50 + version
    return bytes([opcode, len(program)]) + program


def address_to_script(address: str) -> bytes:
    """Return the output script an address pays to."""
    lowered = address.lower()
    sep = lowered.rfind("1")
    if sep > 0 and lowered[:sep] in _BECH32_HRPS:
        return _segwit_script(address)
    payload = _base58check_decode(address)
    if len(payload) != 21:
        raise _invalid_address()
    version, hash160 = payload[0], payload[1:]
    if version in _P2PKH_VERSIONS:
        return (
            bytes([_OP_DUP, _OP_HASH160, 20])
            + hash160
            + bytes([_OP_EQUALVERIFY, _OP_CHECKSIG])
        )
    if version in _P2SH_VERSIONS:
        return bytes([_OP_HASH160, 20]) + hash160 + bytes([_OP_EQUAL])
    raise _invalid_address()


def address_to_scripthash(address: str) -> bytes:
    return compute_script_hash(address_to_script(address))


def _parse_hex(text: str) -> bytes:
    if len(text) % 2 or any(c not in hexdigits for c in text):
        raise ElectrsError("invalid hex")
    return bytes.fromhex(text)


def to_scripthash(script_type: str, script_str: str) -> bytes:
    """Turn an address, a script hash or a script in hex into a script hash."""
    match script_type:
        case "address":
            return address_to_scripthash(script_str)
        case "scripthash":
            data = _parse_hex(script_str)
            if len(data) != HASH_LEN:
                raise ElectrsError("invalid hex")
            return data
        case "scriptpubkey":
            return compute_script_hash(_parse_hex(script_str))
        case _:
            raise ElectrsError("Invalid script type")


def _lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def scripthashes_from_file(path) -> list[bytes]:
    """Read "type,value" lines and return their script hashes."""
    try:
        handle = open(path, encoding="utf-8")
    except OSError as exc:
        raise ElectrsError("cannot open precache scripthash file") from exc
    with handle:
        try:
            text = handle.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise ElectrsError("cannot read scripthash line") from exc
    scripthashes = []
    for line in _lines(text):
        cols = line.split(",")
        if len(cols) < 2:
            raise ElectrsError(f"missing script column in line {line!r}")
        scripthashes.append(to_scripthash(cols[0], cols[1]))
    return scripthashes


def precache(chain, scripthashes: Iterable[bytes]) -> None:
    """Compute (and thereby cache) the stats of every script hash."""
    scripthashes = list(scripthashes)
    total = len(scripthashes)
    logger.info("Pre-caching stats and utxo set for %d scripthashes", total)

    def run(item: tuple[int, bytes]) -> None:
        index, scripthash = item
        if index % 5 == 0:
            logger.info("running pre-cache for scripthash %d/%d", index + 1, total)
        chain.stats(scripthash)

    with ThreadPoolExecutor(
        max_workers=PRECACHE_THREADS, thread_name_prefix="precache"
    ) as pool:
        for _ in pool.map(run, enumerate(scripthashes)):
            pass