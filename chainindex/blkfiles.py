"""Reading raw blocks out of the node's blk*.dat files."""

from __future__ import annotations

import enum
import logging
import struct
from pathlib import Path
from typing import Iterable, Iterator

from .errors import ElectrsError

logger = logging.getLogger(__name__)

_U32 = struct.Struct("<I")

SizedBlock = tuple[bytes, int]


class FetchFrom(enum.Enum):
    """Where new blocks are fetched from."""

    BITCOIND = "bitcoind"
    BLK_FILES = "blkfiles"


def _read_u32(blob: bytes, pos: int) -> int | None:
    if pos + _U32.size > len(blob):
        return None
    return _U32.unpack_from(blob, pos)[0]


def parse_blocks(blob: bytes, magic: int) -> list[SizedBlock]:
    """Split the contents of one blk*.dat file into (raw block, size) pairs.

    Bytes that do not start with the network magic are skipped one at a
    time. A record whose body is missing, so that the next magic follows
    its size field at once, is skipped as well.
    """
    blob = bytes(blob)
    end_of_blob = len(blob)
    blocks: list[SizedBlock] = []
    pos = 0
    while pos < end_of_blob:
        offset = pos
        value = _read_u32(blob, pos)
        if value is None:
            break
        pos += _U32.size
        if value != magic:
            pos = offset + 1
            continue

        block_size = _read_u32(blob, pos)
        if block_size is None:
            raise ElectrsError("no block size")
        start = pos + _U32.size
        end = start + block_size

        # A failed write may leave only the magic and the size on disk; the
        # first four bytes of a real block hold its version, never the magic.
        peek = _read_u32(blob, start)
        if peek is None:
            break
        if peek == magic:
            pos = start
            continue

        if end > end_of_blob:
            raise ElectrsError(
                f"truncated block at offset {start}: "
                f"{block_size} bytes expected, {end_of_blob - start} available"
            )
        blocks.append((blob[start:end], block_size))
        pos = end
    return blocks


def read_blk_files(paths: Iterable) -> Iterator[bytes]:
    """Yield the contents of each file, in the given order."""
    for path in paths:
        path = Path(path)
        logger.debug("reading %s", path)
        try:
            yield path.read_bytes()
        except OSError as exc:
            raise ElectrsError(f"failed to read {path}: {exc}") from exc


def iter_blocks(paths: Iterable, magic: int) -> Iterator[list[SizedBlock]]:
    """Yield the blocks of each file as one list per file."""
    for blob in read_blk_files(paths):
        logger.debug("parsing %d bytes", len(blob))
        blocks = parse_blocks(blob, magic)
        logger.debug("fetched %d blocks", len(blocks))
        yield blocks