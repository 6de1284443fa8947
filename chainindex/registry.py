"""A registry of asset metadata kept as JSON files on disk."""

from __future__ import annotations

import enum
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from string import hexdigits
from typing import Any, Callable, Mapping

from .errors import ElectrsError

logger = logging.getLogger(__name__)

# Length of the asset id prefix used to partition files into sub-directories,
# counted in hex characters.
DIR_PARTITION_LEN = 2
ASSET_ID_LEN = 64
SYNC_INTERVAL = 15.0


def _parse_asset_id(text: str) -> str:
    if len(text) != ASSET_ID_LEN or any(c not in hexdigits for c in text):
        raise ElectrsError("invalid filename")
    return text.lower()


@dataclass
class AssetMeta:
    """Registry metadata of one asset."""

    name: str
    precision: int
    contract: Any = None
    entity: Any = None
    ticker: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AssetMeta":
        if not isinstance(data, Mapping):
            raise ValueError("asset metadata must be an object")
        try:
            name = data["name"]
            precision = data["precision"]
        except KeyError as exc:
            raise ValueError(f"missing field {exc.args[0]!r}") from None
        if not isinstance(name, str):
            raise ValueError("name must be a string")
        if isinstance(precision, bool) or not isinstance(precision, int):
            raise ValueError("precision must be an integer")
        if not 0 <= precision <= 255:
            raise ValueError("precision out of range")
        ticker = data.get("ticker")
        if ticker is not None and not isinstance(ticker, str):
            raise ValueError("ticker must be a string")
        return cls(
            name=name,
            precision=precision,
            contract=data.get("contract"),
            entity=data.get("entity"),
            ticker=ticker,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.contract is not None:
            data["contract"] = self.contract
        if self.entity is not None:
            data["entity"] = self.entity
        data["precision"] = self.precision
        data["name"] = self.name
        if self.ticker is not None:
            data["ticker"] = self.ticker
        return data

    @property
    def domain(self) -> str | None:
        if isinstance(self.entity, Mapping):
            domain = self.entity.get("domain")
            if isinstance(domain, str):
                return domain
        return None


class AssetSortField(enum.Enum):
    NAME = "name"
    DOMAIN = "domain"
    TICKER = "ticker"


class AssetSortDir(enum.Enum):
    DESCENDING = "desc"
    ASCENDING = "asc"


AssetEntry = tuple[str, AssetMeta]


def _optional_key(value: str | None) -> tuple[bool, str]:
    # Missing values sort before present ones.
    return (value is not None, value or "")


@dataclass(frozen=True)
class AssetSorting:
    """How a listing of registered assets is ordered."""

    field: AssetSortField = AssetSortField.TICKER
    dir: AssetSortDir = AssetSortDir.ASCENDING

    @classmethod
    def from_query_params(cls, query: Mapping[str, str]) -> "AssetSorting":
        field_name = query.get("sort_field", AssetSortField.TICKER.value)
        try:
            field = AssetSortField(field_name)
        except ValueError:
            raise ElectrsError("invalid sort field") from None
        dir_name = query.get("sort_dir", AssetSortDir.ASCENDING.value)
        try:
            direction = AssetSortDir(dir_name)
        except ValueError:
            raise ElectrsError("invalid sort direction") from None
        return cls(field, direction)

    def key(self) -> Callable[[AssetEntry], Any]:
        match self.field:
            case AssetSortField.NAME:
                # Names are not unique, so the asset id breaks ties.
                return lambda entry: (
                    entry[1].name.lower(),
                    bytes.fromhex(entry[0])[::-1],
                )
            case AssetSortField.DOMAIN:
                return lambda entry: _optional_key(entry[1].domain)
            case AssetSortField.TICKER:
                return lambda entry: _optional_key(
                    None if entry[1].ticker is None else entry[1].ticker.lower()
                )
        raise ValueError(f"unsupported sort field {self.field!r}")

    def sort(self, entries: list[AssetEntry]) -> list[AssetEntry]:
        return sorted(
            entries, key=self.key(), reverse=self.dir is AssetSortDir.DESCENDING
        )


class AssetRegistry:
    """Asset metadata loaded from <directory>/<id prefix>/<asset id>.json."""

    def __init__(self, directory) -> None:
        self.directory = Path(directory)
        self._cache: dict[str, tuple[int, AssetMeta]] = {}
        self._lock = threading.RLock()

    def get(self, asset_id: str) -> AssetMeta | None:
        with self._lock:
            cached = self._cache.get(asset_id.lower())
        return None if cached is None else cached[1]

    def list(
        self, start_index: int, limit: int, sorting: AssetSorting
    ) -> tuple[int, list[AssetEntry]]:
        """Total number of assets and one sorted page of them."""
        with self._lock:
            entries = [(asset_id, meta) for asset_id, (_, meta) in self._cache.items()]
        ordered = sorting.sort(entries)
        return len(ordered), ordered[start_index : start_index + limit]

    def fs_sync(self) -> None:
        """Load files that are new or were modified since the last sync."""
        try:
            partitions = list(os.scandir(self.directory))
        except OSError as exc:
            raise ElectrsError("failed reading asset dir") from exc
        with self._lock:
            for partition in partitions:
                try:
                    is_dir = partition.is_dir(follow_symlinks=False)
                except OSError as exc:
                    raise ElectrsError("failed getting file type") from exc
                if not is_dir or len(partition.name) != DIR_PARTITION_LEN:
                    continue
                try:
                    files = list(os.scandir(partition.path))
                except OSError as exc:
                    raise ElectrsError("failed reading asset subdir") from exc
                for file_entry in files:
                    self._sync_file(file_entry)

    def _sync_file(self, file_entry: os.DirEntry) -> None:
        path = Path(file_entry.path)
        if path.suffix != ".json":
            return
        asset_id = _parse_asset_id(path.stem)
        try:
            modified = file_entry.stat().st_mtime_ns
        except OSError as exc:
            raise ElectrsError("failed reading metadata") from exc
        cached = self._cache.get(asset_id)
        if cached is not None and cached[0] == modified:
            return
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ElectrsError("failed reading file") from exc
        try:
            metadata = AssetMeta.from_dict(json.loads(text))
        except ValueError as exc:
            raise ElectrsError("failed parsing file") from exc
        self._cache[asset_id] = (modified, metadata)

    def spawn_sync(self) -> threading.Thread:
        """Sync from disk now and then every SYNC_INTERVAL seconds."""

        def run() -> None:
            while True:
                try:
                    self.fs_sync()
                except ElectrsError as exc:
                    logger.error("registry fs_sync failed: %s", exc)
                time.sleep(SYNC_INTERVAL)

        thread = threading.Thread(target=run, name="asset-registry", daemon=True)
        thread.start()
        return thread