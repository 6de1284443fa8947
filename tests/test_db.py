import pytest

from chainindex.db import DB, DBFlush, DBRow
from chainindex.errors import ElectrsError


@pytest.fixture
def db(tmp_path):
    with DB.open(tmp_path / "txstore", light_mode=False) as handle:
        yield handle


def test_version_marker_written(db):
    assert db.get(b"V") == b"\x01\x00\x00\x00"


def test_light_mode_marker(tmp_path):
    with DB.open(tmp_path / "light", light_mode=True) as handle:
        assert handle.get(b"V") == b"\x01\x00\x00\x00\x01"


def test_incompatible_database_rejected(tmp_path):
    DB.open(tmp_path / "d", light_mode=False).close()
    with pytest.raises(ElectrsError, match="Incompatible database"):
        DB.open(tmp_path / "d", light_mode=True)


def test_reopen_same_mode_keeps_data(tmp_path):
    with DB.open(tmp_path / "d", light_mode=True) as handle:
        handle.put(b"k", b"v")
    with DB.open(tmp_path / "d", light_mode=True) as handle:
        assert handle.get(b"k") == b"v"


def test_put_get_and_missing(db):
    db.put(b"key", b"value")
    db.put_sync(b"other", b"")
    assert db.get(b"key") == b"value"
    assert db.get(b"other") == b""
    assert db.get(b"absent") is None


def test_write_overwrites_and_scans_sorted(db):
    rows = [DBRow(b"Hc", b"3"), DBRow(b"Ha", b"1"), DBRow(b"Hb", b"2"), DBRow(b"I", b"x")]
    db.write(rows, DBFlush.DISABLE)
    db.write([DBRow(b"Ha", b"updated")], DBFlush.ENABLE)
    scanned = list(db.iter_scan(b"H"))
    assert [r.key for r in scanned] == [b"Ha", b"Hb", b"Hc"]
    assert scanned[0].value == b"updated"


def test_scan_stops_at_prefix_end(db):
    db.write([DBRow(b"A1", b""), DBRow(b"B1", b""), DBRow(b"B2", b""), DBRow(b"C1", b"")])
    assert [r.key for r in db.iter_scan(b"B")] == [b"B1", b"B2"]
    assert list(db.iter_scan(b"Z")) == []


def test_scan_from(db):
    db.write([DBRow(bytes([ord("H"), i]), b"") for i in range(5)] + [DBRow(b"J", b"")])
    keys = [r.key for r in db.iter_scan_from(b"H", bytes([ord("H"), 2]))]
    assert keys == [bytes([ord("H"), i]) for i in range(2, 5)]


def test_scan_reverse(db):
    db.write([DBRow(bytes([ord("H"), i]), b"") for i in range(5)] + [DBRow(b"G", b"")])
    keys = [r.key for r in db.iter_scan_reverse(b"H", bytes([ord("H"), 3]))]
    assert keys == [bytes([ord("H"), i]) for i in (3, 2, 1, 0)]


def test_scan_across_batches(db):
    rows = [DBRow(b"P" + i.to_bytes(2, "big"), b"") for i in range(600)]
    db.write(rows)
    assert list(db.iter_scan(b"P")) == rows
    assert list(db.iter_scan_reverse(b"P", b"P\xff\xff")) == rows[::-1]


def test_compaction_keeps_data(db):
    db.write([DBRow(b"x", b"1")])
    db.flush()
    db.full_compaction()
    db.enable_auto_compaction()
    assert db.auto_compaction is True
    assert db.get(b"x") == b"1"


def test_rows_persist_after_close(tmp_path):
    with DB.open(tmp_path / "p", light_mode=False) as handle:
        handle.write([DBRow(b"k1", b"a"), DBRow(b"k2", b"b")], DBFlush.ENABLE)
    with DB.open(tmp_path / "p", light_mode=False) as handle:
        assert [r.value for r in handle.iter_scan(b"k")] == [b"a", b"b"]