import threading

import pytest

from chainindex.errors import ElectrsError
from chainindex.precache import (
    address_to_script,
    precache,
    scripthashes_from_file,
    to_scripthash,
)
from chainindex.rows import compute_script_hash

GENESIS_ADDRESS = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
GENESIS_HASH160 = "62e907b15cbf27d5425399ebf6f0fb50ebb88f18"
SCRIPTHASH_HEX = "ab" * 32
SCRIPT_HEX = "76a914" + "00" * 20 + "88ac"


class FakeChain:
    def __init__(self, fail_on=None):
        self.calls = []
        self._lock = threading.Lock()
        self._fail_on = fail_on

    def stats(self, scripthash):
        if scripthash == self._fail_on:
            raise RuntimeError("boom")
        with self._lock:
            self.calls.append(scripthash)


def test_scripthash_type_passes_hash_through():
    assert to_scripthash("scripthash", SCRIPTHASH_HEX) == bytes.fromhex(SCRIPTHASH_HEX)


def test_scriptpubkey_type_hashes_script():
    result = to_scripthash("scriptpubkey", SCRIPT_HEX)
    assert result == compute_script_hash(bytes.fromhex(SCRIPT_HEX))


def test_p2pkh_address():
    script = address_to_script(GENESIS_ADDRESS)
    assert script.hex() == "76a914" + GENESIS_HASH160 + "88ac"
    assert to_scripthash("address", GENESIS_ADDRESS) == compute_script_hash(script)


@pytest.mark.parametrize(
    "address",
    [
        GENESIS_ADDRESS[:-1] + "b",
        "1A1zP1eP5QGefi2DMPTfTL5SLmv7Divf0a",
        "bc1Qw508d6qejxtdg4c3zj3pstt9gw5ddrndj0c",
        "bc1qqqqqqqq",
        "",
    ],
)
def test_invalid_addresses(address):
    with pytest.raises(ElectrsError):
        to_scripthash("address", address)


@pytest.mark.parametrize(
    "script_type, value",
    [
        ("scripthash", "ab" * 31),
        ("scripthash", "zz" * 32),
        ("scriptpubkey", "abc"),
        ("bogus", SCRIPTHASH_HEX),
    ],
)
def test_invalid_inputs(script_type, value):
    with pytest.raises(ElectrsError):
        to_scripthash(script_type, value)


def test_scripthashes_from_file(tmp_path):
    path = tmp_path / "list.csv"
    path.write_text(
        f"scripthash,{SCRIPTHASH_HEX}\r\nscriptpubkey,{SCRIPT_HEX},extra\n"
        f"address,{GENESIS_ADDRESS}\n"
    )
    result = scripthashes_from_file(path)
    assert result == [
        bytes.fromhex(SCRIPTHASH_HEX),
        compute_script_hash(bytes.fromhex(SCRIPT_HEX)),
        to_scripthash("address", GENESIS_ADDRESS),
    ]


def test_scripthashes_from_empty_file(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("")
    assert scripthashes_from_file(path) == []


def test_scripthashes_from_file_missing_column(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("scripthash\n")
    with pytest.raises(ElectrsError):
        scripthashes_from_file(path)


def test_scripthashes_from_missing_file(tmp_path):
    with pytest.raises(ElectrsError):
        scripthashes_from_file(tmp_path / "absent.csv")


def test_precache_visits_every_scripthash():
    hashes = [bytes([i]) * 32 for i in range(40)]
    chain = FakeChain()
    precache(chain, hashes)
    assert sorted(chain.calls) == sorted(hashes)


def test_precache_propagates_errors():
    hashes = [bytes([i]) * 32 for i in range(5)]
    chain = FakeChain(fail_on=hashes[2])
    with pytest.raises(RuntimeError):
        precache(chain, hashes)