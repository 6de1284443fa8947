import pytest

from chainindex.errors import ConnectionFailure, ElectrsError, Interrupted, TooPopular


def test_connection_failure_message_and_attribute():
    err = ConnectionFailure("daemon unreachable")
    assert str(err) == "Connection error: daemon unreachable"
    assert err.msg == "daemon unreachable"


def test_interrupted_keeps_signal_number():
    err = Interrupted(15)
    assert err.sig == 15
    assert str(err).endswith("15")


def test_too_popular_message():
    assert str(TooPopular()) == "Too many history entries"


@pytest.mark.parametrize(
    "error", [ConnectionFailure("x"), Interrupted(2), TooPopular()]
)
def test_all_errors_share_base_class(error):
    assert isinstance(error, ElectrsError)
    with pytest.raises(ElectrsError) as excinfo:
        raise error
    assert excinfo.value is error