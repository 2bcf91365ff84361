"""Exponential backoff helpers."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from lurus_api.db.retry import retry_call, run_in_transaction


def _transient() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("server closed the connection"))


def test_retries_until_success():
    fn = MagicMock(side_effect=[_transient(), _transient(), "ok"])
    on_retry = MagicMock()

    with patch("lurus_api.db.retry.time.sleep") as sleep:
        assert retry_call(fn, retry_on=(OperationalError,), base_delay=0.1, on_retry=on_retry) == "ok"

    assert fn.call_count == 3
    assert on_retry.call_count == 2
    assert [call.args[0] for call in sleep.call_args_list] == [0.1, 0.2]


def test_gives_up_after_three_attempts():
    fn = MagicMock(side_effect=_transient())

    with patch("lurus_api.db.retry.time.sleep"):
        with pytest.raises(OperationalError):
            retry_call(fn, retry_on=(OperationalError,), base_delay=0)

    assert fn.call_count == 3


def test_non_transient_error_is_not_retried():
    fn = MagicMock(side_effect=ValueError("bad input"))

    with pytest.raises(ValueError):
        retry_call(fn, retry_on=(OperationalError,), base_delay=0)

    assert fn.call_count == 1


def test_transaction_rolls_back_between_attempts(monkeypatch):
    monkeypatch.setenv("RETRY_BASE_DELAY_SECONDS", "0")
    db = MagicMock()
    fn = MagicMock(side_effect=[_transient(), 7])

    assert run_in_transaction(db, fn, operation="test") == 7
    db.rollback.assert_called_once_with()


def test_transaction_rolls_back_on_permanent_failure():
    db = MagicMock()
    fn = MagicMock(side_effect=ValueError("bad row"))

    with pytest.raises(ValueError):
        run_in_transaction(db, fn, operation="test")

    assert fn.call_count == 1
    db.rollback.assert_called_once_with()
