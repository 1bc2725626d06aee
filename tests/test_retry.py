import pytest

from wayfare.core.config import settings
from wayfare.services.retry import backoff_delay, call_with_retries


class Flaky(Exception):
    pass


class Fatal(Exception):
    pass


def test_retries_transient_errors_until_success():
    calls = []

    def fn():
        calls.append(1)
        if len(calls) < 3:
            raise Flaky()
        return "ok"

    assert call_with_retries(fn, retry_on=(Flaky,), operation="test", attempts=3) == "ok"
    assert len(calls) == 3


def test_reraises_last_transient_error_when_exhausted():
    calls = []

    def fn():
        calls.append(1)
        raise Flaky(len(calls))

    with pytest.raises(Flaky) as exc:
        call_with_retries(fn, retry_on=(Flaky,), operation="test", attempts=2)
    assert exc.value.args == (2,)


def test_other_errors_propagate_immediately():
    calls = []

    def fn():
        calls.append(1)
        raise Fatal()

    with pytest.raises(Fatal):
        call_with_retries(fn, retry_on=(Flaky,), operation="test", attempts=5)
    assert len(calls) == 1


def test_backoff_is_exponential_and_capped(monkeypatch):
    monkeypatch.setattr(settings, "EXTERNAL_CALL_BACKOFF_SECONDS", 0.5)
    monkeypatch.setattr(settings, "EXTERNAL_CALL_BACKOFF_MAX_SECONDS", 3.0)
    assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]


def test_sleeps_between_attempts(monkeypatch):
    monkeypatch.setattr(settings, "EXTERNAL_CALL_BACKOFF_SECONDS", 1.0)
    slept = []
    attempts = iter([Flaky(), "done"])

    def fn():
        value = next(attempts)
        if isinstance(value, Exception):
            raise value
        return value

    assert call_with_retries(fn, retry_on=(Flaky,), operation="test", sleep=slept.append) == "done"
    assert slept == [1.0]
