import pytest

from kubestrap.utils.cancel import CancellationToken
from kubestrap.utils.retry import RetryError, backoff_delays, retry


def test_retry_succeeds_after_transient_errors(monkeypatch):
    monkeypatch.setattr("kubestrap.utils.retry.time.sleep", lambda s: None)
    attempts = []

    @retry(retries=3, delay=1, retry_on=(OSError,))
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError("connection reset")
        return "ok"

    assert flaky() == "ok"
    assert len(attempts) == 3


def test_retry_gives_up(monkeypatch):
    monkeypatch.setattr("kubestrap.utils.retry.time.sleep", lambda s: None)
    seen = []

    @retry(retries=2, delay=1, retry_on=(OSError,), on_retry=lambda n, e: seen.append(n))
    def down():
        raise OSError("no route to host")

    with pytest.raises(RetryError) as ei:
        down()
    assert "no route to host" in str(ei.value)
    assert seen == [1, 2]


def test_retry_does_not_catch_other_errors():
    @retry(retries=3, delay=0, retry_on=(OSError,))
    def bad():
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        bad()


def test_backoff_delays():
    assert backoff_delays(5, 10, 60) == [10, 20, 40, 60]
    assert backoff_delays(1, 10, 60) == []


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    assert token.wait(0) is False
    token.cancel("operator")
    assert token.cancelled
    assert token.reason == "operator"
    assert token.wait(10) is True
