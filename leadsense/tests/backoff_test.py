import pytest

from leadsense.llm.backoff import DEFAULT_POLICY, BackoffPolicy, ErrorKind, parse_retry_after


def test_first_attempt_is_immediate():
    assert DEFAULT_POLICY.compute_delay(0) == 0.0


@pytest.mark.parametrize(
    "attempt, expected",
    [(1, 3000.0), (2, 5400.0), (3, 9720.0), (4, 17496.0)],
)
def test_failure_delay_grows_geometrically(attempt, expected):
    assert DEFAULT_POLICY.compute_delay(attempt) == pytest.approx(expected)


def test_failure_delay_adds_jitter_and_caps():
    assert DEFAULT_POLICY.compute_delay(1, jitter=0.5) == pytest.approx(3500.0)
    assert DEFAULT_POLICY.compute_delay(10, jitter=1.0) == 30000.0


def test_rate_limit_without_retry_after_doubles_from_eight_seconds():
    delays = [DEFAULT_POLICY.compute_delay(n, ErrorKind.RATE_LIMITED) for n in range(5)]
    assert delays == [8000.0, 16000.0, 32000.0, 60000.0, 60000.0]


def test_rate_limit_honours_retry_after_with_cap():
    assert DEFAULT_POLICY.compute_delay(0, ErrorKind.RATE_LIMITED, retry_after=2) == 2000.0
    assert DEFAULT_POLICY.compute_delay(0, ErrorKind.RATE_LIMITED, retry_after=600) == 60000.0


def test_custom_policy_values():
    policy = BackoffPolicy(base_ms=100, factor=2, cap_ms=250)
    assert [policy.compute_delay(n) for n in range(4)] == [0.0, 100.0, 200.0, 250.0]


@pytest.mark.parametrize(
    "header, expected",
    [("5", 5.0), (" 1.5 ", 1.5), ("", None), (None, None), ("-3", None), ("Wed, 21 Oct 2015 07:28:00 GMT", None)],
)
def test_parse_retry_after(header, expected):
    assert parse_retry_after(header) == expected
