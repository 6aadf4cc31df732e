"""Tests for jobclient.backoff module."""

import pytest

from jobclient.backoff import PollBackoff, max_exponent, poll_backoff, retry_delay


class TestPollBackoff:
    """Tests for the deterministic poll delay."""

    def test_default_sequence(self):
        """Doubles from 1s and caps at 30s."""
        assert [poll_backoff(i) for i in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_monotonic_and_capped(self):
        """Never decreases and never exceeds the maximum."""
        delays = [poll_backoff(i, 0.25, 7.0) for i in range(200)]
        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) == 7.0
        assert delays[0] == 0.25

    def test_huge_iteration_does_not_overflow(self):
        assert poll_backoff(10**9) == 30.0

    def test_negative_iteration_rejected(self):
        with pytest.raises(ValueError):
            poll_backoff(-1)

    def test_max_exponent(self):
        assert max_exponent(1.0, 30.0) == 5
        assert max_exponent(1.0, 1.0) == 0
        assert max_exponent(2.0, 1.0) == 0

    def test_initial_equal_to_max(self):
        assert [poll_backoff(i, 5.0, 5.0) for i in range(3)] == [5.0, 5.0, 5.0]


class TestRetryDelay:
    """Tests for the jittered single-call delay."""

    def test_no_jitter(self):
        assert [retry_delay(a, 0.5, 10.0) for a in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]

    def test_capped(self):
        assert retry_delay(20, 0.5, 10.0) == 10.0

    def test_jitter_bounds(self):
        """Jitter factor stays within [1 - j, 1 + j]."""
        low = retry_delay(1, 1.0, 10.0, jitter=0.25, rng=lambda: 0.0)
        high = retry_delay(1, 1.0, 10.0, jitter=0.25, rng=lambda: 1.0)
        assert low == pytest.approx(0.75)
        assert high == pytest.approx(1.25)

    def test_jitter_never_exceeds_max(self):
        assert retry_delay(10, 1.0, 4.0, jitter=0.5, rng=lambda: 1.0) == 4.0


class TestPollBackoffPolicy:
    """Tests for the PollBackoff policy object."""

    def test_none_returns_no_delay(self):
        assert PollBackoff.none().delay(3) is None

    def test_exponential(self):
        policy = PollBackoff.exponential(0.5, 4.0)
        assert [policy.delay(i) for i in range(5)] == [0.5, 1.0, 2.0, 4.0, 4.0]

    def test_exponential_rejects_bad_range(self):
        with pytest.raises(ValueError):
            PollBackoff.exponential(5.0, 1.0)
        with pytest.raises(ValueError):
            PollBackoff.exponential(0.0, 1.0)

    def test_custom(self):
        policy = PollBackoff.custom(lambda i: i * 0.1)
        assert policy.delay(3) == pytest.approx(0.3)

    def test_custom_invalid_value_becomes_zero(self):
        """Negative or non-numeric custom delays mean no wait."""
        assert PollBackoff.custom(lambda i: -1).delay(0) == 0.0
        assert PollBackoff.custom(lambda i: "soon").delay(0) == 0.0

    def test_custom_requires_function(self):
        with pytest.raises(ValueError):
            PollBackoff(PollBackoff.CUSTOM)

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, PollBackoff.none()),
            (False, PollBackoff.none()),
            ("none", PollBackoff.none()),
            (True, PollBackoff.exponential()),
            ("exponential", PollBackoff.exponential()),
            ({"initial": 0.5, "max": 2.0}, PollBackoff.exponential(0.5, 2.0)),
        ],
    )
    def test_parse(self, value, expected):
        assert PollBackoff.parse(value) == expected

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            PollBackoff.parse("linear")

    def test_repr(self):
        assert repr(PollBackoff.none()) == "PollBackoff.none()"
        assert repr(PollBackoff.exponential(1.0, 2.0)) == "PollBackoff.exponential(1.0, 2.0)"
