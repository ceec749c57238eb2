"""
Test retry backoff
"""

import pytest

from wabot.lifecycle.backoff import delay


class TestBackoff:

    def test_defaults_sequence(self):
        """5s, 7s, 9s ... capped at 30s"""
        assert [delay(n, 5, 2, 30) for n in range(5)] == [5, 7, 9, 11, 13]
        assert delay(12, 5, 2, 30) == 29
        assert delay(13, 5, 2, 30) == 30
        assert delay(100, 5, 2, 30) == 30

    @pytest.mark.parametrize("attempt", range(0, 40))
    def test_bounded_and_monotonic(self, attempt):
        current = delay(attempt, 5, 2, 30)
        assert 5 <= current <= 30
        assert delay(attempt + 1, 5, 2, 30) >= current

    def test_negative_attempt_counts_as_zero(self):
        assert delay(-3, 5, 2, 30) == 5

    def test_pairing_retry_delay(self):
        """Pairing retries wait min(5 * attempt, 15)"""
        assert [delay(n, 0, 5, 15) for n in (1, 2, 3, 4)] == [5, 10, 15, 15]

    def test_cap_below_base(self):
        assert delay(0, 5, 2, 3) == 3
