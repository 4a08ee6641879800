"""
Tests for the delay scheduler.

Covers:
  - Linear spreading over the day (n = 0, 1, many)
  - Folding into the channel delay ceiling
  - Jitter bounds and injection
  - Properties over arbitrary n / offsets (Hypothesis)
"""
import random
import pytest
from hypothesis import given, strategies as st

from scheduling.delays import (
    SECONDS_PER_DAY, fold_delay, schedule_delays, small_jitter, spread_delays,
)


# ──────────────────────────────────────────────────────────────
#  spread_delays
# ──────────────────────────────────────────────────────────────

class TestSpreadDelays:
    def test_empty_batch(self):
        assert spread_delays(0) == []

    def test_negative_count_is_empty(self):
        assert spread_delays(-3) == []

    def test_single_record_goes_first(self):
        assert spread_delays(1) == [0]

    def test_two_records_cover_the_day(self):
        assert spread_delays(2) == [0, SECONDS_PER_DAY]

    def test_three_records(self):
        assert spread_delays(3) == [0, 43200, 86400]

    def test_floor_division(self):
        # 86400 / 7 is not integral
        assert spread_delays(8)[1] == 86400 // 7


# ──────────────────────────────────────────────────────────────
#  fold_delay
# ──────────────────────────────────────────────────────────────

class TestFoldDelay:
    def test_fold_without_jitter(self):
        assert fold_delay(43200, 900, 0) == 0
        assert fold_delay(1000, 900, 0) == 100

    def test_full_day_folds_to_zero(self):
        assert fold_delay(86400, 900, 0) == 0

    def test_jitter_added(self):
        assert fold_delay(1000, 900, 5) == 105

    def test_clamped_to_ceiling(self):
        assert fold_delay(899, 900, 5) == 900

    def test_negative_jitter_ignored(self):
        assert fold_delay(1000, 900, -4) == 100

    def test_rejects_non_positive_ceiling(self):
        with pytest.raises(ValueError):
            fold_delay(10, 0)


# ──────────────────────────────────────────────────────────────
#  Jitter and scheduling
# ──────────────────────────────────────────────────────────────

class TestJitter:
    def test_within_bounds(self):
        rng = random.Random(7)
        values = {small_jitter(5, rng) for _ in range(200)}
        assert values <= set(range(6))
        assert len(values) > 1

    def test_zero_max(self):
        assert small_jitter(0) == 0


class TestScheduleDelays:
    def test_deterministic_without_jitter(self):
        assert schedule_delays(3, 900) == [0, 0, 0]

    def test_injected_jitter(self):
        assert schedule_delays(3, 900, lambda: 3) == [3, 3, 3]

    def test_five_records(self):
        # 0, 21600, 43200, 64800, 86400 are all multiples of 900
        assert schedule_delays(5, 900) == [0, 0, 0, 0, 0]

    def test_seven_records(self):
        expected = [(i * 86400 // 6) % 900 for i in range(7)]
        assert schedule_delays(7, 900) == expected


# ──────────────────────────────────────────────────────────────
#  Properties
# ──────────────────────────────────────────────────────────────

class TestDelayProperties:
    @given(st.integers(min_value=0, max_value=5000))
    def test_length_matches_count(self, n):
        assert len(schedule_delays(n, 900)) == n

    @given(st.integers(min_value=2, max_value=5000))
    def test_ideal_offsets_monotonic_and_bounded(self, n):
        ideal = spread_delays(n)
        assert ideal[0] == 0
        assert ideal[-1] == SECONDS_PER_DAY
        assert all(a <= b for a, b in zip(ideal, ideal[1:]))
        # n stays below the 86401 whole seconds in a day, so no two offsets collide.
        assert len(set(ideal)) == n

    def test_one_offset_per_second_at_capacity(self):
        assert spread_delays(SECONDS_PER_DAY + 1) == list(range(SECONDS_PER_DAY + 1))

    @given(
        st.integers(min_value=0, max_value=10 * SECONDS_PER_DAY),
        st.integers(min_value=1, max_value=3600),
        st.integers(min_value=0, max_value=30),
    )
    def test_fold_never_exceeds_ceiling(self, offset, ceiling, jitter):
        folded = fold_delay(offset, ceiling, jitter)
        assert 0 <= folded <= ceiling
        assert folded == min(ceiling, offset % ceiling + jitter)

    @given(st.integers(min_value=0, max_value=2000), st.integers(min_value=0, max_value=5))
    def test_scheduled_delays_within_ceiling(self, n, jitter):
        assert all(0 <= d <= 900 for d in schedule_delays(n, 900, lambda: jitter))

    @given(st.integers(min_value=0, max_value=2000))
    def test_zero_jitter_stays_below_ceiling(self, n):
        assert all(0 <= d < 900 for d in schedule_delays(n, 900))
