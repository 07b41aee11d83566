"""Tests for cluster scoring helpers."""

from datetime import timedelta

import pytest

from src.domains.threats.scoring import (
    calculate_severity,
    clamp_score,
    most_common,
    normalize_user_agent,
    proximity_bonus,
    time_span_ms,
    user_agent_signature,
)
from tests.conftest import make_event


class TestClampScore:
    def test_within_range_unchanged(self):
        assert clamp_score(5.5) == 5.5

    def test_clamps_high(self):
        assert clamp_score(12.0) == 10.0

    def test_clamps_low(self):
        assert clamp_score(-1.0) == 0.0


class TestCalculateSeverity:
    @pytest.mark.parametrize(
        "score,count,expected",
        [
            (8.0, 2, 5),
            (1.0, 10, 5),
            (6.0, 2, 4),
            (1.0, 7, 4),
            (4.0, 2, 3),
            (1.0, 5, 3),
            (2.0, 2, 2),
            (1.0, 3, 2),
            (1.9, 2, 1),
        ],
    )
    def test_ladder(self, score, count, expected):
        assert calculate_severity(score, count) == expected

    def test_monotonic_in_score_and_count(self):
        scores = [step / 2 for step in range(21)]
        counts = range(2, 13)
        grid = {(s, c): calculate_severity(s, c) for s in scores for c in counts}

        for (score, count), severity in grid.items():
            assert 1 <= severity <= 5
            if score + 0.5 <= 10.0:
                assert grid[(score + 0.5, count)] >= severity, (score, count)
            if count + 1 <= 12:
                assert grid[(score, count + 1)] >= severity, (score, count)


class TestTimeSpan:
    def test_single_event_has_no_span(self):
        assert time_span_ms([make_event(0)]) == 0

    def test_span_ignores_order(self):
        events = [make_event(90), make_event(0), make_event(30)]
        assert time_span_ms(events) == 90_000

    def test_proximity_tiers_first_match_wins(self):
        tiers = ((60_000, 3.0), (300_000, 2.0))
        assert proximity_bonus(10_000, tiers) == 3.0
        assert proximity_bonus(60_000, tiers) == 2.0
        assert proximity_bonus(int(timedelta(hours=1).total_seconds() * 1000), tiers) == 0.0


class TestUserAgentSignature:
    def test_normalization(self):
        assert normalize_user_agent("Mozilla/5.0  (Windows NT 10.0)") == "mozilla/x (windows nt x)"

    def test_versions_do_not_change_signature(self):
        assert user_agent_signature("curl/7.1") == user_agent_signature("curl/8.4.0")

    def test_signature_is_short_hex(self):
        signature = user_agent_signature("python-requests/2.31.0")
        assert len(signature) == 12
        int(signature, 16)

    def test_different_agents_differ(self):
        assert user_agent_signature("curl/7.1") != user_agent_signature("wget/1.2")


class TestMostCommon:
    def test_picks_most_frequent(self):
        assert most_common(["a", "b", "b", None]) == "b"

    def test_tie_goes_to_first_seen(self):
        assert most_common(["a", "b"]) == "a"

    def test_all_empty(self):
        assert most_common([None, ""]) is None
