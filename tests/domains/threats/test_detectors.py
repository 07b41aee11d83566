"""Tests for the four cluster detectors."""

from src.domains.threats.config import ThreatConfig
from src.domains.threats.detectors import (
    ALL_DETECTORS,
    DeviceFingerprintClusterDetector,
    IPClusterDetector,
    UserAgentClusterDetector,
    VelocityClusterDetector,
)
from src.domains.threats.models import PatternType
from tests.conftest import make_event

CONFIG = ThreatConfig()
LONG_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class TestIPClusterDetector:
    def test_tight_homogeneous_burst_scores_max(self):
        events = [make_event(i * 5) for i in range(5)]

        candidates = IPClusterDetector().detect(events, CONFIG)

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.score == 10.0
        assert candidate.severity == 5
        assert candidate.pattern_type == PatternType.IP_BASED
        assert candidate.label == "IP Cluster: 203.0.113.7"
        assert candidate.threat_count == 5

    def test_spread_out_mixed_pair_sits_on_the_gate(self):
        events = [
            make_event(0, threat_type="card_testing"),
            make_event(7200, threat_type="gan_reuse"),
        ]

        candidates = IPClusterDetector().detect(events, CONFIG)

        assert len(candidates) == 1
        assert candidates[0].score == 3.0
        assert candidates[0].severity == 2

    def test_single_event_per_ip_is_not_a_cluster(self):
        events = [make_event(0, ip="10.0.0.1"), make_event(1, ip="10.0.0.2")]
        assert IPClusterDetector().detect(events, CONFIG) == []

    def test_events_without_ip_are_ignored(self):
        events = [make_event(i, ip=None) for i in range(4)]
        assert IPClusterDetector().detect(events, CONFIG) == []


class TestDeviceFingerprintClusterDetector:
    def test_reused_device_within_seconds(self):
        events = [make_event(i * 5, ip=None, device="abcdef1234567890") for i in range(3)]

        candidates = DeviceFingerprintClusterDetector().detect(events, CONFIG)

        assert len(candidates) == 1
        assert candidates[0].score == 10.0
        assert candidates[0].severity == 5
        assert candidates[0].label == "Device Cluster: abcdef12..."

    def test_slow_pair_has_no_proximity_bonus(self):
        events = [make_event(0, device="dev-1"), make_event(1200, device="dev-1")]

        candidates = DeviceFingerprintClusterDetector().detect(events, CONFIG)

        assert candidates[0].score == 4.0
        assert candidates[0].severity == 3


class TestVelocityClusterDetector:
    def test_ten_events_in_window_form_one_burst(self):
        events = [make_event(i * 20, ip=f"10.0.0.{i}") for i in range(10)]

        candidates = VelocityClusterDetector().detect(events, CONFIG)

        assert len(candidates) == 1
        assert candidates[0].score == 5.5
        assert candidates[0].label == "Velocity Attack: 10 threats in 5min"
        assert candidates[0].pattern_type == PatternType.VELOCITY

    def test_nine_events_do_not_clear_the_gate(self):
        events = [make_event(i * 20, ip=f"10.0.0.{i}") for i in range(9)]
        assert VelocityClusterDetector().detect(events, CONFIG) == []

    def test_window_bound_is_inclusive(self):
        events = [make_event(0)] + [make_event(300, ip=f"10.0.0.{i}") for i in range(9)]

        candidates = VelocityClusterDetector().detect(events, CONFIG)

        assert [c.threat_count for c in candidates] == [10]

    def test_event_past_window_is_excluded(self):
        events = [make_event(0)] + [make_event(301, ip=f"10.0.0.{i}") for i in range(9)]
        assert VelocityClusterDetector().detect(events, CONFIG) == []

    def test_overlapping_windows_are_all_reported(self):
        events = [make_event(i * 2, ip=f"10.0.1.{i}") for i in range(25)]

        candidates = VelocityClusterDetector().detect(events, CONFIG)

        # anchors 0..15 each still see at least 10 events
        assert len(candidates) == 16
        assert candidates[0].threat_count == 25
        assert candidates[0].score == 10.0

    def test_input_order_does_not_matter(self):
        events = [make_event(i * 20, ip=f"10.0.0.{i}") for i in range(10)]
        forward = VelocityClusterDetector().detect(events, CONFIG)
        backward = VelocityClusterDetector().detect(list(reversed(events)), CONFIG)
        assert [c.threat_count for c in forward] == [c.threat_count for c in backward]


class TestUserAgentClusterDetector:
    def test_short_agent_shared_by_three(self):
        events = [make_event(i, ip=None, user_agent="curl/7.1") for i in range(3)]

        candidates = UserAgentClusterDetector().detect(events, CONFIG)

        assert len(candidates) == 1
        assert candidates[0].score == 4.5
        assert candidates[0].severity == 3
        assert candidates[0].label.startswith("User Agent Pattern: ")

    def test_versions_are_grouped_together(self):
        agents = ["curl/7.1", "curl/8.4.0", "curl/7.88.1"]
        events = [make_event(i, ip=None, user_agent=ua) for i, ua in enumerate(agents)]

        assert len(UserAgentClusterDetector().detect(events, CONFIG)) == 1

    def test_three_long_agents_fall_below_gate(self):
        events = [make_event(i, ip=None, user_agent=LONG_UA) for i in range(3)]
        assert UserAgentClusterDetector().detect(events, CONFIG) == []

    def test_four_long_agents_clear_gate(self):
        events = [make_event(i, ip=None, user_agent=LONG_UA) for i in range(4)]

        candidates = UserAgentClusterDetector().detect(events, CONFIG)

        assert candidates[0].score == 4.0

    def test_bot_marker_bonus(self):
        ua = "Googlebot/2.1 (+http://www.google.com/bot.html)"
        events = [make_event(i, ip=None, user_agent=ua) for i in range(3)]

        candidates = UserAgentClusterDetector().detect(events, CONFIG)

        assert candidates[0].score == 5.0

    def test_bot_marker_is_case_sensitive_by_default(self):
        ua = "Mozilla/5.0 (compatible; SomeBOT/1.0; +http://example.com)"
        events = [make_event(i, ip=None, user_agent=ua) for i in range(3)]

        assert UserAgentClusterDetector().detect(events, CONFIG) == []

        config = ThreatConfig()
        config.user_agent.case_insensitive_bot_match = True
        candidates = UserAgentClusterDetector().detect(events, config)
        assert candidates[0].score == 5.0


class TestDetectorRegistry:
    def test_evaluation_order(self):
        assert [d.pattern_type for d in ALL_DETECTORS] == [
            PatternType.IP_BASED,
            PatternType.DEVICE_FINGERPRINT,
            PatternType.VELOCITY,
            PatternType.USER_AGENT,
        ]
