"""Tests for daemon snapshot parsing and latency types."""

import copy

import pytest

from conftest import CONFIG_BODY, PROXIES_BODY
from mihomot.errors import DeserializationError
from mihomot.models import (
    ConfigSnapshot,
    Failed,
    FailureReason,
    LatencyGrade,
    LogLevel,
    Mode,
    ProxyGroup,
    Success,
    TrafficSample,
    classify_latency,
    parse_proxies,
)


class TestParseProxies:
    """Tests for the GET /proxies body."""

    def test_parses_every_entry(self):
        """Groups and leaf proxies are both kept."""
        groups = parse_proxies(PROXIES_BODY)

        assert set(groups) == set(PROXIES_BODY["proxies"])
        proxy = groups["Proxy"]
        assert proxy.kind == "Selector"
        assert proxy.members == ("HK", "JP", "US")
        assert proxy.selected == "HK"
        assert proxy.is_selectable

    def test_non_selector_groups_are_not_selectable(self):
        groups = parse_proxies(PROXIES_BODY)
        assert not groups["Auto"].is_selectable
        assert not groups["HK"].is_selectable

    def test_leaf_details_kept_in_extra(self):
        """Unmodelled fields survive for the info popup."""
        hk = parse_proxies(PROXIES_BODY)["HK"]
        assert hk.members == ()
        assert hk.selected is None
        assert hk.extra["udp"] is True

    def test_selection_not_in_members_is_dropped(self):
        group = ProxyGroup.from_api(
            "G", {"name": "G", "type": "Selector", "all": ["a", "b"], "now": "zzz"}
        )
        assert group.selected is None

    def test_missing_proxies_key_rejected(self):
        with pytest.raises(DeserializationError):
            parse_proxies({"groups": {}})

    def test_one_bad_entry_rejects_whole_body(self):
        """A partial map is never returned."""
        body = copy.deepcopy(PROXIES_BODY)
        body["proxies"]["Broken"] = {"name": "Broken", "type": "Selector", "all": "HK"}

        with pytest.raises(DeserializationError):
            parse_proxies(body)

    def test_extra_does_not_affect_equality(self):
        a = ProxyGroup("G", "Selector", ("x",), "x", {"history": [1]})
        b = ProxyGroup("G", "Selector", ("x",), "x", {"history": [2]})
        assert a == b


class TestConfigSnapshot:
    """Tests for the GET /configs body."""

    def test_reads_daemon_field_names(self):
        snapshot = ConfigSnapshot.from_api(CONFIG_BODY)

        assert snapshot.mode is Mode.RULE
        assert snapshot.mixed_port == 7890
        assert snapshot.log_level is LogLevel.INFO
        assert snapshot.allow_lan is False
        assert snapshot.bind_address == "*"
        assert snapshot.ipv6 is False
        assert snapshot.tun_enabled is False
        assert snapshot.tun_stack == "gvisor"

    def test_mode_is_case_insensitive(self):
        body = dict(CONFIG_BODY, mode="Global")
        assert ConfigSnapshot.from_api(body).mode is Mode.GLOBAL

    def test_missing_tun_means_disabled(self):
        body = {k: v for k, v in CONFIG_BODY.items() if k != "tun"}
        snapshot = ConfigSnapshot.from_api(body)
        assert snapshot.tun_enabled is False
        assert snapshot.tun_stack is None

    @pytest.mark.parametrize(
        "override",
        [
            {"mode": "turbo"},
            {"mixed-port": 70000},
            {"mixed-port": "7890"},
            {"allow-lan": "yes"},
            {"log-level": "verbose"},
        ],
    )
    def test_invalid_values_rejected(self, override):
        with pytest.raises(DeserializationError):
            ConfigSnapshot.from_api(dict(CONFIG_BODY, **override))

    def test_missing_field_rejected(self):
        body = {k: v for k, v in CONFIG_BODY.items() if k != "mixed-port"}
        with pytest.raises(DeserializationError):
            ConfigSnapshot.from_api(body)

    def test_snapshot_is_immutable(self):
        snapshot = ConfigSnapshot.from_api(CONFIG_BODY)
        with pytest.raises(AttributeError):
            snapshot.mode = Mode.DIRECT  # type: ignore[misc]


class TestLatency:
    """Tests for latency results and grading."""

    @pytest.mark.parametrize(
        ("ms", "grade"),
        [
            (0, LatencyGrade.GOOD),
            (199, LatencyGrade.GOOD),
            (200, LatencyGrade.WARN),
            (499, LatencyGrade.WARN),
            (500, LatencyGrade.BAD),
            (5000, LatencyGrade.BAD),
        ],
    )
    def test_default_thresholds(self, ms, grade):
        assert classify_latency(ms) is grade

    def test_custom_thresholds(self):
        assert classify_latency(150, good_below=100, warn_below=300) is LatencyGrade.WARN

    def test_failed_equality_ignores_detail(self):
        assert Failed(FailureReason.TIMEOUT, "a") == Failed(FailureReason.TIMEOUT, "b")
        assert Failed(FailureReason.TIMEOUT) != Failed(FailureReason.OTHER)
        assert Success(10) != Success(11)


class TestTrafficSample:
    """Tests for traffic stream lines."""

    def test_parses_counters(self):
        assert TrafficSample.from_api({"up": 10, "down": 2048}) == TrafficSample(down=2048, up=10)

    @pytest.mark.parametrize("payload", [[], {"up": -1, "down": 0}, {"up": "1", "down": 0}])
    def test_rejects_bad_lines(self, payload):
        with pytest.raises(DeserializationError):
            TrafficSample.from_api(payload)
