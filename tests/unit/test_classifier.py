"""
Unit tests for request classification helpers.
"""
from datetime import datetime, timezone

import pytest

from taskguard.security.classifier import (
    classify_location,
    is_off_hours,
    parse_user_agent,
    suspicious_ip_reasons,
)

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
IPAD = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Safari/604.1"


class TestClassifyLocation:

    @pytest.mark.parametrize("ip", ["192.168.1.10", "10.0.0.1", "172.16.4.2", "127.0.0.1", "::1", "localhost"])
    def test_private_and_loopback_are_local(self, ip):
        assert classify_location(ip) == ("Local", "Local")

    @pytest.mark.parametrize("ip", ["203.0.113.5", "8.8.8.8", "not-an-ip", ""])
    def test_everything_else_is_unknown(self, ip):
        assert classify_location(ip) == ("Unknown", "Unknown")


class TestParseUserAgent:

    def test_chrome_on_windows_desktop(self):
        device = parse_user_agent(CHROME_WINDOWS)
        assert device.device_type == "Desktop"
        # Chrome is checked before Safari even though both tokens are present
        assert device.browser == "Chrome"
        assert device.operating_system == "Windows"

    def test_iphone_is_mobile_and_mac_token_wins_os(self):
        device = parse_user_agent(SAFARI_IPHONE)
        assert device.device_type == "Mobile"
        assert device.browser == "Safari"
        assert device.operating_system == "macOS"

    def test_ipad_is_tablet(self):
        assert parse_user_agent(IPAD).device_type == "Tablet"

    def test_firefox_on_linux(self):
        device = parse_user_agent(FIREFOX_LINUX)
        assert device.browser == "Firefox"
        assert device.operating_system == "Linux"

    def test_empty_user_agent(self):
        device = parse_user_agent("")
        assert device == ("Desktop", "Unknown", "Unknown")

    def test_none_user_agent(self):
        assert parse_user_agent(None).browser == "Unknown"


class TestOffHours:

    @pytest.mark.parametrize("hour,expected", [
        (7, True),
        (8, False),
        (14, False),
        (18, False),
        (19, True),
        (23, True),
    ])
    def test_weekday_hours(self, hour, expected):
        # 2024-03-12 is a Tuesday
        assert is_off_hours(datetime(2024, 3, 12, hour, 30, tzinfo=timezone.utc)) is expected

    def test_weekend_is_always_off_hours(self):
        assert is_off_hours(datetime(2024, 3, 16, 12, 0, tzinfo=timezone.utc))
        assert is_off_hours(datetime(2024, 3, 17, 12, 0, tzinfo=timezone.utc))

    def test_naive_timestamps_are_treated_as_utc(self):
        assert not is_off_hours(datetime(2024, 3, 12, 12, 0))


class TestSuspiciousIpReasons:

    def test_public_address_is_clean(self):
        assert suspicious_ip_reasons("203.0.113.5") == []

    def test_private_range_reason_names_prefix(self):
        assert suspicious_ip_reasons("192.168.0.7") == ["Private network address range (192.168.)"]

    def test_loopback(self):
        assert suspicious_ip_reasons("127.0.0.1") == ["Loopback address (127.)"]

    def test_broadcast_and_unspecified(self):
        assert suspicious_ip_reasons("255.255.255.255") == ["Broadcast address (255.255.255.255)"]
        assert suspicious_ip_reasons("0.0.0.0") == ["Unspecified address (0.0.0.0)"]

    @pytest.mark.parametrize("ip", ["1..2.3", "1234.5678.9012.3456"])
    def test_malformed(self, ip):
        assert "Malformed IP address" in suspicious_ip_reasons(ip)

    def test_long_ipv6_is_flagged_as_malformed(self):
        assert suspicious_ip_reasons("2001:db8:85a3::8a2e:370:7334") == ["Malformed IP address"]
