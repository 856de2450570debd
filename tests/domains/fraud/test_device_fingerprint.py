"""Unit tests for device fingerprinting and IP reputation."""

from datetime import timedelta

import pytest

from riskengine.domains.fraud.device import (
    DeviceFingerprintService,
    check_device_consistency,
    detect_device_type,
    detect_spoofing,
    get_recommendation,
)
from riskengine.domains.fraud.models import (
    BehavioralProfile,
    DeviceData,
    DeviceFingerprint,
    IpData,
)
from riskengine.shared.cache import MemoryCache
from tests.conftest import NOW


class FixedIpIntelligence:
    def __init__(self, data: IpData | None = None, error: Exception | None = None) -> None:
        self.data = data
        self.error = error
        self.calls = 0

    async def lookup(self, ip_address):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.data


def _browser(**overrides) -> DeviceData:
    values = {
        "user_agent": "Mozilla/5.0 (Windows NT 10.0) Chrome/120",
        "screen_resolution": "1920x1080",
        "color_depth": 24,
        "timezone": "America/New_York",
        "languages": ["en-US"],
        "plugins": ["pdf"],
        "canvas_fingerprint": "canvas-1",
    }
    values.update(overrides)
    return DeviceData(**values)


def _stored_device(**overrides) -> DeviceFingerprint:
    values = {
        "id": "dev-1",
        "fingerprint_hash": "hash-1",
        "user_agent": "Mozilla/5.0 (Windows NT 10.0) Chrome/120",
        "screen_resolution": "1920x1080",
        "timezone": "America/New_York",
        "canvas_fingerprint": "canvas-1",
        "first_seen_at": NOW - timedelta(days=90),
    }
    values.update(overrides)
    return DeviceFingerprint(**values)


@pytest.fixture
def service(repos, provider) -> DeviceFingerprintService:
    return DeviceFingerprintService(repos, cache=MemoryCache(), provider=provider)


class TestHelpers:
    def test_device_type(self):
        assert detect_device_type("Mozilla/5.0 (iPhone) Mobile/15E148") == "mobile"
        assert detect_device_type("Mozilla/5.0 (iPad)") == "tablet"
        assert detect_device_type(None) == "desktop"

    def test_spoofing_indicators(self):
        current = _browser(
            user_agent="curl/8.0",
            screen_resolution="800x600",
            timezone="UTC",
            canvas_fingerprint="canvas-2",
        )
        assert detect_spoofing(current, _stored_device()) == [
            "user_agent_changed",
            "screen_resolution_changed",
            "timezone_changed",
            "canvas_fingerprint_mismatch",
        ]

    def test_headless_and_automation(self):
        data = DeviceData(user_agent="HeadlessChrome/120", webdriver=True)
        assert check_device_consistency(data) == [
            "headless_browser_detected",
            "automation_tools_detected",
        ]

    def test_normal_browser_is_consistent(self):
        assert check_device_consistency(_browser()) == []

    @pytest.mark.parametrize(
        "score,factors,expected",
        [
            (85, [], "block_transaction"),
            (10, ["blocked_device"], "block_transaction"),
            (65, [], "require_additional_verification"),
            (45, [], "monitor_closely"),
            (10, ["new_device"], "monitor_closely"),
            (10, [], "proceed_normally"),
        ],
    )
    def test_recommendation(self, score, factors, expected):
        assert get_recommendation(score, factors) == expected


class TestAnalyzeDevice:
    @pytest.mark.asyncio
    async def test_missing_fingerprint(self, service):
        result = await service.analyze_device(DeviceData(), None)
        assert result.risk_score == 50
        assert result.risk_factors == ["no_device_fingerprint"]
        assert result.recommendation == "require_device_verification"

    @pytest.mark.asyncio
    async def test_unknown_device(self, service):
        result = await service.analyze_device(DeviceData(fingerprint_id="nope"), None)
        assert result.risk_score == 60
        assert result.risk_factors == ["unknown_device"]

    @pytest.mark.asyncio
    async def test_known_device_without_findings(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device()
        result = await service.analyze_device(_browser(fingerprint_id="dev-1"), None)
        assert result.risk_score == 50.0
        assert result.risk_factors == []
        assert result.recommendation == "monitor_closely"
        assert result.device_profile["device_type"] == "desktop"

    @pytest.mark.asyncio
    async def test_spoofing_adds_thirty(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device()
        data = _browser(
            fingerprint_id="dev-1",
            user_agent="Mozilla/5.0 (X11; Linux) Firefox/119",
            screen_resolution="800x600",
            timezone="UTC",
        )
        result = await service.analyze_device(data, None)
        assert "possible_device_spoofing" in result.risk_factors
        assert result.risk_score == 80.0
        assert result.recommendation == "block_transaction"

    @pytest.mark.asyncio
    async def test_two_changes_are_not_spoofing(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device()
        data = _browser(fingerprint_id="dev-1", screen_resolution="800x600", timezone="UTC")
        result = await service.analyze_device(data, None)
        assert "possible_device_spoofing" not in result.risk_factors
        assert result.risk_score == 50.0

    @pytest.mark.asyncio
    async def test_network_and_sharing_flags(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device(
            is_tor=True,
            associated_users=[f"user-{i}" for i in range(6)],
            first_seen_at=NOW.replace(year=2099),
        )
        result = await service.analyze_device(_browser(fingerprint_id="dev-1"), None)
        assert {"tor_detected", "shared_device", "new_device"} <= set(result.risk_factors)
        assert result.risk_score == 90.0


class TestProcessFingerprint:
    @pytest.mark.asyncio
    async def test_registers_then_reuses_device(self, service, repos):
        data = _browser(ip_address="203.0.113.7")

        first = await service.process_fingerprint(data, None, user_id="user-1")
        assert first.id == "1"
        assert first.ip_country == "US"
        assert first.associated_users == ["user-1"]

        second = await service.process_fingerprint(data, None, user_id="user-2")
        assert second.id == "1"
        assert second.usage_count == 1
        assert second.associated_users == ["user-1", "user-2"]
        assert len(repos.devices.items) == 1


class TestIpReputation:
    @pytest.mark.asyncio
    async def test_tor_with_blocked_history(self, repos, provider):
        intel = FixedIpIntelligence(IpData(country="NL", is_tor=True, risk_score=80))
        service = DeviceFingerprintService(repos, ip_intelligence=intel, provider=provider)
        repos.transactions.blocked_by_ip["198.51.100.4"] = 4

        reputation = await service.assess_ip_reputation("198.51.100.4", None)

        assert reputation.flags == [
            "tor_detected",
            "high_provider_risk",
            "associated_with_blocked_transactions",
        ]
        assert reputation.risk_score == 100.0
        assert service.is_reputable(reputation) is False

    @pytest.mark.asyncio
    async def test_few_blocked_transactions_ignored(self, repos, provider):
        intel = FixedIpIntelligence(IpData(country="US"))
        service = DeviceFingerprintService(repos, ip_intelligence=intel, provider=provider)
        repos.transactions.blocked_by_ip["198.51.100.4"] = 2

        reputation = await service.assess_ip_reputation("198.51.100.4", None)

        assert reputation.flags == []
        assert reputation.risk_score == 0.0
        assert service.is_reputable(reputation) is True

    @pytest.mark.asyncio
    async def test_lookup_failure_yields_error_details(self, repos, provider):
        intel = FixedIpIntelligence(error=RuntimeError("provider down"))
        service = DeviceFingerprintService(repos, ip_intelligence=intel, provider=provider)

        reputation = await service.assess_ip_reputation("198.51.100.4", None)

        assert reputation.risk_score == 0.0
        assert reputation.details == {"error": "IP data unavailable"}

    @pytest.mark.asyncio
    async def test_ip_data_is_cached(self, repos, provider):
        intel = FixedIpIntelligence(IpData(country="US"))
        service = DeviceFingerprintService(
            repos, cache=MemoryCache(), ip_intelligence=intel, provider=provider
        )
        await service.get_ip_data("198.51.100.4")
        await service.get_ip_data("198.51.100.4")
        assert intel.calls == 1


class TestTrustAndBiometrics:
    @pytest.mark.asyncio
    async def test_trust_device_updates_profile(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device()
        repos.profiles.items["user-1"] = BehavioralProfile(user_id="user-1")

        assert await service.trust_device("dev-1", "user-1", None) is True
        assert repos.devices.items["dev-1"].is_trusted is True
        assert repos.profiles.items["user-1"].trusted_devices == ["dev-1"]

    @pytest.mark.asyncio
    async def test_blocked_device_cannot_be_trusted(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device(is_blocked=True)
        assert await service.trust_device("dev-1", "user-1", None) is False

    @pytest.mark.asyncio
    async def test_typing_deviation_marks_suspicious(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device(
            typing_patterns=[{"interval": 100.0}, {"interval": 100.0}]
        )
        device = await service.update_behavioral_biometrics(
            "dev-1", {"typing_patterns": [{"interval": 250.0}]}, None
        )
        assert device.suspicious_activity_count == 1
        assert "biometric_anomaly" in device.suspicious_activities

    @pytest.mark.asyncio
    async def test_trust_network_lists_related_devices(self, service, repos):
        repos.devices.items["dev-1"] = _stored_device(associated_users=["u1", "u2"])
        repos.devices.items["dev-2"] = _stored_device(
            id="dev-2", fingerprint_hash="hash-2", associated_users=["u2"]
        )

        network = await service.get_device_trust_network("dev-1", None)

        assert network["associated_users"] == 2
        assert network["related_devices"][0]["device_id"] == "dev-2"
        assert network["related_devices"][0]["shared_users"] == 1
