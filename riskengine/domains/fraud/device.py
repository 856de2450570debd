"""Device fingerprinting, device risk and IP reputation."""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.shared.cache import Cache, MemoryCache

from .config import ConfigProvider, DeviceConfig
from .models import (
    DEVICE_TYPE_DESKTOP,
    DEVICE_TYPE_MOBILE,
    DEVICE_TYPE_TABLET,
    DeviceAssessment,
    DeviceData,
    DeviceFingerprint,
    IpData,
    IpReputation,
)
from .repositories import IpIntelligence, Repositories, StaticIpIntelligence

logger = structlog.get_logger()

HEADLESS_USER_AGENT_MARKERS = ("headless", "phantom", "selenium")
AUTOMATION_MARKERS = ("selenium", "webdriver", "phantomjs", "nightmare", "puppeteer")


def detect_device_type(user_agent: str | None) -> str:
    ua = (user_agent or "").lower()
    if "mobile" in ua:
        return DEVICE_TYPE_MOBILE
    if "tablet" in ua or "ipad" in ua:
        return DEVICE_TYPE_TABLET
    return DEVICE_TYPE_DESKTOP


def detect_headless_browser(device_data: DeviceData) -> bool:
    ua = (device_data.user_agent or "").lower()
    if any(marker in ua for marker in HEADLESS_USER_AGENT_MARKERS):
        return True

    indicators = 0
    if not device_data.plugins:
        indicators += 1
    if not device_data.languages:
        indicators += 1
    if (device_data.color_depth or 0) < 24:
        indicators += 1
    return indicators >= 2


def detect_automation_tools(device_data: DeviceData) -> bool:
    if device_data.webdriver:
        return True
    return any(marker in device_data.extra for marker in AUTOMATION_MARKERS)


def detect_spoofing(current: DeviceData, stored: DeviceFingerprint) -> list[str]:
    """Attribute changes between the stored fingerprint and this sighting."""
    indicators: list[str] = []
    if current.user_agent is not None and current.user_agent != stored.user_agent:
        indicators.append("user_agent_changed")
    if (
        current.screen_resolution is not None
        and current.screen_resolution != stored.screen_resolution
    ):
        indicators.append("screen_resolution_changed")
    if current.timezone is not None and current.timezone != stored.timezone:
        indicators.append("timezone_changed")
    if (
        current.canvas_fingerprint is not None
        and stored.canvas_fingerprint
        and current.canvas_fingerprint != stored.canvas_fingerprint
    ):
        indicators.append("canvas_fingerprint_mismatch")
    return indicators


def check_device_consistency(device_data: DeviceData) -> list[str]:
    inconsistencies: list[str] = []
    if device_data.os == "iOS" and device_data.plugins:
        inconsistencies.append("ios_with_plugins")
    if detect_headless_browser(device_data):
        inconsistencies.append("headless_browser_detected")
    if detect_automation_tools(device_data):
        inconsistencies.append("automation_tools_detected")
    return inconsistencies


def get_recommendation(risk_score: float, risk_factors: list[str]) -> str:
    if risk_score >= 80 or "blocked_device" in risk_factors:
        return "block_transaction"
    if risk_score >= 60:
        return "require_additional_verification"
    if risk_score >= 40 or "new_device" in risk_factors:
        return "monitor_closely"
    return "proceed_normally"


def _average_interval(patterns: list[dict[str, float]]) -> float:
    intervals = [float(p["interval"]) for p in patterns if "interval" in p]
    if not intervals:
        return 0.0
    return sum(intervals) / len(intervals)


class DeviceFingerprintService:
    """Tracks device fingerprints and scores device and IP risk."""

    def __init__(
        self,
        repositories: Repositories,
        cache: Cache | None = None,
        ip_intelligence: IpIntelligence | None = None,
        provider: ConfigProvider | None = None,
    ) -> None:
        self._repos = repositories
        self._cache = cache or MemoryCache()
        self._ip_intelligence = ip_intelligence or StaticIpIntelligence()
        self._provider = provider or ConfigProvider()

    @property
    def _config(self) -> DeviceConfig:
        return self._provider.current.device

    async def process_fingerprint(
        self,
        device_data: DeviceData,
        session: AsyncSession,
        user_id: str | None = None,
    ) -> DeviceFingerprint:
        """Find or register the device for this sighting and enrich it with IP data."""
        fingerprint_hash = DeviceFingerprint.generate_fingerprint(device_data)
        now = datetime.now(UTC)

        device = await self._repos.devices.get_by_hash(session, fingerprint_hash)
        if device is not None:
            device.record_usage(success=True, now=now)
            if user_id:
                device.associate_user(user_id)
        else:
            device = DeviceFingerprint(
                fingerprint_hash=fingerprint_hash,
                user_id=user_id,
                device_type=detect_device_type(device_data.user_agent),
                operating_system=device_data.os,
                os_version=device_data.os_version,
                browser=device_data.browser,
                browser_version=device_data.browser_version,
                user_agent=device_data.user_agent or "",
                screen_resolution=device_data.screen_resolution,
                screen_color_depth=device_data.color_depth,
                timezone=device_data.timezone,
                language=device_data.language,
                installed_plugins=list(device_data.plugins),
                installed_fonts=list(device_data.fonts[:50]),
                canvas_fingerprint=device_data.canvas_fingerprint,
                webgl_fingerprint=device_data.webgl_fingerprint,
                audio_fingerprint=device_data.audio_fingerprint,
                ip_address=device_data.ip_address,
                associated_users=[user_id] if user_id else [],
                first_seen_at=now,
                last_seen_at=now,
            )
            logger.info("device_registered", fingerprint_hash=fingerprint_hash, user_id=user_id)

        if device_data.ip_address:
            device.ip_address = device_data.ip_address
            ip_data = await self.get_ip_data(device_data.ip_address)
            if ip_data is not None:
                device.ip_country = ip_data.country
                device.ip_region = ip_data.region
                device.ip_city = ip_data.city
                device.isp = ip_data.isp
                device.is_vpn = ip_data.is_vpn
                device.is_proxy = ip_data.is_proxy
                device.is_tor = ip_data.is_tor

        return await self._repos.devices.save(session, device)

    async def analyze_device(
        self, device_data: DeviceData, session: AsyncSession
    ) -> DeviceAssessment:
        if not device_data.fingerprint_id:
            return DeviceAssessment(
                risk_score=50,
                risk_factors=["no_device_fingerprint"],
                recommendation="require_device_verification",
            )

        device = await self._repos.devices.get(session, device_data.fingerprint_id)
        if device is None:
            return DeviceAssessment(
                risk_score=60,
                risk_factors=["unknown_device"],
                recommendation="monitor_closely",
            )

        cfg = self._config
        risk_score = device.device_risk_score()
        risk_factors: list[str] = []

        if device.is_vpn:
            risk_factors.append("vpn_detected")
        if device.is_proxy:
            risk_factors.append("proxy_detected")
        if device.is_tor:
            risk_factors.append("tor_detected")
        if device.is_blocked:
            risk_factors.append("blocked_device")
        if device.is_new(days=cfg.new_device_days):
            risk_factors.append("new_device")
        if device.is_suspicious():
            risk_factors.append("suspicious_device")
        if len(device.associated_users) > cfg.shared_device_user_limit:
            risk_factors.append("shared_device")

        spoofing = detect_spoofing(device_data, device)
        if spoofing:
            risk_factors.extend(spoofing)
            if len(spoofing) >= cfg.spoofing_min_indicators:
                risk_factors.append("possible_device_spoofing")
                risk_score = min(100.0, risk_score + 30)

        inconsistencies = check_device_consistency(device_data)
        if inconsistencies:
            risk_factors.extend(inconsistencies)
            risk_score = min(100.0, risk_score + 20)

        return DeviceAssessment(
            risk_score=risk_score,
            risk_factors=risk_factors,
            recommendation=get_recommendation(risk_score, risk_factors),
            device_profile=device.device_profile(),
            trust_score=device.trust_score,
            is_trusted=device.is_trusted_device(),
        )

    async def get_ip_data(self, ip_address: str) -> IpData | None:
        """IP enrichment, cached per address."""

        async def _lookup() -> dict[str, Any] | None:
            try:
                data = await self._ip_intelligence.lookup(ip_address)
            except Exception:
                logger.exception("ip_lookup_failed", ip_address=ip_address)
                return None
            return data.model_dump() if data is not None else None

        raw = await self._cache.get_or_compute(
            f"ip_data_{ip_address}", self._provider.current.cache.ip_data_seconds, _lookup
        )
        return IpData.model_validate(raw) if raw else None

    async def assess_ip_reputation(self, ip_address: str, session: AsyncSession) -> IpReputation:
        threshold = self._provider.current.geo.ip_reputation_threshold
        ip_data = await self.get_ip_data(ip_address)
        if ip_data is None:
            return IpReputation(details={"error": "IP data unavailable"})

        flags: list[str] = []
        risk_score = 0.0
        if ip_data.is_vpn:
            flags.append("vpn_detected")
            risk_score += 25.0
        if ip_data.is_proxy:
            flags.append("proxy_detected")
            risk_score += 30.0
        if ip_data.is_tor:
            flags.append("tor_detected")
            risk_score += 40.0

        if ip_data.risk_score > 50:
            flags.append("high_provider_risk")
            risk_score += ip_data.risk_score * 0.5

        blocked = await self._count_blocked_for_ip(ip_address, session)
        if blocked >= self._config.blocked_ip_min_transactions:
            flags.append("associated_with_blocked_transactions")
            risk_score += min(blocked * 10.0, 40.0)

        risk_score = min(round(risk_score, 2), 100.0)
        return IpReputation(
            risk_score=risk_score,
            flags=flags,
            details={
                "ip": ip_address,
                "country": ip_data.country,
                "is_vpn": ip_data.is_vpn,
                "is_proxy": ip_data.is_proxy,
                "is_tor": ip_data.is_tor,
                "provider_risk_score": ip_data.risk_score,
                "blocked_associations": blocked,
                "exceeds_threshold": risk_score >= threshold,
            },
        )

    def is_reputable(self, reputation: IpReputation) -> bool:
        return reputation.risk_score < self._provider.current.geo.ip_reputation_threshold

    async def _count_blocked_for_ip(self, ip_address: str, session: AsyncSession) -> int:
        since = datetime.now(UTC) - timedelta(days=self._config.blocked_ip_lookback_days)

        async def _count() -> int:
            return await self._repos.transactions.count_blocked_for_ip(session, ip_address, since)

        return int(
            await self._cache.get_or_compute(
                f"ip_blocked_count_{ip_address}",
                self._provider.current.cache.ip_blocked_seconds,
                _count,
            )
        )

    async def update_behavioral_biometrics(
        self,
        device_id: str,
        biometrics: dict[str, list[dict[str, float]]],
        session: AsyncSession,
    ) -> DeviceFingerprint | None:
        device = await self._repos.devices.get(session, device_id)
        if device is None:
            return None

        historical_typing = list(device.typing_patterns)
        device.update_behavioral_biometrics(biometrics)

        current_typing = biometrics.get("typing_patterns") or []
        if self._typing_deviates(historical_typing, current_typing):
            device.record_suspicious_activity("biometric_anomaly")
            logger.warning("biometric_anomaly_detected", device_id=device_id)

        return await self._repos.devices.save(session, device)

    def _typing_deviates(
        self, historical: list[dict[str, float]], current: list[dict[str, float]]
    ) -> bool:
        if not historical or not current:
            return False
        historical_avg = _average_interval(historical)
        if historical_avg == 0:
            return False
        deviation = abs(historical_avg - _average_interval(current)) / historical_avg
        return deviation > self._config.biometric_deviation_limit

    async def trust_device(self, device_id: str, user_id: str, session: AsyncSession) -> bool:
        device = await self._repos.devices.get(session, device_id)
        if device is None or device.is_blocked:
            return False

        device.trust()
        device.associate_user(user_id)
        await self._repos.devices.save(session, device)

        profile = await self._repos.profiles.get(session, user_id)
        if profile is not None:
            profile.add_trusted_device(device_id)
            await self._repos.profiles.save(session, profile)
        return True

    async def get_device_trust_network(
        self, device_id: str, session: AsyncSession
    ) -> dict[str, Any]:
        device = await self._repos.devices.get(session, device_id)
        if device is None:
            return {}

        network: dict[str, Any] = {
            "device": device.device_profile(),
            "associated_users": len(device.associated_users),
            "trust_score": device.trust_score,
            "related_devices": [],
        }
        if device.associated_users:
            related = await self._repos.devices.related_devices(session, device, limit=10)
            network["related_devices"] = [
                {
                    "device_id": other.id,
                    "trust_score": other.trust_score,
                    "is_trusted": other.is_trusted_device(),
                    "shared_users": shared,
                }
                for other, shared in related
            ]
        return network
