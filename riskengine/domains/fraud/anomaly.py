"""Secondary anomaly pass run alongside the main fraud score.

Four independent detectors (statistical, behavioral, velocity and
geolocation) each report at most one finding. Findings at or above the
configured score threshold are stored as ``AnomalyDetection`` records and
announced with an ``anomaly_detected`` event.
"""

import hashlib
import math
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.shared.events import EventOutbox, EventSink, FraudEventType, LoggingEventSink

from .behavioral import BehavioralAnalysisService
from .config import ConfigProvider
from .device import DeviceFingerprintService
from .geo import GeoMathService
from .models import (
    AdaptiveThresholds,
    AnomalyBatchResult,
    AnomalyDetection,
    AnomalyExplanation,
    AnomalyType,
    BehavioralProfile,
    ContextSnapshot,
    DetectionMethod,
    DetectorResult,
    DriftResult,
    EntityType,
    Severity,
    ThresholdBreach,
    TransactionContext,
)
from .repositories import Repositories
from .rules_engine import RuleEngineService
from .statistical import StatisticalAnalysisService

logger = structlog.get_logger()

IMPOSSIBLE_TRAVEL_SCORE = 85.0
MIN_CLUSTER_HISTORY = 3


def calculate_confidence(score: float, details: dict[str, Any]) -> float:
    """Confidence tier from score strength, nudged up when several signals agree."""
    if score >= 80:
        confidence = 0.95
    elif score >= 60:
        confidence = 0.85
    elif score >= 40:
        confidence = 0.70
    else:
        confidence = 0.50

    signals = sum(1 for d in details.values() if isinstance(d, dict | list) and d)
    if signals >= 3:
        confidence = min(confidence + 0.05, 1.0)
    return round(confidence, 4)


def hash_ip(ip_address: str | None) -> str | None:
    if not ip_address:
        return None
    return hashlib.sha256(ip_address.encode("utf-8")).hexdigest()


def _json_safe(value: Any) -> Any:
    """Replace non-finite floats so detector details can be stored as JSON."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    return value


def detect_threshold_breaches(
    context: TransactionContext, thresholds: AdaptiveThresholds
) -> list[ThresholdBreach]:
    breaches: list[ThresholdBreach] = []
    amount = context.amount

    if amount > thresholds.amount_upper:
        breaches.append(
            ThresholdBreach(metric="amount_high", value=amount, threshold=thresholds.amount_upper)
        )
    if 0 < amount < thresholds.amount_lower:
        breaches.append(
            ThresholdBreach(metric="amount_low", value=amount, threshold=thresholds.amount_lower)
        )
    if context.daily_transaction_count > thresholds.daily_count_max:
        breaches.append(
            ThresholdBreach(
                metric="daily_count",
                value=float(context.daily_transaction_count),
                threshold=float(thresholds.daily_count_max),
            )
        )
    if context.daily_transaction_volume > thresholds.daily_volume_max:
        breaches.append(
            ThresholdBreach(
                metric="daily_volume",
                value=context.daily_transaction_volume,
                threshold=thresholds.daily_volume_max,
            )
        )
    return breaches


class AnomalyDetectionOrchestrator:
    def __init__(
        self,
        repositories: Repositories,
        statistical: StatisticalAnalysisService,
        behavioral: BehavioralAnalysisService,
        rule_engine: RuleEngineService,
        devices: DeviceFingerprintService,
        geo: GeoMathService,
        events: EventSink | None = None,
        provider: ConfigProvider | None = None,
    ) -> None:
        self._repos = repositories
        self._statistical = statistical
        self._behavioral = behavioral
        self._rule_engine = rule_engine
        self._devices = devices
        self._geo = geo
        self._events = events or LoggingEventSink()
        self._provider = provider or ConfigProvider()

    async def detect_anomalies(
        self,
        context: TransactionContext,
        entity_id: str | None,
        entity_type: EntityType | None,
        user_id: str | None,
        fraud_score_id: str | None,
        session: AsyncSession,
        outbox: EventOutbox | None = None,
    ) -> AnomalyBatchResult:
        """Run every detector and persist the significant findings.

        With an ``outbox`` the events are left for the caller to publish after
        its commit; without one they are published before returning.
        """
        config = self._provider.current
        if not config.anomaly.enabled:
            return AnomalyBatchResult()

        context = context.sanitized(
            max_points=config.geo.max_history_points,
            max_history=config.statistical.max_history_size,
        )
        profile = await self._repos.profiles.get(session, user_id) if user_id else None

        findings = [
            await self.run_statistical_detection(context, profile),
            await self.run_behavioral_detection(context, profile, session),
            await self.run_velocity_detection(context, session),
            await self.run_geolocation_detection(context, session),
        ]
        anomalies = [f for f in findings if f is not None]
        highest = max((a.score for a in anomalies), default=0.0)

        own_outbox = outbox is None
        events = EventOutbox() if own_outbox else outbox
        persisted = 0
        has_critical = False

        for anomaly in anomalies:
            if anomaly.score < config.anomaly.score_threshold:
                continue
            detection = await self._persist_detection(
                anomaly, context, entity_id, entity_type, user_id, fraud_score_id, session
            )
            if detection is None:
                continue
            persisted += 1
            if detection.severity == Severity.CRITICAL:
                has_critical = True
            events.add(
                FraudEventType.ANOMALY_DETECTED,
                detection.entity_id or detection.id or "",
                anomaly_detection_id=detection.id,
                anomaly_type=detection.anomaly_type.value,
                detection_method=detection.detection_method.value,
                anomaly_score=detection.anomaly_score,
                severity=detection.severity.value,
                user_id=user_id,
            )

        if own_outbox:
            await events.flush(self._events)

        if anomalies:
            logger.info(
                "anomalies_detected",
                entity_id=entity_id,
                count=len(anomalies),
                persisted=persisted,
                highest_score=round(highest, 2),
            )

        return AnomalyBatchResult(
            anomalies=anomalies,
            highest_score=round(highest, 2),
            has_critical=has_critical,
            persisted=persisted,
        )

    async def run_statistical_detection(
        self, context: TransactionContext, profile: BehavioralProfile | None
    ) -> DetectorResult | None:
        try:
            results = self._statistical.analyze(context, profile)
            best_method: str | None = None
            best_score = 0.0
            for method, result in results.items():
                if result.score > best_score:
                    best_score = result.score
                    best_method = method

            if best_score <= 0 or best_method is None:
                return None

            details = {method: r.model_dump() for method, r in results.items()}
            return DetectorResult(
                anomaly_type=AnomalyType.STATISTICAL,
                detection_method=DetectionMethod(best_method),
                score=round(best_score, 2),
                confidence=calculate_confidence(best_score, details),
                details=details,
            )
        except Exception:
            logger.exception("statistical_detection_failed", user_id=context.user_id)
            return None

    async def run_behavioral_detection(
        self,
        context: TransactionContext,
        profile: BehavioralProfile | None,
        session: AsyncSession,
    ) -> DetectorResult | None:
        try:
            if profile is None or not profile.is_established:
                return None

            thresholds = self._behavioral.compute_adaptive_thresholds(profile)
            breaches = detect_threshold_breaches(context, thresholds)
            adaptive_score = min(len(breaches) * 25.0, 80.0)

            if context.transaction_history:
                drift = self._behavioral.detect_drift(
                    profile, context.transaction_history, now=context.timestamp
                )
            else:
                drift = DriftResult()
            # Thresholds and drift metrics are kept on the profile
            await self._repos.profiles.save(session, profile)

            drift_score = drift.drift_score * 100
            highest = max(adaptive_score, drift_score)
            if highest <= 0:
                return None

            method = (
                DetectionMethod.ADAPTIVE_THRESHOLD
                if adaptive_score >= drift_score
                else DetectionMethod.DRIFT_DETECTION
            )
            return DetectorResult(
                anomaly_type=AnomalyType.BEHAVIORAL,
                detection_method=method,
                score=round(min(highest, 100.0), 2),
                confidence=calculate_confidence(
                    highest, {"adaptive": thresholds.model_dump(), "drift": drift.model_dump()}
                ),
                details={
                    "adaptive_thresholds": thresholds.model_dump(),
                    "breaches": [b.model_dump() for b in breaches],
                    "drift_detection": drift.model_dump(),
                },
            )
        except Exception:
            logger.exception("behavioral_detection_failed", user_id=context.user_id)
            return None

    async def run_velocity_detection(
        self, context: TransactionContext, session: AsyncSession
    ) -> DetectorResult | None:
        try:
            windows = await self._rule_engine.evaluate_sliding_windows(context, session)
            burst = self._rule_engine.detect_burst(context)

            window_score = max((b.ratio * 40 for b in windows.breaches), default=0.0)
            burst_score = min(burst.burst_ratio * 30, 80.0) if burst.burst_detected else 0.0
            highest = max(window_score, burst_score)
            if highest <= 0:
                return None

            method = (
                DetectionMethod.SLIDING_WINDOW
                if window_score >= burst_score
                else DetectionMethod.BURST_DETECTION
            )
            details = {
                "sliding_windows": windows.model_dump(),
                "burst_detection": burst.model_dump(),
            }
            return DetectorResult(
                anomaly_type=AnomalyType.VELOCITY,
                detection_method=method,
                score=round(min(highest, 100.0), 2),
                confidence=calculate_confidence(highest, details),
                details=details,
            )
        except Exception:
            logger.exception("velocity_detection_failed", user_id=context.user_id)
            return None

    async def run_geolocation_detection(
        self, context: TransactionContext, session: AsyncSession
    ) -> DetectorResult | None:
        try:
            highest = 0.0
            method: DetectionMethod | None = None
            details: dict[str, Any] = {}

            have_travel = None not in (
                context.lat,
                context.lon,
                context.last_lat,
                context.last_lon,
                context.time_diff_seconds,
            )
            if have_travel:
                travel = self._geo.is_impossible_travel(
                    context.last_lat,
                    context.last_lon,
                    context.lat,
                    context.lon,
                    context.time_diff_seconds,
                )
                details["impossible_travel"] = travel.model_dump()
                if travel.impossible and IMPOSSIBLE_TRAVEL_SCORE > highest:
                    highest = IMPOSSIBLE_TRAVEL_SCORE
                    method = DetectionMethod.IMPOSSIBLE_TRAVEL

            if context.ip_address:
                reputation = await self._devices.assess_ip_reputation(context.ip_address, session)
                details["ip_reputation"] = reputation.model_dump()
                if reputation.risk_score > highest:
                    highest = reputation.risk_score
                    method = DetectionMethod.IP_REPUTATION

            if (
                context.lat is not None
                and context.lon is not None
                and len(context.location_history) >= MIN_CLUSTER_HISTORY
            ):
                clusters = self._geo.cluster_locations(context.location_history)
                if clusters.clusters:
                    nearest = self._geo.distance_to_nearest_cluster(
                        context.lat, context.lon, clusters.clusters
                    )
                    details["geo_clustering"] = {
                        "cluster_count": clusters.cluster_count,
                        "noise_points": len(clusters.noise),
                        "distance_check": nearest.model_dump(),
                    }
                    if nearest.outside_cluster:
                        cluster_score = round(min(nearest.distance_km / 500.0 * 40, 80.0), 2)
                        if cluster_score > highest:
                            highest = cluster_score
                            method = DetectionMethod.GEO_CLUSTERING

            if highest <= 0 or method is None:
                return None

            return DetectorResult(
                anomaly_type=AnomalyType.GEOLOCATION,
                detection_method=method,
                score=round(highest, 2),
                confidence=calculate_confidence(highest, details),
                details=_json_safe(details),
            )
        except Exception:
            logger.exception("geolocation_detection_failed", user_id=context.user_id)
            return None

    async def _persist_detection(
        self,
        anomaly: DetectorResult,
        context: TransactionContext,
        entity_id: str | None,
        entity_type: EntityType | None,
        user_id: str | None,
        fraud_score_id: str | None,
        session: AsyncSession,
    ) -> AnomalyDetection | None:
        try:
            detection = AnomalyDetection(
                entity_id=entity_id,
                entity_type=entity_type,
                user_id=user_id,
                anomaly_type=anomaly.anomaly_type,
                detection_method=anomaly.detection_method,
                anomaly_score=anomaly.score,
                confidence=anomaly.confidence,
                severity=Severity.from_score(anomaly.score),
                features=_json_safe(anomaly.details),
                explanation=AnomalyExplanation(
                    summary=(
                        f"{anomaly.anomaly_type.label} anomaly detected via "
                        f"{anomaly.detection_method.value} with score {anomaly.score}"
                    ),
                    type=anomaly.anomaly_type.label,
                    method=anomaly.detection_method.value,
                    score=anomaly.score,
                ),
                context_snapshot=ContextSnapshot(
                    amount=context.amount,
                    type=context.type,
                    ip_hash=hash_ip(context.ip_address),
                    ip_country=context.ip_country,
                    daily_transaction_count=context.daily_transaction_count,
                    daily_transaction_volume=context.daily_transaction_volume,
                ),
                fraud_score_id=fraud_score_id,
                model_version=self._provider.current.anomaly.model_version,
            )
            return await self._repos.anomalies.add(session, detection)
        except Exception:
            logger.exception(
                "anomaly_persist_failed",
                entity_id=entity_id,
                anomaly_type=anomaly.anomaly_type.value,
                score=anomaly.score,
            )
            return None
