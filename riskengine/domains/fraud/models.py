"""Pydantic models for the fraud domain."""

import hashlib
import json
import math
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import numpy as np
from pydantic import BaseModel, Field, field_validator

HOURS_PER_DAY = 24
DAYS_PER_WEEK = 7

TIME_WINDOW_MINUTES: dict[str, int] = {
    "1h": 60,
    "24h": 1440,
    "7d": 10080,
    "30d": 43200,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def days_between(earlier: datetime, later: datetime) -> int:
    return max(0, (_aware(later) - _aware(earlier)).days)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Decision(StrEnum):
    ALLOW = "allow"
    CHALLENGE = "challenge"
    REVIEW = "review"
    BLOCK = "block"


class RiskLevel(StrEnum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        if score < 20:
            return cls.VERY_LOW
        if score < 40:
            return cls.LOW
        if score < 60:
            return cls.MEDIUM
        if score < 80:
            return cls.HIGH
        return cls.VERY_HIGH

    @property
    def is_high_risk(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.VERY_HIGH)


class RuleCategory(StrEnum):
    VELOCITY = "velocity"
    PATTERN = "pattern"
    AMOUNT = "amount"
    GEOGRAPHY = "geography"
    DEVICE = "device"
    BEHAVIOR = "behavior"


class RuleSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(RuleSeverity).index(self)


class RuleAction(StrEnum):
    NOTIFY = "notify"
    FLAG = "flag"
    BLOCK = "block"
    REVIEW = "review"


class AnomalyType(StrEnum):
    STATISTICAL = "statistical"
    BEHAVIORAL = "behavioral"
    VELOCITY = "velocity"
    GEOLOCATION = "geolocation"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class DetectionMethod(StrEnum):
    Z_SCORE = "z_score"
    IQR = "iqr"
    ISOLATION_FOREST = "isolation_forest"
    LOF = "lof"
    SEASONAL = "seasonal"
    ADAPTIVE_THRESHOLD = "adaptive_threshold"
    DRIFT_DETECTION = "drift_detection"
    SLIDING_WINDOW = "sliding_window"
    BURST_DETECTION = "burst_detection"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    IP_REPUTATION = "ip_reputation"
    GEO_CLUSTERING = "geo_clustering"


class AnomalyStatus(StrEnum):
    DETECTED = "detected"
    CONFIRMED = "confirmed"
    FALSE_POSITIVE = "false_positive"
    RESOLVED = "resolved"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> "Severity":
        if score >= 80:
            return cls.CRITICAL
        if score >= 60:
            return cls.HIGH
        if score >= 40:
            return cls.MEDIUM
        return cls.LOW


class UserSegment(StrEnum):
    DORMANT_REACTIVATED = "dormant_reactivated"
    NEW_ACCOUNT = "new_account"
    HIGH_VALUE_TRADER = "high_value_trader"
    OCCASIONAL_USER = "occasional_user"
    RETAIL_CONSUMER = "retail_consumer"


class EntityType(StrEnum):
    TRANSACTION = "transaction"
    USER = "user"


class ScoreType(StrEnum):
    REAL_TIME = "real_time"
    BATCH = "batch"


class ScoreOutcome(StrEnum):
    FRAUD = "fraud"
    LEGITIMATE = "legitimate"


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------


class TransactionMetadata(BaseModel):
    recipient_account_id: str | None = None
    merchant_id: str | None = None
    device_fingerprint_id: str | None = None
    destination_country: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class TransactionRecord(BaseModel):
    id: str
    user_id: str
    account_id: str | None = None
    amount: float = Field(default=0.0, ge=0)
    currency: str = "USD"
    type: str = "unknown"
    status: str = "completed"
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)
    created_at: datetime = Field(default_factory=_utcnow)


class UserRecord(BaseModel):
    id: str
    created_at: datetime = Field(default_factory=_utcnow)
    kyc_level: str | None = None
    risk_rating: str | None = "medium"
    country: str | None = None
    uses_2fa: bool = False


class AccountRecord(BaseModel):
    id: str
    user_id: str
    balance: float = 0.0


class HistoricalTransaction(BaseModel):
    id: str
    amount: float = 0.0
    type: str = "unknown"
    currency: str = "USD"
    status: str = "completed"
    created_at: datetime


class GeoPoint(BaseModel):
    lat: float
    lon: float


class LastLocation(BaseModel):
    country: str
    city: str | None = None
    timestamp: datetime


class IpData(BaseModel):
    country: str | None = None
    region: str | None = None
    city: str | None = None
    isp: str | None = None
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    risk_score: float = 0.0


class DeviceData(BaseModel):
    """Device attributes reported by the client for one request."""

    fingerprint_id: str | None = None
    fingerprint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    screen_resolution: str | None = None
    color_depth: int | None = None
    timezone: str | None = None
    language: str | None = None
    languages: list[str] = Field(default_factory=list)
    plugins: list[str] = Field(default_factory=list)
    fonts: list[str] = Field(default_factory=list)
    canvas_fingerprint: str | None = None
    webgl_fingerprint: str | None = None
    audio_fingerprint: str | None = None
    os: str | None = None
    os_version: str | None = None
    browser: str | None = None
    browser_version: str | None = None
    webdriver: bool = False
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    risk_score: float | None = None
    is_trusted: bool = False
    first_seen_at: datetime | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Detector results
# ---------------------------------------------------------------------------


class TravelCheck(BaseModel):
    impossible: bool
    distance_km: float
    required_speed_kmh: float
    max_speed_kmh: float


class Cluster(BaseModel):
    id: int
    points: list[GeoPoint]
    centroid: GeoPoint


class ClusterResult(BaseModel):
    clusters: list[Cluster] = Field(default_factory=list)
    noise: list[GeoPoint] = Field(default_factory=list)
    cluster_count: int = 0
    labels: list[int] = Field(default_factory=list)


class ClusterDistance(BaseModel):
    distance_km: float
    nearest_cluster_id: int | None = None
    outside_cluster: bool


class StatisticalResult(BaseModel):
    detected: bool = False
    score: float = 0.0
    confidence: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)


class DeviceAssessment(BaseModel):
    risk_score: float = Field(ge=0, le=100)
    risk_factors: list[str] = Field(default_factory=list)
    recommendation: str
    device_profile: dict[str, Any] | None = None
    trust_score: float | None = None
    is_trusted: bool = False


class IpReputation(BaseModel):
    risk_score: float = Field(default=0.0, ge=0, le=100)
    flags: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)


class RuleDetail(BaseModel):
    name: str
    category: RuleCategory
    severity: RuleSeverity
    score: float
    actions: list[RuleAction] = Field(default_factory=list)


class RuleEvaluation(BaseModel):
    total_score: float = 0.0
    triggered_rules: list[str] = Field(default_factory=list)
    blocking_rules: list[str] = Field(default_factory=list)
    rule_scores: dict[str, float] = Field(default_factory=dict)
    rule_details: dict[str, RuleDetail] = Field(default_factory=dict)


class WindowStat(BaseModel):
    exceeded: bool
    count: int
    volume: float
    max_count: int
    max_volume: float


class WindowBreach(BaseModel):
    window: str
    metric: str
    current: float
    threshold: float
    ratio: float


class SlidingWindowResult(BaseModel):
    windows: dict[str, WindowStat] = Field(default_factory=dict)
    breaches: list[WindowBreach] = Field(default_factory=list)


class BurstResult(BaseModel):
    burst_detected: bool = False
    burst_ratio: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)


class CrossAccountResult(BaseModel):
    detected: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class BehavioralResult(BaseModel):
    risk_score: float = Field(ge=0, le=100)
    risk_factors: list[str] = Field(default_factory=list)
    is_established: bool = False
    deviation_score: float = 0.0
    profile_confidence: float = 0.0
    analysis_details: dict[str, Any] = Field(default_factory=dict)


class AdaptiveThresholds(BaseModel):
    amount_upper: float
    amount_lower: float
    daily_count_max: int
    daily_volume_max: float


class ThresholdBreach(BaseModel):
    metric: str
    value: float
    threshold: float


class DriftResult(BaseModel):
    drifted: bool = False
    drift_score: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)


class MLPrediction(BaseModel):
    score: float = 0.0
    confidence: float = 0.0
    model_version: str | None = None
    features: dict[str, Any] = Field(default_factory=dict)
    explanation: str | None = None
    risk_factors: list[str] = Field(default_factory=list)


class DetectorResult(BaseModel):
    anomaly_type: AnomalyType
    detection_method: DetectionMethod
    score: float = Field(ge=0, le=100)
    confidence: float = Field(ge=0.0, le=1.0)
    details: dict[str, Any] = Field(default_factory=dict)


class AnomalyBatchResult(BaseModel):
    anomalies: list[DetectorResult] = Field(default_factory=list)
    highest_score: float = 0.0
    has_critical: bool = False
    persisted: int = 0


class FraudIndicators(BaseModel):
    transaction_indicators: list[str] = Field(default_factory=list)
    user_indicators: list[str] = Field(default_factory=list)
    contextual_indicators: list[str] = Field(default_factory=list)


class HistoricalBehavior(BaseModel):
    avg_transaction_amount: float = 0.0
    transaction_count: int = 0
    unusual_patterns: list[str] = Field(default_factory=list)


class UserActivityAnalysis(BaseModel):
    behavioral_analysis: HistoricalBehavior
    risk_indicators: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Analysis context
# ---------------------------------------------------------------------------


class TransactionContext(BaseModel):
    """Per-call analysis input. Built fresh for every scoring run, never stored."""

    transaction_id: str | None = None
    user_id: str | None = None
    account_id: str | None = None
    amount: float = 0.0
    currency: str = "USD"
    type: str = "unknown"
    timestamp: datetime | None = None
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)

    # Velocity
    daily_transaction_count: int = 0
    daily_transaction_volume: float = 0.0
    hourly_transaction_count: int = 0
    avg_daily_transaction_count: float = 0.0

    # History
    user: UserRecord | None = None
    user_transaction_count: int = 0
    avg_transaction_amount: float = 0.0
    account_balance: float = 0.0
    last_transaction_type: str | None = None
    # Seconds since the user's previous transaction
    time_since_last_transaction: float | None = None
    transaction_history: list[HistoricalTransaction] = Field(default_factory=list)

    # Temporal (day_of_week: 0 = Monday)
    hour_of_day: int | None = None
    day_of_week: int | None = None
    is_weekend: bool = False

    # Network
    ip_address: str | None = None
    ip_country: str | None = None
    ip_city: str | None = None
    ip_region: str | None = None
    isp: str | None = None
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    device_data: DeviceData = Field(default_factory=DeviceData)

    # Geo
    lat: float | None = None
    lon: float | None = None
    last_lat: float | None = None
    last_lon: float | None = None
    time_diff_seconds: float | None = None
    location_history: list[GeoPoint] = Field(default_factory=list)
    last_location: LastLocation | None = None

    # Upstream detector outputs fed to later stages
    behavioral_analysis: BehavioralResult | None = None
    rule_results: RuleEvaluation | None = None
    anomaly_scores: AnomalyBatchResult | None = None

    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def minutes_since_last_transaction(self) -> float | None:
        if self.time_since_last_transaction is None:
            return None
        return self.time_since_last_transaction / 60.0

    def sanitized(self, max_points: int, max_history: int) -> "TransactionContext":
        """Return a copy with coordinates clamped and history lists bounded."""
        update: dict[str, Any] = {}
        for name in ("lat", "last_lat"):
            value = getattr(self, name)
            if value is not None:
                update[name] = max(-90.0, min(90.0, float(value)))
        for name in ("lon", "last_lon"):
            value = getattr(self, name)
            if value is not None:
                update[name] = max(-180.0, min(180.0, float(value)))
        if self.time_diff_seconds is not None:
            update["time_diff_seconds"] = max(0.0, float(self.time_diff_seconds))
        if self.amount < 0:
            update["amount"] = 0.0
        if len(self.location_history) > max_points:
            update["location_history"] = self.location_history[-max_points:]
        if len(self.transaction_history) > max_history:
            update["transaction_history"] = self.transaction_history[-max_history:]
        return self.model_copy(update=update)


# ---------------------------------------------------------------------------
# Behavioral profile
# ---------------------------------------------------------------------------


class CommonLocation(BaseModel):
    country: str
    city: str | None = None
    frequency: int = 0


class LocationEntry(BaseModel):
    country: str
    city: str | None = None
    ip: str | None = None
    timestamp: datetime


class BehavioralProfile(BaseModel):
    """Rolling per-user baseline used to judge what is normal for that user."""

    id: str | None = None
    user_id: str
    typical_transaction_times: list[float] = Field(default_factory=lambda: [0.0] * HOURS_PER_DAY)
    typical_transaction_days: list[float] = Field(default_factory=lambda: [0.0] * DAYS_PER_WEEK)
    avg_transaction_amount: float = 0.0
    median_transaction_amount: float = 0.0
    max_transaction_amount: float = 0.0
    transaction_amount_std_dev: float = 0.0
    avg_daily_transaction_count: float = 0.0
    avg_monthly_transaction_count: float = 0.0

    common_locations: list[CommonLocation] = Field(default_factory=list)
    location_history: list[LocationEntry] = Field(default_factory=list)
    primary_country: str | None = None
    primary_city: str | None = None
    travels_frequently: bool = False

    trusted_devices: list[str] = Field(default_factory=list)
    device_count: int = 0
    uses_multiple_devices: bool = False

    frequent_merchants: list[str] = Field(default_factory=list)
    frequent_recipients: list[str] = Field(default_factory=list)

    profile_change_frequency: int = 0
    password_change_frequency: int = 0
    uses_2fa: bool = False
    failed_login_attempts: int = 0
    last_suspicious_activity: datetime | None = None
    suspicious_activities_count: int = 0

    max_daily_volume: float = 0.0
    max_daily_transactions: int = 0
    days_since_first_transaction: int = 0
    total_transaction_count: int = 0
    total_transaction_volume: float = 0.0
    profile_established_at: datetime | None = None
    is_established: bool = False

    ml_feature_vector: dict[str, float] = Field(default_factory=dict)
    ml_features_updated_at: datetime | None = None

    adaptive_thresholds: AdaptiveThresholds | None = None
    segment_tags: list[str] = Field(default_factory=list)
    drift_metrics: dict[str, float] = Field(default_factory=dict)
    user_segment: UserSegment | None = None
    drift_score: float = 0.0
    last_drift_check_at: datetime | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("typical_transaction_times")
    @classmethod
    def _pad_hours(cls, v: list[float]) -> list[float]:
        return (list(v) + [0.0] * HOURS_PER_DAY)[:HOURS_PER_DAY]

    @field_validator("typical_transaction_days")
    @classmethod
    def _pad_days(cls, v: list[float]) -> list[float]:
        return (list(v) + [0.0] * DAYS_PER_WEEK)[:DAYS_PER_WEEK]

    def is_mature(self, min_days: int = 30, min_transactions: int = 10) -> bool:
        return (
            self.is_established
            and self.days_since_first_transaction >= min_days
            and self.total_transaction_count >= min_transactions
        )

    def is_transaction_time_unusual(self, hour: int) -> bool:
        if not self.is_established:
            return False
        return self.typical_transaction_times[hour % HOURS_PER_DAY] < 5

    def is_transaction_amount_unusual(self, amount: float) -> bool:
        if not self.is_established or not self.avg_transaction_amount:
            return False
        if self.transaction_amount_std_dev > 0:
            z = abs(amount - self.avg_transaction_amount) / self.transaction_amount_std_dev
            return z > 3
        return amount > self.avg_transaction_amount * 5

    def is_location_unusual(self, country: str, city: str | None = None) -> bool:
        if not self.is_established:
            return False

        countries = {loc.country for loc in self.common_locations}
        if country not in countries:
            return True

        if city and self.primary_country == country:
            cities = {loc.city for loc in self.common_locations if loc.country == country}
            return city not in cities
        return False

    def is_device_unusual(self, device_id: str) -> bool:
        if not self.is_established:
            return False
        return device_id not in self.trusted_devices

    def add_trusted_device(self, device_id: str) -> None:
        if device_id in self.trusted_devices:
            return
        self.trusted_devices.append(device_id)
        self.device_count = len(self.trusted_devices)
        self.uses_multiple_devices = self.device_count > 1

    def update_location_history(
        self,
        country: str,
        city: str | None = None,
        ip: str | None = None,
        now: datetime | None = None,
    ) -> None:
        entry = LocationEntry(country=country, city=city, ip=ip, timestamp=now or _utcnow())
        self.location_history = [*self.location_history, entry][-100:]
        self._update_common_locations()

    def _update_common_locations(self) -> None:
        counts: dict[tuple[str, str | None], int] = {}
        for loc in self.location_history:
            key = (loc.country, loc.city)
            counts[key] = counts.get(key, 0) + 1

        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:10]
        self.common_locations = [
            CommonLocation(country=country, city=city, frequency=count)
            for (country, city), count in ranked
        ]
        if self.common_locations:
            self.primary_country = self.common_locations[0].country
            self.primary_city = self.common_locations[0].city

    def update_transaction_stats(self, transactions: list[HistoricalTransaction]) -> None:
        """Recompute amount statistics and hour/day distributions."""
        if not transactions:
            return

        amounts = np.array([t.amount for t in transactions], dtype=float)
        self.avg_transaction_amount = float(np.mean(amounts))
        self.median_transaction_amount = float(np.median(amounts))
        self.max_transaction_amount = float(np.max(amounts))
        self.transaction_amount_std_dev = float(np.std(amounts)) if len(amounts) > 1 else 0.0

        hours = [0] * HOURS_PER_DAY
        days = [0] * DAYS_PER_WEEK
        for t in transactions:
            ts = _aware(t.created_at)
            hours[ts.hour] += 1
            days[ts.weekday()] += 1
        self.typical_transaction_times = _as_percentages(hours)
        self.typical_transaction_days = _as_percentages(days)

    def calculate_behavior_score(
        self,
        hour: int | None = None,
        amount: float | None = None,
        country: str | None = None,
        city: str | None = None,
        device_id: str | None = None,
        daily_count: int = 0,
    ) -> float:
        """Weighted deviation of the current behaviour from this profile (0-100)."""
        if not self.is_established:
            return 50.0

        score = 0.0
        if hour is not None and self.is_transaction_time_unusual(hour):
            score += 15.0
        if amount is not None and self.is_transaction_amount_unusual(amount):
            score += 25.0
        if country and self.is_location_unusual(country, city):
            score += 20.0
        if device_id and self.is_device_unusual(device_id):
            score += 20.0
        if self.max_daily_transactions and daily_count > self.max_daily_transactions * 2:
            score += 20.0
        return min(100.0, score)

    def generate_ml_features(self, now: datetime | None = None) -> dict[str, float]:
        avg = self.avg_transaction_amount
        features = {
            "avg_transaction_amount": avg,
            "transaction_amount_std_dev": self.transaction_amount_std_dev,
            "max_transaction_ratio": self.max_transaction_amount / avg if avg > 0 else 0.0,
            "avg_daily_transactions": self.avg_daily_transaction_count,
            "avg_monthly_transactions": self.avg_monthly_transaction_count,
            "location_diversity": float(len(self.common_locations)),
            "travels_frequently": 1.0 if self.travels_frequently else 0.0,
            "device_count": float(self.device_count),
            "uses_multiple_devices": 1.0 if self.uses_multiple_devices else 0.0,
            "uses_2fa": 1.0 if self.uses_2fa else 0.0,
            "failed_login_rate": (
                self.failed_login_attempts / self.total_transaction_count
                if self.total_transaction_count > 0
                else 0.0
            ),
            "account_age_days": float(self.days_since_first_transaction),
            "is_established": 1.0 if self.is_established else 0.0,
            "profile_change_frequency": float(self.profile_change_frequency),
            "password_change_frequency": float(self.password_change_frequency),
        }
        self.ml_feature_vector = features
        self.ml_features_updated_at = now or _utcnow()
        return features


def _as_percentages(counts: list[int]) -> list[float]:
    total = sum(counts)
    if total == 0:
        return [0.0] * len(counts)
    return [round(c / total * 100, 2) for c in counts]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RuleThresholds(BaseModel):
    max_daily_transactions: int | None = None
    max_daily_volume: float | None = None
    max_hourly_transactions: int | None = None
    max_transactions_in_window: int | None = None
    max_amount: float | None = None
    min_amount: float | None = None
    max_percentage_of_balance: float | None = None
    max_multiple_of_average: float | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class RuleConditions(BaseModel):
    patterns: list[str] = Field(default_factory=list)
    high_risk_countries: list[str] | None = None
    check_country_mismatch: bool = False
    check_impossible_travel: bool = False
    block_vpn: bool = False
    block_proxy: bool = False
    block_tor: bool = False
    require_trusted_device: bool = False
    flag_new_device: bool = False
    check_abnormal_behavior: bool = False
    abnormal_threshold: float | None = None
    behavioral_patterns: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class FraudRule(BaseModel):
    id: str | None = None
    code: str
    name: str
    description: str = ""
    category: RuleCategory
    severity: RuleSeverity = RuleSeverity.MEDIUM
    thresholds: RuleThresholds = Field(default_factory=RuleThresholds)
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: list[RuleAction] = Field(default_factory=list)
    is_active: bool = True
    is_blocking: bool = False
    base_score: float = Field(default=0.0, ge=0, le=100)
    weight: float = 1.0
    time_window: str | None = None
    trigger_count: int = 0
    last_triggered_at: datetime | None = None

    @property
    def window_minutes(self) -> int:
        return TIME_WINDOW_MINUTES.get(self.time_window or "", 60)

    def calculate_score(self, context: TransactionContext) -> float:
        """Multiplier applied to ``base_score`` when this rule triggers.

        ``weight`` clamped to [0, 2], raised by a quarter for critical rules
        whose numeric threshold the context exceeds at least twice over.
        """
        multiplier = max(0.0, min(2.0, self.weight))
        if self.severity == RuleSeverity.CRITICAL and self._exceeds_twice(context):
            multiplier *= 1.25
        return multiplier

    def _exceeds_twice(self, context: TransactionContext) -> bool:
        t = self.thresholds
        pairs = (
            (context.amount, t.max_amount),
            (context.daily_transaction_count, t.max_daily_transactions),
            (context.daily_transaction_volume, t.max_daily_volume),
            (context.hourly_transaction_count, t.max_hourly_transactions),
        )
        return any(limit and value >= 2 * limit for value, limit in pairs)

    def record_trigger(self, now: datetime | None = None) -> None:
        self.trigger_count += 1
        self.last_triggered_at = now or _utcnow()


# ---------------------------------------------------------------------------
# Device fingerprint
# ---------------------------------------------------------------------------

DEVICE_TYPE_MOBILE = "mobile"
DEVICE_TYPE_TABLET = "tablet"
DEVICE_TYPE_DESKTOP = "desktop"

_FINGERPRINT_ATTRIBUTES = (
    "user_agent",
    "screen_resolution",
    "color_depth",
    "timezone",
    "language",
    "plugins",
    "fonts",
    "canvas_fingerprint",
    "webgl_fingerprint",
    "audio_fingerprint",
    "os",
    "browser",
)


class DeviceFingerprint(BaseModel):
    id: str | None = None
    fingerprint_hash: str
    user_id: str | None = None
    device_type: str = DEVICE_TYPE_DESKTOP
    operating_system: str | None = None
    os_version: str | None = None
    browser: str | None = None
    browser_version: str | None = None
    user_agent: str = ""
    screen_resolution: str | None = None
    screen_color_depth: int | None = None
    timezone: str | None = None
    language: str | None = None
    installed_plugins: list[str] = Field(default_factory=list)
    installed_fonts: list[str] = Field(default_factory=list)
    canvas_fingerprint: str | None = None
    webgl_fingerprint: str | None = None
    audio_fingerprint: str | None = None

    ip_address: str | None = None
    ip_country: str | None = None
    ip_region: str | None = None
    ip_city: str | None = None
    isp: str | None = None
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False

    trust_score: float = Field(default=50.0, ge=0, le=100)
    is_trusted: bool = False
    trusted_at: datetime | None = None
    is_blocked: bool = False
    blocked_reason: str | None = None

    associated_users: list[str] = Field(default_factory=list)
    usage_count: int = 0
    successful_count: int = 0
    failed_count: int = 0
    suspicious_activity_count: int = 0
    suspicious_activities: list[str] = Field(default_factory=list)
    last_suspicious_at: datetime | None = None

    typing_patterns: list[dict[str, float]] = Field(default_factory=list)
    mouse_patterns: list[dict[str, float]] = Field(default_factory=list)

    first_seen_at: datetime = Field(default_factory=_utcnow)
    last_seen_at: datetime = Field(default_factory=_utcnow)

    @staticmethod
    def generate_fingerprint(device_data: DeviceData) -> str:
        """Stable sha256 over normalised device attributes."""
        raw = device_data.model_dump(include=set(_FINGERPRINT_ATTRIBUTES))
        normalised: dict[str, Any] = {}
        for key in _FINGERPRINT_ATTRIBUTES:
            value = raw.get(key)
            if isinstance(value, str):
                value = value.strip().lower()
            elif isinstance(value, list):
                value = sorted(str(v).strip().lower() for v in value)
            normalised[key] = value
        payload = json.dumps(normalised, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def device_risk_score(self) -> float:
        if self.is_blocked:
            return 100.0
        score = 100.0 - self.trust_score
        if self.is_vpn:
            score += 20
        if self.is_proxy:
            score += 25
        if self.is_tor:
            score += 40
        if self.is_suspicious():
            score += 15
        return max(0.0, min(100.0, score))

    def is_new(self, now: datetime | None = None, days: int = 7) -> bool:
        return (_aware(now or _utcnow()) - _aware(self.first_seen_at)) < timedelta(days=days)

    def is_suspicious(self) -> bool:
        return self.suspicious_activity_count >= 3

    def is_trusted_device(self) -> bool:
        return self.is_trusted and not self.is_blocked

    def record_usage(self, success: bool = True, now: datetime | None = None) -> None:
        self.usage_count += 1
        self.last_seen_at = now or _utcnow()
        if success:
            self.successful_count += 1
            self.trust_score = min(100.0, self.trust_score + 1)
        else:
            self.failed_count += 1
            self.trust_score = max(0.0, self.trust_score - 5)

    def associate_user(self, user_id: str) -> None:
        if user_id not in self.associated_users:
            self.associated_users.append(user_id)

    def trust(self, now: datetime | None = None) -> None:
        self.is_trusted = True
        self.trusted_at = now or _utcnow()
        self.trust_score = max(self.trust_score, 80.0)

    def record_suspicious_activity(self, kind: str, now: datetime | None = None) -> None:
        self.suspicious_activity_count += 1
        self.suspicious_activities = [*self.suspicious_activities, kind][-50:]
        self.last_suspicious_at = now or _utcnow()
        self.trust_score = max(0.0, self.trust_score - 10)

    def update_behavioral_biometrics(self, biometrics: dict[str, list[dict[str, float]]]) -> None:
        if typing := biometrics.get("typing_patterns"):
            self.typing_patterns = [*self.typing_patterns, *typing][-100:]
        if mouse := biometrics.get("mouse_patterns"):
            self.mouse_patterns = [*self.mouse_patterns, *mouse][-100:]

    def device_profile(self) -> dict[str, Any]:
        return {
            "device_type": self.device_type,
            "operating_system": self.operating_system,
            "browser": self.browser,
            "ip_country": self.ip_country,
            "first_seen_at": self.first_seen_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
            "usage_count": self.usage_count,
            "associated_users": len(self.associated_users),
        }


# ---------------------------------------------------------------------------
# Scores, detections, cases
# ---------------------------------------------------------------------------


class ScoreComponent(BaseModel):
    component: str
    name: str
    score: float
    severity: str | None = None
    factors: list[str] = Field(default_factory=list)
    confidence: float | None = None


class NetworkFactors(BaseModel):
    ip_address: str | None = None
    ip_country: str | None = None
    ip_region: str | None = None
    isp: str | None = None
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False


class FraudScore(BaseModel):
    id: str | None = None
    entity_id: str
    entity_type: EntityType
    score_type: ScoreType = ScoreType.REAL_TIME
    entity_snapshot: dict[str, Any] = Field(default_factory=dict)
    total_score: float = Field(default=0.0, ge=0, le=100)
    risk_level: RiskLevel = RiskLevel.LOW
    score_breakdown: list[ScoreComponent] = Field(default_factory=list)
    triggered_rules: list[str] = Field(default_factory=list)
    behavioral_factors: dict[str, Any] = Field(default_factory=dict)
    device_factors: dict[str, Any] = Field(default_factory=dict)
    network_factors: NetworkFactors | None = None
    ml_score: float | None = None
    ml_model_version: str | None = None
    ml_features: dict[str, Any] | None = None
    ml_explanation: str | None = None
    decision: Decision = Decision.REVIEW
    decision_factors: dict[str, Any] = Field(default_factory=dict)
    decision_at: datetime = Field(default_factory=_utcnow)
    analysis_results: dict[str, Any] = Field(default_factory=dict)
    outcome: ScoreOutcome | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    def is_high_risk(self) -> bool:
        return self.risk_level.is_high_risk


class AnomalyExplanation(BaseModel):
    summary: str
    type: str
    method: str
    score: float


class ContextSnapshot(BaseModel):
    amount: float | None = None
    type: str | None = None
    ip_hash: str | None = None
    ip_country: str | None = None
    daily_transaction_count: int | None = None
    daily_transaction_volume: float | None = None


class AnomalyDetection(BaseModel):
    id: str | None = None
    entity_id: str | None = None
    entity_type: EntityType | None = None
    user_id: str | None = None
    anomaly_type: AnomalyType
    detection_method: DetectionMethod
    status: AnomalyStatus = AnomalyStatus.DETECTED
    anomaly_score: float = Field(ge=0, le=100)
    confidence: float = Field(ge=0.0, le=1.0)
    severity: Severity
    features: dict[str, Any] = Field(default_factory=dict)
    explanation: AnomalyExplanation
    context_snapshot: ContextSnapshot = Field(default_factory=ContextSnapshot)
    is_real_time: bool = True
    fraud_score_id: str | None = None
    model_version: str = "1.0.0"
    created_at: datetime = Field(default_factory=_utcnow)


class FraudCase(BaseModel):
    id: str | None = None
    case_number: str
    fraud_score_id: str
    entity_id: str
    entity_type: EntityType
    risk_level: RiskLevel
    total_score: float
    status: str = "open"
    created_at: datetime = Field(default_factory=_utcnow)


def round_score(value: float) -> float:
    """Clamp to [0, 100] and round to 2 decimals."""
    if math.isnan(value):
        return 0.0
    return round(max(0.0, min(100.0, value)), 2)
