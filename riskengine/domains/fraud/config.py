"""Scoring configuration with sensible defaults.

Services receive a ``ConfigProvider`` and read ``provider.current`` on every
call, so thresholds and weights can be tuned at runtime by swapping in a new
``ScoringConfig``.
"""

import os
import threading
from dataclasses import dataclass, field


@dataclass
class GeoConfig:
    max_speed_kmh: float = 900.0
    cluster_eps_km: float = 50.0
    cluster_min_points: int = 3
    max_cluster_distance_km: float = 500.0
    max_history_points: int = 1000
    ip_reputation_threshold: float = 60.0
    high_risk_countries: tuple[str, ...] = ()


@dataclass
class DeviceConfig:
    new_device_days: int = 7
    shared_device_user_limit: int = 5
    spoofing_min_indicators: int = 3
    blocked_ip_min_transactions: int = 3
    blocked_ip_lookback_days: int = 90
    biometric_deviation_limit: float = 0.5


@dataclass
class StatisticalConfig:
    z_score_threshold: float = 3.0
    iqr_multiplier: float = 1.5
    min_samples: int = 10
    isolation_forest_contamination: float = 0.1
    lof_neighbors: int = 20
    max_history_size: int = 1000


@dataclass
class BehavioralConfig:
    adaptive_sensitivity: float = 1.5
    drift_threshold: float = 0.3
    drift_baseline_days: int = 90
    drift_window_days: int = 7
    stats_lookback_days: int = 90
    stats_sample_size: int = 100
    established_min_days: int = 30
    established_min_transactions: int = 10
    dormant_days: int = 90


@dataclass
class SlidingWindow:
    minutes: int
    max_count: int
    max_volume: float


def _default_windows() -> dict[str, SlidingWindow]:
    return {
        "1h": SlidingWindow(minutes=60, max_count=10, max_volume=10_000.0),
        "24h": SlidingWindow(minutes=1440, max_count=50, max_volume=50_000.0),
    }


@dataclass
class CrossAccountConfig:
    enabled: bool = False
    time_window_minutes: int = 60
    shared_device_threshold: int = 3
    shared_ip_threshold: int = 5


@dataclass
class VelocityConfig:
    sliding_windows: dict[str, SlidingWindow] = field(default_factory=_default_windows)
    burst_ratio_threshold: float = 3.0
    cross_account: CrossAccountConfig = field(default_factory=CrossAccountConfig)


@dataclass
class AnomalyConfig:
    enabled: bool = True
    score_threshold: float = 40.0
    model_version: str = "1.0.0"


@dataclass
class MLConfig:
    enabled: bool = False
    endpoint: str = ""
    model_version: str = "1.0.0"


@dataclass
class ScoreWeights:
    rules: float = 0.35
    behavioral: float = 0.25
    device: float = 0.20
    ml: float = 0.20


@dataclass
class DecisionThresholds:
    block: float = 80.0
    review: float = 60.0
    challenge: float = 40.0


@dataclass
class RuleEngineConfig:
    abnormal_behavior_threshold: float = 70.0
    impossible_travel_hours: float = 2.0


@dataclass
class CacheTTLs:
    velocity_seconds: int = 60
    rules_seconds: int = 300
    ip_data_seconds: int = 86400
    ip_blocked_seconds: int = 300
    cross_account_seconds: int = 60
    model_metrics_seconds: int = 3600


@dataclass
class ScoringConfig:
    geo: GeoConfig = field(default_factory=GeoConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)
    statistical: StatisticalConfig = field(default_factory=StatisticalConfig)
    behavioral: BehavioralConfig = field(default_factory=BehavioralConfig)
    velocity: VelocityConfig = field(default_factory=VelocityConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    ml: MLConfig = field(default_factory=MLConfig)
    weights: ScoreWeights = field(default_factory=ScoreWeights)
    decisions: DecisionThresholds = field(default_factory=DecisionThresholds)
    rules: RuleEngineConfig = field(default_factory=RuleEngineConfig)
    cache: CacheTTLs = field(default_factory=CacheTTLs)

    @classmethod
    def from_env(cls) -> "ScoringConfig":
        """Load config with env var overrides. Env vars use RISK_ prefix."""
        config = cls()

        # Geo overrides
        if v := os.getenv("RISK_MAX_SPEED_KMH"):
            config.geo.max_speed_kmh = float(v)
        if v := os.getenv("RISK_CLUSTER_EPS_KM"):
            config.geo.cluster_eps_km = float(v)
        if v := os.getenv("RISK_IP_REPUTATION_THRESHOLD"):
            config.geo.ip_reputation_threshold = float(v)
        if v := os.getenv("RISK_HIGH_RISK_COUNTRIES"):
            config.geo.high_risk_countries = tuple(
                c.strip().upper() for c in v.split(",") if c.strip()
            )

        # Statistical overrides
        if v := os.getenv("RISK_Z_SCORE_THRESHOLD"):
            config.statistical.z_score_threshold = float(v)
        if v := os.getenv("RISK_IQR_MULTIPLIER"):
            config.statistical.iqr_multiplier = float(v)
        if v := os.getenv("RISK_LOF_NEIGHBORS"):
            config.statistical.lof_neighbors = int(v)

        # Behavioral overrides
        if v := os.getenv("RISK_ADAPTIVE_SENSITIVITY"):
            config.behavioral.adaptive_sensitivity = float(v)
        if v := os.getenv("RISK_DRIFT_THRESHOLD"):
            config.behavioral.drift_threshold = float(v)

        # Velocity overrides
        if v := os.getenv("RISK_BURST_RATIO_THRESHOLD"):
            config.velocity.burst_ratio_threshold = float(v)
        if v := os.getenv("RISK_CROSS_ACCOUNT_ENABLED"):
            config.velocity.cross_account.enabled = v.lower() in ("1", "true", "yes")

        # Feature toggles
        if v := os.getenv("RISK_ANOMALY_DETECTION_ENABLED"):
            config.anomaly.enabled = v.lower() in ("1", "true", "yes")
        if v := os.getenv("RISK_ML_ENABLED"):
            config.ml.enabled = v.lower() in ("1", "true", "yes")
        if v := os.getenv("RISK_ML_ENDPOINT"):
            config.ml.endpoint = v
        if v := os.getenv("RISK_ML_MODEL_VERSION"):
            config.ml.model_version = v

        return config


class ConfigProvider:
    """Holds the active ScoringConfig. ``swap`` replaces it atomically."""

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self._config = config or ScoringConfig()
        self._lock = threading.Lock()

    @property
    def current(self) -> ScoringConfig:
        return self._config

    def swap(self, config: ScoringConfig) -> ScoringConfig:
        """Install a new config and return the previous one."""
        with self._lock:
            previous, self._config = self._config, config
        return previous

    def reload_from_env(self) -> ScoringConfig:
        return self.swap(ScoringConfig.from_env())


# Module-level default instance
default_config = ScoringConfig()
