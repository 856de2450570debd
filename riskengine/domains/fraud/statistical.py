"""Statistical outlier checks on a single transaction.

Isolation forest and LOF here are lightweight approximations that need no
trained model: isolation path lengths are derived from how extreme each
feature is, and LOF compares the transaction's reachability density with
the overall density of the user's amount history.
"""

import math
from datetime import UTC, datetime

import numpy as np

from .config import ConfigProvider, StatisticalConfig
from .models import (
    BehavioralProfile,
    DetectionMethod,
    StatisticalResult,
    TransactionContext,
)


class StatisticalAnalysisService:
    def __init__(self, provider: ConfigProvider | None = None) -> None:
        self._provider = provider or ConfigProvider()

    @property
    def _config(self) -> StatisticalConfig:
        return self._provider.current.statistical

    def analyze(
        self, context: TransactionContext, profile: BehavioralProfile | None
    ) -> dict[str, StatisticalResult]:
        """Run every check. ``seasonal`` is included only when it fires."""
        results = {
            DetectionMethod.Z_SCORE.value: self.z_score_analysis(context, profile),
            DetectionMethod.IQR.value: self.iqr_analysis(context),
            DetectionMethod.ISOLATION_FOREST.value: self.isolation_forest_analysis(context),
            DetectionMethod.LOF.value: self.local_outlier_factor_analysis(context),
        }
        seasonal = self.seasonal_decomposition(context, profile)
        if seasonal.detected:
            results[DetectionMethod.SEASONAL.value] = seasonal
        return results

    def z_score_analysis(
        self, context: TransactionContext, profile: BehavioralProfile | None
    ) -> StatisticalResult:
        threshold = self._config.z_score_threshold
        z_scores: dict[str, float] = {}
        detected = False
        established = profile is not None and profile.is_established

        if established:
            if profile.transaction_amount_std_dev > 0:
                z_scores["amount"] = (
                    context.amount - profile.avg_transaction_amount
                ) / profile.transaction_amount_std_dev

            # Poisson approximation: stddev ~= sqrt(mean)
            avg_daily = int(profile.avg_daily_transaction_count)
            if avg_daily > 0:
                z_scores["velocity"] = (context.daily_transaction_count - avg_daily) / max(
                    math.sqrt(avg_daily), 0.01
                )

            max_daily = profile.max_daily_volume
            if max_daily > 0:
                z_scores["volume"] = (context.daily_transaction_volume - max_daily * 0.5) / max(
                    max_daily * 0.25, 0.01
                )

            detected = any(abs(z) > threshold for z in z_scores.values())

        max_z = max((abs(z) for z in z_scores.values()), default=0.0)
        score = min(100.0, max_z / threshold * 50.0)
        if established:
            confidence = min(0.95, 0.5 + profile.total_transaction_count / 200)
        else:
            confidence = 0.3

        return StatisticalResult(
            detected=detected,
            score=round(score, 2),
            confidence=round(confidence, 4),
            details={
                "z_scores": z_scores,
                "threshold": threshold,
                "max_z_score": round(max_z, 4),
            },
        )

    def iqr_analysis(self, context: TransactionContext) -> StatisticalResult:
        multiplier = self._config.iqr_multiplier
        history = sorted(t.amount for t in context.transaction_history)
        n = len(history)

        if n < self._config.min_samples:
            return StatisticalResult(
                confidence=0.1,
                details={"reason": "insufficient_history", "count": n},
            )

        q1 = history[math.floor(n * 0.25)]
        q3 = history[math.floor(n * 0.75)]
        iqr = q3 - q1
        lower = q1 - multiplier * iqr
        upper = q3 + multiplier * iqr

        amount = context.amount
        detected = amount < lower or amount > upper
        if amount > upper:
            distance = amount - upper
        elif amount < lower:
            distance = lower - amount
        else:
            distance = 0.0
        score = min(100.0, distance / iqr * 40.0) if iqr > 0 else 0.0

        return StatisticalResult(
            detected=detected,
            score=round(score, 2),
            confidence=round(min(0.90, 0.4 + n / 200), 4),
            details={
                "q1": round(q1, 2),
                "q3": round(q3, 2),
                "iqr": round(iqr, 2),
                "lower_bound": round(lower, 2),
                "upper_bound": round(upper, 2),
                "amount": amount,
            },
        )

    def isolation_forest_analysis(self, context: TransactionContext) -> StatisticalResult:
        contamination = self._config.isolation_forest_contamination
        features = extract_numeric_features(context)

        if not features:
            return StatisticalResult(confidence=0.2, details={"reason": "no_features"})

        total_path = 0.0
        for value in features.values():
            # Extreme values isolate quickly, so they get short paths
            normalized = 1.0 / (1.0 + math.exp(-(abs(value) - 1.0)))
            total_path += max(1, 10 - int(normalized * 9))

        n_features = len(features)
        avg_path = total_path / n_features
        anomaly = max(0.0, min(1.0, 1.0 - avg_path / 10.0))

        return StatisticalResult(
            detected=anomaly > 1.0 - contamination,
            score=round(anomaly * 100.0, 2),
            confidence=round(min(0.85, 0.3 + n_features / 30.0), 4),
            details={
                "avg_path_length": round(avg_path, 4),
                "anomaly_score": round(anomaly, 4),
                "contamination": contamination,
                "feature_count": n_features,
            },
        )

    def local_outlier_factor_analysis(self, context: TransactionContext) -> StatisticalResult:
        k = self._config.lof_neighbors
        history = np.sort(np.array([t.amount for t in context.transaction_history], dtype=float))

        if len(history) < k or k < 1:
            return StatisticalResult(
                confidence=0.1,
                details={"reason": "insufficient_neighbors", "count": int(len(history))},
            )

        distances = np.sort(np.abs(context.amount - history))
        k_distance = float(distances[k - 1])
        sum_reach = float(np.sum(np.maximum(distances[:k], k_distance)))
        lrd = k / sum_reach if sum_reach > 0 else 1.0

        std = float(np.std(history, ddof=1)) if len(history) > 1 else 0.0
        avg_density = 1.0 / std if std > 0 else 1.0
        lof = lrd / avg_density

        return StatisticalResult(
            detected=lof < 0.5 or lof > 2.0,
            score=round(min(100.0, abs(1.0 - lof) * 60.0), 2),
            confidence=round(min(0.80, 0.3 + len(history) / 100.0), 4),
            details={
                "lof_score": round(lof, 4),
                "k_distance": round(k_distance, 2),
                "local_density": round(lrd, 6),
                "avg_neighbor_density": round(avg_density, 6),
            },
        )

    def seasonal_decomposition(
        self, context: TransactionContext, profile: BehavioralProfile | None
    ) -> StatisticalResult:
        if profile is None or not profile.is_established:
            return StatisticalResult(confidence=0.1)

        ts = context.timestamp or datetime.now(UTC)
        hour = context.hour_of_day if context.hour_of_day is not None else ts.hour
        day = context.day_of_week if context.day_of_week is not None else ts.weekday()

        hour_pct = profile.typical_transaction_times[hour % 24]
        day_pct = profile.typical_transaction_days[day % 7]

        if hour_pct < 2.0:
            time_score = 60.0
        elif hour_pct < 5.0:
            time_score = 30.0
        else:
            time_score = 0.0

        if day_pct < 5.0:
            day_score = 40.0
        elif day_pct < 10.0:
            day_score = 20.0
        else:
            day_score = 0.0

        combined = min(100.0, time_score + day_score)
        return StatisticalResult(
            detected=combined >= 50.0,
            score=round(combined, 2),
            confidence=round(min(0.85, 0.4 + profile.total_transaction_count / 200), 4),
            details={"hour": hour, "hour_pct": hour_pct, "day": day, "day_pct": day_pct},
        )


def extract_numeric_features(context: TransactionContext) -> dict[str, float]:
    features: dict[str, float] = {}
    if context.amount > 0:
        features["amount_log"] = math.log(context.amount + 1)
    features["daily_count"] = float(context.daily_transaction_count)
    features["daily_volume_log"] = math.log(max(0.0, context.daily_transaction_volume) + 1)
    features["hourly_count"] = float(context.hourly_transaction_count)
    if (minutes := context.minutes_since_last_transaction) is not None:
        features["time_since_last_log"] = math.log(max(0.0, minutes) + 1)
    if context.hour_of_day is not None:
        # Cyclical encoding
        h = float(context.hour_of_day)
        features["hour_sin"] = math.sin(2 * math.pi * h / 24)
        features["hour_cos"] = math.cos(2 * math.pi * h / 24)
    return features
