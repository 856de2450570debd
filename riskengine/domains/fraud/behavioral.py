"""Per-user behavioural profiling and deviation analysis."""

import math
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .config import BehavioralConfig, ConfigProvider
from .models import (
    AdaptiveThresholds,
    BehavioralProfile,
    BehavioralResult,
    Decision,
    DriftResult,
    FraudScore,
    HistoricalBehavior,
    HistoricalTransaction,
    TransactionContext,
    TransactionRecord,
    UserRecord,
    UserSegment,
    days_between,
)
from .repositories import Repositories

logger = structlog.get_logger()

RAPID_TRANSACTION_SECONDS = 300
RAPID_TRANSACTION_LIMIT = 3


class BehavioralAnalysisService:
    """Scores how far a transaction departs from the user's own baseline."""

    def __init__(
        self,
        repositories: Repositories,
        provider: ConfigProvider | None = None,
    ) -> None:
        self._repos = repositories
        self._provider = provider or ConfigProvider()

    @property
    def _config(self) -> BehavioralConfig:
        return self._provider.current.behavioral

    async def analyze(
        self,
        user: UserRecord,
        transaction: TransactionRecord,
        context: TransactionContext,
        session: AsyncSession,
    ) -> BehavioralResult:
        cfg = self._config
        profile = await self._repos.profiles.get_or_create(session, user.id)

        if not profile.is_mature(cfg.established_min_days, cfg.established_min_transactions):
            return BehavioralResult(
                risk_score=30, is_established=False, risk_factors=["new_user_profile"]
            )

        now = datetime.now(UTC)
        risk_factors: list[str] = []
        risk_score = 0.0

        timing = self.analyze_timing(profile, transaction)
        if timing["is_unusual"]:
            risk_factors.append("unusual_transaction_time")
            risk_score += timing["risk_contribution"]

        amount = self.analyze_amount(profile, transaction)
        if amount["is_unusual"]:
            risk_factors.append("unusual_transaction_amount")
            risk_score += amount["risk_contribution"]

        location = self.analyze_location(profile, context, now)
        if location["is_unusual"]:
            risk_factors.append("unusual_location")
            risk_score += location["risk_contribution"]

        device = self.analyze_device(profile, context)
        if device["is_unusual"]:
            risk_factors.append("unusual_device")
            risk_score += device["risk_contribution"]

        patterns = self.analyze_patterns(profile, transaction, context, now)
        if patterns["has_suspicious_patterns"]:
            risk_factors.extend(patterns["patterns"])
            risk_score += patterns["risk_contribution"]

        velocity = self.analyze_velocity(profile, context)
        if velocity["exceeds_normal"]:
            risk_factors.append("high_velocity")
            risk_score += velocity["risk_contribution"]

        recipient = self.analyze_recipient(profile, transaction)
        if recipient["is_unusual"]:
            risk_factors.append("unusual_recipient")
            risk_score += recipient["risk_contribution"]

        deviation = profile.calculate_behavior_score(
            hour=transaction.created_at.hour,
            amount=transaction.amount,
            country=context.ip_country,
            device_id=context.device_data.fingerprint_id,
            daily_count=context.daily_transaction_count,
        )

        if context.ip_country:
            # Location history was extended during analysis
            await self._repos.profiles.save(session, profile)

        return BehavioralResult(
            risk_score=min(100.0, (risk_score + deviation) / 2),
            deviation_score=deviation,
            risk_factors=risk_factors,
            is_established=True,
            profile_confidence=self.calculate_profile_confidence(profile, now),
            analysis_details={
                "timing": timing,
                "amount": amount,
                "location": location,
                "device": device,
                "patterns": patterns,
                "velocity": velocity,
                "recipient": recipient,
            },
        )

    # ------------------------------------------------------------------
    # Sub-analyses
    # ------------------------------------------------------------------

    def analyze_timing(
        self, profile: BehavioralProfile, transaction: TransactionRecord
    ) -> dict[str, Any]:
        hour = transaction.created_at.hour
        day = transaction.created_at.weekday()

        unusual_time = profile.is_transaction_time_unusual(hour)
        unusual_day = profile.typical_transaction_days[day] < 5

        contribution = 0
        if unusual_time:
            contribution += 15
        if unusual_day:
            contribution += 10
        # Midnight to 5am
        if 0 <= hour < 5:
            contribution += 10

        return {
            "is_unusual": unusual_time or unusual_day,
            "unusual_time": unusual_time,
            "unusual_day": unusual_day,
            "hour": hour,
            "day_of_week": day,
            "risk_contribution": contribution,
        }

    def analyze_amount(
        self, profile: BehavioralProfile, transaction: TransactionRecord
    ) -> dict[str, Any]:
        amount = transaction.amount
        avg = profile.avg_transaction_amount
        unusual = profile.is_transaction_amount_unusual(amount)

        contribution = 0
        if unusual:
            if avg > 0:
                relative = abs(amount - avg) / avg
                if relative > 10:
                    contribution = 40
                elif relative > 5:
                    contribution = 25
                else:
                    contribution = 15
            else:
                contribution = 20

        return {
            "is_unusual": unusual,
            "amount": amount,
            "average_amount": avg,
            "deviation": round((amount / avg - 1) * 100, 2) if avg > 0 else None,
            "risk_contribution": contribution,
        }

    def analyze_location(
        self,
        profile: BehavioralProfile,
        context: TransactionContext,
        now: datetime,
    ) -> dict[str, Any]:
        country = context.ip_country
        city = context.ip_city
        if not country:
            return {"is_unusual": False, "risk_contribution": 0}

        unusual = profile.is_location_unusual(country, city)
        contribution = 0
        if unusual:
            if country != profile.primary_country:
                high_risk = self._provider.current.geo.high_risk_countries
                contribution = 45 if country in high_risk else 30
            else:
                # New city in a known country
                contribution = 15

        profile.update_location_history(country, city, context.ip_address, now)

        return {
            "is_unusual": unusual,
            "country": country,
            "city": city,
            "primary_country": profile.primary_country,
            "risk_contribution": contribution,
        }

    def analyze_device(
        self, profile: BehavioralProfile, context: TransactionContext
    ) -> dict[str, Any]:
        device_id = context.device_data.fingerprint_id
        if not device_id:
            return {
                "is_unusual": True,
                "reason": "no_device_fingerprint",
                "risk_contribution": 20,
            }

        unusual = profile.is_device_unusual(device_id)
        contribution = 0
        if unusual:
            contribution = 25
            if (context.device_data.risk_score or 0) > 70:
                contribution += 20

        return {
            "is_unusual": unusual,
            "device_id": f"{device_id[:8]}...",
            "is_trusted": device_id in profile.trusted_devices,
            "device_count": profile.device_count,
            "risk_contribution": contribution,
        }

    def analyze_patterns(
        self,
        profile: BehavioralProfile,
        transaction: TransactionRecord,
        context: TransactionContext,
        now: datetime,
    ) -> dict[str, Any]:
        patterns: list[str] = []
        contribution = 0

        if detect_account_draining(transaction, context.account_balance):
            patterns.append("account_draining")
            contribution += 35
        if detect_unusual_sequence(context):
            patterns.append("unusual_sequence")
            contribution += 20
        if days_between(profile.updated_at, now) > self._config.dormant_days:
            patterns.append("dormant_account_active")
            contribution += 30
        if self._detect_pattern_change(profile, context):
            patterns.append("sudden_pattern_change")
            contribution += 25

        return {
            "has_suspicious_patterns": bool(patterns),
            "patterns": patterns,
            "risk_contribution": contribution,
        }

    def _detect_pattern_change(
        self, profile: BehavioralProfile, context: TransactionContext
    ) -> bool:
        changes = 0
        device_id = context.device_data.fingerprint_id
        if device_id and device_id not in profile.trusted_devices:
            changes += 1
        if context.ip_country and context.ip_country != profile.primary_country:
            changes += 1
        if context.hour_of_day is not None and profile.is_transaction_time_unusual(
            context.hour_of_day
        ):
            changes += 1
        # Several simultaneous changes suggest account takeover
        return changes >= 2

    def analyze_velocity(
        self, profile: BehavioralProfile, context: TransactionContext
    ) -> dict[str, Any]:
        reasons: list[str] = []
        contribution = 0

        daily_count = context.daily_transaction_count
        avg_daily = profile.avg_daily_transaction_count
        if avg_daily > 0 and daily_count > avg_daily * 3:
            reasons.append("high_daily_count")
            contribution += 20

        max_volume = profile.max_daily_volume
        if max_volume > 0 and context.daily_transaction_volume > max_volume:
            reasons.append("exceeds_max_daily_volume")
            contribution += 25

        if context.hourly_transaction_count > 5:
            reasons.append("high_hourly_velocity")
            contribution += 15

        return {
            "exceeds_normal": bool(reasons),
            "reasons": reasons,
            "daily_count": daily_count,
            "avg_daily_count": avg_daily,
            "risk_contribution": contribution,
        }

    def analyze_recipient(
        self, profile: BehavioralProfile, transaction: TransactionRecord
    ) -> dict[str, Any]:
        recipient_id = transaction.metadata.recipient_account_id
        merchant_id = transaction.metadata.merchant_id
        if not recipient_id and not merchant_id:
            return {"is_unusual": False, "risk_contribution": 0}

        new_recipient = bool(recipient_id) and recipient_id not in profile.frequent_recipients
        new_merchant = bool(merchant_id) and merchant_id not in profile.frequent_merchants

        contribution = 0
        if new_recipient:
            contribution = 15
        if new_merchant:
            # New merchants are lower risk than new recipients
            contribution = 10

        return {
            "is_unusual": new_recipient or new_merchant,
            "is_new_recipient": new_recipient,
            "is_new_merchant": new_merchant,
            "risk_contribution": contribution,
        }

    # ------------------------------------------------------------------
    # Profile maintenance
    # ------------------------------------------------------------------

    async def update_profile(
        self,
        user: UserRecord,
        transaction: TransactionRecord,
        fraud_score: FraudScore,
        session: AsyncSession,
    ) -> BehavioralProfile:
        """Fold a scored transaction into the user's rolling baseline."""
        cfg = self._config
        now = datetime.now(UTC)
        txns = self._repos.transactions
        profile = await self._repos.profiles.get_or_create(session, user.id)

        recent = await txns.recent_transactions(
            session,
            user.id,
            limit=cfg.stats_sample_size,
            since=now - timedelta(days=cfg.stats_lookback_days),
        )
        profile.update_transaction_stats(recent)

        profile.total_transaction_count += 1
        profile.total_transaction_volume += transaction.amount
        profile.max_transaction_amount = max(profile.max_transaction_amount, transaction.amount)

        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today_count = await txns.count_since(session, user.id, day_start)
        profile.max_daily_transactions = max(profile.max_daily_transactions, today_count)
        today_volume = await txns.volume_since(session, user.id, day_start)
        profile.max_daily_volume = max(profile.max_daily_volume, today_volume)

        device_id = transaction.metadata.device_fingerprint_id
        if fraud_score.decision == Decision.ALLOW and device_id:
            profile.add_trusted_device(device_id)

        if fraud_score.is_high_risk():
            profile.last_suspicious_activity = now
            profile.suspicious_activities_count += 1

        profile.uses_2fa = user.uses_2fa
        self._update_maturity(profile, now)
        if profile.is_established:
            self.classify_segment(profile)

        profile.updated_at = now
        return await self._repos.profiles.save(session, profile)

    def _update_maturity(self, profile: BehavioralProfile, now: datetime) -> None:
        cfg = self._config
        days = days_between(profile.created_at, now)
        profile.days_since_first_transaction = days
        profile.avg_daily_transaction_count = round(
            profile.total_transaction_count / max(days, 1), 4
        )
        profile.avg_monthly_transaction_count = round(profile.avg_daily_transaction_count * 30, 4)

        was_established = profile.is_established
        profile.is_established = (
            days >= cfg.established_min_days
            and profile.total_transaction_count >= cfg.established_min_transactions
        )
        if profile.is_established and not was_established:
            profile.profile_established_at = now
            logger.info("behavioral_profile_established", user_id=profile.user_id)
        if profile.is_established:
            profile.generate_ml_features(now)

    def calculate_profile_confidence(
        self, profile: BehavioralProfile, now: datetime | None = None
    ) -> float:
        now = now or datetime.now(UTC)
        confidence = 0.0

        days = profile.days_since_first_transaction
        if days >= 180:
            confidence += 30
        elif days >= 90:
            confidence += 20
        elif days >= 30:
            confidence += 10

        count = profile.total_transaction_count
        if count >= 100:
            confidence += 30
        elif count >= 50:
            confidence += 20
        elif count >= 20:
            confidence += 10

        if profile.profile_change_frequency < 5:
            confidence += 20
        if profile.uses_2fa:
            confidence += 10
        if (
            profile.last_suspicious_activity is None
            or days_between(profile.last_suspicious_activity, now) > 90
        ):
            confidence += 10

        return min(100.0, confidence)

    def compute_adaptive_thresholds(self, profile: BehavioralProfile) -> AdaptiveThresholds:
        """Per-user limits widened by ``adaptive_sensitivity``; stored on the profile."""
        s = self._config.adaptive_sensitivity
        avg_amount = profile.avg_transaction_amount
        std = profile.transaction_amount_std_dev
        avg_daily = int(profile.avg_daily_transaction_count)

        thresholds = AdaptiveThresholds(
            amount_upper=avg_amount + s * std,
            amount_lower=max(0.0, avg_amount - s * std),
            daily_count_max=avg_daily + math.ceil(s * math.sqrt(max(1, avg_daily))),
            daily_volume_max=profile.max_daily_volume * (1 + s * 0.5),
        )
        profile.adaptive_thresholds = thresholds
        return thresholds

    def detect_drift(
        self,
        profile: BehavioralProfile,
        recent_transactions: list[HistoricalTransaction],
        now: datetime | None = None,
    ) -> DriftResult:
        """CUSUM-style comparison of the recent window against the profile baseline.

        Only transactions inside the last ``drift_window_days`` before ``now``
        are compared; older history is ignored.
        """
        cfg = self._config
        baseline = profile.avg_transaction_amount
        baseline_std = profile.transaction_amount_std_dev
        now = now or datetime.now(UTC)
        window_start = now - timedelta(days=cfg.drift_window_days)
        window = [t for t in recent_transactions if t.created_at > window_start]

        if baseline <= 0 or not window:
            return DriftResult()

        amounts = [t.amount for t in window]
        recent_mean = sum(amounts) / len(amounts)
        mean_shift = abs(recent_mean - baseline)
        if baseline_std > 0:
            normalized_shift = mean_shift / baseline_std
        else:
            normalized_shift = 1.0 if mean_shift > 0 else 0.0

        expected = profile.avg_daily_transaction_count * cfg.drift_window_days
        count_ratio = abs(len(amounts) - expected) / expected if expected > 0 else 0.0

        drift_score = min(1.0, normalized_shift * 0.6 + count_ratio * 0.4)

        profile.drift_score = round(drift_score * 100, 2)
        profile.drift_metrics = {
            "baseline_mean": baseline,
            "recent_mean": round(recent_mean, 2),
            "normalized_shift": round(normalized_shift, 4),
            "count_ratio": round(count_ratio, 4),
        }
        profile.last_drift_check_at = now

        return DriftResult(
            drifted=drift_score > cfg.drift_threshold,
            drift_score=round(drift_score, 4),
            details={
                "baseline_mean": baseline,
                "recent_mean": round(recent_mean, 2),
                "mean_shift": round(mean_shift, 2),
                "normalized_shift": round(normalized_shift, 4),
                "count_ratio": round(count_ratio, 4),
            },
        )

    def classify_segment(self, profile: BehavioralProfile) -> UserSegment:
        avg_amount = profile.avg_transaction_amount
        days = profile.days_since_first_transaction
        avg_monthly = int(profile.avg_monthly_transaction_count)

        if profile.is_established and days > self._config.dormant_days and avg_monthly < 1:
            segment = UserSegment.DORMANT_REACTIVATED
        elif days < self._config.established_min_days:
            segment = UserSegment.NEW_ACCOUNT
        elif avg_amount > 10_000 and avg_monthly > 20:
            segment = UserSegment.HIGH_VALUE_TRADER
        elif avg_monthly < 5:
            segment = UserSegment.OCCASIONAL_USER
        else:
            segment = UserSegment.RETAIL_CONSUMER

        profile.user_segment = segment
        if segment.value not in profile.segment_tags:
            profile.segment_tags = [*profile.segment_tags, segment.value]
        return segment

    async def get_historical_behavior(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        session: AsyncSession,
    ) -> HistoricalBehavior:
        transactions = await self._repos.transactions.transactions_between(
            session, user_id, start, end
        )
        count = len(transactions)
        total = sum(t.amount for t in transactions)

        rapid = 0
        for prev, curr in zip(transactions, transactions[1:], strict=False):
            gap = abs((curr.created_at - prev.created_at).total_seconds())
            if gap < RAPID_TRANSACTION_SECONDS:
                rapid += 1

        return HistoricalBehavior(
            avg_transaction_amount=total / count if count else 0.0,
            transaction_count=count,
            unusual_patterns=["rapid_transactions"] if rapid > RAPID_TRANSACTION_LIMIT else [],
        )


def detect_account_draining(transaction: TransactionRecord, balance: float) -> bool:
    """Withdrawal of more than 80% of the available balance."""
    if transaction.type != "withdrawal":
        return False
    return balance > 0 and transaction.amount / balance > 0.8


def detect_unusual_sequence(context: TransactionContext) -> bool:
    """Deposit immediately followed by a withdrawal (< 30 seconds)."""
    return (
        context.last_transaction_type == "deposit"
        and context.type == "withdrawal"
        and context.time_since_last_transaction is not None
        and context.time_since_last_transaction < 30
    )
