"""Fraud scoring pipeline: context -> detectors -> aggregate -> decide -> act.

``analyze_transaction`` runs inside the caller's ``AsyncSession`` as a single
unit of work. Events raised along the way are buffered and published only
after the commit. Any failure rolls the work back and records a fail-safe
``review`` score instead, so a transaction is never left unscored.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.shared.cache import Cache, MemoryCache
from riskengine.shared.events import EventOutbox, EventSink, FraudEventType, LoggingEventSink

from .anomaly import AnomalyDetectionOrchestrator
from .behavioral import BehavioralAnalysisService
from .config import ConfigProvider
from .device import DeviceFingerprintService
from .errors import EntityNotFoundError
from .geo import GeoMathService
from .ml import MachineLearningService
from .models import (
    AnomalyBatchResult,
    BehavioralResult,
    Decision,
    DeviceAssessment,
    EntityType,
    FraudIndicators,
    FraudScore,
    HistoricalTransaction,
    MLPrediction,
    NetworkFactors,
    RiskLevel,
    RuleEvaluation,
    ScoreComponent,
    ScoreType,
    TransactionContext,
    TransactionRecord,
    UserActivityAnalysis,
    UserRecord,
    days_between,
    round_score,
)
from .repositories import IpIntelligence, Repositories
from .rules_engine import RuleEngineService
from .statistical import StatisticalAnalysisService

logger = structlog.get_logger()

FAIL_SAFE_SCORE = 50.0
FAIL_SAFE_REASON = "Detection system error - flagged for manual review"
HISTORY_DAYS = 30
HISTORY_LIMIT = 100
RAPID_GAP_SECONDS = 300


class FraudDetectionService:
    """Scores transactions and users and applies the resulting decision."""

    def __init__(
        self,
        repositories: Repositories,
        rule_engine: RuleEngineService,
        behavioral: BehavioralAnalysisService,
        devices: DeviceFingerprintService,
        ml: MachineLearningService,
        anomaly: AnomalyDetectionOrchestrator | None = None,
        events: EventSink | None = None,
        cache: Cache | None = None,
        provider: ConfigProvider | None = None,
    ) -> None:
        self._repos = repositories
        self._rule_engine = rule_engine
        self._behavioral = behavioral
        self._devices = devices
        self._ml = ml
        self._anomaly = anomaly
        self._events = events or LoggingEventSink()
        self._cache = cache or MemoryCache()
        self._provider = provider or ConfigProvider()

    @property
    def repositories(self) -> Repositories:
        return self._repos

    @property
    def rule_engine(self) -> RuleEngineService:
        return self._rule_engine

    @property
    def ml(self) -> MachineLearningService:
        return self._ml

    # ------------------------------------------------------------------
    # Transaction scoring
    # ------------------------------------------------------------------

    async def analyze_transaction(
        self,
        transaction: TransactionRecord,
        context: dict[str, Any] | None,
        session: AsyncSession,
    ) -> FraudScore:
        """Score one transaction. Never raises; failures yield a review score.

        ``context`` carries request-time details the stores do not know
        (user record, IP, device data, coordinates, balance). Its keys
        override the values derived from storage.
        """
        outbox = EventOutbox()
        snapshot = self.create_entity_snapshot(transaction)

        try:
            hints = dict(context or {})
            user = self.resolve_user(transaction, hints.pop("user", None))
            ctx = await self.prepare_context(transaction, user, hints, session)

            fraud_score = await self._repos.scores.add(
                session,
                FraudScore(
                    entity_id=transaction.id,
                    entity_type=EntityType.TRANSACTION,
                    score_type=ScoreType.REAL_TIME,
                    entity_snapshot=snapshot,
                    total_score=0.0,
                    risk_level=RiskLevel.LOW,
                    decision=Decision.REVIEW,
                ),
            )

            # Behavioural analysis runs first so behaviour rules can see its deviation
            behavioral = await self._behavioral.analyze(user, transaction, ctx, session)
            ctx.behavioral_analysis = behavioral

            rules = await self._rule_engine.evaluate(ctx, session)
            ctx.rule_results = rules

            device = await self._devices.analyze_device(ctx.device_data, session)
            ctx.device_data = ctx.device_data.model_copy(
                update={"risk_score": device.risk_score, "is_trusted": device.is_trusted}
            )

            anomalies: AnomalyBatchResult | None = None
            if self._anomaly is not None:
                anomalies = await self._anomaly.detect_anomalies(
                    ctx,
                    transaction.id,
                    EntityType.TRANSACTION,
                    user.id,
                    fraud_score.id,
                    session,
                    outbox=outbox,
                )
                ctx.anomaly_scores = anomalies

            ml: MLPrediction | None = None
            if self._ml.is_enabled():
                ml = self._ml.predict(ctx)

            total = self.calculate_total_score(
                rules.total_score,
                behavioral.risk_score,
                device.risk_score,
                ml.score if ml is not None else None,
            )
            risk_level = RiskLevel.from_score(total)
            decision = self.make_decision(total, rules)

            analysis_results: dict[str, Any] = {
                "rule_engine": rules.model_dump(mode="json"),
                "behavioral_analysis": behavioral.model_dump(mode="json"),
                "device_analysis": device.model_dump(mode="json"),
            }
            if ml is not None:
                analysis_results["ml_prediction"] = ml.model_dump(mode="json")
            if anomalies is not None:
                analysis_results["anomaly_detection"] = anomalies.model_dump(mode="json")

            fraud_score.total_score = total
            fraud_score.risk_level = risk_level
            fraud_score.score_breakdown = self.create_score_breakdown(rules, behavioral, device, ml)
            fraud_score.triggered_rules = list(rules.triggered_rules)
            fraud_score.behavioral_factors = behavioral.model_dump(mode="json")
            fraud_score.device_factors = device.model_dump(mode="json")
            fraud_score.network_factors = self.extract_network_factors(ctx)
            fraud_score.ml_score = ml.score if ml is not None else None
            fraud_score.ml_model_version = ml.model_version if ml is not None else None
            fraud_score.ml_features = ml.features if ml is not None else None
            fraud_score.ml_explanation = ml.explanation if ml is not None else None
            fraud_score.decision = decision
            fraud_score.decision_factors = self.extract_decision_factors(total, rules)
            fraud_score.decision_at = datetime.now(UTC)
            fraud_score.analysis_results = analysis_results
            fraud_score = await self._repos.scores.save(session, fraud_score)

            await self.execute_decision(transaction, fraud_score, session, outbox)
            await self._behavioral.update_profile(user, transaction, fraud_score, session)

            await session.commit()
        except Exception:
            logger.exception("fraud_detection_failed", transaction_id=transaction.id)
            outbox.discard()
            return await self._record_fail_safe(transaction, snapshot, session)

        await outbox.flush(self._events)

        logger.info(
            "transaction_scored",
            transaction_id=transaction.id,
            fraud_score_id=fraud_score.id,
            total_score=fraud_score.total_score,
            risk_level=fraud_score.risk_level.value,
            decision=fraud_score.decision.value,
            triggered_rules=len(fraud_score.triggered_rules),
        )
        return fraud_score

    async def _record_fail_safe(
        self, transaction: TransactionRecord, snapshot: dict[str, Any], session: AsyncSession
    ) -> FraudScore:
        fail_safe = FraudScore(
            entity_id=transaction.id,
            entity_type=EntityType.TRANSACTION,
            score_type=ScoreType.REAL_TIME,
            entity_snapshot=snapshot,
            total_score=FAIL_SAFE_SCORE,
            risk_level=RiskLevel.MEDIUM,
            decision=Decision.REVIEW,
            decision_factors={"error": FAIL_SAFE_REASON},
        )
        try:
            await session.rollback()
            fail_safe = await self._repos.scores.add(session, fail_safe)
            await session.commit()
        except Exception:
            logger.exception("fail_safe_score_persist_failed", transaction_id=transaction.id)
            try:
                await session.rollback()
            except Exception:
                logger.exception("session_rollback_failed", transaction_id=transaction.id)
        return fail_safe

    @staticmethod
    def resolve_user(transaction: TransactionRecord, hint: Any) -> UserRecord:
        """The transaction's owner, enriched by ``hint`` only when it describes that user."""
        if isinstance(hint, UserRecord):
            hint = hint.model_dump()
        data = dict(hint or {})
        hinted_id = data.get("id")
        if hinted_id is not None and str(hinted_id) != transaction.user_id:
            logger.warning(
                "user_hint_mismatch",
                transaction_id=transaction.id,
                transaction_user_id=transaction.user_id,
                hinted_user_id=str(hinted_id),
            )
            data = {}
        return UserRecord.model_validate({**data, "id": transaction.user_id})

    async def prepare_context(
        self,
        transaction: TransactionRecord,
        user: UserRecord,
        hints: dict[str, Any],
        session: AsyncSession,
    ) -> TransactionContext:
        """Velocity, history and temporal features for ``transaction``."""
        txns = self._repos.transactions
        cfg = self._provider.current
        ttl = cfg.cache.velocity_seconds
        now = transaction.created_at
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        async def _daily_count() -> int:
            return await txns.count_since(session, user.id, start_of_day)

        async def _daily_volume() -> float:
            return await txns.volume_since(session, user.id, start_of_day)

        daily_count = int(
            await self._cache.get_or_compute(f"user_daily_txn_count_{user.id}", ttl, _daily_count)
        )
        daily_volume = float(
            await self._cache.get_or_compute(
                f"user_daily_txn_volume_{user.id}", ttl, _daily_volume
            )
        )
        hourly_count = await txns.count_since(session, user.id, now - timedelta(hours=1))

        previous = await txns.previous_transaction(
            session, user.id, before=now, exclude_id=transaction.id
        )
        history = await txns.recent_transactions(
            session,
            user.id,
            limit=cfg.behavioral.stats_sample_size,
            since=now - timedelta(days=cfg.behavioral.stats_lookback_days),
        )
        profile = await self._repos.profiles.get(session, user.id)
        balance = 0.0
        if transaction.account_id and "account_balance" not in hints:
            account = await self._repos.accounts.get(session, transaction.account_id)
            if account is not None and account.user_id == user.id:
                balance = account.balance

        built: dict[str, Any] = {
            "transaction_id": transaction.id,
            "user_id": user.id,
            "account_id": transaction.account_id,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "type": transaction.type,
            "timestamp": now,
            "metadata": transaction.metadata,
            "daily_transaction_count": daily_count,
            "daily_transaction_volume": daily_volume,
            "hourly_transaction_count": hourly_count,
            "avg_daily_transaction_count": profile.avg_daily_transaction_count if profile else 0.0,
            "user": user,
            "user_transaction_count": await txns.count_for_user(session, user.id),
            "avg_transaction_amount": profile.avg_transaction_amount if profile else 0.0,
            "account_balance": balance,
            "last_transaction_type": previous.type if previous else None,
            "time_since_last_transaction": (
                (now - previous.created_at).total_seconds() if previous else None
            ),
            "transaction_history": history,
            "hour_of_day": now.hour,
            "day_of_week": now.weekday(),
            "is_weekend": now.weekday() >= 5,
        }
        ctx = TransactionContext.model_validate({**built, **hints})

        if ctx.ip_address and not ctx.device_data.ip_address:
            ctx.device_data = ctx.device_data.model_copy(update={"ip_address": ctx.ip_address})
        if ctx.ip_address and not ctx.ip_country:
            ip_data = await self._devices.get_ip_data(ctx.ip_address)
            if ip_data is not None:
                ctx.ip_country = ip_data.country
                ctx.ip_city = ip_data.city
                ctx.ip_region = ip_data.region
                ctx.isp = ip_data.isp
                ctx.is_vpn = ctx.is_vpn or ip_data.is_vpn
                ctx.is_proxy = ctx.is_proxy or ip_data.is_proxy
                ctx.is_tor = ctx.is_tor or ip_data.is_tor
        return ctx

    @staticmethod
    def create_entity_snapshot(transaction: TransactionRecord) -> dict[str, Any]:
        return {
            "transaction_id": transaction.id,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "type": transaction.type,
            "status": transaction.status,
            "account_id": transaction.account_id,
            "user_id": transaction.user_id,
            "created_at": transaction.created_at.isoformat(),
            "metadata": transaction.metadata.model_dump(mode="json"),
        }

    def calculate_total_score(
        self,
        rules_score: float,
        behavioral_score: float,
        device_score: float,
        ml_score: float | None,
    ) -> float:
        """Weighted blend of the component scores.

        Without an ML score the partial sum is scaled up by ``1 / (1 - ml)``
        so the other components keep their relative influence.
        """
        w = self._provider.current.weights
        score = rules_score * w.rules + behavioral_score * w.behavioral + device_score * w.device
        if ml_score is not None:
            score += ml_score * w.ml
        elif w.ml < 1:
            score = score / (1 - w.ml)
        return round_score(score)

    def make_decision(self, score: float, rules: RuleEvaluation) -> Decision:
        if rules.blocking_rules:
            return Decision.BLOCK

        t = self._provider.current.decisions
        if score >= t.block:
            return Decision.BLOCK
        if score >= t.review:
            return Decision.REVIEW
        if score >= t.challenge:
            return Decision.CHALLENGE
        return Decision.ALLOW

    async def execute_decision(
        self,
        transaction: TransactionRecord,
        fraud_score: FraudScore,
        session: AsyncSession,
        outbox: EventOutbox,
    ) -> None:
        now = datetime.now(UTC).isoformat()
        decision = fraud_score.decision
        txns = self._repos.transactions

        if decision == Decision.BLOCK:
            await txns.annotate(
                session,
                transaction.id,
                "blocked",
                {
                    "blocked_at": now,
                    "block_reason": "Fraud detection system",
                    "fraud_score_id": fraud_score.id,
                    "risk_level": fraud_score.risk_level.value,
                },
            )
            outbox.add(
                FraudEventType.TRANSACTION_BLOCKED,
                transaction.id,
                fraud_score_id=fraud_score.id,
                total_score=fraud_score.total_score,
            )
            self._add_fraud_detected(outbox, fraud_score)
        elif decision == Decision.REVIEW:
            await txns.annotate(
                session,
                transaction.id,
                None,
                {
                    "requires_review": True,
                    "review_requested_at": now,
                    "fraud_score_id": fraud_score.id,
                    "risk_level": fraud_score.risk_level.value,
                },
            )
            self._add_fraud_detected(outbox, fraud_score)
        elif decision == Decision.CHALLENGE:
            await txns.annotate(
                session,
                transaction.id,
                "pending_challenge",
                {
                    "challenge_requested_at": now,
                    "challenge_reason": "Additional verification required",
                    "fraud_score_id": fraud_score.id,
                },
            )
            outbox.add(
                FraudEventType.CHALLENGE_REQUIRED,
                transaction.id,
                fraud_score_id=fraud_score.id,
                total_score=fraud_score.total_score,
            )

        if fraud_score.is_high_risk():
            case = await self._repos.cases.open_for_score(session, fraud_score)
            logger.info(
                "fraud_case_opened",
                case_number=case.case_number,
                fraud_score_id=fraud_score.id,
                risk_level=fraud_score.risk_level.value,
            )

    @staticmethod
    def _add_fraud_detected(outbox: EventOutbox, fraud_score: FraudScore) -> None:
        outbox.add(
            FraudEventType.FRAUD_DETECTED,
            fraud_score.entity_id,
            fraud_score_id=fraud_score.id,
            total_score=fraud_score.total_score,
            risk_level=fraud_score.risk_level.value,
            decision=fraud_score.decision.value,
        )

    @staticmethod
    def create_score_breakdown(
        rules: RuleEvaluation,
        behavioral: BehavioralResult,
        device: DeviceAssessment,
        ml: MLPrediction | None,
    ) -> list[ScoreComponent]:
        breakdown = [
            ScoreComponent(
                component="rule",
                name=code,
                score=score,
                severity=(
                    rules.rule_details[code].severity.value
                    if code in rules.rule_details
                    else "medium"
                ),
            )
            for code, score in rules.rule_scores.items()
        ]
        breakdown.append(
            ScoreComponent(
                component="behavioral",
                name="Behavioral Analysis",
                score=behavioral.risk_score,
                factors=list(behavioral.risk_factors),
            )
        )
        breakdown.append(
            ScoreComponent(
                component="device",
                name="Device Risk",
                score=device.risk_score,
                factors=list(device.risk_factors),
            )
        )
        if ml is not None:
            breakdown.append(
                ScoreComponent(
                    component="ml",
                    name="Machine Learning Model",
                    score=ml.score,
                    confidence=ml.confidence,
                )
            )
        return breakdown

    @staticmethod
    def extract_network_factors(context: TransactionContext) -> NetworkFactors:
        return NetworkFactors(
            ip_address=context.ip_address,
            ip_country=context.ip_country,
            ip_region=context.ip_region,
            isp=context.isp,
            is_vpn=context.is_vpn,
            is_proxy=context.is_proxy,
            is_tor=context.is_tor,
        )

    @staticmethod
    def extract_decision_factors(score: float, rules: RuleEvaluation) -> dict[str, Any]:
        factors: dict[str, Any] = {
            "total_score": score,
            "rules_triggered": len(rules.triggered_rules),
            "blocking_rules": list(rules.blocking_rules),
        }
        if rules.rule_scores:
            top = sorted(rules.rule_scores.items(), key=lambda item: item[1], reverse=True)[:3]
            factors["top_rules"] = dict(top)
        return factors

    # ------------------------------------------------------------------
    # User scoring and supporting queries
    # ------------------------------------------------------------------

    async def analyze_user(
        self,
        user: UserRecord,
        context: dict[str, Any] | None,
        session: AsyncSession,
    ) -> FraudScore:
        """Batch risk score for an account based on age, KYC and recent patterns."""
        now = datetime.now(UTC)
        history = await self._repos.transactions.recent_transactions(
            session, user.id, limit=HISTORY_LIMIT, since=now - timedelta(days=HISTORY_DAYS)
        )

        scores: dict[str, float] = {}
        account_age = days_between(user.created_at, now)
        if account_age < 7:
            scores["new_account"] = 30
        elif account_age < 30:
            scores["new_account"] = 15

        pattern_score = analyze_transaction_patterns(history)
        if pattern_score > 0:
            scores["suspicious_patterns"] = pattern_score

        if not user.kyc_level or user.kyc_level == "none":
            scores["no_kyc"] = 25
        elif user.kyc_level == "basic":
            scores["basic_kyc_only"] = 10

        total = round_score(sum(scores.values()))
        fraud_score = FraudScore(
            entity_id=user.id,
            entity_type=EntityType.USER,
            score_type=ScoreType.BATCH,
            entity_snapshot={
                "user_id": user.id,
                "created_at": user.created_at.isoformat(),
                "kyc_level": user.kyc_level,
                "risk_rating": user.risk_rating,
            },
            total_score=total,
            risk_level=RiskLevel.from_score(total),
            score_breakdown=[
                ScoreComponent(component="user", name=name, score=value)
                for name, value in scores.items()
            ],
            decision=Decision.REVIEW if total >= 60 else Decision.ALLOW,
            decision_factors={"factors": list(scores), "context": dict(context or {})},
        )
        fraud_score = await self._repos.scores.add(session, fraud_score)
        await session.commit()

        logger.info(
            "user_scored",
            user_id=user.id,
            total_score=total,
            decision=fraud_score.decision.value,
        )
        return fraud_score

    async def detect_anomalies(
        self,
        context: TransactionContext,
        entity_id: str | None,
        entity_type: EntityType | None,
        user_id: str | None,
        fraud_score_id: str | None,
        session: AsyncSession,
    ) -> AnomalyBatchResult:
        if self._anomaly is None:
            return AnomalyBatchResult()
        return await self._anomaly.detect_anomalies(
            context, entity_id, entity_type, user_id, fraud_score_id, session
        )

    async def recalculate_score(self, fraud_score: FraudScore, session: AsyncSession) -> FraudScore:
        """Score the same transaction again. User scores are returned unchanged."""
        if fraud_score.entity_type != EntityType.TRANSACTION:
            return fraud_score

        transaction = await self._repos.transactions.get(session, fraud_score.entity_id)
        if transaction is None:
            raise EntityNotFoundError("transaction", fraud_score.entity_id)

        hints: dict[str, Any] = {}
        if fraud_score.network_factors is not None:
            hints = fraud_score.network_factors.model_dump(exclude_none=True)

        new_score = await self.analyze_transaction(transaction, hints, session)
        new_score.metadata = {
            **new_score.metadata,
            "recalculation_reason": "Manual recalculation requested",
            "previous_fraud_score_id": fraud_score.id,
        }
        new_score = await self._repos.scores.save(session, new_score)
        await session.commit()
        return new_score

    @staticmethod
    def get_fraud_indicators(transaction: TransactionRecord, user: UserRecord) -> FraudIndicators:
        indicators = FraudIndicators()

        if transaction.amount > 10000:
            indicators.transaction_indicators.append("high_value_transaction")
        if transaction.amount % 10000 == 0:
            indicators.transaction_indicators.append("round_amount")

        if days_between(user.created_at, datetime.now(UTC)) < 30:
            indicators.user_indicators.append("new_account")
        if not user.kyc_level or user.kyc_level == "none":
            indicators.user_indicators.append("no_kyc")

        created = transaction.created_at
        if created.weekday() >= 5:
            indicators.contextual_indicators.append("weekend_transaction")
        if created.hour < 6 or created.hour > 22:
            indicators.contextual_indicators.append("unusual_hour")
        return indicators

    async def analyze_user_activity(
        self, user_id: str, start: datetime, end: datetime, session: AsyncSession
    ) -> UserActivityAnalysis:
        behavior = await self._behavioral.get_historical_behavior(user_id, start, end, session)

        risk_indicators: list[str] = []
        recommendations: list[str] = []
        if behavior.unusual_patterns:
            risk_indicators.append("unusual_patterns_detected")
            recommendations.append("Review account for suspicious activity")
        if behavior.transaction_count > 50:
            risk_indicators.append("high_transaction_volume")

        return UserActivityAnalysis(
            behavioral_analysis=behavior,
            risk_indicators=risk_indicators,
            recommendations=recommendations,
        )


def analyze_transaction_patterns(history: list[HistoricalTransaction]) -> float:
    """Rapid bursts and a preference for round amounts in recent history."""
    if not history:
        return 0.0

    score = 0.0
    ordered = sorted(history, key=lambda t: t.created_at, reverse=True)
    rapid = sum(
        1
        for newer, older in zip(ordered, ordered[1:], strict=False)
        if (newer.created_at - older.created_at).total_seconds() < RAPID_GAP_SECONDS
    )
    if rapid > 3:
        score += 20

    round_count = sum(1 for t in ordered if t.amount % 100 == 0)
    if round_count / len(ordered) > 0.8:
        score += 15
    return score


def create_fraud_detection_service(
    repositories: Repositories,
    cache: Cache | None = None,
    events: EventSink | None = None,
    ip_intelligence: IpIntelligence | None = None,
    provider: ConfigProvider | None = None,
) -> FraudDetectionService:
    """Wire the full detector graph around one set of collaborators."""
    cache = cache or MemoryCache()
    events = events or LoggingEventSink()
    provider = provider or ConfigProvider()

    devices = DeviceFingerprintService(repositories, cache, ip_intelligence, provider)
    behavioral = BehavioralAnalysisService(repositories, provider)
    rule_engine = RuleEngineService(repositories, cache, provider)
    orchestrator = AnomalyDetectionOrchestrator(
        repositories,
        StatisticalAnalysisService(provider),
        behavioral,
        rule_engine,
        devices,
        GeoMathService(provider),
        events=events,
        provider=provider,
    )
    return FraudDetectionService(
        repositories,
        rule_engine,
        behavioral,
        devices,
        MachineLearningService(repositories, cache, provider),
        anomaly=orchestrator,
        events=events,
        cache=cache,
        provider=provider,
    )
