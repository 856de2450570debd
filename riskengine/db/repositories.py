"""SQLAlchemy implementations of the fraud domain's storage interfaces.

Repositories flush but never commit; the calling service owns the unit of
work. Integer primary keys are exposed to the domain as strings.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.db.models import (
    AccountDB,
    AnomalyDetectionDB,
    BehavioralProfileDB,
    DeviceFingerprintDB,
    FraudCaseDB,
    FraudRuleDB,
    FraudScoreDB,
    TransactionDB,
)
from riskengine.domains.fraud.models import (
    AccountRecord,
    AnomalyDetection,
    BehavioralProfile,
    DeviceFingerprint,
    FraudCase,
    FraudRule,
    FraudScore,
    HistoricalTransaction,
    TransactionMetadata,
    TransactionRecord,
)
from riskengine.domains.fraud.repositories import Repositories

logger = structlog.get_logger()

_DEVICE_COLUMNS = frozenset(
    {
        "id",
        "fingerprint_hash",
        "user_id",
        "ip_address",
        "trust_score",
        "is_trusted",
        "is_blocked",
        "associated_users",
        "first_seen_at",
        "last_seen_at",
    }
)


def _pk(value: str | None) -> int | None:
    if value is None or not str(value).isdigit():
        return None
    return int(value)


def _historical(row: TransactionDB) -> HistoricalTransaction:
    return HistoricalTransaction(
        id=row.id,
        amount=row.amount,
        type=row.type,
        currency=row.currency,
        status=row.status,
        created_at=row.created_at,
    )


class SqlTransactionRepository:
    async def get(self, session: AsyncSession, transaction_id: str) -> TransactionRecord | None:
        row = await session.get(TransactionDB, transaction_id)
        if row is None:
            return None
        details = dict(row.details or {})
        if row.device_fingerprint and "device_fingerprint_id" not in details:
            details["device_fingerprint_id"] = row.device_fingerprint
        return TransactionRecord(
            id=row.id,
            user_id=row.user_id,
            account_id=row.account_id,
            amount=row.amount,
            currency=row.currency,
            type=row.type,
            status=row.status,
            metadata=TransactionMetadata.model_validate(details),
            created_at=row.created_at,
        )

    async def count_transactions_in_window(
        self, session: AsyncSession, user_id: str, minutes: int
    ) -> int:
        since = datetime.now(UTC) - timedelta(minutes=minutes)
        return await self.count_since(session, user_id, since)

    async def count_since(self, session: AsyncSession, user_id: str, since: datetime) -> int:
        result = await session.execute(
            select(func.count(TransactionDB.id)).where(
                TransactionDB.user_id == user_id, TransactionDB.created_at >= since
            )
        )
        return int(result.scalar() or 0)

    async def volume_since(self, session: AsyncSession, user_id: str, since: datetime) -> float:
        result = await session.execute(
            select(func.coalesce(func.sum(TransactionDB.amount), 0.0)).where(
                TransactionDB.user_id == user_id, TransactionDB.created_at >= since
            )
        )
        return float(result.scalar() or 0.0)

    async def recent_transactions(
        self,
        session: AsyncSession,
        user_id: str,
        limit: int,
        since: datetime | None = None,
    ) -> list[HistoricalTransaction]:
        stmt = select(TransactionDB).where(TransactionDB.user_id == user_id)
        if since is not None:
            stmt = stmt.where(TransactionDB.created_at >= since)
        stmt = stmt.order_by(TransactionDB.created_at.desc()).limit(limit)
        result = await session.execute(stmt)
        return [_historical(row) for row in result.scalars().all()]

    async def transactions_between(
        self, session: AsyncSession, user_id: str, start: datetime, end: datetime
    ) -> list[HistoricalTransaction]:
        result = await session.execute(
            select(TransactionDB)
            .where(
                TransactionDB.user_id == user_id,
                TransactionDB.created_at >= start,
                TransactionDB.created_at <= end,
            )
            .order_by(TransactionDB.created_at)
        )
        return [_historical(row) for row in result.scalars().all()]

    async def previous_transaction(
        self, session: AsyncSession, user_id: str, before: datetime, exclude_id: str | None = None
    ) -> HistoricalTransaction | None:
        stmt = select(TransactionDB).where(
            TransactionDB.user_id == user_id, TransactionDB.created_at <= before
        )
        if exclude_id is not None:
            stmt = stmt.where(TransactionDB.id != exclude_id)
        stmt = stmt.order_by(TransactionDB.created_at.desc()).limit(1)
        result = await session.execute(stmt)
        row = result.scalar_one_or_none()
        return _historical(row) if row is not None else None

    async def count_for_user(self, session: AsyncSession, user_id: str) -> int:
        result = await session.execute(
            select(func.count(TransactionDB.id)).where(TransactionDB.user_id == user_id)
        )
        return int(result.scalar() or 0)

    async def count_blocked_for_ip(
        self, session: AsyncSession, ip_address: str, since: datetime
    ) -> int:
        result = await session.execute(
            select(func.count(TransactionDB.id)).where(
                TransactionDB.ip_address == ip_address,
                TransactionDB.status == "blocked",
                TransactionDB.created_at >= since,
            )
        )
        return int(result.scalar() or 0)

    async def annotate(
        self,
        session: AsyncSession,
        transaction_id: str,
        status: str | None,
        metadata: dict[str, Any],
    ) -> None:
        row = await session.get(TransactionDB, transaction_id)
        if row is None:
            logger.warning("transaction_not_found_for_annotation", transaction_id=transaction_id)
            return
        if status is not None:
            row.status = status
        # Reassign so the JSONB change is detected
        row.details = {**(row.details or {}), **metadata}
        await session.flush()


class SqlProfileRepository:
    async def _row(self, session: AsyncSession, user_id: str) -> BehavioralProfileDB | None:
        result = await session.execute(
            select(BehavioralProfileDB).where(BehavioralProfileDB.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get(self, session: AsyncSession, user_id: str) -> BehavioralProfile | None:
        row = await self._row(session, user_id)
        if row is None:
            return None
        return BehavioralProfile.model_validate(
            {**row.profile, "id": str(row.id), "user_id": row.user_id}
        )

    async def get_or_create(self, session: AsyncSession, user_id: str) -> BehavioralProfile:
        profile = await self.get(session, user_id)
        if profile is not None:
            return profile
        return await self.save(session, BehavioralProfile(user_id=user_id))

    async def save(self, session: AsyncSession, profile: BehavioralProfile) -> BehavioralProfile:
        now = datetime.now(UTC)
        profile.updated_at = now
        data = profile.model_dump(mode="json", exclude={"id"})

        row = await self._row(session, profile.user_id)
        if row is None:
            row = BehavioralProfileDB(user_id=profile.user_id)
            session.add(row)
        row.profile = data
        row.is_established = profile.is_established
        row.last_updated = now
        await session.flush()

        profile.id = str(row.id)
        return profile


def _rule(row: FraudRuleDB) -> FraudRule:
    return FraudRule(
        id=str(row.id),
        code=row.code,
        name=row.name,
        description=row.description or "",
        category=row.category,
        severity=row.severity,
        thresholds=row.thresholds or {},
        conditions=row.conditions or {},
        actions=row.actions or [],
        is_active=row.is_active,
        is_blocking=row.is_blocking,
        base_score=row.base_score,
        weight=row.weight,
        time_window=row.time_window,
        trigger_count=row.trigger_count,
        last_triggered_at=row.last_triggered_at,
    )


class SqlRuleRepository:
    async def active_rules(self, session: AsyncSession) -> list[FraudRule]:
        result = await session.execute(select(FraudRuleDB).where(FraudRuleDB.is_active.is_(True)))
        return [_rule(row) for row in result.scalars().all()]

    async def record_trigger(self, session: AsyncSession, code: str, at: datetime) -> None:
        await session.execute(
            update(FraudRuleDB)
            .where(FraudRuleDB.code == code)
            .values(trigger_count=FraudRuleDB.trigger_count + 1, last_triggered_at=at)
        )

    async def get_by_code(self, session: AsyncSession, code: str) -> FraudRule | None:
        result = await session.execute(select(FraudRuleDB).where(FraudRuleDB.code == code))
        row = result.scalar_one_or_none()
        return _rule(row) if row is not None else None

    async def add(self, session: AsyncSession, rule: FraudRule) -> FraudRule:
        data = rule.model_dump(mode="json", exclude={"id", "last_triggered_at"})
        row = FraudRuleDB(**data, last_triggered_at=rule.last_triggered_at)
        session.add(row)
        await session.flush()
        return _rule(row)


def _device(row: DeviceFingerprintDB) -> DeviceFingerprint:
    return DeviceFingerprint.model_validate(
        {
            **(row.attributes or {}),
            "id": str(row.id),
            "fingerprint_hash": row.fingerprint_hash,
            "user_id": row.user_id,
            "ip_address": row.ip_address,
            "trust_score": row.trust_score,
            "is_trusted": row.is_trusted,
            "is_blocked": row.is_blocked,
            "associated_users": row.associated_users or [],
            "first_seen_at": row.first_seen_at,
            "last_seen_at": row.last_seen_at,
        }
    )


class SqlDeviceRepository:
    async def get(self, session: AsyncSession, device_id: str) -> DeviceFingerprint | None:
        pk = _pk(device_id)
        if pk is None:
            return None
        row = await session.get(DeviceFingerprintDB, pk)
        return _device(row) if row is not None else None

    async def get_by_hash(
        self, session: AsyncSession, fingerprint_hash: str
    ) -> DeviceFingerprint | None:
        result = await session.execute(
            select(DeviceFingerprintDB).where(
                DeviceFingerprintDB.fingerprint_hash == fingerprint_hash
            )
        )
        row = result.scalar_one_or_none()
        return _device(row) if row is not None else None

    async def save(self, session: AsyncSession, device: DeviceFingerprint) -> DeviceFingerprint:
        pk = _pk(device.id)
        row = await session.get(DeviceFingerprintDB, pk) if pk is not None else None
        if row is None:
            row = DeviceFingerprintDB(fingerprint_hash=device.fingerprint_hash)
            session.add(row)

        row.fingerprint_hash = device.fingerprint_hash
        row.user_id = device.user_id
        row.ip_address = device.ip_address
        row.trust_score = device.trust_score
        row.is_trusted = device.is_trusted
        row.is_blocked = device.is_blocked
        row.associated_users = list(device.associated_users)
        row.first_seen_at = device.first_seen_at
        row.last_seen_at = device.last_seen_at
        row.attributes = device.model_dump(mode="json", exclude=set(_DEVICE_COLUMNS))
        await session.flush()

        device.id = str(row.id)
        return device

    async def count_distinct_users(
        self,
        session: AsyncSession,
        *,
        fingerprint_hash: str | None = None,
        ip_address: str | None = None,
        exclude_user_id: str | None = None,
        since: datetime,
    ) -> int:
        stmt = select(func.count(func.distinct(TransactionDB.user_id))).where(
            TransactionDB.created_at >= since
        )
        if fingerprint_hash is not None:
            stmt = stmt.where(TransactionDB.device_fingerprint == fingerprint_hash)
        if ip_address is not None:
            stmt = stmt.where(TransactionDB.ip_address == ip_address)
        if exclude_user_id is not None:
            stmt = stmt.where(TransactionDB.user_id != exclude_user_id)
        result = await session.execute(stmt)
        return int(result.scalar() or 0)

    async def related_devices(
        self, session: AsyncSession, device: DeviceFingerprint, limit: int = 10
    ) -> list[tuple[DeviceFingerprint, int]]:
        """Other devices used by any of this device's users, most shared users first."""
        users = set(device.associated_users)
        if not users:
            return []

        stmt = select(DeviceFingerprintDB).where(
            DeviceFingerprintDB.associated_users.has_any(list(users))
        )
        if (pk := _pk(device.id)) is not None:
            stmt = stmt.where(DeviceFingerprintDB.id != pk)
        result = await session.execute(stmt)

        related = [
            (_device(row), len(users.intersection(row.associated_users or [])))
            for row in result.scalars().all()
        ]
        related.sort(key=lambda item: item[1], reverse=True)
        return related[:limit]


def _score_values(score: FraudScore) -> dict[str, Any]:
    data = score.model_dump(mode="json", exclude={"id", "metadata", "decision_at", "created_at"})
    data["details"] = score.metadata
    data["decision_at"] = score.decision_at
    data["created_at"] = score.created_at
    return data


def _score(row: FraudScoreDB) -> FraudScore:
    return FraudScore(
        id=str(row.id),
        entity_id=row.entity_id,
        entity_type=row.entity_type,
        score_type=row.score_type,
        entity_snapshot=row.entity_snapshot or {},
        total_score=row.total_score,
        risk_level=row.risk_level,
        score_breakdown=row.score_breakdown or [],
        triggered_rules=row.triggered_rules or [],
        behavioral_factors=row.behavioral_factors or {},
        device_factors=row.device_factors or {},
        network_factors=row.network_factors,
        ml_score=row.ml_score,
        ml_model_version=row.ml_model_version,
        ml_features=row.ml_features,
        ml_explanation=row.ml_explanation,
        decision=row.decision,
        decision_factors=row.decision_factors or {},
        decision_at=row.decision_at,
        analysis_results=row.analysis_results or {},
        outcome=row.outcome,
        metadata=row.details or {},
        created_at=row.created_at,
    )


class SqlFraudScoreRepository:
    async def add(self, session: AsyncSession, score: FraudScore) -> FraudScore:
        row = FraudScoreDB(**_score_values(score))
        session.add(row)
        await session.flush()
        score.id = str(row.id)
        return score

    async def save(self, session: AsyncSession, score: FraudScore) -> FraudScore:
        pk = _pk(score.id)
        row = await session.get(FraudScoreDB, pk) if pk is not None else None
        if row is None:
            return await self.add(session, score)
        for key, value in _score_values(score).items():
            setattr(row, key, value)
        await session.flush()
        return score

    async def get(self, session: AsyncSession, score_id: str) -> FraudScore | None:
        pk = _pk(score_id)
        if pk is None:
            return None
        row = await session.get(FraudScoreDB, pk)
        return _score(row) if row is not None else None


class SqlAnomalyRepository:
    async def add(self, session: AsyncSession, detection: AnomalyDetection) -> AnomalyDetection:
        data = detection.model_dump(mode="json", exclude={"id", "created_at"})
        row = AnomalyDetectionDB(**data, created_at=detection.created_at)
        session.add(row)
        await session.flush()
        detection.id = str(row.id)
        return detection


class SqlFraudCaseRepository:
    async def open_for_score(self, session: AsyncSession, score: FraudScore) -> FraudCase:
        """Open a case for ``score``, or return the one already open for it."""
        result = await session.execute(
            select(FraudCaseDB).where(FraudCaseDB.fraud_score_id == score.id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            now = datetime.now(UTC)
            row = FraudCaseDB(
                case_number=f"FC-{now:%Y%m%d}-{int(score.id or 0):06d}",
                fraud_score_id=score.id,
                entity_id=score.entity_id,
                entity_type=score.entity_type.value,
                risk_level=score.risk_level.value,
                total_score=score.total_score,
                status="open",
                created_at=now,
            )
            session.add(row)
            await session.flush()

        return FraudCase(
            id=str(row.id),
            case_number=row.case_number,
            fraud_score_id=row.fraud_score_id,
            entity_id=row.entity_id,
            entity_type=row.entity_type,
            risk_level=row.risk_level,
            total_score=row.total_score,
            status=row.status,
            created_at=row.created_at,
        )


class SqlAccountRepository:
    async def get(self, session: AsyncSession, account_id: str) -> AccountRecord | None:
        row = await session.get(AccountDB, account_id)
        if row is None:
            return None
        return AccountRecord(id=row.id, user_id=row.user_id, balance=row.balance)


def create_repositories() -> Repositories:
    return Repositories(
        transactions=SqlTransactionRepository(),
        profiles=SqlProfileRepository(),
        rules=SqlRuleRepository(),
        devices=SqlDeviceRepository(),
        scores=SqlFraudScoreRepository(),
        anomalies=SqlAnomalyRepository(),
        cases=SqlFraudCaseRepository(),
        accounts=SqlAccountRepository(),
    )
