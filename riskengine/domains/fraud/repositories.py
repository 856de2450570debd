"""Storage interfaces used by the fraud services.

The services never traverse ORM relationships; every lookup they need is an
explicit method here. ``riskengine.db.repositories`` implements them on top
of SQLAlchemy.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AccountRecord,
    AnomalyDetection,
    BehavioralProfile,
    DeviceFingerprint,
    FraudCase,
    FraudRule,
    FraudScore,
    HistoricalTransaction,
    IpData,
    TransactionRecord,
)


class TransactionRepository(Protocol):
    async def get(self, session: AsyncSession, transaction_id: str) -> TransactionRecord | None: ...

    async def count_transactions_in_window(
        self, session: AsyncSession, user_id: str, minutes: int
    ) -> int: ...

    async def count_since(self, session: AsyncSession, user_id: str, since: datetime) -> int: ...

    async def volume_since(self, session: AsyncSession, user_id: str, since: datetime) -> float: ...

    async def recent_transactions(
        self,
        session: AsyncSession,
        user_id: str,
        limit: int,
        since: datetime | None = None,
    ) -> list[HistoricalTransaction]: ...

    async def transactions_between(
        self, session: AsyncSession, user_id: str, start: datetime, end: datetime
    ) -> list[HistoricalTransaction]: ...

    async def previous_transaction(
        self, session: AsyncSession, user_id: str, before: datetime, exclude_id: str | None = None
    ) -> HistoricalTransaction | None: ...

    async def count_for_user(self, session: AsyncSession, user_id: str) -> int: ...

    async def count_blocked_for_ip(
        self, session: AsyncSession, ip_address: str, since: datetime
    ) -> int: ...

    async def annotate(
        self,
        session: AsyncSession,
        transaction_id: str,
        status: str | None,
        metadata: dict[str, Any],
    ) -> None: ...


class ProfileRepository(Protocol):
    async def get(self, session: AsyncSession, user_id: str) -> BehavioralProfile | None: ...

    async def get_or_create(self, session: AsyncSession, user_id: str) -> BehavioralProfile: ...

    async def save(
        self, session: AsyncSession, profile: BehavioralProfile
    ) -> BehavioralProfile: ...


class RuleRepository(Protocol):
    async def active_rules(self, session: AsyncSession) -> list[FraudRule]: ...

    async def record_trigger(self, session: AsyncSession, code: str, at: datetime) -> None: ...

    async def get_by_code(self, session: AsyncSession, code: str) -> FraudRule | None: ...

    async def add(self, session: AsyncSession, rule: FraudRule) -> FraudRule: ...


class DeviceRepository(Protocol):
    async def get(self, session: AsyncSession, device_id: str) -> DeviceFingerprint | None: ...

    async def get_by_hash(
        self, session: AsyncSession, fingerprint_hash: str
    ) -> DeviceFingerprint | None: ...

    async def save(self, session: AsyncSession, device: DeviceFingerprint) -> DeviceFingerprint: ...

    async def count_distinct_users(
        self,
        session: AsyncSession,
        *,
        fingerprint_hash: str | None = None,
        ip_address: str | None = None,
        exclude_user_id: str | None = None,
        since: datetime,
    ) -> int: ...

    async def related_devices(
        self, session: AsyncSession, device: DeviceFingerprint, limit: int = 10
    ) -> list[tuple[DeviceFingerprint, int]]: ...


class FraudScoreRepository(Protocol):
    async def add(self, session: AsyncSession, score: FraudScore) -> FraudScore: ...

    async def save(self, session: AsyncSession, score: FraudScore) -> FraudScore: ...

    async def get(self, session: AsyncSession, score_id: str) -> FraudScore | None: ...


class AnomalyRepository(Protocol):
    async def add(self, session: AsyncSession, detection: AnomalyDetection) -> AnomalyDetection: ...


class FraudCaseRepository(Protocol):
    async def open_for_score(self, session: AsyncSession, score: FraudScore) -> FraudCase: ...


class AccountRepository(Protocol):
    async def get(self, session: AsyncSession, account_id: str) -> AccountRecord | None: ...


class IpIntelligence(Protocol):
    async def lookup(self, ip_address: str) -> IpData | None: ...


class StaticIpIntelligence:
    """Neutral simulated provider used when no IP intelligence service is configured."""

    async def lookup(self, ip_address: str) -> IpData | None:
        return IpData(
            country="US",
            region="California",
            city="San Francisco",
            isp="Example ISP",
            is_vpn=False,
            is_proxy=False,
            is_tor=False,
            risk_score=10.0,
        )


@dataclass
class Repositories:
    transactions: TransactionRepository
    profiles: ProfileRepository
    rules: RuleRepository
    devices: DeviceRepository
    scores: FraudScoreRepository
    anomalies: AnomalyRepository
    cases: FraudCaseRepository
    accounts: AccountRepository
