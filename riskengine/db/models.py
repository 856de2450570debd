"""SQLAlchemy ORM models for the risk engine's persisted state."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TransactionDB(Base):
    """Transactions owned by the ledger service. Scoring only reads and annotates them."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String, default="USD")
    type: Mapped[str] = mapped_column(String, default="unknown")
    status: Mapped[str] = mapped_column(String, default="completed", index=True)
    details: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    device_fingerprint: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


class AccountDB(Base):
    """Accounts owned by the ledger service. Scoring only reads balances."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    balance: Mapped[float] = mapped_column(Float, default=0.0)


class FraudScoreDB(Base):
    __tablename__ = "fraud_scores"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String, index=True)
    score_type: Mapped[str] = mapped_column(String, default="real_time")
    entity_snapshot: Mapped[dict] = mapped_column(JSONB, default=dict)
    total_score: Mapped[float] = mapped_column(Float, default=0.0)
    risk_level: Mapped[str] = mapped_column(String, index=True)
    score_breakdown: Mapped[list] = mapped_column(JSONB, default=list)
    triggered_rules: Mapped[list] = mapped_column(JSONB, default=list)
    behavioral_factors: Mapped[dict] = mapped_column(JSONB, default=dict)
    device_factors: Mapped[dict] = mapped_column(JSONB, default=dict)
    network_factors: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ml_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    ml_model_version: Mapped[str | None] = mapped_column(String, nullable=True)
    ml_features: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ml_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    decision: Mapped[str] = mapped_column(String, index=True)
    decision_factors: Mapped[dict] = mapped_column(JSONB, default=dict)
    decision_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    analysis_results: Mapped[dict] = mapped_column(JSONB, default=dict)
    outcome: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class BehavioralProfileDB(Base):
    __tablename__ = "behavioral_profiles"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    profile: Mapped[dict] = mapped_column(JSONB, default=dict)
    is_established: Mapped[bool] = mapped_column(Boolean, default=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class FraudRuleDB(Base):
    __tablename__ = "fraud_rules"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String, index=True)
    severity: Mapped[str] = mapped_column(String, default="medium")
    thresholds: Mapped[dict] = mapped_column(JSONB, default=dict)
    conditions: Mapped[dict] = mapped_column(JSONB, default=dict)
    actions: Mapped[list] = mapped_column(JSONB, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    is_blocking: Mapped[bool] = mapped_column(Boolean, default=False)
    base_score: Mapped[float] = mapped_column(Float, default=0.0)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    time_window: Mapped[str | None] = mapped_column(String, nullable=True)
    trigger_count: Mapped[int] = mapped_column(Integer, default=0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class DeviceFingerprintDB(Base):
    __tablename__ = "device_fingerprints"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    fingerprint_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    trust_score: Mapped[float] = mapped_column(Float, default=50.0)
    is_trusted: Mapped[bool] = mapped_column(Boolean, default=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    associated_users: Mapped[list] = mapped_column(JSONB, default=list)
    attributes: Mapped[dict] = mapped_column(JSONB, default=dict)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AnomalyDetectionDB(Base):
    __tablename__ = "anomaly_detections"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    entity_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    anomaly_type: Mapped[str] = mapped_column(String, index=True)
    detection_method: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="detected")
    anomaly_score: Mapped[float] = mapped_column(Float)
    confidence: Mapped[float] = mapped_column(Float)
    severity: Mapped[str] = mapped_column(String, index=True)
    features: Mapped[dict] = mapped_column(JSONB, default=dict)
    explanation: Mapped[dict] = mapped_column(JSONB, default=dict)
    context_snapshot: Mapped[dict] = mapped_column(JSONB, default=dict)
    is_real_time: Mapped[bool] = mapped_column(Boolean, default=True)
    fraud_score_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    model_version: Mapped[str] = mapped_column(String, default="1.0.0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class FraudCaseDB(Base):
    __tablename__ = "fraud_cases"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    case_number: Mapped[str] = mapped_column(String, unique=True, index=True)
    fraud_score_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    entity_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    risk_level: Mapped[str] = mapped_column(String)
    total_score: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String, default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
