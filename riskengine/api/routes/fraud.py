"""Fraud scoring endpoints."""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.db.database import get_session
from riskengine.domains.fraud.errors import EntityNotFoundError
from riskengine.domains.fraud.models import (
    DeviceData,
    FraudScore,
    GeoPoint,
    LastLocation,
    UserRecord,
)
from riskengine.domains.fraud.service import FraudDetectionService

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/fraud", tags=["fraud"])

_service: FraudDetectionService | None = None


def configure_fraud_service(service: FraudDetectionService | None) -> None:
    """Install the service used by the routes. Called from the app lifespan."""
    global _service
    _service = service


def get_fraud_service() -> FraudDetectionService:
    if _service is None:
        raise RuntimeError("Fraud detection service is not configured")
    return _service


class AnalyzeTransactionRequest(BaseModel):
    """Request-time context the transaction store does not hold."""

    user: UserRecord | None = None
    account_balance: float | None = None
    ip_address: str | None = None
    ip_country: str | None = None
    device_data: DeviceData | None = None
    lat: float | None = None
    lon: float | None = None
    last_lat: float | None = None
    last_lon: float | None = None
    time_diff_seconds: float | None = None
    location_history: list[GeoPoint] = Field(default_factory=list)
    last_location: LastLocation | None = None


class AnalyzeUserRequest(BaseModel):
    created_at: datetime
    kyc_level: str | None = None
    risk_rating: str | None = None
    country: str | None = None
    uses_2fa: bool = False
    context: dict[str, Any] = Field(default_factory=dict)


class OutcomeRequest(BaseModel):
    outcome: str


async def _load_score(
    service: FraudDetectionService, score_id: str, session: AsyncSession
) -> FraudScore:
    score = await service.repositories.scores.get(session, score_id)
    if score is None:
        raise EntityNotFoundError("fraud score", score_id)
    return score


@router.post("/transactions/{transaction_id}/analyze")
async def analyze_transaction(
    transaction_id: str,
    request: AnalyzeTransactionRequest,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    transaction = await service.repositories.transactions.get(session, transaction_id)
    if transaction is None:
        raise EntityNotFoundError("transaction", transaction_id)

    score = await service.analyze_transaction(
        transaction, request.model_dump(exclude_unset=True), session
    )
    return score.model_dump(mode="json")


@router.post("/users/{user_id}/analyze")
async def analyze_user(
    user_id: str,
    request: AnalyzeUserRequest,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    user = UserRecord(
        id=user_id,
        created_at=request.created_at,
        kyc_level=request.kyc_level,
        risk_rating=request.risk_rating,
        country=request.country,
        uses_2fa=request.uses_2fa,
    )
    score = await service.analyze_user(user, request.context, session)
    return score.model_dump(mode="json")


@router.get("/users/{user_id}/activity")
async def user_activity(
    user_id: str,
    days: int = Query(default=30, ge=1, le=365),
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    end = datetime.now(UTC)
    analysis = await service.analyze_user_activity(
        user_id, end - timedelta(days=days), end, session
    )
    return {"user_id": user_id, "days": days, **analysis.model_dump(mode="json")}


@router.get("/scores/{score_id}")
async def get_score(
    score_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    score = await _load_score(service, score_id, session)
    return score.model_dump(mode="json")


@router.post("/scores/{score_id}/outcome")
async def record_outcome(
    score_id: str,
    request: OutcomeRequest,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    score = await _load_score(service, score_id, session)
    score = await service.ml.train_with_feedback(score, request.outcome, session)
    await session.commit()

    logger.info("score_outcome_recorded", fraud_score_id=score_id, outcome=request.outcome)
    return {"fraud_score_id": score_id, "outcome": score.outcome}


@router.post("/scores/{score_id}/recalculate")
async def recalculate_score(
    score_id: str,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    score = await _load_score(service, score_id, session)
    new_score = await service.recalculate_score(score, session)
    return new_score.model_dump(mode="json")


@router.get("/transactions/{transaction_id}/indicators")
async def transaction_indicators(
    transaction_id: str,
    kyc_level: str | None = None,
    account_created_at: datetime | None = None,
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    transaction = await service.repositories.transactions.get(session, transaction_id)
    if transaction is None:
        raise EntityNotFoundError("transaction", transaction_id)

    user = UserRecord(id=transaction.user_id, kyc_level=kyc_level)
    if account_created_at is not None:
        user.created_at = account_created_at

    indicators = service.get_fraud_indicators(transaction, user)
    return {"transaction_id": transaction_id, **indicators.model_dump()}


@router.get("/rules")
async def list_rules(
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    rules = await service.rule_engine.get_active_rules(session)
    return {
        "total_rules": len(rules),
        "rules": [rule.model_dump(mode="json") for rule in rules],
    }


@router.post("/rules/defaults")
async def install_default_rules(
    session: AsyncSession = Depends(get_session),  # noqa: B008
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    created = await service.rule_engine.create_default_rules(session)
    await session.commit()
    return {"created": [rule.code for rule in created]}


@router.get("/model/metrics")
async def model_metrics(
    service: FraudDetectionService = Depends(get_fraud_service),  # noqa: B008
) -> dict:
    return {
        "enabled": service.ml.is_enabled(),
        **(await service.ml.get_model_metrics()),
    }
