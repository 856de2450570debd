"""Fraud detection domain."""

from .anomaly import AnomalyDetectionOrchestrator
from .behavioral import BehavioralAnalysisService
from .config import ConfigProvider, ScoringConfig
from .device import DeviceFingerprintService
from .errors import EntityNotFoundError, InvalidOutcomeError, RiskEngineError
from .geo import GeoMathService
from .ml import MachineLearningService
from .models import (
    Decision,
    FraudRule,
    FraudScore,
    RiskLevel,
    TransactionContext,
    TransactionRecord,
    UserRecord,
)
from .repositories import Repositories
from .rules import EVALUATORS
from .rules_engine import RuleEngineService
from .service import FraudDetectionService, create_fraud_detection_service
from .statistical import StatisticalAnalysisService

__all__ = [
    "EVALUATORS",
    "AnomalyDetectionOrchestrator",
    "BehavioralAnalysisService",
    "ConfigProvider",
    "Decision",
    "DeviceFingerprintService",
    "EntityNotFoundError",
    "FraudDetectionService",
    "FraudRule",
    "FraudScore",
    "GeoMathService",
    "InvalidOutcomeError",
    "MachineLearningService",
    "Repositories",
    "RiskEngineError",
    "RiskLevel",
    "RuleEngineService",
    "ScoringConfig",
    "StatisticalAnalysisService",
    "TransactionContext",
    "TransactionRecord",
    "UserRecord",
    "create_fraud_detection_service",
]
