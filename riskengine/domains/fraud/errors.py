"""Fraud domain exceptions."""


class RiskEngineError(Exception):
    """Base class for errors raised by the scoring engine."""


class EntityNotFoundError(RiskEngineError, LookupError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidOutcomeError(RiskEngineError, ValueError):
    def __init__(self, outcome: str) -> None:
        super().__init__(f"Unknown outcome: {outcome}")
        self.outcome = outcome
