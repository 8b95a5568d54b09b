# studyrules/engine/errors.py
from __future__ import annotations


class StudyEngineError(Exception):
    """Base class of all engine errors."""


class ExpressionError(StudyEngineError):
    """Wrong argument count/type of an expression."""


class UnknownExpressionError(ExpressionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"expression name not known: {name}")
        self.name = name


class ItemNotFoundError(ExpressionError):
    """Referenced survey item / response slot is missing."""


class ActionError(StudyEngineError):
    """Wrong argument count/type of an action."""


class UnknownActionError(ActionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"action name not known: {name}")
        self.name = name


class EvaluationDepthError(StudyEngineError):
    def __init__(self, max_depth: int) -> None:
        super().__init__(f"expression tree deeper than {max_depth} levels")
        self.max_depth = max_depth


class ExternalServiceError(StudyEngineError):
    """Call to a configured external service failed."""


class PortUnavailableError(StudyEngineError):
    """Persistence port or message sender is not configured."""
