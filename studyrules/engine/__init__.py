# studyrules/engine/__init__.py
"""
Study rule engine (expressions / actions / rule runner).

Contents:
  - types.py        → participant, event, report, expression models
  - values.py       → Value (number / string / boolean)
  - errors.py       → exception hierarchy
  - helpers.py      → copy-on-write helpers, response lookup, calendar
  - expressions.py  → expression evaluator
  - actions.py      → action executor
  - engine.py       → rule runner
  - external.py     → external service gateway (HTTP)
  - storage.py      → port interfaces
  - repositories.py → in-memory implementations
  - loader.py       → wire format + rule files
"""
from .engine import ErrorPolicy, RuleEngine, RuleError, RuleRunResult
from .actions import ActionExecutor
from .expressions import ExpressionEvaluator
from .external import ExternalService, ExternalServiceGateway
from .storage import ResponseQuery, StudyDBService, StudyMessageSender
from .repositories import CapturingMessageSender, InMemoryStudyDB
from .values import Value, ValueKind

__all__ = [
    "ErrorPolicy",
    "RuleEngine",
    "RuleError",
    "RuleRunResult",
    "ActionExecutor",
    "ExpressionEvaluator",
    "ExternalService",
    "ExternalServiceGateway",
    "ResponseQuery",
    "StudyDBService",
    "StudyMessageSender",
    "CapturingMessageSender",
    "InMemoryStudyDB",
    "Value",
    "ValueKind",
]
