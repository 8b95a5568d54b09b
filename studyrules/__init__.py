# studyrules/__init__.py
from __future__ import annotations

import random
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

import requests

from studyrules.engine.actions import ActionExecutor
from studyrules.engine.engine import ErrorPolicy, RuleEngine, RuleRunResult
from studyrules.engine.expressions import ExpressionEvaluator
from studyrules.engine.external import ExternalService, ExternalServiceGateway
from studyrules.engine.helpers import utc_now
from studyrules.engine.storage import StudyDBService, StudyMessageSender
from studyrules.engine.types import (
    ActionData,
    EvalContext,
    Expression,
    Participant,
    StudyEvent,
)
from studyrules.engine.values import Value

if TYPE_CHECKING:
    from studyrules.core.config import Settings


class StudyEngine:
    """
    Everything in one place:
    - persistence port + message sender
    - external service gateway
    - expression evaluator, action executor, rule runner

    Built once at startup and passed to whoever evaluates rules.
    Holds no per-participant state, so one instance serves concurrent callers.
    """

    def __init__(
        self,
        *,
        db: Optional[StudyDBService],
        external_services: Iterable[ExternalService] = (),
        message_sender: Optional[StudyMessageSender] = None,
        now: Callable[[], datetime] = utc_now,
        tz: tzinfo = timezone.utc,
        max_depth: int = 64,
        rng: Optional[random.Random] = None,
        error_policy: ErrorPolicy = ErrorPolicy.CONTINUE,
        http_session: Optional[requests.Session] = None,
    ) -> None:
        # 1) outbound HTTP
        gateway = ExternalServiceGateway(external_services, session=http_session)

        # 2) expressions
        expressions = ExpressionEvaluator(
            db=db,
            gateway=gateway,
            now=now,
            tz=tz,
            max_depth=max_depth,
            rng=rng,
        )

        # 3) actions
        actions = ActionExecutor(
            expressions=expressions,
            db=db,
            message_sender=message_sender,
            gateway=gateway,
            now=now,
        )

        # 4) rule runner
        rules = RuleEngine(actions=actions, error_policy=error_policy)

        self.db = db
        self.message_sender = message_sender
        self.gateway = gateway
        self.expressions = expressions
        self.actions = actions
        self.rules = rules

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        db: Optional[StudyDBService],
        message_sender: Optional[StudyMessageSender] = None,
        **kwargs,
    ) -> "StudyEngine":
        return cls(
            db=db,
            message_sender=message_sender,
            external_services=settings.external_services,
            tz=settings.tz,
            max_depth=settings.max_eval_depth,
            error_policy=settings.rule_error_policy,
            **kwargs,
        )

    # ------------------------------------------------------------------ #
    # entry points for callers
    # ------------------------------------------------------------------ #
    def apply_rules(
        self,
        rules: Iterable[Expression],
        participant: Participant,
        event: StudyEvent,
        *,
        policy: Optional[ErrorPolicy] = None,
    ) -> RuleRunResult:
        return self.rules.apply_rules(rules, participant, event, policy=policy)

    def eval_action(self, action: Expression, data: ActionData, event: StudyEvent) -> ActionData:
        return self.actions.eval(action, data, event)

    def eval_expression(
        self,
        expression: Expression,
        participant: Participant,
        event: StudyEvent,
    ) -> Value:
        """Single custom expression for one participant (researcher tooling)."""
        return self.expressions.evaluate(expression, EvalContext(event=event, participant=participant))

    def has_rule_for_event_type(self, rules: Iterable[Expression], event_type: str) -> bool:
        return RuleEngine.has_rule_for_event_type(rules, event_type)


def create_engine(
    settings: "Settings",
    db: Optional[StudyDBService],
    message_sender: Optional[StudyMessageSender] = None,
) -> StudyEngine:
    """Called ONCE at startup with loaded settings."""
    return StudyEngine.from_settings(settings, db, message_sender)


__all__: List[str] = ["StudyEngine", "create_engine"]
