# studyrules/engine/engine.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from .actions import ActionExecutor
from .helpers import clone_participant
from .types import ActionData, Expression, Participant, StudyEvent

log = logging.getLogger("studyengine")


class ErrorPolicy(str, Enum):
    CONTINUE = "continue"  # log the failed rule, go on with the next one
    ABORT = "abort"        # stop at the first failed rule


@dataclass
class RuleError:
    index: int
    rule_name: str
    error: Exception

    def __str__(self) -> str:
        return f"rule[{self.index}] {self.rule_name}: {self.error}"


@dataclass
class RuleRunResult:
    data: ActionData
    errors: List[RuleError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def participant(self) -> Participant:
        return self.data.participant


class RuleEngine:
    """
    Rule runner:
      - takes the study rule set (ordered list of top-level actions)
      - threads ActionData through every rule for one event
      - collects per-rule errors instead of hiding them

    No locking here: one call = one participant + one event.
    """

    def __init__(
        self,
        *,
        actions: ActionExecutor,
        error_policy: ErrorPolicy = ErrorPolicy.CONTINUE,
    ) -> None:
        self._actions = actions
        self.error_policy = error_policy

    # ------------------------------------------------------------------ #
    # PUBLIC API
    # ------------------------------------------------------------------ #
    def apply_rules(
        self,
        rules: Iterable[Expression],
        participant: Participant,
        event: StudyEvent,
        *,
        policy: Optional[ErrorPolicy] = None,
    ) -> RuleRunResult:
        policy = policy or self.error_policy
        data = ActionData(participant=clone_participant(participant), reports_to_create={})
        errors: List[RuleError] = []

        for idx, rule in enumerate(rules):
            try:
                data = self._actions.eval(rule, data, event)
            except Exception as e:  # noqa: BLE001
                err = RuleError(index=idx, rule_name=rule.name, error=e)
                errors.append(err)
                if policy == ErrorPolicy.ABORT:
                    log.error("rule run aborted for study %s: %s", event.study_key, err)
                    break
                log.warning("rule failed for study %s, continuing: %s", event.study_key, err)

        log.debug(
            "applied rules for event %s (study=%s, participant=%s): %d error(s)",
            event.type,
            event.study_key,
            data.participant.participant_id,
            len(errors),
        )
        return RuleRunResult(data=data, errors=errors)

    @staticmethod
    def has_rule_for_event_type(rules: Iterable[Expression], event_type: str) -> bool:
        """
        True if any rule has a first condition whose first argument is the
        literal <event_type>, as in IF(checkEventType("SUBMIT"), ...).
        Callers use it to skip participants cheaply.
        """
        for rule in rules:
            if not rule.data:
                continue
            cond = rule.data[0].exp
            if cond is None or not cond.data:
                continue
            if cond.data[0].str_value == event_type:
                return True
        return False
