from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from studyrules import StudyEngine
from studyrules.engine.repositories import CapturingMessageSender, InMemoryStudyDB
from studyrules.engine.types import (
    ActionData,
    EvalContext,
    Expression,
    ExpressionArg,
    Participant,
    ResponseItem,
    StudyEvent,
    SurveyItemResponse,
    SurveyResponse,
)

# 2023-06-15 12:00:00 UTC, a Thursday
FIXED_NOW = datetime(2023, 6, 15, 12, 0, 0, tzinfo=timezone.utc)
FIXED_TS = 1686830400

INSTANCE = "test-instance"
STUDY = "test-study"


# ---- DSL builders ----

def arg(v: Any) -> ExpressionArg:
    if isinstance(v, ExpressionArg):
        return v
    if isinstance(v, Expression):
        return ExpressionArg(dtype="exp", exp=v)
    if isinstance(v, bool):
        raise TypeError("booleans are built with expressions")
    if isinstance(v, (int, float)):
        return ExpressionArg(dtype="num", num=float(v))
    return ExpressionArg(dtype="str", str_value=str(v))


def ex(name: str, *args: Any, return_type: str = "") -> Expression:
    return Expression(name=name, data=[arg(a) for a in args], return_type=return_type)


TRUE = ex("eq", 1, 1)
FALSE = ex("eq", 1, 2)


def submit_event(key: str = "test", *, arrived_at: int = 0, responses=None, **kw) -> StudyEvent:
    return StudyEvent(
        type="SUBMIT",
        instance_id=INSTANCE,
        study_key=STUDY,
        response=SurveyResponse(key=key, arrived_at=arrived_at, responses=list(responses or [])),
        **kw,
    )


def response_group(item_key: str, *selected: str, root: str = "rg", group: str = "mcg") -> SurveyItemResponse:
    return SurveyItemResponse(
        key=item_key,
        response=ResponseItem(
            key=root,
            items=[ResponseItem(key=group, items=[ResponseItem(key=k) for k in selected])],
        ),
    )


# ---- fixtures ----

@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def db() -> InMemoryStudyDB:
    return InMemoryStudyDB()


@pytest.fixture
def sender() -> CapturingMessageSender:
    return CapturingMessageSender()


@pytest.fixture
def engine(db, sender, clock) -> StudyEngine:
    return StudyEngine(db=db, message_sender=sender, now=clock)


@pytest.fixture
def participant() -> Participant:
    return Participant(
        participant_id="p1",
        entered_at=FIXED_TS - 3600,
        flags={"health": "test"},
    )


@pytest.fixture
def event() -> StudyEvent:
    return submit_event()


@pytest.fixture
def ctx(participant, event) -> EvalContext:
    return EvalContext(event=event, participant=participant)


@pytest.fixture
def action_data(participant) -> ActionData:
    return ActionData(participant=participant)
