import pytest

from studyrules.engine.errors import ExpressionError
from studyrules.engine.types import (
    AssignedSurvey,
    EvalContext,
    Participant,
    ParticipantMessage,
    StudyEvent,
)
from tests.conftest import ex


def ev(engine, ctx, expr):
    return engine.expressions.evaluate(expr, ctx)


@pytest.fixture
def state():
    return Participant(
        participant_id="p1",
        entered_at=1000,
        study_status="active",
        flags={"group": "A"},
        linking_codes={"ext": "X-1"},
        assigned_surveys=[
            AssignedSurvey(survey_key="weekly", valid_from=10, valid_until=20),
            AssignedSurvey(survey_key="intake"),
        ],
        last_submissions={"intake": 500, "weekly": 800},
        messages=[
            ParticipantMessage(id="m1", type="reminder", scheduled_for=300),
            ParticipantMessage(id="m2", type="reminder", scheduled_for=200),
        ],
    )


@pytest.fixture
def sctx(state):
    incoming = Participant(
        participant_id="p2",
        study_status="temporary",
        flags={"group": "B"},
        entered_at=42,
    )
    return EvalContext(
        event=StudyEvent(type="MERGE", merge_with_participant=incoming),
        participant=state,
    )


class TestParticipantState:
    def test_entry_time_and_status(self, engine, sctx):
        assert ev(engine, sctx, ex("getStudyEntryTime")).as_number() == 1000
        assert ev(engine, sctx, ex("hasStudyStatus", "active")).as_bool()

    def test_survey_assignment(self, engine, sctx):
        assert ev(engine, sctx, ex("hasSurveyKeyAssigned", "weekly")).as_bool()
        assert not ev(engine, sctx, ex("hasSurveyKeyAssigned", "other")).as_bool()
        assert ev(engine, sctx, ex("getSurveyKeyAssignedFrom", "weekly")).as_number() == 10
        assert ev(engine, sctx, ex("getSurveyKeyAssignedUntil", "weekly")).as_number() == 20
        assert ev(engine, sctx, ex("getSurveyKeyAssignedFrom", "other")).as_number() == -1

    def test_survey_assignment_needs_string_literal(self, engine, sctx):
        with pytest.raises(ExpressionError, match="wrong type"):
            ev(engine, sctx, ex("hasSurveyKeyAssigned", 3))

    def test_flags(self, engine, sctx):
        assert ev(engine, sctx, ex("hasParticipantFlag", "group", "A")).as_bool()
        assert not ev(engine, sctx, ex("hasParticipantFlag", "group", "B")).as_bool()
        assert ev(engine, sctx, ex("hasParticipantFlagKey", "group")).as_bool()
        assert ev(engine, sctx, ex("getParticipantFlagValue", "group")).as_str() == "A"
        assert ev(engine, sctx, ex("getParticipantFlagValue", "missing")).as_str() == ""

    def test_flags_reject_number_arguments(self, engine, sctx):
        with pytest.raises(ExpressionError, match="unexpected argument types"):
            ev(engine, sctx, ex("hasParticipantFlagKey", 1))

    def test_linking_codes(self, engine, sctx):
        assert ev(engine, sctx, ex("hasLinkingCode", "ext")).as_bool()
        assert ev(engine, sctx, ex("getLinkingCodeValue", "ext")).as_str() == "X-1"
        assert ev(engine, sctx, ex("getLinkingCodeValue", "nope")).as_str() == ""

    def test_last_submission(self, engine, sctx):
        assert ev(engine, sctx, ex("getLastSubmissionDate")).as_number() == 800
        assert ev(engine, sctx, ex("getLastSubmissionDate", "intake")).as_number() == 500
        assert ev(engine, sctx, ex("getLastSubmissionDate", "none")).as_number() == 0

    def test_last_submission_older_than(self, engine, sctx):
        assert ev(engine, sctx, ex("lastSubmissionDateOlderThan", 900)).as_bool()
        assert not ev(engine, sctx, ex("lastSubmissionDateOlderThan", 600)).as_bool()
        assert ev(engine, sctx, ex("lastSubmissionDateOlderThan", 600, "intake")).as_bool()
        assert not ev(engine, sctx, ex("lastSubmissionDateOlderThan", 600, "none")).as_bool()

    def test_last_submission_older_than_with_expression(self, engine, sctx):
        ref = ex("timestampWithOffset", 0)
        assert ev(engine, sctx, ex("lastSubmissionDateOlderThan", ref)).as_bool()

    def test_messages(self, engine, sctx):
        assert ev(engine, sctx, ex("hasMessageTypeAssigned", "reminder")).as_bool()
        assert ev(engine, sctx, ex("getMessageNextTime", "reminder")).as_number() == 200

    def test_message_next_time_missing_type(self, engine, sctx):
        with pytest.raises(ExpressionError, match="no message"):
            ev(engine, sctx, ex("getMessageNextTime", "other"))

    def test_message_next_time_skips_unscheduled(self, engine, state):
        state.messages = [
            ParticipantMessage(id="m1", type="reminder", scheduled_for=0),
            ParticipantMessage(id="m2", type="reminder", scheduled_for=700),
            ParticipantMessage(id="m3", type="draft", scheduled_for=0),
        ]
        ctx = EvalContext(event=StudyEvent(type="TIMER"), participant=state)
        assert ev(engine, ctx, ex("getMessageNextTime", "reminder")).as_number() == 700
        with pytest.raises(ExpressionError, match="no message"):
            ev(engine, ctx, ex("getMessageNextTime", "draft"))


class TestIncomingState:
    def test_reads_merge_participant(self, engine, sctx):
        assert ev(engine, sctx, ex("incomingState:hasStudyStatus", "temporary")).as_bool()
        assert ev(engine, sctx, ex("incomingState:getParticipantFlagValue", "group")).as_str() == "B"
        assert ev(engine, sctx, ex("incomingState:getStudyEntryTime")).as_number() == 42

    def test_missing_merge_participant_is_empty(self, engine, state):
        ctx = EvalContext(event=StudyEvent(type="MERGE"), participant=state)
        assert not ev(engine, ctx, ex("incomingState:hasParticipantFlagKey", "group")).as_bool()

    def test_both_states_in_one_condition(self, engine, sctx):
        cond = ex(
            "eq",
            ex("getParticipantFlagValue", "group"),
            ex("incomingState:getParticipantFlagValue", "group"),
        )
        assert not ev(engine, sctx, cond).as_bool()
