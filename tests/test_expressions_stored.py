from datetime import datetime, timezone

import pytest
from pytest_mock import MockerFixture

from studyrules.engine.errors import ExpressionError, PortUnavailableError
from studyrules.engine.expressions import ExpressionEvaluator
from studyrules.engine.types import (
    ResponseItem,
    StudyVariable,
    StudyVariableType,
    SurveyItemResponse,
    SurveyResponse,
)
from tests.conftest import INSTANCE, STUDY, ex


def ev(engine, ctx, expr):
    return engine.expressions.evaluate(expr, ctx)


def stored_response(key: str, arrived_at: int, answer: str, pid: str = "p1") -> SurveyResponse:
    return SurveyResponse(
        key=key,
        participant_id=pid,
        arrived_at=arrived_at,
        responses=[
            SurveyItemResponse(
                key=f"{key}.Q1",
                response=ResponseItem(key="rg", items=[ResponseItem(key="scg", items=[ResponseItem(key=answer)])]),
            )
        ],
    )


def answered(key: str, answer: str):
    return ex("responseHasKeysAny", f"{key}.Q1", "rg.scg", answer)


@pytest.fixture
def history(db):
    # newest first when read back: 300 (b), 200 (a), 100 (a)
    db.add_response(INSTANCE, STUDY, stored_response("weekly", 100, "a"))
    db.add_response(INSTANCE, STUDY, stored_response("weekly", 300, "b"))
    db.add_response(INSTANCE, STUDY, stored_response("weekly", 200, "a"))
    db.add_response(INSTANCE, STUDY, stored_response("intake", 50, "a"))
    db.add_response(INSTANCE, STUDY, stored_response("weekly", 250, "a", pid="someone-else"))
    return db


class TestOldResponses:
    def test_all_policy(self, engine, ctx, history):
        expr = ex("checkConditionForOldResponses", answered("weekly", "a"), "all", "weekly")
        assert ev(engine, ctx, expr).as_bool() is False
        expr = ex("checkConditionForOldResponses", answered("weekly", "a"), "all", "weekly", 0, 250)
        assert ev(engine, ctx, expr).as_bool() is True

    def test_all_policy_without_responses(self, engine, ctx, history):
        expr = ex("checkConditionForOldResponses", answered("weekly", "a"), "all", "missing")
        assert ev(engine, ctx, expr).as_bool() is False

    def test_any_policy(self, engine, ctx, history):
        expr = ex("checkConditionForOldResponses", answered("weekly", "b"), "any", "weekly")
        assert ev(engine, ctx, expr).as_bool() is True
        expr = ex("checkConditionForOldResponses", answered("weekly", "c"), "any", "weekly")
        assert ev(engine, ctx, expr).as_bool() is False

    def test_count_policy(self, engine, ctx, history):
        expr = ex("checkConditionForOldResponses", answered("weekly", "a"), 2, "weekly")
        assert ev(engine, ctx, expr).as_bool() is True
        expr = ex("checkConditionForOldResponses", answered("weekly", "a"), 3, "weekly")
        assert ev(engine, ctx, expr).as_bool() is False

    def test_time_window_is_exclusive(self, engine, ctx, history):
        expr = ex("checkConditionForOldResponses", answered("weekly", "a"), 1, "weekly", 100, 200)
        assert ev(engine, ctx, expr).as_bool() is False

    def test_unknown_policy(self, engine, ctx, history):
        expr = ex("checkConditionForOldResponses", answered("weekly", "a"), "most")
        with pytest.raises(ExpressionError, match="unknown policy"):
            ev(engine, ctx, expr)

    def test_condition_must_be_boolean(self, engine, ctx, history):
        expr = ex("checkConditionForOldResponses", ex("sum", 1), "any", "weekly")
        with pytest.raises(ExpressionError, match="should be a boolean"):
            ev(engine, ctx, expr)

    def test_first_argument_must_be_expression(self, engine, ctx, history):
        with pytest.raises(ExpressionError, match="must be an expression"):
            ev(engine, ctx, ex("checkConditionForOldResponses", "x"))

    def test_query_is_limited_and_newest_first(self, engine, ctx, db, mocker: MockerFixture):
        spy = mocker.spy(db, "get_responses")
        ev(engine, ctx, ex("checkConditionForOldResponses", answered("weekly", "a"), "any", "weekly"))
        _, kwargs = spy.call_args
        assert kwargs["limit"] == 100
        assert spy.call_args.args[2].survey_key == "weekly"

    def test_requires_db(self, clock, ctx):
        evaluator = ExpressionEvaluator(now=clock)
        with pytest.raises(PortUnavailableError):
            evaluator.evaluate(ex("checkConditionForOldResponses", answered("weekly", "a")), ctx)


class TestStudyCodesAndCounters:
    def test_study_code_present(self, engine, ctx, db):
        db.add_study_codes(INSTANCE, STUDY, "codes", ["C1", "C2"])
        assert ev(engine, ctx, ex("isStudyCodePresent", "codes", "C2")).as_bool()
        assert not ev(engine, ctx, ex("isStudyCodePresent", "codes", "C3")).as_bool()

    def test_study_code_lookup_failure_is_false(self, engine, ctx, db, mocker: MockerFixture):
        mocker.patch.object(db, "study_code_list_entry_exists", side_effect=RuntimeError("db down"))
        assert not ev(engine, ctx, ex("isStudyCodePresent", "codes", "C1")).as_bool()

    def test_counters(self, engine, ctx, db):
        db.set_study_counter(INSTANCE, STUDY, "ids", 7)
        assert ev(engine, ctx, ex("getCurrentStudyCounterValue", "ids")).as_number() == 7
        assert ev(engine, ctx, ex("getNextStudyCounterValue", "ids")).as_number() == 8
        assert db.get_current_study_counter_value(INSTANCE, STUDY, "ids") == 8


class TestStudyVariables:
    @pytest.mark.parametrize(
        "name, vtype, value, expected",
        [
            ("getStudyVariableBoolean", StudyVariableType.BOOLEAN, True, True),
            ("getStudyVariableInt", StudyVariableType.INT, 3, 3),
            ("getStudyVariableFloat", StudyVariableType.FLOAT, 2.5, 2.5),
            ("getStudyVariableString", StudyVariableType.STRING, "on", "on"),
            (
                "getStudyVariableDate",
                StudyVariableType.DATE,
                datetime(2023, 1, 1, tzinfo=timezone.utc),
                1672531200,
            ),
        ],
    )
    def test_typed_read(self, engine, ctx, db, name, vtype, value, expected):
        db.set_study_variable(INSTANCE, STUDY, StudyVariable(key="v", type=vtype, value=value))
        assert ev(engine, ctx, ex(name, "v")).to_python() == expected

    def test_type_mismatch(self, engine, ctx, db):
        db.set_study_variable(INSTANCE, STUDY, StudyVariable(key="v", type=StudyVariableType.INT, value=3))
        with pytest.raises(ExpressionError, match="wrong type"):
            ev(engine, ctx, ex("getStudyVariableString", "v"))

    def test_missing_variable(self, engine, ctx):
        with pytest.raises(ExpressionError, match="not found"):
            ev(engine, ctx, ex("getStudyVariableInt", "nope"))


class TestExternalEventEval:
    @pytest.fixture
    def ext_engine(self, db, clock):
        from studyrules import StudyEngine
        from studyrules.engine.external import ExternalService

        return StudyEngine(
            db=db,
            now=clock,
            external_services=[ExternalService(name="svc", url="https://svc.example.org/api")],
        )

    def _reply(self, mocker, body):
        resp = mocker.Mock(status_code=200)
        resp.json.return_value = body
        return resp

    def test_returns_value(self, ext_engine, ctx, mocker: MockerFixture):
        post = mocker.patch.object(ext_engine.gateway.session, "post", return_value=self._reply(mocker, {"value": "ok"}))
        assert ext_engine.eval_expression(ex("externalEventEval", "svc", "score"), ctx.participant, ctx.event).as_str() == "ok"
        assert post.call_args.args[0] == "https://svc.example.org/api/score"

    def test_float_return_type(self, ext_engine, ctx, mocker: MockerFixture):
        mocker.patch.object(ext_engine.gateway.session, "post", return_value=self._reply(mocker, {"value": "2.5"}))
        expr = ex("externalEventEval", "svc", return_type="float")
        assert ext_engine.eval_expression(expr, ctx.participant, ctx.event).as_number() == 2.5

    def test_non_numeric_float(self, ext_engine, ctx, mocker: MockerFixture):
        mocker.patch.object(ext_engine.gateway.session, "post", return_value=self._reply(mocker, {"value": "abc"}))
        expr = ex("externalEventEval", "svc", return_type="float")
        with pytest.raises(ExpressionError, match="not a number"):
            ext_engine.eval_expression(expr, ctx.participant, ctx.event)
