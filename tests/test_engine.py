import pytest

from studyrules import StudyEngine, create_engine
from studyrules.core.config import Settings
from studyrules.engine.engine import ErrorPolicy, RuleEngine
from studyrules.engine.errors import UnknownActionError
from studyrules.engine.types import StudyEvent
from tests.conftest import INSTANCE, STUDY, TRUE, ex


@pytest.fixture
def rules():
    return [
        ex("IF", ex("checkEventType", "SUBMIT"), ex("UPDATE_FLAG", "submitted", "yes")),
        ex("NOT_AN_ACTION"),
        ex("IFTHEN", ex("checkSurveyResponseKey", "test"), ex("INIT_REPORT", "weekly")),
    ]


class TestRuleEngine:
    def test_continue_policy(self, engine, participant, event, rules):
        result = engine.apply_rules(rules, participant, event)
        assert result.participant.flags == {"health": "test", "submitted": "yes"}
        assert list(result.data.reports_to_create) == ["weekly"]
        assert not result.ok
        [err] = result.errors
        assert err.index == 1
        assert isinstance(err.error, UnknownActionError)
        assert "rule[1] NOT_AN_ACTION" in str(err)

    def test_abort_policy(self, engine, participant, event, rules):
        result = engine.apply_rules(rules, participant, event, policy=ErrorPolicy.ABORT)
        assert result.participant.flags["submitted"] == "yes"
        assert result.data.reports_to_create == {}
        assert len(result.errors) == 1

    def test_failed_rule_is_logged(self, engine, participant, event, rules, caplog):
        with caplog.at_level("WARNING", logger="studyengine"):
            engine.apply_rules(rules, participant, event)
        assert "NOT_AN_ACTION" in caplog.text

    def test_input_participant_untouched(self, engine, participant, event, rules):
        engine.apply_rules(rules, participant, event)
        assert participant.flags == {"health": "test"}
        assert participant.last_submissions == {}

    def test_submission_recorded_per_rule_run(self, engine, participant, event):
        result = engine.apply_rules([ex("DO"), ex("DO")], participant, event)
        assert result.participant.last_submissions == {"test": 1686830400}

    def test_has_rule_for_event_type(self, rules):
        assert RuleEngine.has_rule_for_event_type(rules, "SUBMIT")
        assert not RuleEngine.has_rule_for_event_type(rules, "TIMER")
        assert not RuleEngine.has_rule_for_event_type([ex("DO", TRUE)], "SUBMIT")

    def test_has_rule_for_event_type_matches_first_literal_only(self):
        guarded = [ex("IF", ex("eq", "TIMER", "x"), ex("DO"))]
        assert RuleEngine.has_rule_for_event_type(guarded, "TIMER")
        assert not RuleEngine.has_rule_for_event_type(guarded, "x")


class TestStudyEngine:
    def test_eval_expression(self, engine, participant):
        event = StudyEvent(type="CUSTOM", instance_id=INSTANCE, study_key=STUDY)
        assert engine.eval_expression(ex("hasParticipantFlagKey", "health"), participant, event).as_bool()

    def test_wires_shared_collaborators(self, engine, db, sender):
        assert engine.db is db
        assert engine.message_sender is sender
        assert engine.rules.error_policy == ErrorPolicy.CONTINUE

    def test_create_engine_from_settings(self, db):
        settings = Settings(config_file="does-not-exist.yaml")
        settings.set_cfg(
            {
                "engine": {"timezone": "Europe/Berlin", "max_eval_depth": 10, "rule_error_policy": "abort"},
                "external_services": [{"name": "svc", "url": "https://svc.example.org"}],
            }
        )
        engine = create_engine(settings, db)
        assert isinstance(engine, StudyEngine)
        assert engine.expressions.max_depth == 10
        assert engine.rules.error_policy == ErrorPolicy.ABORT
        assert engine.gateway.get_service("svc").timeout == 30

    def test_timezone_changes_calendar_expressions(self, db, clock, participant, event):
        from zoneinfo import ZoneInfo

        berlin = StudyEngine(db=db, now=clock, tz=ZoneInfo("Europe/Berlin"))
        # 2023-06-15 23:30 UTC is already 01:30 on the 16th in Berlin
        ts = 1686871800
        assert berlin.eval_expression(ex("dateToStr", ts, "dd HH:mm"), participant, event).as_str() == "16 01:30"
