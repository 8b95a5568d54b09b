# studyrules/engine/actions.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .errors import (
    ActionError,
    EvaluationDepthError,
    PortUnavailableError,
    StudyEngineError,
    UnknownActionError,
)
from .expressions import ExpressionEvaluator
from .external import ExternalServiceGateway
from .helpers import (
    clone_report,
    new_object_id,
    new_session_id,
    remove_map_key,
    update_map_value,
    utc_now,
    with_participant,
    with_reports,
)
from .storage import StudyDBService, StudyMessageSender
from .types import (
    ActionData,
    AssignedSurvey,
    EvalContext,
    Expression,
    ExpressionArg,
    ParticipantMessage,
    Report,
    ReportData,
    SendOptions,
    StudyEvent,
    StudyEventType,
    StudyMessage,
)
from .values import Value

log = logging.getLogger("studyengine.actions")

# (action, current data, event, depth) -> new data
ActionHandler = Callable[[Expression, ActionData, StudyEvent, int], ActionData]

# SEND_MESSAGE_NOW: messages not delivered within this window are dropped
INSTANT_MESSAGE_TTL = timedelta(hours=24)


def _format_flag_value(v: Value, dtype: str = "") -> str:
    if v.is_string:
        return v.as_str()
    if v.is_boolean:
        return "true" if v.as_bool() else "false"
    if dtype == "int":
        return "%d" % int(v.as_number())
    return "%f" % v.as_number()


class ActionExecutor:
    """
    Applies state-changing actions of the rule DSL.

    Every handler gets the current ActionData and returns a NEW one;
    containers that change are copied first, the input is never mutated.

    External collaborators (persistence port, message sender, gateway)
    come in through __init__.
    """

    def __init__(
        self,
        *,
        expressions: ExpressionEvaluator,
        db: Optional[StudyDBService] = None,
        message_sender: Optional[StudyMessageSender] = None,
        gateway: Optional[ExternalServiceGateway] = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._expressions = expressions
        self._db = db
        self._message_sender = message_sender
        self._gateway = gateway
        self._now = now
        self._handlers: Dict[str, ActionHandler] = {}
        self._register_defaults()

    # --------------------------------------------------------------------- #
    # PUBLIC API
    # --------------------------------------------------------------------- #
    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def eval(self, action: Expression, old_state: ActionData, event: StudyEvent) -> ActionData:
        """
        Entry point for one top-level action tree.
        On SUBMIT events the submission time is recorded once, before dispatch.
        """
        try:
            state = old_state
            if event.type == StudyEventType.SUBMIT.value:
                state = self._record_last_submission(state, event)
            return self._dispatch(action, state, event, 0)
        except Exception as exc:
            log.debug("error when running action %s: %s", action.name, exc)
            raise

    # --------------------------------------------------------------------- #
    # INTERNAL
    # --------------------------------------------------------------------- #
    def _dispatch(self, action: Expression, data: ActionData, event: StudyEvent, depth: int) -> ActionData:
        if depth > self._expressions.max_depth:
            raise EvaluationDepthError(self._expressions.max_depth)
        handler = self._handlers.get(action.name)
        if handler is None:
            raise UnknownActionError(action.name)
        return handler(action, data, event, depth)

    def _run_child(self, arg: ExpressionArg, data: ActionData, event: StudyEvent, depth: int) -> ActionData:
        if not arg.is_expression() or arg.exp is None:
            return data
        return self._dispatch(arg.exp, data, event, depth + 1)

    def _record_last_submission(self, data: ActionData, event: StudyEvent) -> ActionData:
        key = event.response.key
        if not key:
            raise ActionError("no response key found")
        arrived_at = event.response.arrived_at or int(self._now().timestamp())
        subs = dict(data.participant.last_submissions)
        subs[key] = arrived_at
        return with_participant(data, last_submissions=subs)

    def _ctx(self, data: ActionData, event: StudyEvent, depth: int) -> EvalContext:
        return EvalContext(event=event, participant=data.participant, depth=depth)

    def _arg(self, action: Expression, idx: int, data: ActionData, event: StudyEvent, depth: int) -> Value:
        return self._expressions.resolve_arg(action.data[idx], self._ctx(data, event, depth))

    def _str_arg(self, action: Expression, idx: int, data: ActionData, event: StudyEvent, depth: int) -> str:
        v = self._arg(action, idx, data, event, depth)
        if not v.is_string:
            raise ActionError(f"{action.name}: argument {idx + 1} should be a string")
        return v.as_str()

    def _num_arg(self, action: Expression, idx: int, data: ActionData, event: StudyEvent, depth: int) -> float:
        v = self._arg(action, idx, data, event, depth)
        if not v.is_number:
            raise ActionError(f"{action.name}: argument {idx + 1} should be a number")
        return v.as_number()

    @staticmethod
    def _arity(action: Expression, *allowed: int) -> None:
        if len(action.data) not in allowed:
            raise ActionError(f"{action.name}: unexpected numbers of arguments ({len(action.data)})")

    @staticmethod
    def _min_arity(action: Expression, n: int) -> None:
        if len(action.data) < n:
            raise ActionError(f"{action.name}: must have at least {n} arguments")

    def _require_db(self, action: Expression) -> StudyDBService:
        if self._db is None:
            raise PortUnavailableError(f"{action.name}: DB connection not available")
        return self._db

    def _check_condition(self, cond: ExpressionArg, ctx: EvalContext) -> bool:
        """Literal: number != 0. Expression: must evaluate to boolean true."""
        if not cond.is_expression():
            return cond.num != 0
        try:
            v = self._expressions.resolve_arg(cond, ctx)
        except EvaluationDepthError:
            raise
        except StudyEngineError as e:
            log.debug("condition failed, treated as false: %s", e)
            return False
        return v.is_boolean and v.as_bool()

    def _report_timestamp(self) -> int:
        ts = int(self._now().timestamp())
        return ts - ts % 60

    def _register_defaults(self) -> None:
        h = self._handlers

        # control flow
        h["IF"] = self._if
        h["DO"] = self._do
        h["IFTHEN"] = self._if_then

        # participant state
        h["UPDATE_STUDY_STATUS"] = self._update_study_status
        h["START_NEW_STUDY_SESSION"] = self._start_new_study_session
        h["UPDATE_FLAG"] = self._update_flag
        h["REMOVE_FLAG"] = self._remove_flag
        h["SET_LINKING_CODE"] = self._set_linking_code
        h["DELETE_LINKING_CODE"] = self._delete_linking_code
        h["ADD_NEW_SURVEY"] = self._add_new_survey
        h["REMOVE_ALL_SURVEYS"] = self._remove_all_surveys
        h["REMOVE_SURVEY_BY_KEY"] = self._remove_survey_by_key
        h["REMOVE_SURVEYS_BY_KEY"] = self._remove_surveys_by_key
        h["ADD_MESSAGE"] = self._add_message
        h["REMOVE_ALL_MESSAGES"] = self._remove_all_messages
        h["REMOVE_MESSAGES_BY_TYPE"] = self._remove_messages_by_type

        # messages
        h["NOTIFY_RESEARCHER"] = self._notify_researcher
        h["SEND_MESSAGE_NOW"] = self._send_message_now

        # reports
        h["INIT_REPORT"] = self._init_report
        h["UPDATE_REPORT_DATA"] = self._update_report_data
        h["REMOVE_REPORT_DATA"] = self._remove_report_data
        h["CANCEL_REPORT"] = self._cancel_report

        # persistence / external
        h["REMOVE_CONFIDENTIAL_RESPONSE_BY_KEY"] = self._remove_confidential_response_by_key
        h["REMOVE_ALL_CONFIDENTIAL_RESPONSES"] = self._remove_all_confidential_responses
        h["EXTERNAL_EVENT_HANDLER"] = self._external_event_handler
        h["REMOVE_STUDY_CODE"] = self._remove_study_code
        h["DRAW_STUDY_CODE_AS_LINKING_CODE"] = self._draw_study_code_as_linking_code
        h["GET_NEXT_STUDY_COUNTER_AS_FLAG"] = self._next_counter_as_flag
        h["GET_NEXT_STUDY_COUNTER_AS_LINKING_CODE"] = self._next_counter_as_linking_code
        h["RESET_STUDY_COUNTER"] = self._reset_study_counter

    # --------------------------------------------------------------------- #
    # CONTROL FLOW
    # --------------------------------------------------------------------- #
    def _if(self, action: Expression, data: ActionData, event: StudyEvent, depth: int) -> ActionData:
        """IF(condition, then[, else])"""
        self._min_arity(action, 2)
        if self._check_condition(action.data[0], self._ctx(data, event, depth + 1)):
            return self._run_child(action.data[1], data, event, depth)
        if len(action.data) == 3:
            return self._run_child(action.data[2], data, event, depth)
        return data

    def _do(self, action: Expression, data: ActionData, event: StudyEvent, depth: int) -> ActionData:
        """DO(actions...): stops at the first failing action."""
        for arg in action.data:
            data = self._run_child(arg, data, event, depth)
        return data

    def _if_then(self, action: Expression, data: ActionData, event: StudyEvent, depth: int) -> ActionData:
        """IFTHEN(condition, actions...): a failing action is logged and skipped."""
        self._min_arity(action, 1)
        if not self._check_condition(action.data[0], self._ctx(data, event, depth + 1)):
            return data
        for arg in action.data[1:]:
            try:
                data = self._run_child(arg, data, event, depth)
            except EvaluationDepthError:
                raise
            except Exception as exc:  # noqa: BLE001
                name = arg.exp.name if arg.exp is not None else "?"
                log.debug("error during action %s inside IFTHEN: %s", name, exc)
        return data

    # --------------------------------------------------------------------- #
    # PARTICIPANT STATE
    # --------------------------------------------------------------------- #
    def _update_study_status(self, action, data, event, depth) -> ActionData:
        self._arity(action, 1)
        return with_participant(data, study_status=self._str_arg(action, 0, data, event, depth))

    def _start_new_study_session(self, action, data, event, depth) -> ActionData:
        return with_participant(data, current_study_session=new_session_id(self._now()))

    def _update_flag(self, action, data, event, depth) -> ActionData:
        self._arity(action, 2)
        key = self._str_arg(action, 0, data, event, depth)
        value = _format_flag_value(self._arg(action, 1, data, event, depth))
        return with_participant(data, flags=update_map_value(data.participant.flags, key, value))

    def _remove_flag(self, action, data, event, depth) -> ActionData:
        self._arity(action, 1)
        key = self._str_arg(action, 0, data, event, depth)
        return with_participant(data, flags=remove_map_key(data.participant.flags, key))

    def _set_linking_code(self, action, data, event, depth) -> ActionData:
        self._arity(action, 2)
        key = self._str_arg(action, 0, data, event, depth)
        value = self._str_arg(action, 1, data, event, depth)
        return with_participant(
            data, linking_codes=update_map_value(data.participant.linking_codes, key, value)
        )

    def _delete_linking_code(self, action, data, event, depth) -> ActionData:
        if not action.data:
            return with_participant(data, linking_codes={})
        key = self._str_arg(action, 0, data, event, depth)
        return with_participant(
            data, linking_codes=remove_map_key(data.participant.linking_codes, key)
        )

    def _add_new_survey(self, action, data, event, depth) -> ActionData:
        """ADD_NEW_SURVEY(surveyKey, validFrom, validUntil, category)"""
        self._arity(action, 4)
        survey_key = self._str_arg(action, 0, data, event, depth)
        start = self._arg(action, 1, data, event, depth)
        end = self._arg(action, 2, data, event, depth)
        category = self._str_arg(action, 3, data, event, depth)

        # non-numeric bounds mean "unbounded"
        survey = AssignedSurvey(
            survey_key=survey_key,
            valid_from=int(start.as_number()) if start.is_number else 0,
            valid_until=int(end.as_number()) if end.is_number else 0,
            category=category,
        )
        return with_participant(
            data, assigned_surveys=list(data.participant.assigned_surveys) + [survey]
        )

    def _remove_all_surveys(self, action, data, event, depth) -> ActionData:
        if action.data:
            raise ActionError(f"{action.name}: must not have arguments")
        return with_participant(data, assigned_surveys=[])

    def _remove_survey_by_key(self, action, data, event, depth) -> ActionData:
        """REMOVE_SURVEY_BY_KEY(surveyKey, "first" | "last")"""
        self._arity(action, 2)
        survey_key = self._str_arg(action, 0, data, event, depth)
        position = self._str_arg(action, 1, data, event, depth)

        surveys = list(data.participant.assigned_surveys)
        indexes = [i for i, s in enumerate(surveys) if s.survey_key == survey_key]
        if position == "first":
            idx = indexes[0] if indexes else None
        elif position == "last":
            idx = indexes[-1] if indexes else None
        else:
            raise ActionError(f"{action.name}: position not known: {position!r}")

        if idx is not None:
            del surveys[idx]
        return with_participant(data, assigned_surveys=surveys)

    def _remove_surveys_by_key(self, action, data, event, depth) -> ActionData:
        self._arity(action, 1)
        survey_key = self._str_arg(action, 0, data, event, depth)
        return with_participant(
            data,
            assigned_surveys=[s for s in data.participant.assigned_surveys if s.survey_key != survey_key],
        )

    def _add_message(self, action, data, event, depth) -> ActionData:
        """ADD_MESSAGE(messageType, scheduledFor)"""
        self._arity(action, 2)
        msg_type = self._str_arg(action, 0, data, event, depth)
        ts = self._num_arg(action, 1, data, event, depth)
        msg = ParticipantMessage(
            id=new_object_id(self._now()),
            type=msg_type,
            scheduled_for=int(ts),
        )
        return with_participant(data, messages=list(data.participant.messages) + [msg])

    def _remove_all_messages(self, action, data, event, depth) -> ActionData:
        return with_participant(data, messages=[])

    def _remove_messages_by_type(self, action, data, event, depth) -> ActionData:
        self._arity(action, 1)
        msg_type = self._str_arg(action, 0, data, event, depth)
        return with_participant(
            data, messages=[m for m in data.participant.messages if m.type != msg_type]
        )

    # --------------------------------------------------------------------- #
    # MESSAGES
    # --------------------------------------------------------------------- #
    def _notify_researcher(self, action, data, event, depth) -> ActionData:
        """NOTIFY_RESEARCHER(messageType, key1, value1, key2, value2, ...)"""
        self._min_arity(action, 1)
        msg_type = self._str_arg(action, 0, data, event, depth)

        payload: Dict[str, str] = {}
        for i in range(1, len(action.data) - 1, 2):
            k = self._str_arg(action, i, data, event, depth)
            payload[k] = self._str_arg(action, i + 1, data, event, depth)

        message = StudyMessage(
            type=msg_type,
            participant_id=data.participant.participant_id,
            payload=payload,
        )
        if self._db is None:
            log.error("%s: DB connection not available, message dropped", action.name)
            return data
        try:
            self._db.save_researcher_message(event.instance_id, event.study_key, message)
        except Exception as exc:  # noqa: BLE001
            log.error("unexpected error when saving researcher message: %s", exc)
        return data

    @staticmethod
    def _extra_payload(data: ActionData, event: StudyEvent) -> Dict[str, str]:
        payload = {"studyKey": event.study_key}
        for k, v in data.participant.flags.items():
            payload["flags." + k] = v
        for k, v in data.participant.linking_codes.items():
            payload["linkingCodes." + k] = v
        for k, v in event.payload.items():
            payload["eventData." + k] = str(v)
        return payload

    def _send_message_now(self, action, data, event, depth) -> ActionData:
        """SEND_MESSAGE_NOW(messageType[, languageOverride])"""
        if not event.participant_id_for_confidential_responses:
            raise ActionError(f"{action.name}: missing participantID for confidential responses")
        if self._message_sender is None:
            raise PortUnavailableError(f"{action.name}: message sender not registered")
        self._min_arity(action, 1)

        msg_type = self._str_arg(action, 0, data, event, depth).strip()
        if not msg_type:
            raise ActionError(f"{action.name}: message type must not be empty")

        language = ""
        if len(action.data) > 1:
            v = self._arg(action, 1, data, event, depth)
            if v.is_string:
                language = v.as_str()
            else:
                log.debug("%s: could not parse language override", action.name)

        self._message_sender.send_instant_study_email(
            event.instance_id,
            event.study_key,
            event.participant_id_for_confidential_responses,
            msg_type,
            self._extra_payload(data, event),
            SendOptions(
                expires_at=int((self._now() + INSTANT_MESSAGE_TTL).timestamp()),
                language_override=language,
            ),
        )
        return data

    # --------------------------------------------------------------------- #
    # REPORTS
    # --------------------------------------------------------------------- #
    def _new_report(self, key: str, data: ActionData) -> Report:
        return Report(
            key=key,
            participant_id=data.participant.participant_id,
            timestamp=self._report_timestamp(),
        )

    def _init_report(self, action, data, event, depth) -> ActionData:
        self._arity(action, 1)
        key = self._str_arg(action, 0, data, event, depth)
        reports = dict(data.reports_to_create)
        reports[key] = self._new_report(key, data)
        return with_reports(data, reports)

    def _update_report_data(self, action, data, event, depth) -> ActionData:
        """UPDATE_REPORT_DATA(reportKey, attributeKey, value[, dtype])"""
        self._min_arity(action, 3)
        key = self._str_arg(action, 0, data, event, depth)
        attr = self._str_arg(action, 1, data, event, depth)
        value = self._arg(action, 2, data, event, depth)
        dtype = self._str_arg(action, 3, data, event, depth) if len(action.data) > 3 else ""

        existing = data.reports_to_create.get(key)
        report = clone_report(existing) if existing is not None else self._new_report(key, data)

        entry = ReportData(key=attr, value=_format_flag_value(value, dtype), dtype=dtype)
        for i, d in enumerate(report.data):
            if d.key == attr:
                report.data[i] = entry
                break
        else:
            report.data.append(entry)

        reports = dict(data.reports_to_create)
        reports[key] = report
        return with_reports(data, reports)

    def _remove_report_data(self, action, data, event, depth) -> ActionData:
        self._arity(action, 2)
        key = self._str_arg(action, 0, data, event, depth)
        existing = data.reports_to_create.get(key)
        if existing is None:
            return data
        attr = self._str_arg(action, 1, data, event, depth)

        report = clone_report(existing)
        report.data = [d for d in report.data if d.key != attr]
        reports = dict(data.reports_to_create)
        reports[key] = report
        return with_reports(data, reports)

    def _cancel_report(self, action, data, event, depth) -> ActionData:
        self._arity(action, 1)
        key = self._str_arg(action, 0, data, event, depth)
        reports = dict(data.reports_to_create)
        reports.pop(key, None)
        return with_reports(data, reports)

    # --------------------------------------------------------------------- #
    # PERSISTENCE / EXTERNAL
    # --------------------------------------------------------------------- #
    def _remove_confidential_response_by_key(self, action, data, event, depth) -> ActionData:
        self._arity(action, 1)
        key = self._str_arg(action, 0, data, event, depth)
        self._require_db(action).delete_confidential_responses(
            event.instance_id,
            event.study_key,
            event.participant_id_for_confidential_responses,
            key,
        )
        return data

    def _remove_all_confidential_responses(self, action, data, event, depth) -> ActionData:
        self._require_db(action).delete_confidential_responses(
            event.instance_id,
            event.study_key,
            event.participant_id_for_confidential_responses,
            "",
        )
        return data

    def _external_event_handler(self, action, data, event, depth) -> ActionData:
        """EXTERNAL_EVENT_HANDLER(serviceName[, route])"""
        self._min_arity(action, 1)
        if self._gateway is None:
            raise PortUnavailableError(f"{action.name}: no external service gateway configured")
        service = self._str_arg(action, 0, data, event, depth)
        route = self._str_arg(action, 1, data, event, depth) if len(action.data) > 1 else ""

        resp = self._gateway.call(service, route, data.participant, event)

        participant = resp.participant()
        if participant is not None:
            log.debug("received new participant state from external service %s", service)
        reports = dict(data.reports_to_create)
        new_reports = resp.reports()
        if new_reports:
            log.debug("received %d reports from external service %s", len(new_reports), service)
            reports.update(new_reports)
        return ActionData(
            participant=participant if participant is not None else data.participant,
            reports_to_create=reports,
        )

    def _remove_study_code(self, action, data, event, depth) -> ActionData:
        self._arity(action, 2)
        list_key = self._str_arg(action, 0, data, event, depth)
        code = self._str_arg(action, 1, data, event, depth)
        self._require_db(action).delete_study_code_list_entry(
            event.instance_id, event.study_key, list_key, code
        )
        return data

    def _draw_study_code_as_linking_code(self, action, data, event, depth) -> ActionData:
        """DRAW_STUDY_CODE_AS_LINKING_CODE(listKey[, linkingCodeKey = listKey])"""
        self._min_arity(action, 1)
        list_key = self._str_arg(action, 0, data, event, depth)
        code_key = self._str_arg(action, 1, data, event, depth) if len(action.data) > 1 else list_key

        code = self._require_db(action).draw_study_code(event.instance_id, event.study_key, list_key)
        codes = data.participant.linking_codes
        if not code:
            log.debug("%s: list %s is empty, removing linking code %s", action.name, list_key, code_key)
            return with_participant(data, linking_codes=remove_map_key(codes, code_key))
        return with_participant(data, linking_codes=update_map_value(codes, code_key, code))

    def _next_counter_value(self, action, data, event, depth) -> tuple:
        """(target key, formatted value) for GET_NEXT_STUDY_COUNTER_AS_*"""
        self._min_arity(action, 2)
        scope = self._str_arg(action, 0, data, event, depth)
        key = self._str_arg(action, 1, data, event, depth)
        prefix = self._str_arg(action, 2, data, event, depth) if len(action.data) > 2 else ""
        padding = int(self._num_arg(action, 3, data, event, depth)) if len(action.data) > 3 else 0

        value = self._require_db(action).increment_and_get_study_counter_value(
            event.instance_id, event.study_key, scope
        )
        return key, prefix + str(value).zfill(padding)

    def _next_counter_as_flag(self, action, data, event, depth) -> ActionData:
        key, value = self._next_counter_value(action, data, event, depth)
        return with_participant(data, flags=update_map_value(data.participant.flags, key, value))

    def _next_counter_as_linking_code(self, action, data, event, depth) -> ActionData:
        key, value = self._next_counter_value(action, data, event, depth)
        return with_participant(
            data, linking_codes=update_map_value(data.participant.linking_codes, key, value)
        )

    def _reset_study_counter(self, action, data, event, depth) -> ActionData:
        self._min_arity(action, 1)
        scope = self._str_arg(action, 0, data, event, depth)
        self._require_db(action).remove_study_counter_value(event.instance_id, event.study_key, scope)
        return data
