# studyrules/engine/expressions.py
from __future__ import annotations

import logging
import operator
import random
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    EvaluationDepthError,
    ExpressionError,
    ItemNotFoundError,
    PortUnavailableError,
    StudyEngineError,
    UnknownExpressionError,
)
from .external import ExternalServiceGateway
from .helpers import (
    find_response_object,
    find_survey_item_response,
    format_date_fns,
    from_unix,
    next_iso_week_start,
    next_start_of_month,
    parse_month,
    utc_now,
)
from .storage import ResponseQuery, StudyDBService
from .types import (
    EvalContext,
    Expression,
    ExpressionArg,
    Participant,
    ResponseItem,
    StudyEvent,
    StudyVariable,
    StudyVariableType,
)
from .values import Value

log = logging.getLogger("studyengine.expressions")

ExpressionHandler = Callable[[Expression, EvalContext], Value]

INCOMING_STATE_PREFIX = "incomingState:"

# checkConditionForOldResponses reads at most this many stored responses
OLD_RESPONSES_LIMIT = 100


class ExpressionEvaluator:
    """
    Evaluates pure expressions of the rule DSL.

    Gets:
      - an Expression node,
      - an EvalContext (event + participant state).
    Returns a Value (number / string / boolean) or raises an ExpressionError.

    Handlers live in a name -> callable registry; `register()` adds or
    replaces one.
    """

    def __init__(
        self,
        *,
        db: Optional[StudyDBService] = None,
        gateway: Optional[ExternalServiceGateway] = None,
        now: Callable[[], datetime] = utc_now,
        tz: tzinfo = timezone.utc,
        max_depth: int = 64,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._now = now
        self._tz = tz
        self.max_depth = max_depth
        self._rng = rng or random.Random()
        self._handlers: Dict[str, ExpressionHandler] = {}
        self._register_defaults()

    # ------------------------------------------------------------------ #
    # PUBLIC API
    # ------------------------------------------------------------------ #
    def register(self, name: str, handler: ExpressionHandler) -> None:
        self._handlers[name] = handler

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def evaluate(self, expr: Expression, ctx: EvalContext) -> Value:
        if ctx.depth > self.max_depth:
            raise EvaluationDepthError(self.max_depth)
        handler = self._handlers.get(expr.name)
        if handler is None:
            log.debug("unknown expression: %s", expr.name)
            raise UnknownExpressionError(expr.name)
        return handler(expr, ctx)

    def resolve_arg(self, arg: ExpressionArg, ctx: EvalContext) -> Value:
        """Literal for num/str args, nested evaluation for exp args."""
        if arg.is_number():
            return Value.number(arg.num)
        if arg.is_expression():
            if arg.exp is None:
                raise ExpressionError("missing argument - expected expression, but was empty")
            return self.evaluate(arg.exp, replace(ctx, depth=ctx.depth + 1))
        # unknown dtypes resolve as strings
        return Value.string(arg.str_value)

    def now_ts(self) -> int:
        return int(self._now().timestamp())

    # ------------------------------------------------------------------ #
    # REGISTRY
    # ------------------------------------------------------------------ #
    def _register_defaults(self) -> None:
        h = self._handlers

        # --- event ---
        h["checkEventType"] = self._check_event_type
        h["checkEventKey"] = self._check_event_key
        h["checkSurveyResponseKey"] = self._check_survey_response_key
        h["hasEventPayload"] = self._has_event_payload
        h["getEventPayloadValueAsStr"] = self._get_event_payload_value_as_str
        h["getEventPayloadValueAsNum"] = self._get_event_payload_value_as_num
        h["hasEventPayloadKey"] = self._has_event_payload_key
        h["hasEventPayloadKeyWithValue"] = self._has_event_payload_key_with_value

        # --- response of the event ---
        h["responseHasKeysAny"] = self._response_has_keys_any
        h["responseHasOnlyKeysOtherThan"] = self._response_has_only_keys_other_than
        h["getResponseValueAsNum"] = self._get_response_value_as_num
        h["getResponseValueAsStr"] = self._get_response_value_as_str
        h["getSelectedKeys"] = self._get_selected_keys
        h["countResponseItems"] = self._count_response_items
        h["hasResponseKey"] = self._has_response_key
        h["hasResponseKeyWithValue"] = self._has_response_key_with_value

        # --- stored data ---
        h["checkConditionForOldResponses"] = self._check_condition_for_old_responses
        h["isStudyCodePresent"] = self._is_study_code_present
        h["getCurrentStudyCounterValue"] = self._get_current_study_counter_value
        h["getNextStudyCounterValue"] = self._get_next_study_counter_value
        h["getStudyVariableBoolean"] = partial(self._get_study_variable, StudyVariableType.BOOLEAN)
        h["getStudyVariableInt"] = partial(self._get_study_variable, StudyVariableType.INT)
        h["getStudyVariableFloat"] = partial(self._get_study_variable, StudyVariableType.FLOAT)
        h["getStudyVariableString"] = partial(self._get_study_variable, StudyVariableType.STRING)
        h["getStudyVariableDate"] = partial(self._get_study_variable, StudyVariableType.DATE)

        # --- participant state (+ incomingState: twins) ---
        state_handlers: Dict[str, Callable[..., Value]] = {
            "getStudyEntryTime": self._get_study_entry_time,
            "hasSurveyKeyAssigned": self._has_survey_key_assigned,
            "getSurveyKeyAssignedFrom": partial(self._get_survey_key_assigned_ts, "valid_from"),
            "getSurveyKeyAssignedUntil": partial(self._get_survey_key_assigned_ts, "valid_until"),
            "hasStudyStatus": self._has_study_status,
            "hasParticipantFlag": self._has_participant_flag,
            "hasParticipantFlagKey": self._has_participant_flag_key,
            "getParticipantFlagValue": self._get_participant_flag_value,
            "hasLinkingCode": self._has_linking_code,
            "getLinkingCodeValue": self._get_linking_code_value,
            "getLastSubmissionDate": self._get_last_submission_date,
            "lastSubmissionDateOlderThan": self._last_submission_date_older_than,
            "hasMessageTypeAssigned": self._has_message_type_assigned,
            "getMessageNextTime": self._get_message_next_time,
        }
        for name, fn in state_handlers.items():
            h[name] = partial(fn, incoming=False)
            h[INCOMING_STATE_PREFIX + name] = partial(fn, incoming=True)

        # --- logic / compare / math ---
        h["eq"] = partial(self._compare, operator.eq)
        h["lt"] = partial(self._compare, operator.lt)
        h["lte"] = partial(self._compare, operator.le)
        h["gt"] = partial(self._compare, operator.gt)
        h["gte"] = partial(self._compare, operator.ge)
        h["and"] = self._and
        h["or"] = self._or
        h["not"] = self._not
        h["sum"] = self._sum
        h["neg"] = self._neg

        # --- time and misc ---
        h["timestampWithOffset"] = self._timestamp_with_offset
        h["getTsForNextStartOfMonth"] = self._get_ts_for_next_start_of_month
        h["getTsForNextISOWeek"] = self._get_ts_for_next_iso_week
        h["getISOWeekForTs"] = self._get_iso_week_for_ts
        h["dateToStr"] = self._date_to_str
        h["parseValueAsNum"] = self._parse_value_as_num
        h["generateRandomNumber"] = self._generate_random_number
        h["externalEventEval"] = self._external_event_eval

    # ------------------------------------------------------------------ #
    # ARGUMENT HELPERS
    # ------------------------------------------------------------------ #
    @staticmethod
    def _arity(expr: Expression, *allowed: int) -> None:
        if len(expr.data) not in allowed:
            raise ExpressionError(
                f"{expr.name}: unexpected numbers of arguments ({len(expr.data)})"
            )

    @staticmethod
    def _min_arity(expr: Expression, n: int) -> None:
        if len(expr.data) < n:
            raise ExpressionError(f"{expr.name}: should have at least {n} arguments")

    @staticmethod
    def _no_num_args(expr: Expression) -> None:
        if any(a.is_number() for a in expr.data):
            raise ExpressionError(f"{expr.name}: unexpected argument types")

    def _str(self, expr: Expression, idx: int, ctx: EvalContext) -> str:
        return self.resolve_arg(expr.data[idx], ctx).as_str(f"{expr.name}: argument {idx + 1}")

    def _num(self, expr: Expression, idx: int, ctx: EvalContext) -> float:
        return self.resolve_arg(expr.data[idx], ctx).as_number(f"{expr.name}: argument {idx + 1}")

    def _require_db(self, expr: Expression) -> StudyDBService:
        if self._db is None:
            raise PortUnavailableError(f"{expr.name}: DB connection not available in the context")
        return self._db

    @staticmethod
    def _state(ctx: EvalContext, incoming: bool) -> Participant:
        if not incoming:
            return ctx.participant
        return ctx.event.merge_with_participant or Participant()

    def _ref_time(self, expr: Expression, idx: int, ctx: EvalContext) -> datetime:
        """Optional reference timestamp argument, "now" when absent."""
        if len(expr.data) > idx:
            return from_unix(self._num(expr, idx, ctx), self._tz)
        return self._now().astimezone(self._tz)

    # ------------------------------------------------------------------ #
    # EVENT
    # ------------------------------------------------------------------ #
    def _check_event_type(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        return Value.boolean(ctx.event.type == self._str(expr, 0, ctx))

    def _check_event_key(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        return Value.boolean(ctx.event.event_key == self._str(expr, 0, ctx))

    def _check_survey_response_key(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        return Value.boolean(ctx.event.response.key == self._str(expr, 0, ctx))

    def _has_event_payload(self, expr: Expression, ctx: EvalContext) -> Value:
        return Value.boolean(len(ctx.event.payload) > 0)

    def _get_event_payload_value_as_str(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        v = ctx.event.payload.get(self._str(expr, 0, ctx))
        if not isinstance(v, str):
            if v is not None:
                log.debug("%s: payload value %r is not a string", expr.name, v)
            return Value.string("")
        return Value.string(v)

    def _get_event_payload_value_as_num(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        v = ctx.event.payload.get(self._str(expr, 0, ctx))
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            if v is not None:
                log.debug("%s: payload value %r is not a number", expr.name, v)
            return Value.number(0)
        return Value.number(v)

    def _has_event_payload_key(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        return Value.boolean(self._str(expr, 0, ctx) in ctx.event.payload)

    def _has_event_payload_key_with_value(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 2)
        key = self._str(expr, 0, ctx)
        expected = self._str(expr, 1, ctx)
        v = ctx.event.payload.get(key)
        return Value.boolean(isinstance(v, str) and v == expected)

    # ------------------------------------------------------------------ #
    # RESPONSE OF THE EVENT
    # ------------------------------------------------------------------ #
    def _response_object(self, event: StudyEvent, item_key: str, path: str) -> Optional[ResponseItem]:
        item = find_survey_item_response(event.response.responses, item_key)
        return find_response_object(item, path)

    def _response_group(self, expr: Expression, ctx: EvalContext):
        """(group or None, target keys) for the key-membership checks."""
        self._min_arity(expr, 3)
        item_key = self._str(expr, 0, ctx)
        path = self._str(expr, 1, ctx)
        targets = [self._str(expr, i, ctx) for i in range(2, len(expr.data))]
        return self._response_object(ctx.event, item_key, path), targets

    def _response_has_keys_any(self, expr: Expression, ctx: EvalContext) -> Value:
        group, targets = self._response_group(expr, ctx)
        if group is None:
            return Value.boolean(False)
        selected = {i.key for i in group.items}
        return Value.boolean(any(t in selected for t in targets))

    def _response_has_only_keys_other_than(self, expr: Expression, ctx: EvalContext) -> Value:
        group, targets = self._response_group(expr, ctx)
        if group is None or not group.items:
            return Value.boolean(False)
        selected = {i.key for i in group.items}
        return Value.boolean(not any(t in selected for t in targets))

    def _required_response_object(self, expr: Expression, ctx: EvalContext) -> ResponseItem:
        self._arity(expr, 2)
        item_key = self._str(expr, 0, ctx)
        path = self._str(expr, 1, ctx)
        obj = self._response_object(ctx.event, item_key, path)
        if obj is None:
            raise ItemNotFoundError(f"{expr.name}: item not found ({item_key} / {path})")
        return obj

    def _get_response_value_as_num(self, expr: Expression, ctx: EvalContext) -> Value:
        obj = self._required_response_object(expr, ctx)
        try:
            return Value.number(float(obj.value))
        except ValueError as e:
            raise ExpressionError(f"{expr.name}: value {obj.value!r} is not a number") from e

    def _get_response_value_as_str(self, expr: Expression, ctx: EvalContext) -> Value:
        return Value.string(self._required_response_object(expr, ctx).value)

    def _get_selected_keys(self, expr: Expression, ctx: EvalContext) -> Value:
        obj = self._required_response_object(expr, ctx)
        return Value.string(";".join(i.key for i in obj.items))

    def _count_response_items(self, expr: Expression, ctx: EvalContext) -> Value:
        return Value.number(len(self._required_response_object(expr, ctx).items))

    def _has_response_key(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 2)
        obj = self._response_object(ctx.event, self._str(expr, 0, ctx), self._str(expr, 1, ctx))
        return Value.boolean(obj is not None)

    def _has_response_key_with_value(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 3)
        item_key = self._str(expr, 0, ctx)
        path = self._str(expr, 1, ctx)
        expected = self._str(expr, 2, ctx)
        obj = self._response_object(ctx.event, item_key, path)
        return Value.boolean(obj is not None and obj.value == expected)

    # ------------------------------------------------------------------ #
    # STORED DATA
    # ------------------------------------------------------------------ #
    def _check_condition_for_old_responses(self, expr: Expression, ctx: EvalContext) -> Value:
        """
        checkConditionForOldResponses(condition, [policy], [surveyKey], [since], [until])
          policy: "all" (default) | "any" | "count" | number N (= count N)
        """
        db = self._require_db(expr)
        if not ctx.event.instance_id or not ctx.event.study_key:
            raise ExpressionError(f"{expr.name}: instanceID or study key missing from context")
        self._arity(expr, 1, 2, 3, 4, 5)

        first = expr.data[0]
        if not first.is_expression() or first.exp is None:
            raise ExpressionError(f"{expr.name}: first argument must be an expression")
        condition = first.exp

        policy = "all"
        threshold = 1
        if len(expr.data) > 1:
            p = self.resolve_arg(expr.data[1], ctx)
            if p.is_string:
                policy = p.as_str()
            elif p.is_number:
                policy = "count"
                threshold = int(p.as_number())
            else:
                raise ExpressionError(f"{expr.name}: policy should be a string or a number")
        if policy not in ("all", "any", "count"):
            raise ExpressionError(f"{expr.name}: unknown policy {policy!r}")

        query = ResponseQuery(participant_id=ctx.participant.participant_id)
        if len(expr.data) > 2:
            query.survey_key = self._str(expr, 2, ctx)
        if len(expr.data) > 3:
            v = self.resolve_arg(expr.data[3], ctx)
            if v.is_number:
                query.since = int(v.as_number())
        if len(expr.data) > 4:
            v = self.resolve_arg(expr.data[4], ctx)
            if v.is_number:
                query.until = int(v.as_number())

        responses = db.get_responses(
            ctx.event.instance_id,
            ctx.event.study_key,
            query,
            page=1,
            limit=OLD_RESPONSES_LIMIT,
        )

        counter = 0
        result = False
        for resp in responses:
            old_ctx = EvalContext(
                event=StudyEvent(
                    type="",
                    instance_id=ctx.event.instance_id,
                    study_key=ctx.event.study_key,
                    response=resp,
                ),
                participant=ctx.participant,
                depth=ctx.depth + 1,
            )
            ok = self.evaluate(condition, old_ctx).as_bool(f"{expr.name}: condition result")

            if policy == "all":
                if not ok:
                    return Value.boolean(False)
                result = True
            elif policy == "any":
                if ok:
                    return Value.boolean(True)
            elif ok:
                counter += 1
                if counter >= threshold:
                    return Value.boolean(True)
        return Value.boolean(result)

    def _is_study_code_present(self, expr: Expression, ctx: EvalContext) -> Value:
        db = self._require_db(expr)
        self._arity(expr, 2)
        list_key = self._str(expr, 0, ctx)
        code = self._str(expr, 1, ctx)
        try:
            exists = db.study_code_list_entry_exists(
                ctx.event.instance_id, ctx.event.study_key, list_key, code
            )
        except Exception as e:  # noqa: BLE001
            # lookup failure counts as "not present"
            log.error("%s: lookup failed: %s", expr.name, e)
            exists = False
        return Value.boolean(exists)

    def _get_current_study_counter_value(self, expr: Expression, ctx: EvalContext) -> Value:
        db = self._require_db(expr)
        self._arity(expr, 1)
        scope = self._str(expr, 0, ctx)
        return Value.number(
            db.get_current_study_counter_value(ctx.event.instance_id, ctx.event.study_key, scope)
        )

    def _get_next_study_counter_value(self, expr: Expression, ctx: EvalContext) -> Value:
        db = self._require_db(expr)
        self._arity(expr, 1)
        scope = self._str(expr, 0, ctx)
        return Value.number(
            db.increment_and_get_study_counter_value(ctx.event.instance_id, ctx.event.study_key, scope)
        )

    def _get_study_variable(
        self,
        as_type: StudyVariableType,
        expr: Expression,
        ctx: EvalContext,
    ) -> Value:
        db = self._require_db(expr)
        self._arity(expr, 1)
        key = self._str(expr, 0, ctx)
        var: Optional[StudyVariable] = db.get_study_variable(
            ctx.event.instance_id, ctx.event.study_key, key
        )
        if var is None:
            raise ExpressionError(f"{expr.name}: study variable {key!r} not found")
        if var.type != as_type:
            raise ExpressionError(
                f"{expr.name}: wrong type, expected {as_type.value}, got {var.type.value}"
            )

        v = var.value
        if as_type == StudyVariableType.BOOLEAN and isinstance(v, bool):
            return Value.boolean(v)
        if as_type == StudyVariableType.INT and isinstance(v, (int, float)) and not isinstance(v, bool):
            return Value.number(v)
        if as_type == StudyVariableType.FLOAT and isinstance(v, float):
            return Value.number(v)
        if as_type == StudyVariableType.STRING and isinstance(v, str):
            return Value.string(v)
        if as_type == StudyVariableType.DATE and isinstance(v, datetime):
            return Value.number(int(v.timestamp()))
        raise ExpressionError(f"{expr.name}: could not cast value {v!r}")

    # ------------------------------------------------------------------ #
    # PARTICIPANT STATE
    # ------------------------------------------------------------------ #
    def _get_study_entry_time(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        return Value.number(self._state(ctx, incoming).entered_at)

    def _has_survey_key_assigned(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        if len(expr.data) != 1 or not expr.data[0].is_string():
            raise ExpressionError(f"{expr.name}: unexpected number or wrong type of argument")
        key = self._str(expr, 0, ctx)
        state = self._state(ctx, incoming)
        return Value.boolean(any(s.survey_key == key for s in state.assigned_surveys))

    def _get_survey_key_assigned_ts(
        self, field_name: str, expr: Expression, ctx: EvalContext, *, incoming: bool,
    ) -> Value:
        if len(expr.data) != 1 or not expr.data[0].is_string():
            raise ExpressionError(f"{expr.name}: unexpected number or wrong type of argument")
        key = self._str(expr, 0, ctx)
        for s in self._state(ctx, incoming).assigned_surveys:
            if s.survey_key == key:
                return Value.number(getattr(s, field_name))
        return Value.number(-1)

    def _has_study_status(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1)
        return Value.boolean(self._state(ctx, incoming).study_status == self._str(expr, 0, ctx))

    def _has_participant_flag(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 2)
        self._no_num_args(expr)
        key = self._str(expr, 0, ctx)
        value = self._str(expr, 1, ctx)
        flags = self._state(ctx, incoming).flags
        return Value.boolean(key in flags and flags[key] == value)

    def _has_participant_flag_key(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1)
        self._no_num_args(expr)
        return Value.boolean(self._str(expr, 0, ctx) in self._state(ctx, incoming).flags)

    def _get_participant_flag_value(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1)
        self._no_num_args(expr)
        return Value.string(self._state(ctx, incoming).flags.get(self._str(expr, 0, ctx), ""))

    def _has_linking_code(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1)
        self._no_num_args(expr)
        return Value.boolean(self._str(expr, 0, ctx) in self._state(ctx, incoming).linking_codes)

    def _get_linking_code_value(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1)
        self._no_num_args(expr)
        return Value.string(
            self._state(ctx, incoming).linking_codes.get(self._str(expr, 0, ctx), "")
        )

    def _get_last_submission_date(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        subs = self._state(ctx, incoming).last_submissions
        if not expr.data:
            return Value.number(max(subs.values(), default=0))
        return Value.number(subs.get(self._str(expr, 0, ctx), 0))

    def _last_submission_date_older_than(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1, 2)
        ref = int(self._num(expr, 0, ctx))
        subs = self._state(ctx, incoming).last_submissions
        if len(expr.data) == 2:
            key = self._str(expr, 1, ctx)
            if key not in subs:
                return Value.boolean(False)
            return Value.boolean(subs[key] < ref)
        return Value.boolean(all(ts <= ref for ts in subs.values()))

    def _has_message_type_assigned(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1)
        msg_type = self._str(expr, 0, ctx)
        return Value.boolean(any(m.type == msg_type for m in self._state(ctx, incoming).messages))

    def _get_message_next_time(self, expr: Expression, ctx: EvalContext, *, incoming: bool) -> Value:
        self._arity(expr, 1)
        msg_type = self._str(expr, 0, ctx)
        # scheduledFor == 0 means "not scheduled yet"
        times = [
            m.scheduled_for
            for m in self._state(ctx, incoming).messages
            if m.type == msg_type and m.scheduled_for != 0
        ]
        if not times:
            raise ExpressionError(f"{expr.name}: no message for type {msg_type!r} found")
        return Value.number(min(times))

    # ------------------------------------------------------------------ #
    # LOGIC / COMPARE / MATH
    # ------------------------------------------------------------------ #
    def _compare(self, op: Callable[[Any, Any], bool], expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 2)
        a = self.resolve_arg(expr.data[0], ctx)
        b = self.resolve_arg(expr.data[1], ctx)
        if a.is_string and b.is_string:
            return Value.boolean(op(a.as_str(), b.as_str()))
        if a.is_number and b.is_number:
            return Value.boolean(op(a.as_number(), b.as_number()))
        raise ExpressionError(
            f"{expr.name}: cannot compare {a.kind.value} with {b.kind.value}"
        )

    def _and(self, expr: Expression, ctx: EvalContext) -> Value:
        self._min_arity(expr, 2)
        for arg in expr.data:
            if self.resolve_arg(arg, ctx).truthy() is False:
                return Value.boolean(False)
        return Value.boolean(True)

    def _or(self, expr: Expression, ctx: EvalContext) -> Value:
        self._min_arity(expr, 2)
        for arg in expr.data:
            try:
                v = self.resolve_arg(arg, ctx)
            except EvaluationDepthError:
                raise
            except StudyEngineError as e:
                log.debug("%s: skipping failed argument: %s", expr.name, e)
                continue
            if v.truthy() is True:
                return Value.boolean(True)
        return Value.boolean(False)

    def _not(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        t = self.resolve_arg(expr.data[0], ctx).truthy()
        return Value.boolean(t is False)

    def _sum(self, expr: Expression, ctx: EvalContext) -> Value:
        total = 0.0
        for idx, arg in enumerate(expr.data):
            try:
                v = self.resolve_arg(arg, ctx)
            except EvaluationDepthError:
                raise
            except StudyEngineError as e:
                log.error("%s: skipping argument %d: %s", expr.name, idx, e)
                continue
            if v.is_boolean:
                total += 1 if v.as_bool() else 0
            elif v.is_number:
                total += v.as_number()
            else:
                log.error("%s: skipping argument %d of type %s", expr.name, idx, v.kind.value)
        return Value.number(total)

    def _neg(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        return Value.number(-self._num(expr, 0, ctx))

    # ------------------------------------------------------------------ #
    # TIME AND MISC
    # ------------------------------------------------------------------ #
    def _timestamp_with_offset(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1, 2)
        delta = int(self._num(expr, 0, ctx))
        ref = self.now_ts()
        if len(expr.data) == 2:
            ref = int(self._num(expr, 1, ctx))
        return Value.number(ref + delta)

    def _get_ts_for_next_start_of_month(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1, 2)
        m = self.resolve_arg(expr.data[0], ctx)
        if m.is_number:
            month = int(m.as_number())
            if not 1 <= month <= 12:
                raise ExpressionError(f"{expr.name}: month number should be between 1 and 12")
        elif m.is_string:
            parsed = parse_month(m.as_str())
            if parsed is None:
                raise ExpressionError(f"{expr.name}: invalid month name: {m.as_str()}")
            month = parsed
        else:
            raise ExpressionError(f"{expr.name}: argument 1 should be a month name or number")
        ref = self._ref_time(expr, 1, ctx)
        return Value.number(int(next_start_of_month(ref, month).timestamp()))

    def _get_ts_for_next_iso_week(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1, 2)
        week = int(self._num(expr, 0, ctx))
        if not 1 <= week <= 53:
            raise ExpressionError(f"{expr.name}: argument 1 should be between 1 and 53")
        ref = self._ref_time(expr, 1, ctx)
        return Value.number(int(next_iso_week_start(ref, week).timestamp()))

    def _get_iso_week_for_ts(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        ts = self._num(expr, 0, ctx)
        return Value.number(from_unix(ts, self._tz).isocalendar()[1])

    def _date_to_str(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 2)
        ts = self._num(expr, 0, ctx)
        fmt = self._str(expr, 1, ctx)
        return Value.string(format_date_fns(from_unix(ts, self._tz), fmt))

    def _parse_value_as_num(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 1)
        v = self.resolve_arg(expr.data[0], ctx)
        if v.is_number:
            return v
        raw = v.as_str(f"{expr.name}: argument 1")
        try:
            return Value.number(float(raw))
        except ValueError as e:
            raise ExpressionError(f"{expr.name}: {raw!r} is not a number") from e

    def _generate_random_number(self, expr: Expression, ctx: EvalContext) -> Value:
        self._arity(expr, 2)
        lo = int(self._num(expr, 0, ctx))
        hi = int(self._num(expr, 1, ctx))
        if lo > hi:
            raise ExpressionError(f"{expr.name}: min {lo} is greater than max {hi}")
        return Value.number(self._rng.randint(lo, hi))

    def _external_event_eval(self, expr: Expression, ctx: EvalContext) -> Value:
        self._min_arity(expr, 1)
        if self._gateway is None:
            raise PortUnavailableError(f"{expr.name}: no external service gateway configured")
        service = self._str(expr, 0, ctx)
        route = self._str(expr, 1, ctx) if len(expr.data) > 1 else ""

        resp = self._gateway.call(service, route, ctx.participant, ctx.event)
        value = resp.value
        if expr.return_type == "float":
            if isinstance(value, bool) or not isinstance(value, (int, float, str)):
                raise ExpressionError(f"{expr.name}: value {value!r} is not a number")
            try:
                return Value.number(float(value))
            except ValueError as e:
                raise ExpressionError(f"{expr.name}: value {value!r} is not a number") from e
        return Value.of(value)
