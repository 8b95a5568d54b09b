# studyrules/engine/loader.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .types import (
    ArgType,
    AssignedSurvey,
    Expression,
    ExpressionArg,
    Participant,
    ParticipantMessage,
    Report,
    ReportData,
    ResponseItem,
    StudyEvent,
    SurveyItemResponse,
    SurveyResponse,
)

# Wire format: the camelCase JSON shape the rules and states are stored in.


# ======================================================================
# 1. EXPRESSIONS
# ======================================================================

def parse_expression(d: Dict[str, Any]) -> Expression:
    if not isinstance(d, dict):
        raise ValueError(f"expression: object expected, got {type(d).__name__}")
    name = str(d.get("name", "")).strip()
    if not name:
        raise ValueError("expression.name: must not be empty")
    return Expression(
        name=name,
        return_type=str(d.get("returnType", "") or ""),
        data=[parse_expression_arg(a) for a in (d.get("data") or [])],
    )


def parse_expression_arg(d: Dict[str, Any]) -> ExpressionArg:
    if not isinstance(d, dict):
        raise ValueError(f"expression arg: object expected, got {type(d).__name__}")
    dtype = str(d.get("dtype", "") or ArgType.STR.value)
    exp_src = d.get("exp")
    return ExpressionArg(
        dtype=dtype,
        str_value=str(d.get("str", "") or ""),
        num=float(d.get("num", 0) or 0),
        exp=parse_expression(exp_src) if exp_src else None,
    )


def dump_expression(e: Expression) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": e.name}
    if e.return_type:
        out["returnType"] = e.return_type
    if e.data:
        out["data"] = [dump_expression_arg(a) for a in e.data]
    return out


def dump_expression_arg(a: ExpressionArg) -> Dict[str, Any]:
    out: Dict[str, Any] = {"dtype": a.dtype}
    if a.exp is not None:
        out["exp"] = dump_expression(a.exp)
    if a.str_value:
        out["str"] = a.str_value
    if a.num:
        out["num"] = a.num
    return out


# ======================================================================
# 2. PARTICIPANT
# ======================================================================

def parse_participant(d: Optional[Dict[str, Any]]) -> Participant:
    d = d or {}
    return Participant(
        id=str(d.get("id", "") or ""),
        participant_id=str(d.get("participantId", "") or ""),
        current_study_session=str(d.get("currentStudySession", "") or ""),
        modified_at=int(d.get("modifiedAt", 0) or 0),
        entered_at=int(d.get("enteredAt", 0) or 0),
        study_status=str(d.get("studyStatus", "") or ""),
        flags={str(k): str(v) for k, v in (d.get("flags") or {}).items()},
        linking_codes={str(k): str(v) for k, v in (d.get("linkingCodes") or {}).items()},
        assigned_surveys=[
            AssignedSurvey(
                survey_key=str(s.get("surveyKey", "")),
                valid_from=int(s.get("validFrom", 0) or 0),
                valid_until=int(s.get("validUntil", 0) or 0),
                category=str(s.get("category", "") or ""),
                profile_id=str(s.get("profileID", "") or ""),
            )
            for s in (d.get("assignedSurveys") or [])
        ],
        last_submissions={
            str(k): int(v) for k, v in (d.get("lastSubmissions") or {}).items()
        },
        messages=[
            ParticipantMessage(
                id=str(m.get("id", "")),
                type=str(m.get("type", "")),
                scheduled_for=int(m.get("scheduledFor", 0) or 0),
            )
            for m in (d.get("messages") or [])
        ],
    )


def dump_participant(p: Participant) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "participantId": p.participant_id,
        "currentStudySession": p.current_study_session,
        "modifiedAt": p.modified_at,
        "enteredAt": p.entered_at,
        "studyStatus": p.study_status,
        "flags": dict(p.flags),
        "linkingCodes": dict(p.linking_codes),
        "assignedSurveys": [
            {
                "surveyKey": s.survey_key,
                "validFrom": s.valid_from,
                "validUntil": s.valid_until,
                "category": s.category,
                "profileID": s.profile_id,
            }
            for s in p.assigned_surveys
        ],
        "lastSubmissions": dict(p.last_submissions),
        "messages": [
            {"id": m.id, "type": m.type, "scheduledFor": m.scheduled_for}
            for m in p.messages
        ],
    }
    if p.id:
        out["id"] = p.id
    return out


# ======================================================================
# 3. SURVEY RESPONSES
# ======================================================================

def _parse_response_item(d: Dict[str, Any]) -> ResponseItem:
    return ResponseItem(
        key=str(d.get("key", "")),
        value=str(d.get("value", "") or ""),
        dtype=str(d.get("dtype", "") or ""),
        items=[_parse_response_item(i) for i in (d.get("items") or [])],
    )


def _dump_response_item(r: ResponseItem) -> Dict[str, Any]:
    out: Dict[str, Any] = {"key": r.key}
    if r.value:
        out["value"] = r.value
    if r.dtype:
        out["dtype"] = r.dtype
    if r.items:
        out["items"] = [_dump_response_item(i) for i in r.items]
    return out


def _parse_item_response(d: Dict[str, Any]) -> SurveyItemResponse:
    resp = d.get("response")
    return SurveyItemResponse(
        key=str(d.get("key", "")),
        meta=dict(d.get("meta") or {}),
        items=[_parse_item_response(i) for i in (d.get("items") or [])],
        response=_parse_response_item(resp) if resp else None,
        confidential_mode=str(d.get("confidentialMode", "") or ""),
    )


def _dump_item_response(s: SurveyItemResponse) -> Dict[str, Any]:
    out: Dict[str, Any] = {"key": s.key, "meta": dict(s.meta)}
    if s.items:
        out["items"] = [_dump_item_response(i) for i in s.items]
    if s.response is not None:
        out["response"] = _dump_response_item(s.response)
    if s.confidential_mode:
        out["confidentialMode"] = s.confidential_mode
    return out


def parse_survey_response(d: Optional[Dict[str, Any]]) -> SurveyResponse:
    d = d or {}
    return SurveyResponse(
        id=str(d.get("id", "") or ""),
        key=str(d.get("key", "") or ""),
        participant_id=str(d.get("participantId", "") or ""),
        version_id=str(d.get("versionId", "") or ""),
        opened_at=int(d.get("openedAt", 0) or 0),
        submitted_at=int(d.get("submittedAt", 0) or 0),
        arrived_at=int(d.get("arrivedAt", 0) or 0),
        responses=[_parse_item_response(i) for i in (d.get("responses") or [])],
        context={str(k): str(v) for k, v in (d.get("context") or {}).items()},
    )


def dump_survey_response(r: SurveyResponse) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "key": r.key,
        "participantId": r.participant_id,
        "versionId": r.version_id,
        "openedAt": r.opened_at,
        "submittedAt": r.submitted_at,
        "arrivedAt": r.arrived_at,
        "responses": [_dump_item_response(i) for i in r.responses],
        "context": dict(r.context),
    }
    if r.id:
        out["id"] = r.id
    return out


# ======================================================================
# 4. REPORTS
# ======================================================================

def parse_report(d: Dict[str, Any]) -> Report:
    return Report(
        id=str(d.get("id", "") or ""),
        key=str(d.get("key", "")),
        participant_id=str(d.get("participantID", "") or ""),
        response_id=str(d.get("responseID", "") or ""),
        timestamp=int(d.get("timestamp", 0) or 0),
        data=[
            ReportData(
                key=str(x.get("key", "")),
                value=str(x.get("value", "") or ""),
                dtype=str(x.get("dtype", "") or ""),
            )
            for x in (d.get("data") or [])
        ],
    )


def dump_report(r: Report) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "key": r.key,
        "participantID": r.participant_id,
        "responseID": r.response_id,
        "timestamp": r.timestamp,
    }
    if r.id:
        out["id"] = r.id
    if r.data:
        out["data"] = [
            {"key": x.key, "value": x.value, **({"dtype": x.dtype} if x.dtype else {})}
            for x in r.data
        ]
    return out


# ======================================================================
# 5. EVENTS
# ======================================================================

def parse_event(d: Dict[str, Any]) -> StudyEvent:
    """
    {
      "type": "SUBMIT", "instanceID": "...", "studyKey": "...",
      "response": {...}, "payload": {...}, "eventKey": "...",
      "mergeWithParticipant": {...},
      "participantIDForConfidentialResponses": "..."
    }
    """
    ev_type = str(d.get("type", "")).strip()
    if not ev_type:
        raise ValueError("event.type: must not be empty")
    merge = d.get("mergeWithParticipant")
    return StudyEvent(
        type=ev_type,
        instance_id=str(d.get("instanceID", "") or ""),
        study_key=str(d.get("studyKey", "") or ""),
        response=parse_survey_response(d.get("response")),
        payload=dict(d.get("payload") or {}),
        event_key=str(d.get("eventKey", "") or ""),
        merge_with_participant=parse_participant(merge) if merge else None,
        participant_id_for_confidential_responses=str(
            d.get("participantIDForConfidentialResponses", "") or ""
        ),
    )


# ======================================================================
# 6. FILES
# ======================================================================

def parse_rules(data: Any) -> List[Expression]:
    """Top-level `rules:` list or a bare list of expressions."""
    if isinstance(data, dict):
        data = data.get("rules") or []
    if not isinstance(data, list):
        raise ValueError("rules: list expected")
    out: List[Expression] = []
    for idx, rd in enumerate(data):
        try:
            out.append(parse_expression(rd))
        except ValueError as e:
            raise ValueError(f"rules[{idx}]: {e}") from e
    return out


def load_rules_from_yaml(path: str) -> List[Expression]:
    """
    Loads a study rule set. JSON is accepted as well (it is valid YAML):

    rules:
      - name: IFTHEN
        data:
          - dtype: exp
            exp:
              name: checkEventType
              data: [{dtype: str, str: SUBMIT}]
          - dtype: exp
            exp:
              name: UPDATE_FLAG
              data: [{dtype: str, str: status}, {dtype: str, str: submitted}]
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"rules file not found: {path}")
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or []
    return parse_rules(data)


def load_json_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"file not found: {path}")
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: JSON object expected")
    return data
