# studyrules/engine/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# === 1. ENUMS ================================================================

class StudyEventType(Enum):
    """What happened to the participant."""
    ENTER = "ENTER"
    SUBMIT = "SUBMIT"
    TIMER = "TIMER"
    CUSTOM = "CUSTOM"
    MERGE = "MERGE"
    LEAVE = "LEAVE"


class StudyStatus(Enum):
    """Participant status inside a study."""
    ACTIVE = "active"
    TEMPORARY = "temporary"          # no registered account yet
    VIRTUAL = "virtual"
    EXITED = "exited"
    ACCOUNT_DELETED = "accountDeleted"


class ArgType(Enum):
    """dtype of an expression argument."""
    NUM = "num"
    STR = "str"
    EXP = "exp"


class StudyVariableType(Enum):
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"


class AssignedSurveyCategory(Enum):
    PRIO = "prio"
    NORMAL = "normal"
    QUICK = "quick"
    UPDATE = "update"


# === 2. RULE DSL =============================================================

@dataclass
class Expression:
    """
    One node of the rule DSL.
    Examples:
      - name="checkEventType", data=[str "SUBMIT"]
      - name="IF", data=[exp <condition>, exp <action>]
    """
    name: str
    data: List[ExpressionArg] = field(default_factory=list)
    return_type: str = ""


@dataclass
class ExpressionArg:
    """Typed argument; exactly one of str_value/num/exp is live (per dtype)."""
    dtype: str = ArgType.STR.value
    str_value: str = ""
    num: float = 0.0
    exp: Optional[Expression] = None

    def is_expression(self) -> bool:
        return self.dtype == ArgType.EXP.value

    def is_number(self) -> bool:
        return self.dtype == ArgType.NUM.value

    def is_string(self) -> bool:
        return self.dtype == ArgType.STR.value


# === 3. PARTICIPANT STATE ====================================================

@dataclass
class AssignedSurvey:
    survey_key: str
    valid_from: int = 0     # 0 -> unbounded
    valid_until: int = 0    # 0 -> unbounded
    category: str = AssignedSurveyCategory.NORMAL.value
    profile_id: str = ""    # optional, when sending surveys to several profiles


@dataclass
class ParticipantMessage:
    id: str
    type: str
    scheduled_for: int = 0


@dataclass
class Participant:
    """Per-study participant state, as persisted by the caller."""
    participant_id: str = ""
    id: str = ""
    current_study_session: str = ""
    modified_at: int = 0
    entered_at: int = 0
    study_status: str = StudyStatus.ACTIVE.value
    flags: Dict[str, str] = field(default_factory=dict)
    linking_codes: Dict[str, str] = field(default_factory=dict)
    assigned_surveys: List[AssignedSurvey] = field(default_factory=list)
    last_submissions: Dict[str, int] = field(default_factory=dict)  # survey key -> ts
    messages: List[ParticipantMessage] = field(default_factory=list)


# === 4. SURVEY RESPONSES =====================================================

@dataclass
class ResponseItem:
    key: str
    value: str = ""
    dtype: str = ""
    items: List[ResponseItem] = field(default_factory=list)


@dataclass
class SurveyItemResponse:
    key: str
    response: Optional[ResponseItem] = None
    items: List[SurveyItemResponse] = field(default_factory=list)   # for groups
    meta: Dict[str, Any] = field(default_factory=dict)
    confidential_mode: str = ""


@dataclass
class SurveyResponse:
    key: str = ""
    id: str = ""
    participant_id: str = ""
    version_id: str = ""
    opened_at: int = 0
    submitted_at: int = 0
    arrived_at: int = 0
    responses: List[SurveyItemResponse] = field(default_factory=list)
    context: Dict[str, str] = field(default_factory=dict)


# === 5. REPORTS AND MESSAGES =================================================

@dataclass
class ReportData:
    key: str
    value: str = ""
    dtype: str = ""


@dataclass
class Report:
    key: str
    participant_id: str = ""
    timestamp: int = 0
    response_id: str = ""
    id: str = ""
    data: List[ReportData] = field(default_factory=list)


@dataclass
class StudyMessage:
    """Message for researchers, persisted by NOTIFY_RESEARCHER."""
    type: str
    participant_id: str = ""
    payload: Dict[str, str] = field(default_factory=dict)
    id: str = ""


@dataclass
class SendOptions:
    expires_at: int = 0           # discard if not sent until this time
    language_override: str = ""


# === 6. STUDY-LEVEL DATA =====================================================

@dataclass
class StudyVariable:
    key: str
    type: StudyVariableType
    value: Union[str, int, float, bool, datetime, None] = None
    study_key: str = ""
    label: str = ""
    description: str = ""


# === 7. EVENTS AND EVALUATION ================================================

@dataclass
class StudyEvent:
    """Input of one engine run."""
    type: str
    instance_id: str = ""
    study_key: str = ""
    response: SurveyResponse = field(default_factory=SurveyResponse)
    payload: Dict[str, Any] = field(default_factory=dict)
    event_key: str = ""                                  # custom events
    merge_with_participant: Optional[Participant] = None  # account merge
    participant_id_for_confidential_responses: str = ""


@dataclass
class ActionData:
    """Working value threaded through action evaluation."""
    participant: Participant
    reports_to_create: Dict[str, Report] = field(default_factory=dict)


@dataclass
class EvalContext:
    """Read-only lookup context of expressions."""
    event: StudyEvent
    participant: Participant
    depth: int = 0
