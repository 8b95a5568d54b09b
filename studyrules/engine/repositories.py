# studyrules/engine/repositories.py
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from threading import RLock
from typing import DefaultDict, Dict, List, Optional, Tuple

from .storage import ResponseQuery, StudyDBService, StudyMessageSender
from .types import SendOptions, StudyMessage, StudyVariable, SurveyResponse


_StudyRef = Tuple[str, str]  # (instance_id, study_key)


# ======================================================================
# 1. IN-MEMORY PERSISTENCE PORT
# ======================================================================

class InMemoryStudyDB(StudyDBService):
    """
    Study data kept in dicts.
    Good for:
      - unit tests,
      - the local rule simulator (run.py).
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._responses: DefaultDict[_StudyRef, List[SurveyResponse]] = defaultdict(list)
        self._confidential: DefaultDict[_StudyRef, List[SurveyResponse]] = defaultdict(list)
        self._messages: DefaultDict[_StudyRef, List[StudyMessage]] = defaultdict(list)
        self._code_lists: DefaultDict[_StudyRef, Dict[str, List[str]]] = defaultdict(dict)
        self._counters: DefaultDict[_StudyRef, Dict[str, int]] = defaultdict(dict)
        self._variables: DefaultDict[_StudyRef, Dict[str, StudyVariable]] = defaultdict(dict)

    # --- seeding (not part of the port) -------------------------------

    def add_response(self, instance_id: str, study_key: str, resp: SurveyResponse) -> None:
        with self._lock:
            self._responses[(instance_id, study_key)].append(resp)

    def add_confidential_response(self, instance_id: str, study_key: str, resp: SurveyResponse) -> None:
        with self._lock:
            self._confidential[(instance_id, study_key)].append(resp)

    def add_study_codes(self, instance_id: str, study_key: str, list_key: str, codes: List[str]) -> None:
        with self._lock:
            self._code_lists[(instance_id, study_key)].setdefault(list_key, []).extend(codes)

    def set_study_variable(self, instance_id: str, study_key: str, var: StudyVariable) -> None:
        with self._lock:
            self._variables[(instance_id, study_key)][var.key] = var

    def set_study_counter(self, instance_id: str, study_key: str, scope: str, value: int) -> None:
        with self._lock:
            self._counters[(instance_id, study_key)][scope] = value

    def researcher_messages(self, instance_id: str, study_key: str) -> List[StudyMessage]:
        with self._lock:
            return list(self._messages[(instance_id, study_key)])

    def confidential_responses(self, instance_id: str, study_key: str) -> List[SurveyResponse]:
        with self._lock:
            return list(self._confidential[(instance_id, study_key)])

    def study_codes(self, instance_id: str, study_key: str, list_key: str) -> List[str]:
        with self._lock:
            return list(self._code_lists[(instance_id, study_key)].get(list_key, []))

    # --- port ----------------------------------------------------------

    def get_responses(
        self,
        instance_id: str,
        study_key: str,
        query: ResponseQuery,
        page: int = 1,
        limit: int = 100,
    ) -> List[SurveyResponse]:
        with self._lock:
            matches = [r for r in self._responses[(instance_id, study_key)] if query.matches(r)]
        matches.sort(key=lambda r: r.arrived_at, reverse=True)  # newest first
        start = max(page - 1, 0) * limit
        return matches[start:start + limit]

    def delete_confidential_responses(
        self,
        instance_id: str,
        study_key: str,
        participant_id: str,
        key: str,
    ) -> int:
        with self._lock:
            items = self._confidential[(instance_id, study_key)]
            keep = [
                r for r in items
                if not (r.participant_id == participant_id and (not key or r.key == key))
            ]
            self._confidential[(instance_id, study_key)] = keep
            return len(items) - len(keep)

    def save_researcher_message(self, instance_id: str, study_key: str, message: StudyMessage) -> None:
        with self._lock:
            self._messages[(instance_id, study_key)].append(message)

    def study_code_list_entry_exists(self, instance_id: str, study_key: str, list_key: str, code: str) -> bool:
        with self._lock:
            return code in self._code_lists[(instance_id, study_key)].get(list_key, [])

    def delete_study_code_list_entry(self, instance_id: str, study_key: str, list_key: str, code: str) -> None:
        with self._lock:
            codes = self._code_lists[(instance_id, study_key)].get(list_key, [])
            if code in codes:
                codes.remove(code)

    def draw_study_code(self, instance_id: str, study_key: str, list_key: str) -> str:
        with self._lock:
            codes = self._code_lists[(instance_id, study_key)].get(list_key, [])
            if not codes:
                return ""
            return codes.pop(0)

    def get_current_study_counter_value(self, instance_id: str, study_key: str, scope: str) -> int:
        with self._lock:
            return self._counters[(instance_id, study_key)].get(scope, 0)

    def increment_and_get_study_counter_value(self, instance_id: str, study_key: str, scope: str) -> int:
        with self._lock:
            counters = self._counters[(instance_id, study_key)]
            counters[scope] = counters.get(scope, 0) + 1
            return counters[scope]

    def remove_study_counter_value(self, instance_id: str, study_key: str, scope: str) -> None:
        with self._lock:
            self._counters[(instance_id, study_key)].pop(scope, None)

    def get_study_variable(self, instance_id: str, study_key: str, key: str) -> Optional[StudyVariable]:
        with self._lock:
            return self._variables[(instance_id, study_key)].get(key)


# ======================================================================
# 2. CAPTURING MESSAGE SENDER
# ======================================================================

@dataclass
class SentStudyEmail:
    instance_id: str
    study_key: str
    confidential_pid: str
    message_type: str
    extra_payload: Dict[str, str] = field(default_factory=dict)
    opts: SendOptions = field(default_factory=SendOptions)


class CapturingMessageSender(StudyMessageSender):
    """Keeps every sent message in memory instead of delivering it."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._sent: List[SentStudyEmail] = []

    def send_instant_study_email(
        self,
        instance_id: str,
        study_key: str,
        confidential_pid: str,
        message_type: str,
        extra_payload: Dict[str, str],
        opts: SendOptions,
    ) -> None:
        with self._lock:
            self._sent.append(
                SentStudyEmail(
                    instance_id=instance_id,
                    study_key=study_key,
                    confidential_pid=confidential_pid,
                    message_type=message_type,
                    extra_payload=dict(extra_payload),
                    opts=opts,
                )
            )

    @property
    def sent(self) -> List[SentStudyEmail]:
        with self._lock:
            return list(self._sent)
