# studyrules/engine/storage.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from .types import SendOptions, StudyMessage, StudyVariable, SurveyResponse


# ======================================================================
# 1. RESPONSE QUERY
# ======================================================================

@dataclass
class ResponseQuery:
    """
    Filter for stored survey responses.
    since/until are exclusive bounds on arrived_at; 0 means "no bound".
    """
    participant_id: str
    survey_key: str = ""
    since: int = 0
    until: int = 0

    def matches(self, resp: SurveyResponse) -> bool:
        if resp.participant_id != self.participant_id:
            return False
        if self.survey_key and resp.key != self.survey_key:
            return False
        if self.since > 0 and not resp.arrived_at > self.since:
            return False
        if self.until > 0 and not resp.arrived_at < self.until:
            return False
        return True


# ======================================================================
# 2. PERSISTENCE PORT
# ======================================================================

class StudyDBService(ABC):
    """
    The only way the engine touches storage.
    Implementations must tolerate concurrent calls and make counter
    increments / code draws atomic on their side.
    """

    @abstractmethod
    def get_responses(
        self,
        instance_id: str,
        study_key: str,
        query: ResponseQuery,
        page: int = 1,
        limit: int = 100,
    ) -> List[SurveyResponse]:
        """Matching responses, newest (arrived_at) first."""
        raise NotImplementedError

    @abstractmethod
    def delete_confidential_responses(
        self,
        instance_id: str,
        study_key: str,
        participant_id: str,
        key: str,
    ) -> int:
        """Delete confidential responses; empty key deletes all. Returns count."""
        raise NotImplementedError

    @abstractmethod
    def save_researcher_message(
        self,
        instance_id: str,
        study_key: str,
        message: StudyMessage,
    ) -> None:
        raise NotImplementedError

    # --- study code lists ---------------------------------------------

    @abstractmethod
    def study_code_list_entry_exists(
        self, instance_id: str, study_key: str, list_key: str, code: str,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete_study_code_list_entry(
        self, instance_id: str, study_key: str, list_key: str, code: str,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def draw_study_code(self, instance_id: str, study_key: str, list_key: str) -> str:
        """Pop one code from the list; "" when the list is empty."""
        raise NotImplementedError

    # --- study counters -----------------------------------------------

    @abstractmethod
    def get_current_study_counter_value(
        self, instance_id: str, study_key: str, scope: str,
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    def increment_and_get_study_counter_value(
        self, instance_id: str, study_key: str, scope: str,
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    def remove_study_counter_value(
        self, instance_id: str, study_key: str, scope: str,
    ) -> None:
        raise NotImplementedError

    # --- study variables ----------------------------------------------

    @abstractmethod
    def get_study_variable(
        self, instance_id: str, study_key: str, key: str,
    ) -> Optional[StudyVariable]:
        """Variable by key or None."""
        raise NotImplementedError


# ======================================================================
# 3. MESSAGE SENDER
# ======================================================================

class StudyMessageSender(ABC):
    """Delivery of instant study emails (SEND_MESSAGE_NOW)."""

    @abstractmethod
    def send_instant_study_email(
        self,
        instance_id: str,
        study_key: str,
        confidential_pid: str,
        message_type: str,
        extra_payload: Dict[str, str],
        opts: SendOptions,
    ) -> None:
        raise NotImplementedError
