# studyrules/engine/external.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ExternalServiceError
from .loader import (
    dump_participant,
    dump_survey_response,
    parse_participant,
    parse_report,
)
from .types import Participant, Report, StudyEvent

log = logging.getLogger("studyengine.external")


# ─────────────────────────────────────────────────────────────────────────────
# Config models (external_services section of config.yaml)
# ─────────────────────────────────────────────────────────────────────────────

class MutualTLSConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cert_file: str = Field(alias="certFile")
    key_file: str = Field(alias="keyFile")
    ca_file: str = Field(default="", alias="caFile")


class ExternalService(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    url: str
    api_key: str = Field(default="", alias="apiKey")
    timeout: int = 30  # seconds
    mutual_tls: Optional[MutualTLSConfig] = Field(default=None, alias="mTLSConfig")


class ExternalEventResponse(BaseModel):
    """JSON body returned by an external service."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    value: Any = None
    p_state: Optional[Dict[str, Any]] = Field(default=None, alias="pState")
    reports_to_create: Optional[Dict[str, Dict[str, Any]]] = Field(
        default=None, alias="reportsToCreate"
    )

    def participant(self) -> Optional[Participant]:
        if self.p_state is None:
            return None
        return parse_participant(self.p_state)

    def reports(self) -> Dict[str, Report]:
        return {k: parse_report(v) for k, v in (self.reports_to_create or {}).items()}


# ─────────────────────────────────────────────────────────────────────────────
# Gateway
# ─────────────────────────────────────────────────────────────────────────────

def build_event_payload(participant: Participant, event: StudyEvent) -> Dict[str, Any]:
    return {
        "participantState": dump_participant(participant),
        "eventType": event.type,
        "studyKey": event.study_key,
        "instanceID": event.instance_id,
        "surveyResponses": dump_survey_response(event.response),
        "eventKey": event.event_key,
        "payload": dict(event.payload),
    }


class ExternalServiceGateway:
    """
    POSTs participant state + event to a configured external service.
    One requests.Session per gateway; the timeout comes from the service config.
    """

    def __init__(
        self,
        services: Iterable[ExternalService] = (),
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._services: List[ExternalService] = list(services)
        self.session = session or requests.Session()

    @property
    def services(self) -> List[ExternalService]:
        return list(self._services)

    def get_service(self, name: str) -> ExternalService:
        for svc in self._services:
            if svc.name == name:
                return svc
        raise ExternalServiceError(f"no external service config found with name: {name}")

    def call(
        self,
        service_name: str,
        route: str,
        participant: Participant,
        event: StudyEvent,
    ) -> ExternalEventResponse:
        svc = self.get_service(service_name)
        url = svc.url if svc.url.endswith("/") else svc.url + "/"
        url += route.lstrip("/")

        headers = {"Content-Type": "application/json"}
        if svc.api_key:
            headers["Api-Key"] = svc.api_key

        cert = None
        verify: Any = True
        if svc.mutual_tls is not None:
            cert = (svc.mutual_tls.cert_file, svc.mutual_tls.key_file)
            if svc.mutual_tls.ca_file:
                verify = svc.mutual_tls.ca_file

        try:
            r = self.session.post(
                url,
                json=build_event_payload(participant, event),
                headers=headers,
                timeout=svc.timeout,
                cert=cert,
                verify=verify,
            )
        except requests.exceptions.SSLError as e:
            log.error("external %s: SSL error: %s", svc.name, e)
            raise ExternalServiceError(f"{svc.name}: TLS error: {e}") from e
        except requests.exceptions.RequestException as e:
            log.error("external %s: request failed: %s", svc.name, e)
            raise ExternalServiceError(f"{svc.name}: request failed: {e}") from e

        if r.status_code >= 400:
            log.error("external %s HTTP %s: %s", svc.name, r.status_code, r.text[:500])
            raise ExternalServiceError(f"{svc.name}: HTTP {r.status_code}")

        try:
            body = r.json()
        except ValueError as e:
            raise ExternalServiceError(f"{svc.name}: response is not JSON") from e
        if not isinstance(body, dict):
            raise ExternalServiceError(f"{svc.name}: JSON object expected")

        try:
            resp = ExternalEventResponse.model_validate(body)
        except ValidationError as e:
            raise ExternalServiceError(f"{svc.name}: unexpected response: {e}") from e

        log.debug("external %s: call to %s ok", svc.name, url)
        return resp
