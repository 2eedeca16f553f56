"""
Collaborator HTTP clients

Thin requests-based clients for the medical, planning and organization
services. They speak camelCase JSON and return our pydantic types. Transport
errors, non-2xx responses and unparseable bodies all surface as
``UpstreamServiceError``; callers decide whether to degrade or propagate.
"""

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.exceptions import UpstreamServiceError
from schemas import MedicalRestriction, PlanningPhase, SeasonPlan

logger = logging.getLogger(__name__)


def _unwrap_list(body: Any, *keys: str) -> List[Any]:
    """Collaborators return either a bare list or an object wrapping one."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in keys + ("data", "items"):
            if isinstance(body.get(key), list):
                return body[key]
    return []


def _ids(items: Iterable[Any]) -> List[str]:
    ids = []
    for item in items:
        if isinstance(item, dict):
            value = item.get("id") or item.get("playerId") or item.get("userId")
        else:
            value = item
        if value is not None:
            ids.append(str(value))
    return ids


class ServiceClient:
    """Shared request/response handling for one collaborator."""

    service_name = "external"

    def __init__(self, base_url: str, timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT
        self.http = session or requests.Session()

    def _request(self, method: str, path: str, params: Optional[Dict] = None, json: Optional[Any] = None) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            r = self.http.request(method, url, params=params, json=json, timeout=self.timeout)
            r.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"{self.service_name} service request failed: {method} {path}: {e}")
            raise UpstreamServiceError(self.service_name, str(e))

        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamServiceError(self.service_name, f"invalid JSON from {path}: {e}")

    def get(self, path: str, params: Optional[Dict] = None) -> Any:
        return self._request("GET", path, params=params)

    def post(self, path: str, payload: Any) -> Any:
        return self._request("POST", path, json=payload)


class MedicalServiceClient(ServiceClient):
    service_name = "medical"

    @classmethod
    def from_settings(cls) -> "MedicalServiceClient":
        return cls(settings.MEDICAL_SERVICE_URL)

    def _restrictions(self, body: Any) -> List[MedicalRestriction]:
        try:
            return [MedicalRestriction.model_validate(item) for item in _unwrap_list(body, "restrictions")]
        except PydanticValidationError as e:
            raise UpstreamServiceError(self.service_name, f"malformed restriction: {e}")

    def get_restrictions(
        self,
        organization_id: str,
        team_id: Optional[str] = None,
        player_ids: Optional[List[str]] = None,
        from_date: Optional[date] = None,
        include_expired: bool = False,
    ) -> List[MedicalRestriction]:
        body = self.get("/api/v1/medical/restrictions", params={
            "organizationId": organization_id,
            "teamId": team_id,
            "playerIds": ",".join(player_ids) if player_ids else None,
            "fromDate": from_date.isoformat() if from_date else None,
            "status": None if include_expired else "active",
        })
        return self._restrictions(body)

    def get_player_restrictions(self, player_id: str) -> List[MedicalRestriction]:
        body = self.get(f"/api/v1/medical/restrictions/player/{player_id}", params={"active": "true"})
        return self._restrictions(body)

    def report_concern(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a concern; the medical service answers ``{id, status}``."""
        body = self.post("/api/v1/medical/concerns", payload) or {}
        if "id" not in body:
            raise UpstreamServiceError(self.service_name, "concern response missing id")
        return body


class PlanningServiceClient(ServiceClient):
    service_name = "planning"

    @classmethod
    def from_settings(cls) -> "PlanningServiceClient":
        return cls(settings.PLANNING_SERVICE_URL)

    def get_current_phase(self, team_id: str) -> Optional[PlanningPhase]:
        body = self.get(f"/api/v1/planning/teams/{team_id}/current-phase") or {}
        phase = body.get("phase")
        if not phase:
            return None
        try:
            return PlanningPhase.model_validate(phase)
        except PydanticValidationError as e:
            raise UpstreamServiceError(self.service_name, f"malformed phase: {e}")

    def get_season_plan(self, team_id: str) -> Optional[SeasonPlan]:
        body = self.get(f"/api/v1/planning/teams/{team_id}/season-plan") or {}
        plan = body.get("plan")
        if not plan:
            return None
        try:
            return SeasonPlan.model_validate(plan)
        except PydanticValidationError as e:
            raise UpstreamServiceError(self.service_name, f"malformed season plan: {e}")

    def get_template(self, template_id: str) -> Dict[str, Any]:
        return self.get(f"/api/v1/planning/templates/{template_id}") or {}

    def analyze_workload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.post("/api/v1/planning/workload/analyze", payload) or {}

    def report_completion(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.post("/api/v1/planning/training/completion", payload) or {}


class OrganizationServiceClient(ServiceClient):
    """Roster and hierarchy lookups used to resolve assignment targets."""

    service_name = "organization"

    @classmethod
    def from_settings(cls) -> "OrganizationServiceClient":
        return cls(settings.ORGANIZATION_SERVICE_URL)

    def get_team_players(
        self,
        team_id: str,
        line: Optional[str] = None,
        position: Optional[str] = None,
        age_group: Optional[str] = None,
    ) -> List[str]:
        body = self.get(f"/api/v1/organizations/teams/{team_id}/players", params={
            "line": line,
            "position": position,
            "ageGroup": age_group,
        })
        return _ids(_unwrap_list(body, "players"))

    def get_sub_teams(self, team_id: str) -> List[str]:
        body = self.get(f"/api/v1/organizations/teams/{team_id}/sub-teams")
        return _ids(_unwrap_list(body, "teams", "subTeams"))

    def get_group_players(self, group_id: str) -> List[str]:
        body = self.get(f"/api/v1/organizations/groups/{group_id}/players")
        return _ids(_unwrap_list(body, "players"))
