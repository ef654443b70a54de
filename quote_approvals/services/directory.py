"""
Identity / role resolution boundary.

The engine only asks "who currently holds this role / heads this department /
sits N levels above the quote's department?" and consumes the answer.

  StaticDirectory: mapping loaded from DIRECTORY_JSON
  HttpDirectory: external directory service over HTTP
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Union

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log
import structlog

from quote_approvals.config import settings
from quote_approvals.models.notification import EscalationTarget
from quote_approvals.models.quote import Quote
from quote_approvals.models.workflow import Approver

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lookup:
    kind: str  # user | role | department | manager
    ref: Optional[str]
    level: int = 1


def to_lookup(target: Union[Approver, EscalationTarget], quote: Quote) -> Lookup:
    if target.type == "user":
        return Lookup("user", target.user_id)
    if target.type == "role":
        return Lookup("role", target.role_id)
    if target.type == "department":
        return Lookup("department", target.department_id or quote.department_id)
    # manager / manager_hierarchy walk up from the quote's department
    level = getattr(target, "manager_level", None) or getattr(target, "level", None) or 1
    return Lookup("manager", target.department_id or quote.department_id, level)


class Directory(Protocol):
    async def resolve_approver(
        self, target: Union[Approver, EscalationTarget], quote: Quote
    ) -> Optional[str]: ...


class StaticDirectory:
    """
    Mapping shape:
        {"roles": {"sales_manager": "u-1"},
         "departments": {"sales": "u-9"},
         "managers": {"sales": ["u-2", "u-3"]}}   # index 0 = direct manager
    """

    def __init__(self, mapping: Optional[dict] = None):
        mapping = mapping or {}
        self.roles: dict = mapping.get("roles", {})
        self.departments: dict = mapping.get("departments", {})
        self.managers: dict = mapping.get("managers", {})

    @classmethod
    def from_settings(cls) -> "StaticDirectory":
        return cls(json.loads(settings.DIRECTORY_JSON or "{}"))

    async def resolve_approver(
        self, target: Union[Approver, EscalationTarget], quote: Quote
    ) -> Optional[str]:
        lookup = to_lookup(target, quote)
        if lookup.ref is None:
            return None
        if lookup.kind == "user":
            return lookup.ref
        if lookup.kind == "role":
            return self.roles.get(lookup.ref)
        if lookup.kind == "department":
            return self.departments.get(lookup.ref)
        hierarchy = self.managers.get(lookup.ref, [])
        if 1 <= lookup.level <= len(hierarchy):
            return hierarchy[lookup.level - 1]
        return None


class _DirectoryRetryableError(Exception):
    """Raised for 5xx or network errors that warrant a retry."""


class HttpDirectory:
    """GET {base_url}/resolve?kind=...&ref=...&level=... -> {"actor_id": "..."}"""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))

    @retry(
        retry=retry_if_exception_type(_DirectoryRetryableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(_std_logger, logging.WARNING),
        reraise=True,
    )
    async def _fetch(self, params: dict) -> Optional[str]:
        try:
            response = await self._client.get(f"{self.base_url}/resolve", params=params)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            logger.warning("directory_network_error_retrying", error=str(exc))
            raise _DirectoryRetryableError(str(exc)) from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            raise _DirectoryRetryableError(f"Directory returned {response.status_code}")
        response.raise_for_status()
        return response.json().get("actor_id")

    async def resolve_approver(
        self, target: Union[Approver, EscalationTarget], quote: Quote
    ) -> Optional[str]:
        lookup = to_lookup(target, quote)
        if lookup.ref is None:
            return None
        if lookup.kind == "user":
            return lookup.ref
        params = {
            "kind": lookup.kind,
            "ref": lookup.ref,
            "level": lookup.level,
            "quote_id": quote.id,
        }
        try:
            return await self._fetch(params)
        except (_DirectoryRetryableError, httpx.HTTPStatusError) as exc:
            logger.error("directory_lookup_failed", kind=lookup.kind, ref=lookup.ref, error=str(exc))
            return None


def create_directory() -> Directory:
    if settings.DIRECTORY_URL:
        return HttpDirectory(settings.DIRECTORY_URL)
    return StaticDirectory.from_settings()
