"""Audit and statistics service for the federation API.

Reads the central audit log for administrators, builds a patient's own
"who looked at my records" feed and a caller's own activity feed, and
computes the public hub counters.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from medlink.api.models.central import AccessLogEntry, ActivityLogEntry, HubStats
from medlink.domain.enums import ActorType, AuditAction
from medlink.domain.models import MAX_AUDIT_LIMIT, AuditLogEntry, AuditLogFilter, CallerContext
from medlink.domain.ports import Result, StorageError, mask_ic
from medlink.infrastructure.audit.audit_trail import ANONYMOUS_ACTOR_ID
from medlink.main import Federation

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_LOG_LIMIT = 20
DEFAULT_ACTIVITY_LOG_LIMIT = 10
UNKNOWN_PATIENT_NAME = "Unknown Patient"
# Repeated entries in the same group closer together than this are shown once
ACCESS_LOG_COLLAPSE_WINDOW = timedelta(minutes=5)

_SESSION_ACTIONS = frozenset({AuditAction.LOGIN, AuditAction.LOGOUT})

_ACTOR_LABELS = {
    ActorType.DOCTOR: "Doctor",
    ActorType.PATIENT: "Patient",
    ActorType.HOSPITAL_ADMIN: "Hospital Admin",
    ActorType.CENTRAL_ADMIN: "Central Admin",
    ActorType.SYSTEM: "MedLink System",
}


def _access_key(entry: AuditLogEntry) -> tuple:
    return (entry.actor_id, entry.action, entry.actor_hospital_id)


def _activity_key(entry: AuditLogEntry) -> tuple:
    return (entry.target_ic_number, entry.action)


def collapse_access_entries(
    entries: list[AuditLogEntry],
    key: Callable[[AuditLogEntry], tuple] = _access_key,
) -> list[tuple[AuditLogEntry, int]]:
    """Collapse consecutive entries that share a grouping key.

    An entry is folded into the previous kept one when ``key`` gives the same
    value for both and they are less than five minutes apart. The default key
    is actor, action and actor hospital.

    Returns:
        (kept entry, number of entries it stands for), in input order
    """
    collapsed: list[tuple[AuditLogEntry, int]] = []
    for entry in entries:
        if collapsed:
            last, count = collapsed[-1]
            if key(last) == key(entry) and abs(last.timestamp - entry.timestamp) < ACCESS_LOG_COLLAPSE_WINDOW:
                collapsed[-1] = (last, count + 1)
                continue
        collapsed.append((entry, 1))
    return collapsed


class AuditService:
    """Service for reading the audit log and hub statistics."""

    def __init__(self, federation: Federation):
        """Initialize AuditService.

        Parameters:
            federation: Shared stores, registry and services
        """
        self.federation = federation

    def get_audit_logs(self, filters: AuditLogFilter) -> Result[list[AuditLogEntry]]:
        """Get audit log entries matching a validated filter, newest first.

        Parameters:
            filters: Validated filter (limit already capped)

        Returns:
            Result containing the entries or the storage error
        """
        try:
            return Result.success_result(self.federation.audit_trail.search(filters))
        except StorageError as e:
            logger.error(f"Audit log query failed: {e}")
            return Result.failure_result(e, error_details={"operation": e.operation})

    def get_my_access_logs(
        self,
        caller: CallerContext,
        limit: int = DEFAULT_ACCESS_LOG_LIMIT,
    ) -> Result[list[AccessLogEntry]]:
        """Entries on the caller's own IC made by anyone but the caller.

        Parameters:
            caller: Patient whose records are being watched (must carry an IC)
            limit: Maximum entries to return after collapsing (capped)

        Returns:
            Result containing the collapsed, display-ready entries
        """
        limit = max(1, min(limit, MAX_AUDIT_LIMIT))
        try:
            # Over-fetch so that filtering out the caller's own actions still fills the page
            raw = self.federation.audit_trail.search(AuditLogFilter(
                target_ic_number=caller.ic_number,
                limit=min(limit * 2, MAX_AUDIT_LIMIT),
            ))
        except StorageError as e:
            logger.error(f"Access log query for {mask_ic(caller.ic_number)} failed: {e}")
            return Result.failure_result(e, error_details={"operation": e.operation})

        others = [entry for entry in raw if entry.actor_id != caller.user_id]
        collapsed = collapse_access_entries(others)[:limit]

        return Result.success_result([
            AccessLogEntry(
                **entry.model_dump(),
                actor_name=self._actor_name(entry),
                hospital_name=self._hospital_name(entry.actor_hospital_id),
                occurrences=count,
            )
            for entry, count in collapsed
        ])

    async def get_my_activity_logs(
        self,
        caller: CallerContext,
        limit: int = DEFAULT_ACTIVITY_LOG_LIMIT,
    ) -> Result[list[ActivityLogEntry]]:
        """Patient-related actions the caller performed, newest first.

        Login and logout entries and entries without a target patient are
        dropped; repeats on the same patient and action within five minutes
        are collapsed. Each entry is labelled with the patient's name from the
        first hospital in the index, or "Unknown Patient".

        Parameters:
            caller: Whose actions to list
            limit: Maximum entries to return after collapsing (capped)

        Returns:
            Result containing the collapsed, display-ready entries
        """
        limit = max(1, min(limit, MAX_AUDIT_LIMIT))
        try:
            raw = await asyncio.to_thread(self.federation.audit_trail.search, AuditLogFilter(
                actor_id=caller.user_id,
                limit=min(limit * 5, MAX_AUDIT_LIMIT),
            ))
        except StorageError as e:
            logger.error(f"Activity log query for {caller.user_id} failed: {e}")
            return Result.failure_result(e, error_details={"operation": e.operation})

        patient_actions = [
            entry for entry in raw
            if entry.action not in _SESSION_ACTIONS and entry.target_ic_number
        ]
        collapsed = collapse_access_entries(patient_actions, key=_activity_key)[:limit]

        names: dict[str, str] = {}
        for entry, _ in collapsed:
            if entry.target_ic_number not in names:
                names[entry.target_ic_number] = await self._patient_name(entry.target_ic_number)

        return Result.success_result([
            ActivityLogEntry(
                **entry.model_dump(),
                patient_name=names[entry.target_ic_number],
                occurrences=count,
            )
            for entry, count in collapsed
        ])

    def get_stats(self, now: Optional[datetime] = None) -> Result[HubStats]:
        """Network-wide counters; "today" starts at midnight UTC."""
        now = now or datetime.now(timezone.utc)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        central = self.federation.central

        try:
            stats = HubStats(
                total_patients=central.count(),
                total_hospitals=len(self.federation.registry),
                total_audit_logs=central.count_since(),
                queries_today=central.count_since(AuditAction.QUERY, start_of_day),
                emergency_accesses_today=central.count_since(AuditAction.EMERGENCY_ACCESS, start_of_day),
            )
        except StorageError as e:
            logger.error(f"Hub statistics failed: {e}")
            return Result.failure_result(e, error_details={"operation": e.operation})

        return Result.success_result(stats)

    async def _patient_name(self, ic_number: str) -> str:
        """Full name from the first indexed hospital that knows the patient."""
        try:
            entry = await asyncio.to_thread(self.federation.central.lookup, ic_number)
            if entry is None or not entry.hospital_ids:
                return UNKNOWN_PATIENT_NAME
            registered = self.federation.registry.get(entry.hospital_ids[0])
            if registered is None:
                return UNKNOWN_PATIENT_NAME
            patient = await asyncio.wait_for(
                registered.store.get_patient(ic_number),
                timeout=self.federation.federation_config.hospital_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Patient name lookup for {mask_ic(ic_number)} failed: {e}")
            return UNKNOWN_PATIENT_NAME
        return patient.full_name if patient else UNKNOWN_PATIENT_NAME

    def _hospital_name(self, hospital_id: Optional[str]) -> str:
        if not hospital_id:
            return "Unknown Hospital"
        return self.federation.registry.name_of(hospital_id)

    @staticmethod
    def _actor_name(entry: AuditLogEntry) -> str:
        if entry.actor_type == ActorType.SYSTEM and entry.actor_id == ANONYMOUS_ACTOR_ID:
            return "Emergency Services"
        label = _ACTOR_LABELS.get(entry.actor_type, entry.actor_type.value)
        if entry.actor_type in (ActorType.DOCTOR, ActorType.PATIENT):
            return f"{label} {entry.actor_id}"
        return label
