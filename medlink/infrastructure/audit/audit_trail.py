"""Audit Trail Writer.

This module is the single entry point services use to write audit entries.
It builds an AuditLogEntry from a caller context and hands it to the
append-only AuditLogPort, then decides what an append failure means.

Security Impact:
    - Sensitive actions (query, view, emergency_access) are audit-or-abort:
      if the entry cannot be persisted, AuditWriteError is raised and the
      triggering operation must not return data
    - Low-risk actions (login, logout, create, update) are best-effort: a
      failure is logged and the operation continues
    - Every access attempt, successful or denied, produces exactly one entry

Architecture:
    - Infrastructure layer component
    - Called from domain services (orchestrator, consent service, index sync)
    - Persistence is delegated to whichever AuditLogPort adapter is injected
"""

import logging
from typing import Optional

from medlink.domain.enums import SENSITIVE_AUDIT_ACTIONS, ActorType, AuditAction
from medlink.domain.models import AuditLogEntry, AuditLogFilter, CallerContext
from medlink.domain.ports import AuditLogPort, AuditWriteError, Result, mask_ic

logger = logging.getLogger(__name__)

ANONYMOUS_ACTOR_ID = "anonymous"
INDEX_SYNC_ACTOR_ID = "index-sync"


class AuditTrail:
    """Writes audit entries with audit-or-abort semantics for sensitive actions.

    Example Usage:
        ```python
        trail = AuditTrail(central_store)
        trail.record(
            AuditAction.QUERY,
            caller,
            target_ic_number="880101-14-5678",
            details="Cross-hospital query: 3 hospitals",
        )
        ```
    """

    def __init__(self, audit_log: AuditLogPort):
        """Initialize audit trail.

        Parameters:
            audit_log: Append-only audit store
        """
        self._audit_log = audit_log

    def record(
        self,
        action: AuditAction,
        caller: Optional[CallerContext],
        target_ic_number: Optional[str] = None,
        target_hospital_id: Optional[str] = None,
        details: str = "",
        success: bool = True,
        ip_address: Optional[str] = None,
        system_actor: Optional[str] = None,
    ) -> Result[str]:
        """Append one audit entry.

        Parameters:
            action: Audited action
            caller: Who performed it; None records the system/anonymous actor
            target_ic_number: Patient the action concerned
            target_hospital_id: Hospital the action concerned, if a single one
            details: Free-text description
            success: False for denials and failures
            ip_address: Overrides the caller's address (used for anonymous callers)
            system_actor: Actor id recorded when caller is None (defaults to anonymous)

        Returns:
            Result[str]: The stored entry id, or the failure for best-effort actions

        Raises:
            AuditWriteError: If the append fails for a sensitive action
        """
        entry = self.build_entry(
            action,
            caller,
            target_ic_number=target_ic_number,
            target_hospital_id=target_hospital_id,
            details=details,
            success=success,
            ip_address=ip_address,
            system_actor=system_actor,
        )

        try:
            result = self._audit_log.append(entry)
        except Exception as e:
            result = Result.failure_result(e, error_type="AuditWriteError")

        if result.is_failure():
            if action in SENSITIVE_AUDIT_ACTIONS:
                logger.error(
                    f"Audit write failed for sensitive action '{action.value}' "
                    f"(target {mask_ic(target_ic_number)}): {result.error}. Aborting operation."
                )
                raise AuditWriteError(
                    f"Could not persist audit entry for '{action.value}': {result.error}",
                    action=action.value,
                )
            logger.warning(
                f"Audit write failed for '{action.value}' "
                f"(target {mask_ic(target_ic_number)}): {result.error}. Continuing."
            )
        return result

    @staticmethod
    def build_entry(
        action: AuditAction,
        caller: Optional[CallerContext],
        target_ic_number: Optional[str] = None,
        target_hospital_id: Optional[str] = None,
        details: str = "",
        success: bool = True,
        ip_address: Optional[str] = None,
        system_actor: Optional[str] = None,
    ) -> AuditLogEntry:
        if caller is None:
            actor_id = system_actor or ANONYMOUS_ACTOR_ID
            actor_type = ActorType.SYSTEM
            actor_hospital_id = None
            address = ip_address or "unknown"
        else:
            actor_id = caller.user_id
            actor_type = ActorType.from_role(caller.role)
            actor_hospital_id = caller.home_hospital_id
            address = ip_address or caller.ip_address

        return AuditLogEntry(
            action=action,
            actor_id=actor_id,
            actor_type=actor_type,
            actor_hospital_id=actor_hospital_id,
            target_ic_number=target_ic_number,
            target_hospital_id=target_hospital_id,
            details=details,
            ip_address=address,
            success=success,
        )

    def search(self, filters: AuditLogFilter) -> list[AuditLogEntry]:
        """Read entries back, newest first."""
        return self._audit_log.query(filters)
