"""Consent Service.

Lets a patient (or a central admin acting for them) block or unblock a
hospital from seeing their records through the central hub.

Security Impact:
    - Only the patient whose IC it is, or a central admin, may change a setting
    - Denied attempts and successful changes are both written to the audit log
    - Changes take effect on the next query; nothing is cached
"""

import logging

from medlink.domain import access_policy
from medlink.domain.enums import AuditAction
from medlink.domain.models import CallerContext, PrivacySetting
from medlink.domain.ports import ConsentPort, UnauthorizedError, mask_ic
from medlink.domain.registry import HospitalRegistry
from medlink.infrastructure.audit.audit_trail import AuditTrail

logger = logging.getLogger(__name__)


class UnknownHospitalError(ValueError):
    """Raised when a privacy setting names a hospital outside the network."""

    def __init__(self, hospital_id: str):
        super().__init__(f"Unknown hospital: {hospital_id}")
        self.hospital_id = hospital_id


class ConsentService:
    """Reads and changes per-hospital privacy blocks."""

    def __init__(self, consent: ConsentPort, registry: HospitalRegistry, audit_trail: AuditTrail):
        self._consent = consent
        self._registry = registry
        self._audit = audit_trail

    def get_settings(self, caller: CallerContext, ic_number: str) -> list[PrivacySetting]:
        """Privacy settings for every registered hospital, defaulting to unblocked.

        Raises:
            UnauthorizedError: If the caller may not see this patient's settings
        """
        if not access_policy.can_manage_consent(caller, ic_number):
            raise UnauthorizedError("Only the patient or a central admin may view privacy settings",
                                    role=caller.role.value)

        stored = {s.hospital_id: s for s in self._consent.list_settings(ic_number)}
        return [
            stored.get(hospital_id) or PrivacySetting(ic_number=ic_number, hospital_id=hospital_id)
            for hospital_id in self._registry.hospital_ids
        ]

    def set_hospital_access(
        self,
        caller: CallerContext,
        ic_number: str,
        hospital_id: str,
        is_blocked: bool,
    ) -> PrivacySetting:
        """Block or unblock one hospital for a patient.

        Parameters:
            caller: Who is changing the setting
            ic_number: Patient IC number
            hospital_id: Hospital to block or unblock
            is_blocked: New state

        Returns:
            PrivacySetting: The stored setting

        Raises:
            UnauthorizedError: If the caller is neither the patient nor a central admin
            UnknownHospitalError: If the hospital is not registered
        """
        verb = "blocked" if is_blocked else "unblocked"

        if not access_policy.can_manage_consent(caller, ic_number):
            logger.warning(
                f"Denied privacy change for {mask_ic(ic_number)} by {caller.role.value} {caller.user_id}"
            )
            self._audit.record(
                AuditAction.UPDATE,
                caller,
                target_ic_number=ic_number,
                target_hospital_id=hospital_id,
                details=f"Privacy change denied: attempted to mark {hospital_id} {verb}",
                success=False,
            )
            raise UnauthorizedError("Only the patient or a central admin may change privacy settings",
                                    role=caller.role.value)

        if hospital_id not in self._registry:
            self._audit.record(
                AuditAction.UPDATE,
                caller,
                target_ic_number=ic_number,
                target_hospital_id=hospital_id,
                details=f"Privacy change rejected: unknown hospital {hospital_id}",
                success=False,
            )
            raise UnknownHospitalError(hospital_id)

        setting = self._consent.set_blocked(ic_number, hospital_id, is_blocked)
        self._audit.record(
            AuditAction.UPDATE,
            caller,
            target_ic_number=ic_number,
            target_hospital_id=hospital_id,
            details=f"Privacy setting changed: {self._registry.name_of(hospital_id)} {verb}",
        )
        logger.info(f"Privacy setting for {mask_ic(ic_number)}: {hospital_id} {verb}")
        return setting
