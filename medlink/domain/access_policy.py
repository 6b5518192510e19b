"""Role-based access rules for the central hub.

Each function answers one question about a caller and returns a boolean; the
services decide how to audit and report a denial.
"""

from typing import Optional

from medlink.domain.enums import Role
from medlink.domain.models import CallerContext


def normalize_ic(ic_number: Optional[str]) -> str:
    """Compare IC numbers without dashes or surrounding whitespace."""
    return (ic_number or "").replace("-", "").strip()


def is_own_ic(caller: CallerContext, ic_number: str) -> bool:
    return bool(caller.ic_number) and normalize_ic(caller.ic_number) == normalize_ic(ic_number)


def can_query_patient(caller: CallerContext, ic_number: str) -> bool:
    """Whether the caller may run a cross-hospital query for an IC number.

    Doctors and central admins may query any patient, patients only
    themselves. Hospital admins manage their own hospital and never query
    across hospitals.
    """
    if caller.role in (Role.DOCTOR, Role.CENTRAL_ADMIN):
        return True
    if caller.role == Role.PATIENT:
        return is_own_ic(caller, ic_number)
    return False


def can_manage_consent(caller: CallerContext, ic_number: str) -> bool:
    """Only the patient themselves, or a central admin, may change privacy settings."""
    if caller.role == Role.CENTRAL_ADMIN:
        return True
    return caller.role == Role.PATIENT and is_own_ic(caller, ic_number)


def can_read_audit_log(caller: CallerContext) -> bool:
    return caller.role in (Role.CENTRAL_ADMIN, Role.HOSPITAL_ADMIN)


def can_read_index(caller: CallerContext) -> bool:
    return caller.role == Role.CENTRAL_ADMIN


def bypasses_consent(caller: Optional[CallerContext]) -> bool:
    """Central admins see every indexed hospital regardless of privacy blocks."""
    return caller is not None and caller.role == Role.CENTRAL_ADMIN
