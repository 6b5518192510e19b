"""Domain enumerations for the federation core.

These enumerations pin down the closed vocabularies the central hub relies on:
caller roles, audit actions, actor types, visit types and interaction severities.
Values are the lowercase wire strings used by the HTTP surface and stored in the
audit log.
"""

from enum import Enum


class Role(str, Enum):
    """Role carried by an authenticated caller."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    HOSPITAL_ADMIN = "hospital_admin"
    CENTRAL_ADMIN = "central_admin"


class ActorType(str, Enum):
    """Who performed an audited action.

    Mirrors ``Role`` plus ``system`` for unauthenticated or automated actors
    (anonymous emergency access, index synchronization).
    """
    PATIENT = "patient"
    DOCTOR = "doctor"
    HOSPITAL_ADMIN = "hospital_admin"
    CENTRAL_ADMIN = "central_admin"
    SYSTEM = "system"

    @classmethod
    def from_role(cls, role: Role) -> "ActorType":
        return cls(role.value)


class AuditAction(str, Enum):
    """Audited action types."""
    LOGIN = "login"
    LOGOUT = "logout"
    VIEW = "view"
    QUERY = "query"
    CREATE = "create"
    UPDATE = "update"
    EMERGENCY_ACCESS = "emergency_access"


# Actions whose audit entry must be durable before the operation may complete.
SENSITIVE_AUDIT_ACTIONS = frozenset({
    AuditAction.QUERY,
    AuditAction.VIEW,
    AuditAction.EMERGENCY_ACCESS,
})


class VisitType(str, Enum):
    """Kind of hospital visit a medical record describes."""
    OUTPATIENT = "outpatient"
    INPATIENT = "inpatient"
    EMERGENCY = "emergency"


class InteractionSeverity(str, Enum):
    """Clinical severity of a drug-drug interaction."""
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    InteractionSeverity.LOW: 1,
    InteractionSeverity.MODERATE: 2,
    InteractionSeverity.HIGH: 3,
    InteractionSeverity.CRITICAL: 4,
}


class BundleStatus(str, Enum):
    """Outcome of a single hospital fetch within a federated query."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
