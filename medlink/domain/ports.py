"""Domain Ports - Abstract Contracts for the Federation Core.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs from each
hospital's store and from the central hub, not how those stores persist data.

Security Impact:
    - Hospital stores are read through a narrow, read-only port during federation
    - The audit port is append-only: there is no update or delete operation to implement
    - Consent lookups are a separate port so they can never be bypassed by an adapter

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - One HospitalStorePort instance per hospital; adapters never talk to each other
    - Central hub concerns (index, consent, audit) are separate ports so each can be
      backed by a different store if needed
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Optional, TypeVar, Union

from medlink.domain.models import (
    AuditLogEntry,
    AuditLogFilter,
    MedicalRecord,
    Patient,
    PatientIndexEntry,
    Prescription,
    PrivacySetting,
)

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Used where a failure must be visible to the caller but must not abort it:
    best-effort index updates and audit appends (where the AuditTrail decides
    whether the failure is fatal).

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, AuditWriteError, etc.)
        error_details: Additional error context (ic_number, hospital_id, etc.)

    Example:
        ```python
        result = central_store.record_hospital("880101-14-5678", "hospital-kl")
        if result.is_failure():
            logger.error(f"Index update failed: {result.error}")
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result."""
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (defaults to the exception class name)
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class MedLinkError(Exception):
    """Base exception for all federation-core errors."""
    pass


class NotFoundInIndex(MedLinkError):
    """No hospital is known to hold records for an IC number.

    Informational: the orchestrator turns this into an empty successful
    result and never raises it out of a query.
    """

    def __init__(self, ic_number: str):
        super().__init__(f"No hospitals indexed for IC {mask_ic(ic_number)}")
        self.ic_number = ic_number


class HospitalUnreachableError(MedLinkError):
    """Raised by a hospital adapter when its store cannot be reached.

    Contained by the orchestrator: it degrades that hospital's bundle only.

    Attributes:
        hospital_id: The hospital whose store failed
    """

    def __init__(self, message: str, hospital_id: Optional[str] = None):
        super().__init__(message)
        self.hospital_id = hospital_id


class ConsentDeniedError(MedLinkError):
    """A hospital was excluded because the patient blocked it.

    Recorded as a denial in the audit log, never surfaced as a system error.
    """

    def __init__(self, ic_number: str, hospital_id: str):
        super().__init__(f"Patient {mask_ic(ic_number)} has blocked access to {hospital_id}")
        self.ic_number = ic_number
        self.hospital_id = hospital_id


class UnauthorizedError(MedLinkError):
    """The caller's role or hospital context forbids the whole operation."""

    def __init__(self, message: str, role: Optional[str] = None):
        super().__init__(message)
        self.role = role


class AuditWriteError(MedLinkError):
    """An audit entry for a sensitive action could not be persisted.

    Fatal for ``query``, ``view`` and ``emergency_access``: the triggering
    operation is aborted rather than allowed to proceed unaudited.
    """

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class StorageError(MedLinkError):
    """Raised when a storage operation fails.

    Attributes:
        operation: The storage operation that failed
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class ConfigurationError(MedLinkError):
    """Raised when configuration is missing or invalid."""
    pass


def mask_ic(ic_number: Optional[str]) -> str:
    """Mask an IC number for log output, keeping the date-of-birth prefix."""
    if not ic_number:
        return "<none>"
    digits = ic_number.replace("-", "")
    return digits[:6] + "*" * max(len(digits) - 6, 0)


# ============================================================================
# Hospital Store Port
# ============================================================================

class HospitalStorePort(ABC):
    """Abstract read contract over one hospital's isolated store.

    This is the only contract the orchestrator depends on for hospital data.
    It must not assume anything about how the hospital persists records.

    Key Principles:
        - Async: suspension happens only at the store's I/O boundary
        - Isolated: each instance owns its own connection; no shared state
        - Read-only: federation never writes through this port

    Security Impact:
        - Data returned here is a live read projection; it is never copied into
          the central hub or into another hospital's store
    """

    @property
    @abstractmethod
    def hospital_id(self) -> str:
        """Identifier of the hospital this adapter serves."""
        pass

    @abstractmethod
    async def get_patient(self, ic_number: str) -> Optional[Patient]:
        """Fetch patient demographics, or None when this hospital has no patient row.

        Raises:
            HospitalUnreachableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def get_records_by_patient(self, ic_number: str) -> list[MedicalRecord]:
        """Fetch every visit record for a patient, newest visit first.

        Records include their nested prescriptions and lab reports.

        Raises:
            HospitalUnreachableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def get_active_prescriptions(self, ic_number: str) -> list[Prescription]:
        """Fetch prescriptions flagged active at this hospital.

        Raises:
            HospitalUnreachableError: If the store cannot be reached
        """
        pass

    async def ping(self) -> bool:
        """Check that the store is reachable (optional, adapter-specific).

        Default implementation reports reachable; adapters backed by a real
        connection should override it.
        """
        return True


class HospitalWriterPort(ABC):
    """Write contract a hospital's own CRUD layer uses on its store.

    The federation never writes through this port; it exists so that a
    hospital write can be followed by a central index update.
    """

    @property
    @abstractmethod
    def hospital_id(self) -> str:
        pass

    @abstractmethod
    async def save_patient(self, patient: Patient) -> Result[str]:
        """Insert or replace patient demographics.

        Returns:
            Result[str]: The patient's IC number or error
        """
        pass

    @abstractmethod
    async def save_record(self, record: MedicalRecord) -> Result[str]:
        """Persist a visit record with its prescriptions and lab reports atomically.

        Returns:
            Result[str]: The record id or error
        """
        pass


# ============================================================================
# Central Hub Ports
# ============================================================================

class PatientIndexPort(ABC):
    """Central mapping from IC number to the hospitals holding records.

    The index is advisory and eventually consistent. Its hospital set only
    ever grows; removal is an administrative action outside this core.
    """

    @abstractmethod
    def lookup(self, ic_number: str) -> Optional[PatientIndexEntry]:
        """Return the index entry for an IC number, or None when unknown.

        Raises:
            StorageError: If the index store cannot be read
        """
        pass

    @abstractmethod
    def record_hospital(self, ic_number: str, hospital_id: str) -> Result[bool]:
        """Idempotently add a hospital to an IC's entry.

        Creates the entry when absent. A no-op (hospital already present) must
        not advance ``last_updated``. Same-IC calls must be serialized.

        Returns:
            Result[bool]: True when the hospital set changed, False on no-op
        """
        pass

    @abstractmethod
    def list_entries(self, limit: int = 100) -> list[PatientIndexEntry]:
        """List index entries, most recently updated first."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Number of indexed patients."""
        pass


class ConsentPort(ABC):
    """Per (IC, hospital) patient privacy blocks."""

    @abstractmethod
    def is_blocked(self, ic_number: str, hospital_id: str) -> bool:
        """Return True when the patient has blocked this hospital. No row means not blocked."""
        pass

    @abstractmethod
    def blocked_hospitals(self, ic_number: str) -> set[str]:
        """Return every hospital the patient has blocked."""
        pass

    @abstractmethod
    def list_settings(self, ic_number: str) -> list[PrivacySetting]:
        """Return every stored privacy row for an IC number."""
        pass

    @abstractmethod
    def set_blocked(self, ic_number: str, hospital_id: str, is_blocked: bool) -> PrivacySetting:
        """Upsert a privacy row; last write wins and no history is kept here."""
        pass


class AuditLogPort(ABC):
    """Append-only store of access events.

    Security Impact:
        - There is deliberately no update or delete operation on this port
    """

    @abstractmethod
    def append(self, entry: AuditLogEntry) -> Result[str]:
        """Append an entry.

        Returns:
            Result[str]: The stored entry id, or a failure the caller must act on
        """
        pass

    @abstractmethod
    def query(self, filters: AuditLogFilter) -> list[AuditLogEntry]:
        """Return matching entries newest first, bounded by ``filters.limit``."""
        pass

    @abstractmethod
    def count_since(self, action: Optional[str] = None, since: Optional[datetime] = None) -> int:
        """Count entries, optionally of one action and from a point in time onwards."""
        pass
