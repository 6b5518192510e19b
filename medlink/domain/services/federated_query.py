"""Federated Query Orchestrator.

This module implements the cross-hospital query: given an IC number and the
caller's context it authorizes the caller, asks the central patient index which
hospitals hold data, removes the hospitals the patient has blocked, fans out
to every remaining hospital's store concurrently, and merges the partial
results into one timeline.

Security Impact:
    - Authorization happens before any hospital is contacted
    - A consent-blocked hospital is never contacted for that IC
    - Every access attempt, successful or denied, is written to the audit log;
      failure to write a query/view/emergency entry aborts the operation
    - Records from hospitals other than the caller's own are marked read-only

Architecture:
    - Domain service: depends only on ports, the registry and the audit trail
    - One asyncio task per hospital, each under its own timeout and circuit breaker
    - Central store reads and audit writes run in worker threads, so the event
      loop only waits on I/O
    - Results are merged after gathering, so merge order never depends on which
      hospital answered first
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from medlink.domain import access_policy
from medlink.domain.enums import AuditAction, BundleStatus, Role
from medlink.domain.models import (
    ActiveMedication,
    AggregateQueryResult,
    CallerContext,
    EmergencyQueryResult,
    HospitalRecordBundle,
    MedicalRecord,
    MedicationCheckResult,
    Patient,
    PatientSummary,
)
from medlink.domain.ports import (
    ConsentDeniedError,
    ConsentPort,
    HospitalUnreachableError,
    NotFoundInIndex,
    PatientIndexPort,
    UnauthorizedError,
    mask_ic,
)
from medlink.domain.registry import HospitalRegistry
from medlink.domain.services.medication_check import MedicationCrossCheck
from medlink.infrastructure.audit.audit_trail import AuditTrail

logger = logging.getLogger(__name__)

DEFAULT_HOSPITAL_TIMEOUT_SECONDS = 5.0

# Callers whose successful reads produce a per-hospital `view` entry
_VIEW_AUDITED_ROLES = (Role.DOCTOR, Role.PATIENT)


@dataclass
class FetchOutcome:
    """Outcome of one hospital fetch before it is shaped into a result."""
    hospital_id: str
    hospital_name: str
    status: BundleStatus
    value: Any = None
    error: Optional[str] = None
    response_time_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == BundleStatus.SUCCESS


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 2)


def _visit_sort_key(record: MedicalRecord) -> datetime:
    visit = record.visit_date
    if visit.tzinfo is None:
        return visit.replace(tzinfo=timezone.utc)
    return visit


def _merge_unique(target: list[str], values: list[str]) -> None:
    """Append values not already present (case-insensitive), keeping first-seen order."""
    seen = {v.casefold() for v in target}
    for value in values:
        key = value.strip().casefold()
        if key and key not in seen:
            seen.add(key)
            target.append(value.strip())


class FederatedQueryOrchestrator:
    """Runs federated queries across the hospitals in a registry.

    Example Usage:
        ```python
        orchestrator = FederatedQueryOrchestrator(
            registry=registry,
            index=central_store,
            consent=central_store,
            audit_trail=AuditTrail(central_store),
        )
        result = await orchestrator.query("880101-14-5678", caller)
        print(result.total_hospitals_reachable, "of", result.total_hospitals_queried)
        ```
    """

    def __init__(
        self,
        registry: HospitalRegistry,
        index: PatientIndexPort,
        consent: ConsentPort,
        audit_trail: AuditTrail,
        medication_checker: Optional[MedicationCrossCheck] = None,
        hospital_timeout_seconds: float = DEFAULT_HOSPITAL_TIMEOUT_SECONDS,
    ):
        """Initialize orchestrator.

        Parameters:
            registry: Hospitals that may be contacted, with their adapters
            index: Central patient index
            consent: Patient privacy settings
            audit_trail: Audit writer (audit-or-abort for sensitive actions)
            medication_checker: Interaction checker (default instance if None)
            hospital_timeout_seconds: Per-hospital fetch timeout
        """
        self._registry = registry
        self._index = index
        self._consent = consent
        self._audit = audit_trail
        self._checker = medication_checker or MedicationCrossCheck()
        self._timeout = hospital_timeout_seconds

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def query(
        self,
        ic_number: str,
        caller: CallerContext,
        include_medication_check: bool = False,
        candidate_medication: Optional[str] = None,
    ) -> AggregateQueryResult:
        """Query every permitted hospital for a patient and merge the results.

        Parameters:
            ic_number: Patient IC number
            caller: Who is asking
            include_medication_check: Also run the cross-hospital medication check
            candidate_medication: Drug to screen along with the medication check

        Returns:
            AggregateQueryResult: Bundles in index order plus the merged timeline

        Raises:
            UnauthorizedError: If the caller's role may not query this patient
            AuditWriteError: If a query/view audit entry cannot be persisted
        """
        started = time.perf_counter()
        await self._authorize(ic_number, caller, "Cross-hospital query")

        entry = await asyncio.to_thread(self._index.lookup, ic_number)
        if entry is None or not entry.hospital_ids:
            logger.info(str(NotFoundInIndex(ic_number)))
            await self._record(
                AuditAction.QUERY,
                caller,
                target_ic_number=ic_number,
                details="Cross-hospital query: patient not found in central index",
            )
            result = AggregateQueryResult(ic_number=ic_number, query_duration_ms=_elapsed_ms(started))
            if include_medication_check:
                result.medication_check = MedicationCheckResult(ic_number=ic_number)
            return result

        candidates, excluded = await self._apply_consent(ic_number, entry.hospital_ids, caller)

        outcomes = await self._dispatch(candidates, self._fetch_patient_records(ic_number))
        bundles = [self._to_bundle(outcome, caller) for outcome in outcomes]

        # Stable sort: equal visit dates keep index order, then adapter order
        merged = [record for bundle in bundles if bundle.succeeded for record in bundle.records]
        timeline = sorted(merged, key=_visit_sort_key, reverse=True)

        reachable = sum(1 for b in bundles if b.succeeded)
        patient_summary = next(
            (b.patient for b in bundles if b.succeeded and b.patient is not None), None
        )

        await self._record(
            AuditAction.QUERY,
            caller,
            target_ic_number=ic_number,
            details=(
                f"Cross-hospital query: {reachable}/{len(candidates)} hospitals reachable, "
                f"{len(timeline)} records, {len(excluded)} excluded by privacy settings"
            ),
        )
        await self._audit_views(ic_number, caller, bundles)

        result = AggregateQueryResult(
            ic_number=ic_number,
            patient_summary=patient_summary,
            hospitals=bundles,
            timeline=timeline,
            total_records=len(timeline),
            total_hospitals_queried=len(candidates),
            total_hospitals_reachable=reachable,
            excluded_hospitals=excluded,
            is_complete=reachable == len(candidates),
        )

        if include_medication_check:
            active = [
                ActiveMedication(
                    prescription=prescription,
                    hospital_id=bundle.hospital_id,
                    hospital_name=bundle.hospital_name,
                    visit_date=record.visit_date,
                )
                for bundle in bundles if bundle.succeeded
                for record in bundle.records
                for prescription in record.prescriptions if prescription.is_active
            ]
            result.medication_check = self._checker.check(
                ic_number,
                active,
                candidate_medication=candidate_medication,
                hospitals_consulted=reachable,
                is_complete=result.is_complete,
            )

        result.query_duration_ms = _elapsed_ms(started)
        logger.info(
            f"Federated query for {mask_ic(ic_number)}: "
            f"{reachable}/{len(candidates)} hospitals, {len(timeline)} records "
            f"in {result.query_duration_ms}ms"
        )
        return result

    async def active_medications(
        self,
        ic_number: str,
        caller: CallerContext,
        candidate_medication: Optional[str] = None,
    ) -> MedicationCheckResult:
        """Gather active prescriptions from every permitted hospital and cross-check them.

        Same authorization, consent and audit rules as ``query``.
        """
        await self._authorize(ic_number, caller, "Medication cross-check")

        entry = await asyncio.to_thread(self._index.lookup, ic_number)
        if entry is None or not entry.hospital_ids:
            await self._record(
                AuditAction.QUERY,
                caller,
                target_ic_number=ic_number,
                details="Medication cross-check: patient not found in central index",
            )
            return self._checker.check(ic_number, [], candidate_medication=candidate_medication)

        candidates, excluded = await self._apply_consent(ic_number, entry.hospital_ids, caller)
        outcomes = await self._dispatch(candidates, self._fetch_active_prescriptions(ic_number))

        active: list[ActiveMedication] = []
        for outcome in outcomes:
            if not outcome.succeeded:
                continue
            for prescription in outcome.value:
                active.append(ActiveMedication(
                    prescription=prescription,
                    hospital_id=outcome.hospital_id,
                    hospital_name=outcome.hospital_name,
                ))

        reachable = sum(1 for o in outcomes if o.succeeded)
        await self._record(
            AuditAction.QUERY,
            caller,
            target_ic_number=ic_number,
            details=(
                f"Medication cross-check: {len(active)} active prescriptions from "
                f"{reachable}/{len(candidates)} hospitals, {len(excluded)} excluded by privacy settings"
            ),
        )
        if caller.role in _VIEW_AUDITED_ROLES:
            for outcome in outcomes:
                if outcome.succeeded:
                    await self._record(
                        AuditAction.VIEW,
                        caller,
                        target_ic_number=ic_number,
                        target_hospital_id=outcome.hospital_id,
                        details=f"Viewed {len(outcome.value)} active prescriptions from {outcome.hospital_name}",
                    )

        return self._checker.check(
            ic_number,
            active,
            candidate_medication=candidate_medication,
            hospitals_consulted=reachable,
            is_complete=reachable == len(candidates),
        )

    async def emergency_query(
        self,
        ic_number: str,
        caller: Optional[CallerContext] = None,
        reason: str = "",
        ip_address: Optional[str] = None,
    ) -> EmergencyQueryResult:
        """Return critical patient information from every indexed hospital.

        Consent blocks are overridden (and listed in the result). Exactly one
        ``emergency_access`` audit entry is written whether the patient was
        found, not found, or the lookup failed.

        Parameters:
            ic_number: Patient IC number
            caller: Authenticated caller, or None for anonymous emergency access
            reason: Free-text justification, recorded in the audit entry
            ip_address: Client address (used when the caller is anonymous)

        Raises:
            AuditWriteError: If the emergency_access entry cannot be persisted
        """
        started = time.perf_counter()
        reason_text = f" Reason: {reason.strip()}" if reason and reason.strip() else ""

        try:
            result = await self._collect_emergency_data(ic_number)
        except Exception as e:
            logger.error(f"Emergency access for {mask_ic(ic_number)} failed: {e}", exc_info=True)
            await self._record(
                AuditAction.EMERGENCY_ACCESS,
                caller,
                target_ic_number=ic_number,
                details=f"EMERGENCY ACCESS failed: {e}.{reason_text}",
                success=False,
                ip_address=ip_address,
            )
            raise

        if result.found:
            details = (
                f"EMERGENCY ACCESS - critical information retrieved from "
                f"{result.total_hospitals_reachable}/{result.total_hospitals_queried} hospitals"
            )
            if result.consent_overridden_hospitals:
                details += f"; privacy overridden for {', '.join(result.consent_overridden_hospitals)}"
        else:
            details = "EMERGENCY ACCESS - patient not found"

        await self._record(
            AuditAction.EMERGENCY_ACCESS,
            caller,
            target_ic_number=ic_number,
            details=details + "." + reason_text,
            ip_address=ip_address,
        )

        result.query_duration_ms = _elapsed_ms(started)
        logger.warning(f"Emergency access for {mask_ic(ic_number)} (found={result.found})")
        return result

    async def patient_summary(self, ic_number: str, caller: CallerContext) -> Optional[PatientSummary]:
        """Index entry plus demographics for a patient, without visit records.

        Same authorization and consent rules as ``query``; blocked hospitals are
        not contacted. Demographics come from the first hospital in index order
        that returns the patient.

        Returns:
            PatientSummary, or None when the IC number is not in the index

        Raises:
            UnauthorizedError: If the caller's role may not query this patient
            AuditWriteError: If the query audit entry cannot be persisted
        """
        await self._authorize(ic_number, caller, "Patient summary")

        entry = await asyncio.to_thread(self._index.lookup, ic_number)
        if entry is None or not entry.hospital_ids:
            await self._record(
                AuditAction.QUERY,
                caller,
                target_ic_number=ic_number,
                details="Patient summary: patient not found in central index",
            )
            return None

        candidates, excluded = await self._apply_consent(ic_number, entry.hospital_ids, caller)

        async def fetch(store):
            return await store.get_patient(ic_number)

        outcomes = await self._dispatch(candidates, fetch)
        source = next((o for o in outcomes if o.succeeded and o.value is not None), None)

        await self._record(
            AuditAction.QUERY,
            caller,
            target_ic_number=ic_number,
            details=(
                f"Patient summary: {len(entry.hospital_ids)} indexed hospitals, "
                f"demographics from {source.hospital_name if source else 'none'}"
            ),
        )
        if source is not None and caller.role in _VIEW_AUDITED_ROLES:
            await self._record(
                AuditAction.VIEW,
                caller,
                target_ic_number=ic_number,
                target_hospital_id=source.hospital_id,
                details=f"Viewed patient demographics from {source.hospital_name}",
            )

        return PatientSummary(
            ic_number=ic_number,
            patient=source.value if source else None,
            hospitals=list(entry.hospital_ids),
            excluded_hospitals=excluded,
            last_updated=entry.last_updated,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _record(self, *args, **kwargs):
        """Write an audit entry from a worker thread; AuditWriteError propagates."""
        return await asyncio.to_thread(self._audit.record, *args, **kwargs)

    async def _authorize(self, ic_number: str, caller: CallerContext, operation: str) -> None:
        if access_policy.can_query_patient(caller, ic_number):
            return
        logger.warning(
            f"Denied {operation.lower()} for {mask_ic(ic_number)} by {caller.role.value} {caller.user_id}"
        )
        await self._record(
            AuditAction.QUERY,
            caller,
            target_ic_number=ic_number,
            details=f"{operation} denied for role {caller.role.value}",
            success=False,
        )
        raise UnauthorizedError(
            f"Role '{caller.role.value}' may not query this patient",
            role=caller.role.value,
        )

    async def _apply_consent(
        self,
        ic_number: str,
        hospital_ids: list[str],
        caller: CallerContext,
    ) -> tuple[list[str], list[str]]:
        """Split indexed hospitals into candidates and consent-excluded ones.

        Each exclusion is recorded as a denied ``view`` before anything is dispatched.
        """
        if access_policy.bypasses_consent(caller):
            return list(hospital_ids), []

        blocked = await asyncio.to_thread(self._consent.blocked_hospitals, ic_number)
        candidates = [h for h in hospital_ids if h not in blocked]
        excluded = [h for h in hospital_ids if h in blocked]

        for hospital_id in excluded:
            logger.debug(str(ConsentDeniedError(ic_number, hospital_id)))
            await self._record(
                AuditAction.VIEW,
                caller,
                target_ic_number=ic_number,
                target_hospital_id=hospital_id,
                details=f"Access to {self._registry.name_of(hospital_id)} blocked by patient privacy setting",
                success=False,
            )
        if excluded:
            logger.info(f"Excluded {len(excluded)} hospital(s) for {mask_ic(ic_number)} by privacy settings")
        return candidates, excluded

    async def _audit_views(self, ic_number: str, caller: CallerContext, bundles: list[HospitalRecordBundle]) -> None:
        if caller.role not in _VIEW_AUDITED_ROLES:
            return
        for bundle in bundles:
            if bundle.succeeded:
                await self._record(
                    AuditAction.VIEW,
                    caller,
                    target_ic_number=ic_number,
                    target_hospital_id=bundle.hospital_id,
                    details=f"Viewed {bundle.record_count} records from {bundle.hospital_name}",
                )

    async def _collect_emergency_data(self, ic_number: str) -> EmergencyQueryResult:
        entry = await asyncio.to_thread(self._index.lookup, ic_number)
        if entry is None or not entry.hospital_ids:
            return EmergencyQueryResult(ic_number=ic_number, found=False)

        blocked = await asyncio.to_thread(self._consent.blocked_hospitals, ic_number)
        overridden = [h for h in entry.hospital_ids if h in blocked]

        async def fetch(store):
            return await store.get_patient(ic_number)

        outcomes = await self._dispatch(entry.hospital_ids, fetch)
        patients: list[Patient] = [o.value for o in outcomes if o.succeeded and o.value is not None]

        result = EmergencyQueryResult(
            ic_number=ic_number,
            found=bool(patients),
            hospitals_with_records=len(entry.hospital_ids),
            total_hospitals_queried=len(entry.hospital_ids),
            total_hospitals_reachable=sum(1 for o in outcomes if o.succeeded),
            consent_overridden_hospitals=overridden,
        )
        if not patients:
            return result

        primary = patients[0]
        result.full_name = primary.full_name
        result.blood_type = next((p.blood_type for p in patients if p.blood_type), None)
        result.emergency_contact = next((p.emergency_contact for p in patients if p.emergency_contact), None)
        result.emergency_phone = next((p.emergency_phone for p in patients if p.emergency_phone), None)
        for patient in patients:
            _merge_unique(result.allergies, patient.allergies)
            _merge_unique(result.chronic_conditions, patient.chronic_conditions)
        return result

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch_patient_records(ic_number: str) -> Callable[[Any], Awaitable[tuple]]:
        async def fetch(store):
            return await asyncio.gather(
                store.get_patient(ic_number),
                store.get_records_by_patient(ic_number),
            )
        return fetch

    @staticmethod
    def _fetch_active_prescriptions(ic_number: str) -> Callable[[Any], Awaitable[list]]:
        async def fetch(store):
            return await store.get_active_prescriptions(ic_number)
        return fetch

    async def _dispatch(
        self,
        hospital_ids: list[str],
        fetch: Callable[[Any], Awaitable[Any]],
    ) -> list[FetchOutcome]:
        """Run ``fetch`` against every hospital concurrently.

        Outcomes come back in the order of ``hospital_ids``. Cancelling the
        caller cancels every outstanding fetch.
        """
        if not hospital_ids:
            return []
        return list(await asyncio.gather(
            *(self._fetch_one(hospital_id, fetch) for hospital_id in hospital_ids)
        ))

    async def _fetch_one(self, hospital_id: str, fetch: Callable[[Any], Awaitable[Any]]) -> FetchOutcome:
        registered = self._registry.get(hospital_id)
        if registered is None:
            logger.warning(f"Indexed hospital {hospital_id} is not registered; skipping")
            return FetchOutcome(
                hospital_id=hospital_id,
                hospital_name=hospital_id,
                status=BundleStatus.UNAVAILABLE,
                error="Hospital is not registered with the central hub",
            )

        if not registered.breaker.allow_request():
            return FetchOutcome(
                hospital_id=hospital_id,
                hospital_name=registered.name,
                status=BundleStatus.UNAVAILABLE,
                error="Hospital temporarily unavailable (circuit open)",
            )

        started = time.perf_counter()
        try:
            value = await asyncio.wait_for(fetch(registered.store), timeout=self._timeout)
        except asyncio.CancelledError:
            registered.breaker.release_trial()
            raise
        except asyncio.TimeoutError:
            registered.breaker.record_failure()
            logger.warning(f"Hospital {hospital_id} timed out after {self._timeout}s")
            return FetchOutcome(
                hospital_id=hospital_id,
                hospital_name=registered.name,
                status=BundleStatus.TIMEOUT,
                error=f"Timed out after {self._timeout:g}s",
                response_time_ms=_elapsed_ms(started),
            )
        except HospitalUnreachableError as e:
            registered.breaker.record_failure()
            logger.warning(f"Hospital {hospital_id} unreachable: {e}")
            return FetchOutcome(
                hospital_id=hospital_id,
                hospital_name=registered.name,
                status=BundleStatus.ERROR,
                error=str(e),
                response_time_ms=_elapsed_ms(started),
            )
        except Exception as e:
            registered.breaker.record_failure()
            logger.error(f"Fetch from hospital {hospital_id} failed: {e}", exc_info=True)
            return FetchOutcome(
                hospital_id=hospital_id,
                hospital_name=registered.name,
                status=BundleStatus.ERROR,
                error=f"{type(e).__name__}: {e}",
                response_time_ms=_elapsed_ms(started),
            )

        registered.breaker.record_success()
        return FetchOutcome(
            hospital_id=hospital_id,
            hospital_name=registered.name,
            status=BundleStatus.SUCCESS,
            value=value,
            response_time_ms=_elapsed_ms(started),
        )

    @staticmethod
    def _to_bundle(outcome: FetchOutcome, caller: CallerContext) -> HospitalRecordBundle:
        is_read_only = outcome.hospital_id != caller.home_hospital_id
        if not outcome.succeeded:
            return HospitalRecordBundle(
                hospital_id=outcome.hospital_id,
                hospital_name=outcome.hospital_name,
                is_read_only=is_read_only,
                source_hospital=outcome.hospital_name,
                fetch_error=outcome.error,
                status=outcome.status,
                response_time_ms=outcome.response_time_ms,
            )

        patient, records = outcome.value
        projected = [
            record.model_copy(update={
                "is_read_only": is_read_only,
                "source_hospital": outcome.hospital_name,
            })
            for record in records
        ]
        return HospitalRecordBundle(
            hospital_id=outcome.hospital_id,
            hospital_name=outcome.hospital_name,
            patient=patient,
            records=projected,
            record_count=len(projected),
            is_read_only=is_read_only,
            source_hospital=outcome.hospital_name,
            status=BundleStatus.SUCCESS,
            response_time_ms=outcome.response_time_ms,
        )
