"""Index synchronization after hospital writes.

When a hospital registers a patient or persists a visit record, the central
patient index must learn that this hospital now holds data for that IC number.
The update is awaited right after the hospital write but is best-effort: a
failure is logged, counted and audited, and never undoes or blocks the
hospital write. A change to the index is audited as an `update` by the
`index-sync` system actor.
"""

import asyncio
import logging
from threading import Lock
from typing import Optional

from medlink.domain.enums import AuditAction
from medlink.domain.models import MedicalRecord, Patient
from medlink.domain.ports import HospitalWriterPort, PatientIndexPort, Result, mask_ic
from medlink.infrastructure.audit.audit_trail import INDEX_SYNC_ACTOR_ID, AuditTrail

logger = logging.getLogger(__name__)


class IndexSynchronizer:
    """Pushes hospital membership into the central patient index.

    Example Usage:
        ```python
        sync = IndexSynchronizer(central_store, AuditTrail(central_store))
        result = await sync.save_record(kl_store, record)
        # result reflects the hospital write; index failures are counted
        # in sync.failure_count and never surface here
        ```
    """

    def __init__(self, index: PatientIndexPort, audit_trail: Optional[AuditTrail] = None):
        self._index = index
        self._audit = audit_trail
        self._lock = Lock()
        self._failures = 0
        self._updates = 0

    async def save_patient(self, store: HospitalWriterPort, patient: Patient) -> Result[str]:
        """Register a patient at a hospital, then update the index."""
        result = await store.save_patient(patient)
        if result.is_success():
            await self.on_record_persisted(patient.ic_number, store.hospital_id)
        return result

    async def save_record(self, store: HospitalWriterPort, record: MedicalRecord) -> Result[str]:
        """Persist a visit record at a hospital, then update the index."""
        result = await store.save_record(record)
        if result.is_success():
            await self.on_record_persisted(record.ic_number, store.hospital_id)
        return result

    async def on_record_persisted(self, ic_number: str, hospital_id: str) -> Result[bool]:
        """Record that ``hospital_id`` now holds data for ``ic_number``.

        Returns:
            Result[bool]: True when the index changed, False when it already
                listed the hospital, or a failure (never raised)
        """
        try:
            result = await asyncio.to_thread(self._index.record_hospital, ic_number, hospital_id)
        except Exception as e:
            logger.error(
                f"Index update for {mask_ic(ic_number)} at {hospital_id} raised: {e}",
                exc_info=True,
            )
            result = Result.failure_result(
                e,
                error_type="StorageError",
                error_details={"hospital_id": hospital_id},
            )

        if result.is_success():
            with self._lock:
                self._updates += 1
            if result.value:
                logger.info(f"Patient index: {mask_ic(ic_number)} now includes {hospital_id}")
                await self._audit_update(
                    ic_number,
                    hospital_id,
                    details=f"Patient index: {hospital_id} added",
                    success=True,
                )
            return result

        with self._lock:
            self._failures += 1
        logger.error(
            f"Patient index update failed for {mask_ic(ic_number)} at {hospital_id}: {result.error}"
        )
        await self._audit_update(
            ic_number,
            hospital_id,
            details=f"Patient index update failed: {result.error}",
            success=False,
        )
        return result

    async def _audit_update(self, ic_number: str, hospital_id: str, details: str, success: bool) -> None:
        if self._audit is None:
            return
        # `update` is best-effort: this never raises
        await asyncio.to_thread(
            self._audit.record,
            AuditAction.UPDATE,
            None,
            target_ic_number=ic_number,
            target_hospital_id=hospital_id,
            details=details,
            success=success,
            system_actor=INDEX_SYNC_ACTOR_ID,
        )

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failures

    def get_statistics(self) -> dict:
        with self._lock:
            return {
                'updates': self._updates,
                'failures': self._failures,
            }
