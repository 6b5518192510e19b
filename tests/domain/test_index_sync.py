"""Tests for IndexSynchronizer."""

import asyncio
from unittest.mock import patch

import pytest

from conftest import PATIENT_IC, make_patient, make_record, utc
from medlink.adapters.storage import DuckDBHospitalAdapter
from medlink.domain.enums import ActorType, AuditAction
from medlink.domain.models import AuditLogFilter
from medlink.domain.ports import Result
from medlink.domain.services import IndexSynchronizer
from medlink.infrastructure.audit.audit_trail import INDEX_SYNC_ACTOR_ID


@pytest.fixture
def kl_store():
    store = DuckDBHospitalAdapter("hospital-kl")
    store.initialize_schema()
    yield store
    store.close()


@pytest.fixture
def sync(central, audit_trail):
    return IndexSynchronizer(central, audit_trail)


class TestIndexSynchronizer:
    """Test suite for index updates after hospital writes."""

    @pytest.mark.asyncio
    async def test_saving_patient_indexes_hospital(self, sync, kl_store, central):
        result = await sync.save_patient(kl_store, make_patient())

        assert result.is_success()
        assert central.lookup(PATIENT_IC).hospital_ids == ["hospital-kl"]

    @pytest.mark.asyncio
    async def test_saving_record_is_idempotent_in_index(self, sync, kl_store, central):
        """Test that repeated writes never duplicate a hospital in the index."""
        await sync.save_record(kl_store, make_record("hospital-kl", utc(2024, 1, 1)))
        await sync.save_record(kl_store, make_record("hospital-kl", utc(2024, 2, 1)))

        assert central.lookup(PATIENT_IC).hospital_ids == ["hospital-kl"]
        assert sync.get_statistics() == {'updates': 2, 'failures': 0}

    @pytest.mark.asyncio
    async def test_index_change_is_audited(self, sync, kl_store, central):
        """Test that adding a hospital to the index leaves one system update entry."""
        await sync.save_patient(kl_store, make_patient())

        [entry] = central.query(AuditLogFilter(target_ic_number=PATIENT_IC))
        assert entry.action == AuditAction.UPDATE
        assert entry.actor_type == ActorType.SYSTEM
        assert entry.actor_id == INDEX_SYNC_ACTOR_ID
        assert entry.target_hospital_id == "hospital-kl"
        assert entry.success is True

    @pytest.mark.asyncio
    async def test_unchanged_index_is_not_audited(self, sync, kl_store, central):
        await sync.save_patient(kl_store, make_patient())
        await sync.save_record(kl_store, make_record("hospital-kl", utc(2024, 1, 1)))

        assert len(central.query(AuditLogFilter(target_ic_number=PATIENT_IC))) == 1

    @pytest.mark.asyncio
    async def test_failed_hospital_write_does_not_touch_index(self, sync, kl_store, central):
        """Test that a record rejected by the hospital is not indexed."""
        result = await sync.save_record(kl_store, make_record("hospital-penang", utc(2024, 1, 1)))

        assert result.is_failure()
        assert central.lookup(PATIENT_IC) is None

    @pytest.mark.asyncio
    async def test_index_failure_never_undoes_hospital_write(self, sync, kl_store, central):
        """Test that an index failure is counted and audited, not raised."""
        failure = Result.failure_result("central offline", error_type="StorageError")
        with patch.object(central, "record_hospital", return_value=failure):
            result = await sync.save_record(
                kl_store, make_record("hospital-kl", utc(2024, 1, 1), record_id="kl-9")
            )

        assert result.is_success()
        assert result.value == "kl-9"
        assert sync.failure_count == 1
        assert len(await kl_store.get_records_by_patient(PATIENT_IC)) == 1

        entries = central.query(AuditLogFilter(target_ic_number=PATIENT_IC))
        assert len(entries) == 1
        assert entries[0].action == AuditAction.UPDATE
        assert entries[0].actor_type == ActorType.SYSTEM
        assert entries[0].success is False

    @pytest.mark.asyncio
    async def test_index_exception_is_contained(self, sync, central):
        with patch.object(central, "record_hospital", side_effect=RuntimeError("boom")):
            result = await sync.on_record_persisted(PATIENT_IC, "hospital-kl")

        assert result.is_failure()
        assert sync.failure_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_updates_keep_every_hospital(self, sync, central):
        """Test that concurrent writers for the same IC never lose a hospital."""
        hospitals = ["hospital-kl", "hospital-penang", "hospital-jb", "hospital-kuching", "hospital-kk"]

        await asyncio.gather(*(sync.on_record_persisted(PATIENT_IC, h) for h in hospitals))

        entry = central.lookup(PATIENT_IC)
        assert sorted(entry.hospital_ids) == sorted(hospitals)
        assert sync.failure_count == 0
