"""Tests for DuckDBHospitalAdapter."""

from datetime import datetime

import pytest

from conftest import PATIENT_IC, make_patient, make_record
from medlink.adapters.storage import DuckDBHospitalAdapter
from medlink.domain.enums import VisitType
from medlink.domain.models import LabReport, Prescription, VitalSigns
from medlink.domain.ports import HospitalUnreachableError


@pytest.fixture
def store():
    adapter = DuckDBHospitalAdapter("hospital-kl")
    adapter.initialize_schema()
    yield adapter
    adapter.close()


class TestPatients:
    """Test suite for patient reads and writes."""

    @pytest.mark.asyncio
    async def test_unknown_patient(self, store):
        assert await store.get_patient(PATIENT_IC) is None

    @pytest.mark.asyncio
    async def test_save_and_read_patient(self, store):
        result = await store.save_patient(make_patient(allergies=["Penicillin", "Sulfa"]))

        assert result.is_success()
        patient = await store.get_patient(PATIENT_IC)
        assert patient.full_name == "Ahmad bin Abdullah"
        assert patient.blood_type == "O+"
        assert patient.allergies == ["Penicillin", "Sulfa"]
        assert patient.chronic_conditions == ["Hypertension"]
        assert store.count_patients() == 1

    @pytest.mark.asyncio
    async def test_save_patient_twice_updates(self, store):
        await store.save_patient(make_patient())
        await store.save_patient(make_patient(blood_type="A-"))

        assert (await store.get_patient(PATIENT_IC)).blood_type == "A-"
        assert store.count_patients() == 1


class TestRecords:
    """Test suite for visit records with prescriptions and labs."""

    @pytest.mark.asyncio
    async def test_record_round_trip_with_children(self, store):
        record = make_record(
            "hospital-kl",
            datetime(2024, 3, 1, 9, 30),
            medications=("Aspirin 100mg", "Atorvastatin 20mg"),
            visit_type=VisitType.INPATIENT,
            vital_signs=VitalSigns(heart_rate=72, temperature=36.8),
            lab_reports=[LabReport(test_name="HbA1c", result="6.1", unit="%")],
            diagnosis_codes=["I10"],
        )
        assert (await store.save_record(record)).is_success()

        [read_back] = await store.get_records_by_patient(PATIENT_IC)

        assert read_back.id == record.id
        assert read_back.visit_type == VisitType.INPATIENT
        assert read_back.visit_date == datetime(2024, 3, 1, 9, 30)
        assert [p.medication_name for p in read_back.prescriptions] == ["Aspirin 100mg", "Atorvastatin 20mg"]
        assert read_back.prescriptions[0].record_id == record.id
        assert read_back.lab_reports[0].test_name == "HbA1c"
        assert read_back.vital_signs.heart_rate == 72
        assert read_back.diagnosis_codes == ["I10"]
        assert read_back.is_read_only is False
        assert read_back.source_hospital is None

    @pytest.mark.asyncio
    async def test_records_newest_first(self, store):
        await store.save_record(make_record("hospital-kl", datetime(2023, 1, 1), record_id="old"))
        await store.save_record(make_record("hospital-kl", datetime(2024, 1, 1), record_id="new"))

        assert [r.id for r in await store.get_records_by_patient(PATIENT_IC)] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_rejects_record_for_other_hospital(self, store):
        result = await store.save_record(make_record("hospital-jb", datetime(2024, 1, 1)))

        assert result.is_failure()
        assert result.error_type == "StorageError"
        assert await store.get_records_by_patient(PATIENT_IC) == []

    @pytest.mark.asyncio
    async def test_resaving_record_replaces_children(self, store):
        record = make_record("hospital-kl", datetime(2024, 1, 1), medications=("Aspirin 100mg",))
        await store.save_record(record)
        await store.save_record(record.model_copy(update={
            "prescriptions": [Prescription(medication_name="Clopidogrel 75mg")],
        }))

        [read_back] = await store.get_records_by_patient(PATIENT_IC)
        assert [p.medication_name for p in read_back.prescriptions] == ["Clopidogrel 75mg"]


class TestActivePrescriptions:
    """Test suite for the active-prescriptions read."""

    @pytest.mark.asyncio
    async def test_only_active_prescriptions(self, store):
        record = make_record("hospital-kl", datetime(2024, 1, 1), medications=("Aspirin 100mg", "Ibuprofen 400mg"))
        await store.save_record(record)

        result = await store.deactivate_prescription(record.prescriptions[1].id)

        assert result.value is True
        active = await store.get_active_prescriptions(PATIENT_IC)
        assert [p.medication_name for p in active] == ["Aspirin 100mg"]

    @pytest.mark.asyncio
    async def test_deactivate_unknown_prescription(self, store):
        result = await store.deactivate_prescription("missing")
        assert result.is_success()
        assert result.value is False


class TestLifecycle:
    """Test suite for reachability."""

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping()

    @pytest.mark.asyncio
    async def test_closed_store_is_unreachable(self):
        adapter = DuckDBHospitalAdapter("hospital-kl")
        adapter.initialize_schema()
        adapter.close()

        assert not await adapter.ping()
        with pytest.raises(HospitalUnreachableError) as exc_info:
            await adapter.get_patient(PATIENT_IC)
        assert exc_info.value.hospital_id == "hospital-kl"

    @pytest.mark.asyncio
    async def test_stores_are_isolated(self):
        kl = DuckDBHospitalAdapter("hospital-kl")
        jb = DuckDBHospitalAdapter("hospital-jb")
        try:
            await kl.save_patient(make_patient())
            assert await jb.get_patient(PATIENT_IC) is None
        finally:
            kl.close()
            jb.close()
