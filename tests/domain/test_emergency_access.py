"""Tests for emergency access through the orchestrator."""

from unittest.mock import patch

import pytest

from conftest import PATIENT_IC, doctor
from medlink.domain.enums import ActorType, AuditAction
from medlink.domain.models import AuditLogFilter
from medlink.domain.ports import AuditWriteError, HospitalUnreachableError, Result, StorageError
from medlink.infrastructure.audit.audit_trail import ANONYMOUS_ACTOR_ID


def emergency_entries(central, ic_number=PATIENT_IC):
    return [
        e for e in central.query(AuditLogFilter(target_ic_number=ic_number, limit=1000))
        if e.action == AuditAction.EMERGENCY_ACCESS
    ]


class TestEmergencyQuery:
    """Test suite for the critical-information-only emergency query."""

    @pytest.mark.asyncio
    async def test_anonymous_caller_gets_critical_information(self, scenario):
        """Test that an anonymous caller receives the merged critical fields."""
        result = await scenario.emergency_query(PATIENT_IC, caller=None, ip_address="203.0.113.9")

        assert result.found
        assert result.full_name == "Ahmad bin Abdullah"
        assert result.blood_type == "O+"
        assert result.emergency_contact == "Siti binti Ahmad"
        assert result.emergency_phone == "+60123456789"
        assert result.hospitals_with_records == 3
        assert result.total_hospitals_reachable == 3
        assert result.access_type == "emergency"

    @pytest.mark.asyncio
    async def test_allergies_and_conditions_are_merged_case_insensitively(self, scenario):
        """Test that 'Penicillin' and 'penicillin' collapse to one entry."""
        result = await scenario.emergency_query(PATIENT_IC)

        assert result.allergies == ["Penicillin", "Sulfa"]
        assert result.chronic_conditions == ["Hypertension", "Type 2 Diabetes"]

    @pytest.mark.asyncio
    async def test_result_carries_no_visit_history(self, scenario):
        """Test that the emergency result exposes no records or timeline."""
        result = await scenario.emergency_query(PATIENT_IC)

        dumped = result.model_dump()
        assert "timeline" not in dumped
        assert "records" not in dumped
        assert "hospitals" not in dumped

    @pytest.mark.asyncio
    async def test_consent_blocks_are_overridden_and_reported(self, scenario, scenario_stores, central):
        """Test that blocked hospitals are still consulted and listed."""
        central.set_blocked(PATIENT_IC, "hospital-penang", True)

        result = await scenario.emergency_query(PATIENT_IC)

        assert result.consent_overridden_hospitals == ["hospital-penang"]
        assert scenario_stores["hospital-penang"].contacted
        assert "Sulfa" in result.allergies
        assert "privacy overridden for hospital-penang" in emergency_entries(central)[0].details

    @pytest.mark.asyncio
    async def test_exactly_one_audit_entry_for_anonymous_access(self, scenario, central):
        """Test a single emergency_access entry attributed to the system actor."""
        await scenario.emergency_query(
            PATIENT_IC, caller=None, reason="Unconscious patient in A&E", ip_address="203.0.113.9"
        )

        entries = emergency_entries(central)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.actor_id == ANONYMOUS_ACTOR_ID
        assert entry.actor_type == ActorType.SYSTEM
        assert entry.ip_address == "203.0.113.9"
        assert entry.success
        assert "Reason: Unconscious patient in A&E" in entry.details

    @pytest.mark.asyncio
    async def test_authenticated_caller_is_attributed(self, scenario, central):
        """Test that an authenticated caller is recorded as the actor."""
        await scenario.emergency_query(PATIENT_IC, caller=doctor("hospital-jb", user_id="doc-er"))

        entry = emergency_entries(central)[0]
        assert entry.actor_id == "doc-er"
        assert entry.actor_type == ActorType.DOCTOR
        assert entry.actor_hospital_id == "hospital-jb"

    @pytest.mark.asyncio
    async def test_patient_not_found_is_still_audited(self, scenario, central):
        """Test that a miss returns found=False and writes one entry."""
        result = await scenario.emergency_query("000000-00-0000")

        assert not result.found
        assert result.full_name is None
        entries = emergency_entries(central, "000000-00-0000")
        assert len(entries) == 1
        assert "patient not found" in entries[0].details

    @pytest.mark.asyncio
    async def test_unreachable_hospitals_are_tolerated(self, scenario, scenario_stores):
        """Test that one unreachable hospital only narrows the merged fields."""
        scenario_stores["hospital-penang"].error = HospitalUnreachableError("down", "hospital-penang")

        result = await scenario.emergency_query(PATIENT_IC)

        assert result.found
        assert result.total_hospitals_reachable == 2
        assert "Sulfa" not in result.allergies

    @pytest.mark.asyncio
    async def test_lookup_failure_is_audited_as_failed_and_reraised(self, scenario, central):
        """Test that a storage failure still yields one failed emergency entry."""
        with patch.object(central, "lookup", side_effect=StorageError("index offline", operation="lookup")):
            with pytest.raises(StorageError):
                await scenario.emergency_query(PATIENT_IC)

        entries = emergency_entries(central)
        assert len(entries) == 1
        assert entries[0].success is False

    @pytest.mark.asyncio
    async def test_emergency_access_aborts_without_audit(self, scenario, central):
        """Test that emergency data is withheld when its entry cannot be written."""
        with patch.object(central, "append", return_value=Result.failure_result("audit disk full")):
            with pytest.raises(AuditWriteError):
                await scenario.emergency_query(PATIENT_IC)
