"""Tests for the /central endpoints."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import PATIENT_IC
from medlink.domain.enums import ActorType, AuditAction, Role
from medlink.domain.models import AuditLogEntry
from medlink.domain.ports import Result, StorageError


@pytest.fixture
def doctor_headers(auth_headers):
    return auth_headers(Role.DOCTOR, user_id="doc-1", hospital_id="hospital-kl")


@pytest.fixture
def patient_headers(auth_headers):
    return auth_headers(Role.PATIENT, user_id="patient-1", ic_number=PATIENT_IC)


@pytest.fixture
def admin_headers(auth_headers):
    return auth_headers(Role.CENTRAL_ADMIN, user_id="admin-1")


class TestAuthentication:
    """Test suite for bearer token handling on protected endpoints."""

    def test_missing_token(self, client):
        response = client.get(f"/central/query/{PATIENT_IC}")

        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_token(self, client):
        response = client.get(f"/central/query/{PATIENT_IC}", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Could not validate credentials"


class TestQueryEndpoint:
    """Test suite for GET /central/query/{icNumber}."""

    def test_doctor_query(self, client, doctor_headers):
        response = client.get(f"/central/query/{PATIENT_IC}", headers=doctor_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["totalHospitalsQueried"] == 3
        assert data["totalHospitalsReachable"] == 3
        assert data["isComplete"] is True
        assert [r["id"] for r in data["timeline"]] == ["penang-1", "kl-1", "jb-1"]
        assert data["timeline"][0]["isReadOnly"] is True
        assert data["timeline"][1]["isReadOnly"] is False
        assert data["medicationCheck"] is None

    def test_query_with_medication_check(self, client, doctor_headers):
        response = client.get(
            f"/central/query/{PATIENT_IC}",
            params={"includeMedicationCheck": "true"},
            headers=doctor_headers,
        )

        check = response.json()["medicationCheck"]
        assert len(check["interactions"]) == 1
        assert check["interactions"][0]["severity"] == "high"

    def test_patient_may_query_self(self, client, patient_headers):
        response = client.get(f"/central/query/{PATIENT_IC}", headers=patient_headers)
        assert response.status_code == 200

    def test_patient_may_not_query_others(self, client, patient_headers):
        response = client.get("/central/query/900202-10-1111", headers=patient_headers)
        assert response.status_code == 403

    def test_hospital_admin_forbidden(self, client, auth_headers):
        headers = auth_headers(Role.HOSPITAL_ADMIN, hospital_id="hospital-kl")
        response = client.get(f"/central/query/{PATIENT_IC}", headers=headers)
        assert response.status_code == 403

    def test_audit_failure_returns_503(self, client, doctor_headers, federation):
        with patch.object(federation.central, "append", return_value=Result.failure_result("disk full")):
            response = client.get(f"/central/query/{PATIENT_IC}", headers=doctor_headers)

        assert response.status_code == 503
        assert "timeline" not in response.json()

    def test_unknown_patient_is_empty_not_404(self, client, doctor_headers):
        response = client.get("/central/query/000000-00-0000", headers=doctor_headers)

        assert response.status_code == 200
        assert response.json()["hospitals"] == []


class TestPatientSummaryEndpoint:
    """Test suite for GET /central/patient/{icNumber}."""

    def test_doctor_gets_summary(self, client, doctor_headers):
        response = client.get(f"/central/patient/{PATIENT_IC}", headers=doctor_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["hospitals"] == ["hospital-kl", "hospital-penang", "hospital-jb"]
        assert data["patient"]["fullName"] == "Ahmad bin Abdullah"
        assert "lastUpdated" in data
        assert "timeline" not in data

    def test_unknown_patient(self, client, doctor_headers):
        response = client.get("/central/patient/000000-00-0000", headers=doctor_headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "Patient not found in any hospital"

    def test_hospital_admin_forbidden(self, client, auth_headers):
        headers = auth_headers(Role.HOSPITAL_ADMIN, user_id="hadmin-1", hospital_id="hospital-kl")

        response = client.get(f"/central/patient/{PATIENT_IC}", headers=headers)

        assert response.status_code == 403


class TestMedicationCheckEndpoint:
    """Test suite for POST /central/medication-check/{icNumber}."""

    def test_without_body(self, client, doctor_headers):
        response = client.post(f"/central/medication-check/{PATIENT_IC}", headers=doctor_headers)

        assert response.status_code == 200
        assert response.json()["hospitalsConsulted"] == 3

    def test_with_candidate(self, client, doctor_headers):
        response = client.post(
            f"/central/medication-check/{PATIENT_IC}",
            json={"candidateMedication": "Plavix 75mg"},
            headers=doctor_headers,
        )

        interactions = response.json()["interactions"]
        assert any(i["hospitalA"] == "candidate" for i in interactions)


class TestPrivacyEndpoints:
    """Test suite for privacy settings."""

    def test_list_settings(self, client, patient_headers):
        response = client.get(f"/central/privacy/{PATIENT_IC}", headers=patient_headers)

        assert response.status_code == 200
        assert [s["hospitalId"] for s in response.json()] == ["hospital-kl", "hospital-penang", "hospital-jb"]

    def test_block_hospital_then_query_excludes_it(self, client, patient_headers, doctor_headers):
        response = client.post(
            f"/central/privacy/{PATIENT_IC}/hospital-penang",
            json={"isBlocked": True},
            headers=patient_headers,
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Penang General Hospital blocked"

        data = client.get(f"/central/query/{PATIENT_IC}", headers=doctor_headers).json()
        assert data["excludedHospitals"] == ["hospital-penang"]
        assert data["totalHospitalsQueried"] == 2

    def test_doctor_cannot_change_settings(self, client, doctor_headers):
        response = client.post(
            f"/central/privacy/{PATIENT_IC}/hospital-kl",
            json={"isBlocked": True},
            headers=doctor_headers,
        )
        assert response.status_code == 403

    def test_unknown_hospital(self, client, admin_headers):
        response = client.post(
            f"/central/privacy/{PATIENT_IC}/hospital-nowhere",
            json={"isBlocked": True},
            headers=admin_headers,
        )
        assert response.status_code == 404

    def test_missing_body_is_422(self, client, patient_headers):
        response = client.post(f"/central/privacy/{PATIENT_IC}/hospital-kl", headers=patient_headers)
        assert response.status_code == 422


class TestIndexEndpoints:
    """Test suite for the patient index endpoints."""

    def test_admin_reads_entry(self, client, admin_headers):
        response = client.get(f"/central/index/{PATIENT_IC}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["hospitalIds"] == ["hospital-kl", "hospital-penang", "hospital-jb"]

    def test_unknown_entry(self, client, admin_headers):
        response = client.get("/central/index/000000-00-0000", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "Patient not found in central index"

    def test_doctor_forbidden(self, client, doctor_headers):
        assert client.get(f"/central/index/{PATIENT_IC}", headers=doctor_headers).status_code == 403
        assert client.get("/central/indexes", headers=doctor_headers).status_code == 403

    def test_list_entries(self, client, admin_headers):
        response = client.get("/central/indexes", params={"limit": 10}, headers=admin_headers)

        assert response.status_code == 200
        assert [e["icNumber"] for e in response.json()] == [PATIENT_IC]

    def test_list_limit_validated(self, client, admin_headers):
        response = client.get("/central/indexes", params={"limit": 5000}, headers=admin_headers)
        assert response.status_code == 422


class TestAuditLogEndpoint:
    """Test suite for GET /central/audit-logs."""

    def test_admin_sees_entries(self, client, doctor_headers, admin_headers):
        client.get(f"/central/query/{PATIENT_IC}", headers=doctor_headers)

        response = client.get("/central/audit-logs", params={"actorId": "doc-1"}, headers=admin_headers)

        assert response.status_code == 200
        actions = sorted(e["action"] for e in response.json())
        assert actions == ["query", "view", "view", "view"]

    def test_hospital_admin_allowed(self, client, auth_headers):
        headers = auth_headers(Role.HOSPITAL_ADMIN, hospital_id="hospital-kl")
        assert client.get("/central/audit-logs", headers=headers).status_code == 200

    def test_doctor_forbidden(self, client, doctor_headers):
        assert client.get("/central/audit-logs", headers=doctor_headers).status_code == 403

    def test_invalid_date(self, client, admin_headers):
        response = client.get("/central/audit-logs", params={"startDate": "yesterday"}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid startDate format: yesterday"

    def test_mixed_naive_and_utc_dates(self, client, admin_headers):
        """Test that a naive startDate and a Z-suffixed endDate are compared, not a 500."""
        response = client.get(
            "/central/audit-logs",
            params={"startDate": "2024-01-01T00:00:00", "endDate": "2024-06-01T00:00:00Z"},
            headers=admin_headers,
        )

        assert response.status_code == 200

    def test_inverted_range(self, client, admin_headers):
        response = client.get(
            "/central/audit-logs",
            params={"startDate": "2024-06-01T00:00:00Z", "endDate": "2024-01-01T00:00:00Z"},
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert "startDate must not be after endDate" in response.json()["detail"]

    def test_large_limit_is_capped_not_rejected(self, client, admin_headers):
        response = client.get("/central/audit-logs", params={"limit": 5000}, headers=admin_headers)
        assert response.status_code == 200

    def test_storage_failure(self, client, admin_headers, federation):
        with patch.object(federation.central, "query", side_effect=StorageError("offline", operation="query")):
            response = client.get("/central/audit-logs", headers=admin_headers)

        assert response.status_code == 503


class TestMyAccessLogs:
    """Test suite for GET /central/my-access-logs."""

    def test_requires_ic(self, client, doctor_headers):
        response = client.get("/central/my-access-logs", headers=doctor_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "User IC number not found"

    def test_excludes_own_actions_and_collapses_repeats(self, client, federation, patient_headers):
        now = datetime.now(timezone.utc)
        entries = [
            AuditLogEntry(action=AuditAction.VIEW, actor_id="doc-7", actor_type=ActorType.DOCTOR,
                          actor_hospital_id="hospital-penang", target_ic_number=PATIENT_IC,
                          timestamp=now - timedelta(minutes=1)),
            AuditLogEntry(action=AuditAction.VIEW, actor_id="doc-7", actor_type=ActorType.DOCTOR,
                          actor_hospital_id="hospital-penang", target_ic_number=PATIENT_IC,
                          timestamp=now - timedelta(minutes=2)),
            AuditLogEntry(action=AuditAction.QUERY, actor_id="patient-1", actor_type=ActorType.PATIENT,
                          target_ic_number=PATIENT_IC, timestamp=now - timedelta(minutes=3)),
            AuditLogEntry(action=AuditAction.EMERGENCY_ACCESS, actor_id="anonymous",
                          actor_type=ActorType.SYSTEM, target_ic_number=PATIENT_IC,
                          timestamp=now - timedelta(hours=1)),
        ]
        for entry in entries:
            federation.central.append(entry)

        response = client.get("/central/my-access-logs", headers=patient_headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 2
        assert data[0]["actorName"] == "Doctor doc-7"
        assert data[0]["hospitalName"] == "Penang General Hospital"
        assert data[0]["occurrences"] == 2
        assert data[1]["actorName"] == "Emergency Services"
        assert data[1]["hospitalName"] == "Unknown Hospital"


class TestMyActivityLogs:
    """Test suite for GET /central/my-activity-logs."""

    @pytest.fixture
    def seeded(self, federation):
        now = datetime.now(timezone.utc)
        entries = [
            AuditLogEntry(action=AuditAction.VIEW, actor_id="doc-1", actor_type=ActorType.DOCTOR,
                          actor_hospital_id="hospital-kl", target_ic_number=PATIENT_IC,
                          target_hospital_id="hospital-penang", timestamp=now - timedelta(minutes=1)),
            AuditLogEntry(action=AuditAction.VIEW, actor_id="doc-1", actor_type=ActorType.DOCTOR,
                          actor_hospital_id="hospital-kl", target_ic_number=PATIENT_IC,
                          target_hospital_id="hospital-jb", timestamp=now - timedelta(minutes=2)),
            AuditLogEntry(action=AuditAction.LOGIN, actor_id="doc-1", actor_type=ActorType.DOCTOR,
                          actor_hospital_id="hospital-kl", timestamp=now - timedelta(minutes=3)),
            AuditLogEntry(action=AuditAction.QUERY, actor_id="doc-1", actor_type=ActorType.DOCTOR,
                          actor_hospital_id="hospital-kl", target_ic_number="000000-00-0000",
                          timestamp=now - timedelta(hours=1)),
            AuditLogEntry(action=AuditAction.VIEW, actor_id="doc-2", actor_type=ActorType.DOCTOR,
                          target_ic_number=PATIENT_IC, timestamp=now),
        ]
        for entry in entries:
            federation.central.append(entry)

    def test_lists_own_patient_actions(self, client, doctor_headers, seeded):
        """Test that session entries are dropped and repeats on one patient collapse."""
        response = client.get("/central/my-activity-logs", headers=doctor_headers)

        assert response.status_code == 200
        data = response.json()
        assert [d["action"] for d in data] == ["view", "query"]
        assert data[0]["patientName"] == "Ahmad bin Abdullah"
        assert data[0]["occurrences"] == 2
        assert data[1]["patientName"] == "Unknown Patient"
        assert all(d["actorId"] == "doc-1" for d in data)

    def test_limit(self, client, doctor_headers, seeded):
        response = client.get("/central/my-activity-logs?limit=1", headers=doctor_headers)

        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_unreachable_hospital_falls_back_to_unknown_name(self, client, federation, doctor_headers,
                                                            scenario_stores, seeded):
        scenario_stores["hospital-kl"].error = RuntimeError("down")

        response = client.get("/central/my-activity-logs", headers=doctor_headers)

        assert response.status_code == 200
        assert response.json()[0]["patientName"] == "Unknown Patient"

    def test_storage_failure(self, client, federation, doctor_headers):
        with patch.object(federation.central, "query", side_effect=StorageError("offline", operation="query")):
            response = client.get("/central/my-activity-logs", headers=doctor_headers)

        assert response.status_code == 503


class TestPublicEndpoints:
    """Test suite for the unauthenticated hub endpoints."""

    def test_hospitals(self, client):
        response = client.get("/central/hospitals")

        assert response.status_code == 200
        assert [h["id"] for h in response.json()] == ["hospital-kl", "hospital-penang", "hospital-jb"]

    def test_stats(self, client, doctor_headers):
        client.get(f"/central/query/{PATIENT_IC}", headers=doctor_headers)

        response = client.get("/central/stats")

        assert response.status_code == 200
        stats = response.json()
        assert stats["totalPatients"] == 1
        assert stats["totalHospitals"] == 3
        assert stats["queriesToday"] == 1
        assert stats["totalAuditLogs"] == 4
        assert stats["emergencyAccessesToday"] == 0

    def test_stats_unavailable(self, client, federation):
        with patch.object(federation.central, "count", side_effect=StorageError("offline", operation="count")):
            response = client.get("/central/stats")

        assert response.status_code == 503

    def test_security_headers(self, client):
        response = client.get("/central/hospitals")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"
        assert "X-Process-Time" in response.headers
