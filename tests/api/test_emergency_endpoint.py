"""Tests for POST /emergency/query/{icNumber}."""

from conftest import PATIENT_IC
from medlink.domain.enums import AuditAction, Role
from medlink.domain.models import AuditLogFilter


def emergency_entries(federation):
    return [
        e for e in federation.central.query(AuditLogFilter(target_ic_number=PATIENT_IC))
        if e.action == AuditAction.EMERGENCY_ACCESS
    ]


class TestEmergencyEndpoint:
    """Test suite for anonymous and authenticated emergency access."""

    def test_anonymous_access(self, client, federation):
        response = client.post(
            f"/emergency/query/{PATIENT_IC}",
            json={"reason": "Road traffic accident"},
            headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["found"] is True
        assert data["bloodType"] == "O+"
        assert data["allergies"] == ["Penicillin", "Sulfa"]
        assert data["accessType"] == "emergency"
        assert "timeline" not in data

        [entry] = emergency_entries(federation)
        assert entry.actor_id == "anonymous"
        assert entry.ip_address == "203.0.113.9"
        assert "Road traffic accident" in entry.details

    def test_without_body(self, client):
        response = client.post(f"/emergency/query/{PATIENT_IC}")
        assert response.status_code == 200

    def test_authenticated_caller_is_recorded(self, client, federation, auth_headers):
        headers = auth_headers(Role.DOCTOR, user_id="doc-er", hospital_id="hospital-jb")

        response = client.post(f"/emergency/query/{PATIENT_IC}", headers=headers)

        assert response.status_code == 200
        [entry] = emergency_entries(federation)
        assert entry.actor_id == "doc-er"

    def test_invalid_token_is_still_rejected(self, client):
        response = client.post(f"/emergency/query/{PATIENT_IC}", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401

    def test_not_found(self, client):
        response = client.post("/emergency/query/000000-00-0000")

        assert response.status_code == 200
        assert response.json()["found"] is False

    def test_reason_too_long(self, client):
        response = client.post(f"/emergency/query/{PATIENT_IC}", json={"reason": "x" * 1001})
        assert response.status_code == 422

    def test_rate_limited_per_client(self, client):
        """Test one emergency lookup per client per minute."""
        first = client.post(f"/emergency/query/{PATIENT_IC}")
        second = client.post(f"/emergency/query/{PATIENT_IC}")

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["detail"] == "Rate limit exceeded. Please try again later."
        assert int(second.headers["Retry-After"]) >= 1

    def test_rate_limit_is_per_address(self, client):
        first = client.post(f"/emergency/query/{PATIENT_IC}", headers={"X-Forwarded-For": "198.51.100.1"})
        second = client.post(f"/emergency/query/{PATIENT_IC}", headers={"X-Forwarded-For": "198.51.100.2"})

        assert first.status_code == 200
        assert second.status_code == 200
