"""Tests for the health endpoint, bearer tokens and log masking."""

import json
import logging
from datetime import timedelta
from unittest.mock import patch

import pytest
from jose import jwt

from medlink.api.auth import (
    InvalidTokenError,
    caller_from_token,
    create_access_token,
    decode_access_token,
)
from medlink.api.logging_config import ICMaskingFilter, StructuredFormatter, mask_ic_numbers
from medlink.domain.enums import Role
from medlink.domain.ports import HospitalUnreachableError
from medlink.infrastructure.config_manager import AuthConfig


class TestHealthEndpoint:
    """Test suite for GET /api/health."""

    def test_healthy(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["centralStore"] is True
        assert len(data["hospitals"]) == 3
        assert data["indexSyncFailures"] == 0

    def test_unreachable_hospital_degrades(self, client, scenario_stores):
        scenario_stores["hospital-jb"].error = HospitalUnreachableError("down", "hospital-jb")

        data = client.get("/api/health").json()

        assert data["status"] == "degraded"
        jb = next(h for h in data["hospitals"] if h["hospitalId"] == "hospital-jb")
        assert jb["reachable"] is False

    def test_central_down_is_unhealthy(self, client, federation):
        with patch.object(federation.central, "ping", return_value=False):
            data = client.get("/api/health").json()

        assert data["status"] == "unhealthy"

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/api/health"


class TestTokens:
    """Test suite for token issue and verification."""

    @pytest.fixture
    def auth_config(self):
        return AuthConfig(jwt_secret="unit-test-secret")

    def test_round_trip_claims(self, auth_config):
        token = create_access_token(auth_config, "doc-1", Role.DOCTOR, hospital_id="hospital-kl")

        caller = caller_from_token(token, auth_config, ip_address="10.0.0.9")

        assert caller.user_id == "doc-1"
        assert caller.role == Role.DOCTOR
        assert caller.home_hospital_id == "hospital-kl"
        assert caller.ic_number is None
        assert caller.ip_address == "10.0.0.9"

    def test_expired_token(self, auth_config):
        token = create_access_token(auth_config, "doc-1", Role.DOCTOR, expires_delta=timedelta(seconds=-5))

        with pytest.raises(InvalidTokenError):
            decode_access_token(token, auth_config)

    def test_wrong_secret(self, auth_config):
        token = create_access_token(AuthConfig(jwt_secret="other"), "doc-1", Role.DOCTOR)

        with pytest.raises(InvalidTokenError):
            caller_from_token(token, auth_config)

    def test_unknown_role(self, auth_config):
        token = jwt.encode({"sub": "x", "role": "superuser"}, "unit-test-secret", algorithm="HS256")

        with pytest.raises(InvalidTokenError, match="Unknown role"):
            caller_from_token(token, auth_config)

    def test_missing_subject(self, auth_config):
        token = jwt.encode({"role": "doctor"}, "unit-test-secret", algorithm="HS256")

        with pytest.raises(InvalidTokenError, match="no subject"):
            caller_from_token(token, auth_config)


class TestICMasking:
    """Test suite for IC masking in logs."""

    @pytest.mark.parametrize("text, expected", [
        ("GET /central/query/880101-14-5678", "GET /central/query/880101******"),
        ("ic=880101145678 done", "ic=880101****** done"),
        ("no identifiers here", "no identifiers here"),
    ])
    def test_mask_ic_numbers(self, text, expected):
        assert mask_ic_numbers(text) == expected

    def test_filter_masks_formatted_args(self):
        record = logging.LogRecord("medlink", logging.INFO, __file__, 1,
                                   "Query for %s", ("880101-14-5678",), None)

        assert ICMaskingFilter().filter(record)
        assert record.getMessage() == "Query for 880101******"

    def test_structured_formatter(self):
        record = logging.LogRecord("medlink", logging.WARNING, __file__, 7, "hello", None, None)

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["message"] == "hello"
        assert data["logger"] == "medlink"
