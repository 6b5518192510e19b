"""Shared fixtures for the MedLink test suite.

Hospital stores are faked where timing or failures matter; the central store
is always a real in-memory DuckDB database.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from medlink.adapters.storage import DuckDBCentralAdapter
from medlink.api.auth import create_access_token
from medlink.api.dependencies import get_federation
from medlink.api.main import create_app
from medlink.domain.enums import Role, VisitType
from medlink.domain.guardrails import CircuitBreakerConfig
from medlink.domain.models import (
    CallerContext,
    Hospital,
    MedicalRecord,
    Patient,
    Prescription,
)
from medlink.domain.ports import HospitalStorePort
from medlink.domain.registry import HospitalRegistry
from medlink.domain.services import FederatedQueryOrchestrator, MedicationCrossCheck
from medlink.infrastructure.audit import AuditTrail
from medlink.infrastructure.config_manager import ConfigManager
from medlink.infrastructure.settings import Settings
from medlink.main import Federation

PATIENT_IC = "880101-14-5678"

HOSPITALS = {
    "hospital-kl": "Kuala Lumpur General Hospital",
    "hospital-penang": "Penang General Hospital",
    "hospital-jb": "Sultanah Aminah Hospital",
    "hospital-kuching": "Sarawak General Hospital",
    "hospital-kk": "Queen Elizabeth Hospital",
}


class FakeHospitalStore(HospitalStorePort):
    """In-memory hospital store with optional latency and failures.

    ``calls`` records every (operation, ic_number) the orchestrator made.
    """

    def __init__(
        self,
        hospital_id: str,
        patients: Optional[dict] = None,
        records: Optional[list] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self._hospital_id = hospital_id
        self.patients = dict(patients or {})
        self.records = list(records or [])
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.cancelled = False

    @property
    def hospital_id(self) -> str:
        return self._hospital_id

    async def _respond(self, operation: str, ic_number: str):
        self.calls.append((operation, ic_number))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error

    async def get_patient(self, ic_number: str) -> Optional[Patient]:
        await self._respond("get_patient", ic_number)
        return self.patients.get(ic_number)

    async def get_records_by_patient(self, ic_number: str) -> list[MedicalRecord]:
        await self._respond("get_records_by_patient", ic_number)
        return [r for r in self.records if r.ic_number == ic_number]

    async def get_active_prescriptions(self, ic_number: str) -> list[Prescription]:
        await self._respond("get_active_prescriptions", ic_number)
        return [
            p for r in self.records if r.ic_number == ic_number
            for p in r.prescriptions if p.is_active
        ]

    async def ping(self) -> bool:
        return self.error is None

    @property
    def contacted(self) -> bool:
        return bool(self.calls)


def make_patient(ic_number: str = PATIENT_IC, **overrides) -> Patient:
    data = {
        "ic_number": ic_number,
        "full_name": "Ahmad bin Abdullah",
        "blood_type": "O+",
        "allergies": ["Penicillin"],
        "chronic_conditions": ["Hypertension"],
        "emergency_contact": "Siti binti Ahmad",
        "emergency_phone": "+60123456789",
    }
    data.update(overrides)
    return Patient(**data)


def make_record(
    hospital_id: str,
    visit_date: datetime,
    ic_number: str = PATIENT_IC,
    medications: tuple = (),
    record_id: Optional[str] = None,
    **overrides,
) -> MedicalRecord:
    data = {
        "ic_number": ic_number,
        "hospital_id": hospital_id,
        "doctor_id": f"doc-{hospital_id}",
        "visit_date": visit_date,
        "visit_type": VisitType.OUTPATIENT,
        "chief_complaint": "Follow-up",
        "diagnosis": ["Hypertension"],
        "prescriptions": [Prescription(medication_name=m) for m in medications],
    }
    if record_id:
        data["id"] = record_id
    data.update(overrides)
    return MedicalRecord(**data)


def utc(year: int, month: int, day: int, hour: int = 9) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def doctor(hospital_id: str = "hospital-kl", user_id: str = "doc-1") -> CallerContext:
    return CallerContext(user_id=user_id, role=Role.DOCTOR, home_hospital_id=hospital_id, ip_address="10.0.0.1")


def patient_caller(ic_number: str = PATIENT_IC, user_id: str = "patient-1") -> CallerContext:
    return CallerContext(user_id=user_id, role=Role.PATIENT, ic_number=ic_number, ip_address="10.0.0.2")


def central_admin(user_id: str = "admin-1") -> CallerContext:
    return CallerContext(user_id=user_id, role=Role.CENTRAL_ADMIN, ip_address="10.0.0.3")


def hospital_admin(hospital_id: str = "hospital-kl", user_id: str = "hadmin-1") -> CallerContext:
    return CallerContext(user_id=user_id, role=Role.HOSPITAL_ADMIN, home_hospital_id=hospital_id)


def build_registry(stores: list, breaker_config: Optional[CircuitBreakerConfig] = None) -> HospitalRegistry:
    registry = HospitalRegistry(breaker_config)
    for store in stores:
        registry.register(
            Hospital(id=store.hospital_id, name=HOSPITALS.get(store.hospital_id, store.hospital_id)),
            store,
        )
    return registry


@pytest.fixture
def central():
    """Real in-memory central store."""
    adapter = DuckDBCentralAdapter()
    adapter.initialize_schema()
    yield adapter
    adapter.close()


@pytest.fixture
def audit_trail(central):
    return AuditTrail(central)


@pytest.fixture
def scenario_stores():
    """The three-hospital network for 880101-14-5678: KL, Penang and JB."""
    return {
        "hospital-kl": FakeHospitalStore(
            "hospital-kl",
            patients={PATIENT_IC: make_patient()},
            records=[make_record("hospital-kl", utc(2024, 3, 1), medications=("Aspirin 100mg",),
                                 record_id="kl-1")],
        ),
        "hospital-penang": FakeHospitalStore(
            "hospital-penang",
            patients={PATIENT_IC: make_patient(allergies=["penicillin", "Sulfa"])},
            records=[make_record("hospital-penang", utc(2024, 5, 10), medications=("Ibuprofen 400mg",),
                                 record_id="penang-1")],
        ),
        "hospital-jb": FakeHospitalStore(
            "hospital-jb",
            patients={PATIENT_IC: make_patient(chronic_conditions=["Type 2 Diabetes"])},
            records=[make_record("hospital-jb", utc(2023, 11, 20), record_id="jb-1")],
        ),
    }


@pytest.fixture
def scenario(central, audit_trail, scenario_stores):
    """Orchestrator over the KL/Penang/JB network with the patient indexed at all three."""
    registry = build_registry(list(scenario_stores.values()))
    for hospital_id in ("hospital-kl", "hospital-penang", "hospital-jb"):
        central.record_hospital(PATIENT_IC, hospital_id)

    orchestrator = FederatedQueryOrchestrator(
        registry=registry,
        index=central,
        consent=central,
        audit_trail=audit_trail,
        medication_checker=MedicationCrossCheck(),
        hospital_timeout_seconds=0.5,
    )
    return orchestrator


def build_federation(central: DuckDBCentralAdapter, stores: list) -> Federation:
    """Federation over a given central store and hospital stores."""
    settings = Settings(ConfigManager({
        "central_database": {"db_path": ":memory:"},
        "hospitals": [],
        "federation": {"hospital_timeout_seconds": 0.5},
        "auth": {"jwt_secret": "test-secret"},
    }))
    return Federation.build(settings, central=central, registry=build_registry(stores))


# ============================================================================
# HTTP API fixtures
# ============================================================================

@pytest.fixture
def federation(central, scenario_stores):
    """Federation over the KL/Penang/JB network with the patient indexed at all three."""
    for hospital_id in ("hospital-kl", "hospital-penang", "hospital-jb"):
        central.record_hospital(PATIENT_IC, hospital_id)
    return build_federation(central, list(scenario_stores.values()))


@pytest.fixture
def client(federation):
    """TestClient over a fresh app, so rate-limit counters never leak between tests."""
    app = create_app()
    app.dependency_overrides[get_federation] = lambda: federation
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(federation):
    """Build an Authorization header for a role."""

    def _headers(role: Role, user_id: str = "user-1", ic_number: Optional[str] = None,
                 hospital_id: Optional[str] = None) -> dict:
        token = create_access_token(federation.auth_config, user_id, role,
                                    ic_number=ic_number, hospital_id=hospital_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers
