"""DuckDB Hospital Store Adapter.

This adapter implements the HospitalStorePort contract over one hospital's
isolated DuckDB database. Every hospital in the network gets its own adapter
instance and its own database; adapters never share a connection and never
talk to each other.

Security Impact:
    - Federation reads go through the read-only HospitalStorePort methods
    - Writes are only used by the hospital's own CRUD layer (and tests)
    - Database paths are validated before connecting

Architecture:
    - Implements HospitalStorePort and HospitalWriterPort (Hexagonal Architecture)
    - Blocking DuckDB calls run on a worker thread via asyncio.to_thread, one
      cursor per call, so the event loop only suspends at the I/O boundary
    - A visit record and its prescriptions/lab reports are written in one transaction
"""

import asyncio
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import duckdb

from medlink.domain.models import (
    LabReport,
    MedicalRecord,
    Patient,
    Prescription,
    VitalSigns,
)
from medlink.domain.ports import (
    HospitalStorePort,
    HospitalUnreachableError,
    HospitalWriterPort,
    Result,
    StorageError,
    mask_ic,
)
from medlink.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

_PATIENT_COLUMNS = (
    "ic_number, full_name, date_of_birth, gender, blood_type, phone, email, address, "
    "emergency_contact, emergency_phone, allergies, chronic_conditions"
)
_RECORD_COLUMNS = (
    "id, ic_number, hospital_id, doctor_id, doctor_name, visit_date, visit_type, "
    "chief_complaint, diagnosis, diagnosis_codes, symptoms, notes, vital_signs, follow_up_date"
)
_PRESCRIPTION_COLUMNS = (
    "id, record_id, medication_name, dosage, frequency, duration, quantity, instructions, is_active"
)
_LAB_COLUMNS = (
    "id, record_id, test_type, test_name, result, unit, reference_range, is_abnormal, report_date, notes"
)


def _loads_list(value: Optional[str]) -> list:
    if not value:
        return []
    return json.loads(value)


class DuckDBHospitalAdapter(HospitalStorePort, HospitalWriterPort):
    """DuckDB implementation of one hospital's isolated store.

    Parameters:
        hospital_id: Hospital this store belongs to
        db_config: DatabaseConfig for the hospital database (in-memory if None)

    Example Usage:
        ```python
        adapter = DuckDBHospitalAdapter("hospital-kl", DatabaseConfig(db_path="data/hospital-kl.duckdb"))
        adapter.initialize_schema()
        records = await adapter.get_records_by_patient("880101-14-5678")
        ```
    """

    def __init__(self, hospital_id: str, db_config: Optional[DatabaseConfig] = None):
        """Initialize hospital adapter.

        Security Impact:
            - Connection is established lazily (on first operation)
            - Parent directory of a file database must already exist
        """
        self._hospital_id = hospital_id
        self.db_config = db_config or DatabaseConfig()
        self.db_path = self.db_config.db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._connect_lock = threading.Lock()
        self._schema_lock = threading.Lock()
        self._initialized = False
        self._closed = False

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__",
                    details={"hospital_id": hospital_id},
                )

    @property
    def hospital_id(self) -> str:
        return self._hospital_id

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection.

        Raises:
            HospitalUnreachableError: If the adapter was closed or cannot connect
        """
        with self._connect_lock:
            if self._closed:
                raise HospitalUnreachableError(
                    f"Store for {self._hospital_id} is closed", hospital_id=self._hospital_id
                )
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.db_path, read_only=self.db_config.read_only)
                    logger.info(f"Connected to {self._hospital_id} store: {self.db_path}")
                except Exception as e:
                    raise HospitalUnreachableError(
                        f"Failed to connect to {self._hospital_id} store: {str(e)}",
                        hospital_id=self._hospital_id,
                    )
            return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        return self._get_connection().cursor()

    def initialize_schema(self) -> Result[None]:
        """Create tables for patients, medical records, prescriptions and lab reports."""
        try:
            cur = self._cursor()
            try:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS patients (
                        ic_number VARCHAR PRIMARY KEY,
                        full_name VARCHAR NOT NULL,
                        date_of_birth DATE,
                        gender VARCHAR,
                        blood_type VARCHAR,
                        phone VARCHAR,
                        email VARCHAR,
                        address VARCHAR,
                        emergency_contact VARCHAR,
                        emergency_phone VARCHAR,
                        allergies VARCHAR,
                        chronic_conditions VARCHAR,
                        created_at TIMESTAMP,
                        updated_at TIMESTAMP
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS medical_records (
                        id VARCHAR PRIMARY KEY,
                        ic_number VARCHAR NOT NULL,
                        hospital_id VARCHAR NOT NULL,
                        doctor_id VARCHAR,
                        doctor_name VARCHAR,
                        visit_date TIMESTAMP NOT NULL,
                        visit_type VARCHAR,
                        chief_complaint VARCHAR,
                        diagnosis VARCHAR,
                        diagnosis_codes VARCHAR,
                        symptoms VARCHAR,
                        notes VARCHAR,
                        vital_signs VARCHAR,
                        follow_up_date TIMESTAMP,
                        created_at TIMESTAMP
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS prescriptions (
                        id VARCHAR PRIMARY KEY,
                        record_id VARCHAR NOT NULL,
                        ic_number VARCHAR NOT NULL,
                        medication_name VARCHAR NOT NULL,
                        dosage VARCHAR,
                        frequency VARCHAR,
                        duration VARCHAR,
                        quantity INTEGER,
                        instructions VARCHAR,
                        is_active BOOLEAN,
                        position INTEGER
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS lab_reports (
                        id VARCHAR PRIMARY KEY,
                        record_id VARCHAR NOT NULL,
                        ic_number VARCHAR NOT NULL,
                        test_type VARCHAR,
                        test_name VARCHAR NOT NULL,
                        result VARCHAR,
                        unit VARCHAR,
                        reference_range VARCHAR,
                        is_abnormal BOOLEAN,
                        report_date TIMESTAMP,
                        notes VARCHAR,
                        position INTEGER
                    )
                """)
                cur.execute("CREATE INDEX IF NOT EXISTS idx_prescriptions_record ON prescriptions(record_id)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_prescriptions_ic ON prescriptions(ic_number)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_labs_record ON lab_reports(record_id)")
            finally:
                cur.close()

            self._initialized = True
            logger.info(f"Initialized schema for {self._hospital_id} store")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize schema for {self._hospital_id}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError",
            )

    def _ensure_schema(self) -> None:
        with self._schema_lock:
            if not self._initialized:
                result = self.initialize_schema()
                if result.is_failure():
                    raise HospitalUnreachableError(result.error, hospital_id=self._hospital_id)

    # ------------------------------------------------------------------
    # HospitalStorePort (async reads)
    # ------------------------------------------------------------------

    async def get_patient(self, ic_number: str) -> Optional[Patient]:
        return await asyncio.to_thread(self._read, "get_patient", self._get_patient_sync, ic_number)

    async def get_records_by_patient(self, ic_number: str) -> list[MedicalRecord]:
        return await asyncio.to_thread(self._read, "get_records_by_patient", self._get_records_sync, ic_number)

    async def get_active_prescriptions(self, ic_number: str) -> list[Prescription]:
        return await asyncio.to_thread(
            self._read, "get_active_prescriptions", self._get_active_prescriptions_sync, ic_number
        )

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self._read, "ping", lambda cur: cur.execute("SELECT 1").fetchone())
            return True
        except HospitalUnreachableError:
            return False

    def _read(self, operation: str, func, *args):
        """Run a read on its own cursor, converting driver errors to HospitalUnreachableError."""
        self._ensure_schema()
        cur = self._cursor()
        try:
            return func(cur, *args)
        except HospitalUnreachableError:
            raise
        except Exception as e:
            logger.error(f"{self._hospital_id} {operation} failed: {e}", exc_info=True)
            raise HospitalUnreachableError(
                f"{operation} failed at {self._hospital_id}: {str(e)}",
                hospital_id=self._hospital_id,
            )
        finally:
            cur.close()

    def _get_patient_sync(self, cur: duckdb.DuckDBPyConnection, ic_number: str) -> Optional[Patient]:
        row = cur.execute(
            f"SELECT {_PATIENT_COLUMNS} FROM patients WHERE ic_number = ?", [ic_number]
        ).fetchone()
        if row is None:
            return None
        return Patient(
            ic_number=row[0],
            full_name=row[1],
            date_of_birth=row[2],
            gender=row[3],
            blood_type=row[4] or "",
            phone=row[5] or "",
            email=row[6] or "",
            address=row[7] or "",
            emergency_contact=row[8] or "",
            emergency_phone=row[9] or "",
            allergies=_loads_list(row[10]),
            chronic_conditions=_loads_list(row[11]),
        )

    def _get_records_sync(self, cur: duckdb.DuckDBPyConnection, ic_number: str) -> list[MedicalRecord]:
        rows = cur.execute(
            f"SELECT {_RECORD_COLUMNS} FROM medical_records WHERE ic_number = ? "
            "ORDER BY visit_date DESC, created_at ASC",
            [ic_number],
        ).fetchall()
        if not rows:
            return []

        prescriptions: dict[str, list[Prescription]] = {}
        for p in cur.execute(
            f"SELECT {_PRESCRIPTION_COLUMNS} FROM prescriptions WHERE ic_number = ? ORDER BY position",
            [ic_number],
        ).fetchall():
            prescriptions.setdefault(p[1], []).append(self._row_to_prescription(p))

        labs: dict[str, list[LabReport]] = {}
        for lab in cur.execute(
            f"SELECT {_LAB_COLUMNS} FROM lab_reports WHERE ic_number = ? ORDER BY position",
            [ic_number],
        ).fetchall():
            labs.setdefault(lab[1], []).append(LabReport(
                id=lab[0],
                record_id=lab[1],
                test_type=lab[2] or "",
                test_name=lab[3],
                result=lab[4] or "",
                unit=lab[5] or "",
                reference_range=lab[6] or "",
                is_abnormal=bool(lab[7]),
                report_date=lab[8],
                notes=lab[9] or "",
            ))

        records = []
        for row in rows:
            vital_signs = json.loads(row[12]) if row[12] else None
            records.append(MedicalRecord(
                id=row[0],
                ic_number=row[1],
                hospital_id=row[2],
                doctor_id=row[3] or "",
                doctor_name=row[4],
                visit_date=row[5],
                visit_type=row[6],
                chief_complaint=row[7] or "",
                diagnosis=_loads_list(row[8]),
                diagnosis_codes=_loads_list(row[9]),
                symptoms=_loads_list(row[10]),
                notes=row[11] or "",
                vital_signs=VitalSigns(**vital_signs) if vital_signs else None,
                follow_up_date=row[13],
                prescriptions=prescriptions.get(row[0], []),
                lab_reports=labs.get(row[0], []),
            ))
        return records

    def _get_active_prescriptions_sync(self, cur: duckdb.DuckDBPyConnection, ic_number: str) -> list[Prescription]:
        rows = cur.execute(
            f"SELECT p.{_PRESCRIPTION_COLUMNS.replace(', ', ', p.')} "
            "FROM prescriptions p JOIN medical_records r ON p.record_id = r.id "
            "WHERE p.ic_number = ? AND p.is_active "
            "ORDER BY r.visit_date DESC, p.position",
            [ic_number],
        ).fetchall()
        return [self._row_to_prescription(row) for row in rows]

    @staticmethod
    def _row_to_prescription(row: tuple) -> Prescription:
        return Prescription(
            id=row[0],
            record_id=row[1],
            medication_name=row[2],
            dosage=row[3] or "",
            frequency=row[4] or "",
            duration=row[5] or "",
            quantity=row[6] or 0,
            instructions=row[7] or "",
            is_active=bool(row[8]),
        )

    # ------------------------------------------------------------------
    # HospitalWriterPort (hospital-local writes)
    # ------------------------------------------------------------------

    async def save_patient(self, patient: Patient) -> Result[str]:
        return await asyncio.to_thread(self._save_patient_sync, patient)

    async def save_record(self, record: MedicalRecord) -> Result[str]:
        return await asyncio.to_thread(self._save_record_sync, record)

    async def deactivate_prescription(self, prescription_id: str) -> Result[bool]:
        """Mark a prescription no longer active.

        Returns:
            Result[bool]: True if a prescription was updated, False if none matched
        """
        return await asyncio.to_thread(self._deactivate_prescription_sync, prescription_id)

    def _save_patient_sync(self, patient: Patient) -> Result[str]:
        try:
            self._ensure_schema()
            now = datetime.now()
            cur = self._cursor()
            try:
                existing = cur.execute(
                    "SELECT created_at FROM patients WHERE ic_number = ?", [patient.ic_number]
                ).fetchone()
                cur.execute(f"""
                    INSERT OR REPLACE INTO patients ({_PATIENT_COLUMNS}, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    patient.ic_number,
                    patient.full_name,
                    patient.date_of_birth,
                    patient.gender,
                    patient.blood_type,
                    patient.phone,
                    patient.email,
                    patient.address,
                    patient.emergency_contact,
                    patient.emergency_phone,
                    json.dumps(patient.allergies),
                    json.dumps(patient.chronic_conditions),
                    existing[0] if existing else now,
                    now,
                ])
            finally:
                cur.close()

            logger.debug(f"Saved patient {mask_ic(patient.ic_number)} at {self._hospital_id}")
            return Result.success_result(patient.ic_number)

        except Exception as e:
            error_msg = f"Failed to save patient at {self._hospital_id}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="save_patient"),
                error_type="StorageError",
                error_details={"hospital_id": self._hospital_id},
            )

    def _save_record_sync(self, record: MedicalRecord) -> Result[str]:
        if record.hospital_id != self._hospital_id:
            return Result.failure_result(
                StorageError(
                    f"Record belongs to {record.hospital_id}, not {self._hospital_id}",
                    operation="save_record",
                ),
                error_type="StorageError",
            )

        try:
            self._ensure_schema()
            cur = self._cursor()
            try:
                cur.begin()
                try:
                    self._write_record(cur, record)
                    cur.commit()
                except Exception:
                    cur.rollback()
                    raise
            finally:
                cur.close()

            logger.debug(
                f"Saved record {record.id} for {mask_ic(record.ic_number)} at {self._hospital_id} "
                f"({len(record.prescriptions)} prescriptions, {len(record.lab_reports)} lab reports)"
            )
            return Result.success_result(record.id)

        except Exception as e:
            error_msg = f"Failed to save record at {self._hospital_id}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="save_record"),
                error_type="StorageError",
                error_details={"hospital_id": self._hospital_id, "record_id": record.id},
            )

    @staticmethod
    def _write_record(cur: duckdb.DuckDBPyConnection, record: MedicalRecord) -> None:
        cur.execute("DELETE FROM prescriptions WHERE record_id = ?", [record.id])
        cur.execute("DELETE FROM lab_reports WHERE record_id = ?", [record.id])
        cur.execute(f"""
            INSERT OR REPLACE INTO medical_records ({_RECORD_COLUMNS}, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            record.id,
            record.ic_number,
            record.hospital_id,
            record.doctor_id,
            record.doctor_name,
            record.visit_date,
            record.visit_type.value,
            record.chief_complaint,
            json.dumps(record.diagnosis),
            json.dumps(record.diagnosis_codes),
            json.dumps(record.symptoms),
            record.notes,
            record.vital_signs.model_dump_json() if record.vital_signs else None,
            record.follow_up_date,
            datetime.now(),
        ])

        for position, p in enumerate(record.prescriptions):
            cur.execute(f"""
                INSERT INTO prescriptions ({_PRESCRIPTION_COLUMNS}, ic_number, position)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                p.id, record.id, p.medication_name, p.dosage, p.frequency, p.duration,
                p.quantity, p.instructions, p.is_active, record.ic_number, position,
            ])

        for position, lab in enumerate(record.lab_reports):
            cur.execute(f"""
                INSERT INTO lab_reports ({_LAB_COLUMNS}, ic_number, position)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                lab.id, record.id, lab.test_type, lab.test_name, lab.result, lab.unit,
                lab.reference_range, lab.is_abnormal, lab.report_date, lab.notes,
                record.ic_number, position,
            ])

    def _deactivate_prescription_sync(self, prescription_id: str) -> Result[bool]:
        try:
            self._ensure_schema()
            cur = self._cursor()
            try:
                found = cur.execute(
                    "SELECT COUNT(*) FROM prescriptions WHERE id = ?", [prescription_id]
                ).fetchone()[0]
                if found:
                    cur.execute("UPDATE prescriptions SET is_active = FALSE WHERE id = ?", [prescription_id])
            finally:
                cur.close()
            return Result.success_result(bool(found))

        except Exception as e:
            error_msg = f"Failed to deactivate prescription at {self._hospital_id}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="deactivate_prescription"),
                error_type="StorageError",
            )

    def count_patients(self) -> int:
        """Number of patients registered at this hospital."""
        return self._read("count_patients", lambda cur: cur.execute("SELECT COUNT(*) FROM patients").fetchone()[0])

    def close(self) -> None:
        """Close storage connection and release resources.

        A closed adapter reports itself unreachable; it is not reopened.
        """
        with self._connect_lock:
            self._closed = True
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info(f"Closed {self._hospital_id} store")
                except Exception as e:
                    logger.warning(f"Error closing {self._hospital_id} store: {str(e)}")
                finally:
                    self._connection = None
