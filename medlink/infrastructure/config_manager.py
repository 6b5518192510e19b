"""Configuration Manager for the Federation Hub.

This module loads the typed configuration for the central hub: where the
central database lives, which hospitals make up the network (and where each
hospital's isolated store lives), federation tuning (per-hospital timeout,
circuit breaker thresholds, audit limits) and the JWT signing settings.

Security Impact:
    - The JWT secret is held as SecretStr and never logged
    - Configuration is validated before use (fail-fast)
    - Hospital ids must be unique, so one store can never masquerade as another

Architecture:
    - Infrastructure layer, isolated from the domain
    - Sources: environment variables (with .env support) or a JSON file
    - Type-safe configuration using Pydantic models
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from medlink.domain.models import DEFAULT_AUDIT_LIMIT, MAX_AUDIT_LIMIT, Hospital
from medlink.domain.ports import ConfigurationError

logger = logging.getLogger(__name__)

DEV_JWT_SECRET = "medlink-dev-secret-change-me"


class DatabaseConfig(BaseModel):
    """Database configuration for a DuckDB store.

    Parameters:
        db_type: Type of database (only 'duckdb' is supported)
        db_path: Path to database file, or ':memory:'
        read_only: Open the database read-only
    """

    db_type: str = Field("duckdb", description="Database type")
    db_path: str = Field(":memory:", description="Path to DuckDB file or ':memory:'")
    read_only: bool = Field(False, description="Open the database read-only")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Validate database type."""
        if v.lower() != "duckdb":
            raise ValueError(f"Unsupported database type: {v}. Supported: ['duckdb']")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> str:
        """Validate database path (parent directory must exist)."""
        if not v or v == ":memory:":
            return ":memory:"

        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"


class HospitalConfig(BaseModel):
    """A hospital in the network and the location of its isolated store."""

    id: str = Field(..., description="Hospital identifier")
    name: str = Field(..., description="Full hospital name")
    short_name: str = Field("", description="Short display name")
    city: str = Field("", description="City")
    state: str = Field("", description="State")
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Hospital id cannot be empty")
        return v

    def to_hospital(self) -> Hospital:
        return Hospital(
            id=self.id,
            name=self.name,
            short_name=self.short_name,
            city=self.city,
            state=self.state,
        )


class FederationConfig(BaseModel):
    """Tuning for federated queries."""

    hospital_timeout_seconds: float = Field(5.0, gt=0, description="Per-hospital fetch timeout")
    breaker_failure_threshold_percent: float = Field(50.0, gt=0, le=100)
    breaker_window_size: int = Field(10, ge=1)
    breaker_min_calls: int = Field(3, ge=1)
    breaker_cooldown_seconds: float = Field(30.0, ge=0)
    audit_default_limit: int = Field(DEFAULT_AUDIT_LIMIT, ge=1)
    audit_max_limit: int = Field(MAX_AUDIT_LIMIT, ge=1)

    @model_validator(mode="after")
    def check_audit_limits(self) -> "FederationConfig":
        if self.audit_default_limit > self.audit_max_limit:
            raise ValueError("audit_default_limit cannot exceed audit_max_limit")
        return self


class AuthConfig(BaseModel):
    """Bearer token settings.

    Security Impact:
        - jwt_secret is a SecretStr: it never appears in repr() or logs
    """

    jwt_secret: SecretStr = Field(default=SecretStr(DEV_JWT_SECRET))
    jwt_algorithm: str = Field("HS256")
    access_token_expire_minutes: int = Field(60 * 8, ge=1)

    @property
    def uses_dev_secret(self) -> bool:
        return self.jwt_secret.get_secret_value() == DEV_JWT_SECRET


# The five hospitals in the default network
DEFAULT_HOSPITALS: list[dict[str, str]] = [
    {"id": "hospital-kl", "name": "Kuala Lumpur General Hospital", "short_name": "HKL",
     "city": "Kuala Lumpur", "state": "Wilayah Persekutuan"},
    {"id": "hospital-penang", "name": "Penang General Hospital", "short_name": "HPP",
     "city": "George Town", "state": "Pulau Pinang"},
    {"id": "hospital-jb", "name": "Sultanah Aminah Hospital", "short_name": "HSA",
     "city": "Johor Bahru", "state": "Johor"},
    {"id": "hospital-kuching", "name": "Sarawak General Hospital", "short_name": "HUS",
     "city": "Kuching", "state": "Sarawak"},
    {"id": "hospital-kk", "name": "Queen Elizabeth Hospital", "short_name": "HQE",
     "city": "Kota Kinabalu", "state": "Sabah"},
]


class ConfigManager:
    """Configuration manager for the central hub and hospital network.

    Example Usage:
        ```python
        # Load from environment variables (and .env)
        config = ConfigManager.from_environment()
        central_db = config.get_central_database_config()
        hospitals = config.get_hospitals()

        # Load from file
        config = ConfigManager.from_file("medlink.json")
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary with optional 'central_database',
                'hospitals', 'federation' and 'auth' sections
        """
        self._config_data = config_data
        self._central_db: Optional[DatabaseConfig] = None
        self._hospitals: Optional[list[HospitalConfig]] = None
        self._federation: Optional[FederationConfig] = None
        self._auth: Optional[AuthConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - MEDLINK_CENTRAL_DB_PATH: Central hub DuckDB path (default ':memory:')
            - MEDLINK_HOSPITAL_DB_DIR: Directory holding one '<hospital-id>.duckdb' per hospital
            - MEDLINK_HOSPITALS_FILE: JSON file listing hospitals (default: built-in network)
            - MEDLINK_HOSPITAL_TIMEOUT: Per-hospital timeout in seconds
            - MEDLINK_BREAKER_THRESHOLD / MEDLINK_BREAKER_COOLDOWN: Circuit breaker tuning
            - MEDLINK_AUDIT_MAX_LIMIT: Hard cap on audit log page size
            - MEDLINK_JWT_SECRET / MEDLINK_JWT_ALGORITHM / MEDLINK_TOKEN_EXPIRE_MINUTES

        Returns:
            ConfigManager instance

        Security Impact:
            - Secrets are read from the environment and never logged
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        hospitals_file = os.getenv("MEDLINK_HOSPITALS_FILE")
        if hospitals_file:
            hospitals = cls._read_json(hospitals_file)
            if isinstance(hospitals, dict):
                hospitals = hospitals.get("hospitals", [])
        else:
            hospitals = [dict(h) for h in DEFAULT_HOSPITALS]

        hospital_db_dir = os.getenv("MEDLINK_HOSPITAL_DB_DIR")
        if hospital_db_dir:
            for hospital in hospitals:
                hospital.setdefault("database", {
                    "db_path": str(Path(hospital_db_dir) / f"{hospital['id']}.duckdb")
                })

        federation: Dict[str, Any] = {}
        for env_name, key in (
            ("MEDLINK_HOSPITAL_TIMEOUT", "hospital_timeout_seconds"),
            ("MEDLINK_BREAKER_THRESHOLD", "breaker_failure_threshold_percent"),
            ("MEDLINK_BREAKER_COOLDOWN", "breaker_cooldown_seconds"),
            ("MEDLINK_AUDIT_MAX_LIMIT", "audit_max_limit"),
        ):
            if os.getenv(env_name):
                federation[key] = os.getenv(env_name)

        auth: Dict[str, Any] = {}
        if os.getenv("MEDLINK_JWT_SECRET"):
            auth["jwt_secret"] = os.getenv("MEDLINK_JWT_SECRET")
        if os.getenv("MEDLINK_JWT_ALGORITHM"):
            auth["jwt_algorithm"] = os.getenv("MEDLINK_JWT_ALGORITHM")
        if os.getenv("MEDLINK_TOKEN_EXPIRE_MINUTES"):
            auth["access_token_expire_minutes"] = os.getenv("MEDLINK_TOKEN_EXPIRE_MINUTES")

        config_data = {
            "central_database": {"db_path": os.getenv("MEDLINK_CENTRAL_DB_PATH", ":memory:")},
            "hospitals": hospitals,
            "federation": federation,
            "auth": auth,
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If config file is invalid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        # A file holding the JWT secret should not be readable by group or others
        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 if it holds the JWT secret."
            )

        config_data = cls._read_json(config_path)
        config_data.setdefault("hospitals", [dict(h) for h in DEFAULT_HOSPITALS])
        return cls(config_data)

    @staticmethod
    def _read_json(path: str) -> Any:
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file {path}: {str(e)}")

    def get_central_database_config(self) -> DatabaseConfig:
        """Get the central hub database configuration."""
        if self._central_db is None:
            self._central_db = self._build(DatabaseConfig, self._config_data.get("central_database") or {})
        return self._central_db

    def get_hospitals(self) -> list[HospitalConfig]:
        """Get the hospital network, in configured order.

        Raises:
            ConfigurationError: If a hospital entry is invalid or ids repeat
        """
        if self._hospitals is None:
            hospitals = [self._build(HospitalConfig, h) for h in self._config_data.get("hospitals") or []]
            ids = [h.id for h in hospitals]
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ConfigurationError(f"Duplicate hospital ids in configuration: {duplicates}")
            self._hospitals = hospitals
        return self._hospitals

    def get_federation_config(self) -> FederationConfig:
        if self._federation is None:
            self._federation = self._build(FederationConfig, self._config_data.get("federation") or {})
        return self._federation

    def get_auth_config(self) -> AuthConfig:
        """Get bearer token configuration.

        Security Impact:
            - Logs a warning (without the value) when the development secret is in use
        """
        if self._auth is None:
            self._auth = self._build(AuthConfig, self._config_data.get("auth") or {})
            if self._auth.uses_dev_secret:
                logger.warning("MEDLINK_JWT_SECRET is not set; using the development signing secret")
        return self._auth

    @staticmethod
    def _build(model: type, data: Dict[str, Any]):
        try:
            return model(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {model.__name__}: {e.errors(include_url=False)}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key (dot notation, e.g. "federation.hospital_timeout_seconds")."""
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default
