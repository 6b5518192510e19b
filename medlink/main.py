"""Federation wiring.

Builds every collaborator of the hub exactly once from configuration: the
central store, one isolated store per hospital, the hospital registry and the
services on top of them. The resulting Federation object is what the HTTP API
and the CLI depend on.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from medlink.adapters.storage import DuckDBCentralAdapter, DuckDBHospitalAdapter
from medlink.domain.guardrails import CircuitBreakerConfig
from medlink.domain.ports import ConfigurationError, StorageError
from medlink.domain.registry import HospitalRegistry
from medlink.domain.services import (
    ConsentService,
    FederatedQueryOrchestrator,
    IndexSynchronizer,
    MedicationCrossCheck,
)
from medlink.infrastructure.audit import AuditTrail
from medlink.infrastructure.config_manager import AuthConfig, FederationConfig
from medlink.infrastructure.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Federation:
    """Container for the hub's long-lived objects."""
    central: DuckDBCentralAdapter
    registry: HospitalRegistry
    audit_trail: AuditTrail
    orchestrator: FederatedQueryOrchestrator
    consent_service: ConsentService
    index_sync: IndexSynchronizer
    federation_config: FederationConfig
    auth_config: AuthConfig

    @classmethod
    def build(
        cls,
        settings: Settings,
        central: Optional[DuckDBCentralAdapter] = None,
        registry: Optional[HospitalRegistry] = None,
    ) -> "Federation":
        """Build a federation from settings.

        Parameters:
            settings: Application settings
            central: Pre-built central store (tests)
            registry: Pre-built hospital registry (tests)

        Raises:
            ConfigurationError: If configuration is invalid
        """
        federation_config = settings.federation

        if central is None:
            central = DuckDBCentralAdapter(settings.central_db_config)

        if registry is None:
            registry = HospitalRegistry(CircuitBreakerConfig(
                failure_threshold_percent=federation_config.breaker_failure_threshold_percent,
                window_size=federation_config.breaker_window_size,
                min_calls_before_check=federation_config.breaker_min_calls,
                cooldown_seconds=federation_config.breaker_cooldown_seconds,
            ))
            for hospital_config in settings.hospitals:
                try:
                    store = DuckDBHospitalAdapter(hospital_config.id, hospital_config.database)
                except StorageError as e:
                    raise ConfigurationError(f"Cannot open store for {hospital_config.id}: {e}")
                registry.register(hospital_config.to_hospital(), store)

        audit_trail = AuditTrail(central)
        orchestrator = FederatedQueryOrchestrator(
            registry=registry,
            index=central,
            consent=central,
            audit_trail=audit_trail,
            medication_checker=MedicationCrossCheck(),
            hospital_timeout_seconds=federation_config.hospital_timeout_seconds,
        )

        logger.info(f"Federation built with {len(registry)} hospitals")
        return cls(
            central=central,
            registry=registry,
            audit_trail=audit_trail,
            orchestrator=orchestrator,
            consent_service=ConsentService(central, registry, audit_trail),
            index_sync=IndexSynchronizer(central, audit_trail),
            federation_config=federation_config,
            auth_config=settings.auth,
        )

    def initialize(self) -> None:
        """Create the central schema and every hospital schema that is reachable.

        Raises:
            StorageError: If the central schema cannot be created
        """
        result = self.central.initialize_schema()
        if result.is_failure():
            raise StorageError(result.error, operation="initialize_schema")

        for entry in self.registry:
            initialize = getattr(entry.store, "initialize_schema", None)
            if initialize is None:
                continue
            hospital_result = initialize()
            if hospital_result.is_failure():
                logger.warning(f"Hospital {entry.id} schema not initialized: {hospital_result.error}")

    async def health(self) -> dict:
        """Central store and per-hospital reachability."""
        async def check(entry):
            try:
                reachable = await asyncio.wait_for(
                    entry.store.ping(), timeout=self.federation_config.hospital_timeout_seconds
                )
            except Exception as e:
                logger.warning(f"Health check for {entry.id} failed: {e}")
                reachable = False
            return {
                "hospitalId": entry.id,
                "name": entry.name,
                "reachable": reachable,
                "circuitOpen": entry.breaker.is_open(),
            }

        hospitals = await asyncio.gather(*(check(entry) for entry in self.registry))
        return {
            "centralStore": await asyncio.to_thread(self.central.ping),
            "hospitals": list(hospitals),
            "indexSyncFailures": self.index_sync.failure_count,
        }

    def close(self) -> None:
        for entry in self.registry:
            close = getattr(entry.store, "close", None)
            if close is not None:
                close()
        self.central.close()
