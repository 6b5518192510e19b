"""Hospital registry.

Maps hospital ids to their directory metadata, their store adapter and their
circuit breaker. Built once at startup and passed to whatever needs it; there
is no module-level registry.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from medlink.domain.guardrails import CircuitBreaker, CircuitBreakerConfig
from medlink.domain.models import Hospital
from medlink.domain.ports import HospitalStorePort

logger = logging.getLogger(__name__)


@dataclass
class RegisteredHospital:
    """A hospital together with the objects used to reach it."""
    hospital: Hospital
    store: HospitalStorePort
    breaker: CircuitBreaker

    @property
    def id(self) -> str:
        return self.hospital.id

    @property
    def name(self) -> str:
        return self.hospital.name


class HospitalRegistry:
    """Ordered registry of the hospitals in the network."""

    def __init__(self, breaker_config: Optional[CircuitBreakerConfig] = None):
        self._breaker_config = breaker_config or CircuitBreakerConfig()
        self._hospitals: dict[str, RegisteredHospital] = {}

    def register(self, hospital: Hospital, store: HospitalStorePort) -> RegisteredHospital:
        """Register a hospital and its store adapter.

        Raises:
            ValueError: If the hospital id is already registered or does not
                match the adapter's hospital id
        """
        if hospital.id in self._hospitals:
            raise ValueError(f"Hospital already registered: {hospital.id}")
        if store.hospital_id != hospital.id:
            raise ValueError(
                f"Adapter serves {store.hospital_id}, cannot register it as {hospital.id}"
            )
        entry = RegisteredHospital(
            hospital=hospital,
            store=store,
            breaker=CircuitBreaker(hospital.id, self._breaker_config),
        )
        self._hospitals[hospital.id] = entry
        logger.debug(f"Registered hospital {hospital.id} ({hospital.name})")
        return entry

    def get(self, hospital_id: str) -> Optional[RegisteredHospital]:
        return self._hospitals.get(hospital_id)

    def name_of(self, hospital_id: str) -> str:
        """Display name of a hospital, falling back to its id when unknown."""
        entry = self._hospitals.get(hospital_id)
        return entry.name if entry else hospital_id

    def __contains__(self, hospital_id: object) -> bool:
        return hospital_id in self._hospitals

    def __iter__(self) -> Iterator[RegisteredHospital]:
        return iter(self._hospitals.values())

    def __len__(self) -> int:
        return len(self._hospitals)

    @property
    def hospital_ids(self) -> list[str]:
        return list(self._hospitals)

    def hospitals(self) -> list[Hospital]:
        return [entry.hospital for entry in self._hospitals.values()]
