"""Domain Services.

This package contains the services that implement federation logic on top
of the ports: the federated query orchestrator, the medication cross-check,
index synchronization and consent management.
"""

from medlink.domain.services.consent_service import ConsentService
from medlink.domain.services.federated_query import FederatedQueryOrchestrator
from medlink.domain.services.index_sync import IndexSynchronizer
from medlink.domain.services.medication_check import MedicationCrossCheck

__all__ = ['ConsentService', 'FederatedQueryOrchestrator', 'IndexSynchronizer', 'MedicationCrossCheck']
