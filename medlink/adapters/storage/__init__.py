"""Storage adapters for the federation hub.

DuckDBHospitalAdapter serves one hospital's isolated store; DuckDBCentralAdapter
holds the central patient index, privacy settings and audit log.
"""

from medlink.adapters.storage.duckdb_central_adapter import DuckDBCentralAdapter
from medlink.adapters.storage.duckdb_hospital_adapter import DuckDBHospitalAdapter

__all__ = ["DuckDBCentralAdapter", "DuckDBHospitalAdapter"]
