"""HTTP surface of the federation hub (FastAPI)."""
