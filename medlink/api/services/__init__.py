"""Services backing the API routes."""
