"""Audit infrastructure components.

This package provides the audit trail writer used by every service that
touches patient data.
"""

from medlink.infrastructure.audit.audit_trail import AuditTrail

__all__ = ['AuditTrail']
