"""MedLink federation hub.

Federated cross-hospital medical record queries over isolated hospital
stores, with a central patient index, patient-controlled privacy settings
and an append-only audit trail.
"""

__version__ = "1.0.0"
