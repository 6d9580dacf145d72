"""BookShare - Core Package

This package contains the core client modules including:
- Share data model and wire conversion (share.py)
- Share lifecycle statuses and transitions (share_status.py)
- Timeline derivation for the detail view (timeline.py)
- Authorization policy (policy.py)
- Request schemas and credential storage (schemas.py, credentials.py)
"""
