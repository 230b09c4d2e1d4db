"""Deal registration module -- deals, conflict rules, detection and resolution.

Provides SQLAlchemy models (Reseller, EndCustomer, Deal, DealProduct,
DealConflict, AssignmentHistory), Pydantic schemas, the deterministic conflict
rule set, DealRepository and ConflictRepository for async persistence,
ConflictDetectionEngine for per-submission detection, and
ConflictResolutionService for staff decisions.
"""
