"""Service layer for quiz generation jobs.

Modules are imported directly (``from src.services.job_service import ...``);
the ORM models depend on ``progress_tracker``, so nothing is re-exported here.
"""
