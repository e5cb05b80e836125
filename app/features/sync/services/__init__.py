"""
Service layer for the sync feature.

Modules are imported directly (``from app.features.sync.services.job_runner
import JobRunner``); nothing is re-exported here.
"""
