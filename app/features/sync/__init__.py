"""
Sync feature package.

This vertical slice keeps every layer of the background sync and
job-processing core co-located: domain models, repositories, services
(queue, runner, session tracker, token manager, error classification),
maintenance jobs and the API router.

Import the subpackages directly; this module re-exports nothing so the
domain layer can be imported without pulling in FastAPI.
"""
