"""
Contact sync feature package.

This vertical slice keeps every layer of the contact synchronization
pipeline co-located (domain models, platform and scoring clients, cache,
pipeline stages, repositories, services, the queue worker and the API
router) so contributors can follow a sync end to end in one place.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as contact_sync_router  # noqa: F401
from .services.sync_controller import SyncJobController  # noqa: F401
from .services.scheduler import enqueue_sync_job, request_sync  # noqa: F401
from .jobs.sync_worker import start_contact_sync_worker  # noqa: F401
