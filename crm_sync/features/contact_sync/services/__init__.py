from .scheduler import SyncSchedulerError, enqueue_sync_job, request_sync
from .sync_controller import SyncControllerError, SyncJobController, SyncJobNotFoundError

__all__ = [
    "SyncControllerError",
    "SyncJobController",
    "SyncJobNotFoundError",
    "SyncSchedulerError",
    "enqueue_sync_job",
    "request_sync",
]
