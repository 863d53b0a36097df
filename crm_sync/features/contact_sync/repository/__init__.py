from .contact_repository import ContactRepository, ContactRepositoryError, ContactStore
from .page_repository import PageRepository, PageRepositoryError
from .sync_job_repository import SyncJobRepository, SyncJobRepositoryError

__all__ = [
    "ContactRepository",
    "ContactRepositoryError",
    "ContactStore",
    "PageRepository",
    "PageRepositoryError",
    "SyncJobRepository",
    "SyncJobRepositoryError",
]
