from .sync_worker import ContactSyncWorker, start_contact_sync_worker

__all__ = ["ContactSyncWorker", "start_contact_sync_worker"]
