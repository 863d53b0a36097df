import pytest

from conftest import (
    IG_ACCOUNT_ID,
    ORG_ID,
    PAGE_PLATFORM_ID,
    PAGE_ROW_ID,
    FakeMessagingClient,
    FakePageRepository,
    make_conversation,
    make_raw_messages,
)
from crm_sync.features.contact_sync.cache import MessageCache
from crm_sync.features.contact_sync.clients import MessagingApiError
from crm_sync.features.contact_sync.domain import PageConfig, Pipeline, PipelineStage
from crm_sync.features.contact_sync.services import SyncJobController, SyncJobNotFoundError


def page_config(**overrides):
    values = dict(
        id=PAGE_ROW_ID,
        page_id=PAGE_PLATFORM_ID,
        organization_id=ORG_ID,
        access_token="page-token",
        instagram_account_id=IG_ACCOUNT_ID,
    )
    values.update(overrides)
    return PageConfig(**values)


def scripted_client(messenger=3, instagram=2, **kwargs):
    conversations = {
        "messenger": [make_conversation(i, "messenger") for i in range(1, messenger + 1)],
        "instagram": [make_conversation(i, "instagram") for i in range(1, instagram + 1)],
    }
    messages = {
        c.id: make_raw_messages(c.participants[1].name)
        for platform_conversations in conversations.values()
        for c in platform_conversations
    }
    return FakeMessagingClient(conversations, messages, **kwargs)


class ClientFactory:
    def __init__(self, client):
        self.client = client
        self.tokens = []

    def __call__(self, access_token):
        self.tokens.append(access_token)
        return self.client


@pytest.fixture
def make_controller(job_repository, contact_store, scorer):
    def _make(client, page_repository=None):
        factory = ClientFactory(client)
        controller = SyncJobController(
            message_cache=MessageCache(),
            scorer=scorer,
            client_factory=factory,
            job_repository=job_repository,
            page_repository=page_repository or FakePageRepository(page_config()),
            contact_store=contact_store,
        )
        return controller, factory

    return _make


@pytest.mark.asyncio
async def test_start_sync_reuses_active_job(make_controller):
    controller, _ = make_controller(scripted_client())

    first = await controller.start_sync(PAGE_ROW_ID)
    second = await controller.start_sync(PAGE_ROW_ID)

    assert first.already_running is False
    assert first.message == "Sync started"
    assert second.already_running is True
    assert second.job_id == first.job_id
    assert second.message == "Sync already in progress"


@pytest.mark.asyncio
async def test_start_sync_creates_new_job_after_terminal_one(make_controller, job_repository):
    controller, _ = make_controller(scripted_client())
    first = await controller.start_sync(PAGE_ROW_ID)
    await job_repository.finalize(first.job_id, "COMPLETED", {})

    second = await controller.start_sync(PAGE_ROW_ID)

    assert second.already_running is False
    assert second.job_id != first.job_id


@pytest.mark.asyncio
async def test_run_job_syncs_both_platforms(make_controller, job_repository, contact_store):
    client = scripted_client(messenger=3, instagram=2)
    pages = FakePageRepository(page_config())
    controller, factory = make_controller(client, pages)
    start = await controller.start_sync(PAGE_ROW_ID)

    outcome = await controller.run_job(start.job_id)

    assert outcome.status == "COMPLETED"
    assert outcome.synced_count == 5
    assert outcome.finalized is True
    assert factory.tokens == ["page-token"]
    assert client.closed is True
    assert pages.touched == [PAGE_ROW_ID]
    assert len(contact_store.rows) == 5

    job = await job_repository.load_job(start.job_id)
    assert job.status == "COMPLETED"
    assert job.synced_contacts == 5
    assert job.total_contacts == 5
    assert job.token_expired is False
    assert job.errors == []


@pytest.mark.asyncio
async def test_instagram_token_expiry_keeps_messenger_results(make_controller, job_repository, contact_store):
    pages = FakePageRepository(page_config())
    controller, _ = make_controller(
        scripted_client(messenger=3, instagram=4, token_expires_on={"instagram": 1}), pages
    )
    start = await controller.start_sync(PAGE_ROW_ID)

    outcome = await controller.run_job(start.job_id)

    assert outcome.status == "FAILED"
    assert outcome.token_expired is True
    assert outcome.synced_count == 3
    assert len(contact_store.rows) == 3
    assert pages.touched == []

    job = await job_repository.load_job(start.job_id)
    assert job.status == "FAILED"
    assert job.token_expired is True
    assert job.synced_contacts == 3
    assert job.errors == [
        {"platform": "Instagram", "id": "conversations", "error": "Page access token expired", "code": 190}
    ]


@pytest.mark.asyncio
async def test_messenger_only_page_skips_instagram(make_controller, contact_store):
    pages = FakePageRepository(page_config(instagram_account_id=None))
    client = scripted_client(messenger=2, instagram=5)
    controller, _ = make_controller(client, pages)
    start = await controller.start_sync(PAGE_ROW_ID)

    outcome = await controller.run_job(start.job_id)

    assert outcome.status == "COMPLETED"
    assert "instagram" not in client.yielded
    assert len(contact_store.rows) == 2


@pytest.mark.asyncio
async def test_item_failures_are_recorded_on_completed_job(make_controller, job_repository):
    controller, _ = make_controller(
        scripted_client(messenger=3, instagram=0, failing_fetches={"messenger-conv-2"})
    )
    start = await controller.start_sync(PAGE_ROW_ID)

    outcome = await controller.run_job(start.job_id)

    assert outcome.status == "COMPLETED"
    job = await job_repository.load_job(start.job_id)
    assert job.synced_contacts == 2
    assert job.failed_contacts == 1
    assert job.errors[0]["platform"] == "Messenger"
    assert job.errors[0]["id"] == "messenger-user-2"


@pytest.mark.asyncio
async def test_expired_token_at_client_creation_fails_job(make_controller, job_repository):
    controller, _ = make_controller(scripted_client())

    def expired_factory(access_token):
        raise MessagingApiError("Session has expired", code=190, is_token_expired=True)

    controller._client_factory = expired_factory
    start = await controller.start_sync(PAGE_ROW_ID)

    outcome = await controller.run_job(start.job_id)

    assert outcome.status == "FAILED"
    assert outcome.token_expired is True
    assert (await job_repository.load_job(start.job_id)).token_expired is True


@pytest.mark.asyncio
async def test_unexpected_error_finalizes_failed(make_controller, job_repository):
    controller, _ = make_controller(scripted_client())
    job = await job_repository.create_job("page-that-does-not-exist")

    outcome = await controller.run_job(job.id)

    assert outcome.status == "FAILED"
    assert "not found" in outcome.error_message
    stored = await job_repository.load_job(job.id)
    assert stored.status == "FAILED"
    assert stored.errors == [{"error": outcome.error_message}]


@pytest.mark.asyncio
async def test_crash_after_a_platform_keeps_its_counts_and_errors(make_controller, job_repository):
    class BrokenInstagramClient(FakeMessagingClient):
        async def _broken_listing(self):
            raise RuntimeError("instagram listing crashed")
            yield

        def iter_instagram_conversations(self, account_id):
            return self._broken_listing()

    base = scripted_client(messenger=3)
    client = BrokenInstagramClient(
        base.conversations, base.messages, failing_fetches={"messenger-conv-2"}
    )
    controller, _ = make_controller(client)
    job_id = (await controller.start_sync(PAGE_ROW_ID)).job_id

    outcome = await controller.run_job(job_id)

    assert outcome.status == "FAILED"
    assert (outcome.synced_count, outcome.failed_count) == (2, 1)
    stored = await job_repository.load_job(job_id)
    assert stored.status == "FAILED"
    assert (stored.synced_contacts, stored.failed_contacts, stored.total_contacts) == (2, 1, 3)
    assert stored.errors[0]["id"] == "messenger-user-2"
    assert stored.errors[-1] == {"error": "instagram listing crashed"}


@pytest.mark.asyncio
async def test_unknown_job_raises(make_controller):
    controller, _ = make_controller(scripted_client())

    with pytest.raises(SyncJobNotFoundError):
        await controller.run_job("job-missing")


@pytest.mark.asyncio
async def test_terminal_job_is_not_rerun(make_controller, job_repository):
    controller, factory = make_controller(scripted_client())
    start = await controller.start_sync(PAGE_ROW_ID)
    await controller.cancel_job(start.job_id)

    outcome = await controller.run_job(start.job_id)

    assert outcome.status == "CANCELLED"
    assert outcome.finalized is False
    assert factory.tokens == []
    assert job_repository.finalize_calls == []


@pytest.mark.asyncio
async def test_cancel_during_run_is_not_overwritten(make_controller, job_repository, contact_store):
    class CancellingClient(FakeMessagingClient):
        async def get_all_messages(self, conversation_id):
            await job_repository.mark_cancelled(job_id)
            return await super().get_all_messages(conversation_id)

    base = scripted_client(messenger=3, instagram=2)
    client = CancellingClient(base.conversations, base.messages)
    controller, _ = make_controller(client)
    job_id = (await controller.start_sync(PAGE_ROW_ID)).job_id

    outcome = await controller.run_job(job_id)

    assert outcome.status == "CANCELLED"
    assert outcome.finalized is False
    assert contact_store.rows == {}
    assert "instagram" not in client.yielded
    assert (await job_repository.load_job(job_id)).status == "CANCELLED"
    assert job_repository.finalize_calls == []


@pytest.mark.asyncio
async def test_placeholder_stage_ranges_are_generated_before_run(make_controller, contact_store):
    pipeline = Pipeline(
        id="p-1",
        name="Sales",
        stages=[
            PipelineStage("s-1", "New", "LEAD", 1, 0, 100),
            PipelineStage("s-2", "Hot", "LEAD", 2, 0, 100),
        ],
    )
    pages = FakePageRepository(page_config(instagram_account_id=None, auto_pipeline=pipeline))
    controller, _ = make_controller(scripted_client(messenger=1), pages)
    start = await controller.start_sync(PAGE_ROW_ID)

    await controller.run_job(start.job_id)

    assert pages.range_updates == [[("s-1", 0, 49), ("s-2", 50, 100)]]
    # Default scorer returns 50
    assert contact_store.rows[("messenger-user-1", PAGE_ROW_ID)]["stage_id"] == "s-2"
