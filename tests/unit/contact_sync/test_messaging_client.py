import httpx
import pytest

from crm_sync.features.contact_sync.clients import MessagingApiError, MessagingPlatformClient
from crm_sync.features.contact_sync.clients.messaging_client import parse_graph_timestamp

BASE_URL = "https://graph.test/v19.0"


def graph_client(handler) -> MessagingPlatformClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MessagingPlatformClient(
        "page-token", http_client=http_client, base_url=BASE_URL, backoff_factor=0
    )


def conversation(conv_id, user_id, name=None):
    return {
        "id": conv_id,
        "updated_time": "2024-05-01T12:00:00+0000",
        "participants": {
            "data": [{"id": "page-111", "name": "Acme Store"}, {"id": user_id, "name": name}]
        },
    }


@pytest.mark.asyncio
async def test_conversations_are_paged_lazily():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.params.get("after") == "cursor-2":
            return httpx.Response(200, json={"data": [conversation("c-3", "u-3")]})
        return httpx.Response(
            200,
            json={
                "data": [conversation("c-1", "u-1", "Ana"), conversation("c-2", "u-2")],
                "paging": {"next": f"{BASE_URL}/page-111/conversations?access_token=t&after=cursor-2"},
            },
        )

    client = graph_client(handler)
    stream = client.iter_messenger_conversations("page-111")

    first = await anext(stream)
    assert first.id == "c-1"
    assert first.participants[1].name == "Ana"
    assert len(requests) == 1

    rest = [c.id async for c in stream]
    assert rest == ["c-2", "c-3"]
    assert len(requests) == 2
    assert requests[0].url.params["access_token"] == "page-token"
    assert requests[0].url.params["fields"] == "participants,updated_time"


@pytest.mark.asyncio
async def test_instagram_listing_passes_platform():
    seen = {}

    def handler(request):
        seen["url"] = request.url
        return httpx.Response(200, json={"data": []})

    client = graph_client(handler)
    assert [c async for c in client.iter_instagram_conversations("ig-222")] == []
    assert seen["url"].path.endswith("/ig-222/conversations")
    assert seen["url"].params["platform"] == "instagram"


@pytest.mark.asyncio
async def test_get_all_messages_follows_pagination():
    def handler(request):
        if "after" in request.url.params:
            return httpx.Response(200, json={"data": [{"message": "oldest"}]})
        return httpx.Response(
            200,
            json={
                "data": [{"message": "newest"}, {"message": "middle"}],
                "paging": {"next": f"{BASE_URL}/c-1/messages?access_token=t&after=x"},
            },
        )

    messages = await graph_client(handler).get_all_messages("c-1")

    assert [m["message"] for m in messages] == ["newest", "middle", "oldest"]


@pytest.mark.asyncio
async def test_expired_token_is_flagged_and_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(
            400,
            json={"error": {"message": "Error validating access token", "code": 190}},
        )

    with pytest.raises(MessagingApiError) as exc_info:
        await graph_client(handler).get_all_messages("c-1")

    assert exc_info.value.is_token_expired is True
    assert exc_info.value.code == 190
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(500, json={"error": {"message": "Temporary", "code": 2}})
        return httpx.Response(200, json={"data": [{"message": "hi"}]})

    messages = await graph_client(handler).get_all_messages("c-1")

    assert len(calls) == 3
    assert messages == [{"message": "hi"}]


@pytest.mark.asyncio
async def test_persistent_rate_limit_surfaces_after_retries():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "Too many calls", "code": 4}})

    with pytest.raises(MessagingApiError) as exc_info:
        await graph_client(handler).get_all_messages("c-1")

    assert exc_info.value.is_token_expired is False
    assert len(calls) == 3


def test_missing_token_counts_as_expired():
    with pytest.raises(MessagingApiError) as exc_info:
        MessagingPlatformClient("")

    assert exc_info.value.is_token_expired is True


def test_parse_graph_timestamp_formats():
    assert parse_graph_timestamp("2024-05-01T10:15:00+0000").hour == 10
    assert parse_graph_timestamp("2024-05-01T10:15:00Z").minute == 15
    assert parse_graph_timestamp("yesterday") is None
    assert parse_graph_timestamp(None) is None
