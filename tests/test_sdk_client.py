"""Partner-side SDK clients."""

import asyncio
import json

import httpx
import pytest

from firstuser_sdk import (
    FirstUserAPIError,
    FirstUserClient,
    FirstUserConfig,
    FirstUserServerClient,
    PresenceOptions,
)


class Recorder:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = {"ok": True} if payload is None else payload
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def make_client(http_client=None, interval=0.01):
    return FirstUserClient(
        FirstUserConfig(
            base_url="https://firstuser.test/",
            public_app_id="acme_notes",
            backend_base_url="https://partner.example.com/",
            heartbeat_interval=interval,
            http_client=http_client,
        )
    )


def test_uninitialized_client():
    with pytest.raises(RuntimeError):
        FirstUserClient().config


def test_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        make_client(interval=0)


async def test_restarting_presence_replaces_previous_sink():
    client = make_client()
    first, second = [], []

    client.start_presence(first.append)
    client.start_presence(second.append)
    await asyncio.sleep(0.05)
    client.stop_presence()

    assert first == []
    assert second and set(second) == {"live"}


async def test_stop_presence_is_idempotent():
    client = make_client()
    client.stop_presence()

    task = client.start_presence(lambda status: None)
    assert client.is_presence_running
    client.stop_presence()
    client.stop_presence()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert not client.is_presence_running


async def test_presence_errors_do_not_stop_the_loop():
    recorder = Recorder(status_code=502, payload={"message": "Partner backend unavailable"})
    errors = []
    async with recorder.client() as http_client:
        client = make_client(http_client)
        client.start_presence(
            PresenceOptions(
                external_user_id="ext-1",
                status_provider=lambda: "idle",
                on_error=errors.append,
            )
        )
        await asyncio.sleep(0.06)
        assert client.is_presence_running
        client.stop_presence()

    assert len(errors) >= 2
    assert all(isinstance(error, FirstUserAPIError) for error in errors)
    assert errors[0].message == "Partner backend unavailable"
    assert errors[0].status_code == 502
    body = json.loads(recorder.requests[0].content)
    assert body == {"externalUserId": "ext-1", "status": "idle", "clientPlatform": "web"}


async def test_failing_error_callback_is_contained():
    def broken_callback(exc):
        raise RuntimeError("callback failed")

    def failing_sink(status):
        raise ValueError("sink failed")

    client = make_client()
    client.start_presence(failing_sink)
    await asyncio.sleep(0.05)
    assert client.is_presence_running
    client.stop_presence()

    options = PresenceOptions(external_user_id="ext-1", on_error=broken_callback)
    async with Recorder(status_code=500).client() as http_client:
        client = make_client(http_client)
        client.start_presence(options)
        await asyncio.sleep(0.05)
        assert client.is_presence_running
        client.stop_presence()


async def test_backend_wrappers_post_camel_case_bodies():
    recorder = Recorder()
    async with recorder.client() as http_client:
        client = make_client(http_client)
        await client.exchange_access_code(code="fuac_abc12345", external_user_id="ext-1")
        await client.set_plan_tier("team/ext-1", "pro")
        await client.start_embedded_waitlist(external_user_id="ext-1", return_to="acmenotes://firstuser")

    exchange, plan, waitlist = recorder.requests
    assert str(exchange.url) == "https://partner.example.com/api/firstuser/access/exchange"
    assert json.loads(exchange.content) == {
        "code": "fuac_abc12345",
        "externalUserId": "ext-1",
        "clientPlatform": "web",
    }
    assert exchange.url.raw_path == b"/api/firstuser/access/exchange"
    assert plan.url.raw_path == b"/api/firstuser/users/team%2Fext-1/plan"
    assert json.loads(waitlist.content) == {"externalUserId": "ext-1", "returnTo": "acmenotes://firstuser"}


async def test_error_without_message_uses_path():
    async with Recorder(status_code=404, payload=["not", "a", "dict"]).client() as http_client:
        client = make_client(http_client)
        with pytest.raises(FirstUserAPIError) as excinfo:
            await client.get_hosted_chat_widget_token("ext-1")

    assert excinfo.value.message == "Request failed for /api/firstuser/chat/widget-token"
    assert excinfo.value.status_code == 404


def test_hosted_chat_widget_markup_is_escaped():
    client = make_client()
    markup = client.mount_hosted_chat_widget(
        'https://firstuser.test/widget?token=a"b<c', title="Chat <beta>"
    )

    assert markup.startswith("<iframe ")
    assert 'src="https://firstuser.test/widget?token=a&quot;b&lt;c"' in markup
    assert 'title="Chat &lt;beta&gt;"' in markup
    assert "sandbox=" in markup

    with pytest.raises(ValueError):
        client.mount_hosted_chat_widget("javascript:alert(1)")


async def test_server_client_authenticates_with_bearer_key():
    recorder = Recorder(payload={"membershipStatus": "pending"})
    async with recorder.client() as http_client, FirstUserServerClient(
        "https://firstuser.test/", "fuk_abc.secret", http_client=http_client
    ) as server:
        result = await server.send_heartbeat(external_user_id="ext-1")
        await server.exchange_access_code(code="fuac_abc12345", external_user_id="ext-1")

    assert result == {"membershipStatus": "pending"}
    heartbeat, exchange = recorder.requests
    assert str(heartbeat.url) == "https://firstuser.test/api/integration/v1/usage/heartbeat"
    assert heartbeat.headers["Authorization"] == "Bearer fuk_abc.secret"
    assert json.loads(heartbeat.content) == {"externalUserId": "ext-1", "status": "live"}
    assert json.loads(exchange.content) == {"code": "fuac_abc12345", "externalUserId": "ext-1"}


def test_server_client_requires_api_key():
    with pytest.raises(ValueError):
        FirstUserServerClient("https://firstuser.test", "")


def test_hosted_join_url():
    server = FirstUserServerClient("https://firstuser.test/", "fuk_abc.secret")

    assert server.hosted_join_url("acme_notes") == "https://firstuser.test/i/acme_notes/join"
    assert (
        server.hosted_join_url("acme_notes", return_to="https://app.partner.example.com/a?b=1")
        == "https://firstuser.test/i/acme_notes/join?returnTo=https%3A%2F%2Fapp.partner.example.com%2Fa%3Fb%3D1"
    )
