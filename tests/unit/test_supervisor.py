"""Unit tests for ConnectionSupervisor."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from conductor.cli.api_client import AuthenticationError, ConnectivityError, LoginRequiredError
from conductor.cli.models import CreateSessionResult
from conductor.core.session_connection import ConnectionState, SessionConnection
from conductor.core.supervisor import ConnectionSupervisor
from tests.conftest import FakeRenderer, RecordingSleep, settle


@pytest.fixture
def renderers():
    return []


@pytest.fixture
def supervisor(context, prompts, connector, renderers):
    def renderer_factory():
        renderer = FakeRenderer()
        renderers.append(renderer)
        return renderer

    def connection_factory(ctx, renderer):
        return SessionConnection(ctx, renderer, connector=connector, sleep=RecordingSleep())

    return ConnectionSupervisor(context, prompts, renderer_factory, connection_factory=connection_factory)


@pytest.mark.asyncio
async def test_select_session_opens_single_connection(supervisor, connector):
    assert await supervisor.select_session("local", "s1") is True
    await settle(lambda: supervisor.connection.is_open)

    assert supervisor.active == ("local", "s1")
    assert supervisor.is_active("local")
    assert supervisor.is_active("local", "s1")
    assert not supervisor.is_active("local", "s2")

    await supervisor.close()


@pytest.mark.asyncio
async def test_select_unknown_endpoint_is_refused(supervisor, connector):
    assert await supervisor.select_session("nope", "s1") is False
    assert supervisor.connection is None
    assert connector.calls == []


@pytest.mark.asyncio
async def test_switching_tears_down_previous_first(supervisor, connector, renderers, remote_endpoint):
    await supervisor.select_session("local", "s1")
    await settle(lambda: supervisor.connection.is_open)
    first_connection = supervisor.connection

    await supervisor.select_session("box1", "s2")

    assert connector.sockets[0].closed is True
    assert first_connection.state is ConnectionState.IDLE
    assert renderers[0].disposed == 1
    await settle(lambda: supervisor.connection.is_open)
    assert supervisor.active == ("box1", "s2")
    assert len(connector.sockets) == 2

    # Frames from the torn-down stream reach neither renderer.
    connector.sockets[0].feed(json.dumps({"type": "output", "data": "stale"}))
    connector.sockets[1].feed(json.dumps({"type": "output", "data": "fresh"}))
    await settle(lambda: renderers[1].text == "fresh")
    assert "stale" not in renderers[0].text
    assert "stale" not in renderers[1].text

    await supervisor.close()


@pytest.mark.asyncio
async def test_clear_leaves_no_active_session(supervisor, connector, renderers):
    await supervisor.select_session("local", "s1")
    await settle(lambda: supervisor.connection.is_open)

    await supervisor.clear()

    assert supervisor.connection is None
    assert supervisor.active is None
    assert connector.sockets[0].closed is True
    assert renderers[0].disposed == 1


@pytest.mark.asyncio
async def test_events_routed_to_active_connection(supervisor, connector):
    # No connection: events are dropped silently.
    await supervisor.on_input("x")
    await supervisor.on_resize(1, 1)

    await supervisor.select_session("local", "s1")
    await settle(lambda: supervisor.connection.is_open)

    await supervisor.on_input("echo hi\r")
    await supervisor.on_binary("\x80")
    await supervisor.on_resize(30, 100)

    assert connector.sockets[0].sent[1:] == [
        json.dumps({"type": "input", "data": "echo hi\r"}),
        b"\x80",
        json.dumps({"type": "resize", "rows": 30, "cols": 100}),
    ]

    await supervisor.close()


@pytest.mark.asyncio
async def test_create_session_focuses_new_id_then_refreshes(supervisor, context, connector):
    create = AsyncMock(return_value=CreateSessionResult(id="new1"))
    listing = AsyncMock(return_value=[])

    with patch.object(context.api, "create_session", new=create), patch.object(
        context.api, "list_sessions", new=listing
    ):
        session_id = await supervisor.create_session()

    assert session_id == "new1"
    assert supervisor.active == ("local", "new1")
    listing.assert_awaited()
    await settle(lambda: supervisor.connection.is_open)
    assert connector.calls[0][0].endswith("/ws/new1")

    await supervisor.close()


@pytest.mark.asyncio
async def test_create_session_without_focus(supervisor, context, connector):
    create = AsyncMock(return_value=CreateSessionResult(id="n2"))

    with patch.object(context.api, "create_session", new=create), patch.object(
        context.api, "list_sessions", new=AsyncMock(return_value=[])
    ):
        assert await supervisor.create_session("local", focus=False) == "n2"

    assert supervisor.active is None
    assert connector.calls == []


@pytest.mark.asyncio
async def test_create_session_with_nothing_reachable_is_noop(supervisor, context, prompts):
    context.registry.default.connected = False
    create = AsyncMock()

    with patch.object(context.api, "create_session", new=create):
        assert await supervisor.create_session() is None

    create.assert_not_called()
    assert prompts.notices == ["No servers connected"]


@pytest.mark.asyncio
async def test_create_session_failure_notifies(supervisor, context, prompts):
    with patch.object(context.api, "create_session", new=AsyncMock(side_effect=ConnectivityError("down"))):
        assert await supervisor.create_session("local") is None

    assert prompts.notices == ["Failed to create session: down"]
    assert supervisor.active is None


@pytest.mark.asyncio
async def test_create_session_login_required_logs_in_and_retries(supervisor, context, prompts):
    prompts.credentials = ["pw"]
    authenticate = AsyncMock()
    create = AsyncMock(side_effect=[LoginRequiredError("Login required"), CreateSessionResult(id="n1")])

    with patch.object(context.api, "create_session", new=create), patch.object(
        context.api, "authenticate", new=authenticate
    ), patch.object(context.api, "list_sessions", new=AsyncMock(return_value=[])):
        assert await supervisor.create_session("local", focus=False) == "n1"

    authenticate.assert_awaited_once_with(context.registry.default, "pw")
    assert create.await_count == 2
    assert prompts.asked == ["Password for Local:"]


@pytest.mark.asyncio
async def test_create_session_login_cancelled_does_not_retry(supervisor, context, prompts):
    create = AsyncMock(side_effect=LoginRequiredError("Login required"))

    with patch.object(context.api, "create_session", new=create):
        assert await supervisor.create_session("local") is None

    create.assert_awaited_once()
    assert prompts.asked == ["Password for Local:"]
    assert supervisor.active is None


@pytest.mark.asyncio
async def test_refresh_runs_login_when_required(supervisor, context, prompts):
    prompts.credentials = ["pw"]
    listing = AsyncMock(side_effect=[LoginRequiredError("Login required"), []])

    with patch.object(context.api, "list_sessions", new=listing), patch.object(
        context.api, "authenticate", new=AsyncMock()
    ):
        snapshot = await supervisor.refresh()

    assert snapshot.login_required is False
    assert listing.await_count == 2


@pytest.mark.asyncio
async def test_add_endpoint_registers_only_after_login(supervisor, context, prompts):
    prompts.credentials = ["pw"]

    async def authenticate(endpoint, secret):
        endpoint.token = "tok"
        endpoint.connected = True
        return endpoint

    with patch.object(context.api, "authenticate", new=AsyncMock(side_effect=authenticate)):
        endpoint = await supervisor.add_endpoint("Box", "http://10.0.0.9:8080/")

    assert endpoint is not None
    assert context.registry.resolve(endpoint.id) is endpoint
    assert endpoint.url == "http://10.0.0.9:8080"
    records = json.loads(context.registry.path.read_text(encoding="utf-8"))
    assert records[-1]["token"] == "tok"


@pytest.mark.asyncio
async def test_add_endpoint_rejected_is_not_registered(supervisor, context, prompts):
    prompts.credentials = ["wrong"]

    rejected = AsyncMock(side_effect=AuthenticationError("Authentication failed"))
    forget = AsyncMock()

    with patch.object(context.api, "authenticate", new=rejected), patch.object(context.api, "forget", new=forget):
        assert await supervisor.add_endpoint("Box", "http://10.0.0.9:8080") is None

    assert len(context.registry.endpoints) == 1
    forget.assert_awaited_once_with(rejected.await_args.args[0].id)
    assert prompts.notices == ["Authentication failed"]


@pytest.mark.asyncio
async def test_add_endpoint_cancelled_prompt(supervisor, context, prompts):
    authenticate = AsyncMock()

    with patch.object(context.api, "authenticate", new=authenticate):
        assert await supervisor.add_endpoint("Box", "http://10.0.0.9:8080") is None

    authenticate.assert_not_called()


@pytest.mark.asyncio
async def test_remove_active_endpoint_disconnects(supervisor, context, connector, remote_endpoint):
    await supervisor.select_session("box1", "s1")
    await settle(lambda: supervisor.connection.is_open)

    assert await supervisor.remove_endpoint("box1") is True

    assert supervisor.active is None
    assert connector.sockets[0].closed is True
    assert context.registry.resolve("box1") is None


@pytest.mark.asyncio
async def test_remove_default_endpoint_refused(supervisor, context):
    assert await supervisor.remove_endpoint("local") is False
    assert context.registry.resolve("local") is not None


@pytest.mark.asyncio
async def test_delete_active_session_clears_selection(supervisor, context, connector):
    await supervisor.select_session("local", "s1")
    await settle(lambda: supervisor.connection.is_open)

    with patch.object(context.api, "delete_session", new=AsyncMock(return_value=True)), patch.object(
        context.api, "list_sessions", new=AsyncMock(return_value=[])
    ):
        assert await supervisor.delete_session("local", "s1") is True

    assert supervisor.active is None
    assert connector.sockets[0].closed is True


@pytest.mark.asyncio
async def test_delete_other_session_keeps_selection(supervisor, context):
    await supervisor.select_session("local", "s1")
    await settle(lambda: supervisor.connection.is_open)

    with patch.object(context.api, "delete_session", new=AsyncMock(return_value=True)), patch.object(
        context.api, "list_sessions", new=AsyncMock(return_value=[])
    ):
        await supervisor.delete_session("local", "s2")

    assert supervisor.active == ("local", "s1")

    await supervisor.close()


@pytest.mark.asyncio
async def test_rename_prompts_with_current_name(supervisor, context, prompts):
    prompts.texts = ["renamed"]
    rename = AsyncMock(return_value=True)

    with patch.object(context.api, "rename_session", new=rename), patch.object(
        context.api, "list_sessions", new=AsyncMock(return_value=[])
    ):
        assert await supervisor.rename_session("local", "s1") is True

    rename.assert_awaited_once_with(context.registry.default, "s1", "renamed")
    assert prompts.asked == ["Rename session:"]


@pytest.mark.asyncio
async def test_rename_on_logged_out_default_logs_in_and_retries(supervisor, context, prompts):
    prompts.credentials = ["pw"]
    authenticate = AsyncMock()
    rename = AsyncMock(side_effect=[LoginRequiredError("Login required"), True])

    with patch.object(context.api, "rename_session", new=rename), patch.object(
        context.api, "authenticate", new=authenticate
    ), patch.object(context.api, "list_sessions", new=AsyncMock(return_value=[])):
        assert await supervisor.rename_session("local", "s1", "new") is True

    authenticate.assert_awaited_once_with(context.registry.default, "pw")
    assert rename.await_count == 2
    assert prompts.asked == ["Password for Local:"]
    assert prompts.notices == []


@pytest.mark.asyncio
async def test_delete_on_logged_out_default_logs_in_and_retries(supervisor, context, prompts):
    prompts.credentials = ["pw"]
    authenticate = AsyncMock()
    delete = AsyncMock(side_effect=[LoginRequiredError("Login required"), True])

    with patch.object(context.api, "delete_session", new=delete), patch.object(
        context.api, "authenticate", new=authenticate
    ), patch.object(context.api, "list_sessions", new=AsyncMock(return_value=[])):
        assert await supervisor.delete_session("local", "s1") is True

    authenticate.assert_awaited_once_with(context.registry.default, "pw")
    assert delete.await_count == 2
    assert prompts.asked == ["Password for Local:"]


@pytest.mark.asyncio
async def test_delete_with_login_cancelled_gives_up(supervisor, context, prompts):
    delete = AsyncMock(side_effect=LoginRequiredError("Login required"))

    with patch.object(context.api, "delete_session", new=delete):
        assert await supervisor.delete_session("local", "s1") is False

    delete.assert_awaited_once()
    assert prompts.asked == ["Password for Local:"]
    assert prompts.notices == []


async def _token_rejected(endpoint, *args):
    endpoint.connected = False
    raise AuthenticationError("Unauthorized", status_code=401)


@pytest.mark.asyncio
async def test_remote_rejection_on_delete_is_persisted(supervisor, context, prompts, remote_endpoint):
    with patch.object(context.api, "delete_session", new=AsyncMock(side_effect=_token_rejected)):
        assert await supervisor.delete_session("box1", "s1") is False

    records = json.loads(context.registry.path.read_text(encoding="utf-8"))
    assert [record["connected"] for record in records if record["id"] == "box1"] == [False]
    assert prompts.notices == ["Failed to delete session: Unauthorized"]
    assert prompts.asked == []


@pytest.mark.asyncio
async def test_remote_rejection_on_rename_is_persisted(supervisor, context, remote_endpoint):
    with patch.object(context.api, "rename_session", new=AsyncMock(side_effect=_token_rejected)):
        assert await supervisor.rename_session("box1", "s1", "new") is False

    records = json.loads(context.registry.path.read_text(encoding="utf-8"))
    assert [record["connected"] for record in records if record["id"] == "box1"] == [False]
