import json
import asyncio
from contextlib import asynccontextmanager

import pytest
import websockets

from director.errors import AgentConnectionError, CommandError, CommandTimeout
from director.protocol import ProtocolClient


@asynccontextmanager
async def agent(handler):
    """In-process Agent; yields its ws:// URL."""
    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


@asynccontextmanager
async def connected(handler, **kwargs):
    async with agent(handler) as url:
        client = ProtocolClient(url, **kwargs)
        await client.connect()
        try:
            yield client
        finally:
            await client.close()


async def echo(ws):
    async for raw in ws:
        msg = json.loads(raw)
        await ws.send(json.dumps({"id": msg["id"], "ok": True, "echo": msg["action"]}))


@pytest.mark.asyncio
async def test_send_returns_reply_payload():
    async with connected(echo) as client:
        reply = await client.send("cursor.show")

    assert reply["ok"] is True
    assert reply["echo"] == "cursor.show"


@pytest.mark.asyncio
async def test_request_carries_id_action_and_params():
    seen = []

    async def handler(ws):
        async for raw in ws:
            msg = json.loads(raw)
            seen.append(msg)
            await ws.send(json.dumps({"id": msg["id"], "ok": True}))

    async with connected(handler) as client:
        await client.send("label.show", {"text": "Hi", "id": "bogus"})
        await client.send("label.hide")

    assert seen[0] == {"text": "Hi", "id": 1, "action": "label.show"}
    assert seen[1]["id"] == 2


@pytest.mark.asyncio
async def test_out_of_order_replies_reach_their_caller():
    async def handler(ws):
        first = json.loads(await ws.recv())
        second = json.loads(await ws.recv())
        for msg in (second, first):
            await ws.send(json.dumps({"id": msg["id"], "ok": True, "echo": msg["action"]}))
        await ws.wait_closed()

    async with connected(handler) as client:
        a, b = await asyncio.gather(client.send("cursor.show"), client.send("viewport.show"))

    assert a["echo"] == "cursor.show"
    assert b["echo"] == "viewport.show"


@pytest.mark.asyncio
async def test_unknown_id_is_ignored():
    async def handler(ws):
        async for raw in ws:
            msg = json.loads(raw)
            await ws.send(json.dumps({"id": 999, "ok": True}))
            await ws.send("not json")
            await ws.send(json.dumps({"id": msg["id"], "ok": True}))

    async with connected(handler) as client:
        reply = await client.send("cursor.click")
        assert client.pending_count == 0

    assert reply["id"] == 1


@pytest.mark.asyncio
async def test_error_reply_raises_command_error():
    async def handler(ws):
        async for raw in ws:
            msg = json.loads(raw)
            await ws.send(json.dumps({"id": msg["id"], "ok": False, "error": "no window"}))

    async with connected(handler) as client:
        with pytest.raises(CommandError) as exc:
            await client.send("stage.center")

    assert exc.value.action == "stage.center"
    assert exc.value.remote_error == "no window"


@pytest.mark.asyncio
async def test_timeout_removes_pending_and_ignores_stale_reply():
    async def handler(ws):
        stale = json.loads(await ws.recv())
        await asyncio.sleep(0.2)
        await ws.send(json.dumps({"id": stale["id"], "ok": True, "stale": True}))
        fresh = json.loads(await ws.recv())
        await ws.send(json.dumps({"id": fresh["id"], "ok": True}))
        await ws.wait_closed()

    async with connected(handler, timeout=0.05) as client:
        with pytest.raises(CommandTimeout):
            await client.send("record.indicator")
        assert client.pending_count == 0

        await asyncio.sleep(0.3)
        client.timeout = 1
        reply = await client.send("cursor.show")

    assert "stale" not in reply


@pytest.mark.asyncio
async def test_events_without_id_go_to_subscribers():
    async def handler(ws):
        async for raw in ws:
            msg = json.loads(raw)
            await ws.send(json.dumps({"event": "panel.clicked"}))
            await ws.send(json.dumps({"id": msg["id"], "ok": True}))

    events = []
    async with connected(handler) as client:
        client.on_event(events.append)
        await client.send("cursor.show")

    assert events == [{"event": "panel.clicked"}]


@pytest.mark.asyncio
async def test_connection_loss_fails_pending():
    async def handler(ws):
        await ws.recv()
        await ws.close()

    async with connected(handler) as client:
        with pytest.raises(AgentConnectionError):
            await client.send("cursor.show")


@pytest.mark.asyncio
async def test_connect_refused():
    async with agent(echo) as url:
        pass

    with pytest.raises(AgentConnectionError):
        await ProtocolClient(url).connect()


@pytest.mark.asyncio
async def test_send_without_connection():
    with pytest.raises(AgentConnectionError):
        await ProtocolClient("ws://127.0.0.1:1").send("cursor.show")


@pytest.mark.asyncio
async def test_dry_run_never_connects():
    client = ProtocolClient("ws://127.0.0.1:1", dry_run=True)
    await client.connect()

    assert await client.send("cursor.show") == {"ok": True}
    assert not client.connected
    client.notify("timeline.step", {"index": 0})


@pytest.mark.asyncio
async def test_notify_failure_is_dropped():
    received = asyncio.Event()

    async def handler(ws):
        async for raw in ws:
            msg = json.loads(raw)
            if msg["action"] == "timeline.step":
                await ws.send(json.dumps({"id": msg["id"], "ok": False, "error": "busy"}))
                received.set()
            else:
                await ws.send(json.dumps({"id": msg["id"], "ok": True}))

    async with connected(handler) as client:
        client.notify("timeline.step", {"index": 3})
        await asyncio.wait_for(received.wait(), 1)
        await asyncio.sleep(0.05)
        reply = await client.send("cursor.show")

    assert reply["ok"] is True


@pytest.mark.asyncio
async def test_close_waits_for_cancelled_notifications():
    received = asyncio.Event()

    async def handler(ws):
        async for raw in ws:
            received.set()

    async with connected(handler) as client:
        client.notify("timeline.step", {"index": 0})
        await asyncio.wait_for(received.wait(), 1)
        pending = list(client._background)
        await client.close()

    assert pending
    assert all(task.done() for task in pending)
