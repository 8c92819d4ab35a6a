import asyncio
import json
import threading

from tasksync.remote.realtime_socket import DELETE, UPDATE, RealtimeSocket, parse_change_message


def _change(table: str, event_type: str, record=None, old_record=None) -> dict:
    return {
        "topic": f"realtime:public:{table}",
        "event": "postgres_changes",
        "payload": {"data": {"table": table, "type": event_type, "record": record, "old_record": old_record}},
        "ref": None,
    }


class _FakeWs:
    def __init__(self, incoming):
        self.incoming = list(incoming)
        self.sent: list[dict] = []

    async def send(self, frame):
        self.sent.append(json.loads(frame))

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.incoming:
            return self.incoming.pop(0)
        # Keep the connection open until the test closes the socket.
        await asyncio.sleep(3600)
        raise StopAsyncIteration


class _Connect:
    def __init__(self, ws):
        self.ws = ws

    async def __aenter__(self):
        return self.ws

    async def __aexit__(self, *exc):
        return False


def test_parse_change_message():
    event = parse_change_message(_change("tasks", "UPDATE", {"id": 7, "title": "x"}, {"id": 7}))
    assert event.table == "tasks"
    assert event.event_type == UPDATE
    assert event.record_id == "7"

    deleted = parse_change_message(_change("tasks", "DELETE", {"id": 7}, {"id": 7}))
    assert deleted.event_type == DELETE
    assert deleted.after is None
    assert deleted.record_id == "7"

    assert parse_change_message({"event": "phx_reply", "payload": {"status": "ok"}}) is None
    assert parse_change_message(_change("tasks", "TRUNCATE")) is None


def test_dispatch_routes_events_to_table_callbacks():
    socket = RealtimeSocket("ws://example", lambda: "tok")
    seen = []
    socket._callbacks = {"tasks": {"h1": seen.append}}

    socket.dispatch(json.dumps(_change("tasks", "INSERT", {"id": "t1"})))
    socket.dispatch(json.dumps(_change("events", "INSERT", {"id": "e1"})))
    assert socket.dispatch("not json") is None

    assert [e.record_id for e in seen] == ["t1"]


def test_socket_joins_tables_and_delivers_changes():
    async def _scenario():
        ws = _FakeWs([json.dumps(_change("tasks", "UPDATE", {"id": "t1", "title": "Pushed"}))])
        socket = RealtimeSocket("ws://example", lambda: "tok", connect=lambda url, **kw: _Connect(ws))
        received = []
        handle = socket.add("tasks", received.append)
        for _ in range(50):
            if received:
                break
            await asyncio.sleep(0.01)
        connected = socket.connected
        socket.remove(handle)
        await socket.close()
        return ws, received, connected

    ws, received, connected = asyncio.run(_scenario())

    assert connected is True
    assert received[0].after["title"] == "Pushed"
    join = ws.sent[0]
    assert join["topic"] == "realtime:public:tasks"
    assert join["event"] == "phx_join"
    assert join["payload"]["access_token"] == "tok"
    assert join["payload"]["config"]["postgres_changes"][0]["table"] == "tasks"


def test_access_token_is_resolved_off_the_event_loop():
    async def _scenario():
        ws = _FakeWs([])
        loop_thread = threading.get_ident()
        provider_threads = []

        def _token():
            provider_threads.append(threading.get_ident())
            return "tok"

        socket = RealtimeSocket("ws://example", _token, connect=lambda url, **kw: _Connect(ws))
        handle = socket.add("tasks", lambda event: None)
        for _ in range(50):
            if ws.sent:
                break
            await asyncio.sleep(0.01)
        socket.remove(handle)
        await socket.close()
        return ws, loop_thread, provider_threads

    ws, loop_thread, provider_threads = asyncio.run(_scenario())

    assert ws.sent[0]["payload"]["access_token"] == "tok"
    assert provider_threads
    assert loop_thread not in provider_threads
