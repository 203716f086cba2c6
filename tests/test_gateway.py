"""End-to-end tests for the terminal websocket."""

import re

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from runotepad import create_app

from .conftest import TOKEN, make_config, output_text, pid_alive, receive_until, wait_until, ws_url

pytestmark = pytest.mark.integration


def _create(ws, session_id=None) -> str:
    msg = {"type": "create"}
    if session_id is not None:
        msg["id"] = session_id
    ws.send_json(msg)
    frame = receive_until(ws, lambda f, _fs: f["type"] in ("created", "error"))[-1]
    assert frame["type"] == "created", frame
    return frame["session_id"]


def _sentinel(ws) -> list:
    """Create a throwaway session and return every frame seen before its `created`."""
    ws.send_json({"type": "create"})
    return receive_until(ws, lambda f, _fs: f["type"] == "created")


class TestAuthentication:
    def test_missing_token_rejected(self, client, registry) -> None:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(ws_url(None)) as ws:
                ws.receive_json()
        assert excinfo.value.code == 1008
        assert len(registry) == 0

    def test_wrong_token_rejected(self, client) -> None:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(ws_url("wrong")) as ws:
                ws.receive_json()

    def test_bearer_header_accepted(self, client) -> None:
        with client.websocket_connect("/ws", headers={"Authorization": f"Bearer {TOKEN}"}) as ws:
            session_id = _create(ws)
            ws.send_json({"type": "close", "session_id": session_id})
            receive_until(ws, lambda f, _fs: f["type"] == "closed")


class TestScenario:
    def test_create_echo_close(self, client, registry) -> None:
        with client.websocket_connect(ws_url()) as ws:
            ws.send_json({"type": "create"})
            created = ws.receive_json()
            assert created["type"] == "created"
            sid = created["session_id"]
            assert sid in registry

            ws.send_json({"type": "input", "session_id": sid, "data": "echo hi\n"})
            frames = receive_until(ws, lambda _f, fs: "hi\r\n" in output_text(fs, sid).split("echo hi", 1)[-1])
            assert all(f["type"] == "output" for f in frames)

            ws.send_json({"type": "close", "session_id": sid})
            frames = receive_until(ws, lambda f, _fs: f["type"] == "closed")
            assert frames[-1] == {"type": "closed", "session_id": sid}
            assert sid not in registry

            # Input to a closed id is silently ignored: no error, no output.
            ws.send_json({"type": "input", "session_id": sid, "data": "echo again\n"})
            before = _sentinel(ws)
            assert [f["type"] for f in before] == ["created"]

    def test_client_supplied_id(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            assert _create(ws, "my-term") == "my-term"

    def test_created_ids_unique(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            ids = [_create(ws) for _ in range(5)]
            assert len(set(ids)) == 5

    def test_duplicate_client_id_rejected(self, client, registry) -> None:
        with client.websocket_connect(ws_url()) as ws:
            _create(ws, "dup")
            original = registry.lookup("dup")
            ws.send_json({"type": "create", "id": "dup"})
            frame = receive_until(ws, lambda f, _fs: f["type"] == "error")[-1]
            assert "dup" in frame["message"]
            assert registry.lookup("dup") is original


class TestErrorHandling:
    def test_resize_unknown_session_is_silent(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            ws.send_json({"type": "resize", "session_id": "ghost", "cols": 100, "rows": 30})
            ws.send_json({"type": "input", "session_id": "ghost", "data": "x"})
            ws.send_json({"type": "close", "session_id": "ghost"})
            assert [f["type"] for f in _sentinel(ws)] == ["created"]

    def test_double_close_yields_one_closed(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            sid = _create(ws)
            ws.send_json({"type": "close", "session_id": sid})
            ws.send_json({"type": "close", "session_id": sid})
            frames = receive_until(ws, lambda f, _fs: f["type"] == "closed")
            frames += _sentinel(ws)
            assert [f for f in frames if f["type"] == "closed"] == [{"type": "closed", "session_id": sid}]

    def test_undecodable_frames_do_not_end_connection(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            ws.send_text("not json")
            ws.send_text('{"type":"explode"}')
            ws.send_text('{"type":"resize","session_id":"x","cols":"wide","rows":1}')
            ws.send_bytes(b"\x00\x01")
            assert [f["type"] for f in _sentinel(ws)] == ["created"]

    def test_unencodable_text_leaves_connection_and_sessions_up(self, client, registry) -> None:
        with client.websocket_connect(ws_url()) as ws:
            sid = _create(ws, "live")
            neighbour = _create(ws, "neighbour")
            ws.send_text(r'{"type":"input","session_id":"live","data":"\ud800"}')
            ws.send_text(r'{"type":"create","id":"\udfff"}')
            ws.send_text(r'{"type":"resize","session_id":"\ud800","cols":90,"rows":30}')

            assert [f["type"] for f in _sentinel(ws) if f["type"] != "output"] == ["created"]
            assert sid in registry and neighbour in registry

            for target in (sid, neighbour):
                ws.send_json({"type": "input", "session_id": target, "data": f"echo still-$((1+1))-{target}\n"})
            receive_until(
                ws,
                lambda _f, fs: "still-2-live" in output_text(fs, sid)
                and "still-2-neighbour" in output_text(fs, neighbour),
            )

    def test_spawn_failure_reports_error(self, registry) -> None:
        app = create_app(make_config(shell="/nonexistent/shell"), registry=registry)
        with TestClient(app) as client:
            with client.websocket_connect(ws_url()) as ws:
                ws.send_json({"type": "create", "id": "broken"})
                frame = ws.receive_json()
                assert frame["type"] == "error"
                assert "/nonexistent/shell" in frame["message"]
        assert registry.lookup("broken") is None

    def test_sessions_are_scoped_to_their_connection(self, client, registry) -> None:
        with client.websocket_connect(ws_url()) as owner:
            sid = _create(owner, "owned")
            with client.websocket_connect(ws_url()) as other:
                other.send_json({"type": "close", "session_id": sid})
                assert [f["type"] for f in _sentinel(other)] == ["created"]
            assert sid in registry


class TestSessionLifecycle:
    def test_shell_exit_emits_single_closed(self, client, registry) -> None:
        with client.websocket_connect(ws_url()) as ws:
            sid = _create(ws)
            ws.send_json({"type": "input", "session_id": sid, "data": "exit\n"})
            frames = receive_until(ws, lambda f, _fs: f["type"] == "closed")
            assert frames[-1] == {"type": "closed", "session_id": sid}
            assert sid not in registry
            frames = _sentinel(ws)
            assert not any(f["type"] == "closed" for f in frames)

    def test_resize_is_applied(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            sid = _create(ws)
            ws.send_json({"type": "resize", "session_id": sid, "cols": 100, "rows": 33})
            ws.send_json({"type": "input", "session_id": sid, "data": "stty size\n"})
            receive_until(ws, lambda _f, fs: "33 100" in output_text(fs, sid))

    def test_interleaved_sessions_keep_their_own_order(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            a, b = _create(ws, "A"), _create(ws, "B")
            loop = 'i=0; while [ $i -lt 200 ]; do echo "{p}$i"; i=$((i+1)); done\n'
            ws.send_json({"type": "input", "session_id": a, "data": loop.format(p="A")})
            ws.send_json({"type": "input", "session_id": b, "data": loop.format(p="B")})

            def done(_f, fs):
                return "A199\r\n" in output_text(fs, a) and "B199\r\n" in output_text(fs, b)

            frames = receive_until(ws, done)
            for sid, prefix in ((a, "A"), (b, "B")):
                text = output_text(frames, sid)
                numbers = [int(n) for n in re.findall(prefix + r"(\d+)\r\n", text)]
                assert numbers == list(range(200))
                # No bytes from the other session leak into this stream.
                other = "B" if prefix == "A" else "A"
                assert not re.search(other + r"\d+\r\n", text)

    def test_disconnect_terminates_all_sessions(self, client, registry) -> None:
        with client.websocket_connect(ws_url()) as ws:
            ids = [_create(ws) for _ in range(3)]
            pids = [registry.lookup(sid).pid for sid in ids]
            assert all(pid_alive(pid) for pid in pids)

        assert wait_until(lambda: len(registry) == 0)
        assert wait_until(lambda: not any(pid_alive(pid) for pid in pids))


class TestSessionsEndpoint:
    def test_lists_live_sessions(self, client) -> None:
        with client.websocket_connect(ws_url()) as ws:
            sid = _create(ws, "listed")
            resp = client.get("/api/sessions", params={"token": TOKEN})
            assert resp.status_code == 200
            data = resp.json()["data"]
            assert [s["session_id"] for s in data] == [sid]
            assert data[0]["state"] == "running"

    def test_requires_token(self, client) -> None:
        assert client.get("/api/sessions").status_code == 401
        assert client.get("/api/sessions", params={"token": "nope"}).status_code == 401
