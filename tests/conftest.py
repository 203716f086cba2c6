"""Pytest fixtures for runotepad tests."""

import asyncio
import os
import time
from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from runotepad import GatewayConfig, SessionRegistry, create_app

TOKEN = "test-token"


def make_config(**overrides: Any) -> GatewayConfig:
    values: Dict[str, Any] = dict(
        token=TOKEN,
        shell="/bin/sh",
        static_dir=None,
        kill_grace=1.0,
    )
    values.update(overrides)
    return GatewayConfig(**values)


@pytest.fixture
def config() -> GatewayConfig:
    return make_config()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def client(config, registry):
    app = create_app(config, registry=registry)
    # Entering the client keeps one event loop alive across websocket
    # sessions, so background reapers finish between tests' assertions.
    with TestClient(app) as c:
        yield c


def ws_url(token: Optional[str] = TOKEN) -> str:
    return f"/ws?token={token}" if token else "/ws"


def receive_until(ws, predicate: Callable[[Dict[str, Any], List[Dict[str, Any]]], bool], limit: int = 5000):
    """Read frames until `predicate(frame, frames)` holds; returns all frames read."""
    frames: List[Dict[str, Any]] = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if predicate(frame, frames):
            return frames
    raise AssertionError(f"Condition not met after {limit} frames: {frames[-5:]}")


def output_text(frames: List[Dict[str, Any]], session_id: str) -> str:
    return "".join(f["data"] for f in frames if f["type"] == "output" and f["session_id"] == session_id)


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def _is_zombie(pid: int) -> bool:
    try:
        with open(f"/proc/{pid}/stat", "r", encoding="utf-8", errors="replace") as fh:
            fields = fh.read().rsplit(")", 1)[-1].split()
    except OSError:
        return False
    return bool(fields) and fields[0] == "Z"


def pid_alive(pid: int) -> bool:
    """True while `pid` exists and is not a zombie awaiting its reaper."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return not _is_zombie(pid)


async def drain_until(queue: asyncio.Queue, predicate: Callable[[Any, List[Any]], bool], timeout: float = 10.0) -> List[Any]:
    """Async counterpart of `receive_until` for a session's outbound queue."""
    items: List[Any] = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise AssertionError(f"Condition not met within {timeout}s: {items[-5:]}")
        item = await asyncio.wait_for(queue.get(), timeout=remaining)
        items.append(item)
        if predicate(item, items):
            return items
