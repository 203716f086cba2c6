from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from .config import GatewayConfig
from .errors import (
    ProtocolDecodeError,
    SessionCollision,
    SessionNotFound,
    SessionSpawnError,
    TransportWriteError,
)
from .protocol import (
    Close,
    Create,
    Created,
    Error,
    Inbound,
    Input,
    Outbound,
    Resize,
    decode_frame,
    encode_frame,
)
from .pty import PtySession
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class Connection:
    """One authenticated websocket and the sessions it owns.

    Two tasks run per connection: ``dispatch()`` consumes inbound frames in
    order, ``relay()`` is the only writer to the socket and drains the
    outbound queue fed by acknowledgments and every session's read loop.
    Whichever finishes first ends the connection; ``teardown()`` then closes
    everything the connection still owns.
    """

    def __init__(self, websocket: WebSocket, *, registry: SessionRegistry, config: GatewayConfig) -> None:
        self.websocket = websocket
        self.registry = registry
        self.config = config
        self.peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        self.outbound: asyncio.Queue[Outbound] = asyncio.Queue()
        self.sessions: Set[str] = set()

    def emit(self, message: Outbound) -> None:
        self.outbound.put_nowait(message)

    # ------------------------------------------------------------------
    # Outbound relay

    async def relay(self) -> None:
        logger.debug("Relay started for %s", self.peer)
        while True:
            message = await self.outbound.get()
            frame = encode_frame(message)
            try:
                await self.websocket.send_text(frame)
            except Exception as exc:
                raise TransportWriteError(f"Failed to send to {self.peer}: {exc}") from exc
            logger.debug("Sent %s frame (%d bytes) to %s", message.type, len(frame), self.peer)

    # ------------------------------------------------------------------
    # Inbound dispatcher

    async def dispatch(self) -> None:
        logger.debug("Dispatcher started for %s", self.peer)
        while True:
            message = await self.websocket.receive()
            kind = message.get("type")
            if kind == "websocket.disconnect":
                logger.info("WebSocket closed by %s (code=%s)", self.peer, message.get("code"))
                return
            text = message.get("text")
            if text is None:
                data = message.get("bytes") or b""
                logger.debug("Ignoring binary frame (%d bytes) from %s", len(data), self.peer)
                continue
            try:
                frame = decode_frame(text)
            except ProtocolDecodeError as exc:
                logger.warning("Dropping undecodable frame from %s: %s", self.peer, exc)
                continue
            await self.handle(frame)

    async def handle(self, frame: Inbound) -> None:
        if isinstance(frame, Create):
            await self.create_session(frame.id)
            return
        try:
            session = self._owned(frame.session_id)
        except SessionNotFound as exc:
            # close is idempotent; input/resize to a stale id is just noise
            if isinstance(frame, Close):
                logger.debug("Ignoring close: %s", exc)
            else:
                logger.warning("Ignoring %s: %s", frame.type, exc)
            return

        if isinstance(frame, Input):
            logger.debug("Input for session %s: %d chars", frame.session_id, len(frame.data))
            if not session.write(frame.data):
                logger.warning("Ignoring input for session %s in state %s", session.id, session.state.value)
        elif isinstance(frame, Resize):
            logger.debug("Resize session %s to %dx%d", frame.session_id, frame.cols, frame.rows)
            session.resize(frame.cols, frame.rows)
        elif isinstance(frame, Close):
            await session.close("client")

    def _owned(self, session_id: str) -> PtySession:
        """Look up a live session this connection owns."""
        session = self.registry.lookup(session_id) if session_id in self.sessions else None
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def create_session(self, requested_id: Optional[str]) -> Optional[PtySession]:
        session_id = requested_id or str(uuid.uuid4())
        if session_id in self.registry:
            logger.warning("Rejecting create for live session id %s", session_id)
            self.emit(Error(message=str(SessionCollision(session_id))))
            return None

        session = PtySession(
            session_id,
            registry=self.registry,
            emit=self.emit,
            shell=self.config.shell,
            shell_args=self.config.shell_args,
            cwd=self.config.cwd,
            signal_winch_on_resize=self.config.signal_winch_on_resize,
            kill_grace=self.config.kill_grace,
            on_closed=self.sessions.discard,
        )
        logger.info("Creating PTY session %s for %s", session_id, self.peer)
        try:
            await session.spawn()
            await self.registry.register(session_id, session)
        except SessionCollision as exc:
            # Another connection claimed the id while the shell was spawning.
            await session.abort()
            logger.warning("%s", exc)
            self.emit(Error(message=str(exc)))
            return None
        except SessionSpawnError as exc:
            logger.error("Failed to create PTY session %s: %s", session_id, exc)
            self.emit(Error(message=str(exc)))
            return None
        except asyncio.CancelledError:
            await session.abort()
            raise

        self.sessions.add(session_id)
        self.emit(Created(session_id=session_id))
        session.start()
        return session

    # ------------------------------------------------------------------
    # Lifecycle

    async def run(self) -> None:
        tasks = [
            asyncio.create_task(self.dispatch(), name=f"dispatch-{self.peer}"),
            asyncio.create_task(self.relay(), name=f"relay-{self.peer}"),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if isinstance(exc, TransportWriteError):
                    logger.warning("%s", exc)
                elif isinstance(exc, WebSocketDisconnect):
                    logger.info("WebSocket %s disconnected", self.peer)
                elif exc is not None:
                    logger.error("Connection %s failed", self.peer, exc_info=exc)
        finally:
            for task in tasks:
                task.cancel()
            await self.teardown()

    async def teardown(self) -> None:
        owned = [self.registry.lookup(sid) for sid in list(self.sessions)]
        live = [s for s in owned if s is not None]
        if live:
            logger.info("Closing %d session(s) owned by %s", len(live), self.peer)
        await asyncio.gather(*(s.close("disconnect") for s in live), return_exceptions=True)
        self.sessions.clear()
