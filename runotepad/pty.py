from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import signal
import struct
import termios
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .config import DEFAULT_COLS, DEFAULT_ROWS
from .errors import PtyReadError, SessionSpawnError
from .protocol import Closed, Outbound, Output

if TYPE_CHECKING:
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)

Emit = Callable[[Outbound], None]


class SessionState(Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsz = struct.pack("HHHH", max(1, rows), max(1, cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsz)


def _close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


class PtySession:
    """One shell process attached to its own pseudo-terminal.

    Lifecycle: ``spawn()`` (SPAWNING) -> ``start()`` (RUNNING) ->
    ``close()`` (CLOSING -> CLOSED).

    The controlling side is held twice: ``_reader_fd`` belongs to the read
    loop thread and is closed by it on exit, ``_writer_fd`` carries input and
    resize ioctls and is released by ``close()``. Output is handed to the
    event loop with ``call_soon_threadsafe``; the thread never touches the
    connection.
    """

    CHUNK_SIZE = 4096

    def __init__(
        self,
        session_id: str,
        *,
        registry: SessionRegistry,
        emit: Emit,
        shell: str,
        shell_args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        signal_winch_on_resize: bool = True,
        kill_grace: float = 2.0,
        on_closed: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.id = session_id
        self.shell = shell
        self.shell_args = list(shell_args or [])
        self.cwd = cwd
        self.env_overrides = dict(env or {})
        self.cols = DEFAULT_COLS
        self.rows = DEFAULT_ROWS
        self.created_at = time.time()
        self.exit_code: Optional[int] = None

        self._registry = registry
        self._emit = emit
        self._on_closed = on_closed
        self._signal_winch_on_resize = signal_winch_on_resize
        self._kill_grace = kill_grace

        self._state = SessionState.SPAWNING
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_fd = -1
        self._writer_fd = -1
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None
        self._reader_done = asyncio.Event()
        self._input: asyncio.Queue[bytes] = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._pending_write: Optional[asyncio.Future] = None
        self._tasks: set = set()

    # ------------------------------------------------------------------
    # Introspection

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def alive(self) -> bool:
        return self._state is SessionState.RUNNING

    def to_payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "pid": self.pid,
            "state": self._state.value,
            "cols": self.cols,
            "rows": self.rows,
            "shell": self.shell,
            "created_at": self.created_at,
        }

    # ------------------------------------------------------------------
    # Spawning

    def _prepare_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.env_overrides)
        env.setdefault("TERM", "xterm-256color")
        return env

    async def spawn(self) -> None:
        """Open the pty pair at 80x24 and launch the shell on its subordinate side.

        Raises SessionSpawnError after releasing every handle; the session is
        then CLOSED and must not be registered.
        """
        if self._state is not SessionState.SPAWNING:
            raise SessionSpawnError(f"Session {self.id} already spawned")
        try:
            master_fd, slave_fd = os.openpty()
        except OSError as exc:
            self._state = SessionState.CLOSED
            raise SessionSpawnError(f"Failed to open pseudo-terminal: {exc}") from exc

        try:
            _set_winsize(master_fd, self.cols, self.rows)
            self._reader_fd = master_fd
            self._writer_fd = os.dup(master_fd)
            launch = asyncio.ensure_future(
                asyncio.create_subprocess_exec(
                    self.shell,
                    *self.shell_args,
                    cwd=self.cwd,
                    env=self._prepare_env(),
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    start_new_session=True,
                )
            )
            try:
                self._process = await asyncio.shield(launch)
            except asyncio.CancelledError:
                # The child may already exist; keep hold of it so abort() can kill it.
                try:
                    self._process = await launch
                except (OSError, ValueError) as exc:
                    logger.debug("Cancelled spawn of %s also failed: %s", self.shell, exc)
                raise
        except (OSError, ValueError) as exc:
            for fd in (self._writer_fd, master_fd):
                if fd >= 0:
                    _close_fd(fd)
            self._reader_fd = self._writer_fd = -1
            self._state = SessionState.CLOSED
            raise SessionSpawnError(f"Failed to spawn {self.shell}: {exc}") from exc
        finally:
            _close_fd(slave_fd)

        logger.info("PTY session %s spawned: pid=%d shell=%s", self.id, self._process.pid, self.shell)

    def start(self) -> None:
        """Enter RUNNING: start the input writer, the read loop and the exit watcher."""
        if self._state is not SessionState.SPAWNING or self._process is None:
            raise RuntimeError(f"Session {self.id} cannot start from {self._state.value}")
        self._loop = asyncio.get_running_loop()
        self._state = SessionState.RUNNING
        self._writer_task = self._spawn_task(self._drain_input())
        self._spawn_task(self._watch_exit())
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"pty-reader-{self.id}",
            daemon=True,
        )
        self._reader.start()

    async def abort(self) -> None:
        """Tear down a spawned session that never started. Emits nothing."""
        if self._state is not SessionState.SPAWNING:
            return
        self._state = SessionState.CLOSED
        self._signal_group(signal.SIGKILL)
        for fd in (self._reader_fd, self._writer_fd):
            if fd >= 0:
                _close_fd(fd)
        self._reader_fd = self._writer_fd = -1
        if self._process is not None:
            self.exit_code = await self._process.wait()

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Read loop (dedicated thread)

    def _post(self, callback: Callable[..., Any], *args: Any) -> bool:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Event loop already closed; nobody is left to deliver to.
            return False
        return True

    def _read_loop(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        error: Optional[PtyReadError] = None
        try:
            while True:
                try:
                    data = os.read(self._reader_fd, self.CHUNK_SIZE)
                except OSError as exc:
                    # Linux reports a hung-up subordinate side as EIO.
                    if exc.errno != errno.EIO:
                        error = PtyReadError(self.id, exc)
                    break
                if not data:
                    break
                text = decoder.decode(data)
                if text and not self._post(self._deliver, text):
                    return
            tail = decoder.decode(b"", final=True)
            if tail:
                self._post(self._deliver, tail)
        except Exception as exc:
            error = PtyReadError(self.id, exc)
        finally:
            _close_fd(self._reader_fd)
            self._post(self._on_read_loop_exit, error)

    def _deliver(self, text: str) -> None:
        if self._state is SessionState.CLOSED:
            logger.debug("Dropping %d chars for closed session %s", len(text), self.id)
            return
        self._emit(Output(session_id=self.id, data=text))

    def _on_read_loop_exit(self, error: Optional[PtyReadError]) -> None:
        self._reader_done.set()
        if error is not None:
            logger.warning("%s", error)
        else:
            logger.info("PTY EOF for session %s", self.id)
        if self._state is SessionState.RUNNING:
            self._spawn_task(self.close("read-error" if error else "eof"))

    async def _watch_exit(self) -> None:
        assert self._process is not None
        self.exit_code = await self._process.wait()
        logger.info("PTY session %s shell exited (code=%s)", self.id, self.exit_code)
        if self._state is not SessionState.RUNNING:
            return
        # Let the read loop drain what the shell wrote before exiting.
        try:
            await asyncio.wait_for(self._reader_done.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            pass
        await self.close("exit")

    # ------------------------------------------------------------------
    # Input and resize

    def write(self, data: str) -> bool:
        """Queue raw input for the shell. Returns False if the session is not running."""
        if self._state is not SessionState.RUNNING:
            return False
        if data:
            self._input.put_nowait(data.encode("utf-8"))
        return True

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._writer_fd, view)
            view = view[written:]

    async def _drain_input(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            data = await self._input.get()
            self._pending_write = loop.run_in_executor(None, self._write_all, data)
            try:
                await asyncio.shield(self._pending_write)
            except OSError as exc:
                logger.warning("Failed to write to PTY %s: %s", self.id, exc)

    def resize(self, cols: int, rows: int) -> bool:
        if self._state is not SessionState.RUNNING:
            return False
        try:
            _set_winsize(self._writer_fd, cols, rows)
        except OSError as exc:
            logger.warning("Failed to resize PTY %s: %s", self.id, exc)
            return False
        self.cols, self.rows = cols, rows
        if self._signal_winch_on_resize:
            self._signal_group(signal.SIGWINCH)
        return True

    # ------------------------------------------------------------------
    # Closing

    def _signal_group(self, sig: int) -> None:
        pid = self.pid
        if not pid:
            return
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.warning("Cannot signal session %s (pid=%d): %s", self.id, pid, exc)

    def _release_writer(self) -> None:
        if self._writer_task is not None:
            self._writer_task.cancel()
        fd, self._writer_fd = self._writer_fd, -1
        if fd < 0:
            return
        pending = self._pending_write
        if pending is not None and not pending.done():
            # An executor write still owns the fd; close it once that returns.
            pending.add_done_callback(lambda _: _close_fd(fd))
        else:
            _close_fd(fd)

    async def close(self, reason: str = "close") -> bool:
        """Close the session. Idempotent; returns True only for the call that closed it.

        Removal from the registry happens before any handle is released, and
        ``closed`` is emitted exactly once. The shell's process group gets
        SIGHUP now and SIGKILL if it is still around after ``kill_grace``.
        """
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return False
        if self._state is SessionState.SPAWNING:
            await self.abort()
            return False

        self._state = SessionState.CLOSING
        logger.info("Closing PTY session %s (%s)", self.id, reason)
        await self._registry.remove(self.id)
        self._signal_group(signal.SIGHUP)
        self._release_writer()
        self._state = SessionState.CLOSED

        self._emit(Closed(session_id=self.id))
        if self._on_closed is not None:
            try:
                self._on_closed(self.id)
            except Exception:
                logger.exception("on_closed callback failed for session %s", self.id)
        self._spawn_task(self._reap())
        return True

    async def _reap(self) -> None:
        proc = self._process
        if proc is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            logger.warning("PTY session %s ignored SIGHUP; sending SIGKILL", self.id)
            self._signal_group(signal.SIGKILL)
            await proc.wait()
        self.exit_code = proc.returncode

    async def wait_closed(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait until the shell process has been reaped; returns its exit code."""
        if self._process is None:
            return self.exit_code
        try:
            return await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            return None
