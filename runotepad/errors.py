from typing import Optional


class RunotepadError(Exception):
    """Base class for gateway errors."""


class AuthRejected(RunotepadError):
    """Missing or invalid access token; the connection is never upgraded."""


class ProtocolDecodeError(RunotepadError):
    """A single frame could not be decoded. The connection carries on."""


class SessionSpawnError(RunotepadError):
    """The pseudo-terminal or its shell could not be started."""


class SessionCollision(SessionSpawnError):
    """A client-supplied session id is already live."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session already exists: {session_id}")
        self.session_id = session_id


class SessionNotFound(RunotepadError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class TransportWriteError(RunotepadError):
    """Writing to the websocket failed; fatal to the connection."""


class PtyReadError(RunotepadError):
    """Reading from a session's terminal failed; fatal to that session only."""

    def __init__(self, session_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"PTY read failed for {session_id}: {cause}")
        self.session_id = session_id
        self.cause = cause
