"""Runotepad - multiplexed pseudo-terminal sessions over a websocket."""

from .app import create_app
from .auth import extract_token, verify_token
from .config import GatewayConfig, load_config
from .errors import (
    AuthRejected,
    ProtocolDecodeError,
    PtyReadError,
    RunotepadError,
    SessionCollision,
    SessionNotFound,
    SessionSpawnError,
    TransportWriteError,
)
from .gateway import Connection
from .protocol import decode_frame, encode_frame
from .pty import PtySession, SessionState
from .registry import SessionRegistry

__all__ = [
    "create_app",
    "extract_token",
    "verify_token",
    "GatewayConfig",
    "load_config",
    "AuthRejected",
    "ProtocolDecodeError",
    "PtyReadError",
    "RunotepadError",
    "SessionCollision",
    "SessionNotFound",
    "SessionSpawnError",
    "TransportWriteError",
    "Connection",
    "decode_frame",
    "encode_frame",
    "PtySession",
    "SessionState",
    "SessionRegistry",
]
