from __future__ import annotations

import json
import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    val = str(raw).strip().lower()
    return val in {"1", "true", "yes", "y", "on"}


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default


def default_config_path() -> Path:
    path = os.environ.get("RUNOTEPAD_CONFIG_FILE")
    if path:
        return Path(os.path.expanduser(path)).resolve()
    return Path.home() / ".runotepad" / "config.json"


def default_shell() -> str:
    return os.environ.get("RUNOTEPAD_SHELL") or os.environ.get("SHELL") or "/bin/sh"


def generate_token() -> str:
    """Random 32-character hex access token."""
    return secrets.token_hex(16)


@dataclass
class GatewayConfig:
    """Runtime settings for the terminal gateway.

    Built from the environment via `from_env()`; tests construct it directly.
    `token` is the single shared secret every client must present.
    """

    token: str
    shell: str = field(default_factory=default_shell)
    shell_args: list = field(default_factory=list)
    cwd: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8080
    static_dir: Optional[Path] = None
    log_level: str = "INFO"
    signal_winch_on_resize: bool = True
    kill_grace: float = 2.0
    config_path: Optional[Path] = None

    @classmethod
    def from_env(cls, *, token: Optional[str] = None, config_path: Optional[Path] = None) -> "GatewayConfig":
        port_raw = os.environ.get("RUNOTEPAD_PORT")
        static = os.environ.get("RUNOTEPAD_STATIC_DIR", "static")
        return cls(
            token=token or os.environ.get("RUNOTEPAD_TOKEN", ""),
            host=os.environ.get("RUNOTEPAD_HOST", "0.0.0.0"),
            port=int(port_raw) if port_raw else 8080,
            static_dir=Path(os.path.expanduser(static)) if static else None,
            log_level=os.environ.get("RUNOTEPAD_LOG_LEVEL", "INFO").upper(),
            signal_winch_on_resize=_truthy_env("RUNOTEPAD_SIGWINCH_ON_RESIZE", default=True),
            kill_grace=_float_env("RUNOTEPAD_KILL_GRACE", 2.0),
            config_path=config_path or default_config_path(),
        )


async def _read_config_file(path: Path) -> Dict[str, Any]:
    async with aiofiles.open(path, "r", encoding="utf-8") as fh:
        raw = await fh.read()
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data


async def _write_config_file(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as fh:
        await fh.write(json.dumps(data, indent=2))
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


async def load_config(*, config_path: Optional[Path] = None) -> GatewayConfig:
    """Build a config from the environment, resolving the access token.

    Precedence: RUNOTEPAD_TOKEN, then the `token` key of the config file.
    If neither is present a fresh token is generated and persisted so the
    same URL keeps working across restarts.
    """
    config = GatewayConfig.from_env(config_path=config_path)
    if config.token:
        return config

    path = config.config_path or default_config_path()
    data: Dict[str, Any] = {}
    if path.exists():
        data = await _read_config_file(path)
        token = data.get("token")
        if isinstance(token, str) and token:
            config.token = token
            return config

    config.token = generate_token()
    data["token"] = config.token
    await _write_config_file(path, data)
    logger.info("Created new config file at %s", path)
    return config
