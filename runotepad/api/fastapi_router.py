import logging
import mimetypes
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse

from ..auth import extract_token, require_token, verify_token
from ..config import GatewayConfig
from ..errors import AuthRejected
from ..registry import SessionRegistry

router = APIRouter()

browser_logger = logging.getLogger("runotepad.browser")

_BROWSER_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def get_config(request: Request) -> GatewayConfig:
    return request.app.state.config


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


async def require_auth(request: Request, config: GatewayConfig = Depends(get_config)) -> None:
    """Require the access token as ?token= or Authorization: Bearer."""
    try:
        require_token(config.token, request.query_params, request.headers)
    except AuthRejected as exc:
        raise HTTPException(401, str(exc))


@router.get("/api/auth/check")
async def auth_check(request: Request, config: GatewayConfig = Depends(get_config)):
    token = extract_token(request.query_params, request.headers)
    if token is None:
        return JSONResponse({"valid": False, "error": "No token provided"}, status_code=400)
    if not verify_token(config.token, token):
        return JSONResponse({"valid": False, "error": "Invalid token"}, status_code=401)
    return {"valid": True, "message": "Token is valid"}


@router.post("/api/console")
async def console_log(payload: dict = Body(...)):
    """Forward browser console output into the server log."""
    level = _BROWSER_LEVELS.get(str(payload.get("level") or "").lower(), 5)
    message = payload.get("message", "")
    timestamp = payload.get("timestamp") or ""
    browser_logger.log(level, "[BROWSER %s] %s", timestamp, message)
    return {"ok": True}


@router.get("/api/sessions")
async def list_sessions(
    registry: SessionRegistry = Depends(get_registry),
    _: None = Depends(require_auth),
):
    return {"ok": True, "data": registry.snapshot()}


def _static_root(config: GatewayConfig) -> Optional[Path]:
    if config.static_dir is None:
        return None
    root = Path(config.static_dir).resolve()
    return root if root.is_dir() else None


@router.get("/{path:path}", include_in_schema=False)
async def static_files(path: str, config: GatewayConfig = Depends(get_config)) -> FileResponse:
    root = _static_root(config)
    if root is None:
        raise HTTPException(status_code=404, detail="Not found")
    target = (root / path).resolve()
    if target.is_dir():
        target = target / "index.html"
    if not target.is_file() or (target != root and root not in target.parents):
        raise HTTPException(status_code=404, detail="Not found")
    media_type, _ = mimetypes.guess_type(str(target))
    return FileResponse(target, media_type=media_type or "application/octet-stream")
