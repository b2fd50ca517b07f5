import asyncio
import contextlib
import logging
import os
import re
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket, status
from fastapi.responses import FileResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from adapters.chromium import ChromiumAdapter
from adapters.media import MpvSlot, classify_upload, probe_media
from adapters.surfaces import QueuedLinkSurface, QueuedSlot, SurfaceWorker
from controllers.catalog import CatalogStore, new_identifier
from controllers.hub import TransportHub
from controllers.resolver import resolve_display_list, resolve_duration
from controllers.sequencer import SLOT_NAMES, PlaybackSequencer, PlayerService
from models.catalog import LINK_MIME, ContentItem, positive_seconds
from models.state import MarqueeState, ServiceStatus
from utils.auth import AuthError, AuthManager, hash_password
from utils.system import (
    DEFAULT_CONFIG_PATH,
    get_cpu_percent,
    get_memory_percent,
    get_temperature,
    load_config,
    set_display_power,
)


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("marquee.daemon")

CONFIG = load_config()
MARQUEE_VERSION = "0.1.0"
START_TIME = time.time()
CONFIG_PATH = Path(os.environ.get("MARQUEE_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
STREAM_CHUNK_BYTES = 1024 * 1024

app = FastAPI(title="Marquee Signage Daemon", version=MARQUEE_VERSION)

api_router = APIRouter(prefix="/api")

storage_cfg = CONFIG.get("storage", {})
player_cfg = CONFIG.get("player", {})
transport_cfg = CONFIG.get("transport", {})

DATA_DIR = Path(storage_cfg.get("data_dir", "/var/lib/marquee"))
UPLOAD_DIR = Path(storage_cfg.get("upload_dir") or DATA_DIR / "uploads")
for directory in (DATA_DIR, UPLOAD_DIR):
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError:
        logger.warning("Unable to ensure directory %s exists.", directory)

MAX_UPLOAD_BYTES = int(storage_cfg.get("max_upload_mb", 100)) * 1024 * 1024

catalog_store = CatalogStore(
    DATA_DIR / "store.json",
    logger=logging.getLogger("marquee.catalog"),
    save_delay=float(storage_cfg.get("save_delay", 2.0)),
)

hub = TransportHub(
    logger=logging.getLogger("marquee.hub"),
    heartbeat_interval=float(transport_cfg.get("heartbeat_interval", 25)),
    presence_window=float(transport_cfg.get("presence_window", 40)),
    command_log_size=int(transport_cfg.get("command_log_size", 200)),
)

auth_cfg = CONFIG.get("security", {})
_initial_hash = catalog_store.get_admin_password_hash() or auth_cfg.get("password_hash", "")
if not _initial_hash and os.environ.get("MARQUEE_ADMIN_PASSWORD"):
    _initial_hash = hash_password(os.environ["MARQUEE_ADMIN_PASSWORD"])
auth_manager = AuthManager(
    password_hash=_initial_hash,
    token_secret=auth_cfg.get("token_secret"),
    token_ttl_seconds=int(auth_cfg.get("token_ttl", 3600)),
    on_password_change=catalog_store.set_admin_password_hash,
)

if not auth_cfg.get("token_secret"):
    logger.warning("Token secret missing in configuration; generated ephemeral secret for this session.")
if not auth_manager.password_hash:
    logger.warning("Admin password hash missing; logins will fail until one is configured.")

security_scheme = HTTPBearer(auto_error=False)

state = MarqueeState()

# Embedded player --------------------------------------------------------
PLAYER_ENABLED = bool(player_cfg.get("enabled", True))
chromium_cfg = CONFIG.get("chromium", {})
chromium_adapter: Optional[ChromiumAdapter] = None
player_service: Optional[PlayerService] = None
surface_worker = SurfaceWorker(logger=logging.getLogger("marquee.surfaces"))
_background_tasks: Set[asyncio.Task] = set()

if PLAYER_ENABLED:
    os.environ.setdefault("DISPLAY", player_cfg.get("display", ":0"))
    chromium_adapter = ChromiumAdapter(
        flags_file=chromium_cfg.get("flags_file", ""),
        binary=chromium_cfg.get("binary", "/usr/bin/chromium-browser"),
        debug_port=int(chromium_cfg.get("debug_port", 9222)),
        logger=logging.getLogger("marquee.chromium"),
    )


def _local_source(item: ContentItem) -> str:
    if item.storage != "external" and item.path and Path(item.path).exists():
        return item.path
    return item.url


def _on_player_state(snapshot: Dict[str, object]) -> None:
    state.player = snapshot
    task = asyncio.create_task(hub.broadcast(snapshot))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _queued_display_power(powered: bool) -> None:
    surface_worker.submit(set_display_power, powered)


def _build_sequencer(loop: asyncio.AbstractEventLoop) -> PlaybackSequencer:
    slots = {
        name: QueuedSlot(
            MpvSlot(
                name,
                mpv_binary=player_cfg.get("mpv_binary", "mpv"),
                logger=logging.getLogger(f"marquee.media.slot.{name.lower()}"),
            ),
            surface_worker,
        )
        for name in SLOT_NAMES
    }
    blank = bool(player_cfg.get("blank_display_on_power_off", True))
    link_surface = QueuedLinkSurface(chromium_adapter, surface_worker) if chromium_adapter else None
    return PlaybackSequencer(
        repository=catalog_store,
        slots=slots,
        loop=loop,
        link_surface=link_surface,
        source_for=_local_source,
        logger=logging.getLogger("marquee.sequencer"),
        on_state_change=_on_player_state,
        display_power=_queued_display_power if blank else None,
        handoff_timeout=float(player_cfg.get("handoff_timeout", 1.5)),
    )


if PLAYER_ENABLED:
    player_service = PlayerService(
        _build_sequencer,
        refresh_interval=float(player_cfg.get("refresh_interval", 30)),
        logger=logging.getLogger("marquee.player"),
        worker=surface_worker,
    )


async def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> Dict[str, object]:
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    try:
        return auth_manager.verify_token(credentials.credentials)
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


class LoginRequest(BaseModel):
    password: str = ""


class PasswordChangeRequest(BaseModel):
    oldPassword: str = ""
    newPassword: str = ""


class PresenceRequest(BaseModel):
    name: Optional[str] = None
    ua: Optional[str] = None


def compute_uptime() -> float:
    return time.time() - START_TIME


def set_service_status(name: str, status_value: str, detail: Optional[str] = None) -> bool:
    current = state.services.get(name)
    if current and current.status == status_value and current.detail == detail:
        return False
    state.services[name] = ServiceStatus(status=status_value, detail=detail)
    return True


def build_health_payload() -> Dict[str, object]:
    payload: Dict[str, object] = {
        "uptime": compute_uptime(),
        "version": MARQUEE_VERSION,
        "cpu": get_cpu_percent(),
        "mem": get_memory_percent(),
        "temp": get_temperature(),
        "clients": hub.client_count,
        "files": len(catalog_store.list_content_items()),
        "schedules": len(catalog_store.list_schedule_rules()),
    }
    if state.services:
        payload["services"] = {
            name: service.dict() for name, service in state.services.items()
        }
    return payload


def _safe_filename(filename: str) -> str:
    candidate = Path(filename or "").name
    if not candidate:
        raise ValueError("Filename required")
    return re.sub(r"[^A-Za-z0-9._-]", "_", candidate)


def _validate_link(url: object) -> str:
    if not url or not isinstance(url, str):
        raise ValueError("url is required")
    if not re.match(r"^https?://", url, re.IGNORECASE):
        raise ValueError("Only http(s) URLs are allowed")
    return url


def _parse_range(header: str, file_size: int) -> Optional[Tuple[int, int]]:
    """Returns the inclusive byte span for a ``Range`` header, or ``None`` when unsatisfiable."""
    match = re.match(r"bytes=(\d*)-(\d*)", header.strip())
    last = file_size - 1
    if not match or last < 0:
        return None
    first_raw, last_raw = match.group(1), match.group(2)
    if first_raw == "" and last_raw != "":
        length = int(last_raw)
        if length <= 0:
            return None
        return max(0, file_size - length), last
    if first_raw and int(first_raw) > last:
        return None
    start = int(first_raw) if first_raw else 0
    end = min(int(last_raw), last) if last_raw else last
    if start > end:
        return None
    return start, end


def _iter_file(path: Path, start: int, end: int) -> Iterator[bytes]:
    remaining = end - start + 1
    with path.open("rb") as handle:
        handle.seek(start)
        while remaining > 0:
            chunk = handle.read(min(STREAM_CHUNK_BYTES, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


async def _run_in_executor(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


async def publish_refresh() -> None:
    await hub.publish_refresh()


@app.on_event("startup")
async def startup_event() -> None:
    logger.info("Marquee daemon starting (config %s).", CONFIG_PATH)
    if not player_service:
        set_service_status("player", "disabled", "Embedded player disabled in configuration")
        return

    hub.subscribe(player_service.handle_message)
    set_service_status("player", "starting", "Resolving display list")
    try:
        await player_service.start()
    except Exception as exc:
        logger.exception("Failed to start embedded player.")
        set_service_status("player", "error", str(exc) or exc.__class__.__name__)
    else:
        set_service_status("player", "running", None)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Marquee daemon shutting down.")
    if player_service:
        hub.unsubscribe(player_service.handle_message)
        await player_service.stop()
    await _run_in_executor(catalog_store.flush)


# Health & auth --------------------------------------------------------------
@api_router.get("/health")
async def api_health() -> Dict[str, object]:
    return build_health_payload()


@api_router.post("/auth/login")
async def api_auth_login(request: LoginRequest) -> Dict[str, object]:
    try:
        if not auth_manager.verify_password(request.password):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return auth_manager.issue_token()


@api_router.post("/auth/password")
async def api_auth_password(
    request: PasswordChangeRequest,
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    try:
        auth_manager.change_password(request.oldPassword, request.newPassword)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    logger.info("Admin password changed.")
    return {"ok": True}


# Content ---------------------------------------------------------------------
@api_router.get("/files")
async def api_files() -> Dict[str, object]:
    items = sorted(catalog_store.list_content_items(), key=lambda item: item.uploaded_at, reverse=True)
    return {"ok": True, "files": [item.to_dict() for item in items]}


@api_router.post("/files")
async def api_files_create(
    request: Request,
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON") from exc
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        item = _create_link(body.get("url"), body.get("name"), body.get("durationSeconds"))
    else:
        try:
            form = await request.form()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Invalid multipart form data") from exc
        url_field = form.get("url")
        if isinstance(url_field, str) and url_field:
            item = _create_link(url_field, form.get("name"), form.get("durationSeconds"))
        else:
            upload = form.get("file")
            if upload is None or isinstance(upload, str):
                raise HTTPException(status_code=400, detail="No file provided")
            item = await _store_upload(upload, form.get("durationSeconds"))

    catalog_store.add_content_item(item)
    logger.info("Added %s content %s (%s)", item.media_class, item.name, item.id)
    await publish_refresh()
    return {"ok": True, "file": item.to_dict()}


def _create_link(url: object, name: object, duration: object) -> ContentItem:
    try:
        url = _validate_link(url)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    label = name.strip() if isinstance(name, str) and name.strip() else url
    return ContentItem(
        id=new_identifier(),
        name=label,
        mime=LINK_MIME,
        url=url,
        storage="external",
        duration_override=positive_seconds(duration),
    )


async def _store_upload(upload, duration: object) -> ContentItem:
    try:
        filename = _safe_filename(upload.filename)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    mime = classify_upload(upload.filename, upload.content_type)
    if not mime:
        raise HTTPException(status_code=400, detail="Only images and videos are allowed")

    identifier = new_identifier()
    stored_name = f"{int(time.time() * 1000)}-{filename}"
    target_path = UPLOAD_DIR / stored_name

    size = 0
    try:
        with target_path.open("wb") as buffer:
            while True:
                chunk = await upload.read(STREAM_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if MAX_UPLOAD_BYTES and size > MAX_UPLOAD_BYTES:
                    raise HTTPException(status_code=413, detail="File too large (max 100MB)")
                buffer.write(chunk)
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            target_path.unlink()
        raise

    item = ContentItem(
        id=identifier,
        name=stored_name,
        mime=mime,
        url=f"/api/files/stream/{identifier}",
        size=size,
        storage="local",
        path=str(target_path),
        duration_override=positive_seconds(duration),
    )
    if item.media_class == "video":
        probe = await _run_in_executor(
            probe_media, target_path, "video", storage_cfg.get("ffprobe_binary") or None
        )
        item.natural_duration = positive_seconds(probe.get("duration"))
    return item


@api_router.delete("/files/{file_id}")
async def api_files_delete(
    file_id: str,
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    item = catalog_store.remove_content_item(file_id)
    if not item:
        raise HTTPException(status_code=404, detail="Not found")

    if item.path and item.storage != "external":
        try:
            Path(item.path).unlink()
        except OSError as exc:
            logger.warning("Failed to delete file %s: %s", item.path, exc)

    await publish_refresh()
    return {"ok": True}


@api_router.get("/files/stream/{file_id}")
async def api_files_stream(file_id: str, request: Request) -> Response:
    item = catalog_store.get_content_item(file_id)
    if not item:
        raise HTTPException(status_code=404, detail="Not found")
    path = Path(item.path) if item.path else None
    if not path or not path.is_file():
        raise HTTPException(status_code=404, detail="Missing file")

    file_size = path.stat().st_size
    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": "public, max-age=31536000, immutable",
    }
    range_header = request.headers.get("range")
    if not range_header:
        return FileResponse(str(path), media_type=item.mime, headers=headers)

    span = _parse_range(range_header, file_size)
    if span is None:
        return Response(status_code=416, headers={"Content-Range": f"bytes */{file_size}"})

    start, end = span
    headers.update(
        {
            "Content-Length": str(end - start + 1),
            "Content-Range": f"bytes {start}-{end}/{file_size}",
        }
    )
    return StreamingResponse(_iter_file(path, start, end), status_code=206, media_type=item.mime, headers=headers)


# Schedules -------------------------------------------------------------------
@api_router.get("/schedule")
async def api_schedule() -> Dict[str, object]:
    return {"ok": True, "schedules": [rule.to_dict() for rule in catalog_store.list_schedule_rules()]}


@api_router.post("/schedule")
async def api_schedule_create(
    request: Request,
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    try:
        rule = catalog_store.add_schedule_rule(body)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await publish_refresh()
    return {"ok": True, "schedule": rule.to_dict()}


@api_router.delete("/schedule")
async def api_schedule_delete(
    schedule_id: Optional[str] = Query(None, alias="id"),
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    if not schedule_id:
        raise HTTPException(status_code=400, detail="Missing id")
    if not catalog_store.remove_schedule_rule(schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    await publish_refresh()
    return {"ok": True}


# Settings --------------------------------------------------------------------
@api_router.get("/settings")
async def api_settings() -> Dict[str, object]:
    return {"ok": True, "settings": catalog_store.get_global_settings().to_dict()}


@api_router.post("/settings")
async def api_settings_update(
    request: Request,
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid request body") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid request body")

    try:
        settings = catalog_store.update_settings(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await publish_refresh()
    return {"ok": True, "settings": settings.to_dict()}


# Commands & players ----------------------------------------------------------
def _unwrap(body: object) -> object:
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


@api_router.post("/commands")
async def api_commands_create(
    request: Request,
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    try:
        payload = _unwrap(await request.json())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    ts = hub.record_command(payload)
    await hub.broadcast(dict(payload, ts=ts))
    return {"ok": True, "ts": ts}


@api_router.get("/commands")
async def api_commands(since: Optional[int] = None) -> Dict[str, object]:
    return {"ok": True, "commands": hub.commands_since(since)}


@api_router.get("/players")
async def api_players() -> Dict[str, object]:
    return {"ok": True, "players": hub.list_players()}


@api_router.post("/players")
async def api_players_heartbeat(request: PresenceRequest) -> Dict[str, object]:
    hub.touch_http_player(request.name, request.ua)
    return {"ok": True}


@api_router.get("/preview")
async def api_preview(at: Optional[int] = None) -> Dict[str, object]:
    """Predicts what a player resolves at ``at`` (epoch ms, default now)."""
    moment = datetime.fromtimestamp(at / 1000) if at else datetime.now()
    settings = catalog_store.get_global_settings()
    entries: List[Dict[str, object]] = []
    for entry in resolve_display_list(catalog_store, moment):
        item = catalog_store.get_content_item(entry.content_item_id)
        if not item:
            continue
        payload = entry.to_dict()
        payload.update(
            {
                "name": item.name,
                "mime": item.mime,
                "mediaClass": item.media_class,
                "effectiveDuration": resolve_duration(entry, item, settings),
            }
        )
        entries.append(payload)
    return {"ok": True, "at": int(moment.timestamp() * 1000), "displayList": entries}


@api_router.get("/player/state")
async def api_player_state() -> Dict[str, object]:
    snapshot = player_service.snapshot() if player_service else None
    return {"ok": True, "state": snapshot or hub.last_player_state}


# Transport -------------------------------------------------------------------
@api_router.post("/ws")
async def api_ws_broadcast(
    request: Request,
    _: Dict[str, object] = Depends(require_auth),
) -> Dict[str, object]:
    try:
        payload = _unwrap(await request.json())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    await hub.broadcast(payload)
    return {"ok": True}


@app.websocket("/api/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    await hub.serve(websocket)


def handle_sigterm(signum, frame) -> None:
    logger.info("SIGTERM received; flushing store and stopping Chromium.")
    catalog_store.flush()
    if chromium_adapter:
        chromium_adapter.stop()
    sys.exit(0)


signal.signal(signal.SIGTERM, handle_sigterm)


app.include_router(api_router)


def run() -> None:
    port = int(CONFIG["ui"].get("port", 8080))
    uvicorn.run("main:app", host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    run()
