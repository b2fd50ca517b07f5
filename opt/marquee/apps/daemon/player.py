import asyncio
import logging
import os
import platform
import signal
from typing import Any, Dict, Optional

from adapters.chromium import ChromiumAdapter
from adapters.media import MpvSlot
from adapters.surfaces import QueuedLinkSurface, QueuedSlot, SurfaceWorker
from controllers.remote import PlayerLink, RemoteCatalog
from controllers.sequencer import SLOT_NAMES, PlaybackSequencer, PlayerService
from utils.system import load_config, set_display_power


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("marquee.remote")


async def run_player(config: Dict[str, Any]) -> None:
    """Runs a display that follows a remote Marquee daemon until SIGINT/SIGTERM."""
    remote_cfg = config.get("remote", {})
    player_cfg = config.get("player", {})
    chromium_cfg = config.get("chromium", {})
    base_url = remote_cfg.get("server_url", "http://127.0.0.1:8080")
    os.environ.setdefault("DISPLAY", player_cfg.get("display", ":0"))

    loop = asyncio.get_running_loop()
    catalog = RemoteCatalog(base_url, logger=logging.getLogger("marquee.remote.catalog"))
    if not await loop.run_in_executor(None, catalog.refresh):
        logger.warning("Starting with an empty catalog; %s is unreachable.", base_url)

    chromium = ChromiumAdapter(
        flags_file=chromium_cfg.get("flags_file", ""),
        binary=chromium_cfg.get("binary", "/usr/bin/chromium-browser"),
        debug_port=int(chromium_cfg.get("debug_port", 9222)),
        logger=logging.getLogger("marquee.chromium"),
    )
    link: Optional[PlayerLink] = None
    worker = SurfaceWorker(logger=logging.getLogger("marquee.surfaces"))

    def _on_state(snapshot: Dict[str, object]) -> None:
        if link:
            link.publish_state(snapshot)

    def _on_identify(label: str) -> None:
        if link:
            link.announce(label)

    def _build_sequencer(event_loop: asyncio.AbstractEventLoop) -> PlaybackSequencer:
        slots = {
            name: QueuedSlot(
                MpvSlot(
                    name,
                    mpv_binary=player_cfg.get("mpv_binary", "mpv"),
                    logger=logging.getLogger(f"marquee.media.slot.{name.lower()}"),
                ),
                worker,
            )
            for name in SLOT_NAMES
        }
        blank = bool(player_cfg.get("blank_display_on_power_off", True))
        return PlaybackSequencer(
            repository=catalog,
            slots=slots,
            loop=event_loop,
            link_surface=QueuedLinkSurface(chromium, worker),
            source_for=catalog.source_for,
            logger=logging.getLogger("marquee.sequencer"),
            on_state_change=_on_state,
            display_power=(lambda powered: worker.submit(set_display_power, powered)) if blank else None,
            on_identify=_on_identify,
            handoff_timeout=float(player_cfg.get("handoff_timeout", 1.5)),
        )

    service = PlayerService(
        _build_sequencer,
        refresh_interval=float(player_cfg.get("refresh_interval", 30)),
        logger=logging.getLogger("marquee.player"),
        worker=worker,
    )
    await service.start()

    def _on_message(message: Dict[str, object]) -> None:
        if message.get("type") == "refresh":
            catalog.refresh()
        service.handle_message(message)

    def _on_poll() -> None:
        if catalog.refresh():
            service.request_refresh()

    def _cursor() -> int:
        return service.sequencer.commands.last_command_ts if service.sequencer else 0

    link = PlayerLink(
        base_url,
        on_message=_on_message,
        name=player_cfg.get("name") or platform.node() or "Player",
        on_poll=_on_poll,
        cursor=_cursor,
        logger=logging.getLogger("marquee.remote.link"),
        heartbeat_interval=float(remote_cfg.get("heartbeat_interval", 20)),
        poll_interval=float(remote_cfg.get("poll_interval", 2.0)),
        max_backoff=float(remote_cfg.get("max_backoff", 30)),
    )
    link.start()
    logger.info("Remote player following %s", base_url)

    stop_event = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        logger.info("Remote player shutting down.")
        await loop.run_in_executor(None, link.stop)
        await service.stop()


def run() -> None:
    asyncio.run(run_player(load_config()))


if __name__ == "__main__":
    run()
