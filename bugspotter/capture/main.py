"""Command-line entry point: attach to every page target of a running browser.

Environment:
- BUGSPOTTER_CDP_URL: DevTools HTTP endpoint (default http://127.0.0.1:9222)
- BUGSPOTTER_TARGET_FILTER: only attach to pages whose URL contains this text
- BUGSPOTTER_LOG_LEVEL: logging level (default INFO)
- BUGSPOTTER_DISCOVERY_INTERVAL: seconds between page-target rescans (default 5)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os

from .config import CaptureConfig, TriageConfig, _float_env
from .engine import CaptureEngine
from .host import CdpHost, list_page_targets
from .http_client import HttpClientError
from .redaction import redact_url_brief

logger = logging.getLogger("bugspotter.capture")


def _configure_logging() -> None:
    level_name = (os.environ.get("BUGSPOTTER_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, level_name, None)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _matches(target: dict, needle: str) -> bool:
    return not needle or needle in str(target.get("url") or "")


async def _attach_new(engine: CaptureEngine, cdp_url: str, needle: str) -> int:
    try:
        targets = await asyncio.to_thread(list_page_targets, cdp_url)
    except HttpClientError as exc:
        logger.warning("target_discovery_failed url=%s error=%s", cdp_url, exc)
        return 0
    attached = set(engine.registry.attached_targets())
    count = 0
    for target in targets:
        target_id = target["id"]
        if target_id in attached or not _matches(target, needle):
            continue
        outcome = await engine.attach(target_id)
        if outcome.ok:
            count += 1
            logger.info("page_attached target=%s url=%s", target_id, redact_url_brief(str(target.get("url") or "")))
        else:
            logger.info("page_attach_skipped target=%s kind=%s", target_id, outcome.kind)
    return count


async def run(capture: CaptureConfig, triage: TriageConfig, *, stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    needle = (os.environ.get("BUGSPOTTER_TARGET_FILTER") or "").strip()
    interval = _float_env("BUGSPOTTER_DISCOVERY_INTERVAL", default=5.0, lo=0.5, hi=600.0)

    host = await CdpHost.connect_url(capture.cdp_url, command_timeout=capture.command_timeout)
    engine = CaptureEngine(host, capture=capture, triage=triage)
    engine.start()
    try:
        while not stop.is_set():
            if not host.connected:
                logger.warning("capture_exiting reason=cdp_connection_lost url=%s", host.ws_url)
                break
            await _attach_new(engine, capture.cdp_url, needle)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=interval)
    finally:
        await engine.close()
        await host.close()
        logger.info("capture_stopped status=%s", engine.status())


def main() -> None:
    """Run the capture engine until interrupted."""
    _configure_logging()
    capture = CaptureConfig.from_env()
    triage = TriageConfig.from_env()
    logger.info(
        "capture_starting cdp=%s state_dir=%s triage=%s",
        capture.cdp_url,
        capture.state_dir,
        "on" if triage.is_configured() else "off",
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(capture, triage))


__all__ = ["main", "run"]


if __name__ == "__main__":
    main()
