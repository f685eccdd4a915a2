"""Convert a directory tree: enumerate -> plan -> bounded pool -> drain."""

from __future__ import annotations

import functools
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger

from .cancel import CancellationController, CancellationScope, Interrupted
from .config import ConverterSettings
from .encoder import transcode
from .errors import EnumerationError, OperationCancelled, TagVerificationError
from .logging import log_event
from .metadata import TagMapping, extract_tags, verify_tags_flac_vs_mp3
from .planner import plan_item
from .scanner import iter_flac_files
from .scheduler import WorkerPool, WorkItem
from .tool_check import probe_tools


EXIT_OK = 0
EXIT_PREFLIGHT_FAILED = 3
EXIT_ENUMERATION_FAILED = 4
EXIT_INTERRUPTED = 130


def _empty_summary() -> Dict[str, int]:
    return {
        "planned": 0,
        "to_convert": 0,
        "skipped": 0,
        "converted": 0,
        "failed": 0,
        "cancelled": 0,
    }


def _verify_output(tags: TagMapping, src: Path, out: Path, *, strict: bool) -> None:
    try:
        disc = verify_tags_flac_vs_mp3(tags, out)
    except Exception as e:
        disc = [f"verify-exception: {e}"]
    if not disc:
        return
    if strict:
        raise TagVerificationError(disc, src)
    logger.bind(action="verify", file=str(src), status="warn", discrepancies=disc).warning(
        f"{src}: tag verification: {'; '.join(disc)}"
    )


def make_converter(cfg: ConverterSettings, scope: CancellationScope) -> Callable[[WorkItem], Path]:
    """Build the per-item handler: export tags, then decode | encode."""

    def _convert(item: WorkItem) -> Path:
        if scope.cancelled:
            raise OperationCancelled("not started, run cancelled", path=item.path)
        tags = extract_tags(item.path, scope, metaflac=cfg.metaflac_bin)
        verify = None
        if cfg.verify_tags:
            verify = functools.partial(_verify_output, tags, item.path, strict=cfg.verify_strict)
        out = transcode(
            item.path,
            tags,
            scope,
            flac=cfg.flac_bin,
            lame=cfg.lame_bin,
            bitrate=cfg.bitrate,
            verify=verify,
        )
        log_event("convert", msg=f"OK  {item.path} -> {out.name}", level="DEBUG", file=str(item.path), status="ok")
        return out

    return _convert


def _preflight(cfg: ConverterSettings) -> bool:
    ok = True
    for role, st in probe_tools(cfg).items():
        if st.available:
            logger.debug(f"{role}: {st.path}")
        else:
            logger.error(f"{role}: {st.error}")
            ok = False
    return ok


def _dry_run(cfg: ConverterSettings, root: Path) -> tuple[int, Dict[str, int]]:
    counts = _empty_summary()
    try:
        for src in iter_flac_files(root, recurse=cfg.recurse):
            pi = plan_item(src, force=cfg.force)
            counts["planned"] += 1
            if pi.action == "convert":
                counts["to_convert"] += 1
                logger.info(f"CONVERT  {pi.src_path} -> {pi.output_path.name} | {pi.reason}")
            else:
                counts["skipped"] += 1
                logger.info(f"SKIP     {pi.src_path} | {pi.reason}")
    except EnumerationError as exc:
        logger.error(f"Enumeration failed: {exc}")
        return EXIT_ENUMERATION_FAILED, counts
    return EXIT_OK, counts


def cmd_convert_dir(
    cfg: ConverterSettings,
    root: Union[str, Path] = ".",
    *,
    dry_run: bool = False,
    scope: Optional[CancellationScope] = None,
    handler: Optional[Callable[[WorkItem], Any]] = None,
) -> tuple[int, Dict[str, int]]:
    """Convert every stale FLAC under `root`.

    Must be called from the main thread: SIGINT/SIGTERM are handled for the
    duration of the run. `handler` replaces the default per-item conversion.
    Returns (exit_code, counts).
    """
    root_p = Path(root)
    if dry_run:
        return _dry_run(cfg, root_p)

    if handler is None and not _preflight(cfg):
        logger.error("Missing external tools; need metaflac, flac and lame")
        return EXIT_PREFLIGHT_FAILED, _empty_summary()

    t_start = time.time()
    scope = scope or CancellationScope()
    counts = _empty_summary()
    pool = WorkerPool(handler or make_converter(cfg, scope), workers=cfg.workers)
    release = threading.Event()
    enumerated = threading.Event()
    fatal: List[Exception] = []

    def _produce() -> None:
        release.wait()
        try:
            for src in iter_flac_files(root_p, recurse=cfg.recurse):
                if scope.cancelled:
                    break
                pi = plan_item(src, force=cfg.force)
                counts["planned"] += 1
                if pi.action == "skip":
                    counts["skipped"] += 1
                    logger.debug(f"SKIP     {src} | {pi.reason}")
                    continue
                counts["to_convert"] += 1
                pool.submit(WorkItem(src))
        except Exception as exc:
            fatal.append(exc)
            scope.cancel()
        finally:
            enumerated.set()

    producer = threading.Thread(target=_produce, name="flac2mp3-enumerator", daemon=True)
    logger.debug(f"Source: {root_p} | Workers: {cfg.workers} | Bitrate: {cfg.bitrate} | Recurse: {cfg.recurse}")

    # The producer idles until released, so no item exists before the handlers do.
    producer.start()
    pool.start()
    try:
        with CancellationController(scope) as controller:
            interrupted = controller.wait_for_drain(enumerated, pool.tracker, start=release.set)
    except Interrupted as exc:
        # Landed while the handlers were being installed or restored.
        interrupted = True
        logger.warning(f"{exc}; cancelling {pool.tracker.outstanding} outstanding item(s)")
        scope.cancel()
        release.set()
        enumerated.wait()
        pool.tracker.wait()
    finally:
        if not enumerated.is_set():
            scope.cancel()
            release.set()
            enumerated.wait()
        pool.shutdown()
    producer.join()

    counts["converted"] = pool.succeeded
    counts["failed"] = pool.failed
    counts["cancelled"] = pool.cancelled
    d_total = time.time() - t_start
    logger.info(
        f"Planned: {counts['planned']} | Convert: {counts['to_convert']} | Skip: {counts['skipped']}"
        f" | Converted: {counts['converted']} | Failed: {counts['failed']} | Cancelled: {counts['cancelled']}"
        f" | Time: {d_total:.2f}s"
    )

    if fatal:
        exc = fatal[0]
        if isinstance(exc, EnumerationError):
            logger.error(f"Enumeration failed: {exc}")
            return EXIT_ENUMERATION_FAILED, counts
        raise exc
    if interrupted:
        return EXIT_INTERRUPTED, counts
    return EXIT_OK, counts
