"""CLI entrypoint for the route document -> geocoded JSON pipeline.

Usage:
    python -m busroutes run
    python -m busroutes run --once
    python -m busroutes run --local-root ./routes --batch-size 4
    python -m busroutes build-queue
    python -m busroutes status
    python -m busroutes reset-cache
"""

from __future__ import annotations

import argparse
import logging
from logging.handlers import RotatingFileHandler
import sys
import time
from pathlib import Path
from typing import Any, Optional

from .config import PipelineConfig, load_config
from .coordinator import STATUS_LOCKED, RunCoordinator
from .geocoding import GeocodingCache, GoogleGeocoder
from .generative import GeminiClient, GenerativeExtractor
from .models import ConfigurationError, PipelineState
from .ocr import DoclingOcrService, DriveOcrService
from .publisher import Publisher
from .sources import (
    DocumentStore,
    DriveDocumentStore,
    LocalDocumentStore,
    authenticate_drive,
    build_drive_services,
)
from .structured import StructuredTextExtractor
from .utils import ContinuationScheduler, JsonStateRepository, RunLock
from .work_queue import build_work_queue

log = logging.getLogger(__name__)


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Operational log: append-only record of every run.
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("docling").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Route documents -> geocoded route JSON for the map application"
    )
    parser.add_argument(
        "--local-root",
        type=Path,
        default=None,
        help="Use a local directory tree instead of Google Drive",
    )
    parser.add_argument(
        "--state-path",
        type=Path,
        default=None,
        help="Pipeline state JSON (default: state/pipeline_state.json)",
    )
    parser.add_argument(
        "--credentials",
        type=Path,
        default=None,
        help="Google OAuth2 credentials file (default: credentials.json)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Append-only operational log file (rotating)",
    )

    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="Process route documents in bounded batches")
    run.add_argument(
        "--once",
        action="store_true",
        help="Run a single batch and leave continuation to an external trigger",
    )
    run.add_argument("--batch-size", type=int, default=None, help="Items per batch")
    run.add_argument(
        "--recency-days",
        type=int,
        default=None,
        help="Only queue documents changed within this many days",
    )
    run.add_argument(
        "--progress",
        action="store_true",
        help="Show a progress bar for each batch",
    )
    queue = sub.add_parser("build-queue", help="Show the work queue a fresh run would build")
    queue.add_argument("--recency-days", type=int, default=None)
    sub.add_parser("status", help="Summarize the persisted pipeline state")
    sub.add_parser("reset-cache", help="Clear the persisted geocode cache")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
        args.once = False
        args.batch_size = None
        args.recency_days = None
        args.progress = False
    return args


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_store(cfg: PipelineConfig) -> tuple[DocumentStore, Any]:
    """Return ``(store, drive_service)``; ``drive_service`` is ``None`` locally."""
    if cfg.local_root is not None:
        return LocalDocumentStore(cfg.local_root), None
    token_file = cfg.credentials_file.parent / "token.json"
    log.info("Authenticating with Google Drive...")
    creds = authenticate_drive(cfg.credentials_file, token_file)
    drive, docs = build_drive_services(creds)
    return DriveDocumentStore(drive, docs, policy=cfg.retry_policy), drive


def build_coordinator(
    cfg: PipelineConfig,
    *,
    store: Optional[DocumentStore] = None,
    drive_service: Any = None,
    scheduler: Optional[ContinuationScheduler] = None,
    progress: bool = False,
) -> RunCoordinator:
    if store is None:
        store, drive_service = build_store(cfg)
    reg_ed, spec_ed, destination = cfg.folder_ids()
    policy = cfg.retry_policy

    if isinstance(store, LocalDocumentStore):
        ocr = DoclingOcrService(store)
    else:
        ocr = DriveOcrService(drive_service, policy=policy)
    generative = GenerativeExtractor(
        ocr,
        GeminiClient(cfg.gemini_api_key, cfg.gemini_model),
        policy=policy,
    )
    geocoder = GoogleGeocoder(cfg.maps_api_key)

    def geocoding(state: PipelineState) -> GeocodingCache:
        return GeocodingCache(
            geocoder,
            state.geocode_cache,
            region_suffix=cfg.region_suffix,
            delay_s=cfg.geocode_delay_s,
            policy=policy,
        )

    def validate() -> None:
        cfg.validate()
        if not store.exists(destination):
            raise ConfigurationError(f"Destination folder not found: {destination!r}")

    return RunCoordinator(
        store=store,
        state_repo=JsonStateRepository(cfg.state_path),
        lock=RunLock(cfg.lock_path, timeout_s=cfg.lock_timeout_s),
        scheduler=scheduler or ContinuationScheduler(cfg.continuation_path),
        structured=StructuredTextExtractor(),
        generative=generative,
        geocoding=geocoding,
        publisher=Publisher(store, destination),
        reg_ed_folder_id=reg_ed,
        spec_ed_folder_id=spec_ed,
        batch_size=cfg.batch_size,
        recency_days=cfg.recency_days,
        continuation_delay_s=cfg.continuation_delay_s,
        validate=validate,
        progress=progress,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def run_pipeline(cfg: PipelineConfig, *, once: bool, progress: bool = False) -> int:
    scheduler = ContinuationScheduler(cfg.continuation_path)
    coordinator = build_coordinator(cfg, scheduler=scheduler, progress=progress)
    overall_t0 = time.perf_counter()
    runs = 0
    while True:
        summary = coordinator.run()
        runs += 1
        if summary.status == STATUS_LOCKED or once or not scheduler.pending:
            break
        delay = scheduler.seconds_until_due()
        log.info("Continuing in %.0fs (cursor %s/%s)", delay, summary.cursor, summary.queue_size)
        time.sleep(delay)

    log.info("Invocations: %s, total runtime %.1fs", runs, time.perf_counter() - overall_t0)
    return 0


def show_queue(cfg: PipelineConfig) -> int:
    store, _ = build_store(cfg)
    reg_ed, spec_ed, _ = cfg.folder_ids()
    items = build_work_queue(store, reg_ed, spec_ed, recency_days=cfg.recency_days)
    state = JsonStateRepository(cfg.state_path).load()
    for item in items:
        marker = "=" if state.is_current(item) else "*"
        print(
            f"{marker} {item.route_type.value:<9} bus={item.bus_number_hint or '-':<5} "
            f"{item.source_name}"
        )
    print(f"{len(items)} items ({sum(1 for i in items if not state.is_current(i))} changed)")
    return 0


def show_status(cfg: PipelineConfig) -> int:
    state = JsonStateRepository(cfg.state_path).load()
    scheduler = ContinuationScheduler(cfg.continuation_path)
    print(f"State file:     {cfg.state_path}")
    print(f"Queue:          {len(state.queue)} items, cursor {state.cursor}")
    print(f"Processed:      {len(state.processed)} documents")
    print(f"Geocode cache:  {len(state.geocode_cache)} entries")
    if scheduler.pending:
        print(f"Continuation:   due in {scheduler.seconds_until_due():.0f}s")
    else:
        print("Continuation:   none")
    return 0


def reset_cache(cfg: PipelineConfig) -> int:
    repo = JsonStateRepository(cfg.state_path)
    lock = RunLock(cfg.lock_path, timeout_s=cfg.lock_timeout_s)
    with lock.acquire() as acquired:
        if not acquired:
            log.error("A run is in progress; try again later")
            return 1
        state = repo.load()
        cleared = len(state.geocode_cache)
        state.geocode_cache.clear()
        repo.save(state)
    log.info("Geocode cache cleared (%s entries)", cleared)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the CLI and return a process exit code."""
    from dotenv import find_dotenv, load_dotenv

    load_dotenv(find_dotenv(usecwd=True), override=False)

    args = parse_args(argv)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        log_file=args.log_file,
    )

    try:
        cfg = load_config(
            local_root=args.local_root,
            state_path=args.state_path,
            credentials_file=args.credentials,
            batch_size=getattr(args, "batch_size", None),
            recency_days=getattr(args, "recency_days", None),
        )
        if args.command == "run":
            return run_pipeline(cfg, once=args.once, progress=args.progress)
        if args.command == "build-queue":
            return show_queue(cfg)
        if args.command == "status":
            return show_status(cfg)
        if args.command == "reset-cache":
            return reset_cache(cfg)
    except ConfigurationError as exc:
        log.error("Configuration error: %s", exc)
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
