"""Entry point for the job catalog pipeline.

Usage:
    python -m jobcatalog.main sync                     # pull all sources into the catalog
    python -m jobcatalog.main alerts                   # match saved searches, queue deliveries
    python -m jobcatalog.main deliver                  # send queued deliveries
    python -m jobcatalog.main run                      # sync, then alerts, then deliver
    python -m jobcatalog.main sync --source acme       # run a single source
    python -m jobcatalog.main deliver --dry-run        # mark deliveries dry_run, send nothing
"""

from __future__ import annotations

import argparse
import logging
import sys

from jobcatalog.alerts import AlertRunCoordinator
from jobcatalog.config import PipelineConfig, load_config
from jobcatalog.errors import CatalogError
from jobcatalog.models import RunRecord, RunStatus
from jobcatalog.notify import DeliveryDispatcher, ResendSender
from jobcatalog.storage import CatalogStore, JsonFileStore, write_run_artifact
from jobcatalog.sync import SyncPipeline

logger = logging.getLogger(__name__)

COMMANDS = ("sync", "alerts", "deliver", "run")


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Job catalog pipeline: sync listing sources into the "
        "catalog and send saved-search alerts."
    )
    parser.add_argument("command", choices=COMMANDS, help="Which cycle to run")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--source",
        type=str,
        default=None,
        help="Sync only a specific source by name (e.g., 'acme')",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Override the catalog data directory (default: from config)",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Override where run records are written (default: from config)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Deliveries are marked dry_run and nothing is sent",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug-level logging",
    )
    return parser.parse_args(argv)


def run_sync(config: PipelineConfig, store: CatalogStore) -> RunRecord:
    return SyncPipeline(config, store).run()


def run_alerts(config: PipelineConfig, store: CatalogStore) -> RunRecord:
    return AlertRunCoordinator(store, config.alerts).run()


def run_deliver(config: PipelineConfig, store: CatalogStore) -> RunRecord:
    sender = None
    if not config.dry_run:
        sender = ResendSender.from_config(config.email, timeout=config.request_timeout_seconds)
    dispatcher = DeliveryDispatcher(
        store,
        sender,
        dry_run=config.dry_run,
        retry_failed=config.alerts.retry_failed,
        board_url=config.email.board_url,
    )
    return dispatcher.dispatch()


STEPS = {
    "sync": (run_sync,),
    "alerts": (run_alerts,),
    "deliver": (run_deliver,),
    "run": (run_sync, run_alerts, run_deliver),
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    config = load_config(args.config)
    log_level = "DEBUG" if args.verbose else config.log_level
    setup_logging(log_level)

    if args.dry_run:
        config.dry_run = True
    if args.data_dir:
        config.data_dir = args.data_dir
    output_dir = args.output_dir or config.output_dir

    # Filter to a single source if requested
    if args.source:
        config.sources = [
            s for s in config.sources
            if s.name.lower() == args.source.lower()
        ]
        if not config.sources:
            logger.error("No source found matching '%s'", args.source)
            return 1
        logger.info("Filtered to source: %s", args.source)

    logger.info(
        "Loaded config with %d sources (dry_run=%s)", len(config.sources), config.dry_run
    )

    exit_code = 0
    try:
        store = JsonFileStore(config.data_dir)
        for step in STEPS[args.command]:
            run = step(config, store)
            write_run_artifact(run, output_dir)
            if run.status is RunStatus.FAILED:
                exit_code = 1
    except CatalogError as exc:
        logger.error("Run aborted: %s", exc)
        return 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
