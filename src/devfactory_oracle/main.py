"""
Run the Oracle against a project directory.

Usage:
    python -m devfactory_oracle --project-root .
    python -m devfactory_oracle --config oracle.yaml --once
"""

import argparse
import json
import logging
import signal
import threading
from pathlib import Path

from .config import DEFAULT_PERSIST_PATH, OracleConfig, load_oracle_config
from .oracle import Oracle, OracleEvents

logger = logging.getLogger(__name__)

LOG_DIR = Path(".devfactory/oracle")


def configure_logging(log_dir: Path, verbose: bool = False) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_dir / "oracle.log"),
        ],
    )


def build_config(args: argparse.Namespace) -> OracleConfig:
    config = load_oracle_config(args.config) if args.config else OracleConfig()
    if args.project_root:
        config.project_root = Path(args.project_root)
    if args.poll_interval is not None:
        config.poll_interval_seconds = args.poll_interval
    if args.persist_path:
        config.persist_path = Path(args.persist_path)
    if config.persist_path is None:
        config.persist_path = config.project_root / DEFAULT_PERSIST_PATH
    return config


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="DevFactory Oracle - stuck worker detection and intervention"
    )
    parser.add_argument(
        "--project-root", "-p",
        help="Project containing the .devfactory/ directory (default: cwd)"
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to a YAML config file"
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between monitoring cycles (default: 30)"
    )
    parser.add_argument(
        "--persist-path",
        help="Intervention log path (default: .devfactory/oracle/interventions.json)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle, print statistics and exit"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    args = parser.parse_args()

    config = build_config(args)
    configure_logging(config.project_root / LOG_DIR, args.verbose)

    events = OracleEvents(
        on_intervention_created=lambda i: logger.info(f"[{i.type.value}] {i.reason}"),
        on_intervention_completed=lambda i, ok: logger.info(
            f"Intervention {i.id} {'succeeded' if ok else 'failed'}"
        ),
        on_error=lambda e: logger.error(f"Cycle failed: {e}"),
    )
    oracle = Oracle(config, events=events)

    if args.once:
        oracle.run_cycle()
        oracle.close()
        print(json.dumps(oracle.get_stats().to_dict(), indent=2))
        return

    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    oracle.start()
    shutdown.wait()
    oracle.close()


if __name__ == "__main__":
    main()
