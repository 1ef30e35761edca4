#!/usr/bin/env python3
"""
Worker loop: polls aria2 for active jobs, records progress and moves finished files into the library.
"""

import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import argparse
import json
import logging
import signal
import threading

from engine.audit import AuditLog
from engine.config import ConfigLoader, load_config, validate_config
from engine.job_store import JobStore
from engine.paths import build_engine_paths, ensure_dir
from engine.worker import Worker


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    logging.basicConfig(
        filename=os.path.join(log_dir, "worker.log"),
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    console.setLevel(logging.INFO)
    logging.getLogger("").addHandler(console)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None)
    parser.add_argument("--once", action="store_true", help="Poll every active job once and exit.")
    args = parser.parse_args()

    paths = build_engine_paths(args.config)
    _setup_logging(paths.log_dir)

    if os.path.exists(paths.config_path):
        try:
            errors = validate_config(load_config(paths.config_path))
        except (OSError, json.JSONDecodeError) as exc:
            errors = [str(exc)]
        if errors:
            logging.error("Invalid config %s: %s", paths.config_path, "; ".join(errors))
            sys.exit(2)
    else:
        logging.warning("Config file not found: %s; using defaults", paths.config_path)

    store = JobStore(paths.db_path, audit=AuditLog(paths.db_path))
    worker = Worker(store, ConfigLoader(paths.config_path, paths.db_path))

    if args.once:
        print(json.dumps(worker.run_once()))
        logging.shutdown()
        return

    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        stop_event.set()
        logging.warning("Signal %s received; stopping after current pass", signum)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    worker.run_forever(stop_event)
    logging.shutdown()


if __name__ == "__main__":
    main()
