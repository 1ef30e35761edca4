#!/usr/bin/env python3
"""
Operator commands for resolver providers: register, pause, resume and inspect.
"""

import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import argparse
import json
import logging

from engine.config import ConfigLoader, config_get
from engine.job_store import JobStore
from engine.paths import build_engine_paths
from engine.provider_state import BackoffRegistry, PauseRegistry, RateLimiter
from providers.registry import PROVIDER_CLASSES
from providers.secrets import encrypt_config


def _print(payload):
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _cmd_add(args, store, config):
    if args.key not in PROVIDER_CLASSES:
        logging.error("Unsupported provider: %s", args.key)
        return 2
    with open(args.config_file, "r") as f:
        provider_config = json.load(f)
    if not isinstance(provider_config, dict):
        logging.error("Provider config must be a JSON object")
        return 2
    secret = str(config_get(config, "security.provider_secret", "") or "")
    if not secret:
        logging.error("security.provider_secret is not configured")
        return 2
    provider_id = store.create_provider(
        args.key,
        args.name or args.key.capitalize(),
        encrypt_config(provider_config, secret),
        enabled=not args.disabled,
    )
    _print({"id": provider_id, "key": args.key, "enabled": not args.disabled})
    return 0


def _cmd_pause(args, store, config):
    provider_id = store.provider_id_for_key(args.key)
    if provider_id is None:
        logging.error("Provider not found: %s", args.key)
        return 1
    row = store.get_provider(provider_id)
    record = PauseRegistry(store.db_path).set(
        args.key,
        provider_id=provider_id,
        provider_label=row["name"],
        note=args.note,
        reason="manual",
        paused_by="cli",
    )
    _print(record)
    return 0


def _cmd_resume(args, store, config):
    PauseRegistry(store.db_path).clear(args.key)
    BackoffRegistry(store.db_path).clear(args.key)
    _print({"provider": args.key, "paused": False})
    return 0


def _cmd_status(args, store, config):
    _print(
        {
            "providers": [
                {"id": row["id"], "key": row["key"], "name": row["name"], "enabled": bool(row["enabled"])}
                for row in store.list_providers()
            ],
            "paused": PauseRegistry(store.db_path).active(),
            "backoff": BackoffRegistry(store.db_path).active(),
            "rate_limits": RateLimiter(store.db_path).inspect(),
        }
    )
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Register or update a provider with an encrypted config.")
    add.add_argument("key")
    add.add_argument("--name", default=None)
    add.add_argument("--config-file", required=True)
    add.add_argument("--disabled", action="store_true")
    add.set_defaults(handler=_cmd_add)

    pause = commands.add_parser("pause", help="Stop the scheduler from claiming this provider's jobs.")
    pause.add_argument("key")
    pause.add_argument("--note", default=None)
    pause.set_defaults(handler=_cmd_pause)

    resume = commands.add_parser("resume", help="Clear a pause and any error backoff.")
    resume.add_argument("key")
    resume.set_defaults(handler=_cmd_resume)

    status = commands.add_parser("status", help="Show pauses, backoffs and rate-limit buckets.")
    status.set_defaults(handler=_cmd_status)

    args = parser.parse_args(argv)
    if getattr(args, "key", None):
        args.key = args.key.strip().lower()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    paths = build_engine_paths(args.config)
    config = ConfigLoader(paths.config_path, paths.db_path).reload()
    store = JobStore(paths.db_path)
    sys.exit(args.handler(args, store, config))


if __name__ == "__main__":
    main()
