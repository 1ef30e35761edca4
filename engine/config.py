import copy
import json
import logging
import os
import sqlite3

from engine.paths import DOWNLOADS_DIR, LIBRARY_DIR

DEFAULT_CONFIG = {
    "aria2": {
        "rpc_url": "http://127.0.0.1:6800/jsonrpc",
        "secret": "",
        "max_speed_mb_s": 0,
    },
    "paths": {
        "downloads": DOWNLOADS_DIR,
        "library": LIBRARY_DIR,
    },
    "app": {
        "max_active_downloads": 2,
        "min_free_space_gb": 5,
        "free_space_fail_open": True,
        "loop_delay_seconds": 3,
        "orphan_requeue_seconds": 60,
        "default_search_limit": 50,
    },
    "jellyfin": {
        "url": "",
        "api_key": "",
        "library_id": "",
    },
    "providers": {
        "error_backoff_seconds": 300,
        "pause_on_object_not_found": True,
        "kraska_debug_enabled": False,
    },
    "security": {
        "provider_secret": "",
    },
}

# Only these sections may be overridden from the settings table.
_OVERRIDABLE_SECTIONS = {"aria2", "paths", "app", "jellyfin", "providers"}


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def _as_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    for section in DEFAULT_CONFIG:
        value = config.get(section)
        if value is not None and not isinstance(value, dict):
            errors.append(f"{section} must be an object")

    aria2 = config.get("aria2")
    if isinstance(aria2, dict):
        rpc_url = aria2.get("rpc_url")
        if rpc_url is not None and (not isinstance(rpc_url, str) or not rpc_url.startswith(("http://", "https://"))):
            errors.append("aria2.rpc_url must be an http(s) URL")
        speed = aria2.get("max_speed_mb_s")
        if speed not in (None, "") and not _is_number(speed):
            errors.append("aria2.max_speed_mb_s must be a number")

    paths = config.get("paths")
    if isinstance(paths, dict):
        for key in ("downloads", "library"):
            value = paths.get(key)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                errors.append(f"paths.{key} must be a non-empty string")

    app = config.get("app")
    if isinstance(app, dict):
        for key in ("max_active_downloads", "loop_delay_seconds", "orphan_requeue_seconds", "default_search_limit"):
            value = app.get(key)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                errors.append(f"app.{key} must be an integer")
        value = app.get("min_free_space_gb")
        if value is not None and not _is_number(value):
            errors.append("app.min_free_space_gb must be a number")
        value = app.get("free_space_fail_open")
        if value is not None and not isinstance(value, bool):
            errors.append("app.free_space_fail_open must be true/false")

    providers = config.get("providers")
    if isinstance(providers, dict):
        value = providers.get("error_backoff_seconds")
        if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
            errors.append("providers.error_backoff_seconds must be an integer")

    return errors


def normalize_config(config):
    normalized = copy.deepcopy(DEFAULT_CONFIG)
    if not isinstance(config, dict):
        return normalized
    for section, values in config.items():
        if isinstance(values, dict) and isinstance(normalized.get(section), dict):
            normalized[section].update(values)
        else:
            normalized[section] = values
    return normalized


def config_get(config, dotted_key, default=None):
    current = config
    for part in dotted_key.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return default if current is None else current


def config_int(config, dotted_key, default=0):
    value = config_get(config, dotted_key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def config_float(config, dotted_key, default=0.0):
    value = config_get(config, dotted_key, default)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def config_bool(config, dotted_key, default=False):
    return _as_bool(config_get(config, dotted_key, None), default)


def _cast_setting(value, value_type):
    if value_type == "int":
        return int(value)
    if value_type == "float":
        return float(value)
    if value_type == "bool":
        return value == "1"
    return value


def read_setting_overrides(db_path):
    """Returns dotted config keys stored in the settings table."""
    if not db_path or not os.path.exists(db_path):
        return {}
    try:
        with sqlite3.connect(db_path, timeout=30) as conn:
            rows = conn.execute("SELECT key, value, type FROM settings").fetchall()
    except sqlite3.Error as exc:
        logging.warning("Config overrides unavailable: %s", exc)
        return {}
    overrides = {}
    for key, value, value_type in rows:
        section = key.split(".", 1)[0]
        if section not in _OVERRIDABLE_SECTIONS or "." not in key or value is None:
            continue
        try:
            overrides[key] = _cast_setting(value, value_type)
        except (TypeError, ValueError):
            logging.warning("Ignoring malformed setting %s=%r (%s)", key, value, value_type)
    return overrides


def apply_overrides(config, overrides):
    merged = copy.deepcopy(config)
    for dotted_key, value in overrides.items():
        section, _, key = dotted_key.partition(".")
        target = merged.setdefault(section, {})
        if isinstance(target, dict):
            target[key] = value
    return merged


class ConfigLoader:
    def __init__(self, config_path, db_path=None, *, initial=None):
        self.config_path = config_path
        self.db_path = db_path
        self._base = normalize_config(initial)
        self._config = self._base

    @property
    def config(self):
        return self._config

    def reload(self):
        raw = None
        if self.config_path and os.path.exists(self.config_path):
            try:
                raw = load_config(self.config_path)
            except (OSError, json.JSONDecodeError) as exc:
                logging.warning("Config reload failed, keeping previous config: %s", exc)
                raw = None
            if raw is not None:
                errors = validate_config(raw)
                if errors:
                    logging.warning("Config invalid, keeping previous config: %s", "; ".join(errors))
                    raw = None
        if raw is not None:
            self._base = normalize_config(raw)
        self._config = apply_overrides(self._base, read_setting_overrides(self.db_path))
        return self._config
