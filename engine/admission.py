import logging
import os

from engine.config import config_bool, config_float, config_get, config_int
from engine.errors import AdmissionBlocked

BYTES_IN_GIGABYTE = 1024 ** 3


def disk_usage(path):
    try:
        stat = os.statvfs(path)
    except OSError:
        return {
            "path": path,
            "total_bytes": None,
            "free_bytes": None,
            "used_bytes": None,
            "free_percent": None,
        }
    total = stat.f_frsize * stat.f_blocks
    free = stat.f_frsize * stat.f_bavail
    used = total - free
    free_percent = (free / total) * 100 if total else None
    return {
        "path": path,
        "total_bytes": total,
        "free_bytes": free,
        "used_bytes": used,
        "free_percent": round(free_percent, 2) if free_percent is not None else None,
    }


def storage_roots(config):
    roots = []
    for key in ("paths.downloads", "paths.library"):
        value = config_get(config, key)
        if isinstance(value, str) and value.strip():
            roots.append(value)
    return roots


class AdmissionController:
    """Capacity and free-space gates consulted before every claim."""

    def __init__(self, store, usage=disk_usage):
        self.store = store
        self._usage = usage

    def check_capacity(self, config):
        limit = config_int(config, "app.max_active_downloads", 0)
        if limit <= 0:
            return None
        active = self.store.count_active()
        if active >= limit:
            raise AdmissionBlocked("capacity", f"{active} active downloads (limit {limit})")
        return active

    def check_free_space(self, config):
        minimum_gb = config_float(config, "app.min_free_space_gb", 0.0)
        if minimum_gb <= 0:
            return []
        fail_open = config_bool(config, "app.free_space_fail_open", True)
        report = []
        for root in storage_roots(config):
            entry = self.root_status(root, minimum_gb, fail_open)
            report.append(entry)
            if not entry["ok"]:
                if entry["free_gb"] is None:
                    detail = f"{root} is unreadable"
                else:
                    detail = f"{root} has {entry['free_gb']:.2f} GB free (minimum {minimum_gb:g} GB)"
                raise AdmissionBlocked("free_space", detail)
        return report

    def root_status(self, root, minimum_gb, fail_open=True):
        try:
            os.makedirs(root, exist_ok=True)
        except OSError as exc:
            logging.warning("Unable to prepare storage root %s: %s", root, exc)
        usage = self._usage(root)
        free_bytes = usage.get("free_bytes")
        if free_bytes is None:
            logging.warning("Free space unknown for %s; gate %s", root, "open" if fail_open else "closed")
            return {"path": root, "free_gb": None, "minimum_gb": minimum_gb, "ok": fail_open}
        free_gb = free_bytes / BYTES_IN_GIGABYTE
        return {"path": root, "free_gb": free_gb, "minimum_gb": minimum_gb, "ok": free_gb >= minimum_gb}

    def check(self, config):
        self.check_free_space(config)
        self.check_capacity(config)
