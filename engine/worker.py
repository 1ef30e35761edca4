import logging
import math
import os
import shutil
import sqlite3

from download.aria2 import Aria2Client, apply_speed_limit
from engine.audit import AuditLog, EventNotifier, record_transition
from engine.config import config_get, config_int
from engine.errors import DaemonError, InvalidInput
from engine.library import JellyfinClient, LibraryPlacer
from engine.naming import derive_output_filename

_DEFAULT_LOOP_DELAY = 3
_FETCH_LIMIT = 25
STATUS_KEYS = (
    "gid",
    "status",
    "totalLength",
    "completedLength",
    "downloadSpeed",
    "files",
    "errorCode",
    "errorMessage",
)


def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def first_file_path(status):
    for entry in status.get("files") or []:
        if isinstance(entry, dict) and entry.get("path"):
            return entry["path"]
    return None


def progress_fields(status):
    """Maps an aria2 status record onto the job's progress columns."""
    total = _as_int(status.get("totalLength"))
    completed = _as_int(status.get("completedLength"))
    speed = _as_int(status.get("downloadSpeed"))
    percent = math.floor(completed * 100 / total) if total > 0 else 0
    percent = max(0, min(100, percent))
    eta = None
    if speed > 0 and total > 0:
        eta = math.ceil(max(0, total - completed) / speed)
    return {
        "status": "paused" if status.get("status") == "paused" else "downloading",
        "progress": percent,
        "speed_bps": speed or None,
        "eta_seconds": eta,
        "tmp_path": first_file_path(status),
        "file_size_bytes": total or None,
    }


class Worker:
    """Polls aria2 for every active job and moves finished downloads into the library."""

    def __init__(
        self,
        store,
        config_loader,
        *,
        daemon=None,
        placer=None,
        refresher=None,
        audit=None,
        events=None,
    ):
        self.store = store
        self.config_loader = config_loader
        self._daemon = daemon
        self._placer = placer
        self._refresher = refresher
        self.audit = audit or store.audit or AuditLog(store.db_path)
        self.events = events or EventNotifier(store.db_path)

    def _daemon_for(self, config):
        if self._daemon is not None:
            return self._daemon
        return Aria2Client(config=config)

    def _placer_for(self, config):
        if self._placer is not None:
            return self._placer
        return LibraryPlacer(str(config_get(config, "paths.library", "")))

    def _refresher_for(self, config):
        if self._refresher is not None:
            return self._refresher
        return JellyfinClient.from_config(config)

    def run_once(self):
        config = self.config_loader.reload()
        jobs = self.store.fetch_active(_FETCH_LIMIT)
        outcomes = []
        for job in jobs:
            try:
                outcomes.append(self.handle_job(job, config))
            except Exception:
                logging.exception("Worker failed handling job %s", job.id)
                outcomes.append("error")
        return outcomes

    def handle_job(self, job, config):
        daemon = self._daemon_for(config)
        try:
            status = daemon.tell_status(job.aria2_gid, STATUS_KEYS)
        except DaemonError as exc:
            if exc.is_lost_reference:
                return self._restart(job, daemon, config, exc)
            logging.warning("aria2 status for job %s (gid %s) unavailable: %s", job.id, job.aria2_gid, exc)
            return "retry"

        state = status.get("status")
        if state == "complete":
            return self._complete(job, status, config)
        if state == "error":
            reason = "aria2 reported error state."
            message = status.get("errorMessage")
            if message:
                reason = f"{reason} {message}"
            if self.store.mark_failed(job, reason):
                record_transition(
                    self.audit,
                    self.events,
                    job,
                    "job.failed",
                    notify=True,
                    reason=reason,
                    error_code=status.get("errorCode"),
                )
            return "failed"
        if state == "removed":
            reason = "Download removed from aria2."
            if self.store.mark_canceled(job, reason):
                record_transition(self.audit, self.events, job, "job.canceled", notify=True, reason=reason)
            return "canceled"

        self.store.update_progress(job, **progress_fields(status))
        return "progress"

    def _complete(self, job, status, config):
        source_path = first_file_path(status) or job.tmp_path
        try:
            if not source_path:
                raise FileNotFoundError("aria2 did not report an output file.")
            final_path = self._placer_for(config).move_download_to_library(job, source_path)
        except Exception as exc:
            reason = f"Completion handling failed: {exc}"
            logging.exception("Job %s: completion handling failed", job.id)
            if self.store.mark_failed(job, reason):
                record_transition(self.audit, self.events, job, "job.failed", notify=True, reason=reason)
            return "failed"

        try:
            completed = self.store.mark_completed(job, final_path)
        except sqlite3.Error:
            # Staged copy must exist again for the next poll.
            logging.exception("Job %s: unable to record completion; restoring %s", job.id, source_path)
            shutil.move(final_path, source_path)
            raise
        if not completed:
            logging.warning("Job %s changed state before completion could be recorded", job.id)
            return "stale"

        try:
            self._refresher_for(config).refresh_library()
        except Exception:
            logging.exception("Library refresh failed after job %s", job.id)
        record_transition(self.audit, self.events, job, "job.completed", notify=True, final_path=final_path)
        return "completed"

    def _restart(self, job, daemon, config, error):
        logging.warning("aria2 lost job %s (gid %s): %s", job.id, job.aria2_gid, error)
        if not job.source_url:
            return self._abandon(job, "no source URL recorded")

        downloads = str(config_get(config, "paths.downloads", ""))
        try:
            os.makedirs(downloads, exist_ok=True)
        except OSError as exc:
            return self._abandon(job, f"unable to prepare download directory: {exc}")

        if job.tmp_path:
            out = os.path.basename(job.tmp_path)
        else:
            out = derive_output_filename(job.title, job.source_url)
        options = apply_speed_limit({"dir": downloads, "out": out}, config)
        try:
            new_gid = daemon.add_uri([job.source_url], options)
        except (DaemonError, InvalidInput) as exc:
            return self._abandon(job, str(exc))

        if not self.store.record_restart(job, new_gid):
            logging.warning("Job %s changed state during restart; removing %s", job.id, new_gid)
            try:
                daemon.remove(new_gid, force=True)
            except DaemonError as exc:
                logging.warning("Unable to remove restarted download %s: %s", new_gid, exc)
            return "stale"
        record_transition(
            self.audit,
            self.events,
            job,
            "job.requeued",
            notify=True,
            old_gid=job.aria2_gid,
            new_gid=new_gid,
        )
        return "restarted"

    def _abandon(self, job, reason):
        for path in (job.tmp_path, f"{job.tmp_path}.aria2" if job.tmp_path else None):
            if path and os.path.exists(path):
                try:
                    os.remove(path)
                except OSError as exc:
                    logging.warning("Unable to remove partial download %s: %s", path, exc)
        reason = f"Download lost by aria2 and restart failed: {reason}"
        if self.store.mark_canceled(job, reason):
            record_transition(self.audit, self.events, job, "job.canceled", notify=True, reason=reason)
        return "canceled"

    def run_forever(self, stop_event):
        logging.info("Worker started")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logging.exception("Worker pass failed")
            delay = config_int(self.config_loader.config, "app.loop_delay_seconds", _DEFAULT_LOOP_DELAY)
            stop_event.wait(max(1, delay))
        logging.info("Worker stopped")
