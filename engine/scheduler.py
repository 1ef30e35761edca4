import logging
import os
import time

from download.aria2 import Aria2Client, apply_speed_limit
from engine.admission import AdmissionController
from engine.audit import AuditLog, EventNotifier, record_transition
from engine.config import config_bool, config_get, config_int
from engine.errors import AdmissionBlocked, ProviderBackoff, ProviderError, ProviderPaused, RateLimitDeferred
from engine.naming import derive_output_filename
from engine.provider_state import BackoffRegistry, PauseRegistry
from providers.registry import ProviderRegistry

_DEFAULT_LOOP_DELAY = 3
_DEFAULT_ORPHAN_SECONDS = 60
_DEFAULT_BACKOFF_SECONDS = 300
_MIN_BACKOFF_SECONDS = 60


def _error_details(exc):
    if hasattr(exc, "to_dict"):
        return exc.to_dict()
    return {"message": str(exc), "type": type(exc).__name__}


def _clean_uris(resolved):
    if isinstance(resolved, str):
        resolved = [resolved]
    return [uri.strip() for uri in resolved or [] if isinstance(uri, str) and uri.strip()]


class Scheduler:
    """Claims queued jobs, resolves them through their provider and hands them to aria2."""

    def __init__(
        self,
        store,
        config_loader,
        *,
        daemon=None,
        providers=None,
        admission=None,
        audit=None,
        events=None,
        pauses=None,
        backoffs=None,
        time_source=time.time,
    ):
        self.store = store
        self.config_loader = config_loader
        self._daemon = daemon
        self.providers = providers or ProviderRegistry(store.db_path, lambda: self.config_loader.config)
        self.admission = admission or AdmissionController(store)
        self.audit = audit or store.audit or AuditLog(store.db_path)
        self.events = events or EventNotifier(store.db_path)
        self.pauses = pauses or PauseRegistry(store.db_path)
        self.backoffs = backoffs or BackoffRegistry(store.db_path)
        self._time = time_source
        # provider_id -> epoch seconds before which its jobs are not claimed
        self.throttled = {}

    def _daemon_for(self, config):
        if self._daemon is not None:
            return self._daemon
        return Aria2Client(config=config)

    def _sync_backoffs(self):
        now = self._time()
        for provider_id, until in list(self.throttled.items()):
            if until <= now:
                del self.throttled[provider_id]
        for item in self.backoffs.active():
            provider_id = item.get("provider_id")
            if provider_id is None:
                provider_id = self.store.provider_id_for_key(item.get("provider"))
            if provider_id is None:
                continue
            until = float(item.get("retry_at_unix") or 0)
            self.throttled[int(provider_id)] = max(self.throttled.get(int(provider_id), 0), until)

    def _throttle(self, provider_id, seconds):
        until = self._time() + max(1, int(seconds))
        self.throttled[int(provider_id)] = max(self.throttled.get(int(provider_id), 0), until)

    def _requeue_orphans(self, config):
        age = config_int(config, "app.orphan_requeue_seconds", _DEFAULT_ORPHAN_SECONDS)
        for job in self.store.requeue_orphans(age):
            logging.warning("Requeued orphaned job %s (%s)", job.id, job.title)
            self.audit.record(0, "job.requeued.orphan", "job", job.id, {"title": job.title})

    def run_once(self):
        config = self.config_loader.reload()
        self._sync_backoffs()
        self._requeue_orphans(config)

        try:
            self.admission.check(config)
        except AdmissionBlocked as exc:
            if exc.reason == "free_space":
                logging.info("Awaiting free disk space. %s", exc.detail or "")
            else:
                logging.info("Concurrency limit reached. %s", exc.detail or "")
            return f"blocked:{exc.reason}"

        skip = set(self.throttled) | self.pauses.provider_ids()
        job = self.store.claim_next(skip)
        if job is None:
            logging.info("No queued jobs found.")
            return "idle"
        return self.process_job(job, config)

    def process_job(self, job, config):
        row = self.store.get_provider(job.provider_id)
        if not row or not row.get("enabled"):
            reason = "Provider disabled or missing."
            if self.store.fail_job(job, reason):
                record_transition(self.audit, self.events, job, "job.failed", notify=True, reason=reason)
            return "failed"

        provider = None
        try:
            provider = self.providers.build(row)
            self._enqueue(job, provider, config)
        except RateLimitDeferred as exc:
            self._throttle(job.provider_id, exc.retry_after_seconds)
            self.store.return_to_queue(job)
            logging.info(
                "Job %s deferred for %ss by %s: %s",
                job.id,
                exc.retry_after_seconds,
                row.get("key"),
                exc,
            )
            return "deferred"
        except Exception as exc:
            escalation = self._escalate(job, row, provider, exc, config)
            if isinstance(escalation, ProviderPaused):
                self._pause_provider(job, row, escalation)
                return "paused"
            if isinstance(escalation, ProviderBackoff):
                self._back_off(job, escalation)
                return "backoff"
            self._fail(job, exc)
            return "failed"
        return "downloading"

    def _enqueue(self, job, provider, config):
        uris = _clean_uris(provider.resolve_download_url(job.external_id))
        if not uris:
            raise ProviderError("Provider did not return any download URIs.", provider_key=provider.key)

        downloads = str(config_get(config, "paths.downloads", ""))
        os.makedirs(downloads, exist_ok=True)
        options = apply_speed_limit({"dir": downloads, "out": derive_output_filename(job.title, uris[0])}, config)

        daemon = self._daemon_for(config)
        gid = daemon.add_uri(uris, options)
        if not self.store.mark_downloading(job, gid, uris[0]):
            # Canceled while resolving; drop the transfer we just started.
            logging.warning("Job %s left starting before enqueue finished; removing %s", job.id, gid)
            try:
                daemon.remove(gid, force=True)
            except Exception:
                logging.exception("Unable to remove orphaned aria2 download %s", gid)
            return gid
        record_transition(self.audit, self.events, job, "job.downloading", gid=gid, source_url=uris[0], out=options["out"])
        self.backoffs.clear(provider.key)
        self.throttled.pop(int(job.provider_id), None)
        return gid

    def _escalate(self, job, row, provider, exc, config):
        if provider is None:
            return None
        failure = provider.classify_failure(exc)
        if failure is None:
            return None
        key = str(row.get("key") or provider.key)
        if failure.action == "pause" and config_bool(config, "providers.pause_on_object_not_found", True):
            return ProviderPaused(key, job.provider_id, failure.reason, failure.message, failure.context)
        seconds = max(
            _MIN_BACKOFF_SECONDS,
            config_int(config, "providers.error_backoff_seconds", _DEFAULT_BACKOFF_SECONDS),
        )
        context = dict(failure.context, reason=failure.reason)
        return ProviderBackoff(key, job.provider_id, seconds, failure.message, context)

    def _back_off(self, job, backoff):
        retry_at = int(self._time()) + backoff.retry_after_seconds
        self.backoffs.set(
            backoff.provider_key,
            retry_at,
            provider_id=backoff.provider_id,
            reason=backoff.context.get("reason"),
            message=str(backoff),
            job={"id": job.id, "title": job.title, "external_id": job.external_id},
            error=backoff.context,
        )
        self._throttle(backoff.provider_id, backoff.retry_after_seconds)
        self.store.return_to_queue(job, str(backoff))
        logging.warning(
            "Provider %s backing off for %ss after job %s: %s",
            backoff.provider_key,
            backoff.retry_after_seconds,
            job.id,
            backoff,
        )
        record_transition(
            self.audit,
            self.events,
            job,
            "job.deferred.backoff",
            provider=backoff.provider_key,
            retry_after_seconds=backoff.retry_after_seconds,
            message=str(backoff),
        )

    def _pause_provider(self, job, row, paused):
        self.pauses.set(
            paused.provider_key,
            provider_id=paused.provider_id,
            provider_label=row.get("name"),
            reason=paused.reason,
            note=str(paused),
            paused_by="scheduler",
        )
        self.store.return_to_queue(job, str(paused))
        record_transition(
            self.audit,
            self.events,
            job,
            "job.deferred.paused",
            provider=paused.provider_key,
            reason=paused.reason,
            message=str(paused),
        )

    def _fail(self, job, exc):
        reason = f"Failed to enqueue job: {exc}"
        logging.error("Job %s: %s", job.id, reason)
        if self.store.fail_job(job, reason):
            record_transition(
                self.audit,
                self.events,
                job,
                "job.failed",
                notify=True,
                reason=reason,
                details=_error_details(exc),
            )

    def run_forever(self, stop_event):
        logging.info("Scheduler started")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logging.exception("Scheduler pass failed")
            delay = config_int(self.config_loader.config, "app.loop_delay_seconds", _DEFAULT_LOOP_DELAY)
            stop_event.wait(max(1, delay))
        logging.info("Scheduler stopped")
