import os
import tempfile
import unittest

from engine.admission import AdmissionController
from engine.audit import AuditLog
from engine.config import ConfigLoader
from engine.errors import DaemonError, ProviderError, RateLimitDeferred
from engine.job_store import JobStore
from engine.provider_state import BackoffRegistry, PauseRegistry, RateLimiter
from engine.scheduler import Scheduler
from providers.base import FailureClass, VideoProvider


class FakeDaemon:
    def __init__(self, gids=("G1", "G2", "G3"), error=None):
        self.gids = list(gids)
        self.error = error
        self.calls = []
        self.removed = []

    def add_uri(self, uris, options=None):
        self.calls.append((list(uris), dict(options or {})))
        if self.error is not None:
            raise self.error
        return self.gids.pop(0)

    def remove(self, gid, force=False):
        self.removed.append(gid)
        return gid


class FakeProvider(VideoProvider):
    def __init__(self, key="webshare", result=None, error=None, failure=None):
        super().__init__({})
        self.key = key
        self.result = ["https://cdn.example/Movie.mkv"] if result is None else result
        self.error = error
        self.failure = failure
        self.resolved = []

    def resolve_download_url(self, external_id):
        self.resolved.append(external_id)
        if self.error is not None:
            raise self.error
        return self.result

    def classify_failure(self, exc):
        return self.failure


class RateLimitedProvider(VideoProvider):
    key = "kraska"

    def __init__(self, limiter):
        super().__init__({})
        self.limiter = limiter

    def resolve_download_url(self, external_id):
        wait = self.limiter.acquire(self.key, "sc_ident", 120)
        if wait is not None:
            raise RateLimitDeferred(wait, "Stream-Cinema ident fetch deferred due to rate limit")
        return "https://cdn.example/x.mkv"


class FakeRegistry:
    def __init__(self, providers):
        self.providers = providers
        self.built = []

    def build(self, row):
        self.built.append(row["key"])
        return self.providers[row["key"]]


class SchedulerTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "jobs.sqlite")
        self.downloads = os.path.join(self.tmpdir.name, "downloads")
        self.store = JobStore(self.db_path, audit=AuditLog(self.db_path))
        self.webshare_id = self.store.create_provider("webshare", "Webshare")
        self.kraska_id = self.store.create_provider("kraska", "Kra.sk")
        self.config = {
            "paths": {"downloads": self.downloads, "library": os.path.join(self.tmpdir.name, "library")},
            "app": {"max_active_downloads": 2, "min_free_space_gb": 0},
            "providers": {"error_backoff_seconds": 10},
        }

    def tearDown(self):
        self.tmpdir.cleanup()

    def _scheduler(self, providers=None, daemon=None, **kwargs):
        loader = ConfigLoader(None, self.db_path, initial=self.config)
        registry = kwargs.pop("registry", None) or FakeRegistry(providers or {})
        return Scheduler(self.store, loader, daemon=daemon or FakeDaemon(), providers=registry, **kwargs)

    def _create(self, title="Movie", provider_id=None, **kwargs):
        return self.store.create_job(
            user_id=1,
            provider_id=provider_id or self.webshare_id,
            external_id=kwargs.pop("external_id", "abc123"),
            title=title,
            **kwargs,
        )

    def _actions(self, job_id):
        return [row["action"] for row in self.store.audit.list_for("job", job_id)]

    def test_claim_resolve_enqueue(self):
        job_id = self._create("Movie", priority=100, position=1)
        provider = FakeProvider()
        daemon = FakeDaemon()
        outcome = self._scheduler({"webshare": provider}, daemon).run_once()

        self.assertEqual(outcome, "downloading")
        row = self.store.get_job(job_id)
        self.assertEqual(row.status, "downloading")
        self.assertEqual(row.aria2_gid, "G1")
        self.assertEqual(row.source_url, "https://cdn.example/Movie.mkv")
        uris, options = daemon.calls[0]
        self.assertEqual(uris, ["https://cdn.example/Movie.mkv"])
        self.assertEqual(options["dir"], self.downloads)
        self.assertEqual(options["out"], "Movie.mkv")
        self.assertTrue(os.path.isdir(self.downloads))
        self.assertEqual(self._actions(job_id), ["job.starting", "job.downloading"])

    def test_speed_limit_passed_to_daemon(self):
        self.config["aria2"] = {"max_speed_mb_s": 2}
        self._create()
        daemon = FakeDaemon()
        self._scheduler({"webshare": FakeProvider()}, daemon).run_once()
        self.assertEqual(daemon.calls[0][1]["max-download-limit"], "2097152")

    def test_idle_when_queue_empty(self):
        self.assertEqual(self._scheduler().run_once(), "idle")

    def test_rate_limit_deferral_keeps_job_queued(self):
        job_id = self._create(provider_id=self.kraska_id)
        provider = FakeProvider(key="kraska", error=RateLimitDeferred(120))
        scheduler = self._scheduler({"kraska": provider})

        self.assertEqual(scheduler.run_once(), "deferred")
        row = self.store.get_job(job_id)
        self.assertEqual(row.status, "queued")
        self.assertIsNone(row.error_text)
        self.assertNotIn("job.failed", self._actions(job_id))

        # Throttled until retry-after elapses.
        self.assertEqual(scheduler.run_once(), "idle")
        self.assertEqual(len(provider.resolved), 1)
        self.assertEqual(self.store.get_job(job_id).status, "queued")

    def test_rate_limit_shared_between_processes(self):
        job_id = self._create(provider_id=self.kraska_id)
        limiter = RateLimiter(self.db_path)
        self.assertIsNone(limiter.acquire("kraska", "sc_ident", 120))

        for _ in range(2):
            scheduler = self._scheduler({"kraska": RateLimitedProvider(limiter)})
            self.assertEqual(scheduler.run_once(), "deferred")
            self.assertEqual(self.store.get_job(job_id).status, "queued")

    def test_missing_or_disabled_provider_fails(self):
        self.store.create_provider("webshare", "Webshare", enabled=False)
        job_id = self._create()
        self.assertEqual(self._scheduler().run_once(), "failed")
        row = self.store.get_job(job_id)
        self.assertEqual(row.status, "failed")
        self.assertEqual(row.error_text, "Provider disabled or missing.")
        self.assertIn("job.failed", self._actions(job_id))

    def test_unsupported_provider_fails_job(self):
        other = self.store.create_provider("mystery", "Mystery")
        job_id = self._create(provider_id=other)
        loader = ConfigLoader(None, self.db_path, initial=self.config)
        scheduler = Scheduler(self.store, loader, daemon=FakeDaemon())
        self.assertEqual(scheduler.run_once(), "failed")
        self.assertEqual(self.store.get_job(job_id).error_text, "Failed to enqueue job: Unsupported provider: mystery")

    def test_provider_error_fails_with_details(self):
        job_id = self._create()
        error = ProviderError("file gone", provider_key="webshare", status_code=404, endpoint="file_link/")
        self._scheduler({"webshare": FakeProvider(error=error)}).run_once()
        row = self.store.get_job(job_id)
        self.assertEqual(row.status, "failed")
        self.assertEqual(row.error_text, "Failed to enqueue job: file gone")
        self.assertIsNone(row.aria2_gid)
        failed = [row for row in self.store.audit.list_for("job", job_id) if row["action"] == "job.failed"]
        self.assertEqual(failed[0]["payload"]["details"]["endpoint"], "file_link/")

    def test_blank_uris_fail(self):
        job_id = self._create()
        self._scheduler({"webshare": FakeProvider(result=["", "  "])}).run_once()
        self.assertEqual(
            self.store.get_job(job_id).error_text,
            "Failed to enqueue job: Provider did not return any download URIs.",
        )

    def test_daemon_error_fails_job(self):
        job_id = self._create()
        daemon = FakeDaemon(error=DaemonError("aria2 RPC request failed: refused", method="aria2.addUri"))
        self._scheduler({"webshare": FakeProvider()}, daemon).run_once()
        row = self.store.get_job(job_id)
        self.assertEqual(row.status, "failed")
        self.assertTrue(row.error_text.startswith("Failed to enqueue job: aria2 RPC request failed"))

    def test_backoff_classification_requeues_and_throttles(self):
        first = self._create("First", provider_id=self.kraska_id, position=1)
        second = self._create("Second", provider_id=self.kraska_id, position=2)
        failure = FailureClass("backoff", "invalid_ident", "Kra.sk API returned invalid ident (HTTP 400).")
        provider = FakeProvider(key="kraska", error=ProviderError("bad"), failure=failure)
        scheduler = self._scheduler({"kraska": provider})

        self.assertEqual(scheduler.run_once(), "backoff")
        row = self.store.get_job(first)
        self.assertEqual(row.status, "queued")
        self.assertEqual(row.error_text, "Kra.sk API returned invalid ident (HTTP 400).")
        self.assertIn("job.deferred.backoff", self._actions(first))

        record = BackoffRegistry(self.db_path).find("kraska")
        self.assertEqual(record["reason"], "invalid_ident")
        # The configured 10s window is raised to the 60s minimum.
        self.assertGreaterEqual(record["retry_after_seconds"], 59)

        self.assertEqual(scheduler.run_once(), "idle")
        self.assertEqual(self.store.get_job(second).status, "queued")

        # A fresh scheduler picks the window up from the shared registry.
        self.assertEqual(self._scheduler({"kraska": provider}).run_once(), "idle")

    def test_pause_classification_pauses_provider(self):
        job_id = self._create(provider_id=self.kraska_id)
        failure = FailureClass("pause", "object_not_found", "Kra.sk API reported object not found (code 1210).")
        provider = FakeProvider(key="kraska", error=ProviderError("Kra.sk API error: 1210"), failure=failure)
        scheduler = self._scheduler({"kraska": provider})

        self.assertEqual(scheduler.run_once(), "paused")
        pauses = PauseRegistry(self.db_path)
        self.assertTrue(pauses.is_paused("kraska"))
        self.assertEqual(pauses.find("kraska")["reason"], "object_not_found")
        self.assertEqual(self.store.get_job(job_id).status, "queued")
        self.assertIn("job.deferred.paused", self._actions(job_id))

        self.assertEqual(scheduler.run_once(), "idle")
        self.assertEqual(len(provider.resolved), 1)

        pauses.clear("kraska")
        provider.error = None
        self.assertEqual(scheduler.run_once(), "downloading")

    def test_pause_disabled_falls_back_to_backoff(self):
        self.config["providers"]["pause_on_object_not_found"] = False
        self._create(provider_id=self.kraska_id)
        failure = FailureClass("pause", "object_not_found", "Kra.sk API reported object not found (code 1210).")
        provider = FakeProvider(key="kraska", error=ProviderError("1210"), failure=failure)

        self.assertEqual(self._scheduler({"kraska": provider}).run_once(), "backoff")
        self.assertFalse(PauseRegistry(self.db_path).is_paused("kraska"))
        self.assertIsNotNone(BackoffRegistry(self.db_path).find("kraska"))

    def test_success_clears_backoff(self):
        BackoffRegistry(self.db_path).set("webshare", 4102444800, provider_id=999, reason="invalid_ident")
        self._create()
        self._scheduler({"webshare": FakeProvider()}).run_once()
        self.assertIsNone(BackoffRegistry(self.db_path).find("webshare"))

    def test_capacity_gate(self):
        self.config["app"]["max_active_downloads"] = 1
        self._create("Active", position=1)
        waiting = self._create("Waiting", position=2)
        scheduler = self._scheduler({"webshare": FakeProvider()})
        self.assertEqual(scheduler.run_once(), "downloading")
        self.assertEqual(scheduler.run_once(), "blocked:capacity")
        self.assertEqual(self.store.get_job(waiting).status, "queued")

    def test_free_space_gate(self):
        self.config["app"]["min_free_space_gb"] = 5
        job_id = self._create()
        admission = AdmissionController(self.store, usage=lambda path: {"free_bytes": 1024})
        scheduler = self._scheduler({"webshare": FakeProvider()}, admission=admission)
        self.assertEqual(scheduler.run_once(), "blocked:free_space")
        self.assertEqual(self.store.get_job(job_id).status, "queued")

    def test_canceled_while_resolving_removes_transfer(self):
        job_id = self._create()
        store = self.store

        class CancelingProvider(FakeProvider):
            def resolve_download_url(self, external_id):
                store.request_cancel(job_id)
                return super().resolve_download_url(external_id)

        daemon = FakeDaemon()
        self._scheduler({"webshare": CancelingProvider()}, daemon).run_once()
        self.assertEqual(daemon.removed, ["G1"])
        row = self.store.get_job(job_id)
        self.assertEqual(row.status, "canceled")
        self.assertIsNone(row.aria2_gid)


if __name__ == "__main__":
    unittest.main()
