import json
import os
import tempfile
import unittest
from unittest import mock

from engine.errors import ProviderError, RateLimitDeferred
from engine.job_store import JobStore
from engine.provider_state import RateLimiter
from providers.kraska import (
    KraSkApiError,
    KraSkProvider,
    derive_title,
    extract_kraska_ident,
    ident_rate_limit_seconds,
)


def _response(status_code=200, payload=None, text=None):
    response = mock.Mock()
    response.status_code = status_code
    response.text = text if text is not None else json.dumps(payload)
    response.json.return_value = payload
    return response


class FakeKraApi:
    """Routes requests.post/get calls by URL fragment."""

    def __init__(self):
        self.posts = []
        self.gets = []
        self.routes = {}

    def route(self, fragment, response):
        self.routes[fragment] = response

    def _match(self, url):
        for fragment, response in self.routes.items():
            if fragment in url:
                return response
        raise AssertionError(f"Unexpected URL {url}")

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return self._match(url)

    def get(self, url, headers=None, timeout=None):
        self.gets.append({"url": url, "headers": headers, "timeout": timeout})
        return self._match(url)


class KraSkProviderTests(unittest.TestCase):
    def setUp(self):
        self.api = FakeKraApi()
        self.api.route("/api/user/login", _response(payload={"session_id": "sess-1"}))
        self.api.route("/auth/token", _response(payload={"token": "sc-token"}))
        post = mock.patch("providers.kraska.requests.post", side_effect=self.api.post)
        get = mock.patch("providers.kraska.requests.get", side_effect=self.api.get)
        post.start()
        get.start()
        self.addCleanup(post.stop)
        self.addCleanup(get.stop)
        self.provider = KraSkProvider({"username": "user", "password": "pass", "uuid": "fixed-uuid"})

    def test_login_then_download_link(self):
        self.api.route("/api/file/download", _response(payload={"data": {"link": "https://dl.kra.sk/x.mkv"}}))
        self.assertEqual(self.provider.resolve_download_url("ident-1"), "https://dl.kra.sk/x.mkv")

        login, download = self.api.posts
        self.assertEqual(login["json"], {"data": {"username": "user", "password": "pass"}})
        self.assertEqual(download["json"], {"data": {"ident": "ident-1"}, "session_id": "sess-1"})
        self.assertEqual(download["timeout"], 20)
        self.assertIn("Kodi", download["headers"]["User-Agent"])

    def test_session_is_reused(self):
        self.api.route("/api/file/download", _response(payload={"data": {"link": "https://dl/x"}}))
        self.provider.resolve_download_url("a")
        self.provider.resolve_download_url("b")
        logins = [call for call in self.api.posts if call["url"].endswith("/api/user/login")]
        self.assertEqual(len(logins), 1)

    def test_direct_urls_pass_through(self):
        self.assertEqual(self.provider.resolve_download_url("https://cdn/x.mkv"), "https://cdn/x.mkv")
        self.assertEqual(self.api.posts, [])

    def test_missing_link_raises(self):
        self.api.route("/api/file/download", _response(payload={"data": {}}))
        with self.assertRaises(ProviderError):
            self.provider.resolve_download_url("ident-1")

    def test_api_error_field_raises_and_resets_session(self):
        self.api.route("/api/file/download", _response(payload={"error": 1210, "msg": "object not found"}))
        with self.assertRaises(KraSkApiError) as ctx:
            self.provider.resolve_download_url("ident-1")
        self.assertEqual(ctx.exception.error_code, 1210)
        self.assertEqual(ctx.exception.endpoint, "/api/file/download")
        self.assertIsNone(self.provider._session_id)

    def test_play_path_resolves_through_stream_cinema(self):
        detail = {"strms": [{"provider": "webshare", "url": "/ws"}, {"provider": "kraska", "url": "/Stream/9", "sid": "sid-9"}]}
        self.api.route("/Play/42", _response(payload=detail))
        self.api.route("/Stream/9", _response(payload={"ident": "kra-ident"}))
        self.api.route("/api/file/download", _response(payload={"data": {"link": "https://dl/kra"}}))

        self.assertEqual(self.provider.resolve_download_url("/Play/42"), "https://dl/kra")
        self.assertEqual(self.api.posts[-1]["json"]["data"], {"ident": "kra-ident"})
        play = self.api.gets[0]
        self.assertIn("uid=fixed-uuid", play["url"])
        self.assertEqual(play["headers"]["X-AUTH-TOKEN"], "sc-token")
        self.assertEqual(play["headers"]["X-Uuid"], "fixed-uuid")
        token = [call for call in self.api.posts if "/auth/token" in call["url"]][0]
        self.assertIn("krt=sess-1", token["url"])

    def test_play_path_falls_back_to_sid(self):
        detail = {"strms": [{"provider": "kra.sk", "url": "/Stream/9", "sid": "sid-9"}]}
        self.api.route("/Play/42", _response(payload=detail))
        self.api.route("/Stream/9", _response(payload={}))
        self.api.route("/api/file/download", _response(payload={"data": {"link": "https://dl/kra"}}))
        self.provider.resolve_download_url("/Play/42")
        self.assertEqual(self.api.posts[-1]["json"]["data"], {"ident": "sid-9"})

    def test_ident_fetch_is_rate_limited_in_memory(self):
        self.api.route("/Play/", _response(payload={"strms": []}))
        self.api.route("/api/file/download", _response(payload={"data": {"link": "https://dl/kra"}}))
        self.provider.resolve_download_url("/Play/1")
        with self.assertRaises(RateLimitDeferred) as ctx:
            self.provider.resolve_download_url("/Play/2")
        self.assertGreaterEqual(ctx.exception.retry_after_seconds, 1)
        self.assertEqual(str(ctx.exception), "Stream-Cinema ident fetch deferred due to rate limit")

    def test_ident_fetch_uses_shared_limiter(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "jobs.sqlite")
            JobStore(db_path)
            limiter = RateLimiter(db_path)
            limiter.acquire("kraska", "sc_ident", 120)
            provider = KraSkProvider({"username": "u", "password": "p"}, rate_limiter=limiter)
            with self.assertRaises(RateLimitDeferred):
                provider.resolve_download_url("/Play/3")
            self.assertEqual(self.api.gets, [])

    def test_search_normalizes_stream_cinema_entries(self):
        menu = [
            {
                "id": "77",
                "type": "video",
                "i18n_info": {"en": {"title": "Heat [HD]"}},
                "stream_info": {"video": {"height": 1080, "codec": "h264", "duration": 6000}, "langs": {"EN": 1}},
                "size": 2048,
            },
            {"id": "78", "type": "dir", "title": "Folder"},
        ]
        self.api.route("/Search/", _response(payload={"menu": menu}))
        results = KraSkProvider({"username": "u", "password": "p", "lang": "en"}).search("heat", limit=1)
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]["id"], "/Play/77")
        self.assertEqual(results[0]["title"], "Heat")
        self.assertEqual(results[0]["quality"], "1080p h264")
        self.assertEqual(results[0]["language"], "EN")
        self.assertEqual(results[0]["size_human"], "2.00 KB")

    def test_search_falls_back_to_file_list(self):
        self.api.route("/Search/", _response(payload={"menu": []}))
        self.api.route("/api/file/list", _response(payload={"data": [{"ident": "i1", "name": "Heat.mkv", "size": 10}]}))
        results = self.provider.search("heat")
        self.assertEqual([item["id"] for item in results], ["i1"])

    def test_status(self):
        self.api.route("/api/user/info", _response(payload={"data": {"days_left": "12", "subscribed_until": "2030-01-01"}}))
        status = self.provider.status()
        self.assertTrue(status["authenticated"])
        self.assertEqual(status["days_left"], 12)

    def test_status_reports_errors(self):
        self.api.route("/api/user/info", _response(status_code=500, payload=None, text="oops"))
        status = self.provider.status()
        self.assertFalse(status["authenticated"])
        self.assertIn("500", status["error"])


class KraSkClassificationTests(unittest.TestCase):
    def setUp(self):
        self.provider = KraSkProvider({})

    def _api_error(self, status_code, body, error_code=None):
        return KraSkApiError(
            "Kra.sk API HTTP status %s" % status_code,
            status_code=status_code,
            endpoint="/api/file/download",
            payload={"data": {"ident": "x"}, "session_id": "secret"},
            url="https://api.kra.sk/api/file/download",
            response_body=body,
            error_code=error_code,
        )

    def test_invalid_ident_backs_off(self):
        failure = self.provider.classify_failure(self._api_error(400, '{"error": 1207, "msg": "Invalid ident"}', 1207))
        self.assertEqual(failure.action, "backoff")
        self.assertEqual(failure.reason, "invalid_ident")
        self.assertEqual(failure.message, "Kra.sk API returned invalid ident (HTTP 400).")
        self.assertNotIn("session_id", failure.context["payload"])

    def test_invalid_ident_needs_http_400(self):
        self.assertIsNone(self.provider.classify_failure(self._api_error(500, "invalid ident")))

    def test_object_not_found_pauses(self):
        failure = self.provider.classify_failure(self._api_error(200, '{"error": 1210}', 1210))
        self.assertEqual(failure.action, "pause")
        self.assertEqual(failure.reason, "object_not_found")
        self.assertEqual(failure.context["error_code"], 1210)

    def test_object_not_found_in_cause_chain(self):
        try:
            try:
                raise ProviderError("Object not found upstream")
            except ProviderError as inner:
                raise RuntimeError("resolve failed") from inner
        except RuntimeError as outer:
            failure = self.provider.classify_failure(outer)
        self.assertEqual(failure.action, "pause")

    def test_unrelated_errors_are_not_classified(self):
        self.assertIsNone(self.provider.classify_failure(ProviderError("timeout")))


class KraSkHelperTests(unittest.TestCase):
    def test_rate_limit_interval_sources(self):
        with mock.patch.dict(os.environ, {"KRA_SC_IDENT_RATE_LIMIT_SECONDS": "30"}):
            self.assertEqual(ident_rate_limit_seconds({}), 30)
            self.assertEqual(ident_rate_limit_seconds({"ident_rate_limit_seconds": 45}), 45)
            self.assertEqual(ident_rate_limit_seconds({"sc_ident_rate_limit_seconds": "15"}), 15)
        with mock.patch.dict(os.environ, {"KRA_SC_IDENT_RATE_LIMIT_SECONDS": "0"}):
            self.assertEqual(ident_rate_limit_seconds({}), 120)
        self.assertEqual(ident_rate_limit_seconds({"ident_rate_limit_seconds": "abc"}), 120)

    def test_derive_title_preference(self):
        entry = {"i18n_info": {"cs": {"title": "Nebezpečná rychlost"}, "en": {"title": "Speed"}}, "title": "raw"}
        self.assertEqual(derive_title(entry, "en"), "Speed")
        self.assertEqual(derive_title(entry, "de"), "Nebezpečná rychlost")
        self.assertEqual(derive_title({"unique_ids": {"sc": "sc-1"}}), "sc-1")
        self.assertEqual(derive_title({}), "unknown")

    def test_extract_ident(self):
        self.assertEqual(extract_kraska_ident({"strms": [{"provider": "KRA", "ident": "abc"}]}), "abc")
        self.assertIsNone(extract_kraska_ident({"strms": [{"provider": "webshare", "ident": "abc"}]}))


if __name__ == "__main__":
    unittest.main()
