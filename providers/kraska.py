import json
import logging
import os
import re
import time
import uuid
from urllib.parse import quote, urlencode

import requests

from engine.errors import ProviderError, RateLimitDeferred
from providers.base import FailureClass, VideoProvider, format_bytes, is_direct_url

API_BASE = "https://api.kra.sk"
SC_BASE = "https://stream-cinema.online/kodi"
_API_TIMEOUT = 20
_SC_TIMEOUT = 15
_SESSION_TTL_SECONDS = 1800
_SC_TOKEN_TTL_SECONDS = 21600
_DEFAULT_IDENT_RATE_LIMIT_SECONDS = 120
_PREVIEW_LIMIT = 500
_INVALID_IDENT_CODE = 1207
_OBJECT_NOT_FOUND_CODE = 1210
_OBJECT_NOT_FOUND_RE = re.compile(r"object not found|\b1210\b", re.IGNORECASE)
_PLAY_PATH_RE = re.compile(r"^/Play/(\d+)$")
_BBCODE_RE = re.compile(r"\[[^\]]+\]")
_PROVIDER_SYNONYMS = {"kraska", "kra.sk", "kra", "krask"}
_SEARCH_CATEGORIES = ("search", "search-movie", "search-series")
_USER_AGENT = "Kodi/20.0 (X11; U; Linux x86_64) (en; ver2.0)"
logger = logging.getLogger("jf_fetch.kraska")


class KraSkApiError(ProviderError):
    def __init__(self, message, *, status_code, endpoint, payload=None, url=None, response_body=None, error_code=None):
        super().__init__(
            message,
            provider_key="kraska",
            status_code=status_code,
            endpoint=endpoint,
            error_code=error_code,
            response_preview=(response_body or "")[:_PREVIEW_LIMIT] or None,
        )
        self.payload = dict(payload or {})
        self.url = url
        self.response_body = response_body

    def to_dict(self):
        data = super().to_dict()
        payload = json.loads(json.dumps(self.payload, default=str))
        if isinstance(payload.get("data"), dict) and "password" in payload["data"]:
            payload["data"]["password"] = "***"
        payload.pop("session_id", None)
        data.update(url=self.url, payload=payload)
        return data


def _error_code_from_body(body):
    try:
        decoded = json.loads(body or "")
    except json.JSONDecodeError:
        return None, None
    if not isinstance(decoded, dict):
        return None, None
    code = decoded.get("error", decoded.get("code"))
    message = decoded.get("msg") or decoded.get("message")
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = None
    return code, message if isinstance(message, str) else None


def is_invalid_ident(exc):
    if not isinstance(exc, KraSkApiError) or exc.status_code != 400:
        return False
    if exc.error_code == _INVALID_IDENT_CODE:
        return True
    body = exc.response_body or ""
    if "invalid ident" in body.lower():
        return True
    code, message = _error_code_from_body(body)
    return code == _INVALID_IDENT_CODE or bool(message and "invalid ident" in message.lower())


def is_object_not_found(exc):
    seen = set()
    cursor = exc
    while cursor is not None and id(cursor) not in seen:
        seen.add(id(cursor))
        if isinstance(cursor, ProviderError) and cursor.error_code == _OBJECT_NOT_FOUND_CODE:
            return True
        if _OBJECT_NOT_FOUND_RE.search(str(cursor)):
            return True
        body = getattr(cursor, "response_body", None)
        if isinstance(body, str) and _OBJECT_NOT_FOUND_RE.search(body):
            return True
        cursor = cursor.__cause__ or cursor.__context__
    return False


def ident_rate_limit_seconds(config):
    raw = config.get("ident_rate_limit_seconds")
    if raw is None:
        raw = config.get("sc_ident_rate_limit_seconds")
    if raw is None:
        raw = os.environ.get("KRA_SC_IDENT_RATE_LIMIT_SECONDS") or None
    if isinstance(raw, str):
        raw = raw.strip() or None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return _DEFAULT_IDENT_RATE_LIMIT_SECONDS
    return value if value > 0 else _DEFAULT_IDENT_RATE_LIMIT_SECONDS


def derive_title(entry, preferred_lang="cs"):
    candidates = []
    i18n = entry.get("i18n_info")
    if isinstance(i18n, dict):
        for lang in [preferred_lang] + [lang for lang in ("cs", "sk", "en") if lang != preferred_lang]:
            info = i18n.get(lang)
            if isinstance(info, dict) and info.get("title"):
                candidates.append(info["title"])
    for key in ("title", "name"):
        if entry.get(key):
            candidates.append(entry[key])
    unique_ids = entry.get("unique_ids")
    if isinstance(unique_ids, dict) and unique_ids.get("sc"):
        candidates.append(unique_ids["sc"])
    if entry.get("id") is not None:
        candidates.append(str(entry["id"]))
    for raw in candidates:
        if isinstance(raw, str):
            clean = _BBCODE_RE.sub("", raw).strip()
            if clean:
                return clean
    return "unknown"


def find_kraska_stream(detail):
    streams = detail.get("strms")
    if not isinstance(streams, list):
        return None
    for stream in streams:
        if not isinstance(stream, dict):
            continue
        provider = stream.get("provider") or stream.get("prov")
        if isinstance(provider, str) and provider.lower() in _PROVIDER_SYNONYMS:
            return stream
    return None


def extract_kraska_ident(detail):
    stream = find_kraska_stream(detail)
    if stream is None:
        return None
    for key in ("ident", "sid", "uuid", "file", "id"):
        value = stream.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class KraSkProvider(VideoProvider):
    key = "kraska"

    def __init__(self, config=None, rate_limiter=None):
        super().__init__(config)
        self.rate_limiter = rate_limiter
        self.debug = bool(self.config.get("debug"))
        self._session_id = None
        self._last_login = None
        self._user_info = None
        self._sc_token = None
        self._sc_token_at = None
        self._sc_uuid = self.config.get("uuid") or None
        self._last_ident_fetch = None

    def _debug(self, message, *args):
        if self.debug:
            logger.info("[kraska] " + message, *args)

    # Kra.sk API

    def ensure_session(self):
        if self._session_id and self._last_login and time.time() - self._last_login < _SESSION_TTL_SECONDS:
            return self._session_id
        username = str(self.config.get("username") or "")
        password = str(self.config.get("password") or "")
        if not username or not password:
            raise ProviderError("Kra.sk credentials missing", provider_key=self.key)
        response = self._api_post(
            "/api/user/login",
            {"data": {"username": username, "password": password}},
            require_auth=False,
            attach_session=False,
            mutate_session=True,
        )
        session_id = response.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise ProviderError("Kra.sk login failed", provider_key=self.key, endpoint="/api/user/login")
        self._session_id = session_id
        self._last_login = time.time()
        self._user_info = None
        return session_id

    def _api_post(self, endpoint, payload, require_auth=True, attach_session=True, mutate_session=False):
        if require_auth:
            self.ensure_session()
        payload = dict(payload)
        if attach_session and self._session_id:
            payload["session_id"] = self._session_id
        url = API_BASE + endpoint
        self._debug("POST %s", endpoint)
        try:
            response = requests.post(
                url,
                json=payload,
                headers={"Accept": "application/json", "User-Agent": _USER_AGENT},
                timeout=_API_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Kra.sk HTTP error: {exc}", provider_key=self.key, endpoint=endpoint) from exc

        body = response.text or ""
        if not 200 <= response.status_code < 300:
            code, _ = _error_code_from_body(body)
            raise KraSkApiError(
                f"Kra.sk API HTTP status {response.status_code}",
                status_code=response.status_code,
                endpoint=endpoint,
                payload=payload,
                url=url,
                response_body=body,
                error_code=code,
            )
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Kra.sk JSON decode error: {exc}", provider_key=self.key, endpoint=endpoint) from exc
        if not isinstance(decoded, dict):
            raise ProviderError("Kra.sk empty response", provider_key=self.key, endpoint=endpoint)

        if mutate_session and isinstance(decoded.get("session_id"), str):
            self._session_id = decoded["session_id"]
            self._last_login = time.time()

        if "error" in decoded:
            if require_auth:
                self._session_id = None
            error = decoded["error"]
            code, message = _error_code_from_body(body)
            raise KraSkApiError(
                f"Kra.sk API error: {message or error}",
                status_code=response.status_code,
                endpoint=endpoint,
                payload=payload,
                url=url,
                response_body=body,
                error_code=code,
            )
        return decoded

    def user_info(self):
        if self._user_info is not None:
            return self._user_info
        data = self._api_post("/api/user/info", {}).get("data")
        if not isinstance(data, dict):
            raise ProviderError("Kra.sk user info missing", provider_key=self.key)
        if "subscribed_until" not in data:
            raise ProviderError("Kra.sk subscription inactive", provider_key=self.key)
        self._user_info = data
        return data

    def status(self):
        try:
            info = self.user_info()
        except ProviderError as exc:
            return {"provider": self.key, "authenticated": False, "error": str(exc)}
        days_left = info.get("days_left")
        return {
            "provider": self.key,
            "authenticated": self._session_id is not None,
            "days_left": int(days_left) if days_left is not None else None,
            "subscription_active": True,
            "subscribed_until": info.get("subscribed_until"),
        }

    # Stream-Cinema

    def _uuid(self):
        if not self._sc_uuid:
            self._sc_uuid = str(uuid.uuid4())
        return self._sc_uuid

    def _sc_params(self, extra):
        params = {
            "ver": "2.0",
            "uid": self._uuid(),
            "skin": "default",
            "lang": self.config.get("lang") or "en",
            "HDR": "1",
            "DV": "1",
            **extra,
        }
        return urlencode(sorted(params.items()), quote_via=quote)

    def _sc_auth_token(self):
        if self._sc_token and self._sc_token_at and time.time() - self._sc_token_at < _SC_TOKEN_TTL_SECONDS:
            return self._sc_token
        session_id = self.ensure_session()
        url = f"{SC_BASE}/auth/token?{self._sc_params({'krt': session_id})}"
        try:
            response = requests.post(
                url,
                headers={"Accept": "application/json", "User-Agent": _USER_AGENT, "X-Uuid": self._uuid()},
                timeout=_SC_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Stream-Cinema token HTTP error: {exc}", provider_key=self.key) from exc
        if not 200 <= response.status_code < 300:
            raise ProviderError(
                f"Stream-Cinema token HTTP status {response.status_code}",
                provider_key=self.key,
                status_code=response.status_code,
                endpoint="/auth/token",
            )
        try:
            token = response.json().get("token")
        except (ValueError, AttributeError):
            token = None
        if not isinstance(token, str) or not token:
            raise ProviderError("Stream-Cinema token missing in response", provider_key=self.key)
        self._sc_token = token
        self._sc_token_at = time.time()
        return token

    def _sc_get_json(self, url, timeout=_SC_TIMEOUT, with_auth=False):
        headers = {"Accept": "application/json", "User-Agent": _USER_AGENT}
        if with_auth:
            headers["X-AUTH-TOKEN"] = self._sc_auth_token()
            headers["X-Uuid"] = self._uuid()
        try:
            response = requests.get(url, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"Stream-Cinema HTTP error: {exc}", provider_key=self.key) from exc
        if not 200 <= response.status_code < 300:
            raise ProviderError(
                f"Stream-Cinema HTTP status {response.status_code}",
                provider_key=self.key,
                status_code=response.status_code,
                response_preview=(response.text or "")[:_PREVIEW_LIMIT],
            )
        self._debug("SC GET %s => %s", url, (response.text or "")[:1000])
        try:
            decoded = response.json()
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def _sc_url(self, path):
        separator = "&" if "?" in path else "?"
        return f"{SC_BASE}{path}{separator}{self._sc_params({})}"

    def _acquire_ident_fetch(self, path):
        interval = ident_rate_limit_seconds(self.config)
        if self.rate_limiter is not None:
            wait = self.rate_limiter.acquire(self.key, "sc_ident", interval, meta={"path": path})
        else:
            now = time.time()
            wait = None
            if self._last_ident_fetch is not None and now - self._last_ident_fetch < interval:
                wait = max(1, int(self._last_ident_fetch + interval - now))
            else:
                self._last_ident_fetch = now
        if wait is not None:
            self._debug("Deferred ident fetch for %s; retry in %s seconds", path, wait)
            raise RateLimitDeferred(wait, "Stream-Cinema ident fetch deferred due to rate limit")

    def fetch_stream_cinema_item(self, path):
        self._acquire_ident_fetch(path)
        return self._sc_get_json(self._sc_url(path), timeout=_API_TIMEOUT, with_auth=True)

    def _ident_for_play_path(self, path, sc_id):
        try:
            detail = self.fetch_stream_cinema_item(path)
        except ProviderError as exc:
            self._debug("Detail fetch for %s failed, using SC id: %s", path, exc)
            return sc_id
        stream = find_kraska_stream(detail)
        if not stream or not stream.get("url"):
            return sc_id
        try:
            resolved = self._sc_get_json(self._sc_url(stream["url"]), timeout=_API_TIMEOUT, with_auth=True)
        except ProviderError as exc:
            self._debug("Stream lookup for %s failed: %s", path, exc)
            resolved = {}
        ident = resolved.get("ident")
        if isinstance(ident, str) and ident:
            return ident
        return stream.get("sid") or sc_id

    def resolve_download_url(self, external_id):
        if is_direct_url(external_id):
            return external_id
        ident = external_id
        if external_id.startswith("/"):
            match = _PLAY_PATH_RE.match(external_id)
            if match:
                ident = self._ident_for_play_path(external_id, match.group(1))
            else:
                try:
                    ident = extract_kraska_ident(self.fetch_stream_cinema_item(external_id)) or external_id
                except ProviderError as exc:
                    self._debug("Ident extraction for %s failed: %s", external_id, exc)
        self._debug("Resolving ident %s", ident)
        response = self._api_post("/api/file/download", {"data": {"ident": ident}})
        data = response.get("data")
        if not isinstance(data, dict):
            raise ProviderError(f"Kra.sk download response missing data for ident: {ident}", provider_key=self.key)
        link = data.get("link")
        if not isinstance(link, str) or not link:
            raise ProviderError(f"Kra.sk download link not available for ident: {ident}", provider_key=self.key)
        return link

    # Search

    def _stream_cinema_search(self, query, limit):
        entries = []
        for category in _SEARCH_CATEGORIES:
            url = f"{SC_BASE}/Search/{category}?{self._sc_params({'search': query, 'id': category})}"
            menu = self._sc_get_json(url, with_auth=True).get("menu")
            if isinstance(menu, list):
                entries.extend(menu)
            if len(entries) >= limit:
                break
        return entries

    def search(self, query, limit=50):
        query = (query or "").strip()
        if not query:
            return []
        sc_error = None
        try:
            entries = self._stream_cinema_search(query, limit)
        except ProviderError as exc:
            self._debug("Stream-Cinema search failed: %s", exc)
            sc_error = exc
            entries = []

        if not entries and (sc_error is not None or len(query) >= 3):
            try:
                data = self._api_post("/api/file/list", {"data": {"parent": None, "filter": query}}).get("data")
            except ProviderError:
                if sc_error is not None:
                    raise sc_error
                raise
            return [self._normalize_file(item) for item in (data or []) if isinstance(item, dict)][:limit]

        results = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            if (entry.get("type") or "video").lower() != "video":
                continue
            play_url = entry.get("url")
            if not isinstance(play_url, str):
                play_url = f"/Play/{entry['id']}" if entry.get("id") not in (None, "") else None
            if play_url is None:
                continue
            results.append(self._normalize_entry(entry, play_url))
            if len(results) >= limit:
                break
        return results

    def _normalize_entry(self, entry, play_url):
        stream_info = entry.get("stream_info") if isinstance(entry.get("stream_info"), dict) else {}
        video = stream_info.get("video") if isinstance(stream_info.get("video"), dict) else {}
        height = video.get("height")
        codec = video.get("codec")
        quality = None
        if height:
            quality = f"{height}p" + (f" {codec}" if codec else "")
        elif codec:
            quality = codec
        langs = stream_info.get("langs")
        size = int(entry.get("size") or 0)
        return {
            "id": play_url,
            "title": derive_title(entry, str(self.config.get("lang") or "cs").lower()),
            "provider": self.key,
            "size_bytes": size,
            "size_human": format_bytes(size),
            "quality": quality,
            "language": ",".join(langs.keys()) if isinstance(langs, dict) and langs else None,
            "duration_seconds": video.get("duration"),
            "video_codec": codec,
            "width": video.get("width"),
            "height": height,
        }

    def _normalize_file(self, item):
        ident = str(item.get("ident") or "")
        size = int(item.get("size") or 0)
        return {
            "id": ident,
            "title": str(item.get("name") or item.get("title") or ident),
            "provider": self.key,
            "size_bytes": size,
            "size_human": format_bytes(size),
        }

    def classify_failure(self, exc):
        if is_invalid_ident(exc):
            return FailureClass(
                "backoff",
                "invalid_ident",
                "Kra.sk API returned invalid ident (HTTP 400).",
                exc.to_dict(),
            )
        if is_object_not_found(exc):
            context = exc.to_dict() if isinstance(exc, ProviderError) else {"message": str(exc)}
            context["error_code"] = _OBJECT_NOT_FOUND_CODE
            return FailureClass(
                "pause",
                "object_not_found",
                "Kra.sk API reported object not found (code 1210).",
                context,
            )
        return None
