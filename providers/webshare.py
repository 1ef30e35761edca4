import hashlib
import json
import logging
import xml.etree.ElementTree as ET

import requests

from engine.errors import ProviderError
from providers.base import VideoProvider, format_bytes, is_direct_url

API_BASE = "https://webshare.cz/api/"
_TIMEOUT = 15
_PREVIEW_LIMIT = 500
_ITOA64 = "./0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
_MD5_MAGIC = b"$1$"


def _to64(value, length):
    out = []
    for _ in range(length):
        out.append(_ITOA64[value & 0x3F])
        value >>= 6
    return "".join(out)


def md5_crypt(password, salt):
    """FreeBSD MD5-crypt ($1$), as used by the Webshare login handshake."""
    pw = password.encode("utf-8")
    if salt.startswith("$1$"):
        salt = salt[3:]
    salt = salt.split("$", 1)[0][:8].encode("utf-8")

    ctx = hashlib.md5(pw + _MD5_MAGIC + salt)
    alternate = hashlib.md5(pw + salt + pw).digest()
    for remaining in range(len(pw), 0, -16):
        ctx.update(alternate[: min(16, remaining)])
    length = len(pw)
    while length:
        ctx.update(b"\x00" if length & 1 else pw[:1])
        length >>= 1
    final = ctx.digest()

    for i in range(1000):
        round_ctx = hashlib.md5()
        round_ctx.update(pw if i & 1 else final)
        if i % 3:
            round_ctx.update(salt)
        if i % 7:
            round_ctx.update(pw)
        round_ctx.update(final if i & 1 else pw)
        final = round_ctx.digest()

    encoded = ""
    for a, b, c in ((0, 6, 12), (1, 7, 13), (2, 8, 14), (3, 9, 15), (4, 10, 5)):
        encoded += _to64((final[a] << 16) | (final[b] << 8) | final[c], 4)
    encoded += _to64(final[11], 2)
    return f"$1${salt.decode('utf-8')}${encoded}"


def _xml_to_data(element):
    children = list(element)
    if not children:
        return (element.text or "").strip()
    data = {}
    for child in children:
        value = _xml_to_data(child)
        if child.tag in data:
            if not isinstance(data[child.tag], list):
                data[child.tag] = [data[child.tag]]
            data[child.tag].append(value)
        else:
            data[child.tag] = value
    return data


def decode_response(body, content_type=""):
    content_type = (content_type or "").lower()
    if "json" in content_type:
        return _decode_json(body)
    if "xml" in content_type:
        return _decode_xml(body)
    try:
        return _decode_json(body)
    except ProviderError:
        return _decode_xml(body)


def _decode_json(body):
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"Failed to parse Webshare JSON response: {exc}", provider_key="webshare") from exc
    if not isinstance(decoded, dict):
        raise ProviderError("Unexpected Webshare JSON response.", provider_key="webshare")
    if isinstance(decoded.get("response"), dict):
        decoded = decoded["response"]
    return decoded


def _decode_xml(body):
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise ProviderError("Failed to parse Webshare XML response.", provider_key="webshare") from exc
    decoded = _xml_to_data(root)
    if not isinstance(decoded, dict):
        return {}
    if isinstance(decoded.get("response"), dict):
        decoded = decoded["response"]
    return decoded


def _status_ok(response):
    status = response.get("status")
    return not isinstance(status, str) or status.lower() in ("ok", "success")


def _unwrap_data(response):
    if isinstance(response.get("data"), dict):
        return response["data"]
    return response


def _as_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class WebshareProvider(VideoProvider):
    key = "webshare"

    def __init__(self, config=None):
        super().__init__(config)
        self._file_info_cache = {}

    @staticmethod
    def send_request(path, payload):
        url = API_BASE + path.lstrip("/")
        try:
            response = requests.post(
                url,
                data=payload,
                headers={"Accept": "application/json, text/json, text/xml; charset=UTF-8, */*;q=0.8"},
                timeout=_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"Webshare API request failed: {exc}", provider_key="webshare", endpoint=path) from exc
        if not 200 <= response.status_code < 300:
            raise ProviderError(
                f"Webshare API returned HTTP status {response.status_code}",
                provider_key="webshare",
                status_code=response.status_code,
                endpoint=path,
                response_preview=(response.text or "")[:_PREVIEW_LIMIT],
            )
        return decode_response(response.text, response.headers.get("Content-Type", ""))

    @classmethod
    def fetch_token(cls, username, password):
        salt_response = _unwrap_data(cls.send_request("salt/", {"username_or_email": username}))
        if not _status_ok(salt_response):
            raise ProviderError(str(salt_response.get("message") or "Webshare salt request failed."), provider_key="webshare")
        salt = salt_response.get("salt")
        if not isinstance(salt, str) or not salt:
            raise ProviderError("Webshare salt request did not return a salt.", provider_key="webshare")

        digest = hashlib.sha1(md5_crypt(password, salt).encode("utf-8")).hexdigest()
        response = _unwrap_data(
            cls.send_request(
                "login/",
                {"username_or_email": username, "password": digest, "keep_logged_in": 1},
            )
        )
        if not _status_ok(response):
            raise ProviderError(str(response.get("message") or "Webshare login failed."), provider_key="webshare")
        token = response.get("token") or response.get("wst")
        if not isinstance(token, str) or not token:
            raise ProviderError("Webshare login did not return a token.", provider_key="webshare")
        return token

    def _resolve_token(self):
        for name in ("wst", "token"):
            value = self.config.get(name)
            if isinstance(value, str) and value:
                return value
        username = str(self.config.get("username") or "").strip()
        password = str(self.config.get("password") or "")
        if username and password:
            token = self.fetch_token(username, password)
            self.config["wst"] = token
            return token
        return None

    def _post(self, path, payload):
        token = self._resolve_token()
        if not token:
            raise ProviderError("Webshare WST token missing from configuration.", provider_key="webshare")
        return self.send_request(path, {**payload, "wst": token})

    def search(self, query, limit=50):
        response = self._post(
            "search/",
            {"what": query, "limit": limit, "offset": 0, "sort": "recent", "category": "video"},
        )
        files = response.get("files") or response.get("file")
        if isinstance(files, dict):
            files = [files]
        if not isinstance(files, list):
            return []
        enrich_limit = _as_int(self.config.get("enrich_limit"), 10)
        results = []
        for index, item in enumerate(files):
            if isinstance(item, dict):
                results.append(self._normalize_file(item, enrich=index < enrich_limit))
        return results

    def resolve_download_url(self, external_id):
        if is_direct_url(external_id):
            return external_id
        response = self._post("file_link/", {"ident": external_id})
        link = response.get("link")
        if not _status_ok(response) or not isinstance(link, str) or not link:
            raise ProviderError(
                str(response.get("message") or "Webshare download link not available."),
                provider_key="webshare",
                endpoint="file_link/",
                error_code=response.get("code"),
            )
        return link

    def file_info(self, ident):
        if ident in self._file_info_cache:
            return self._file_info_cache[ident]
        response = self._post("file_info/", {"ident": ident})
        if not _status_ok(response):
            raise ProviderError(
                str(response.get("message") or "Webshare file info request unsuccessful."),
                provider_key="webshare",
                endpoint="file_info/",
            )
        self._file_info_cache[ident] = response
        return response

    def _normalize_file(self, item, enrich=True):
        ident = str(item.get("ident") or "")
        size = _as_int(item.get("size"), 0)
        duration = _as_int(item.get("duration"))
        info = None
        if ident and enrich:
            try:
                info = self.file_info(ident)
            except ProviderError as exc:
                logging.debug("Webshare file info for %s unavailable: %s", ident, exc)
        if info:
            duration = duration if duration is not None else _as_int(info.get("length"))
            size = size or _as_int(info.get("size"), 0)
        width = _as_int((info or {}).get("width"))
        height = _as_int((info or {}).get("height"))
        return {
            "id": ident,
            "title": str(item.get("name") or ""),
            "provider": self.key,
            "size_bytes": size,
            "size_human": format_bytes(size),
            "duration_seconds": duration,
            "thumbnail": item.get("img") or item.get("image") or (info or {}).get("stripe"),
            "resolution": f"{width}x{height}" if width and height else None,
            "video_width": width,
            "video_height": height,
        }

    def status(self):
        try:
            token = self._resolve_token()
        except ProviderError:
            token = None
        vip_days = None
        if token:
            try:
                data = _unwrap_data(self._post("user_data/", {}))
                vip_days = _as_int(data.get("vip_days"))
            except ProviderError as exc:
                logging.info("Webshare user_data unavailable: %s", exc)
        return {
            "provider": self.key,
            "authenticated": bool(token),
            "token_present": bool(token),
            "vip_days": vip_days,
            "subscription_active": None if vip_days is None else vip_days > 0,
        }
