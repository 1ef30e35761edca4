import logging
import math
import os
import uuid

import requests

from engine.config import config_get
from engine.errors import DaemonError, InvalidInput

_PLACEHOLDER_SECRET = "changeme"
_DEFAULT_TIMEOUT = 15
_HEALTH_TIMEOUT = 5
_PREVIEW_LIMIT = 500
BYTES_IN_MEGABYTE = 1024 * 1024


def _normalize_secret(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def resolve_secret(override=None, configured=None, env_value=None):
    """Picks the RPC secret; a checked-in placeholder never beats an operator-supplied one."""
    if override is not None:
        return _normalize_secret(override)
    configured = _normalize_secret(configured)
    env_value = _normalize_secret(env_value)
    if configured is not None and configured.lower() != _PLACEHOLDER_SECRET:
        return configured
    if env_value is not None:
        return env_value
    return configured or env_value


def max_download_limit_bytes(config):
    value = config_get(config, "aria2.max_speed_mb_s")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        megabytes = float(value)
    except (TypeError, ValueError):
        return None
    if megabytes <= 0:
        return None
    return int(math.floor(megabytes * BYTES_IN_MEGABYTE))


def apply_speed_limit(options, config):
    limit = max_download_limit_bytes(config)
    if limit is not None:
        options["max-download-limit"] = str(limit)
    return options


class Aria2Client:
    def __init__(self, rpc_url=None, secret=None, timeout=_DEFAULT_TIMEOUT, config=None):
        config = config or {}
        self.rpc_url = rpc_url or config_get(config, "aria2.rpc_url", "http://127.0.0.1:6800/jsonrpc")
        self.secret = resolve_secret(
            secret,
            config_get(config, "aria2.secret"),
            os.environ.get("ARIA2_SECRET"),
        )
        self.timeout = timeout

    def add_uri(self, uris, options=None):
        if isinstance(uris, str):
            uris = [uris]
        cleaned = []
        for uri in uris or []:
            if not isinstance(uri, str):
                raise InvalidInput("Download URIs must be strings.")
            uri = uri.strip()
            if uri:
                cleaned.append(uri)
        if not cleaned:
            raise InvalidInput("At least one download URI must be provided.")
        params = [cleaned]
        if options:
            params.append({key: str(value) for key, value in options.items()})
        gid = self._request("aria2.addUri", params)
        if not isinstance(gid, str) or not gid:
            raise DaemonError("aria2 did not return a GID.", method="aria2.addUri")
        return gid

    def tell_status(self, gid, keys=None):
        params = [gid]
        if keys:
            params.append(list(keys))
        status = self._request("aria2.tellStatus", params)
        if not isinstance(status, dict):
            raise DaemonError("aria2 returned a malformed status.", method="aria2.tellStatus")
        return status

    def pause(self, gid):
        return self._request("aria2.pause", [gid])

    def unpause(self, gid):
        return self._request("aria2.unpause", [gid])

    def resume(self, gid):
        return self.unpause(gid)

    def remove(self, gid, force=False):
        method = "aria2.forceRemove" if force else "aria2.remove"
        return self._request(method, [gid])

    def get_version(self):
        return self._request("aria2.getVersion", [], timeout=_HEALTH_TIMEOUT)

    def _request(self, method, params, timeout=None):
        if self.secret is not None:
            params = [f"token:{self.secret}", *params]
        payload = {
            "jsonrpc": "2.0",
            "id": f"jf_fetch_{uuid.uuid4().hex}",
            "method": method,
            "params": params,
        }
        try:
            response = requests.post(
                self.rpc_url,
                json=payload,
                headers={"Accept": "application/json"},
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as exc:
            raise DaemonError(f"aria2 RPC request failed: {exc}", method=method) from exc

        preview = (response.text or "")[:_PREVIEW_LIMIT]
        try:
            decoded = response.json()
        except ValueError:
            decoded = None

        error = decoded.get("error") if isinstance(decoded, dict) else None
        if isinstance(error, dict):
            # aria2 answers RPC errors with HTTP 400 and a JSON error object.
            message = str(error.get("message") or "Unknown aria2 error")
            code = error.get("code")
            raise DaemonError(
                f"aria2 RPC error: {message}",
                method=method,
                status_code=response.status_code,
                rpc_code=code if isinstance(code, int) else None,
                rpc_message=message,
                response_preview=preview,
            )
        if not 200 <= response.status_code < 300:
            raise DaemonError(
                f"aria2 RPC returned unexpected HTTP status: {response.status_code}",
                method=method,
                status_code=response.status_code,
                response_preview=preview,
            )
        if not isinstance(decoded, dict):
            raise DaemonError(
                "Failed to decode aria2 RPC response.",
                method=method,
                status_code=response.status_code,
                response_preview=preview,
            )
        logging.debug("aria2 %s ok", method)
        return decoded.get("result")
