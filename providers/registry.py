import hashlib
import logging

from engine.config import config_bool, config_get
from engine.errors import UnsupportedProvider
from engine.provider_state import RateLimiter
from providers.kraska import KraSkProvider
from providers.secrets import decrypt_config
from providers.webshare import WebshareProvider

PROVIDER_CLASSES = {
    "webshare": WebshareProvider,
    "kraska": KraSkProvider,
}


def _fingerprint(row):
    raw = "|".join(str(row.get(name) or "") for name in ("key", "config_json", "updated_at"))
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class ProviderRegistry:
    """Builds provider instances from `providers` rows, reusing them until the row changes."""

    def __init__(self, db_path, config_getter=None):
        self.db_path = db_path
        self._config_getter = config_getter or dict
        self._cache = {}
        self.rate_limiter = RateLimiter(db_path)

    def build(self, row):
        key = str(row.get("key") or "").strip().lower()
        provider_class = PROVIDER_CLASSES.get(key)
        if provider_class is None:
            raise UnsupportedProvider(key)

        provider_id = row.get("id")
        fingerprint = _fingerprint(row)
        cached = self._cache.get(provider_id)
        if cached is not None and cached[0] == fingerprint:
            return cached[1]

        app_config = self._config_getter()
        secret = str(config_get(app_config, "security.provider_secret", "") or "")
        provider_config = decrypt_config(row, secret, self.db_path)
        if key == "kraska":
            provider_config["debug"] = config_bool(app_config, "providers.kraska_debug_enabled", False)
            provider = provider_class(provider_config, rate_limiter=self.rate_limiter)
        else:
            provider = provider_class(provider_config)
        self._cache[provider_id] = (fingerprint, provider)
        logging.info("Built provider %s (id=%s)", key, provider_id)
        return provider
