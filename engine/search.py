import logging
import re
import unicodedata

from rapidfuzz import fuzz

from engine.errors import ProviderError, RateLimitDeferred
from providers.secrets import SecretError

_BRACKET_RE = re.compile(r"[\(\[\{][^)\]\}]*[\)\]\}]")
_PUNCT_RE = re.compile(r"[^\w\s]+")
_WHITESPACE_RE = re.compile(r"\s+")
_SEPARATOR_RE = re.compile(r"[._]+")


def normalize_text(value):
    if not value:
        return ""
    text = unicodedata.normalize("NFKD", value)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower().strip()
    text = _BRACKET_RE.sub(" ", text)
    text = _SEPARATOR_RE.sub(" ", text)
    text = _PUNCT_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def title_score(query, title):
    left = normalize_text(query)
    right = normalize_text(title)
    if not left or not right:
        return 0
    return int(round(0.7 * fuzz.token_set_ratio(left, right) + 0.3 * fuzz.ratio(left, right)))


def rank_results(query, results):
    scored = []
    for index, item in enumerate(results):
        scored.append((title_score(query, item.get("title") or ""), index, item))
    scored.sort(key=lambda entry: (-entry[0], entry[1]))
    ranked = []
    for score, _, item in scored:
        ranked.append({**item, "score": score})
    return ranked


def search_providers(store, registry, query, limit=50, provider_keys=None):
    """Fans the query out to enabled providers; one provider failing never hides the others."""
    wanted = {key.strip().lower() for key in provider_keys or [] if key and key.strip()}
    results = []
    errors = {}
    for row in store.list_providers(enabled_only=True):
        key = row["key"]
        if wanted and key not in wanted:
            continue
        try:
            provider = registry.build(row)
            found = provider.search(query, limit)
        except (ProviderError, RateLimitDeferred, SecretError) as exc:
            logging.warning("Search on %s failed: %s", key, exc)
            errors[key] = str(exc)
            continue
        except Exception as exc:
            logging.exception("Search on %s failed unexpectedly", key)
            errors[key] = f"{type(exc).__name__}: {exc}"
            continue
        for item in found or []:
            results.append({**item, "provider": key, "provider_id": row["id"]})
    return {"query": query, "results": rank_results(query, results)[:limit], "errors": errors}
