import json
import logging
import sqlite3
import time

from engine.clock import now_string, parse_timestamp, timestamp_from_epoch

PAUSE_PREFIX = "provider_pause."
BACKOFF_PREFIX = "provider_backoff."
RATE_PREFIX = "provider_rate."


def _normalize_key(value):
    return str(value or "").strip().lower()


class _SettingsRecords:
    """JSON records in the settings table, shared by every process on the same database."""

    prefix = ""

    def __init__(self, db_path):
        self.db_path = db_path

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _write(self, conn, key, record):
        conn.execute(
            """
            INSERT INTO settings (key, value, type, updated_at) VALUES (?, ?, 'string', ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, type=excluded.type, updated_at=excluded.updated_at
            """,
            (key, json.dumps(record, sort_keys=True, default=str), now_string()),
        )

    def _put(self, key, record):
        try:
            with self._connect() as conn:
                self._write(conn, key, record)
        except sqlite3.Error:
            logging.exception("Failed to persist %s", key)

    def _delete(self, key):
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM settings WHERE key=?", (key,))
        except sqlite3.Error:
            logging.exception("Failed to clear %s", key)

    def _rows(self, provider_key=None):
        try:
            with self._connect() as conn:
                if provider_key is not None:
                    return conn.execute(
                        "SELECT key, value FROM settings WHERE key=?",
                        (self.prefix + provider_key,),
                    ).fetchall()
                return conn.execute(
                    "SELECT key, value FROM settings WHERE key LIKE ?",
                    (self.prefix + "%",),
                ).fetchall()
        except sqlite3.Error as exc:
            logging.warning("Provider state unavailable (%s): %s", self.prefix, exc)
            return []

    def _decoded(self, provider_key=None):
        items = []
        for row in self._rows(provider_key):
            key = row["key"][len(self.prefix):]
            try:
                decoded = json.loads(row["value"] or "")
            except json.JSONDecodeError:
                decoded = None
            if not isinstance(decoded, dict):
                self._delete(row["key"])
                continue
            decoded.setdefault("provider", key)
            items.append(decoded)
        return items

    def _provider_id(self, provider_key):
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT id FROM providers WHERE key=?", (provider_key,)).fetchone()
        except sqlite3.Error:
            return None
        return int(row["id"]) if row else None


class PauseRegistry(_SettingsRecords):
    prefix = PAUSE_PREFIX

    def set(self, provider_key, **payload):
        provider_key = _normalize_key(provider_key)
        if not provider_key:
            return None
        provider_id = payload.get("provider_id")
        if provider_id is None:
            provider_id = self._provider_id(provider_key)
        paused_at = payload.get("paused_at") or now_string()
        parsed = parse_timestamp(paused_at)
        record = {
            "type": "paused",
            "provider": provider_key,
            "provider_id": None if provider_id is None else int(provider_id),
            "provider_label": payload.get("provider_label") or provider_key.capitalize(),
            "note": payload.get("note") or None,
            "reason": payload.get("reason") or None,
            "paused_at": paused_at,
            "paused_at_unix": int(parsed.timestamp()) if parsed else int(time.time()),
            "paused_by": payload.get("paused_by"),
        }
        self._put(self.prefix + provider_key, record)
        logging.warning("Provider %s paused: %s", provider_key, record["reason"] or record["note"] or "manual")
        return record

    def clear(self, provider_key):
        self._delete(self.prefix + _normalize_key(provider_key))

    def find(self, provider_key):
        items = self._decoded(_normalize_key(provider_key))
        return items[0] if items else None

    def is_paused(self, provider_key):
        return self.find(provider_key) is not None

    def active(self):
        items = self._decoded()
        return sorted(items, key=lambda item: str(item.get("provider_label") or item.get("provider")).lower())

    def provider_ids(self):
        ids = set()
        for item in self._decoded():
            provider_id = item.get("provider_id")
            if provider_id is None:
                provider_id = self._provider_id(item.get("provider"))
            if provider_id is not None:
                ids.add(int(provider_id))
        return ids


class BackoffRegistry(_SettingsRecords):
    prefix = BACKOFF_PREFIX

    def set(self, provider_key, retry_at_epoch, **payload):
        provider_key = _normalize_key(provider_key)
        if not provider_key:
            return None
        retry_at_epoch = int(retry_at_epoch)
        record = {
            "provider": provider_key,
            "provider_id": payload.get("provider_id"),
            "retry_at": timestamp_from_epoch(retry_at_epoch),
            "retry_at_unix": retry_at_epoch,
            "retry_after_seconds": max(0, retry_at_epoch - int(time.time())),
            "reason": payload.get("reason"),
            "message": payload.get("message"),
            "job": payload.get("job"),
            "error": payload.get("error"),
        }
        self._put(self.prefix + provider_key, record)
        return record

    def clear(self, provider_key):
        self._delete(self.prefix + _normalize_key(provider_key))

    def find(self, provider_key):
        items = self.active(_normalize_key(provider_key))
        return items[0] if items else None

    def active(self, provider_key=None):
        now = int(time.time())
        items = []
        for item in self._decoded(provider_key):
            retry_at = int(item.get("retry_at_unix") or 0)
            if retry_at <= now:
                self.clear(item.get("provider"))
                continue
            item["retry_after_seconds"] = retry_at - now
            items.append(item)
        return items


class RateLimiter(_SettingsRecords):
    prefix = RATE_PREFIX

    def acquire(self, provider_key, bucket, interval_seconds, burst_limit=None, burst_window_seconds=None, meta=None):
        """Returns None when the call may proceed, else the seconds left before it may."""
        provider_key = _normalize_key(provider_key)
        bucket = _normalize_key(bucket)
        if not provider_key or not bucket:
            raise ValueError("Provider key and bucket are required for rate limiting.")
        if interval_seconds < 0:
            raise ValueError("Rate limit interval cannot be negative.")
        if not burst_limit or not burst_window_seconds or burst_limit <= 0 or burst_window_seconds <= 0:
            burst_limit = None
            burst_window_seconds = None

        key = f"{self.prefix}{provider_key}.{bucket}"
        now = int(time.time())
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
            state = {}
            if row and row["value"]:
                try:
                    state = json.loads(row["value"])
                except json.JSONDecodeError:
                    state = {}
            last_run = int(state.get("last_run_unix") or 0)
            window_start = int(state.get("window_start_unix") or 0)
            window_count = int(state.get("window_count") or 0)

            if last_run > 0 and now - last_run < interval_seconds:
                conn.commit()
                return max(1, interval_seconds - (now - last_run))

            if burst_limit is not None:
                if window_start == 0 or now - window_start >= burst_window_seconds:
                    window_start = now
                    window_count = 0
                if window_count >= burst_limit:
                    conn.commit()
                    return max(1, window_start + burst_window_seconds - now)
                window_count += 1

            record = {
                "provider": provider_key,
                "bucket": bucket,
                "interval_seconds": int(interval_seconds),
                "last_run_unix": now,
                "last_run": now_string(),
                "meta": meta or {},
            }
            if burst_limit is not None:
                record.update(
                    burst_limit=burst_limit,
                    burst_window_seconds=burst_window_seconds,
                    window_start_unix=window_start,
                    window_count=window_count,
                )
            self._write(conn, key, record)
            conn.commit()
        return None

    def inspect(self, provider_key=None):
        pattern = self.prefix + (f"{_normalize_key(provider_key)}.%" if provider_key else "%")
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT key, value FROM settings WHERE key LIKE ?", (pattern,)).fetchall()
        except sqlite3.Error:
            return []
        now = int(time.time())
        results = []
        for row in rows:
            try:
                decoded = json.loads(row["value"] or "")
            except json.JSONDecodeError:
                continue
            if not isinstance(decoded, dict):
                continue
            provider, _, bucket = row["key"][len(self.prefix):].partition(".")
            decoded.setdefault("provider", provider)
            decoded.setdefault("bucket", bucket or "default")
            if "last_run_unix" in decoded:
                retry_at = decoded["last_run_unix"] + int(decoded.get("interval_seconds") or 0)
                decoded["retry_after_seconds"] = max(0, retry_at - now)
            results.append(decoded)
        return results

    def clear(self, provider_key, bucket=None):
        provider_key = _normalize_key(provider_key)
        if not provider_key:
            return
        try:
            with self._connect() as conn:
                if bucket:
                    conn.execute("DELETE FROM settings WHERE key=?", (f"{self.prefix}{provider_key}.{_normalize_key(bucket)}",))
                else:
                    conn.execute("DELETE FROM settings WHERE key LIKE ?", (f"{self.prefix}{provider_key}.%",))
        except sqlite3.Error:
            logging.exception("Failed to clear rate limits for %s", provider_key)
