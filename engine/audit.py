import json
import logging
import sqlite3

from engine.clock import now_string


def _encode_payload(payload):
    try:
        return json.dumps(payload or {}, sort_keys=True)
    except (TypeError, ValueError):
        return "{}"


class AuditLog:
    """Writes operator-visible audit rows. Never raises into the caller."""

    def __init__(self, db_path):
        self.db_path = db_path

    def record(self, user_id, action, subject_type, subject_id, payload=None, conn=None):
        if not user_id or int(user_id) <= 0 or not action:
            return False
        params = (
            int(user_id),
            action,
            subject_type,
            None if subject_id is None else str(subject_id),
            _encode_payload(payload),
            now_string(),
        )
        sql = """
            INSERT INTO audit_log (user_id, action, subject_type, subject_id, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """
        try:
            if conn is not None:
                # Caller owns the transaction.
                conn.execute(sql, params)
            else:
                with sqlite3.connect(self.db_path, timeout=30) as own:
                    own.execute(sql, params)
        except sqlite3.Error:
            logging.exception("Audit write failed for %s on %s %s", action, subject_type, subject_id)
            return False
        return True

    def list_for(self, subject_type, subject_id):
        with sqlite3.connect(self.db_path, timeout=30) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                """
                SELECT * FROM audit_log
                WHERE subject_type=? AND subject_id=?
                ORDER BY id ASC
                """,
                (subject_type, str(subject_id)),
            ).fetchall()
        results = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item.pop("payload_json") or "{}")
            results.append(item)
        return results


class EventNotifier:
    def __init__(self, db_path):
        self.db_path = db_path

    def notify(self, user_id, job_id, event_type, payload=None):
        if not user_id or int(user_id) <= 0 or not event_type:
            return False
        try:
            with sqlite3.connect(self.db_path, timeout=30) as conn:
                conn.execute(
                    """
                    INSERT INTO notifications (user_id, job_id, type, payload_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (int(user_id), job_id, event_type, _encode_payload(payload), now_string()),
                )
        except sqlite3.Error:
            logging.exception("Event write failed for %s on job %s", event_type, job_id)
            return False
        return True


def record_transition(audit, events, job, action, *, notify=False, **fields):
    payload = {"title": job.title, **fields}
    audit.record(job.user_id, action, "job", job.id, payload)
    if notify and events is not None:
        events.notify(job.user_id, job.id, action, payload)
    return payload
