from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from ..domain.models import Customer, RecordValidationError
from ..domain.timestamps import now_timestamp, timestamp_sort_key
from ..logging import get_logger
from ..paths import find_project_root, var_dir


LOG = get_logger("local-store")

DEFAULT_DB_FOLDER = "customerdb"
DEFAULT_DB_FILENAME = "customers.sqlite3"
STORAGE_KEY = "customer_distribution_data"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
  key         TEXT PRIMARY KEY,
  value       TEXT NOT NULL,
  updated_at  TEXT DEFAULT (datetime('now'))
);
"""


class LocalStore:
    """Single-slot snapshot store for the full customer list.

    - Places the DB under `<project-root>/var/customerdb/customers.sqlite3`.
    - The whole collection lives in one JSON blob under STORAGE_KEY; each save
      replaces it in one statement, so readers never see a partial write.
    """

    def __init__(self, root_dir: Optional[str] = None, *, db_path: Optional[str] = None, key: str = STORAGE_KEY) -> None:
        if db_path is None:
            root = find_project_root(root_dir)
            folder = os.path.join(var_dir(root), DEFAULT_DB_FOLDER)
            os.makedirs(folder, exist_ok=True)
            db_path = os.path.join(folder, DEFAULT_DB_FILENAME)
        self.db_path = db_path
        self.key = key
        LOG.info(f"Local store path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        try:
            with self.connect() as conn:
                try:
                    conn.execute("PRAGMA journal_mode=WAL;")
                except sqlite3.Error:
                    pass
                conn.executescript(SCHEMA_SQL)
                conn.commit()
        except sqlite3.Error as exc:
            # load() still answers with an empty list and save() reports failure
            LOG.error("Could not prepare local store schema at %s: %s", self.db_path, exc)

    # ---------------- snapshot API ----------------
    @staticmethod
    def stamp(records: Sequence[Customer], default_sync_status: Optional[str] = None) -> List[Customer]:
        """Return copies with ``created_at`` (and optionally ``sync_status``) filled in.

        Existing values are never replaced.
        """
        now = now_timestamp()
        stamped: List[Customer] = []
        for c in records:
            changes = {}
            if not c.created_at:
                changes["created_at"] = now
            if default_sync_status and not c.sync_status:
                changes["sync_status"] = default_sync_status
            stamped.append(c.with_changes(**changes) if changes else c)
        return stamped

    def save(self, records: Sequence[Customer], *, default_sync_status: Optional[str] = None) -> bool:
        stamped = self.stamp(records, default_sync_status)
        try:
            blob = json.dumps([c.to_dict() for c in stamped], ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            LOG.error("Local store serialization failed: %s", exc)
            return False
        try:
            with self.connect() as conn:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, datetime('now'))
                        ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at;
                        """,
                        (self.key, blob),
                    )
        except sqlite3.Error as exc:
            LOG.error("Local store save failed: %s", exc)
            return False
        LOG.debug("Saved %d customer(s) under key %s", len(stamped), self.key)
        return True

    def load(self) -> List[Customer]:
        try:
            with self.connect() as conn:
                row = conn.execute("SELECT value FROM kv_store WHERE key=?", (self.key,)).fetchone()
        except sqlite3.Error as exc:
            LOG.error("Local store read failed: %s", exc)
            return []
        if row is None or not row[0]:
            return []
        try:
            data = json.loads(row[0])
        except (TypeError, ValueError) as exc:
            LOG.error("Local store snapshot is corrupt; treating as empty: %s", exc)
            return []
        if not isinstance(data, list):
            LOG.error("Local store snapshot is not a list (%s); treating as empty", type(data).__name__)
            return []

        customers: List[Customer] = []
        skipped = 0
        for entry in data:
            try:
                customers.append(Customer.from_dict(entry))
            except RecordValidationError as exc:
                skipped += 1
                LOG.debug("Skipping malformed stored record: %s", exc)
        if skipped:
            LOG.warning("Skipped %d malformed record(s) in local snapshot", skipped)
        customers.sort(key=lambda c: timestamp_sort_key(c.created_at), reverse=True)
        return customers

    def clear(self) -> bool:
        try:
            with self.connect() as conn:
                with conn:
                    conn.execute("DELETE FROM kv_store WHERE key=?", (self.key,))
        except sqlite3.Error as exc:
            LOG.error("Local store clear failed: %s", exc)
            return False
        LOG.info("Local snapshot cleared")
        return True
