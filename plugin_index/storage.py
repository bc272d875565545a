from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

try:
  from plugin_index.common import utc_now_iso
  from plugin_index.errors import PluginAlreadyExistsError, RegistryDecodeError
  from plugin_index.schemas import Identity, StoredPluginRecord, StoredPluginUpdate
except ModuleNotFoundError:
  from common import utc_now_iso  # type: ignore
  from errors import PluginAlreadyExistsError, RegistryDecodeError  # type: ignore
  from schemas import Identity, StoredPluginRecord, StoredPluginUpdate  # type: ignore


REQUIRED_PLUGIN_COLUMNS = ("id", "name", "owner", "url", "branch", "approved")


class PluginStorage:
  """Durable registry of discovered plugins and their approval flag.

  Records are inserted once and then only updated; nothing is ever deleted.
  Every statement runs under a single lock so a row is never observed half
  written.
  """

  BASE_SCHEMA_VERSION = 1
  LATEST_SCHEMA_VERSION = 2

  def __init__(self, db_path: Path | str) -> None:
    self._in_memory = str(db_path) == ":memory:"
    if not self._in_memory:
      db_path = Path(db_path)
      db_path.parent.mkdir(parents=True, exist_ok=True)
      try:
        os.chmod(db_path.parent, 0o700)
      except OSError:
        pass
    self._db_path = db_path
    self._lock = threading.Lock()
    self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
    self._conn.row_factory = sqlite3.Row
    with self._conn:
      if not self._in_memory:
        self._conn.execute("PRAGMA journal_mode=WAL")
      self._conn.execute("PRAGMA synchronous=NORMAL")
      self._conn.execute("PRAGMA temp_store=MEMORY")
    if not self._in_memory and Path(db_path).exists():
      try:
        os.chmod(db_path, 0o600)
      except OSError:
        pass
    self._migrate_schema()

  def _get_schema_version_locked(self) -> int:
    row = self._conn.execute("PRAGMA user_version").fetchone()
    if row is None:
      return 0
    try:
      return int(row[0])
    except (TypeError, ValueError, IndexError):
      return 0

  def _set_schema_version_locked(self, version: int) -> None:
    safe_version = max(0, int(version))
    self._conn.execute(f"PRAGMA user_version={safe_version}")

  def _create_schema_v1_locked(self) -> None:
    self._conn.execute(
      """
      CREATE TABLE IF NOT EXISTS plugins (
        id INTEGER PRIMARY KEY,
        approved INTEGER NOT NULL DEFAULT 0,
        name TEXT NOT NULL,
        owner TEXT NOT NULL,
        url TEXT NOT NULL
      )
      """
    )

  def _migrate_v1_to_v2_locked(self) -> None:
    # Default branch snapshot plus bookkeeping timestamps.
    self._conn.execute("ALTER TABLE plugins ADD COLUMN branch TEXT NOT NULL DEFAULT 'main'")
    self._conn.execute("ALTER TABLE plugins ADD COLUMN created_at TEXT NOT NULL DEFAULT ''")
    self._conn.execute("ALTER TABLE plugins ADD COLUMN updated_at TEXT NOT NULL DEFAULT ''")
    self._conn.execute(
      "CREATE INDEX IF NOT EXISTS idx_plugins_approved ON plugins(approved, id)"
    )

  def _migrate_schema(self) -> None:
    with self._lock, self._conn:
      current_version = self._get_schema_version_locked()
      if current_version == 0:
        self._create_schema_v1_locked()
        self._set_schema_version_locked(self.BASE_SCHEMA_VERSION)
        current_version = self.BASE_SCHEMA_VERSION

      if current_version > self.LATEST_SCHEMA_VERSION:
        raise RuntimeError(
          f"Database schema version {current_version} is newer than supported "
          f"{self.LATEST_SCHEMA_VERSION}. Update the application."
        )

      while current_version < self.LATEST_SCHEMA_VERSION:
        next_version = current_version + 1
        if next_version == 2:
          self._migrate_v1_to_v2_locked()
        else:
          raise RuntimeError(f"Unknown schema migration step: {current_version} -> {next_version}")
        self._set_schema_version_locked(next_version)
        current_version = next_version

  @staticmethod
  def _normalize_plugin_id(plugin_id: Any) -> int | None:
    try:
      value = int(plugin_id)
    except (TypeError, ValueError):
      return None
    return value if value > 0 else None

  @staticmethod
  def _decode_plugin_row(row: sqlite3.Row | dict[str, Any]) -> StoredPluginRecord:
    payload = dict(row)
    missing = [column for column in REQUIRED_PLUGIN_COLUMNS if payload.get(column) is None]
    if missing:
      raise RegistryDecodeError(f"Plugin row is missing columns: {', '.join(missing)}")
    try:
      owner = Identity.model_validate_json(str(payload["owner"]))
    except ValidationError as exc:
      raise RegistryDecodeError(f"Plugin {payload.get('id')} has a malformed owner column") from exc
    try:
      return StoredPluginRecord(
        id=int(payload["id"]),
        name=str(payload["name"]),
        owner=owner,
        url=str(payload["url"]),
        branch=str(payload["branch"] or "main"),
        approved=bool(int(payload["approved"])),
      )
    except (TypeError, ValueError, ValidationError) as exc:
      raise RegistryDecodeError(f"Plugin {payload.get('id')} has a malformed row") from exc

  @staticmethod
  def _encode_owner(owner: Identity) -> str:
    return owner.model_dump_json()

  def has(self, plugin_id: int) -> bool:
    safe_id = self._normalize_plugin_id(plugin_id)
    if safe_id is None:
      return False
    with self._lock:
      row = self._conn.execute("SELECT 1 FROM plugins WHERE id=?", (safe_id,)).fetchone()
    return row is not None

  def insert(self, record: StoredPluginRecord) -> None:
    safe_id = self._normalize_plugin_id(record.id)
    if safe_id is None:
      raise ValueError(f"plugin id must be positive, got {record.id!r}")
    now = utc_now_iso()
    try:
      with self._lock, self._conn:
        self._conn.execute(
          """
          INSERT INTO plugins(id, name, owner, url, branch, approved, created_at, updated_at)
          VALUES(?, ?, ?, ?, ?, ?, ?, ?)
          """,
          (
            safe_id,
            record.name,
            self._encode_owner(record.owner),
            record.url,
            record.branch or "main",
            int(record.approved),
            now,
            now,
          ),
        )
    except sqlite3.IntegrityError as exc:
      raise PluginAlreadyExistsError(safe_id) from exc

  def get(self, plugin_id: int) -> StoredPluginRecord | None:
    safe_id = self._normalize_plugin_id(plugin_id)
    if safe_id is None:
      return None
    with self._lock:
      row = self._conn.execute(
        "SELECT id, name, owner, url, branch, approved FROM plugins WHERE id=?",
        (safe_id,),
      ).fetchone()
    if row is None:
      return None
    return self._decode_plugin_row(row)

  def update(self, plugin_id: int, changes: StoredPluginUpdate) -> bool:
    safe_id = self._normalize_plugin_id(plugin_id)
    supplied = changes.supplied_fields()
    if safe_id is None or not supplied:
      return False

    columns: list[str] = []
    values: list[Any] = []
    for key in ("name", "owner", "url", "branch", "approved"):
      if key not in supplied:
        continue
      value = supplied[key]
      if key == "owner":
        value = self._encode_owner(value)
      elif key == "approved":
        value = int(bool(value))
      columns.append(f"{key}=?")
      values.append(value)
    columns.append("updated_at=?")
    values.append(utc_now_iso())
    values.append(safe_id)

    with self._lock, self._conn:
      cursor = self._conn.execute(
        f"UPDATE plugins SET {', '.join(columns)} WHERE id=?",
        tuple(values),
      )
    return cursor.rowcount > 0

  def is_approved(self, plugin_id: int) -> bool:
    safe_id = self._normalize_plugin_id(plugin_id)
    if safe_id is None:
      return False
    with self._lock:
      row = self._conn.execute("SELECT approved FROM plugins WHERE id=?", (safe_id,)).fetchone()
    if row is None:
      return False
    return bool(row["approved"])

  def set_approval(self, plugin_id: int, approved: bool) -> bool:
    safe_id = self._normalize_plugin_id(plugin_id)
    if safe_id is None:
      return False
    with self._lock, self._conn:
      cursor = self._conn.execute(
        "UPDATE plugins SET approved=?, updated_at=? WHERE id=?",
        (int(bool(approved)), utc_now_iso(), safe_id),
      )
    return cursor.rowcount > 0

  def list_records(self, *, approved: bool | None = None) -> list[StoredPluginRecord]:
    query = "SELECT id, name, owner, url, branch, approved FROM plugins"
    params: tuple[Any, ...] = ()
    if approved is not None:
      query += " WHERE approved=?"
      params = (int(bool(approved)),)
    query += " ORDER BY id ASC"
    with self._lock:
      rows = self._conn.execute(query, params).fetchall()
    return [self._decode_plugin_row(row) for row in rows]

  def count_records(self) -> dict[str, int]:
    with self._lock:
      row = self._conn.execute(
        "SELECT COUNT(*) AS total, COALESCE(SUM(approved), 0) AS approved FROM plugins"
      ).fetchone()
    total = int(row["total"] or 0) if row is not None else 0
    approved = int(row["approved"] or 0) if row is not None else 0
    return {"total": total, "approved": approved, "unapproved": total - approved}

  def close(self) -> None:
    with self._lock:
      self._conn.close()
