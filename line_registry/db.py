from __future__ import annotations

import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from monitoring.config import MonitoringConfig


SCHEMA_VERSION = 2

# Stays under SQLITE_MAX_VARIABLE_NUMBER on older SQLite builds.
_IN_CHUNK = 500

HEALTH_COLUMNS = (
    "health_status",
    "health_last_checked_ts",
    "health_consecutive_failures",
    "health_last_healthy_ts",
    "health_send_email_on_next_down",
    "health_last_email_sent_ts",
)

CONTACT_FIELDS = (
    "list_id",
    "first_name",
    "last_name",
    "phone",
    "email",
    "alt_phone_1",
    "alt_phone_2",
    "alt_phone_3",
    "alt_email_1",
    "alt_email_2",
    "alt_email_3",
)


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def ensure_schema(settings: MonitoringConfig) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        _apply_v2(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    if cur == 1:
        _apply_v2(conn)
        conn.execute("UPDATE schema_meta SET v=? WHERE k='version'", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return any(str(r["name"]) == column for r in rows)


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tenants (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_keys (
          id TEXT PRIMARY KEY,
          tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          token_hash TEXT NOT NULL,
          created_at_ts REAL NOT NULL,
          revoked_at_ts REAL,
          UNIQUE(token_hash)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS lines (
          id TEXT PRIMARY KEY,
          tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
          server_url TEXT,
          guid TEXT,
          phone TEXT,
          email TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          provisioning_status TEXT NOT NULL DEFAULT 'provisioning',
          health_status TEXT,
          health_last_checked_ts REAL,
          health_consecutive_failures INTEGER NOT NULL DEFAULT 0,
          health_last_healthy_ts REAL,
          health_send_email_on_next_down INTEGER,
          health_last_email_sent_ts REAL,
          health_version INTEGER NOT NULL DEFAULT 0,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_lines_tenant ON lines(tenant_id, created_at_ts);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS contacts (
          id TEXT PRIMARY KEY,
          tenant_id TEXT NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
          list_id TEXT,
          first_name TEXT,
          last_name TEXT,
          phone TEXT,
          email TEXT,
          availability_status TEXT NOT NULL DEFAULT 'unset',
          availability_checked_ts REAL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_tenant_list ON contacts(tenant_id, list_id);")


def _apply_v2(conn: sqlite3.Connection) -> None:
    # v2: alternate addresses for availability fallback.
    for col in ("alt_phone_1", "alt_phone_2", "alt_phone_3", "alt_email_1", "alt_email_2", "alt_email_3"):
        if not _column_exists(conn, "contacts", col):
            conn.execute(f"ALTER TABLE contacts ADD COLUMN {col} TEXT;")


@dataclass(frozen=True)
class AuthedTenant:
    tenant_id: str
    api_key_id: str


def db_now_ts() -> float:
    return _utc_ts()


# -----------------
# Tenants / API keys
# -----------------
def create_tenant(settings: MonitoringConfig, *, name: str) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        tid = _uuid()
        now = _utc_ts()
        conn.execute(
            "INSERT INTO tenants (id, name, created_at_ts, updated_at_ts) VALUES (?, ?, ?, ?)",
            (tid, name.strip(), now, now),
        )
        return {"id": tid, "name": name.strip(), "created_at_ts": now}
    finally:
        conn.close()


def tenant_exists(settings: MonitoringConfig, *, tenant_id: str) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT 1 FROM tenants WHERE id=?", (tenant_id,)).fetchone()
        return row is not None
    finally:
        conn.close()


def create_api_key(settings: MonitoringConfig, *, tenant_id: str, name: str, token_hash: str) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        kid = _uuid()
        now = _utc_ts()
        conn.execute(
            "INSERT INTO api_keys (id, tenant_id, name, token_hash, created_at_ts) VALUES (?, ?, ?, ?, ?)",
            (kid, tenant_id, name.strip(), token_hash, now),
        )
        return {"id": kid, "tenant_id": tenant_id, "name": name.strip(), "created_at_ts": now}
    finally:
        conn.close()


def get_api_key_by_hash(settings: MonitoringConfig, *, token_hash: str) -> AuthedTenant | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT id, tenant_id FROM api_keys WHERE token_hash=? AND revoked_at_ts IS NULL",
            (token_hash,),
        ).fetchone()
        if not row:
            return None
        return AuthedTenant(tenant_id=str(row["tenant_id"]), api_key_id=str(row["id"]))
    finally:
        conn.close()


# -----------------
# Lines
# -----------------
def insert_line(
    settings: MonitoringConfig,
    *,
    tenant_id: str,
    server_url: str | None,
    guid: str | None,
    phone: str | None,
    email: str | None,
    is_active: bool = True,
    provisioning_status: str = "active",
) -> dict[str, Any]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        lid = _uuid()
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO lines (
              id, tenant_id, server_url, guid, phone, email, is_active, provisioning_status,
              created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (lid, tenant_id, server_url, guid, phone, email, 1 if is_active else 0, provisioning_status, now, now),
        )
        row = conn.execute("SELECT * FROM lines WHERE id=?", (lid,)).fetchone()
        return dict(row)
    finally:
        conn.close()


def list_lines(
    settings: MonitoringConfig, *, tenant_id: str | None = None, active_only: bool = False
) -> list[dict[str, Any]]:
    where: list[str] = []
    params: list[Any] = []
    if tenant_id is not None:
        where.append("tenant_id=?")
        params.append(tenant_id)
    if active_only:
        where.append("is_active=1 AND provisioning_status='active'")
    sql = "SELECT * FROM lines"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at_ts ASC, rowid ASC"

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        return [dict(r) for r in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()


def get_line(settings: MonitoringConfig, *, line_id: str, tenant_id: str | None = None) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        if tenant_id is None:
            row = conn.execute("SELECT * FROM lines WHERE id=?", (line_id,)).fetchone()
        else:
            row = conn.execute("SELECT * FROM lines WHERE id=? AND tenant_id=?", (line_id, tenant_id)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def first_active_line(settings: MonitoringConfig, *, tenant_id: str) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            """
            SELECT * FROM lines
            WHERE tenant_id=? AND is_active=1 AND provisioning_status='active'
              AND COALESCE(TRIM(server_url), '') <> '' AND COALESCE(TRIM(guid), '') <> ''
            ORDER BY created_at_ts ASC, rowid ASC
            LIMIT 1
            """,
            (tenant_id,),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def update_line_server_url(settings: MonitoringConfig, *, tenant_id: str, line_id: str, server_url: str) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            "UPDATE lines SET server_url=?, updated_at_ts=? WHERE id=? AND tenant_id=?",
            (server_url, _utc_ts(), line_id, tenant_id),
        )
        return cur.rowcount > 0
    finally:
        conn.close()


def update_line_health(
    settings: MonitoringConfig, *, line_id: str, expected_version: int, health: dict[str, Any]
) -> bool:
    """
    Compare-and-swap write of the health columns.

    Returns False when ``health_version`` no longer matches ``expected_version``.
    """
    unknown = set(health) - set(HEALTH_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown health columns: {sorted(unknown)}")
    cols = [c for c in HEALTH_COLUMNS if c in health]
    assignments = ", ".join(f"{c}=?" for c in cols)
    params: list[Any] = [health[c] for c in cols]

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            f"""
            UPDATE lines
            SET {assignments}, health_version=health_version+1, updated_at_ts=?
            WHERE id=? AND health_version=?
            """,
            (*params, _utc_ts(), line_id, int(expected_version)),
        )
        return cur.rowcount == 1
    finally:
        conn.close()


def mark_alert_sent(settings: MonitoringConfig, *, line_id: str, sent_at_ts: float) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            """
            UPDATE lines
            SET health_last_email_sent_ts=?, health_version=health_version+1, updated_at_ts=?
            WHERE id=?
            """,
            (float(sent_at_ts), _utc_ts(), line_id),
        )
        return cur.rowcount > 0
    finally:
        conn.close()


# -----------------
# Contacts
# -----------------
def insert_contact(settings: MonitoringConfig, *, tenant_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    values = {k: fields.get(k) for k in CONTACT_FIELDS}
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cid = _uuid()
        now = _utc_ts()
        cols = ", ".join(CONTACT_FIELDS)
        marks = ", ".join("?" for _ in CONTACT_FIELDS)
        conn.execute(
            f"INSERT INTO contacts (id, tenant_id, {cols}, created_at_ts, updated_at_ts) VALUES (?, ?, {marks}, ?, ?)",
            (cid, tenant_id, *[values[k] for k in CONTACT_FIELDS], now, now),
        )
        row = conn.execute("SELECT * FROM contacts WHERE id=?", (cid,)).fetchone()
        return dict(row)
    finally:
        conn.close()


def get_contact(settings: MonitoringConfig, *, tenant_id: str, contact_id: str) -> dict[str, Any] | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT * FROM contacts WHERE id=? AND tenant_id=?",
            (contact_id, tenant_id),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def _chunks(ids: list[str]) -> list[list[str]]:
    return [ids[i : i + _IN_CHUNK] for i in range(0, len(ids), _IN_CHUNK)]


def list_contacts(
    settings: MonitoringConfig,
    *,
    tenant_id: str,
    contact_ids: Iterable[str] | None = None,
    list_id: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Contacts of a tenant in insertion order. No ``limit`` means every match."""
    base = ["tenant_id=?"]
    base_params: list[Any] = [tenant_id]
    if list_id is not None:
        base.append("list_id=?")
        base_params.append(list_id)

    queries: list[tuple[list[str], list[Any]]] = []
    if contact_ids is None:
        queries.append((base, base_params))
    else:
        ids = list(dict.fromkeys(str(c) for c in contact_ids))
        if not ids:
            return []
        for chunk in _chunks(ids):
            where = base + [f"id IN ({', '.join('?' for _ in chunk)})"]
            queries.append((where, base_params + chunk))

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows: list[dict[str, Any]] = []
        for where, params in queries:
            cur = conn.execute(
                f"SELECT *, rowid AS _rowid FROM contacts WHERE {' AND '.join(where)}",
                params,
            )
            rows.extend(dict(r) for r in cur.fetchall())
    finally:
        conn.close()

    rows.sort(key=lambda r: (r["created_at_ts"], r["_rowid"]))
    if limit is not None:
        rows = rows[: max(0, int(limit))]
    for r in rows:
        r.pop("_rowid", None)
    return rows



def update_contact_availability(
    settings: MonitoringConfig, *, contact_id: str, status: str, checked_at_ts: float | None
) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(
            "UPDATE contacts SET availability_status=?, availability_checked_ts=?, updated_at_ts=? WHERE id=?",
            (status, checked_at_ts, _utc_ts(), contact_id),
        )
        return cur.rowcount > 0
    finally:
        conn.close()


def mark_contacts_checking(settings: MonitoringConfig, *, contact_ids: list[str]) -> int:
    ids = [str(c) for c in contact_ids]
    if not ids:
        return 0
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        now = _utc_ts()
        updated = 0
        conn.execute("BEGIN IMMEDIATE;")
        try:
            for chunk in _chunks(ids):
                cur = conn.execute(
                    f"UPDATE contacts SET availability_status='checking', updated_at_ts=? WHERE id IN ({', '.join('?' for _ in chunk)})",
                    (now, *chunk),
                )
                updated += int(cur.rowcount)
            conn.execute("COMMIT;")
        except sqlite3.Error:
            conn.execute("ROLLBACK;")
            raise
        return updated
    finally:
        conn.close()

