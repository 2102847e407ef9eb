import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from agent_broker.domain.audit import AuditLogEntry
from agent_broker.domain.credentials import CredentialAssignment, CredentialRecord
from agent_broker.domain.grants import CapabilityGrant, GitHubInstallation, GitHubRepository
from agent_broker.domain.plugins import (
    DeclaredCapability,
    DisclosureAck,
    PluginEvent,
    PluginRecord,
    PluginVersionRecord,
)

# Declared capabilities with no scope are stored as '' so the unique index holds.
_NO_SCOPE = ""


class SqliteBrokerStore:
    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agents (
                    agent_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    credential_id TEXT PRIMARY KEY,
                    alias TEXT NOT NULL UNIQUE,
                    provider TEXT NOT NULL,
                    secret TEXT NOT NULL,
                    allowed_hosts_json TEXT NOT NULL,
                    allowed_in_header INTEGER NOT NULL DEFAULT 1,
                    allowed_in_query INTEGER NOT NULL DEFAULT 0,
                    allowed_in_body INTEGER NOT NULL DEFAULT 0,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_credentials (
                    credential_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (credential_id, agent_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    result TEXT NOT NULL,
                    capability TEXT NOT NULL,
                    resource_id TEXT,
                    metadata_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_logs_resource ON audit_logs (resource_id, created_at)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS plugins (
                    plugin_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    source_kind TEXT NOT NULL,
                    source_ref TEXT,
                    trust_level TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 0,
                    current_version TEXT NOT NULL,
                    current_checksum TEXT NOT NULL,
                    install_path TEXT NOT NULL,
                    manifest_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS plugin_versions (
                    plugin_id TEXT NOT NULL,
                    version TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    install_path TEXT NOT NULL,
                    manifest_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (plugin_id, version)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS plugin_disclosure_acks (
                    plugin_id TEXT NOT NULL,
                    permission TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    acknowledged INTEGER NOT NULL DEFAULT 0,
                    acknowledged_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_plugin_disclosure_key
                ON plugin_disclosure_acks (plugin_id, permission, scope)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS plugin_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    plugin_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    detail_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_plugin_events_plugin ON plugin_events (plugin_id, created_at, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS github_installations (
                    installation_id INTEGER PRIMARY KEY,
                    account_login TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS github_repos (
                    repo_id INTEGER PRIMARY KEY,
                    installation_id INTEGER NOT NULL,
                    full_name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_repo_capabilities (
                    agent_id TEXT NOT NULL,
                    repo_id INTEGER NOT NULL,
                    capabilities_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (agent_id, repo_id)
                )
                """
            )
            # Lightweight migration for DBs created before plugin load tracking existed.
            plugin_cols = {c["name"] for c in conn.execute("PRAGMA table_info(plugins)").fetchall()}
            if "last_load_error" not in plugin_cols:
                conn.execute("ALTER TABLE plugins ADD COLUMN last_load_error TEXT")
            if "last_loaded_at" not in plugin_cols:
                conn.execute("ALTER TABLE plugins ADD COLUMN last_loaded_at TEXT")

    # -- agents ---------------------------------------------------------------

    def ensure_agent(self, agent_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO agents (agent_id, created_at) VALUES (?, ?)",
                (agent_id, _utc_now()),
            )

    # -- credentials ----------------------------------------------------------

    def insert_credential(
        self,
        alias: str,
        provider: str,
        secret: str,
        allowed_hosts: Sequence[str],
        allowed_in_header: bool,
        allowed_in_query: bool,
        allowed_in_body: bool,
        enabled: bool,
    ) -> CredentialRecord:
        credential_id = str(uuid.uuid4())
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO credentials (
                    credential_id, alias, provider, secret, allowed_hosts_json,
                    allowed_in_header, allowed_in_query, allowed_in_body, enabled, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    credential_id,
                    alias,
                    provider,
                    secret,
                    json.dumps(list(allowed_hosts)),
                    _flag(allowed_in_header),
                    _flag(allowed_in_query),
                    _flag(allowed_in_body),
                    _flag(enabled),
                    now,
                    now,
                ),
            )
        return self.get_credential(credential_id)  # type: ignore[return-value]

    def update_credential(self, credential_id: str, fields: Dict[str, Any]) -> Optional[CredentialRecord]:
        columns = {
            "alias": lambda v: v,
            "provider": lambda v: v,
            "secret": lambda v: v,
            "allowed_hosts": lambda v: json.dumps(list(v)),
            "allowed_in_header": _flag,
            "allowed_in_query": _flag,
            "allowed_in_body": _flag,
            "enabled": _flag,
        }
        assignments: List[str] = []
        params: List[Any] = []
        for key, value in fields.items():
            if key not in columns:
                raise KeyError(f"Unknown credential field: {key}")
            column = "allowed_hosts_json" if key == "allowed_hosts" else key
            assignments.append(f"{column} = ?")
            params.append(columns[key](value))
        if assignments:
            assignments.append("updated_at = ?")
            params.append(_utc_now())
            params.append(credential_id)
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE credentials SET {', '.join(assignments)} WHERE credential_id = ?",
                    tuple(params),
                )
        return self.get_credential(credential_id)

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE credential_id = ?", (credential_id,)).fetchone()
        if not row:
            return None
        return _row_to_credential(row)

    def get_credential_by_alias(self, alias: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE alias = ?", (alias,)).fetchone()
        if not row:
            return None
        return _row_to_credential(row)

    def get_credential_secret(self, credential_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT secret FROM credentials WHERE credential_id = ?", (credential_id,)).fetchone()
        if not row:
            return None
        return str(row["secret"])

    def list_credentials(self, provider: Optional[str] = None, enabled: Optional[bool] = None) -> List[CredentialRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        if enabled is not None:
            clauses.append("enabled = ?")
            params.append(_flag(enabled))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM credentials {where} ORDER BY alias ASC", tuple(params)).fetchall()
        return [_row_to_credential(r) for r in rows]

    def list_credentials_for_agent(self, agent_id: str, provider: Optional[str] = None) -> List[CredentialRecord]:
        sql = """
            SELECT c.* FROM credentials c
            JOIN agent_credentials ac ON ac.credential_id = c.credential_id
            WHERE ac.agent_id = ? AND ac.enabled = 1 AND c.enabled = 1
        """
        params: List[Any] = [agent_id]
        if provider:
            sql += " AND c.provider = ?"
            params.append(provider)
        sql += " ORDER BY c.alias ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_credential(r) for r in rows]

    def find_usable_credential(self, agent_id: str, alias: str) -> Optional[Tuple[CredentialRecord, str]]:
        """Return (record, stored secret) when enabled and assigned to the agent."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT c.* FROM credentials c
                JOIN agent_credentials ac ON ac.credential_id = c.credential_id
                WHERE c.alias = ? AND ac.agent_id = ? AND ac.enabled = 1 AND c.enabled = 1
                """,
                (alias, agent_id),
            ).fetchone()
        if not row:
            return None
        return _row_to_credential(row), str(row["secret"])

    def count_credential_assignments(self, credential_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM agent_credentials WHERE credential_id = ? AND enabled = 1",
                (credential_id,),
            ).fetchone()
        return int(row["c"])

    def delete_credential(self, credential_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM agent_credentials WHERE credential_id = ?", (credential_id,))
            cur = conn.execute("DELETE FROM credentials WHERE credential_id = ?", (credential_id,))
        return cur.rowcount > 0

    def set_credential_assignment(self, credential_id: str, agent_id: str, enabled: bool) -> CredentialAssignment:
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_credentials (credential_id, agent_id, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (credential_id, agent_id)
                DO UPDATE SET enabled = excluded.enabled, updated_at = excluded.updated_at
                """,
                (credential_id, agent_id, _flag(enabled), now, now),
            )
            row = conn.execute(
                "SELECT * FROM agent_credentials WHERE credential_id = ? AND agent_id = ?",
                (credential_id, agent_id),
            ).fetchone()
        return _row_to_assignment(row)

    def list_credential_assignments(self, credential_id: str) -> List[CredentialAssignment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM agent_credentials WHERE credential_id = ? ORDER BY agent_id ASC",
                (credential_id,),
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    # -- audit ----------------------------------------------------------------

    def append_audit_log(
        self,
        event_type: str,
        agent_id: str,
        result: str,
        capability: str,
        metadata: Dict[str, Any],
        resource_id: Optional[str] = None,
    ) -> AuditLogEntry:
        now = _utc_now()
        metadata_json = json.dumps(metadata, ensure_ascii=True, sort_keys=True, default=str)
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO audit_logs (event_type, agent_id, result, capability, resource_id, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (event_type, agent_id, result, capability, resource_id, metadata_json, now),
            )
            entry_id = int(cur.lastrowid)
        return AuditLogEntry(
            entry_id=entry_id,
            event_type=event_type,
            agent_id=agent_id,
            result=result,
            capability=capability,
            resource_id=resource_id,
            metadata=json.loads(metadata_json),
            created_at=datetime.fromisoformat(now),
        )

    def list_audit_logs(
        self,
        agent_id: Optional[str] = None,
        event_types: Optional[Iterable[str]] = None,
        resource_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        types = [t for t in (event_types or []) if t]
        if types:
            clauses.append(f"event_type IN ({', '.join('?' for _ in types)})")
            params.extend(types)
        if resource_id:
            clauses.append("resource_id = ?")
            params.append(resource_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since.astimezone(timezone.utc).isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, limit))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs {where} ORDER BY created_at DESC, id DESC LIMIT ?",
                tuple(params),
            ).fetchall()
        return [_row_to_audit(r) for r in rows]

    # -- plugins --------------------------------------------------------------

    def upsert_plugin(
        self,
        plugin_id: str,
        name: str,
        source_kind: str,
        source_ref: Optional[str],
        trust_level: str,
        current_version: str,
        current_checksum: str,
        install_path: str,
        manifest_json: str,
        enabled: Optional[bool] = None,
    ) -> PluginRecord:
        """Insert or update a plugin row; ``enabled=None`` keeps the stored flag."""
        now = _utc_now()
        with self._connect() as conn:
            existing = conn.execute("SELECT enabled FROM plugins WHERE plugin_id = ?", (plugin_id,)).fetchone()
            if existing:
                keep = bool(existing["enabled"]) if enabled is None else enabled
                conn.execute(
                    """
                    UPDATE plugins
                    SET name = ?, source_kind = ?, source_ref = ?, trust_level = ?, enabled = ?,
                        current_version = ?, current_checksum = ?, install_path = ?, manifest_json = ?, updated_at = ?
                    WHERE plugin_id = ?
                    """,
                    (
                        name,
                        source_kind,
                        source_ref,
                        trust_level,
                        _flag(keep),
                        current_version,
                        current_checksum,
                        install_path,
                        manifest_json,
                        now,
                        plugin_id,
                    ),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO plugins (
                        plugin_id, name, source_kind, source_ref, trust_level, enabled,
                        current_version, current_checksum, install_path, manifest_json, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        plugin_id,
                        name,
                        source_kind,
                        source_ref,
                        trust_level,
                        _flag(bool(enabled)),
                        current_version,
                        current_checksum,
                        install_path,
                        manifest_json,
                        now,
                        now,
                    ),
                )
        return self.get_plugin(plugin_id)  # type: ignore[return-value]

    def get_plugin(self, plugin_id: str) -> Optional[PluginRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM plugins WHERE plugin_id = ?", (plugin_id,)).fetchone()
        if not row:
            return None
        return _row_to_plugin(row)

    def list_plugins(self) -> List[PluginRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM plugins ORDER BY plugin_id ASC").fetchall()
        return [_row_to_plugin(r) for r in rows]

    def set_plugin_enabled(self, plugin_id: str, enabled: bool) -> Optional[PluginRecord]:
        with self._connect() as conn:
            conn.execute(
                "UPDATE plugins SET enabled = ?, updated_at = ? WHERE plugin_id = ?",
                (_flag(enabled), _utc_now(), plugin_id),
            )
        return self.get_plugin(plugin_id)

    def set_plugin_load_state(self, plugin_id: str, error: Optional[str], loaded_at: Optional[datetime]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE plugins SET last_load_error = ?, last_loaded_at = ? WHERE plugin_id = ?",
                (error, loaded_at.isoformat() if loaded_at else None, plugin_id),
            )

    def delete_plugin(self, plugin_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM plugin_versions WHERE plugin_id = ?", (plugin_id,))
            conn.execute("DELETE FROM plugin_disclosure_acks WHERE plugin_id = ?", (plugin_id,))
            conn.execute("DELETE FROM plugin_events WHERE plugin_id = ?", (plugin_id,))
            cur = conn.execute("DELETE FROM plugins WHERE plugin_id = ?", (plugin_id,))
        return cur.rowcount > 0

    def upsert_plugin_version(
        self,
        plugin_id: str,
        version: str,
        checksum: str,
        install_path: str,
        manifest_json: str,
    ) -> PluginVersionRecord:
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO plugin_versions (plugin_id, version, checksum, install_path, manifest_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (plugin_id, version)
                DO UPDATE SET checksum = excluded.checksum, install_path = excluded.install_path,
                              manifest_json = excluded.manifest_json
                """,
                (plugin_id, version, checksum, install_path, manifest_json, now),
            )
            row = conn.execute(
                "SELECT * FROM plugin_versions WHERE plugin_id = ? AND version = ?",
                (plugin_id, version),
            ).fetchone()
        return _row_to_plugin_version(row)

    def list_plugin_versions(self, plugin_id: str) -> List[PluginVersionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM plugin_versions WHERE plugin_id = ? ORDER BY created_at DESC",
                (plugin_id,),
            ).fetchall()
        return [_row_to_plugin_version(r) for r in rows]

    def insert_missing_disclosures(self, plugin_id: str, capabilities: Iterable[DeclaredCapability]) -> int:
        """Insert an unacknowledged row per capability that has none. Existing rows are untouched."""
        now = _utc_now()
        inserted = 0
        with self._connect() as conn:
            for cap in capabilities:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO plugin_disclosure_acks
                        (plugin_id, permission, scope, acknowledged, acknowledged_at, created_at)
                    VALUES (?, ?, ?, 0, NULL, ?)
                    """,
                    (plugin_id, cap.permission, cap.scope or _NO_SCOPE, now),
                )
                inserted += cur.rowcount
        return inserted

    def acknowledge_disclosures(self, plugin_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE plugin_disclosure_acks
                SET acknowledged = 1, acknowledged_at = ?
                WHERE plugin_id = ? AND acknowledged = 0
                """,
                (_utc_now(), plugin_id),
            )
        return cur.rowcount

    def list_disclosure_acks(self, plugin_id: str) -> List[DisclosureAck]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM plugin_disclosure_acks WHERE plugin_id = ? ORDER BY created_at ASC, permission, scope",
                (plugin_id,),
            ).fetchall()
        return [_row_to_disclosure(r) for r in rows]

    def append_plugin_event(self, plugin_id: str, event_type: str, status: str, detail: Dict[str, Any]) -> PluginEvent:
        now = _utc_now()
        detail_json = json.dumps(detail, ensure_ascii=True, sort_keys=True, default=str)
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO plugin_events (plugin_id, event_type, status, detail_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (plugin_id, event_type, status, detail_json, now),
            )
            event_id = int(cur.lastrowid)
        return PluginEvent(
            event_id=event_id,
            plugin_id=plugin_id,
            event_type=event_type,
            status=status,
            detail=json.loads(detail_json),
            created_at=datetime.fromisoformat(now),
        )

    def list_plugin_events(
        self,
        plugin_id: str,
        limit: int = 25,
        before: Optional[Tuple[str, int]] = None,
    ) -> List[PluginEvent]:
        """Newest first. ``before`` is an exclusive ``(created_at, id)`` cursor."""
        params: List[Any] = [plugin_id]
        cursor_clause = ""
        if before is not None:
            cursor_clause = "AND (created_at < ? OR (created_at = ? AND id < ?))"
            params.extend([before[0], before[0], int(before[1])])
        params.append(max(1, limit))
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM plugin_events
                WHERE plugin_id = ? {cursor_clause}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return [_row_to_plugin_event(r) for r in rows]

    def count_plugin_events(self, plugin_id: str, event_type: Optional[str] = None, status: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) AS c FROM plugin_events WHERE plugin_id = ?"
        params: List[Any] = [plugin_id]
        if event_type:
            sql += " AND event_type = ?"
            params.append(event_type)
        if status:
            sql += " AND status = ?"
            params.append(status)
        with self._connect() as conn:
            row = conn.execute(sql, tuple(params)).fetchone()
        return int(row["c"])

    # -- github grants --------------------------------------------------------

    def upsert_github_installation(self, installation_id: int, account_login: str) -> GitHubInstallation:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO github_installations (installation_id, account_login, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT (installation_id) DO UPDATE SET account_login = excluded.account_login
                """,
                (int(installation_id), account_login, _utc_now()),
            )
            row = conn.execute(
                "SELECT * FROM github_installations WHERE installation_id = ?", (int(installation_id),)
            ).fetchone()
        return GitHubInstallation(
            installation_id=int(row["installation_id"]),
            account_login=row["account_login"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_github_installation(self, installation_id: int) -> Optional[GitHubInstallation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM github_installations WHERE installation_id = ?", (int(installation_id),)
            ).fetchone()
        if not row:
            return None
        return GitHubInstallation(
            installation_id=int(row["installation_id"]),
            account_login=row["account_login"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def upsert_github_repo(self, repo_id: int, installation_id: int, full_name: str) -> GitHubRepository:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO github_repos (repo_id, installation_id, full_name, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (repo_id)
                DO UPDATE SET installation_id = excluded.installation_id, full_name = excluded.full_name
                """,
                (int(repo_id), int(installation_id), full_name, _utc_now()),
            )
        return self.get_github_repo(repo_id)  # type: ignore[return-value]

    def get_github_repo(self, repo_id: int) -> Optional[GitHubRepository]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM github_repos WHERE repo_id = ?", (int(repo_id),)).fetchone()
        if not row:
            return None
        return _row_to_repo(row)

    def get_github_repo_by_name(self, full_name: str) -> Optional[GitHubRepository]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM github_repos WHERE lower(full_name) = lower(?)", (full_name,)
            ).fetchone()
        if not row:
            return None
        return _row_to_repo(row)

    def list_github_repos(self) -> List[GitHubRepository]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM github_repos ORDER BY full_name ASC").fetchall()
        return [_row_to_repo(r) for r in rows]

    def set_agent_repo_capabilities(self, agent_id: str, repo_id: int, capabilities: Sequence[str]) -> CapabilityGrant:
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_repo_capabilities (agent_id, repo_id, capabilities_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (agent_id, repo_id)
                DO UPDATE SET capabilities_json = excluded.capabilities_json, updated_at = excluded.updated_at
                """,
                (agent_id, int(repo_id), json.dumps(list(capabilities)), now),
            )
        return self.get_agent_repo_capabilities(agent_id, repo_id)  # type: ignore[return-value]

    def get_agent_repo_capabilities(self, agent_id: str, repo_id: int) -> Optional[CapabilityGrant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_repo_capabilities WHERE agent_id = ? AND repo_id = ?",
                (agent_id, int(repo_id)),
            ).fetchone()
        if not row:
            return None
        return _row_to_grant(row)

    def list_agent_repo_capabilities(self, agent_id: str) -> List[CapabilityGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM agent_repo_capabilities WHERE agent_id = ? ORDER BY repo_id ASC",
                (agent_id,),
            ).fetchall()
        return [_row_to_grant(r) for r in rows]


def _flag(value: Any) -> int:
    return 1 if value else 0


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


def _load_json(raw: Optional[str], default: Any) -> Any:
    try:
        value = json.loads(raw or "")
    except ValueError:
        return default
    return value if isinstance(value, type(default)) else default


def _row_to_credential(row: sqlite3.Row) -> CredentialRecord:
    return CredentialRecord(
        credential_id=row["credential_id"],
        alias=row["alias"],
        provider=row["provider"],
        allowed_hosts=[str(h) for h in _load_json(row["allowed_hosts_json"], [])],
        allowed_in_header=bool(row["allowed_in_header"]),
        allowed_in_query=bool(row["allowed_in_query"]),
        allowed_in_body=bool(row["allowed_in_body"]),
        enabled=bool(row["enabled"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_assignment(row: sqlite3.Row) -> CredentialAssignment:
    return CredentialAssignment(
        credential_id=row["credential_id"],
        agent_id=row["agent_id"],
        enabled=bool(row["enabled"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_audit(row: sqlite3.Row) -> AuditLogEntry:
    return AuditLogEntry(
        entry_id=int(row["id"]),
        event_type=row["event_type"],
        agent_id=row["agent_id"],
        result=row["result"],
        capability=row["capability"],
        resource_id=row["resource_id"],
        metadata=_load_json(row["metadata_json"], {}),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_plugin(row: sqlite3.Row) -> PluginRecord:
    return PluginRecord(
        plugin_id=row["plugin_id"],
        name=row["name"],
        source_kind=row["source_kind"],
        source_ref=row["source_ref"],
        trust_level=row["trust_level"],
        enabled=bool(row["enabled"]),
        current_version=row["current_version"],
        current_checksum=row["current_checksum"],
        install_path=row["install_path"],
        manifest_json=row["manifest_json"],
        last_load_error=row["last_load_error"],
        last_loaded_at=_parse_dt(row["last_loaded_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_plugin_version(row: sqlite3.Row) -> PluginVersionRecord:
    return PluginVersionRecord(
        plugin_id=row["plugin_id"],
        version=row["version"],
        checksum=row["checksum"],
        install_path=row["install_path"],
        manifest_json=row["manifest_json"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_disclosure(row: sqlite3.Row) -> DisclosureAck:
    return DisclosureAck(
        plugin_id=row["plugin_id"],
        permission=row["permission"],
        scope=row["scope"] or None,
        acknowledged=bool(row["acknowledged"]),
        acknowledged_at=_parse_dt(row["acknowledged_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_plugin_event(row: sqlite3.Row) -> PluginEvent:
    return PluginEvent(
        event_id=int(row["id"]),
        plugin_id=row["plugin_id"],
        event_type=row["event_type"],
        status=row["status"],
        detail=_load_json(row["detail_json"], {}),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_repo(row: sqlite3.Row) -> GitHubRepository:
    return GitHubRepository(
        repo_id=int(row["repo_id"]),
        installation_id=int(row["installation_id"]),
        full_name=row["full_name"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_grant(row: sqlite3.Row) -> CapabilityGrant:
    return CapabilityGrant(
        agent_id=row["agent_id"],
        repo_id=int(row["repo_id"]),
        capabilities=[str(c) for c in _load_json(row["capabilities_json"], [])],
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
