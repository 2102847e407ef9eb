import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from agent_broker.domain.audit import (
    EVENT_CREDENTIAL_REQUEST_DENIED,
    EVENT_CREDENTIAL_REQUEST_FAIL,
    EVENT_CREDENTIAL_REQUEST_SUCCESS,
)
from agent_broker.domain.credentials import (
    USAGE_STATUS_DENIED,
    USAGE_STATUS_FAIL,
    USAGE_STATUS_SUCCESS,
    CredentialAssignment,
    CredentialForUse,
    CredentialRecord,
    CredentialUsageSummary,
)
from agent_broker.errors import ConflictError, NotFound, PreconditionFailed, ValidationError
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.security.encryption import SecretCipher
from agent_broker.services.host_policy import normalize_host, validate_host_pattern
from agent_broker.util import REDACTED_SECRET

logger = logging.getLogger(__name__)

ALIAS_RE = re.compile(r"^[a-z0-9][a-z0-9_]{1,63}$")
# Values an admin form echoes back for an untouched secret field.
KEEP_SECRET_MARKERS = {REDACTED_SECRET, "••••••••"}

_USAGE_EVENT_TO_STATUS = {
    EVENT_CREDENTIAL_REQUEST_SUCCESS: USAGE_STATUS_SUCCESS,
    EVENT_CREDENTIAL_REQUEST_FAIL: USAGE_STATUS_FAIL,
    EVENT_CREDENTIAL_REQUEST_DENIED: USAGE_STATUS_DENIED,
}
_USAGE_SCAN_LIMIT = 100_000


def validate_alias(alias: str) -> str:
    value = (alias or "").strip()
    if not ALIAS_RE.match(value):
        raise ValidationError(
            "alias must be 2-64 chars of lowercase letters, digits, or underscores, starting with a letter or digit."
        )
    return value


def normalize_allowed_hosts(patterns: Iterable[str]) -> List[str]:
    if isinstance(patterns, str):
        raise ValidationError("allowed_hosts must be a list of host patterns.")
    hosts: List[str] = []
    errors: List[str] = []
    for raw in patterns or []:
        errs = validate_host_pattern(str(raw))
        if errs:
            errors.extend(errs)
            continue
        host = normalize_host(str(raw))
        if host not in hosts:
            hosts.append(host)
    if errors:
        raise ValidationError("; ".join(errors))
    if not hosts:
        raise ValidationError("allowed_hosts must contain at least one host pattern.")
    return hosts


def _is_keep_secret(value: Optional[str]) -> bool:
    return value is None or not str(value).strip() or str(value).strip() in KEEP_SECRET_MARKERS


class CredentialStore:
    def __init__(self, store: SqliteBrokerStore, cipher: SecretCipher):
        self._store = store
        self._cipher = cipher

    def create_credential(
        self,
        alias: str,
        provider: str,
        secret: str,
        allowed_hosts: Iterable[str],
        allowed_in_header: bool = True,
        allowed_in_query: bool = False,
        allowed_in_body: bool = False,
        enabled: bool = True,
    ) -> CredentialRecord:
        alias = validate_alias(alias)
        provider = (provider or "").strip()
        if not provider:
            raise ValidationError("provider is required.")
        if _is_keep_secret(secret):
            raise ValidationError("secret is required.")
        hosts = normalize_allowed_hosts(allowed_hosts)
        if self._store.get_credential_by_alias(alias) is not None:
            raise ConflictError("Credential alias already exists.")
        record = self._store.insert_credential(
            alias=alias,
            provider=provider,
            secret=self._cipher.encrypt(str(secret)),
            allowed_hosts=hosts,
            allowed_in_header=bool(allowed_in_header),
            allowed_in_query=bool(allowed_in_query),
            allowed_in_body=bool(allowed_in_body),
            enabled=bool(enabled),
        )
        logger.info("credential created alias=%s provider=%s hosts=%s", record.alias, record.provider, hosts)
        return record

    def update_credential(self, credential_id: str, **changes: Any) -> CredentialRecord:
        existing = self._store.get_credential(credential_id)
        if existing is None:
            raise NotFound("Credential not found.")
        fields: Dict[str, Any] = {}
        if changes.get("alias") is not None:
            alias = validate_alias(changes["alias"])
            if alias != existing.alias:
                other = self._store.get_credential_by_alias(alias)
                if other is not None and other.credential_id != credential_id:
                    raise ConflictError("Credential alias already exists.")
                fields["alias"] = alias
        if changes.get("provider") is not None:
            provider = str(changes["provider"]).strip()
            if not provider:
                raise ValidationError("provider must not be empty.")
            fields["provider"] = provider
        if "secret" in changes and not _is_keep_secret(changes["secret"]):
            fields["secret"] = self._cipher.encrypt(str(changes["secret"]))
        if changes.get("allowed_hosts") is not None:
            fields["allowed_hosts"] = normalize_allowed_hosts(changes["allowed_hosts"])
        for flag in ("allowed_in_header", "allowed_in_query", "allowed_in_body", "enabled"):
            if changes.get(flag) is not None:
                fields[flag] = bool(changes[flag])
        unknown = set(changes) - {
            "alias",
            "provider",
            "secret",
            "allowed_hosts",
            "allowed_in_header",
            "allowed_in_query",
            "allowed_in_body",
            "enabled",
        }
        if unknown:
            raise ValidationError(f"Unknown credential fields: {', '.join(sorted(unknown))}.")
        updated = self._store.update_credential(credential_id, fields)
        if updated is None:
            raise NotFound("Credential not found.")
        logger.info("credential updated alias=%s fields=%s", updated.alias, sorted(fields))
        return updated

    def delete_credential(self, credential_id: str, force: bool = False) -> bool:
        if self._store.get_credential(credential_id) is None:
            raise NotFound("Credential not found.")
        assigned = self._store.count_credential_assignments(credential_id)
        if assigned and not force:
            raise PreconditionFailed(
                f"Credential is assigned to {assigned} agent(s). Unassign it first or delete with force.",
                reason="credential_assigned",
            )
        deleted = self._store.delete_credential(credential_id)
        logger.info("credential deleted id=%s force=%s unassigned=%s", credential_id, force, assigned)
        return deleted

    def set_assignment(self, credential_id: str, agent_id: str, enabled: bool = True) -> CredentialAssignment:
        if self._store.get_credential(credential_id) is None:
            raise NotFound("Credential not found.")
        agent_id = (agent_id or "").strip()
        if not agent_id:
            raise ValidationError("agent_id is required.")
        self._store.ensure_agent(agent_id)
        return self._store.set_credential_assignment(credential_id, agent_id, bool(enabled))

    def list_assignments(self, credential_id: str) -> List[CredentialAssignment]:
        if self._store.get_credential(credential_id) is None:
            raise NotFound("Credential not found.")
        return self._store.list_credential_assignments(credential_id)

    def get_credential(self, credential_id: str) -> CredentialRecord:
        record = self._store.get_credential(credential_id)
        if record is None:
            raise NotFound("Credential not found.")
        return record

    def list_credentials(self, provider: Optional[str] = None, enabled: Optional[bool] = None) -> List[CredentialRecord]:
        return self._store.list_credentials(provider=provider, enabled=enabled)

    def list_for_agent(self, agent_id: str, provider: Optional[str] = None) -> List[CredentialRecord]:
        return self._store.list_credentials_for_agent(agent_id, provider=provider)

    def resolve_for_use(self, agent_id: str, alias: str) -> Optional[CredentialForUse]:
        """Enabled, assigned credential with its secret decrypted; ``None`` otherwise."""
        found = self._store.find_usable_credential(agent_id, alias)
        if found is None:
            return None
        record, stored = found
        return CredentialForUse(record=record, secret=self._cipher.decrypt(stored))

    def usage_summary(self, credential_id: str, window_sec: Optional[int] = None) -> CredentialUsageSummary:
        if self._store.get_credential(credential_id) is None:
            raise NotFound("Credential not found.")
        since = None
        if window_sec and window_sec > 0:
            since = datetime.now(timezone.utc) - timedelta(seconds=window_sec)
        entries = self._store.list_audit_logs(
            event_types=list(_USAGE_EVENT_TO_STATUS),
            resource_id=credential_id,
            since=since,
            limit=_USAGE_SCAN_LIMIT,
        )
        counts = {USAGE_STATUS_SUCCESS: 0, USAGE_STATUS_FAIL: 0, USAGE_STATUS_DENIED: 0}
        for entry in entries:
            counts[_USAGE_EVENT_TO_STATUS[entry.event_type]] += 1
        latest = entries[0] if entries else None
        return CredentialUsageSummary(
            credential_id=credential_id,
            total_calls=sum(counts.values()),
            success_count=counts[USAGE_STATUS_SUCCESS],
            fail_count=counts[USAGE_STATUS_FAIL],
            denied_count=counts[USAGE_STATUS_DENIED],
            last_used_at=latest.created_at if latest else None,
            last_status=_USAGE_EVENT_TO_STATUS[latest.event_type] if latest else None,
        )
