import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from agent_broker.domain.audit import AuditLogEntry
from agent_broker.observability.structured_log import log_json
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.util import scrub_value

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only ledger of credential and capability decisions.

    Metadata is scrubbed of the caller-supplied secret values and of
    well-known token shapes before it is written.
    """

    def __init__(self, store: SqliteBrokerStore):
        self._store = store

    def record(
        self,
        event_type: str,
        agent_id: str,
        result: str,
        capability: str,
        metadata: Dict[str, Any],
        resource_id: Optional[str] = None,
        secrets: Iterable[str] = (),
    ) -> AuditLogEntry:
        clean = scrub_value(dict(metadata or {}), list(secrets))
        entry = self._store.append_audit_log(
            event_type=event_type,
            agent_id=agent_id,
            result=result,
            capability=capability,
            metadata=clean,
            resource_id=resource_id,
        )
        log_json(
            logger,
            "audit.recorded",
            audit_id=entry.entry_id,
            event_type=event_type,
            agent_id=agent_id,
            result=result,
            capability=capability,
        )
        return entry

    def record_best_effort(
        self,
        event_type: str,
        agent_id: str,
        result: str,
        capability: str,
        metadata: Dict[str, Any],
        resource_id: Optional[str] = None,
        secrets: Iterable[str] = (),
    ) -> Optional[AuditLogEntry]:
        try:
            return self.record(
                event_type=event_type,
                agent_id=agent_id,
                result=result,
                capability=capability,
                metadata=metadata,
                resource_id=resource_id,
                secrets=secrets,
            )
        except Exception:
            logger.warning("Audit write failed for %s (agent=%s)", event_type, agent_id, exc_info=True)
            return None

    def list(
        self,
        agent_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
        resource_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        return self._store.list_audit_logs(
            agent_id=agent_id,
            event_types=[event_type] if event_type else None,
            resource_id=resource_id,
            since=since,
            limit=limit,
        )
