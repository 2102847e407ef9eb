from typing import Iterable, List

from agent_broker.domain.plugins import DeclaredCapability, DisclosureAck
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.plugins.manifest import capability_key


class DisclosureLedger:
    """Human acknowledgment state per declared plugin capability.

    Rows are monotonic: ``ensure_rows`` only inserts missing rows and
    nothing here ever downgrades an acknowledged row.
    """

    def __init__(self, store: SqliteBrokerStore):
        self._store = store

    def ensure_rows(self, plugin_id: str, capabilities: Iterable[DeclaredCapability]) -> int:
        return self._store.insert_missing_disclosures(plugin_id, list(capabilities))

    def acknowledge(self, plugin_id: str) -> int:
        return self._store.acknowledge_disclosures(plugin_id)

    def list_acks(self, plugin_id: str) -> List[DisclosureAck]:
        return self._store.list_disclosure_acks(plugin_id)

    def acknowledged_keys(self, plugin_id: str) -> set:
        return {capability_key(a.permission, a.scope) for a in self.list_acks(plugin_id) if a.acknowledged}

    def unacknowledged(self, plugin_id: str, capabilities: Iterable[DeclaredCapability]) -> List[DeclaredCapability]:
        acked = self.acknowledged_keys(plugin_id)
        return [c for c in capabilities if capability_key(c.permission, c.scope) not in acked]
