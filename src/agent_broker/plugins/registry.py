import logging
from typing import Dict, List, Optional

from agent_broker.domain.plugins import (
    SOURCE_KIND_BUILTIN,
    TRUST_LEVEL_BUILTIN,
    DeclaredCapability,
    PluginRecord,
)
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.plugins.manifest import (
    ManifestPermissions,
    PluginManifest,
    build_declared_capabilities,
    parse_plugin_manifest,
)
from agent_broker.services.disclosure_ledger import DisclosureLedger

logger = logging.getLogger(__name__)

BUILTIN_INSTALL_PREFIX = "builtin://"

BUILTIN_MANIFESTS: Dict[str, PluginManifest] = {
    m.plugin_id: m
    for m in (
        PluginManifest(
            plugin_id="builtin.telegram",
            name="Telegram",
            version="1.0.0",
            permissions=ManifestPermissions(network=["api.telegram.org"], secrets=["telegram.bot_token"]),
        ),
        PluginManifest(
            plugin_id="builtin.github",
            name="GitHub",
            version="1.0.0",
            permissions=ManifestPermissions(network=["api.github.com"], secrets=["github.app_private_key"]),
        ),
    )
}


def builtin_install_path(plugin_id: str) -> str:
    return f"{BUILTIN_INSTALL_PREFIX}{plugin_id}"


class PluginCapabilityRegistry:
    """Fixed builtin plugin set plus manifest-to-capability derivation."""

    def __init__(self, store: SqliteBrokerStore, ledger: DisclosureLedger):
        self._store = store
        self._ledger = ledger

    @staticmethod
    def builtin_manifest(plugin_id: str) -> Optional[PluginManifest]:
        return BUILTIN_MANIFESTS.get(plugin_id)

    @staticmethod
    def builtin_ids() -> List[str]:
        return sorted(BUILTIN_MANIFESTS)

    @staticmethod
    def declared_capabilities(manifest_json: Optional[str]) -> List[DeclaredCapability]:
        """Capabilities for a stored manifest; a malformed manifest declares nothing."""
        manifest = parse_plugin_manifest(manifest_json)
        return build_declared_capabilities(manifest.permissions if manifest else None)

    def capabilities_for(self, record: PluginRecord) -> List[DeclaredCapability]:
        return self.declared_capabilities(record.manifest_json)

    def ensure_builtins_registered(self) -> List[PluginRecord]:
        """Upsert every builtin, keeping its enabled flag, and auto-acknowledge its disclosures."""
        records: List[PluginRecord] = []
        for manifest in BUILTIN_MANIFESTS.values():
            manifest_json = manifest.to_json()
            checksum = manifest.checksum()
            install_path = builtin_install_path(manifest.plugin_id)
            record = self._store.upsert_plugin(
                plugin_id=manifest.plugin_id,
                name=manifest.name,
                source_kind=SOURCE_KIND_BUILTIN,
                source_ref=SOURCE_KIND_BUILTIN,
                trust_level=TRUST_LEVEL_BUILTIN,
                current_version=manifest.version,
                current_checksum=checksum,
                install_path=install_path,
                manifest_json=manifest_json,
                enabled=None,
            )
            self._store.upsert_plugin_version(
                plugin_id=manifest.plugin_id,
                version=manifest.version,
                checksum=checksum,
                install_path=install_path,
                manifest_json=manifest_json,
            )
            self._ledger.ensure_rows(manifest.plugin_id, build_declared_capabilities(manifest.permissions))
            self._ledger.acknowledge(manifest.plugin_id)
            records.append(record)
        logger.debug("builtin plugins registered: %s", ", ".join(BUILTIN_MANIFESTS))
        return records
