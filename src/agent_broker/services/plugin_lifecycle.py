import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from agent_broker.domain.plugins import (
    DECLARED_PERMISSIONS,
    EVENT_AUTO_DISABLE,
    EVENT_DISABLE,
    EVENT_ENABLE,
    EVENT_INSTALL,
    EVENT_STATUS_BLOCKED,
    EVENT_STATUS_ERROR,
    EVENT_STATUS_OK,
    PLUGIN_SOURCE_KINDS,
    SOURCE_KIND_BUILTIN,
    SOURCE_KIND_LOCAL,
    TRUST_LEVEL_BUILTIN,
    TRUST_LEVEL_UNTRUSTED,
    DeclaredCapability,
    InstallResult,
    PluginEvent,
    PluginRecord,
)
from agent_broker.errors import ConsentRequired, Forbidden, NotFound, TrustModeBlocked, ValidationError
from agent_broker.events.event_bus import LifecycleEventBus
from agent_broker.observability.structured_log import log_json
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.plugins.crash_guard import CrashGuard
from agent_broker.plugins.loader import PluginLoader
from agent_broker.plugins.manifest import (
    PLUGIN_ID_RE,
    PluginManifest,
    build_declared_capabilities,
    capability_key,
    host_enforced_controls,
    parse_plugin_manifest,
    permissions_from_capabilities,
    validate_manifest,
)
from agent_broker.plugins.registry import PluginCapabilityRegistry, builtin_install_path
from agent_broker.services.disclosure_ledger import DisclosureLedger
from agent_broker.services.trust_mode import TrustModePolicy

logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 30
MAX_EVENTS_PAGE = 100

CapabilityInput = Union[DeclaredCapability, Dict[str, Any]]


def _coerce_capabilities(items: Optional[Iterable[CapabilityInput]]) -> List[DeclaredCapability]:
    caps: List[DeclaredCapability] = []
    for idx, item in enumerate(items or []):
        if isinstance(item, DeclaredCapability):
            cap = item
        elif isinstance(item, dict):
            scope = item.get("scope")
            cap = DeclaredCapability(
                permission=str(item.get("permission") or "").strip(),
                scope=str(scope).strip() or None if scope is not None else None,
            )
        else:
            raise ValidationError(f"declared_capabilities[{idx}] must be an object.")
        if cap.permission not in DECLARED_PERMISSIONS:
            raise ValidationError(
                f"declared_capabilities[{idx}].permission must be one of {', '.join(DECLARED_PERMISSIONS)}."
            )
        caps.append(cap)
    return caps


def _parse_cursor(cursor: Any) -> Optional[Tuple[str, int]]:
    if cursor is None:
        return None
    if isinstance(cursor, dict):
        created_at, event_id = cursor.get("createdAt"), cursor.get("id")
    elif isinstance(cursor, (list, tuple)) and len(cursor) == 2:
        created_at, event_id = cursor
    else:
        raise ValidationError("cursor must be {createdAt, id}.")
    if isinstance(created_at, datetime):
        created_at = created_at.isoformat()
    try:
        return str(created_at), int(event_id)
    except (TypeError, ValueError) as exc:
        raise ValidationError("cursor must be {createdAt, id}.") from exc


class PluginLifecycleManager:
    """Install, enable, disable and delete plugins under the deployment trust mode.

    Every lifecycle event is persisted first and then published on the
    event bus. Handler hot-loads run as background tasks whose failures are
    logged and never roll back the persisted state.
    """

    def __init__(
        self,
        store: SqliteBrokerStore,
        registry: PluginCapabilityRegistry,
        ledger: DisclosureLedger,
        trust: TrustModePolicy,
        loader: Optional[PluginLoader] = None,
        crash_guard: Optional[CrashGuard] = None,
        event_bus: Optional[LifecycleEventBus] = None,
    ):
        self._store = store
        self._registry = registry
        self._ledger = ledger
        self._trust = trust
        self._loader = loader
        self._crash_guard = crash_guard
        self._bus = event_bus or LifecycleEventBus()
        self._tasks: Set["asyncio.Task[Any]"] = set()
        if crash_guard is not None:
            crash_guard.set_auto_disable_callback(self._auto_disable)

    @property
    def event_bus(self) -> LifecycleEventBus:
        return self._bus

    @property
    def trust(self) -> TrustModePolicy:
        return self._trust

    async def install_plugin(
        self,
        plugin_id: str,
        name: str,
        source_kind: str,
        source_ref: Optional[str] = None,
        version: str = "1.0.0",
        manifest_json: Optional[str] = None,
        declared_capabilities: Optional[Iterable[CapabilityInput]] = None,
    ) -> InstallResult:
        plugin_id = (plugin_id or "").strip()
        if not plugin_id:
            raise ValidationError("plugin_id is required.")
        if source_kind not in PLUGIN_SOURCE_KINDS:
            raise ValidationError(f"source_kind must be one of {', '.join(PLUGIN_SOURCE_KINDS)}.")
        is_builtin = source_kind == SOURCE_KIND_BUILTIN
        builtin_manifest = self._registry.builtin_manifest(plugin_id) if is_builtin else None
        if is_builtin and builtin_manifest is None:
            raise Forbidden('Only platform builtin plugin IDs can use sourceKind "builtin".', reason="builtin_id_required")
        if not is_builtin and self._registry.builtin_manifest(plugin_id) is not None:
            raise Forbidden(f'Plugin ID "{plugin_id}" is reserved for a platform builtin.', reason="builtin_id_reserved")
        existing = self._store.get_plugin(plugin_id)
        if existing is not None and existing.is_builtin != is_builtin:
            raise Forbidden(
                f'Plugin "{plugin_id}" cannot change between builtin and third-party.', reason="builtin_id_reserved"
            )

        posture = self._trust.posture()
        if self._trust.locked and not is_builtin:
            self._record_event(
                plugin_id,
                EVENT_INSTALL,
                EVENT_STATUS_BLOCKED,
                {"reason": "trust_mode_locked", "sourceKind": source_kind, "executionMode": posture.execution_mode},
            )
            raise TrustModeBlocked("Third-party plugin install is disabled in saas_locked mode.")

        manifest = builtin_manifest or self._manifest_from_input(
            plugin_id, name, version, manifest_json, declared_capabilities
        )
        if is_builtin:
            install_path = builtin_install_path(plugin_id)
        elif source_kind == SOURCE_KIND_LOCAL and source_ref:
            install_path = str(Path(source_ref).expanduser().resolve())
        else:
            install_path = f"{source_kind}://{source_ref or plugin_id}"

        manifest_text = manifest.to_json()
        checksum = manifest.checksum()
        record = self._store.upsert_plugin(
            plugin_id=plugin_id,
            name=manifest.name,
            source_kind=source_kind,
            source_ref=SOURCE_KIND_BUILTIN if is_builtin else source_ref,
            trust_level=TRUST_LEVEL_BUILTIN if is_builtin else TRUST_LEVEL_UNTRUSTED,
            current_version=manifest.version,
            current_checksum=checksum,
            install_path=install_path,
            manifest_json=manifest_text,
            enabled=is_builtin,
        )
        self._store.upsert_plugin_version(
            plugin_id=plugin_id,
            version=manifest.version,
            checksum=checksum,
            install_path=install_path,
            manifest_json=manifest_text,
        )
        capabilities = build_declared_capabilities(manifest.permissions)
        self._ledger.ensure_rows(plugin_id, capabilities)
        if is_builtin:
            self._ledger.acknowledge(plugin_id)
        self._record_event(
            plugin_id,
            EVENT_INSTALL,
            EVENT_STATUS_OK,
            {
                "sourceKind": source_kind,
                "sourceRef": source_ref,
                "installPath": install_path,
                "version": manifest.version,
                "executionMode": posture.execution_mode,
            },
        )
        if record.enabled and "://" not in install_path:
            self._schedule_hot_load(record)
        return InstallResult(
            plugin_id=plugin_id,
            version=manifest.version,
            checksum=checksum,
            enabled=record.enabled,
            declared_capabilities=capabilities,
        )

    async def enable_plugin(self, plugin_id: str, consent_accepted: bool = False) -> PluginRecord:
        record = self._require_plugin(plugin_id)
        posture = self._trust.posture()
        third_party = not record.is_builtin
        if third_party and self._trust.locked:
            self._record_event(
                plugin_id,
                EVENT_ENABLE,
                EVENT_STATUS_BLOCKED,
                {"reason": "trust_mode_locked", "executionMode": posture.execution_mode},
            )
            raise TrustModeBlocked("Third-party plugins cannot be enabled in saas_locked mode.")
        if third_party and consent_accepted is not True:
            raise ConsentRequired()

        capabilities = self._registry.capabilities_for(record)
        unacknowledged = self._ledger.unacknowledged(plugin_id, capabilities) if third_party else []
        updated = self._store.set_plugin_enabled(plugin_id, True)
        self._ledger.ensure_rows(plugin_id, capabilities)
        self._ledger.acknowledge(plugin_id)
        self._record_event(
            plugin_id,
            EVENT_ENABLE,
            EVENT_STATUS_OK,
            {
                "executionMode": posture.execution_mode,
                "consentAccepted": bool(consent_accepted),
                "disclosureAcknowledged": True,
                "unacknowledgedDisclosures": [c.to_dict() for c in unacknowledged],
            },
        )
        if self._crash_guard is not None:
            self._crash_guard.reset_plugin(plugin_id)
        if third_party and updated is not None and "://" not in updated.install_path:
            self._schedule_hot_load(updated)
        return updated or record

    async def disable_plugin(self, plugin_id: str) -> PluginRecord:
        record = self._require_plugin(plugin_id)
        updated = self._store.set_plugin_enabled(plugin_id, False)
        self._record_event(
            plugin_id,
            EVENT_DISABLE,
            EVENT_STATUS_OK,
            {"executionMode": self._trust.posture().execution_mode},
        )
        if not record.is_builtin:
            self._unload_best_effort(plugin_id)
        return updated or record

    async def delete_plugin(self, plugin_id: str) -> bool:
        record = self._require_plugin(plugin_id)
        if record.is_builtin:
            raise Forbidden("Built-in plugins cannot be deleted.", reason="builtin_plugin")
        self._unload_best_effort(plugin_id)
        deleted = self._store.delete_plugin(plugin_id)
        log_json(logger, "plugin.deleted", plugin_id=plugin_id)
        return deleted

    def list_plugins(self) -> Dict[str, Any]:
        self._registry.ensure_builtins_registered()
        plugins = []
        for record in self._store.list_plugins():
            capabilities = self._registry.capabilities_for(record)
            acked = self._ledger.acknowledged_keys(record.plugin_id)
            plugins.append(
                dict(
                    _plugin_summary(record),
                    declaredCapabilityCount=len(capabilities),
                    acknowledgedDisclosureCount=sum(
                        1 for c in capabilities if capability_key(c.permission, c.scope) in acked
                    ),
                )
            )
        return dict(self._trust.posture().to_dict(), plugins=plugins)

    def get_plugin(self, plugin_id: str) -> Dict[str, Any]:
        self._registry.ensure_builtins_registered()
        record = self._require_plugin(plugin_id)
        capabilities = self._registry.capabilities_for(record)
        acks = self._ledger.list_acks(plugin_id)
        acked = {capability_key(a.permission, a.scope) for a in acks if a.acknowledged}
        events = self._store.list_plugin_events(plugin_id, limit=RECENT_EVENTS_LIMIT)
        return dict(
            self._trust.posture().to_dict(),
            plugin=dict(
                _plugin_summary(record),
                currentChecksum=record.current_checksum,
                installPath=record.install_path,
                lastLoadError=record.last_load_error,
                lastLoadedAt=record.last_loaded_at.isoformat() if record.last_loaded_at else None,
            ),
            declaredCapabilities=[
                dict(c.to_dict(), acknowledged=capability_key(c.permission, c.scope) in acked) for c in capabilities
            ],
            declaredCapabilityCount=len(capabilities),
            acknowledgedDisclosureCount=sum(1 for c in capabilities if capability_key(c.permission, c.scope) in acked),
            hostEnforcedControls=host_enforced_controls(),
            disclosureAcks=[a.to_dict() for a in acks],
            versions=[
                {
                    "version": v.version,
                    "checksum": v.checksum,
                    "installPath": v.install_path,
                    "installedAt": v.created_at.isoformat(),
                }
                for v in self._store.list_plugin_versions(plugin_id)
            ],
            recentEvents=[e.to_dict() for e in events],
        )

    def list_plugin_events(self, plugin_id: str, limit: int = 25, cursor: Any = None) -> Dict[str, Any]:
        page = max(1, min(MAX_EVENTS_PAGE, int(limit)))
        rows = self._store.list_plugin_events(plugin_id, limit=page + 1, before=_parse_cursor(cursor))
        events = rows[:page]
        next_cursor = None
        if len(rows) > page and events:
            last = events[-1]
            next_cursor = {"createdAt": last.created_at.isoformat(), "id": last.event_id}
        posture = self._trust.posture()
        return {
            "executionMode": posture.execution_mode,
            "effectiveLimitations": list(posture.effective_limitations),
            "events": [e.to_dict() for e in events],
            "nextCursor": next_cursor,
        }

    def unacknowledged_disclosures(self, plugin_id: str) -> List[DeclaredCapability]:
        record = self._require_plugin(plugin_id)
        return self._ledger.unacknowledged(plugin_id, self._registry.capabilities_for(record))

    async def wait_for_background_tasks(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _manifest_from_input(
        self,
        plugin_id: str,
        name: str,
        version: str,
        manifest_json: Optional[str],
        declared_capabilities: Optional[Iterable[CapabilityInput]],
    ) -> PluginManifest:
        if manifest_json:
            manifest = parse_plugin_manifest(manifest_json)
            if manifest is None:
                raise ValidationError("Invalid plugin manifest JSON.")
            errors = validate_manifest(json.loads(manifest_json))
            if errors:
                raise ValidationError("Invalid plugin manifest: " + "; ".join(errors))
            if manifest.plugin_id != plugin_id:
                logger.warning("Manifest id %r differs from plugin id %r; using %r", manifest.plugin_id, plugin_id, plugin_id)
            return manifest
        if not PLUGIN_ID_RE.match(plugin_id):
            raise ValidationError("plugin_id must match ^[a-z0-9][a-z0-9._-]{2,127}$.")
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required.")
        version = (version or "").strip() or "1.0.0"
        return PluginManifest(
            plugin_id=plugin_id,
            name=name,
            version=version,
            permissions=permissions_from_capabilities(_coerce_capabilities(declared_capabilities)),
        )

    def _require_plugin(self, plugin_id: str) -> PluginRecord:
        record = self._store.get_plugin((plugin_id or "").strip())
        if record is None:
            raise NotFound("Plugin not found.")
        return record

    def _record_event(self, plugin_id: str, event_type: str, status: str, detail: Dict[str, Any]) -> PluginEvent:
        event = self._store.append_plugin_event(plugin_id, event_type, status, detail)
        log_json(
            logger,
            "plugin.lifecycle",
            level="warning" if status != EVENT_STATUS_OK else "info",
            plugin_id=plugin_id,
            event_type=event_type,
            status=status,
        )
        return self._bus.publish(event)

    def _schedule_hot_load(self, record: PluginRecord) -> None:
        if self._loader is None:
            return
        task = asyncio.get_running_loop().create_task(self._hot_load(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _hot_load(self, record: PluginRecord) -> None:
        loader = self._loader
        if loader is None:
            return
        try:
            result = await asyncio.to_thread(loader.load_plugin, record)
        except Exception:
            logger.warning("Hot-load failed for plugin %s", record.plugin_id, exc_info=True)
            return
        if not result.success:
            logger.warning("Hot-load failed for plugin %s: %s", record.plugin_id, result.error)

    def _unload_best_effort(self, plugin_id: str) -> None:
        if self._loader is None:
            return
        try:
            self._loader.unload_plugin(plugin_id)
        except Exception:
            logger.warning("Unload failed for plugin %s", plugin_id, exc_info=True)

    def _auto_disable(self, plugin_id: str, failure_count: int) -> None:
        self._store.set_plugin_enabled(plugin_id, False)
        detail: Dict[str, Any] = {"reason": "crash_loop", "failureCount": failure_count}
        if self._crash_guard is not None:
            detail.update(windowSec=self._crash_guard.window_sec, threshold=self._crash_guard.threshold)
        self._record_event(plugin_id, EVENT_AUTO_DISABLE, EVENT_STATUS_ERROR, detail)
        self._unload_best_effort(plugin_id)


def _plugin_summary(record: PluginRecord) -> Dict[str, Any]:
    return {
        "id": record.plugin_id,
        "name": record.name,
        "sourceKind": record.source_kind,
        "sourceRef": record.source_ref,
        "enabled": record.enabled,
        "trustLevel": record.trust_level,
        "currentVersion": record.current_version,
        "installedAt": record.created_at.isoformat(),
        "updatedAt": record.updated_at.isoformat(),
    }
