import importlib.util
import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_broker.domain.plugins import (
    EVENT_LOAD,
    EVENT_STATUS_ERROR,
    EVENT_STATUS_OK,
    PluginRecord,
)
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.plugins.crash_guard import CrashGuard
from agent_broker.plugins.manifest import parse_plugin_manifest
from agent_broker.plugins.registry import BUILTIN_INSTALL_PREFIX
from agent_broker.util import utc_now

logger = logging.getLogger(__name__)


class PluginHandlerRegistry:
    """In-process handlers contributed by loaded plugins, keyed by plugin id."""

    def __init__(self):
        self._handlers: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, plugin_id: str, handler: Any) -> None:
        with self._lock:
            self._handlers[plugin_id] = handler

    def unregister(self, plugin_id: str) -> bool:
        with self._lock:
            return self._handlers.pop(plugin_id, None) is not None

    def get(self, plugin_id: str) -> Optional[Any]:
        with self._lock:
            return self._handlers.get(plugin_id)

    def list_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)


@dataclass(frozen=True)
class LoadResult:
    plugin_id: str
    success: bool
    error: Optional[str] = None


class PluginLoader:
    """Imports a plugin's entry module and registers its handler.

    ``load_plugin`` never raises; failures are recorded on the plugin row,
    as a ``load``/``error`` event, and against the crash guard.
    """

    def __init__(
        self,
        handlers: PluginHandlerRegistry,
        store: SqliteBrokerStore,
        crash_guard: Optional[CrashGuard] = None,
    ):
        self._handlers = handlers
        self._store = store
        self._crash_guard = crash_guard

    def load_plugin(self, record: PluginRecord) -> LoadResult:
        if record.is_builtin or record.install_path.startswith(BUILTIN_INSTALL_PREFIX):
            return LoadResult(plugin_id=record.plugin_id, success=True)
        try:
            handler = self._import_handler(record)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Plugin %s failed to load: %s", record.plugin_id, message)
            if self._crash_guard is not None:
                self._crash_guard.record_failure(record.plugin_id)
            self._store.set_plugin_load_state(record.plugin_id, error=message, loaded_at=None)
            self._store.append_plugin_event(record.plugin_id, EVENT_LOAD, EVENT_STATUS_ERROR, {"error": message})
            return LoadResult(plugin_id=record.plugin_id, success=False, error=message)

        self._handlers.register(record.plugin_id, handler)
        if self._crash_guard is not None:
            self._crash_guard.record_success(record.plugin_id)
        self._store.set_plugin_load_state(record.plugin_id, error=None, loaded_at=utc_now())
        self._store.append_plugin_event(
            record.plugin_id,
            EVENT_LOAD,
            EVENT_STATUS_OK,
            {"version": record.current_version, "handler": type(handler).__name__},
        )
        logger.info("Plugin %s loaded from %s", record.plugin_id, record.install_path)
        return LoadResult(plugin_id=record.plugin_id, success=True)

    def unload_plugin(self, plugin_id: str) -> bool:
        removed = self._handlers.unregister(plugin_id)
        sys.modules.pop(_module_name(plugin_id), None)
        if removed:
            self._store.set_plugin_load_state(plugin_id, error=None, loaded_at=None)
        return removed

    def _import_handler(self, record: PluginRecord) -> Any:
        manifest = parse_plugin_manifest(record.manifest_json)
        if manifest is None:
            raise ValueError("Invalid manifest JSON")
        if not manifest.entry:
            raise ValueError("Manifest does not specify an entry point")
        if not record.install_path or "://" in record.install_path:
            raise ValueError("Plugin has no local install path")
        root = Path(record.install_path).expanduser().resolve()
        entry_path = (root / manifest.entry).resolve()
        if root != entry_path and root not in entry_path.parents:
            raise ValueError("Plugin entry resolves outside its install path")
        if not entry_path.is_file():
            raise FileNotFoundError(f"Plugin entry not found: {manifest.entry}")

        module_name = _module_name(record.plugin_id)
        spec = importlib.util.spec_from_file_location(module_name, entry_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot import plugin entry {manifest.entry}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise

        register = getattr(module, "register", None)
        if callable(register):
            scratch = PluginHandlerRegistry()
            register(_ScopedRegistrar(scratch, record.plugin_id))
            handler = scratch.get(record.plugin_id)
            if handler is None:
                raise ValueError("register() did not register a handler")
            return handler
        handler = getattr(module, "handler", None)
        if handler is None:
            raise ValueError('Plugin module must define register(registry) or a module-level "handler"')
        return handler


class _ScopedRegistrar:
    """What a plugin's ``register(registry)`` receives: it can only register itself."""

    def __init__(self, registry: PluginHandlerRegistry, plugin_id: str):
        self._registry = registry
        self.plugin_id = plugin_id

    def register(self, handler: Any) -> None:
        self._registry.register(self.plugin_id, handler)


def _module_name(plugin_id: str) -> str:
    return "agent_broker_plugin_" + "".join(ch if ch.isalnum() else "_" for ch in plugin_id)
