from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SOURCE_KIND_BUILTIN = "builtin"
SOURCE_KIND_NPM = "npm"
SOURCE_KIND_GIT = "git"
SOURCE_KIND_UPLOAD = "upload"
SOURCE_KIND_LOCAL = "local"
PLUGIN_SOURCE_KINDS = (
    SOURCE_KIND_BUILTIN,
    SOURCE_KIND_NPM,
    SOURCE_KIND_GIT,
    SOURCE_KIND_UPLOAD,
    SOURCE_KIND_LOCAL,
)

TRUST_LEVEL_BUILTIN = "builtin"
TRUST_LEVEL_UNTRUSTED = "untrusted"

PERMISSION_NETWORK = "network"
PERMISSION_SECRET = "secret"
PERMISSION_FILESYSTEM_READ = "filesystem_read"
PERMISSION_FILESYSTEM_WRITE = "filesystem_write"
PERMISSION_PROCESS_SPAWN = "process_spawn"
DECLARED_PERMISSIONS = (
    PERMISSION_NETWORK,
    PERMISSION_SECRET,
    PERMISSION_FILESYSTEM_READ,
    PERMISSION_FILESYSTEM_WRITE,
    PERMISSION_PROCESS_SPAWN,
)

EVENT_INSTALL = "install"
EVENT_ENABLE = "enable"
EVENT_DISABLE = "disable"
EVENT_AUTO_DISABLE = "auto_disable"
EVENT_LOAD = "load"

EVENT_STATUS_OK = "ok"
EVENT_STATUS_BLOCKED = "blocked"
EVENT_STATUS_ERROR = "error"


@dataclass(frozen=True)
class DeclaredCapability:
    permission: str
    scope: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"permission": self.permission, "scope": self.scope}


@dataclass(frozen=True)
class PluginRecord:
    plugin_id: str
    name: str
    source_kind: str
    source_ref: Optional[str]
    trust_level: str
    enabled: bool
    current_version: str
    current_checksum: str
    install_path: str
    manifest_json: str
    last_load_error: Optional[str]
    last_loaded_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @property
    def is_builtin(self) -> bool:
        return self.source_kind == SOURCE_KIND_BUILTIN


@dataclass(frozen=True)
class PluginVersionRecord:
    plugin_id: str
    version: str
    checksum: str
    install_path: str
    manifest_json: str
    created_at: datetime


@dataclass(frozen=True)
class DisclosureAck:
    plugin_id: str
    permission: str
    scope: Optional[str]
    acknowledged: bool
    acknowledged_at: Optional[datetime]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permission": self.permission,
            "scope": self.scope,
            "acknowledged": self.acknowledged,
            "acknowledgedAt": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
        }


@dataclass(frozen=True)
class PluginEvent:
    event_id: int
    plugin_id: str
    event_type: str
    status: str
    detail: Dict[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "pluginId": self.plugin_id,
            "eventType": self.event_type,
            "status": self.status,
            "detail": dict(self.detail),
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class InstallResult:
    plugin_id: str
    version: str
    checksum: str
    enabled: bool
    declared_capabilities: List[DeclaredCapability] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pluginId": self.plugin_id,
            "version": self.version,
            "checksum": self.checksum,
            "enabled": self.enabled,
            "declaredCapabilities": [c.to_dict() for c in self.declared_capabilities],
        }
