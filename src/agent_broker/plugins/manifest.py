import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from agent_broker.domain.plugins import (
    PERMISSION_FILESYSTEM_READ,
    PERMISSION_FILESYSTEM_WRITE,
    PERMISSION_NETWORK,
    PERMISSION_PROCESS_SPAWN,
    PERMISSION_SECRET,
    DeclaredCapability,
)
from agent_broker.services.host_policy import validate_host_pattern

PLUGIN_ID_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{2,127}$")
SEMVER_RE = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+(?:[-+][0-9A-Za-z.-]+)?$")
SUPPORTED_SCHEMA_VERSION = 1

_PERMISSION_LIST_FIELDS = ("network", "secrets", "filesystemRead", "filesystemWrite")


@dataclass(frozen=True)
class ManifestPermissions:
    network: List[str] = field(default_factory=list)
    secrets: List[str] = field(default_factory=list)
    filesystem_read: List[str] = field(default_factory=list)
    filesystem_write: List[str] = field(default_factory=list)
    allow_process_spawn: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": list(self.network),
            "secrets": list(self.secrets),
            "filesystemRead": list(self.filesystem_read),
            "filesystemWrite": list(self.filesystem_write),
            "allowProcessSpawn": self.allow_process_spawn,
        }


@dataclass(frozen=True)
class PluginManifest:
    plugin_id: str
    name: str
    version: str
    schema_version: int = SUPPORTED_SCHEMA_VERSION
    description: Optional[str] = None
    entry: Optional[str] = None
    permissions: Optional[ManifestPermissions] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "id": self.plugin_id,
            "name": self.name,
            "version": self.version,
        }
        if self.description is not None:
            data["description"] = self.description
        if self.entry is not None:
            data["entry"] = self.entry
        if self.permissions is not None:
            data["permissions"] = self.permissions.to_dict()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=True, sort_keys=True, separators=(",", ":"))

    def checksum(self) -> str:
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_plugin_manifest(raw: Union[str, Dict[str, Any], None]) -> Optional[PluginManifest]:
    """Parse a manifest, failing closed.

    Any malformed input (bad JSON, non-object root, missing id/name/version)
    yields ``None``; malformed permission fields degrade to empty lists.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        data: Any = raw
    elif isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError:
            return None
    else:
        return None
    if not isinstance(data, dict):
        return None
    fields = {}
    for key in ("id", "name", "version"):
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            return None
        fields[key] = value.strip()

    permissions: Optional[ManifestPermissions] = None
    raw_permissions = data.get("permissions")
    if isinstance(raw_permissions, dict):
        permissions = ManifestPermissions(
            network=_string_list(raw_permissions.get("network")),
            secrets=_string_list(raw_permissions.get("secrets")),
            filesystem_read=_string_list(raw_permissions.get("filesystemRead")),
            filesystem_write=_string_list(raw_permissions.get("filesystemWrite")),
            allow_process_spawn=raw_permissions.get("allowProcessSpawn") is True,
        )

    schema_version = data.get("schemaVersion")
    description = data.get("description")
    entry = data.get("entry")
    return PluginManifest(
        plugin_id=fields["id"],
        name=fields["name"],
        version=fields["version"],
        schema_version=schema_version if isinstance(schema_version, int) and not isinstance(schema_version, bool) else 1,
        description=description if isinstance(description, str) else None,
        entry=entry.strip() if isinstance(entry, str) and entry.strip() else None,
        permissions=permissions,
    )


def build_declared_capabilities(permissions: Optional[ManifestPermissions]) -> List[DeclaredCapability]:
    if permissions is None:
        return []
    caps: List[DeclaredCapability] = []
    seen = set()

    def _add(permission: str, scope: Optional[str]) -> None:
        key = capability_key(permission, scope)
        if key not in seen:
            seen.add(key)
            caps.append(DeclaredCapability(permission=permission, scope=scope))

    for host in permissions.network:
        _add(PERMISSION_NETWORK, host)
    for name in permissions.secrets:
        _add(PERMISSION_SECRET, name)
    for path in permissions.filesystem_read:
        _add(PERMISSION_FILESYSTEM_READ, path)
    for path in permissions.filesystem_write:
        _add(PERMISSION_FILESYSTEM_WRITE, path)
    if permissions.allow_process_spawn:
        _add(PERMISSION_PROCESS_SPAWN, None)
    return caps


def permissions_from_capabilities(capabilities: Iterable[DeclaredCapability]) -> ManifestPermissions:
    """Inverse of ``build_declared_capabilities`` for installs without a manifest."""
    buckets: Dict[str, List[str]] = {
        PERMISSION_NETWORK: [],
        PERMISSION_SECRET: [],
        PERMISSION_FILESYSTEM_READ: [],
        PERMISSION_FILESYSTEM_WRITE: [],
    }
    spawn = False
    for cap in capabilities:
        if cap.permission == PERMISSION_PROCESS_SPAWN:
            spawn = True
            continue
        bucket = buckets.get(cap.permission)
        if bucket is not None and cap.scope and cap.scope not in bucket:
            bucket.append(cap.scope)
    return ManifestPermissions(
        network=buckets[PERMISSION_NETWORK],
        secrets=buckets[PERMISSION_SECRET],
        filesystem_read=buckets[PERMISSION_FILESYSTEM_READ],
        filesystem_write=buckets[PERMISSION_FILESYSTEM_WRITE],
        allow_process_spawn=spawn,
    )


def capability_key(permission: str, scope: Optional[str]) -> str:
    return f"{permission}::{scope or ''}"


def load_manifest(path: Path) -> Dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Manifest root must be a JSON object.")
    return data


def validate_manifest(manifest: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    schema_version = manifest.get("schemaVersion", SUPPORTED_SCHEMA_VERSION)
    if schema_version != SUPPORTED_SCHEMA_VERSION:
        errors.append(f"schemaVersion must be {SUPPORTED_SCHEMA_VERSION} (got {schema_version!r}).")

    plugin_id = str(manifest.get("id") or "").strip()
    if not PLUGIN_ID_RE.match(plugin_id):
        errors.append("id must match ^[a-z0-9][a-z0-9._-]{2,127}$.")

    name = str(manifest.get("name") or "").strip()
    if not name:
        errors.append("name is required.")

    version = str(manifest.get("version") or "").strip()
    if not SEMVER_RE.match(version):
        errors.append("version must be semantic version format X.Y.Z.")

    entry = manifest.get("entry")
    if entry is not None:
        if not isinstance(entry, str) or not entry.strip():
            errors.append("entry must be a non-empty string when provided.")
        elif Path(entry).is_absolute() or ".." in Path(entry).parts:
            errors.append("entry must be a relative path inside the plugin directory.")

    permissions = manifest.get("permissions")
    if permissions is None:
        return errors
    if not isinstance(permissions, dict):
        errors.append("permissions must be an object when provided.")
        return errors
    for key in _PERMISSION_LIST_FIELDS:
        value = permissions.get(key)
        if value is None:
            continue
        if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
            errors.append(f"permissions.{key} must be an array of non-empty strings.")
    for host in _string_list(permissions.get("network")):
        errors.extend(f"permissions.network: {err}" for err in validate_host_pattern(host))
    spawn = permissions.get("allowProcessSpawn")
    if spawn is not None and not isinstance(spawn, bool):
        errors.append("permissions.allowProcessSpawn must be a boolean.")
    unknown = sorted(set(permissions) - set(_PERMISSION_LIST_FIELDS) - {"allowProcessSpawn"})
    if unknown:
        errors.append(f"permissions contains unsupported entries: {', '.join(unknown)}.")
    return errors


def host_enforced_controls() -> List[str]:
    return [
        "Declared-disclosure review checks at plugin enable time.",
        "Host-managed plugin instance outbound actions.",
        "Host-managed secret access APIs.",
        "Host-managed file and process helper APIs.",
    ]
