import json
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from agent_broker.domain.plugins import (
    PERMISSION_NETWORK,
    PERMISSION_PROCESS_SPAWN,
    PERMISSION_SECRET,
    DeclaredCapability,
)
from agent_broker.plugins.manifest import (
    build_declared_capabilities,
    capability_key,
    parse_plugin_manifest,
    permissions_from_capabilities,
    validate_manifest,
)


def _valid_manifest() -> dict:
    return {
        "schemaVersion": 1,
        "id": "com.acme.plugin",
        "name": "Acme Plugin",
        "version": "1.2.0",
        "entry": "plugin.py",
        "permissions": {
            "network": ["api.acme.com"],
            "secrets": ["acme.api_key"],
            "allowProcessSpawn": True,
        },
    }


class TestPluginManifestValidation(unittest.TestCase):
    def test_valid_manifest(self):
        self.assertEqual(validate_manifest(_valid_manifest()), [])

    def test_invalid_id_semver_and_unknown_permission(self):
        manifest = _valid_manifest()
        manifest["id"] = "X"
        manifest["version"] = "v1"
        manifest["permissions"]["camera"] = ["front"]
        errors = validate_manifest(manifest)
        self.assertTrue(any(e.startswith("id must match") for e in errors))
        self.assertTrue(any("semantic version" in e for e in errors))
        self.assertTrue(any("unsupported entries: camera" in e for e in errors))

    def test_entry_must_stay_inside_plugin_dir(self):
        manifest = _valid_manifest()
        manifest["entry"] = "../outside.py"
        self.assertTrue(any("relative path" in e for e in validate_manifest(manifest)))

    def test_bad_network_host_reported(self):
        manifest = _valid_manifest()
        manifest["permissions"]["network"] = ["https://api.acme.com/v1"]
        self.assertTrue(any(e.startswith("permissions.network:") for e in validate_manifest(manifest)))


class TestPluginManifestParsing(unittest.TestCase):
    def test_parse_fails_closed(self):
        self.assertIsNone(parse_plugin_manifest("{not json"))
        self.assertIsNone(parse_plugin_manifest("[]"))
        self.assertIsNone(parse_plugin_manifest({"id": "a.b.c", "name": "x"}))
        self.assertIsNone(parse_plugin_manifest(None))

    def test_malformed_permission_fields_degrade_to_empty(self):
        manifest = parse_plugin_manifest(
            {"id": "com.acme.plugin", "name": "Acme", "version": "1.0.0", "permissions": {"network": "api.acme.com"}}
        )
        self.assertIsNotNone(manifest)
        self.assertEqual(manifest.permissions.network, [])
        self.assertEqual(build_declared_capabilities(manifest.permissions), [])

    def test_declared_capabilities_from_permissions(self):
        manifest = parse_plugin_manifest(json.dumps(_valid_manifest()))
        caps = build_declared_capabilities(manifest.permissions)
        self.assertEqual(
            caps,
            [
                DeclaredCapability(PERMISSION_NETWORK, "api.acme.com"),
                DeclaredCapability(PERMISSION_SECRET, "acme.api_key"),
                DeclaredCapability(PERMISSION_PROCESS_SPAWN, None),
            ],
        )
        self.assertEqual(build_declared_capabilities(permissions_from_capabilities(caps)), caps)

    def test_checksum_is_stable(self):
        first = parse_plugin_manifest(_valid_manifest())
        second = parse_plugin_manifest(json.dumps(_valid_manifest(), indent=2))
        self.assertEqual(first.checksum(), second.checksum())

    def test_capability_key(self):
        self.assertEqual(capability_key("network", "api.acme.com"), "network::api.acme.com")
        self.assertEqual(capability_key("process_spawn", None), "process_spawn::")


class TestPluginManifestCli(unittest.TestCase):
    def _run(self, manifest_path: Path) -> subprocess.CompletedProcess:
        return subprocess.run(
            [sys.executable, "scripts/validate_plugin_manifest.py", str(manifest_path)],
            cwd=Path(__file__).resolve().parents[1],
            text=True,
            capture_output=True,
            env={"PYTHONPATH": "src"},
            check=False,
        )

    def test_cli_validation(self):
        with tempfile.TemporaryDirectory() as tmp:
            manifest_path = Path(tmp) / "manifest.json"
            manifest_path.write_text(json.dumps(_valid_manifest()), encoding="utf-8")
            result = self._run(manifest_path)
            self.assertEqual(result.returncode, 0)
            self.assertIn("passed", result.stdout.lower())
            self.assertIn("- network (api.acme.com)", result.stdout)

    def test_cli_reports_errors(self):
        with tempfile.TemporaryDirectory() as tmp:
            manifest_path = Path(tmp) / "manifest.json"
            manifest = _valid_manifest()
            manifest["version"] = "latest"
            manifest_path.write_text(json.dumps(manifest), encoding="utf-8")
            self.assertEqual(self._run(manifest_path).returncode, 2)

            manifest_path.write_text("{", encoding="utf-8")
            self.assertEqual(self._run(manifest_path).returncode, 1)
