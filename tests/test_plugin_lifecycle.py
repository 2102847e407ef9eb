import json
import tempfile
import unittest
from pathlib import Path

from agent_broker.config import TRUST_MODE_SAAS_LOCKED, TRUST_MODE_SELF_HOST_GUARDED, TRUST_MODE_SELF_HOST_OPEN
from agent_broker.errors import ConsentRequired, Forbidden, NotFound, TrustModeBlocked, ValidationError
from agent_broker.events.event_bus import LifecycleEventBus
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.plugins.crash_guard import CrashGuard
from agent_broker.plugins.loader import PluginHandlerRegistry, PluginLoader
from agent_broker.plugins.registry import PluginCapabilityRegistry
from agent_broker.services.disclosure_ledger import DisclosureLedger
from agent_broker.services.plugin_lifecycle import PluginLifecycleManager
from agent_broker.services.trust_mode import TrustModePolicy

NETWORK_CAP = [{"permission": "network", "scope": "api.acme.com"}]


class _Harness:
    def __init__(self, db_path: Path, trust_mode: str = TRUST_MODE_SELF_HOST_GUARDED, crash_threshold: int = 5):
        self.store = SqliteBrokerStore(db_path=db_path)
        self.ledger = DisclosureLedger(self.store)
        self.registry = PluginCapabilityRegistry(self.store, self.ledger)
        self.handlers = PluginHandlerRegistry()
        self.crash_guard = CrashGuard(threshold=crash_threshold, window_sec=300)
        self.bus = LifecycleEventBus()
        self.events = []
        self.bus.subscribe(self.events.append)
        self.manager = PluginLifecycleManager(
            self.store,
            self.registry,
            self.ledger,
            TrustModePolicy(trust_mode),
            loader=PluginLoader(self.handlers, self.store, crash_guard=self.crash_guard),
            crash_guard=self.crash_guard,
            event_bus=self.bus,
        )
        self.registry.ensure_builtins_registered()


class TestPluginLifecycleManager(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "state.db"
        self.h = _Harness(self.db_path)
        self.mgr = self.h.manager

    async def asyncTearDown(self):
        await self.mgr.wait_for_background_tasks()

    def tearDown(self):
        self.tmp.cleanup()

    async def _install_acme(self, mgr=None):
        return await (mgr or self.mgr).install_plugin(
            plugin_id="com.acme.plugin",
            name="Acme Plugin",
            source_kind="npm",
            source_ref="@acme/plugin",
            declared_capabilities=NETWORK_CAP,
        )

    async def test_enable_with_consent_acknowledges_every_disclosure(self):
        result = await self._install_acme()
        self.assertFalse(result.enabled)
        self.assertEqual(len(result.declared_capabilities), 1)
        self.assertEqual(len(self.mgr.unacknowledged_disclosures("com.acme.plugin")), 1)

        record = await self.mgr.enable_plugin("com.acme.plugin", consent_accepted=True)
        self.assertTrue(record.enabled)

        detail = self.mgr.get_plugin("com.acme.plugin")
        self.assertEqual(detail["declaredCapabilityCount"], 1)
        self.assertEqual(detail["acknowledgedDisclosureCount"], detail["declaredCapabilityCount"])
        self.assertEqual(self.mgr.unacknowledged_disclosures("com.acme.plugin"), [])
        self.assertTrue(detail["declaredCapabilities"][0]["acknowledged"])
        self.assertEqual(detail["executionMode"], "in_process")
        self.assertEqual(detail["plugin"]["trustLevel"], "untrusted")

        enable_event = next(e for e in detail["recentEvents"] if e["eventType"] == "enable")
        self.assertEqual(enable_event["status"], "ok")
        self.assertTrue(enable_event["detail"]["consentAccepted"])
        self.assertEqual(
            enable_event["detail"]["unacknowledgedDisclosures"], [{"permission": "network", "scope": "api.acme.com"}]
        )

    async def test_consent_required_even_when_disclosures_acknowledged(self):
        await self._install_acme()
        self.h.ledger.acknowledge("com.acme.plugin")
        self.assertEqual(self.mgr.unacknowledged_disclosures("com.acme.plugin"), [])

        with self.assertRaises(ConsentRequired):
            await self.mgr.enable_plugin("com.acme.plugin")
        with self.assertRaises(ConsentRequired):
            await self.mgr.enable_plugin("com.acme.plugin", consent_accepted="yes")
        self.assertFalse(self.h.store.get_plugin("com.acme.plugin").enabled)

    async def test_saas_locked_install_blocked_with_single_event(self):
        locked = _Harness(self.db_path, trust_mode=TRUST_MODE_SAAS_LOCKED)
        with self.assertRaises(TrustModeBlocked) as ctx:
            await self._install_acme(locked.manager)
        self.assertEqual(str(ctx.exception), "Third-party plugin install is disabled in saas_locked mode.")
        self.assertEqual(locked.store.count_plugin_events("com.acme.plugin"), 1)
        self.assertEqual(locked.store.count_plugin_events("com.acme.plugin", "install", "blocked"), 1)
        self.assertIsNone(locked.store.get_plugin("com.acme.plugin"))
        self.assertEqual([(e.event_type, e.status) for e in locked.events], [("install", "blocked")])

    async def test_saas_locked_enable_blocked_with_single_event(self):
        await self._install_acme()
        locked = _Harness(self.db_path, trust_mode=TRUST_MODE_SAAS_LOCKED)
        with self.assertRaises(TrustModeBlocked):
            await locked.manager.enable_plugin("com.acme.plugin", consent_accepted=True)
        self.assertEqual(locked.store.count_plugin_events("com.acme.plugin", "enable", "blocked"), 1)
        self.assertEqual(locked.store.count_plugin_events("com.acme.plugin", "enable"), 1)
        self.assertFalse(locked.store.get_plugin("com.acme.plugin").enabled)

    async def test_saas_locked_still_allows_builtins(self):
        locked = _Harness(self.db_path, trust_mode=TRUST_MODE_SAAS_LOCKED)
        record = await locked.manager.enable_plugin("builtin.github")
        self.assertTrue(record.enabled)
        listing = locked.manager.list_plugins()
        self.assertEqual(listing["runtimeBadgeLabel"], "Locked (builtin only)")
        self.assertEqual(len(listing["effectiveLimitations"]), 2)

    async def test_builtin_source_kind_reserved_for_platform_ids(self):
        with self.assertRaises(Forbidden) as ctx:
            await self.mgr.install_plugin(plugin_id="com.acme.plugin", name="Acme", source_kind="builtin")
        self.assertEqual(ctx.exception.reason, "builtin_id_required")

        result = await self.mgr.install_plugin(plugin_id="builtin.telegram", name="Telegram", source_kind="builtin")
        self.assertTrue(result.enabled)
        self.assertEqual(self.mgr.unacknowledged_disclosures("builtin.telegram"), [])

    async def test_third_party_install_cannot_take_builtin_id(self):
        before = self.h.store.get_plugin("builtin.github")
        with self.assertRaises(Forbidden) as ctx:
            await self.mgr.install_plugin(
                plugin_id="builtin.github",
                name="Evil",
                source_kind="local",
                source_ref="/tmp/evil",
                declared_capabilities=[{"permission": "process_spawn", "scope": "sh"}],
            )
        self.assertEqual(ctx.exception.reason, "builtin_id_reserved")

        after = self.h.store.get_plugin("builtin.github")
        self.assertEqual(after.source_kind, "builtin")
        self.assertEqual(after.trust_level, before.trust_level)
        self.assertEqual(after.name, before.name)
        self.assertEqual(after.enabled, before.enabled)
        self.h.registry.ensure_builtins_registered()
        permissions = {ack.permission for ack in self.h.ledger.list_acks("builtin.github")}
        self.assertNotIn("process_spawn", permissions)

    async def test_existing_builtin_row_cannot_become_third_party(self):
        self.h.store.upsert_plugin(
            plugin_id="com.legacy.plugin",
            name="Legacy",
            source_kind="builtin",
            source_ref="builtin",
            trust_level="builtin",
            current_version="1.0.0",
            current_checksum="x",
            install_path="builtin://com.legacy.plugin",
            manifest_json="{}",
            enabled=True,
        )
        with self.assertRaises(Forbidden) as ctx:
            await self.mgr.install_plugin(plugin_id="com.legacy.plugin", name="Legacy", source_kind="npm")
        self.assertEqual(ctx.exception.reason, "builtin_id_reserved")
        self.assertEqual(self.h.store.get_plugin("com.legacy.plugin").source_kind, "builtin")

    async def test_builtins_cannot_be_deleted(self):
        with self.assertRaises(Forbidden):
            await self.mgr.delete_plugin("builtin.github")
        with self.assertRaises(NotFound):
            await self.mgr.delete_plugin("com.missing.plugin")

        await self._install_acme()
        self.assertTrue(await self.mgr.delete_plugin("com.acme.plugin"))
        self.assertIsNone(self.h.store.get_plugin("com.acme.plugin"))

    async def test_install_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            await self.mgr.install_plugin(plugin_id="com.acme.plugin", name="Acme", source_kind="ftp")
        with self.assertRaises(ValidationError):
            await self.mgr.install_plugin(
                plugin_id="com.acme.plugin",
                name="Acme",
                source_kind="npm",
                declared_capabilities=[{"permission": "camera", "scope": "front"}],
            )
        with self.assertRaises(ValidationError):
            await self.mgr.install_plugin(
                plugin_id="com.acme.plugin",
                name="Acme",
                source_kind="upload",
                manifest_json=json.dumps({"id": "com.acme.plugin", "name": "Acme", "version": "one"}),
            )

    async def test_reinstall_resets_third_party_to_disabled(self):
        await self._install_acme()
        await self.mgr.enable_plugin("com.acme.plugin", consent_accepted=True)
        result = await self.mgr.install_plugin(
            plugin_id="com.acme.plugin",
            name="Acme Plugin",
            source_kind="npm",
            source_ref="@acme/plugin",
            version="1.1.0",
            declared_capabilities=NETWORK_CAP + [{"permission": "secret", "scope": "acme.api_key"}],
        )
        self.assertFalse(result.enabled)
        pending = self.mgr.unacknowledged_disclosures("com.acme.plugin")
        self.assertEqual([(c.permission, c.scope) for c in pending], [("secret", "acme.api_key")])
        versions = [v["version"] for v in self.mgr.get_plugin("com.acme.plugin")["versions"]]
        self.assertEqual(sorted(versions), ["1.0.0", "1.1.0"])

    async def test_events_are_published_and_paginated(self):
        await self._install_acme()
        await self.mgr.enable_plugin("com.acme.plugin", consent_accepted=True)
        await self.mgr.disable_plugin("com.acme.plugin")
        await self.mgr.enable_plugin("com.acme.plugin", consent_accepted=True)
        await self.mgr.disable_plugin("com.acme.plugin")

        self.assertEqual(
            [e.event_type for e in self.h.events], ["install", "enable", "disable", "enable", "disable"]
        )

        seen = []
        cursor = None
        pages = 0
        while True:
            page = self.mgr.list_plugin_events("com.acme.plugin", limit=2, cursor=cursor)
            pages += 1
            seen.extend(e["id"] for e in page["events"])
            cursor = page["nextCursor"]
            if cursor is None:
                break
        self.assertEqual(pages, 3)
        self.assertEqual(seen, sorted(seen, reverse=True))
        self.assertEqual(len(set(seen)), 5)

    async def test_failing_subscriber_is_contained_and_can_unsubscribe(self):
        def broken(event):
            raise RuntimeError("subscriber down")

        self.h.bus.subscribe(broken)
        await self._install_acme()
        self.h.bus.unsubscribe(self.h.events.append)
        await self.mgr.disable_plugin("com.acme.plugin")
        self.assertEqual([e.event_type for e in self.h.events], ["install"])

    async def test_list_plugins_reports_posture_and_counts(self):
        await self._install_acme()
        listing = self.mgr.list_plugins()
        self.assertEqual(listing["trustMode"], TRUST_MODE_SELF_HOST_GUARDED)
        self.assertEqual(listing["runtimeBadgeLabel"], "Guarded (in-process)")
        by_id = {p["id"]: p for p in listing["plugins"]}
        self.assertIn("builtin.github", by_id)
        self.assertIn("builtin.telegram", by_id)
        self.assertEqual(by_id["builtin.github"]["acknowledgedDisclosureCount"], 2)
        self.assertEqual(by_id["com.acme.plugin"]["declaredCapabilityCount"], 1)
        self.assertEqual(by_id["com.acme.plugin"]["acknowledgedDisclosureCount"], 0)


class TestPluginHotLoad(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.plugin_dir = root / "acme-local"
        self.plugin_dir.mkdir()
        self.manifest = {
            "schemaVersion": 1,
            "id": "com.acme.local",
            "name": "Acme Local",
            "version": "0.1.0",
            "entry": "plugin.py",
            "permissions": {"network": ["api.acme.com"]},
        }
        self.db_path = root / "state.db"

    def tearDown(self):
        self.tmp.cleanup()

    async def test_enable_hot_loads_and_disable_unloads(self):
        (self.plugin_dir / "plugin.py").write_text(
            "def register(registry):\n    registry.register({'name': 'acme-local'})\n",
            encoding="utf-8",
        )
        h = _Harness(self.db_path, trust_mode=TRUST_MODE_SELF_HOST_OPEN)
        await h.manager.install_plugin(
            plugin_id="com.acme.local",
            name="Acme Local",
            source_kind="local",
            source_ref=str(self.plugin_dir),
            manifest_json=json.dumps(self.manifest),
        )
        await h.manager.wait_for_background_tasks()
        self.assertIsNone(h.handlers.get("com.acme.local"))

        await h.manager.enable_plugin("com.acme.local", consent_accepted=True)
        await h.manager.wait_for_background_tasks()
        self.assertEqual(h.handlers.get("com.acme.local"), {"name": "acme-local"})
        record = h.store.get_plugin("com.acme.local")
        self.assertIsNotNone(record.last_loaded_at)
        self.assertEqual(h.store.count_plugin_events("com.acme.local", "load", "ok"), 1)

        await h.manager.disable_plugin("com.acme.local")
        self.assertIsNone(h.handlers.get("com.acme.local"))

    async def test_repeated_load_failures_auto_disable(self):
        (self.plugin_dir / "plugin.py").write_text("raise RuntimeError('broken plugin')\n", encoding="utf-8")
        h = _Harness(self.db_path, crash_threshold=1)
        await h.manager.install_plugin(
            plugin_id="com.acme.local",
            name="Acme Local",
            source_kind="local",
            source_ref=str(self.plugin_dir),
            manifest_json=json.dumps(self.manifest),
        )
        record = await h.manager.enable_plugin("com.acme.local", consent_accepted=True)
        self.assertTrue(record.enabled)
        await h.manager.wait_for_background_tasks()

        stored = h.store.get_plugin("com.acme.local")
        self.assertFalse(stored.enabled)
        self.assertEqual(stored.last_load_error, "broken plugin")
        self.assertEqual(h.store.count_plugin_events("com.acme.local", "load", "error"), 1)
        self.assertEqual(h.store.count_plugin_events("com.acme.local", "auto_disable", "error"), 1)
        auto = [e for e in h.events if e.event_type == "auto_disable"]
        self.assertEqual(auto[0].detail["reason"], "crash_loop")
