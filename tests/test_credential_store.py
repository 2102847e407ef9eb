import tempfile
import unittest
from pathlib import Path

from agent_broker.domain.audit import (
    CAPABILITY_CREDENTIAL_HTTP_REQUEST,
    EVENT_CREDENTIAL_REQUEST_DENIED,
    EVENT_CREDENTIAL_REQUEST_SUCCESS,
    RESULT_ALLOWED,
    RESULT_DENIED,
)
from agent_broker.errors import ConflictError, NotFound, PreconditionFailed, ValidationError
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.security.encryption import SecretCipher
from agent_broker.services.audit_log import AuditLog
from agent_broker.services.credential_store import CredentialStore
from agent_broker.util import REDACTED_SECRET


class TestCredentialStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteBrokerStore(db_path=Path(self.tmp.name) / "state.db")
        self.cipher = SecretCipher(SecretCipher.generate_key())
        self.credentials = CredentialStore(self.store, self.cipher)

    def tearDown(self):
        self.tmp.cleanup()

    def _create(self, alias="instagram_graph_api", **overrides):
        params = dict(
            alias=alias,
            provider="instagram",
            secret="ig-secret-value",
            allowed_hosts=["graph.facebook.com"],
        )
        params.update(overrides)
        return self.credentials.create_credential(**params)

    def test_create_normalizes_hosts_and_defaults_locations(self):
        record = self._create(allowed_hosts=["Graph.Facebook.com.", "graph.facebook.com"])
        self.assertEqual(record.allowed_hosts, ["graph.facebook.com"])
        self.assertTrue(record.allowed_in_header)
        self.assertFalse(record.allowed_in_query)
        self.assertFalse(record.allowed_in_body)
        self.assertEqual(record.placeholder, "{instagram_graph_api}")
        self.assertNotIn("secret", record.to_dict())

    def test_secret_is_encrypted_at_rest(self):
        record = self._create()
        stored = self.store.get_credential_secret(record.credential_id)
        self.assertTrue(stored.startswith("enc:"))
        self.assertNotIn("ig-secret-value", stored)

    def test_invalid_alias_and_hosts_rejected(self):
        with self.assertRaises(ValidationError):
            self._create(alias="Bad-Alias")
        with self.assertRaises(ValidationError):
            self._create(alias="ok_alias", allowed_hosts=[])
        with self.assertRaises(ValidationError):
            self._create(alias="ok_alias", allowed_hosts=["https://graph.facebook.com/path"])

    def test_duplicate_alias_conflicts(self):
        self._create()
        with self.assertRaises(ConflictError) as ctx:
            self._create()
        self.assertEqual(str(ctx.exception), "Credential alias already exists.")

    def test_update_keeps_secret_for_masked_values(self):
        record = self._create()
        self.credentials.set_assignment(record.credential_id, "agent-1")
        for masked in (None, "", REDACTED_SECRET, "••••••••"):
            self.credentials.update_credential(record.credential_id, secret=masked)
            resolved = self.credentials.resolve_for_use("agent-1", "instagram_graph_api")
            self.assertEqual(resolved.secret, "ig-secret-value")

        self.credentials.update_credential(record.credential_id, secret="rotated", allowed_in_query=True)
        resolved = self.credentials.resolve_for_use("agent-1", "instagram_graph_api")
        self.assertEqual(resolved.secret, "rotated")
        self.assertTrue(resolved.record.allowed_in_query)

    def test_update_rejects_unknown_fields(self):
        record = self._create()
        with self.assertRaises(ValidationError):
            self.credentials.update_credential(record.credential_id, colour="blue")
        with self.assertRaises(NotFound):
            self.credentials.update_credential("missing", provider="x")

    def test_resolve_requires_enabled_assignment_and_credential(self):
        record = self._create()
        self.assertIsNone(self.credentials.resolve_for_use("agent-1", "instagram_graph_api"))

        self.credentials.set_assignment(record.credential_id, "agent-1", enabled=True)
        self.assertIsNotNone(self.credentials.resolve_for_use("agent-1", "instagram_graph_api"))
        self.assertIsNone(self.credentials.resolve_for_use("agent-2", "instagram_graph_api"))

        self.credentials.set_assignment(record.credential_id, "agent-1", enabled=False)
        self.assertIsNone(self.credentials.resolve_for_use("agent-1", "instagram_graph_api"))

        self.credentials.set_assignment(record.credential_id, "agent-1", enabled=True)
        self.credentials.update_credential(record.credential_id, enabled=False)
        self.assertIsNone(self.credentials.resolve_for_use("agent-1", "instagram_graph_api"))

    def test_list_for_agent_only_returns_assigned(self):
        first = self._create()
        self._create(alias="other_api", provider="other", allowed_hosts=["api.other.com"])
        self.credentials.set_assignment(first.credential_id, "agent-1")
        aliases = [r.alias for r in self.credentials.list_for_agent("agent-1")]
        self.assertEqual(aliases, ["instagram_graph_api"])

    def test_delete_assigned_requires_force(self):
        record = self._create()
        self.credentials.set_assignment(record.credential_id, "agent-1")
        with self.assertRaises(PreconditionFailed) as ctx:
            self.credentials.delete_credential(record.credential_id)
        self.assertEqual(ctx.exception.reason, "credential_assigned")

        self.assertTrue(self.credentials.delete_credential(record.credential_id, force=True))
        self.assertIsNone(self.credentials.resolve_for_use("agent-1", "instagram_graph_api"))
        with self.assertRaises(NotFound):
            self.credentials.get_credential(record.credential_id)

    def test_usage_summary_counts_audit_outcomes(self):
        record = self._create()
        audit = AuditLog(self.store)
        for event_type, result in (
            (EVENT_CREDENTIAL_REQUEST_SUCCESS, RESULT_ALLOWED),
            (EVENT_CREDENTIAL_REQUEST_SUCCESS, RESULT_ALLOWED),
            (EVENT_CREDENTIAL_REQUEST_DENIED, RESULT_DENIED),
        ):
            audit.record(
                event_type=event_type,
                agent_id="agent-1",
                result=result,
                capability=CAPABILITY_CREDENTIAL_HTTP_REQUEST,
                metadata={},
                resource_id=record.credential_id,
            )
        summary = self.credentials.usage_summary(record.credential_id)
        self.assertEqual(summary.total_calls, 3)
        self.assertEqual(summary.success_count, 2)
        self.assertEqual(summary.denied_count, 1)
        self.assertEqual(summary.fail_count, 0)
        self.assertEqual(summary.last_status, "denied")


class TestSecretCipher(unittest.TestCase):
    def test_round_trip_and_plaintext_passthrough(self):
        cipher = SecretCipher("0123456789abcdef0123456789abcdef")
        token = cipher.encrypt("value")
        self.assertTrue(SecretCipher.is_encrypted(token))
        self.assertEqual(cipher.decrypt(token), "value")
        self.assertEqual(cipher.decrypt("legacy-plain"), "legacy-plain")

    def test_without_key_stores_plaintext_and_cannot_decrypt(self):
        cipher = SecretCipher()
        self.assertFalse(cipher.enabled)
        self.assertEqual(cipher.encrypt("value"), "value")
        token = SecretCipher(SecretCipher.generate_key()).encrypt("value")
        with self.assertRaises(RuntimeError):
            cipher.decrypt(token)

    def test_bad_key_length_rejected(self):
        with self.assertRaises(ValueError):
            SecretCipher("short")
