import json
import tempfile
import unittest
from pathlib import Path

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from agent_broker.domain.audit import (
    EVENT_CAPABILITY_CHECK_FAIL,
    EVENT_CAPABILITY_CHECK_PASS,
    EVENT_TOKEN_MINT_FAIL,
    EVENT_TOKEN_MINT_SUCCESS,
)
from agent_broker.errors import NotFound, PolicyDenied, TokenMintError, ValidationError
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.services.audit_log import AuditLog
from agent_broker.services.grant_registry import GrantRegistry
from agent_broker.services.token_broker import GitHubInstallationTokenProvider, ScopedTokenBroker

MINTED_TOKEN = "ghs_" + "A1b2C3d4E5" * 4


def _private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


PRIVATE_KEY = _private_key_pem()


class _Clock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


class TestScopedTokenBroker(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteBrokerStore(db_path=Path(self.tmp.name) / "state.db")
        self.audit = AuditLog(self.store)
        self.grants = GrantRegistry(self.store)
        self.grants.register_installation(42, "acme")
        self.grants.register_repository(1001, 42, "acme/widgets")
        self.calls = []
        self.responder = self._ok
        self.clock = _Clock()

    def tearDown(self):
        self.tmp.cleanup()

    def _ok(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"token": MINTED_TOKEN, "expires_at": "2099-01-01T00:00:00Z"})

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.responder(request)

    def _broker(self, app_id="12345", preset="read-write") -> ScopedTokenBroker:
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handler))
        provider = GitHubInstallationTokenProvider(
            app_id=app_id,
            private_key=PRIVATE_KEY if app_id else None,
            api_base="https://api.github.test",
            client=self.client,
            token_ttl_sec=3600,
            clock=self.clock,
        )
        return ScopedTokenBroker(self.grants, self.audit, provider, permission_preset=preset)

    async def asyncTearDown(self):
        if getattr(self, "client", None) is not None:
            await self.client.aclose()

    async def test_mint_for_agent_requests_mapped_permissions(self):
        self.grants.set_grant("agent-1", 1001, ["read_repo", "push_branch", "open_pr"])
        token = await self._broker().mint_for_agent("agent-1")

        self.assertEqual(token.token, MINTED_TOKEN)
        self.assertEqual(token.source, "mint")
        self.assertEqual(token.repository_ids, [1001])
        self.assertEqual(len(self.calls), 1)
        request = self.calls[0]
        self.assertEqual(request.url.path, "/app/installations/42/access_tokens")
        self.assertEqual(request.headers["accept"], "application/vnd.github+json")
        body = json.loads(request.content)
        self.assertEqual(body["repository_ids"], [1001])
        self.assertEqual(
            body["permissions"],
            {"contents": "write", "pull_requests": "write", "checks": "read", "actions": "read"},
        )
        app_jwt = request.headers["authorization"].split(" ", 1)[1]
        claims = jwt.get_unverified_claims(app_jwt)
        self.assertEqual(claims["iss"], "12345")
        self.assertEqual(claims["exp"] - claims["iat"], 600)

        types = [e.event_type for e in reversed(self.audit.list())]
        self.assertEqual(types, [EVENT_CAPABILITY_CHECK_PASS, EVENT_TOKEN_MINT_SUCCESS])
        for entry in self.audit.list():
            self.assertNotIn(MINTED_TOKEN, json.dumps(entry.metadata))
        passed = self.audit.list(event_type=EVENT_CAPABILITY_CHECK_PASS)[0]
        self.assertEqual(passed.resource_id, "1001")
        self.assertEqual(passed.metadata["repository"], "acme/widgets")

    async def test_cached_token_reused_until_skew_window(self):
        self.grants.set_grant("agent-1", 1001, ["read_repo"])
        broker = self._broker()
        first = await broker.mint_for_agent("agent-1", repo_name="acme/widgets")
        second = await broker.mint_for_agent("agent-1", repo_name="acme/widgets")
        self.assertEqual(second.source, "cache")
        self.assertEqual(second.token, first.token)
        self.assertEqual(len(self.calls), 1)

        self.clock.now += 3600 - 29
        third = await broker.mint_for_agent("agent-1")
        self.assertEqual(third.source, "mint")
        self.assertEqual(len(self.calls), 2)

    async def test_empty_grant_is_denied_without_provider_call(self):
        self.grants.set_grant("agent-1", 1001, [])
        with self.assertRaises(PolicyDenied) as ctx:
            await self._broker().mint_for_agent("agent-1")
        self.assertEqual(ctx.exception.reason, "no_scoped_capabilities")
        self.assertEqual(
            str(ctx.exception), "Access denied: no scoped capabilities configured for this repository."
        )
        self.assertEqual(self.calls, [])
        failed = self.audit.list(event_type=EVENT_CAPABILITY_CHECK_FAIL)
        self.assertEqual(len(failed), 1)
        self.assertFalse(failed[0].metadata["allowed"])

    async def test_mint_rejects_permissions_above_current_grant(self):
        self.grants.set_grant("agent-1", 1001, ["read_repo"])
        with self.assertRaises(PolicyDenied) as ctx:
            await self._broker().mint("agent-1", 42, [1001], {"contents": "write"})
        self.assertEqual(ctx.exception.reason, "permissions_exceed_grant")
        self.assertEqual(self.calls, [])

    async def test_missing_scope_failure_includes_hint_and_preset(self):
        self.grants.set_grant("agent-1", 1001, ["read_repo", "merge_pr"])
        self.responder = lambda request: httpx.Response(
            422, json={"message": "The permissions requested are not granted to this installation."}
        )
        with self.assertRaises(TokenMintError) as ctx:
            await self._broker(preset="read-write").mint_for_agent("agent-1")
        message = str(ctx.exception)
        self.assertIn("lacks required scopes", message)
        self.assertIn("pull_requests:write", message)
        self.assertIn("Configured default permission preset: read-write.", message)
        self.assertIn("Original error: Failed to mint GitHub token (422)", message)
        self.assertEqual(ctx.exception.status, 422)

        failed = self.audit.list(event_type=EVENT_TOKEN_MINT_FAIL)
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].metadata["status"], 422)
        self.assertEqual(failed[0].metadata["configuredPreset"], "read-write")

    async def test_unconfigured_app_fails_cleanly(self):
        self.grants.set_grant("agent-1", 1001, ["read_repo"])
        with self.assertRaises(TokenMintError) as ctx:
            await self._broker(app_id=None).mint_for_agent("agent-1")
        self.assertIn("GitHub App credentials are not configured", str(ctx.exception))
        self.assertEqual(self.calls, [])


class TestGrantRegistry(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.grants = GrantRegistry(SqliteBrokerStore(db_path=Path(self.tmp.name) / "state.db"))
        self.grants.register_installation(42, "acme")
        self.grants.register_repository(1001, 42, "acme/widgets")
        self.grants.register_repository(1002, 42, "acme/gadgets")

    def tearDown(self):
        self.tmp.cleanup()

    def test_set_grant_validates_and_dedupes(self):
        grant = self.grants.set_grant("agent-1", 1001, ["read_repo", "read_repo", "comment"])
        self.assertEqual(grant.capabilities, ["read_repo", "comment"])
        with self.assertRaises(ValidationError):
            self.grants.set_grant("agent-1", 1001, ["delete_repo"])
        with self.assertRaises(NotFound):
            self.grants.set_grant("agent-1", 9999, ["read_repo"])

    def test_register_repository_validation(self):
        with self.assertRaises(ValidationError):
            self.grants.register_repository(1003, 42, "no-owner")
        with self.assertRaises(NotFound):
            self.grants.register_repository(1003, 7, "acme/other")
        with self.assertRaises(ValidationError):
            self.grants.register_installation(0, "nobody")

    def test_resolve_repository(self):
        with self.assertRaises(NotFound):
            self.grants.resolve_repository("agent-1")
        self.grants.set_grant("agent-1", 1001, ["read_repo"])
        self.assertEqual(self.grants.resolve_repository("agent-1").full_name, "acme/widgets")
        self.grants.set_grant("agent-1", 1002, ["read_repo"])
        with self.assertRaises(ValidationError) as ctx:
            self.grants.resolve_repository("agent-1")
        self.assertEqual(str(ctx.exception), "Multiple repositories available. Provide repo_name to select one.")
        self.assertEqual(self.grants.resolve_repository("agent-1", "ACME/Gadgets").repo_id, 1002)
        with self.assertRaises(NotFound):
            self.grants.resolve_repository("agent-1", "acme/missing")
