import json
import tempfile
import unittest
from pathlib import Path

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from agent_broker.app_container import build_broker
from agent_broker.config import BrokerConfig
from agent_broker.tools import build_default_tool_registry
from agent_broker.tools.base import ToolContext, ToolRequest

SECRET = "weather-key-123456"
GITHUB_TOKEN = "ghs_" + "Z9y8X7w6V5" * 4


def _private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


class TestAgentTools(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.sunk = []

        def api(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"echo": request.url.params.get("appid"), "temp": 21})

        def github(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json={"token": GITHUB_TOKEN, "expires_at": "2099-01-01T00:00:00Z"})

        config = BrokerConfig(
            config_dir=root,
            state_db_path=root / "state.db",
            github_app_id="777",
            github_private_key=_private_key_pem(),
        )
        self.github_client = httpx.AsyncClient(transport=httpx.MockTransport(github))
        self.container = build_broker(
            config,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
            github_client=self.github_client,
            token_sink=lambda agent_id, token: self.sunk.append((agent_id, token.token)),
        )
        record = self.container.credentials.create_credential(
            alias="weather_api",
            provider="openweather",
            secret=SECRET,
            allowed_hosts=["api.openweathermap.org"],
            allowed_in_header=False,
            allowed_in_query=True,
        )
        self.container.credentials.set_assignment(record.credential_id, "agent-1")
        self.ctx = ToolContext(agent_id="agent-1", session_id="s-1")

    async def asyncTearDown(self):
        await self.container.aclose()
        await self.github_client.aclose()
        self.tmp.cleanup()

    async def test_registry_exposes_schemas(self):
        tools = self.container.tools
        self.assertEqual(tools.names(), ["configure_github_credentials", "list_credentials", "secure_http_request"])
        schema_names = [s["name"] for s in tools.tool_schemas()]
        self.assertEqual(schema_names, tools.names())

    async def test_list_credentials_never_returns_secret(self):
        result = await self.container.tools.invoke(ToolRequest(name="list_credentials", args={}), self.ctx)
        self.assertTrue(result.ok)
        self.assertNotIn(SECRET, result.output)
        rows = json.loads(result.output)
        self.assertEqual(rows[0]["alias"], "weather_api")
        self.assertEqual(rows[0]["placeholder"], "{weather_api}")
        self.assertEqual(result.meta["count"], 1)

        other = await self.container.tools.invoke(
            ToolRequest(name="list_credentials", args={}), ToolContext(agent_id="agent-2")
        )
        self.assertEqual(json.loads(other.output), [])

    async def test_secure_http_request_redacts_echoed_secret(self):
        result = await self.container.tools.invoke(
            ToolRequest(
                name="secure_http_request",
                args={
                    "credential_alias": "weather_api",
                    "url": "https://api.openweathermap.org/data/2.5/weather",
                    "query": {"q": "Prague", "appid": "{weather_api}"},
                },
            ),
            self.ctx,
        )
        self.assertTrue(result.ok, result.output)
        self.assertNotIn(SECRET, result.output)
        self.assertEqual(result.meta["status"], 200)
        self.assertEqual(result.meta["usage"]["provider"], "openweather")
        body = json.loads(json.loads(result.output)["body"])
        self.assertEqual(body["echo"], "[REDACTED_SECRET]")

    async def test_secure_http_request_denial_is_a_tool_error(self):
        result = await self.container.tools.invoke(
            ToolRequest(
                name="secure_http_request",
                args={
                    "credential_alias": "weather_api",
                    "url": "https://api.openweathermap.org/data/2.5/weather",
                    "headers": {"X-Key": "{weather_api}"},
                },
            ),
            self.ctx,
        )
        self.assertFalse(result.ok)
        self.assertIn("headers", result.output)
        self.assertEqual(result.meta["code"], "DENIED")
        self.assertEqual(result.meta["reason"], "secret_location_not_allowed")

    async def test_configure_github_credentials_hands_token_to_sink_only(self):
        self.container.grants.register_installation(9, "acme")
        self.container.grants.register_repository(55, 9, "acme/site")
        self.container.grants.set_grant("agent-1", 55, ["read_repo", "comment"])

        result = await self.container.tools.invoke(
            ToolRequest(name="configure_github_credentials", args={"repo_name": "acme/site", "duration": 600}),
            self.ctx,
        )
        self.assertTrue(result.ok, result.output)
        self.assertNotIn(GITHUB_TOKEN, result.output)
        self.assertNotIn(GITHUB_TOKEN, json.dumps(result.meta))
        self.assertIn("contents:read, issues:write", result.output)
        self.assertEqual(self.sunk, [("agent-1", GITHUB_TOKEN)])
        self.assertEqual(result.meta["repositoryIds"], [55])

    async def test_configure_github_credentials_without_grant(self):
        self.container.grants.register_installation(9, "acme")
        self.container.grants.register_repository(55, 9, "acme/site")
        self.container.grants.set_grant("agent-1", 55, [])
        result = await self.container.tools.invoke(
            ToolRequest(name="configure_github_credentials", args={}), self.ctx
        )
        self.assertFalse(result.ok)
        self.assertEqual(result.meta["reason"], "no_scoped_capabilities")
        self.assertEqual(self.sunk, [])

    async def test_unknown_tool(self):
        result = await self.container.tools.invoke(ToolRequest(name="rm_rf", args={}), self.ctx)
        self.assertFalse(result.ok)
        self.assertEqual(result.meta["code"], "NOT_FOUND")


class TestToolRegistryWithoutSink(unittest.IsolatedAsyncioTestCase):
    async def test_missing_sink_is_reported(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            container = build_broker(BrokerConfig(config_dir=root, state_db_path=root / "state.db"))
            try:
                result = await container.tools.invoke(
                    ToolRequest(name="configure_github_credentials", args={}), ToolContext(agent_id="agent-1")
                )
            finally:
                await container.aclose()
        self.assertFalse(result.ok)
        self.assertEqual(result.output, "No sandbox is available to receive GitHub credentials.")

    async def test_partial_registry(self):
        registry = build_default_tool_registry()
        self.assertEqual(registry.names(), [])
