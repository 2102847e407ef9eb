import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from agent_broker.config import BrokerConfig
from agent_broker.events.event_bus import LifecycleEventBus
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.plugins.crash_guard import CrashGuard
from agent_broker.plugins.loader import PluginHandlerRegistry, PluginLoader
from agent_broker.plugins.registry import PluginCapabilityRegistry
from agent_broker.security.encryption import SecretCipher
from agent_broker.services.audit_log import AuditLog
from agent_broker.services.credential_store import CredentialStore
from agent_broker.services.disclosure_ledger import DisclosureLedger
from agent_broker.services.grant_registry import GrantRegistry
from agent_broker.services.http_executor import SecureHttpRequestExecutor
from agent_broker.services.plugin_lifecycle import PluginLifecycleManager
from agent_broker.services.token_broker import GitHubInstallationTokenProvider, ScopedTokenBroker
from agent_broker.services.trust_mode import TrustModePolicy
from agent_broker.tools import build_default_tool_registry
from agent_broker.tools.base import ToolRegistry
from agent_broker.tools.github import TokenSink

logger = logging.getLogger(__name__)


@dataclass
class BrokerContainer:
    config: BrokerConfig
    store: SqliteBrokerStore
    audit: AuditLog
    credentials: CredentialStore
    executor: SecureHttpRequestExecutor
    trust: TrustModePolicy
    ledger: DisclosureLedger
    registry: PluginCapabilityRegistry
    handlers: PluginHandlerRegistry
    crash_guard: CrashGuard
    plugins: PluginLifecycleManager
    grants: GrantRegistry
    token_provider: GitHubInstallationTokenProvider
    token_broker: ScopedTokenBroker
    tools: ToolRegistry

    async def aclose(self) -> None:
        await self.plugins.wait_for_background_tasks()
        await self.executor.aclose()
        await self.token_provider.aclose()


def build_broker(
    config: BrokerConfig,
    http_client: Optional[httpx.AsyncClient] = None,
    github_client: Optional[httpx.AsyncClient] = None,
    token_sink: Optional[TokenSink] = None,
    event_bus: Optional[LifecycleEventBus] = None,
) -> BrokerContainer:
    """Wire every broker service from one config snapshot.

    The trust mode is read once here and injected into the policy object;
    nothing downstream consults the environment for it.
    """
    config.state_db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("state_db_path=%s trust_mode=%s", config.state_db_path, config.trust_mode)
    store = SqliteBrokerStore(db_path=config.state_db_path)
    audit = AuditLog(store)
    credentials = CredentialStore(store, SecretCipher(config.encryption_key))
    executor = SecureHttpRequestExecutor(
        credentials,
        audit,
        client=http_client,
        default_timeout_ms=config.request_timeout_ms,
        max_timeout_ms=config.max_timeout_ms,
        max_body_chars=config.max_response_body_chars,
    )

    trust = TrustModePolicy(config.trust_mode)
    ledger = DisclosureLedger(store)
    registry = PluginCapabilityRegistry(store, ledger)
    handlers = PluginHandlerRegistry()
    crash_guard = CrashGuard(threshold=config.crash_threshold, window_sec=config.crash_window_sec)
    loader = PluginLoader(handlers, store, crash_guard=crash_guard)
    plugins = PluginLifecycleManager(
        store,
        registry,
        ledger,
        trust,
        loader=loader,
        crash_guard=crash_guard,
        event_bus=event_bus,
    )
    registry.ensure_builtins_registered()

    grants = GrantRegistry(store)
    token_provider = GitHubInstallationTokenProvider(
        app_id=config.github_app_id,
        private_key=config.github_private_key,
        api_base=config.github_api_base,
        client=github_client,
        token_ttl_sec=config.github_token_ttl_sec,
    )
    token_broker = ScopedTokenBroker(grants, audit, token_provider, permission_preset=config.github_permission_preset)
    tools = build_default_tool_registry(
        credentials=credentials,
        executor=executor,
        token_broker=token_broker,
        token_sink=token_sink,
    )
    return BrokerContainer(
        config=config,
        store=store,
        audit=audit,
        credentials=credentials,
        executor=executor,
        trust=trust,
        ledger=ledger,
        registry=registry,
        handlers=handlers,
        crash_guard=crash_guard,
        plugins=plugins,
        grants=grants,
        token_provider=token_provider,
        token_broker=token_broker,
        tools=tools,
    )
