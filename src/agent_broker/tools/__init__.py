from agent_broker.tools.base import ToolContext, ToolRegistry, ToolRequest, ToolResult
from agent_broker.tools.credentials import ListCredentialsTool, SecureHttpRequestTool
from agent_broker.tools.github import ConfigureGitHubCredentialsTool


def build_default_tool_registry(
    credentials=None,
    executor=None,
    token_broker=None,
    token_sink=None,
) -> ToolRegistry:
    """Build the agent tool registry.

    Pass a ``CredentialStore`` for ``list_credentials``, a
    ``SecureHttpRequestExecutor`` for ``secure_http_request`` and a
    ``ScopedTokenBroker`` for ``configure_github_credentials``.
    """
    registry = ToolRegistry()
    if credentials is not None:
        registry.register(ListCredentialsTool(credentials))
    if executor is not None:
        registry.register(SecureHttpRequestTool(executor))
    if token_broker is not None:
        registry.register(ConfigureGitHubCredentialsTool(token_broker, token_sink=token_sink))
    return registry


__all__ = [
    "ToolContext",
    "ToolRegistry",
    "ToolRequest",
    "ToolResult",
    "build_default_tool_registry",
]
