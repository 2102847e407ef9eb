from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from agent_broker.domain.grants import ScopedToken
from agent_broker.errors import BrokerError
from agent_broker.services.permission_mapper import format_permissions
from agent_broker.services.token_broker import ScopedTokenBroker
from agent_broker.tools.base import ToolContext, ToolRequest, ToolResult, error_result

logger = logging.getLogger(__name__)

TokenSink = Callable[[str, ScopedToken], Union[None, Awaitable[None]]]


class ConfigureGitHubCredentialsTool:
    """Mint a repository-scoped GitHub token and hand it to the sandbox writer.

    The token itself goes only to ``token_sink``; tool output describes the
    scope and expiry and never echoes the token.
    """

    name = "configure_github_credentials"
    description = "Mint a short-lived GitHub App token for a repo and configure it in the sandbox."

    def __init__(self, broker: ScopedTokenBroker, token_sink: Optional[TokenSink] = None) -> None:
        self._broker = broker
        self._sink = token_sink

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        if not context.agent_id:
            return ToolResult(ok=False, output="Missing agent identity for credential configuration.")
        if self._sink is None:
            return ToolResult(ok=False, output="No sandbox is available to receive GitHub credentials.")
        repo_name = str(request.args.get("repo_name") or "").strip() or None
        duration: Any = request.args.get("duration")
        ttl_sec = duration if isinstance(duration, int) and not isinstance(duration, bool) and duration > 0 else None
        try:
            token = await self._broker.mint_for_agent(context.agent_id, repo_name=repo_name, ttl_sec=ttl_sec)
        except BrokerError as exc:
            return error_result(exc)

        try:
            outcome = self._sink(context.agent_id, token)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Token sink failed for agent %s", context.agent_id, exc_info=True)
            return ToolResult(ok=False, output=f"Error: could not install GitHub credentials: {type(exc).__name__}")

        return ToolResult(
            ok=True,
            output=(
                "GitHub credentials configured for gh and git. "
                f"Permissions: {format_permissions(token.permissions)}. "
                f"Expires at {token.expires_at.isoformat()}."
            ),
            meta=token.describe(),
        )
