from __future__ import annotations

import logging

from agent_broker.errors import BrokerError
from agent_broker.services.credential_store import CredentialStore
from agent_broker.services.http_executor import SecureHttpRequest, SecureHttpRequestExecutor
from agent_broker.tools.base import ToolContext, ToolRequest, ToolResult, error_result, json_result

logger = logging.getLogger(__name__)


class ListCredentialsTool:
    """Credentials this agent may use; never includes secret values."""

    name = "list_credentials"
    description = "List credentials assigned to the agent with their placeholders and policy."

    def __init__(self, credentials: CredentialStore) -> None:
        self._credentials = credentials

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        if not context.agent_id:
            return ToolResult(ok=False, output="Missing agent identity for list_credentials.")
        provider = str(request.args.get("provider") or "").strip() or None
        records = self._credentials.list_for_agent(context.agent_id, provider=provider)
        rows = []
        for record in records:
            row = record.to_dict()
            row.pop("createdAt", None)
            row.pop("updatedAt", None)
            rows.append(row)
        return json_result(rows, count=len(rows))


class SecureHttpRequestTool:
    name = "secure_http_request"
    description = "Make a credentialed HTTP request with the secret substituted for its placeholder."

    def __init__(self, executor: SecureHttpRequestExecutor) -> None:
        self._executor = executor

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        args = request.args
        timeout = args.get("timeout_ms")
        try:
            response = await self._executor.execute(
                SecureHttpRequest(
                    agent_id=context.agent_id,
                    credential_alias=str(args.get("credential_alias") or ""),
                    url=str(args.get("url") or ""),
                    method=str(args.get("method") or "GET"),
                    headers=args.get("headers"),  # type: ignore[arg-type]
                    query=args.get("query"),  # type: ignore[arg-type]
                    body_json=args.get("body_json"),
                    body_text=args.get("body_text"),  # type: ignore[arg-type]
                    timeout_ms=timeout if isinstance(timeout, int) else None,
                )
            )
        except BrokerError as exc:
            return error_result(exc)
        payload = response.to_dict()
        usage = payload.pop("usage")
        return json_result(payload, status=response.status, usage=usage)
