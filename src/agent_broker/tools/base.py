from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from agent_broker.errors import BrokerError


@dataclass(frozen=True)
class ToolRequest:
    name: str
    args: Dict[str, object]


@dataclass(frozen=True)
class ToolContext:
    agent_id: str
    session_id: str = ""
    run_id: str = ""


@dataclass(frozen=True)
class ToolResult:
    ok: bool
    output: str
    meta: Dict[str, Any] = field(default_factory=dict)


class Tool(Protocol):
    name: str

    async def arun(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        ...


def error_result(exc: BrokerError) -> ToolResult:
    meta: Dict[str, Any] = {"code": exc.code}
    if exc.reason:
        meta["reason"] = exc.reason
    elapsed = getattr(exc, "elapsed_ms", None)
    if elapsed is not None:
        meta["elapsedMs"] = elapsed
    return ToolResult(ok=False, output=f"Error: {exc.message}", meta=meta)


def json_result(payload: Any, **meta: Any) -> ToolResult:
    return ToolResult(ok=True, output=json.dumps(payload, ensure_ascii=False, indent=2), meta=dict(meta))


# Anthropic-style tool definitions offered for native function calling.
NATIVE_TOOL_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "list_credentials": {
        "name": "list_credentials",
        "description": (
            "List credentials assigned to this agent. Returns aliases, allowed hosts, and where the "
            "{alias} placeholder may be used. Secrets are never returned."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "provider": {"type": "string", "description": "Optional provider filter"},
            },
            "required": [],
        },
    },
    "secure_http_request": {
        "name": "secure_http_request",
        "description": (
            "Make an HTTP request using a stored credential. Put the {alias} placeholder where the secret "
            "belongs (header, query, or body as allowed); the broker substitutes it and redacts the response."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "credential_alias": {"type": "string", "description": "Alias of the credential to use"},
                "url": {"type": "string", "description": "Absolute http(s) URL"},
                "method": {"type": "string", "description": "GET|POST|PUT|PATCH|DELETE (default GET)"},
                "headers": {"type": "object", "description": "Request headers (string values)"},
                "query": {"type": "object", "description": "Query parameters"},
                "body_json": {"type": "object", "description": "JSON object body"},
                "body_text": {"type": "string", "description": "Raw text body (exclusive with body_json)"},
                "timeout_ms": {"type": "integer", "description": "Timeout in milliseconds (max 30000)"},
            },
            "required": ["credential_alias", "url"],
        },
    },
    "configure_github_credentials": {
        "name": "configure_github_credentials",
        "description": (
            "Mint a short-lived GitHub App token scoped to one repository and the agent's granted "
            "capabilities, and install it into the sandbox."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "repo_name": {
                    "type": "string",
                    "description": "Repository full name (owner/repo). Optional if only one repo is authorized.",
                },
                "duration": {"type": "integer", "description": "Token TTL in seconds (optional)"},
            },
            "required": [],
        },
    },
}


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        name = (getattr(tool, "name", "") or "").strip().lower()
        if not name:
            raise ValueError("Tool name is required.")
        self._tools[name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get((name or "").strip().lower())

    def names(self) -> List[str]:
        return sorted(self._tools.keys())

    def tool_schemas(self) -> List[Dict[str, Any]]:
        schemas: List[Dict[str, Any]] = []
        for name in sorted(self._tools.keys()):
            schema = NATIVE_TOOL_SCHEMAS.get(name)
            if schema is not None:
                schemas.append(dict(schema))
        return schemas

    async def invoke(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        tool = self.get(request.name)
        if tool is None:
            return ToolResult(ok=False, output=f"Unknown tool: {request.name}", meta={"code": "NOT_FOUND"})
        return await tool.arun(request, context)
