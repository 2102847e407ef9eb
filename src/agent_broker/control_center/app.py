from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from agent_broker.app_container import BrokerContainer
from agent_broker.errors import BrokerError, http_status_for
from agent_broker.services.error_codes import ERROR_CATALOG, catalog_code_for
from agent_broker.tools.base import ToolContext, ToolRequest


class CredentialCreateRequest(BaseModel):
    alias: str
    provider: str
    secret: str
    allowed_hosts: List[str]
    allowed_in_header: bool = True
    allowed_in_query: bool = False
    allowed_in_body: bool = False
    enabled: bool = True


class CredentialUpdateRequest(BaseModel):
    alias: Optional[str] = None
    provider: Optional[str] = None
    secret: Optional[str] = None
    allowed_hosts: Optional[List[str]] = None
    allowed_in_header: Optional[bool] = None
    allowed_in_query: Optional[bool] = None
    allowed_in_body: Optional[bool] = None
    enabled: Optional[bool] = None


class AssignmentRequest(BaseModel):
    agent_id: str
    enabled: bool = True


class PluginInstallRequest(BaseModel):
    plugin_id: str
    name: str = ""
    source_kind: str
    source_ref: Optional[str] = None
    version: str = "1.0.0"
    manifest_json: Optional[str] = None
    declared_capabilities: Optional[List[Dict[str, Any]]] = None


class PluginEnableRequest(BaseModel):
    consent_accepted: bool = False


class InstallationRequest(BaseModel):
    installation_id: int
    account_login: str = ""


class RepositoryRequest(BaseModel):
    repo_id: int
    installation_id: int
    full_name: str


class GrantRequest(BaseModel):
    capabilities: List[str] = Field(default_factory=list)


class ToolInvokeRequest(BaseModel):
    args: Dict[str, Any] = Field(default_factory=dict)
    session_id: str = ""


def _catalog_to_dict() -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for entry in ERROR_CATALOG:
        out.append(
            {
                "code": entry.code,
                "title": entry.title,
                "user_message": entry.user_message,
                "triggers": list(entry.triggers),
                "actions": [
                    {
                        "action_id": action.action_id,
                        "label": action.label,
                        "description": action.description,
                    }
                    for action in entry.actions
                ],
            }
        )
    return out


def _http_error(exc: BrokerError) -> HTTPException:
    detail = exc.to_dict()
    detail["catalogCode"] = catalog_code_for(exc)
    return HTTPException(status_code=http_status_for(exc), detail=detail)


def create_app(container: BrokerContainer) -> FastAPI:
    app = FastAPI(title="Agent Capability Broker", version="0.1.0")
    local_api_keys = dict(container.config.local_api_keys)
    local_api_enabled = bool(local_api_keys)
    credentials = container.credentials
    plugins = container.plugins
    grants = container.grants

    def _resolve_api_token(request: Request) -> str:
        bearer = (request.headers.get("authorization") or "").strip()
        if bearer.lower().startswith("bearer "):
            return bearer[7:].strip()
        return (request.headers.get("x-local-api-key") or "").strip()

    def _require_scope(request: Request, required_scope: str) -> None:
        """No-op unless LOCAL_API_KEYS is configured; ``admin:*`` satisfies any scope."""
        if not local_api_enabled:
            return
        token = _resolve_api_token(request)
        if not token:
            raise HTTPException(status_code=401, detail="Missing API token.")
        scopes = local_api_keys.get(token)
        if not scopes:
            raise HTTPException(status_code=401, detail="Invalid API token.")
        if "admin:*" in scopes or required_scope in scopes:
            return
        raise HTTPException(status_code=403, detail=f"Missing scope: {required_scope}")

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        posture = container.trust.posture()
        return {"status": "ok", "trustMode": posture.trust_mode, "executionMode": posture.execution_mode}

    @app.get("/api/runtime")
    async def api_runtime(request: Request) -> Dict[str, Any]:
        _require_scope(request, "plugins:read")
        return dict(
            container.trust.posture().to_dict(),
            builtinPlugins=container.registry.builtin_ids(),
            loadedPlugins=container.handlers.list_ids(),
            tools=container.tools.names(),
        )

    @app.get("/api/error-catalog")
    async def api_error_catalog(request: Request) -> List[Dict[str, Any]]:
        _require_scope(request, "audit:read")
        return _catalog_to_dict()

    # -- credentials -----------------------------------------------------------

    @app.get("/api/credentials")
    async def api_credentials(
        request: Request, provider: Optional[str] = None, enabled: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        _require_scope(request, "credentials:read")
        return [c.to_dict() for c in credentials.list_credentials(provider=provider, enabled=enabled)]

    @app.post("/api/credentials")
    async def api_credentials_create(request: Request, req: CredentialCreateRequest) -> Dict[str, Any]:
        _require_scope(request, "credentials:write")
        try:
            record = credentials.create_credential(
                alias=req.alias,
                provider=req.provider,
                secret=req.secret,
                allowed_hosts=req.allowed_hosts,
                allowed_in_header=req.allowed_in_header,
                allowed_in_query=req.allowed_in_query,
                allowed_in_body=req.allowed_in_body,
                enabled=req.enabled,
            )
        except BrokerError as exc:
            raise _http_error(exc)
        return record.to_dict()

    @app.get("/api/credentials/{credential_id}")
    async def api_credential_get(request: Request, credential_id: str) -> Dict[str, Any]:
        _require_scope(request, "credentials:read")
        try:
            return credentials.get_credential(credential_id).to_dict()
        except BrokerError as exc:
            raise _http_error(exc)

    @app.patch("/api/credentials/{credential_id}")
    async def api_credential_update(request: Request, credential_id: str, req: CredentialUpdateRequest) -> Dict[str, Any]:
        _require_scope(request, "credentials:write")
        try:
            record = credentials.update_credential(credential_id, **req.model_dump(exclude_unset=True))
        except BrokerError as exc:
            raise _http_error(exc)
        return record.to_dict()

    @app.delete("/api/credentials/{credential_id}")
    async def api_credential_delete(request: Request, credential_id: str, force: bool = False) -> Dict[str, Any]:
        _require_scope(request, "credentials:write")
        try:
            deleted = credentials.delete_credential(credential_id, force=force)
        except BrokerError as exc:
            raise _http_error(exc)
        return {"ok": deleted, "id": credential_id}

    @app.get("/api/credentials/{credential_id}/assignments")
    async def api_credential_assignments(request: Request, credential_id: str) -> List[Dict[str, Any]]:
        _require_scope(request, "credentials:read")
        try:
            return [a.to_dict() for a in credentials.list_assignments(credential_id)]
        except BrokerError as exc:
            raise _http_error(exc)

    @app.put("/api/credentials/{credential_id}/assignments")
    async def api_credential_assign(request: Request, credential_id: str, req: AssignmentRequest) -> Dict[str, Any]:
        _require_scope(request, "credentials:write")
        try:
            return credentials.set_assignment(credential_id, req.agent_id, req.enabled).to_dict()
        except BrokerError as exc:
            raise _http_error(exc)

    @app.get("/api/credentials/{credential_id}/usage")
    async def api_credential_usage(request: Request, credential_id: str, window_sec: Optional[int] = None) -> Dict[str, Any]:
        _require_scope(request, "credentials:read")
        try:
            return credentials.usage_summary(credential_id, window_sec=window_sec).to_dict()
        except BrokerError as exc:
            raise _http_error(exc)

    # -- plugins ---------------------------------------------------------------

    @app.get("/api/plugins")
    async def api_plugins(request: Request) -> Dict[str, Any]:
        _require_scope(request, "plugins:read")
        return plugins.list_plugins()

    @app.get("/api/plugins/{plugin_id}")
    async def api_plugin_get(request: Request, plugin_id: str) -> Dict[str, Any]:
        _require_scope(request, "plugins:read")
        try:
            return plugins.get_plugin(plugin_id)
        except BrokerError as exc:
            raise _http_error(exc)

    @app.get("/api/plugins/{plugin_id}/events")
    async def api_plugin_events(
        request: Request,
        plugin_id: str,
        limit: int = 25,
        cursor_created_at: Optional[str] = None,
        cursor_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        _require_scope(request, "plugins:read")
        cursor = None
        if cursor_created_at and cursor_id is not None:
            cursor = {"createdAt": cursor_created_at, "id": cursor_id}
        try:
            return plugins.list_plugin_events(plugin_id, limit=limit, cursor=cursor)
        except BrokerError as exc:
            raise _http_error(exc)

    @app.post("/api/plugins/install")
    async def api_plugins_install(request: Request, req: PluginInstallRequest) -> Dict[str, Any]:
        _require_scope(request, "plugins:write")
        try:
            result = await plugins.install_plugin(
                plugin_id=req.plugin_id,
                name=req.name,
                source_kind=req.source_kind,
                source_ref=req.source_ref,
                version=req.version,
                manifest_json=req.manifest_json,
                declared_capabilities=req.declared_capabilities,
            )
        except BrokerError as exc:
            raise _http_error(exc)
        return result.to_dict()

    @app.post("/api/plugins/{plugin_id}/enable")
    async def api_plugins_enable(request: Request, plugin_id: str, req: PluginEnableRequest) -> Dict[str, Any]:
        _require_scope(request, "plugins:write")
        try:
            record = await plugins.enable_plugin(plugin_id, consent_accepted=req.consent_accepted)
        except BrokerError as exc:
            raise _http_error(exc)
        return dict(plugins.trust.posture().to_dict(), ok=True, pluginId=record.plugin_id, enabled=record.enabled)

    @app.post("/api/plugins/{plugin_id}/disable")
    async def api_plugins_disable(request: Request, plugin_id: str) -> Dict[str, Any]:
        _require_scope(request, "plugins:write")
        try:
            record = await plugins.disable_plugin(plugin_id)
        except BrokerError as exc:
            raise _http_error(exc)
        return {"ok": True, "pluginId": record.plugin_id, "enabled": record.enabled}

    @app.delete("/api/plugins/{plugin_id}")
    async def api_plugins_delete(request: Request, plugin_id: str) -> Dict[str, Any]:
        _require_scope(request, "plugins:write")
        try:
            deleted = await plugins.delete_plugin(plugin_id)
        except BrokerError as exc:
            raise _http_error(exc)
        return {"ok": deleted, "pluginId": plugin_id}

    # -- audit -----------------------------------------------------------------

    @app.get("/api/audit")
    async def api_audit(
        request: Request,
        agent_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        _require_scope(request, "audit:read")
        entries = container.audit.list(agent_id=agent_id, event_type=event_type, limit=max(1, min(limit, 1000)))
        return [e.to_dict() for e in entries]

    # -- github grants ---------------------------------------------------------

    @app.post("/api/github/installations")
    async def api_github_installation(request: Request, req: InstallationRequest) -> Dict[str, Any]:
        _require_scope(request, "grants:write")
        try:
            inst = grants.register_installation(req.installation_id, req.account_login)
        except BrokerError as exc:
            raise _http_error(exc)
        return {"installationId": inst.installation_id, "accountLogin": inst.account_login}

    @app.post("/api/github/repos")
    async def api_github_repo(request: Request, req: RepositoryRequest) -> Dict[str, Any]:
        _require_scope(request, "grants:write")
        try:
            repo = grants.register_repository(req.repo_id, req.installation_id, req.full_name)
        except BrokerError as exc:
            raise _http_error(exc)
        return {"repoId": repo.repo_id, "installationId": repo.installation_id, "fullName": repo.full_name}

    @app.get("/api/github/repos")
    async def api_github_repos(request: Request) -> List[Dict[str, Any]]:
        _require_scope(request, "grants:read")
        return [
            {"repoId": r.repo_id, "installationId": r.installation_id, "fullName": r.full_name}
            for r in grants.list_repositories()
        ]

    @app.get("/api/agents/{agent_id}/grants")
    async def api_agent_grants(request: Request, agent_id: str) -> List[Dict[str, Any]]:
        _require_scope(request, "grants:read")
        return [g.to_dict() for g in grants.list_grants_for_agent(agent_id)]

    @app.put("/api/agents/{agent_id}/grants/{repo_id}")
    async def api_agent_grant_set(request: Request, agent_id: str, repo_id: int, req: GrantRequest) -> Dict[str, Any]:
        _require_scope(request, "grants:write")
        try:
            return grants.set_grant(agent_id, repo_id, req.capabilities).to_dict()
        except BrokerError as exc:
            raise _http_error(exc)

    # -- agent tools -----------------------------------------------------------

    @app.post("/api/agents/{agent_id}/tools/{tool_name}")
    async def api_agent_tool(request: Request, agent_id: str, tool_name: str, req: ToolInvokeRequest) -> Dict[str, Any]:
        _require_scope(request, "tools:invoke")
        if container.tools.get(tool_name) is None:
            raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")
        result = await container.tools.invoke(
            ToolRequest(name=tool_name, args=dict(req.args)),
            ToolContext(agent_id=agent_id, session_id=req.session_id),
        )
        return {"ok": result.ok, "output": result.output, "meta": result.meta}

    return app
