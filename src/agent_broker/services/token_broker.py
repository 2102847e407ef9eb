import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from jose import jwt

from agent_broker.config import DEFAULT_GITHUB_API_BASE
from agent_broker.domain.audit import (
    CAPABILITY_GITHUB_TOKEN,
    EVENT_CAPABILITY_CHECK_FAIL,
    EVENT_CAPABILITY_CHECK_PASS,
    EVENT_TOKEN_MINT_FAIL,
    EVENT_TOKEN_MINT_SUCCESS,
    RESULT_ALLOWED,
    RESULT_DENIED,
    RESULT_ERROR,
)
from agent_broker.domain.grants import TOKEN_SOURCE_CACHE, TOKEN_SOURCE_MINT, ScopedToken
from agent_broker.errors import PolicyDenied, TokenMintError
from agent_broker.observability.structured_log import log_json
from agent_broker.services.audit_log import AuditLog
from agent_broker.services.grant_registry import GrantRegistry
from agent_broker.services.permission_mapper import format_permissions, map_capabilities, merge
from agent_broker.transport import build_httpx_client

logger = logging.getLogger(__name__)

CACHE_SKEW_SEC = 30
DEFAULT_TOKEN_TTL_SEC = 3600
APP_JWT_TTL_SEC = 540
REASON_NO_SCOPED_CAPABILITIES = "no_scoped_capabilities"
REASON_PERMISSIONS_EXCEED_GRANT = "permissions_exceed_grant"
NOT_GRANTED_MARKER = "permissions requested are not granted"

_LEVEL_ORDER = {"read": 1, "write": 2, "admin": 3}


class InstallationTokenError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


def _cache_key(installation_id: int, repository_ids: Sequence[int], permissions: Optional[Dict[str, str]]) -> str:
    repo_key = ",".join(str(r) for r in sorted(repository_ids)) if repository_ids else "all"
    perm_key = json.dumps(permissions, sort_keys=True) if permissions else "default"
    return f"{installation_id}:{repo_key}:{perm_key}"


def _parse_expires_at(raw: Any) -> Optional[float]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


class GitHubInstallationTokenProvider:
    """Mints GitHub App installation tokens, caching them in memory only."""

    def __init__(
        self,
        app_id: Optional[str],
        private_key: Optional[str],
        api_base: str = DEFAULT_GITHUB_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
        token_ttl_sec: int = DEFAULT_TOKEN_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self._app_id = (app_id or "").strip()
        self._private_key = private_key or ""
        self._api_base = api_base.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._token_ttl_sec = max(60, int(token_ttl_sec))
        self._clock = clock
        self._cache: Dict[str, Tuple[str, float]] = {}

    @property
    def configured(self) -> bool:
        return bool(self._app_id and self._private_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = build_httpx_client()
        return self._client

    def _app_jwt(self) -> str:
        now = int(self._clock())
        # iat is backdated to tolerate clock drift on GitHub's side.
        payload = {"iat": now - 60, "exp": now + APP_JWT_TTL_SEC, "iss": self._app_id}
        return jwt.encode(payload, self._private_key, algorithm="RS256")

    async def get_token(
        self,
        installation_id: int,
        repository_ids: Sequence[int],
        permissions: Optional[Dict[str, str]],
        ttl_sec: Optional[int] = None,
    ) -> ScopedToken:
        key = _cache_key(installation_id, repository_ids, permissions)
        now = self._clock()
        cached = self._cache.get(key)
        if cached is not None and cached[1] - CACHE_SKEW_SEC > now:
            logger.info("github token served from cache installation=%s repos=%s", installation_id, list(repository_ids))
            return self._scoped(cached[0], cached[1], installation_id, repository_ids, permissions, TOKEN_SOURCE_CACHE)

        if not self.configured:
            raise InstallationTokenError("GitHub App credentials are not configured")
        try:
            app_jwt = self._app_jwt()
        except Exception as exc:
            raise InstallationTokenError(f"Could not sign GitHub App JWT: {exc}") from exc

        body: Dict[str, Any] = {}
        if repository_ids:
            body["repository_ids"] = [int(r) for r in repository_ids]
        if permissions:
            body["permissions"] = dict(permissions)
        try:
            response = await self._get_client().post(
                f"{self._api_base}/app/installations/{int(installation_id)}/access_tokens",
                headers={
                    "Authorization": f"Bearer {app_jwt}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
                json=body,
            )
        except httpx.HTTPError as exc:
            raise InstallationTokenError(str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            message = response.text
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and isinstance(data.get("message"), str):
                message = data["message"]
            logger.warning(
                "github token mint failed installation=%s status=%s permissions=%s",
                installation_id,
                response.status_code,
                permissions,
            )
            raise InstallationTokenError(
                f"Failed to mint GitHub token ({response.status_code}): {message}", status=response.status_code
            )

        payload = response.json()
        token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise InstallationTokenError("GitHub returned no token")
        now = self._clock()
        expires_at = _parse_expires_at(payload.get("expires_at")) or now + DEFAULT_TOKEN_TTL_SEC
        ttl = int(ttl_sec) if ttl_sec and int(ttl_sec) > 0 else self._token_ttl_sec
        cache_expires_at = min(expires_at, now + ttl)
        self._cache[key] = (token, cache_expires_at)
        logger.info("github token minted installation=%s repos=%s", installation_id, list(repository_ids))
        return self._scoped(token, cache_expires_at, installation_id, repository_ids, permissions, TOKEN_SOURCE_MINT)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _scoped(
        token: str,
        expires_at: float,
        installation_id: int,
        repository_ids: Sequence[int],
        permissions: Optional[Dict[str, str]],
        source: str,
    ) -> ScopedToken:
        return ScopedToken(
            token=token,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            installation_id=int(installation_id),
            repository_ids=[int(r) for r in repository_ids],
            permissions=dict(permissions or {}),
            source=source,
        )


class ScopedTokenBroker:
    """Turns an agent's repository capability grant into a narrowly scoped installation token.

    ``mint_for_agent`` resolves the repository and grant, audits the
    capability check, and delegates to ``mint``. ``mint`` re-reads the
    grant before calling the provider, so a caller holding a stale
    permission map cannot mint more than the agent currently holds.
    Every mint attempt is audited with the resolved permissions.
    """

    def __init__(
        self,
        grants: GrantRegistry,
        audit: AuditLog,
        provider: GitHubInstallationTokenProvider,
        permission_preset: str = "unset",
    ):
        self._grants = grants
        self._audit = audit
        self._provider = provider
        self._preset = (permission_preset or "").strip() or "unset"

    async def mint_for_agent(self, agent_id: str, repo_name: Optional[str] = None, ttl_sec: Optional[int] = None) -> ScopedToken:
        repo = self._grants.resolve_repository(agent_id, repo_name)
        grant = self._grants.get_grant(agent_id, repo.repo_id)
        capabilities = list(grant.capabilities) if grant else []
        permissions = map_capabilities(capabilities)
        allowed = bool(capabilities) and bool(permissions)
        metadata = {
            "requestedCapability": CAPABILITY_GITHUB_TOKEN,
            "allowed": allowed,
            "repository": repo.full_name,
            "capabilities": capabilities,
            "permissions": permissions,
        }
        if not allowed:
            self._audit.record_best_effort(
                EVENT_CAPABILITY_CHECK_FAIL,
                agent_id,
                RESULT_DENIED,
                CAPABILITY_GITHUB_TOKEN,
                metadata,
                resource_id=str(repo.repo_id),
            )
            raise PolicyDenied(
                "Access denied: no scoped capabilities configured for this repository.",
                reason=REASON_NO_SCOPED_CAPABILITIES,
            )
        self._audit.record(
            EVENT_CAPABILITY_CHECK_PASS,
            agent_id,
            RESULT_ALLOWED,
            CAPABILITY_GITHUB_TOKEN,
            metadata,
            resource_id=str(repo.repo_id),
        )
        return await self.mint(agent_id, repo.installation_id, [repo.repo_id], permissions, ttl_sec=ttl_sec)

    async def mint(
        self,
        agent_id: str,
        installation_id: int,
        repository_ids: Sequence[int],
        permissions: Dict[str, str],
        ttl_sec: Optional[int] = None,
    ) -> ScopedToken:
        repo_ids = [int(r) for r in repository_ids]
        resource_id = ",".join(str(r) for r in repo_ids)
        granted: List[Dict[str, str]] = []
        for repo_id in repo_ids:
            grant = self._grants.get_grant(agent_id, repo_id)
            mapped = map_capabilities(grant.capabilities) if grant else {}
            if not mapped:
                self._deny_stale(agent_id, resource_id, repo_id, permissions, REASON_NO_SCOPED_CAPABILITIES)
                raise PolicyDenied(
                    "Access denied: no scoped capabilities configured for this repository.",
                    reason=REASON_NO_SCOPED_CAPABILITIES,
                )
            granted.append(mapped)
        if not repo_ids or not permissions or _exceeds(permissions, merge(*granted)):
            reason = REASON_PERMISSIONS_EXCEED_GRANT if repo_ids and permissions else REASON_NO_SCOPED_CAPABILITIES
            self._deny_stale(agent_id, resource_id, None, permissions, reason)
            raise PolicyDenied("Access denied: requested permissions exceed the agent's grant.", reason=reason)

        metadata: Dict[str, Any] = {
            "installationId": int(installation_id),
            "repositoryIds": repo_ids,
            "requestedPermissions": dict(permissions),
            "configuredPreset": self._preset,
        }
        try:
            token = await self._provider.get_token(installation_id, repo_ids, permissions, ttl_sec=ttl_sec)
        except InstallationTokenError as exc:
            self._audit.record_best_effort(
                EVENT_TOKEN_MINT_FAIL,
                agent_id,
                RESULT_ERROR,
                CAPABILITY_GITHUB_TOKEN,
                dict(metadata, error=exc.message, status=exc.status),
                resource_id=resource_id,
            )
            log_json(
                logger,
                "github.token_mint_failed",
                level="warning",
                agent_id=agent_id,
                installation_id=int(installation_id),
                configured_preset=self._preset,
                status=exc.status,
            )
            raise TokenMintError(
                self._failure_message(exc.message, permissions), configured_preset=self._preset, status=exc.status
            ) from exc

        self._audit.record_best_effort(
            EVENT_TOKEN_MINT_SUCCESS,
            agent_id,
            RESULT_ALLOWED,
            CAPABILITY_GITHUB_TOKEN,
            dict(metadata, source=token.source, expiresAt=token.expires_at.isoformat()),
            resource_id=resource_id,
            secrets=[token.token],
        )
        return token

    def _deny_stale(
        self,
        agent_id: str,
        resource_id: str,
        repo_id: Optional[int],
        permissions: Dict[str, str],
        reason: str,
    ) -> None:
        self._audit.record_best_effort(
            EVENT_CAPABILITY_CHECK_FAIL,
            agent_id,
            RESULT_DENIED,
            CAPABILITY_GITHUB_TOKEN,
            {"reason": reason, "repoId": repo_id, "requestedPermissions": dict(permissions or {})},
            resource_id=resource_id,
        )

    def _failure_message(self, provider_message: str, permissions: Dict[str, str]) -> str:
        hint = ""
        if NOT_GRANTED_MARKER in provider_message:
            hint = (
                f" GitHub App installation lacks required scopes for requested permissions "
                f"({format_permissions(permissions)}). Update the GitHub App repository permissions, "
                "then re-approve or reinstall the app before retrying."
            )
        return (
            f"Failed to mint GitHub token.{hint} Configured default permission preset: {self._preset}. "
            f"Original error: {provider_message}"
        )


def _exceeds(requested: Dict[str, str], granted: Dict[str, str]) -> bool:
    for scope, level in requested.items():
        if _LEVEL_ORDER.get(level, 99) > _LEVEL_ORDER.get(granted.get(scope, ""), 0):
            return True
    return False
