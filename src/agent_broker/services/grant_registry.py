import logging
from typing import Iterable, List, Optional

from agent_broker.domain.grants import CapabilityGrant, GitHubInstallation, GitHubRepository
from agent_broker.errors import NotFound, ValidationError
from agent_broker.persistence.sqlite_store import SqliteBrokerStore
from agent_broker.services.permission_mapper import REPO_CAPABILITIES

logger = logging.getLogger(__name__)


class GrantRegistry:
    """Human-assigned repository capabilities per agent, plus the installations and repos they refer to."""

    def __init__(self, store: SqliteBrokerStore):
        self._store = store

    def register_installation(self, installation_id: int, account_login: str) -> GitHubInstallation:
        if int(installation_id) <= 0:
            raise ValidationError("installation_id must be a positive integer.")
        return self._store.upsert_github_installation(int(installation_id), (account_login or "").strip())

    def register_repository(self, repo_id: int, installation_id: int, full_name: str) -> GitHubRepository:
        full_name = (full_name or "").strip()
        if full_name.count("/") != 1 or full_name.startswith("/") or full_name.endswith("/"):
            raise ValidationError("full_name must be owner/repo.")
        if self._store.get_github_installation(installation_id) is None:
            raise NotFound("GitHub installation not found.")
        return self._store.upsert_github_repo(int(repo_id), int(installation_id), full_name)

    def list_repositories(self) -> List[GitHubRepository]:
        return self._store.list_github_repos()

    def set_grant(self, agent_id: str, repo_id: int, capabilities: Iterable[str]) -> CapabilityGrant:
        agent_id = (agent_id or "").strip()
        if not agent_id:
            raise ValidationError("agent_id is required.")
        if self._store.get_github_repo(repo_id) is None:
            raise NotFound("GitHub repository not found.")
        caps: List[str] = []
        for cap in capabilities or []:
            value = str(cap).strip()
            if value not in REPO_CAPABILITIES:
                raise ValidationError(f"Unknown capability: {value}. Expected one of {', '.join(REPO_CAPABILITIES)}.")
            if value not in caps:
                caps.append(value)
        self._store.ensure_agent(agent_id)
        grant = self._store.set_agent_repo_capabilities(agent_id, repo_id, caps)
        logger.info("grant updated agent=%s repo=%s capabilities=%s", agent_id, repo_id, caps)
        return grant

    def get_grant(self, agent_id: str, repo_id: int) -> Optional[CapabilityGrant]:
        return self._store.get_agent_repo_capabilities(agent_id, repo_id)

    def list_grants_for_agent(self, agent_id: str) -> List[CapabilityGrant]:
        return self._store.list_agent_repo_capabilities(agent_id)

    def resolve_repository(self, agent_id: str, repo_name: Optional[str] = None) -> GitHubRepository:
        repo_name = (repo_name or "").strip()
        if repo_name:
            repo = self._store.get_github_repo_by_name(repo_name)
            if repo is None:
                raise NotFound("GitHub repository not found.")
            return repo
        candidates = []
        for grant in self.list_grants_for_agent(agent_id):
            repo = self._store.get_github_repo(grant.repo_id)
            if repo is not None:
                candidates.append(repo)
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            raise ValidationError("Multiple repositories available. Provide repo_name to select one.")
        raise NotFound("GitHub repository not found.")
