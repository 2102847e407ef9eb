from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

LEVEL_READ = "read"
LEVEL_WRITE = "write"
LEVEL_ADMIN = "admin"
PERMISSION_LEVELS = (LEVEL_READ, LEVEL_WRITE, LEVEL_ADMIN)

TOKEN_SOURCE_MINT = "mint"
TOKEN_SOURCE_CACHE = "cache"


@dataclass(frozen=True)
class GitHubInstallation:
    installation_id: int
    account_login: str
    created_at: datetime


@dataclass(frozen=True)
class GitHubRepository:
    repo_id: int
    installation_id: int
    full_name: str
    created_at: datetime


@dataclass(frozen=True)
class CapabilityGrant:
    agent_id: str
    repo_id: int
    capabilities: List[str]
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "repoId": self.repo_id,
            "capabilities": list(self.capabilities),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class ScopedToken:
    """Short-lived provider token; never persisted."""

    token: str = field(repr=False)
    expires_at: datetime
    installation_id: int
    repository_ids: List[int]
    permissions: Dict[str, str]
    source: str = TOKEN_SOURCE_MINT

    def describe(self) -> Dict[str, Any]:
        return {
            "expiresAt": self.expires_at.isoformat(),
            "installationId": self.installation_id,
            "repositoryIds": list(self.repository_ids),
            "permissions": dict(self.permissions),
            "source": self.source,
        }
