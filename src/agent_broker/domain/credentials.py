from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

USAGE_STATUS_SUCCESS = "success"
USAGE_STATUS_FAIL = "fail"
USAGE_STATUS_DENIED = "denied"


@dataclass(frozen=True)
class CredentialRecord:
    """Operator-managed credential as exposed by read APIs (no secret)."""

    credential_id: str
    alias: str
    provider: str
    allowed_hosts: List[str]
    allowed_in_header: bool
    allowed_in_query: bool
    allowed_in_body: bool
    enabled: bool
    created_at: datetime
    updated_at: datetime

    @property
    def placeholder(self) -> str:
        return "{" + self.alias + "}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.credential_id,
            "alias": self.alias,
            "provider": self.provider,
            "placeholder": self.placeholder,
            "allowedHosts": list(self.allowed_hosts),
            "allowedInHeader": self.allowed_in_header,
            "allowedInQuery": self.allowed_in_query,
            "allowedInBody": self.allowed_in_body,
            "enabled": self.enabled,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class CredentialForUse:
    record: CredentialRecord
    secret: str = field(repr=False)


@dataclass(frozen=True)
class CredentialAssignment:
    credential_id: str
    agent_id: str
    enabled: bool
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credentialId": self.credential_id,
            "agentId": self.agent_id,
            "enabled": self.enabled,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class CredentialUsageSummary:
    credential_id: str
    total_calls: int
    success_count: int
    fail_count: int
    denied_count: int
    last_used_at: Optional[datetime]
    last_status: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credentialId": self.credential_id,
            "totalCalls": self.total_calls,
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "deniedCount": self.denied_count,
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
            "lastStatus": self.last_status,
        }
