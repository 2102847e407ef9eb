from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

EVENT_CREDENTIAL_REQUEST_DENIED = "CREDENTIAL_REQUEST_DENIED"
EVENT_CREDENTIAL_REQUEST_ALLOWED = "CREDENTIAL_REQUEST_ALLOWED"
EVENT_CREDENTIAL_REQUEST_SUCCESS = "CREDENTIAL_REQUEST_SUCCESS"
EVENT_CREDENTIAL_REQUEST_FAIL = "CREDENTIAL_REQUEST_FAIL"
EVENT_CAPABILITY_CHECK_PASS = "CAPABILITY_CHECK_PASS"
EVENT_CAPABILITY_CHECK_FAIL = "CAPABILITY_CHECK_FAIL"
EVENT_TOKEN_MINT_SUCCESS = "TOKEN_MINT_SUCCESS"
EVENT_TOKEN_MINT_FAIL = "TOKEN_MINT_FAIL"

AUDIT_EVENT_TYPES = (
    EVENT_CREDENTIAL_REQUEST_DENIED,
    EVENT_CREDENTIAL_REQUEST_ALLOWED,
    EVENT_CREDENTIAL_REQUEST_SUCCESS,
    EVENT_CREDENTIAL_REQUEST_FAIL,
    EVENT_CAPABILITY_CHECK_PASS,
    EVENT_CAPABILITY_CHECK_FAIL,
    EVENT_TOKEN_MINT_SUCCESS,
    EVENT_TOKEN_MINT_FAIL,
)

RESULT_ALLOWED = "allowed"
RESULT_DENIED = "denied"
RESULT_ERROR = "error"

CAPABILITY_CREDENTIAL_HTTP_REQUEST = "credential_http_request"
CAPABILITY_GITHUB_TOKEN = "github_token"


@dataclass(frozen=True)
class AuditLogEntry:
    entry_id: int
    event_type: str
    agent_id: str
    result: str
    capability: str
    resource_id: Optional[str]
    metadata: Dict[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "eventType": self.event_type,
            "agentId": self.agent_id,
            "result": self.result,
            "capability": self.capability,
            "resourceId": self.resource_id,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat(),
        }
