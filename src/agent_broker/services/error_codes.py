from dataclasses import dataclass
from typing import List, Optional

from agent_broker.errors import BrokerError


@dataclass(frozen=True)
class RecoveryAction:
    action_id: str
    label: str
    description: str


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    triggers: List[str]
    actions: List[RecoveryAction]


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_CREDENTIAL_NOT_ASSIGNED",
        title="Credential not available to agent",
        user_message="The credential is disabled, missing, or not assigned to this agent.",
        triggers=["credential_not_assigned_or_disabled"],
        actions=[
            RecoveryAction("open_credentials", "Open credentials", "Enable the credential or assign it to the agent."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_HOST_NOT_ALLOWED",
        title="Host outside allow-list",
        user_message="The request targets a host the credential is not allowed to reach.",
        triggers=["host_not_allowed"],
        actions=[
            RecoveryAction("open_credentials", "Edit allowed hosts", "Add the host pattern if the call is expected."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_SECRET_LOCATION",
        title="Secret placed in a disallowed location",
        user_message="The placeholder was used in headers, query, or body where the credential may not go.",
        triggers=["secret_location_not_allowed"],
        actions=[
            RecoveryAction("move_placeholder", "Move placeholder", "Place the placeholder in an allowed location."),
            RecoveryAction("open_credentials", "Edit locations", "Allow the location on the credential."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_PLACEHOLDER_UNUSED",
        title="Placeholder never used",
        user_message="The request never referenced the credential placeholder.",
        triggers=["placeholder_not_used"],
        actions=[
            RecoveryAction("move_placeholder", "Add placeholder", "Use {alias} where the secret belongs."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_REQUEST_TIMEOUT",
        title="Outbound request timed out",
        user_message="The external endpoint did not answer within the timeout.",
        triggers=["timeout"],
        actions=[
            RecoveryAction("retry_same_agent", "Retry", "Retry once the endpoint is healthy."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_NETWORK",
        title="Network failure",
        user_message="The outbound request failed at the transport level.",
        triggers=["network_error"],
        actions=[
            RecoveryAction("retry_same_agent", "Retry", "Check DNS and egress, then retry."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_TRUST_MODE_LOCKED",
        title="Blocked by trust mode",
        user_message="This deployment runs in saas_locked mode and refuses third-party plugins.",
        triggers=["trust_mode_locked"],
        actions=[
            RecoveryAction("open_settings", "Review trust mode", "Change PLUGIN_TRUST_MODE on a self-hosted deployment."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_BUILTIN_ID_RESERVED",
        title="Builtin plugin ID reserved",
        user_message="Builtin plugin IDs belong to the platform and cannot be installed or replaced.",
        triggers=["builtin_id_reserved", "builtin_id_required", "builtin_plugin"],
        actions=[
            RecoveryAction("open_plugins", "Rename plugin", "Give the third-party plugin its own ID."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_CONSENT_REQUIRED",
        title="Consent required",
        user_message="A human must accept the plugin's disclosures before it can be enabled.",
        triggers=["consent_required"],
        actions=[
            RecoveryAction("open_plugins", "Review disclosures", "Read the declared capabilities and accept consent."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_NO_SCOPED_CAPABILITIES",
        title="No repository capabilities",
        user_message="The agent holds no capability grant for this repository.",
        triggers=["no_scoped_capabilities", "permissions_exceed_grant"],
        actions=[
            RecoveryAction("open_grants", "Open grants", "Grant repository capabilities to the agent."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_TOKEN_MINT_FAILED",
        title="Token mint failed",
        user_message="The provider refused to mint a scoped installation token.",
        triggers=["token_mint_failed", "permissions requested are not granted"],
        actions=[
            RecoveryAction("open_settings", "Check app permissions", "Align the GitHub App permissions and preset."),
            RecoveryAction("retry_same_agent", "Retry", "Retry after re-approving the installation."),
        ],
    ),
    ErrorCatalogEntry(
        code="ERR_UNKNOWN",
        title="Unknown broker error",
        user_message="An unknown error occurred.",
        triggers=[],
        actions=[
            RecoveryAction("retry_same_agent", "Retry", "Retry once to confirm reproducibility."),
        ],
    ),
]


def detect_error_code(text: str) -> str:
    value = text or ""
    for entry in ERROR_CATALOG:
        if any(trigger in value for trigger in entry.triggers):
            return entry.code
    return "ERR_UNKNOWN"


def catalog_code_for(error: BrokerError) -> str:
    return detect_error_code(error.reason or "") if error.reason else detect_error_code(error.message)


def get_catalog_entry(code: Optional[str]) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == "ERR_UNKNOWN")
