"""Abstract repository capabilities to GitHub App permission scopes.

Aggregation only ever raises a scope's level (read < write < admin), so
overlapping or repeated grants resolve to the same map regardless of order.
"""
from typing import Dict, Iterable, Mapping

from agent_broker.domain.grants import LEVEL_ADMIN, LEVEL_READ, LEVEL_WRITE

CAP_READ_REPO = "read_repo"
CAP_CREATE_BRANCH = "create_branch"
CAP_PUSH_BRANCH = "push_branch"
CAP_OPEN_PR = "open_pr"
CAP_COMMENT = "comment"
CAP_REQUEST_REVIEW = "request_review"
CAP_LABEL_ISSUE_PR = "label_issue_pr"
CAP_REVIEW_PR = "review_pr"
CAP_MERGE_PR = "merge_pr"

REPO_CAPABILITIES = (
    CAP_READ_REPO,
    CAP_CREATE_BRANCH,
    CAP_PUSH_BRANCH,
    CAP_OPEN_PR,
    CAP_COMMENT,
    CAP_REQUEST_REVIEW,
    CAP_LABEL_ISSUE_PR,
    CAP_REVIEW_PR,
    CAP_MERGE_PR,
)

SCOPE_CONTENTS = "contents"
SCOPE_PULL_REQUESTS = "pull_requests"
SCOPE_ISSUES = "issues"
SCOPE_CHECKS = "checks"
SCOPE_ACTIONS = "actions"

_LEVEL_ORDER = {LEVEL_READ: 1, LEVEL_WRITE: 2, LEVEL_ADMIN: 3}

_PR_LIFECYCLE = frozenset({CAP_OPEN_PR, CAP_REQUEST_REVIEW, CAP_REVIEW_PR, CAP_MERGE_PR})

_CAPABILITY_SCOPES: Dict[str, Dict[str, str]] = {
    CAP_READ_REPO: {SCOPE_CONTENTS: LEVEL_READ},
    CAP_CREATE_BRANCH: {SCOPE_CONTENTS: LEVEL_WRITE},
    CAP_PUSH_BRANCH: {SCOPE_CONTENTS: LEVEL_WRITE},
    CAP_COMMENT: {SCOPE_ISSUES: LEVEL_WRITE},
    CAP_LABEL_ISSUE_PR: {SCOPE_ISSUES: LEVEL_WRITE},
}
# PR status visibility needs check-run and workflow-run read access.
for _cap in _PR_LIFECYCLE:
    _CAPABILITY_SCOPES[_cap] = {
        SCOPE_PULL_REQUESTS: LEVEL_WRITE,
        SCOPE_CHECKS: LEVEL_READ,
        SCOPE_ACTIONS: LEVEL_READ,
    }


def set_permission(permissions: Dict[str, str], scope: str, level: str) -> Dict[str, str]:
    if level not in _LEVEL_ORDER:
        raise ValueError(f"Unknown permission level: {level}")
    current = permissions.get(scope)
    if current is None or _LEVEL_ORDER[level] > _LEVEL_ORDER.get(current, 0):
        permissions[scope] = level
    return permissions


def map_capabilities(capabilities: Iterable[str]) -> Dict[str, str]:
    """Unknown capability names are ignored."""
    permissions: Dict[str, str] = {}
    for cap in capabilities or []:
        for scope, level in _CAPABILITY_SCOPES.get(str(cap).strip(), {}).items():
            set_permission(permissions, scope, level)
    return permissions


def merge(*maps: Mapping[str, str]) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    for permission_map in maps:
        for scope, level in permission_map.items():
            set_permission(merged, scope, level)
    return merged


def format_permissions(permissions: Mapping[str, str]) -> str:
    return ", ".join(f"{scope}:{level}" for scope, level in sorted(permissions.items()))


def unknown_capabilities(capabilities: Iterable[str]) -> list:
    return [c for c in capabilities if c not in _CAPABILITY_SCOPES]


class CapabilityToPermissionMapper:
    """Stateless facade over the module functions, injectable into the broker."""

    map_capabilities = staticmethod(map_capabilities)
    set_permission = staticmethod(set_permission)
    merge = staticmethod(merge)
    format_permissions = staticmethod(format_permissions)
