from dataclasses import dataclass, field
from typing import Any, Dict, List

from agent_broker.config import (
    TRUST_MODE_SAAS_LOCKED,
    TRUST_MODE_SELF_HOST_GUARDED,
    TRUST_MODE_SELF_HOST_OPEN,
    resolve_trust_mode,
)

EXECUTION_MODE_IN_PROCESS = "in_process"

IN_PROCESS_LIMITATION = "Plugin code runs in-process without kernel-level isolation."
LOCKED_LIMITATION = "Third-party plugins are disabled in saas_locked mode; only builtin plugins run."

_BADGE_LABELS = {
    TRUST_MODE_SELF_HOST_OPEN: "Open (in-process)",
    TRUST_MODE_SELF_HOST_GUARDED: "Guarded (in-process)",
    TRUST_MODE_SAAS_LOCKED: "Locked (builtin only)",
}


@dataclass(frozen=True)
class RuntimePosture:
    trust_mode: str
    execution_mode: str = EXECUTION_MODE_IN_PROCESS
    effective_limitations: List[str] = field(default_factory=list)
    runtime_badge_label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trustMode": self.trust_mode,
            "executionMode": self.execution_mode,
            "effectiveLimitations": list(self.effective_limitations),
            "runtimeBadgeLabel": self.runtime_badge_label,
        }


class TrustModePolicy:
    """Deployment-wide gate on third-party plugins.

    The mode is fixed at construction so every decision within one
    operation sees the same value. Both self-host modes run plugin code
    in-process; the difference is advisory, not an isolation boundary.
    """

    def __init__(self, trust_mode: str):
        self._mode = resolve_trust_mode(trust_mode)

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def locked(self) -> bool:
        return self._mode == TRUST_MODE_SAAS_LOCKED

    def posture(self) -> RuntimePosture:
        limitations = [IN_PROCESS_LIMITATION]
        if self.locked:
            limitations.append(LOCKED_LIMITATION)
        return RuntimePosture(
            trust_mode=self._mode,
            execution_mode=EXECUTION_MODE_IN_PROCESS,
            effective_limitations=limitations,
            runtime_badge_label=_BADGE_LABELS[self._mode],
        )
