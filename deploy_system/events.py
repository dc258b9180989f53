"""
Values passed between the webhook, the pipeline and the broadcaster.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict

DEPLOY_LOG = "deploy-log"
STATUS = "status"
ERROR = "error"

EVENT_KINDS = (DEPLOY_LOG, STATUS, ERROR)


@dataclass(frozen=True)
class PushEvent:
    """One inbound push notification"""
    repo: str
    ref: str
    payload: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class DeploymentEvent:
    """A lifecycle transition, broadcast to subscribers and listeners"""
    kind: str
    repo: str
    data: Any = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {self.kind}")

    def to_message(self) -> Dict[str, Any]:
        """Body POSTed to remote listeners"""
        return {
            "event": "deploy",
            "data": {"event": self.kind, "repo": self.repo, "data": self.data},
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.kind, "repo": self.repo, "data": self.data, "timestamp": self.timestamp}
