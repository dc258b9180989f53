"""
Registry of running deployments.

Holds one record per repository with a pipeline run between admission and
termination. Admission and release are atomic under a single lock, so two
pushes for the same repository can never both be admitted.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunningDeployment:
    repo: str
    status: str = "running"
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DeploymentRegistry:
    def __init__(self):
        self._running: Dict[str, RunningDeployment] = {}
        self._lock = threading.Lock()

    def try_admit(self, repo: str) -> bool:
        """Insert a record for repo unless one already exists"""
        with self._lock:
            if repo in self._running:
                return False
            self._running[repo] = RunningDeployment(repo)
        logger.debug(f"Admitted deployment for {repo}")
        return True

    def release(self, repo: str) -> None:
        """Remove the record for repo; releasing twice only logs"""
        with self._lock:
            record = self._running.pop(repo, None)
        if record is None:
            logger.warning(f"Release for {repo} without a running deployment")
            return
        logger.debug(f"Released deployment for {repo}")

    def is_running(self, repo: str) -> bool:
        with self._lock:
            return repo in self._running

    def snapshot(self) -> List[RunningDeployment]:
        """Point-in-time copy of the running deployments, oldest first"""
        with self._lock:
            records = list(self._running.values())
        return sorted(records, key=lambda r: (r.started_at, r.repo))

    def __len__(self) -> int:
        with self._lock:
            return len(self._running)
