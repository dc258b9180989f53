"""
Process supervisor adapter. Talks to pm2 through its command line to list,
find, start and restart the managed services.

It uses subprocess (through helpers.run_command) for every pm2 call.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from deploy_system import config, helpers
from deploy_system.errors import CommandError, SupervisorError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManagedProcess:
    """A process tracked by pm2; only its name and liveness matter here"""
    name: str
    status: str = "unknown"
    pid: Optional[int] = None

    @property
    def online(self) -> bool:
        return self.status == "online"


class Pm2Supervisor:
    """Runs pm2 commands"""
    def __init__(self, binary: str = "pm2", timeout: float = config.RESTART_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def _pm2(self, *args: str, timeout: Optional[float] = None) -> str:
        try:
            return helpers.run_command([self.binary, *args], timeout=timeout or self.timeout)
        except CommandError as e:
            raise SupervisorError(str(e)) from e

    def ping(self) -> None:
        """Make sure the pm2 daemon is reachable"""
        self._pm2("ping")

    def list(self) -> List[ManagedProcess]:
        """All processes known to pm2"""
        output = self._pm2("jlist")
        try:
            entries = json.loads(output)
        except ValueError as e:
            raise SupervisorError(f"Unreadable pm2 process list: {e}")

        processes = []
        for entry in entries:
            env = entry.get("pm2_env") or {}
            processes.append(ManagedProcess(
                name=entry.get("name", ""),
                status=env.get("status", "unknown"),
                pid=entry.get("pid"),
            ))
        return processes

    def find(self, name: str) -> Optional[ManagedProcess]:
        for process in self.list():
            if process.name == name:
                return process
        return None

    def start(self, options: Dict[str, Any]) -> None:
        """Start a process from pm2 start options (script, name, cwd, ...)"""
        fd, path = tempfile.mkstemp(prefix="deploy-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"apps": [options]}, f)
            self._pm2("start", path)
        finally:
            os.unlink(path)
        logger.info(f"Started {options.get('name')}")

    def restart(self, name: str, timeout: Optional[float] = None) -> None:
        self._pm2("restart", name, timeout=timeout)
        logger.info(f"Restarted {name}")
