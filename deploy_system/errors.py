"""
Exceptions raised by the deploy server.

Adapter errors (supervisor, git, spawned commands) are raised by the
collaborators; the pipeline turns them into DeploymentError subclasses that
carry the reported condition and the stage it failed at.
"""

from typing import Any, Dict, Optional


class ConfigError(Exception):
    """The configuration file is missing or malformed"""


class CommandError(Exception):
    """A spawned command exited non-zero or timed out"""

    def __init__(self, command: str, returncode: Optional[int], output: str = "", timed_out: bool = False):
        self.command = command
        self.returncode = returncode
        self.output = output
        self.timed_out = timed_out
        if timed_out:
            message = f"Command timed out: {command}"
        else:
            message = f"Command failed ({returncode}): {command}"
        if output:
            message += f"\nOutput: {output}"
        super().__init__(message)


class SupervisorError(Exception):
    """The process supervisor rejected or failed a command"""


class RepositorySyncError(Exception):
    """Fetching or merging the working copy failed"""


class DeploymentError(Exception):
    """A pipeline run terminated before a successful restart"""
    condition = "internal"

    def __init__(self, stage: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload = {"reason": self.condition, "stage": self.stage, "message": self.message}
        payload.update(self.details)
        return payload


class WrongBranchError(DeploymentError):
    condition = "wrong-branch"


class UnmanagedProcessError(DeploymentError):
    condition = "unmanaged-process"


class SyncError(DeploymentError):
    condition = "sync-failed"


class HookError(DeploymentError):
    condition = "hook-failed"


class RestartError(DeploymentError):
    condition = "restart-failed"
