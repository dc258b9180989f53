"""
Synchronizes a deployment's working copy with its remote.
Fetches every remote, then merges the remote tracking branch into the
local branch of the same name. Credentials come from the ssh agent; git is
never allowed to prompt.
"""

import logging
from typing import Optional

from deploy_system import config, helpers
from deploy_system.errors import CommandError, RepositorySyncError

logger = logging.getLogger(__name__)

GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_MERGE_AUTOEDIT": "no"}


class GitRepositorySync:
    def __init__(self, binary: str = "git", timeout: float = config.SYNC_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def _git(self, path: str, *args: str, timeout: Optional[float] = None) -> str:
        try:
            return helpers.run_command([self.binary, "-C", path, *args],
                                       timeout=timeout or self.timeout, env=GIT_ENV)
        except CommandError as e:
            raise RepositorySyncError(str(e)) from e

    def fetch_all(self, path: str, timeout: Optional[float] = None) -> None:
        logger.debug(f"Fetching remotes for {path}")
        self._git(path, "fetch", "--all", "--prune", timeout=timeout)

    def merge_branches(self, path: str, local: str, remote: str, timeout: Optional[float] = None) -> None:
        """Merge `remote` (e.g. origin/main) into the local branch `local`"""
        logger.debug(f"Merging {remote} into {local} at {path}")
        self._git(path, "checkout", local, timeout=timeout)
        self._git(path, "merge", "--no-edit", remote, timeout=timeout)
