"""
The deployment pipeline.

A push for a configured repository walks through a fixed sequence of stages:

    match -> admit -> branch-check -> locate-process -> sync -> post-hooks
          -> restart -> finalize

The first failing stage ends the run. Every admitted run is finalized exactly
once: its registry record is released and a terminal status event (plus an
error event on failure) is published. Runs for different repositories proceed
concurrently on their own threads; a push for a repository that is already
deploying is refused with a busy report.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from deploy_system import events, helpers
from deploy_system.broadcaster import EventBroadcaster
from deploy_system.config import DeployConfig, DeploymentDefinition
from deploy_system.errors import (CommandError, DeploymentError, HookError, RepositorySyncError,
                                  RestartError, SupervisorError, SyncError, UnmanagedProcessError,
                                  WrongBranchError)
from deploy_system.registry import DeploymentRegistry
from deploy_system.supervisor import ManagedProcess

logger = logging.getLogger(__name__)


class Stage(str, enum.Enum):
    MATCH = "match"
    ADMIT = "admit"
    BRANCH_CHECK = "branch-check"
    LOCATE_PROCESS = "locate-process"
    SYNC = "sync"
    POST_HOOKS = "post-hooks"
    RESTART = "restart"
    FINALIZE = "finalize"


class Outcome(str, enum.Enum):
    SKIPPED = "skipped"
    BUSY = "busy"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class DeploymentRun:
    """State carried from one stage to the next"""
    push: events.PushEvent
    definition: DeploymentDefinition
    stage: Stage = Stage.ADMIT
    process: Optional[ManagedProcess] = None


@dataclass(frozen=True)
class RunResult:
    repo: str
    outcome: Outcome
    error: Optional[DeploymentError] = None

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCESS


class DeploymentPipeline:
    def __init__(self, deploy_config: DeployConfig, registry: DeploymentRegistry,
                 broadcaster: EventBroadcaster, supervisor, repo_sync):
        self.config = deploy_config
        self.registry = registry
        self.broadcaster = broadcaster
        self.supervisor = supervisor
        self.repo_sync = repo_sync

    def trigger(self, push: events.PushEvent) -> threading.Thread:
        """Run the pipeline for push on a background thread"""
        thread = threading.Thread(target=self.run, args=(push,),
                                  name=f"deploy-{push.repo}", daemon=True)
        thread.start()
        return thread

    def run(self, push: events.PushEvent) -> RunResult:
        logger.info(f"Got push event for: {push.repo} ({push.ref})")

        definition = self.config.definition_for(push.repo)
        if definition is None:
            logger.info(f"{push.repo} is not configured, ignoring push")
            return RunResult(push.repo, Outcome.SKIPPED)

        if not self.registry.try_admit(push.repo):
            logger.warning(f"Deployment for {push.repo} already in progress, dropping push")
            self._log(push.repo, f"deployment already in progress, ignoring push to {push.ref}")
            return RunResult(push.repo, Outcome.BUSY)

        run = DeploymentRun(push, definition)
        error = None
        try:
            self._emit(events.STATUS, push.repo, {"inprogress": True})
            for stage, step in (
                (Stage.BRANCH_CHECK, self._check_branch),
                (Stage.LOCATE_PROCESS, self._locate_process),
                (Stage.SYNC, self._sync),
                (Stage.POST_HOOKS, self._run_hooks),
                (Stage.RESTART, self._restart),
            ):
                run.stage = stage
                step(run)
        except DeploymentError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error deploying {push.repo}")
            error = DeploymentError(run.stage.value, f"unexpected error: {e}")
        finally:
            self._finalize(run, error)

        if error is not None:
            return RunResult(push.repo, Outcome.FAILED, error)
        return RunResult(push.repo, Outcome.SUCCESS)

    # Stages

    def _check_branch(self, run: DeploymentRun) -> None:
        actual = helpers.branch_from_ref(run.push.ref)
        expected = run.definition.branch
        if actual != expected:
            raise WrongBranchError(run.stage.value, f"push to {actual}, deploying {expected}",
                                   {"expected": expected, "actual": actual})

    def _locate_process(self, run: DeploymentRun) -> None:
        name = run.definition.name
        try:
            process = self.supervisor.find(name)
        except SupervisorError as e:
            raise UnmanagedProcessError(run.stage.value, f"could not query process supervisor: {e}")
        if process is None:
            raise UnmanagedProcessError(run.stage.value, f"no supervised process named {name}")
        run.process = process
        self._log(name, "found process")

    def _sync(self, run: DeploymentRun) -> None:
        definition = run.definition
        timeout = self.config.timeouts.sync
        self._log(definition.name, "pulling...")
        try:
            self.repo_sync.fetch_all(definition.path, timeout=timeout)
            self.repo_sync.merge_branches(definition.path, definition.branch,
                                          f"origin/{definition.branch}", timeout=timeout)
        except RepositorySyncError as e:
            raise SyncError(run.stage.value, str(e))
        self._log(definition.name, "finished pulling")

    def _run_hooks(self, run: DeploymentRun) -> None:
        definition = run.definition
        commands = list(definition.post_hooks) + list(self.config.global_post_hooks())
        for command in commands:
            self._log(definition.name, f"running: {command}")
            try:
                for line in helpers.stream_command(command, cwd=definition.path,
                                                   timeout=self.config.timeouts.hooks):
                    self._log(definition.name, line)
            except CommandError as e:
                raise HookError(run.stage.value, str(e), {
                    "command": command,
                    "exit_status": e.returncode,
                    "timed_out": e.timed_out,
                })
            except OSError as e:
                raise HookError(run.stage.value, f"could not run {command}: {e}",
                                {"command": command, "exit_status": None})

    def _restart(self, run: DeploymentRun) -> None:
        self._log(run.definition.name, "restart...")
        try:
            self.supervisor.restart(run.process.name, timeout=self.config.timeouts.restart)
        except SupervisorError as e:
            raise RestartError(run.stage.value, str(e))

    def _finalize(self, run: DeploymentRun, error: Optional[DeploymentError]) -> None:
        repo = run.definition.name
        self.registry.release(repo)
        self._emit(events.STATUS, repo, {"inprogress": False, "success": error is None})
        if error is not None:
            logger.error(f"Deployment of {repo} failed at {error.stage}: {error.message}")
            self._emit(events.ERROR, repo, error.to_payload())
        else:
            logger.info(f"{repo} deployed successfully")

    # Events

    def _emit(self, kind: str, repo: str, data) -> None:
        self.broadcaster.publish(events.DeploymentEvent(kind, repo, data))

    def _log(self, repo: str, message: str) -> None:
        self._emit(events.DEPLOY_LOG, repo, message)
