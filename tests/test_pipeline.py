"""
tests/test_pipeline.py

Unit tests for the deployment pipeline. The process supervisor and the git
adapter are replaced by dummies; post-sync hooks run real shell commands in a
temporary directory.
"""

import tempfile
import threading
import unittest

from deploy_system import events
from deploy_system.broadcaster import EventBroadcaster
from deploy_system.config import DeployConfig, DeploymentDefinition
from deploy_system.errors import RepositorySyncError, SupervisorError
from deploy_system.pipeline import DeploymentPipeline, Outcome, Stage
from deploy_system.registry import DeploymentRegistry
from deploy_system.supervisor import ManagedProcess


class DummySupervisor:
    def __init__(self, names=("api",), fail_restart=False):
        self.names = set(names)
        self.fail_restart = fail_restart
        self.restarted = []

    def find(self, name):
        if name in self.names:
            return ManagedProcess(name, "online", 1234)
        return None

    def restart(self, name, timeout=None):
        if self.fail_restart:
            raise SupervisorError("pm2 restart failed")
        self.restarted.append(name)


class DummyRepoSync:
    def __init__(self, fail_fetch=False):
        self.fail_fetch = fail_fetch
        self.calls = []

    def fetch_all(self, path, timeout=None):
        self.calls.append(("fetch", path))
        if self.fail_fetch:
            raise RepositorySyncError("could not read from remote repository")

    def merge_branches(self, path, local, remote, timeout=None):
        self.calls.append(("merge", path, local, remote))


class BlockingRepoSync(DummyRepoSync):
    """Holds the run inside the sync stage until released"""
    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.proceed = threading.Event()

    def fetch_all(self, path, timeout=None):
        self.entered.set()
        self.proceed.wait(5)
        super().fetch_all(path, timeout)


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self.workdir = tempfile.TemporaryDirectory()
        self.registry = DeploymentRegistry()
        self.broadcaster = EventBroadcaster()
        self.subscription = self.broadcaster.subscribe()
        self.supervisor = DummySupervisor()
        self.repo_sync = DummyRepoSync()

    def tearDown(self):
        self.subscription.close()
        self.broadcaster.close()
        self.workdir.cleanup()

    def make_pipeline(self, post_hooks=(), global_hooks=()):
        definition = DeploymentDefinition(name="api", path=self.workdir.name, branch="main",
                                          post_hooks=tuple(post_hooks))
        deploy_config = DeployConfig(deployments=(definition,), post_hooks=tuple(global_hooks),
                                     branch="main")
        return DeploymentPipeline(deploy_config, self.registry, self.broadcaster,
                                  self.supervisor, self.repo_sync)

    def published(self):
        result = []
        while True:
            event = self.subscription.get(timeout=0)
            if event is None:
                return result
            result.append((event.kind, event.data))

    def push(self, ref="refs/heads/main", repo="api"):
        return events.PushEvent(repo=repo, ref=ref)


class TestPipeline(PipelineTestCase):
    def test_successful_deploy(self):
        result = self.make_pipeline().run(self.push())

        self.assertEqual(result.outcome, Outcome.SUCCESS)
        self.assertEqual(self.published(), [
            ("status", {"inprogress": True}),
            ("deploy-log", "found process"),
            ("deploy-log", "pulling..."),
            ("deploy-log", "finished pulling"),
            ("deploy-log", "restart..."),
            ("status", {"inprogress": False, "success": True}),
        ])
        self.assertEqual(self.supervisor.restarted, ["api"])
        self.assertEqual(self.repo_sync.calls, [
            ("fetch", self.workdir.name),
            ("merge", self.workdir.name, "main", "origin/main"),
        ])
        self.assertFalse(self.registry.is_running("api"))
        self.assertEqual(self.broadcaster.status, "idle")

    def test_wrong_branch(self):
        result = self.make_pipeline().run(self.push(ref="refs/heads/feature-x"))

        self.assertEqual(result.outcome, Outcome.FAILED)
        published = self.published()
        self.assertEqual(published[:2], [
            ("status", {"inprogress": True}),
            ("status", {"inprogress": False, "success": False}),
        ])
        self.assertEqual(len(published), 3)
        kind, data = published[2]
        self.assertEqual(kind, "error")
        self.assertEqual(data["reason"], "wrong-branch")
        self.assertEqual(data["stage"], Stage.BRANCH_CHECK.value)
        self.assertEqual(data["expected"], "main")
        self.assertEqual(data["actual"], "feature-x")
        self.assertEqual(self.repo_sync.calls, [])
        self.assertEqual(self.supervisor.restarted, [])
        self.assertEqual(len(self.registry), 0)

    def test_unconfigured_repository_is_silent(self):
        result = self.make_pipeline().run(self.push(repo="unknown"))

        self.assertEqual(result.outcome, Outcome.SKIPPED)
        self.assertEqual(self.published(), [])
        self.assertEqual(len(self.registry), 0)

    def test_missing_process(self):
        self.supervisor.names = set()
        result = self.make_pipeline().run(self.push())

        self.assertEqual(result.error.condition, "unmanaged-process")
        self.assertEqual(self.published()[-1][1]["reason"], "unmanaged-process")
        self.assertEqual(self.repo_sync.calls, [])

    def test_sync_failure(self):
        self.repo_sync.fail_fetch = True
        result = self.make_pipeline().run(self.push())

        self.assertEqual(result.error.condition, "sync-failed")
        self.assertEqual(result.error.stage, "sync")
        self.assertNotIn(("deploy-log", "finished pulling"), self.published())
        self.assertEqual(self.supervisor.restarted, [])
        self.assertFalse(self.registry.is_running("api"))

    def test_hooks_stream_output_in_order(self):
        result = self.make_pipeline(post_hooks=["echo one; echo two 1>&2"],
                                    global_hooks=["echo three"]).run(self.push())

        self.assertTrue(result.success)
        logs = [data for kind, data in self.published() if kind == "deploy-log"]
        self.assertEqual(logs, [
            "found process",
            "pulling...",
            "finished pulling",
            "running: echo one; echo two 1>&2",
            "one",
            "two",
            "running: echo three",
            "three",
            "restart...",
        ])

    def test_undecodable_hook_output_does_not_fail_run(self):
        result = self.make_pipeline(post_hooks=["printf 'progress \\377\\n'"]).run(self.push())

        self.assertTrue(result.success)
        logs = [data for kind, data in self.published() if kind == "deploy-log"]
        self.assertIn("progress \ufffd", logs)
        self.assertEqual(self.supervisor.restarted, ["api"])

    def test_failing_hook_aborts_remaining_hooks(self):
        result = self.make_pipeline(post_hooks=["exit 3", "echo never"]).run(self.push())

        self.assertEqual(result.error.condition, "hook-failed")
        published = self.published()
        self.assertNotIn(("deploy-log", "running: echo never"), published)
        error = published[-1][1]
        self.assertEqual(error["command"], "exit 3")
        self.assertEqual(error["exit_status"], 3)
        self.assertEqual(self.supervisor.restarted, [])

    def test_restart_failure(self):
        self.supervisor.fail_restart = True
        result = self.make_pipeline().run(self.push())

        self.assertEqual(result.error.condition, "restart-failed")
        self.assertEqual(self.published()[-2], ("status", {"inprogress": False, "success": False}))
        self.assertEqual(len(self.registry), 0)

    def test_unexpected_error_is_contained(self):
        def explode(name):
            raise RuntimeError("boom")
        self.supervisor.find = explode

        result = self.make_pipeline().run(self.push())

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(result.error.condition, "internal")
        self.assertEqual(result.error.stage, "locate-process")
        self.assertEqual(len(self.registry), 0)

    def test_exactly_one_terminal_status_per_run(self):
        pipeline = self.make_pipeline()
        pipeline.run(self.push())
        pipeline.run(self.push(ref="refs/heads/other"))

        terminal = [data for kind, data in self.published()
                    if kind == "status" and not data["inprogress"]]
        self.assertEqual(terminal, [
            {"inprogress": False, "success": True},
            {"inprogress": False, "success": False},
        ])


class TestConcurrentPushes(PipelineTestCase):
    def test_second_push_is_refused_while_first_syncs(self):
        self.repo_sync = BlockingRepoSync()
        pipeline = self.make_pipeline()

        first = pipeline.trigger(self.push())
        self.assertTrue(self.repo_sync.entered.wait(5))

        second = pipeline.run(self.push())
        self.assertEqual(second.outcome, Outcome.BUSY)
        self.assertEqual([r.repo for r in self.registry.snapshot()], ["api"])
        self.assertEqual(self.broadcaster.status, "running")

        self.repo_sync.proceed.set()
        first.join(5)
        self.assertFalse(first.is_alive())

        published = self.published()
        busy = [data for kind, data in published
                if kind == "deploy-log" and "already in progress" in data]
        self.assertEqual(len(busy), 1)
        self.assertNotIn("error", [kind for kind, _ in published])
        self.assertEqual(published[-1], ("status", {"inprogress": False, "success": True}))
        self.assertEqual(self.supervisor.restarted, ["api"])
        self.assertEqual(len(self.registry), 0)


if __name__ == "__main__":
    unittest.main()
