"""
This module defines constants and the configuration loader for the deploy server.
It includes host/port settings for the HTTP server, webhook and realtime paths,
listener retry policy, per-step timeouts, logging levels, and the JSON
deployment directory read once at startup.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from deploy_system.errors import ConfigError

# Location of the deployment directory
CONFIG_PATH = Path(os.environ.get("DEPLOY_CONFIG", Path.cwd() / "config" / "config.json"))

# Network configurations
SERVER_HOST = "0.0.0.0"
SERVER_PORT = 8080
WEBHOOK_PATH = "/github/callback"
REALTIME_PATH = "/realtime"

# Branch every push is compared against unless a deployment names its own
DEFAULT_BRANCH = "master"

# Listener delivery: attempts, and delay = initial * factor ** (attempt - 1), capped
LISTENER_MAX_ATTEMPTS = 10
LISTENER_BACKOFF_FACTOR = 3
LISTENER_INITIAL_DELAY = 1.0  # Seconds before the first retry
LISTENER_MAX_DELAY = 600.0
LISTENER_TIMEOUT = 10.0  # Seconds per POST

# Step timeouts (seconds)
SYNC_TIMEOUT = 300
HOOK_TIMEOUT = 900
RESTART_TIMEOUT = 60

# Seconds between keep-alive comments on an idle realtime stream
REALTIME_KEEPALIVE = 15

# Logging configuration
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class DeploymentDefinition:
    """A managed service: where it lives, what branch it tracks, how it runs."""
    name: str
    path: str
    branch: str
    main: str = "index.js"
    type: str = "nodejs"
    pm2: Dict[str, Any] = field(default_factory=dict)
    post_hooks: Tuple[str, ...] = ()

    def process_options(self) -> Dict[str, Any]:
        """Start options handed to the process supervisor"""
        opts = {
            "script": os.path.join(self.path, self.main),
            "name": self.name,
            "cwd": self.path,
            "exec_mode": "fork",
        }
        # check for pm2 override / additions
        opts.update(self.pm2.get("opts", {}))
        return opts


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = LISTENER_MAX_ATTEMPTS
    factor: float = LISTENER_BACKOFF_FACTOR
    initial_delay: float = LISTENER_INITIAL_DELAY
    max_delay: float = LISTENER_MAX_DELAY
    timeout: float = LISTENER_TIMEOUT

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt"""
        return min(self.initial_delay * self.factor ** (attempt - 1), self.max_delay)


@dataclass(frozen=True)
class StepTimeouts:
    sync: float = SYNC_TIMEOUT
    hooks: float = HOOK_TIMEOUT
    restart: float = RESTART_TIMEOUT


@dataclass(frozen=True)
class DeployConfig:
    """Read-only deployment directory, loaded once at process start."""
    deployments: Tuple[DeploymentDefinition, ...] = ()
    post_hooks: Tuple[str, ...] = ()
    listeners: Tuple[str, ...] = ()
    branch: str = DEFAULT_BRANCH
    host: str = SERVER_HOST
    port: int = SERVER_PORT
    webhook_path: str = WEBHOOK_PATH
    realtime_path: str = REALTIME_PATH
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeouts: StepTimeouts = field(default_factory=StepTimeouts)

    def definition_for(self, name: str) -> Optional[DeploymentDefinition]:
        for definition in self.deployments:
            if definition.name == name:
                return definition
        return None

    def definitions(self) -> Tuple[DeploymentDefinition, ...]:
        return self.deployments

    def global_post_hooks(self) -> Tuple[str, ...]:
        return self.post_hooks

    def listener_endpoints(self) -> Tuple[str, ...]:
        return self.listeners

    def expected_branch(self) -> str:
        return self.branch


def _string_list(value: Any, what: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{what} must be a list of strings")
    return tuple(value)


def _parse_deployment(entry: Dict[str, Any], default_branch: str) -> DeploymentDefinition:
    if not isinstance(entry, dict):
        raise ConfigError(f"Invalid deployment entry: {entry!r}")
    name = entry.get("name")
    path = entry.get("path")
    if not name or not path:
        raise ConfigError(f"Deployment requires 'name' and 'path': {entry!r}")

    pm2 = entry.get("pm2") or {}
    if not isinstance(pm2, dict):
        raise ConfigError(f"Deployment {name}: 'pm2' must be an object")

    return DeploymentDefinition(
        name=name,
        path=path,
        branch=entry.get("branch") or default_branch,
        main=entry.get("main", "index.js"),
        type=entry.get("type", "nodejs"),
        pm2=pm2,
        post_hooks=_string_list(entry.get("post_hooks"), f"Deployment {name}: 'post_hooks'"),
    )


def parse_config(data: Dict[str, Any]) -> DeployConfig:
    """Build a DeployConfig from an already decoded JSON document"""
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be an object")

    server = data.get("server", {})
    socket = data.get("socket", {})
    hook = data.get("githubhook", {})
    retry = data.get("retry", {})
    timeouts = data.get("timeouts", {})
    for section in (server, socket, hook, retry, timeouts):
        if not isinstance(section, dict):
            raise ConfigError(f"Invalid configuration section: {section!r}")
    branch = hook.get("branch", DEFAULT_BRANCH)

    deployments = []
    seen = set()
    for entry in data.get("deployments", []):
        definition = _parse_deployment(entry, branch)
        if definition.name in seen:
            raise ConfigError(f"Duplicate deployment: {definition.name}")
        seen.add(definition.name)
        deployments.append(definition)

    try:
        return DeployConfig(
            deployments=tuple(deployments),
            post_hooks=_string_list(data.get("post_hooks"), "'post_hooks'"),
            listeners=_string_list(data.get("listeners"), "'listeners'"),
            branch=branch,
            host=server.get("host", SERVER_HOST),
            port=int(server.get("port", SERVER_PORT)),
            webhook_path=hook.get("path", WEBHOOK_PATH),
            realtime_path=socket.get("path", REALTIME_PATH),
            retry=RetryPolicy(
                attempts=int(retry.get("attempts", LISTENER_MAX_ATTEMPTS)),
                factor=float(retry.get("factor", LISTENER_BACKOFF_FACTOR)),
                initial_delay=float(retry.get("initial_delay", LISTENER_INITIAL_DELAY)),
                max_delay=float(retry.get("max_delay", LISTENER_MAX_DELAY)),
                timeout=float(retry.get("timeout", LISTENER_TIMEOUT)),
            ),
            timeouts=StepTimeouts(
                sync=float(timeouts.get("sync", SYNC_TIMEOUT)),
                hooks=float(timeouts.get("hooks", HOOK_TIMEOUT)),
                restart=float(timeouts.get("restart", RESTART_TIMEOUT)),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")


def load_config(path=CONFIG_PATH) -> DeployConfig:
    """
    Read the JSON deployment directory.

    :param path: location of config.json
    :return: the loaded configuration
    :raises ConfigError: if the file is missing, unreadable or malformed
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not load configuration {path}: {e}")
    return parse_config(data)
