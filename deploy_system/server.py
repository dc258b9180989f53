"""
The deploy server's HTTP surface, built with Flask.

    POST <webhook path>   GitHub push notifications, handed to the pipeline
    GET  /status          current deployment status and running deployments
    GET  <realtime path>  server-sent event stream of deployment events

Run it with `python -m deploy_system.server --config config/config.json`.
"""

import argparse
import json
import logging
import signal
import sys

from flask import Flask, Response, abort, jsonify, request, stream_with_context

from deploy_system import config, events
from deploy_system.broadcaster import EventBroadcaster
from deploy_system.errors import ConfigError, SupervisorError
from deploy_system.pipeline import DeploymentPipeline
from deploy_system.registry import DeploymentRegistry
from deploy_system.repo_sync import GitRepositorySync
from deploy_system.supervisor import Pm2Supervisor

logger = logging.getLogger(__name__)


def create_app(pipeline: DeploymentPipeline, keepalive: float = config.REALTIME_KEEPALIVE) -> Flask:
    app = Flask(__name__)
    deploy_config = pipeline.config
    app.config["PIPELINE"] = pipeline

    @app.route("/")
    def index():
        return jsonify(success=False, reason="NOTFOUND")

    @app.route("/status")
    def status():
        return jsonify(
            status=pipeline.broadcaster.status,
            running=[record.to_dict() for record in pipeline.registry.snapshot()],
        )

    @app.route(deploy_config.webhook_path, methods=["POST"])
    def webhook():
        kind = request.headers.get("X-GitHub-Event", "push")
        if kind != "push":
            logger.info(f"Ignoring {kind} event")
            return jsonify(success=True, ignored=kind)

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            abort(400)
        repository = payload.get("repository")
        if not isinstance(repository, dict):
            abort(400)
        repo = repository.get("name")
        ref = payload.get("ref")
        if not isinstance(repo, str) or not isinstance(ref, str) or not repo or not ref:
            abort(400)

        pipeline.trigger(events.PushEvent(repo=repo, ref=ref, payload=payload))
        return jsonify(success=True, repo=repo), 202

    @app.route(deploy_config.realtime_path)
    def realtime():
        def stream():
            with pipeline.broadcaster.subscribe() as subscription:
                yield ": connected\n\n"
                while True:
                    event = subscription.get(timeout=keepalive)
                    if event is None:
                        yield ": keep-alive\n\n"
                        continue
                    yield f"event: {event.kind}\ndata: {json.dumps(event.to_dict())}\n\n"

        return Response(stream_with_context(stream()), mimetype="text/event-stream",
                        headers={"Cache-Control": "no-cache"})

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify(success=False, reason="BADREQUEST"), 400

    @app.errorhandler(404)
    def page_not_found(e):
        return jsonify(success=False, reason="NOTFOUND"), 404

    return app


def start_deployments(deploy_config, supervisor) -> None:
    """Start every configured nodejs deployment pm2 does not already supervise"""
    running = {process.name for process in supervisor.list()}
    for definition in deploy_config.definitions():
        if definition.type != "nodejs":
            logger.info(f"{definition.name} is a {definition.type} deployment, not starting it")
            continue
        if definition.name in running:
            logger.info(f"{definition.name} already supervised")
            continue
        options = definition.process_options()
        logger.info(f"Starting {definition.name} with {options}")
        try:
            supervisor.start(options)
        except SupervisorError as e:
            logger.error(f"{definition.name} failed to start with: {e}")


def serve():
    """Main server function with graceful shutdown handling"""
    parser = argparse.ArgumentParser(description="Push-triggered deployment server")
    parser.add_argument("--config", default=str(config.CONFIG_PATH),
                        help="Path to config.json")
    parser.add_argument("--host", default=None, type=str,
                        help=f"Server host (default: {config.SERVER_HOST})")
    parser.add_argument("--port", default=None, type=int,
                        help=f"Server port (default: {config.SERVER_PORT})")
    args = parser.parse_args()

    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)

    try:
        deploy_config = config.load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    supervisor = Pm2Supervisor(timeout=deploy_config.timeouts.restart)
    try:
        supervisor.ping()
        start_deployments(deploy_config, supervisor)
    except SupervisorError as e:
        logger.error(f"Could not reach pm2: {e}")
        sys.exit(2)
    logger.info("pm2 connected")

    broadcaster = EventBroadcaster(deploy_config.listener_endpoints(), deploy_config.retry)
    pipeline = DeploymentPipeline(
        deploy_config,
        DeploymentRegistry(),
        broadcaster,
        supervisor,
        GitRepositorySync(timeout=deploy_config.timeouts.sync),
    )
    app = create_app(pipeline)

    def shutdown(signum, frame):
        logger.info("Gracefully shutting down from SIGINT (Ctrl-C)")
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, shutdown)

    host = args.host or deploy_config.host
    port = args.port or deploy_config.port
    logger.info(f"Deploy server running on {host}:{port}")
    try:
        app.run(host=host, port=port, threaded=True, use_reloader=False,
                debug=(config.LOG_LEVEL == "DEBUG"))
    except KeyboardInterrupt:
        pass
    finally:
        broadcaster.close()
        logger.info("Deploy server shut down complete")


if __name__ == "__main__":
    serve()
