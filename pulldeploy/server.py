"""Webhook listener and update poller for the PullDeploy daemon."""

import hmac
import logging
import sys
import threading
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from . import __version__
from .config import Config, load_configuration, validate_configuration
from .errors import ErrorCategory, error_handler
from .git_sync import ReconciliationEngine
from .keys import DeployKeyError, ensure_deploy_key

SECRET_QUERY_PARAM = "deploy"


class WebhookRepository(BaseModel):
    """Repository descriptor carried by a push notification."""
    ssh_url: Optional[str] = None
    clone_url: Optional[str] = None
    private: bool = False


class WebhookPayload(BaseModel):
    repository: WebhookRepository = Field(default_factory=WebhookRepository)


def setup_logging(config: Config) -> None:
    """Setup logging configuration with structured logging."""
    class StructuredFormatter(logging.Formatter):
        def format(self, record):
            if hasattr(record, 'operation'):
                record.msg = f"[{record.operation}] {record.msg}"
            return super().format(record)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    loggers = [
        'pulldeploy.init',
        'pulldeploy.webhook',
        'pulldeploy.poller',
        'pulldeploy.git_sync',
        'pulldeploy.error_handler'
    ]

    formatter = StructuredFormatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    for logger_name in loggers:
        logger = logging.getLogger(logger_name)
        logger.setLevel(getattr(logging, config.log_level))

        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.propagate = False


def select_repository_url(repository: WebhookRepository, private_key_exists: bool) -> str:
    """
    Choose the clone address from a webhook repository descriptor.

    Private repositories use the SSH address when a deploy key exists and
    fall back to the HTTP address otherwise. Public repositories use the
    HTTP address.
    """
    logger = logging.getLogger('pulldeploy.webhook')
    repo_url = ""

    if repository.private:
        if private_key_exists:
            if repository.ssh_url:
                repo_url = repository.ssh_url
                logger.info(f"Repository is private, using SSH URL: {repo_url}")
        elif repository.clone_url:
            repo_url = repository.clone_url
            logger.warning(f"Repository is private but no SSH key found. Using Clone URL: {repo_url}")
            logger.warning("This may fail if the repository requires authentication. Set PRIVATE=true to generate SSH keys.")
    elif repository.clone_url:
        repo_url = repository.clone_url
        logger.info(f"Repository is public, using Clone URL: {repo_url}")

    if not repo_url:
        if private_key_exists and repository.ssh_url:
            repo_url = repository.ssh_url
            logger.info(f"Falling back to SSH URL: {repo_url}")
        elif repository.clone_url:
            repo_url = repository.clone_url
            logger.info(f"Falling back to Clone URL: {repo_url}")

    return repo_url


def create_app(config: Config, engine: Optional[ReconciliationEngine] = None) -> FastAPI:
    """Create the webhook application."""
    app = FastAPI(
        title="PullDeploy",
        description="Pull-to-deploy webhook listener",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.engine = engine or ReconciliationEngine(config)

    @app.api_route("/", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def deploy(request: Request):
        logger = logging.getLogger('pulldeploy.webhook')

        if request.method != "POST":
            response = error_handler.handle_request_error("METHOD_NOT_ALLOWED", "Method not allowed")
            return JSONResponse(response.to_dict(), status_code=405)

        if not config.webhook_enabled:
            response = error_handler.handle_request_error(
                "WEBHOOK_DISABLED", "Webhook functionality is disabled: no DEPLOY_KEY configured",
                ErrorCategory.AUTHENTICATION
            )
            return JSONResponse(response.to_dict(), status_code=403)

        api_key = request.query_params.get(SECRET_QUERY_PARAM, "")
        if not api_key:
            response = error_handler.handle_request_error(
                "API_KEY_REQUIRED", "API key is required", ErrorCategory.AUTHENTICATION
            )
            return JSONResponse(response.to_dict(), status_code=400)
        if not hmac.compare_digest(api_key.encode("utf-8"), config.secret_key.encode("utf-8")):
            response = error_handler.handle_request_error(
                "INVALID_API_KEY", "Invalid API key", ErrorCategory.AUTHENTICATION
            )
            return JSONResponse(response.to_dict(), status_code=401)

        body = await request.body()
        repo_url = ""
        try:
            payload = WebhookPayload.model_validate_json(body or b"{}")
        except ValidationError as e:
            logger.warning(f"Error parsing webhook payload: {e.error_count()} error(s)")
        else:
            logger.info(f"Parsed webhook payload: {payload.repository.model_dump()}")
            repo_url = select_repository_url(payload.repository, config.private_key_path.exists())

        logger.info("Received valid deploy request, updating repository...")
        result = await run_in_threadpool(app.state.engine.reconcile, repo_url)

        if not result.success:
            response = error_handler.handle_reconcile_failure(result)
            return JSONResponse(response.to_dict(), status_code=500)

        logger.info("Repository update completed successfully")
        return PlainTextResponse("Deployment successful", status_code=200)

    return app


class UpdatePoller(threading.Thread):
    """
    Periodically reconciles the working copy against a fixed URL.

    Failures are logged and retried on the next tick without backoff.
    """

    def __init__(self, engine: ReconciliationEngine, repo_url: str, interval: float):
        super().__init__(name="pulldeploy-poller", daemon=True)
        self.engine = engine
        self.repo_url = repo_url
        self.interval = interval
        self.logger = logging.getLogger('pulldeploy.poller')
        self._stop_event = threading.Event()

    def run(self) -> None:
        self.logger.info(f"Setting up automatic updates for repository: {self.repo_url}")
        while not self._stop_event.wait(self.interval):
            self.check_for_updates()

    def check_for_updates(self) -> bool:
        """Run one reconciliation; returns True on success."""
        self.logger.info("Checking for repository updates...")
        try:
            result = self.engine.reconcile(self.repo_url, cancel=self._stop_event)
        except Exception as e:
            self.logger.error(f"Error checking for updates: {e}", exc_info=True)
            return False

        if not result.success:
            self.logger.error(f"Error checking for updates: {result.message}")
            return False

        self.logger.info("Repository update check completed")
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and cancel an in-flight reconciliation."""
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)


def _report_validation_issues(issues: List[str], logger: logging.Logger) -> int:
    error_count = 0
    for issue in issues:
        if issue.startswith("ERROR:"):
            logger.error(issue[7:])
            error_count += 1
        elif issue.startswith("WARNING:"):
            logger.warning(issue[9:])
    return error_count


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the PullDeploy daemon."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    init_logger = logging.getLogger('pulldeploy.init')

    try:
        config = load_configuration(argv)
    except ValueError as e:
        init_logger.critical(str(e))
        sys.exit(1)

    setup_logging(config)

    error_count = _report_validation_issues(validate_configuration(config), init_logger)
    if error_count > 0:
        init_logger.critical(f"Startup failed due to {error_count} configuration error(s)")
        sys.exit(1)

    if config.private_mode:
        init_logger.info("Running in PRIVATE mode, SSH keys will be generated")
    else:
        init_logger.info("Running in non-PRIVATE mode, SSH keys will not be generated")

    try:
        config.app_parent_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        init_logger.warning(f"Failed to create app parent directory: {e}")

    try:
        ensure_deploy_key(config)
    except DeployKeyError as e:
        init_logger.critical(str(e))
        sys.exit(1)

    init_logger.info(f"Starting PullDeploy server on port {config.port}")
    init_logger.info(f"Watching for changes in {config.app_dir}")

    engine = ReconciliationEngine(config)
    app = create_app(config, engine)

    poller = None
    if not config.private_mode and config.repo_url:
        poller = UpdatePoller(engine, config.repo_url, config.poll_interval)
        poller.start()

    try:
        uvicorn.run(app, host="0.0.0.0", port=config.port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        init_logger.info("Server stopped by user (Ctrl+C)")
    finally:
        if poller is not None:
            poller.stop(timeout=5)


if __name__ == "__main__":
    main()
