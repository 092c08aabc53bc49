"""FastAPI application entry point for the dev pipeline.

Exposes the workflow service to the admin surfaces (chat bot callbacks,
dashboard, CLI) and to scheduled batch jobs:

- ``/intake/...``: approve, route and delete intake records
- ``/items/{issue_number}/...``: status changes, reviews, merges, reverts,
  decisions and clarification answers
- ``/batch/...``: agent batch runs and auto-advance
- ``/health``, ``/ready`` and ``/metrics`` for the platform
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from .agents.orchestrator import AgentRunOrchestrator
from .agents.runner import CliAgentRunner
from .artifacts.store import PostgresArtifactStore
from .config import DevPipelineSettings, get_settings
from .events.emitter import CompositeEventEmitter, HistoryEventEmitter, LoggingEventEmitter
from .events.metrics import MetricsEventEmitter, generate_metrics_output
from .github.client import GitHubClient
from .notifications.notifier import LoggingNotifier, Notifier, TelegramNotifier
from .state.models import DecisionSelection, ReviewStatus, WorkItemStatus
from .state.repository import PostgresDatabase, PostgresIntakeRepository, PostgresWorkItemRepository
from .state.store import CollectionProjectStore, GitHubProjectStore, ProjectItemStore
from .workflow.service import WorkflowService
from .workflow.transitions import UNCHANGED

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: DevPipelineSettings
database: Optional[PostgresDatabase] = None
github_client: Optional[GitHubClient] = None
notifier: Optional[Notifier] = None
service: Optional[WorkflowService] = None
orchestrator: Optional[AgentRunOrchestrator] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: DevPipelineSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Dev pipeline configuration:")
    logger.info(f"  GitHub Base URL: {cfg.github_base_url}")
    logger.info(f"  GitHub Repository: {cfg.github_owner}/{cfg.github_repo}")
    logger.info(f"  GitHub Token: {_redact_secret(cfg.github_token)}")
    logger.info(f"  GitHub Project Number: {cfg.github_project_number}")
    logger.info(f"  Store Backend: {cfg.store_backend}")
    logger.info(f"  Database URL: {_redact_secret(cfg.database_url)}")
    logger.info(f"  Agent CLI Path: {cfg.agent_cli_path}")
    logger.info(f"  Agent Timeout Seconds: {cfg.agent_timeout_seconds}")
    logger.info(f"  Undo Window Seconds: {cfg.undo_window_seconds}")
    logger.info(f"  Decision Token Secret: {_redact_secret(cfg.decision_token_secret)}")
    logger.info(f"  Telegram Enabled: {cfg.telegram_enabled}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _build_store(
    cfg: DevPipelineSettings,
    gateway: GitHubClient,
    work_items: PostgresWorkItemRepository,
) -> ProjectItemStore:
    """Select the project item store backend from settings."""
    if cfg.store_backend == "github-project":
        return GitHubProjectStore(
            gateway,
            owner=cfg.github_owner,
            project_number=cfg.github_project_number,
            owner_type=cfg.github_owner_type,
            max_attempts=cfg.rate_limit_max_attempts,
            base_delay=cfg.rate_limit_base_delay_seconds,
        )
    return CollectionProjectStore(work_items, gateway)


def _build_notifier(cfg: DevPipelineSettings) -> Notifier:
    repository_url = f"https://github.com/{cfg.github_owner}/{cfg.github_repo}"
    if cfg.telegram_enabled:
        return TelegramNotifier(
            bot_token=cfg.telegram_bot_token,
            chat_id=cfg.telegram_chat_id,
            repository_url=repository_url,
            api_url=cfg.telegram_api_url,
        )
    return LoggingNotifier(repository_url)


def _build_service(
    cfg: DevPipelineSettings,
    db: PostgresDatabase,
    gateway: GitHubClient,
    admin_notifier: Notifier,
) -> AgentRunOrchestrator:
    """Wire the workflow service and agent orchestrator.

    Args:
        cfg: Validated settings.
        db: Connected database.
        gateway: Authenticated GitHub client.
        admin_notifier: Notification channel for the admin.

    Returns:
        The orchestrator; its ``service`` attribute is the workflow service.
    """
    work_items = PostgresWorkItemRepository(db)
    intake = PostgresIntakeRepository(db)
    artifacts = PostgresArtifactStore(db)
    store = _build_store(cfg, gateway, work_items)

    emitter = CompositeEventEmitter(
        [
            LoggingEventEmitter(),
            MetricsEventEmitter(),
            HistoryEventEmitter(work_items),
        ]
    )

    workflow_service = WorkflowService(
        store,
        work_items,
        intake,
        gateway,
        artifacts,
        notifier=admin_notifier,
        emitter=emitter,
        undo_window_seconds=cfg.undo_window_seconds,
        decision_token_secret=cfg.decision_token_secret,
    )
    runner = CliAgentRunner(
        cli_path=cfg.agent_cli_path,
        timeout_seconds=cfg.agent_timeout_seconds,
    )
    return AgentRunOrchestrator(
        service=workflow_service,
        runner=runner,
        store=store,
        work_items=work_items,
        gateway=gateway,
        artifacts=artifacts,
        notifier=admin_notifier,
        emitter=emitter,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Database pool and GitHub client setup
    - Dependency wiring for the workflow service and orchestrator
    """
    global settings, database, github_client, notifier, service, orchestrator

    logger.info("Dev pipeline starting up...")

    settings = get_settings()
    _log_configuration(settings)

    database = PostgresDatabase(settings.database_url)
    await database.connect()
    github_client = GitHubClient(
        token=settings.github_token,
        owner=settings.github_owner,
        repo=settings.github_repo,
        base_url=settings.github_base_url,
    )
    notifier = _build_notifier(settings)
    orchestrator = _build_service(settings, database, github_client, notifier)
    service = orchestrator.service

    logger.info("Dev pipeline started successfully")

    yield

    logger.info("Dev pipeline shutting down...")

    if isinstance(notifier, TelegramNotifier):
        await notifier.close()
    if github_client is not None:
        await github_client.close()
    if database is not None:
        await database.disconnect()

    logger.info("Dev pipeline shutdown complete")


app = FastAPI(
    title="Dev Pipeline",
    description="Work item workflow from intake to merged code",
    version="1.0.0",
    lifespan=lifespan,
)


def _service() -> WorkflowService:
    if service is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return service


def _orchestrator() -> AgentRunOrchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return orchestrator


def _respond(result: Any) -> JSONResponse:
    """Serialize a service result; failures become 400 responses."""
    status_code = 200 if result.success else 400
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


# -----------------------------------------------------------------------------
# Request bodies
# -----------------------------------------------------------------------------


class ApproveRequest(BaseModel):
    initial_route: Optional[str] = None


class RouteRequest(BaseModel):
    destination: str


class StatusRequest(BaseModel):
    status: WorkItemStatus
    clear_review: bool = True


class ReviewStatusRequest(BaseModel):
    review_status: ReviewStatus


class DesignReviewRequest(BaseModel):
    action: str


class DesignChangesRequest(BaseModel):
    pr_number: int
    phase_label: str = ""


class PhaseRequest(BaseModel):
    phase: str
    status: Optional[WorkItemStatus] = None


class UndoRequest(BaseModel):
    """Fields to restore; ``restore_review_status`` is only applied when sent."""

    restore_status: Optional[WorkItemStatus] = None
    restore_review_status: Optional[ReviewStatus] = None
    timestamp: Optional[datetime] = None


class MergeDesignRequest(BaseModel):
    pr_number: int
    design_type: str


class MergeRequest(BaseModel):
    pr_number: int


class RevertRequest(BaseModel):
    pr_number: int
    short_sha: Optional[str] = None
    phase: Optional[str] = None


class DecisionRequest(BaseModel):
    selection: DecisionSelection
    token: Optional[str] = None


class ClarificationRequest(BaseModel):
    answer: str
    custom_text: Optional[str] = None
    notes: Optional[str] = None


# -----------------------------------------------------------------------------
# Platform endpoints
# -----------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is healthy.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Checks database and GitHub connectivity.

    Returns:
        Status and dependency health, with 503 when a dependency is down.
    """
    database_ok = database is not None and await database.health_check()
    github_ok = github_client is not None and await github_client.health_check()
    status = "ready" if database_ok and github_ok else "not_ready"
    return JSONResponse(
        status_code=200 if status == "ready" else 503,
        content={
            "status": status,
            "dependencies": {
                "database": "healthy" if database_ok else "unhealthy",
                "github": "healthy" if github_ok else "unhealthy",
            },
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


# -----------------------------------------------------------------------------
# Intake
# -----------------------------------------------------------------------------


@app.post("/intake/{collection}/{record_id}/approve")
async def approve_intake(collection: str, record_id: str, body: ApproveRequest):
    return _respond(await _service().approve_workflow_item(collection, record_id, body.initial_route))


@app.post("/intake/{collection}/{record_id}/route")
async def route_intake(collection: str, record_id: str, body: RouteRequest):
    return _respond(await _service().route_workflow_item(collection, record_id, body.destination))


@app.delete("/intake/{collection}/{record_id}")
async def delete_intake(collection: str, record_id: str, force: bool = False):
    return _respond(await _service().delete_workflow_item(collection, record_id, force=force))


@app.post("/workflow-items/{item_id}/route")
async def route_workflow_item(item_id: str, body: StatusRequest):
    return _respond(await _service().route_workflow_item_by_workflow_id(item_id, body.status.value))


# -----------------------------------------------------------------------------
# Status and review transitions
# -----------------------------------------------------------------------------


@app.post("/items/{issue_number}/status")
async def set_status(issue_number: int, body: StatusRequest):
    return _respond(
        await _service().advance_status(issue_number, body.status, clear_review=body.clear_review, actor="admin")
    )


@app.post("/items/{issue_number}/review-status")
async def set_review_status(issue_number: int, body: ReviewStatusRequest):
    return _respond(await _service().update_review_status(issue_number, body.review_status, actor="admin"))


@app.delete("/items/{issue_number}/review-status")
async def clear_review_status(issue_number: int):
    return _respond(await _service().clear_review_status(issue_number, actor="admin"))


@app.post("/items/{issue_number}/design-review")
async def review_design(issue_number: int, body: DesignReviewRequest):
    return _respond(await _service().review_design(issue_number, body.action))


@app.post("/items/{issue_number}/design-changes")
async def request_design_changes(issue_number: int, body: DesignChangesRequest):
    return _respond(
        await _service().request_changes_on_design_pr(issue_number, body.pr_number, body.phase_label)
    )


@app.post("/items/{issue_number}/pr-changes")
async def request_pr_changes(issue_number: int):
    return _respond(await _service().request_changes_on_pr(issue_number))


@app.post("/items/{issue_number}/phase")
async def set_phase(issue_number: int, body: PhaseRequest):
    return _respond(await _service().advance_implementation_phase(issue_number, body.phase, body.status))


@app.post("/items/{issue_number}/undo")
async def undo(issue_number: int, body: UndoRequest):
    restore_review = (
        body.restore_review_status if "restore_review_status" in body.model_fields_set else UNCHANGED
    )
    return _respond(
        await _service().undo_status_change(
            issue_number,
            restore_status=body.restore_status,
            restore_review_status=restore_review,
            timestamp=body.timestamp,
        )
    )


@app.post("/items/{issue_number}/done")
async def mark_done(issue_number: int):
    return _respond(await _service().mark_done(issue_number, actor="admin"))


# -----------------------------------------------------------------------------
# Merges and reverts
# -----------------------------------------------------------------------------


@app.post("/items/{issue_number}/merge-design")
async def merge_design(issue_number: int, body: MergeDesignRequest):
    return _respond(await _service().merge_design_pr(issue_number, body.pr_number, body.design_type))


@app.post("/items/{issue_number}/approve-design/{design_type}")
async def approve_design(issue_number: int, design_type: str):
    return _respond(await _service().approve_design(issue_number, design_type))


@app.post("/items/{issue_number}/merge-pr")
async def merge_pr(issue_number: int, body: MergeRequest):
    return _respond(await _service().merge_implementation_pr(issue_number, body.pr_number))


@app.post("/items/{issue_number}/merge-final")
async def merge_final(issue_number: int, body: MergeRequest):
    return _respond(await _service().merge_final_pr(issue_number, body.pr_number))


@app.post("/items/{issue_number}/revert")
async def revert(issue_number: int, body: RevertRequest):
    return _respond(
        await _service().revert_merge(issue_number, body.pr_number, short_sha=body.short_sha, phase=body.phase)
    )


@app.post("/items/{issue_number}/merge-revert")
async def merge_revert(issue_number: int, body: MergeRequest):
    return _respond(await _service().merge_revert_pr(issue_number, body.pr_number))


# -----------------------------------------------------------------------------
# Decisions and clarifications
# -----------------------------------------------------------------------------


@app.post("/items/{issue_number}/decision")
async def submit_decision(issue_number: int, body: DecisionRequest):
    return _respond(await _service().submit_decision(issue_number, body.selection, token=body.token))


@app.post("/items/{issue_number}/decision/recommended")
async def choose_recommended(issue_number: int):
    return _respond(await _service().choose_recommended_option(issue_number))


@app.post("/items/{issue_number}/clarification")
async def answer_clarification(issue_number: int, body: ClarificationRequest):
    return _respond(
        await _service().submit_clarification_answer(
            issue_number, body.answer, custom_text=body.custom_text, notes=body.notes
        )
    )


# -----------------------------------------------------------------------------
# Agent runs and batch jobs
# -----------------------------------------------------------------------------


@app.post("/items/{issue_number}/agents/{workflow}")
async def run_agent(issue_number: int, workflow: str):
    return _respond(await _orchestrator().run_item(workflow, issue_number))


@app.post("/batch/agents/{workflow}")
async def run_agent_batch(workflow: str, limit: Optional[int] = None):
    try:
        result = await _orchestrator().run_batch(workflow, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return result.model_dump(mode="json")


@app.post("/batch/auto-advance")
async def auto_advance(dry_run: bool = False):
    return _respond(await _service().auto_advance_approved(dry_run=dry_run))


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.devpipeline.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
