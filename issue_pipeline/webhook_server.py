"""HTTP trigger surface for the issue pipeline."""

from typing import Any, Literal

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from issue_pipeline.config.settings import PipelineSettings
from issue_pipeline.engine.issue_store import ISSUE_ID_REGEX
from issue_pipeline.engine.orchestrator import PipelineOrchestrator, describe_issue, handle_trigger
from issue_pipeline.exceptions import IssueNotFoundError, IssuePipelineError

log = structlog.get_logger(__name__)


class TriggerRequest(BaseModel):
    """Body of ``POST /trigger``."""

    command: Literal["start", "resume"]
    issue_id: str = Field(pattern=ISSUE_ID_REGEX)
    title: str = ""
    description: str = ""


def create_app(settings: PipelineSettings, orchestrator: PipelineOrchestrator | None = None) -> FastAPI:
    """Build the FastAPI application.

    Triggers are validated synchronously and then run as background tasks,
    so a request returns as soon as the issue is accepted.
    """
    pipeline = orchestrator or PipelineOrchestrator.from_settings(settings)
    app = FastAPI(title="Issue Pipeline Trigger Server")

    async def run_trigger(payload: dict[str, Any]) -> None:
        try:
            issue = await handle_trigger(payload, pipeline)
            log.info("trigger_completed", issue_id=issue.id, status=issue.status.value)
        except IssuePipelineError as e:
            log.error("trigger_failed", issue_id=payload["issue_id"], error=e.message)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/trigger", status_code=202)
    async def trigger(request: TriggerRequest, background_tasks: BackgroundTasks) -> dict[str, str]:
        if pipeline.is_running(request.issue_id):
            raise HTTPException(status_code=409, detail=f"Issue {request.issue_id} is already running")
        exists = await pipeline.store.exists(request.issue_id)
        if request.command == "start" and exists:
            raise HTTPException(status_code=409, detail=f"Issue {request.issue_id} already exists")
        if request.command == "resume":
            if not exists:
                raise HTTPException(status_code=404, detail=f"Issue {request.issue_id} not found")
            context = await pipeline.status(request.issue_id)
            if context.issue.status.is_terminal:
                raise HTTPException(
                    status_code=409,
                    detail=f"Issue {request.issue_id} is already {context.issue.status.value}",
                )

        log.info("trigger_accepted", command=request.command, issue_id=request.issue_id)
        background_tasks.add_task(run_trigger, request.model_dump())
        return {"status": "accepted", "command": request.command, "issue_id": request.issue_id}

    @app.get("/issues/{issue_id}")
    async def get_issue(issue_id: str) -> dict[str, Any]:
        try:
            context = await pipeline.status(issue_id)
        except IssueNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        except IssuePipelineError as e:
            log.error("issue_status_failed", issue_id=issue_id, error=e.message)
            raise HTTPException(status_code=422, detail=e.message) from e
        return describe_issue(context)

    return app
