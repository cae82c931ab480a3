from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth import get_current_user_id, security
from .concurrency import wait_for_pending
from .config import get_log_level
from .db import Base, engine
from .errors import APIError, DatabaseError, InvalidRequest, Unauthorized
from .schemas import (
    FeedbackOut,
    FeedbackRequest,
    GhostCardPage,
    HealthOut,
    SatisfactionFeedbackOut,
    SatisfactionFeedbackRequest,
    SkillbookContextOut,
    WizardCompleteOut,
    WizardCompleteRequest,
)
from .services import intake
from .services.learning import LearningOrchestrator, get_learning_orchestrator
from .services.skillbook_adapter import load_user_skillbook
from .services.telemetry import TraceClient, close_telemetry, get_telemetry
from .store import RecordStore, StoreError, get_store

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 10.0
INVALID_JSON_MESSAGE = "Invalid JSON"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    Base.metadata.create_all(bind=engine)
    yield
    if not wait_for_pending(timeout=SHUTDOWN_DRAIN_SECONDS):
        logger.warning("Shutting down with background effects still in flight")
    close_telemetry()


app = FastAPI(
    lifespan=lifespan,
    title="Pause API",
    version="0.1.0",
    description=(
        "Feedback ingestion for Guardian interventions. Decisions are recorded synchronously; "
        "scoring, ghost cards and skillbook learning happen after the response."
    ),
)


@app.exception_handler(APIError)
async def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # The body is decoded before dependencies run, so the session check comes first here.
    try:
        get_current_user_id(await security(request))
    except Unauthorized as auth_error:
        return await handle_api_error(request, auth_error)
    if any(error.get("type") == "json_invalid" for error in exc.errors()):
        return JSONResponse(status_code=InvalidRequest.status_code, content={"error": INVALID_JSON_MESSAGE})
    return JSONResponse(status_code=InvalidRequest.status_code, content={"error": InvalidRequest.default_message})


UserId = Annotated[str, Depends(get_current_user_id)]
Store = Annotated[RecordStore, Depends(get_store)]
Telemetry = Annotated[TraceClient | None, Depends(get_telemetry)]
Orchestrator = Annotated[LearningOrchestrator, Depends(get_learning_orchestrator)]


@app.get("/health", response_model=HealthOut)
def health() -> HealthOut:
    return HealthOut(ok=True, service="pause-api")


@app.post("/api/ai/feedback", response_model=FeedbackOut, response_model_exclude_none=True)
def post_feedback(
    payload: FeedbackRequest,
    user_id: UserId,
    store: Store,
    telemetry: Telemetry,
    orchestrator: Orchestrator,
    background_tasks: BackgroundTasks,
) -> FeedbackOut:
    return intake.submit_feedback(
        payload,
        user_id,
        store=store,
        telemetry=telemetry,
        orchestrator=orchestrator,
        background_tasks=background_tasks,
    )


@app.patch("/api/ai/ghost-cards/{ghost_card_id}", response_model=SatisfactionFeedbackOut)
def patch_ghost_card(
    ghost_card_id: str,
    payload: SatisfactionFeedbackRequest,
    user_id: UserId,
    store: Store,
    orchestrator: Orchestrator,
    background_tasks: BackgroundTasks,
) -> SatisfactionFeedbackOut:
    return intake.submit_satisfaction_feedback(
        ghost_card_id,
        payload,
        user_id,
        store=store,
        orchestrator=orchestrator,
        background_tasks=background_tasks,
    )


@app.get("/api/ai/ghost-cards", response_model=GhostCardPage)
def get_ghost_cards(user_id: UserId, store: Store, cursor: str | None = None) -> GhostCardPage:
    return intake.list_ghost_cards(user_id, cursor, store=store)


@app.post("/api/ai/guardian/wizard-complete", response_model=WizardCompleteOut)
def post_wizard_complete(
    payload: WizardCompleteRequest,
    user_id: UserId,
    store: Store,
    telemetry: Telemetry,
) -> WizardCompleteOut:
    return intake.complete_wizard(payload, user_id, store=store, telemetry=telemetry)


@app.get("/api/ai/skillbook", response_model=SkillbookContextOut)
def get_skillbook_context(user_id: UserId, store: Store) -> SkillbookContextOut:
    try:
        context = load_user_skillbook(store, user_id)
    except StoreError as exc:
        logger.error("Skillbook load failed for user %s: %s", user_id, exc)
        raise DatabaseError() from exc
    return SkillbookContextOut(context=context)
