import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from proposal_lifecycle.api.observability import setup_observability
from proposal_lifecycle.api.persistence_profile import validate_persistence_profile_guardrails
from proposal_lifecycle.api.routers.approvals import router as approvals_router
from proposal_lifecycle.api.routers.proposals import router as proposal_lifecycle_router
from proposal_lifecycle.api.routers.workflow_config import router as workflow_config_router


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    yield


app = FastAPI(
    title="Proposal Lifecycle API",
    version="0.1.0",
    description=(
        "Proposal authoring, versioning, approval routing, and client lifecycle service.\n\n"
        "Proposals move through `draft`, `pending_approval`, `sent`, `viewed`, and end in "
        "`signed`, `rejected`, or `expired`."
    ),
    openapi_tags=[
        {
            "name": "Proposal Lifecycle",
            "description": "Proposal persistence, versioning, and client interaction endpoints.",
        },
        {
            "name": "Proposal Approvals",
            "description": "Internal approval chain decisions.",
        },
        {
            "name": "Workflow Configuration",
            "description": "Workflow rule and approval chain administration.",
        },
    ],
    lifespan=_app_lifespan,
)

logger = logging.getLogger(__name__)

setup_observability(app)
app.include_router(proposal_lifecycle_router)
app.include_router(approvals_router)
app.include_router(workflow_config_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Proposal Lifecycle"], summary="Liveness Probe")
def health() -> dict[str, str]:
    return {"status": "ok"}
