"""
FastAPI application serving the structured qualification interview.
Provides REST API endpoints for the interview flow and monitoring.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from qualifier.config import settings
from qualifier.service import QualificationIncompleteError, get_service
from qualifier.session_store import (
    ConcurrentUpdateError,
    SessionExistsError,
    SessionNotFoundError,
    StoreUnavailableError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Pydantic models for API
class StartRequest(BaseModel):
    """Request model for starting a qualification."""

    model_config = ConfigDict(
        json_schema_extra={"example": {"session_id": "prospect_42", "context_hint": "Acme Corp"}}
    )

    session_id: str | None = Field(None, description="Session identifier; generated when omitted")
    context_hint: str | None = Field(None, description="Company name used in the greeting")


class StartResponse(BaseModel):
    """First question of a new qualification."""

    session_id: str
    current_step: int
    total_steps: int
    prompt: str
    step_title: str


class RespondRequest(BaseModel):
    """Request model for submitting an answer."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "session_id": "prospect_42",
                "response": "We need to improve our customer support process",
            }
        }
    )

    session_id: str = Field(..., min_length=1, description="Session identifier")
    response: str = Field(..., description="Respondent's answer")


class TurnResponse(BaseModel):
    """Next prompt and interview position after one answer."""

    session_id: str
    current_step: int
    total_steps: int
    prompt: str
    step_title: str
    is_follow_up: bool
    progress: int = Field(..., ge=0, le=100)
    is_optional: bool | None = None
    section_complete: bool | None = None
    missing_required: list[str] | None = None
    is_complete: bool | None = None
    final_data: dict[str, Any] | None = None


class StatusResponse(BaseModel):
    """Current state of a qualification."""

    session_id: str
    current_step: int
    total_steps: int
    status: str
    structured_data: dict[str, Any]
    progress: int
    started_at: datetime
    completed_at: datetime | None = None


class DataQuality(BaseModel):
    completeness: int
    quality: str
    filled_fields: int
    total_fields: int
    missing_critical: list[str]


class ResultsResponse(BaseModel):
    """Final structured data of a completed qualification."""

    session_id: str
    status: str
    completed_at: datetime | None
    structured_data: dict[str, Any]
    data_quality: DataQuality


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    environment: str
    language_service_circuit_breaker: dict
    store_circuit_breaker: dict | None = None


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Qualification session not found")


def _conflict() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="This session was updated by another request. Please retry.",
    )


def _store_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Session store unavailable"
    )


def _internal_error(endpoint: str, e: Exception) -> HTTPException:
    logger.error(f"Error in {endpoint}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An error occurred processing your request. Please try again.",
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Starting Qualification Interview API")
    logger.info(f"Environment: {settings.environment}")

    service = None
    try:
        service = get_service()
        logger.info("Qualification service initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize qualification service: {e}")

    yield

    logger.info("Shutting down Qualification Interview API")
    if service is not None and hasattr(service.store, "close"):
        service.store.close()


# Create FastAPI app
app = FastAPI(
    title="Qualification Interview API",
    description="Structured multi-step qualification interview with AI-assisted follow-ups",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API Endpoints


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {"message": "Qualification Interview API", "version": "1.0.0", "docs": "/docs"}


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """
    Health check endpoint.
    Returns service status and circuit breaker states.
    """
    service = get_service()
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        language_service_circuit_breaker=service.language_service.get_circuit_breaker_state(),
        store_circuit_breaker=service.store.get_circuit_breaker_state(),
    )


@app.get("/ready")
def ready():
    return {"status": "ready"}


@app.get("/metrics", tags=["Monitoring"])
async def metrics():
    """
    Monitoring snapshot.

    Returns:
    - Stored sessions
    - Sessions with a turn in flight
    - Circuit breaker states
    """
    service = get_service()

    return {
        "active_sessions": service.store.count(),
        "turns_in_flight": len(service.locks),
        "language_service_circuit_breaker": service.language_service.get_circuit_breaker_state(),
        "store_circuit_breaker": service.store.get_circuit_breaker_state(),
        "environment": settings.environment,
    }


@app.post("/qualification/start", response_model=StartResponse, tags=["Qualification"])
async def start_qualification(request: StartRequest):
    """
    Start a new qualification and get the first question.

    Omit ``session_id`` to let the server generate one.
    """
    session_id = request.session_id or uuid.uuid4().hex

    try:
        result = await get_service().start_qualification(session_id, request.context_hint)
        return StartResponse(**result.to_dict())

    except SessionExistsError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Qualification session already exists"
        ) from e
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable starting {session_id}: {e}")
        raise _store_unavailable() from e
    except Exception as e:
        logger.error(f"Error in /qualification/start: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start qualification. Please try again.",
        ) from e


@app.post(
    "/qualification/respond",
    response_model=TurnResponse,
    response_model_exclude_none=True,
    tags=["Qualification"],
)
async def respond(request: RespondRequest):
    """
    Submit an answer and get the next question.

    Example turn:

    Request:
    ```json
    {"session_id": "prospect_42", "response": "We need to improve our customer support process"}
    ```

    Response (required detail still missing):
    ```json
    {
        "session_id": "prospect_42",
        "current_step": 1,
        "total_steps": 4,
        "prompt": "What's your role at the company?",
        "step_title": "Understanding the Problem (gathering details...)",
        "is_follow_up": true,
        "section_complete": false,
        "missing_required": ["jobFunction"],
        "progress": 13
    }
    ```
    """
    utterance = request.response.strip()
    if not utterance:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Response cannot be empty"
        )

    try:
        logger.info(f"Qualification turn: session={request.session_id}")
        result = await get_service().process_response(request.session_id, utterance)
        return TurnResponse(**result.to_dict())

    except SessionNotFoundError as e:
        raise _not_found() from e
    except ConcurrentUpdateError as e:
        logger.warning(f"Concurrent update rejected: {e}")
        raise _conflict() from e
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable for {request.session_id}: {e}")
        raise _store_unavailable() from e
    except Exception as e:
        raise _internal_error("/qualification/respond", e) from e


@app.post("/qualification/{session_id}/complete", response_model=StatusResponse, tags=["Qualification"])
async def complete(session_id: str):
    """
    Finish a qualification without answering a pending optional question.
    Calling it again on a completed qualification changes nothing.
    """
    try:
        await get_service().complete_qualification(session_id)
        return StatusResponse(**get_service().get_status(session_id))

    except SessionNotFoundError as e:
        raise _not_found() from e
    except QualificationIncompleteError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Required answers are still missing"
        ) from e
    except ConcurrentUpdateError as e:
        logger.warning(f"Concurrent completion rejected: {e}")
        raise _conflict() from e
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable completing {session_id}: {e}")
        raise _store_unavailable() from e
    except Exception as e:
        raise _internal_error("/qualification/complete", e) from e


@app.get("/qualification/{session_id}/status", response_model=StatusResponse, tags=["Qualification"])
async def qualification_status(session_id: str):
    """Get the current step, captured data and progress of a qualification."""
    try:
        return StatusResponse(**get_service().get_status(session_id))
    except SessionNotFoundError as e:
        raise _not_found() from e
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable reading {session_id}: {e}")
        raise _store_unavailable() from e
    except Exception as e:
        raise _internal_error("/qualification/status", e) from e


@app.get("/qualification/{session_id}/results", response_model=ResultsResponse, tags=["Qualification"])
async def qualification_results(session_id: str):
    """Get the final structured data and its quality score."""
    try:
        return ResultsResponse(**get_service().get_results(session_id))
    except SessionNotFoundError as e:
        raise _not_found() from e
    except QualificationIncompleteError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Qualification not yet completed"
        ) from e
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable reading {session_id}: {e}")
        raise _store_unavailable() from e
    except Exception as e:
        raise _internal_error("/qualification/results", e) from e


@app.delete("/qualification/{session_id}", tags=["Qualification"])
async def reset_qualification(session_id: str):
    """
    Delete a qualification session.
    Useful for starting a fresh interview under the same identifier.
    """
    try:
        get_service().reset_session(session_id)
        return {"message": f"Qualification reset for session {session_id}", "session_id": session_id}
    except SessionNotFoundError as e:
        raise _not_found() from e
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable resetting {session_id}: {e}")
        raise _store_unavailable() from e
    except Exception as e:
        raise _internal_error("/qualification/reset", e) from e


if __name__ == "__main__":
    uvicorn.run(
        "qualifier.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8080)),
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
