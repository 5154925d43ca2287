"""
FastAPI routes for the generation-job orchestrator.

Job Endpoints:
  POST /jobs                        Create a standalone job (holds tokens)
  GET  /jobs/{id}                   Job status / result

Timeline Endpoints:
  POST /timelines                   Create a chained multi-segment timeline
  GET  /timelines/{id}              Timeline status with its segments
  POST /timelines/{id}/cancel       Cancel every unfinished segment
  POST /timelines/{id}/segments/{position}/regenerate
                                    Re-run a segment and the rest of the chain

Balance Endpoints:
  GET  /balances/{owner_id}         Balance, held and available tokens
  POST /balances/{owner_id}/credit  Add tokens (called by checkout)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from .errors import InsufficientBalance, InvalidTimeline, JobNotFound, TimelineNotFound
from .models import (
    CreatedResponse,
    CreateJobRequest,
    CreateTimelineRequest,
    JobStatus,
    JobView,
    TimelineStatus,
    TimelineView,
)
from .orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


class CreditRequest(BaseModel):
    amount: int = Field(..., gt=0)


# ═════════════════════════════════════════════════════════════════════════════
# Job Router
# ═════════════════════════════════════════════════════════════════════════════

job_router = APIRouter(prefix="/jobs", tags=["jobs"])


@job_router.post("", response_model=CreatedResponse, status_code=202)
async def create_job(
    request: CreateJobRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Hold tokens and start a job; poll GET /jobs/{id} for the result."""
    try:
        job_id = await orchestrator.create_job(request.owner_id, request.kind, request.input_spec)
        return CreatedResponse(id=job_id, status=JobStatus.CREATED.value)
    except InsufficientBalance as e:
        logger.warning(f"Job rejected: {e}")
        raise HTTPException(status_code=402, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Job creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@job_router.get("/{job_id}", response_model=JobView)
async def get_job(
    job_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_job_status(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except Exception as e:
        logger.error(f"Get job failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Timeline Router
# ═════════════════════════════════════════════════════════════════════════════

timeline_router = APIRouter(prefix="/timelines", tags=["timelines"])


@timeline_router.post("", response_model=CreatedResponse, status_code=202)
async def create_timeline(
    request: CreateTimelineRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Hold tokens for every segment (all or none) and start the first one."""
    try:
        timeline_id = await orchestrator.create_timeline(request.owner_id, request.segments)
        return CreatedResponse(id=timeline_id, status=TimelineStatus.IN_PROGRESS.value)
    except InsufficientBalance as e:
        logger.warning(f"Timeline rejected: {e}")
        raise HTTPException(status_code=402, detail=str(e))
    except InvalidTimeline as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Timeline creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@timeline_router.get("/{timeline_id}", response_model=TimelineView)
async def get_timeline(
    timeline_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_timeline_status(timeline_id)
    except TimelineNotFound:
        raise HTTPException(status_code=404, detail="Timeline not found")
    except Exception as e:
        logger.error(f"Get timeline failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@timeline_router.post("/{timeline_id}/cancel", response_model=TimelineView)
async def cancel_timeline(
    timeline_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.cancel_timeline(timeline_id)
    except TimelineNotFound:
        raise HTTPException(status_code=404, detail="Timeline not found")
    except Exception as e:
        logger.error(f"Cancel timeline failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@timeline_router.post("/{timeline_id}/segments/{position}/regenerate", response_model=TimelineView, status_code=202)
async def regenerate_segment(
    timeline_id: str,
    position: int,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Hold tokens again for the segment and its successors and re-run them."""
    try:
        return await orchestrator.regenerate_segment(timeline_id, position)
    except TimelineNotFound:
        raise HTTPException(status_code=404, detail="Timeline not found")
    except InsufficientBalance as e:
        logger.warning(f"Regeneration rejected: {e}")
        raise HTTPException(status_code=402, detail=str(e))
    except InvalidTimeline as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Regenerate segment failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Balance Router
# ═════════════════════════════════════════════════════════════════════════════

balance_router = APIRouter(prefix="/balances", tags=["balances"])


@balance_router.get("/{owner_id}")
async def get_balance(
    owner_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_balance(owner_id)


@balance_router.post("/{owner_id}/credit")
async def credit_balance(
    owner_id: str,
    request: CreditRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.credit_tokens(owner_id, request.amount)
    return await orchestrator.get_balance(owner_id)
