"""
Quotes API: intake, edits, re-submission and the approval-status view.
"""

from fastapi import APIRouter, Depends, status
import structlog

from quote_approvals.engine import Engine, get_engine
from quote_approvals.middleware.actor import get_current_actor
from quote_approvals.models.quote import Quote
from quote_approvals.schemas.approval import ApprovalResponse
from quote_approvals.schemas.quote import (
    ApprovalStatusResponse,
    QuoteCreate,
    QuoteResponse,
    QuoteUpdate,
)

logger = structlog.get_logger()
router = APIRouter()


@router.post("", response_model=QuoteResponse, status_code=status.HTTP_201_CREATED)
async def create_quote(
    body: QuoteCreate,
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    """Create a quote and run workflow selection on it."""
    quote = Quote(**body.model_dump(), created_by=current_actor["user_id"])
    return await engine.quotes.submit_quote(quote)


@router.get("/{quote_id}", response_model=QuoteResponse)
async def get_quote(quote_id: str, engine: Engine = Depends(get_engine)):
    return await engine.repo.get_quote(quote_id)


@router.put("/{quote_id}", response_model=QuoteResponse)
async def update_quote(
    quote_id: str,
    body: QuoteUpdate,
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    """Edit a quote. Approval-relevant edits on a bound quote are refused with 409."""
    return await engine.quotes.update_quote(quote_id, body.model_dump(exclude_unset=True))


@router.post("/{quote_id}/resubmit", response_model=QuoteResponse)
async def resubmit_quote(
    quote_id: str,
    body: QuoteUpdate = QuoteUpdate(),
    current_actor: dict = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    """Expire the current chain, apply any edits, and evaluate a new submission."""
    return await engine.quotes.resubmit(quote_id, body.model_dump(exclude_unset=True))


@router.get("/{quote_id}/approval-status", response_model=ApprovalStatusResponse)
async def get_approval_status(quote_id: str, engine: Engine = Depends(get_engine)):
    view = await engine.quotes.approval_status(quote_id)
    view["approvals"] = [ApprovalResponse.model_validate(a) for a in view["approvals"]]
    return ApprovalStatusResponse(**view)
