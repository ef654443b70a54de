"""
Quote intake: evaluation, edits and re-submission.

A quote binds to a workflow the moment its chain is instantiated. Until then,
edits to approval-relevant fields simply re-run selection. Afterwards they are
refused; the caller has to resubmit, which expires the pending approvals of
the current submission and evaluates a fresh one.
"""

from datetime import datetime
from typing import Optional

import structlog

from quote_approvals.errors import ChainAlreadyBound, ResolutionFailure
from quote_approvals.models.common import utcnow
from quote_approvals.models.quote import APPROVAL_FIELDS, Quote
from quote_approvals.services.approval_service import (
    ApprovalService,
    chain_progress,
    chain_status,
)
from quote_approvals.services.repository import Repository
from quote_approvals.services.workflow_selector import select_workflow

logger = structlog.get_logger()


class QuoteService:
    def __init__(self, repo: Repository, approvals: ApprovalService):
        self.repo = repo
        self.approvals = approvals

    async def submit_quote(self, quote: Quote, now: Optional[datetime] = None) -> Quote:
        now = now or utcnow()
        await self.repo.save_quote(quote)
        logger.info("quote_submitted", quote_id=quote.id, total_cents=quote.total_cents)
        return await self.evaluate(quote, now)

    async def evaluate(self, quote: Quote, now: Optional[datetime] = None) -> Quote:
        """Select a workflow and instantiate its first stage, or mark the quote not_required."""
        now = now or utcnow()
        workflow = select_workflow(quote, await self.repo.list_workflows(active_only=True))
        if workflow is None:
            quote = quote.model_copy(update={
                "approval_status": "not_required",
                "workflow_id": None,
                "bound_at": None,
                "updated_at": now,
            })
            return await self.repo.save_quote(quote)

        quote = quote.model_copy(update={
            "approval_status": "pending",
            "workflow_id": workflow.id,
            "bound_at": now,
            "updated_at": now,
        })
        await self.repo.save_quote(quote)
        try:
            await self.approvals.start_chain(quote, workflow, now)
        except ResolutionFailure as e:
            # Alert is standing; the chain stays pending until an operator steps in
            logger.error("quote_chain_stalled", quote_id=quote.id, error=e.message)
        if not workflow.levels:
            # A workflow without levels has nothing to wait for
            quote = quote.model_copy(update={"approval_status": "approved"})
            await self.repo.save_quote(quote)
        return await self.repo.get_quote(quote.id)

    async def update_quote(self, quote_id: str, changes: dict, now: Optional[datetime] = None) -> Quote:
        now = now or utcnow()
        quote = await self.repo.get_quote(quote_id)
        relevant = {
            name for name in APPROVAL_FIELDS
            if name in changes and changes[name] != getattr(quote, name)
        }
        if relevant and quote.is_bound:
            raise ChainAlreadyBound(
                "Quote is bound to an approval chain; resubmit to change "
                + ", ".join(sorted(relevant)),
                subject_id=quote.id,
            )

        quote = quote.model_copy(update={**changes, "updated_at": now})
        await self.repo.save_quote(quote)
        logger.info("quote_updated", quote_id=quote.id, fields=sorted(changes))
        if relevant or quote.approval_status is None:
            return await self.evaluate(quote, now)
        return quote

    async def resubmit(
        self, quote_id: str, changes: Optional[dict] = None, now: Optional[datetime] = None
    ) -> Quote:
        now = now or utcnow()
        quote = await self.repo.get_quote(quote_id)
        await self.approvals.cancel_submission(quote, "resubmitted", now)
        quote = quote.model_copy(update={
            **(changes or {}),
            "submission": quote.submission + 1,
            "workflow_id": None,
            "bound_at": None,
            "approval_status": None,
            "updated_at": now,
        })
        await self.repo.save_quote(quote)
        logger.info("quote_resubmitted", quote_id=quote.id, submission=quote.submission)
        return await self.evaluate(quote, now)

    async def approval_status(self, quote_id: str) -> dict:
        quote = await self.repo.get_quote(quote_id)
        approvals = await self.repo.list_approvals(quote.id, quote.submission)
        if quote.workflow_id is None:
            return {
                "quote_id": quote.id,
                "status": quote.approval_status or "not_required",
                "workflow_id": None,
                "submission": quote.submission,
                "progress_percentage": 100 if quote.approval_status == "not_required" else 0,
                "approvals": approvals,
            }

        workflow = await self.repo.get_workflow(quote.workflow_id)
        return {
            "quote_id": quote.id,
            "status": chain_status(workflow, approvals),
            "workflow_id": workflow.id,
            "submission": quote.submission,
            "progress_percentage": round(chain_progress(workflow, approvals) * 100),
            "approvals": approvals,
        }
