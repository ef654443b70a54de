"""
Workflow selector: picks the approval workflow for a quote and lays out its chain.

Selection:
  - only active workflows are candidates
  - every trigger condition must match
  - highest aggregate condition priority wins
  - ties: most recently created workflow, then greatest id (deterministic)

No match means the quote needs no approval.
"""

from dataclasses import dataclass, field
from itertools import groupby
from typing import Iterable, Optional

import structlog

from quote_approvals.models.quote import Quote
from quote_approvals.models.workflow import ApprovalLevel, ApprovalWorkflow
from quote_approvals.services.condition_evaluator import evaluate

logger = structlog.get_logger()


@dataclass(frozen=True)
class ApprovalChain:
    """Immutable ordering of a workflow's levels into activation stages."""

    workflow_id: str
    stages: tuple[tuple[ApprovalLevel, ...], ...] = field(default_factory=tuple)

    @property
    def levels(self) -> list[ApprovalLevel]:
        return [level for stage in self.stages for level in stage]

    def stage_index(self, level_id: str) -> Optional[int]:
        for index, stage in enumerate(self.stages):
            if any(level.id == level_id for level in stage):
                return index
        return None

    def next_stage(self, level_id: str) -> Optional[tuple[ApprovalLevel, ...]]:
        index = self.stage_index(level_id)
        if index is None or index + 1 >= len(self.stages):
            return None
        return self.stages[index + 1]


def _rank(workflow: ApprovalWorkflow) -> tuple:
    return (workflow.aggregate_priority, workflow.created_at, workflow.id)


def select_workflow(
    quote: Quote, workflows: Iterable[ApprovalWorkflow]
) -> Optional[ApprovalWorkflow]:
    candidates = [w for w in workflows if w.is_active and evaluate(quote, w.conditions)]
    if not candidates:
        logger.info("workflow_not_required", quote_id=quote.id, total_cents=quote.total_cents)
        return None

    selected = max(candidates, key=_rank)
    logger.info(
        "workflow_selected",
        quote_id=quote.id,
        workflow_id=selected.id,
        priority=selected.aggregate_priority,
        candidates=len(candidates),
    )
    return selected


def build_chain(workflow: ApprovalWorkflow) -> ApprovalChain:
    """Levels sharing the same ``order`` form one stage and activate together."""
    ordered = sorted(workflow.levels, key=lambda level: level.order)
    stages = tuple(
        tuple(group) for _, group in groupby(ordered, key=lambda level: level.order)
    )
    return ApprovalChain(workflow_id=workflow.id, stages=stages)
