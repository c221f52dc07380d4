from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from functools import lru_cache

from opentelemetry import trace

from assignment_review.services.errors import DecisionConflictError, DecisionValidationError, ReviewError
from assignment_review.services.models import Assignment, VerificationDecision
from assignment_review.services.normalizer import normalize_assignment
from assignment_review.services.review import ReviewQueueService, get_review_service

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationWorkflow:
    """Submitted -> verified | rejected, once, through the assignment's own adapter."""

    def __init__(self, review: ReviewQueueService, clock: Callable[[], datetime] = _utcnow) -> None:
        self.review = review
        self.clock = clock

    async def decide(self, decision: VerificationDecision, *, user_ids: frozenset[str] | None = None) -> Assignment:
        with tracer.start_as_current_span("review.decide") as span:
            span.set_attribute("review.domain", decision.domain)
            span.set_attribute("review.assignment_id", decision.assignment_id)
            span.set_attribute("review.action", decision.action)
            try:
                return await self._decide(decision, span, user_ids)
            except ReviewError as exc:
                logger.warning(
                    "review decision failed domain=%s assignment_id=%s operation=%s error_type=%s error=%s",
                    decision.domain,
                    decision.assignment_id,
                    exc.operation or "decide",
                    type(exc).__name__,
                    exc.message,
                )
                raise

    async def _decide(
        self,
        decision: VerificationDecision,
        span: trace.Span,
        user_ids: frozenset[str] | None,
    ) -> Assignment:
        decision = self._validate_request(decision)
        current = await self.review.get_assignment(
            decision.domain,
            decision.assignment_id,
            sub_source=decision.sub_source,
            user_ids=user_ids,
        )
        if current.status != "submitted":
            raise DecisionConflictError(
                f"assignment is already {current.status}",
                domain=decision.domain,
                operation="decide",
                assignment_id=decision.assignment_id,
            )
        if decision.score_awarded > current.points_reward:
            raise DecisionValidationError(
                f"score_awarded {decision.score_awarded} exceeds points_reward {current.points_reward}",
                domain=decision.domain,
                operation="decide",
                assignment_id=decision.assignment_id,
            )

        if decision.domain == "job_hunting":
            # Route by the family the row was actually found in.
            decision = replace(decision, sub_source=current.sub_source)
            span.set_attribute("review.sub_source", current.sub_source or "")

        raw = await self.review.adapter_for(decision.domain).apply_decision(decision, verified_at=self.clock())
        self.review.invalidate_views()

        logger.info(
            "review decision applied domain=%s assignment_id=%s action=%s score_awarded=%s",
            decision.domain,
            decision.assignment_id,
            decision.action,
            decision.score_awarded,
        )
        return normalize_assignment(raw)

    @staticmethod
    def _validate_request(decision: VerificationDecision) -> VerificationDecision:
        notes = decision.notes.strip() if decision.notes else None
        context = {"domain": decision.domain, "operation": "decide", "assignment_id": decision.assignment_id}
        if decision.action == "reject" and not notes:
            raise DecisionValidationError("rejection requires notes", **context)
        score = decision.score_awarded if decision.score_awarded is not None else 0
        if score < 0:
            raise DecisionValidationError("score_awarded must not be negative", **context)
        return replace(decision, notes=notes or None, score_awarded=score)


@lru_cache
def get_verification_workflow() -> VerificationWorkflow:
    return VerificationWorkflow(get_review_service())
