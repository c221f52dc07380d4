from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException, Query, status

from assignment_review.core.auth import REVIEW_READ, REVIEW_WRITE, Principal
from assignment_review.core.config import Settings, get_settings
from assignment_review.core.security import INSTITUTE_SCOPED_ROLES, get_human_principal
from assignment_review.schemas.assignments import (
    AssignmentOut,
    DecisionRequest,
    PendingFacetsOut,
    VerifiedPageOut,
)
from assignment_review.schemas.evidence import EvidenceOut
from assignment_review.services.errors import (
    AdapterFetchError,
    AdapterWriteError,
    AssignmentNotFoundError,
    DecisionConflictError,
    DecisionValidationError,
    ReviewError,
)
from assignment_review.services.models import (
    Domain,
    JobHuntingSource,
    ReviewFilters,
    TerminalStatus,
    VerificationDecision,
)
from assignment_review.services.review import ReviewQueueService, get_review_service
from assignment_review.services.verification import get_verification_workflow

router = APIRouter()

RETRY_MESSAGE = "review data is temporarily unavailable; please retry"


def _require(principal: Principal, scopes: set[str]) -> None:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


async def _scope_for(principal: Principal, service: ReviewQueueService) -> frozenset[str] | None:
    if principal.role not in INSTITUTE_SCOPED_ROLES:
        return None
    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")
    return await service.students_of(principal.actor_id)


def _to_http(exc: ReviewError) -> HTTPException:
    if isinstance(exc, DecisionValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=exc.message)
    if isinstance(exc, AssignmentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, DecisionConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, AdapterWriteError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    if isinstance(exc, AdapterFetchError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=RETRY_MESSAGE)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)


def _filters(
    module: str | None = Query(default=None, max_length=200),
    submitter: str | None = Query(default=None, max_length=200),
    domain: Domain | None = Query(default=None),
    user_id: str | None = Query(default=None, max_length=64),
    search: str | None = Query(default=None, max_length=200),
) -> ReviewFilters:
    return ReviewFilters(
        module=module or None,
        submitter_name_contains=submitter or None,
        domain=domain,
        user_id=user_id or None,
        search=search or None,
    )


@router.get("/pending", response_model=list[AssignmentOut])
async def list_pending(
    principal=Depends(get_human_principal),
    service=Depends(get_review_service),
    filters: ReviewFilters = Depends(_filters),
    include_evidence: bool = Query(default=False),
) -> list[AssignmentOut]:
    _require(principal, {REVIEW_READ})

    try:
        scoped = replace(filters, user_ids=await _scope_for(principal, service))
        assignments = await service.list_pending(scoped)
    except ReviewError as exc:
        raise _to_http(exc) from exc

    return [AssignmentOut.from_assignment(item, include_evidence=include_evidence) for item in assignments]


@router.get("/pending/facets", response_model=PendingFacetsOut)
async def list_pending_facets(
    principal=Depends(get_human_principal),
    service=Depends(get_review_service),
    filters: ReviewFilters = Depends(_filters),
) -> PendingFacetsOut:
    _require(principal, {REVIEW_READ})

    try:
        scoped = replace(filters, user_ids=await _scope_for(principal, service))
        facets = await service.list_pending_facets(scoped)
    except ReviewError as exc:
        raise _to_http(exc) from exc

    return PendingFacetsOut.from_facets(facets)


@router.get("/verified", response_model=VerifiedPageOut)
async def list_verified(
    principal=Depends(get_human_principal),
    service=Depends(get_review_service),
    settings: Settings = Depends(get_settings),
    filters: ReviewFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1),
    status_filter: TerminalStatus = Query(default="verified", alias="status"),
    include_evidence: bool = Query(default=False),
) -> VerifiedPageOut:
    _require(principal, {REVIEW_READ})
    if page_size > settings.max_page_size:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"page_size must be <= {settings.max_page_size}",
        )

    try:
        scoped = replace(filters, user_ids=await _scope_for(principal, service))
        verified_page = await service.list_verified(page, page_size, scoped, status_filter)
    except ReviewError as exc:
        raise _to_http(exc) from exc

    return VerifiedPageOut.from_page(verified_page, include_evidence=include_evidence)


@router.get("/assignments/{domain}/{assignment_id}/evidence", response_model=list[EvidenceOut])
async def get_evidence(
    domain: Domain,
    assignment_id: str,
    principal=Depends(get_human_principal),
    service=Depends(get_review_service),
    sub_source: JobHuntingSource | None = Query(default=None),
) -> list[EvidenceOut]:
    _require(principal, {REVIEW_READ})

    try:
        evidence = await service.get_evidence_for(
            domain,
            assignment_id,
            sub_source=sub_source,
            user_ids=await _scope_for(principal, service),
        )
    except ReviewError as exc:
        raise _to_http(exc) from exc

    return [EvidenceOut.from_evidence(item, index=index) for index, item in enumerate(evidence)]


@router.post("/assignments/{domain}/{assignment_id}/decision", response_model=AssignmentOut)
async def decide(
    domain: Domain,
    assignment_id: str,
    payload: DecisionRequest,
    principal=Depends(get_human_principal),
    service=Depends(get_review_service),
    workflow=Depends(get_verification_workflow),
) -> AssignmentOut:
    _require(principal, {REVIEW_WRITE})

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    decision = VerificationDecision(
        assignment_id=assignment_id,
        domain=domain,
        action=payload.action,
        score_awarded=payload.score_awarded if payload.score_awarded is not None else 0,
        notes=payload.notes,
        sub_source=payload.sub_source if domain == "job_hunting" else None,
        reviewer_id=principal.actor_id,
    )
    try:
        assignment = await workflow.decide(decision, user_ids=await _scope_for(principal, service))
    except ReviewError as exc:
        raise _to_http(exc) from exc

    return AssignmentOut.from_assignment(assignment)
