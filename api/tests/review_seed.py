from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from assignment_review.services.adapters import build_adapters
from assignment_review.services.cache import ViewCache
from assignment_review.services.review import ReviewQueueService
from assignment_review.services.store import InMemoryStores, InMemorySubmissionStore, build_in_memory_stores

T0 = datetime(2025, 3, 3, 10, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def build_service(*, ttl_seconds: float = 30.0, window_pages: int = 3) -> tuple[ReviewQueueService, InMemoryStores]:
    stores = build_in_memory_stores()
    service = ReviewQueueService(
        adapters=build_adapters(stores.submissions),
        profile_store=stores.profiles,
        institute_store=stores.institutes,
        cache=ViewCache(ttl_seconds=ttl_seconds),
        verified_window_pages=window_pages,
    )
    return service, stores


def add_submission(
    store: InMemorySubmissionStore,
    *,
    assignment_id: str,
    user_id: str,
    status: str,
    submitted_at: datetime | None,
    verified_at: datetime | None = None,
    points: int = 50,
    title: str = "Task",
    module: str | None = None,
    category: str | None = None,
    difficulty: str | None = None,
) -> None:
    s = store.schema
    template: dict[str, Any] = {
        "id": f"tpl-{assignment_id}",
        "title": title,
        s.points_column: points,
        "is_active": True,
    }
    if s.module_column:
        template[s.module_column] = module
    if s.category_column:
        template[s.category_column] = category
    if s.difficulty_column:
        template[s.difficulty_column] = difficulty
    store.add_template(template)
    store.add_submission(
        {
            "id": assignment_id,
            "user_id": user_id,
            s.template_fk: template["id"],
            "status": status,
            s.submitted_at_column: submitted_at,
            "verified_at": verified_at,
            "score_awarded": None,
            "verification_notes": None,
        }
    )


def add_evidence(
    store: InMemorySubmissionStore,
    *,
    evidence_id: str,
    assignment_id: str,
    kind: str,
    payload: Any,
    created_at: datetime,
    url: str | None = None,
    files: list[str] | None = None,
) -> None:
    s = store.schema
    if s.evidence_files_column == "file_urls":
        file_value: Any = list(files or [])
    else:
        file_value = files[0] if files else None
    store.add_evidence(
        {
            "id": evidence_id,
            s.evidence_fk: assignment_id,
            s.evidence_kind_column: kind,
            s.evidence_payload_column: payload,
            "url": url,
            s.evidence_files_column: file_value,
            "verification_status": "pending" if s.evidence_has_verification else None,
            "verification_notes": None,
            "verified_at": None,
            "created_at": created_at,
        }
    )


def add_profile(stores: InMemoryStores, user_id: str, full_name: str, username: str) -> None:
    stores.profiles.add_profile(
        {"user_id": user_id, "full_name": full_name, "username": username, "profile_image_url": None}
    )
