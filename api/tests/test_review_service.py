from __future__ import annotations

import asyncio

import pytest

from assignment_review.services.errors import AdapterFetchError, AssignmentNotFoundError
from assignment_review.services.models import ReviewFilters
from assignment_review.services.repository import RepositoryUnavailableError
from review_seed import add_evidence, add_profile, add_submission, at, build_service


def _seed_scenario():
    service, stores = build_service()
    add_submission(
        stores.submissions["career"],
        assignment_id="career-1",
        user_id="u-ana",
        status="submitted",
        submitted_at=at(0),
        title="Polish resume",
        module="RESUME",
        category="documents",
    )
    add_submission(
        stores.submissions["linkedin"],
        assignment_id="linkedin-1",
        user_id="u-ben",
        status="SUBMITTED",
        submitted_at=at(5),
        title="Publish a post",
    )
    add_submission(
        stores.submissions["github"],
        assignment_id="github-1",
        user_id="u-ana",
        status="submitted",
        submitted_at=at(2),
        title="Push a commit",
    )
    add_profile(stores, "u-ana", "Ana Lima", "analima")
    add_profile(stores, "u-ben", "Ben Okafor", "bokafor")
    return service, stores


def test_pending_merges_domains_by_submission_time() -> None:
    service, _ = _seed_scenario()

    items = asyncio.run(service.list_pending())

    assert [item.id for item in items] == ["linkedin-1", "github-1", "career-1"]
    assert [item.domain for item in items] == ["linkedin", "github", "career"]
    assert all(item.status == "submitted" for item in items)
    assert items[0].profile is not None and items[0].profile.full_name == "Ben Okafor"


def test_pending_excludes_terminal_assignments_and_slices() -> None:
    service, stores = _seed_scenario()
    add_submission(
        stores.submissions["career"],
        assignment_id="career-done",
        user_id="u-ana",
        status="verified",
        submitted_at=at(30),
        verified_at=at(40),
    )
    add_submission(
        stores.submissions["linkedin"],
        assignment_id="linkedin-partial",
        user_id="u-ben",
        status="PARTIALLY_VERIFIED",
        submitted_at=at(1),
    )
    add_submission(
        stores.submissions["interview_preparation"],
        assignment_id="interview-1",
        user_id="u-ana",
        status="submitted",
        submitted_at=at(3),
        category="interview_preparation",
    )

    items = asyncio.run(service.list_pending())

    ids = [item.id for item in items]
    assert "career-done" not in ids
    assert "linkedin-partial" in ids
    interview = next(item for item in items if item.id == "interview-1")
    assert interview.domain == "job_hunting"
    assert interview.sub_source == "interview_preparation"
    assert ids.count("interview-1") == 1


def test_missing_profile_gets_placeholder() -> None:
    service, stores = _seed_scenario()
    add_submission(
        stores.submissions["job_hunting"],
        assignment_id="jh-1",
        user_id="u-ghost",
        status="SUBMITTED",
        submitted_at=at(9),
        category="applications",
    )

    items = asyncio.run(service.list_pending())

    ghost = next(item for item in items if item.id == "jh-1")
    assert ghost.profile is not None
    assert ghost.profile.full_name == "Unknown User"
    assert ghost.profile.username == "unknown"


def test_pending_filters_apply_after_merge() -> None:
    service, _ = _seed_scenario()

    by_module = asyncio.run(service.list_pending(ReviewFilters(module="resume")))
    by_name = asyncio.run(service.list_pending(ReviewFilters(submitter_name_contains="LIMA")))
    by_username = asyncio.run(service.list_pending(ReviewFilters(submitter_name_contains="okaf")))
    by_search = asyncio.run(service.list_pending(ReviewFilters(search="commit")))
    nothing = asyncio.run(service.list_pending(ReviewFilters(submitter_name_contains="zzz")))

    assert [item.id for item in by_module] == ["career-1"]
    assert [item.id for item in by_name] == ["github-1", "career-1"]
    assert [item.id for item in by_username] == ["linkedin-1"]
    assert [item.id for item in by_search] == ["github-1"]
    assert nothing == []


def test_domain_filter_only_queries_that_domain() -> None:
    service, stores = _seed_scenario()

    items = asyncio.run(service.list_pending(ReviewFilters(domain="github")))

    assert [item.id for item in items] == ["github-1"]
    assert stores.submissions["github"].calls["query_by_status"] == 1
    assert stores.submissions["career"].calls["query_by_status"] == 0
    assert stores.submissions["linkedin"].calls["query_by_status"] == 0


def test_pending_is_idempotent_and_cached() -> None:
    service, stores = _seed_scenario()

    async def _twice():
        return await service.list_pending(), await service.list_pending()

    first, second = asyncio.run(_twice())

    assert {item.id for item in first} == {item.id for item in second}
    assert stores.submissions["career"].calls["query_by_status"] == 1
    assert service.cache.stats.hits == 1


def test_profile_and_evidence_lookups_are_batched() -> None:
    service, stores = build_service()
    career = stores.submissions["career"]
    linkedin = stores.submissions["linkedin"]
    for index in range(5):
        add_submission(
            career,
            assignment_id=f"c-{index}",
            user_id=f"u-{index}",
            status="submitted",
            submitted_at=at(index),
            module="RESUME",
        )
        add_evidence(
            career,
            evidence_id=f"ce-{index}",
            assignment_id=f"c-{index}",
            kind="url",
            payload={"url": f"https://example.com/{index}"},
            created_at=at(index),
        )
    for index in range(3):
        add_submission(linkedin, assignment_id=f"l-{index}", user_id="u-0", status="SUBMITTED", submitted_at=at(10))

    items = asyncio.run(service.list_pending())

    assert len(items) == 8
    assert stores.profiles.calls["query_by_user_ids"] == 1
    assert career.calls["query_evidence_by_assignment_ids"] == 1
    assert linkedin.calls["query_evidence_by_assignment_ids"] == 1
    assert stores.submissions["github"].calls["query_evidence_by_assignment_ids"] == 0
    assert all(len(item.evidence) == 1 for item in items if item.domain == "career")


def test_verified_pages_merge_and_count_all_domains() -> None:
    service, stores = build_service()
    plan = [
        ("career", "c-1", "verified", 70),
        ("career", "c-2", "verified", 40),
        ("linkedin", "l-1", "VERIFIED", 65),
        ("linkedin", "l-2", "VERIFIED", 20),
        ("github", "g-1", "verified", 50),
        ("job_hunting", "j-1", "verified", 60),
        ("job_hunting", "j-2", "VERIFIED", 10),
    ]
    for source, assignment_id, status, minute in plan:
        add_submission(
            stores.submissions[source],
            assignment_id=assignment_id,
            user_id="u-1",
            status=status,
            submitted_at=at(0),
            verified_at=at(minute),
        )

    first = asyncio.run(service.list_verified(page=1, page_size=3))
    last = asyncio.run(service.list_verified(page=3, page_size=3))

    assert [item.id for item in first.items] == ["c-1", "l-1", "j-1"]
    assert first.total_count == 7
    assert [item.id for item in last.items] == ["j-2"]
    assert last.total_count == 7
    assert all(item.status == "verified" for item in first.items)


def test_verified_scope_limits_items_and_total_count() -> None:
    service, stores = build_service()
    for source, assignment_id, user_id, minute in (
        ("career", "c-1", "u-1", 30),
        ("linkedin", "l-1", "u-2", 20),
        ("github", "g-1", "u-1", 10),
    ):
        add_submission(
            stores.submissions[source],
            assignment_id=assignment_id,
            user_id=user_id,
            status="VERIFIED" if source == "linkedin" else "verified",
            submitted_at=at(0),
            verified_at=at(minute),
        )

    page = asyncio.run(service.list_verified(page=1, page_size=10, filters=ReviewFilters(user_ids=frozenset({"u-1"}))))
    everyone = asyncio.run(service.list_verified(page=1, page_size=10))

    assert [item.id for item in page.items] == ["c-1", "g-1"]
    assert page.total_count == 2
    assert everyone.total_count == 3


def test_empty_scope_skips_the_stores() -> None:
    service, stores = _seed_scenario()

    items = asyncio.run(service.list_pending(ReviewFilters(user_ids=frozenset())))

    assert items == []
    assert all(store.calls["query_by_status"] == 0 for store in stores.submissions.values())


def test_institute_scope_resolves_active_memberships_only() -> None:
    service, stores = build_service()
    stores.institutes.add_admin("admin-a", "inst-a")
    stores.institutes.add_admin("admin-a", "inst-old", is_active=False)
    stores.institutes.add_student("u-1", "inst-a")
    stores.institutes.add_student("u-2", "inst-a", is_active=False)
    stores.institutes.add_student("u-3", "inst-old")

    assert asyncio.run(service.students_of("admin-a")) == frozenset({"u-1"})
    assert asyncio.run(service.students_of("admin-b")) == frozenset()


def test_evidence_outside_scope_is_not_found() -> None:
    service, _ = _seed_scenario()

    with pytest.raises(AssignmentNotFoundError):
        asyncio.run(service.get_evidence_for("career", "career-1", user_ids=frozenset({"u-ben"})))


def test_verified_view_can_page_rejections() -> None:
    service, stores = _seed_scenario()
    add_submission(
        stores.submissions["linkedin"],
        assignment_id="l-rejected",
        user_id="u-ben",
        status="REJECTED",
        submitted_at=at(0),
        verified_at=at(20),
    )

    page = asyncio.run(service.list_verified(page=1, page_size=10, status="rejected"))

    assert [item.id for item in page.items] == ["l-rejected"]
    assert page.total_count == 1
    assert page.items[0].status == "rejected"


def test_evidence_is_returned_latest_first() -> None:
    service, stores = _seed_scenario()
    career = stores.submissions["career"]
    for evidence_id, minute in (("e-mid", 20), ("e-new", 30), ("e-old", 10)):
        add_evidence(
            career,
            evidence_id=evidence_id,
            assignment_id="career-1",
            kind="url",
            payload={"url": f"https://example.com/{evidence_id}"},
            created_at=at(minute),
        )

    evidence = asyncio.run(service.get_evidence_for("career", "career-1"))

    assert [item.id for item in evidence] == ["e-new", "e-mid", "e-old"]


def test_evidence_lookup_finds_untagged_interview_preparation_rows() -> None:
    service, stores = build_service()
    interview = stores.submissions["interview_preparation"]
    add_submission(
        interview,
        assignment_id="i-1",
        user_id="u-1",
        status="submitted",
        submitted_at=at(0),
        category="interview_preparation",
    )
    add_evidence(interview, evidence_id="ie-1", assignment_id="i-1", kind="text", payload="notes", created_at=at(1))

    evidence = asyncio.run(service.get_evidence_for("job_hunting", "i-1"))

    assert [item.id for item in evidence] == ["ie-1"]
    assert evidence[0].kind == "job_application"


def test_evidence_for_unknown_assignment_is_not_found() -> None:
    service, _ = _seed_scenario()

    with pytest.raises(AssignmentNotFoundError):
        asyncio.run(service.get_evidence_for("career", "missing"))


def test_one_failed_domain_aborts_the_whole_read() -> None:
    service, stores = _seed_scenario()
    stores.submissions["linkedin"].fail_with = RepositoryUnavailableError("database query failed: timeout")

    with pytest.raises(AdapterFetchError) as exc_info:
        asyncio.run(service.list_pending())
    assert exc_info.value.domain == "linkedin"
    assert exc_info.value.operation == "fetch_pending"

    stores.submissions["linkedin"].fail_with = None
    items = asyncio.run(service.list_pending())
    assert len(items) == 3


def test_profile_store_outage_aborts_the_read() -> None:
    service, stores = _seed_scenario()
    stores.profiles.fail_with = RepositoryUnavailableError("database unavailable")

    with pytest.raises(AdapterFetchError):
        asyncio.run(service.list_pending())


def test_pending_facets_count_modules_and_submitters() -> None:
    service, _ = _seed_scenario()

    facets = asyncio.run(service.list_pending_facets())

    assert facets.total == 3
    assert {(item.value, item.count) for item in facets.modules} == {("RESUME", 1), ("linkedin", 1), ("github", 1)}
    assert [(item.user_id, item.count) for item in facets.submitters] == [("u-ana", 2), ("u-ben", 1)]
