import pytest

from assessment_errors import (
    BenchmarkRecomputationConflict,
    BenchmarkSampleShrank,
    ConcurrentCompletionConflict,
    InvalidResponse,
    InvalidTemplateConfiguration,
    InvalidTransition,
    NotFound,
    ResponseAlreadyComplete,
)

from settings import settings

from conftest import AGENCY, TENANT, answers, build_config


# ============================================
# TEMPLATES
# ============================================

def test_template_lifecycle(db):
    config = build_config()
    template_id = db.add_template(AGENCY, "Leadership 360", config)

    row = db.get_template_row(template_id)
    assert row["status"] == "draft"
    assert row["config"] == dict(config, gapThreshold=0.5, topN=5)

    db.update_template_config(template_id, build_config(gapThreshold=0.8))
    assert db.get_template(template_id).gap_threshold == 0.8

    db.publish_template(template_id)
    template = db.get_template(template_id)
    assert template.status == "published"
    assert template.agency_id == AGENCY

    with pytest.raises(InvalidTransition):
        db.update_template_config(template_id, config)

    db.archive_template(template_id)
    assert db.get_template_row(template_id)["status"] == "archived"


def test_stored_template_keeps_defaults_of_its_day(db, monkeypatch):
    monkeypatch.setattr(settings, "gap_threshold", 0.75)
    monkeypatch.setattr(settings, "top_n", 3)
    template_id = db.add_template(AGENCY, "T", build_config())
    explicit_id = db.add_template(AGENCY, "T", build_config(gapThreshold=1.0))

    stored = db.get_template_row(template_id)["config"]
    assert stored["gapThreshold"] == 0.75
    assert stored["topN"] == 3
    assert db.get_template_row(explicit_id)["config"]["gapThreshold"] == 1.0

    monkeypatch.setattr(settings, "gap_threshold", 0.25)
    monkeypatch.setattr(settings, "top_n", 9)
    template = db.get_template(template_id)
    assert template.gap_threshold == 0.75
    assert template.top_n == 3


def test_invalid_template_is_not_stored(db):
    with pytest.raises(InvalidTemplateConfiguration):
        db.add_template(AGENCY, "Bad", build_config(scaleMin=5, scaleMax=1))
    assert db.get_templates_by_id() == {}


def test_create_template_version(db, published_template):
    parent_id = published_template()
    child_id = db.create_template_version(parent_id)

    child = db.get_template_row(child_id)
    assert child["parent_template_id"] == parent_id
    assert child["version"] == 2
    assert child["status"] == "draft"

    with pytest.raises(NotFound):
        db.create_template_version(999)


# ============================================
# ASSESSMENTS
# ============================================

def test_assessment_needs_published_template(db):
    template_id = db.add_template(AGENCY, "Draft", build_config())
    with pytest.raises(InvalidTemplateConfiguration):
        db.add_assessment(TENANT, template_id, subject_id="u1")


def test_assessment_subject_is_internal_or_external(db, published_template):
    template_id = published_template()
    with pytest.raises(ValueError):
        db.add_assessment(TENANT, template_id, subject_id="u1", subject_email="x@example.com")
    with pytest.raises(ValueError):
        db.add_assessment(TENANT, template_id, subject_name="Ext")

    external = db.add_assessment(TENANT, template_id, subject_name="Ext", subject_email="x@example.com")
    assert db.get_assessment(external)["subject_email"] == "x@example.com"


def test_assessment_transitions(db, published_template):
    assessment_id = db.add_assessment(TENANT, published_template(), subject_id="u1")
    assert db.get_assessment(assessment_id)["anonymize"] is True

    with pytest.raises(InvalidTransition):
        db.transition_assessment(assessment_id, "closed")

    db.transition_assessment(assessment_id, "open")
    db.transition_assessment(assessment_id, "closed")

    with pytest.raises(InvalidTransition) as excinfo:
        db.transition_assessment(assessment_id, "completed")
    assert excinfo.value.to_dict()["error"]["code"] == "invalid_transition"
    assert db.get_assessment(assessment_id)["status"] == "closed"


# ============================================
# INVITATIONS
# ============================================

def test_invitation_rater_type_must_be_permitted(db, published_template):
    template_id = published_template(build_config(raterTypes=["self", "peer"]))
    assessment_id = db.add_assessment(TENANT, template_id, subject_id="u1")
    with pytest.raises(InvalidTemplateConfiguration):
        db.add_invitation(assessment_id, "manager")


def test_invitation_max_raters_enforced(db, published_template):
    template_id = published_template(build_config(maxRatersPerType={"self": 1}))
    assessment_id = db.add_assessment(TENANT, template_id, subject_id="u1")
    invitation_id, token = db.add_invitation(assessment_id, "self")
    assert db.get_invitation_by_token(token)["id"] == invitation_id

    with pytest.raises(InvalidTemplateConfiguration):
        db.add_invitation(assessment_id, "self")

    db.update_invitation_status(invitation_id, "declined")
    db.add_invitation(assessment_id, "self")


def test_invitation_status_moves_forward_only(db, published_template):
    assessment_id = db.add_assessment(TENANT, published_template(), subject_id="u1")
    invitation_id, _ = db.add_invitation(assessment_id, "peer")

    db.update_invitation_status(invitation_id, "viewed")
    with pytest.raises(InvalidTransition):
        db.update_invitation_status(invitation_id, "sent")
    with pytest.raises(InvalidTransition):
        db.update_invitation_status(invitation_id, "completed")

    db.update_invitation_status(invitation_id, "expired")
    with pytest.raises(InvalidTransition):
        db.update_invitation_status(invitation_id, "started")


def test_invitations_ordered_self_first(db, published_template):
    assessment_id = db.add_assessment(TENANT, published_template(), subject_id="u1")
    db.add_invitation(assessment_id, "peer")
    db.add_invitation(assessment_id, "self")
    db.add_invitation(assessment_id, "manager")
    assert [i["rater_type"] for i in db.get_invitations(assessment_id)] == ["self", "manager", "peer"]


# ============================================
# RESPONSE STORE
# ============================================

@pytest.fixture
def open_invitation(db, published_template):
    assessment_id = db.add_assessment(TENANT, published_template(), subject_id="u1")
    invitation_id, _ = db.add_invitation(assessment_id, "peer")
    db.transition_assessment(assessment_id, "open")
    return assessment_id, invitation_id


def test_draft_then_submit(db, open_invitation):
    assessment_id, invitation_id = open_invitation
    config = build_config()

    db.save_response_draft(invitation_id, answers(config, {"q1": 3}))
    db.save_response_draft(invitation_id, answers(config, {"q1": 4}))
    assert db.get_invitation(invitation_id)["status"] == "started"
    assert db.get_latest_draft(invitation_id)["items"][0]["rating"] == 4
    assert db.get_completed_responses(assessment_id) == []

    db.submit_response(invitation_id, answers(config, {"q1": 4, "q2": 2}), overall_comments="Good")
    invitation = db.get_invitation(invitation_id)
    assert invitation["status"] == "completed"
    assert invitation["completed_at"] is not None

    responses = db.get_completed_responses(assessment_id)
    assert len(responses) == 1
    assert responses[0]["rater_type"] == "peer"
    assert responses[0]["overall_comments"] == "Good"


def test_completed_response_is_immutable(db, open_invitation):
    assessment_id, invitation_id = open_invitation
    config = build_config()
    db.submit_response(invitation_id, answers(config, {"q1": 4}))

    with pytest.raises(ResponseAlreadyComplete):
        db.submit_response(invitation_id, answers(config, {"q1": 1}))
    with pytest.raises(ResponseAlreadyComplete):
        db.save_response_draft(invitation_id, answers(config, {"q1": 1}))

    assert db.get_completed_responses(assessment_id)[0]["items"][0]["rating"] == 4


@pytest.mark.parametrize("items", [
    [{"competencyId": "comm", "questionId": "q1", "rating": 6}],
    [{"competencyId": "comm", "questionId": "q1", "rating": 0}],
    [{"competencyId": "comm", "questionId": "nope", "rating": 3}],
    [{"competencyId": "deleg", "questionId": "q4", "rating": 3}],
    [{"competencyId": "comm", "questionId": "q1", "rating": 3, "comment": 5}],
    [{"competencyId": "deleg", "questionId": "q4", "text": ["not", "text"]}],
    ["q1=3"],
    [{"competencyId": "comm", "questionId": "q1", "rating": 5},
     {"competencyId": "comm", "questionId": "q1", "rating": 1}],
])
def test_invalid_items_rejected(db, open_invitation, items):
    assessment_id, invitation_id = open_invitation
    with pytest.raises(InvalidResponse):
        db.submit_response(invitation_id, items)
    assert db.get_invitation(invitation_id)["status"] == "pending"
    assert db.get_completed_responses(assessment_id) == []


def test_overall_comments_must_be_text(db, open_invitation):
    assessment_id, invitation_id = open_invitation
    items = answers(build_config(), {"q1": 3})
    with pytest.raises(InvalidResponse):
        db.submit_response(invitation_id, items, overall_comments={"note": "hi"})
    with pytest.raises(InvalidResponse):
        db.save_response_draft(invitation_id, items, overall_comments=7)
    assert db.get_completed_responses(assessment_id) == []


def test_comments_refused_when_template_disallows_them(db, published_template):
    config = build_config(allowComments=False)
    assessment_id = db.add_assessment(TENANT, published_template(config), subject_id="u1")
    invitation_id, _ = db.add_invitation(assessment_id, "peer")
    db.transition_assessment(assessment_id, "open")

    commented = [{"competencyId": "comm", "questionId": "q1", "rating": 3, "comment": "Clear"}]
    with pytest.raises(InvalidResponse):
        db.submit_response(invitation_id, commented)
    with pytest.raises(InvalidResponse):
        db.submit_response(invitation_id, answers(config, {"q1": 3}), overall_comments="Good")

    # Free-text questions are answers, not comments
    db.submit_response(invitation_id, [
        {"competencyId": "comm", "questionId": "q1", "rating": 3},
        {"competencyId": "deleg", "questionId": "q4", "text": "Delegates well"},
    ])
    assert db.get_invitation(invitation_id)["status"] == "completed"


def test_assessment_anonymize_defaults_to_template(db, published_template):
    private = published_template(build_config(anonymizeResponses=True))
    open_book = published_template(build_config(anonymizeResponses=False))

    assert db.get_assessment(db.add_assessment(TENANT, private, subject_id="u1"))["anonymize"] is True
    assert db.get_assessment(db.add_assessment(TENANT, open_book, subject_id="u2"))["anonymize"] is False
    overridden = db.add_assessment(TENANT, open_book, subject_id="u3", anonymize=True)
    assert db.get_assessment(overridden)["anonymize"] is True


def test_assessment_stores_anonymity_threshold(db, published_template, monkeypatch):
    template_id = published_template()
    monkeypatch.setattr(settings, "anonymity_threshold", 4)
    assessment_id = db.add_assessment(TENANT, template_id, subject_id="u1")
    explicit_id = db.add_assessment(TENANT, template_id, subject_id="u2", anonymity_threshold=2)

    monkeypatch.setattr(settings, "anonymity_threshold", 9)
    assert db.get_assessment(assessment_id)["anonymity_threshold"] == 4
    assert db.get_assessment(explicit_id)["anonymity_threshold"] == 2


def test_submit_needs_open_assessment(db, published_template):
    assessment_id = db.add_assessment(TENANT, published_template(), subject_id="u1")
    invitation_id, _ = db.add_invitation(assessment_id, "peer")
    with pytest.raises(InvalidResponse):
        db.submit_response(invitation_id, answers(build_config(), {"q1": 3}))


# ============================================
# SNAPSHOTS
# ============================================

def test_write_completion_only_once(db, seed_assessment):
    assessment_id = seed_assessment([("peer", {"q1": 4})])
    db.write_completion(assessment_id, {"computedAt": "2026-01-01T00:00:00+00:00"}, actor="a")

    with pytest.raises(ConcurrentCompletionConflict):
        db.write_completion(assessment_id, {"computedAt": "2026-01-01T00:00:01+00:00"})

    assessment = db.get_assessment(assessment_id)
    assert assessment["status"] == "completed"
    assert assessment["computed_at"] == "2026-01-01T00:00:00+00:00"
    assert [row["action"] for row in db.get_scoring_audit(assessment_id)] == ["complete"]


def test_write_completion_reports_lock_as_conflict(db, seed_assessment):
    assessment_id = seed_assessment([("peer", {"q1": 4})])
    blocker = db.get_connection()
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(ConcurrentCompletionConflict):
            db.write_completion(assessment_id, {"computedAt": "2026-01-01T00:00:00+00:00"})
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
    assert db.get_assessment(assessment_id)["status"] == "closed"


def test_write_rescore_checks_stamp(db, seed_assessment):
    assessment_id = seed_assessment([("peer", {"q1": 4})])
    first = "2026-01-01T00:00:00+00:00"
    db.write_completion(assessment_id, {"computedAt": first})

    db.write_rescore(assessment_id, {"computedAt": "2026-02-01T00:00:00+00:00"}, first, "late fix")
    with pytest.raises(ConcurrentCompletionConflict):
        db.write_rescore(assessment_id, {"computedAt": "2026-03-01T00:00:00+00:00"}, first, "stale")

    audit = db.get_scoring_audit(assessment_id)
    assert [(row["action"], row["reason"]) for row in audit] == [("complete", None), ("rescore", "late fix")]


def test_find_previous_completed_follows_subject_and_lineage(db, seed_assessment, published_template):
    v1 = published_template()
    v2 = db.create_template_version(v1)
    db.publish_template(v2)
    other_lineage = published_template()

    first = seed_assessment([("peer", {"q1": 3})], template_id=v1)
    db.write_completion(first, {"computedAt": "2026-01-01T00:00:00+00:00"})
    elsewhere = seed_assessment([("peer", {"q1": 3})], template_id=other_lineage)
    db.write_completion(elsewhere, {"computedAt": "2026-02-01T00:00:00+00:00"})
    someone_else = seed_assessment([("peer", {"q1": 3})], template_id=v1, subject_id="subject-2")
    db.write_completion(someone_else, {"computedAt": "2026-02-01T00:00:00+00:00"})

    current = seed_assessment([("peer", {"q1": 5})], template_id=v2)
    previous = db.find_previous_completed(db.get_assessment(current))
    assert previous["id"] == first
    assert previous["results"] == {"computedAt": "2026-01-01T00:00:00+00:00"}


def test_find_previous_ignores_later_completions(db, seed_assessment, published_template):
    template_id = published_template()
    first = seed_assessment([("peer", {"q1": 3})], template_id=template_id)
    db.write_completion(first, {"computedAt": "2026-01-01T00:00:00+00:00"})
    second = seed_assessment([("peer", {"q1": 3})], template_id=template_id)
    db.write_completion(second, {"computedAt": "2026-02-01T00:00:00+00:00"})

    assert db.find_previous_completed(db.get_assessment(first)) is None
    assert db.find_previous_completed(db.get_assessment(second))["id"] == first


# ============================================
# BENCHMARKS
# ============================================

def test_upsert_benchmark_replaces_row(db, published_template):
    template_id = published_template()
    db.upsert_benchmark(AGENCY, template_id, {"comm": {"mean": 3.0}}, 1, "2026-01-01")
    row = db.upsert_benchmark(AGENCY, template_id, {"comm": {"mean": 3.5}}, 2, "2026-01-02")

    assert row["sample_size"] == 2
    assert row["benchmark_data"] == {"comm": {"mean": 3.5}}
    assert len(db.get_benchmarks_for_agency(AGENCY)) == 1


def test_upsert_benchmark_refuses_to_shrink(db, published_template):
    template_id = published_template()
    db.upsert_benchmark(AGENCY, template_id, {}, 3, "2026-01-01")
    with pytest.raises(BenchmarkSampleShrank):
        db.upsert_benchmark(AGENCY, template_id, {}, 2, "2026-01-02")
    assert db.get_benchmark(AGENCY, template_id)["sample_size"] == 3

    db.upsert_benchmark(AGENCY, template_id, {}, 2, "2026-01-02", rebuild=True)
    assert db.get_benchmark(AGENCY, template_id)["sample_size"] == 2


def test_upsert_benchmark_lock_is_conflict(db, published_template):
    template_id = published_template()
    blocker = db.get_connection()
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(BenchmarkRecomputationConflict):
            db.upsert_benchmark(AGENCY, template_id, {}, 1, "2026-01-01")
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()


def test_dashboard_stats(db, seed_assessment):
    seed_assessment([("self", {"q1": 4}), ("peer", {"q1": 3})], extra_invitations=["peer"])
    stats = db.get_dashboard_stats()
    assert stats["published_templates"] == 1
    assert stats["awaiting_scoring"] == 1
    assert stats["total_invitations"] == 3
    assert stats["completed_invitations"] == 2
