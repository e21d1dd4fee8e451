import pytest
from sqlalchemy import update

from app.db.models.feedback import QualityCheck
from app.events.outbox import OutboxEvent
from services.lifecycle.quality import compute_quality_score, count_results, verdict_for
from services.lifecycle.status import QualityResult

Q = QualityResult


def _issue_count(session):
    return session.query(OutboxEvent).filter(OutboxEvent.topic == "quality.issue_detected").count()


@pytest.fixture
def feedback(session, orchestrator, planned_batch):
    _, batch = planned_batch
    return orchestrator.create_feedback(session, batch_id=batch.id).entity


def test_score_is_null_without_checks():
    assert compute_quality_score([]) is None


def test_score_counts_conditional_pass_as_passing():
    assert compute_quality_score([Q.PASS, Q.FAIL, Q.CONDITIONAL_PASS, Q.NEEDS_REWORK]) == 50.0
    assert compute_quality_score([Q.PENDING, Q.PASS]) == 50.0


@pytest.mark.parametrize(
    "results",
    [[Q.PASS], [Q.FAIL], [Q.PENDING] * 3, [Q.PASS, Q.PASS, Q.NEEDS_REWORK], list(Q)],
)
def test_score_bounds(results):
    score = compute_quality_score(results)
    assert 0.0 <= score <= 100.0


def test_count_results_lists_every_result():
    counts = count_results([Q.PASS, Q.PASS, Q.FAIL])
    assert counts == {"pending": 0, "pass": 2, "fail": 1, "conditional_pass": 0, "needs_rework": 0}


def test_verdict_bands():
    assert verdict_for(None) is None
    assert verdict_for(80.0) == "pass"
    assert verdict_for(79.9) == "conditional_pass"
    assert verdict_for(60.0) == "conditional_pass"
    assert verdict_for(59.9) == "needs_rework"


def test_feedback_defaults_product_name_from_batch(feedback):
    assert feedback.product_name == "Widget"
    assert feedback.quality_score is None


def test_issue_fires_once_per_entry_into_failing_class(session, orchestrator, feedback):
    check = orchestrator.record_quality_check(session, feedback.id, check_name="Surface finish").entity
    assert check.result == Q.PENDING
    assert _issue_count(session) == 0

    result = orchestrator.update_quality_check(session, check.id, result=Q.FAIL)
    assert [e.name for e in result.events] == ["QualityIssueDetected"]
    assert result.events[0].title == "Quality Check Result Updated"

    result = orchestrator.update_quality_check(session, check.id, notes="scratches on edge")
    assert result.events == []

    result = orchestrator.update_quality_check(session, check.id, result=Q.NEEDS_REWORK)
    assert result.events == []

    orchestrator.update_quality_check(session, check.id, result=Q.PASS)
    result = orchestrator.update_quality_check(session, check.id, result=Q.FAIL)
    assert len(result.events) == 1
    assert _issue_count(session) == 2


def test_check_created_failing_raises_issue(session, orchestrator, feedback):
    result = orchestrator.record_quality_check(session, feedback.id, check_name="Weld", result=Q.FAIL)
    event = result.events[0]
    assert event.title == "Quality Issue Detected"
    assert event.recipient_id == "production_manager"

    payload = session.query(OutboxEvent).filter(OutboxEvent.topic == "quality.issue_detected").one().payload
    assert payload["type"] == "quality_issue"
    assert payload["recipientType"] == "role"
    assert payload["priority"] == "high"
    assert payload["feedbackId"] == feedback.id


def test_score_follows_create_update_delete(session, orchestrator, feedback):
    a = orchestrator.record_quality_check(session, feedback.id, check_name="A", result=Q.PASS).entity
    assert feedback.quality_score == 100.0

    b = orchestrator.record_quality_check(session, feedback.id, check_name="B", result=Q.FAIL).entity
    assert feedback.quality_score == 50.0

    orchestrator.update_quality_check(session, b.id, result=Q.CONDITIONAL_PASS)
    assert feedback.quality_score == 100.0

    orchestrator.delete_quality_check(session, a.id)
    orchestrator.delete_quality_check(session, b.id)
    assert feedback.quality_score is None


def test_bulk_record(session, orchestrator, feedback):
    result = orchestrator.record_quality_checks(
        session,
        feedback.id,
        [
            {"check_name": "Visual", "result": Q.PASS},
            {"check_name": "Dimensions", "result": Q.FAIL},
            {"check_name": "Load", "result": Q.NEEDS_REWORK},
        ],
    )
    assert len(result.entity) == 3
    assert len(result.events) == 2
    assert feedback.quality_score == pytest.approx(100 / 3)

    summary = orchestrator.quality_summary(session, feedback.id)
    assert summary.total == 3
    assert summary.counts["fail"] == 1
    assert summary.verdict == "needs_rework"


def test_update_reads_the_committed_result(session, orchestrator, feedback):
    check = orchestrator.record_quality_check(session, feedback.id, check_name="Porosity").entity
    check_id = check.id
    # another writer already moved the check into the failing class
    session.execute(
        update(QualityCheck)
        .where(QualityCheck.id == check_id)
        .values(result=Q.FAIL)
        .execution_options(synchronize_session=False)
    )

    result = orchestrator.update_quality_check(session, check_id, result=Q.FAIL)
    assert result.events == []
    assert _issue_count(session) == 0
    assert feedback.quality_score == 0.0
