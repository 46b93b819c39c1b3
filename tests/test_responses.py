from flowpilot.responses import (
    ImplementationReport,
    QualityReport,
    ResponseStatus,
    ReviewReport,
    SyncReport,
    normalize_status,
    parse_response,
)


def test_last_json_object_wins() -> None:
    text = (
        'Input was {"status": "needs_revision"}\n'
        "Done reviewing.\n"
        "```json\n"
        '{"status": "approved", "approvalReady": true}\n'
        "```"
    )

    response = parse_response("document-reviewer", text)

    assert response.status is ResponseStatus.APPROVED
    assert response.payload["approvalReady"] is True
    assert response.raw == text
    assert response.parsed


def test_plain_text_is_a_completed_response() -> None:
    response = parse_response("task-executor", "All good, nothing to report.")

    assert response.status is ResponseStatus.COMPLETED
    assert response.payload == {}
    assert not response.parsed


def test_status_aliases_and_boolean_fallbacks() -> None:
    assert normalize_status({"sync_status": "CONFLICTS_FOUND"}) is ResponseStatus.NEEDS_REVISION
    assert normalize_status({"decision": "Approved with conditions"}) is ResponseStatus.APPROVED
    assert normalize_status({"status": "escalate"}) is ResponseStatus.ESCALATION_NEEDED
    assert normalize_status({"approved": False}) is ResponseStatus.NEEDS_REVISION
    assert normalize_status({"approvalReady": True}) is ResponseStatus.APPROVED
    assert normalize_status({"status": "something else"}) is ResponseStatus.COMPLETED


def test_implementation_report_reads_executor_fields() -> None:
    response = parse_response(
        "task-executor",
        '{"status": "completed", "filesModified": ["src/a.py", ""], "testsAdded": '
        '["tests/test_a.py"], "readyForQualityCheck": true, "editCounts": {"src/a.py": "2", '
        '"src/b.py": "many"}}',
    )

    report = ImplementationReport.from_response(response)

    assert report.files_modified == ["src/a.py"]
    assert report.tests_added == ["tests/test_a.py"]
    assert report.ready_for_quality_check
    assert report.edit_counts == {"src/a.py": 2}


def test_quality_report_requires_explicit_approval() -> None:
    response = parse_response(
        "quality-fixer", '{"status": "completed", "errors": ["mypy: 2 errors"]}'
    )

    report = QualityReport.from_response(response)

    assert not report.approved
    assert report.errors == ["mypy: 2 errors"]


def test_review_report_flattens_issue_objects() -> None:
    response = parse_response(
        "document-reviewer",
        '{"decision": "needs_revision", "issues": [{"description": "No rollback plan"}, '
        '"Missing error codes"], "revision_agent": "technical-designer"}',
    )

    report = ReviewReport.from_response(response)

    assert report.status is ResponseStatus.NEEDS_REVISION
    assert report.issues == ["No rollback plan", "Missing error codes"]
    assert report.revision_agent == "technical-designer"
    assert not report.approval_ready


def test_sync_report_counts_conflicts() -> None:
    response = parse_response(
        "design-sync",
        '{"sync_status": "CONFLICTS_FOUND", "conflicts": [{"type": "api"}, "junk"]}',
    )

    report = SyncReport.from_response(response)

    assert report.sync_status == "CONFLICTS_FOUND"
    assert report.total_conflicts == 2
    assert report.conflicts == [{"type": "api"}]
