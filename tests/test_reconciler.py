from __future__ import annotations

import pytest

from orgscan.errors import IncompleteReportError
from orgscan.models import (
    CacheEntry,
    ExclusionReason,
    FetchFailure,
    ScanFinding,
    ScanReport,
    Severity,
    TrackingIssueState,
    Verdict,
)
from orgscan.tracking.reconciler import STALE_REASON, apply_plan, reconcile
from tests._fixtures.fake_github import NOW, make_repo

DETECTOR = "go-version"


def _finding(full_name: str, verdict: Verdict = Verdict.NON_COMPLIANT,
             severity: Severity = Severity.MEDIUM) -> ScanFinding:
    return ScanFinding(make_repo(full_name), DETECTOR, verdict, severity)


def _report(*findings: ScanFinding, repositories=None, **kwargs) -> ScanReport:
    if repositories is None:
        repositories = [f.repository for f in findings]
    kwargs.setdefault("organizations", ["acme"])
    return ScanReport(detector_ids=[DETECTOR], repositories=list(repositories), findings=list(findings), **kwargs)


def _state(**severities: Severity) -> TrackingIssueState:
    keys = {key.replace("__", "/"): severity for key, severity in severities.items()}
    return TrackingIssueState(issue_number=7, open_finding_keys=frozenset(keys), severities=keys, state="open")


def test_first_run_adds_every_non_compliant_finding() -> None:
    report = _report(_finding("acme/a"), _finding("acme/b", Verdict.COMPLIANT))
    plan = reconcile(report, TrackingIssueState())

    assert [f.key for f in plan.to_add] == ["acme/a"]
    assert plan.to_remove == ()
    assert plan.unchanged == frozenset()


def test_reconciling_twice_is_a_no_op() -> None:
    report = _report(_finding("acme/a"), _finding("acme/b", severity=Severity.HIGH))
    first = reconcile(report, TrackingIssueState())
    after = apply_plan(TrackingIssueState(issue_number=1), first, updated_at=NOW)

    second = reconcile(report, after)
    assert second.is_empty
    assert second.unchanged == frozenset({"acme/a", "acme/b"})


def test_severity_change_is_re_added() -> None:
    report = _report(_finding("acme/a", severity=Severity.HIGH))
    plan = reconcile(report, _state(acme__a=Severity.MEDIUM))

    assert [(f.key, f.severity) for f in plan.to_add] == [("acme/a", Severity.HIGH)]
    assert plan.to_remove == ()


def test_unknown_prior_severity_counts_as_unchanged() -> None:
    report = _report(_finding("acme/a"))
    prior = TrackingIssueState(issue_number=1, open_finding_keys=frozenset({"acme/a"}))
    assert reconcile(report, prior).is_empty


def test_resolved_finding_is_removed_with_its_verdict() -> None:
    report = _report(_finding("acme/a", Verdict.COMPLIANT))
    plan = reconcile(report, _state(acme__a=Severity.MEDIUM))

    assert [(e.key, e.stale, e.reason) for e in plan.to_remove] == [("acme/a", False, "now compliant")]


def test_failed_fetch_keeps_prior_entry() -> None:
    repo = make_repo("acme/a")
    report = _report(repositories=[repo], failures=[FetchFailure(repo, "502", "go.mod", (DETECTOR,))])

    plan = reconcile(report, _state(acme__a=Severity.MEDIUM))
    assert plan.is_empty
    assert plan.unchanged == frozenset({"acme/a"})


def test_failure_for_another_detector_does_not_protect_the_entry() -> None:
    repo = make_repo("acme/a")
    report = _report(_finding("acme/a", Verdict.COMPLIANT),
                     failures=[FetchFailure(repo, "502", "Dockerfile", ("ubi",))])
    plan = reconcile(report, _state(acme__a=Severity.MEDIUM))
    assert [e.key for e in plan.to_remove] == ["acme/a"]


def test_excluded_repository_is_removed_with_reason() -> None:
    report = _report(observations=[CacheEntry("acme/a", ExclusionReason.ABANDONED, NOW)])
    plan = reconcile(report, _state(acme__a=Severity.MEDIUM))
    assert [(e.key, e.stale, e.reason) for e in plan.to_remove] == [("acme/a", False, "excluded as abandoned")]


def test_vanished_repository_is_removed_as_stale() -> None:
    report = _report(_finding("acme/b"))
    plan = reconcile(report, _state(acme__gone=Severity.MEDIUM))

    assert [(e.key, e.stale, e.reason) for e in plan.to_remove] == [("acme/gone", True, STALE_REASON)]


def test_entries_of_unlisted_organizations_are_kept() -> None:
    report = _report(enumeration_failures=[("acme", "502")])
    prior = _state(acme__a=Severity.MEDIUM, other__b=Severity.HIGH)

    plan = reconcile(report, prior)
    assert plan.is_empty
    assert plan.unchanged == frozenset({"acme/a", "other/b"})


def test_incomplete_report_is_refused() -> None:
    report = _report(_finding("acme/a"), incomplete=True)
    with pytest.raises(IncompleteReportError):
        reconcile(report, TrackingIssueState())


def test_detector_id_required_for_multi_detector_report() -> None:
    report = ScanReport(detector_ids=["go-version", "ubi"])
    with pytest.raises(ValueError):
        reconcile(report, TrackingIssueState())
    assert reconcile(report, TrackingIssueState(), detector_id="ubi").is_empty


def test_apply_plan_drops_removed_and_updates_severity() -> None:
    prior = _state(acme__a=Severity.MEDIUM, acme__b=Severity.MEDIUM)
    report = _report(_finding("acme/a", severity=Severity.HIGH), _finding("acme/b", Verdict.COMPLIANT))

    state = apply_plan(prior, reconcile(report, prior), updated_at=NOW)

    assert state.open_finding_keys == frozenset({"acme/a"})
    assert state.severities == {"acme/a": Severity.HIGH}
    assert state.last_updated_at == NOW
    assert state.issue_number == 7
