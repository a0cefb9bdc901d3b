"""Tests for the severity gate."""

import pytest

from controller.src.errors import ConfigurationError
from controller.src.models.artifact import GateMode, GateOutcome, GatePolicy, ScanFinding, ScanReport, Severity
from controller.src.stages.gate import GateEvaluator, evaluate

def report(*severities):
    return ScanReport(
        image="registry.local/releasex/web:candidate-abc",
        findings=[ScanFinding(severity=s, identifier=f"CVE-{i}") for i, s in enumerate(severities)],
    )

def test_no_findings_pass():
    decision = evaluate(report(), Severity.LOW)
    assert decision.passed
    assert decision.blocking_count == 0

def test_finding_at_threshold_blocks():
    decision = evaluate(report(Severity.HIGH, Severity.LOW), Severity.HIGH)
    assert decision.outcome == GateOutcome.FAIL
    assert decision.blocking_count == 1
    assert decision.blocking[0].severity == Severity.HIGH

def test_findings_below_threshold_pass():
    decision = evaluate(report(Severity.MEDIUM, Severity.LOW), Severity.HIGH)
    assert decision.passed

def test_critical_threshold():
    assert evaluate(report(Severity.HIGH), Severity.CRITICAL).passed
    assert not evaluate(report(Severity.CRITICAL), Severity.CRITICAL).passed

def test_warn_mode_passes_with_findings():
    decision = evaluate(report(Severity.CRITICAL, Severity.HIGH), Severity.HIGH, GateMode.WARN)
    assert decision.passed
    assert decision.blocking_count == 2

def test_raising_threshold_never_adds_blocking_findings():
    findings = report(Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL, Severity.HIGH)
    counts = [evaluate(findings, s).blocking_count for s in Severity]
    assert counts == sorted(counts, reverse=True)
    assert counts == [5, 4, 3, 1]

def test_evaluate_is_deterministic():
    findings = report(Severity.HIGH, Severity.CRITICAL, Severity.HIGH)
    first = evaluate(findings, Severity.MEDIUM)
    second = evaluate(findings, Severity.MEDIUM)
    assert first == second
    assert [f.severity for f in first.blocking] == [Severity.CRITICAL, Severity.HIGH, Severity.HIGH]

def test_threshold_parsed_case_insensitively():
    assert evaluate(report(Severity.HIGH), "HIGH").threshold == Severity.HIGH

def test_unknown_threshold_is_configuration_error():
    with pytest.raises(ConfigurationError, match="Invalid severity"):
        evaluate(report(), "severe")

def test_policy_accepts_warn_only():
    policy = GatePolicy(threshold="Critical", mode="warn-only")
    assert policy.threshold == Severity.CRITICAL
    assert policy.mode == GateMode.WARN

def test_policy_defaults_to_strict_high():
    policy = GatePolicy()
    assert policy.threshold == Severity.HIGH
    assert policy.mode == GateMode.STRICT

def test_evaluator_render_lists_blocking_findings():
    decision = GateEvaluator(GatePolicy(threshold="medium")).evaluate(report(Severity.MEDIUM, Severity.LOW))
    lines = decision.render()
    assert lines[0].endswith("FAIL (1 finding(s) >= medium, mode=strict)")
    assert lines[1] == "  [MEDIUM] CVE-0"
