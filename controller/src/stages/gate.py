"""
GateEvaluator - severity threshold policy over a scan report.

evaluate() is a pure function: the same report, threshold and mode always
give the same decision, and raising the threshold can only lower the number
of blocking findings (so never turns a pass into a fail).
"""

import logging
from typing import Dict

from controller.src.models.artifact import (
    GateDecision,
    GateMode,
    GateOutcome,
    GatePolicy,
    ScanReport,
    Severity,
)

logger = logging.getLogger(__name__)

def evaluate(report: ScanReport, threshold: Severity, mode: GateMode = GateMode.STRICT) -> GateDecision:
    threshold = Severity.parse(threshold)
    mode = GateMode.parse(mode)

    blocking = [f for f in report.findings if f.severity.rank >= threshold.rank]
    # Stable order for rendering: most severe first, then identifier
    blocking.sort(key=lambda f: (-f.severity.rank, f.identifier, f.component or ""))

    if mode == GateMode.WARN or not blocking:
        outcome = GateOutcome.PASS
    else:
        outcome = GateOutcome.FAIL

    return GateDecision(
        image=report.image,
        outcome=outcome,
        threshold=threshold,
        mode=mode,
        blocking_count=len(blocking),
        blocking=blocking,
    )

class GateEvaluator:
    """Applies one run-level policy to every report and logs the findings."""

    def __init__(self, policy: GatePolicy):
        self.policy = policy

    def evaluate(self, report: ScanReport) -> GateDecision:
        decision = evaluate(report, self.policy.threshold, self.policy.mode)
        lines = decision.render()

        if not decision.passed:
            logger.error("\n".join(lines))
        elif decision.blocking_count:
            # warn-only: passes, findings still reported
            logger.warning("\n".join(lines))
        else:
            logger.info(lines[0])

        return decision

    def evaluate_all(self, reports: Dict[str, ScanReport]) -> Dict[str, GateDecision]:
        return {name: self.evaluate(report) for name, report in reports.items()}
