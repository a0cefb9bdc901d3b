"""
TrivyScanner - scans a built image in a Kubernetes Job and parses the JSON report.
"""

import json
import logging
from typing import Any, Dict, List, Union

from controller.src.errors import ScanError
from controller.src.k8s.job_builder import build_job, build_job_name
from controller.src.k8s.jobs import submit_job, wait_for_job
from controller.src.models.artifact import ScanFinding, ScanReport, ServiceImage, Severity
from controller.src.services.log_collector import collect_logs

logger = logging.getLogger(__name__)

def _severity(value: str) -> Severity:
    try:
        return Severity(str(value).lower())
    except ValueError:
        # UNKNOWN and anything Trivy adds later
        return Severity.LOW

def parse_trivy_output(image: str, output: Union[str, Dict[str, Any]]) -> ScanReport:
    """Build a ScanReport from `trivy image --format json` output."""
    if isinstance(output, str):
        try:
            output = json.loads(output)
        except json.JSONDecodeError as e:
            raise ScanError(f"Unreadable scanner output for {image}: {e}")

    if not isinstance(output, dict):
        raise ScanError(f"Unexpected scanner output for {image}")

    findings: List[ScanFinding] = []
    for result in output.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            findings.append(ScanFinding(
                severity=_severity(vuln.get("Severity", "UNKNOWN")),
                identifier=vuln.get("VulnerabilityID", "unknown"),
                component=vuln.get("PkgName"),
                installed_version=vuln.get("InstalledVersion"),
                fixed_version=vuln.get("FixedVersion") or None,
            ))

    return ScanReport(image=image, findings=findings)

class TrivyScanner:
    def __init__(self, settings):
        self.settings = settings

    async def scan(self, image: ServiceImage) -> ScanReport:
        args = ["image", "--format", "json", "--quiet", "--scanners", "vuln", image.pinned_reference]
        if self.settings.registry_url.startswith("http://"):
            args.insert(-1, "--insecure")

        job = build_job(
            job_name=build_job_name("scan", image.name, image.pinned_reference),
            kind="scan",
            service=image.name,
            image=self.settings.scanner_image,
            args=args,
            registry_secret=self.settings.registry_secret_name,
            timeout=self.settings.job_timeout,
        )

        job_name = await submit_job(job)
        status = await wait_for_job(job_name, self.settings.job_timeout)
        if status != "succeeded":
            raise ScanError(f"Scan job {job_name} {status}")

        output = await collect_logs(job_name, tail_lines=None)
        report = parse_trivy_output(image.reference, output)
        logger.info(f"Trivy reported {len(report.findings)} finding(s) for {image.reference}")
        return report
