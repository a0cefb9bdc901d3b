"""
Image, scan and gate models.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum

from controller.src.errors import ConfigurationError

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value) -> "Severity":
        """Parse a severity name case-insensitively."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ConfigurationError(f"Invalid severity '{value}' (expected one of: {allowed})")

_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

class GateMode(str, Enum):
    STRICT = "strict"
    WARN = "warn"

    @classmethod
    def parse(cls, value) -> "GateMode":
        if isinstance(value, GateMode):
            return value
        normalized = str(value).strip().lower()
        if normalized == "warn-only":
            normalized = "warn"
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigurationError(f"Invalid gate mode '{value}' (expected strict or warn)")

class GateOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"

class GatePolicy(BaseModel):
    threshold: Severity = Severity.HIGH
    mode: GateMode = GateMode.STRICT

    @field_validator("threshold", mode="before")
    @classmethod
    def _parse_threshold(cls, value):
        return Severity.parse(value)

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_mode(cls, value):
        return GateMode.parse(value)

class ServiceImageSpec(BaseModel):
    """A build unit resolved from a declared service."""
    name: str
    context: str
    dockerfile: str = "Dockerfile"
    repository: str
    candidate_tag: str
    stable_tag: str

    @property
    def candidate_reference(self) -> str:
        return f"{self.repository}:{self.candidate_tag}"

class ServiceImage(BaseModel):
    """A built artifact, addressable by its candidate tag and digest."""
    name: str
    context: str
    repository: str
    tag: str
    stable_tag: str
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    @property
    def pinned_reference(self) -> str:
        if self.digest:
            return f"{self.repository}@{self.digest}"
        return self.reference

class ImageTag(BaseModel):
    """An image published under its stable tag."""
    service: str
    repository: str
    tag: str
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

class ScanFinding(BaseModel):
    severity: Severity
    identifier: str
    component: Optional[str] = None
    installed_version: Optional[str] = None
    fixed_version: Optional[str] = None

    def render(self) -> str:
        line = f"[{self.severity.value.upper()}] {self.identifier}"
        if self.component:
            line += f" in {self.component}"
            if self.installed_version:
                line += f" {self.installed_version}"
        if self.fixed_version:
            line += f" (fixed in {self.fixed_version})"
        return line

class ScanReport(BaseModel):
    image: str
    findings: List[ScanFinding] = []
    scanned_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class GateDecision(BaseModel):
    image: str
    outcome: GateOutcome
    threshold: Severity
    mode: GateMode
    blocking_count: int
    blocking: List[ScanFinding] = []

    @property
    def passed(self) -> bool:
        return self.outcome == GateOutcome.PASS

    def render(self) -> List[str]:
        """Human readable summary plus one line per blocking finding."""
        header = (
            f"{self.image}: {self.outcome.value.upper()} "
            f"({self.blocking_count} finding(s) >= {self.threshold.value}, mode={self.mode.value})"
        )
        return [header] + ["  " + f.render() for f in self.blocking]
