"""
Error taxonomy for pipeline runs.

ReleaseError (base, exit code 1)
├── ConfigurationError (2)          # aborts the whole run
│   └── RegistryAuthError / ClusterAuthError
├── TransientInfraError (3)         # retried with backoff
│   ├── ScanError
│   ├── RegistryUnavailableError
│   ├── ClusterUnavailableError
│   └── RetryExhaustedError
├── SecurityGateFailure (4)
├── PartialDeploymentFailure (5)
├── BuildError, PushError, ClusterError, NetworkPolicyApplyError (1)
"""

from typing import Iterable, List, Optional

class ReleaseError(Exception):
    """Base class for every failure attached to a run, artifact or workload."""

    exit_code: int = 1
    kind: str = "error"

class ConfigurationError(ReleaseError):
    """Malformed config, missing credential or invalid policy value."""

    exit_code = 2
    kind = "configuration"

class TransientInfraError(ReleaseError):
    """A collaborator was temporarily unreachable."""

    exit_code = 3
    kind = "transient"

class SecurityGateFailure(ReleaseError):
    exit_code = 4
    kind = "security_gate"

    def __init__(self, image: str, blocking_count: int, threshold: str):
        self.image = image
        self.blocking_count = blocking_count
        self.threshold = threshold
        super().__init__(
            f"{image} has {blocking_count} finding(s) at or above {threshold}"
        )

class PartialDeploymentFailure(ReleaseError):
    exit_code = 5
    kind = "partial_deployment"

    def __init__(self, failed: Iterable[str]):
        self.failed: List[str] = sorted(failed)
        super().__init__(f"Deployment failed for: {', '.join(self.failed)}")

class BuildError(ReleaseError):
    kind = "build"

class PushError(ReleaseError):
    kind = "push"

class ClusterError(ReleaseError):
    """The cluster rejected a request (not retried)."""

    kind = "cluster"

class NetworkPolicyApplyError(ReleaseError):
    """Rule set apply failed; the previous rule set was restored."""

    kind = "network_policy"

class ScanError(TransientInfraError):
    pass

class RegistryUnavailableError(TransientInfraError):
    pass

class ClusterUnavailableError(TransientInfraError):
    pass

class RegistryAuthError(ConfigurationError):
    pass

class ClusterAuthError(ConfigurationError):
    pass

class RetryExhaustedError(TransientInfraError):
    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")

class RunStateError(RuntimeError):
    """A terminal PipelineRun was mutated."""

# Most severe first, used when several failures share one exit code
EXIT_CODE_PRECEDENCE = (
    ConfigurationError.exit_code,
    SecurityGateFailure.exit_code,
    TransientInfraError.exit_code,
    PartialDeploymentFailure.exit_code,
    ReleaseError.exit_code,
)

def exit_code_for(codes: Iterable[int]) -> int:
    """Pick the exit code to report for a set of failure codes (0 if none)."""
    seen = set(codes)
    for code in EXIT_CODE_PRECEDENCE:
        if code in seen:
            return code
    return 0
