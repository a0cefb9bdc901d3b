"""
KanikoBuilder - builds a service image in a Kubernetes Job.

Kaniko builds straight from the git revision, pushes the candidate tag and
writes the image digest to the container's termination message.
"""

import logging
import re
from typing import Optional

from controller.src.errors import BuildError, ConfigurationError
from controller.src.k8s.job_builder import build_job, build_job_name
from controller.src.k8s.jobs import submit_job, wait_for_job
from controller.src.models.artifact import ServiceImage, ServiceImageSpec
from controller.src.services.log_collector import collect_logs, termination_message

logger = logging.getLogger(__name__)

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")

def git_context(repository_url: str, revision: str) -> str:
    """Kaniko git build context for a repository URL pinned to a revision."""
    url = re.sub(r"^[a-z+]+://", "", repository_url.strip())
    url = url.rstrip("/")
    if not url.endswith(".git"):
        url += ".git"
    return f"git://{url}#{revision}"

class KanikoBuilder:
    def __init__(self, settings):
        self.settings = settings

    def job_args(self, spec: ServiceImageSpec, revision: str, repository_url: str):
        args = [
            f"--context={git_context(repository_url, revision)}",
            f"--dockerfile={spec.dockerfile}",
            f"--destination={spec.candidate_reference}",
            "--digest-file=/dev/termination-log",
            f"--label=org.opencontainers.image.revision={revision}",
        ]
        context = spec.context.strip("./")
        if context:
            args.append(f"--context-sub-path={context}")
        if self.settings.registry_url.startswith("http://"):
            args.append("--insecure")
        return args

    async def build(self, spec: ServiceImageSpec, revision: str, repository_url: Optional[str]) -> ServiceImage:
        if not repository_url:
            raise ConfigurationError(f"No source repository to build {spec.name} from")

        job = build_job(
            job_name=build_job_name("build", spec.name, spec.candidate_reference),
            kind="build",
            service=spec.name,
            image=self.settings.builder_image,
            args=self.job_args(spec, revision, repository_url),
            registry_secret=self.settings.registry_secret_name,
            timeout=self.settings.job_timeout,
        )

        job_name = await submit_job(job)
        status = await wait_for_job(job_name, self.settings.job_timeout)

        if status != "succeeded":
            logs = await collect_logs(job_name, tail_lines=20)
            raise BuildError(f"Build job {job_name} {status}: {logs.strip()}")

        digest = await termination_message(job_name)
        if not digest or not DIGEST_PATTERN.match(digest):
            raise BuildError(f"Build job {job_name} did not report an image digest")

        return ServiceImage(
            name=spec.name,
            context=spec.context,
            repository=spec.repository,
            tag=spec.candidate_tag,
            stable_tag=spec.stable_tag,
            digest=digest,
        )
