"""
Kubernetes Job builder for build and scan jobs.
"""

from kubernetes import client
from typing import List, Dict, Optional
import hashlib
import uuid

from controller.src.config import get_settings

settings = get_settings()

DOCKER_CONFIG_PATH = "/releasex/docker"

def build_job_name(kind: str, service: str, reference: str) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = service.lower().replace(" ", "-").replace("_", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    safe_name = safe_name[:20].strip("-")  # Truncate service name

    # Short hash of the image reference plus a random suffix so reruns never collide
    ref_hash = hashlib.md5(reference.encode()).hexdigest()[:8]
    suffix = uuid.uuid4().hex[:5]

    return f"rx-{kind[:5]}-{safe_name}-{ref_hash}-{suffix}"

def build_job(
    job_name: str,
    kind: str,
    service: str,
    image: str,
    args: List[str],
    command: Optional[List[str]] = None,
    env_vars: Optional[Dict[str, str]] = None,
    registry_secret: Optional[str] = None,
    timeout: int = 600,
) -> client.V1Job:
    """
    Build a Kubernetes Job that runs one build or scan for one service.

    When `registry_secret` is set, the dockerconfigjson secret is mounted and
    DOCKER_CONFIG points at it so the tool can authenticate to the registry.
    """
    labels = {
        "app": "releasex",
        "releasex.io/kind": kind,
        "releasex.io/service": service,
    }

    env = [
        client.V1EnvVar(name="RELEASEX_JOB_KIND", value=kind),
        client.V1EnvVar(name="RELEASEX_SERVICE", value=service),
    ]
    if env_vars:
        for key, value in env_vars.items():
            env.append(client.V1EnvVar(name=key, value=value))

    volumes = []
    volume_mounts = []
    if registry_secret:
        env.append(client.V1EnvVar(name="DOCKER_CONFIG", value=DOCKER_CONFIG_PATH))
        volumes.append(client.V1Volume(
            name="registry-auth",
            secret=client.V1SecretVolumeSource(
                secret_name=registry_secret,
                items=[client.V1KeyToPath(key=".dockerconfigjson", path="config.json")],
            ),
        ))
        volume_mounts.append(client.V1VolumeMount(
            name="registry-auth",
            mount_path=DOCKER_CONFIG_PATH,
            read_only=True,
        ))

    # Container spec
    container = client.V1Container(
        name=kind,
        image=image,
        command=command,
        args=args,
        env=env,
        volume_mounts=volume_mounts or None,
        termination_message_policy="FallbackToLogsOnError",
        resources=client.V1ResourceRequirements(
            requests={"cpu": "250m", "memory": "512Mi"},
            limits={"cpu": "2", "memory": "4Gi"},
        ),
    )

    # Pod spec
    pod_spec = client.V1PodSpec(
        containers=[container],
        restart_policy="Never",
        volumes=volumes or None,
    )

    # Pod template
    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    # Job spec
    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Retries are decided by the controller, not the Job
        active_deadline_seconds=timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
