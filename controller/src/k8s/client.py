"""
Kubernetes client initialization and utilities.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from typing import Optional
import logging

from controller.src.config import get_settings
from controller.src.errors import ClusterAuthError, ClusterError, ClusterUnavailableError, ReleaseError

logger = logging.getLogger(__name__)
settings = get_settings()

_api_client = None
_batch_v1 = None
_core_v1 = None
_apps_v1 = None
_networking_v1 = None

def init_k8s_client():
    """Initialize Kubernetes client."""
    global _api_client, _batch_v1, _core_v1, _apps_v1, _networking_v1

    try:
        if settings.k8s_in_cluster:
            # Running inside Kubernetes
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        else:
            # Running locally (Docker Desktop, minikube, etc.)
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")

        _api_client = client.ApiClient()
        _batch_v1 = client.BatchV1Api(_api_client)
        _core_v1 = client.CoreV1Api(_api_client)
        _apps_v1 = client.AppsV1Api(_api_client)
        _networking_v1 = client.NetworkingV1Api(_api_client)

        # Test connection
        _core_v1.list_namespace(limit=1)
        logger.info("Kubernetes client initialized successfully")

        return True
    except Exception as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        return False

def translate_api_error(e: Exception, action: str) -> ReleaseError:
    """Map a Kubernetes client failure onto the release error taxonomy."""
    if isinstance(e, ApiException):
        if e.status in (401, 403):
            return ClusterAuthError(f"Not authorized to {action}: {e.reason}")
        if e.status is None or e.status == 0 or e.status == 429 or e.status >= 500:
            return ClusterUnavailableError(f"Cluster unavailable while trying to {action}: {e.reason}")
        return ClusterError(f"Cluster rejected {action}: {e.status} {e.reason}")
    # urllib3 connection errors and the like
    return ClusterUnavailableError(f"Cluster unreachable while trying to {action}: {e}")

def get_batch_api() -> client.BatchV1Api:
    """Get BatchV1 API client for build and scan Jobs."""
    if _batch_v1 is None:
        init_k8s_client()
    return _batch_v1

def get_core_api() -> client.CoreV1Api:
    """Get CoreV1 API client for Pods, Services and Secrets."""
    if _core_v1 is None:
        init_k8s_client()
    return _core_v1

def get_apps_api() -> client.AppsV1Api:
    """Get AppsV1 API client for Deployments."""
    if _apps_v1 is None:
        init_k8s_client()
    return _apps_v1

def get_networking_api() -> client.NetworkingV1Api:
    """Get NetworkingV1 API client for NetworkPolicies."""
    if _networking_v1 is None:
        init_k8s_client()
    return _networking_v1

def ensure_namespace(namespace: Optional[str] = None):
    """Ensure a namespace exists (the job namespace by default)."""
    namespace = namespace or settings.k8s_namespace
    core_v1 = get_core_api()

    try:
        core_v1.read_namespace(name=namespace)
        logger.info(f"Namespace '{namespace}' exists")
    except ApiException as e:
        if e.status == 404:
            body = client.V1Namespace(
                metadata=client.V1ObjectMeta(name=namespace)
            )
            core_v1.create_namespace(body=body)
            logger.info(f"Created namespace '{namespace}'")
        else:
            raise

def delete_job(job_name: str, namespace: Optional[str] = None):
    """Delete a job and its pods."""
    namespace = namespace or settings.k8s_namespace
    batch_v1 = get_batch_api()

    try:
        batch_v1.delete_namespaced_job(
            name=job_name,
            namespace=namespace,
            body=client.V1DeleteOptions(
                propagation_policy="Foreground"
            )
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete job {job_name}: {e}")
