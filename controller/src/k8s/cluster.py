"""
KubernetesCluster - the ClusterClient used against a real cluster.

Blocking client calls run in a worker thread. API failures are translated to
ClusterUnavailableError (retried), ClusterAuthError or ClusterError.
"""

import asyncio
import logging
from typing import Dict, List, Optional
from kubernetes.client.rest import ApiException

from controller.src.k8s import manifests
from controller.src.k8s.client import (
    get_apps_api,
    get_core_api,
    get_networking_api,
    translate_api_error,
)
from controller.src.models.resources import DeployedWorkload, ExposureRule, NetworkPolicyRule, Workload

logger = logging.getLogger(__name__)

class KubernetesCluster:
    def __init__(self, apps_api=None, core_api=None, networking_api=None):
        self.apps = apps_api or get_apps_api()
        self.core = core_api or get_core_api()
        self.networking = networking_api or get_networking_api()

    async def _call(self, action: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            raise translate_api_error(e, action)

    async def _read(self, action: str, fn, *args, **kwargs):
        """Like _call, but a 404 means the object does not exist."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, action)
        except Exception as e:
            raise translate_api_error(e, action)

    async def read_workload(self, namespace: str, name: str) -> Optional[DeployedWorkload]:
        deployment = await self._read(
            f"read deployment {name}", self.apps.read_namespaced_deployment, name=name, namespace=namespace,
        )
        return manifests.deployed_workload(deployment) if deployment else None

    async def apply_workload(self, namespace: str, workload: Workload, image: str, digest: Optional[str]) -> str:
        body = manifests.render_deployment(namespace, workload, image, digest)
        current = await self._read(
            f"read deployment {workload.name}",
            self.apps.read_namespaced_deployment,
            name=workload.name,
            namespace=namespace,
        )

        if current is None:
            await self._call(
                f"create deployment {workload.name}",
                self.apps.create_namespaced_deployment,
                namespace=namespace,
                body=body,
            )
            logger.info(f"Created deployment {namespace}/{workload.name} ({image})")
            return "created"

        if manifests.deployment_matches(current, workload, image, digest):
            logger.info(f"Deployment {namespace}/{workload.name} unchanged")
            return "unchanged"

        await self._call(
            f"patch deployment {workload.name}",
            self.apps.patch_namespaced_deployment,
            name=workload.name,
            namespace=namespace,
            body=body,
        )
        logger.info(f"Updated deployment {namespace}/{workload.name} ({image})")
        return "updated"

    async def apply_exposure(self, namespace: str, exposure: ExposureRule, workload: Workload) -> str:
        body = manifests.render_service(namespace, exposure, workload)
        current = await self._read(
            f"read service {exposure.name}",
            self.core.read_namespaced_service,
            name=exposure.name,
            namespace=namespace,
        )

        if current is None:
            await self._call(
                f"create service {exposure.name}",
                self.core.create_namespaced_service,
                namespace=namespace,
                body=body,
            )
            logger.info(f"Created service {namespace}/{exposure.name}")
            return "created"

        await self._call(
            f"patch service {exposure.name}",
            self.core.patch_namespaced_service,
            name=exposure.name,
            namespace=namespace,
            body=body,
        )
        return "updated"

    async def ensure_default_deny(self, namespace: str) -> None:
        current = await self._read(
            "read default-deny policy",
            self.networking.read_namespaced_network_policy,
            name=manifests.DEFAULT_DENY_NAME,
            namespace=namespace,
        )
        if current is not None:
            return
        await self._call(
            "create default-deny policy",
            self.networking.create_namespaced_network_policy,
            namespace=namespace,
            body=manifests.render_default_deny(namespace),
        )
        logger.info(f"Created default-deny network policy in {namespace}")

    async def read_policy_rules(self, namespace: str) -> Dict[str, List[NetworkPolicyRule]]:
        policies = await self._call(
            "list network policies",
            self.networking.list_namespaced_network_policy,
            namespace=namespace,
            label_selector=f"{manifests.MANAGED_BY_LABEL}={manifests.MANAGED_BY}",
        )
        rules: Dict[str, List[NetworkPolicyRule]] = {}
        for policy in policies.items:
            for rule in manifests.policy_rules(policy):
                rules.setdefault(rule.destination, []).append(rule)
        return rules

    async def write_policy_rules(self, namespace: str, destination: str, rules: List[NetworkPolicyRule]) -> None:
        name = manifests.policy_name(destination)

        if not rules:
            try:
                await asyncio.to_thread(
                    self.networking.delete_namespaced_network_policy, name=name, namespace=namespace,
                )
            except ApiException as e:
                if e.status != 404:
                    raise translate_api_error(e, f"delete network policy {name}")
            except Exception as e:
                raise translate_api_error(e, f"delete network policy {name}")
            logger.info(f"Removed network policy {namespace}/{name}")
            return

        body = manifests.render_network_policy(namespace, destination, rules)
        current = await self._read(
            f"read network policy {name}",
            self.networking.read_namespaced_network_policy,
            name=name,
            namespace=namespace,
        )
        if current is None:
            await self._call(
                f"create network policy {name}",
                self.networking.create_namespaced_network_policy,
                namespace=namespace,
                body=body,
            )
        else:
            await self._call(
                f"replace network policy {name}",
                self.networking.replace_namespaced_network_policy,
                name=name,
                namespace=namespace,
                body=body,
            )
        logger.info(f"Wrote network policy {namespace}/{name} ({len(rules)} source(s))")

    async def restart_workload(self, namespace: str, name: str, restarted_at: str) -> None:
        await self._call(
            f"restart deployment {name}",
            self.apps.patch_namespaced_deployment,
            name=name,
            namespace=namespace,
            body=manifests.restart_patch(restarted_at),
        )
        logger.info(f"Signalled restart of {namespace}/{name}")

    async def workload_ready(self, namespace: str, name: str) -> bool:
        deployment = await self._call(
            f"read deployment status {name}",
            self.apps.read_namespaced_deployment_status,
            name=name,
            namespace=namespace,
        )
        return manifests.deployment_ready(deployment)
