"""Kubernetes runtime: one Deployment per scaled service.

Replica counts are read from ``status.readyReplicas``; scaling goes through
the Deployment ``scale`` subresource. Pods chosen for removal are annotated
with a low ``controller.kubernetes.io/pod-deletion-cost`` so the ReplicaSet
controller terminates exactly the pods that were drained from nginx.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]
from kubernetes_asyncio import config as k8s_config  # type: ignore[import-untyped]
from kubernetes_asyncio.client.rest import ApiException  # type: ignore[import-untyped]

from scalewarden.models.scaling import Instance
from scalewarden.observability.logging import get_logger
from scalewarden.runtime.base import RuntimeCommandError, WorkloadRuntime

_logger = get_logger("runtime.kubernetes")

_T = TypeVar("_T")

DELETION_COST_ANNOTATION = "controller.kubernetes.io/pod-deletion-cost"
_REMOVAL_COST = "-1000"


async def load_client_config() -> None:
    """Configure kubernetes-asyncio from the in-cluster service account or kubeconfig."""
    try:
        # load_incluster_config() is synchronous in kubernetes-asyncio
        k8s_config.load_incluster_config()
        _logger.info("k8s client configured from in-cluster service account")
    except k8s_config.ConfigException:
        await k8s_config.load_kube_config()
        _logger.info("k8s client configured from kubeconfig")


class KubernetesRuntime(WorkloadRuntime):
    """Scales Deployments named after their service in a single namespace.

    Args:
        namespace: Namespace holding the Deployments.
        ports:     Service name -> container port used for health checks and upstreams.
        timeout:   Per-API-call timeout in seconds.
        api_client: Optional pre-built ``ApiClient`` (tests inject one).
    """

    def __init__(
        self,
        namespace: str,
        ports: dict[str, int],
        timeout: float = 30.0,
        api_client: Any = None,
    ) -> None:
        self._namespace = namespace
        self._ports = ports
        self._timeout = timeout
        self._api_client = api_client or k8s_client.ApiClient()
        self._apps = k8s_client.AppsV1Api(self._api_client)
        self._core = k8s_client.CoreV1Api(self._api_client)

    async def _call(self, what: str, coro: Awaitable[_T]) -> _T:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except TimeoutError as exc:
            raise RuntimeCommandError(f"{what} timed out after {self._timeout}s") from exc
        except ApiException as exc:
            raise RuntimeCommandError(f"{what} failed: {exc.status} {exc.reason}") from exc

    async def get_replica_count(self, service: str) -> int:
        deployment = await self._call(
            f"read deployment {service}",
            self._apps.read_namespaced_deployment(service, self._namespace),
        )
        return int(deployment.status.ready_replicas or 0)

    async def set_replica_count(self, service: str, replicas: int) -> None:
        _logger.info("k8s_scale", service=service, namespace=self._namespace, replicas=replicas)
        await self._call(
            f"scale deployment {service}",
            self._apps.patch_namespaced_deployment_scale(
                service,
                self._namespace,
                {"spec": {"replicas": replicas}},
            ),
        )

    async def list_instances(self, service: str) -> list[Instance]:
        deployment = await self._call(
            f"read deployment {service}",
            self._apps.read_namespaced_deployment(service, self._namespace),
        )
        labels = deployment.spec.selector.match_labels or {}
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        pods = await self._call(
            f"list pods of {service}",
            self._core.list_namespaced_pod(self._namespace, label_selector=selector),
        )
        port = self._ports.get(service, 80)
        running = [
            pod
            for pod in pods.items
            if pod.status.phase == "Running" and pod.status.pod_ip and pod.metadata.deletion_timestamp is None
        ]
        # Newest last: the ReplicaSet controller prefers removing the youngest pods.
        running.sort(key=lambda pod: (pod.metadata.creation_timestamp, pod.metadata.name))
        return [Instance(instance_id=pod.metadata.name, host=pod.status.pod_ip, port=port) for pod in running]

    async def prepare_removal(self, service: str, instances: list[Instance]) -> None:
        body = {"metadata": {"annotations": {DELETION_COST_ANNOTATION: _REMOVAL_COST}}}
        for instance in instances:
            await self._call(
                f"annotate pod {instance.instance_id}",
                self._core.patch_namespaced_pod(instance.instance_id, self._namespace, body),
            )
        _logger.debug(
            "k8s_pods_marked_for_removal",
            service=service,
            pods=[i.instance_id for i in instances],
        )

    async def close(self) -> None:
        await self._api_client.close()
