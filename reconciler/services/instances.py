from __future__ import annotations

from typing import Mapping, Optional, Sequence

from reconciler.logger import get_logger
from reconciler.schemas.substrate import ROLE_DATA, InstanceRecord
from reconciler.services import lxd
from reconciler.services.gateways import UNKNOWN_LEADER
from reconciler.services.rolling import node_refs

_logger = get_logger("services.instances")

ROLES_KEY = "user.reconciler.roles"
LABEL_KEY_PREFIX = "user.label."
ANNOTATION_KEY_PREFIX = "user.annotation."


def instance_record(container: lxd.LXDContainer) -> InstanceRecord:
    """Roles, labels and annotations live in ``user.*`` keys of the container config."""
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}
    for key, value in container.config.items():
        if key.startswith(LABEL_KEY_PREFIX):
            labels[key[len(LABEL_KEY_PREFIX):]] = value
        elif key.startswith(ANNOTATION_KEY_PREFIX):
            annotations[key[len(ANNOTATION_KEY_PREFIX):]] = value
    roles = [item.strip() for item in container.config.get(ROLES_KEY, "").split(",") if item.strip()]
    return InstanceRecord(
        name=container.name,
        roles=roles,
        labels=labels,
        annotations=annotations,
        state=container.status,
    )


def _matches(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    return all(labels.get(key) == value for key, value in selector.items())


class LXDInstanceGateway:
    async def list_instances(self, namespace: str, labels: Mapping[str, str]) -> list[InstanceRecord]:
        containers = await lxd.list_containers(project=lxd.project_for(namespace))
        records = [instance_record(item) for item in containers]
        return [record for record in records if _matches(record.labels, labels)]

    async def get_instance(self, namespace: str, name: str) -> Optional[InstanceRecord]:
        container = await lxd.get_container(name=name, project=lxd.project_for(namespace))
        if container is None:
            return None
        return instance_record(container)

    async def restart_instance(self, namespace: str, name: str) -> None:
        await lxd.restart_container(name=name, project=lxd.project_for(namespace))

    async def is_ready(self, namespace: str, name: str) -> bool:
        status = await lxd.container_status(name=name, project=lxd.project_for(namespace))
        return status == "running"


class LXDDeploymentGateway:
    """A deployment is every container labelled ``<prefix>/deployment=<name>``."""

    def __init__(self, *, annotation_prefix: str) -> None:
        self._label = f"{annotation_prefix}/deployment"

    async def _members(self, namespace: str, name: str) -> list[lxd.LXDContainer]:
        containers = await lxd.list_containers(project=lxd.project_for(namespace))
        return [
            item
            for item in containers
            if item.config.get(f"{LABEL_KEY_PREFIX}{self._label}") == name
        ]

    async def exists(self, namespace: str, name: str) -> bool:
        return bool(await self._members(namespace, name))

    async def rolling_update(self, namespace: str, name: str, timeout_ms: int) -> None:
        project = lxd.project_for(namespace)
        members = await self._members(namespace, name)
        async with _logger.operation(
            "deployment.rolling_update",
            "Rolling deployment containers",
            deployment=name,
            project=project,
            members=len(members),
        ) as op:
            for container in members:
                await lxd.restart_container(name=container.name, project=project)
                await lxd.wait_for_running(
                    name=container.name,
                    project=project,
                    timeout_seconds=timeout_ms / 1000,
                )
                op.child("deployment.member", container.name, "Container restarted and running")


class LXDTopologySource:
    def __init__(self, *, instances: LXDInstanceGateway, cluster_label: str) -> None:
        self._instances = instances
        self._cluster_label = cluster_label

    async def data_instance_names(self, namespace: str, cluster: str) -> list[str]:
        listed = await self._instances.list_instances(namespace, {self._cluster_label: cluster})
        return [ref.name for ref in node_refs(item for item in listed if item.has_role(ROLE_DATA))]


class AnnotationLeaderFinder:
    """Coordinators advertise leadership with ``<prefix>/leader=true``."""

    def __init__(self, *, annotation_prefix: str) -> None:
        self._annotation = f"{annotation_prefix}/leader"

    async def find_leader(
        self,
        namespace: str,
        cluster: str,
        instances: Sequence[InstanceRecord],
    ) -> int:
        if len(instances) <= 1:
            return len(instances) - 1
        leaders = [
            index
            for index, item in enumerate(instances)
            if item.annotations.get(self._annotation) == "true"
        ]
        if len(leaders) != 1:
            _logger.for_cluster(namespace, cluster).warning(
                "leader.unknown",
                "Could not identify a single coordinator leader",
                candidates=len(leaders),
            )
            return UNKNOWN_LEADER
        return leaders[0]
