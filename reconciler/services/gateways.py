from __future__ import annotations

from typing import Mapping, Optional, Protocol, Sequence

from reconciler.schemas.cluster import ClusterResource, ClusterStatus
from reconciler.schemas.substrate import InstanceRecord, SecretRecord

UNKNOWN_LEADER = -1


class SecretGateway(Protocol):
    async def get(self, namespace: str, name: str) -> Optional[SecretRecord]: ...

    async def list(self, namespace: str, labels: Mapping[str, str]) -> list[SecretRecord]: ...

    async def reconcile(
        self,
        namespace: str,
        name: str,
        desired: Optional[SecretRecord],
    ) -> Optional[SecretRecord]:
        """Create, update or (``desired is None``) delete a secret."""
        ...


class InstanceGateway(Protocol):
    async def list_instances(
        self,
        namespace: str,
        labels: Mapping[str, str],
    ) -> list[InstanceRecord]: ...

    async def get_instance(self, namespace: str, name: str) -> Optional[InstanceRecord]: ...

    async def restart_instance(self, namespace: str, name: str) -> None: ...

    async def is_ready(self, namespace: str, name: str) -> bool: ...


class DeploymentGateway(Protocol):
    async def exists(self, namespace: str, name: str) -> bool: ...

    async def rolling_update(self, namespace: str, name: str, timeout_ms: int) -> None: ...


class TopologySource(Protocol):
    async def data_instance_names(self, namespace: str, cluster: str) -> list[str]:
        """Ordered names of the data-bearing instances, empty when none exist yet."""
        ...


class LeaderFinder(Protocol):
    async def find_leader(
        self,
        namespace: str,
        cluster: str,
        instances: Sequence[InstanceRecord],
    ) -> int:
        """Index into ``instances`` of the current leader, or ``UNKNOWN_LEADER``."""
        ...


class ResourceStore(Protocol):
    async def get(self, namespace: str, name: str) -> Optional[ClusterResource]: ...

    async def list(self) -> list[ClusterResource]: ...

    async def put(self, resource: ClusterResource) -> ClusterResource: ...

    async def update_status(self, namespace: str, name: str, status: ClusterStatus) -> None: ...
