from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Sequence

import pytest

from reconciler import identity
from reconciler.config import Settings
from reconciler.schemas.cluster import ClusterResource, ClusterStatus
from reconciler.schemas.substrate import ROLE_DATA, InstanceRecord, SecretRecord
from reconciler.services.assembly import ClusterReconciler
from reconciler.services.ca import (
    CA_CRT,
    CA_KEY,
    CaAnnotations,
    TrustScope,
    cert_secret_name,
    key_secret_name,
)
from reconciler.services.gateways import UNKNOWN_LEADER
from reconciler.services.rolling import node_refs

PREFIX = "reconciler.io"
NAMESPACE = "data"
CLUSTER = "my-cluster"
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


def _matches(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    return all(labels.get(key) == value for key, value in selector.items())


class FakeSecretGateway:
    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], SecretRecord] = {}
        self.writes: list[str] = []
        self.deletes: list[str] = []

    def put(self, record: SecretRecord) -> None:
        self.secrets[(record.namespace, record.name)] = record.model_copy(deep=True)

    def stored(self, name: str, namespace: str = NAMESPACE) -> Optional[SecretRecord]:
        return self.secrets.get((namespace, name))

    async def get(self, namespace: str, name: str) -> Optional[SecretRecord]:
        record = self.secrets.get((namespace, name))
        return record.model_copy(deep=True) if record is not None else None

    async def list(self, namespace: str, labels: Mapping[str, str]) -> list[SecretRecord]:
        return [
            record.model_copy(deep=True)
            for (ns, _), record in sorted(self.secrets.items())
            if ns == namespace and _matches(record.labels, labels)
        ]

    async def reconcile(
        self,
        namespace: str,
        name: str,
        desired: Optional[SecretRecord],
    ) -> Optional[SecretRecord]:
        current = self.secrets.get((namespace, name))
        if desired is None:
            if current is not None:
                del self.secrets[(namespace, name)]
                self.deletes.append(name)
            return None
        if current == desired:
            return current
        self.secrets[(namespace, name)] = desired.model_copy(deep=True)
        self.writes.append(name)
        return desired


class FakeInstanceGateway:
    def __init__(self, instances: Sequence[InstanceRecord] = ()) -> None:
        self.instances: dict[str, InstanceRecord] = {item.name: item for item in instances}
        self.restarts: list[str] = []
        self.never_ready: set[str] = set()
        self.restart_errors: dict[str, Exception] = {}

    def add(self, name: str, *roles: str, cluster: str = CLUSTER, **annotations: str) -> InstanceRecord:
        record = InstanceRecord(
            name=name,
            roles=list(roles),
            labels={f"{PREFIX}/cluster": cluster},
            annotations=dict(annotations),
            state="running",
        )
        self.instances[name] = record
        return record

    def annotate(self, name: str, key: str, value: str) -> None:
        record = self.instances[name]
        self.instances[name] = record.model_copy(update={"annotations": {**record.annotations, key: value}})

    async def list_instances(self, namespace: str, labels: Mapping[str, str]) -> list[InstanceRecord]:
        return [item for _, item in sorted(self.instances.items()) if _matches(item.labels, labels)]

    async def get_instance(self, namespace: str, name: str) -> Optional[InstanceRecord]:
        return self.instances.get(name)

    async def restart_instance(self, namespace: str, name: str) -> None:
        self.restarts.append(name)
        if name in self.restart_errors:
            raise self.restart_errors[name]

    async def is_ready(self, namespace: str, name: str) -> bool:
        return name not in self.never_ready


class FakeDeploymentGateway:
    def __init__(self, existing: Sequence[str] = ()) -> None:
        self.existing: set[str] = set(existing)
        self.failing: dict[str, Exception] = {}
        self.rolled: list[str] = []
        self.attempted: list[str] = []

    async def exists(self, namespace: str, name: str) -> bool:
        return name in self.existing

    async def rolling_update(self, namespace: str, name: str, timeout_ms: int) -> None:
        self.attempted.append(name)
        if name in self.failing:
            raise self.failing[name]
        self.rolled.append(name)


class FakeTopology:
    def __init__(self, instances: FakeInstanceGateway) -> None:
        self._instances = instances

    async def data_instance_names(self, namespace: str, cluster: str) -> list[str]:
        listed = await self._instances.list_instances(namespace, {f"{PREFIX}/cluster": cluster})
        return [ref.name for ref in node_refs(item for item in listed if item.has_role(ROLE_DATA))]


class FakeLeaderFinder:
    def __init__(self, leader: int = UNKNOWN_LEADER) -> None:
        self.leader = leader

    async def find_leader(self, namespace: str, cluster: str, instances: Sequence[InstanceRecord]) -> int:
        return self.leader


class FakeResourceStore:
    def __init__(self) -> None:
        self.resources: dict[tuple[str, str], ClusterResource] = {}
        self.published: list[ClusterStatus] = []

    def add(self, resource: ClusterResource) -> ClusterResource:
        self.resources[resource.key] = resource
        return resource

    async def get(self, namespace: str, name: str) -> Optional[ClusterResource]:
        return self.resources.get((namespace, name))

    async def list(self) -> list[ClusterResource]:
        return [item for _, item in sorted(self.resources.items())]

    async def put(self, resource: ClusterResource) -> ClusterResource:
        existing = self.resources.get(resource.key)
        stored = resource
        if existing is not None:
            stored = resource.model_copy(update={"status": existing.status})
        self.resources[resource.key] = stored
        return stored

    async def update_status(self, namespace: str, name: str, status: ClusterStatus) -> None:
        resource = self.resources[(namespace, name)]
        self.resources[(namespace, name)] = resource.model_copy(update={"status": status})
        self.published.append(status)


@dataclass
class Substrate:
    secrets: FakeSecretGateway = field(default_factory=FakeSecretGateway)
    instances: FakeInstanceGateway = field(default_factory=FakeInstanceGateway)
    deployments: FakeDeploymentGateway = field(default_factory=FakeDeploymentGateway)
    resources: FakeResourceStore = field(default_factory=FakeResourceStore)
    leader: FakeLeaderFinder = field(default_factory=FakeLeaderFinder)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        etcd_enabled=False,
        annotation_prefix=PREFIX,
        operation_timeout_ms=2000,
        roller_backoff_base_ms=1,
        roller_backoff_factor=2,
        roller_backoff_max_attempts=3,
    )


@pytest.fixture
def annotations() -> CaAnnotations:
    return CaAnnotations(PREFIX)


@pytest.fixture
def substrate() -> Substrate:
    return Substrate()


@pytest.fixture
def make_reconciler(settings: Settings, substrate: Substrate) -> Callable[..., ClusterReconciler]:
    def _make(**overrides: object) -> ClusterReconciler:
        return ClusterReconciler.from_settings(
            settings,
            secrets=substrate.secrets,
            resources=substrate.resources,
            instances=substrate.instances,
            deployments=substrate.deployments,
            topology=FakeTopology(substrate.instances),
            leader_finder=substrate.leader,
            clock=lambda: NOW,
            **overrides,
        )

    return _make


@pytest.fixture
def seed_ca(substrate: Substrate, annotations: CaAnnotations) -> Callable[..., tuple[str, str]]:
    """Store a CA pair that expires ``days_left`` days after ``NOW``."""

    def _seed(
        scope: TrustScope,
        *,
        generation: int,
        days_left: int,
        key_generation: int = 0,
        cluster: str = CLUSTER,
        cert_annotations: Optional[dict[str, str]] = None,
    ) -> tuple[str, str]:
        key_pem, cert_pem = identity.generate_root(
            common_name=f"{cluster}-{scope.value}-ca",
            validity_days=days_left,
            now=NOW,
        )
        labels = {annotations.cluster_label: cluster, annotations.component_label: f"{scope.value}-ca"}
        substrate.secrets.put(
            SecretRecord(
                namespace=NAMESPACE,
                name=cert_secret_name(cluster, scope),
                data={CA_CRT: cert_pem},
                labels=labels,
                annotations={annotations.cert_generation: str(generation), **(cert_annotations or {})},
            )
        )
        substrate.secrets.put(
            SecretRecord(
                namespace=NAMESPACE,
                name=key_secret_name(cluster, scope),
                data={CA_KEY: key_pem},
                labels=labels,
                annotations={annotations.key_generation: str(key_generation)},
            )
        )
        return key_pem, cert_pem

    return _seed


def make_resource(**spec: object) -> ClusterResource:
    return ClusterResource.model_validate(
        {
            "namespace": NAMESPACE,
            "name": CLUSTER,
            "uid": "0d5c6c2e-uid",
            "spec": spec,
        }
    )


def days(value: int) -> timedelta:
    return timedelta(days=value)
