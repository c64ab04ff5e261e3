from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Iterator, Mapping, Optional, Sequence

from reconciler.errors import HealthTimeoutError, PartialRolloutError
from reconciler.logger import BoundLogger, get_logger
from reconciler.metrics import record_dependent_rollout, record_restart
from reconciler.schemas.substrate import ROLE_COORDINATOR, ROLE_DATA, InstanceRecord, SecretRecord
from reconciler.services.gateways import (
    UNKNOWN_LEADER,
    DeploymentGateway,
    InstanceGateway,
    LeaderFinder,
    TopologySource,
)
from reconciler.utils import int_annotation

_logger = get_logger("services.rolling")
_TRAILING_ID_RE = re.compile(r"(\d+)$")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackOff:
    base_ms: int = 250
    factor: int = 2
    max_attempts: int = 10

    def delays_ms(self) -> Iterator[int]:
        for attempt in range(self.max_attempts):
            yield self.base_ms * self.factor**attempt

    @property
    def total_ms(self) -> int:
        return sum(self.delays_ms())


@dataclass(frozen=True)
class NodeRef:
    id: int
    name: str
    roles: frozenset[str]


def node_refs(instances: Iterable[InstanceRecord]) -> list[NodeRef]:
    """Order instances by the numeric suffix of their names."""
    refs: list[NodeRef] = []
    for position, instance in enumerate(instances):
        match = _TRAILING_ID_RE.search(instance.name)
        node_id = int(match.group(1)) if match else position
        refs.append(NodeRef(id=node_id, name=instance.name, roles=frozenset(instance.roles)))
    refs.sort(key=lambda ref: (ref.id, ref.name))
    return refs


class RollingUpdateReasons:
    """Growable set of justifications; empty means nothing has to restart."""

    def __init__(self, reasons: Iterable[str] = ()) -> None:
        self._reasons: list[str] = []
        for reason in reasons:
            self.add(reason)

    def add(self, reason: str) -> None:
        if reason and reason not in self._reasons:
            self._reasons.append(reason)

    def __bool__(self) -> bool:
        return bool(self._reasons)

    def __iter__(self) -> Iterator[str]:
        return iter(self._reasons)

    def __len__(self) -> int:
        return len(self._reasons)

    def __str__(self) -> str:
        return "[" + ", ".join(self._reasons) + "]"


@dataclass(frozen=True)
class PendingAdoption:
    """A key replaced in an earlier cycle whose old certificates are still retained."""

    scope: str
    annotation: str
    generation: int
    internal: bool

    def lagging(self, instance: InstanceRecord) -> bool:
        adopted = int_annotation(instance.annotations, self.annotation)
        return adopted is None or adopted < self.generation


@dataclass(frozen=True)
class RollingUpdateTrigger:
    cluster_key_replaced: bool
    clients_key_replaced: bool
    reasons: tuple[str, ...] = ()
    pending: tuple[PendingAdoption, ...] = ()

    @property
    def fired(self) -> bool:
        return self.cluster_key_replaced or self.clients_key_replaced

    @property
    def resuming(self) -> bool:
        return not self.fired and bool(self.pending)


@dataclass
class RollingUpdateResult:
    coordinators: list[str] = field(default_factory=list)
    data_instances: list[str] = field(default_factory=list)
    deployments: list[str] = field(default_factory=list)

    @property
    def noop(self) -> bool:
        return not (self.coordinators or self.data_instances or self.deployments)


class RollingUpdateOrchestrator:
    """Restarts every component that has to pick up a CA signed by a new key.

    Stages run strictly in order: coordinators (leader last), topology lookup,
    data instances one at a time, then dependent deployments concurrently.
    """

    def __init__(
        self,
        *,
        instances: InstanceGateway,
        deployments: DeploymentGateway,
        topology: TopologySource,
        leader_finder: LeaderFinder,
        cluster_label: str,
        operation_timeout_ms: int,
        backoff: BackOff,
        dependent_deployments: Sequence[str] = (),
        roll_dependents_on_clients_ca_key: bool = False,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._instances = instances
        self._deployments = deployments
        self._topology = topology
        self._leader_finder = leader_finder
        self._cluster_label = cluster_label
        self._operation_timeout_ms = operation_timeout_ms
        self._backoff = backoff
        self._dependent_deployments = list(dependent_deployments)
        self._roll_dependents_on_clients_ca_key = roll_dependents_on_clients_ca_key
        self._sleep = sleep

    async def roll_for_new_ca_keys(
        self,
        *,
        namespace: str,
        cluster: str,
        trigger: RollingUpdateTrigger,
        identity_snapshot: Optional[SecretRecord] = None,
    ) -> RollingUpdateResult:
        result = RollingUpdateResult()
        logger = _logger.for_cluster(namespace, cluster)
        if trigger.resuming:
            return await self._resume(namespace, cluster, trigger, logger)
        if not trigger.fired:
            return result

        reasons = RollingUpdateReasons(trigger.reasons)
        async with logger.operation(
            "rolling.ca_key",
            "Rolling cluster to trust new CA key",
            reasons=str(reasons),
            identity_snapshot=identity_snapshot.name if identity_snapshot is not None else "",
        ) as op:
            if trigger.cluster_key_replaced:
                result.coordinators = await self._roll_coordinators(namespace, cluster, reasons, logger)
                op.step("coordinators", "Rolled coordinator instances", count=len(result.coordinators))

            names = await self._topology.data_instance_names(namespace, cluster)
            op.step("topology", "Resolved data instance topology", count=len(names))
            for name in names:
                await self._roll_instance(namespace, name, ROLE_DATA, reasons, logger)
                result.data_instances.append(name)
            op.step("data", "Rolled data instances", count=len(result.data_instances))

            if trigger.cluster_key_replaced or (
                trigger.clients_key_replaced and self._roll_dependents_on_clients_ca_key
            ):
                result.deployments = await self._roll_dependents(namespace, cluster, reasons, logger)
                op.step("dependents", "Rolled dependent deployments", count=len(result.deployments))
        return result

    async def _resume(
        self,
        namespace: str,
        cluster: str,
        trigger: RollingUpdateTrigger,
        logger: BoundLogger,
    ) -> RollingUpdateResult:
        """Restart data instances an interrupted roll left on the old trust material.

        Coordinators are not revisited because they do not report an adopted
        generation. Dependents are rolled again only when a data instance was.
        """
        result = RollingUpdateResult()
        names = await self._topology.data_instance_names(namespace, cluster)
        if not names:
            return result
        listed = await self._instances.list_instances(namespace, {self._cluster_label: cluster})
        by_name = {item.name: item for item in listed}
        lagging = [
            name
            for name in names
            if name in by_name and any(pending.lagging(by_name[name]) for pending in trigger.pending)
        ]
        if not lagging:
            return result

        reasons = RollingUpdateReasons(
            f"resume roll to trust {pending.scope} CA generation {pending.generation}"
            for pending in trigger.pending
        )
        async with logger.operation(
            "rolling.resume",
            "Resuming interrupted CA key roll",
            reasons=str(reasons),
            lagging=",".join(lagging),
        ) as op:
            for name in lagging:
                await self._roll_instance(namespace, name, ROLE_DATA, reasons, logger)
                result.data_instances.append(name)
            op.step("data", "Rolled lagging data instances", count=len(result.data_instances))

            if any(pending.internal for pending in trigger.pending) or self._roll_dependents_on_clients_ca_key:
                result.deployments = await self._roll_dependents(namespace, cluster, reasons, logger)
                op.step("dependents", "Rolled dependent deployments", count=len(result.deployments))
        return result

    async def _roll_coordinators(
        self,
        namespace: str,
        cluster: str,
        reasons: RollingUpdateReasons,
        logger: BoundLogger,
    ) -> list[str]:
        listed = await self._instances.list_instances(namespace, {self._cluster_label: cluster})
        coordinators = [item for item in listed if item.has_role(ROLE_COORDINATOR)]
        refs = node_refs(coordinators)
        if not refs:
            return []
        by_name = {item.name: item for item in coordinators}
        ordered_instances = [by_name[ref.name] for ref in refs]
        leader = await self._leader_finder.find_leader(namespace, cluster, ordered_instances)
        order = [ref.name for index, ref in enumerate(refs) if index != leader]
        if leader != UNKNOWN_LEADER and 0 <= leader < len(refs):
            order.append(refs[leader].name)
            logger.debug("rolling.leader", "Leader is rolled last", leader=refs[leader].name)
        else:
            logger.warning("rolling.leader_unknown", "Coordinator leader unknown; rolling in name order")
        for name in order:
            await self._roll_instance(namespace, name, ROLE_COORDINATOR, reasons, logger)
        return order

    async def _roll_instance(
        self,
        namespace: str,
        name: str,
        role: str,
        reasons: RollingUpdateReasons,
        logger: BoundLogger,
    ) -> None:
        logger = logger.for_instance(name, role)
        logger.debug("rolling.instance", "Rolling instance", reasons=str(reasons))
        try:
            await self._instances.restart_instance(namespace, name)
            await self.await_healthy(namespace, name)
        except Exception:
            record_restart(role=role, ok=False)
            raise
        record_restart(role=role, ok=True)
        logger.info("rolling.instance.ready", "Instance restarted and healthy")

    async def await_healthy(self, namespace: str, name: str) -> None:
        timeout_seconds = self._operation_timeout_ms / 1000
        try:
            healthy = await asyncio.wait_for(self._poll_ready(namespace, name), timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise HealthTimeoutError(
                "rolling.health_gate",
                f"instance {name} not ready within {self._operation_timeout_ms}ms",
                instance=name,
            ) from exc
        if not healthy:
            raise HealthTimeoutError(
                "rolling.health_gate",
                f"instance {name} not ready after {self._backoff.max_attempts} attempts",
                instance=name,
            )

    async def _poll_ready(self, namespace: str, name: str) -> bool:
        for delay_ms in self._backoff.delays_ms():
            if await self._instances.is_ready(namespace, name):
                return True
            await self._sleep(delay_ms / 1000)
        return await self._instances.is_ready(namespace, name)

    async def _roll_dependents(
        self,
        namespace: str,
        cluster: str,
        reasons: RollingUpdateReasons,
        logger: BoundLogger,
    ) -> list[str]:
        names = [f"{cluster}-{item}" for item in self._dependent_deployments]
        results = await asyncio.gather(
            *(self._roll_dependent_if_exists(namespace, name, reasons, logger) for name in names),
            return_exceptions=True,
        )
        failures: dict[str, BaseException] = {}
        rolled: list[str] = []
        for name, outcome in zip(names, results):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                failures[name] = outcome
                record_dependent_rollout(ok=False)
            elif outcome:
                rolled.append(name)
                record_dependent_rollout(ok=True)
        if failures:
            raise PartialRolloutError("rolling.dependents", failures)
        return rolled

    async def _roll_dependent_if_exists(
        self,
        namespace: str,
        name: str,
        reasons: RollingUpdateReasons,
        logger: BoundLogger,
    ) -> bool:
        if not await self._deployments.exists(namespace, name):
            return False
        logger.info("rolling.deployment", "Rolling deployment", deployment=name, reasons=str(reasons))
        await self._deployments.rolling_update(namespace, name, self._operation_timeout_ms)
        return True


def trigger_from(
    *,
    cluster_key_replaced: bool,
    clients_key_replaced: bool,
    reasons: Mapping[str, Sequence[str]] | Sequence[str],
    pending: Sequence[PendingAdoption] = (),
) -> RollingUpdateTrigger:
    collected = RollingUpdateReasons()
    items = reasons.values() if isinstance(reasons, Mapping) else [reasons]
    for group in items:
        for reason in group:
            collected.add(reason)
    return RollingUpdateTrigger(
        cluster_key_replaced=cluster_key_replaced,
        clients_key_replaced=clients_key_replaced,
        reasons=tuple(collected),
        pending=tuple(pending),
    )
