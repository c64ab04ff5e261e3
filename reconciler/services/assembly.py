from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from reconciler.config import Settings
from reconciler.errors import ReconcilerError
from reconciler.logger import get_logger
from reconciler.schemas.cluster import ClusterResource, ClusterStatus, StatusCondition
from reconciler.schemas.substrate import SecretRecord
from reconciler.services.ca import (
    CaLifecycleManager,
    CertificateAuthority,
    TrustScope,
    reconcile_certificate_authorities,
)
from reconciler.services.gateways import (
    DeploymentGateway,
    InstanceGateway,
    LeaderFinder,
    ResourceStore,
    SecretGateway,
    TopologySource,
)
from reconciler.services.maintenance import within_maintenance_windows
from reconciler.services.metadata_state import (
    WARNING_CONDITION,
    ConfigurationState,
    InstanceMetadataFacts,
    MetadataFactsProvider,
    MigrationIntent,
    MigrationPhase,
    configuration_state,
    initial_phase,
    intent_annotation,
    legacy_store_enabled,
    next_phase,
    parse_intent,
    parse_phase,
)
from reconciler.services.operator_identity import reconcile_operator_identity
from reconciler.services.retirement import RetirementSweep
from reconciler.services.rolling import (
    BackOff,
    PendingAdoption,
    RollingUpdateOrchestrator,
    RollingUpdateResult,
    trigger_from,
)
from reconciler.utils import utcnow

_logger = get_logger("services.assembly")

CONDITION_READY = "Ready"
CONDITION_NOT_READY = "NotReady"
CONDITION_WARNING = "Warning"


@dataclass(frozen=True)
class ReconciliationContext:
    """Everything one cycle has learned so far; each stage returns a new copy."""

    resource: ClusterResource
    now: datetime
    maintenance_allowed: bool = True
    cluster_ca: Optional[CertificateAuthority] = None
    clients_ca: Optional[CertificateAuthority] = None
    identity_snapshot: Optional[SecretRecord] = None
    identity: Optional[SecretRecord] = None
    rolling: Optional[RollingUpdateResult] = None
    intent: Optional[MigrationIntent] = None
    phase: Optional[MigrationPhase] = None
    configuration: Optional[ConfigurationState] = None
    warnings: tuple[StatusCondition, ...] = ()

    def with_warnings(self, *conditions: StatusCondition) -> "ReconciliationContext":
        return replace(self, warnings=self.warnings + tuple(conditions))


class OperandReconciler(Protocol):
    name: str

    async def reconcile(self, context: ReconciliationContext) -> ReconciliationContext: ...


class LegacyStoreReconciler(Protocol):
    async def reconcile(self, context: ReconciliationContext) -> ReconciliationContext: ...


@dataclass(frozen=True)
class CycleResult:
    context: ReconciliationContext
    status: ClusterStatus
    error: Optional[BaseException] = field(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None


def _warning(reason: str, message: str, now: datetime) -> StatusCondition:
    return StatusCondition(
        type=CONDITION_WARNING,
        status="True",
        reason=reason,
        message=message,
        last_transition_time=now,
    )


class ClusterReconciler:
    """Runs one full reconciliation cycle for a cluster and publishes its status."""

    def __init__(
        self,
        *,
        settings: Settings,
        secrets: SecretGateway,
        resources: ResourceStore,
        rolling: RollingUpdateOrchestrator,
        sweep: RetirementSweep,
        facts: MetadataFactsProvider,
        manager: CaLifecycleManager,
        executor: Optional[Executor] = None,
        legacy_store: Optional[LegacyStoreReconciler] = None,
        operands: Sequence[OperandReconciler] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._secrets = secrets
        self._resources = resources
        self._rolling = rolling
        self._sweep = sweep
        self._facts = facts
        self._executor = executor
        self._legacy_store = legacy_store
        self._operands = list(operands)
        self._clock = clock
        self._manager = manager

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        secrets: SecretGateway,
        resources: ResourceStore,
        instances: InstanceGateway,
        deployments: DeploymentGateway,
        topology: TopologySource,
        leader_finder: LeaderFinder,
        executor: Optional[Executor] = None,
        facts: Optional[MetadataFactsProvider] = None,
        legacy_store: Optional[LegacyStoreReconciler] = None,
        operands: Sequence[OperandReconciler] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> "ClusterReconciler":
        manager = CaLifecycleManager(annotation_prefix=settings.annotation_prefix)
        rolling = RollingUpdateOrchestrator(
            instances=instances,
            deployments=deployments,
            topology=topology,
            leader_finder=leader_finder,
            cluster_label=manager.annotations.cluster_label,
            operation_timeout_ms=settings.operation_timeout_ms,
            backoff=BackOff(
                base_ms=settings.roller_backoff_base_ms,
                factor=settings.roller_backoff_factor,
                max_attempts=settings.roller_backoff_max_attempts,
            ),
            dependent_deployments=settings.dependent_deployment_names(),
            roll_dependents_on_clients_ca_key=settings.roll_dependents_on_clients_ca_key,
        )
        sweep = RetirementSweep(instances=instances, secrets=secrets, annotations=manager.annotations)
        return cls(
            settings=settings,
            secrets=secrets,
            resources=resources,
            rolling=rolling,
            sweep=sweep,
            facts=facts
            or InstanceMetadataFacts(instances=instances, annotation_prefix=settings.annotation_prefix),
            manager=manager,
            executor=executor,
            legacy_store=legacy_store,
            operands=operands,
            clock=clock,
        )

    async def reconcile(self, namespace: str, name: str) -> Optional[CycleResult]:
        logger = _logger.for_cluster(namespace, name)
        resource = await self._resources.get(namespace, name)
        if resource is None:
            logger.info("cycle.skip", "Cluster resource no longer exists")
            return None

        now = self._clock()
        context = ReconciliationContext(resource=resource, now=now)
        error: Optional[BaseException] = None
        try:
            context = await self._run(context)
        except ReconcilerError as exc:
            error = exc
        except Exception as exc:
            logger.exception("cycle.unexpected", "Unexpected failure during reconciliation")
            error = exc

        status = self._status(context, error)
        await self._resources.update_status(namespace, name, status)
        ready = status.ready_condition()
        logger.info(
            "cycle.status",
            "Published cluster status",
            condition=ready.type if ready else "",
            reason=ready.reason if ready else "",
            metadata_state=status.metadata_state or "",
        )
        return CycleResult(context=context, status=status, error=error)

    async def _run(self, context: ReconciliationContext) -> ReconciliationContext:
        resource = context.resource
        logger = _logger.for_cluster(resource.namespace, resource.name)
        async with logger.operation("cycle", "Reconciling cluster", generation=resource.generation) as op:
            context = await self._reconcile_cas(context)
            op.step(
                "cas",
                "Certificate authorities reconciled",
                cluster_generation=context.cluster_ca.generation if context.cluster_ca else -1,
                clients_generation=context.clients_ca.generation if context.clients_ca else -1,
            )
            context = await self._reconcile_identity(context)
            op.step("identity", "Reconciler identity reconciled")
            context = await self._roll(context)
            op.step("rolling", "Rolling update finished", noop=context.rolling.noop if context.rolling else True)
            context = await self._retire(context)
            op.step("retirement", "Retirement sweep finished")
            context = await self._advance_metadata(context)
            op.step("metadata", "Metadata phase resolved", phase=context.phase.value if context.phase else "")
            if self._legacy_store is not None and context.phase is not None and legacy_store_enabled(context.phase):
                context = await self._legacy_store.reconcile(context)
                op.step("legacy_store", "Legacy metadata store reconciled")
            for operand in self._operands:
                context = await operand.reconcile(context)
                op.step_debug("operand", "Operand reconciled", operand=operand.name)
        return context

    async def _reconcile_cas(self, context: ReconciliationContext) -> ReconciliationContext:
        resource = context.resource
        cluster_ca, clients_ca = await reconcile_certificate_authorities(
            manager=self._manager,
            gateway=self._secrets,
            executor=self._executor,
            resource=resource,
            now=context.now,
        )
        context = replace(
            context,
            maintenance_allowed=within_maintenance_windows(resource.spec.maintenance_time_windows, context.now),
            cluster_ca=cluster_ca,
            clients_ca=clients_ca,
        )
        for ca in (cluster_ca, clients_ca):
            if ca.generated:
                continue
            days = ca.days_to_expiry(context.now)
            if days <= ca.policy.renewal_days:
                context = context.with_warnings(
                    _warning(
                        "CertificateExpiring",
                        f"The externally supplied {ca.label} certificate expires in {days} day(s).",
                        context.now,
                    )
                )
        return context

    async def _reconcile_identity(self, context: ReconciliationContext) -> ReconciliationContext:
        assert context.cluster_ca is not None
        previous, current = await reconcile_operator_identity(
            gateway=self._secrets,
            executor=self._executor,
            resource=context.resource,
            cluster_ca=context.cluster_ca,
            annotations=self._manager.annotations,
            validity_days=self._settings.operator_cert_validity_days,
            renewal_days=self._settings.operator_cert_renewal_days,
            maintenance_allowed=context.maintenance_allowed,
            now=context.now,
        )
        return replace(context, identity_snapshot=previous, identity=current)

    async def _roll(self, context: ReconciliationContext) -> ReconciliationContext:
        assert context.cluster_ca is not None and context.clients_ca is not None
        trigger = trigger_from(
            cluster_key_replaced=context.cluster_ca.key_replaced,
            clients_key_replaced=context.clients_ca.key_replaced,
            reasons={
                "cluster": context.cluster_ca.reasons(),
                "clients": context.clients_ca.reasons(),
            },
            pending=[
                PendingAdoption(
                    scope=ca.scope.value,
                    annotation=self._manager.annotations.adopted_generation(ca.scope),
                    generation=ca.generation,
                    internal=ca.scope is TrustScope.CLUSTER,
                )
                for ca in (context.cluster_ca, context.clients_ca)
                if ca.generated and ca.retained and not ca.key_replaced
            ],
        )
        result = await self._rolling.roll_for_new_ca_keys(
            namespace=context.resource.namespace,
            cluster=context.resource.name,
            trigger=trigger,
            identity_snapshot=context.identity_snapshot,
        )
        return replace(context, rolling=result)

    async def _retire(self, context: ReconciliationContext) -> ReconciliationContext:
        assert context.cluster_ca is not None and context.clients_ca is not None
        (cluster_ca, clients_ca), _ = await self._sweep.sweep([context.cluster_ca, context.clients_ca])
        return replace(context, cluster_ca=cluster_ca, clients_ca=clients_ca)

    async def _advance_metadata(self, context: ReconciliationContext) -> ReconciliationContext:
        resource = context.resource
        intent = parse_intent(resource.annotations.get(intent_annotation(self._settings.annotation_prefix)))
        stored = parse_phase(resource.status.metadata_state) if resource.status is not None else None
        phase = stored or initial_phase(intent)
        facts = await self._facts.facts(resource)
        transition = next_phase(phase, intent, facts)
        if transition.phase is not phase:
            _logger.for_cluster(resource.namespace, resource.name).info(
                "metadata.transition",
                "Metadata migration phase changed",
                previous=phase.value,
                phase=transition.phase.value,
            )
        context = context.with_warnings(
            *(_warning(WARNING_CONDITION, message, context.now) for message in transition.warnings)
        )
        return replace(
            context,
            intent=intent,
            phase=transition.phase,
            configuration=configuration_state(transition.phase, intent),
        )

    def _status(self, context: ReconciliationContext, error: Optional[BaseException]) -> ClusterStatus:
        resource = context.resource
        previous = resource.status or ClusterStatus()
        if error is None:
            ready = StatusCondition(
                type=CONDITION_READY,
                status="True",
                last_transition_time=context.now,
            )
        else:
            ready = StatusCondition(
                type=CONDITION_NOT_READY,
                status="True",
                reason=type(error).__name__,
                message=str(error),
                last_transition_time=context.now,
            )
        return ClusterStatus(
            observed_generation=resource.generation,
            conditions=[ready, *context.warnings],
            metadata_state=context.phase.value if context.phase is not None else previous.metadata_state,
            cluster_ca_generation=(
                context.cluster_ca.generation if context.cluster_ca is not None else previous.cluster_ca_generation
            ),
            clients_ca_generation=(
                context.clients_ca.generation if context.clients_ca is not None else previous.clients_ca_generation
            ),
            cluster_ca_key_generation=(
                context.cluster_ca.key_generation
                if context.cluster_ca is not None
                else previous.cluster_ca_key_generation
            ),
            clients_ca_key_generation=(
                context.clients_ca.key_generation
                if context.clients_ca is not None
                else previous.clients_ca_key_generation
            ),
        )
