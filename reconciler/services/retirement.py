from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from reconciler.logger import get_logger
from reconciler.schemas.substrate import ROLE_DATA, InstanceRecord
from reconciler.services.ca import CaAnnotations, CertificateAuthority, persist_certificate_authority
from reconciler.services.gateways import InstanceGateway, SecretGateway
from reconciler.utils import int_annotation

_logger = get_logger("services.retirement")


@dataclass(frozen=True)
class SweepOutcome:
    scope: str
    retired: bool
    lagging: tuple[str, ...] = ()


def lagging_instances(
    instances: Iterable[InstanceRecord],
    annotation: str,
    generation: int,
) -> list[str]:
    """Names of instances that have not reported adopting ``generation``."""
    lagging: list[str] = []
    for instance in instances:
        adopted = int_annotation(instance.annotations, annotation)
        if adopted is None or adopted < generation:
            lagging.append(instance.name)
    return lagging


class RetirementSweep:
    """Drops superseded CA certificates once every data instance trusts the current one."""

    def __init__(
        self,
        *,
        instances: InstanceGateway,
        secrets: SecretGateway,
        annotations: CaAnnotations,
    ) -> None:
        self._instances = instances
        self._secrets = secrets
        self._annotations = annotations

    async def sweep(
        self,
        cas: Sequence[CertificateAuthority],
    ) -> tuple[list[CertificateAuthority], list[SweepOutcome]]:
        if not cas:
            return [], []
        namespace, cluster = cas[0].namespace, cas[0].cluster
        listed = await self._instances.list_instances(namespace, {self._annotations.cluster_label: cluster})
        data_instances = [item for item in listed if item.has_role(ROLE_DATA)]

        updated: list[CertificateAuthority] = []
        outcomes: list[SweepOutcome] = []
        for ca in cas:
            swept, outcome = await self._sweep_one(ca, data_instances)
            updated.append(swept)
            outcomes.append(outcome)
        return updated, outcomes

    async def _sweep_one(
        self,
        ca: CertificateAuthority,
        data_instances: Sequence[InstanceRecord],
    ) -> tuple[CertificateAuthority, SweepOutcome]:
        logger = _logger.for_cluster(ca.namespace, ca.cluster).for_ca(ca.scope.value, ca.generation)
        scope = ca.scope.value
        if not data_instances:
            logger.debug("retirement.skip", "No data instances yet")
            return ca, SweepOutcome(scope=scope, retired=False)

        lagging = lagging_instances(
            data_instances,
            self._annotations.adopted_generation(ca.scope),
            ca.generation,
        )
        if lagging:
            logger.info(
                "retirement.lagging",
                "Instances still trust an older CA generation",
                lagging=",".join(lagging),
            )
            return ca, SweepOutcome(scope=scope, retired=False, lagging=tuple(lagging))

        swept = ca.without_old_certificates()
        if not swept.certs_removed or not swept.generated:
            return ca, SweepOutcome(scope=scope, retired=False)

        await persist_certificate_authority(self._secrets, swept)
        logger.info(
            "retirement.removed",
            "Removed superseded CA certificates",
        )
        return swept, SweepOutcome(scope=scope, retired=True)
