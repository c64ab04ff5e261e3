from __future__ import annotations

from concurrent.futures import Executor
from datetime import datetime
from typing import Optional

from reconciler import identity
from reconciler.logger import get_logger
from reconciler.schemas.cluster import ClusterResource
from reconciler.schemas.substrate import OwnerReference, SecretRecord
from reconciler.services.ca import CaAnnotations, CertificateAuthority
from reconciler.services.gateways import SecretGateway
from reconciler.utils import int_annotation, run_blocking, utcnow

_logger = get_logger("services.operator_identity")

IDENTITY_CRT = "reconciler.crt"
IDENTITY_KEY = "reconciler.key"
IDENTITY_CA = "ca.crt"


def identity_secret_name(cluster: str) -> str:
    return f"{cluster}-reconciler-certs"


def _needs_reissue(
    existing: Optional[SecretRecord],
    cluster_ca: CertificateAuthority,
    annotations: CaAnnotations,
    *,
    renewal_days: int,
    maintenance_allowed: bool,
    now: datetime,
) -> Optional[str]:
    if existing is None or not existing.data.get(IDENTITY_CRT) or not existing.data.get(IDENTITY_KEY):
        return "missing"
    issued_generation = int_annotation(existing.annotations, annotations.cert_generation)
    if issued_generation != cluster_ca.generation:
        return "ca-generation-changed"
    if not identity.issued_by(existing.data[IDENTITY_CRT], cluster_ca.cert_pem):
        return "issuer-mismatch"
    window = identity.certificate_window(existing.data[IDENTITY_CRT])
    if window.expired(now):
        return "expired"
    if window.days_to_expiry(now) <= renewal_days and maintenance_allowed:
        return "expiring"
    return None


def build_identity_secret(
    *,
    resource: ClusterResource,
    cluster_ca: CertificateAuthority,
    annotations: CaAnnotations,
    validity_days: int,
    now: datetime,
) -> SecretRecord:
    key_pem, cert_pem = identity.sign_leaf(
        ca_key_pem=cluster_ca.key_pem,
        ca_cert_pem=cluster_ca.cert_pem,
        common_name="cluster-reconciler",
        validity_days=validity_days,
        now=now,
    )
    return SecretRecord(
        namespace=resource.namespace,
        name=identity_secret_name(resource.name),
        data={
            IDENTITY_CRT: cert_pem,
            IDENTITY_KEY: key_pem,
            IDENTITY_CA: "".join(cluster_ca.trust_bundle()),
        },
        labels={
            annotations.cluster_label: resource.name,
            annotations.component_label: "reconciler-identity",
        },
        annotations={annotations.cert_generation: str(cluster_ca.generation)},
        owner_reference=OwnerReference(name=resource.name, uid=resource.uid) if resource.uid else None,
    )


async def reconcile_operator_identity(
    *,
    gateway: SecretGateway,
    executor: Optional[Executor],
    resource: ClusterResource,
    cluster_ca: CertificateAuthority,
    annotations: CaAnnotations,
    validity_days: int,
    renewal_days: int,
    maintenance_allowed: bool,
    now: Optional[datetime] = None,
) -> tuple[Optional[SecretRecord], SecretRecord]:
    """Ensure the reconciler's own client certificate is signed by the current cluster CA.

    Returns ``(previous, current)``; rollers keep using ``previous`` to reach
    instances that still only trust the old CA.
    """
    current_time = now or utcnow()
    logger = _logger.for_cluster(resource.namespace, resource.name)
    previous = await gateway.get(resource.namespace, identity_secret_name(resource.name))
    reason = _needs_reissue(
        previous,
        cluster_ca,
        annotations,
        renewal_days=renewal_days,
        maintenance_allowed=maintenance_allowed,
        now=current_time,
    )
    if reason is None:
        # No reason to reissue means the stored identity exists and is complete.
        assert previous is not None
        logger.debug("identity.current", "Reconciler identity certificate is current")
        return previous, previous

    desired = await run_blocking(
        executor,
        build_identity_secret,
        resource=resource,
        cluster_ca=cluster_ca,
        annotations=annotations,
        validity_days=validity_days,
        now=current_time,
    )
    await gateway.reconcile(resource.namespace, desired.name, desired)
    logger.info(
        "identity.issue",
        "Issued reconciler identity certificate",
        reason=reason,
        ca_generation=cluster_ca.generation,
    )
    return previous, desired
