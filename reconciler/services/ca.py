from __future__ import annotations

import asyncio
import re
from concurrent.futures import Executor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional

from reconciler import identity
from reconciler.errors import ConfigurationError
from reconciler.logger import get_logger
from reconciler.metrics import record_ca_action
from reconciler.schemas.cluster import CertificateAuthoritySpec, ClusterResource, ExpirationPolicy
from reconciler.schemas.substrate import OwnerReference, SecretRecord
from reconciler.services.gateways import SecretGateway
from reconciler.services.maintenance import within_maintenance_windows
from reconciler.utils import int_annotation, run_blocking, utcnow

_logger = get_logger("services.ca")

CA_CRT = "ca.crt"
CA_KEY = "ca.key"
_RETAINED_CERT_RE = re.compile(r"^ca-(\d+)\.crt$")


class TrustScope(str, Enum):
    CLUSTER = "cluster"
    CLIENTS = "clients"


class CaAction(str, Enum):
    NONE = "none"
    BOOTSTRAP = "bootstrap"
    RENEW_CERTIFICATE = "renew-certificate"
    REPLACE_KEY = "replace-key"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class CaAnnotations:
    prefix: str

    @property
    def cert_generation(self) -> str:
        return f"{self.prefix}/ca-cert-generation"

    @property
    def key_generation(self) -> str:
        return f"{self.prefix}/ca-key-generation"

    @property
    def force_renew(self) -> str:
        return f"{self.prefix}/force-renew"

    @property
    def force_replace(self) -> str:
        return f"{self.prefix}/force-replace"

    @property
    def cluster_label(self) -> str:
        return f"{self.prefix}/cluster"

    @property
    def component_label(self) -> str:
        return f"{self.prefix}/component"

    def adopted_generation(self, scope: TrustScope) -> str:
        """Instance annotation through which operands report the generation they trust."""
        if scope is TrustScope.CLUSTER:
            return f"{self.prefix}/ca-cert-generation"
        return f"{self.prefix}/clients-ca-cert-generation"


def cert_secret_name(cluster: str, scope: TrustScope) -> str:
    return f"{cluster}-{scope.value}-ca-cert"


def key_secret_name(cluster: str, scope: TrustScope) -> str:
    return f"{cluster}-{scope.value}-ca"


@dataclass(frozen=True)
class CertificateAuthority:
    scope: TrustScope
    namespace: str
    cluster: str
    policy: CertificateAuthoritySpec
    cert_pem: str
    key_pem: str
    generation: int
    key_generation: int
    action: CaAction
    key_replaced: bool
    cert_secret: SecretRecord
    key_secret: SecretRecord
    retained: Mapping[int, str] = field(default_factory=dict)
    certs_removed: bool = False

    @property
    def generated(self) -> bool:
        return self.policy.generate_certificate_authority

    @property
    def label(self) -> str:
        return f"{self.scope.value} CA"

    def reasons(self) -> list[str]:
        if not self.key_replaced:
            return []
        return [f"trust new {self.scope.value} CA certificate signed by new key"]

    def trust_bundle(self) -> list[str]:
        """Current certificate first, then every retained generation newest first."""
        return [self.cert_pem, *(self.retained[gen] for gen in sorted(self.retained, reverse=True))]

    def days_to_expiry(self, now: Optional[datetime] = None) -> int:
        return identity.certificate_window(self.cert_pem).days_to_expiry(now)

    def without_old_certificates(self) -> "CertificateAuthority":
        stale = [gen for gen in self.retained if gen < self.generation]
        if not stale:
            return self
        kept = {gen: pem for gen, pem in self.retained.items() if gen >= self.generation}
        data = {CA_CRT: self.cert_pem, **{f"ca-{gen}.crt": pem for gen, pem in kept.items()}}
        return replace(
            self,
            retained=kept,
            cert_secret=self.cert_secret.model_copy(update={"data": data}),
            certs_removed=True,
        )


def _retained_certificates(secret: Optional[SecretRecord]) -> Dict[int, str]:
    if secret is None:
        return {}
    retained: Dict[int, str] = {}
    for key, value in secret.data.items():
        match = _RETAINED_CERT_RE.match(key)
        if match and value:
            retained[int(match.group(1))] = value
    return retained


def _drop_expired(retained: Mapping[int, str], now: datetime) -> Dict[int, str]:
    return {
        gen: pem
        for gen, pem in retained.items()
        if not identity.certificate_window(pem).expired(now)
    }


def _published_generations(resource: ClusterResource, scope: TrustScope) -> tuple[Optional[int], Optional[int]]:
    status = resource.status
    if status is None:
        return None, None
    if scope is TrustScope.CLUSTER:
        return status.cluster_ca_generation, status.cluster_ca_key_generation
    return status.clients_ca_generation, status.clients_ca_key_generation


def _highest(*generations: Optional[int]) -> Optional[int]:
    seen = [gen for gen in generations if gen is not None]
    return max(seen) if seen else None


def _after(generation: Optional[int]) -> int:
    return 0 if generation is None else generation + 1


class CaLifecycleManager:
    """Decides bootstrap, renewal or key replacement for one certificate authority.

    The decision and the key/cert generation are CPU bound; callers run
    :meth:`reconcile` on the worker pool.
    """

    def __init__(self, *, annotation_prefix: str) -> None:
        self._annotations = CaAnnotations(annotation_prefix)

    @property
    def annotations(self) -> CaAnnotations:
        return self._annotations

    def reconcile(
        self,
        *,
        resource: ClusterResource,
        scope: TrustScope,
        policy: CertificateAuthoritySpec,
        cert_secret: Optional[SecretRecord],
        key_secret: Optional[SecretRecord],
        maintenance_allowed: bool,
        now: Optional[datetime] = None,
    ) -> CertificateAuthority:
        current = now or utcnow()
        cert_pem = cert_secret.data.get(CA_CRT, "") if cert_secret is not None else ""
        key_pem = key_secret.data.get(CA_KEY, "") if key_secret is not None else ""
        description = f"{scope.value.capitalize()} CA"

        if not policy.generate_certificate_authority:
            if not cert_pem or not key_pem:
                raise ConfigurationError(
                    "ca.reconcile",
                    f"{description} should not be generated, but the secrets were not found.",
                )
            return self._external(resource, scope, policy, cert_secret, key_secret)

        known_generation = self._known_generation(cert_secret)
        known_key_generation = self._known_key_generation(key_secret)
        published, published_key = _published_generations(resource, scope)
        # Every generation ever observed, including ones whose secret has since been lost.
        highest = _highest(
            int_annotation(cert_secret.annotations, self._annotations.cert_generation) if cert_secret else None,
            int_annotation(key_secret.annotations, self._annotations.key_generation) if key_secret else None,
            published,
        )
        highest_key = _highest(
            int_annotation(key_secret.annotations, self._annotations.key_generation) if key_secret else None,
            published_key,
        )
        retained = _retained_certificates(cert_secret)

        if not cert_pem and not key_pem:
            action = CaAction.BOOTSTRAP
        elif not cert_pem or not key_pem:
            # Half of the pair is gone; the survivor cannot be trusted to match anything.
            action = CaAction.REPLACE_KEY
        else:
            action = self._renewal_action(
                policy=policy,
                cert_secret=cert_secret,
                cert_pem=cert_pem,
                maintenance_allowed=maintenance_allowed,
                now=current,
            )

        cn = f"{resource.name}-{scope.value}-ca"
        if action is CaAction.BOOTSTRAP:
            key_pem, cert_pem = identity.generate_root(
                common_name=cn, validity_days=policy.validity_days, now=current
            )
            generation = _after(highest)
            key_generation = _after(highest_key)
            retained = {}
        elif action is CaAction.REPLACE_KEY:
            if cert_pem:
                retained[known_generation] = cert_pem
            key_pem, cert_pem = identity.generate_root(
                common_name=cn, validity_days=policy.validity_days, now=current
            )
            generation = (highest or 0) + 1
            key_generation = (highest_key or 0) + 1
        elif action is CaAction.RENEW_CERTIFICATE:
            cert_pem = identity.renew_root(
                key_pem=key_pem,
                previous_cert_pem=cert_pem,
                validity_days=policy.validity_days,
                now=current,
            )
            generation = (highest or 0) + 1
            key_generation = known_key_generation
        else:
            generation = known_generation
            key_generation = known_key_generation

        retained = _drop_expired(retained, current)
        if action is not CaAction.NONE:
            record_ca_action(scope=scope.value, action=action.value)

        key_replaced = action in {CaAction.BOOTSTRAP, CaAction.REPLACE_KEY}
        owner = self._owner_reference(resource, policy)
        return CertificateAuthority(
            scope=scope,
            namespace=resource.namespace,
            cluster=resource.name,
            policy=policy,
            cert_pem=cert_pem,
            key_pem=key_pem,
            generation=generation,
            key_generation=key_generation,
            action=action,
            key_replaced=key_replaced,
            retained=retained,
            cert_secret=self._build_cert_secret(
                resource, scope, cert_pem, generation, retained, cert_secret, owner
            ),
            key_secret=self._build_key_secret(resource, scope, key_pem, key_generation, owner),
        )

    def _renewal_action(
        self,
        *,
        policy: CertificateAuthoritySpec,
        cert_secret: Optional[SecretRecord],
        cert_pem: str,
        maintenance_allowed: bool,
        now: datetime,
    ) -> CaAction:
        annotations = cert_secret.annotations if cert_secret is not None else {}
        if annotations.get(self._annotations.force_replace) == "true":
            return CaAction.REPLACE_KEY
        if annotations.get(self._annotations.force_renew) == "true":
            return CaAction.RENEW_CERTIFICATE

        window = identity.certificate_window(cert_pem)
        if window.days_to_expiry(now) > policy.renewal_days:
            return CaAction.NONE
        if not maintenance_allowed:
            return CaAction.DEFERRED
        if policy.certificate_expiration_policy is ExpirationPolicy.REPLACE_KEY:
            return CaAction.REPLACE_KEY
        return CaAction.RENEW_CERTIFICATE

    def _external(
        self,
        resource: ClusterResource,
        scope: TrustScope,
        policy: CertificateAuthoritySpec,
        cert_secret: SecretRecord,
        key_secret: SecretRecord,
    ) -> CertificateAuthority:
        return CertificateAuthority(
            scope=scope,
            namespace=resource.namespace,
            cluster=resource.name,
            policy=policy,
            cert_pem=cert_secret.data[CA_CRT],
            key_pem=key_secret.data[CA_KEY],
            generation=self._known_generation(cert_secret),
            key_generation=self._known_key_generation(key_secret),
            action=CaAction.NONE,
            key_replaced=False,
            retained=_retained_certificates(cert_secret),
            cert_secret=cert_secret,
            key_secret=key_secret,
        )

    def _known_generation(self, secret: Optional[SecretRecord]) -> int:
        if secret is None:
            return 0
        return int_annotation(secret.annotations, self._annotations.cert_generation) or 0

    def _known_key_generation(self, secret: Optional[SecretRecord]) -> int:
        if secret is None:
            return 0
        return int_annotation(secret.annotations, self._annotations.key_generation) or 0

    def _labels(self, resource: ClusterResource, scope: TrustScope) -> Dict[str, str]:
        return {
            self._annotations.cluster_label: resource.name,
            self._annotations.component_label: f"{scope.value}-ca",
        }

    @staticmethod
    def _owner_reference(
        resource: ClusterResource,
        policy: CertificateAuthoritySpec,
    ) -> Optional[OwnerReference]:
        if not policy.generate_secret_owner_reference or not resource.uid:
            return None
        return OwnerReference(name=resource.name, uid=resource.uid)

    def _build_cert_secret(
        self,
        resource: ClusterResource,
        scope: TrustScope,
        cert_pem: str,
        generation: int,
        retained: Mapping[int, str],
        existing: Optional[SecretRecord],
        owner: Optional[OwnerReference],
    ) -> SecretRecord:
        annotations = dict(existing.annotations) if existing is not None else {}
        annotations.pop(self._annotations.force_renew, None)
        annotations.pop(self._annotations.force_replace, None)
        annotations[self._annotations.cert_generation] = str(generation)
        data = {CA_CRT: cert_pem, **{f"ca-{gen}.crt": pem for gen, pem in retained.items()}}
        return SecretRecord(
            namespace=resource.namespace,
            name=cert_secret_name(resource.name, scope),
            data=data,
            labels=self._labels(resource, scope),
            annotations=annotations,
            owner_reference=owner,
        )

    def _build_key_secret(
        self,
        resource: ClusterResource,
        scope: TrustScope,
        key_pem: str,
        key_generation: int,
        owner: Optional[OwnerReference],
    ) -> SecretRecord:
        return SecretRecord(
            namespace=resource.namespace,
            name=key_secret_name(resource.name, scope),
            data={CA_KEY: key_pem},
            labels=self._labels(resource, scope),
            annotations={self._annotations.key_generation: str(key_generation)},
            owner_reference=owner,
        )


async def persist_certificate_authority(gateway: SecretGateway, ca: CertificateAuthority) -> None:
    if not ca.generated:
        return
    await gateway.reconcile(ca.namespace, ca.cert_secret.name, ca.cert_secret)
    await gateway.reconcile(ca.namespace, ca.key_secret.name, ca.key_secret)


async def reconcile_certificate_authorities(
    *,
    manager: CaLifecycleManager,
    gateway: SecretGateway,
    executor: Optional[Executor],
    resource: ClusterResource,
    now: Optional[datetime] = None,
) -> tuple[CertificateAuthority, CertificateAuthority]:
    """Reconcile and persist the cluster and clients CAs of one resource."""
    logger = _logger.for_cluster(resource.namespace, resource.name)
    current = now or utcnow()
    async with logger.operation("ca.reconcile", "Reconciling certificate authorities") as op:
        secrets = await gateway.list(
            resource.namespace,
            {manager.annotations.cluster_label: resource.name},
        )
        by_name = {secret.name: secret for secret in secrets}
        op.step("secrets.list", "Listed cluster secrets", count=len(secrets))

        maintenance_allowed = within_maintenance_windows(resource.spec.maintenance_time_windows, current)

        def _decide(scope: TrustScope, policy: CertificateAuthoritySpec) -> CertificateAuthority:
            return manager.reconcile(
                resource=resource,
                scope=scope,
                policy=policy,
                cert_secret=by_name.get(cert_secret_name(resource.name, scope)),
                key_secret=by_name.get(key_secret_name(resource.name, scope)),
                maintenance_allowed=maintenance_allowed,
                now=current,
            )

        cluster_ca, clients_ca = await asyncio.gather(
            run_blocking(executor, _decide, TrustScope.CLUSTER, resource.spec.cluster_ca),
            run_blocking(executor, _decide, TrustScope.CLIENTS, resource.spec.clients_ca),
        )
        for ca in (cluster_ca, clients_ca):
            if ca.action is CaAction.DEFERRED:
                op.step_warning(
                    "ca.deferred",
                    "Renewal due but outside maintenance windows",
                    scope=ca.scope.value,
                    generation=ca.generation,
                )
            else:
                op.step(
                    "ca.decide",
                    "Resolved CA state",
                    scope=ca.scope.value,
                    action=ca.action.value,
                    generation=ca.generation,
                    key_replaced=ca.key_replaced,
                )

        await asyncio.gather(
            persist_certificate_authority(gateway, cluster_ca),
            persist_certificate_authority(gateway, clients_ca),
        )
        op.step("secrets.reconcile", "Persisted generated CA secrets")
        return cluster_ca, clients_ca
