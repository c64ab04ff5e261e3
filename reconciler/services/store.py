from __future__ import annotations

import json
from typing import Mapping, Optional

from pydantic import ValidationError

from reconciler.logger import get_logger
from reconciler.schemas.cluster import ClusterResource, ClusterStatus
from reconciler.schemas.substrate import SecretRecord
from reconciler.services import etcd
from reconciler.services.etcd import EtcdError

_logger = get_logger("services.store")


def _secret_key(namespace: str, name: str) -> str:
    return f"secrets/{namespace}/{name}"


def _cluster_key(namespace: str, name: str) -> str:
    return f"clusters/{namespace}/{name}"


def _dump(model: SecretRecord | ClusterResource) -> str:
    return json.dumps(model.model_dump(mode="json"), separators=(",", ":"), sort_keys=True)


def _labels_match(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    return all(labels.get(key) == value for key, value in selector.items())


class EtcdSecretGateway:
    """Secrets stored as JSON documents under ``secrets/<namespace>/<name>``."""

    async def get(self, namespace: str, name: str) -> Optional[SecretRecord]:
        raw = await etcd.get_value(key=_secret_key(namespace, name))
        if not raw:
            return None
        try:
            return SecretRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise EtcdError("secret.decode", f"{namespace}/{name}: {exc}") from exc

    async def list(self, namespace: str, labels: Mapping[str, str]) -> list[SecretRecord]:
        values = await etcd.get_prefix(key_prefix=f"secrets/{namespace}/")
        secrets: list[SecretRecord] = []
        for key, raw in sorted(values.items()):
            try:
                record = SecretRecord.model_validate_json(raw)
            except ValidationError:
                _logger.warning("secret.decode_failed", "Skipping unreadable secret", key=key)
                continue
            if _labels_match(record.labels, labels):
                secrets.append(record)
        return secrets

    async def reconcile(
        self,
        namespace: str,
        name: str,
        desired: Optional[SecretRecord],
    ) -> Optional[SecretRecord]:
        current = await self.get(namespace, name)
        if desired is None:
            if current is not None:
                await etcd.delete_key(key=_secret_key(namespace, name))
                _logger.info("secret.delete", "Deleted secret", namespace=namespace, name=name)
            return None
        if current is not None and current == desired:
            return current
        await etcd.put_value(key=_secret_key(namespace, name), value=_dump(desired))
        _logger.info(
            "secret.write",
            "Created secret" if current is None else "Updated secret",
            namespace=namespace,
            name=name,
        )
        return desired


class EtcdResourceStore:
    """Cluster resources stored as JSON documents under ``clusters/<namespace>/<name>``."""

    async def get(self, namespace: str, name: str) -> Optional[ClusterResource]:
        raw = await etcd.get_value(key=_cluster_key(namespace, name))
        if not raw:
            return None
        try:
            return ClusterResource.model_validate_json(raw)
        except ValidationError as exc:
            raise EtcdError("cluster.decode", f"{namespace}/{name}: {exc}") from exc

    async def list(self) -> list[ClusterResource]:
        values = await etcd.get_prefix(key_prefix="clusters/")
        resources: list[ClusterResource] = []
        for key, raw in sorted(values.items()):
            try:
                resources.append(ClusterResource.model_validate_json(raw))
            except ValidationError:
                _logger.warning("cluster.decode_failed", "Skipping unreadable cluster resource", key=key)
        return resources

    async def put(self, resource: ClusterResource) -> ClusterResource:
        """Store the declared resource, keeping the status the reconciler last published."""
        existing = await self.get(resource.namespace, resource.name)
        stored = resource
        if existing is not None:
            generation = existing.generation
            if existing.spec != resource.spec or existing.annotations != resource.annotations:
                generation += 1
            stored = resource.model_copy(
                update={"status": existing.status, "generation": generation, "uid": existing.uid or resource.uid}
            )
        await etcd.put_value(key=_cluster_key(stored.namespace, stored.name), value=_dump(stored))
        return stored

    async def update_status(self, namespace: str, name: str, status: ClusterStatus) -> None:
        resource = await self.get(namespace, name)
        if resource is None:
            raise EtcdError("cluster.status", f"cluster {namespace}/{name} not found")
        updated = resource.model_copy(update={"status": status})
        await etcd.put_value(key=_cluster_key(namespace, name), value=_dump(updated))
