from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from reconciler.dependencies import get_reconcile_loop
from reconciler.errors import GatewayError
from reconciler.logger import get_logger
from reconciler.runtime import ReconcileLoop
from reconciler.schemas.cluster import ClusterApply, ClusterResource, ClusterStatusOut, ReconcileOut

router = APIRouter(prefix="/clusters", tags=["clusters"])
_logger = get_logger("api.clusters")


def _raise_gateway_http_error(exc: GatewayError) -> None:
    _logger.warning(
        "cluster.gateway_error",
        "Cluster request failed due to substrate error",
        action=exc.action,
        detail=exc.detail,
    )
    raise HTTPException(
        status_code=503,
        detail=f"Substrate operation failed ({exc.action}): {exc.detail}",
    ) from exc


@router.get("", response_model=List[ClusterStatusOut])
async def list_clusters(
    loop: ReconcileLoop = Depends(get_reconcile_loop),
) -> List[ClusterStatusOut]:
    try:
        resources = await loop.resources.list()
    except GatewayError as exc:
        _raise_gateway_http_error(exc)
    return [
        ClusterStatusOut(namespace=item.namespace, name=item.name, status=item.status)
        for item in resources
    ]


@router.get("/{namespace}/{name}", response_model=ClusterStatusOut)
async def get_cluster(
    namespace: str,
    name: str,
    loop: ReconcileLoop = Depends(get_reconcile_loop),
) -> ClusterStatusOut:
    try:
        resource = await loop.resources.get(namespace, name)
    except GatewayError as exc:
        _raise_gateway_http_error(exc)
    if resource is None:
        raise HTTPException(status_code=404, detail="Cluster not found")
    return ClusterStatusOut(namespace=resource.namespace, name=resource.name, status=resource.status)


@router.put("/{namespace}/{name}", response_model=ClusterStatusOut, status_code=status.HTTP_202_ACCEPTED)
async def apply_cluster(
    namespace: str,
    name: str,
    payload: ClusterApply,
    loop: ReconcileLoop = Depends(get_reconcile_loop),
) -> ClusterStatusOut:
    resource = ClusterResource(
        namespace=namespace,
        name=name,
        uid=payload.uid,
        annotations=payload.annotations,
        labels=payload.labels,
        spec=payload.spec,
    )
    try:
        stored = await loop.resources.put(resource)
    except GatewayError as exc:
        _raise_gateway_http_error(exc)
    _logger.info("cluster.apply", "Stored cluster resource", namespace=namespace, name=name)
    loop.trigger(namespace, name)
    return ClusterStatusOut(namespace=stored.namespace, name=stored.name, status=stored.status)


@router.post("/{namespace}/{name}/reconcile", response_model=ReconcileOut)
async def reconcile_cluster(
    namespace: str,
    name: str,
    loop: ReconcileLoop = Depends(get_reconcile_loop),
) -> ReconcileOut:
    try:
        result = await loop.reconcile(namespace, name)
    except GatewayError as exc:
        _raise_gateway_http_error(exc)
    if result is None:
        raise HTTPException(status_code=404, detail="Cluster not found")
    return ReconcileOut(
        namespace=namespace,
        name=name,
        ok=result.ok,
        error=str(result.error) if result.error is not None else None,
        status=result.status,
    )
