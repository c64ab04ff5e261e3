from __future__ import annotations

from fastapi import HTTPException, Request

from reconciler.runtime import ReconcileLoop


def get_reconcile_loop(request: Request) -> ReconcileLoop:
    loop = getattr(request.app.state, "reconcile_loop", None)
    if loop is None:
        raise HTTPException(status_code=503, detail="Reconcile loop is not running")
    return loop
