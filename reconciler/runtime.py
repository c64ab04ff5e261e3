from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from time import perf_counter
from typing import Optional

from reconciler.config import Settings
from reconciler.logger import get_logger
from reconciler.metrics import record_cycle
from reconciler.services.assembly import ClusterReconciler, CycleResult
from reconciler.services.ca import CaAnnotations
from reconciler.services.gateways import ResourceStore
from reconciler.services.instances import (
    AnnotationLeaderFinder,
    LXDDeploymentGateway,
    LXDInstanceGateway,
    LXDTopologySource,
)
from reconciler.services.store import EtcdResourceStore, EtcdSecretGateway

_logger = get_logger("runtime")

ClusterKey = tuple[str, str]


class ReconcileLoop:
    """Periodically reconciles every stored cluster; one cycle per cluster at a time."""

    def __init__(
        self,
        settings: Settings,
        *,
        reconciler: ClusterReconciler,
        resources: ResourceStore,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._settings = settings
        self._reconciler = reconciler
        self._resources = resources
        self._executor = executor
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._triggered: set[asyncio.Task[Optional[CycleResult]]] = set()
        self._locks: dict[ClusterKey, asyncio.Lock] = {}
        self._results: dict[ClusterKey, CycleResult] = {}

    @property
    def resources(self) -> ResourceStore:
        return self._resources

    def last_result(self, namespace: str, name: str) -> Optional[CycleResult]:
        return self._results.get((namespace, name))

    def in_flight(self, namespace: str, name: str) -> bool:
        lock = self._locks.get((namespace, name))
        return lock is not None and lock.locked()

    async def start(self) -> None:
        self._stop.clear()
        self._tasks.append(asyncio.create_task(self._periodic_loop()))
        _logger.info(
            "runtime.start",
            "Started reconcile loop",
            interval_seconds=self._settings.reconcile_interval_seconds,
            workers=self._settings.worker_pool_size,
        )

    async def stop(self) -> None:
        self._stop.set()
        pending = [*self._tasks, *self._triggered]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._triggered.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        _logger.info("runtime.stop", "Stopped reconcile loop")

    async def reconcile(self, namespace: str, name: str) -> Optional[CycleResult]:
        key = (namespace, name)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            started = perf_counter()
            try:
                with _logger.cycle(namespace, name):
                    result = await self._reconciler.reconcile(namespace, name)
            except Exception as exc:
                record_cycle(ok=False, reason=type(exc).__name__, duration_seconds=perf_counter() - started)
                raise
            duration = perf_counter() - started
            if result is None:
                self._results.pop(key, None)
                return None
            reason = "" if result.ok else type(result.error).__name__
            record_cycle(ok=result.ok, reason=reason, duration_seconds=duration)
            self._results[key] = result
            return result

    def trigger(self, namespace: str, name: str) -> asyncio.Task[Optional[CycleResult]]:
        """Schedule a cycle now; it queues behind any cycle already running for the cluster."""
        task = asyncio.create_task(self.reconcile(namespace, name))
        self._triggered.add(task)
        task.add_done_callback(self._trigger_done)
        return task

    def _trigger_done(self, task: asyncio.Task[Optional[CycleResult]]) -> None:
        self._triggered.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.error(
                "runtime.trigger.error",
                "Triggered reconcile failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def reconcile_all(self) -> list[CycleResult]:
        resources = await self._resources.list()
        outcomes = await asyncio.gather(
            *(self.reconcile(item.namespace, item.name) for item in resources),
            return_exceptions=True,
        )
        results: list[CycleResult] = []
        for resource, outcome in zip(resources, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                _logger.for_cluster(resource.namespace, resource.name).error(
                    "runtime.cycle.error",
                    "Reconcile cycle failed before status could be published",
                    error_type=type(outcome).__name__,
                    error=str(outcome),
                )
            elif outcome is not None:
                results.append(outcome)
        return results

    async def _periodic_loop(self) -> None:
        interval = self._settings.reconcile_interval_seconds
        while not self._stop.is_set():
            try:
                results = await self.reconcile_all()
                _logger.debug(
                    "runtime.tick",
                    "Reconciled clusters",
                    clusters=len(results),
                    failed=sum(1 for item in results if not item.ok),
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                _logger.exception(
                    "runtime.tick.error",
                    "Reconcile tick failed",
                    error_type=type(exc).__name__,
                )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue


def build_loop(settings: Settings) -> ReconcileLoop:
    """Wire the etcd and LXD adapters into a reconcile loop."""
    executor = ThreadPoolExecutor(
        max_workers=settings.worker_pool_size,
        thread_name_prefix="reconciler-worker",
    )
    annotations = CaAnnotations(settings.annotation_prefix)
    secrets = EtcdSecretGateway()
    resources = EtcdResourceStore()
    instances = LXDInstanceGateway()
    reconciler = ClusterReconciler.from_settings(
        settings,
        secrets=secrets,
        resources=resources,
        instances=instances,
        deployments=LXDDeploymentGateway(annotation_prefix=settings.annotation_prefix),
        topology=LXDTopologySource(instances=instances, cluster_label=annotations.cluster_label),
        leader_finder=AnnotationLeaderFinder(annotation_prefix=settings.annotation_prefix),
        executor=executor,
    )
    return ReconcileLoop(settings, reconciler=reconciler, resources=resources, executor=executor)
