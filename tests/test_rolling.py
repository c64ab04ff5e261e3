from __future__ import annotations

import asyncio

import pytest
from conftest import CLUSTER, NAMESPACE, PREFIX, FakeTopology

from reconciler.errors import GatewayError, HealthTimeoutError, PartialRolloutError
from reconciler.schemas.substrate import ROLE_COORDINATOR, ROLE_DATA, InstanceRecord
from reconciler.services.gateways import UNKNOWN_LEADER
from reconciler.services.rolling import (
    BackOff,
    PendingAdoption,
    RollingUpdateOrchestrator,
    RollingUpdateReasons,
    node_refs,
    trigger_from,
)

CLUSTER_KEY = trigger_from(
    cluster_key_replaced=True,
    clients_key_replaced=False,
    reasons=["trust new cluster CA certificate signed by new key"],
)
CLIENTS_KEY = trigger_from(
    cluster_key_replaced=False,
    clients_key_replaced=True,
    reasons=["trust new clients CA certificate signed by new key"],
)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def build(substrate, sleeps):
    def _build(**overrides):
        options = dict(
            instances=substrate.instances,
            deployments=substrate.deployments,
            topology=FakeTopology(substrate.instances),
            leader_finder=substrate.leader,
            cluster_label=f"{PREFIX}/cluster",
            operation_timeout_ms=2000,
            backoff=BackOff(base_ms=1, factor=2, max_attempts=3),
            dependent_deployments=("entity-operator", "exporter"),
            sleep=sleeps,
        )
        options.update(overrides)
        return RollingUpdateOrchestrator(**options)

    return _build


def _seed_cluster(substrate, coordinators=3, data=3):
    for index in range(coordinators):
        substrate.instances.add(f"{CLUSTER}-coordinator-{index}", ROLE_COORDINATOR)
    for index in range(data):
        substrate.instances.add(f"{CLUSTER}-data-{index}", ROLE_DATA)
    substrate.deployments.existing.update({f"{CLUSTER}-entity-operator", f"{CLUSTER}-exporter"})


async def _roll(orchestrator, trigger):
    return await orchestrator.roll_for_new_ca_keys(namespace=NAMESPACE, cluster=CLUSTER, trigger=trigger)


def test_backoff_delays_grow_geometrically():
    backoff = BackOff(base_ms=250, factor=2, max_attempts=4)

    assert list(backoff.delays_ms()) == [250, 500, 1000, 2000]
    assert backoff.total_ms == 3750


def test_node_refs_order_by_trailing_number():
    refs = node_refs(
        [
            InstanceRecord(name="n-10", roles=[ROLE_DATA]),
            InstanceRecord(name="n-2"),
            InstanceRecord(name="x"),
        ]
    )

    assert [ref.name for ref in refs] == ["n-2", "x", "n-10"]
    assert refs[2].id == 10
    assert refs[2].roles == frozenset({ROLE_DATA})


def test_reasons_are_ordered_and_deduplicated():
    reasons = RollingUpdateReasons(["b", "a", "b", ""])
    reasons.add("a")

    assert list(reasons) == ["b", "a"]
    assert len(reasons) == 2
    assert str(reasons) == "[b, a]"
    assert not RollingUpdateReasons()


def test_trigger_from_merges_reason_groups():
    trigger = trigger_from(
        cluster_key_replaced=False,
        clients_key_replaced=True,
        reasons={"cluster": ["a"], "clients": ["a", "b"]},
    )

    assert trigger.fired
    assert trigger.reasons == ("a", "b")


@pytest.mark.asyncio
async def test_no_key_replacement_is_a_noop(build, substrate):
    _seed_cluster(substrate)
    trigger = trigger_from(cluster_key_replaced=False, clients_key_replaced=False, reasons=[])

    result = await _roll(build(), trigger)

    assert result.noop
    assert substrate.instances.restarts == []
    assert substrate.deployments.attempted == []


@pytest.mark.asyncio
async def test_cluster_key_rolls_every_stage_with_leader_last(build, substrate):
    _seed_cluster(substrate)
    substrate.leader.leader = 1

    result = await _roll(build(), CLUSTER_KEY)

    assert result.coordinators == [
        f"{CLUSTER}-coordinator-0",
        f"{CLUSTER}-coordinator-2",
        f"{CLUSTER}-coordinator-1",
    ]
    assert result.data_instances == [f"{CLUSTER}-data-0", f"{CLUSTER}-data-1", f"{CLUSTER}-data-2"]
    assert sorted(result.deployments) == [f"{CLUSTER}-entity-operator", f"{CLUSTER}-exporter"]
    assert substrate.instances.restarts == result.coordinators + result.data_instances


@pytest.mark.asyncio
async def test_unknown_leader_rolls_in_name_order(build, substrate):
    _seed_cluster(substrate)
    substrate.leader.leader = UNKNOWN_LEADER

    result = await _roll(build(), CLUSTER_KEY)

    assert result.coordinators == [f"{CLUSTER}-coordinator-{index}" for index in range(3)]


@pytest.mark.asyncio
async def test_clients_key_skips_coordinators_and_dependents(build, substrate):
    _seed_cluster(substrate)

    result = await _roll(build(), CLIENTS_KEY)

    assert result.coordinators == []
    assert result.data_instances == [f"{CLUSTER}-data-{index}" for index in range(3)]
    assert result.deployments == []
    assert substrate.deployments.attempted == []


@pytest.mark.asyncio
async def test_clients_key_rolls_dependents_when_enabled(build, substrate):
    _seed_cluster(substrate)

    result = await _roll(build(roll_dependents_on_clients_ca_key=True), CLIENTS_KEY)

    assert result.coordinators == []
    assert sorted(result.deployments) == [f"{CLUSTER}-entity-operator", f"{CLUSTER}-exporter"]


@pytest.mark.asyncio
async def test_missing_dependents_are_skipped(build, substrate):
    _seed_cluster(substrate, coordinators=0)
    substrate.deployments.existing = {f"{CLUSTER}-exporter"}

    result = await _roll(build(), CLUSTER_KEY)

    assert result.deployments == [f"{CLUSTER}-exporter"]


@pytest.mark.asyncio
async def test_health_timeout_stops_the_roll(build, substrate, sleeps):
    _seed_cluster(substrate, coordinators=0)
    substrate.instances.never_ready.add(f"{CLUSTER}-data-1")

    with pytest.raises(HealthTimeoutError) as excinfo:
        await _roll(build(), CLUSTER_KEY)

    assert excinfo.value.instance == f"{CLUSTER}-data-1"
    assert substrate.instances.restarts == [f"{CLUSTER}-data-0", f"{CLUSTER}-data-1"]
    assert substrate.deployments.attempted == []
    assert sleeps.calls == [0.001, 0.002, 0.004]


@pytest.mark.asyncio
async def test_health_gate_is_bounded_by_operation_timeout(build, substrate):
    class HangingInstances(type(substrate.instances)):
        async def is_ready(self, namespace, name):
            await asyncio.Event().wait()
            return True

    instances = HangingInstances()
    instances.add(f"{CLUSTER}-data-0", ROLE_DATA)
    orchestrator = build(
        instances=instances,
        topology=FakeTopology(instances),
        operation_timeout_ms=20,
    )

    with pytest.raises(HealthTimeoutError) as excinfo:
        await _roll(orchestrator, CLIENTS_KEY)

    assert "20ms" in str(excinfo.value)


@pytest.mark.asyncio
async def test_restart_failure_propagates(build, substrate):
    _seed_cluster(substrate, coordinators=0)
    substrate.instances.restart_errors[f"{CLUSTER}-data-0"] = GatewayError("lxd.restart", "boom")

    with pytest.raises(GatewayError):
        await _roll(build(), CLUSTER_KEY)

    assert substrate.instances.restarts == [f"{CLUSTER}-data-0"]


@pytest.mark.asyncio
async def test_coordinator_failure_aborts_later_stages(build, substrate):
    _seed_cluster(substrate)
    error = GatewayError("lxd.restart", "coordinator refused")
    substrate.instances.restart_errors[f"{CLUSTER}-coordinator-1"] = error

    with pytest.raises(GatewayError) as excinfo:
        await _roll(build(), CLUSTER_KEY)

    assert excinfo.value is error
    assert substrate.instances.restarts == [f"{CLUSTER}-coordinator-0", f"{CLUSTER}-coordinator-1"]
    assert not any("-data-" in name for name in substrate.instances.restarts)
    assert substrate.deployments.attempted == []


@pytest.mark.asyncio
async def test_unhealthy_coordinator_aborts_later_stages(build, substrate):
    _seed_cluster(substrate)
    substrate.instances.never_ready.add(f"{CLUSTER}-coordinator-0")

    with pytest.raises(HealthTimeoutError) as excinfo:
        await _roll(build(), CLUSTER_KEY)

    assert excinfo.value.instance == f"{CLUSTER}-coordinator-0"
    assert substrate.instances.restarts == [f"{CLUSTER}-coordinator-0"]
    assert substrate.deployments.attempted == []


@pytest.mark.asyncio
async def test_failed_dependent_reports_partial_rollout(build, substrate):
    _seed_cluster(substrate, coordinators=0)
    failing = f"{CLUSTER}-entity-operator"
    substrate.deployments.failing[failing] = GatewayError("lxd.restart", "boom")

    with pytest.raises(PartialRolloutError) as excinfo:
        await _roll(build(), CLUSTER_KEY)

    assert list(excinfo.value.failures) == [failing]
    assert sorted(substrate.deployments.attempted) == [failing, f"{CLUSTER}-exporter"]
    assert substrate.deployments.rolled == [f"{CLUSTER}-exporter"]


def _pending(generation=4, internal=True):
    return PendingAdoption(
        scope="cluster" if internal else "clients",
        annotation=f"{PREFIX}/ca-cert-generation",
        generation=generation,
        internal=internal,
    )


@pytest.mark.asyncio
async def test_resume_rolls_only_lagging_data_instances(build, substrate):
    _seed_cluster(substrate)
    substrate.instances.annotate(f"{CLUSTER}-data-0", f"{PREFIX}/ca-cert-generation", "4")
    trigger = trigger_from(cluster_key_replaced=False, clients_key_replaced=False, reasons=[], pending=[_pending()])

    result = await _roll(build(), trigger)

    assert trigger.resuming
    assert result.coordinators == []
    assert result.data_instances == [f"{CLUSTER}-data-1", f"{CLUSTER}-data-2"]
    assert sorted(result.deployments) == [f"{CLUSTER}-entity-operator", f"{CLUSTER}-exporter"]


@pytest.mark.asyncio
async def test_resume_with_everything_adopted_is_a_noop(build, substrate):
    _seed_cluster(substrate)
    for index in range(3):
        substrate.instances.annotate(f"{CLUSTER}-data-{index}", f"{PREFIX}/ca-cert-generation", "4")
    trigger = trigger_from(cluster_key_replaced=False, clients_key_replaced=False, reasons=[], pending=[_pending()])

    result = await _roll(build(), trigger)

    assert result.noop
    assert substrate.instances.restarts == []


@pytest.mark.asyncio
async def test_resume_for_clients_ca_leaves_dependents_alone(build, substrate):
    _seed_cluster(substrate)
    trigger = trigger_from(
        cluster_key_replaced=False,
        clients_key_replaced=False,
        reasons=[],
        pending=[_pending(internal=False)],
    )

    result = await _roll(build(), trigger)

    assert len(result.data_instances) == 3
    assert result.deployments == []
