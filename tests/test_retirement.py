from __future__ import annotations

import pytest
from conftest import CLUSTER, NOW, make_resource

from reconciler.schemas.cluster import CertificateAuthoritySpec, ExpirationPolicy
from reconciler.schemas.substrate import ROLE_COORDINATOR, ROLE_DATA, InstanceRecord
from reconciler.services.ca import (
    CaLifecycleManager,
    TrustScope,
    cert_secret_name,
    key_secret_name,
)
from reconciler.services.retirement import RetirementSweep, lagging_instances

REPLACE = CertificateAuthoritySpec(certificate_expiration_policy=ExpirationPolicy.REPLACE_KEY)


@pytest.fixture
def replaced_ca(substrate, seed_ca, annotations):
    seed_ca(TrustScope.CLUSTER, generation=3, days_left=20)
    manager = CaLifecycleManager(annotation_prefix=annotations.prefix)
    ca = manager.reconcile(
        resource=make_resource(),
        scope=TrustScope.CLUSTER,
        policy=REPLACE,
        cert_secret=substrate.secrets.stored(cert_secret_name(CLUSTER, TrustScope.CLUSTER)),
        key_secret=substrate.secrets.stored(key_secret_name(CLUSTER, TrustScope.CLUSTER)),
        maintenance_allowed=True,
        now=NOW,
    )
    substrate.secrets.put(ca.cert_secret)
    substrate.secrets.put(ca.key_secret)
    substrate.secrets.writes.clear()
    return ca


@pytest.fixture
def sweep(substrate, annotations):
    return RetirementSweep(instances=substrate.instances, secrets=substrate.secrets, annotations=annotations)


def test_lagging_instances_treats_missing_annotation_as_lagging():
    instances = [
        InstanceRecord(name="a", annotations={"gen": "4"}),
        InstanceRecord(name="b", annotations={"gen": "3"}),
        InstanceRecord(name="c"),
        InstanceRecord(name="d", annotations={"gen": "5"}),
        InstanceRecord(name="e", annotations={"gen": "garbage"}),
    ]

    assert lagging_instances(instances, "gen", 4) == ["b", "c", "e"]


@pytest.mark.asyncio
async def test_old_certificates_kept_while_an_instance_lags(sweep, substrate, replaced_ca, annotations):
    adopted = annotations.adopted_generation(TrustScope.CLUSTER)
    substrate.instances.add("my-cluster-data-0", ROLE_DATA, **{adopted: "4"})
    substrate.instances.add("my-cluster-data-1", ROLE_DATA, **{adopted: "3"})

    updated, outcomes = await sweep.sweep([replaced_ca])

    assert updated == [replaced_ca]
    assert not outcomes[0].retired
    assert outcomes[0].lagging == ("my-cluster-data-1",)
    assert substrate.secrets.writes == []


@pytest.mark.asyncio
async def test_old_certificates_removed_once_all_instances_adopt(sweep, substrate, replaced_ca, annotations):
    adopted = annotations.adopted_generation(TrustScope.CLUSTER)
    substrate.instances.add("my-cluster-data-0", ROLE_DATA, **{adopted: "4"})
    substrate.instances.add("my-cluster-data-1", ROLE_DATA, **{adopted: "5"})
    # coordinators do not take part in the adoption check
    substrate.instances.add("my-cluster-coordinator-0", ROLE_COORDINATOR)

    updated, outcomes = await sweep.sweep([replaced_ca])

    assert outcomes[0].retired
    assert updated[0].retained == {}
    stored = substrate.secrets.stored(cert_secret_name(CLUSTER, TrustScope.CLUSTER))
    assert list(stored.data) == ["ca.crt"]
    assert substrate.secrets.writes == [cert_secret_name(CLUSTER, TrustScope.CLUSTER)]


@pytest.mark.asyncio
async def test_no_data_instances_is_a_noop(sweep, substrate, replaced_ca):
    updated, outcomes = await sweep.sweep([replaced_ca])

    assert updated == [replaced_ca]
    assert not outcomes[0].retired
    assert substrate.secrets.writes == []


@pytest.mark.asyncio
async def test_nothing_to_retire(sweep, substrate, seed_ca, annotations):
    seed_ca(TrustScope.CLIENTS, generation=2, days_left=200)
    manager = CaLifecycleManager(annotation_prefix=annotations.prefix)
    ca = manager.reconcile(
        resource=make_resource(),
        scope=TrustScope.CLIENTS,
        policy=CertificateAuthoritySpec(),
        cert_secret=substrate.secrets.stored(cert_secret_name(CLUSTER, TrustScope.CLIENTS)),
        key_secret=substrate.secrets.stored(key_secret_name(CLUSTER, TrustScope.CLIENTS)),
        maintenance_allowed=True,
        now=NOW,
    )
    substrate.instances.add(
        "my-cluster-data-0", ROLE_DATA, **{annotations.adopted_generation(TrustScope.CLIENTS): "2"}
    )

    updated, outcomes = await sweep.sweep([ca])

    assert updated == [ca]
    assert not outcomes[0].retired
    assert outcomes[0].lagging == ()


@pytest.mark.asyncio
async def test_empty_sweep(sweep):
    assert await sweep.sweep([]) == ([], [])
