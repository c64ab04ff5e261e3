from __future__ import annotations

import base64
import json

import pytest
from conftest import CLUSTER, NAMESPACE, make_resource

from reconciler.schemas.cluster import ClusterStatus
from reconciler.schemas.substrate import SecretRecord
from reconciler.services import etcd
from reconciler.services.etcd import EtcdError
from reconciler.services.store import EtcdResourceStore, EtcdSecretGateway


class FakeEtcd:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.puts: list[str] = []
        self.deletes: list[str] = []

    async def get_value(self, *, key):
        return self.data.get(key, "")

    async def get_prefix(self, *, key_prefix):
        return {key: value for key, value in self.data.items() if key.startswith(key_prefix)}

    async def put_value(self, *, key, value):
        self.data[key] = value
        self.puts.append(key)

    async def delete_key(self, *, key):
        self.data.pop(key, None)
        self.deletes.append(key)


@pytest.fixture
def fake_etcd(monkeypatch):
    fake = FakeEtcd()
    for name in ("get_value", "get_prefix", "put_value", "delete_key"):
        monkeypatch.setattr(etcd, name, getattr(fake, name))
    return fake


def _secret(name="my-cluster-cluster-ca-cert", **labels):
    return SecretRecord(namespace=NAMESPACE, name=name, data={"ca.crt": "pem"}, labels=labels)


@pytest.mark.asyncio
async def test_secret_reconcile_writes_only_on_change(fake_etcd):
    gateway = EtcdSecretGateway()
    desired = _secret(cluster=CLUSTER)

    await gateway.reconcile(NAMESPACE, desired.name, desired)
    await gateway.reconcile(NAMESPACE, desired.name, desired)

    assert fake_etcd.puts == [f"secrets/{NAMESPACE}/{desired.name}"]
    assert await gateway.get(NAMESPACE, desired.name) == desired


@pytest.mark.asyncio
async def test_secret_reconcile_none_deletes(fake_etcd):
    gateway = EtcdSecretGateway()
    desired = _secret()
    await gateway.reconcile(NAMESPACE, desired.name, desired)

    assert await gateway.reconcile(NAMESPACE, desired.name, None) is None
    assert await gateway.reconcile(NAMESPACE, desired.name, None) is None

    assert fake_etcd.deletes == [f"secrets/{NAMESPACE}/{desired.name}"]


@pytest.mark.asyncio
async def test_secret_list_filters_labels_and_skips_garbage(fake_etcd):
    gateway = EtcdSecretGateway()
    await gateway.reconcile(NAMESPACE, "a", _secret("a", cluster=CLUSTER))
    await gateway.reconcile(NAMESPACE, "b", _secret("b", cluster="other"))
    fake_etcd.data[f"secrets/{NAMESPACE}/broken"] = "{not json"

    listed = await gateway.list(NAMESPACE, {"cluster": CLUSTER})

    assert [item.name for item in listed] == ["a"]


@pytest.mark.asyncio
async def test_unreadable_secret_raises_gateway_error(fake_etcd):
    fake_etcd.data[f"secrets/{NAMESPACE}/broken"] = json.dumps({"name": "missing namespace"})

    with pytest.raises(EtcdError):
        await EtcdSecretGateway().get(NAMESPACE, "broken")


@pytest.mark.asyncio
async def test_resource_put_keeps_status_and_bumps_generation(fake_etcd):
    store = EtcdResourceStore()
    stored = await store.put(make_resource())
    assert stored.generation == 1

    await store.update_status(NAMESPACE, CLUSTER, ClusterStatus(observed_generation=1, metadata_state="StorageA"))
    unchanged = await store.put(make_resource())
    changed = await store.put(make_resource(maintenance_time_windows=["sun 01:00-02:00"]))

    assert unchanged.generation == 1
    assert changed.generation == 2
    assert changed.status.metadata_state == "StorageA"
    assert [item.name for item in await store.list()] == [CLUSTER]


@pytest.mark.asyncio
async def test_update_status_of_missing_resource_fails(fake_etcd):
    with pytest.raises(EtcdError):
        await EtcdResourceStore().update_status(NAMESPACE, "gone", ClusterStatus())


@pytest.mark.asyncio
async def test_get_prefix_decodes_etcdctl_json(monkeypatch):
    def b64(value):
        return base64.b64encode(value.encode("utf-8")).decode("ascii")

    payload = {
        "kvs": [
            {"key": b64("/reconciler/clusters/data/a"), "value": b64('{"x":1}')},
            {"key": "", "value": b64("ignored")},
        ]
    }
    calls = []

    def fake_run(*, args, timeout_seconds):
        calls.append(args)
        return 0, json.dumps(payload), ""

    monkeypatch.setattr(etcd, "_run_etcdctl", fake_run)

    values = await etcd.get_prefix(key_prefix="clusters/")

    assert values == {"clusters/data/a": '{"x":1}'}
    assert calls == [("get", "/reconciler/clusters/", "--prefix", "-w", "json")]


@pytest.mark.asyncio
async def test_failed_etcdctl_raises(monkeypatch):
    monkeypatch.setattr(etcd, "_run_etcdctl", lambda **_: (1, "", "permission denied"))

    with pytest.raises(EtcdError) as excinfo:
        await etcd.put_value(key="clusters/data/a", value="-x")

    assert excinfo.value.action == "kv.put"
    assert excinfo.value.detail == "permission denied"
