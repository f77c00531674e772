import ipaddress
from threading import Barrier, Event, Thread

import pytest

from netlox_lb.config import ProviderSettings
from netlox_lb.context import OperationContext
from netlox_lb.exceptions import (
    DocumentConflict,
    DocumentNotFound,
    InvalidService,
    LeaseReleaseError,
    NoPoolConfigured,
    ReconcileCancelled,
    RegistryDecodeError,
    ServiceUpdateError,
    StoreError,
)
from netlox_lb.ipam import AddressManager
from netlox_lb.orchestrator import (
    LoadBalancerStatus,
    MemoryServiceWriter,
    Service,
    ServicePort,
    ServiceWriter,
)
from netlox_lb.reconciler import Reconciler
from netlox_lb.services import ServiceBinding, ServiceRegistry
from netlox_lb.store import MemoryDocumentStore

SERVICES_KEY = "netlox-services"


class RecordingIPAM(AddressManager):
    def __init__(self):
        super().__init__()
        self.allocations = []
        self.releases = []

    def allocate_from_cidr(self, namespace, cidr):
        self.allocations.append((namespace, cidr))
        return super().allocate_from_cidr(namespace, cidr)

    def allocate_from_range(self, namespace, ip_range):
        self.allocations.append((namespace, ip_range))
        return super().allocate_from_range(namespace, ip_range)

    def release(self, namespace, address):
        self.releases.append((namespace, address))
        super().release(namespace, address)


class BrokenReleaseIPAM(RecordingIPAM):
    def release(self, namespace, address):
        self.releases.append((namespace, address))
        raise LeaseReleaseError("ipam backend unavailable")


class FailingWriter(ServiceWriter):
    def update(self, service, timeout=None):
        raise ServiceUpdateError("api server said no")


class FailingUpdateStore(MemoryDocumentStore):
    def replace(self, document, timeout=None):
        raise StoreError("etcd timeout")


class ConcurrentWriterStore(MemoryDocumentStore):
    """Slip a foreign binding in right before the first registry write."""

    def __init__(self):
        super().__init__()
        self.interleaved = False

    def replace(self, document, timeout=None):
        if not self.interleaved and document.namespace == "ns1":
            self.interleaved = True
            current = self.get(document.name, document.namespace)
            foreign = ServiceRegistry(
                [ServiceBinding(uid="other", name="other", vip="10.0.0.200", port=443, protocol="TCP")]
            )
            self.update(current, foreign)
        return super().replace(document, timeout)


class AlwaysConflictStore(MemoryDocumentStore):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    def replace(self, document, timeout=None):
        self.attempts += 1
        raise DocumentConflict("someone else won")


def build_service(uid="a", namespace="ns1", address="", status=None) -> Service:
    return Service(
        uid=uid,
        name=f"svc-{uid}",
        namespace=namespace,
        ports=(ServicePort(80, "TCP"),),
        load_balancer_ip=address,
        status=status or LoadBalancerStatus(),
    )


def build_reconciler(store=None, ipam=None, writer=None, pools=None, settings=None):
    store = store if store is not None else MemoryDocumentStore()
    if pools is not None:
        store.seed("netlox", "kube-system", pools)
    ipam = ipam if ipam is not None else RecordingIPAM()
    writer = writer if writer is not None else MemoryServiceWriter()
    return Reconciler(store, ipam, writer, settings=settings), store, ipam, writer


def read_registry(store, namespace="ns1") -> ServiceRegistry:
    return ServiceRegistry.deserialize(store.get("netlox", namespace).get(SERVICES_KEY))


def test_ensure_allocates_from_namespace_cidr():
    reconciler, store, ipam, writer = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})

    status = reconciler.ensure(build_service())

    assert len(status.ingress) == 1
    address = status.ingress[0].ip
    assert ipaddress.ip_address(address) in ipaddress.ip_network("10.0.0.0/24")

    registry = read_registry(store)
    assert [b.uid for b in registry] == ["a"]
    assert registry.find("a").vip == address
    assert writer.get("ns1", "a").load_balancer_ip == address


def test_ensure_is_idempotent():
    reconciler, store, ipam, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})
    service = build_service()

    first = reconciler.ensure(service)
    second = reconciler.ensure(service)

    assert first == second
    assert len(ipam.allocations) == 1
    assert len(read_registry(store)) == 1


def test_ensure_bound_service_returns_reported_status():
    reconciler, _, ipam, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})
    status = reconciler.ensure(build_service())

    reported = LoadBalancerStatus.for_address("198.51.100.7")
    again = reconciler.ensure(build_service(status=reported))

    assert status.addresses == ("10.0.0.1",)
    assert again == reported
    assert len(ipam.allocations) == 1


def test_ensure_does_not_modify_input_service():
    reconciler, _, _, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})
    service = build_service()

    reconciler.ensure(service)

    assert service.load_balancer_ip == ""


def test_ensure_uses_requested_address():
    reconciler, store, ipam, writer = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})

    status = reconciler.ensure(build_service(address="10.0.0.42"))

    assert status.addresses == ("10.0.0.42",)
    assert ipam.allocations == []
    assert ipam.leases("ns1") == frozenset({"10.0.0.42"})
    assert read_registry(store).find("a").vip == "10.0.0.42"


def test_ensure_creates_missing_documents():
    reconciler, store, _, _ = build_reconciler()

    reconciler.ensure(build_service(address="10.0.0.42"))

    assert store.get("netlox", "kube-system").data is None
    assert store.get("netlox", "ns1").annotations == {"provider": "netlox"}


def test_ensure_without_pool_fails_and_records_nothing():
    reconciler, store, ipam, writer = build_reconciler()

    with pytest.raises(NoPoolConfigured):
        reconciler.ensure(build_service())

    assert store.get("netlox", "ns1").get(SERVICES_KEY) is None
    assert writer.get("ns1", "a") is None


def test_ensure_falls_back_to_global_range():
    reconciler, _, _, _ = build_reconciler(pools={"range-global": "172.16.0.10-172.16.0.20"})

    status = reconciler.ensure(build_service())

    assert status.addresses == ("172.16.0.10",)


def test_write_back_failure_releases_lease():
    reconciler, store, ipam, _ = build_reconciler(
        pools={"cidr-ns1": "10.0.0.0/24"}, writer=FailingWriter()
    )

    with pytest.raises(ServiceUpdateError):
        reconciler.ensure(build_service())

    assert ipam.releases == [("ns1", "10.0.0.1")]
    assert ipam.leases("ns1") == frozenset()
    assert store.get("netlox", "ns1").get(SERVICES_KEY) is None


def test_write_back_failure_releases_requested_reservation():
    reconciler, _, ipam, _ = build_reconciler(writer=FailingWriter())

    with pytest.raises(ServiceUpdateError):
        reconciler.ensure(build_service(address="10.0.0.42"))

    assert ipam.releases == [("ns1", "10.0.0.42")]
    assert ipam.leases("ns1") == frozenset()


def test_write_back_failure_keeps_foreign_lease_of_requested_address():
    reconciler, _, ipam, _ = build_reconciler(writer=FailingWriter())
    ipam.reserve("ns1", "10.0.0.42")

    with pytest.raises(ServiceUpdateError):
        reconciler.ensure(build_service(address="10.0.0.42"))

    assert ipam.releases == []
    assert ipam.leases("ns1") == frozenset({"10.0.0.42"})


@pytest.mark.parametrize("error", [StoreError("connection reset"), ConnectionError("reset"), ValueError("bad body")])
def test_any_write_back_error_releases_lease(error):
    class BrokenWriter(ServiceWriter):
        def update(self, service, timeout=None):
            raise error

    reconciler, _, ipam, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"}, writer=BrokenWriter())

    with pytest.raises(type(error)):
        reconciler.ensure(build_service())

    assert ipam.leases("ns1") == frozenset()


def test_requested_address_is_not_handed_out_again():
    reconciler, _, _, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})

    first = reconciler.ensure(build_service(uid="a", address="10.0.0.1"))
    second = reconciler.ensure(build_service(uid="b"))

    assert first.addresses == ("10.0.0.1",)
    assert second.addresses == ("10.0.0.2",)


def test_invalid_requested_address_is_rejected():
    reconciler, store, _, writer = build_reconciler()

    with pytest.raises(InvalidService):
        reconciler.ensure(build_service(address="not-an-ip"))

    assert writer.get("ns1", "a") is None
    assert store.get("netlox", "ns1").get(SERVICES_KEY) is None


def test_recorded_addresses_survive_restart():
    store = MemoryDocumentStore()
    first, _, _, _ = build_reconciler(store=store, pools={"cidr-ns1": "10.0.0.0/24"})
    before = first.ensure(build_service(uid="a"))

    restarted = Reconciler(store, AddressManager(), MemoryServiceWriter())
    after = restarted.ensure(build_service(uid="b"))

    assert before.addresses == ("10.0.0.1",)
    assert after.addresses == ("10.0.0.2",)


def test_delete_after_restart_releases_recorded_address():
    store = MemoryDocumentStore()
    first, _, _, _ = build_reconciler(store=store, pools={"cidr-ns1": "10.0.0.0/24"})
    first.ensure(build_service(uid="a"))

    ipam = RecordingIPAM()
    restarted = Reconciler(store, ipam, MemoryServiceWriter())
    restarted.delete(build_service(uid="a"))

    assert ipam.releases == [("ns1", "10.0.0.1")]
    assert restarted.release_failures == ()
    assert ipam.leases("ns1") == frozenset()


def test_release_failure_is_recorded_not_raised():
    reconciler, _, ipam, _ = build_reconciler(
        pools={"cidr-ns1": "10.0.0.0/24"}, ipam=BrokenReleaseIPAM(), writer=FailingWriter()
    )

    with pytest.raises(ServiceUpdateError):
        reconciler.ensure(build_service())

    failures = reconciler.release_failures
    assert len(failures) == 1
    assert (failures[0].namespace, failures[0].address) == ("ns1", "10.0.0.1")
    assert "unavailable" in failures[0].reason


def test_persistence_failure_is_surfaced():
    reconciler, _, ipam, writer = build_reconciler(
        store=FailingUpdateStore(), pools={"cidr-ns1": "10.0.0.0/24"}
    )

    with pytest.raises(StoreError):
        reconciler.ensure(build_service())

    # The orchestrator already carries the address, so the lease is kept.
    assert writer.get("ns1", "a").load_balancer_ip == "10.0.0.1"
    assert ipam.leases("ns1") == frozenset({"10.0.0.1"})


def test_corrupted_registry_is_treated_as_empty():
    store = MemoryDocumentStore()
    store.seed("netlox", "ns1", {SERVICES_KEY: "{not json"})
    reconciler, store, _, _ = build_reconciler(store=store, pools={"cidr-ns1": "10.0.0.0/24"})

    reconciler.ensure(build_service())

    assert [b.uid for b in read_registry(store)] == ["a"]


def test_concurrent_registry_write_is_retried():
    reconciler, store, _, _ = build_reconciler(
        store=ConcurrentWriterStore(), pools={"cidr-ns1": "10.0.0.0/24"}
    )

    reconciler.ensure(build_service())

    assert [b.uid for b in read_registry(store)] == ["other", "a"]


def test_conflict_retries_are_bounded():
    store = AlwaysConflictStore()
    reconciler, _, _, _ = build_reconciler(
        store=store,
        pools={"cidr-ns1": "10.0.0.0/24"},
        settings=ProviderSettings(conflict_retries=1),
    )

    with pytest.raises(DocumentConflict):
        reconciler.ensure(build_service())

    assert store.attempts == 2


def test_cancelled_context_touches_nothing():
    reconciler, store, ipam, _ = build_reconciler()
    cancel = Event()
    cancel.set()

    with pytest.raises(ReconcileCancelled):
        reconciler.ensure(build_service(), OperationContext(cancel_event=cancel))

    assert ipam.allocations == []
    with pytest.raises(DocumentNotFound):
        store.get("netlox", "ns1")


def test_cancellation_after_allocation_releases_lease():
    cancel = Event()

    class CancellingIPAM(RecordingIPAM):
        def allocate_from_cidr(self, namespace, cidr):
            address = super().allocate_from_cidr(namespace, cidr)
            cancel.set()
            return address

    reconciler, store, ipam, writer = build_reconciler(
        ipam=CancellingIPAM(), pools={"cidr-ns1": "10.0.0.0/24"}
    )

    with pytest.raises(ReconcileCancelled):
        reconciler.ensure(build_service(), OperationContext(cancel_event=cancel))

    assert ipam.leases("ns1") == frozenset()
    assert writer.get("ns1", "a") is None
    assert store.get("netlox", "ns1").get(SERVICES_KEY) is None


def test_expired_deadline():
    reconciler, _, _, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})

    with pytest.raises(ReconcileCancelled):
        reconciler.ensure(build_service(), OperationContext.with_timeout(0))


def test_service_without_ports_is_rejected():
    reconciler, store, ipam, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})

    with pytest.raises(InvalidService):
        reconciler.ensure(Service(uid="a", name="web", namespace="ns1"))

    assert ipam.allocations == []


def test_delete_releases_lease_and_drops_binding():
    reconciler, store, ipam, _ = build_reconciler()
    reconciler.ensure(build_service(uid="b", address="10.0.0.5"))
    reconciler.ensure(build_service(uid="c", address="10.0.0.6"))

    reconciler.delete(
        build_service(uid="b", address="10.0.0.5", status=LoadBalancerStatus.for_address("10.0.0.5"))
    )

    assert read_registry(store).find("b") is None
    assert [b.uid for b in read_registry(store)] == ["c"]
    assert ipam.releases == [("ns1", "10.0.0.5")]
    assert ipam.leases("ns1") == frozenset({"10.0.0.6"})


def test_delete_then_ensure_binds_again():
    reconciler, store, ipam, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})
    status = reconciler.ensure(build_service())

    reconciler.delete(build_service(address=status.addresses[0], status=status))
    again = reconciler.ensure(build_service())

    assert again == status
    assert len(read_registry(store)) == 1


def test_delete_of_unbound_service_is_noop():
    reconciler, store, ipam, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})
    reconciler.ensure(build_service(uid="a"))
    before = store.get("netlox", "ns1")

    reconciler.delete(build_service(uid="zzz"))

    after = store.get("netlox", "ns1")
    assert after == before
    assert ipam.releases == []


def test_delete_without_registry_document():
    reconciler, _, ipam, _ = build_reconciler()

    reconciler.delete(build_service(address="10.0.0.5", status=LoadBalancerStatus.for_address("10.0.0.5")))

    assert ipam.releases == []


def test_delete_with_unreadable_registry():
    store = MemoryDocumentStore()
    store.seed("netlox", "ns1", {SERVICES_KEY: "garbage"})
    reconciler, _, ipam, _ = build_reconciler(store=store)

    reconciler.delete(build_service())

    assert store.get("netlox", "ns1").data == {SERVICES_KEY: "garbage"}


def test_delete_continues_when_release_fails():
    reconciler, store, ipam, _ = build_reconciler(ipam=BrokenReleaseIPAM())
    reconciler.ensure(build_service(address="10.0.0.9"))

    reconciler.delete(build_service(address="10.0.0.9", status=LoadBalancerStatus.for_address("10.0.0.9")))

    assert read_registry(store).find("a") is None
    assert ipam.releases == [("ns1", "10.0.0.9")]
    assert len(reconciler.release_failures) == 1


def test_delete_persistence_failure_is_surfaced():
    store = FailingUpdateStore()
    store.seed(
        "netlox",
        "ns1",
        {SERVICES_KEY: ServiceRegistry([ServiceBinding("a", "svc-a", "10.0.0.5", 80, "TCP")]).serialize()},
    )
    reconciler, _, ipam, _ = build_reconciler(store=store)
    ipam.reserve("ns1", "10.0.0.5")

    with pytest.raises(StoreError):
        reconciler.delete(build_service(address="10.0.0.5"))

    # The lease is released even though the registry entry stays for a retry.
    assert ipam.leases("ns1") == frozenset()


def test_lookup():
    reconciler, _, _, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})

    assert reconciler.lookup(build_service()) is None
    reconciler.ensure(build_service())

    binding = reconciler.lookup(build_service())
    assert binding is not None
    assert binding.vip == "10.0.0.1"


def test_lookup_reports_unreadable_registry():
    store = MemoryDocumentStore()
    store.seed("netlox", "ns1", {SERVICES_KEY: "{not json"})
    reconciler, _, _, _ = build_reconciler(store=store)

    with pytest.raises(RegistryDecodeError):
        reconciler.lookup(build_service())


def test_binding_recorded_concurrently_wins():
    class SameServiceStore(MemoryDocumentStore):
        """Record another VIP for the same uid right before the first write."""

        def __init__(self):
            super().__init__()
            self.interleaved = False

        def replace(self, document, timeout=None):
            if not self.interleaved and document.namespace == "ns1":
                self.interleaved = True
                current = self.get(document.name, document.namespace)
                self.update(
                    current,
                    ServiceRegistry([ServiceBinding("a", "svc-a", "10.0.0.200", 80, "TCP")]),
                )
            return super().replace(document, timeout)

    reconciler, store, ipam, writer = build_reconciler(
        store=SameServiceStore(), pools={"cidr-ns1": "10.0.0.0/24"}
    )

    status = reconciler.ensure(build_service())

    assert status.addresses == ("10.0.0.200",)
    assert writer.get("ns1", "a").load_balancer_ip == "10.0.0.200"
    assert ipam.releases == [("ns1", "10.0.0.1")]
    assert ipam.leases("ns1") == frozenset({"10.0.0.200"})
    assert [b.vip for b in read_registry(store)] == ["10.0.0.200"]


def test_parallel_ensures_in_one_namespace():
    reconciler, store, _, _ = build_reconciler(pools={"cidr-ns1": "10.0.0.0/24"})
    uids = [f"svc{i}" for i in range(16)]
    results = {}
    errors = []
    start = Barrier(len(uids))

    def run(uid):
        try:
            start.wait()
            results[uid] = reconciler.ensure(build_service(uid=uid))
        except Exception as exc:  # collected and asserted below
            errors.append(exc)

    threads = [Thread(target=run, args=(uid,)) for uid in uids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    registry = read_registry(store)
    assert sorted(b.uid for b in registry) == sorted(uids)
    vips = {status.addresses[0] for status in results.values()}
    assert len(vips) == len(uids)
    assert {b.vip for b in registry} == vips
