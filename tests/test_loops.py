"""Unit tests for FullSyncLoop and LabelTriggerLoop."""

import threading
from typing import List, Optional

from fakes import FakeIngressSource, MockRecordStore, StaticResolver, make_host

from kubehomedns.cli import (
    DNSReconciler,
    DNSRecord,
    FullSyncLoop,
    IngressHost,
    IngressRef,
    LabelTriggerLoop,
    OutcomeKind,
    ZoneHandle,
    _parse_exclude_patterns,
    start_loops,
)

# =============================================================================
# Test Helpers
# =============================================================================


def create_test_setup(
    hosts: Optional[List[IngressHost]] = None,
    records: Optional[List[DNSRecord]] = None,
    failing_names: Optional[set] = None,
    list_failures: int = 0,
    fail_acknowledge: bool = False,
) -> tuple[FakeIngressSource, DNSReconciler, MockRecordStore]:
    source = FakeIngressSource(
        hosts=hosts, list_failures=list_failures, fail_acknowledge=fail_acknowledge
    )
    store = MockRecordStore(initial_records=records, failing_names=failing_names)
    reconciler = DNSReconciler(
        record_store=store, ip_resolver=StaticResolver("2.2.2.2"), zone=ZoneHandle("zone123")
    )
    return source, reconciler, store


def make_full_sync(source, reconciler, **kwargs) -> FullSyncLoop:
    return FullSyncLoop(
        source=source, reconciler=reconciler, interval_seconds=1800, retry_seconds=10, **kwargs
    )


def make_label_loop(source, reconciler, **kwargs) -> LabelTriggerLoop:
    return LabelTriggerLoop(
        source=source, reconciler=reconciler, interval_seconds=120, retry_seconds=10, **kwargs
    )


class RecordingEvent(threading.Event):
    """Event that records wait timeouts and stops after a number of waits."""

    def __init__(self, stop_after: int):
        super().__init__()
        self.waits: List[float] = []
        self._stop_after = stop_after

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if len(self.waits) >= self._stop_after:
            self.set()
        return self.is_set()


# =============================================================================
# Full sync
# =============================================================================


def test_full_sync_reconciles_every_rule_host() -> None:
    hosts = [
        make_host("a.example.com", ingress="web", rule_index=0),
        make_host("b.example.com", ingress="web", rule_index=1),
        make_host("c.example.com", ingress="api", namespace="prod"),
    ]
    source, reconciler, store = create_test_setup(hosts=hosts)

    outcomes = make_full_sync(source, reconciler).run_once()

    assert [o.hostname for o in outcomes] == ["a.example.com", "b.example.com", "c.example.com"]
    assert store.create_calls == [
        ("a.example.com", "2.2.2.2"),
        ("b.example.com", "2.2.2.2"),
        ("c.example.com", "2.2.2.2"),
    ]


def test_full_sync_reconciles_shared_host_once_per_iteration() -> None:
    hosts = [
        make_host("a.example.com", ingress="web"),
        make_host("a.example.com", ingress="web-canary"),
    ]
    source, reconciler, store = create_test_setup(hosts=hosts)

    outcomes = make_full_sync(source, reconciler).run_once()

    assert len(outcomes) == 1
    assert store.list_calls == 1


def test_full_sync_isolates_failing_host() -> None:
    """A provider 500 on one host does not stop the next host."""
    hosts = [make_host("a.example.com"), make_host("b.example.com", rule_index=1)]
    source, reconciler, store = create_test_setup(hosts=hosts, failing_names={"a.example.com"})

    outcomes = make_full_sync(source, reconciler).run_once()

    assert [o.kind for o in outcomes] == [OutcomeKind.FAILED, OutcomeKind.CREATED]
    assert ("b.example.com", "2.2.2.2") in store.create_calls
    assert store.records_named("b.example.com")[0].content == "2.2.2.2"


def test_full_sync_survives_unexpected_exception() -> None:
    hosts = [make_host("a.example.com"), make_host("b.example.com", rule_index=1)]
    source, reconciler, store = create_test_setup(hosts=hosts)

    original = reconciler.reconcile

    def flaky(hostname):
        if hostname == "a.example.com":
            raise RuntimeError("boom")
        return original(hostname)

    reconciler.reconcile = flaky

    outcomes = make_full_sync(source, reconciler).run_once()

    assert outcomes[0].kind == OutcomeKind.FAILED
    assert outcomes[1].kind == OutcomeKind.CREATED


def test_full_sync_returns_none_when_listing_fails() -> None:
    source, reconciler, store = create_test_setup(list_failures=1)

    assert make_full_sync(source, reconciler).run_once() is None
    assert store.list_calls == 0


def test_full_sync_with_no_ingresses() -> None:
    source, reconciler, store = create_test_setup(hosts=[])

    assert make_full_sync(source, reconciler).run_once() == []
    assert store.list_calls == 0


def test_full_sync_skips_excluded_hosts() -> None:
    hosts = [make_host("a.example.com"), make_host("admin.lan", rule_index=1)]
    source, reconciler, store = create_test_setup(hosts=hosts)

    loop = make_full_sync(source, reconciler, exclude_patterns=_parse_exclude_patterns("*.lan"))
    outcomes = loop.run_once()

    assert [o.hostname for o in outcomes] == ["a.example.com"]


def test_run_forever_uses_retry_delay_after_listing_failure() -> None:
    """Listing failures wait the short retry delay, successes the full interval."""
    source, reconciler, _ = create_test_setup(hosts=[make_host("a.example.com")], list_failures=1)
    stop_event = RecordingEvent(stop_after=2)

    make_full_sync(source, reconciler, stop_event=stop_event).run_forever()

    assert stop_event.waits == [10, 1800]
    assert source.list_calls == 2


def test_run_forever_exits_when_stopped() -> None:
    source, reconciler, _ = create_test_setup()
    stop_event = threading.Event()
    stop_event.set()

    make_full_sync(source, reconciler, stop_event=stop_event).run_forever()

    assert source.list_calls == 0


def test_start_loops_runs_each_loop_in_daemon_thread() -> None:
    source, reconciler, _ = create_test_setup(hosts=[make_host("a.example.com")])
    stop_event = RecordingEvent(stop_after=1)

    threads = start_loops([make_full_sync(source, reconciler, stop_event=stop_event)])
    for thread in threads:
        thread.join(timeout=5)

    assert [t.name for t in threads] == ["full-sync"]
    assert all(t.daemon for t in threads)
    assert source.list_calls == 1


# =============================================================================
# Label trigger
# =============================================================================


def test_label_trigger_reconciles_and_acknowledges() -> None:
    """A labelled Ingress is reconciled once and the label removed once."""
    hosts = [make_host("a.example.com", labels={"kubehomedns": ""})]
    source, reconciler, store = create_test_setup(hosts=hosts)

    outcomes = make_label_loop(source, reconciler).run_once()

    assert [o.hostname for o in outcomes] == ["a.example.com"]
    assert store.create_calls == [("a.example.com", "2.2.2.2")]
    assert source.acknowledged == [(IngressRef("default", "web"), "kubehomedns")]
    assert "kubehomedns" not in source.hosts[0].labels


def test_label_trigger_only_reconciles_primary_host() -> None:
    labels = {"kubehomedns": "", "app": "web"}
    hosts = [
        make_host("first.example.com", labels=labels, rule_index=0),
        make_host("second.example.com", labels=labels, rule_index=1),
    ]
    source, reconciler, store = create_test_setup(hosts=hosts)

    outcomes = make_label_loop(source, reconciler).run_once()

    assert [o.hostname for o in outcomes] == ["first.example.com"]
    assert [name for name, _ in store.create_calls] == ["first.example.com"]
    assert len(source.acknowledged) == 1


def test_label_trigger_primary_host_skips_hostless_rules() -> None:
    """The first rule with a host is the primary one."""
    hosts = [make_host("second.example.com", labels={"kubehomedns": "yes"}, rule_index=1)]
    source, reconciler, _ = create_test_setup(hosts=hosts)

    outcomes = make_label_loop(source, reconciler).run_once()

    assert [o.hostname for o in outcomes] == ["second.example.com"]


def test_label_trigger_ignores_unlabelled_ingresses() -> None:
    hosts = [make_host("a.example.com", labels={"app": "web"})]
    source, reconciler, store = create_test_setup(hosts=hosts)

    outcomes = make_label_loop(source, reconciler).run_once()

    assert outcomes == []
    assert store.list_calls == 0
    assert source.acknowledged == []


def test_label_trigger_is_consumed_once() -> None:
    hosts = [make_host("a.example.com", labels={"kubehomedns": ""})]
    source, reconciler, store = create_test_setup(hosts=hosts)
    loop = make_label_loop(source, reconciler)

    loop.run_once()
    second = loop.run_once()

    assert second == []
    assert len(source.acknowledged) == 1
    assert len(store.create_calls) == 1


def test_label_trigger_custom_sentinel() -> None:
    hosts = [
        make_host("a.example.com", ingress="one", labels={"dns/refresh": "true"}),
        make_host("b.example.com", ingress="two", labels={"kubehomedns": ""}),
    ]
    source, reconciler, _ = create_test_setup(hosts=hosts)

    outcomes = make_label_loop(source, reconciler, sentinel_label="dns/refresh").run_once()

    assert [o.hostname for o in outcomes] == ["a.example.com"]
    assert source.acknowledged == [(IngressRef("default", "one"), "dns/refresh")]


def test_label_trigger_keeps_label_when_reconcile_fails() -> None:
    hosts = [make_host("a.example.com", labels={"kubehomedns": ""})]
    source, reconciler, _ = create_test_setup(hosts=hosts, failing_names={"a.example.com"})

    outcomes = make_label_loop(source, reconciler).run_once()

    assert outcomes[0].kind == OutcomeKind.FAILED
    assert source.acknowledged == []


def test_label_trigger_acknowledge_failure_keeps_dns_change() -> None:
    hosts = [
        make_host("a.example.com", ingress="one", labels={"kubehomedns": ""}),
        make_host("b.example.com", ingress="two", labels={"kubehomedns": ""}),
    ]
    source, reconciler, store = create_test_setup(hosts=hosts, fail_acknowledge=True)

    outcomes = make_label_loop(source, reconciler).run_once()

    assert [o.kind for o in outcomes] == [OutcomeKind.CREATED, OutcomeKind.CREATED]
    assert len(source.acknowledged) == 2
    assert store.records_named("a.example.com")[0].content == "2.2.2.2"
    assert store.delete_calls == []


def test_label_trigger_excluded_host_only_clears_label() -> None:
    hosts = [make_host("admin.lan", labels={"kubehomedns": ""})]
    source, reconciler, store = create_test_setup(hosts=hosts)

    loop = make_label_loop(source, reconciler, exclude_patterns=_parse_exclude_patterns("*.lan"))
    outcomes = loop.run_once()

    assert outcomes == []
    assert store.list_calls == 0
    assert len(source.acknowledged) == 1


def test_label_trigger_returns_none_when_listing_fails() -> None:
    source, reconciler, _ = create_test_setup(list_failures=1)

    assert make_label_loop(source, reconciler).run_once() is None
