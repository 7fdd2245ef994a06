from __future__ import annotations

from typing import Any

import pytest
from elastic_transport import ConnectionError as ESConnectionError

from factories import make_row, utc
from searchsync.core.errors import DiscoveryError, PublishError, SourceQueryError
from searchsync.sync.changelog import FetchResult
from searchsync.sync.models import ChangeRow, SinkDocument, SyncConfig
from searchsync.sync import orchestrator as orchestrator_module
from searchsync.sync.orchestrator import (
    ConfigStatus,
    CycleReport,
    Stage,
    SyncOrchestrator,
    run_once,
)
from searchsync.sync.publisher import SearchPublisher

ACME = "datasource_postgresql_connection_acme"
GLOBEX = "datasource_postgresql_connection_globex"


class FakeStore:
    """In-memory stand-in for the Elasticsearch-backed metadata store."""

    def __init__(self, docs: dict[str, list[dict[str, Any]]]):
        self.docs = docs
        self.writes: list[tuple[str, str, dict[str, Any]]] = []
        self.discovery_error: Exception | None = None
        self.read_errors: dict[str, Exception] = {}
        self.update_error: Exception | None = None

    def list_indices(self, prefix: str) -> list[str]:
        if self.discovery_error is not None:
            raise self.discovery_error
        return sorted(name for name in self.docs if name.startswith(prefix))

    def search_all(self, index: str) -> list[dict[str, Any]]:
        if index in self.read_errors:
            raise self.read_errors[index]
        return [{"id": d["id"], "source": dict(d["source"])} for d in self.docs[index]]

    def update_document_field(self, index: str, doc_id: str, fields: dict[str, Any]) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.writes.append((index, doc_id, fields))
        for doc in self.docs[index]:
            if doc["id"] == doc_id:
                doc["source"].update(fields)


class FakeSource:
    def __init__(self, rows: dict[str, list[ChangeRow]] | None = None):
        self.rows = rows or {}
        self.errors: dict[str, Exception] = {}
        self.fetched: list[str] = []

    def fetch_changed_rows(self, config: SyncConfig) -> FetchResult:
        self.fetched.append(config.id)
        if config.table_name in self.errors:
            raise self.errors[config.table_name]
        cursor = config.cursor()
        rows = sorted(
            (r for r in self.rows.get(config.table_name, []) if r.change_time > cursor),
            key=lambda r: r.change_time,
        )
        return FetchResult(cursor=cursor, rows=rows)


class FakePublisher:
    def __init__(self):
        self.batches: list[tuple[str, list[SinkDocument]]] = []
        self.error: Exception | None = None

    def publish(self, documents, index_name):
        if self.error is not None:
            raise self.error
        self.batches.append((index_name, list(documents)))
        return None


def _doc(doc_id: str, table: str, *, coid: str = "ACME", updated: Any = "2024-01-01T00:00:00Z", **extra: Any):
    source = {
        "table_name": table,
        "field_name": "notes",
        "field_type": "text",
        "category": table,
        "coid": coid,
        "updatedAt": updated,
        **extra,
    }
    return {"id": doc_id, "source": source}


def _orchestrator(settings, store, source, publisher, **kwargs) -> SyncOrchestrator:
    return SyncOrchestrator(store, source, publisher, settings=settings, **kwargs)  # type: ignore[arg-type]


def test_end_to_end_insert_and_update(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    source = FakeSource(
        {
            "orders": [
                make_row(10, utc(2024, 1, 2, 9), "first note", "INSERT"),
                make_row(11, utc(2024, 1, 3, 17, 45), "second note", "UPDATE"),
            ]
        }
    )
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    assert report.ok
    [(index, docs)] = publisher.batches
    assert index == "tenant_acme"
    assert [d.to_payload()["@search.action"] for d in docs] == ["upload", "mergeOrUpload"]
    assert [d.id for d in docs] == ["10", "11"]
    assert store.writes == [(ACME, "cfg-1", {"updatedAt": "2024-01-03T17:45:00Z"})]

    outcome = report.connections[0].configs[0]
    assert outcome.status is ConfigStatus.SYNCED
    assert outcome.rows_fetched == 2
    assert outcome.documents_published == 2
    assert outcome.watermark == utc(2024, 1, 3, 17, 45)


def test_no_rows_means_no_publish_and_no_checkpoint(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    publisher = FakePublisher()

    report = _orchestrator(settings, store, FakeSource(), publisher).run_cycle()

    assert publisher.batches == []
    assert store.writes == []
    assert report.connections[0].configs[0].status is ConfigStatus.NO_CHANGES


def test_second_run_without_new_rows_is_a_noop(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    source = FakeSource({"orders": [make_row(1, utc(2024, 1, 2), "x", "INSERT")]})
    publisher = FakePublisher()
    orchestrator = _orchestrator(settings, store, source, publisher)

    orchestrator.run_cycle()
    second = orchestrator.run_cycle()

    assert len(publisher.batches) == 1
    assert len(store.writes) == 1
    assert second.connections[0].configs[0].status is ConfigStatus.NO_CHANGES


def test_config_without_checkpoint_fetches_full_history(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders", updated=None)]})
    source = FakeSource({"orders": [make_row(1, utc(1999, 12, 31), "old")]})
    publisher = FakePublisher()

    _orchestrator(settings, store, source, publisher).run_cycle()

    assert [d.id for _, docs in publisher.batches for d in docs] == ["1"]
    assert store.writes == [(ACME, "cfg-1", {"updatedAt": "1999-12-31T00:00:00Z"})]


def test_publish_failure_leaves_watermark_untouched(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    source = FakeSource({"orders": [make_row(1, utc(2024, 1, 2))]})
    publisher = FakePublisher()
    publisher.error = PublishError("sink down", status_code=503)

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    assert store.writes == []
    outcome = report.connections[0].configs[0]
    assert outcome.status is ConfigStatus.FAILED
    assert outcome.failed_stage is Stage.PUBLISH
    assert not report.ok


def test_dropped_rows_still_advance_watermark(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    source = FakeSource(
        {
            "orders": [
                make_row(1, utc(2024, 1, 2), "kept"),
                make_row(2, utc(2024, 1, 3), ""),
            ]
        }
    )
    publisher = FakePublisher()

    _orchestrator(settings, store, source, publisher).run_cycle()

    [(_, docs)] = publisher.batches
    assert [d.id for d in docs] == ["1"]
    assert store.writes == [(ACME, "cfg-1", {"updatedAt": "2024-01-03T00:00:00Z"})]


def test_all_rows_dropped_skips_publish_but_advances(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    source = FakeSource({"orders": [make_row(1, utc(2024, 1, 2), None)]})
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    assert publisher.batches == []
    assert store.writes == [(ACME, "cfg-1", {"updatedAt": "2024-01-02T00:00:00Z"})]
    assert report.connections[0].configs[0].documents_published == 0


def test_failing_row_does_not_block_siblings(settings):
    def processor(value, field_type):
        if value == "poison":
            raise ValueError("cannot parse")
        return value

    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    source = FakeSource(
        {
            "orders": [
                make_row(1, utc(2024, 1, 2), "ok"),
                make_row(2, utc(2024, 1, 3), "poison"),
                make_row(3, utc(2024, 1, 4), "also ok"),
            ]
        }
    )
    publisher = FakePublisher()

    _orchestrator(settings, store, source, publisher, processor=processor).run_cycle()

    [(_, docs)] = publisher.batches
    assert [d.id for d in docs] == ["1", "3"]
    assert store.writes[-1][2] == {"updatedAt": "2024-01-04T00:00:00Z"}


def test_batch_where_every_row_fails_still_completes(settings):
    def processor(value, field_type):
        raise ValueError("cannot parse")

    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    source = FakeSource({"orders": [make_row(1, utc(2024, 1, 2)), make_row(2, utc(2024, 1, 3))]})
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher, processor=processor).run_cycle()

    outcome = report.connections[0].configs[0]
    assert outcome.status is ConfigStatus.SYNCED
    assert outcome.failed_stage is None
    assert publisher.batches == []
    assert store.writes == [(ACME, "cfg-1", {"updatedAt": "2024-01-03T00:00:00Z"})]


def test_failing_config_does_not_block_next_config(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders"), _doc("cfg-2", "invoices")]})
    source = FakeSource({"invoices": [make_row(5, utc(2024, 1, 2))]})
    source.errors["orders"] = SourceQueryError("auth failed", table="orders")
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    assert source.fetched == ["cfg-1", "cfg-2"]
    statuses = [o.status for o in report.connections[0].configs]
    assert statuses == [ConfigStatus.FAILED, ConfigStatus.SYNCED]
    assert report.connections[0].configs[0].failed_stage is Stage.FETCH
    assert store.writes == [(ACME, "cfg-2", {"updatedAt": "2024-01-02T00:00:00Z"})]


def test_unexpected_error_is_isolated_too(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders"), _doc("cfg-2", "invoices")]})
    source = FakeSource({"invoices": [make_row(5, utc(2024, 1, 2))]})
    source.errors["orders"] = KeyError("row_id")
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    assert [o.status for o in report.connections[0].configs] == [
        ConfigStatus.FAILED,
        ConfigStatus.SYNCED,
    ]


def test_connection_read_failure_does_not_block_other_connections(settings):
    store = FakeStore(
        {
            ACME: [_doc("cfg-1", "orders")],
            GLOBEX: [_doc("cfg-9", "tickets", coid="Globex")],
        }
    )
    store.read_errors[ACME] = ESConnectionError("shard unavailable")
    source = FakeSource({"tickets": [make_row(1, utc(2024, 1, 2))]})
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    assert [c.connection for c in report.connections] == [ACME, GLOBEX]
    assert report.connections[0].error is not None
    assert report.connections[1].configs[0].status is ConfigStatus.SYNCED
    assert [index for index, _ in publisher.batches] == ["tenant_globex"]
    assert report.failures == [(ACME, None)]


def test_malformed_config_is_reported_and_siblings_sync(settings):
    store = FakeStore(
        {
            ACME: [
                {"id": "broken", "source": {"table_name": "orders", "coid": "ACME"}},
                _doc("cfg-2", "invoices"),
            ]
        }
    )
    source = FakeSource({"invoices": [make_row(5, utc(2024, 1, 2))]})
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    broken, good = report.connections[0].configs
    assert broken.config_id == "broken"
    assert broken.failed_stage is Stage.READ_CONFIGS
    assert good.status is ConfigStatus.SYNCED
    assert source.fetched == ["cfg-2"]


def test_checkpoint_failure_is_reported_distinctly(settings, caplog):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    store.update_error = ESConnectionError("write rejected")
    source = FakeSource({"orders": [make_row(1, utc(2024, 1, 2))]})
    publisher = FakePublisher()

    report = _orchestrator(settings, store, source, publisher).run_cycle()

    outcome = report.connections[0].configs[0]
    assert outcome.failed_stage is Stage.ADVANCE_CHECKPOINT
    assert outcome.documents_published == 1
    assert len(publisher.batches) == 1
    assert "re-delivered" in caplog.text


def test_discovery_failure_aborts_cycle(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders")]})
    store.discovery_error = ESConnectionError("cluster unreachable")
    source = FakeSource()

    with pytest.raises(DiscoveryError):
        _orchestrator(settings, store, source, FakePublisher()).run_cycle()
    assert source.fetched == []


def test_no_connections_is_an_empty_report(settings):
    report = _orchestrator(settings, FakeStore({}), FakeSource(), FakePublisher()).run_cycle()

    assert report.connections == []
    assert report.ok
    assert report.counts()["connections"] == 0


def test_counts_summarise_cycle(settings):
    store = FakeStore({ACME: [_doc("cfg-1", "orders"), _doc("cfg-2", "invoices")]})
    source = FakeSource({"orders": [make_row(1, utc(2024, 1, 2)), make_row(2, utc(2024, 1, 3))]})

    report = _orchestrator(settings, store, source, FakePublisher()).run_cycle()

    assert report.counts() == {
        "connections": 1,
        "configs": 2,
        "synced": 1,
        "unchanged": 1,
        "failed": 0,
        "documents": 2,
    }


@pytest.mark.parametrize("fail", [False, True])
def test_run_once_closes_client_and_publisher_session(settings, monkeypatch, fail):
    closed: list[str] = []

    class _Client:
        def close(self) -> None:
            closed.append("client")

    class _Session:
        def close(self) -> None:
            closed.append("session")

    def _run_cycle(self):
        if fail:
            raise DiscoveryError("catalog unreachable")
        return CycleReport()

    monkeypatch.setattr(orchestrator_module, "build_client", lambda _settings: _Client())
    monkeypatch.setattr(
        orchestrator_module,
        "SearchPublisher",
        lambda s: SearchPublisher(s, session=_Session()),  # type: ignore[arg-type]
    )
    monkeypatch.setattr(SyncOrchestrator, "run_cycle", _run_cycle)

    if fail:
        with pytest.raises(DiscoveryError):
            run_once(settings)
    else:
        assert run_once(settings).ok

    assert closed == ["session", "client"]
