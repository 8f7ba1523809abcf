"""End-to-end tests for the poll loop over an in-memory container."""

from __future__ import annotations

import threading

import pytest

from blobtail.errors import LeaseTimeoutError, MalformedStructureError
from blobtail.lease import LeaseManager
from blobtail.registry import RegistryItem, RegistryStore
from blobtail.runtime import BlobTail, ReaderState
from blobtail.sinks import CallbackSink
from tests.conftest import FailingSink, RecordingSink, make_config

REGISTRY = "data/registry"
LOCK = "data/registry.lock"


def _registry(store):
    return RegistryStore(store, REGISTRY).load()


def _reader(store, reader_id: str, **overrides) -> BlobTail:
    return BlobTail(make_config(reader_id=reader_id, **overrides), store=store)


class TestRegisterForRead:
    def test_two_readers_split_the_container(self, store):
        store.create_or_replace("a.log", b"a" * 4096)
        store.create_or_replace("b.log", b"b" * 2048)

        r1 = _reader(store, "r1")
        claim = r1.register_for_read()
        assert claim is not None
        assert claim.path == "a.log"
        assert claim.start_offset == 0

        registry = _registry(store)
        assert set(registry) == {"a.log", "b.log"}
        assert registry["a.log"].owner == "r1"
        assert registry["a.log"].generation == 1
        assert registry["b.log"].generation == 0
        assert registry["b.log"].offset == 0

        r2 = _reader(store, "r2")
        claim = r2.register_for_read()
        assert claim is not None
        assert claim.path == "b.log"
        assert _registry(store)["b.log"].owner == "r2"
        assert not store.has_lease(LOCK)

    def test_resume_policy_skips_existing_content(self, store):
        store.create_or_replace("a.log", b"x" * 100)
        reader = _reader(store, "r1", registry_create_policy="resume")
        assert reader.register_for_read() is None
        assert _registry(store)["a.log"].offset == 100

        store.append("a.log", b"y" * 10)
        claim = reader.register_for_read()
        assert claim is not None
        assert claim.start_offset == 100

    def test_blobs_added_later_start_at_zero(self, store):
        store.create_or_replace("a.log", b"x" * 100)
        reader = _reader(store, "r1", registry_create_policy="resume")
        reader.register_for_read()

        store.create_or_replace("b.log", b"z" * 5)
        claim = reader.register_for_read()
        assert claim is not None
        assert claim.path == "b.log"
        assert claim.start_offset == 0

    def test_registry_and_lock_are_not_tracked(self, store):
        store.create_or_replace("a.log", b"{}")
        reader = _reader(store, "r1")
        reader.register_for_read()
        reader.register_for_read()
        assert set(_registry(store)) == {"a.log"}

    def test_lease_contention_surfaces_timeout(self, store):
        store.create_or_replace("a.log", b"{}")
        LeaseManager(store, duration=15).acquire(LOCK)
        reader = _reader(store, "r1")
        with pytest.raises(LeaseTimeoutError):
            reader.register_for_read()


class TestProcessWholeChunks:
    def test_json_lines_emitted_once(self, store, sink):
        content = b'{"a":1}\n{"b":2}\n'
        store.create_or_replace("a.log", content)
        reader = _reader(store, "r1")

        assert reader.process(sink) is True
        assert sink.records == [content]

        item = _registry(store)["a.log"]
        assert item.offset == len(content)
        assert item.owner is None
        assert item.etag is not None

        # Nothing new: no claim, no records.
        assert reader.process(sink) is True
        assert sink.records == [content]

    def test_appended_data_is_read_from_committed_offset(self, store, sink):
        store.create_or_replace("a.log", b'{"a":1}\n')
        reader = _reader(store, "r1")
        reader.process(sink)
        store.append("a.log", b'{"b":2}\n')
        reader.process(sink)
        assert sink.records == [b'{"a":1}\n', b'{"b":2}\n']

    def test_leading_separator_dropped_for_json_records(self, store, sink):
        store.create_or_replace("a.log", b'{"a":1}')
        reader = _reader(store, "r1")
        reader.process(sink)
        store.append("a.log", b',{"b":2}')
        reader.process(sink)
        assert sink.records == [b'{"a":1}', b'{"b":2}']

    def test_non_json_records_are_passed_through(self, store, sink):
        store.create_or_replace("a.log", b"plain text line\n")
        reader = _reader(store, "r1", json_records=False)
        reader.process(sink)
        assert sink.records == [b"plain text line\n"]

    def test_head_is_prepended(self, store, sink):
        store.create_or_replace("a.csv", b"id,v\n1,a\n")
        reader = _reader(store, "r1", json_records=False, file_head_bytes=5)
        reader.process(sink)
        store.append("a.csv", b"2,b\n")
        reader.process(sink)
        assert sink.records == [b"id,v\n1,a\n", b"id,v\n2,b\n"]

    def test_bounded_chunks_keep_polling(self, store, sink):
        store.create_or_replace("a.log", b"x" * 25)
        reader = _reader(store, "r1", json_records=False, max_buffer_size=10)
        assert reader.process(sink) is False
        assert reader.process(sink) is False
        assert reader.process(sink) is True
        assert b"".join(sink.records) == b"x" * 25
        assert _registry(store)["a.log"].offset == 25


WRAPPED = b'{"r":[{"id":1},{"id":2},{"id":3}]}'


class TestProcessSplitting:
    def test_with_head_tail_frames_each_batch(self, store, sink):
        store.create_or_replace("a.json", WRAPPED)
        reader = _reader(
            store,
            "r1",
            json_split_policy="with_head_tail",
            file_head_bytes=6,
            file_tail_bytes=2,
            split_batch_count=2,
        )
        assert reader.process(sink) is True
        assert sink.records == [b'{"r":[{"id":1},{"id":2}]}', b'{"r":[{"id":3}]}']
        assert _registry(store)["a.json"].offset == len(WRAPPED)

        # The writer rewrites its tail when it appends.
        store.create_or_replace("a.json", WRAPPED[:-2] + b',{"id":4}]}')
        reader.process(sink)
        assert sink.records[-1] == b'{"r":[{"id":4}]}'
        assert len(sink.records) == 3

    def test_without_head_tail_emits_raw_batches(self, store, sink):
        store.create_or_replace("a.json", WRAPPED)
        reader = _reader(
            store,
            "r1",
            json_split_policy="without_head_tail",
            file_head_bytes=6,
            file_tail_bytes=2,
            split_batch_count=10,
        )
        reader.process(sink)
        assert sink.records == [b'{"id":1},{"id":2},{"id":3}']

    def test_partial_object_waits_for_next_chunk(self, store, sink):
        store.create_or_replace("a.json", b'{"id":1},{"id":2},{"id":3}')
        reader = _reader(
            store, "r1", json_split_policy="without_head_tail", max_buffer_size=20
        )
        assert reader.process(sink) is False
        assert sink.records == [b'{"id":1},{"id":2}']
        assert _registry(store)["a.json"].offset == 17

        assert reader.process(sink) is True
        assert sink.records == [b'{"id":1},{"id":2}', b'{"id":3}']
        assert _registry(store)["a.json"].offset == 26

    def test_chunk_cut_at_object_end_is_not_reread(self, store, sink):
        store.create_or_replace("a.json", b'{"k":{}},{"b":1}')
        reader = _reader(
            store,
            "r1",
            json_split_policy="without_head_tail",
            file_tail_bytes=3,
            max_buffer_size=8,
        )
        reader.run(sink, max_iterations=6)
        assert sink.records == [b'{"k":{}}', b'{"b":1}']

    def test_tail_rewritten_after_bounded_chunks(self, store, sink):
        store.create_or_replace("a.json", b'{"r":[{"id":1},{"id":2}]}')
        reader = _reader(
            store,
            "r1",
            json_split_policy="without_head_tail",
            file_head_bytes=6,
            file_tail_bytes=2,
            max_buffer_size=10,
        )
        reader.run(sink, max_iterations=6)
        store.create_or_replace("a.json", b'{"r":[{"id":1},{"id":2},{"id":3}]}')
        reader.run(sink, max_iterations=6)
        assert sink.records == [b'{"id":1}', b'{"id":2}', b'{"id":3}']

    def test_object_larger_than_buffer_idles(self, store, sink):
        store.create_or_replace("a.json", b'{"payload":"' + b"x" * 50 + b'"}')
        reader = _reader(store, "r1", json_split_policy="without_head_tail", max_buffer_size=10)
        assert reader.process(sink) is True
        assert sink.records == []
        item = _registry(store)["a.json"]
        assert item.offset == 0
        assert item.owner is None

    def test_malformed_commits_emitted_prefix(self, store, sink):
        store.create_or_replace("a.json", b'{"a":1}}{"b":2}')
        reader = _reader(store, "r1", json_split_policy="without_head_tail")
        with pytest.raises(MalformedStructureError) as exc_info:
            reader.process(sink)
        assert exc_info.value.path == "a.json"
        assert exc_info.value.offset == 7
        assert sink.records == [b'{"a":1}']

        item = _registry(store)["a.json"]
        assert item.offset == 7
        assert item.owner is None
        assert not store.has_lease(LOCK)

    def test_sink_failure_commits_only_delivered_bytes(self, store):
        store.create_or_replace("a.json", b'{"id":1},{"id":2},{"id":3}')
        reader = _reader(store, "r1", json_split_policy="without_head_tail", split_batch_count=1)

        failing = FailingSink(limit=1)
        with pytest.raises(RuntimeError):
            reader.process(failing)
        assert failing.records == [b'{"id":1}']
        assert _registry(store)["a.json"].offset == 8

        retry = RecordingSink()
        reader.process(retry)
        assert retry.records == [b'{"id":2}', b'{"id":3}']
        assert _registry(store)["a.json"].offset == 26


class TestLifecycle:
    def test_cleanup_releases_ownership(self, store):
        store.create_or_replace("a.log", b"x" * 4096)
        RegistryStore(store, REGISTRY).save(
            {
                "a.log": RegistryItem(path="a.log", owner="r1", offset=2048, generation=3),
                "b.log": RegistryItem(path="b.log", owner="r2", offset=5),
            }
        )
        reader = _reader(store, "r1")
        assert reader.cleanup_registry() == ["a.log"]

        registry = _registry(store)
        assert registry["a.log"].owner is None
        assert registry["a.log"].offset == 2048
        assert registry["a.log"].generation == 3
        assert registry["b.log"].owner == "r2"

        claim = _reader(store, "r3").register_for_read()
        assert claim is not None
        assert claim.path == "a.log"
        assert claim.start_offset == 2048

    def test_cleanup_without_registry(self, store):
        assert _reader(store, "r1").cleanup_registry() == []

    def test_run_stops_after_max_iterations(self, store, sink):
        store.create_or_replace("a.log", b'{"a":1}\n')
        reader = _reader(store, "r1")
        reader.run(sink, max_iterations=3)
        assert sink.records == [b'{"a":1}\n']
        assert reader.state is ReaderState.STOPPED

    def test_run_survives_cycle_errors(self, store, sink):
        store.create_or_replace("a.json", b'{"a":1}}{"b":2}')
        store.create_or_replace("b.json", b'{"ok":true}')
        reader = _reader(store, "r1", json_split_policy="without_head_tail")
        reader.run(sink, max_iterations=4)
        assert b'{"ok":true}' in sink.records
        assert reader.state is ReaderState.STOPPED
        assert all(item.owner is None for item in _registry(store).values())

    def test_stop_before_run(self, store, sink):
        store.create_or_replace("a.log", b'{"a":1}')
        reader = _reader(store, "r1")
        reader.stop()
        reader.run(sink)
        assert sink.records == []
        assert reader.stopped
        assert reader.state is ReaderState.STOPPED

    def test_stop_from_sink_finishes_current_cycle(self, store):
        store.create_or_replace("a.log", b'{"a":1}')
        store.create_or_replace("b.log", b'{"b":2}')
        reader = _reader(store, "r1", interval=3600)
        seen: list[bytes] = []

        def on_record(record: bytes) -> None:
            seen.append(record)
            reader.stop()

        reader.run(CallbackSink(on_record))
        assert seen == [b'{"a":1}']
        assert _registry(store)["a.log"].offset == len(b'{"a":1}')
        assert _registry(store)["a.log"].owner is None

    def test_commit_after_stop_waits_for_contended_lock(self, store):
        store.create_or_replace("a.log", b'{"a":1}')
        reader = _reader(store, "r1", lease_retry_interval_s=0.1, lease_retry_count=20)
        other = LeaseManager(store, duration=15)
        timers: list[threading.Timer] = []

        def on_record(record: bytes) -> None:
            reader.stop()
            handle = other.acquire(LOCK)
            timer = threading.Timer(0.3, other.release, args=(handle,))
            timers.append(timer)
            timer.start()

        reader.run(CallbackSink(on_record))
        for timer in timers:
            timer.join()
        item = _registry(store)["a.log"]
        assert item.offset == len(b'{"a":1}')
        assert item.owner is None

    def test_commit_keeps_another_readers_claim(self, store):
        store.create_or_replace("a.log", b'{"a":1}')
        reader = _reader(store, "r1")
        registry_store = RegistryStore(store, REGISTRY)

        def on_record(record: bytes) -> None:
            registry = registry_store.load()
            registry["a.log"].owner = "r2"
            registry_store.save(registry)

        reader.process(CallbackSink(on_record))
        item = _registry(store)["a.log"]
        assert item.owner == "r2"
        assert item.offset == len(b'{"a":1}')

    def test_generated_reader_id(self, store):
        reader = BlobTail(make_config(), store=store)
        assert reader.reader_id
        assert reader.state is ReaderState.IDLE
