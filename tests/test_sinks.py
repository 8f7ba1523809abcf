"""Tests for record sinks."""

from __future__ import annotations

import io
import queue

from blobtail.sinks import CallbackSink, QueueSink, RecordSink, StreamSink


def test_queue_sink():
    sink = QueueSink()
    sink.emit(b"one")
    sink.emit(b"two")
    assert sink.queue.get_nowait() == b"one"
    assert sink.queue.get_nowait() == b"two"


def test_queue_sink_uses_given_queue():
    q: queue.Queue[bytes] = queue.Queue(maxsize=1)
    QueueSink(q).emit(b"x")
    assert q.get_nowait() == b"x"


def test_stream_sink_terminates_records():
    out = io.BytesIO()
    sink = StreamSink(out)
    sink.emit(b'{"a":1}')
    sink.emit(b'{"b":2}\n')
    assert out.getvalue() == b'{"a":1}\n{"b":2}\n'


def test_sinks_satisfy_protocol():
    assert isinstance(QueueSink(), RecordSink)
    assert isinstance(CallbackSink(print), RecordSink)
    assert isinstance(StreamSink(io.BytesIO()), RecordSink)
