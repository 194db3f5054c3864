import asyncio

import pytest

from conftest import frame
from scriptclient.counter import InboundCounter, UNIT_BYTE
from scriptclient.signals import CompletionSignal


def test_frames_split_across_reads_are_counted_once():
    signal = CompletionSignal("data-received")
    counter = InboundCounter(signal, 2)
    data = frame(0, 1) + frame(5, 2, b"abcd")

    assert counter.feed(data[:5]) == 0
    assert counter.feed(data[5:10]) == 1
    assert not signal.done()
    assert counter.feed(data[10:]) == 1
    assert signal.view().result() is None


def test_byte_unit_counts_raw_bytes():
    signal = CompletionSignal("data-received")
    counter = InboundCounter(signal, 10, unit=UNIT_BYTE)

    counter.feed(b"12345")
    assert not signal.done()
    counter.feed(b"67890xyz")
    assert counter.count == 13
    assert signal.done()


def test_zero_threshold_met_on_connect():
    signal = CompletionSignal("data-received")
    InboundCounter(signal, 0).on_connected()
    assert signal.done()


def test_malformed_header_is_rejected():
    counter = InboundCounter(CompletionSignal("data-received"), 1)
    with pytest.raises(ValueError):
        counter.feed(b"\x04\x00\x00\x02\x00\x00\x00\x00")


def test_unknown_unit():
    with pytest.raises(ValueError):
        InboundCounter(CompletionSignal("data-received"), 1, unit="packet")


def test_consume_fails_signal_when_stream_ends_short():
    signal = CompletionSignal("data-received")
    counter = InboundCounter(signal, 3)

    async def _exercise():
        reader = asyncio.StreamReader()
        reader.feed_data(frame(0, 1) + frame(0, 2))
        reader.feed_eof()
        await counter.consume(reader)

    asyncio.run(_exercise())
    assert counter.count == 2
    assert isinstance(signal.view().exception(), ConnectionError)


def test_consume_reports_malformed_stream():
    signal = CompletionSignal("data-received")
    counter = InboundCounter(signal, 1)

    async def _exercise():
        reader = asyncio.StreamReader()
        reader.feed_data(b"\x04\x00\x00\x01\x00\x00\x00\x00")
        reader.feed_eof()
        await counter.consume(reader)

    asyncio.run(_exercise())
    assert isinstance(signal.view().exception(), ValueError)
