import asyncio
import ssl

import pytest

from scriptclient.pipeline import PlainPipeline, SecuredPipeline, select_pipeline
from scriptclient.signals import CompletionSignal


def _signals():
    return CompletionSignal("connected"), CompletionSignal("data-received")


def test_select_plain_pipeline():
    connected, data_received = _signals()
    pipeline = select_pipeline(False, connected, data_received, 5)

    assert isinstance(pipeline, PlainPipeline)
    assert pipeline.ssl_context() is None
    assert pipeline.counter.limit == 5
    assert pipeline.counter.signal is data_received


def test_select_secured_pipeline_uses_given_context():
    connected, data_received = _signals()
    context = ssl.create_default_context()
    pipeline = select_pipeline(True, connected, data_received, 1, ssl_context=context)

    assert isinstance(pipeline, SecuredPipeline)
    assert pipeline.secured
    assert pipeline.ssl_context() is context


def test_secured_pipeline_default_context_accepts_self_signed():
    connected, data_received = _signals()
    context = select_pipeline(True, connected, data_received, 1).ssl_context()

    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


def test_open_failure_fails_connected(refused_port):
    connected, data_received = _signals()
    pipeline = PlainPipeline(connected, data_received, 1)

    with pytest.raises(ConnectionError):
        asyncio.run(pipeline.open("127.0.0.1", refused_port, timeout=5.0))
    assert isinstance(connected.view().exception(), ConnectionError)


def test_open_installs_counter(sink_server):
    server = sink_server(reply=b"\x04\x00\x00\x08\x00\x00\x00\x01")
    connected, data_received = _signals()
    pipeline = PlainPipeline(connected, data_received, 1)

    async def _exercise():
        reader, writer = await pipeline.open(server.host, server.port, timeout=5.0)
        await asyncio.wait_for(asyncio.wrap_future(data_received.view().future), timeout=5)
        writer.close()
        await writer.wait_closed()
        await asyncio.wait_for(pipeline.reader_task, timeout=5)

    asyncio.run(_exercise())
    assert connected.view().result() is True
    assert data_received.view().succeeded()
