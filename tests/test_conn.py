import asyncio
import threading
from dataclasses import dataclass

import pytest

from buscall import log
from buscall.conn import Connection, SerialSource
from buscall.exception import BusError, ConnectionClosedError, TransportError
from buscall.message import Flags, HeaderField, Message, MessageType
from buscall.signature import ObjectPath, Signature, Variant
from buscall.transport import Node, decode_message, encode_message


def make_reply(serial: int, *body) -> Message:
    headers = {HeaderField.REPLY_SERIAL: Variant(Signature('u'), serial)}
    return Message(MessageType.METHOD_RETURN, serial=1, headers=headers, body=body)


@dataclass
class EchoNode(Node):
    """A node that answers every method call with the call's own arguments."""

    is_open: bool = False

    async def send(self, parts, /, *, address=None):
        message = await decode_message(parts[0])
        if message.member == 'Unreachable':
            raise TransportError('peer unreachable')
        self.send_count += 1
        if not message.flags & Flags.NO_REPLY_EXPECTED:
            reply = make_reply(message.serial, *message.body)
            await self.recv_queue.put(([await encode_message(reply)], address))

    async def open(self):
        self.is_open = True

    def close(self):
        self.is_open = False

    @property
    def closed(self):
        return not self.is_open

    @property
    def can_recv(self):
        return True


@pytest.fixture(autouse=True)
def logger():
    log.configure()


@pytest.fixture
async def conn():
    async with Connection() as conn:
        yield conn


def test_serials_sequential():
    serials = SerialSource()
    assert [serials.acquire() for _ in range(3)] == [1, 2, 3]


def test_serials_exhausted():
    serials = SerialSource(first=5, upper=6)
    assert serials.acquire() == 5
    assert serials.acquire() == 6
    with pytest.raises(BusError):
        serials.acquire()
    with pytest.raises(BusError):
        serials.acquire()


@pytest.mark.parametrize('first,upper', [(0, 10), (-1, 10), (11, 10)])
def test_serials_invalid(first, upper):
    with pytest.raises(ValueError):
        SerialSource(first=first, upper=upper)


def test_serials_threadsafe():
    serials, acquired = SerialSource(), []
    lock = threading.Lock()

    def acquire_many():
        batch = [serials.acquire() for _ in range(500)]
        with lock:
            acquired.extend(batch)

    threads = [threading.Thread(target=acquire_many) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sorted(acquired) == list(range(1, 4001))


def test_outbound_capacity_invalid():
    with pytest.raises(ValueError):
        Connection(outbound_capacity=0)


@pytest.mark.asyncio
async def test_resolve_unknown_serial(conn):
    with pytest.raises(BusError):
        await conn.resolve(make_reply(12345))


@pytest.mark.asyncio
async def test_resolve_twice_rejected(conn):
    obj = conn.object('org.example', '/')
    outcome = await obj.go('Ping')
    await conn.resolve(make_reply(outcome.call.serial))
    with pytest.raises(BusError):
        await conn.resolve(make_reply(outcome.call.serial))
    assert outcome.call.done.qsize() == 1


@pytest.mark.asyncio
async def test_resolve_rejects_non_replies(conn):
    obj = conn.object('org.example', '/')
    outcome = await obj.go('Ping')
    message = conn.outbound.get_nowait()
    with pytest.raises(BusError):
        await conn.resolve(message)
    assert outcome.call.serial in conn.calls


@pytest.mark.asyncio
async def test_register_duplicate(conn):
    obj = conn.object('org.example', '/')
    outcome = await obj.go('Ping')
    with pytest.raises(BusError):
        conn.register(outcome.call)


@pytest.mark.asyncio
async def test_fail(conn):
    obj = conn.object('org.example', '/')
    outcome = await obj.go('Ping')
    error = TransportError('send failed')
    await conn.fail(outcome.call.serial, error)
    assert outcome.call.done.get_nowait().error is error
    assert not conn.calls
    await conn.fail(outcome.call.serial, error)
    assert outcome.call.done.empty()


@pytest.mark.asyncio
async def test_close_flushes_pending():
    async with Connection() as conn:
        obj = conn.object('org.example', '/')
        outcomes = [await obj.go('Ping') for _ in range(3)]
    assert conn.closed
    assert not conn.calls
    for outcome in outcomes:
        call = outcome.call.done.get_nowait()
        assert isinstance(call.error, ConnectionClosedError)
        with pytest.raises(ConnectionClosedError):
            call.result()


@pytest.mark.asyncio
async def test_close_with_full_queue():
    done = asyncio.Queue(1)
    async with Connection() as conn:
        obj = conn.object('org.example', '/')
        outcome = await obj.go('Ping', done=done)
        done.put_nowait(None)
    assert done.get_nowait() is None
    assert isinstance(outcome.call.error, ConnectionClosedError)


@pytest.mark.asyncio
async def test_dispatch_after_close():
    async with Connection() as conn:
        obj = conn.object('org.example', '/')
    outcome = await obj.go('Ping')
    call = outcome.call.done.get_nowait()
    assert isinstance(call.error, ConnectionClosedError)
    assert not conn.calls
    assert conn.outbound.empty()
    fired = await obj.go('Ping', flags=Flags.NO_REPLY_EXPECTED)
    assert fired.serial > outcome.call.serial
    assert conn.outbound.empty()


@pytest.mark.asyncio
async def test_workers_round_trip():
    node = EchoNode()
    async with Connection(node) as conn:
        assert not node.closed
        obj = conn.object('org.example', '/org/example')
        args = ('text', 1 << 40, [1, 2], {'key': 1.5}, ('a', True), ObjectPath('/x'))
        call = await asyncio.wait_for(obj.call('org.example.Echo', *args), 1)
        assert call.result() == args
        assert isinstance(call.result()[-1], ObjectPath)
        calls = await asyncio.wait_for(
            asyncio.gather(*(obj.call('Echo', i) for i in range(20))),
            1,
        )
        assert [call.result() for call in calls] == [(i,) for i in range(20)]
    assert node.closed


@pytest.mark.asyncio
async def test_send_failure_resolves_call():
    async with Connection(EchoNode()) as conn:
        obj = conn.object('org.example', '/')
        call = await asyncio.wait_for(obj.call('Unreachable'), 1)
        assert isinstance(call.error, TransportError)
        assert not conn.calls


@pytest.mark.asyncio
async def test_recv_skips_bad_messages():
    node = EchoNode()
    async with Connection(node) as conn:
        await node.recv_queue.put(([b'\xff'], None))
        await node.recv_queue.put(([await encode_message(make_reply(9999))], None))
        obj = conn.object('org.example', '/')
        call = await asyncio.wait_for(obj.call('Echo', 'still alive'), 1)
        assert call.result() == ('still alive',)


@pytest.mark.asyncio
async def test_recv_skips_malformed_reply_serial():
    node = EchoNode()
    async with Connection(node) as conn:
        reply = make_reply(1)
        reply.headers[HeaderField.REPLY_SERIAL] = Variant(Signature('au'), [1])
        await node.recv_queue.put(([await encode_message(reply)], None))
        obj = conn.object('org.example', '/')
        call = await asyncio.wait_for(obj.call('Echo', 'still alive'), 1)
        assert call.result() == ('still alive',)


@pytest.mark.asyncio
@pytest.mark.parametrize('reply_serial', [[1], '1', True, 1.0, None])
async def test_resolve_rejects_non_integer_serial(conn, reply_serial):
    obj = conn.object('org.example', '/')
    outcome = await obj.go('Ping')
    reply = make_reply(outcome.call.serial)
    reply.headers[HeaderField.REPLY_SERIAL] = Variant(Signature('v'), reply_serial)
    with pytest.raises(BusError):
        await conn.resolve(reply)
    assert outcome.call.serial in conn.calls


@pytest.mark.asyncio
async def test_outbound_drained_for_notifications():
    node = EchoNode()
    async with Connection(node) as conn:
        obj = conn.object('org.example', '/')
        await obj.go('Notify', flags=Flags.NO_REPLY_EXPECTED)
        await asyncio.wait_for(conn.outbound.join(), 1)
        assert node.send_count == 1
        assert node.recv_queue.empty()
