import asyncio

import cbor2
import pytest
import zmq

from buscall import log
from buscall.conn import Connection
from buscall.exception import RemoteError, TransportError
from buscall.message import Flags, HeaderField, Message, MessageType, new_method_call
from buscall.signature import ObjectPath, Signature, Variant
from buscall.transport import (
    DatagramNode,
    SocketNode,
    decode_message,
    encode_message,
    node_from_address,
)

UDP_ADDR = 'udp://127.0.0.1:6070'


@pytest.fixture(autouse=True)
def logger():
    log.configure()


@pytest.fixture
async def peer():
    """A scripted peer that echoes arguments, or fails calls to ``Fail``."""
    async def serve(node):
        while True:
            frames, address = await node.recv()
            request = await decode_message(frames[0])
            if request.flags & Flags.NO_REPLY_EXPECTED:
                continue
            headers = {HeaderField.REPLY_SERIAL: Variant(Signature('u'), request.serial)}
            reply = Message(MessageType.METHOD_RETURN, serial=1, headers=headers)
            if request.member == 'Fail':
                reply.type = MessageType.ERROR
                headers[HeaderField.ERROR_NAME] = Variant(Signature('s'), 'org.example.Failed')
                reply.body = ('failed on purpose',)
            else:
                reply.body = request.body
            await node.send([await encode_message(reply)], address=address)

    async with DatagramNode.from_address(UDP_ADDR, bind=True) as node:
        task = asyncio.create_task(serve(node))
        yield node
        task.cancel()


@pytest.mark.asyncio
async def test_encode_decode():
    message = new_method_call(
        'org.example',
        ObjectPath('/org/example'),
        'org.example.Echo.Echo',
        ['hi', (1, b'raw'), {'k': Variant.of(ObjectPath('/a'))}],
        serial=17,
        flags=Flags.NO_AUTO_START,
    )
    decoded = await decode_message(await encode_message(message))
    assert decoded == message
    assert isinstance(decoded.path, ObjectPath)
    assert isinstance(decoded.signature, Signature)
    assert decoded.flags is Flags.NO_AUTO_START
    assert isinstance(decoded.body[1], tuple)
    assert isinstance(decoded.body[2]['k'].value, ObjectPath)


@pytest.mark.asyncio
@pytest.mark.parametrize('frame', [
    [],
    ['little', 1, 0, 1, {}, 'not a list'],
    ['little', 1, 0, 1, {1: 'not a variant'}, []],
    ['little', 99, 0, 1, {}, []],
])
async def test_decode_invalid(frame):
    with pytest.raises(ValueError):
        await decode_message(cbor2.dumps(frame))


@pytest.mark.asyncio
async def test_decode_garbage():
    with pytest.raises(cbor2.CBORDecodeError):
        await decode_message(b'\x82\x01')


@pytest.mark.asyncio
async def test_encode_unsupported():
    message = Message(MessageType.METHOD_CALL, serial=1, body=(object(),))
    with pytest.raises(cbor2.CBOREncodeError):
        await encode_message(message)


def test_node_from_address():
    node = node_from_address('udp://localhost:7000')
    assert isinstance(node, DatagramNode)
    assert (node.host, node.port, node.bind) == ('localhost', 7000, False)
    with pytest.raises(ValueError):
        node_from_address('http://localhost:7000')
    with pytest.raises(ValueError):
        node_from_address('udp://localhost')


@pytest.mark.asyncio
async def test_socket_node_from_address():
    node = node_from_address('tcp://localhost:7001', options={zmq.SNDTIMEO: 100})
    assert isinstance(node, SocketNode)
    assert node.connections == {'tcp://localhost:7001'}
    assert node.options[zmq.SNDTIMEO] == 100
    assert node.options[zmq.PROBE_ROUTER] == 1
    assert node.closed


@pytest.mark.asyncio
async def test_datagram_node_lifecycle():
    node = DatagramNode.from_address(UDP_ADDR, bind=False)
    assert node.closed
    with pytest.raises(TransportError):
        await node.send([b'data'])
    async with node:
        assert not node.closed
    assert node.closed


@pytest.mark.asyncio
async def test_udp_round_trip(peer):
    async with Connection(node_from_address(UDP_ADDR)) as conn:
        obj = conn.object('org.example', '/org/example')
        call = await asyncio.wait_for(obj.call('org.example.Echo', 'hi', [1, 2]), 1)
        assert call.result() == ('hi', [1, 2])
        call = await asyncio.wait_for(obj.call('Fail'), 1)
        with pytest.raises(RemoteError) as excinfo:
            call.result()
        assert excinfo.value.name == 'org.example.Failed'
        outcome = await obj.go('Notify', flags=Flags.NO_REPLY_EXPECTED)
        await asyncio.wait_for(conn.outbound.join(), 1)
        assert conn.node.send_count == 3
        assert outcome.serial not in conn.calls
