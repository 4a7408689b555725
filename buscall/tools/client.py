import asyncio
import typing
from typing import Any, Optional

import zmq

from .. import log
from ..call import Fired
from ..conn import Connection
from ..message import Flags
from ..transport import DatagramNode, node_from_address


def make_connection(options: dict[str, Any]) -> Connection:
    """Build a connection to the bus from command-line options."""
    address = options['bus_address']
    send_timeout = round(options['send_timeout'] * 1000)
    node = node_from_address(address, options={zmq.SNDTIMEO: send_timeout})
    # Datagram nodes are connected to the bus, so no per-message address is needed.
    bus_address: Optional[bytes] = None
    if not isinstance(node, DatagramNode):
        bus_address = options['bus_identity'].encode()
    return Connection(node, bus_address)


def get_flags(options: dict[str, Any]) -> Flags:
    flags = Flags.NONE
    if options['no_reply']:
        flags |= Flags.NO_REPLY_EXPECTED
    if options['no_auto_start']:
        flags |= Flags.NO_AUTO_START
    return flags


async def main(options: dict[str, Any]) -> bool:
    """Issue one method call. Returns whether the call succeeded."""
    logger = log.get_logger().bind(
        destination=options['destination'],
        path=options['path'],
        method=options['method'],
    )
    try:
        async with make_connection(options) as conn:
            obj = conn.object(options['destination'], options['path'])
            flags = get_flags(options)
            if flags & Flags.NO_REPLY_EXPECTED:
                sent = await obj.go(options['method'], *options['arguments'], flags=flags)
                outcome = typing.cast(Fired, sent)
                # Let the writer drain the outbound queue before the connection closes.
                await conn.outbound.join()
                await logger.info('Remote call sent', serial=outcome.serial)
                return True
            request = obj.call(options['method'], *options['arguments'], flags=flags)
            call = await asyncio.wait_for(request, options['timeout'])
            result = call.result()
    except Exception as exc:
        await logger.error('Remote call failed', exc_info=exc)
        return False
    await logger.info('Remote call succeeded', result=list(result))
    return True
