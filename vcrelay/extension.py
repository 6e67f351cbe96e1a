"""
Extension Orchestration

Runs the whole virtual channel flow against the remote session:

1. Discover the host and fetch the manifest location
2. Negotiate the virtual channel, receiving a relay address and token
3. Connect the relay and send the token
4. Wait for channel-ready on the control channel
5. Bridge relay <-> bus until either side closes
6. Tell the remote we are done, then release everything
"""

import logging
import os
from typing import Optional

from .bridge import RelayBridge
from .bus.base import MessageBus
from .config import RelayConfig
from .control.processor import ControlChannelProcessor
from .control.protocol import EventName
from .errors import VcRelayError
from .relay import VirtualChannel

logger = logging.getLogger(__name__)


def run_extension(
    config: RelayConfig,
    bus: MessageBus,
    inbound,
    outbound,
    requester_id: Optional[int] = None,
) -> int:
    """Run the extension until the virtual channel closes.

    Never raises: failures are logged and reported through the return value
    (0 on a clean run, 1 otherwise).
    """
    logger.info("vcrelay virtual channel extension starting")
    processor = ControlChannelProcessor(inbound, outbound, request_timeout=config.request_timeout)
    relay = None
    try:
        processor.start()

        logger.info("Requesting host info")
        host = processor.discover_host()
        logger.info(f"Connected to host {host.role.value}")

        logger.info("Requesting manifest path")
        manifest = processor.fetch_manifest()
        logger.info(f"Received manifest path: {manifest.path}")

        logger.info(f"Requesting virtual channel {config.channel_name}")
        grant = processor.negotiate_channel(
            config.channel_name,
            requester_id if requester_id is not None else os.getpid(),
        )
        logger.info(f"Relay to virtual channel is available, connecting {grant.relay_address}")

        relay = VirtualChannel.open(
            grant.relay_address,
            timeout=config.connect_timeout,
            pipe_dir=config.pipe_dir,
            idle_timeout=config.idle_timeout,
        )
        relay.authenticate(grant.auth_token)
        processor.await_channel_ready(config.channel_name, timeout=config.ready_timeout)
        logger.info("Virtual channel ready, starting read and write pumps")

        bridge = RelayBridge(
            relay,
            bus,
            topic=config.topic,
            chunk_size=config.chunk_size,
            max_reads=config.max_reads,
        )
        processor.add_event_listener(
            EventName.CHANNEL_CLOSED.value, lambda event: bridge.stop()
        )
        bridge.start()
        if config.greeting:
            bridge.send(config.greeting)
        bridge.wait()

        try:
            processor.close_channel(config.channel_name)
        except VcRelayError as e:
            logger.warning(f"Could not notify close of {config.channel_name}: {e}")
        return 0

    except Exception as e:
        logger.exception(f"Uncaught exception: {e}")
        return 1

    finally:
        if relay is not None:
            relay.close()
        processor.close()
        logger.info("Exiting")
