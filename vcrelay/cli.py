import argparse
import logging
import sys

import uvicorn

from .bus import InMemoryBus, WebSocketBus
from .config import RelayConfig
from .extension import run_extension

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(log_path: str, verbose: bool = False):
    # stdout carries the control channel, so logs only go to the file
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        filename=log_path,
        filemode="a",
        format=LOG_FORMAT,
    )


def run_command(args) -> int:
    try:
        config = RelayConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if args.channel:
        config.channel_name = args.channel
    if args.topic:
        config.topic = args.topic
    if args.bus_url:
        config.bus_url = args.bus_url
    if args.log:
        config.log_path = args.log
    if args.max_reads is not None:
        config.max_reads = args.max_reads

    setup_logging(config.log_path, args.verbose)

    bus = WebSocketBus(config.bus_url) if config.bus_url else InMemoryBus()
    try:
        return run_extension(config, bus, sys.stdin.buffer, sys.stdout.buffer)
    finally:
        bus.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="vcrelay virtual channel relay")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the extension over stdin/stdout")
    run_parser.add_argument("--channel", type=str, help="Virtual channel name")
    run_parser.add_argument("--topic", type=str, help="Bus topic to bridge")
    run_parser.add_argument("--bus-url", type=str, help="Websocket hub URL (default: in-process bus)")
    run_parser.add_argument("--log", type=str, help="Log file path")
    run_parser.add_argument("--max-reads", type=int, help="Stop after this many relay reads")
    run_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    hub_parser = subparsers.add_parser("hub", help="Serve the websocket bus hub")
    hub_parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to listen on")
    hub_parser.add_argument("--port", type=int, default=8765, help="Port to listen on")

    args = parser.parse_args(argv)

    if args.command == "run":
        return run_command(args)
    elif args.command == "hub":
        print(f"Starting bus hub at ws://{args.host}:{args.port}")
        uvicorn.run("vcrelay.bus.hub:app", host=args.host, port=args.port)
        return 0
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
