#!/usr/bin/env python3
"""
Command Line Interface - rc-dynamics-stream

Lists the data streams of a device, or requests one stream and prints the
received messages (or records them as CSV).

    rc-dynamics-stream -v 192.168.0.12 -l
    rc-dynamics-stream -v 192.168.0.12 -s pose -a -n 100 -o pose.csv
"""

import argparse
import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from .codecs import MessageCodecs
from .config import ClientConfig, load_config
from .csv_printing import CsvRecordWriter
from .errors import DynamicsError
from .registry import DeviceRegistry
from .remote_interface import RemoteInterface

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 50

# 'imu' is sent regardless of the rc_dynamics module state
MODULE_INDEPENDENT_STREAMS = ("imu",)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='rc-dynamics-stream',
        description='Lists available data streams of a device, or requests a data stream '
                    'and either prints received messages or records them as csv-file.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--device', '-v', help='Device IP address')
    parser.add_argument('--list', '-l', action='store_true', help='Only list available streams')
    parser.add_argument('--stream', '-s', help='Stream to request, e.g. pose')
    parser.add_argument('--autostart', '-a', action='store_true',
                        help='Start (and afterwards stop) the dynamics module')
    parser.add_argument('--interface', '-i', default=None,
                        help='Local network interface for receiving, e.g. eth0')
    parser.add_argument('--max-messages', '-n', type=int, default=None,
                        help=f'Stop after this many messages (default {DEFAULT_MAX_MESSAGES})')
    parser.add_argument('--max-seconds', '-t', type=int, default=None,
                        help='Stop after this many seconds')
    parser.add_argument('--output', '-o', help='Record messages to this csv file')
    parser.add_argument('--config', '-c', help='Configuration file path (TOML)')
    parser.add_argument('--codec-module', action='append', default=[],
                        help='Module with protobuf message classes for decoding (repeatable)')
    parser.add_argument('--debug', '-d', action='store_true', help='Enable DEBUG logging')
    return parser


def configure_logging(debug: bool = False):
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(levelname)s:%(name)s:%(message)s'))
        root_logger.addHandler(handler)


def list_streams(remote: RemoteInterface):
    """Print streams, their message types and the module state"""
    descriptors = remote.get_stream_descriptors()
    first_column = "Available streams:"
    width = max([len(first_column)] + [len(d.name) for d in descriptors]) + 5
    print(f"{first_column:<{width}}Message types:")
    for descriptor in descriptors:
        print(f"{descriptor.name:<{width}}{descriptor.message_type}")
    print(f"\nrc_dynamics is in state: {remote.get_state().value}")


def autostart(remote: RemoteInterface) -> bool:
    """Start SLAM, falling back to plain dynamics if SLAM is not available"""
    try:
        print("starting SLAM on device...")
        remote.start_slam()
        return True
    except DynamicsError:
        print("SLAM not available!")

    try:
        print("starting stereo INS on device...")
        remote.start()
        return True
    except DynamicsError as e:
        print(f"ERROR! Could not start rc_dynamics module on device: {e}")
        return False


def stream_messages(remote: RemoteInterface, args, config: ClientConfig,
                    stop_event: threading.Event) -> int:
    remote.check_stream_type_available(args.stream)

    if args.codec_module:
        try:
            codecs = MessageCodecs.from_modules(args.codec_module)
        except ImportError as e:
            print(f"Could not load codec module: {e}")
            return 1
    else:
        codecs = MessageCodecs.passthrough(d.message_type for d in remote.get_stream_descriptors())

    max_messages = args.max_messages
    if max_messages is None and args.max_seconds is None:
        max_messages = DEFAULT_MAX_MESSAGES

    output_file = None
    csv_writer = None
    if args.output:
        try:
            output_file = open(args.output, 'w', newline='')
        except OSError as e:
            print(f"Could not open file '{args.output}' for writing: {e}")
            return 1
        csv_writer = CsvRecordWriter(output_file)

    started = False
    if args.autostart and args.stream not in MODULE_INDEPENDENT_STREAMS:
        started = autostart(remote)
        if not started:
            if output_file:
                output_file.close()
            return 1

    count = 0
    try:
        print(f"Initializing {args.stream} data stream...")
        interface = args.interface if args.interface is not None else config.interface
        with remote.create_receiver_for_stream(
            args.stream,
            interface=interface,
            port=config.port,
            codecs=codecs,
            confirmation_timeout_ms=config.confirmation_timeout_ms,
            poll_timeout_ms=config.poll_timeout_ms,
        ) as session:
            print(f"Listening for {args.stream} messages...")
            start = time.monotonic()
            while not stop_event.is_set():
                if max_messages is not None and count >= max_messages:
                    break
                if args.max_seconds is not None and time.monotonic() - start >= args.max_seconds:
                    break

                record = session.receive()
                if record is None:
                    print(f"did not receive any data during last {session.timeout_ms} ms.",
                          file=sys.stderr)
                    continue

                if csv_writer:
                    csv_writer.write(record)
                elif isinstance(record, (bytes, bytearray)):
                    print(f"received {args.stream} msg: {len(record)} bytes\n{record.hex()}\n")
                else:
                    print(f"received {args.stream} msg:\n{record}\n")
                count += 1
    except DynamicsError as e:
        print(f"Caught exception during streaming, stopping: {e}")
    finally:
        if started:
            try:
                print("stopping rc_dynamics module on device...")
                remote.stop()
            except DynamicsError as e:
                print(f"Caught exception: {e}")
        if output_file:
            output_file.close()

    if args.output:
        print(f"Recorded {count} {args.stream} messages to '{args.output}'.")
    else:
        print(f"Received {count} {args.stream} messages.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for rc-dynamics-stream"""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug)

    try:
        config = load_config(args.config) if args.config else ClientConfig()
    except DynamicsError as e:
        print(f"Error loading configuration: {e}")
        return 1

    device = args.device or config.device_address
    if not device:
        parser.error("Please specify device IP.")
    if not args.stream and not args.list:
        parser.error("Please specify stream type.")

    stop_event = threading.Event()

    def on_signal(signum, frame):
        print(f"Caught signal {signum}, stopping program!")
        stop_event.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    registry = DeviceRegistry(module_states=config.module_states)
    try:
        print(f"connecting to device {device}...")
        remote = registry.get_or_create_device(device, config.request_timeout_ms)
        if args.list:
            list_streams(remote)
            return 0
        return stream_messages(remote, args, config, stop_event)
    except DynamicsError as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        registry.close_all()


if __name__ == '__main__':
    sys.exit(main())
