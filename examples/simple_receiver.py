#!/usr/bin/env python3
"""
Simple Receiver - Print poses streamed by a device

Starts the dynamics module, requests the "pose" stream and prints the
received messages. Without --codec-module the raw payloads are printed.

Usage:
    python examples/simple_receiver.py -v 192.168.0.12
    python examples/simple_receiver.py -v 192.168.0.12 -i eth0 -m 100 \
        --codec-module roboception.msgs.frame_pb2
"""

import argparse
import signal
import sys
from pathlib import Path

# Add parent directory to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from rc_dynamics import DeviceRegistry, DynamicsError, MessageCodecs

caught_signal = False


def on_signal(signum, frame):
    global caught_signal
    print(f"Caught signal {signum}, stopping program!")
    caught_signal = True


def main():
    parser = argparse.ArgumentParser(description='Print poses streamed by a device')
    parser.add_argument('-v', dest='device', required=True, help='Device IP address')
    parser.add_argument('-i', dest='interface', default='', help='Local network interface')
    parser.add_argument('-m', dest='max_poses', type=int, default=50, help='Number of poses')
    parser.add_argument('--codec-module', action='append', default=[])
    args = parser.parse_args()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    codecs = MessageCodecs.from_modules(args.codec_module) if args.codec_module else None

    count = 0
    with DeviceRegistry() as devices:
        print(f"connecting device {args.device}...")
        device = devices.get_or_create_device(args.device)

        try:
            print("starting rc_dynamics module on device...")
            device.start()
        except DynamicsError as e:
            print(f"ERROR! Could not start rc_dynamics module on device: {e}")
            return 1

        try:
            print("creating receiver and waiting for first messages to arrive...")
            with device.create_receiver_for_stream("pose", args.interface, codecs=codecs) as session:
                session.set_timeout(250)
                while count < args.max_poses and not caught_signal:
                    pose = session.receive()
                    if pose is not None:
                        print(f"received pose\n{pose}\n")
                        count += 1
        except DynamicsError as e:
            print(f"ERROR during streaming: {e}")

        try:
            print("stopping rc_dynamics module on device...")
            device.stop()
        except DynamicsError as e:
            print(f"ERROR! Could not stop rc_dynamics module on device: {e}")

    print(f"Received {count} poses.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
