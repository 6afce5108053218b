#!/usr/bin/env python3
"""
WebSocket Heart Rate Emitter - test client for the WebSocket source.

Connects to a running ironheart WebSocket source and sends one JSON frame
per second, cycling bpm from 71 up to 120 and back to 70:

    {"heartRate": 72, "latest_rr_ms": 833, "battery": 100}

Usage:
    python -m ironheart.simulator.emitter                # ws://127.0.0.1:5566
    python -m ironheart.simulator.emitter 192.168.1.5:5566 --interval 0.5
"""

import argparse
import asyncio
import json
import signal
import sys

import websockets
from websockets.exceptions import WebSocketException

from ironheart.log import get_logger

logger = get_logger(__name__)


CONNECT_TIMEOUT_S = 1.0


class HeartRateEmitter:
    """Cycling bpm generator sending frames to a WebSocket server.

    Args:
        uri: Server URI, e.g. "ws://127.0.0.1:5566"
        bpm_min: Lowest bpm (wraps back here after bpm_max)
        bpm_max: Highest bpm
        interval: Seconds between frames
        battery: Battery level reported in every frame
    """

    def __init__(self, uri: str, bpm_min: int = 70, bpm_max: int = 120,
                 interval: float = 1.0, battery: int = 100):
        self.uri = uri
        self.bpm_min = bpm_min
        self.bpm_max = bpm_max
        self.interval = interval
        self.battery = battery
        self.bpm = bpm_min
        self.sent = 0
        self.running = False

    def next_frame(self) -> str:
        """Advance bpm and encode the next frame."""
        self.bpm += 1
        if self.bpm > self.bpm_max:
            self.bpm = self.bpm_min
        return json.dumps({
            "heartRate": self.bpm,
            "latest_rr_ms": 60000 // self.bpm,
            "battery": self.battery,
        })

    async def run(self, count: int = 0) -> None:
        """Send frames until stopped, or until `count` frames if nonzero."""
        logger.info(f"Connecting to {self.uri}...")
        connection = await websockets.connect(self.uri, open_timeout=CONNECT_TIMEOUT_S)
        logger.info("Connected to websocket server")

        self.running = True
        try:
            while self.running:
                await connection.send(self.next_frame())
                self.sent += 1
                logger.debug(f"Sent bpm {self.bpm}")
                if count and self.sent >= count:
                    break
                await asyncio.sleep(self.interval)
        finally:
            await connection.close()
            logger.info(f"Sent {self.sent} frames")

    def stop(self) -> None:
        self.running = False


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="WebSocket heart rate emitter for testing")
    parser.add_argument("address", nargs="?", default="127.0.0.1:5566",
                        help="Server host:port (default: 127.0.0.1:5566)")
    parser.add_argument("--min", dest="bpm_min", type=int, default=70,
                        help="Lowest bpm (default: 70)")
    parser.add_argument("--max", dest="bpm_max", type=int, default=120,
                        help="Highest bpm (default: 120)")
    parser.add_argument("--interval", type=float, default=1.0,
                        help="Seconds between frames (default: 1.0)")
    parser.add_argument("--count", type=int, default=0,
                        help="Stop after this many frames (default: run forever)")

    args = parser.parse_args()

    if args.bpm_min < 1 or args.bpm_max <= args.bpm_min:
        parser.error("--min must be at least 1 and below --max")

    emitter = HeartRateEmitter(
        uri=f"ws://{args.address}",
        bpm_min=args.bpm_min,
        bpm_max=args.bpm_max,
        interval=args.interval,
    )

    # Signal handlers
    def signal_handler(sig, frame):
        emitter.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(emitter.run(count=args.count))
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        logger.error(f"Failed to connect to websocket server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
