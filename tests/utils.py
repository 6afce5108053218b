"""Test helpers shared across the ironheart test modules.

- FakeSender: stands in for OscSender, keeps every bundle it was given
- OSCMessageCapture: real UDP OSC receiver for end-to-end tests
- FakeScanner / advertised(): stand in for BleakScanner.discover results
- drain(): read everything pending on a bus subscription
- wait_until(): poll a condition without blocking the event loop
"""

import asyncio
import threading
import time
from collections import deque
from types import SimpleNamespace

from pythonosc import dispatcher, osc_server

from ironheart.bus import BusClosed
from ironheart.measurement import HEART_RATE_SERVICE_UUID


def bundle_messages(bundle):
    """Flatten a pythonosc bundle into [(address, first_param), ...]."""
    messages = []
    for content in bundle:
        messages.append((content.address, content.params[0]))
    return messages


class FakeSender:
    """Records bundles instead of sending them."""

    def __init__(self, host_ip="0.0.0.0", target_ip="127.0.0.1", port=9000):
        self.host_ip = host_ip
        self.target_ip = target_ip
        self.port = port
        self.bundles = []
        self.closed = False
        self.fail = False

    def send(self, bundle):
        if self.fail:
            raise OSError("Network is unreachable")
        self.bundles.append(bundle)

    def close(self):
        self.closed = True

    def messages(self):
        """Every bundle as a dict of address -> value."""
        return [dict(bundle_messages(bundle)) for bundle in self.bundles]

    def status_bundles(self, hr_address="/avatar/parameters/HR"):
        return [m for m in self.messages() if hr_address in m]

    def beat_bundles(self, pulse_address="/avatar/parameters/isHRBeat"):
        return [m for m in self.messages() if pulse_address in m]


class OSCMessageCapture:
    """Captures OSC messages arriving on a loopback UDP port.

    Bundles are unpacked by the server, so each message is stored as
    (timestamp, address, args) in arrival order.

    Example:
        capture = OSCMessageCapture()
        capture.start()
        ...send to capture.port...
        capture.wait_for_count("/avatar/parameters/HR", 3)
        capture.stop()
    """

    def __init__(self):
        self.messages = deque(maxlen=5000)
        self.lock = threading.Lock()
        self.server = None
        self.server_thread = None
        self.port = None

    def start(self):
        disp = dispatcher.Dispatcher()
        disp.set_default_handler(self._capture_handler)
        self.server = osc_server.BlockingOSCUDPServer(("127.0.0.1", 0), disp)
        self.port = self.server.server_address[1]
        self.server_thread = threading.Thread(target=self.server.serve_forever)
        self.server_thread.daemon = True
        self.server_thread.start()

    def _capture_handler(self, address, *args):
        with self.lock:
            self.messages.append((time.time(), address, args))

    def get_messages_by_address(self, address):
        with self.lock:
            return [m for m in self.messages if m[1] == address]

    def values(self, address):
        return [m[2][0] for m in self.get_messages_by_address(address)]

    async def wait_for_count(self, address, count, timeout=5.0):
        """Wait (without blocking the event loop) for `count` messages."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            if len(self.get_messages_by_address(address)) >= count:
                return
            await asyncio.sleep(0.02)
        raise TimeoutError(f"Only {len(self.get_messages_by_address(address))} of "
                           f"{count} messages on {address}")

    def stop(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
        if self.server_thread:
            self.server_thread.join(timeout=2.0)


async def wait_until(predicate, timeout=2.0):
    """Poll `predicate` on the event loop until it holds or time runs out."""
    deadline = time.time() + timeout
    while not predicate():
        if time.time() >= deadline:
            raise TimeoutError("condition not met in time")
        await asyncio.sleep(0.005)


def drain(subscription):
    """Everything currently pending on a subscription (stops at empty/closed)."""
    messages = []
    while True:
        try:
            messages.append(subscription.try_recv())
        except (asyncio.QueueEmpty, BusClosed):
            return messages



def advertised(address, name, rssi, uuids=(HEART_RATE_SERVICE_UUID,), local_name=None):
    """One BleakScanner.discover(return_adv=True) entry: address -> (device, adv)."""
    device = SimpleNamespace(address=address, name=name)
    adv = SimpleNamespace(service_uuids=list(uuids), rssi=rssi, local_name=local_name)
    return address, (device, adv)


class FakeScanner:
    """Stands in for BleakScanner.discover(timeout=..., return_adv=True)."""

    def __init__(self, *results, error=None):
        self.results = dict(results)
        self.error = error
        self.calls = 0

    async def __call__(self, timeout, return_adv):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.results
