"""Test doubles for transports, clocks and sleeping."""
import asyncio

from gameprobe.java import build_packet
from gameprobe.transport import NetworkTransport
from gameprobe.varint import pack_varint


def status_frame(body: bytes) -> bytes:
    """A complete Java status response frame around a JSON body."""
    return build_packet(0x00, pack_varint(len(body)) + body)


class FakeTransport(NetworkTransport):
    """
    Replays scripted chunks. Exceptions in `responses` are raised in order.

    Once the script is exhausted `receive()` reports end of stream, or when
    `hang` is set, waits out the timeout like a silent server would.
    """

    def __init__(self, responses=(), connect_error=None, hang=False):
        super().__init__()
        self.responses = list(responses)
        self.connect_error = connect_error
        self.hang = hang
        self.connected_to = None
        self.sent = []
        self.close_calls = 0

    async def connect(self, host, port, timeout):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_to = (host, port)

    async def send(self, data):
        self.sent.append(bytes(data))

    async def receive(self, timeout):
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        if self.hang:
            await asyncio.sleep(timeout)
            raise TimeoutError("Connection timeout")
        return b""

    async def close(self):
        self.close_calls += 1
        self.closed = True


class FakeTransportFactory:
    """Counts every transport (socket) a prober opens."""

    def __init__(self, **transport_kwargs):
        self.transport_kwargs = transport_kwargs
        self.created = []

    def __call__(self):
        transport = FakeTransport(**self.transport_kwargs)
        self.created.append(transport)
        return transport

    @property
    def opened(self):
        return len(self.created)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
