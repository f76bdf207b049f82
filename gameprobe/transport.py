# transport.py - Short lived TCP and UDP transports used by the probers
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# Secondary optimization and customization are carried out by @molanp.
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
"""
Network transports.

A prober never touches sockets directly. It asks its transport factory for a
fresh `NetworkTransport` per attempt, which lets tests substitute fakes and
lets the attempt supervisor close whatever an abandoned attempt opened.
"""
from abc import ABC, abstractmethod
import asyncio
import contextlib
import logging
from typing import Callable

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


class NetworkTransport(ABC):
    """One connection (TCP) or one send/receive pair (UDP). Never reused."""

    def __init__(self) -> None:
        self.closed = False

    @abstractmethod
    async def connect(self, host: str, port: int, timeout: float) -> None:
        """
        Open the transport.

        :raises ConnectionError: Refused or unreachable
        :raises TimeoutError: Not connected within `timeout` seconds
        """

    @abstractmethod
    async def send(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def receive(self, timeout: float) -> bytes:
        """
        Return the next chunk (TCP) or datagram (UDP).

        An empty bytes object means the peer closed the connection.

        :raises TimeoutError: Nothing arrived within `timeout` seconds
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the socket. Safe to call more than once."""


TransportFactory = Callable[[], NetworkTransport]


class TcpTransport(NetworkTransport):
    def __init__(self) -> None:
        super().__init__()
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def connect(self, host: str, port: int, timeout: float) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Connection to {host}:{port} timed out") from e
        except OSError as e:
            # gaierror and friends are not ConnectionErrors, but mean the same to us
            if isinstance(e, ConnectionError):
                raise
            raise ConnectionError(str(e) or f"Cannot connect to {host}:{port}") from e

    async def send(self, data: bytes) -> None:
        if self._writer is None:
            raise ConnectionError("Transport is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def receive(self, timeout: float) -> bytes:
        if self._reader is None:
            raise ConnectionError("Transport is not connected")
        try:
            return await asyncio.wait_for(self._reader.read(RECV_SIZE), timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError("Connection timeout") from e

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(OSError):
                await self._writer.wait_closed()


class _DatagramQueue(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        # ICMP port unreachable and similar arrive here on connected UDP sockets
        self.queue.put_nowait(exc)


class UdpTransport(NetworkTransport):
    def __init__(self) -> None:
        super().__init__()
        self._transport: asyncio.DatagramTransport | None = None
        self._protocol: _DatagramQueue | None = None

    async def connect(self, host: str, port: int, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        try:
            self._transport, self._protocol = await asyncio.wait_for(
                loop.create_datagram_endpoint(_DatagramQueue, remote_addr=(host, port)),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Resolving {host}:{port} timed out") from e
        except OSError as e:
            if isinstance(e, ConnectionError):
                raise
            raise ConnectionError(str(e) or f"Cannot reach {host}:{port}") from e

    async def send(self, data: bytes) -> None:
        if self._transport is None:
            raise ConnectionError("Transport is not connected")
        self._transport.sendto(data)

    async def receive(self, timeout: float) -> bytes:
        if self._protocol is None:
            raise ConnectionError("Transport is not connected")
        try:
            item = await asyncio.wait_for(self._protocol.queue.get(), timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError("Connection timeout") from e
        if isinstance(item, Exception):
            if isinstance(item, ConnectionError):
                raise item
            raise ConnectionError(str(item)) from item
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._transport is not None:
            self._transport.close()
