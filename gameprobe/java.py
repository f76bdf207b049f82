# java.py - Minecraft Java Edition Server List Ping over TCP
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
Java Edition status probing (Minecraft >= 1.7).

The protocol is based on VarInt framed packets carrying a JSON document, see
https://minecraft.wiki/w/Java_Edition_protocol/Server_List_Ping#Current
"""
import asyncio
from dataclasses import replace
from enum import Enum
import json
import logging
import struct
from time import perf_counter
from typing import Any

from .errors import IncompleteData, ProtocolError
from .models import (
    ConnStatus,
    Motd,
    PlayerEntry,
    Players,
    ProbeResult,
    ServerEndpoint,
    Version,
    parse_chat_component,
)
from .resolver import AddressResolver
from .transport import NetworkTransport, TcpTransport, TransportFactory
from .varint import pack_varint, unpack_varint

logger = logging.getLogger(__name__)

PROTOCOL_VERSION_PING = -1
"""protocol version to send when pinging to determine the version"""
NEXT_STATE_STATUS = 1
STATUS_PACKET_ID = 0x00
MAX_PACKET_LENGTH = 2097151
"""largest packet a vanilla server will ever send (3 byte varint)"""


def build_packet(packet_id: int, payload: bytes = b"") -> bytes:
    """Prefix packet id and payload with the varint length of both."""
    data = pack_varint(packet_id) + payload
    return pack_varint(len(data)) + data


def build_handshake(host: str, port: int) -> bytes:
    """
    Handshake packet, id 0:
    varint protocol version, varint length prefixed UTF-8 host, unsigned short port, varint next state.
    """
    host_bytes = host.encode("utf8")
    payload = pack_varint(PROTOCOL_VERSION_PING)
    payload += pack_varint(len(host_bytes)) + host_bytes
    payload += struct.pack(">H", port)
    payload += pack_varint(NEXT_STATE_STATUS)
    return build_packet(STATUS_PACKET_ID, payload)


def build_status_request() -> bytes:
    """Empty Status Request packet, id 0."""
    return build_packet(STATUS_PACKET_ID)


class FrameReader:
    """
    Reassembles the status response from a stream.

    The response may arrive split over several reads, so bytes are buffered and
    framing is attempted again on every chunk.
    """

    def __init__(self) -> None:
        self.buffer = bytearray()

    def feed(self, data: bytes) -> bytes | None:
        """
        Add received bytes.

        :return: The raw JSON body once a complete frame is buffered, else None
        :raises ProtocolError: The frame is malformed
        """
        self.buffer += data

        try:
            packet_len, header_len = unpack_varint(self.buffer)
        except IncompleteData:
            return None

        if packet_len < 1 or packet_len > MAX_PACKET_LENGTH:
            raise ProtocolError(f"Invalid packet length {packet_len}")

        if len(self.buffer) < header_len + packet_len:
            return None

        packet = bytes(self.buffer[header_len:header_len + packet_len])
        try:
            packet_id, offset = unpack_varint(packet)
            # If we receive anything but 0x00 the server is speaking another protocol
            if packet_id != STATUS_PACKET_ID:
                raise ProtocolError(f"Unexpected packet id {packet_id:#04x}")

            content_len, consumed = unpack_varint(packet, offset)
        except IncompleteData as e:
            raise ProtocolError("Truncated status packet") from e
        offset += consumed

        body = packet[offset:offset + content_len]
        if len(body) != content_len:
            raise ProtocolError(
                f"Status payload announces {content_len} bytes, packet holds {len(body)}"
            )

        return body


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_players(players: Any) -> Players | None:
    if not isinstance(players, dict):
        return None

    sample = []
    # There may be a "sample" field in the "players" object that contains a sample list of online players
    for player in players.get("sample") or []:
        if not isinstance(player, dict):
            continue
        sample.append(
            PlayerEntry(
                id=str(player.get("id") or player.get("uuid") or ""),
                name=str(player.get("name") or "Unknown"),
            )
        )

    return Players(
        online=_to_int(players.get("online")),
        max=_to_int(players.get("max")),
        sample=tuple(sample),
    )


def _parse_version(version: Any) -> Version | None:
    if not isinstance(version, dict):
        return None

    name = version.get("name") or ""
    protocol = version.get("protocol")
    return Version.from_name(
        name if isinstance(name, str) else str(name),
        protocol if isinstance(protocol, int) else None,
    )


def parse_status_payload(payload_raw: bytes) -> ProbeResult:
    """
    Parse the JSON body of a status response.

    Fields with an unexpected shape are left unset; only an undecodable document
    is an error, because a well framed response already proves the server is up.

    :param payload_raw: The raw JSON body, without header and string length
    :raises ProtocolError: The body is not a JSON object
    """
    try:
        payload_obj = json.loads(payload_raw.decode("utf8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid status JSON: {e}") from e

    if not isinstance(payload_obj, dict):
        raise ProtocolError("Status JSON is not an object")

    motd = None
    # The motd might be a string directly, an object or a list of components
    if payload_obj.get("description") is not None:
        motd = Motd.from_text(parse_chat_component(payload_obj["description"]).flatten())

    favicon = payload_obj.get("favicon")

    return ProbeResult(
        online=True,
        players=_parse_players(payload_obj.get("players")),
        version=_parse_version(payload_obj.get("version")),
        motd=motd,
        icon=favicon if isinstance(favicon, str) else None,
        status=ConnStatus.SUCCESS,
    )


class JavaState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKE_SENT = "handshake-sent"
    STATUS_REQUESTED = "status-requested"
    AWAITING_RESPONSE = "awaiting-response"
    PARSING_RESPONSE = "parsing-response"
    DONE = "done"
    ERROR = "error"


class JavaSession:
    """State of one probe attempt."""

    def __init__(self, endpoint: ServerEndpoint, timeout: float) -> None:
        self.endpoint = endpoint
        self.state = JavaState.IDLE
        self.latency: int | None = None
        self._deadline = asyncio.get_running_loop().time() + timeout

    def advance(self, state: JavaState) -> None:
        logger.debug("%s: %s -> %s", self.endpoint.key, self.state.value, state.value)
        self.state = state

    def remaining(self) -> float:
        """Seconds left of the attempt's timeout."""
        left = self._deadline - asyncio.get_running_loop().time()
        if left <= 0:
            raise TimeoutError("Connection timeout")
        return left


class JavaProber:
    """
    Probes Minecraft Java Edition servers.

    Every call opens exactly one TCP transport and closes it on every exit path.
    Errors never escape `probe()`; they are reported as an offline `ProbeResult`.
    """

    DEFAULT_PORT = 25565
    """default TCP port for SLP queries"""
    DEFAULT_TIMEOUT = 5
    """default timeout in seconds for the whole exchange"""

    def __init__(
        self,
        transport_factory: TransportFactory = TcpTransport,
        resolver: AddressResolver | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """
        :param transport_factory: Returns a fresh transport for every attempt
        :param resolver: Resolves SRV records before connecting, None connects to the host as given
        :param timeout: Timeout in seconds used when the caller passes none
        """
        self.transport_factory = transport_factory
        self.resolver = resolver
        self.timeout = timeout

    def new_transport(self) -> NetworkTransport:
        return self.transport_factory()

    async def probe(
        self,
        endpoint: ServerEndpoint,
        timeout: float | None = None,
        transport: NetworkTransport | None = None,
    ) -> ProbeResult:
        """
        Query the server's status.

        :param endpoint: The server to probe
        :param timeout: Seconds the whole exchange may take
        :param transport: Transport to use, a new one is created if omitted
        """
        if transport is None:
            transport = self.new_transport()
        session = JavaSession(endpoint, timeout or self.timeout)

        try:
            result = await self._exchange(session, transport)
        except (TimeoutError, asyncio.TimeoutError) as e:
            session.advance(JavaState.ERROR)
            return ProbeResult.offline(str(e) or "Connection timeout", ConnStatus.TIMEOUT)
        except (ConnectionResetError, ConnectionAbortedError) as e:
            session.advance(JavaState.ERROR)
            return ProbeResult.offline(
                str(e) or "Connection closed unexpectedly", ConnStatus.UNKNOWN
            )
        except OSError as e:
            session.advance(JavaState.ERROR)
            return ProbeResult.offline(str(e) or "Connection failed", ConnStatus.CONNFAIL)
        except (struct.error, OverflowError) as e:
            # a port that does not fit into the handshake's unsigned short
            session.advance(JavaState.ERROR)
            return ProbeResult.offline(f"Invalid address: {e}", ConnStatus.CONNFAIL)
        except ProtocolError as e:
            session.advance(JavaState.ERROR)
            logger.debug("%s: %s", endpoint.key, e)
            return ProbeResult.offline(str(e), ConnStatus.UNKNOWN)
        finally:
            await transport.close()

        session.advance(JavaState.DONE)
        return result

    async def _exchange(self, session: JavaSession, transport: NetworkTransport) -> ProbeResult:
        endpoint = session.endpoint
        host, port = endpoint.host, endpoint.port
        if self.resolver is not None:
            host, port = await asyncio.wait_for(
                self.resolver.resolve(host, port, self.DEFAULT_PORT), session.remaining()
            )

        session.advance(JavaState.CONNECTING)
        start_time = perf_counter()
        await transport.connect(host, port, session.remaining())
        session.latency = round((perf_counter() - start_time) * 1000)

        # The handshake carries the name the player typed, not the SRV target
        await transport.send(build_handshake(endpoint.host, endpoint.port))
        session.advance(JavaState.HANDSHAKE_SENT)
        await transport.send(build_status_request())
        session.advance(JavaState.STATUS_REQUESTED)

        session.advance(JavaState.AWAITING_RESPONSE)
        reader = FrameReader()
        while True:
            chunk = await transport.receive(session.remaining())
            if not chunk:
                raise ConnectionAbortedError("Connection closed unexpectedly")
            payload_raw = reader.feed(chunk)
            if payload_raw is not None:
                break

        session.advance(JavaState.PARSING_RESPONSE)
        result = parse_status_payload(payload_raw)
        return replace(result, latency=session.latency)
