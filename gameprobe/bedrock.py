# bedrock.py - Minecraft Bedrock Edition status via RakNet Unconnected Ping
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
Bedrock server probing (Minecraft PE, Windows 10 or Education Edition).

See https://minecraft.wiki/w/Java_Edition_protocol/RakNet#Unconnected_Ping
"""
import asyncio
from dataclasses import replace
import logging
import struct
from time import perf_counter, time

from .errors import ProtocolError
from .models import ConnStatus, Motd, Players, ProbeResult, ServerEndpoint, Version
from .transport import NetworkTransport, TransportFactory, UdpTransport

logger = logging.getLogger(__name__)

RAKNET_MAGIC = bytes(
    [
        0x00,
        0xFF,
        0xFF,
        0x00,
        0xFE,
        0xFE,
        0xFE,
        0xFE,
        0xFD,
        0xFD,
        0xFD,
        0xFD,
        0x12,
        0x34,
        0x56,
        0x78,
    ]
)
UNCONNECTED_PING = 0x01
UNCONNECTED_PONG = 0x1C
CLIENT_GUID = 0x02

PONG_HEADER_LENGTH = 35
"""fixed pong header, the server id length follows it"""
PONG_PAYLOAD_OFFSET = PONG_HEADER_LENGTH + 2
"""the server id string starts after its unsigned short length"""

PAYLOAD_FIELDS = [
    "edition",
    "motd_1",
    "protocol_version",
    "version",
    "current_players",
    "max_players",
    "server_uid",
    "motd_2",
    "gamemode",
    "gamemode_numeric",
    "port_ipv4",
    "port_ipv6",
]


def build_unconnected_ping(timestamp: int | None = None, client_guid: int = CLIENT_GUID) -> bytes:
    """
    Construct the `Unconnected_Ping` packet:
    packet id 0x01, big-endian signed long timestamp in ms, magic, big-endian signed long client GUID.
    """
    if timestamp is None:
        timestamp = int(time() * 1000)
    req_data = bytearray([UNCONNECTED_PING])
    req_data += struct.pack(">q", timestamp)
    req_data += RAKNET_MAGIC
    req_data += struct.pack(">q", client_guid)
    return bytes(req_data)


def extract_server_id(datagram: bytes) -> str:
    """
    Return the server id string of an `Unconnected_Pong`.

    response packet:
    byte - 0x1C - Unconnected Pong
    long - timestamp
    long - server GUID
    16 byte - magic
    2 byte - padding, completing the 35 byte header
    short - Server ID string length
    string - Server ID string

    A pong that is too short, or announces more bytes than it holds, yields what
    is there instead of failing: receiving it already proves the server is up.

    :raises ProtocolError: The datagram is not an `Unconnected_Pong`
    """
    if not datagram or datagram[0] != UNCONNECTED_PONG:
        raise ProtocolError("Not an Unconnected Pong")

    if len(datagram) < PONG_PAYLOAD_OFFSET:
        return ""

    (length,) = struct.unpack(">H", datagram[PONG_HEADER_LENGTH:PONG_PAYLOAD_OFFSET])
    payload = datagram[PONG_PAYLOAD_OFFSET:PONG_PAYLOAD_OFFSET + length]
    return payload.decode("utf8", errors="replace")


def parse_bedrock_payload(payload_str: str) -> ProbeResult:
    """
    Map the `;` delimited server id string onto a result.

    Missing or unreadable fields fall back to `"Unknown"` (version), `""` (motd)
    and `0` (player counts); the trailing port fields are ignored.
    """
    payload = dict(zip(PAYLOAD_FIELDS, payload_str.split(";"))) if payload_str else {}

    protocol = payload.get("protocol_version", "")
    version = Version.from_name(
        payload.get("version") or "Unknown", int(protocol) if protocol.isdigit() else None
    )

    players = Players(
        online=_to_int(payload.get("current_players", "")),
        max=_to_int(payload.get("max_players", "")),
    )

    return ProbeResult(
        online=True,
        players=players,
        version=version,
        motd=Motd.from_text(payload.get("motd_1", "")),
        # older Bedrock server versions do not respond with the game mode.
        gamemode=payload.get("gamemode") or None,
        status=ConnStatus.SUCCESS,
    )


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


class BedrockProber:
    """
    Probes Bedrock servers with a single Unconnected Ping / Pong round trip.

    No retries happen here, a lost datagram simply runs into the timeout.
    """

    DEFAULT_PORT = 19132
    """default UDP port for Bedrock/MCPE IPv4 servers"""
    DEFAULT_TIMEOUT = 5
    """default timeout in seconds to wait for the pong"""

    def __init__(
        self,
        transport_factory: TransportFactory = UdpTransport,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.transport_factory = transport_factory
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
        :param timeout: Seconds to wait for the pong
        :param transport: Transport to use, a new one is created if omitted
        """
        if transport is None:
            transport = self.new_transport()

        try:
            datagram, latency = await self._ping(endpoint, transport, timeout or self.timeout)
        except (TimeoutError, asyncio.TimeoutError) as e:
            return ProbeResult.offline(str(e) or "Connection timeout", ConnStatus.TIMEOUT)
        except (ConnectionResetError, ConnectionAbortedError) as e:
            return ProbeResult.offline(str(e) or "Connection reset", ConnStatus.UNKNOWN)
        except OSError as e:
            return ProbeResult.offline(str(e) or "Connection failed", ConnStatus.CONNFAIL)
        finally:
            await transport.close()

        try:
            result = parse_bedrock_payload(extract_server_id(datagram))
        except (ProtocolError, UnicodeDecodeError, struct.error) as e:
            logger.debug("%s: unreadable pong (%s), reporting online with defaults", endpoint.key, e)
            result = parse_bedrock_payload("")

        return replace(result, latency=latency)

    async def _ping(
        self, endpoint: ServerEndpoint, transport: NetworkTransport, timeout: float
    ) -> tuple[bytes, int]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise TimeoutError("Connection timeout")
            return left

        await transport.connect(endpoint.host, endpoint.port, remaining())
        start_time = perf_counter()
        await transport.send(build_unconnected_ping())

        while True:
            datagram = await transport.receive(remaining())
            # Response packet ID should always be 0x1c, anything else is not for us
            if datagram and datagram[0] == UNCONNECTED_PONG:
                return datagram, round((perf_counter() - start_time) * 1000)
            logger.debug("%s: ignoring datagram %r", endpoint.key, datagram[:1])
