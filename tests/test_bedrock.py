import asyncio
import struct

import pytest

from gameprobe.bedrock import (
    RAKNET_MAGIC,
    BedrockProber,
    build_unconnected_ping,
    extract_server_id,
    parse_bedrock_payload,
)
from gameprobe.errors import ProtocolError
from gameprobe.models import ConnStatus, GameType, ServerEndpoint

from fakes import FakeTransportFactory

SERVER_ID = "MCPE;Hello;477;1.19;3;20;123456;Level;Survival;1;19132;19133"


def pong(server_id: str = SERVER_ID) -> bytes:
    payload = server_id.encode("utf8")
    return (
        b"\x1c"
        + struct.pack(">q", 1234)
        + struct.pack(">q", 0x1122334455667788)
        + RAKNET_MAGIC
        + b"\x00\x00"
        + struct.pack(">H", len(payload))
        + payload
    )


def run(coro):
    return asyncio.run(coro)


def test_unconnected_ping_layout():
    packet = build_unconnected_ping(timestamp=0x0102030405060708, client_guid=2)
    assert len(packet) == 33
    assert packet[0] == 0x01
    assert packet[1:9] == bytes([1, 2, 3, 4, 5, 6, 7, 8])
    assert packet[9:25] == RAKNET_MAGIC
    assert struct.unpack(">q", packet[25:]) == (2,)


class TestPongParsing:
    def test_server_id_string(self):
        assert extract_server_id(pong()) == SERVER_ID

    def test_positional_fields(self):
        result = parse_bedrock_payload(SERVER_ID)
        assert result.online
        assert result.players.online == 3
        assert result.players.max == 20
        assert result.version.clean == "1.19"
        assert result.version.protocol == 477
        assert result.motd.clean == ("Hello",)
        assert result.gamemode == "Survival"

    def test_formatted_motd(self):
        result = parse_bedrock_payload("MCPE;§bBlue;589;1.20.0;0;10")
        assert result.motd.raw == ("§bBlue",)
        assert result.motd.clean == ("Blue",)
        assert result.gamemode is None

    def test_short_payload_uses_defaults(self):
        result = parse_bedrock_payload("MCPE;Only a motd")
        assert result.online
        assert result.motd.clean == ("Only a motd",)
        assert result.version.clean == "Unknown"
        assert result.version.protocol is None
        assert (result.players.online, result.players.max) == (0, 0)

    def test_empty_payload_uses_defaults(self):
        result = parse_bedrock_payload("")
        assert result.online
        assert result.motd.raw == ("",)
        assert result.version.raw == "Unknown"
        assert result.gamemode is None

    def test_non_numeric_counts(self):
        result = parse_bedrock_payload("MCPE;x;abc;1.19;many;lots")
        assert (result.players.online, result.players.max) == (0, 0)
        assert result.version.protocol is None

    def test_length_follows_the_35_byte_header(self):
        datagram = pong()
        assert datagram[33:35] == b"\x00\x00"
        assert struct.unpack(">H", datagram[35:37]) == (len(SERVER_ID),)
        assert extract_server_id(datagram) == SERVER_ID
        # the length field needs bytes 35 and 36
        assert extract_server_id(datagram[:36]) == ""

    def test_truncated_header(self):
        assert extract_server_id(b"\x1c" + b"\x00" * 10) == ""

    def test_length_beyond_datagram(self):
        datagram = pong()[:-20]
        assert SERVER_ID.startswith(extract_server_id(datagram))

    def test_not_a_pong(self):
        with pytest.raises(ProtocolError):
            extract_server_id(b"\x01abc")


class TestBedrockProber:
    endpoint = ServerEndpoint("127.0.0.1", game_type=GameType.BEDROCK)

    def test_success(self):
        factory = FakeTransportFactory(responses=[pong()])
        result = run(BedrockProber(factory).probe(self.endpoint))
        assert result.online
        assert result.players.online == 3
        assert result.latency is not None
        transport = factory.created[0]
        assert transport.connected_to == ("127.0.0.1", 19132)
        assert len(transport.sent) == 1
        assert transport.sent[0][0] == 0x01
        assert transport.closed

    def test_other_datagrams_are_ignored(self):
        factory = FakeTransportFactory(responses=[b"\x05junk", pong()])
        result = run(BedrockProber(factory).probe(self.endpoint, 1))
        assert result.online
        assert result.motd.clean == ("Hello",)

    def test_garbage_pong_still_proves_liveness(self):
        factory = FakeTransportFactory(responses=[b"\x1c\x00\x01"])
        result = run(BedrockProber(factory).probe(self.endpoint, 1))
        assert result.online
        assert result.status is ConnStatus.SUCCESS
        assert result.version.clean == "Unknown"
        assert result.player_count == "0/0"

    def test_timeout(self):
        factory = FakeTransportFactory(hang=True)
        result = run(BedrockProber(factory, timeout=0.05).probe(self.endpoint))
        assert not result.online
        assert result.status is ConnStatus.TIMEOUT
        assert factory.created[0].closed

    def test_port_unreachable(self):
        factory = FakeTransportFactory(responses=[ConnectionRefusedError("Connection refused")])
        result = run(BedrockProber(factory).probe(self.endpoint, 1))
        assert not result.online
        assert result.status is ConnStatus.CONNFAIL
        assert factory.created[0].closed
