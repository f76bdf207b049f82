# gameprobe - A game server status checker
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
gameprobe - status checks for Minecraft Java Edition and Bedrock servers.

    >>> prober = StatusProber()
    >>> result = await prober.probe(ServerEndpoint("mc.example.org", 25565, GameType.JAVA))
    >>> result.online, result.player_count, result.motd_text
"""
from .bedrock import BedrockProber
from .cache import CacheEntry, ResultCache
from .errors import FallbackError, IncompleteData, ProbeError, ProtocolError, UnsupportedGameError
from .fallback import HttpStatusClient
from .java import JavaProber
from .models import (
    ConnStatus,
    GameType,
    Motd,
    PlayerEntry,
    Players,
    ProbeResult,
    ServerEndpoint,
    Version,
    strip_formatting,
)
from .orchestrator import StatusProber
from .resolver import AddressResolver
from .transport import NetworkTransport, TcpTransport, UdpTransport
from .version import VERSION

__all__ = [
    "AddressResolver",
    "BedrockProber",
    "CacheEntry",
    "ConnStatus",
    "FallbackError",
    "GameType",
    "HttpStatusClient",
    "IncompleteData",
    "JavaProber",
    "Motd",
    "NetworkTransport",
    "PlayerEntry",
    "Players",
    "ProbeError",
    "ProbeResult",
    "ProtocolError",
    "ResultCache",
    "ServerEndpoint",
    "StatusProber",
    "TcpTransport",
    "UdpTransport",
    "UnsupportedGameError",
    "Version",
    "strip_formatting",
]
