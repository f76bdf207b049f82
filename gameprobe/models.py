# models.py - Endpoints, probe results and chat components
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
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
import re
from typing import Any

FORMATTING_CODE = re.compile(r"§[0-9a-fk-or]", re.IGNORECASE)
"""legacy formatting codes: section sign followed by a color or style character"""


def strip_formatting(text: str) -> str:
    """Remove all legacy `§` formatting codes from `text`."""
    return FORMATTING_CODE.sub("", text)


class GameType(Enum):
    """
    Contains the game types a server can be declared as.

    - `JAVA`: Minecraft Java Edition, probed with the TCP Server List Ping.
    - `BEDROCK`: Minecraft Bedrock/Pocket/Education Edition, probed with the RakNet `Unconnected Ping`.
    - `HYTALE`: Declared but not probed yet, no protocol is implemented for it.
    """

    def __str__(self) -> str:
        return str(self.value)

    JAVA = "java"
    BEDROCK = "bedrock"
    HYTALE = "hytale"


class ConnStatus(Enum):
    """
    Contains possible connection states.

    - `SUCCESS`: The probe succeeded (Request & response parsing OK)
    - `CONNFAIL`: The socket to the server could not be established. Server offline, wrong hostname or port?
    - `TIMEOUT`: The connection timed out. (Server under too much load? Firewall rules OK?)
    - `UNKNOWN`: The connection was established, but the server spoke an unknown/unsupported protocol.
    - `UNSUPPORTED`: No protocol is implemented for the game type, nothing was sent.
    """

    def __str__(self) -> str:
        return str(self.name)

    SUCCESS = 0
    CONNFAIL = -1
    TIMEOUT = -2
    UNKNOWN = -3
    UNSUPPORTED = -4


MAX_PORT = 65535

DEFAULT_PORTS = {
    GameType.JAVA: 25565,
    GameType.BEDROCK: 19132,
}


@dataclass(frozen=True)
class ServerEndpoint:
    """
    A probe target. A port of `0` selects the edition's default port.

    :raises ValueError: The port is outside 0-65535
    """

    host: str
    port: int = 0
    game_type: GameType = GameType.JAVA

    def __post_init__(self) -> None:
        if not isinstance(self.game_type, GameType):
            object.__setattr__(self, "game_type", GameType(self.game_type))
        if not self.port:
            object.__setattr__(self, "port", DEFAULT_PORTS.get(self.game_type, 0))
        if not 0 <= self.port <= MAX_PORT:
            raise ValueError(f"Port {self.port} is out of range (0-{MAX_PORT})")

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def cache_key(self) -> tuple[str, str, int]:
        return (self.game_type.value, self.host, self.port)


@dataclass(frozen=True)
class PlayerEntry:
    id: str = ""
    name: str = "Unknown"


@dataclass(frozen=True)
class Players:
    online: int = 0
    max: int = 0
    sample: tuple[PlayerEntry, ...] = ()


@dataclass(frozen=True)
class Version:
    raw: str = ""
    clean: str = ""
    protocol: int | None = None

    @classmethod
    def from_name(cls, name: str, protocol: int | None = None) -> "Version":
        return cls(raw=name, clean=strip_formatting(name), protocol=protocol)


@dataclass(frozen=True)
class Motd:
    raw: tuple[str, ...] = ()
    clean: tuple[str, ...] = ()

    @classmethod
    def from_text(cls, text: str) -> "Motd":
        """Build a MOTD from (possibly multi-line) text that may contain formatting codes."""
        lines = tuple(text.split("\n"))
        return cls(raw=lines, clean=tuple(strip_formatting(line) for line in lines))


@dataclass(frozen=True)
class ProbeResult:
    """
    Normalized status of one server.

    Results are immutable; the cache and the orchestrator derive new ones with
    `dataclasses.replace` instead of touching a returned instance.
    """

    online: bool = False
    players: Players | None = None
    version: Version | None = None
    motd: Motd | None = None
    icon: str | None = None
    """base64 favicon data URI exactly as sent by the server"""
    error: str | None = None
    gamemode: str | None = None
    """Bedrock specific: The current game mode (Creative/Survival/Adventure)"""
    latency: int | None = None
    """connect time to the server in milliseconds"""
    status: ConnStatus = ConnStatus.UNKNOWN
    captured_at: float | None = None
    """unix timestamp of the probe the data comes from, set by the caches"""
    stale: bool = False
    """True if the data is a last known result re-issued after a failed probe"""

    @classmethod
    def offline(cls, error: str, status: ConnStatus = ConnStatus.UNKNOWN) -> "ProbeResult":
        return cls(online=False, error=error, status=status)

    @property
    def has_data(self) -> bool:
        return any(part is not None for part in (self.players, self.version, self.motd))

    @property
    def player_count(self) -> str:
        if self.players is None:
            return "0/0"
        return f"{self.players.online}/{self.players.max}"

    @property
    def motd_text(self) -> str:
        if self.motd is None:
            return ""
        return " ".join(self.motd.clean).strip()

    def mark_stale(self, error: str) -> "ProbeResult":
        return replace(self, online=False, stale=True, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Plain JSON-friendly representation for callers that store or render results."""
        data = asdict(self)
        data["status"] = str(self.status)
        if self.players is not None:
            data["players"]["sample"] = [asdict(p) for p in self.players.sample]
        if self.motd is not None:
            data["motd"] = {"raw": list(self.motd.raw), "clean": list(self.motd.clean)}
        return data


# Chat components
#
# The Java status response describes the MOTD with a chat component, which is
# either a plain string, an object with `text` and optional `extra` children,
# or a list of components. Everything is parsed into two node types and
# flattened recursively.


@dataclass(frozen=True)
class PlainText:
    text: str

    def flatten(self) -> str:
        return self.text


@dataclass(frozen=True)
class TextComponent:
    text: str = ""
    extra: tuple["ChatComponent", ...] = field(default_factory=tuple)

    def flatten(self) -> str:
        return self.text + "".join(child.flatten() for child in self.extra)


ChatComponent = PlainText | TextComponent


def parse_chat_component(raw: Any) -> ChatComponent:
    """
    Parse a decoded JSON chat component.

    :param raw: A string, dict or list from `json.loads()`
    """
    if isinstance(raw, str):
        return PlainText(raw)

    if isinstance(raw, list):
        return TextComponent(extra=tuple(parse_chat_component(sub) for sub in raw))

    if isinstance(raw, dict):
        text = raw.get("text", "")
        extra = raw.get("extra") or []
        if not isinstance(extra, list):
            extra = [extra]
        return TextComponent(
            text=text if isinstance(text, str) else str(text),
            extra=tuple(parse_chat_component(sub) for sub in extra),
        )

    if raw is None:
        return PlainText("")

    return PlainText(str(raw))
