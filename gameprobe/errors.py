# errors.py - Exceptions raised while probing game servers
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
Exception hierarchy.

Socket level failures are reported with the builtin `ConnectionError` and
`TimeoutError` (both part of the `OSError` family), the same way the plain
socket code reports them. Everything that goes wrong *after* bytes have been
exchanged is a `ProtocolError`.
"""


class ProbeError(Exception):
    """Base class for all errors raised by gameprobe."""


class ProtocolError(ProbeError):
    """The server answered, but spoke something we could not understand."""


class IncompleteData(ProtocolError):
    """
    The buffer ended before a complete value could be read.

    Stream readers catch this one and wait for more bytes.
    """


class UnsupportedGameError(ProbeError):
    """No protocol is implemented for the requested game type."""

    def __init__(self, game_type) -> None:
        super().__init__(f"{game_type} server status is not yet supported")
        self.game_type = game_type


class FallbackError(ProbeError):
    """The HTTP status aggregator returned an unusable response."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
