# varint.py - VarInt codec for the Java Edition Server List Ping
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
VarInt helpers.

See https://minecraft.wiki/w/Java_Edition_protocol/Data_types#VarInt_and_VarLong
"""
import struct

from .errors import IncompleteData, ProtocolError

MAX_VARINT_BYTES = 5
"""a 32-bit VarInt never needs more than 5 bytes"""


def pack_varint(data: int) -> bytes:
    """
    Small helper for packing a varint from an int.

    Negative numbers are sent as their unsigned 32-bit two's complement, so `-1`
    becomes `ff ff ff ff 0f` (the "ping" protocol version of the handshake).
    """
    if data < 0:
        data &= 0xFFFFFFFF
    if data > 0xFFFFFFFF:
        raise ValueError(f"{data} does not fit into a 32-bit varint")

    ordinal = b""

    while True:
        byte = data & 0x7F
        data >>= 7
        ordinal += struct.pack("B", byte | (0x80 if data > 0 else 0))

        if data == 0:
            break

    return ordinal


def unpack_varint(buffer: bytes | bytearray, offset: int = 0) -> tuple[int, int]:
    """
    Unpack a varint from `buffer` starting at `offset`.

    :param buffer: Received bytes
    :param offset: Position of the first varint byte
    :return: `(value, consumed_bytes)`
    :raises IncompleteData: The buffer ended before the varint was terminated
    :raises ProtocolError: The varint is longer than 5 bytes
    """
    data = 0
    for i in range(MAX_VARINT_BYTES):
        if offset + i >= len(buffer):
            raise IncompleteData("varint extends beyond buffer")

        byte = buffer[offset + i]
        data |= (byte & 0x7F) << 7 * i

        if not byte & 0x80:
            return data, i + 1

    raise ProtocolError("varint is too big")
