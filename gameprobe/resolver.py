# resolver.py - Address classification and SRV lookup
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
import contextlib
import logging
import re
import socket

import dns.asyncresolver
import dns.exception
import dns.resolver
import idna

logger = logging.getLogger(__name__)

DOMAIN_PATTERN = re.compile(
    r"^(?!-)(?:[A-Za-z0-9-]{1,63}\.)+(?:[A-Za-z]{2,})$|^(xn--[A-Za-z0-9-]{1,63})\.[A-Za-z]{2,}$"
)
IPV4_PATTERN = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


def is_ipv4(address: str) -> bool:
    """
    Check whether the given address is an IPv4 address.

    :param address: The address to check
    """
    if not IPV4_PATTERN.match(address):
        return False

    parts = address.split(".")
    return not any(not part.isdigit() or not 0 <= int(part) <= 255 for part in parts)


def is_ipv6(address: str) -> bool:
    """Check whether the given address is an IPv6 address (zone ids allowed)."""
    try:
        socket.inet_pton(socket.AF_INET6, address.strip().split("%", 1)[0])
    except (OSError, ValueError):
        return False
    return True


def is_domain(address: str) -> bool:
    """
    Check whether the given address is a domain name. Internationalized names
    are converted to punycode first.
    """
    if address.lower() == "localhost":
        return True
    try:
        punycode_address = idna.encode(address).decode("utf-8")
        return bool(DOMAIN_PATTERN.match(punycode_address))
    except idna.IDNAError:
        return False


def get_ip_type(address: str) -> str:
    """Return `"IPv4"`, `"IPv6"`, `"Domain"` or `"Unknown"`."""
    if is_ipv4(address):
        return "IPv4"
    if is_ipv6(address):
        return "IPv6"
    if is_domain(address):
        return "Domain"
    return "Unknown"


class AddressResolver:
    """
    Resolves the address a Java Edition server actually listens on.

    Java clients honour `_minecraft._tcp` SRV records when the player did not
    type a port, so a probe has to do the same or it would knock on the wrong
    door for most hosted servers.
    """

    SRV_SERVICE = "_minecraft._tcp"
    DEFAULT_TIMEOUT = 5
    """DNS lifetime in seconds for one lookup"""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout

    async def resolve_srv(self, domain: str) -> tuple[str, int] | None:
        """
        Look up the SRV record of `domain`.

        :return: `(target, port)` of the first record, or None if there is none
        """
        resolver = dns.asyncresolver.Resolver()
        resolver.lifetime = self.timeout

        with contextlib.suppress(
            dns.resolver.NoAnswer,
            dns.resolver.NXDOMAIN,
            dns.resolver.NoNameservers,
            dns.exception.Timeout,
        ):
            srv_response = await resolver.resolve(f"{self.SRV_SERVICE}.{domain}", "SRV")
            for rdata in srv_response:
                return str(rdata.target).rstrip("."), rdata.port

        return None

    async def resolve(self, host: str, port: int, default_port: int) -> tuple[str, int]:
        """
        Return the `(host, port)` pair to connect to.

        Only domains probed on the default port are looked up; an explicit port or
        a literal IP address is used as given.
        """
        if port != default_port or get_ip_type(host) != "Domain" or host.lower() == "localhost":
            return host, port

        record = await self.resolve_srv(host)
        if record is None:
            return host, port

        logger.debug("SRV record for %s points to %s:%s", host, *record)
        return record
