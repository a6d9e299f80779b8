# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Polling and DNS tools shared by the issuance state machine and the DNS provisioners."""
import threading
import time
from typing import Any, Callable

import dns.exception
import dns.resolver

from .. import errors


def sleep(seconds: float, cancel: threading.Event = None) -> None:
    """
    Blocks for `seconds`, waking up early if the cancellation token is set.

    Raises:
        acme_certificate.errors.RunCancelled: When `cancel` is set before or during the wait.
    """
    if cancel is None:
        time.sleep(seconds)
    elif cancel.wait(seconds):
        raise errors.RunCancelled("Issuance run was cancelled")


def poll_until(
        fetch: Callable[[], Any],
        is_pending: Callable[[Any], bool],
        deadline: float,
        interval: float = 1,
        cancel: threading.Event = None
) -> tuple:
    """
    Calls `fetch` until `is_pending` returns False for its result or the deadline passes.

    Args:
        fetch (callable): Returns the current state of the polled resource.
        is_pending (callable): Returns True while the state is not terminal.
        deadline (float): The `time.monotonic()` value after which polling is abandoned.
        interval (float): The amount of time (in seconds) between two calls of `fetch`.
        cancel (threading.Event): An optional cancellation token.

    Returns:
        tuple: The last fetched state and a boolean that is False when the deadline passed first.
    """
    result = fetch()
    while is_pending(result):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return result, False
        sleep(min(interval, remaining), cancel)
        result = fetch()
    return result, True


class DNSQuery:
    """A basic class to make DNS queries against a fixed set of nameservers"""

    def __init__(self, domain: str, rtype: str = "TXT", nameservers: list = None, lifetime: float = 5) -> None:
        """
        Args:
            domain (str): The fully qualified domain name to query.
            rtype (str): The DNS request type (e.g. `A`, `TXT`, `CNAME`, etc.).
            nameservers (list): Nameserver addresses to query. Defaults to the system resolvers.
            lifetime (float): The amount of time (in seconds) to spend on a single query.
        """
        self.domain = domain
        self.type = rtype.upper()
        self.nameservers = nameservers if nameservers else dns.resolver.Resolver().nameservers
        self.lifetime = lifetime
        self.values = {}

    def resolve(self) -> dict:
        """
        Queries every nameserver for our record.

        Returns:
            dict: The list of answer values per nameserver. A nameserver that has no answer maps to an empty list.
        """
        for nameserver in self.nameservers:
            resolver = dns.resolver.Resolver(configure=False)
            resolver.nameservers = [nameserver]
            resolver.lifetime = self.lifetime
            try:
                answer = resolver.resolve(self.domain, self.type)
            except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN, dns.resolver.NoNameservers,
                    dns.exception.Timeout):
                self.values[nameserver] = []
                continue
            self.values[nameserver] = [self.__parse_value__(record.to_text()) for record in answer]
        return self.values

    def found_everywhere(self, value: str) -> bool:
        """Queries every nameserver and checks that each of them answers with `value`."""
        return all(value in values for values in self.resolve().values())

    @staticmethod
    def __parse_value__(value: str) -> str:
        """Strips the surrounding quotes of a TXT record value."""
        return value[1:-1] if value.startswith("\"") and value.endswith("\"") else value
