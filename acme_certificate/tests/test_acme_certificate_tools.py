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
"""Tests the polling and DNS tools of the acme_certificate package."""
import threading
import time
import unittest
from unittest import mock

import dns.resolver

from acme_certificate import errors
from acme_certificate import tools


class TestPolling(unittest.TestCase):
    """Tests the cancellable sleep and the deadline-bound polling loop."""

    def test_poll_until_terminal(self):
        """Checks that polling stops at the first terminal state."""
        states = iter(["pending", "processing", "valid", "never reached"])
        result, finished = tools.poll_until(
            lambda: next(states), lambda state: state != "valid", time.monotonic() + 5, interval=0
        )
        self.assertEqual(result, "valid")
        self.assertTrue(finished)

    def test_poll_until_fetches_once_when_done(self):
        """Checks that an already terminal state is fetched only once."""
        fetch = mock.Mock(return_value="valid")
        self.assertEqual(tools.poll_until(fetch, lambda state: False, time.monotonic()), ("valid", True))
        fetch.assert_called_once_with()

    def test_poll_until_deadline(self):
        """Checks that the last pending state is returned once the deadline passes."""
        result, finished = tools.poll_until(
            lambda: "pending", lambda state: True, time.monotonic() + 0.05, interval=0.01
        )
        self.assertEqual(result, "pending")
        self.assertFalse(finished)

    def test_sleep_cancelled(self):
        """Checks that a set cancellation token interrupts sleeping."""
        cancel = threading.Event()
        tools.sleep(0, cancel)
        cancel.set()
        with self.assertRaises(errors.RunCancelled):
            tools.sleep(10, cancel)

    def test_poll_until_cancelled(self):
        """Checks that polling is aborted by the cancellation token."""
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(errors.RunCancelled):
            tools.poll_until(lambda: "pending", lambda state: True, time.monotonic() + 60, cancel=cancel)


class TestDNSQuery(unittest.TestCase):
    """Tests the DNS query tool against a mocked resolver."""

    def setUp(self):
        patcher = mock.patch("dns.resolver.Resolver")
        self.resolver_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.resolver = self.resolver_class.return_value

    @staticmethod
    def answer(*values):
        """Builds a resolver answer holding TXT records."""
        return [mock.Mock(**{'to_text.return_value': f'"{value}"'}) for value in values]

    def test_resolve(self):
        """Checks that every nameserver is queried and quotes are stripped from the values."""
        self.resolver.resolve.side_effect = [self.answer("token1", "token2"), dns.resolver.NXDOMAIN()]
        query = tools.DNSQuery("_acme-challenge.example.com", nameservers=["192.0.2.1", "192.0.2.2"])
        self.assertEqual(query.resolve(), {'192.0.2.1': ["token1", "token2"], '192.0.2.2': []})
        self.resolver.resolve.assert_called_with("_acme-challenge.example.com", "TXT")
        self.resolver_class.assert_called_with(configure=False)

    def test_found_everywhere(self):
        """Checks that a value must be served by every nameserver."""
        query = tools.DNSQuery("_acme-challenge.example.com", rtype="txt", nameservers=["192.0.2.1", "192.0.2.2"])
        self.resolver.resolve.side_effect = [self.answer("token"), dns.resolver.NoAnswer()]
        self.assertFalse(query.found_everywhere("token"))
        self.resolver.resolve.side_effect = [self.answer("token"), self.answer("other", "token")]
        self.assertTrue(query.found_everywhere("token"))


if __name__ == "__main__":
    unittest.main()
