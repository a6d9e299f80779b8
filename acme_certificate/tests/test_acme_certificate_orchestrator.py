# Copyright 2025 Jared Hendrickson
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
"""Tests the issuance state machine of the acme_certificate package."""
import os
import tempfile
import threading
import unittest

from acme import challenges

from acme_certificate import crypto
from acme_certificate import errors
from acme_certificate.orchestrator import AuthorizationState, CertificateOrchestrator, write_atomic
from acme_certificate.tests import TEST_ALTERNATE_NAMES, TEST_DOMAIN, TEST_TERMS_URL
from acme_certificate.tests import tools


class TestCertificateOrchestrator(unittest.TestCase):
    """Runs complete issuances against an in-memory ACME server."""

    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tempdir.cleanup)
        self.provisioner = tools.RecordingProvisioner()

    def run_issuance(self, server, **overrides):
        """Runs one issuance with the given server and config overrides, without any wait between polls."""
        config = tools.make_config(self.tempdir.name, **overrides)
        orchestrator = CertificateOrchestrator(config, server, self.provisioner, poll_interval=0)
        return orchestrator, orchestrator.run()

    def path(self, name: str) -> str:
        """Returns the path of a file in the test's temporary directory."""
        return os.path.join(self.tempdir.name, name)

    def test_generated_key_and_leaf_only(self):
        """Checks that a generated key is written, and the certificate file holds only the leaf by default."""
        server = tools.FakeAcmeServer(provisioner=self.provisioner)
        _, issued = self.run_issuance(server, certificate_chain_path=self.path("chain.pem"))

        with open(self.path("key.pem"), "rb") as key_file:
            key_pem = key_file.read()
        with open(self.path("cert.pem"), "rb") as cert_file:
            cert_pem = cert_file.read()
        with open(self.path("chain.pem"), "rb") as chain_file:
            chain_pem = chain_file.read()

        self.assertTrue(tools.is_private_key(key_pem))
        self.assertEqual(cert_pem, issued.leaf)
        self.assertEqual(len(crypto.PEM_CERTIFICATE_RE.findall(cert_pem)), 1)
        self.assertEqual(chain_pem, server.ca_certificate)
        self.assertEqual(tools.file_mode(self.path("key.pem")), 0o600)
        self.assertEqual(tools.file_mode(self.path("cert.pem")), 0o644)

        # The written certificate must belong to the written key
        key = crypto.load_private_key(key_pem)
        self.assertEqual(crypto.public_key_der(crypto.load_certificate(cert_pem)), crypto.public_key_der(key))

    def test_combined_certificate_and_chain(self):
        """Checks that the chain is appended to the certificate file only when combining is enabled."""
        server = tools.FakeAcmeServer()
        _, issued = self.run_issuance(server, combine_certificate_and_chain=True)

        with open(self.path("cert.pem"), "rb") as cert_file:
            cert_pem = cert_file.read()
        self.assertEqual(cert_pem, issued.leaf + server.ca_certificate)
        self.assertFalse(os.path.exists(self.path("chain.pem")))

    def test_existing_key_is_reused(self):
        """Checks that an existing private key is used for the CSR and is never rewritten."""
        key = tools.cached_key("existing")
        key_path = tools.write_file(self.path("key.pem"), crypto.dump_private_key(key))
        os.chmod(key_path, 0o640)
        server = tools.FakeAcmeServer()

        _, issued = self.run_issuance(server, generate_private_key=False)
        leaf = crypto.load_certificate(issued.leaf)
        self.assertEqual(crypto.public_key_der(leaf), crypto.public_key_der(key))
        self.assertEqual(tools.file_mode(key_path), 0o640)

    def test_missing_key_without_generation(self):
        """Checks that a missing key fails before any ACME request when generation is disabled."""
        server = tools.FakeAcmeServer()
        with self.assertRaises(errors.MissingKey):
            self.run_issuance(server, generate_private_key=False)
        self.assertEqual(server.calls, [])

    def test_every_domain_is_authorized(self):
        """Checks that one challenge record per effective name is provisioned before validation and cleaned."""
        server = tools.FakeAcmeServer(provisioner=self.provisioner)
        orchestrator, _ = self.run_issuance(server, alternate_names=TEST_ALTERNATE_NAMES + [TEST_DOMAIN])

        domains = [record.domain for record in self.provisioner.provisioned_records]
        self.assertEqual(domains, [TEST_DOMAIN] + TEST_ALTERNATE_NAMES)
        self.assertEqual(self.provisioner.cleaned_records, self.provisioner.provisioned_records)
        self.assertEqual(self.provisioner.live, {})
        self.assertEqual(server.called("request_validation"), 3)
        self.assertEqual(set(orchestrator.states.values()), {AuthorizationState.VALIDATED})

        # Each record was live when its validation was requested
        for record, live in zip(self.provisioner.provisioned_records, server.records_at_validation):
            self.assertEqual(live.get(record.name), record.value)
            self.assertEqual(record.name, f"{challenges.DNS01.LABEL}.{record.domain}")

    def test_wildcard_record_name(self):
        """Checks that the challenge record of a wildcard name is created on the base domain."""
        server = tools.FakeAcmeServer()
        self.run_issuance(server, alternate_names=[f"*.{TEST_DOMAIN}"])
        names = [record.name for record in self.provisioner.provisioned_records]
        self.assertEqual(names, [f"_acme-challenge.{TEST_DOMAIN}", f"_acme-challenge.{TEST_DOMAIN}"])

    def test_record_value_is_key_authorization_digest(self):
        """Checks that the provisioned value is the DNS-01 validation of the account key."""
        server = tools.FakeAcmeServer()
        self.run_issuance(server)
        expected = challenges.DNS01(token=tools.token_for(TEST_DOMAIN)).validation(server.account_key)
        self.assertEqual(self.provisioner.provisioned_records[0].value, expected)

    def test_preauthorized_domain_is_skipped(self):
        """Checks that authorizations which are already valid do not provision any record."""
        server = tools.FakeAcmeServer(preauthorized=(TEST_DOMAIN,))
        orchestrator, _ = self.run_issuance(server, alternate_names=["www.example.com"])
        self.assertEqual([record.domain for record in self.provisioner.provisioned_records], ["www.example.com"])
        self.assertEqual(orchestrator.states[TEST_DOMAIN], AuthorizationState.VALIDATED)

    def test_failed_challenge(self):
        """Checks that an invalid challenge fails the run, cleans its record and writes nothing."""
        server = tools.FakeAcmeServer(
            challenge_statuses=("pending", "invalid"),
            challenge_error=tools.dns_error("dns record not found")
        )
        with self.assertRaises(errors.ChallengeFailed) as context:
            self.run_issuance(server)

        self.assertEqual(context.exception.domain, TEST_DOMAIN)
        self.assertEqual(context.exception.status, "invalid")
        self.assertIn("dns record not found", context.exception.detail)
        self.assertEqual(len(self.provisioner.cleaned_records), 1)
        self.assertEqual(server.called("finalize_order"), 0)
        self.assertFalse(os.path.exists(self.path("cert.pem")))
        self.assertFalse(os.path.exists(self.path("key.pem")))

    def test_failed_authorization(self):
        """Checks that an authorization turning invalid after a valid challenge still fails the run."""
        server = tools.FakeAcmeServer(
            authorization_statuses=("pending", "invalid"),
            challenge_error=tools.dns_error("incorrect TXT record")
        )
        orchestrator = CertificateOrchestrator(
            tools.make_config(self.tempdir.name), server, self.provisioner, poll_interval=0
        )
        with self.assertRaises(errors.ChallengeFailed) as context:
            orchestrator.run()
        self.assertIn("incorrect TXT record", context.exception.detail)
        self.assertEqual(orchestrator.states[TEST_DOMAIN], AuthorizationState.FAILED)
        self.assertEqual(len(self.provisioner.cleaned_records), 1)

    def test_authorization_timeout(self):
        """Checks that a challenge pending forever times out and its record is still cleaned exactly once."""
        server = tools.FakeAcmeServer(challenge_statuses=("pending",))
        with self.assertRaises(errors.AuthorizationTimeout) as context:
            self.run_issuance(server, authorization_timeout=0.05)
        self.assertEqual(context.exception.domain, TEST_DOMAIN)
        self.assertEqual(len(self.provisioner.cleaned_records), 1)
        self.assertFalse(os.path.exists(self.path("cert.pem")))

    def test_order_timeout(self):
        """Checks that an order processing forever times out without writing anything."""
        server = tools.FakeAcmeServer(order_statuses=("ready", "processing"))
        with self.assertRaises(errors.OrderTimeout):
            self.run_issuance(server, order_timeout=0.05)
        self.assertEqual(server.called("finalize_order"), 1)
        self.assertEqual(server.called("download_certificate"), 0)
        self.assertFalse(os.path.exists(self.path("cert.pem")))

    def test_order_waits_until_ready(self):
        """Checks that a pending order is polled until ready before it is finalized."""
        server = tools.FakeAcmeServer(order_statuses=("pending", "pending", "ready", "processing", "valid"))
        self.run_issuance(server)
        self.assertEqual(server.called("finalize_order"), 1)
        self.assertEqual(server.called("reload_order"), 5)

    def test_order_ready_after_finalization(self):
        """Checks that an order still reading ready after finalization is polled instead of failed."""
        server = tools.FakeAcmeServer(order_statuses=("ready", "ready", "valid"))
        self.run_issuance(server)
        self.assertEqual(server.called("finalize_order"), 1)
        self.assertEqual(server.called("reload_order"), 3)

    def test_failed_order(self):
        """Checks that an order ending invalid raises OrderFailed."""
        server = tools.FakeAcmeServer(order_statuses=("ready", "invalid"))
        with self.assertRaises(errors.OrderFailed) as context:
            self.run_issuance(server)
        self.assertEqual(context.exception.status, "invalid")
        self.assertFalse(os.path.exists(self.path("cert.pem")))

    def test_dns01_unavailable(self):
        """Checks that an authorization without a DNS-01 challenge fails before provisioning anything."""
        server = tools.FakeAcmeServer(offer_dns=False)
        with self.assertRaises(errors.ChallengeUnavailable):
            self.run_issuance(server)
        self.assertEqual(self.provisioner.provisioned_records, [])

    def test_terms_not_accepted(self):
        """Checks that unaccepted terms of service stop the run before an account is registered."""
        server = tools.FakeAcmeServer(terms_of_service=TEST_TERMS_URL)
        with self.assertRaises(errors.TermsNotAccepted):
            self.run_issuance(server)
        self.assertEqual(server.calls, [])

        # Agreeing to the published URL lets the run go through
        self.run_issuance(server, agree_to_terms_url=TEST_TERMS_URL)
        self.assertEqual(server.called("new_account"), 1)

    def test_certificate_for_another_key(self):
        """Checks that a certificate issued for a different key is rejected instead of written."""
        server = tools.FakeAcmeServer(issue_for_key=tools.cached_key("someone-else"))
        with self.assertRaises(errors.InvalidCertificate):
            self.run_issuance(server)
        self.assertFalse(os.path.exists(self.path("cert.pem")))
        self.assertFalse(os.path.exists(self.path("key.pem")))

    def test_provision_failure(self):
        """Checks that a DNS backend failure fails the run without requesting validation."""
        self.provisioner = tools.RecordingProvisioner(provision_error=errors.DnsBackendError("zone not found"))
        server = tools.FakeAcmeServer()
        with self.assertRaises(errors.DnsBackendError):
            self.run_issuance(server)
        self.assertEqual(server.called("request_validation"), 0)

    def test_cleanup_failure_does_not_mask_success(self):
        """Checks that a failed record removal is only logged when the issuance itself succeeded."""
        self.provisioner = tools.RecordingProvisioner(clean_error=errors.DnsBackendError("throttled"))
        server = tools.FakeAcmeServer()
        with self.assertLogs("acme_certificate.provisioners", level="WARNING"):
            self.run_issuance(server)
        self.assertTrue(os.path.exists(self.path("cert.pem")))

    def test_cancelled_run(self):
        """Checks that setting the cancellation token aborts a run waiting on the ACME server."""
        cancel = threading.Event()
        cancel.set()
        server = tools.FakeAcmeServer(challenge_statuses=("pending",))
        config = tools.make_config(self.tempdir.name)
        orchestrator = CertificateOrchestrator(config, server, self.provisioner, poll_interval=1, cancel=cancel)
        with self.assertRaises(errors.RunCancelled):
            orchestrator.run()
        self.assertEqual(len(self.provisioner.cleaned_records), 1)


class TestWriteAtomic(unittest.TestCase):
    """Tests the all-or-nothing file writer."""

    def test_write_atomic(self):
        """Checks that files are replaced with the requested mode and no temporary file remains."""
        with tempfile.TemporaryDirectory() as tempdir:
            path = os.path.join(tempdir, "cert.pem")
            tools.write_file(path, b"old")
            write_atomic(path, b"new", 0o640)

            with open(path, "rb") as written:
                self.assertEqual(written.read(), b"new")
            self.assertEqual(tools.file_mode(path), 0o640)
            self.assertEqual(os.listdir(tempdir), ["cert.pem"])

    def test_write_atomic_missing_directory(self):
        """Checks that writing into a missing directory raises and leaves nothing behind."""
        with tempfile.TemporaryDirectory() as tempdir:
            with self.assertRaises(OSError):
                write_atomic(os.path.join(tempdir, "missing", "cert.pem"), b"data", 0o644)
            self.assertEqual(os.listdir(tempdir), [])


if __name__ == "__main__":
    unittest.main()
