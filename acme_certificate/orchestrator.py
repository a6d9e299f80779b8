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
"""
The issuance state machine: registers the account, authorizes every domain through DNS-01 challenges, finalizes
the order and writes the certificate, chain and key files.
"""
import enum
import logging
import os
import pathlib
import tempfile
import threading
import time

from acme import challenges
from acme import messages

from . import crypto
from . import errors
from . import tools
from .client import AcmeDirectoryClient
from .config import CertificateConfig
from .provisioners import ChallengeProvisioner

logger = logging.getLogger(__name__)

PENDING_STATUSES = frozenset(('pending', 'processing'))
# A finalized order may still read as ready until the server picks up the CSR
FINALIZING_STATUSES = frozenset(('pending', 'ready', 'processing'))


class AuthorizationState(enum.Enum):
    """Progress of a single domain authorization within an issuance run."""
    NEEDS_AUTHORIZATION = 'needs_authorization'
    PROVISIONING = 'provisioning'
    AWAITING_VALIDATION = 'awaiting_validation'
    VALIDATED = 'validated'
    FAILED = 'failed'


def status_of(resource) -> str:
    """Returns the status name of an ACME challenge, authorization or order body."""
    status = resource.status
    return getattr(status, 'name', status)


def error_detail(error) -> str:
    """Formats the server-reported error of a resource."""
    return str(error) if error is not None else 'No further information was provided by the server.'


def write_atomic(path: str, content: bytes, mode: int) -> None:
    """
    Writes a file all-or-nothing: the content goes to a temporary file in the same directory, which is renamed over
    `path` once complete.

    Args:
        path (str): The destination file path.
        content (bytes): The file content.
        mode (int): The permission bits of the written file.
    """
    target = pathlib.Path(path)
    descriptor, temp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    try:
        with os.fdopen(descriptor, 'wb') as temp_file:
            os.fchmod(temp_file.fileno(), mode)
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        os.replace(temp_path, target)
    except BaseException:
        pathlib.Path(temp_path).unlink(missing_ok=True)
        raise


class CertificateOrchestrator:
    """
    Runs one issuance: every object it creates (account, order, authorizations, challenges, DNS records) belongs
    to this run only.
    """

    def __init__(
            self,
            config: CertificateConfig,
            acme_client: AcmeDirectoryClient,
            provisioner: ChallengeProvisioner,
            poll_interval: float = 1,
            cancel: threading.Event = None
    ):
        """
        Args:
            config (CertificateConfig): The certificate resource parameters.
            acme_client (AcmeDirectoryClient): The client bound to the ACME directory and account key.
            provisioner (ChallengeProvisioner): The DNS backend answering the challenges.
            poll_interval (float): The amount of time (in seconds) between two status checks.
            cancel (threading.Event): A cancellation token. Setting it aborts the run at its next wait.
        """
        self.config = config
        self.acme_client = acme_client
        self.provisioner = provisioner
        self.poll_interval = poll_interval
        self.cancel = cancel or threading.Event()
        self.account = None
        self.states = {}

    def run(self) -> crypto.IssuedCertificate:
        """
        Issues the certificate and writes it out. Nothing is written unless the ACME exchange fully succeeded.

        Returns:
            IssuedCertificate: The issued leaf certificate and chain.
        """
        request = self.load_request()
        self.register()
        order = self.place_order(request)
        self.authorize(order)
        order = self.finalize(order)
        issued = crypto.split_chain(self.acme_client.download_certificate(order))
        self.persist(request, issued)
        logger.info("Issued certificate %s for %s", self.config.certificate_path, request.names)
        return issued

    def load_request(self) -> crypto.CertificateRequest:
        """
        Loads the certificate's private key, or generates one in memory if allowed.

        Raises:
            acme_certificate.errors.MissingKey: When the key is missing and generation is disabled.
        """
        key, generated = crypto.load_or_generate_key(
            self.config.private_key_path, self.config.generate_private_key
        )
        return crypto.CertificateRequest(
            self.config.common_name,
            self.config.alternate_names,
            key=key,
            key_generated=generated
        )

    def register(self):
        """Registers the ACME account, or looks up the existing account of the account key."""
        self.account = self.acme_client.new_account(self.config.contact, self.config.agree_to_terms_url)
        return self.account

    def place_order(self, request: crypto.CertificateRequest) -> messages.OrderResource:
        """Creates an order for the effective names of the request."""
        logger.debug("Ordering a certificate for %s", request.names)
        return self.acme_client.new_order(request.csr())

    def authorize(self, order: messages.OrderResource) -> None:
        """Authorizes every domain of the order, one after the other."""
        for authorization in self.acme_client.get_authorizations(order):
            self.authorize_domain(authorization)

    def authorize_domain(self, authorization: messages.AuthorizationResource) -> None:
        """
        Answers the DNS-01 challenge of one authorization and waits until the authorization is valid. The challenge
        record is removed again whatever the outcome.

        Raises:
            acme_certificate.errors.ChallengeUnavailable: When the authorization offers no DNS-01 challenge.
            acme_certificate.errors.ChallengeFailed: When the server reports the challenge or authorization failed.
            acme_certificate.errors.AuthorizationTimeout: When the authorization timeout passes first.
        """
        domain = authorization.body.identifier.value
        if status_of(authorization.body) == 'valid':
            logger.debug("Domain '%s' is already authorized", domain)
            self.states[domain] = AuthorizationState.VALIDATED
            return

        self.states[domain] = AuthorizationState.NEEDS_AUTHORIZATION
        logger.debug("Authorizing domain '%s'", domain)
        try:
            challenge = self.select_challenge(authorization)
            record_value = challenge.chall.validation(self.acme_client.account_key)

            self.states[domain] = AuthorizationState.PROVISIONING
            with self.provisioner.provisioned(domain, challenges.DNS01.LABEL, record_value, cancel=self.cancel):
                self.states[domain] = AuthorizationState.AWAITING_VALIDATION
                self.acme_client.request_validation(challenge)
                deadline = time.monotonic() + self.config.authorization_timeout
                logger.debug("Waiting for domain '%s' to be authorized", domain)
                self.wait_for_challenge(domain, challenge, deadline)
                self.wait_for_authorization(domain, authorization, deadline)
        except errors.AcmeCertificateError:
            self.states[domain] = AuthorizationState.FAILED
            raise

        self.states[domain] = AuthorizationState.VALIDATED
        logger.debug("Domain '%s' successfully authorized", domain)

    @staticmethod
    def select_challenge(authorization: messages.AuthorizationResource) -> messages.ChallengeBody:
        """Returns the DNS-01 challenge offered by an authorization."""
        for challenge in authorization.body.challenges:
            if isinstance(challenge.chall, challenges.DNS01):
                return challenge
        raise errors.ChallengeUnavailable(
            f"ACME server did not offer a DNS-01 challenge for '{authorization.body.identifier.value}'."
        )

    def wait_for_challenge(self, domain: str, challenge: messages.ChallengeBody, deadline: float) -> None:
        """Polls a challenge until it leaves the pending and processing statuses."""
        def fetch():
            current = self.acme_client.reload_challenge(challenge)
            logger.debug("Challenge for domain '%s' is %s", domain, status_of(current))
            return current

        challenge, finished = tools.poll_until(
            fetch, lambda current: status_of(current) in PENDING_STATUSES, deadline, self.poll_interval, self.cancel
        )
        if not finished:
            raise errors.AuthorizationTimeout(domain, self.config.authorization_timeout)
        status = status_of(challenge)
        if status != 'valid':
            raise errors.ChallengeFailed(domain, status, error_detail(challenge.error))

    def wait_for_authorization(
            self,
            domain: str,
            authorization: messages.AuthorizationResource,
            deadline: float
    ) -> None:
        """
        Polls an authorization until it reaches a terminal status. A challenge can become valid before its
        authorization is updated.
        """
        def fetch():
            current = self.acme_client.reload_authorization(authorization)
            logger.debug("Domain '%s' authorization is %s", domain, status_of(current.body))
            return current

        authorization, finished = tools.poll_until(
            fetch, lambda current: status_of(current.body) in PENDING_STATUSES, deadline, self.poll_interval,
            self.cancel
        )
        if not finished:
            raise errors.AuthorizationTimeout(domain, self.config.authorization_timeout)
        status = status_of(authorization.body)
        if status != 'valid':
            failed = [challenge.error for challenge in authorization.body.challenges if challenge.error is not None]
            raise errors.ChallengeFailed(domain, status, error_detail(failed[0] if failed else None))

    def finalize(self, order: messages.OrderResource) -> messages.OrderResource:
        """
        Waits for the order to become ready, submits the CSR and waits for the order to become valid.

        Raises:
            acme_certificate.errors.OrderTimeout: When the order timeout passes first.
            acme_certificate.errors.OrderFailed: When the order ends in any status other than valid.
        """
        timeout = self.config.effective_order_timeout
        deadline = time.monotonic() + timeout

        def fetch():
            current = self.acme_client.reload_order(order)
            logger.debug("Order %s is %s", order.uri, status_of(current.body))
            return current

        # Authorizations are valid at this point, but the order may not have caught up yet
        order, finished = tools.poll_until(
            fetch, lambda current: status_of(current.body) == 'pending', deadline, self.poll_interval, self.cancel
        )
        if not finished:
            raise errors.OrderTimeout(timeout)
        if status_of(order.body) == 'ready':
            logger.debug("Finalizing order %s", order.uri)
            self.acme_client.finalize_order(order)

        order, finished = tools.poll_until(
            fetch, lambda current: status_of(current.body) in FINALIZING_STATUSES, deadline, self.poll_interval,
            self.cancel
        )
        if not finished:
            raise errors.OrderTimeout(timeout)
        status = status_of(order.body)
        if status != 'valid':
            raise errors.OrderFailed(status, error_detail(order.body.error))
        return order

    def persist(self, request: crypto.CertificateRequest, issued: crypto.IssuedCertificate) -> None:
        """
        Writes the generated key (if any), the certificate and the chain file (if configured). Each file is
        written atomically, but the files are not written as one transaction.

        Raises:
            acme_certificate.errors.InvalidCertificate: When the issued certificate is not for our key.
        """
        leaf = crypto.load_certificate(issued.leaf)
        if crypto.public_key_der(leaf) != crypto.public_key_der(request.key):
            raise errors.InvalidCertificate("The issued certificate does not match the requested private key.")

        config = self.config
        if request.key_generated:
            logger.debug("Writing private key to %s", config.private_key_path)
            write_atomic(config.private_key_path, crypto.dump_private_key(request.key), config.private_key_mode)

        content = issued.fullchain if config.combine_certificate_and_chain else issued.leaf
        logger.debug("Writing certificate to %s", config.certificate_path)
        write_atomic(config.certificate_path, content, config.certificate_mode)

        if config.certificate_chain_path:
            logger.debug("Writing certificate chain to %s", config.certificate_chain_path)
            write_atomic(config.certificate_chain_path, issued.chain_pem, config.certificate_chain_mode)
