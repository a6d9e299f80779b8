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
acme_certificate keeps a certificate file issued by an ACME certificate authority present, valid and matching its
private key. Domains are validated with the DNS-01 challenge, whose records are created and removed through a
pluggable DNS backend (currently AWS Route 53). It is meant to be driven by a configuration-management agent: the
`ensure_present()` operation only talks to the ACME server when the certificate on disk no longer satisfies the
resource parameters.
"""
import logging
import threading

from . import checker
from . import crypto
from . import errors
from .client import AcmeDirectoryClient
from .config import CertificateConfig
from .orchestrator import CertificateOrchestrator
from .provisioners import ChallengeProvisioner, create_provisioner

__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation

logger = logging.getLogger(__name__)


class AcmeCertificate:
    """
    A managed certificate resource. Checking the resource is read-only; creating it runs a full ACME issuance.
    """

    def __init__(
            self,
            config: CertificateConfig,
            provisioner: ChallengeProvisioner = None,
            acme_client: AcmeDirectoryClient = None,
            cancel: threading.Event = None
    ):
        """
        Args:
            config (CertificateConfig): The resource parameters.
            provisioner (ChallengeProvisioner): The DNS backend to use. Defaults to the one selected by
                `config.dns_provider`, created only when an issuance actually runs.
            acme_client (AcmeDirectoryClient): The ACME client to use. Defaults to a client for `config.directory`
                signing with the key at `config.effective_acme_private_key_path`.
            cancel (threading.Event): A cancellation token aborting a running issuance at its next wait.

        Examples:
            >>> import acme_certificate
            >>> resource = acme_certificate.AcmeCertificate(
            ...     acme_certificate.CertificateConfig(
            ...         certificate_path="/etc/ssl/example.com.crt",
            ...         private_key_path="/etc/ssl/example.com.key",
            ...         common_name="example.com",
            ...         generate_private_key=True,
            ...         contact="mailto:admin@example.com",
            ...         agree_to_terms_url="https://letsencrypt.org/documents/LE-SA-v1.5-February-24-2025.pdf",
            ...         route53_zone_id="Z2ABCDEF123456"
            ...     )
            ... )
            >>> resource.ensure_present()
            True
        """
        self.config = config
        self.provisioner = provisioner
        self.acme_client = acme_client
        self.cancel = cancel

    def request(self) -> crypto.CertificateRequest:
        """Returns the certificate intent described by the resource parameters."""
        return crypto.CertificateRequest(self.config.common_name, self.config.alternate_names)

    def exists(self) -> bool:
        """
        Checks whether the certificate on disk already satisfies the resource parameters. No network calls are made
        and no files are written.
        """
        logger.debug("Checking existence of %s", self.config.certificate_path)
        return checker.is_satisfied(
            self.config.certificate_path,
            self.config.private_key_path,
            self.request(),
            self.config.renew_within_days
        )

    def create(self) -> crypto.IssuedCertificate:
        """
        Issues a new certificate and writes it out.

        Raises:
            acme_certificate.errors.AcmeCertificateError: When any step of the issuance fails. The certificate, chain
                and key files are left untouched in that case.
        """
        logger.debug("Creating certificate %s", self.config.certificate_path)
        if self.acme_client is None:
            account_key = crypto.load_account_key(self.config.effective_acme_private_key_path)
            self.acme_client = AcmeDirectoryClient(self.config.directory, account_key)
        if self.provisioner is None:
            self.provisioner = create_provisioner(self.config.dns_provider, **self.config.provisioner_options)

        orchestrator = CertificateOrchestrator(self.config, self.acme_client, self.provisioner, cancel=self.cancel)
        return orchestrator.run()

    def ensure_present(self) -> bool:
        """
        Issues the certificate unless the existing one already satisfies the resource parameters.

        Returns:
            bool: True if a new certificate was issued, False if the existing certificate was kept.
        """
        if self.exists():
            return False
        self.create()
        return True
