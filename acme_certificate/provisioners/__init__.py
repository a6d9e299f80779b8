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
DNS-01 challenge provisioners. A provisioner creates the TXT record answering a challenge, waits for the record to
propagate, and removes it again once the challenge has been validated or has failed.
"""
import abc
import contextlib
import importlib
import logging
import threading
from typing import Any, Iterator, NamedTuple

from .. import errors

logger = logging.getLogger(__name__)

# Backend kind -> (module, class name)
PROVISIONERS = {
    'route53': ('acme_certificate.provisioners.route53', 'Route53Provisioner'),
}


class ProvisionedRecord(NamedTuple):
    """Handle of a DNS record created by a provisioner."""
    domain: str
    name: str
    rtype: str
    value: str
    backend_id: Any = None


class ChallengeProvisioner(abc.ABC):
    """Capability to publish and remove the DNS record answering a DNS-01 challenge."""

    @abc.abstractmethod
    def provision(
            self,
            domain: str,
            record_name: str,
            record_value: str,
            cancel: threading.Event = None
    ) -> ProvisionedRecord:
        """
        Creates the TXT record `{record_name}.{domain}` holding `record_value` and blocks until the backend reports
        the change as propagated.

        Raises:
            acme_certificate.errors.DnsBackendError: When the record cannot be created.
            acme_certificate.errors.PropagationTimeout: When the change is never confirmed.
            acme_certificate.errors.RunCancelled: When `cancel` is set while waiting.
        """

    @abc.abstractmethod
    def clean(self, handle: ProvisionedRecord) -> None:
        """
        Removes a record created by `provision`.

        Raises:
            acme_certificate.errors.DnsBackendError: When the record cannot be removed.
        """

    @contextlib.contextmanager
    def provisioned(
            self,
            domain: str,
            record_name: str,
            record_value: str,
            cancel: threading.Event = None
    ) -> Iterator[ProvisionedRecord]:
        """
        Provisions a record for the duration of a `with` block. The record is cleaned exactly once when the block
        exits, whatever the outcome. Cleanup failures are logged and never replace the block's own exception.

        Examples:
            >>> with provisioner.provisioned("example.com", "_acme-challenge", "moY32lkdsZ3VWHM1mdM") as record:
            ...     validate_challenge()
        """
        handle = self.provision(domain, record_name, record_value, cancel=cancel)
        try:
            yield handle
        finally:
            try:
                self.clean(handle)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("Unable to remove DNS record %s for '%s': %s", handle.name, domain, error,
                               exc_info=True)


def strip_wildcard(domain: str) -> str:
    """
    Strips the wildcard portion of a domain (*.) if present.

    Args:
        domain (str): The domain string to strip wildcards from.

    Returns:
        str: The domain string without the wildcard portion.
    """
    return domain[2:] if domain.startswith("*.") else domain


def create_provisioner(kind: str, **options) -> ChallengeProvisioner:
    """
    Creates the provisioner registered for a DNS backend kind.

    Args:
        kind (str): The DNS backend kind, e.g. `route53`.
        **options: Backend specific options passed to the provisioner's constructor.

    Raises:
        acme_certificate.errors.ConfigurationError: When no provisioner is registered for `kind`.
    """
    try:
        module_name, class_name = PROVISIONERS[kind]
    except KeyError:
        raise errors.ConfigurationError(
            f"Unknown DNS provider '{kind}'. Options {sorted(PROVISIONERS)}"
        ) from None

    provisioner_class = getattr(importlib.import_module(module_name), class_name)
    return provisioner_class(**options)
