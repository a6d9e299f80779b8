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
"""DNS-01 challenge provisioner backed by an AWS Route 53 hosted zone."""
import logging
import threading

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import ChallengeProvisioner, ProvisionedRecord, strip_wildcard
from .. import errors
from .. import tools

logger = logging.getLogger(__name__)


class Route53Provisioner(ChallengeProvisioner):
    """
    Creates DNS-01 challenge records in a Route 53 hosted zone and waits for Route 53 to report them as INSYNC.
    """
    # Route 53 is not region-specific, but the client requires one
    REGION = 'us-east-1'
    TTL = 60
    RECORD_TYPE = 'TXT'

    def __init__(
            self,
            route53_zone_id: str,
            aws_access_key_id: str = None,
            aws_secret_access_key: str = None,
            max_attempts: int = 60,
            delay: float = 5,
            propagation_nameservers: list = None,
            client=None
    ):
        """
        Args:
            route53_zone_id (str): The ID of the hosted zone to create challenge records in.
            aws_access_key_id (str): An explicit AWS access key ID. The default boto3 credential chain is used
                when omitted.
            aws_secret_access_key (str): The secret matching `aws_access_key_id`.
            max_attempts (int): The number of times a change status is checked before giving up.
            delay (float): The amount of time (in seconds) between two change status checks.
            propagation_nameservers (list): Nameservers that must serve the record before `provision` returns.
            client: An existing boto3 Route 53 client, mostly useful for testing.

        Raises:
            acme_certificate.errors.ConfigurationError: When no zone ID is given.
        """
        if not route53_zone_id:
            raise errors.ConfigurationError("Missing parameter route53_zone_id")

        self.zone_id = route53_zone_id
        self.max_attempts = max_attempts
        self.delay = delay
        self.propagation_nameservers = propagation_nameservers
        self.r53 = client or boto3.client('route53', **self.client_options(aws_access_key_id, aws_secret_access_key))

    @classmethod
    def client_options(cls, aws_access_key_id: str = None, aws_secret_access_key: str = None) -> dict:
        """Builds the keyword arguments of `boto3.client`. Credentials are only set when explicitly supplied."""
        options = {'region_name': cls.REGION}
        if aws_access_key_id:
            options['aws_access_key_id'] = aws_access_key_id
            options['aws_secret_access_key'] = aws_secret_access_key
        return options

    def provision(
            self,
            domain: str,
            record_name: str,
            record_value: str,
            cancel: threading.Event = None
    ) -> ProvisionedRecord:
        name = f"{record_name}.{strip_wildcard(domain)}"
        logger.debug("Creating DNS record %s in Route 53 zone '%s'", name, self.zone_id)
        change_id = self._change_txt_record('UPSERT', name, record_value)
        handle = ProvisionedRecord(
            domain=domain, name=name, rtype=self.RECORD_TYPE, value=record_value, backend_id=change_id
        )

        # The record exists from here on, so it must not outlive a failed wait
        try:
            self._wait_for_change(handle, cancel)
            if self.propagation_nameservers:
                self._wait_for_resolvers(handle, cancel)
        except BaseException:
            try:
                self.clean(handle)
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("Unable to remove DNS record %s for '%s': %s", name, domain, error, exc_info=True)
            raise

        return handle

    def clean(self, handle: ProvisionedRecord) -> None:
        logger.debug("Removing DNS record %s from Route 53 zone '%s'", handle.name, self.zone_id)
        self._change_txt_record('DELETE', handle.name, handle.value)

    def _change_txt_record(self, action: str, name: str, value: str) -> str:
        """
        Submits a single record change to Route 53.

        Returns:
            str: The ID of the Route 53 change.
        """
        try:
            response = self.r53.change_resource_record_sets(
                HostedZoneId=self.zone_id,
                ChangeBatch={
                    'Comment': f"acme_certificate challenge validation {action}",
                    'Changes': [
                        {
                            'Action': action,
                            'ResourceRecordSet': {
                                'Name': name,
                                'Type': self.RECORD_TYPE,
                                'TTL': self.TTL,
                                'ResourceRecords': [{'Value': f'"{value}"'}],
                            }
                        }
                    ]
                }
            )
        except (BotoCoreError, ClientError) as error:
            logger.debug("Encountered error during Route 53 %s of %s: %s", action, name, error, exc_info=True)
            raise errors.DnsBackendError(f"Route 53 {action} of {name} failed: {error}") from error
        return response['ChangeInfo']['Id']

    def _wait_for_change(self, handle: ProvisionedRecord, cancel: threading.Event = None) -> None:
        """
        Waits for a change to be propagated to all Route 53 DNS servers.
        https://docs.aws.amazon.com/Route53/latest/APIReference/API_GetChange.html
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                status = self.r53.get_change(Id=handle.backend_id)['ChangeInfo']['Status']
            except (BotoCoreError, ClientError) as error:
                raise errors.DnsBackendError(f"Unable to get Route 53 change {handle.backend_id}: {error}") from error
            if status == 'INSYNC':
                return
            logger.debug("Route 53 changes not yet propagated, waiting (%d/%d)", attempt, self.max_attempts)
            tools.sleep(self.delay, cancel)
        raise errors.PropagationTimeout(handle.domain)

    def _wait_for_resolvers(self, handle: ProvisionedRecord, cancel: threading.Event = None) -> None:
        """Waits until every configured nameserver answers with the challenge record."""
        query = tools.DNSQuery(handle.name, rtype=handle.rtype, nameservers=self.propagation_nameservers)
        for attempt in range(1, self.max_attempts + 1):
            if query.found_everywhere(handle.value):
                return
            logger.debug("DNS record %s not yet visible on %s, waiting (%d/%d)", handle.name, query.values,
                         attempt, self.max_attempts)
            tools.sleep(self.delay, cancel)
        raise errors.PropagationTimeout(handle.domain)
