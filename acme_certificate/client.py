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
Signed-request layer against an ACME v2 directory. Nonce handling and JWS signing are delegated to
`acme.client.ClientNetwork`; this module exposes the calls the issuance state machine needs and translates every
failure into `acme_certificate.errors.ProtocolError`.
"""
import contextlib
import logging
from typing import NamedTuple, Optional

import josepy as jose
import requests
from acme import client
from acme import errors as acme_errors
from acme import messages

from . import errors

logger = logging.getLogger(__name__)

USER_AGENT = 'acme_certificate/1.0.0'

# ACME problem document codes (RFC 8555 section 6.7) mapped to ProtocolError kinds
ERROR_KINDS = {
    'malformed': errors.ProtocolError.MALFORMED,
    'badCSR': errors.ProtocolError.MALFORMED,
    'badRevocationReason': errors.ProtocolError.MALFORMED,
    'badSignatureAlgorithm': errors.ProtocolError.MALFORMED,
    'invalidContact': errors.ProtocolError.MALFORMED,
    'rejectedIdentifier': errors.ProtocolError.MALFORMED,
    'unsupportedContact': errors.ProtocolError.MALFORMED,
    'unsupportedIdentifier': errors.ProtocolError.MALFORMED,
    'rateLimited': errors.ProtocolError.RATE_LIMITED,
    'unauthorized': errors.ProtocolError.UNAUTHORIZED,
    'accountDoesNotExist': errors.ProtocolError.UNAUTHORIZED,
    'externalAccountRequired': errors.ProtocolError.UNAUTHORIZED,
    'userActionRequired': errors.ProtocolError.UNAUTHORIZED,
}


class Account(NamedTuple):
    """A registered ACME account."""
    uri: str
    key: jose.JWKRSA
    terms_of_service_agreed: bool
    resource: messages.RegistrationResource


@contextlib.contextmanager
def protocol_errors(action: str):
    """
    Translates exceptions raised by the acme library and requests into ProtocolError.

    Args:
        action (str): A short description of the request, included in the error detail.
    """
    try:
        yield
    except messages.Error as error:
        kind = ERROR_KINDS.get(error.code, errors.ProtocolError.SERVER)
        raise errors.ProtocolError(kind, f"{action}: {error}") from error
    except (acme_errors.ClientError, requests.exceptions.RequestException) as error:
        raise errors.ProtocolError(errors.ProtocolError.TRANSPORT, f"{action}: {error!r}") from error
    except (acme_errors.Error, jose.DeserializationError) as error:
        raise errors.ProtocolError(errors.ProtocolError.SERVER, f"{action}: {error!r}") from error


class AcmeDirectoryClient:
    """
    A thin client for the directory, account, order, authorization and challenge endpoints of an ACME server.
    The directory is only fetched on first use, so constructing a client performs no network calls.
    """

    def __init__(
            self,
            directory_url: str,
            account_key: jose.JWKRSA,
            user_agent: str = USER_AGENT,
            verify_ssl: bool = True,
            net: client.ClientNetwork = None
    ):
        """
        Args:
            directory_url (str): The ACME directory URL to interact with.
            account_key (josepy.JWKRSA): The key signing every request, which also identifies the account.
            user_agent (str): The User-Agent header sent with every request.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            net (acme.client.ClientNetwork): An existing network object, mostly useful for testing.
        """
        self.directory_url = directory_url
        self.account_key = account_key
        self.net = net or client.ClientNetwork(account_key, user_agent=user_agent, verify_ssl=verify_ssl)
        self.account = None
        self._directory = None
        self._acme_client = None

    @property
    def directory(self) -> messages.Directory:
        """The ACME directory resource, fetched on first access."""
        if self._directory is None:
            logger.debug("Fetching ACME directory %s", self.directory_url)
            with protocol_errors("directory discovery"):
                self._directory = client.ClientV2.get_directory(self.directory_url, self.net)
        return self._directory

    @property
    def acme_client(self) -> client.ClientV2:
        """The acme.client.ClientV2 object bound to our directory and network."""
        if self._acme_client is None:
            self._acme_client = client.ClientV2(self.directory, net=self.net)
        return self._acme_client

    @property
    def terms_of_service(self) -> Optional[str]:
        """The terms of service URL published in the directory metadata, if any."""
        try:
            meta = self.directory.meta
        except AttributeError:
            return None
        return getattr(meta, 'terms_of_service', None)

    def new_account(self, contact: str, agree_to_terms_url: str = None) -> Account:
        """
        Registers the account key with the ACME server. Registering a key that already has an account is not an
        error: the existing account is looked up and returned.

        Args:
            contact (str): The contact URI of the account (e.g. `mailto:admin@example.com`).
            agree_to_terms_url (str): The terms of service URL the operator agreed to.

        Returns:
            Account: The registered account.

        Raises:
            acme_certificate.errors.TermsNotAccepted: When the directory publishes terms of service that do not
                match `agree_to_terms_url`. No registration request is sent in that case.
            acme_certificate.errors.ProtocolError: When the ACME server rejects the registration.
        """
        terms_of_service = self.terms_of_service
        if terms_of_service and terms_of_service != agree_to_terms_url:
            raise errors.TermsNotAccepted(terms_of_service)

        registration = messages.NewRegistration(
            contact=(contact,),
            terms_of_service_agreed=bool(terms_of_service)
        )
        with protocol_errors("account registration"):
            try:
                regr = self.acme_client.new_account(registration)
            except acme_errors.ConflictError as error:
                logger.debug("Found existing registration for this key at %s", error.location)
                existing = messages.RegistrationResource(uri=error.location, body=registration)
                regr = self.acme_client.query_registration(existing)

        logger.debug("Using ACME account %s", regr.uri)
        self.account = Account(
            uri=regr.uri,
            key=self.account_key,
            terms_of_service_agreed=bool(terms_of_service),
            resource=regr
        )
        return self.account

    def new_order(self, csr_pem: bytes) -> messages.OrderResource:
        """
        Creates an order for the identifiers listed in the CSR. The order's authorizations are fetched as well.
        """
        with protocol_errors("new order"):
            return self.acme_client.new_order(csr_pem)

    @staticmethod
    def get_authorizations(order: messages.OrderResource) -> list:
        """Returns the authorization resources of an order."""
        return list(order.authorizations)

    def request_validation(self, challenge: messages.ChallengeBody) -> messages.ChallengeBody:
        """
        Tells the ACME server that the challenge is ready to be validated.

        Returns:
            acme.messages.ChallengeBody: The challenge as updated by the server.
        """
        response = challenge.response(self.account_key)
        with protocol_errors(f"answering challenge {challenge.uri}"):
            return self.acme_client.answer_challenge(challenge, response).body

    def reload_challenge(self, challenge: messages.ChallengeBody) -> messages.ChallengeBody:
        """Fetches the current state of a challenge."""
        with protocol_errors(f"polling challenge {challenge.uri}"):
            response = self._post_as_get(challenge.uri)
            return messages.ChallengeBody.from_json(response.json())

    def reload_authorization(self, authorization: messages.AuthorizationResource) -> messages.AuthorizationResource:
        """Fetches the current state of an authorization."""
        with protocol_errors(f"polling authorization {authorization.uri}"):
            updated, _ = self.acme_client.poll(authorization)
            return updated

    def reload_order(self, order: messages.OrderResource) -> messages.OrderResource:
        """Fetches the current state of an order."""
        with protocol_errors(f"polling order {order.uri}"):
            response = self._post_as_get(order.uri)
            return order.update(body=messages.Order.from_json(response.json()))

    def finalize_order(self, order: messages.OrderResource) -> messages.OrderResource:
        """Submits the order's CSR to its finalize URL."""
        with protocol_errors(f"finalizing order {order.uri}"):
            return self.acme_client.begin_finalization(order)

    def download_certificate(self, order: messages.OrderResource) -> str:
        """
        Downloads the certificate of a valid order.

        Returns:
            str: The PEM encoded leaf certificate followed by its chain.
        """
        url = order.body.certificate
        if not url:
            raise errors.ProtocolError(
                errors.ProtocolError.SERVER, f"Order {order.uri} does not reference a certificate"
            )
        with protocol_errors(f"downloading certificate {url}"):
            return self._post_as_get(url).text

    def _post_as_get(self, url: str) -> requests.Response:
        """Sends a POST-as-GET request, the authenticated way of fetching ACME resources."""
        return self.net.post(url, None, new_nonce_url=self.directory['newNonce'])
