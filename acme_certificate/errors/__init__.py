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
"""Custom exception classes for acme_certificate."""


class AcmeCertificateError(Exception):
    """Base class for every error raised by acme_certificate"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(AcmeCertificateError):
    """Error occurs when a required resource parameter is missing or invalid"""


class MissingKey(ConfigurationError):
    """Error occurs when the private key does not exist and may not be generated"""
    def __init__(self, path: str) -> None:
        super().__init__(f"Private key '{path}' does not exist and generate_private_key is disabled.")
        self.path = path


class InvalidPrivateKey(AcmeCertificateError):
    """Error occurs when an existing private key cannot be parsed or is not an RSA key."""


class InvalidCertificate(AcmeCertificateError):
    """Error occurs when the certificate is invalid or does not exist."""


class TermsNotAccepted(AcmeCertificateError):
    """Error occurs when the ACME server's terms of service were not agreed to in the configuration"""
    def __init__(self, url: str) -> None:
        super().__init__(
            f"ACME server requires you to agree to the terms of service at {url}. "
            "If you accept the terms, set the agree_to_terms_url parameter to this URL."
        )
        self.url = url


class ProtocolError(AcmeCertificateError):
    """Error occurs when the ACME server rejects a request or cannot be reached"""
    MALFORMED = 'malformed'
    RATE_LIMITED = 'rate_limited'
    UNAUTHORIZED = 'unauthorized'
    SERVER = 'server'
    TRANSPORT = 'transport'

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(f"ACME request failed ({kind}): {detail}")
        self.kind = kind
        self.detail = detail


class ChallengeUnavailable(AcmeCertificateError):
    """Error occurs when the requested ACME server does not offer the DNS-01 challenge"""


class ChallengeFailed(AcmeCertificateError):
    """Error occurs when the ACME server reports a failed challenge or authorization"""
    def __init__(self, domain: str, status: str, detail: str) -> None:
        super().__init__(f"Domain '{domain}' has unexpected authorization status '{status}'. Error: '{detail}'")
        self.domain = domain
        self.status = status
        self.detail = detail


class AuthorizationTimeout(AcmeCertificateError):
    """Error occurs when the max time has been exceeded waiting for a domain to be authorized"""
    def __init__(self, domain: str, seconds: float) -> None:
        super().__init__(
            f"Timed out waiting for ACME server to verify domain '{domain}' after {seconds} seconds"
        )
        self.domain = domain
        self.seconds = seconds


class OrderTimeout(AcmeCertificateError):
    """Error occurs when the max time has been exceeded waiting for an order to become valid"""
    def __init__(self, seconds: float) -> None:
        super().__init__(f"Timed out waiting for ACME server to issue the certificate after {seconds} seconds")
        self.seconds = seconds


class OrderFailed(AcmeCertificateError):
    """Error occurs when a finalized order ends in a status other than valid"""
    def __init__(self, status: str, detail: str) -> None:
        super().__init__(f"Certificate order finished with status '{status}'. Error: '{detail}'")
        self.status = status
        self.detail = detail


class PropagationTimeout(AcmeCertificateError):
    """Error occurs when the DNS backend never confirms that a record change propagated"""
    def __init__(self, domain: str) -> None:
        super().__init__(f"Timed out waiting for the DNS challenge record of '{domain}' to propagate")
        self.domain = domain


class DnsBackendError(AcmeCertificateError):
    """Error occurs when a DNS record cannot be created or removed"""


class RunCancelled(AcmeCertificateError):
    """Error occurs when an issuance run is cancelled while waiting on the ACME server or DNS backend"""
