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
"""Resource parameters of a managed ACME certificate."""
import socket

import validators

from . import errors
from .provisioners import PROVISIONERS, strip_wildcard

DEFAULT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
HOST_PRIVATE_KEY_DIR = "/etc/puppetlabs/puppet/ssl/private_keys"


def host_private_key_path() -> str:
    """Returns the path of the configuration-management agent's own private key for this host."""
    return f"{HOST_PRIVATE_KEY_DIR}/{socket.getfqdn().lower()}.pem"


class CertificateConfig:
    """
    The parameters of one managed certificate, as handed over by the configuration-management layer. Every value
    is validated when it is assigned.
    """
    # A resource has many independent parameters, keeping them on one object mirrors the resource declaration.
    # pylint: disable=too-many-instance-attributes

    PARAMETERS = {
        'certificate_path': None,
        'certificate_chain_path': None,
        'private_key_path': None,
        'acme_private_key_path': None,
        'common_name': None,
        'alternate_names': [],
        'generate_private_key': False,
        'combine_certificate_and_chain': False,
        'certificate_mode': 0o644,
        'certificate_chain_mode': 0o644,
        'private_key_mode': 0o600,
        'directory': DEFAULT_DIRECTORY,
        'contact': None,
        'agree_to_terms_url': None,
        'authorization_timeout': 300,
        'order_timeout': None,
        'renew_within_days': 30,
        'dns_provider': 'route53',
        'aws_access_key_id': None,
        'aws_secret_access_key': None,
        'route53_zone_id': None,
        'propagation_nameservers': None,
    }
    REQUIRED = ('certificate_path', 'private_key_path', 'common_name', 'contact')

    def __init__(self, **parameters):
        """
        Args:
            **parameters: Any of the keys of `PARAMETERS`. Omitted parameters take their default value.

        Raises:
            acme_certificate.errors.ConfigurationError: When a parameter is unknown, missing or invalid.

        Examples:
            >>> config = acme_certificate.CertificateConfig(
            ...     certificate_path="/etc/ssl/example.com.crt",
            ...     private_key_path="/etc/ssl/example.com.key",
            ...     common_name="example.com",
            ...     alternate_names=["www.example.com"],
            ...     generate_private_key=True,
            ...     contact="mailto:admin@example.com",
            ...     route53_zone_id="Z2ABCDEF123456"
            ... )
        """
        unknown = sorted(set(parameters) - set(self.PARAMETERS))
        if unknown:
            raise errors.ConfigurationError(f"Unknown parameters {unknown}. Options {sorted(self.PARAMETERS)}")

        for name, default in self.PARAMETERS.items():
            value = parameters.get(name)
            setattr(self, name, default if value is None else value)

        missing = [name for name in self.REQUIRED if not getattr(self, name)]
        if missing:
            raise errors.ConfigurationError(f"Missing required parameters {missing}.")

    @classmethod
    def from_mapping(cls, parameters: dict) -> 'CertificateConfig':
        """Builds a config from the resource parameter mapping of the configuration-management layer."""
        return cls(**dict(parameters))

    @property
    def effective_acme_private_key_path(self) -> str:
        """The configured ACME account key path, or the host agent's own key when none is configured."""
        return self.acme_private_key_path or host_private_key_path()

    @property
    def effective_order_timeout(self) -> float:
        """The order timeout, reusing the authorization timeout when none is configured."""
        return self.order_timeout if self.order_timeout is not None else self.authorization_timeout

    @property
    def provisioner_options(self) -> dict:
        """The keyword arguments of the DNS provisioner selected by `dns_provider`."""
        return {
            'route53_zone_id': self.route53_zone_id,
            'aws_access_key_id': self.aws_access_key_id,
            'aws_secret_access_key': self.aws_secret_access_key,
            'propagation_nameservers': self.propagation_nameservers,
        }

    @property
    def common_name(self) -> str:
        """The subject common name of the certificate."""
        return self._common_name

    @common_name.setter
    def common_name(self, value: str) -> None:
        """
        Raises:
            acme_certificate.errors.ConfigurationError: When the value is set but is not a valid domain name.
        """
        if value is not None:
            self.validate_domain(value)
        self._common_name = value

    @property
    def alternate_names(self) -> list:
        """Additional names covered by the certificate."""
        return self._alternate_names

    @alternate_names.setter
    def alternate_names(self, value: list) -> None:
        """
        Raises:
            acme_certificate.errors.ConfigurationError: When the value is not a list of valid domain names.
        """
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            raise errors.ConfigurationError("alternate_names must be of type 'list'.")
        for domain in value:
            self.validate_domain(domain)
        self._alternate_names = list(value)

    @property
    def contact(self) -> str:
        """The contact URI of the ACME account."""
        return self._contact

    @contact.setter
    def contact(self, value: str) -> None:
        """
        Accepts a `mailto:` URI or a bare e-mail address, which is turned into a `mailto:` URI.

        Raises:
            acme_certificate.errors.ConfigurationError: When the value is not a valid e-mail contact.
        """
        if value is not None:
            address = value[len('mailto:'):] if value.startswith('mailto:') else value
            if not validators.email(address):
                raise errors.ConfigurationError(f"Value '{value}' is not a valid contact e-mail address.")
            value = f"mailto:{address}"
        self._contact = value

    @property
    def directory(self) -> str:
        """The ACME directory URL."""
        return self._directory

    @directory.setter
    def directory(self, value: str) -> None:
        if not validators.url(value):
            raise errors.ConfigurationError(f"Value '{value}' is not a valid ACME directory URL.")
        self._directory = value

    @property
    def certificate_mode(self) -> int:
        """The permission bits of the certificate file."""
        return self._certificate_mode

    @certificate_mode.setter
    def certificate_mode(self, value) -> None:
        self._certificate_mode = self.parse_mode('certificate_mode', value)

    @property
    def certificate_chain_mode(self) -> int:
        """The permission bits of the chain file."""
        return self._certificate_chain_mode

    @certificate_chain_mode.setter
    def certificate_chain_mode(self, value) -> None:
        self._certificate_chain_mode = self.parse_mode('certificate_chain_mode', value)

    @property
    def private_key_mode(self) -> int:
        """The permission bits of a generated private key file."""
        return self._private_key_mode

    @private_key_mode.setter
    def private_key_mode(self, value) -> None:
        self._private_key_mode = self.parse_mode('private_key_mode', value)

    @property
    def authorization_timeout(self) -> float:
        """The amount of time (in seconds) to wait for each domain to be authorized."""
        return self._authorization_timeout

    @authorization_timeout.setter
    def authorization_timeout(self, value) -> None:
        self._authorization_timeout = self.parse_seconds('authorization_timeout', value)

    @property
    def order_timeout(self) -> float:
        """The amount of time (in seconds) to wait for a finalized order to become valid."""
        return self._order_timeout

    @order_timeout.setter
    def order_timeout(self, value) -> None:
        self._order_timeout = None if value is None else self.parse_seconds('order_timeout', value)

    @property
    def renew_within_days(self) -> int:
        """The number of days before expiry at which the certificate is renewed."""
        return self._renew_within_days

    @renew_within_days.setter
    def renew_within_days(self, value) -> None:
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise errors.ConfigurationError(f"renew_within_days must be an integer, got '{value}'.") from None
        if value < 0:
            raise errors.ConfigurationError("renew_within_days must not be negative.")
        self._renew_within_days = value

    @property
    def dns_provider(self) -> str:
        """The kind of DNS backend answering the challenges."""
        return self._dns_provider

    @dns_provider.setter
    def dns_provider(self, value: str) -> None:
        if value not in PROVISIONERS:
            raise errors.ConfigurationError(f"Unknown DNS provider '{value}'. Options {sorted(PROVISIONERS)}")
        self._dns_provider = value

    @property
    def generate_private_key(self) -> bool:
        """Whether a missing private key may be generated."""
        return self._generate_private_key

    @generate_private_key.setter
    def generate_private_key(self, value) -> None:
        self._generate_private_key = self.parse_bool('generate_private_key', value)

    @property
    def combine_certificate_and_chain(self) -> bool:
        """Whether the chain is appended to the certificate file."""
        return self._combine_certificate_and_chain

    @combine_certificate_and_chain.setter
    def combine_certificate_and_chain(self, value) -> None:
        self._combine_certificate_and_chain = self.parse_bool('combine_certificate_and_chain', value)

    @property
    def propagation_nameservers(self) -> list:
        """Nameserver addresses that must serve each challenge record before it is validated."""
        return self._propagation_nameservers

    @propagation_nameservers.setter
    def propagation_nameservers(self, value: list) -> None:
        """
        Raises:
            acme_certificate.errors.ConfigurationError: When the value is not a list of IPv4 or IPv6 addresses.
        """
        if value is not None:
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, (list, tuple)):
                raise errors.ConfigurationError("propagation_nameservers must be of type 'list'.")
            for nameserver in value:
                if not isinstance(nameserver, str) or not (validators.ipv4(nameserver) or validators.ipv6(nameserver)):
                    raise errors.ConfigurationError(
                        f"Invalid nameserver '{nameserver}'. Nameservers must be IPv4 or IPv6 addresses."
                    )
            value = list(value)
        self._propagation_nameservers = value

    @staticmethod
    def parse_bool(name: str, value) -> bool:
        """
        Parses a flag given as a boolean or as the strings `'true'` and `'false'`.

        Raises:
            acme_certificate.errors.ConfigurationError: When the value is not a boolean.
        """
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ('true', 'false'):
            return value.lower() == 'true'
        raise errors.ConfigurationError(f"{name} must be a boolean, got '{value}'.")

    @staticmethod
    def validate_domain(domain: str) -> None:
        """
        Checks that a value (minus the wildcard if present) is a valid FQDN.

        Raises:
            acme_certificate.errors.ConfigurationError: When the domain name is invalid.
        """
        if not isinstance(domain, str) or not validators.domain(strip_wildcard(domain)):
            raise errors.ConfigurationError(f"Invalid domain name '{domain}'. Domain name must adhere to RFC2181.")

    @staticmethod
    def parse_mode(name: str, value) -> int:
        """
        Parses a permission value given as an integer or an octal string such as `'0640'`.

        Raises:
            acme_certificate.errors.ConfigurationError: When the value is not a valid permission value.
        """
        try:
            mode = int(value, 8) if isinstance(value, str) else int(value)
        except (TypeError, ValueError):
            raise errors.ConfigurationError(f"{name} must be an octal permission value, got '{value}'.") from None
        if not 0 <= mode <= 0o7777:
            raise errors.ConfigurationError(f"{name} must be an octal permission value, got '{value}'.")
        return mode

    @staticmethod
    def parse_seconds(name: str, value) -> float:
        """
        Raises:
            acme_certificate.errors.ConfigurationError: When the value is not a positive number.
        """
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            raise errors.ConfigurationError(f"{name} must be a number of seconds, got '{value}'.") from None
        if seconds <= 0:
            raise errors.ConfigurationError(f"{name} must be a positive number of seconds.")
        return seconds
