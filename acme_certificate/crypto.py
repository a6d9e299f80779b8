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
"""Key, CSR and certificate handling for acme_certificate."""
import logging
import pathlib
import re
from typing import NamedTuple, Optional, Tuple

import josepy as jose
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)
from cryptography.x509.oid import NameOID

from . import errors

logger = logging.getLogger(__name__)

DEFAULT_KEY_SIZE = 2048
MIN_KEY_SIZE = 2048
PEM_CERTIFICATE_RE = re.compile(
    rb'-----BEGIN CERTIFICATE-----\r?\n.+?\r?\n-----END CERTIFICATE-----', re.DOTALL
)


class IssuedCertificate(NamedTuple):
    """The leaf certificate and its chain as returned by the ACME server."""
    leaf: bytes
    chain: Tuple[bytes, ...]

    @property
    def chain_pem(self) -> bytes:
        """The chain certificates concatenated into one PEM bytes-string."""
        return b''.join(self.chain)

    @property
    def fullchain(self) -> bytes:
        """The leaf certificate followed by its chain."""
        return self.leaf + self.chain_pem


class CertificateRequest:
    """
    The certificate intent: a common name, its alternate names and the key that the certificate is issued for.
    """

    def __init__(
            self,
            common_name: str,
            alternate_names: list = None,
            key: Optional[rsa.RSAPrivateKey] = None,
            key_generated: bool = False
    ):
        """
        Args:
            common_name (str): The subject common name of the certificate.
            alternate_names (list): Additional names to list in the certificate's SAN extension.
            key (rsa.RSAPrivateKey): The private key the certificate is requested for.
            key_generated (bool): Whether `key` was generated for this request rather than loaded from disk.
        """
        self.common_name = common_name
        self.alternate_names = list(alternate_names) if alternate_names else []
        self.key = key
        self.key_generated = key_generated

    @property
    def names(self) -> list:
        """
        The effective identifiers of this request: the common name followed by the alternate names, with
        duplicates removed and case preserved.

        Returns:
            list: The names to order and to list in the SAN extension.
        """
        names = []
        for name in [self.common_name, *self.alternate_names]:
            if name not in names:
                names.append(name)
        return names

    @property
    def san_set(self) -> frozenset:
        """The effective names as an unordered set, used for every SAN comparison."""
        return frozenset(self.names)

    def csr(self) -> bytes:
        """
        Builds the PEM encoded CSR for this request.

        Raises:
            acme_certificate.errors.InvalidPrivateKey: When no key is attached to this request.
        """
        if self.key is None:
            raise errors.InvalidPrivateKey("A private key must be loaded or generated before building the CSR.")
        return build_csr(self.common_name, self.names, self.key)


def generate_key(key_size: int = DEFAULT_KEY_SIZE) -> rsa.RSAPrivateKey:
    """
    Generates a new RSA private key in memory.

    Raises:
        acme_certificate.errors.ConfigurationError: When `key_size` is below 2048 bits.
    """
    if key_size < MIN_KEY_SIZE:
        raise errors.ConfigurationError(f"RSA key size must be at least {MIN_KEY_SIZE} bits, got {key_size}.")
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def load_private_key(data: bytes):
    """
    Parses a PEM encoded private key.

    Raises:
        acme_certificate.errors.InvalidPrivateKey: When the data is not an unencrypted PEM private key.
    """
    try:
        return load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as error:
        raise errors.InvalidPrivateKey(f"Unable to parse private key: {error}") from error


def load_or_generate_key(path: str, allow_generate: bool, key_size: int = DEFAULT_KEY_SIZE) -> tuple:
    """
    Loads the private key at `path`, or generates a new RSA key if the file is absent and generation is allowed.
    A generated key is not written anywhere; persisting it is left to the caller once issuance succeeded.

    Args:
        path (str): The private key file path.
        allow_generate (bool): Whether a missing key may be generated.
        key_size (int): The RSA key size to generate.

    Returns:
        tuple: The private key object and a boolean that is True when the key was generated.

    Raises:
        acme_certificate.errors.MissingKey: When the key file is absent and generation is disallowed.
        acme_certificate.errors.InvalidPrivateKey: When the key file exists but cannot be parsed.
    """
    key_path = pathlib.Path(path)
    if key_path.exists():
        logger.debug("Loading private key from %s", key_path)
        return load_private_key(key_path.read_bytes()), False
    if not allow_generate:
        raise errors.MissingKey(str(key_path))

    logger.debug("Private key %s does not exist, generating a %d bit RSA key", key_path, key_size)
    return generate_key(key_size), True


def load_account_key(path: str) -> jose.JWKRSA:
    """
    Loads the RSA key used to sign requests to the ACME server.

    Raises:
        acme_certificate.errors.ConfigurationError: When the key cannot be read or is not an RSA key.
    """
    try:
        key = load_private_key(pathlib.Path(path).read_bytes())
    except (OSError, errors.InvalidPrivateKey) as error:
        raise errors.ConfigurationError(
            f"Could not load ACME account private key from {path}: {error}"
        ) from error
    if not isinstance(key, rsa.RSAPrivateKey):
        raise errors.ConfigurationError(f"ACME account private key {path} is not an RSA key.")
    return jose.JWKRSA(key=key)


def dump_private_key(key) -> bytes:
    """Serializes a private key as an unencrypted PKCS#8 PEM bytes-string."""
    return key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.PKCS8,
        encryption_algorithm=NoEncryption()
    )


def build_csr(common_name: str, san_list: list, key) -> bytes:
    """
    Builds a PEM encoded PKCS#10 CSR with `common_name` as subject and every name of `san_list` as a DNS SAN.

    Returns:
        bytes: The PEM encoded CSR data bytes-string.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in san_list]),
            critical=False
        )
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(Encoding.PEM)


def split_chain(pem) -> IssuedCertificate:
    """
    Splits a concatenated PEM sequence at certificate boundaries. The first certificate is the leaf, the
    remainder is the chain.

    Args:
        pem (str|bytes): The full chain PEM data returned by the ACME server.

    Returns:
        IssuedCertificate: The leaf certificate and chain certificates, each ending with a newline.

    Raises:
        acme_certificate.errors.InvalidCertificate: When the data contains no certificate.
    """
    if isinstance(pem, str):
        pem = pem.encode()
    blocks = [block + b'\n' for block in PEM_CERTIFICATE_RE.findall(pem)]
    if not blocks:
        raise errors.InvalidCertificate("No PEM certificate found in the ACME server response.")
    return IssuedCertificate(leaf=blocks[0], chain=tuple(blocks[1:]))


def load_certificate(data: bytes) -> x509.Certificate:
    """
    Parses the first certificate of a PEM bytes-string.

    Raises:
        acme_certificate.errors.InvalidCertificate: When the data cannot be parsed.
    """
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as error:
        raise errors.InvalidCertificate(f"Unable to parse certificate: {error}") from error


def public_key_der(key_or_certificate) -> bytes:
    """Returns the DER encoded SubjectPublicKeyInfo of a private key or certificate."""
    public_key = key_or_certificate.public_key()
    return public_key.public_bytes(encoding=Encoding.DER, format=PublicFormat.SubjectPublicKeyInfo)


def common_name_of(certificate: x509.Certificate) -> Optional[str]:
    """Returns the subject common name of a certificate, or None if it has none."""
    attributes = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value) if attributes else None


def san_names_of(certificate: x509.Certificate) -> frozenset:
    """Returns the DNS entries of a certificate's SAN extension as a set, empty when there is no extension."""
    try:
        extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return frozenset()
    return frozenset(extension.value.get_values_for_type(x509.DNSName))
