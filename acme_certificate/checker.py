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
"""Read-only check of whether an existing certificate already satisfies a request."""
import datetime
import logging
import pathlib

from . import crypto
from . import errors

logger = logging.getLogger(__name__)


def is_satisfied(
        certificate_path: str,
        private_key_path: str,
        request: crypto.CertificateRequest,
        renew_within_days: int,
        now: datetime.datetime = None
) -> bool:
    """
    Determines whether the certificate on disk already satisfies the request. Missing, unreadable or unparsable
    files are treated as "not satisfied".

    Args:
        certificate_path (str): The certificate file path.
        private_key_path (str): The private key file path.
        request (CertificateRequest): The requested common name and alternate names.
        renew_within_days (int): The number of days before expiry at which the certificate must be renewed.
        now (datetime.datetime): The timezone aware current time. Defaults to the current UTC time.

    Returns:
        bool: True if the key matches, the subject and SANs match and the certificate is outside its renewal window.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    key_file = pathlib.Path(private_key_path)
    cert_file = pathlib.Path(certificate_path)

    if not key_file.exists():
        logger.debug("Private key %s does not exist, so the certificate cannot be valid", key_file)
        return False
    if not cert_file.exists():
        logger.debug("Certificate %s does not exist", cert_file)
        return False

    try:
        key = crypto.load_private_key(key_file.read_bytes())
        cert = crypto.load_certificate(cert_file.read_bytes())
    except (OSError, errors.InvalidPrivateKey, errors.InvalidCertificate) as error:
        logger.debug("Unable to read certificate %s or private key %s: %s", cert_file, key_file, error)
        return False

    if crypto.public_key_der(cert) != crypto.public_key_der(key):
        logger.debug("Certificate %s does not match private key %s", cert_file, key_file)
        return False

    common_name = crypto.common_name_of(cert)
    if common_name != request.common_name:
        logger.debug("Certificate %s has subject '%s', expecting '%s'", cert_file, common_name, request.common_name)
        return False

    not_after = cert.not_valid_after_utc
    if not_after - datetime.timedelta(days=renew_within_days) < now:
        logger.debug("Certificate %s will expire at '%s', which is within %s days", cert_file, not_after,
                     renew_within_days)
        return False

    cert_names = crypto.san_names_of(cert)
    if cert_names != request.san_set:
        logger.debug("Certificate %s has alternative names %s, but wanted %s", cert_file, sorted(cert_names),
                     sorted(request.san_set))
        return False

    return True
