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

import logging
import signal
import sys
import threading

import acme_certificate
from acme_certificate.provisioners.route53 import Route53Provisioner

logging.basicConfig(level=logging.DEBUG if "--verbose" in sys.argv else logging.INFO)

config = acme_certificate.CertificateConfig.from_mapping({
    "certificate_path": "/etc/ssl/test.example.com.crt",
    "certificate_chain_path": "/etc/ssl/test.example.com.chain.crt",
    "private_key_path": "/etc/ssl/test.example.com.key",
    "common_name": "test.example.com",
    "alternate_names": ["test2.example.com", "*.test.example.com"],
    "generate_private_key": True,
    "private_key_mode": "0640",
    "contact": "user@example.com",  # Turned into mailto:user@example.com
    "directory": "https://acme-staging-v02.api.letsencrypt.org/directory",
    "agree_to_terms_url": "https://letsencrypt.org/documents/LE-SA-v1.5-February-24-2025.pdf",
    "acme_private_key_path": "/etc/ssl/private/acme_account.pem",
    "authorization_timeout": 600,
    "order_timeout": 120,
    "renew_within_days": 21,
})

# Use our own Route 53 provisioner, waiting for public resolvers to serve each challenge record before validation
provisioner = Route53Provisioner(
    "Z2ABCDEF123456",
    delay=10,
    propagation_nameservers=["8.8.8.8", "1.1.1.1"],
)

# Stop waiting on the ACME server or Route 53 when interrupted. Challenge records are still removed.
cancel = threading.Event()
signal.signal(signal.SIGTERM, lambda *_: cancel.set())

resource = acme_certificate.AcmeCertificate(config, provisioner=provisioner, cancel=cancel)

if resource.exists():
    print("The existing certificate is still valid")
    sys.exit(0)

try:
    issued = resource.create()
except acme_certificate.errors.TermsNotAccepted as error:
    print(f"Review the terms of service at {error.url} and update agree_to_terms_url")
    sys.exit(1)
except acme_certificate.errors.AcmeCertificateError as error:
    print(f"Failed to issue certificate for {resource.request().names}: {error.message}")
    sys.exit(1)

print(issued.leaf.decode())
print(f"Chain of {len(issued.chain)} certificate(s) written to {config.certificate_chain_path}")
