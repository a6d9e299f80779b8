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

import acme_certificate

# Describe the certificate resource. In this example, the Let's Encrypt staging environment.
resource = acme_certificate.AcmeCertificate(
    acme_certificate.CertificateConfig(
        certificate_path="/etc/ssl/test.example.com.crt",
        private_key_path="/etc/ssl/test.example.com.key",
        common_name="test.example.com",
        generate_private_key=True,  # Generate a new private key if the key file does not exist yet
        contact="mailto:user@example.com",
        directory="https://acme-staging-v02.api.letsencrypt.org/directory",
        acme_private_key_path="/etc/ssl/private/acme_account.pem",
        route53_zone_id="Z2ABCDEF123456",  # The Route 53 hosted zone of example.com
    )
)

# Issue the certificate unless the existing one is still valid for our key and names. The DNS-01 challenge records
# are created in Route 53 and removed again automatically.
if resource.ensure_present():
    print(f"Issued a new certificate for {resource.request().names}")
else:
    print("The existing certificate is still valid")
