"""Unit tests and testing tools for the acme_certificate package."""

TEST_DOMAIN = "example.com"
TEST_ALTERNATE_NAMES = ["www.example.com", "api.example.com"]
TEST_CONTACT = "mailto:admin@example.com"
TEST_DIRECTORY = "https://acme.example.org/directory"
TEST_TERMS_URL = "https://acme.example.org/terms.pdf"
TEST_ZONE_ID = "Z2ABCDEF123456"
