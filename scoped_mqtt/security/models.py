"""
Security models for client credential management.
"""
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CredentialBundle:
    """Bundle containing all credentials needed for a mutually-authenticated session."""
    ca_cert: bytes
    client_cert: bytes
    client_key: bytes

    def __repr__(self):
        # never echo key material
        return (
            f"CredentialBundle(ca_cert=<{len(self.ca_cert)} bytes>, "
            f"client_cert=<{len(self.client_cert)} bytes>, client_key=<redacted>)"
        )


@dataclass
class CertificateInfo:
    """Information about a certificate."""
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    is_valid: bool
    fingerprint: str
