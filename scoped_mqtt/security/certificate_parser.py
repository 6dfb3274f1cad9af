"""
Certificate parsing capability used by the identity store.

The store only needs two operations, parse_certificate and
extract_subject_attribute, so any object offering them can be injected in
place of the cryptography-backed default.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from .models import CertificateInfo


_SUBJECT_ATTRIBUTES = {
    'commonName': NameOID.COMMON_NAME,
    'countryName': NameOID.COUNTRY_NAME,
    'localityName': NameOID.LOCALITY_NAME,
    'stateOrProvinceName': NameOID.STATE_OR_PROVINCE_NAME,
    'organizationName': NameOID.ORGANIZATION_NAME,
    'organizationalUnitName': NameOID.ORGANIZATIONAL_UNIT_NAME,
    'serialNumber': NameOID.SERIAL_NUMBER,
    'emailAddress': NameOID.EMAIL_ADDRESS,
}


class CertificateParser(ABC):
    """Abstract base class for certificate parsers."""

    @abstractmethod
    def parse_certificate(self, data: bytes) -> Any:
        """Parse certificate bytes; raise on anything that is not a certificate."""
        pass

    @abstractmethod
    def extract_subject_attribute(self, certificate: Any, name: str) -> Optional[str]:
        """Return the first subject attribute called ``name``, or None."""
        pass

    def describe(self, certificate: Any) -> CertificateInfo:
        """Optional; stub parsers may leave this unimplemented."""
        raise NotImplementedError


class X509CertificateParser(CertificateParser):
    """PEM/X.509 parser built on cryptography."""

    def parse_certificate(self, data: bytes) -> x509.Certificate:
        return x509.load_pem_x509_certificate(data)

    def extract_subject_attribute(self, certificate: x509.Certificate, name: str) -> Optional[str]:
        oid = _SUBJECT_ATTRIBUTES.get(name)
        if oid is None:
            raise ValueError(f"Unknown subject attribute: {name}")

        attributes = certificate.subject.get_attributes_for_oid(oid)
        if not attributes:
            return None
        return attributes[0].value

    def describe(self, certificate: x509.Certificate) -> CertificateInfo:
        """Extract information from a certificate."""
        now = datetime.now(timezone.utc)

        not_before = certificate.not_valid_before_utc
        not_after = certificate.not_valid_after_utc

        return CertificateInfo(
            subject=certificate.subject.rfc4514_string(),
            issuer=certificate.issuer.rfc4514_string(),
            serial_number=str(certificate.serial_number),
            not_before=not_before,
            not_after=not_after,
            is_valid=not_before <= now <= not_after,
            fingerprint=certificate.fingerprint(hashes.SHA256()).hex()
        )
