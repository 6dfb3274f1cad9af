"""
Identity store: owns the client credentials and the identity derived from them.
"""
import logging
import os
import threading
from typing import Any, Optional

from ..errors import CredentialLoadError, CredentialsNotLoadedError, IdentityExtractionError
from .certificate_parser import CertificateParser, X509CertificateParser
from .models import CertificateInfo, CredentialBundle


class IdentityStore:
    """Holds the CA certificate, client certificate and private key, and the
    common name extracted from the client certificate."""

    def __init__(self, certificate_parser: Optional[CertificateParser] = None):
        """Initialize an empty store; the parser defaults to X509CertificateParser."""
        self.logger = logging.getLogger(__name__)
        self._parser = certificate_parser or X509CertificateParser()
        self._lock = threading.RLock()
        self._bundle: Optional[CredentialBundle] = None
        self._certificate: Any = None
        self._identity = ""

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def load(self, ca_path: str, cert_path: str, key_path: str) -> "IdentityStore":
        """
        Load credentials from the given paths and extract the client identity.

        The load is atomic: on any failure the previously loaded bundle and
        identity are kept. Reloading while a session is open does not change
        the certificate used on the wire until the connector reconnects.

        Args:
            ca_path: Path to the CA (root of trust) certificate
            cert_path: Path to the client certificate
            key_path: Path to the client private key

        Returns:
            This store

        Raises:
            CredentialLoadError: If any path is missing or unreadable
            IdentityExtractionError: If the client certificate cannot be parsed
        """
        paths = (ca_path, cert_path, key_path)
        if not all(path and os.path.isfile(path) for path in paths):
            self.logger.error("Credential load failed: one or more credential files are missing")
            raise CredentialLoadError()

        try:
            ca_cert, client_cert, client_key = (self._read_file(path) for path in paths)
        except OSError as e:
            self.logger.error(f"Credential load failed: {type(e).__name__}")
            raise CredentialLoadError() from None

        bundle = CredentialBundle(ca_cert=ca_cert, client_cert=client_cert, client_key=client_key)
        certificate, identity = self._extract_identity(bundle.client_cert)

        with self._lock:
            self._bundle = bundle
            self._certificate = certificate
            self._identity = identity

        self.logger.info(f"Loaded client credentials for identity '{identity}'")
        if not identity:
            self.logger.warning("Client certificate has no common name; topic operations will be refused")
        self._check_validity(certificate)
        return self

    def _read_file(self, path: str) -> bytes:
        with open(path, 'rb') as f:
            return f.read()

    def _extract_identity(self, client_cert: bytes):
        """Parse the client certificate and return it with its common name."""
        try:
            certificate = self._parser.parse_certificate(client_cert)
            common_name = self._parser.extract_subject_attribute(certificate, 'commonName')
        except Exception as e:
            self.logger.error(f"Identity extraction failed: {e}")
            raise IdentityExtractionError() from e

        return certificate, common_name or ""

    def _check_validity(self, certificate: Any):
        try:
            info = self._parser.describe(certificate)
        except NotImplementedError:
            return
        if not info.is_valid:
            self.logger.warning(
                f"Client certificate is outside its validity period "
                f"({info.not_before.isoformat()} - {info.not_after.isoformat()})"
            )

    def get_credentials(self) -> CredentialBundle:
        """
        Get the loaded credential bundle.

        Raises:
            CredentialsNotLoadedError: If no load has succeeded yet
        """
        with self._lock:
            if self._bundle is None:
                raise CredentialsNotLoadedError()
            return self._bundle

    def get_identity(self) -> str:
        """Return the client identity, or an empty string."""
        with self._lock:
            return self._identity

    def is_loaded(self) -> bool:
        with self._lock:
            return self._bundle is not None

    def get_certificate_info(self) -> CertificateInfo:
        """Get detailed information about the loaded client certificate."""
        with self._lock:
            if self._certificate is None:
                raise CredentialsNotLoadedError()
            certificate = self._certificate
        return self._parser.describe(certificate)
