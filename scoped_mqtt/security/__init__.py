"""
Security package for client credential and identity management.
"""
from .models import CredentialBundle, CertificateInfo
from .certificate_parser import CertificateParser, X509CertificateParser
from .identity_store import IdentityStore

__all__ = [
    'CredentialBundle',
    'CertificateInfo',
    'CertificateParser',
    'X509CertificateParser',
    'IdentityStore'
]
