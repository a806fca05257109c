"""Cryptographic utilities for certificate enrollment."""

from .x509_utils import X509Utils, KEY_USAGE_FLAGS
from .verification import CertificateVerifier, CertificateVerificationError
from .cert_formats import (
    CertificateFormatConverter,
    ParsedResponse,
    ResponseFormatError,
    BundlePasswordError,
)
from .provider import CryptoProvider, CryptographyProvider

__all__ = [
    'X509Utils',
    'KEY_USAGE_FLAGS',
    'CertificateVerifier',
    'CertificateVerificationError',
    'CertificateFormatConverter',
    'ParsedResponse',
    'ResponseFormatError',
    'BundlePasswordError',
    'CryptoProvider',
    'CryptographyProvider',
]
