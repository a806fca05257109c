"""Cryptographic capability consumed by the enrollment core."""

from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence, Tuple, Union
import logging

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .x509_utils import X509Utils
from .cert_formats import CertificateFormatConverter, ParsedResponse

logger = logging.getLogger(__name__)


class CryptoProvider(Protocol):
    """Backend that performs key generation, signing and response parsing."""

    def generate_key_pair(self, key_length: int) -> rsa.RSAPrivateKey:
        ...

    def build_signing_request(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        key_usages: Iterable[str],
        san_entries: Sequence[Tuple[str, str]],
    ) -> bytes:
        ...

    def parse_certificate_response(
        self,
        response: Union[str, bytes],
        password: Optional[str],
    ) -> ParsedResponse:
        ...

    def self_sign(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        not_before: datetime,
        not_after: datetime,
        key_usages: Iterable[str],
        san_entries: Sequence[Tuple[str, str]],
    ) -> x509.Certificate:
        ...


class CryptographyProvider:
    """CryptoProvider backed by the pyca/cryptography library."""

    def generate_key_pair(self, key_length: int) -> rsa.RSAPrivateKey:
        return X509Utils.generate_private_key(key_size=key_length)

    def build_signing_request(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        key_usages: Iterable[str],
        san_entries: Sequence[Tuple[str, str]],
    ) -> bytes:
        """Return the DER encoding of a signed PKCS#10 request."""
        csr = X509Utils.create_signing_request(private_key, subject, key_usages, san_entries)
        return csr.public_bytes(serialization.Encoding.DER)

    def parse_certificate_response(
        self,
        response: Union[str, bytes],
        password: Optional[str],
    ) -> ParsedResponse:
        return CertificateFormatConverter.load_response(response, password)

    def self_sign(
        self,
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        not_before: datetime,
        not_after: datetime,
        key_usages: Iterable[str],
        san_entries: Sequence[Tuple[str, str]],
    ) -> x509.Certificate:
        return X509Utils.create_self_signed_certificate(
            private_key,
            subject,
            not_before,
            not_after,
            key_usages=key_usages,
            san_entries=san_entries,
        )
