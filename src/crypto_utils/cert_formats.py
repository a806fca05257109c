"""Certificate response container detection and conversion utilities."""

import base64
import binascii
import logging
from typing import List, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12

logger = logging.getLogger(__name__)

FORMAT_PEM = "pem"
FORMAT_DER = "der"
FORMAT_PKCS7 = "pkcs7"
FORMAT_PKCS12 = "pkcs12"

# PFX ::= SEQUENCE { version INTEGER {v3(3)}, ... }
_PFX_VERSION = b"\x02\x01\x03"


class ResponseFormatError(ValueError):
    """Raised when response bytes are not a recognised certificate container."""
    pass


class BundlePasswordError(ValueError):
    """Raised when a PKCS#12 bundle cannot be opened with the given password."""
    pass


class ParsedResponse:
    """Certificates recovered from a CA response."""

    def __init__(self, container: str, leaf: x509.Certificate, chain: List[x509.Certificate]):
        self.container = container
        self.leaf = leaf
        self.chain = chain


class CertificateFormatConverter:
    """Convert certificates between different formats."""

    @staticmethod
    def normalize_response(data: Union[str, bytes]) -> bytes:
        """
        Turn a response into PEM or DER bytes.

        CA responses are often delivered as unarmored base64 text; those are
        decoded to DER.
        """
        if isinstance(data, str):
            try:
                data = data.encode("ascii")
            except UnicodeEncodeError:
                raise ResponseFormatError("Text response contains non-ASCII characters")

        if data[:1] == b"\x30":
            return data

        stripped = data.strip()
        if not stripped:
            raise ResponseFormatError("Empty certificate response")
        if stripped.startswith(b"-----BEGIN"):
            return stripped

        try:
            return base64.b64decode(b"".join(stripped.split()), validate=True)
        except (binascii.Error, ValueError):
            raise ResponseFormatError("Response is neither PEM, DER nor base64")

    @staticmethod
    def is_pkcs12(der: bytes) -> bool:
        """Check the outer PFX structure without decrypting it."""
        if len(der) < 2 or der[0] != 0x30:
            return False
        length_byte = der[1]
        offset = 2 + (length_byte & 0x7F if length_byte & 0x80 else 0)
        return der[offset:offset + 3] == _PFX_VERSION

    @staticmethod
    def detect_format(data: bytes) -> str:
        """
        Detect the container type of normalized response bytes.

        Returns:
            One of FORMAT_PEM, FORMAT_DER, FORMAT_PKCS7, FORMAT_PKCS12
        """
        if data.startswith(b"-----BEGIN PKCS7") or data.startswith(b"-----BEGIN CMS"):
            return FORMAT_PKCS7
        if data.startswith(b"-----BEGIN"):
            return FORMAT_PEM
        if CertificateFormatConverter.is_pkcs12(data):
            return FORMAT_PKCS12
        try:
            x509.load_der_x509_certificate(data)
            return FORMAT_DER
        except ValueError:
            return FORMAT_PKCS7

    @staticmethod
    def select_leaf(certs: List[x509.Certificate]) -> x509.Certificate:
        """
        Pick the end-entity certificate out of an unordered set.

        The leaf is the certificate that issued none of the others.
        """
        if len(certs) == 1:
            return certs[0]

        for cert in certs:
            issues_other = any(
                other is not cert and other.issuer == cert.subject
                for other in certs
            )
            if not issues_other:
                return cert
        return certs[0]

    @staticmethod
    def load_response(data: Union[str, bytes], password: Optional[str] = None) -> ParsedResponse:
        """
        Parse a CA response.

        Args:
            data: PEM, DER, base64, PKCS#7 or PKCS#12 response
            password: Password for PKCS#12 bundles

        Returns:
            ParsedResponse with the leaf and remaining chain certificates

        Raises:
            ResponseFormatError: If the bytes cannot be parsed
            BundlePasswordError: If a PKCS#12 bundle rejects the password
        """
        raw = CertificateFormatConverter.normalize_response(data)
        container = CertificateFormatConverter.detect_format(raw)
        logger.debug(f"Detected response container: {container}")

        try:
            if container == FORMAT_PEM:
                certs = x509.load_pem_x509_certificates(raw)
            elif container == FORMAT_DER:
                certs = [x509.load_der_x509_certificate(raw)]
            elif container == FORMAT_PKCS7:
                if raw.startswith(b"-----BEGIN"):
                    certs = pkcs7.load_pem_pkcs7_certificates(raw)
                else:
                    certs = pkcs7.load_der_pkcs7_certificates(raw)
            else:
                certs = CertificateFormatConverter._load_pkcs12(raw, password)
        except (ValueError, TypeError) as e:
            raise ResponseFormatError(f"Unable to parse {container} response: {e}")

        if not certs:
            raise ResponseFormatError(f"No certificates in {container} response")

        leaf = CertificateFormatConverter.select_leaf(certs)
        chain = [cert for cert in certs if cert is not leaf]
        return ParsedResponse(container, leaf, chain)

    @staticmethod
    def _load_pkcs12(raw: bytes, password: Optional[str]) -> List[x509.Certificate]:
        secret = password.encode("utf-8") if password else None
        try:
            _, cert, additional = pkcs12.load_key_and_certificates(raw, secret)
        except ValueError:
            raise BundlePasswordError("Invalid password for PKCS#12 bundle")

        certs = ([cert] if cert is not None else []) + list(additional or [])
        return certs

    @staticmethod
    def to_pkcs12(
        cert: x509.Certificate,
        private_key: rsa.RSAPrivateKey,
        ca_certs: Optional[List[x509.Certificate]] = None,
        password: Optional[bytes] = None,
        friendly_name: Optional[bytes] = None
    ) -> bytes:
        """
        Serialize certificate and key to PKCS12 format (.p12/.pfx).

        Args:
            cert: Certificate
            private_key: Matching private key
            ca_certs: Optional CA certificate chain
            password: Optional password to encrypt the PKCS12 file
            friendly_name: Optional friendly name for the certificate

        Returns:
            PKCS12-encoded data bytes
        """
        return pkcs12.serialize_key_and_certificates(
            name=friendly_name,
            key=private_key,
            cert=cert,
            cas=ca_certs if ca_certs else None,
            encryption_algorithm=serialization.BestAvailableEncryption(password) if password else serialization.NoEncryption()
        )

    @staticmethod
    def to_pem(cert: x509.Certificate) -> str:
        """Return the PEM text of a certificate."""
        return cert.public_bytes(serialization.Encoding.PEM).decode()

    @staticmethod
    def csr_to_pem(der: bytes) -> str:
        """Return the PEM text of a DER signing request."""
        return x509.load_der_x509_csr(der).public_bytes(serialization.Encoding.PEM).decode()
