"""Thumbprints and signature checks for enrollment artifacts."""

from typing import Union
import logging

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

PublicKeySource = Union[
    x509.Certificate,
    x509.CertificateSigningRequest,
    rsa.RSAPrivateKey,
    rsa.RSAPublicKey,
]


class CertificateVerificationError(Exception):
    """Exception raised when certificate verification fails."""
    pass


class CertificateVerifier:
    """Utility class for key matching and signature verification."""

    @staticmethod
    def public_key_thumbprint(source: PublicKeySource) -> str:
        """
        Compute the SHA-256 thumbprint of a public key.

        The digest covers the DER SubjectPublicKeyInfo, so a key pair, its
        signing request and any certificate issued for it share one value.

        Args:
            source: Certificate, CSR, private key or public key

        Returns:
            Lower-case hex digest
        """
        if isinstance(source, (x509.Certificate, x509.CertificateSigningRequest)):
            public_key = source.public_key()
        elif isinstance(source, rsa.RSAPrivateKey):
            public_key = source.public_key()
        else:
            public_key = source

        spki = public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        digest = hashes.Hash(hashes.SHA256())
        digest.update(spki)
        return digest.finalize().hex()

    @staticmethod
    def verify_issued_by(cert: x509.Certificate, issuer_cert: x509.Certificate):
        """
        Verify that cert is signed by issuer_cert.

        Args:
            cert: Certificate to verify
            issuer_cert: Issuing certificate

        Raises:
            CertificateVerificationError: If signature verification fails
        """
        try:
            cert.verify_directly_issued_by(issuer_cert)
        except InvalidSignature:
            raise CertificateVerificationError(
                f"Invalid signature: {cert.subject.rfc4514_string()} not signed by {issuer_cert.subject.rfc4514_string()}"
            )
        except (ValueError, TypeError) as e:
            raise CertificateVerificationError(f"Signature verification error: {str(e)}")

    @staticmethod
    def verify_signing_request(csr: x509.CertificateSigningRequest) -> bool:
        """Return True when the request carries a valid proof of possession."""
        return csr.is_signature_valid

    @staticmethod
    def describe_signing_request(csr: x509.CertificateSigningRequest) -> dict:
        """
        Extract the identity claims from a signing request.

        Args:
            csr: Parsed signing request

        Returns:
            Dictionary with subject, SAN lists by type, key size and key usage
        """
        info = {
            "subject": csr.subject.rfc4514_string(),
            "key_size": csr.public_key().key_size,
            "dns_names": [],
            "ip_addresses": [],
            "emails": [],
            "key_usage": None,
        }

        try:
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            info["dns_names"] = san.get_values_for_type(x509.DNSName)
            info["ip_addresses"] = [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
            info["emails"] = san.get_values_for_type(x509.RFC822Name)
        except x509.ExtensionNotFound:
            pass

        try:
            info["key_usage"] = csr.extensions.get_extension_for_class(x509.KeyUsage).value
        except x509.ExtensionNotFound:
            pass

        return info

    @staticmethod
    def get_certificate_fingerprint(cert: x509.Certificate, algorithm: str = "sha256") -> str:
        """
        Get certificate fingerprint.

        Args:
            cert: Certificate
            algorithm: Hash algorithm (sha256, sha1)

        Returns:
            Hex-encoded fingerprint
        """
        if algorithm == "sha256":
            digest = cert.fingerprint(hashes.SHA256())
        elif algorithm == "sha1":
            digest = cert.fingerprint(hashes.SHA1())
        else:
            raise ValueError(f"Unsupported algorithm: {algorithm}")

        return digest.hex()
