"""X.509 request and certificate construction utilities."""

from datetime import datetime
from typing import Iterable, Optional, Sequence, Tuple
from pathlib import Path
import ipaddress
import logging
import re

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

# Enrollment key-usage vocabulary -> (x509.KeyUsage attribute, CertEnroll bit value)
KEY_USAGE_FLAGS = {
    "DigitalSignature": ("digital_signature", 0x80),
    "NonRepudiation": ("content_commitment", 0x40),
    "KeyEncipherment": ("key_encipherment", 0x20),
    "DataEncipherment": ("data_encipherment", 0x10),
    "KeyAgreement": ("key_agreement", 0x08),
    "KeyCertSign": ("key_cert_sign", 0x04),
    "CrlSign": ("crl_sign", 0x02),
    "EncipherOnly": ("encipher_only", 0x01),
    "DecipherOnly": ("decipher_only", 0x8000),
}

# Unescaped RDN separator
_RDN_SPLIT = re.compile(r"(?<!\\)[,;]")

# Attribute keywords used by Windows tooling but absent from RFC 4514
_EXTRA_ATTRIBUTE_NAMES = {
    "E": NameOID.EMAIL_ADDRESS,
    "EMAIL": NameOID.EMAIL_ADDRESS,
    "SERIALNUMBER": NameOID.SERIAL_NUMBER,
}

SAN_DNS = "dns"
SAN_IP = "ip"
SAN_EMAIL = "email"


class X509Utils:
    """Utility class for X.509 enrollment operations."""

    @staticmethod
    def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
        """
        Generate an RSA private key.

        Args:
            key_size: Size of the RSA key in bits (default: 2048)

        Returns:
            RSA private key object
        """
        logger.info(f"Generating {key_size}-bit RSA private key")
        return rsa.generate_private_key(
            public_exponent=65537,
            key_size=key_size,
        )

    @staticmethod
    def parse_subject_name(subject_name: str) -> x509.Name:
        """
        Parse an X.500 distinguished name.

        Accepts RFC 4514 strings as well as the spaced form used by Windows
        tooling ("CN=host, O=Org").

        Args:
            subject_name: Distinguished name string

        Returns:
            Parsed name

        Raises:
            ValueError: If the name is empty or malformed
        """
        if not isinstance(subject_name, str) or not subject_name.strip():
            raise ValueError("Subject name is empty")

        rdns = [part.strip() for part in _RDN_SPLIT.split(subject_name.strip())]
        if any(not rdn or "=" not in rdn for rdn in rdns):
            raise ValueError(f"Malformed distinguished name: {subject_name!r}")

        name = x509.Name.from_rfc4514_string(",".join(rdns), _EXTRA_ATTRIBUTE_NAMES)
        for attribute in name:
            if not str(attribute.value).strip():
                raise ValueError(f"Empty attribute value in: {subject_name!r}")
        return name

    @staticmethod
    def key_usage_mask(usages: Iterable[str]) -> int:
        """Return the combined key-usage bit mask for vocabulary names."""
        mask = 0
        for usage in usages:
            if usage not in KEY_USAGE_FLAGS:
                raise ValueError(f"Unsupported key usage: {usage}")
            mask |= KEY_USAGE_FLAGS[usage][1]
        return mask

    @staticmethod
    def build_key_usage(usages: Iterable[str]) -> x509.KeyUsage:
        """
        Build the key usage extension value.

        Args:
            usages: Names from KEY_USAGE_FLAGS

        Returns:
            KeyUsage extension value

        Raises:
            ValueError: On an unknown name, or Encipher/DecipherOnly without KeyAgreement
        """
        mask = X509Utils.key_usage_mask(usages)
        flags = {attr: bool(mask & bit) for attr, bit in KEY_USAGE_FLAGS.values()}
        return x509.KeyUsage(**flags)

    @staticmethod
    def build_general_names(entries: Sequence[Tuple[str, str]]) -> list:
        """
        Convert (kind, value) pairs into general names.

        Args:
            entries: Pairs whose kind is one of "dns", "ip", "email"

        Returns:
            List of x509.GeneralName instances in input order
        """
        names = []
        for kind, value in entries:
            if kind == SAN_DNS:
                names.append(x509.DNSName(value))
            elif kind == SAN_IP:
                names.append(x509.IPAddress(ipaddress.ip_address(value)))
            elif kind == SAN_EMAIL:
                names.append(x509.RFC822Name(value))
            else:
                raise ValueError(f"Unsupported subject alternative name type: {kind}")
        return names

    @staticmethod
    def create_signing_request(
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        key_usages: Iterable[str],
        san_entries: Sequence[Tuple[str, str]] = (),
    ) -> x509.CertificateSigningRequest:
        """
        Create a PKCS#10 request signed with the given key.

        Args:
            private_key: Key whose public half is certified
            subject: Subject distinguished name
            key_usages: Key-usage vocabulary names
            san_entries: Subject alternative names as (kind, value) pairs

        Returns:
            Signed certificate signing request
        """
        logger.info(f"Creating signing request for: {subject.rfc4514_string()}")

        builder = x509.CertificateSigningRequestBuilder().subject_name(subject)

        usages = list(key_usages)
        if usages:
            builder = builder.add_extension(
                X509Utils.build_key_usage(usages),
                critical=True,
            )

        if san_entries:
            builder = builder.add_extension(
                x509.SubjectAlternativeName(X509Utils.build_general_names(san_entries)),
                critical=False,
            )
            logger.info(f"Added SANs: {[value for _, value in san_entries]}")

        return builder.sign(private_key, hashes.SHA256())

    @staticmethod
    def create_self_signed_certificate(
        private_key: rsa.RSAPrivateKey,
        subject: x509.Name,
        not_before: datetime,
        not_after: datetime,
        key_usages: Iterable[str] = ("DigitalSignature", "KeyEncipherment"),
        san_entries: Sequence[Tuple[str, str]] = (),
    ) -> x509.Certificate:
        """
        Create an end-entity certificate signed by its own key.

        Args:
            private_key: Key that is both certified and signing
            subject: Subject and issuer name
            not_before: Start of validity
            not_after: End of validity
            key_usages: Key-usage vocabulary names
            san_entries: Subject alternative names as (kind, value) pairs

        Returns:
            Certificate object
        """
        logger.info(f"Creating self-signed certificate: {subject.rfc4514_string()}")

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                X509Utils.build_key_usage(key_usages),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                critical=False,
            )
        )

        if san_entries:
            builder = builder.add_extension(
                x509.SubjectAlternativeName(X509Utils.build_general_names(san_entries)),
                critical=False,
            )

        return builder.sign(private_key, hashes.SHA256())

    @staticmethod
    def common_name(name: x509.Name) -> Optional[str]:
        """Return the first common name attribute, if any."""
        attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
        return attrs[0].value if attrs else None

    @staticmethod
    def save_private_key(private_key: rsa.RSAPrivateKey, path: Path, password: Optional[bytes] = None):
        """
        Save private key to file.

        Args:
            private_key: RSA private key to save
            path: File path to save to
            password: Optional password for encryption
        """
        logger.debug(f"Saving private key to: {path}")

        if password:
            encryption = serialization.BestAvailableEncryption(password)
        else:
            encryption = serialization.NoEncryption()

        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption
        )

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(pem)
        path.chmod(0o600)  # Restrict permissions

    @staticmethod
    def save_certificate(cert: x509.Certificate, path: Path):
        """
        Save certificate to file.

        Args:
            cert: Certificate to save
            path: File path to save to
        """
        logger.debug(f"Saving certificate to: {path}")

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))

    @staticmethod
    def load_private_key(path: Path, password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
        """
        Load private key from file.

        Args:
            path: File path to load from
            password: Optional password for decryption

        Returns:
            RSA private key object
        """
        logger.debug(f"Loading private key from: {path}")
        return serialization.load_pem_private_key(path.read_bytes(), password=password)

    @staticmethod
    def load_certificate(path: Path) -> x509.Certificate:
        """
        Load certificate from file.

        Args:
            path: File path to load from

        Returns:
            Certificate object
        """
        logger.debug(f"Loading certificate from: {path}")
        return x509.load_pem_x509_certificate(path.read_bytes())
