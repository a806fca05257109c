"""PKCS#10 signing request construction."""

from typing import Tuple
import logging

from crypto_utils import CertificateVerifier, CryptoProvider, X509Utils

from .errors import InvalidSubjectNameError, KeyGenerationError, SigningError
from .models import EffectiveRequestOptions, KeyHandle

logger = logging.getLogger(__name__)


class CsrBuilder:
    """Generates the key pair and encodes the signed request."""

    def __init__(self, provider: CryptoProvider):
        self.provider = provider

    def build(self, options: EffectiveRequestOptions) -> Tuple[bytes, KeyHandle]:
        """
        Build a signing request for effective options.

        Either both the key pair and the request are produced, or the call
        raises and neither is retained.

        Args:
            options: Output of KeyPolicyEnforcer.merge

        Returns:
            Tuple of (DER-encoded CSR, key handle)

        Raises:
            InvalidSubjectNameError: If the subject is not a valid X.500 name
            KeyGenerationError: If the key pair cannot be generated
            SigningError: If the request cannot be encoded or signed
        """
        try:
            subject = X509Utils.parse_subject_name(options.subject_name)
        except ValueError as e:
            raise InvalidSubjectNameError(f"Invalid subject name {options.subject_name!r}: {e}")

        try:
            private_key = self.provider.generate_key_pair(options.key_length)
        except Exception as e:
            raise KeyGenerationError(f"Failed to generate {options.key_length}-bit key: {e}") from e

        try:
            csr_der = self.provider.build_signing_request(
                private_key,
                subject,
                options.usage_names(),
                options.san_pairs(),
            )
        except Exception as e:
            raise SigningError(f"Failed to sign request for {options.subject_name}: {e}") from e

        thumbprint = CertificateVerifier.public_key_thumbprint(private_key)
        logger.info(f"Signing request built for {subject.rfc4514_string()} (key {thumbprint[:16]})")
        return csr_der, KeyHandle(private_key, options.exportable, thumbprint)
