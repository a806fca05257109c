"""Self-signed certificate issuance without a CA round trip."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import logging

from cryptography.hazmat.primitives import serialization

from crypto_utils import CertificateVerifier, CryptoProvider, X509Utils

from .cert_store import CertificateStore
from .config import MINIMUM_KEY_LENGTH
from .errors import (
    InvalidSubjectNameError,
    InvalidValidityPeriodError,
    KeyGenerationError,
    SigningError,
    StoreError,
)
from .models import IssuedCertificate, KeyHandle

logger = logging.getLogger(__name__)

# Roughly a century; larger periods overflow X.509 GeneralizedTime handling
MAX_VALIDITY_DAYS = 36500

DEFAULT_KEY_USAGES = ("DigitalSignature", "KeyEncipherment")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SelfSignedIssuer:
    """Generates a key pair and a certificate signed by that same key."""

    def __init__(
        self,
        provider: CryptoProvider,
        store: CertificateStore,
        key_length: int = MINIMUM_KEY_LENGTH,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.provider = provider
        self.store = store
        self.key_length = key_length
        self._clock = clock

    def create_self_signed(
        self,
        subject_name: str,
        validity_days: int,
        exportable: bool = False,
        friendly_name: Optional[str] = None,
    ) -> IssuedCertificate:
        """
        Issue and store a self-signed certificate.

        NotBefore is the issuance instant truncated to the second and
        NotAfter is exactly validity_days later.

        Raises:
            InvalidValidityPeriodError: If validity_days is not a positive integer
            InvalidSubjectNameError: If the subject is not a valid X.500 name
            KeyGenerationError, SigningError: On cryptographic failure
            StoreError: If the store write fails
        """
        if isinstance(validity_days, bool) or not isinstance(validity_days, int) or validity_days <= 0:
            raise InvalidValidityPeriodError(
                f"Validity period must be a positive number of days, got {validity_days!r}"
            )
        if validity_days > MAX_VALIDITY_DAYS:
            raise InvalidValidityPeriodError(
                f"Validity period of {validity_days} days exceeds {MAX_VALIDITY_DAYS}"
            )

        try:
            subject = X509Utils.parse_subject_name(subject_name)
        except ValueError as e:
            raise InvalidSubjectNameError(f"Invalid subject name {subject_name!r}: {e}")

        not_before = self._clock().replace(microsecond=0)
        not_after = not_before + timedelta(days=validity_days)

        try:
            private_key = self.provider.generate_key_pair(self.key_length)
        except Exception as e:
            raise KeyGenerationError(f"Failed to generate {self.key_length}-bit key: {e}") from e

        try:
            cert = self.provider.self_sign(
                private_key,
                subject,
                not_before,
                not_after,
                DEFAULT_KEY_USAGES,
                (),
            )
        except Exception as e:
            raise SigningError(f"Failed to self-sign {subject_name}: {e}") from e

        key_handle = KeyHandle(private_key, exportable, CertificateVerifier.public_key_thumbprint(private_key))
        try:
            store_id = self.store.put(
                cert.public_bytes(serialization.Encoding.DER),
                key_handle,
                friendly_name,
            )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Store write failed for {key_handle.thumbprint}: {e}") from e

        logger.info(
            f"Self-signed certificate issued: {subject.rfc4514_string()} "
            f"(valid {validity_days} days, store id {store_id})"
        )
        return IssuedCertificate(cert, key_handle, store_id, friendly_name)
