"""Installation of CA responses against pending requests."""

from typing import List, Optional, Union
import logging
import threading
import weakref

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from crypto_utils import (
    BundlePasswordError,
    CertificateVerificationError,
    CertificateVerifier,
    CryptoProvider,
    ResponseFormatError,
)

from .cert_store import CertificateStore
from .errors import MalformedResponseError, PasswordMismatchError, StoreError
from .models import IssuedCertificate
from .pending_registry import PendingRequestRegistry

logger = logging.getLogger(__name__)


class CertificateInstaller:
    """Pairs issued certificates with pending keys and commits them to the store."""

    def __init__(self, provider: CryptoProvider, registry: PendingRequestRegistry, store: CertificateStore):
        self.provider = provider
        self.registry = registry
        self.store = store
        self._subject_locks = weakref.WeakValueDictionary()
        self._subject_locks_guard = threading.Lock()

    def install(self, response: Union[str, bytes], password: Optional[str] = "") -> IssuedCertificate:
        """
        Install a CA response.

        The response is parsed and checked completely before the pending
        entry is claimed, and the entry is only removed once the store
        accepted the certificate.

        Args:
            response: Bare certificate, PKCS#7 or PKCS#12 response
            password: Password for PKCS#12 bundles

        Returns:
            The installed certificate

        Raises:
            PasswordMismatchError: If a bundle rejects the password
            MalformedResponseError: If the response cannot be parsed or its chain is inconsistent
            NoMatchingRequestError: If no live pending request owns the certificate key
            StoreError: If the store write fails
        """
        try:
            parsed = self.provider.parse_certificate_response(response, password)
        except BundlePasswordError:
            logger.warning("Certificate bundle rejected the supplied password")
            raise PasswordMismatchError()
        except ResponseFormatError as e:
            raise MalformedResponseError(str(e))
        except (ValueError, TypeError) as e:
            raise MalformedResponseError(f"Unable to parse certificate response: {e}") from e

        leaf = parsed.leaf
        self._check_chain(leaf, parsed.chain)

        try:
            thumbprint = CertificateVerifier.public_key_thumbprint(leaf)
            certificate_der = leaf.public_bytes(serialization.Encoding.DER)
        except ValueError as e:
            raise MalformedResponseError(f"Unsupported certificate public key: {e}") from e

        entry = self.registry.claim(thumbprint)
        key_handle = entry.key_handle
        friendly_name = entry.options.friendly_name

        try:
            with self._lock_for(leaf.subject.rfc4514_string()):
                store_id = self.store.put(certificate_der, key_handle, friendly_name)
        except StoreError:
            self.registry.release(thumbprint)
            raise
        except Exception as e:
            self.registry.release(thumbprint)
            raise StoreError(f"Store write failed for {thumbprint}: {e}") from e

        self.registry.complete(thumbprint)
        logger.info(f"Certificate installed: {leaf.subject.rfc4514_string()} (store id {store_id})")
        return IssuedCertificate(leaf, key_handle, store_id, friendly_name)

    @staticmethod
    def _check_chain(leaf: x509.Certificate, chain: List[x509.Certificate]):
        """Verify the leaf signature when its issuer is part of the response."""
        if leaf.issuer == leaf.subject:
            return
        for candidate in chain:
            if candidate.subject == leaf.issuer:
                try:
                    CertificateVerifier.verify_issued_by(leaf, candidate)
                except CertificateVerificationError as e:
                    raise MalformedResponseError(f"Response chain is inconsistent: {e}")
                return

    def _lock_for(self, subject: str) -> threading.Lock:
        with self._subject_locks_guard:
            return self._subject_locks.setdefault(subject, threading.Lock())
