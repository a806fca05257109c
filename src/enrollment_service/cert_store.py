"""Certificate/key store collaborators."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple
import json
import logging
import os
import shutil
import tempfile
import threading
import weakref

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from crypto_utils import CertificateFormatConverter, CertificateVerifier, X509Utils

from .errors import NotFoundError, PolicyViolationError, StoreError
from .models import KeyHandle

logger = logging.getLogger(__name__)


class CertificateStore(Protocol):
    """Durable home for installed certificates and their keys."""

    def put(self, certificate_der: bytes, key_handle: KeyHandle, friendly_name: Optional[str]) -> str:
        """Store a certificate with its key and return the store identifier."""
        ...

    def get(self, thumbprint: str) -> Optional[bytes]:
        """Return the DER certificate stored under a public-key thumbprint."""
        ...


def _check_pair(certificate_der: bytes, key_handle: KeyHandle) -> x509.Certificate:
    try:
        cert = x509.load_der_x509_certificate(certificate_der)
    except ValueError as e:
        raise StoreError(f"Refusing to store unparseable certificate: {e}")
    if CertificateVerifier.public_key_thumbprint(cert) != key_handle.thumbprint:
        raise StoreError("Certificate public key does not match the key handle")
    return cert


def _export(cert: x509.Certificate, key_handle: KeyHandle, password: Optional[bytes],
            friendly_name: Optional[str]) -> bytes:
    if not key_handle.exportable:
        raise PolicyViolationError(
            f"Private key {key_handle.thumbprint} is not exportable",
            field="exportable",
        )
    return CertificateFormatConverter.to_pkcs12(
        cert,
        key_handle.private_key,
        password=password,
        friendly_name=friendly_name.encode() if friendly_name else None,
    )


class InMemoryCertificateStore:
    """Process-local store, mainly for tests and ephemeral deployments."""

    def __init__(self):
        self._items: Dict[str, Tuple[bytes, KeyHandle, Optional[str]]] = {}
        self._lock = threading.Lock()

    def put(self, certificate_der: bytes, key_handle: KeyHandle, friendly_name: Optional[str]) -> str:
        _check_pair(certificate_der, key_handle)
        with self._lock:
            self._items[key_handle.thumbprint] = (certificate_der, key_handle, friendly_name)
        logger.debug(f"Certificate stored in memory: {key_handle.thumbprint}")
        return key_handle.thumbprint

    def get(self, thumbprint: str) -> Optional[bytes]:
        with self._lock:
            item = self._items.get(thumbprint)
        return item[0] if item else None

    def get_key_handle(self, thumbprint: str) -> Optional[KeyHandle]:
        with self._lock:
            item = self._items.get(thumbprint)
        return item[1] if item else None

    def export_pkcs12(self, thumbprint: str, password: Optional[bytes] = None) -> bytes:
        with self._lock:
            item = self._items.get(thumbprint)
        if item is None:
            raise NotFoundError(f"No certificate stored for {thumbprint}")
        certificate_der, key_handle, friendly_name = item
        return _export(x509.load_der_x509_certificate(certificate_der), key_handle, password, friendly_name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class FileCertificateStore:
    """
    Directory-backed store.

    Each entry lives in <root>/<thumbprint>/ with certificate.crt,
    private.key and metadata.json. Entries are staged in a temporary
    directory and moved in with a rename, so a reader never sees a partly
    written entry. Overwriting takes two renames; the old entry is briefly
    absent between them and is put back if the second rename fails.
    """

    CERT_FILE = "certificate.crt"
    KEY_FILE = "private.key"
    METADATA_FILE = "metadata.json"

    def __init__(self, root: Path, key_passphrase: Optional[bytes] = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.key_passphrase = key_passphrase
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

        logger.info(f"Certificate store initialized: {self.root}")

    def _lock_for(self, thumbprint: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(thumbprint, threading.Lock())

    def put(self, certificate_der: bytes, key_handle: KeyHandle, friendly_name: Optional[str]) -> str:
        cert = _check_pair(certificate_der, key_handle)
        thumbprint = key_handle.thumbprint
        target = self.root / thumbprint

        with self._lock_for(thumbprint):
            staging = Path(tempfile.mkdtemp(prefix=f".{thumbprint[:16]}-", dir=self.root))
            try:
                X509Utils.save_certificate(cert, staging / self.CERT_FILE)
                X509Utils.save_private_key(key_handle.private_key, staging / self.KEY_FILE, self.key_passphrase)
                metadata = {
                    "thumbprint": thumbprint,
                    "friendly_name": friendly_name,
                    "exportable": key_handle.exportable,
                    "subject": cert.subject.rfc4514_string(),
                    "stored_at": datetime.now(timezone.utc).isoformat(),
                }
                (staging / self.METADATA_FILE).write_text(json.dumps(metadata, indent=2))

                retired = self.root / f".{thumbprint[:16]}-retired"
                # Leftover from an interrupted overwrite
                shutil.rmtree(retired, ignore_errors=True)
                if target.exists():
                    self._swap(staging, target, retired)
                else:
                    os.replace(staging, target)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                raise StoreError(f"Failed to write certificate {thumbprint}: {e}") from e

        logger.debug(f"Certificate stored: {target}")
        return thumbprint

    @staticmethod
    def _swap(staging: Path, target: Path, retired: Path):
        os.replace(target, retired)
        try:
            os.replace(staging, target)
        except OSError:
            os.replace(retired, target)
            raise
        shutil.rmtree(retired, ignore_errors=True)

    def get(self, thumbprint: str) -> Optional[bytes]:
        cert_path = self.root / thumbprint / self.CERT_FILE
        if not cert_path.exists():
            return None
        try:
            cert = X509Utils.load_certificate(cert_path)
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read certificate {thumbprint}: {e}") from e
        return cert.public_bytes(serialization.Encoding.DER)

    def get_key_handle(self, thumbprint: str) -> Optional[KeyHandle]:
        entry = self.root / thumbprint
        if not (entry / self.KEY_FILE).exists():
            return None
        try:
            metadata = json.loads((entry / self.METADATA_FILE).read_text())
            private_key = X509Utils.load_private_key(entry / self.KEY_FILE, self.key_passphrase)
        except (OSError, ValueError, TypeError) as e:
            raise StoreError(f"Failed to read key {thumbprint}: {e}") from e
        return KeyHandle(private_key, bool(metadata.get("exportable")), thumbprint)

    def export_pkcs12(self, thumbprint: str, password: Optional[bytes] = None) -> bytes:
        certificate_der = self.get(thumbprint)
        if certificate_der is None:
            raise NotFoundError(f"No certificate stored for {thumbprint}")
        metadata = json.loads((self.root / thumbprint / self.METADATA_FILE).read_text())
        if not metadata.get("exportable"):
            raise PolicyViolationError(f"Private key {thumbprint} is not exportable", field="exportable")
        key_handle = self.get_key_handle(thumbprint)
        return _export(
            x509.load_der_x509_certificate(certificate_der),
            key_handle,
            password,
            metadata.get("friendly_name"),
        )

    def list_thumbprints(self) -> list:
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_dir() and not p.name.startswith(".") and (p / self.CERT_FILE).exists()
        )
