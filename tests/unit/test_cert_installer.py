"""Unit tests for CA response installation."""

import gc
import pytest
from cryptography.hazmat.primitives import serialization

from enrollment_service.cert_installer import CertificateInstaller
from enrollment_service.csr_builder import CsrBuilder
from enrollment_service.errors import (
    MalformedResponseError,
    NoMatchingRequestError,
    PasswordMismatchError,
    StoreError,
)
from enrollment_service.key_policy import KeyPolicyEnforcer
from enrollment_service.models import PendingRequest, PendingState, RequestOptions

from ..utils.test_helpers import thumbprint_of


class FailingStore:
    """Store whose backing volume rejects writes."""

    def __init__(self):
        self.attempts = 0

    def put(self, certificate_der, key_handle, friendly_name):
        self.attempts += 1
        raise OSError("disk full")

    def get(self, thumbprint):
        return None


@pytest.fixture
def installer(provider, registry, memory_store):
    return CertificateInstaller(provider, registry, memory_store)


@pytest.fixture
def pending(provider, registry, clock):
    """A registered pending request."""
    options = KeyPolicyEnforcer().merge(RequestOptions(
        subject_name="CN=install.example.com",
        friendly_name="Install",
        subject_alternative_names=["install.example.com"],
    ))
    csr_der, key_handle = CsrBuilder(provider).build(options)
    entry = PendingRequest(key_handle.thumbprint, key_handle, csr_der, options, created_at=clock())
    registry.register(entry)
    return entry


class TestInstall:
    """Test successful installs from each response container."""

    def test_install_pem_chain(self, installer, pending, issuing_ca, registry, memory_store):
        """Test a matching response lands in the store and the pending entry is removed."""
        cert = issuing_ca.sign_request(pending.csr_der)

        issued = installer.install(issuing_ca.pem_response(cert), "")

        assert issued.thumbprint == pending.thumbprint
        assert issued.store_id == pending.thumbprint
        assert issued.friendly_name == "Install"
        assert memory_store.get(pending.thumbprint) == cert.public_bytes(serialization.Encoding.DER)
        assert pending.thumbprint not in registry
        assert pending.state is PendingState.INSTALLED

    @pytest.mark.parametrize("packer", ["der_response", "base64_response", "pkcs7_response"])
    def test_install_other_containers(self, installer, pending, issuing_ca, memory_store, packer):
        cert = issuing_ca.sign_request(pending.csr_der)

        installer.install(getattr(issuing_ca, packer)(cert))

        assert memory_store.get(pending.thumbprint) is not None

    def test_install_pkcs12_with_password(self, installer, pending, issuing_ca, memory_store):
        cert = issuing_ca.sign_request(pending.csr_der)

        installer.install(issuing_ca.pkcs12_response(cert, password=b"bundle-pw"), "bundle-pw")

        assert memory_store.get(pending.thumbprint) is not None

    def test_install_leaf_without_chain(self, installer, pending, issuing_ca, memory_store):
        cert = issuing_ca.sign_request(pending.csr_der)

        installer.install(issuing_ca.pem_response(cert, include_chain=False))

        assert memory_store.get(pending.thumbprint) is not None

    def test_subject_locks_released_after_install(self, installer, pending, issuing_ca):
        installer.install(issuing_ca.pem_response(issuing_ca.sign_request(pending.csr_der)))

        gc.collect()

        assert len(installer._subject_locks) == 0


class TestInstallFailures:
    """Test failed installs leave the store and registry untouched."""

    def test_unknown_key(self, installer, pending, issuing_ca, registry, memory_store):
        """Test a certificate for a key we never generated is not found."""
        stranger = issuing_ca.issue_for_new_key()

        with pytest.raises(NoMatchingRequestError):
            installer.install(issuing_ca.pem_response(stranger))

        assert len(memory_store) == 0
        assert pending.thumbprint in registry

    def test_second_install_not_found(self, installer, pending, issuing_ca):
        cert = issuing_ca.sign_request(pending.csr_der)
        installer.install(issuing_ca.pem_response(cert))

        with pytest.raises(NoMatchingRequestError):
            installer.install(issuing_ca.pem_response(cert))

    def test_wrong_bundle_password(self, installer, pending, issuing_ca, registry, memory_store):
        cert = issuing_ca.sign_request(pending.csr_der)

        with pytest.raises(PasswordMismatchError) as exc_info:
            installer.install(issuing_ca.pkcs12_response(cert, password=b"right"), "wrong")

        assert exc_info.value.field == "password"
        assert len(memory_store) == 0
        assert pending.thumbprint in registry

    def test_malformed_response(self, installer, pending, registry, memory_store):
        with pytest.raises(MalformedResponseError):
            installer.install("this is not a certificate")

        assert len(memory_store) == 0
        assert pending.thumbprint in registry

    def test_forged_chain_rejected(self, installer, pending, issuing_ca, registry, memory_store):
        """Test a leaf that does not verify against the bundled issuer is refused."""
        forged = issuing_ca.forged_certificate(pending.csr_der)

        with pytest.raises(MalformedResponseError):
            installer.install(issuing_ca.pem_response(forged))

        assert len(memory_store) == 0
        assert pending.thumbprint in registry

    def test_expired_pending_request(self, installer, pending, issuing_ca, clock, registry):
        cert = issuing_ca.sign_request(pending.csr_der)
        clock.advance(hours=24, seconds=1)

        with pytest.raises(NoMatchingRequestError):
            installer.install(issuing_ca.pem_response(cert))

        assert pending.state is PendingState.EXPIRED

    def test_store_failure_releases_entry(self, provider, registry, pending, issuing_ca, memory_store):
        """Test a failed write keeps the pending request for a retry."""
        cert = issuing_ca.sign_request(pending.csr_der)
        response = issuing_ca.pem_response(cert)

        with pytest.raises(StoreError):
            CertificateInstaller(provider, registry, FailingStore()).install(response)

        assert pending.thumbprint in registry
        assert pending.state is PendingState.CREATED

        CertificateInstaller(provider, registry, memory_store).install(response)
        assert memory_store.get(thumbprint_of(cert)) is not None


class ShutdownDuringPutStore:
    """Store that closes the registry while the certificate is being written."""

    def __init__(self, registry, inner):
        self.registry = registry
        self.inner = inner

    def put(self, certificate_der, key_handle, friendly_name):
        thumbprint = self.inner.put(certificate_der, key_handle, friendly_name)
        self.registry.close()
        return thumbprint

    def get(self, thumbprint):
        return self.inner.get(thumbprint)


class TestInstallDuringShutdown:
    """Test closing the registry mid-install does not split the outcome."""

    def test_close_between_store_and_complete(self, provider, registry, pending, issuing_ca, memory_store):
        """Test a stored certificate is reported and recorded as installed."""
        cert = issuing_ca.sign_request(pending.csr_der)
        store = ShutdownDuringPutStore(registry, memory_store)

        issued = CertificateInstaller(provider, registry, store).install(issuing_ca.pem_response(cert))

        assert issued.thumbprint == pending.thumbprint
        assert memory_store.get(pending.thumbprint) == cert.public_bytes(serialization.Encoding.DER)
        assert pending.state is PendingState.INSTALLED
        assert len(registry) == 0
