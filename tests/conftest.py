"""Pytest configuration and shared fixtures for enrollment testing."""

import pytest
import tempfile
import shutil
from pathlib import Path
from datetime import timedelta
from typing import Generator

from crypto_utils import CryptographyProvider
from enrollment_service import (
    CertificateInstaller,
    CsrBuilder,
    EnrollmentFacade,
    InMemoryCertificateStore,
    KeyPolicyEnforcer,
    PendingRequestRegistry,
    SelfSignedIssuer,
    StaticTemplateSource,
    TemplateCatalog,
)

from .utils.test_helpers import FakeClock, MockIssuingCA, template_record


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test artifacts."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(scope="session")
def issuing_ca() -> MockIssuingCA:
    """Issuing CA shared by the whole session; its keys are slow to generate."""
    return MockIssuingCA()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def template_records() -> list:
    """Templates published by the policy source in most tests."""
    return [
        template_record("WebServer", ["DigitalSignature", "KeyEncipherment"], export_policy="forbidden"),
        template_record("ClientAuth", ["DigitalSignature"], default_key_length=3072, export_policy="required"),
        template_record(
            "Workstation",
            ["DigitalSignature", "KeyEncipherment", "KeyAgreement", "EncipherOnly"],
        ),
    ]


@pytest.fixture
def provider() -> CryptographyProvider:
    return CryptographyProvider()


@pytest.fixture
def registry(clock) -> PendingRequestRegistry:
    registry = PendingRequestRegistry(ttl=timedelta(hours=24), clock=clock)
    yield registry
    registry.close()


@pytest.fixture
def memory_store() -> InMemoryCertificateStore:
    return InMemoryCertificateStore()


@pytest.fixture
def facade(provider, registry, memory_store, template_records, clock) -> Generator[EnrollmentFacade, None, None]:
    """Facade wired to in-memory collaborators and the fake clock."""
    facade = EnrollmentFacade(
        catalog=TemplateCatalog(StaticTemplateSource(template_records)),
        enforcer=KeyPolicyEnforcer(),
        csr_builder=CsrBuilder(provider),
        installer=CertificateInstaller(provider, registry, memory_store),
        self_signed_issuer=SelfSignedIssuer(provider, memory_store, clock=clock),
        registry=registry,
        sweep_interval_seconds=3600.0,
    )
    yield facade
    facade.close()
