"""Certificate enrollment service - CSR creation, response installation and self-signed issuance."""

from .facade import EnrollmentFacade, create_facade
from .dispatcher import EnrollmentDispatcher
from .pending_registry import PendingRequestRegistry, ExpirySweeper
from .template_catalog import TemplateCatalog, StaticTemplateSource, JsonFileTemplateSource
from .key_policy import KeyPolicyEnforcer
from .csr_builder import CsrBuilder
from .cert_installer import CertificateInstaller
from .self_signed import SelfSignedIssuer
from .cert_store import InMemoryCertificateStore, FileCertificateStore
from .config import EnrollmentSettings

__all__ = [
    'EnrollmentFacade',
    'create_facade',
    'EnrollmentDispatcher',
    'PendingRequestRegistry',
    'ExpirySweeper',
    'TemplateCatalog',
    'StaticTemplateSource',
    'JsonFileTemplateSource',
    'KeyPolicyEnforcer',
    'CsrBuilder',
    'CertificateInstaller',
    'SelfSignedIssuer',
    'InMemoryCertificateStore',
    'FileCertificateStore',
    'EnrollmentSettings',
]
