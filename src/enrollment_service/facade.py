"""Enrollment entry point offered to the transport layer."""

from datetime import timedelta
from typing import List, Optional, Union
import functools
import logging

from crypto_utils import CryptographyProvider, CryptoProvider

from .cert_installer import CertificateInstaller
from .cert_store import CertificateStore, FileCertificateStore
from .config import EnrollmentSettings
from .csr_builder import CsrBuilder
from .errors import EnrollmentError, InternalEnrollmentError
from .key_policy import KeyPolicyEnforcer
from .models import IssuedCertificate, PendingRequest, RequestOptions, Template
from .pending_registry import ExpirySweeper, PendingRequestRegistry
from .self_signed import SelfSignedIssuer
from .template_catalog import JsonFileTemplateSource, StaticTemplateSource, TemplateCatalog, TemplateSource

logger = logging.getLogger(__name__)


def _reported(operation: str):
    """Log failures of a facade operation; unexpected errors become opaque."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except EnrollmentError as e:
                if e.opaque:
                    e.assign_correlation_id()
                    logger.error(f"{operation} failed [{e.correlation_id}]: {e.message}", exc_info=True)
                else:
                    logger.warning(f"{operation} rejected ({type(e).__name__}): {e.message}")
                raise
            except Exception as e:
                error = InternalEnrollmentError(f"{operation} failed: {e}")
                error.assign_correlation_id()
                logger.exception(f"{operation} failed [{error.correlation_id}]")
                raise error from e
        return wrapper
    return decorator


class EnrollmentFacade:
    """
    Orchestrates template resolution, policy, CSR building and installation.

    The facade owns the pending request registry and its expiry sweep.
    Callers reach it already authenticated; the caller identity is only
    recorded in the log.
    """

    def __init__(
        self,
        catalog: TemplateCatalog,
        enforcer: KeyPolicyEnforcer,
        csr_builder: CsrBuilder,
        installer: CertificateInstaller,
        self_signed_issuer: SelfSignedIssuer,
        registry: PendingRequestRegistry,
        sweep_interval_seconds: float = 300.0,
    ):
        self.catalog = catalog
        self.enforcer = enforcer
        self.csr_builder = csr_builder
        self.installer = installer
        self.self_signed_issuer = self_signed_issuer
        self.registry = registry
        self.sweeper = ExpirySweeper(registry, sweep_interval_seconds)

    @_reported("CreateCertificateRequest")
    def create_certificate_request(self, options: RequestOptions, caller: Optional[str] = None) -> PendingRequest:
        """
        Build a CSR and register its key pair as pending.

        Returns:
            The pending request; its csr_der is what goes to the CA
        """
        logger.info(f"Certificate request for {options.subject_name!r} by {caller or 'anonymous'}")

        template = self.catalog.resolve(options.template_name) if options.template_name else None
        effective = self.enforcer.merge(options, template)
        csr_der, key_handle = self.csr_builder.build(effective)

        entry = PendingRequest(
            key_handle.thumbprint,
            key_handle,
            csr_der,
            effective,
            created_at=self.registry.now(),
        )
        self.registry.register(entry)
        return entry

    @_reported("InstallCertificate")
    def install_certificate(
        self,
        response: Union[str, bytes],
        password: Optional[str] = "",
        caller: Optional[str] = None,
    ) -> bool:
        """Install a CA response matching a pending request."""
        logger.info(f"Certificate install by {caller or 'anonymous'}")
        self.installer.install(response, password)
        return True

    @_reported("GetAvailableTemplates")
    def get_available_templates(self, caller: Optional[str] = None) -> List[Template]:
        templates = self.catalog.get_available_templates()
        return [templates[template_id] for template_id in sorted(templates)]

    @_reported("CreateSelfSignedCertificate")
    def create_self_signed_certificate(
        self,
        subject_name: str,
        validity_days: int,
        caller: Optional[str] = None,
    ) -> IssuedCertificate:
        logger.info(f"Self-signed certificate for {subject_name!r} by {caller or 'anonymous'}")
        return self.self_signed_issuer.create_self_signed(subject_name, validity_days)

    def cancel_request(self, thumbprint: str) -> bool:
        """Abandon a pending request that will never be installed."""
        return self.registry.cancel(thumbprint)

    def start(self):
        self.sweeper.start()

    def close(self):
        self.sweeper.stop()
        self.registry.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def create_facade(
    settings: EnrollmentSettings,
    provider: Optional[CryptoProvider] = None,
    template_source: Optional[TemplateSource] = None,
    store: Optional[CertificateStore] = None,
) -> EnrollmentFacade:
    """Wire an EnrollmentFacade from settings; collaborators may be injected."""
    provider = provider or CryptographyProvider()

    if template_source is None:
        if settings.templates_file is not None:
            template_source = JsonFileTemplateSource(settings.templates_file)
        else:
            template_source = StaticTemplateSource()

    if store is None:
        passphrase = settings.store_key_passphrase.encode() if settings.store_key_passphrase else None
        store = FileCertificateStore(settings.storage_path, key_passphrase=passphrase)

    registry = PendingRequestRegistry(ttl=timedelta(seconds=settings.pending_ttl_seconds))

    return EnrollmentFacade(
        catalog=TemplateCatalog(template_source),
        enforcer=KeyPolicyEnforcer(settings.default_key_length, settings.maximum_key_length),
        csr_builder=CsrBuilder(provider),
        installer=CertificateInstaller(provider, registry, store),
        self_signed_issuer=SelfSignedIssuer(provider, store, key_length=settings.default_key_length),
        registry=registry,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )
