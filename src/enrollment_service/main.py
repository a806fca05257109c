"""FastAPI transport adapter for the enrollment facade."""

from typing import Optional
import logging

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crypto_utils import CertificateFormatConverter, CertificateVerifier

from .config import EnrollmentSettings
from .dispatcher import EnrollmentDispatcher
from .errors import (
    EnrollmentError,
    NotFoundError,
    OperationTimeoutError,
    PolicySourceUnavailable,
    PolicyViolationError,
    ValidationError,
)
from .facade import EnrollmentFacade, create_facade
from .models import (
    CertificateRequestResponse,
    ErrorResponse,
    InstallCertificateRequest,
    InstallCertificateResponse,
    RequestOptions,
    SelfSignedCertificateRequest,
    SelfSignedCertificateResponse,
    TemplateInfo,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PolicyViolationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PolicySourceUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (OperationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
]


def status_for(error: EnrollmentError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def field_path(loc) -> Optional[str]:
    """Render a request validation location as "Field[0].Nested"."""
    path = ""
    for part in loc:
        if part == "body" and not path:
            continue
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or None


def caller_identity(x_authenticated_user: Optional[str] = Header(None)) -> Optional[str]:
    """
    Identity established by the authenticating front end.

    Authentication happens upstream; the value is only used for logging.
    """
    return x_authenticated_user


def create_app(
    settings: Optional[EnrollmentSettings] = None,
    facade: Optional[EnrollmentFacade] = None,
) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        settings: Service settings (read from the environment when omitted)
        facade: Pre-wired facade, mainly for tests
    """
    settings = settings or EnrollmentSettings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    facade = facade or create_facade(settings)
    dispatcher = EnrollmentDispatcher(
        facade,
        worker_count=settings.worker_count,
        timeout_seconds=settings.operation_timeout_seconds,
    )

    app = FastAPI(
        title="Certificate Enrollment Service",
        description="PKCS#10 request creation, CA response installation and self-signed issuance",
        version="1.0.0",
    )
    app.state.facade = facade
    app.state.dispatcher = dispatcher

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting certificate enrollment service")
        facade.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Stopping certificate enrollment service")
        dispatcher.shutdown(wait=False)
        facade.close()

    @app.exception_handler(EnrollmentError)
    async def enrollment_error_handler(request: Request, exc: EnrollmentError):
        body = ErrorResponse(**exc.to_dict())
        return JSONResponse(status_code=status_for(exc), content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = field_path(first.get("loc", ()))
        detail = first.get("msg", "Invalid request body")
        logger.warning(f"Rejected request to {request.url.path}: {field}: {detail}")
        body = ErrorResponse(error="ValidationError", detail=detail, field=field)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json"))

    @app.post("/enrollment/requests", response_model=CertificateRequestResponse)
    async def create_certificate_request(
        options: RequestOptions,
        caller: Optional[str] = Depends(caller_identity),
    ):
        """Create a PKCS#10 request; the private key stays in the pending registry."""
        entry = await dispatcher.create_certificate_request(options, caller)
        effective = entry.options

        return CertificateRequestResponse(
            thumbprint=entry.thumbprint,
            csr=CertificateFormatConverter.csr_to_pem(entry.csr_der),
            subject_name=effective.subject_name,
            template_name=effective.template_name,
            key_length=effective.key_length,
            key_usages=effective.usage_names(),
            exportable=effective.exportable,
            expires_at=facade.registry.expires_at(entry),
        )

    @app.post("/enrollment/install", response_model=InstallCertificateResponse)
    async def install_certificate(
        request: InstallCertificateRequest,
        caller: Optional[str] = Depends(caller_identity),
    ):
        """Install a CA response for a pending request."""
        installed = await dispatcher.install_certificate(
            request.certificate_response,
            request.password,
            caller,
        )
        return InstallCertificateResponse(installed=installed)

    @app.get("/enrollment/templates", response_model=list[TemplateInfo])
    async def get_available_templates(caller: Optional[str] = Depends(caller_identity)):
        """List enrollment templates published by the policy source."""
        templates = await dispatcher.get_available_templates(caller)
        return [
            TemplateInfo(
                template_id=template.template_id,
                display_name=template.display_name,
                default_key_length=template.default_key_length,
                allowed_key_usages=sorted(usage.value for usage in template.allowed_key_usages),
                export_policy=template.export_policy,
            )
            for template in templates
        ]

    @app.post("/enrollment/self-signed", response_model=SelfSignedCertificateResponse)
    async def create_self_signed_certificate(
        request: SelfSignedCertificateRequest,
        caller: Optional[str] = Depends(caller_identity),
    ):
        """Issue a self-signed certificate straight into the store."""
        issued = await dispatcher.create_self_signed_certificate(
            request.subject_name,
            request.validity_days,
            caller,
        )
        cert = issued.certificate

        return SelfSignedCertificateResponse(
            certificate=issued.certificate_pem,
            thumbprint=issued.thumbprint,
            store_id=issued.store_id,
            serial_number=str(cert.serial_number),  # String for JavaScript compatibility
            not_valid_before=cert.not_valid_before_utc,
            not_valid_after=cert.not_valid_after_utc,
            fingerprint_sha256=CertificateVerifier.get_certificate_fingerprint(cert),
        )

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "enrollment_service.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
