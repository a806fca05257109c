"""Data models for the enrollment service."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple, Union
import ipaddress
import re

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel, to_pascal

from .errors import InvalidSubjectAlternativeNameError, PolicyViolationError

_DNS_LABEL = r"(?!-)[A-Za-z0-9-]{1,63}(?<!-)"
_DNS_NAME = re.compile(rf"^(\*\.)?(?:{_DNS_LABEL}\.)*{_DNS_LABEL}$")
_SAN_PREFIX = re.compile(r"^(dns|ip|email)\s*[:=]\s*(.*)$", re.IGNORECASE)


class KeyUsageName(str, Enum):
    """Key-usage vocabulary accepted in requests and templates."""

    DIGITAL_SIGNATURE = "DigitalSignature"
    NON_REPUDIATION = "NonRepudiation"
    KEY_ENCIPHERMENT = "KeyEncipherment"
    DATA_ENCIPHERMENT = "DataEncipherment"
    KEY_AGREEMENT = "KeyAgreement"
    KEY_CERT_SIGN = "KeyCertSign"
    CRL_SIGN = "CrlSign"
    ENCIPHER_ONLY = "EncipherOnly"
    DECIPHER_ONLY = "DecipherOnly"

    @classmethod
    def lookup(cls, name: str) -> Optional["KeyUsageName"]:
        """Case-insensitive lookup ignoring spaces and underscores."""
        wanted = re.sub(r"[\s_]", "", name).lower()
        for usage in cls:
            if usage.value.lower() == wanted:
                return usage
        return None


class ExportPolicy(str, Enum):
    REQUIRED = "required"
    FORBIDDEN = "forbidden"
    EITHER = "either"


class SanType(str, Enum):
    DNS = "dns"
    IP = "ip"
    EMAIL = "email"


class PendingState(str, Enum):
    CREATED = "created"
    INSTALLED = "installed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


class SubjectAlternativeName(BaseModel):
    """A single typed subject alternative name."""

    model_config = ConfigDict(frozen=True)

    type: SanType
    value: str

    @classmethod
    def parse(cls, raw, index: Optional[int] = None) -> "SubjectAlternativeName":
        """
        Parse and validate a SAN entry.

        Strings may carry a "dns:", "ip:" or "email:" prefix; without one the
        type is inferred (IP literal, then e-mail address, then DNS name).

        Raises:
            InvalidSubjectAlternativeNameError: If the entry fits none of the forms
        """
        if isinstance(raw, SubjectAlternativeName):
            kind, value = raw.type, raw.value
        elif isinstance(raw, dict):
            try:
                entry = cls.model_validate(raw)
            except PydanticValidationError:
                raise InvalidSubjectAlternativeNameError(f"Malformed SAN entry: {raw!r}", index)
            kind, value = entry.type, entry.value
        elif isinstance(raw, str):
            kind, value = cls._split(raw.strip())
        else:
            raise InvalidSubjectAlternativeNameError(f"Unsupported SAN entry: {raw!r}", index)

        value = value.strip()
        if kind is SanType.IP:
            try:
                value = str(ipaddress.ip_address(value))
            except ValueError:
                raise InvalidSubjectAlternativeNameError(f"Invalid IP address: {value!r}", index)
        elif kind is SanType.EMAIL:
            try:
                validate_email(value, check_deliverability=False)
            except EmailNotValidError as e:
                raise InvalidSubjectAlternativeNameError(f"Invalid e-mail address {value!r}: {e}", index)
        elif len(value) > 253 or not _DNS_NAME.match(value):
            raise InvalidSubjectAlternativeNameError(f"Invalid DNS name: {value!r}", index)

        return cls(type=kind, value=value)

    @staticmethod
    def _split(text: str) -> Tuple[SanType, str]:
        match = _SAN_PREFIX.match(text)
        if match:
            return SanType(match.group(1).lower()), match.group(2)
        try:
            ipaddress.ip_address(text)
            return SanType.IP, text
        except ValueError:
            pass
        if "@" in text:
            return SanType.EMAIL, text
        return SanType.DNS, text


class RequestOptions(BaseModel):
    """Caller-supplied enrollment options; unset fields are None."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    subject_name: str = Field(default="", description="X.500 distinguished name")
    template_name: Optional[str] = Field(None, description="Enrollment template identifier")
    key_length: Optional[int] = Field(None, description="RSA key length in bits (default 2048)")
    key_usages: Optional[Union[str, List[str]]] = Field(
        None,
        alias="KeyUsage",
        description="Key usage names or a comma separated flags string",
    )
    exportable: Optional[bool] = Field(None, description="Whether the private key may be exported")
    friendly_name: Optional[str] = Field(None, description="Label for the certificate store")
    subject_alternative_names: List[Union[SubjectAlternativeName, str]] = Field(
        default_factory=list,
        description="DNS names, IP addresses or e-mail addresses",
    )


class EffectiveRequestOptions(BaseModel):
    """Options after template defaults and policy checks were applied."""

    model_config = ConfigDict(frozen=True)

    subject_name: str
    template_name: Optional[str] = None
    key_length: int
    key_usages: FrozenSet[KeyUsageName]
    exportable: bool
    friendly_name: Optional[str] = None
    subject_alternative_names: Tuple[SubjectAlternativeName, ...] = ()

    def usage_names(self) -> List[str]:
        return sorted(usage.value for usage in self.key_usages)

    def san_pairs(self) -> List[Tuple[str, str]]:
        return [(san.type.value, san.value) for san in self.subject_alternative_names]


class Template(BaseModel):
    """Enrollment template as published by the policy source."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    template_id: str = Field(..., alias="id", min_length=1)
    display_name: Optional[str] = None
    default_key_length: int = 2048
    allowed_key_usages: FrozenSet[KeyUsageName]
    export_policy: ExportPolicy = ExportPolicy.EITHER


class KeyHandle:
    """Private key plus the export decision fixed when it was generated."""

    def __init__(self, private_key: rsa.RSAPrivateKey, exportable: bool, thumbprint: str):
        self._private_key = private_key
        self._exportable = exportable
        self.thumbprint = thumbprint

    @property
    def exportable(self) -> bool:
        return self._exportable

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        return self._private_key

    @property
    def key_size(self) -> int:
        return self._private_key.key_size

    def export_private_key(self, password: Optional[bytes] = None) -> bytes:
        """Return PKCS#8 PEM; refused for non-exportable keys."""
        if not self._exportable:
            raise PolicyViolationError("Private key is not exportable", field="exportable")
        encryption = (
            serialization.BestAvailableEncryption(password)
            if password
            else serialization.NoEncryption()
        )
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )

    def __getstate__(self):
        if not self._exportable:
            raise PolicyViolationError("Non-exportable key handles cannot be serialized", field="exportable")
        return self.__dict__

    def __repr__(self) -> str:
        return f"KeyHandle(thumbprint={self.thumbprint!r}, exportable={self._exportable})"


class PendingRequest:
    """Key pair and CSR awaiting the CA response."""

    def __init__(
        self,
        thumbprint: str,
        key_handle: KeyHandle,
        csr_der: bytes,
        options: EffectiveRequestOptions,
        created_at: Optional[datetime] = None,
    ):
        self.thumbprint = thumbprint
        self.key_handle = key_handle
        self.csr_der = csr_der
        self.options = options
        self.created_at = created_at or datetime.now(timezone.utc)
        self.state = PendingState.CREATED

    @property
    def is_terminal(self) -> bool:
        return self.state is not PendingState.CREATED

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.created_at >= ttl

    def transition(self, new_state: PendingState):
        """Move out of CREATED; terminal states are final."""
        if self.is_terminal:
            raise ValueError(f"Pending request {self.thumbprint} already {self.state.value}")
        if new_state is PendingState.CREATED:
            raise ValueError("Cannot return a pending request to created")
        self.state = new_state

    def __repr__(self) -> str:
        return (
            f"PendingRequest(thumbprint={self.thumbprint!r}, subject={self.options.subject_name!r}, "
            f"state={self.state.value})"
        )


class IssuedCertificate:
    """Certificate committed to the store together with its key."""

    def __init__(
        self,
        certificate: x509.Certificate,
        key_handle: KeyHandle,
        store_id: str,
        friendly_name: Optional[str] = None,
    ):
        self.certificate = certificate
        self.key_handle = key_handle
        self.store_id = store_id
        self.friendly_name = friendly_name

    @property
    def thumbprint(self) -> str:
        return self.key_handle.thumbprint

    @property
    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode()


# ============================================================================
# Transport models
# ============================================================================

class CertificateRequestResponse(BaseModel):
    """Response model for a created signing request."""

    thumbprint: str = Field(..., description="Public key thumbprint identifying the pending request")
    csr: str = Field(..., description="PEM-encoded PKCS#10 request")
    subject_name: str = Field(..., description="Effective subject name")
    template_name: Optional[str] = Field(None, description="Template applied to the request")
    key_length: int = Field(..., description="Key length in bits")
    key_usages: List[str] = Field(..., description="Effective key usage names")
    exportable: bool = Field(..., description="Whether the private key is exportable")
    expires_at: datetime = Field(..., description="When the pending request is evicted")


class InstallCertificateRequest(BaseModel):
    """Request model for installing a CA response."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    certificate_response: str = Field(..., description="PEM, base64 DER, PKCS#7 or PKCS#12 response")
    password: str = Field(default="", description="Password for PKCS#12 bundles")


class InstallCertificateResponse(BaseModel):
    installed: bool


class TemplateInfo(BaseModel):
    template_id: str
    display_name: Optional[str] = None
    default_key_length: int
    allowed_key_usages: List[str]
    export_policy: ExportPolicy


class SelfSignedCertificateRequest(BaseModel):
    """Request model for self-signed issuance."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    subject_name: str = Field(..., description="X.500 distinguished name")
    validity_days: int = Field(..., description="Validity period in days")


class SelfSignedCertificateResponse(BaseModel):
    certificate: str = Field(..., description="PEM-encoded certificate")
    thumbprint: str = Field(..., description="Public key thumbprint")
    store_id: str = Field(..., description="Certificate store identifier")
    serial_number: str = Field(..., description="Certificate serial number")
    not_valid_before: datetime
    not_valid_after: datetime
    fingerprint_sha256: str


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error kind")
    detail: str = Field(..., description="Error message")
    field: Optional[str] = Field(None, description="Offending request field")
    correlation_id: Optional[str] = Field(None, description="Reference for internal failures")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
