"""Merges caller options with template defaults and enforces key policy."""

from typing import FrozenSet, Optional
import logging
import re

from .config import MINIMUM_KEY_LENGTH
from .errors import InvalidKeyLengthError, InvalidKeyUsageError, PolicyViolationError
from .models import (
    EffectiveRequestOptions,
    ExportPolicy,
    KeyUsageName,
    RequestOptions,
    SubjectAlternativeName,
    Template,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_USAGES = frozenset({KeyUsageName.DIGITAL_SIGNATURE})

# EncipherOnly and DecipherOnly only qualify a KeyAgreement key
_AGREEMENT_QUALIFIERS = frozenset({KeyUsageName.ENCIPHER_ONLY, KeyUsageName.DECIPHER_ONLY})


class KeyPolicyEnforcer:
    """Produces effective request options or rejects the request."""

    def __init__(self, default_key_length: int = MINIMUM_KEY_LENGTH, maximum_key_length: int = 16384):
        self.default_key_length = default_key_length
        self.maximum_key_length = maximum_key_length

    def merge(self, options: RequestOptions, template: Optional[Template] = None) -> EffectiveRequestOptions:
        """
        Apply template defaults and validate the result.

        Template values only fill fields the caller left unset; explicit
        caller values are checked against the template's constraints.
        Without a template only the global minimums apply.

        Args:
            options: Caller-supplied options
            template: Resolved template, if one was named

        Returns:
            Fully populated options

        Raises:
            ValidationError: For malformed key length, key usage or SAN values
            PolicyViolationError: When an explicit value conflicts with the template
        """
        if options.key_length is not None:
            key_length = options.key_length
        elif template is not None:
            key_length = template.default_key_length
        else:
            key_length = self.default_key_length
        self._check_key_length(key_length)

        key_usages = self._parse_key_usages(options.key_usages)
        if key_usages is None:
            key_usages = template.allowed_key_usages if template is not None else DEFAULT_KEY_USAGES
        elif template is not None:
            disallowed = key_usages - template.allowed_key_usages
            if disallowed:
                names = ", ".join(sorted(usage.value for usage in disallowed))
                logger.warning(f"Key usage {names} rejected by template {template.template_id}")
                raise PolicyViolationError(
                    f"Key usage {names} is not allowed by template {template.template_id}",
                    field="key_usages",
                )
        self._check_key_usage_combination(key_usages)

        exportable = self._resolve_exportable(options.exportable, template)

        sans = []
        for index, raw in enumerate(options.subject_alternative_names):
            san = SubjectAlternativeName.parse(raw, index)
            if san not in sans:
                sans.append(san)

        friendly_name = options.friendly_name.strip() if options.friendly_name else None

        return EffectiveRequestOptions(
            subject_name=options.subject_name,
            template_name=template.template_id if template is not None else None,
            key_length=key_length,
            key_usages=key_usages,
            exportable=exportable,
            friendly_name=friendly_name or None,
            subject_alternative_names=tuple(sans),
        )

    def _check_key_length(self, key_length: int):
        if isinstance(key_length, bool) or not isinstance(key_length, int):
            raise InvalidKeyLengthError(f"Key length must be an integer, got {key_length!r}")
        if key_length < MINIMUM_KEY_LENGTH:
            logger.warning(f"Rejected key length {key_length}")
            raise InvalidKeyLengthError(
                f"Key length {key_length} is below the minimum of {MINIMUM_KEY_LENGTH} bits"
            )
        if key_length > self.maximum_key_length:
            raise InvalidKeyLengthError(
                f"Key length {key_length} exceeds the maximum of {self.maximum_key_length} bits"
            )
        if key_length % 8:
            raise InvalidKeyLengthError(f"Key length {key_length} is not a multiple of 8")

    @staticmethod
    def _parse_key_usages(raw) -> Optional[FrozenSet[KeyUsageName]]:
        if raw is None:
            return None
        if isinstance(raw, str):
            items = [item for item in re.split(r"[,|]", raw) if item.strip()]
        else:
            items = list(raw)
        if not items:
            return None

        usages = set()
        for item in items:
            usage = item if isinstance(item, KeyUsageName) else KeyUsageName.lookup(str(item))
            if usage is None:
                raise InvalidKeyUsageError(f"Unsupported key usage: {str(item).strip()!r}")
            usages.add(usage)
        return frozenset(usages)

    @staticmethod
    def _check_key_usage_combination(key_usages: FrozenSet[KeyUsageName]):
        if key_usages & _AGREEMENT_QUALIFIERS and KeyUsageName.KEY_AGREEMENT not in key_usages:
            raise InvalidKeyUsageError("EncipherOnly and DecipherOnly require KeyAgreement")

    @staticmethod
    def _resolve_exportable(requested: Optional[bool], template: Optional[Template]) -> bool:
        if template is None:
            return bool(requested)

        policy = template.export_policy
        if requested is None:
            return policy is ExportPolicy.REQUIRED
        if requested and policy is ExportPolicy.FORBIDDEN:
            raise PolicyViolationError(
                f"Template {template.template_id} forbids exportable keys",
                field="exportable",
            )
        if not requested and policy is ExportPolicy.REQUIRED:
            raise PolicyViolationError(
                f"Template {template.template_id} requires exportable keys",
                field="exportable",
            )
        return requested
