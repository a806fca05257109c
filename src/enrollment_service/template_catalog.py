"""Enrollment template lookup against an external policy source."""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol
import json
import logging

from pydantic import ValidationError as PydanticValidationError

from .errors import PolicySourceUnavailable, UnknownTemplateError
from .models import Template

logger = logging.getLogger(__name__)


class TemplateSource(Protocol):
    """Policy/directory collaborator publishing enrollment templates."""

    def list_templates(self) -> Iterable[dict]:
        """Return raw template records: id, defaultKeyLength, allowedKeyUsages, exportPolicy."""
        ...


class StaticTemplateSource:
    """Template source backed by records held in memory."""

    def __init__(self, records: Optional[Iterable[dict]] = None):
        self._records = [dict(record) for record in (records or [])]

    def list_templates(self) -> List[dict]:
        return [dict(record) for record in self._records]


class JsonFileTemplateSource:
    """Template source reading a JSON document on every query."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def list_templates(self) -> List[dict]:
        """
        Load template records.

        The document is either a list of records or {"templates": [...]}.

        Raises:
            OSError: If the file cannot be read
            ValueError: If the document is not valid JSON of the expected shape
        """
        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        if isinstance(data, dict):
            data = data.get("templates")
        if not isinstance(data, list):
            raise ValueError(f"Template document {self.path} has no template list")
        return data


class TemplateCatalog:
    """Resolves template identifiers and their policy constraints."""

    def __init__(self, source: TemplateSource):
        self.source = source

    def get_available_templates(self) -> Dict[str, Template]:
        """
        Query the policy source.

        Returns:
            Mapping of template identifier to template, complete or not at all

        Raises:
            PolicySourceUnavailable: If the source fails or publishes an invalid record
        """
        try:
            records = list(self.source.list_templates())
        except Exception as e:
            logger.error(f"Policy source query failed: {e}")
            raise PolicySourceUnavailable("Template policy source is unavailable") from e

        templates: Dict[str, Template] = {}
        for record in records:
            try:
                template = Template.model_validate(record)
            except PydanticValidationError as e:
                logger.error(f"Policy source returned an invalid template record: {e}")
                raise PolicySourceUnavailable("Template policy source returned invalid data") from e

            if template.template_id in templates:
                logger.error(f"Policy source returned duplicate template: {template.template_id}")
                raise PolicySourceUnavailable("Template policy source returned invalid data")
            templates[template.template_id] = template

        logger.info(f"Loaded {len(templates)} enrollment templates")
        return templates

    def resolve(self, template_id: str) -> Template:
        """
        Look up a single template.

        Raises:
            UnknownTemplateError: If the source does not publish the template
            PolicySourceUnavailable: If the source cannot be queried
        """
        templates = self.get_available_templates()
        if template_id not in templates:
            raise UnknownTemplateError(template_id)
        return templates[template_id]
