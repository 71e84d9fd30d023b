# mcfleet/services/templates.py
"""
Static catalog of installable server templates, loaded from YAML.

Each template names a downloadable server artifact, its runtime and hardware
requirements, and the ordered steps that install it into an instance root.
"""

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml

from mcfleet.core.config import TEMPLATES_FILE
from mcfleet.core.errors import TemplateNotFound

logger = logging.getLogger(__name__)


class StepType(str, Enum):
    DOWNLOAD = "DOWNLOAD"
    RUN = "RUN"


@dataclass(frozen=True)
class InstallStep:
    type: StepType
    command: str

    @classmethod
    def from_dict(cls, data: dict) -> "InstallStep":
        return cls(type=StepType(str(data["type"]).upper()), command=str(data.get("command", "")))


@dataclass(frozen=True)
class ServerTemplate:
    id: str
    name: str
    download_url: str
    type: str = ""
    version: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)
    system_requirements: str = ""
    hardware_requirements: str = ""
    installation_steps: List[InstallStep] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ServerTemplate":
        steps = [InstallStep.from_dict(s) for s in data.get("installation_steps") or []]
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["id"] = str(values["id"])
        values["installation_steps"] = steps
        values["tags"] = list(values.get("tags") or [])
        return cls(**values)


class TemplateCatalog:
    """Read-only template list; loaded once on first access."""

    def __init__(self, path: Path = TEMPLATES_FILE):
        self.path = Path(path)
        self._templates: Optional[List[ServerTemplate]] = None

    def _load(self) -> List[ServerTemplate]:
        if not self.path.exists():
            logger.warning("[Templates] Catalog not found at %s", self.path)
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("templates", []) if isinstance(data, dict) else data
        templates = [ServerTemplate.from_dict(entry) for entry in entries or []]
        logger.info("[Templates] Loaded %d server templates from %s", len(templates), self.path)
        return templates

    def list_templates(self) -> List[ServerTemplate]:
        if self._templates is None:
            self._templates = self._load()
        return list(self._templates)

    def get(self, template_id: str) -> ServerTemplate:
        for template in self.list_templates():
            if template.id == str(template_id):
                return template
        raise TemplateNotFound(template_id)


_catalog: Optional[TemplateCatalog] = None


def get_template_catalog() -> TemplateCatalog:
    global _catalog
    if _catalog is None:
        _catalog = TemplateCatalog()
    return _catalog
