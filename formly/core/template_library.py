"""
Template Library - Directory-backed registry of parsed templates

Responsibilities:
- Load every *.json template in a directory
- Look templates up by id or by name
- List templates for a picker (sorted by name)

Design principles:
- One bad file never blocks the others (logged and skipped)
- Templates are parsed once and shared read-only by sessions
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from formly.core.template_model import Template, TemplateParseError, load_template
from formly.events import EventSink, TemplateLoaded

logger = logging.getLogger(__name__)

BUNDLED_TEMPLATE_DIR = Path(__file__).resolve().parents[2] / "data" / "templates"


class TemplateLibrary:
    """In-memory registry of templates keyed by template id"""

    def __init__(self, event_sink: Optional[EventSink] = None):
        self._templates: Dict[str, Template] = {}
        self._sink = event_sink

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def register(self, template: Template, source: Optional[str] = None) -> None:
        """
        Add (or replace) a template.

        Raises:
            TypeError: If template is not a Template
        """
        if not isinstance(template, Template):
            raise TypeError(f"template must be Template, got {type(template).__name__}")

        if template.id in self._templates:
            logger.warning(f"Replacing template '{template.id}' with v{template.version}")
        self._templates[template.id] = template

        logger.info(f"Loaded template: {template.name} ({template.id} v{template.version})")
        if self._sink is not None:
            self._sink(TemplateLoaded(
                template_id=template.id,
                version=template.version,
                name=template.name,
                source=source,
            ))

    def load_directory(self, path: Union[str, Path] = BUNDLED_TEMPLATE_DIR) -> List[str]:
        """
        Parse every *.json file in a directory (sorted by filename).

        Args:
            path: Directory to scan (default: bundled templates)

        Returns:
            List of template ids loaded

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        directory = Path(path)
        if not directory.is_dir():
            raise FileNotFoundError(f"Template directory not found: {path}")

        loaded = []
        for file_path in sorted(directory.glob("*.json")):
            try:
                template = load_template(file_path)
            except TemplateParseError as e:
                logger.error(f"Skipping template {file_path.name}: {e}")
                continue
            except OSError as e:
                logger.error(f"Failed to read template {file_path.name}: {e}")
                continue

            self.register(template, source=str(file_path))
            loaded.append(template.id)

        logger.info(f"Loaded {len(loaded)} templates from {directory}")
        return loaded

    def get(self, key: str) -> Template:
        """
        Find a template by exact id, then by case-insensitive name match.

        Raises:
            KeyError: If nothing matches
        """
        if key in self._templates:
            return self._templates[key]

        needle = key.strip().lower()
        if needle:
            for template in self.all():
                if needle in template.name.lower():
                    return template

        raise KeyError(f"Template not found: {key}")

    def all(self) -> List[Template]:
        return sorted(self._templates.values(), key=lambda t: (t.name.lower(), t.id))
