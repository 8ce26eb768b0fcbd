"""Template rendering for node boot metadata, domain and network descriptions.

Templates use `${NAME}` placeholders. Rendering only substitutes values from
an explicit context; nothing in a template is ever evaluated, and a
placeholder with no value in the context is an error rather than an empty
string.
"""

from __future__ import annotations

import re
from pathlib import Path
from string import Template
from typing import Mapping


class TemplateError(Exception):
    """A template references a placeholder the context does not define."""


class _ClusterTemplate(Template):
    # Names are upper-case identifiers only: ${MASTER_IP}, ${SSH_KEYS}.
    idpattern = r"[A-Z_][A-Z0-9_]*"
    flags = re.ASCII


class TemplateRenderer:
    """Render `${VAR}` templates against a fixed set of variables."""

    def __init__(self, template_dir: Path):
        self.template_dir = Path(template_dir)

    def render(self, template_text: str, context: Mapping[str, object]) -> str:
        """Substitute placeholders in `template_text`.

        Raises:
            TemplateError: if a placeholder is undefined or malformed
        """
        values = {key: "" if value is None else str(value) for key, value in context.items()}
        try:
            return _ClusterTemplate(template_text).substitute(values)
        except KeyError as e:
            raise TemplateError(f"Undefined template variable: {e.args[0]}") from e
        except ValueError as e:
            raise TemplateError(f"Malformed template: {e}") from e

    def render_file(self, name: str, context: Mapping[str, object]) -> str:
        """Render the template `name` from the template directory."""
        path = self.template_dir / name
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise TemplateError(f"Cannot read template {path}: {e}") from e
        return self.render(text, context)

    @staticmethod
    def placeholders(template_text: str) -> set[str]:
        """Return the variable names referenced by a template."""
        names = set()
        for match in _ClusterTemplate.pattern.finditer(template_text):
            name = match.group("named") or match.group("braced")
            if name:
                names.add(name)
        return names
