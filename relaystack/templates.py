"""Template rendering for notification bodies, backed by a Jinja2 sandbox."""

import logging
import os
from pathlib import Path
from typing import Any

from jinja2 import StrictUndefined, Template, TemplateSyntaxError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from relaystack.core.errors import ConfigurationError, TemplateNotFoundError

logger = logging.getLogger("relaystack.templates")

TEMPLATE_SUFFIXES = (".j2", ".jinja", ".txt", ".html")


class TemplateRenderer:
    """Compiles templates once and renders them by id.

    The renderer owns its cache. It is filled at startup by ``register`` or
    ``load_directory`` and only emptied by ``reload`` or ``clear``; rendering
    never compiles. Undefined variables raise instead of rendering as empty.

    Args:
        autoescape: Escape HTML in substituted values.
    """

    def __init__(self, autoescape: bool = False) -> None:
        self.env = SandboxedEnvironment(
            autoescape=autoescape,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._sources: dict[str, str] = {}
        self._cache: dict[str, Template] = {}
        self._directories: list[Path] = []
        self._file_ids: set[str] = set()

    def register(self, template_id: str, source: str) -> None:
        """Compile ``source`` and cache it under ``template_id``.

        Raises:
            ConfigurationError: If the template does not compile.
        """
        try:
            compiled = self.env.from_string(source)
        except TemplateSyntaxError as e:
            raise ConfigurationError(f"Template '{template_id}' is invalid: {e}") from e
        self._sources[template_id] = source
        self._cache[template_id] = compiled

    def load_directory(self, directory: str | os.PathLike[str]) -> int:
        """Register every template file under ``directory``.

        The template id is the path relative to ``directory`` without its
        suffix, with ``/`` separators (``email/order_created.j2`` becomes
        ``email/order_created``).

        Returns:
            Number of templates loaded.
        """
        root = Path(directory)
        if not root.is_dir():
            raise ConfigurationError(f"Template directory {root} does not exist")
        if root not in self._directories:
            self._directories.append(root)
        loaded = 0
        for path in sorted(root.rglob("*")):
            if path.is_file() and path.suffix in TEMPLATE_SUFFIXES:
                template_id = path.relative_to(root).with_suffix("").as_posix()
                self.register(template_id, path.read_text(encoding="utf-8"))
                self._file_ids.add(template_id)
                loaded += 1
        logger.info(f"Loaded {loaded} templates from {root}")
        return loaded

    def reload(self) -> int:
        """Recompile every template from its source and re-read directories."""
        sources = {k: v for k, v in self._sources.items() if k not in self._file_ids}
        self.clear()
        for template_id, source in sources.items():
            self.register(template_id, source)
        for directory in list(self._directories):
            self.load_directory(directory)
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()
        self._sources.clear()
        self._file_ids.clear()

    def has(self, template_id: str) -> bool:
        return template_id in self._cache

    def render(self, template_id: str, variables: dict[str, Any]) -> str:
        """Render a cached template.

        Raises:
            TemplateNotFoundError: If ``template_id`` was never registered.
            ValueError: If the template references a missing variable.
        """
        template = self._cache.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        try:
            return template.render(**variables)
        except UndefinedError as e:
            raise ValueError(f"Template '{template_id}' is missing a variable: {e}") from e

    def __len__(self) -> int:
        return len(self._cache)
