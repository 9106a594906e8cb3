"""Worker pod specification template.

The template is an opaque pod manifest containing the literal placeholders
``$GUILD_ID``, ``$USER_ID``, ``$TOKEN`` and ``$POD_NAME``. Rendering is plain
textual substitution followed by parsing, so a substituted value that itself
contains placeholder text will corrupt the document.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from groover.errors import TemplateError

logger = logging.getLogger(__name__)

GUILD_ID_PLACEHOLDER = "$GUILD_ID"
USER_ID_PLACEHOLDER = "$USER_ID"
TOKEN_PLACEHOLDER = "$TOKEN"
POD_NAME_PLACEHOLDER = "$POD_NAME"


class WorkerTemplate:
    """Renders worker pod manifests for a guild."""

    def __init__(self, text: str, fmt: str = "json", name_prefix: str = "worker-") -> None:
        """Initialize template from raw manifest text.

        Args:
            text: Manifest text containing placeholders
            fmt: Document format, "json" or "yaml"
            name_prefix: Prefix of the deterministic worker name
        """
        if fmt not in ("json", "yaml"):
            raise ValueError(f"Template format must be 'json' or 'yaml', got '{fmt}'")
        self.text = text
        self.fmt = fmt
        self.name_prefix = name_prefix

    @classmethod
    def from_file(cls, path: Path, name_prefix: str = "worker-") -> "WorkerTemplate":
        """Load template from disk; .json files parse as JSON, others as YAML.

        Raises:
            TemplateError: If the file cannot be read
        """
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise TemplateError(f"Worker template not readable: {path}: {e}") from e

        fmt = "json" if path.suffix.lower() == ".json" else "yaml"
        logger.info(f"Loaded worker template from {path} (format={fmt})")
        return cls(text, fmt=fmt, name_prefix=name_prefix)

    def worker_name(self, guild_id: str) -> str:
        """Deterministic worker name for a guild."""
        return f"{self.name_prefix}{guild_id}"

    def render(self, guild_id: str, user_id: str, token: str, name: str | None = None) -> dict[str, Any]:
        """Substitute placeholders and parse into a pod manifest.

        Args:
            guild_id: Guild the worker serves
            user_id: User the worker streams for
            token: Streaming session token
            name: Pod name (defaults to worker_name(guild_id))

        Returns:
            Parsed manifest mapping

        Raises:
            TemplateError: If the rendered document cannot be parsed
        """
        if name is None:
            name = self.worker_name(guild_id)

        rendered = self.text
        rendered = rendered.replace(GUILD_ID_PLACEHOLDER, guild_id)
        rendered = rendered.replace(USER_ID_PLACEHOLDER, user_id)
        rendered = rendered.replace(TOKEN_PLACEHOLDER, token)
        rendered = rendered.replace(POD_NAME_PLACEHOLDER, name)

        try:
            if self.fmt == "json":
                manifest = json.loads(rendered)
            else:
                manifest = yaml.safe_load(rendered)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise TemplateError(f"Rendered worker template is not valid {self.fmt}: {e}") from e

        if not isinstance(manifest, dict):
            raise TemplateError("Rendered worker template must be a mapping")
        return manifest
