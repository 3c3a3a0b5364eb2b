"""Secure Jinja2 template rendering engine.

Renders the finalization summary and the external agent's phase prompts
from the package templates. Artifact text comes from workers and is
untrusted, so rendering runs in Jinja2's SandboxedEnvironment.

Security Features:
    - Sandboxed environment prevents arbitrary code execution
    - StrictUndefined catches missing variables early (fail-fast)
    - Template path validation prevents directory traversal attacks

Example:
    >>> from issue_pipeline.rendering.engine import SecureTemplateEngine
    >>> engine = SecureTemplateEngine()
    >>> text = engine.render("summary.md.j2", {"issue": issue, ...})

Thread Safety:
    SecureTemplateEngine instances are thread-safe for rendering operations.
    The Jinja2 environment is immutable after initialization.
"""

from pathlib import Path
from typing import Any, cast

from jinja2 import (
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
)
from jinja2.sandbox import SandboxedEnvironment


def _indent_block(value: str, width: int = 4) -> str:
    """Indent every line of a multi-line value."""
    prefix = " " * width
    return "\n".join(prefix + line if line else line for line in str(value).splitlines())


class SecureTemplateEngine:
    """Secure Jinja2 template rendering engine with hardened configuration.

    Configuration options:
        - Autoescape disabled (Markdown output)
        - trim_blocks/lstrip_blocks enabled for clean output
        - keep_trailing_newline preserves file format

    Attributes:
        template_dir: Resolved path to the template directory.
        env: The SandboxedEnvironment instance.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        """Initialize secure template engine.

        Args:
            template_dir: Root directory for templates. If None, uses the
                package's built-in templates directory.

        Raises:
            ValueError: If template_dir doesn't exist or isn't a directory.
        """
        if template_dir is None:
            template_dir = Path(__file__).parent / "templates"

        self.template_dir = template_dir.resolve()

        if not self.template_dir.exists():
            raise ValueError(f"Template directory does not exist: {self.template_dir}")
        if not self.template_dir.is_dir():
            raise ValueError(f"Template path is not a directory: {self.template_dir}")

        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["indent_block"] = _indent_block
        self.env.globals["none"] = None

    def validate_template_path(self, template_path: str) -> Path:
        """Validate template path to prevent directory traversal attacks.

        Raises:
            ValueError: If path escapes template directory.
            TemplateNotFound: If the template file doesn't exist.
        """
        requested_path = (self.template_dir / template_path).resolve()

        try:
            requested_path.relative_to(self.template_dir)
        except ValueError as e:
            raise ValueError(f"Template path escapes template directory: {template_path}") from e

        if not requested_path.exists():
            raise TemplateNotFound(template_path)

        return requested_path

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render a template with the given context.

        Args:
            template_path: Relative path to template within template_dir.
            context: Variables passed to the template.

        Returns:
            Rendered template text.

        Raises:
            TemplateNotFound: If template doesn't exist.
            jinja2.TemplateSyntaxError: If template has syntax errors.
            jinja2.UndefinedError: If the template uses an undefined variable.
        """
        self.validate_template_path(template_path)
        template = self.env.get_template(template_path)
        return cast(str, template.render(**context))
