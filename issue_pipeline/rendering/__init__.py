"""Template rendering for finalization summaries and agent prompts.

Key Exports:
    SecureTemplateEngine: Sandboxed Jinja2 engine over the package templates.
"""

from issue_pipeline.rendering.engine import SecureTemplateEngine

__all__ = ["SecureTemplateEngine"]
