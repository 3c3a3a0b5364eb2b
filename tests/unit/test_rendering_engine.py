"""Tests for the sandboxed template engine."""

import pytest
from jinja2 import TemplateNotFound, UndefinedError
from jinja2.exceptions import SecurityError

from issue_pipeline.rendering.engine import SecureTemplateEngine


@pytest.fixture
def template_dir(tmp_path):
    directory = tmp_path / "templates"
    directory.mkdir()
    (directory / "hello.md.j2").write_text("Hello {{ name }}\n")
    (directory / "notes.md.j2").write_text("Notes:\n{{ notes | indent_block }}\n")
    (directory / "unsafe.j2").write_text("{{ ''.__class__.__mro__ }}")
    return directory


@pytest.fixture
def engine(template_dir):
    return SecureTemplateEngine(template_dir)


def test_render(engine):
    assert engine.render("hello.md.j2", {"name": "pipeline"}) == "Hello pipeline\n"


def test_undefined_variable_raises(engine):
    with pytest.raises(UndefinedError):
        engine.render("hello.md.j2", {})


def test_indent_block_filter(engine):
    assert engine.render("notes.md.j2", {"notes": "one\n\ntwo"}) == "Notes:\n    one\n\n    two\n"


@pytest.mark.parametrize("path", ["../secret.txt", "../../etc/passwd", "/etc/passwd"])
def test_path_traversal_rejected(engine, path):
    with pytest.raises(ValueError, match="escapes template directory"):
        engine.render(path, {})


def test_missing_template(engine):
    with pytest.raises(TemplateNotFound):
        engine.render("missing.j2", {})


def test_sandbox_blocks_attribute_access(engine):
    with pytest.raises(SecurityError):
        engine.render("unsafe.j2", {})


def test_missing_template_directory(tmp_path):
    with pytest.raises(ValueError, match="does not exist"):
        SecureTemplateEngine(tmp_path / "nope")


def test_builtin_templates_are_available():
    engine = SecureTemplateEngine()
    assert engine.validate_template_path("summary.md.j2").name == "summary.md.j2"
    assert engine.validate_template_path("prompts/phase.md.j2").is_file()
