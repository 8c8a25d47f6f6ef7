"""Tests for TemplateRenderer."""

import pytest
from jinja2.exceptions import SecurityError

from relaystack.core.errors import ConfigurationError, TemplateNotFoundError
from relaystack.templates import TemplateRenderer


@pytest.fixture
def renderer():
    return TemplateRenderer()


def test_register_and_render(renderer):
    renderer.register("order_created", "Order {{ order_id }} totals {{ total }}")

    assert renderer.render("order_created", {"order_id": "o-1", "total": 42.5}) == (
        "Order o-1 totals 42.5"
    )
    assert renderer.has("order_created")
    assert len(renderer) == 1


def test_missing_variable_raises(renderer):
    renderer.register("greeting", "Hello {{ name }}")

    with pytest.raises(ValueError, match="greeting"):
        renderer.render("greeting", {})


def test_syntax_error_fails_registration(renderer):
    with pytest.raises(ConfigurationError, match="broken"):
        renderer.register("broken", "{% if %}")

    assert not renderer.has("broken")


def test_unknown_template(renderer):
    with pytest.raises(TemplateNotFoundError) as exc_info:
        renderer.render("nope", {})

    assert isinstance(exc_info.value, KeyError)
    assert str(exc_info.value) == "Template 'nope' is not registered"


def test_sandbox_blocks_internal_attributes(renderer):
    renderer.register("escape", "{{ ''.__class__.__mro__ }}")

    with pytest.raises(SecurityError):
        renderer.render("escape", {})


def test_autoescape():
    html = TemplateRenderer(autoescape=True)
    html.register("note", "<p>{{ note }}</p>")

    assert html.render("note", {"note": "<b>hi</b>"}) == "<p>&lt;b&gt;hi&lt;/b&gt;</p>"


def test_no_autoescape_by_default(renderer):
    renderer.register("note", "{{ note }}")

    assert renderer.render("note", {"note": "<b>"}) == "<b>"


class TestDirectories:
    @pytest.fixture
    def template_dir(self, tmp_path):
        (tmp_path / "email").mkdir()
        (tmp_path / "email" / "order_created.j2").write_text("Thanks for order {{ order_id }}")
        (tmp_path / "email" / "order_created.subject.txt").write_text("Order {{ order_id }}")
        (tmp_path / "chat.html").write_text("<b>{{ order_id }}</b>")
        (tmp_path / "README.md").write_text("not a template")
        return tmp_path

    def test_load_directory(self, renderer, template_dir):
        loaded = renderer.load_directory(template_dir)

        assert loaded == 3
        assert renderer.has("email/order_created")
        assert renderer.has("email/order_created.subject")
        assert renderer.has("chat")
        assert not renderer.has("README")
        assert renderer.render("email/order_created", {"order_id": "o-9"}) == (
            "Thanks for order o-9"
        )

    def test_missing_directory(self, renderer, tmp_path):
        with pytest.raises(ConfigurationError, match="does not exist"):
            renderer.load_directory(tmp_path / "missing")

    def test_reload_picks_up_changes(self, renderer, template_dir):
        renderer.register("inline", "inline {{ x }}")
        renderer.load_directory(template_dir)
        (template_dir / "chat.html").write_text("<i>{{ order_id }}</i>")
        (template_dir / "email" / "order_created.j2").unlink()

        count = renderer.reload()

        assert count == 3
        assert renderer.render("chat", {"order_id": "o-1"}) == "<i>o-1</i>"
        assert renderer.render("inline", {"x": 1}) == "inline 1"
        assert not renderer.has("email/order_created")

    def test_clear(self, renderer, template_dir):
        renderer.load_directory(template_dir)
        renderer.clear()

        assert len(renderer) == 0
