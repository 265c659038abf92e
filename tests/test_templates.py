"""Tests for template rendering."""

from workflow_mcp_server.config import ToolHintConfig
from workflow_mcp_server.templates import (
    ToolItem,
    append_formatted_tools,
    format_tools_list,
    process_template,
    render_args,
    stringify,
)


class TestRenderArgs:
    """Type-preserving argument rendering."""

    def test_lone_placeholder_keeps_type(self):
        rendered = render_args({"limit": "{{ limit }}"}, {"limit": 25})
        assert rendered == {"limit": 25}
        assert isinstance(rendered["limit"], int)

    def test_embedded_placeholder_renders_string(self):
        assert render_args({"query": "p={{ limit }}"}, {"limit": 25}) == {"query": "p=25"}

    def test_lone_placeholder_preserves_structures_and_null(self):
        context = {"issue": {"key": "ABC-1"}, "labels": ["a", "b"], "nothing": None}
        rendered = render_args(
            {"issue": "{{issue}}", "labels": " {{ labels }} ", "nothing": "{{ nothing }}"},
            context,
        )
        assert rendered == {"issue": {"key": "ABC-1"}, "labels": ["a", "b"], "nothing": None}

    def test_nested_values_use_the_same_rule(self):
        context = {"limit": 25, "flag": True}
        rendered = render_args(
            {"filters": ["{{ limit }}", "x-{{ flag }}"], "opts": {"n": "{{ limit }}"}},
            context,
        )
        assert rendered == {"filters": [25, "x-true"], "opts": {"n": 25}}

    def test_rendered_text_is_never_coerced(self):
        rendered = render_args({"a": "{{ n }}", "b": "n={{ n }}", "c": ["{{ n }}"]}, {"n": "25"})
        assert rendered == {"a": "25", "b": "n=25", "c": ["25"]}

    def test_unknown_placeholder_left_literal(self):
        assert render_args({"q": "{{ missing }}"}, {"limit": 1}) == {"q": "{{ missing }}"}

    def test_multiple_placeholders_render_text(self):
        assert render_args({"q": "{{ a }}{{ b }}"}, {"a": 1, "b": 2}) == {"q": "12"}

    def test_non_string_values_pass_through(self):
        assert render_args({"n": 3, "ok": False}, {}) == {"n": 3, "ok": False}

    def test_empty_args(self):
        assert render_args(None, {"a": 1}) == {}


class TestProcessTemplate:
    """Prompt text substitution."""

    def test_substitutes_and_reports_used(self):
        text, used = process_template("Topic: {{ topic }} ({{other}})", {"topic": "cache"})
        assert text == "Topic: cache ({{other}})"
        assert used == {"topic"}

    def test_none_template(self):
        assert process_template(None, {"a": 1}) == ("", set())

    def test_stringify(self):
        assert stringify(True) == "true"
        assert stringify(None) == "null"
        assert stringify({"a": 1}) == '{"a": 1}'
        assert stringify(2.5) == "2.5"


class TestToolsSection:
    """Advisory ``## Available Tools`` section."""

    def test_format_from_string(self):
        items = format_tools_list("search, summarize")
        assert [item.name for item in items] == ["search", "summarize"]

    def test_format_from_mapping(self):
        items = format_tools_list(
            {
                "search": "Find things",
                "review": {"description": "Check", "prompt": "Be strict", "optional": True},
                "hint": ToolHintConfig(prompt="Only if needed"),
                "bare": None,
            }
        )
        assert items[0] == ToolItem(name="search", description="Find things")
        assert items[1].optional is True
        assert items[1].prompt == "Be strict"
        assert items[2].prompt == "Only if needed"
        assert items[3] == ToolItem(name="bare")

    def test_sequential_mode_numbers_tools(self):
        tools = [
            ToolItem(name="search", description="Find things"),
            ToolItem(name="review", optional=True),
        ]
        text = append_formatted_tools("Base", tools, "sequential")
        assert text.startswith("Base\n\n## Available Tools\n")
        assert "execute this exact sequence" in text
        assert "1. search: Find things\n" in text
        assert "2. review (Optional)\n" in text
        assert "'Next Steps'" in text

    def test_situational_mode_bullets_tools(self):
        text = append_formatted_tools("Base", [ToolItem(name="search", prompt="Go")])
        assert "- search: Go\n" in text

    def test_no_tools_leaves_text(self):
        assert append_formatted_tools("Base", []) == "Base"
