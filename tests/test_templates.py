"""
Tests for {{id.property}} template resolution and label maintenance.
"""

import logging

import pytest

from conftest import make_graph
from nodeflow.graph import (
    CompiledTemplate,
    NodeOutput,
    VariableResolver,
    extract_variables,
    find_label_references,
    has_variables,
    rename_label,
    validate_variables,
)
from nodeflow.graph.templates import stringify


@pytest.fixture
def resolver():
    return VariableResolver()


@pytest.fixture
def outputs():
    return {
        "node_1": NodeOutput(
            node_id="node_1",
            output="scraped text",
            data={"title": "Hello", "items": [{"name": "first"}, {"name": "second"}]},
            status="success",
        ),
        "node_2": NodeOutput(node_id="node_2", output={"score": 0.9}, data=None),
    }


ALIASES = {"Scraper": "node_1", "Scorer": "node_2"}


def test_bare_reference_resolves_to_output(resolver, outputs):
    assert resolver.substitute("Text: {{node_1}}", outputs) == "Text: scraped text"


def test_well_known_properties(resolver, outputs):
    assert resolver.substitute("{{node_1.output}}", outputs) == "scraped text"
    assert resolver.substitute("{{node_1.status}}", outputs) == "success"
    # None renders as empty string
    assert resolver.substitute("[{{node_2.error}}]", outputs) == "[]"
    assert resolver.substitute("{{node_2.data}}", outputs) == ""


def test_dicts_are_json_encoded(resolver, outputs):
    assert resolver.substitute("{{node_2.output}}", outputs) == '{"score": 0.9}'


def test_label_alias_resolves(resolver, outputs):
    result = resolver.substitute("{{Scraper.output}} / {{Scorer.output.score}}", outputs, ALIASES)
    assert result == "scraped text / 0.9"


def test_node_id_wins_over_alias(resolver):
    outputs = {
        "a": NodeOutput(node_id="a", output="from id a"),
        "b": NodeOutput(node_id="b", output="from id b"),
    }
    # Node "b" is labelled "a"; the literal id still takes precedence
    assert resolver.substitute("{{a.output}}", outputs, {"a": "b"}) == "from id a"


def test_nested_dot_path_with_list_index(resolver, outputs):
    template = "{{node_1.data.title}}: {{node_1.data.items.1.name}}"
    assert resolver.substitute(template, outputs) == "Hello: second"


def test_unknown_node_is_left_verbatim_and_logged(resolver, outputs, caplog):
    with caplog.at_level(logging.WARNING):
        result = resolver.substitute("Hi {{missing.output}}!", outputs)
    assert result == "Hi {{missing.output}}!"
    assert "missing" in caplog.text


def test_unknown_property_path_is_left_verbatim(resolver, outputs):
    assert resolver.substitute("{{node_1.data.nope}}", outputs) == "{{node_1.data.nope}}"
    assert resolver.substitute("{{node_1.data.items.9}}", outputs) == "{{node_1.data.items.9}}"


def test_whitespace_inside_braces_is_ignored(resolver, outputs):
    assert resolver.substitute("{{ node_1.output }}", outputs) == "scraped text"


def test_non_string_templates_pass_through(resolver, outputs):
    assert resolver.substitute(42, outputs) == 42
    assert resolver.substitute(None, outputs) is None
    assert resolver.substitute("", outputs) == ""


def test_plain_values_are_treated_as_outputs(resolver):
    assert resolver.substitute("{{x}} {{x.output}}", {"x": 7}) == "7 7"


@pytest.mark.parametrize(
    "value,expected",
    [(None, ""), (True, "true"), ([1, 2], "[1, 2]"), ({"a": 1}, '{"a": 1}'), (3.5, "3.5")],
)
def test_stringify(value, expected):
    assert stringify(value) == expected


def test_extract_and_has_variables():
    template = "Summarize {{Scraper.output}} for {{ user.data.name }}"
    assert extract_variables(template) == ["Scraper.output", "user.data.name"]
    assert has_variables(template)
    assert not has_variables("no templates here")
    assert not has_variables(None)
    assert extract_variables(123) == []


def test_validate_variables_reports_missing_nodes(outputs):
    check = validate_variables("{{Scraper.output}} {{ghost.output}}", outputs, ALIASES)
    assert not check.is_valid
    assert check.missing_nodes == ["ghost"]
    assert check.available_nodes == ["node_1", "node_2"]
    assert check.available_labels == ["Scraper", "Scorer"]

    assert validate_variables("{{node_1}}", outputs).is_valid


def test_compiled_template_segments():
    compiled = CompiledTemplate.compile("a {{x.output}} b {{y}}")
    assert [r.path for r in compiled.references] == ["x.output", "y"]
    assert compiled.segments[0] == "a "
    assert compiled.has_references
    assert not CompiledTemplate.compile("plain").has_references


def test_compile_config_walks_nested_structures(resolver, outputs):
    config = {
        "prompt": "Summarize {{Scraper.output}}",
        "headers": {"X-Title": "{{node_1.data.title}}"},
        "channels": ["{{Scorer.output.score}}", "static"],
        "temperature": 0.2,
    }
    compiled = resolver.compile_config(config)
    assert isinstance(compiled["prompt"], CompiledTemplate)
    assert compiled["channels"][1] == "static"
    assert compiled["temperature"] == 0.2

    rendered = resolver.render_config(compiled, outputs, ALIASES)
    assert rendered == {
        "prompt": "Summarize scraped text",
        "headers": {"X-Title": "Hello"},
        "channels": ["0.9", "static"],
        "temperature": 0.2,
    }
    # One-shot helper gives the same result
    assert resolver.resolve_config(config, outputs, ALIASES) == rendered


def test_compiled_config_can_be_rendered_repeatedly(resolver):
    compiled = resolver.compile_config({"text": "{{a.output}}"})
    first = resolver.render_config(compiled, {"a": NodeOutput(node_id="a", output="one")})
    second = resolver.render_config(compiled, {"a": NodeOutput(node_id="a", output="two")})
    assert first == {"text": "one"}
    assert second == {"text": "two"}


# === Label maintenance ===


@pytest.fixture
def labelled_graph():
    graph = make_graph(
        [
            ("in", "dataInput"),
            ("scrape", "webScraping", {"url": "{{in.output}}"}),
            ("llm", "llmTask", {"model": "gpt", "prompt": "Summarize {{Scraper.output}}"}),
            ("out", "dataOutput", {"format": "{{Scraper.data.format}}"}),
        ],
        [("in", "scrape"), ("scrape", "llm"), ("llm", "out")],
    )
    nodes = [
        n.model_copy(update={"label": "Scraper"}) if n.id == "scrape" else n for n in graph.nodes
    ]
    return graph.model_copy(update={"nodes": nodes})


def test_find_label_references(labelled_graph):
    refs = find_label_references(labelled_graph, "Scraper")
    assert [(r.node_id, r.field, r.property) for r in refs] == [
        ("llm", "prompt", "output"),
        ("out", "format", "data.format"),
    ]
    assert refs[0].reference == "{{Scraper.output}}"


def test_rename_label_rewrites_references(labelled_graph):
    renamed = rename_label(labelled_graph, "scrape", "Fetcher")

    assert renamed.get_node("scrape").label == "Fetcher"
    assert renamed.get_node("llm").config["prompt"] == "Summarize {{Fetcher.output}}"
    assert renamed.get_node("out").config["format"] == "{{Fetcher.data.format}}"
    # References to other nodes are untouched
    assert renamed.get_node("scrape").config["url"] == "{{in.output}}"
    # The input graph is unchanged
    assert labelled_graph.get_node("scrape").label == "Scraper"


def test_rename_label_rejects_bad_labels(labelled_graph):
    with pytest.raises(KeyError):
        rename_label(labelled_graph, "ghost", "Anything")
    with pytest.raises(ValueError):
        rename_label(labelled_graph, "scrape", "   ")
    with pytest.raises(ValueError):
        rename_label(labelled_graph, "scrape", "llm")
