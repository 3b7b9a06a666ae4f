"""Tests for argument templates and the ArgumentResolver."""

import pytest

from agentflow.errors import DependencyError
from agentflow.planning.argument_resolver import (
    ArgumentResolver,
    extract_references,
    parse_references,
)

RESULTS = {
    "fetch": {"id": 42, "email": "ada@example.com", "tags": ["admin", "ops"]},
    "count": 3,
    "name": "Ada",
}


def test_parse_references():
    refs = parse_references("{{fetch.result.tags[1]}} and {{ count.result }}")
    assert [(r.step_id, r.path) for r in refs] == [
        ("fetch", ("tags", 1)),
        ("count", ()),
    ]


def test_extract_references_nested():
    arguments = {"a": ["{{x.result}}", {"b": "{{y.result.z}} {{x.result}}"}], "c": 1}
    assert extract_references(arguments) == ["x", "y"]


def test_whole_token_keeps_native_type():
    resolved = ArgumentResolver(RESULTS).resolve(
        {"user_id": "{{fetch.result.id}}", "tags": "{{fetch.result.tags}}"}
    )
    assert resolved == {"user_id": 42, "tags": ["admin", "ops"]}


def test_whole_token_value_is_a_copy():
    resolved = ArgumentResolver(RESULTS).resolve({"tags": "{{fetch.result.tags}}"})
    resolved["tags"].append("mutated")
    assert RESULTS["fetch"]["tags"] == ["admin", "ops"]


def test_embedded_tokens_are_text():
    resolved = ArgumentResolver(RESULTS).resolve(
        {"text": "Hi {{name.result}}, you have {{count.result}} tags: {{fetch.result.tags}}"}
    )
    assert resolved["text"] == 'Hi Ada, you have 3 tags: ["admin", "ops"]'


def test_negative_index():
    resolved = ArgumentResolver(RESULTS).resolve({"last": "{{fetch.result.tags[-1]}}"})
    assert resolved == {"last": "ops"}


def test_lists_and_plain_values_pass_through():
    resolved = ArgumentResolver(RESULTS).resolve(
        {"ids": ["{{fetch.result.id}}", 7], "flag": True}
    )
    assert resolved == {"ids": [42, 7], "flag": True}


@pytest.mark.parametrize(
    "template",
    [
        "{{missing.result}}",
        "{{fetch.result.nope}}",
        "{{fetch.result.tags[5]}}",
        "{{count.result.field}}",
    ],
)
def test_unresolved_reference_raises(template: str):
    with pytest.raises(DependencyError, match="Unresolved references"):
        ArgumentResolver(RESULTS).resolve({"value": template})
