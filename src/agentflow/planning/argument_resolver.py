"""
Argument templates: references from one plan step to another step's output.

Grammar (the whole language, no expressions or code evaluation):

    token    := "{{" ws? step_id ".result" segment* ws? "}}"
    step_id  := [A-Za-z0-9_-]+
    segment  := "." key | "[" index "]"
    key      := [A-Za-z0-9_-]+
    index    := "-"? [0-9]+

Examples: ``{{fetch_user.result}}``, ``{{search.result.items[0].url}}``.

A string that is exactly one token is replaced by the referenced value itself
(keeping its type). Tokens embedded in longer strings are substituted as text:
strings verbatim, anything else JSON encoded.
"""

import copy
import json
import re
import typing as t
from dataclasses import dataclass

from agentflow.errors import DependencyError

_TOKEN = re.compile(
    r"\{\{\s*(?P<step>[A-Za-z0-9_\-]+)\.result"
    r"(?P<path>(?:\.[A-Za-z0-9_\-]+|\[-?\d+\])*)\s*\}\}"
)
_SEGMENT = re.compile(r"\.(?P<key>[A-Za-z0-9_\-]+)|\[(?P<index>-?\d+)\]")

_MISSING = object()


@dataclass(frozen=True)
class Reference:
    """A parsed ``{{step.result...}}`` token."""

    step_id: str
    path: tuple[str | int, ...]
    raw: str


def _parse_path(path: str) -> tuple[str | int, ...]:
    segments: list[str | int] = []
    for match in _SEGMENT.finditer(path):
        if match.group("index") is not None:
            segments.append(int(match.group("index")))
        else:
            segments.append(match.group("key"))
    return tuple(segments)


def parse_references(text: str) -> list[Reference]:
    """All tokens in ``text``, in order of appearance."""
    return [
        Reference(
            step_id=match.group("step"),
            path=_parse_path(match.group("path")),
            raw=match.group(0),
        )
        for match in _TOKEN.finditer(text)
    ]


def extract_references(value: t.Any) -> list[str]:
    """Step ids referenced anywhere inside an argument template (ordered, unique)."""
    found: dict[str, None] = {}

    def walk(node: t.Any) -> None:
        if isinstance(node, str):
            for reference in parse_references(node):
                found.setdefault(reference.step_id, None)
        elif isinstance(node, dict):
            for item in node.values():
                walk(item)
        elif isinstance(node, (list, tuple)):
            for item in node:
                walk(item)

    walk(value)
    return list(found)


def _lookup(value: t.Any, path: tuple[str | int, ...]) -> t.Any:
    current = value
    for segment in path:
        if isinstance(current, dict):
            current = current.get(segment, _MISSING) if isinstance(segment, str) else _MISSING
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def _as_text(value: t.Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class ArgumentResolver:
    """
    Resolves argument templates against the results of succeeded steps.

    Usage:
        resolver = ArgumentResolver({"fetch": {"id": 7}})
        resolver.resolve({"user_id": "{{fetch.result.id}}"})  # {"user_id": 7}
    """

    def __init__(self, results: t.Mapping[str, t.Any]) -> None:
        self.results = results

    def resolve(self, arguments: dict[str, t.Any]) -> dict[str, t.Any]:
        """
        Return a copy of ``arguments`` with every token substituted.

        Raises:
            DependencyError: listing every token that could not be resolved
        """
        missing: list[str] = []
        resolved = self._resolve_value(arguments, missing)
        if missing:
            raise DependencyError(f"Unresolved references: {', '.join(missing)}")
        return t.cast(dict[str, t.Any], resolved)

    def _resolve_value(self, value: t.Any, missing: list[str]) -> t.Any:
        if isinstance(value, str):
            return self._resolve_string(value, missing)
        if isinstance(value, dict):
            return {key: self._resolve_value(item, missing) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve_value(item, missing) for item in value]
        return value

    def _resolve_reference(self, reference: Reference) -> t.Any:
        if reference.step_id not in self.results:
            return _MISSING
        return _lookup(self.results[reference.step_id], reference.path)

    def _resolve_string(self, text: str, missing: list[str]) -> t.Any:
        whole = _TOKEN.fullmatch(text.strip())
        if whole is not None:
            reference = parse_references(whole.group(0))[0]
            value = self._resolve_reference(reference)
            if value is _MISSING:
                missing.append(reference.raw)
                return None
            # Copies keep the producing step's result unchanged
            return copy.deepcopy(value)

        def substitute(match: re.Match[str]) -> str:
            reference = parse_references(match.group(0))[0]
            value = self._resolve_reference(reference)
            if value is _MISSING:
                missing.append(reference.raw)
                return match.group(0)
            return _as_text(value)

        return _TOKEN.sub(substitute, text)
