import json
import re
import typing as t


def extract_json_subtexts(text: str):
    """ " Extracts json objects from text
    Args:
        text: text to be extracted
    """
    json_pattern = r"```(?:json)?(.*?)```"
    # reasoners are verbose and wrap the json output in prose or fences
    # when several fenced blocks are returned, pick the first
    matches = re.findall(json_pattern, text, flags=re.DOTALL)
    # truncated outputs leave an unterminated fence
    partial_matches = re.findall("```json(.*)", text, flags=re.DOTALL)
    if matches:
        parsed = matches[0].strip()
    elif partial_matches:
        parsed = partial_matches[0].strip()
    else:
        parsed = text.strip()
    return parsed


def normalize_tool_name(tool_name: str) -> str:
    return tool_name.strip().upper().replace(" ", "_").replace("-", "_")


def shorten(value: t.Any, limit: int = 100) -> str:
    """Render a value for log lines, truncated to ``limit`` characters."""
    text = value if isinstance(value, str) else _safe_json(value)
    return text if len(text) <= limit else text[:limit] + "..."


def _safe_json(value: t.Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return repr(value)
