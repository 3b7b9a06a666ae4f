"""Centralized configuration for the agentflow package."""

from pathlib import Path

import jinja2
from jinja2.sandbox import SandboxedEnvironment


AGENTFLOW_ROOT = Path(__file__).parent
PLANNING_PROMPTS_DIR = AGENTFLOW_ROOT / "planning" / "prompts"


def _create_jinja_env(prompts_dir: Path) -> SandboxedEnvironment:
    """Create a sandboxed jinja environment for a prompts directory.

    Uses sandboxed environment to prevent arbitrary code execution in templates.
    StrictUndefined raises errors on undefined variables instead of silent empty strings.
    See: https://jinja.palletsprojects.com/en/3.1.x/sandbox/
    """
    return SandboxedEnvironment(
        loader=jinja2.FileSystemLoader(prompts_dir),
        undefined=jinja2.StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )


planning_jinja_env = _create_jinja_env(PLANNING_PROMPTS_DIR)


def get_planning_template_module(name: str):
    """Load a jinja template module (for macro access) from planning prompts."""
    return planning_jinja_env.get_template(name).module
