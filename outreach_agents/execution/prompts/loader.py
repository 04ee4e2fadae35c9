"""
Jinja2 prompt loader.

Prompts live as .jinja2 files next to this module and ship as package data.
Rendering is strict: a variable missing from the context is an error, so a
prompt can never silently go out with a blank goal or tool list.
"""

from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .templates import Template

TEMPLATES_DIR = Path(__file__).parent / "templates"


def _validate_templates():
    """Validate all template constants have corresponding files. Fails fast at import."""
    for name in dir(Template):
        if not name.startswith("_"):
            path = TEMPLATES_DIR / f"{getattr(Template, name)}.jinja2"
            if not path.exists():
                raise FileNotFoundError(f"Prompt template missing: {path}")


_validate_templates()


@lru_cache(maxsize=1)
def _get_environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(default=False),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render(template_name: str, **context) -> str:
    """Renders the named prompt (without the .jinja2 extension)."""
    return _get_environment().get_template(f"{template_name}.jinja2").render(**context)
