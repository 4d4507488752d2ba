"""Jinja2 rendering for files written to the remote host."""

from typing import Any

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape


def get_jinja_env() -> Environment:
    """Get Jinja2 environment for templates."""
    return Environment(
        loader=PackageLoader("fvps", "templates"),
        autoescape=select_autoescape(),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )


def render(name: str, **values: Any) -> str:
    """Render a packaged template by name."""
    return get_jinja_env().get_template(name).render(**values)
