"""Jinja2 rendering of task parameters, template bodies and ``when`` guards."""
import dataclasses
from typing import Any, Mapping

from jinja2 import Environment, StrictUndefined, TemplateError, meta

SECRETS_VAR = "secrets"

_env = Environment(
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


class TemplateRenderError(Exception):
    """A template or expression could not be rendered."""


# Python errors raised from inside an expression, e.g. comparing str and int
RUNTIME_ERRORS = (TypeError, ValueError, ArithmeticError, LookupError, AttributeError)


def is_templated(value: Any) -> bool:
    return isinstance(value, str) and ("{{" in value or "{%" in value)


def check_syntax(text: str) -> set[str]:
    """Parse a template, returning the variables it references.

    Raises:
        TemplateRenderError: On syntax errors
    """
    try:
        return meta.find_undeclared_variables(_env.parse(text))
    except TemplateError as e:
        raise TemplateRenderError(f"Template syntax error: {e}") from e


def check_expression(expression: str) -> set[str]:
    """Like check_syntax, for a bare expression such as a ``when`` guard."""
    return check_syntax("{{ " + expression + " }}")


def render_string(text: str, context: Mapping[str, Any]) -> str:
    try:
        return _env.from_string(text).render(context)
    except TemplateError as e:
        raise TemplateRenderError(f"Cannot render template: {e}") from e
    except RUNTIME_ERRORS as e:
        raise TemplateRenderError(f"Cannot render template: {type(e).__name__}: {e}") from e


def evaluate_condition(expression: str, context: Mapping[str, Any]) -> bool:
    try:
        expr = _env.compile_expression(expression, undefined_to_none=False)
        return bool(expr(**context))
    except TemplateError as e:
        raise TemplateRenderError(f"Cannot evaluate condition '{expression}': {e}") from e
    except RUNTIME_ERRORS as e:
        raise TemplateRenderError(
            f"Cannot evaluate condition '{expression}': {type(e).__name__}: {e}"
        ) from e


def _render_value(value: Any, context: Mapping[str, Any]) -> Any:
    if is_templated(value):
        return render_string(value, context)
    if isinstance(value, list):
        return [_render_value(v, context) for v in value]
    if isinstance(value, dict):
        return {k: _render_value(v, context) for k, v in value.items()}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return render_params(value, context)
    return value


def render_params(params: Any, context: Mapping[str, Any]) -> Any:
    """Return a copy of a parameter dataclass with templated strings rendered."""
    changes = {}
    for f in dataclasses.fields(params):
        if f.metadata.get("raw"):
            continue
        value = getattr(params, f.name)
        rendered = _render_value(value, context)
        if rendered is not value:
            changes[f.name] = rendered
    return dataclasses.replace(params, **changes) if changes else params


def template_variables(value: Any) -> set[str]:
    """All variables referenced by templated strings anywhere in value."""
    found: set[str] = set()
    if isinstance(value, str):
        if is_templated(value):
            found |= check_syntax(value)
    elif isinstance(value, list):
        for item in value:
            found |= template_variables(item)
    elif isinstance(value, dict):
        for item in value.values():
            found |= template_variables(item)
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        for f in dataclasses.fields(value):
            field_value = getattr(value, f.name)
            if f.metadata.get("raw") and isinstance(field_value, str):
                found |= check_syntax(field_value)
            else:
                found |= template_variables(field_value)
    return found
