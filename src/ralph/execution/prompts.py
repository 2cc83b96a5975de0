"""Prompt construction for implementation attempts.

Prompts are rendered from a Jinja2 template. Each attempt starts from the
extracted context only; a rejected body from an earlier attempt is never
included, just the failure summary and an optional hint.
"""

from __future__ import annotations

import re

import jinja2

from ralph.execution.interfaces import ExtractedContext

IMPLEMENTATION_SYSTEM_PROMPT = """You are implementing a single function.

Rules:
- Return ONLY the function body: the statements between the braces.
- Do not repeat the signature, do not wrap the body in braces.
- Do not add imports or helper declarations outside the body.
- Satisfy every contract listed; use only the types provided.
- Do not explain your answer."""

IMPLEMENTATION_TEMPLATE = """\
Implement the body of the following function.

FUNCTION SIGNATURE:
{{ signature }}
{% if contracts %}

CONTRACTS:
{% for contract in contracts %}
- {{ contract }}
{% endfor %}
{% endif %}
{% if required_types %}

REQUIRED TYPES:
{% for definition in required_types %}
{{ definition }}
{% endfor %}
{% endif %}
{% if witness_definitions %}

WITNESS TYPES:
{% for definition in witness_definitions %}
{{ definition }}
{% endfor %}
{% endif %}
{% if failure_summary %}

PREVIOUS ATTEMPT:
{{ failure_summary }}
{% endif %}
{% if hint %}

HINT:
{{ hint }}
{% endif %}

Return only the function body."""

_CODE_FENCE = re.compile(r"^```[\w+-]*[ \t]*\n(?P<body>.*?)\n?```[ \t]*$", re.DOTALL)

_env = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=False,
)
_template = _env.from_string(IMPLEMENTATION_TEMPLATE)


def generate_implementation_prompt(
    context: ExtractedContext,
    hint: str | None = None,
    failure_summary: str | None = None,
) -> str:
    """Render the prompt for one attempt.

    Args:
        context: Declarations extracted for the function.
        hint: Extra guidance chosen by the escalation engine.
        failure_summary: Description of what went wrong last time.
    """
    return _template.render(
        signature=context.signature_text,
        contracts=list(context.contracts),
        required_types=list(context.required_types),
        witness_definitions=list(context.witness_definitions),
        failure_summary=failure_summary,
        hint=hint,
    )


def parse_implementation_response(response: str) -> str:
    """Extract the body from a model response, stripping a Markdown code fence."""
    text = response.strip()
    match = _CODE_FENCE.match(text)
    if match:
        text = match.group("body")
    return text.strip()


__all__ = [
    "IMPLEMENTATION_SYSTEM_PROMPT",
    "generate_implementation_prompt",
    "parse_implementation_response",
]
