"""Safe condition evaluation — no eval(), operator dispatch only.

Two entry points:

- ``apply_operator`` evaluates the condition node's structural operators
  (``truthy``, ``falsy``, ``equals``, ``notEquals``, ``gt``, ``lt`` ...)
  against a configured comparison value.
- ``evaluate_condition`` evaluates a one-line expression such as
  ``{{input.status}} == 'approved'`` after template rendering.
"""

from __future__ import annotations

import math
import operator
import re
from typing import Any, Callable, Mapping

from flowengine.templating.engine import render_template_str, resolve_path, stringify


def is_truthy(value: Any) -> bool:
    """Truthiness for workflow values; NaN and the strings 'false'/'0' are false."""
    if isinstance(value, float) and math.isnan(value):
        return False
    if isinstance(value, str) and value.strip().lower() in ("false", "0", ""):
        return False
    return bool(value)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


# Structural operators: (actual, compare_value) -> bool.
# equals / notEquals compare text forms; gt / lt compare numerically,
# and any comparison involving a non-number is false.
STRUCTURAL_OPERATORS = {
    "truthy": lambda a, _: is_truthy(a),
    "falsy": lambda a, _: not is_truthy(a),
    "equals": lambda a, b: _text(a) == _text(b),
    "notEquals": lambda a, b: _text(a) != _text(b),
    "gt": lambda a, b: _to_number(a) > _to_number(b),
    "lt": lambda a, b: _to_number(a) < _to_number(b),
    "contains": lambda a, b: _text(b) in _text(a) if not isinstance(a, (list, dict)) else b in a,
    "isEmpty": lambda a, _: a is None or a == "" or a == [] or a == {},
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return stringify(value)


def apply_operator(op: str | None, actual: Any, compare_value: Any = None) -> bool:
    """Apply a structural operator; unknown operators fall back to truthiness."""
    fn = STRUCTURAL_OPERATORS.get(op or "truthy", STRUCTURAL_OPERATORS["truthy"])
    return bool(fn(actual, compare_value))


_COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
    "contains": lambda a, b: operator.contains(a, b),
    "not_contains": lambda a, b: not operator.contains(a, b),
    "starts_with": lambda a, b: str(a).startswith(str(b)),
    "ends_with": lambda a, b: str(a).endswith(str(b)),
    "in": lambda a, b: operator.contains(b, a),
}

# Longest symbols first so ">=" is not read as ">".
_COMPARISON_RE = re.compile(
    r"^(?P<left>.+?)\s+(?P<op>==|!=|>=|<=|>|<|not_contains|contains|starts_with|ends_with|in)\s+(?P<right>.+)$"
)

_KEYWORDS = {"true": True, "yes": True, "false": False, "no": False, "none": None, "null": None}
_BARE_LITERALS = {"true": True, "yes": True, "1": True, "false": False, "no": False, "0": False}


def evaluate_condition(expr: str, ctx: Mapping[str, Any]) -> bool:
    """Evaluate a one-line comparison such as ``{{count}} >= 5``.

    Placeholders are rendered first, then the text is split into
    ``left op right``.  Comparing incompatible types is false.  Text with no
    operator is resolved as a context path and tested for truthiness.
    """
    text = expr.strip()
    if text.lower() in _BARE_LITERALS:
        return _BARE_LITERALS[text.lower()]

    rendered = render_template_str(text, ctx)
    match = _COMPARISON_RE.match(rendered)
    if match is None:
        resolved = resolve_path(rendered, ctx)
        return is_truthy(_literal(rendered) if resolved is None else resolved)

    compare = _COMPARISONS[match["op"]]
    try:
        return bool(compare(_literal(match["left"]), _literal(match["right"])))
    except TypeError:
        return False


def _literal(token: str) -> Any:
    """Read an operand: quoted text, keyword, number, or the bare text."""
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "'\"":
        return token[1:-1]
    if token.lower() in _KEYWORDS:
        return _KEYWORDS[token.lower()]
    for number in (int, float):
        try:
            return number(token)
        except ValueError:
            continue
    return token
