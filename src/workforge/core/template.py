"""Template rendering and expression evaluation against a run context.

Templates use ``{{ path.to.value }}`` placeholders. Expressions are a small
boolean language over dotted paths::

    steps.review.output.decision == "approved" and not blocked
    task.priority >= 2 or task.labels contains "urgent"

Nothing is passed to ``eval``; expressions are tokenised and parsed here.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Protocol

from workforge.errors import EvaluationError

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")
_WRAPPED = re.compile(r"^\{\{(.*)\}\}$", re.DOTALL)

_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<number>-?\d+(?:\.\d+)?(?![\w.]))
      | (?P<op>==|!=|>=|<=|>|<)
      | (?P<paren>[()])
      | (?P<word>[A-Za-z_$][\w$-]*(?:\.[\w$-]+)*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "contains", "true", "false", "null", "none"}
_MISSING = object()
_UNRESOLVED = object()


class ExpressionEvaluator(Protocol):
    """Contract for the template/expression service consumed by the engine."""

    def render(self, template: str, context: Mapping[str, Any]) -> str: ...

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any: ...


def lookup(context: Any, path: str, default: Any = _MISSING) -> Any:
    """Resolve a dotted ``path``; list segments accept integer indices."""
    current = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if -len(current) <= index < len(current):
                current = current[index]
            elif default is not _MISSING:
                return default
            else:
                raise EvaluationError(f"Index {index} out of range in '{path}'")
        elif default is not _MISSING:
            return default
        else:
            raise EvaluationError(f"'{path}' does not resolve in the run context")
    return current


def to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class TemplateEvaluator:
    """Default evaluator used by the engine."""

    def render(self, template: str, context: Mapping[str, Any]) -> str:
        """Substitute placeholders. Unresolved placeholders are left intact."""

        def _replacer(match: re.Match) -> str:
            path = match.group(1).strip()
            value = lookup(context, path, default=_UNRESOLVED)
            if value is _UNRESOLVED:
                return match.group(0)
            return to_text(value)

        return _PLACEHOLDER.sub(_replacer, template)

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        text = expression.strip()
        wrapped = _WRAPPED.match(text)
        if wrapped:
            text = wrapped.group(1).strip()
        if not text:
            raise EvaluationError("Empty expression")
        parser = _Parser(_tokenize(text), context, expression)
        value = parser.parse_or()
        if parser.peek() is not None:
            raise EvaluationError(
                f"Unexpected token '{parser.peek()[1]}' in expression '{expression}'"
            )
        return value

    def evaluate_condition(self, expression: str, context: Mapping[str, Any]) -> bool:
        return truthy(self.evaluate(expression, context))


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no", "null", "none")
    return bool(value)


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        match = _TOKEN.match(text, pos)
        if not match or match.end() == pos:
            raise EvaluationError(f"Cannot parse expression '{text}' near position {pos}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser: or > and > not > comparison > operand."""

    def __init__(self, tokens: list[tuple[str, str]], context: Mapping[str, Any], source: str):
        self.tokens = tokens
        self.pos = 0
        self.context = context
        self.source = source

    def peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> tuple[str, str]:
        token = self.peek()
        if token is None:
            raise EvaluationError(f"Unexpected end of expression '{self.source}'")
        self.pos += 1
        return token

    def _at_word(self, word: str) -> bool:
        token = self.peek()
        return token is not None and token[0] == "word" and token[1].lower() == word

    def parse_or(self) -> Any:
        value = self.parse_and()
        while self._at_word("or"):
            self._next()
            right = self.parse_and()
            value = truthy(value) or truthy(right)
        return value

    def parse_and(self) -> Any:
        value = self.parse_not()
        while self._at_word("and"):
            self._next()
            right = self.parse_not()
            value = truthy(value) and truthy(right)
        return value

    def parse_not(self) -> Any:
        if self._at_word("not"):
            self._next()
            return not truthy(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Any:
        left = self.parse_operand()
        token = self.peek()
        if token is None:
            return left
        if token[0] == "op":
            self._next()
            return _compare(left, token[1], self.parse_operand())
        if self._at_word("contains"):
            self._next()
            right = self.parse_operand()
            if isinstance(left, str):
                return to_text(right) in left
            if isinstance(left, (list, tuple, dict)):
                return right in left
            return False
        return left

    def parse_operand(self) -> Any:
        kind, text = self._next()
        if kind == "paren":
            if text != "(":
                raise EvaluationError(f"Unbalanced ')' in expression '{self.source}'")
            value = self.parse_or()
            closing = self._next()
            if closing != ("paren", ")"):
                raise EvaluationError(f"Missing ')' in expression '{self.source}'")
            return value
        if kind == "string":
            return text[1:-1].replace("\\" + text[0], text[0])
        if kind == "number":
            return float(text) if "." in text else int(text)
        if kind == "word":
            lowered = text.lower()
            if lowered == "true":
                return True
            if lowered == "false":
                return False
            if lowered in ("null", "none"):
                return None
            if lowered in _KEYWORDS:
                raise EvaluationError(f"Unexpected '{text}' in expression '{self.source}'")
            return lookup(self.context, text)
        raise EvaluationError(f"Unexpected '{text}' in expression '{self.source}'")


def _compare(left: Any, op: str, right: Any) -> bool:
    if op in ("==", "!="):
        equal = _loose_equal(left, right)
        return equal if op == "==" else not equal
    try:
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        return left <= right
    except TypeError:
        # Mixed types: fall back to numeric coercion of strings.
        try:
            lnum, rnum = float(left), float(right)
        except (TypeError, ValueError):
            raise EvaluationError(
                f"Cannot compare {type(left).__name__} and {type(right).__name__} with '{op}'"
            )
        return _compare(lnum, op, rnum)


def _loose_equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    # "approved" == approved-from-output, 1 == "1", true == "true"
    return to_text(left) == to_text(right)
