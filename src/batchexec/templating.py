"""Evaluator for the `${{ ... }}` expressions embedded in step fields.

A template is free text interleaved with placeholders. Each placeholder holds
one expression: a dotted path looked up in the step context, a string or
boolean literal, or a call to one of the built-in functions. Calls may be
written as ``join(a, " ")`` or in the space-separated form ``join a " "``.
"""

from __future__ import annotations

import fnmatch
import functools
from collections.abc import Callable
from dataclasses import dataclass

from batchexec.errors import TemplateError
from batchexec.models import StepContext, StepResult, Value, ValueKind

OPEN_DELIMITER = "${{"
CLOSE_DELIMITER = "}}"
TRUE_STRINGS = {"1", "t", "T", "true", "TRUE", "True"}
STEP_FIELDS = {"stdout", "stderr", "added_files", "modified_files", "deleted_files", "skipped"}


@dataclass(frozen=True, slots=True)
class Literal:
    value: Value


@dataclass(frozen=True, slots=True)
class PathRef:
    parts: tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.parts)


@dataclass(frozen=True, slots=True)
class Call:
    name: str
    args: tuple[Node, ...]


Node = Literal | PathRef | Call


@dataclass(frozen=True, slots=True)
class Placeholder:
    source: str
    node: Node


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str


# ----------------------------------------------------------------------
# Lexing and parsing
# ----------------------------------------------------------------------

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


def _is_ident_start(char: str) -> bool:
    return char.isalpha() or char == "_"


def _is_ident_char(char: str) -> bool:
    return char.isalnum() or char in {"_", "-"}


def _read_string(source: str, start: int, expression: str) -> tuple[str, int]:
    quote = source[start]
    index = start + 1
    chars: list[str] = []
    while index < len(source):
        char = source[index]
        if char == quote:
            return "".join(chars), index + 1
        if char == "\\" and quote != "`":
            index += 1
            if index >= len(source):
                break
            escaped = source[index]
            if escaped not in _ESCAPES:
                raise TemplateError(f"invalid escape sequence \\{escaped}", expression=expression)
            chars.append(_ESCAPES[escaped])
        else:
            chars.append(char)
        index += 1
    raise TemplateError("unterminated string literal", expression=expression)


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    index = 0
    while index < len(source):
        char = source[index]
        if char.isspace():
            index += 1
            continue
        if char in "\"'`":
            text, index = _read_string(source, index, source)
            tokens.append(_Token("string", text))
            continue
        if char in "().,":
            tokens.append(_Token(char, char))
            index += 1
            continue
        if _is_ident_start(char):
            end = index + 1
            while end < len(source) and _is_ident_char(source[end]):
                end += 1
            tokens.append(_Token("ident", source[index:end]))
            index = end
            continue
        raise TemplateError(f"unexpected character {char!r}", expression=source)
    tokens.append(_Token("eof", ""))
    return tokens


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(source)
        self.position = 0

    def _peek(self, offset: int = 0) -> _Token:
        return self.tokens[min(self.position + offset, len(self.tokens) - 1)]

    def _advance(self) -> _Token:
        token = self._peek()
        self.position += 1
        return token

    def _expect(self, kind: str) -> _Token:
        token = self._advance()
        if token.kind != kind:
            found = token.text or "end of expression"
            raise TemplateError(f"expected {kind!r}, found {found!r}", expression=self.source)
        return token

    def parse(self) -> Node:
        if self._peek().kind == "eof":
            raise TemplateError("empty expression", expression=self.source)
        node = self._expression()
        if self._peek().kind != "eof":
            raise TemplateError(
                f"unexpected {self._peek().text!r} after expression", expression=self.source
            )
        return node

    def _expression(self) -> Node:
        token = self._peek()
        if token.kind == "ident" and token.text in FUNCTIONS:
            following = self._peek(1)
            if following.kind == "(":
                return self._parenthesized_call()
            if following.kind not in {"eof", ")", ",", "."}:
                return self._spaced_call()
        return self._primary()

    def _parenthesized_call(self) -> Call:
        name = self._advance().text
        self._expect("(")
        args: list[Node] = []
        if self._peek().kind != ")":
            args.append(self._expression())
            while self._peek().kind == ",":
                self._advance()
                args.append(self._expression())
        self._expect(")")
        return Call(name, tuple(args))

    def _spaced_call(self) -> Call:
        name = self._advance().text
        args: list[Node] = []
        while self._peek().kind not in {"eof", ")", ","}:
            args.append(self._primary())
        return Call(name, tuple(args))

    def _primary(self) -> Node:
        token = self._advance()
        if token.kind == "string":
            return Literal(Value.of_string(token.text))
        if token.kind == "(":
            node = self._expression()
            self._expect(")")
            return node
        if token.kind == "ident":
            if token.text in {"true", "false"}:
                return Literal(Value.of_bool(token.text == "true"))
            parts = [token.text]
            while self._peek().kind == ".":
                self._advance()
                parts.append(self._expect("ident").text)
            return PathRef(tuple(parts))
        found = token.text or "end of expression"
        raise TemplateError(f"unexpected {found!r}", expression=self.source)


def _find_close(text: str, start: int) -> int:
    quote: str | None = None
    index = start
    while index < len(text):
        char = text[index]
        if quote:
            if char == "\\" and quote != "`":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in "\"'`":
            quote = char
        elif text.startswith(CLOSE_DELIMITER, index):
            return index
        index += 1
    return -1


@functools.lru_cache(maxsize=1024)
def parse_template(text: str) -> tuple[str | Placeholder, ...]:
    """Split a template into literal text and parsed placeholders."""
    segments: list[str | Placeholder] = []
    cursor = 0
    while True:
        start = text.find(OPEN_DELIMITER, cursor)
        if start < 0:
            break
        if start > cursor:
            segments.append(text[cursor:start])
        body_start = start + len(OPEN_DELIMITER)
        end = _find_close(text, body_start)
        if end < 0:
            raise TemplateError("unterminated placeholder", expression=text[start:])
        source = text[body_start:end].strip()
        segments.append(Placeholder(source, _Parser(source).parse()))
        cursor = end + len(CLOSE_DELIMITER)
    if cursor < len(text):
        segments.append(text[cursor:])
    return tuple(segments)


# ----------------------------------------------------------------------
# Built-in functions
# ----------------------------------------------------------------------


def _as_items(value: Value) -> tuple[str, ...]:
    if value.kind is ValueKind.LIST:
        return value.items
    rendered = value.render()
    return (rendered,) if rendered else ()


def _join(args: list[Value]) -> Value:
    return Value.of_string(args[1].render().join(_as_items(args[0])))


def _join_if(args: list[Value]) -> Value:
    separator = args[0].render()
    parts = [item for value in args[1:] for item in _as_items(value) if item]
    return Value.of_string(separator.join(parts))


def _split(args: list[Value]) -> Value:
    text = args[0].render()
    if not text:
        return Value.of_list(())
    separator = args[1].render()
    return Value.of_list(text.split(separator) if separator else list(text))


def _replace(args: list[Value]) -> Value:
    return Value.of_string(args[0].render().replace(args[1].render(), args[2].render()))


def _matches(args: list[Value]) -> Value:
    return Value.of_bool(fnmatch.fnmatchcase(args[0].render(), args[1].render()))


def _not(args: list[Value]) -> Value:
    return Value.of_bool(not args[0].truthy())


def _and(args: list[Value]) -> Value:
    return Value.of_bool(all(arg.truthy() for arg in args))


def _or(args: list[Value]) -> Value:
    return Value.of_bool(any(arg.truthy() for arg in args))


@dataclass(frozen=True, slots=True)
class _Function:
    impl: Callable[[list[Value]], Value]
    min_args: int
    max_args: int | None


FUNCTIONS: dict[str, _Function] = {
    "join": _Function(_join, 2, 2),
    "join_if": _Function(_join_if, 2, None),
    "split": _Function(_split, 2, 2),
    "replace": _Function(_replace, 3, 3),
    "matches": _Function(_matches, 2, 2),
    "eq": _Function(lambda args: Value.of_bool(args[0] == args[1]), 2, 2),
    "ne": _Function(lambda args: Value.of_bool(args[0] != args[1]), 2, 2),
    "not": _Function(_not, 1, 1),
    "and": _Function(_and, 2, None),
    "or": _Function(_or, 2, None),
}


# ----------------------------------------------------------------------
# Resolution and evaluation
# ----------------------------------------------------------------------


def _step_field(result: StepResult, name: str) -> Value | None:
    if name == "stdout":
        return Value.of_string(result.stdout.rstrip("\r\n"))
    if name == "stderr":
        return Value.of_string(result.stderr.rstrip("\r\n"))
    if name == "added_files":
        return Value.of_list(result.files.added)
    if name == "modified_files":
        return Value.of_list(result.files.modified)
    if name == "deleted_files":
        return Value.of_list(result.files.deleted)
    if name == "skipped":
        return Value.of_bool(result.skipped)
    return None


def _cumulative(context: StepContext, name: str) -> Value | None:
    collected: list[str] = []
    for result in context.steps:
        value = _step_field(result, name)
        if value is None:
            return None
        for item in value.items:
            if item not in collected:
                collected.append(item)
    return Value.of_list(collected)


def resolve(parts: tuple[str, ...], context: StepContext) -> Value:
    """Map a dotted path onto a value; unknown paths fail."""
    dotted = ".".join(parts)
    head, rest = parts[0], parts[1:]
    value: Value | None = None

    if head == "repository" and len(rest) == 1:
        value = {
            "name": Value.of_string(context.repository.name),
            "revision": Value.of_string(context.repository.revision),
            "path": Value.of_string(context.path),
        }.get(rest[0])
    elif head == "batch_change" and len(rest) == 1:
        attributes = context.batch_change
        value = {
            "name": Value.of_string(attributes.name),
            "description": Value.of_string(attributes.description),
            "author_name": Value.of_string(attributes.author_name),
            "author_email": Value.of_string(attributes.author_email),
        }.get(rest[0])
    elif head == "previous_step" and len(rest) == 1:
        previous = context.previous_step
        if previous is None:
            raise TemplateError(
                "previous_step is not available before a step has run", expression=dotted
            )
        value = _step_field(previous, rest[0])
    elif head == "step" and len(rest) == 1:
        if context.current is None:
            raise TemplateError("step is only available in step outputs", expression=dotted)
        value = _step_field(context.current, rest[0])
    elif head == "steps" and len(rest) == 1:
        if rest[0] == "path":
            value = Value.of_string(context.path)
        elif rest[0] in STEP_FIELDS and rest[0].endswith("_files"):
            value = _cumulative(context, rest[0])
    elif head == "outputs" and len(rest) == 1:
        value = context.outputs_map.get(rest[0])
        if value is None:
            raise TemplateError(f"output {rest[0]!r} is not defined", expression=dotted)

    if value is None:
        raise TemplateError(f"unresolved identifier {dotted!r}", expression=dotted)
    return value


def _evaluate(node: Node, context: StepContext, source: str) -> Value:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, PathRef):
        return resolve(node.parts, context)
    function = FUNCTIONS.get(node.name)
    if function is None:
        raise TemplateError(f"unknown function {node.name!r}", expression=source)
    count = len(node.args)
    if count < function.min_args or (function.max_args is not None and count > function.max_args):
        expected = str(function.min_args)
        if function.max_args is None:
            expected = f"at least {function.min_args}"
        elif function.max_args != function.min_args:
            expected = f"{function.min_args}-{function.max_args}"
        raise TemplateError(
            f"wrong number of arguments for {node.name}: want {expected}, got {count}",
            expression=source,
        )
    args = [_evaluate(arg, context, source) for arg in node.args]
    return function.impl(args)


def evaluate_expression(source: str, context: StepContext) -> Value:
    return _evaluate(_Parser(source).parse(), context, source)


def evaluate_template(text: str, context: StepContext) -> Value:
    """Evaluate a template, keeping the value kind when it is a lone placeholder."""
    segments = parse_template(text)
    if len(segments) == 1 and isinstance(segments[0], Placeholder):
        return _evaluate(segments[0].node, context, segments[0].source)
    return Value.of_string(render_template(text, context))


def render_template(text: str, context: StepContext) -> str:
    parts: list[str] = []
    for segment in parse_template(text):
        if isinstance(segment, str):
            parts.append(segment)
        else:
            parts.append(_evaluate(segment.node, context, segment.source).render())
    return "".join(parts)


def evaluate_condition(text: str, context: StepContext) -> bool:
    return render_template(text, context).strip() in TRUE_STRINGS
