"""Expression language used by ``if:`` gates and ``${{ }}`` interpolation.

Expressions are parsed once into a small tree of immutable nodes and then
evaluated any number of times against an :class:`EvaluationContext`.

Supported syntax, lowest precedence first:

- ternary selection: ``cond ? a : b``
- logical or: ``a || b`` / ``a or b``
- logical and: ``a && b`` / ``a and b``
- equality: ``a == b``, ``a != b``
- membership: ``a in ['x', 'y']``, ``a not in list``, substring ``'x' in s``
- concatenation: ``a + b`` (string forms are joined)
- negation: ``!a`` / ``not a``
- references: ``needs.build.outputs.tag``, ``needs['build'].result``
- literals: quoted strings, ``true``, ``false``, ``null``, numbers, lists
- functions: ``success()``, ``failure()``, ``always()``, ``cancelled()``,
  ``contains()``, ``startsWith()``, ``endsWith()``, ``format()``, ``join()``

Values are ``None``, ``bool``, ``str`` or ``list``. Numbers are kept as their
string form. A reference to a value that does not exist evaluates to ``None``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from pydantic import SecretStr

from .errors import ExpressionEvaluationError, ExpressionSyntaxError

logger = logging.getLogger(__name__)

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})

# name -> (min args, max args); ``None`` means unbounded
FUNCTION_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "success": (0, 0),
    "failure": (0, 0),
    "always": (0, 0),
    "cancelled": (0, 0),
    "contains": (2, 2),
    "startsWith": (2, 2),
    "endsWith": (2, 2),
    "format": (1, None),
    "join": (1, 2),
}

KEYWORDS = {"true", "false", "null", "and", "or", "not", "in"}

# ---------------------------------------------------------------------------
# Tree nodes


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    path: Tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Ternary:
    condition: "Node"
    if_true: "Node"
    if_false: "Node"


@dataclass(frozen=True)
class ListLiteral:
    items: Tuple["Node", ...]


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


Node = Union[Literal, Reference, Unary, BinaryOp, Ternary, ListLiteral, Call]


def iter_nodes(node: Node) -> Iterator[Node]:
    """Yield ``node`` and all of its descendants, depth first."""
    yield node
    if isinstance(node, Unary):
        yield from iter_nodes(node.operand)
    elif isinstance(node, BinaryOp):
        yield from iter_nodes(node.left)
        yield from iter_nodes(node.right)
    elif isinstance(node, Ternary):
        yield from iter_nodes(node.condition)
        yield from iter_nodes(node.if_true)
        yield from iter_nodes(node.if_false)
    elif isinstance(node, (ListLiteral, Call)):
        children = node.items if isinstance(node, ListLiteral) else node.args
        for child in children:
            yield from iter_nodes(child)


# ---------------------------------------------------------------------------
# Value helpers


def to_string(value: Any) -> str:
    """Render a value the way interpolation and comparisons see it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value)
    return str(value)


def is_truthy(value: Any) -> bool:
    """Gate coercion: ``None`` and ``""`` are false, any other string is true.

    The string ``"false"`` is therefore *true*. Boolean inputs are coerced to
    real booleans when a run is triggered, so they gate as expected.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return bool(value)


def values_equal(left: Any, right: Any) -> bool:
    if type(left) is type(right) and not isinstance(left, SecretStr):
        return left == right
    return to_string(left) == to_string(right)


# ---------------------------------------------------------------------------
# Tokenizer


@dataclass(frozen=True)
class Token:
    kind: str  # STRING, NUMBER, IDENT, KEYWORD, OP, EOF
    value: str
    pos: int


_OPERATORS = ("==", "!=", "&&", "||", "!", "?", ":", "+", "(", ")", "[", "]", ",", ".")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    length = len(source)
    while i < length:
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            start = i
            i += 1
            chars: List[str] = []
            while True:
                if i >= length:
                    raise ExpressionSyntaxError(source, "unterminated string", start)
                if source[i] == quote:
                    # a doubled quote is an escaped quote
                    if i + 1 < length and source[i + 1] == quote:
                        chars.append(quote)
                        i += 2
                        continue
                    i += 1
                    break
                chars.append(source[i])
                i += 1
            tokens.append(Token("STRING", "".join(chars), start))
            continue
        match = _NUMBER_RE.match(source, i)
        if match:
            tokens.append(Token("NUMBER", match.group(), i))
            i = match.end()
            continue
        match = _IDENT_RE.match(source, i)
        if match:
            word = match.group()
            kind = "KEYWORD" if word in KEYWORDS else "IDENT"
            tokens.append(Token(kind, word, i))
            i = match.end()
            continue
        for op in _OPERATORS:
            if source.startswith(op, i):
                tokens.append(Token("OP", op, i))
                i += len(op)
                break
        else:
            raise ExpressionSyntaxError(source, f"unexpected character {ch!r}", i)
    tokens.append(Token("EOF", "", length))
    return tokens


# ---------------------------------------------------------------------------
# Parser


class _Parser:
    """Recursive descent parser producing a :data:`Node` tree."""

    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    # -- token helpers -----------------------------------------------------
    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _peek(self, offset: int = 1) -> Token:
        pos = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[pos]

    def _advance(self) -> Token:
        token = self.current
        if token.kind != "EOF":
            self.index += 1
        return token

    def _is(self, kind: str, value: Optional[str] = None) -> bool:
        token = self.current
        return token.kind == kind and (value is None or token.value == value)

    def _accept(self, kind: str, value: Optional[str] = None) -> Optional[Token]:
        if self._is(kind, value):
            return self._advance()
        return None

    def _expect(self, kind: str, value: Optional[str] = None) -> Token:
        token = self._accept(kind, value)
        if token is None:
            wanted = value or kind.lower()
            found = self.current.value or "end of expression"
            raise ExpressionSyntaxError(
                self.source, f"expected {wanted!r}, found {found!r}", self.current.pos
            )
        return token

    # -- grammar -----------------------------------------------------------
    def parse(self) -> Node:
        if self._is("EOF"):
            raise ExpressionSyntaxError(self.source, "empty expression", 0)
        node = self._ternary()
        if not self._is("EOF"):
            raise ExpressionSyntaxError(
                self.source, f"unexpected {self.current.value!r}", self.current.pos
            )
        return node

    def _ternary(self) -> Node:
        condition = self._or()
        if self._accept("OP", "?"):
            if_true = self._ternary()
            self._expect("OP", ":")
            if_false = self._ternary()
            return Ternary(condition, if_true, if_false)
        return condition

    def _or(self) -> Node:
        node = self._and()
        while self._accept("OP", "||") or self._accept("KEYWORD", "or"):
            node = BinaryOp("or", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("OP", "&&") or self._accept("KEYWORD", "and"):
            node = BinaryOp("and", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._membership()
        while self._is("OP", "==") or self._is("OP", "!="):
            op = self._advance().value
            node = BinaryOp(op, node, self._membership())
        return node

    def _membership(self) -> Node:
        node = self._concat()
        while True:
            if self._accept("KEYWORD", "in"):
                node = BinaryOp("in", node, self._concat())
            elif self._is("KEYWORD", "not") and self._peek().kind == "KEYWORD" and self._peek().value == "in":
                self._advance()
                self._advance()
                node = BinaryOp("not in", node, self._concat())
            else:
                return node

    def _concat(self) -> Node:
        node = self._unary()
        while self._accept("OP", "+"):
            node = BinaryOp("+", node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("OP", "!") or self._accept("KEYWORD", "not"):
            return Unary("not", self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self.current
        if token.kind == "STRING":
            self._advance()
            return Literal(token.value)
        if token.kind == "NUMBER":
            self._advance()
            return Literal(token.value)
        if token.kind == "KEYWORD" and token.value in ("true", "false", "null"):
            self._advance()
            return Literal({"true": True, "false": False, "null": None}[token.value])
        if self._accept("OP", "("):
            node = self._ternary()
            self._expect("OP", ")")
            return node
        if self._accept("OP", "["):
            items: List[Node] = []
            if not self._is("OP", "]"):
                items.append(self._ternary())
                while self._accept("OP", ","):
                    items.append(self._ternary())
            self._expect("OP", "]")
            return ListLiteral(tuple(items))
        if token.kind == "IDENT":
            self._advance()
            if self._is("OP", "("):
                return self._call(token)
            return self._reference(token)
        found = token.value or "end of expression"
        raise ExpressionSyntaxError(self.source, f"unexpected {found!r}", token.pos)

    def _call(self, name_token: Token) -> Node:
        name = name_token.value
        if name not in FUNCTION_ARITY:
            raise ExpressionSyntaxError(
                self.source, f"unknown function '{name}'", name_token.pos
            )
        self._expect("OP", "(")
        args: List[Node] = []
        if not self._is("OP", ")"):
            args.append(self._ternary())
            while self._accept("OP", ","):
                args.append(self._ternary())
        self._expect("OP", ")")
        low, high = FUNCTION_ARITY[name]
        if len(args) < low or (high is not None and len(args) > high):
            if high == low:
                expected = str(low)
            elif high is None:
                expected = f"at least {low}"
            else:
                expected = f"{low} to {high}"
            raise ExpressionSyntaxError(
                self.source,
                f"function '{name}' takes {expected} argument(s), got {len(args)}",
                name_token.pos,
            )
        return Call(name, tuple(args))

    def _reference(self, root: Token) -> Node:
        path = [root.value]
        while True:
            if self._accept("OP", "."):
                segment = self.current
                if segment.kind not in ("IDENT", "KEYWORD"):
                    raise ExpressionSyntaxError(
                        self.source, "expected property name after '.'", segment.pos
                    )
                self._advance()
                path.append(segment.value)
            elif self._accept("OP", "["):
                segment = self.current
                if segment.kind not in ("STRING", "NUMBER"):
                    raise ExpressionSyntaxError(
                        self.source, "index must be a string or number literal", segment.pos
                    )
                self._advance()
                self._expect("OP", "]")
                path.append(segment.value)
            else:
                return Reference(tuple(path))


def parse(source: str) -> Node:
    """Parse ``source`` into a tree, raising :class:`ExpressionSyntaxError`."""
    return _Parser(source).parse()


# ---------------------------------------------------------------------------
# Evaluation


@dataclass
class EvaluationContext:
    """Everything an expression may observe.

    ``namespaces`` holds the reference roots (``event``, ``ref``, ``inputs``,
    ``needs``, ``env``, ``secrets`` ...). The status flags back the status
    functions and are computed by the scheduler from predecessor outcomes.
    """

    namespaces: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    failure: bool = False
    cancelled: bool = False

    def resolve(self, path: Tuple[str, ...]) -> Any:
        value: Any = self.namespaces
        for segment in path:
            if isinstance(value, Mapping):
                value = value.get(segment)
            elif isinstance(value, (list, tuple)) and segment.isdigit():
                position = int(segment)
                value = value[position] if position < len(value) else None
            else:
                return None
            if value is None:
                return None
        if isinstance(value, SecretStr):
            return value.get_secret_value()
        return value


def evaluate_node(node: Node, context: EvaluationContext) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Reference):
        return context.resolve(node.path)
    if isinstance(node, Unary):
        return not is_truthy(evaluate_node(node.operand, context))
    if isinstance(node, Ternary):
        if is_truthy(evaluate_node(node.condition, context)):
            return evaluate_node(node.if_true, context)
        return evaluate_node(node.if_false, context)
    if isinstance(node, ListLiteral):
        return [evaluate_node(item, context) for item in node.items]
    if isinstance(node, BinaryOp):
        return _evaluate_binary(node, context)
    if isinstance(node, Call):
        return _evaluate_call(node, context)
    raise ExpressionEvaluationError(f"Unsupported node: {node!r}")


def _evaluate_binary(node: BinaryOp, context: EvaluationContext) -> Any:
    # and/or short-circuit and return the deciding operand
    if node.op == "and":
        left = evaluate_node(node.left, context)
        if not is_truthy(left):
            return left
        return evaluate_node(node.right, context)
    if node.op == "or":
        left = evaluate_node(node.left, context)
        if is_truthy(left):
            return left
        return evaluate_node(node.right, context)

    left = evaluate_node(node.left, context)
    right = evaluate_node(node.right, context)
    if node.op == "==":
        return values_equal(left, right)
    if node.op == "!=":
        return not values_equal(left, right)
    if node.op == "+":
        return to_string(left) + to_string(right)
    if node.op in ("in", "not in"):
        found = _contains(right, left)
        return found if node.op == "in" else not found
    raise ExpressionEvaluationError(f"Unsupported operator: {node.op}")


def _contains(haystack: Any, needle: Any) -> bool:
    if haystack is None:
        return False
    if isinstance(haystack, (list, tuple)):
        return any(values_equal(item, needle) for item in haystack)
    if isinstance(haystack, Mapping):
        return to_string(needle) in haystack
    return to_string(needle) in to_string(haystack)


_FORMAT_RE = re.compile(r"\{\{|\}\}|\{(\d+)\}")


def _format(template: str, args: List[Any]) -> str:
    def replace(match: re.Match) -> str:
        token = match.group()
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        position = int(match.group(1))
        if position >= len(args):
            raise ExpressionEvaluationError(
                f"format() placeholder {{{position}}} has no argument"
            )
        return to_string(args[position])

    return _FORMAT_RE.sub(replace, template)


def _evaluate_call(node: Call, context: EvaluationContext) -> Any:
    if node.name == "success":
        return context.success
    if node.name == "failure":
        return context.failure
    if node.name == "always":
        return True
    if node.name == "cancelled":
        return context.cancelled

    args = [evaluate_node(arg, context) for arg in node.args]
    if node.name == "contains":
        return _contains(args[0], args[1])
    if node.name == "startsWith":
        return to_string(args[0]).startswith(to_string(args[1]))
    if node.name == "endsWith":
        return to_string(args[0]).endswith(to_string(args[1]))
    if node.name == "format":
        return _format(to_string(args[0]), args[1:])
    if node.name == "join":
        separator = to_string(args[1]) if len(args) > 1 else ","
        items = args[0]
        if items is None:
            return ""
        if not isinstance(items, (list, tuple)):
            return to_string(items)
        return separator.join(to_string(item) for item in items)
    raise ExpressionEvaluationError(f"Unknown function: {node.name}")


# ---------------------------------------------------------------------------
# Public wrappers


class Expression:
    """A parsed expression together with its source text."""

    __slots__ = ("source", "tree")

    def __init__(self, source: str, tree: Node) -> None:
        self.source = source
        self.tree = tree

    @classmethod
    def parse(cls, source: Any) -> "Expression":
        """Parse a gate expression. ``${{ }}`` wrapping is optional."""
        if isinstance(source, bool):
            return cls(to_string(source), Literal(source))
        text = str(source).strip()
        inner = _unwrap(text)
        return cls(text, parse(inner if inner is not None else text))

    def evaluate(self, context: EvaluationContext) -> Any:
        return evaluate_node(self.tree, context)

    def evaluate_bool(self, context: EvaluationContext) -> bool:
        result = is_truthy(self.evaluate(context))
        logger.debug(f"Condition {self.source!r} evaluated to {result}")
        return result

    def references(self) -> List[Reference]:
        return [node for node in iter_nodes(self.tree) if isinstance(node, Reference)]

    def function_names(self) -> set:
        return {node.name for node in iter_nodes(self.tree) if isinstance(node, Call)}

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


def _unwrap(text: str) -> Optional[str]:
    """Return the body of ``${{ body }}`` if ``text`` is exactly one block."""
    pieces = _split_template(text)
    if len(pieces) == 1 and isinstance(pieces[0], tuple):
        return pieces[0][1]
    return None


def _split_template(text: str) -> List[Union[str, Tuple[int, str]]]:
    """Split ``text`` into literal strings and ``(position, body)`` blocks."""
    pieces: List[Union[str, Tuple[int, str]]] = []
    i = 0
    literal_start = 0
    while True:
        start = text.find("${{", i)
        if start < 0:
            break
        j = start + 3
        quote: Optional[str] = None
        while j < len(text):
            ch = text[j]
            if quote:
                if ch == quote:
                    quote = None
            elif ch in ("'", '"'):
                quote = ch
            elif text.startswith("}}", j):
                break
            j += 1
        else:
            raise ExpressionSyntaxError(text, "unterminated '${{'", start)
        if start > literal_start:
            pieces.append(text[literal_start:start])
        pieces.append((start, text[start + 3 : j].strip()))
        i = literal_start = j + 2
    if literal_start < len(text):
        pieces.append(text[literal_start:])
    return pieces


class Template:
    """A string that may embed ``${{ expr }}`` blocks."""

    __slots__ = ("source", "parts")

    def __init__(self, source: str, parts: List[Union[str, Expression]]) -> None:
        self.source = source
        self.parts = parts

    @classmethod
    def parse(cls, source: str) -> "Template":
        parts: List[Union[str, Expression]] = []
        for piece in _split_template(source):
            if isinstance(piece, tuple):
                position, body = piece
                try:
                    parts.append(Expression(body, parse(body)))
                except ExpressionSyntaxError as exc:
                    raise ExpressionSyntaxError(source, exc.reason, position) from exc
            else:
                parts.append(piece)
        return cls(source, parts)

    @property
    def is_static(self) -> bool:
        return all(isinstance(part, str) for part in self.parts)

    def expressions(self) -> List[Expression]:
        return [part for part in self.parts if isinstance(part, Expression)]

    def render(self, context: EvaluationContext) -> Any:
        """Evaluate the template.

        A template made of a single block yields the typed value of that
        block; anything else is rendered as a string.
        """
        if len(self.parts) == 1 and isinstance(self.parts[0], Expression):
            return self.parts[0].evaluate(context)
        return "".join(
            part if isinstance(part, str) else to_string(part.evaluate(context))
            for part in self.parts
        )

    def __repr__(self) -> str:
        return f"Template({self.source!r})"


def compile_value(value: Any) -> Any:
    """Replace every string inside ``value`` with a parsed :class:`Template`."""
    if isinstance(value, str):
        return Template.parse(value)
    if isinstance(value, list):
        return [compile_value(item) for item in value]
    if isinstance(value, dict):
        return {key: compile_value(item) for key, item in value.items()}
    return value


def iter_templates(value: Any) -> Iterator[Template]:
    if isinstance(value, Template):
        yield value
    elif isinstance(value, list):
        for item in value:
            yield from iter_templates(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_templates(item)


def render_value(value: Any, context: EvaluationContext) -> Any:
    """Interpolate templates inside ``value``; other scalars pass through."""
    if isinstance(value, Template):
        return value.render(context)
    if isinstance(value, str):
        return Template.parse(value).render(context)
    if isinstance(value, list):
        return [render_value(item, context) for item in value]
    if isinstance(value, dict):
        return {key: render_value(item, context) for key, item in value.items()}
    return value
