# expr.py
# Restricted expression language for `if` conditions and ${{ }} templates.
#
# Not a scripting engine: literals, context lookups, a fixed set of functions,
# comparison and boolean operators. Nothing here ever calls eval().
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .errors import ConfigurationError, ExpressionError

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})
BUILTIN_FUNCTIONS = frozenset({
    "contains", "startsWith", "endsWith", "format", "join", "toJSON", "fromJSON", "hashFiles",
})
KNOWN_FUNCTIONS = STATUS_FUNCTIONS | BUILTIN_FUNCTIONS


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    ident: str


@dataclass(frozen=True)
class Attr:
    obj: "Node"
    name: str


@dataclass(frozen=True)
class Index:
    obj: "Node"
    key: "Node"


@dataclass(frozen=True)
class Call:
    func: str
    args: Tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Logical:
    op: str  # "&&" | "||"
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Literal, Name, Attr, Index, Call, Not, Logical, Compare]


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class _Tok:
    kind: str
    text: str
    pos: int


def _syntax_error(source: str, pos: int, why: str) -> ConfigurationError:
    return ConfigurationError(
        message=f"Invalid expression {source!r} at {pos}: {why}",
        details={"expression": source},
    )


def _tokenize(source: str) -> List[_Tok]:
    toks: List[_Tok] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m:
            raise _syntax_error(source, pos, f"unexpected character {source[pos]!r}")
        kind = m.lastgroup or ""
        if kind != "ws":
            toks.append(_Tok(kind, m.group(), pos))
        pos = m.end()
    toks.append(_Tok("eof", "", pos))
    return toks


# ---------------------------------------------------------------------
# Parser (recursive descent)
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.toks = _tokenize(source)
        self.i = 0

    def peek(self) -> _Tok:
        return self.toks[self.i]

    def advance(self) -> _Tok:
        tok = self.toks[self.i]
        self.i += 1
        return tok

    def accept(self, text: str) -> bool:
        tok = self.peek()
        if tok.kind == "op" and tok.text == text:
            self.i += 1
            return True
        return False

    def expect(self, text: str) -> None:
        if not self.accept(text):
            tok = self.peek()
            raise _syntax_error(self.source, tok.pos, f"expected {text!r}, got {tok.text or 'end'!r}")

    def parse(self) -> Node:
        node = self.parse_or()
        tok = self.peek()
        if tok.kind != "eof":
            raise _syntax_error(self.source, tok.pos, f"unexpected {tok.text!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            node = Logical("||", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_unary()
        while self.accept("&&"):
            node = Logical("&&", node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        if self.accept("!"):
            return Not(self.parse_unary())
        return self.parse_compare()

    def parse_compare(self) -> Node:
        node = self.parse_postfix()
        tok = self.peek()
        if tok.kind == "op" and tok.text in ("==", "!=", "<", "<=", ">", ">="):
            self.advance()
            node = Compare(tok.text, node, self.parse_postfix())
        return node

    def parse_postfix(self) -> Node:
        node = self.parse_primary()
        while True:
            if self.accept("."):
                tok = self.advance()
                if tok.kind != "ident":
                    raise _syntax_error(self.source, tok.pos, "expected property name after '.'")
                node = Attr(node, tok.text)
            elif self.accept("["):
                key = self.parse_or()
                self.expect("]")
                node = Index(node, key)
            else:
                return node

    def parse_primary(self) -> Node:
        tok = self.advance()
        if tok.kind == "number":
            return Literal(float(tok.text) if any(c in tok.text for c in ".eE") else int(tok.text))
        if tok.kind == "string":
            return Literal(tok.text[1:-1].replace("''", "'"))
        if tok.kind == "op" and tok.text == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if tok.kind == "ident":
            if tok.text == "true":
                return Literal(True)
            if tok.text == "false":
                return Literal(False)
            if tok.text == "null":
                return Literal(None)
            if self.accept("("):
                if tok.text not in KNOWN_FUNCTIONS:
                    raise _syntax_error(self.source, tok.pos, f"unknown function {tok.text!r}")
                args: List[Node] = []
                if not self.accept(")"):
                    args.append(self.parse_or())
                    while self.accept(","):
                        args.append(self.parse_or())
                    self.expect(")")
                return Call(tok.text, tuple(args))
            return Name(tok.text)
        raise _syntax_error(self.source, tok.pos, f"unexpected {tok.text or 'end'!r}")


def _strip_wrapper(source: str) -> str:
    s = source.strip()
    if s.startswith("${{") and s.endswith("}}"):
        s = s[3:-2].strip()
    return s


@lru_cache(maxsize=2048)
def parse(source: str) -> Node:
    """Parse an expression (optionally wrapped in ${{ }}). Raises ConfigurationError."""
    text = _strip_wrapper(source)
    if not text:
        raise _syntax_error(source, 0, "empty expression")
    return _Parser(text).parse()


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _loose_equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    return a == b


def _order(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        a, b = a.casefold(), b.casefold()
    elif not (isinstance(a, (int, float)) and isinstance(b, (int, float))):
        return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def _lookup(obj: Any, key: Any) -> Any:
    if isinstance(obj, Mapping):
        if not isinstance(key, (str, int, float)):
            return None
        if key in obj:
            return obj[key]
        if isinstance(key, str):
            # context keys are case-insensitive
            for k, v in obj.items():
                if isinstance(k, str) and k.casefold() == key.casefold():
                    return v
        return None
    if isinstance(obj, (list, tuple)) and isinstance(key, (int, float)) and not isinstance(key, bool):
        idx = int(key)
        return obj[idx] if 0 <= idx < len(obj) else None
    return None


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple, set, frozenset)):
        return any(_loose_equal(item, needle) for item in haystack)
    return to_text(needle).casefold() in to_text(haystack).casefold()


def _format(template: Any, *args: Any) -> str:
    text = to_text(template)

    def sub(m: "re.Match[str]") -> str:
        idx = int(m.group(1))
        if idx >= len(args):
            raise ExpressionError(message=f"format(): no argument for {{{idx}}}")
        return to_text(args[idx])

    out = re.sub(r"(?<!\{)\{(\d+)\}(?!\})", sub, text)
    return out.replace("{{", "{").replace("}}", "}")


def _from_json(value: Any) -> Any:
    try:
        return json.loads(to_text(value))
    except ValueError as e:
        raise ExpressionError(message=f"fromJSON(): invalid JSON: {e}") from e


_BUILTINS: Dict[str, Callable[..., Any]] = {
    "contains": lambda h, n: _contains(h, n),
    "startsWith": lambda s, p: to_text(s).casefold().startswith(to_text(p).casefold()),
    "endsWith": lambda s, p: to_text(s).casefold().endswith(to_text(p).casefold()),
    "format": _format,
    "join": lambda seq, sep=",": to_text(sep).join(to_text(x) for x in seq) if isinstance(seq, (list, tuple)) else to_text(seq),
    "toJSON": lambda v: json.dumps(v, sort_keys=True, indent=2),
    "fromJSON": _from_json,
}


class Evaluator:
    """
    Evaluates a parsed expression against a context mapping.

    `functions` supplies context-bound functions: the status functions
    (success/failure/always/cancelled) and hashFiles.
    """

    def __init__(self, context: Mapping[str, Any], functions: Optional[Mapping[str, Callable[..., Any]]] = None):
        self.context = context
        self.functions = dict(functions or {})

    def eval(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            return _lookup(self.context, node.ident)
        if isinstance(node, Attr):
            return _lookup(self.eval(node.obj), node.name)
        if isinstance(node, Index):
            return _lookup(self.eval(node.obj), self.eval(node.key))
        if isinstance(node, Not):
            return not truthy(self.eval(node.operand))
        if isinstance(node, Logical):
            left = self.eval(node.left)
            if node.op == "&&":
                return self.eval(node.right) if truthy(left) else left
            return left if truthy(left) else self.eval(node.right)
        if isinstance(node, Compare):
            left, right = self.eval(node.left), self.eval(node.right)
            if node.op == "==":
                return _loose_equal(left, right)
            if node.op == "!=":
                return not _loose_equal(left, right)
            return _order(node.op, left, right)
        if isinstance(node, Call):
            return self._call(node)
        raise ExpressionError(message=f"unsupported node {node!r}")

    def _call(self, node: Call) -> Any:
        fn = self.functions.get(node.func) or _BUILTINS.get(node.func)
        if fn is None:
            if node.func == "always":
                return True
            raise ExpressionError(message=f"{node.func}() is not available in this context")
        args = [self.eval(a) for a in node.args]
        try:
            return fn(*args)
        except TypeError as e:
            raise ExpressionError(message=f"{node.func}(): {e}") from e


def evaluate(source: str, context: Mapping[str, Any], functions: Optional[Mapping[str, Callable[..., Any]]] = None) -> Any:
    return Evaluator(context, functions).eval(parse(source))


def check(source: str | None, context: Mapping[str, Any], functions: Optional[Mapping[str, Callable[..., Any]]] = None) -> bool:
    """Evaluate a condition to a boolean. A missing condition is true."""
    if source is None or not str(source).strip():
        return True
    return truthy(evaluate(source, context, functions))


def uses_status_function(source: str | None) -> bool:
    if not source or not str(source).strip():
        return False

    def walk(node: Node) -> bool:
        if isinstance(node, Call):
            return node.func in STATUS_FUNCTIONS or any(walk(a) for a in node.args)
        if isinstance(node, Attr):
            return walk(node.obj)
        if isinstance(node, Index):
            return walk(node.obj) or walk(node.key)
        if isinstance(node, Not):
            return walk(node.operand)
        if isinstance(node, (Logical, Compare)):
            return walk(node.left) or walk(node.right)
        return False

    return walk(parse(source))


# ---------------------------------------------------------------------
# ${{ }} templates
# ---------------------------------------------------------------------

_TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def template_expressions(template: str) -> List[str]:
    return [m.group(1).strip() for m in _TEMPLATE_RE.finditer(template)]


def validate_template(template: str) -> None:
    for source in template_expressions(template):
        parse(source)


def render(template: str, context: Mapping[str, Any], functions: Optional[Mapping[str, Callable[..., Any]]] = None) -> str:
    if "${{" not in template:
        return template
    return _TEMPLATE_RE.sub(lambda m: to_text(evaluate(m.group(1), context, functions)), template)


def render_value(value: Any, context: Mapping[str, Any], functions: Optional[Mapping[str, Callable[..., Any]]] = None) -> Any:
    """Render templates inside nested step inputs (str / list / dict)."""
    if isinstance(value, str):
        return render(value, context, functions)
    if isinstance(value, list):
        return [render_value(v, context, functions) for v in value]
    if isinstance(value, tuple):
        return tuple(render_value(v, context, functions) for v in value)
    if isinstance(value, dict):
        return {k: render_value(v, context, functions) for k, v in value.items()}
    return value


def validate_value(value: Any) -> None:
    if isinstance(value, str):
        validate_template(value)
    elif isinstance(value, (list, tuple)):
        for v in value:
            validate_value(v)
    elif isinstance(value, dict):
        for v in value.values():
            validate_value(v)
