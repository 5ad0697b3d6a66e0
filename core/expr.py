"""
core/expr.py -- Kconfig tristate logic and the dependency-expression grammar.

BoolExpr is a closed set of frozen dataclasses:

  Const(value)              literal: y / m / n, a number, or a quoted string
  Sym(name)                 reference to a configuration symbol, by name
  Compare(op, left, right)  SYM=value, SYM!=value, and the ordering relations
  And(left, right)
  Or(left, right)
  Not(operand)

Symbols are referenced by name and looked up at evaluation time, never
embedded, so forward references and cycles between symbols are harmless.

Grammar (same shape as the kernel's own parser):

  expr:     and_expr ['||' expr]
  and_expr: factor ['&&' and_expr]
  factor:   operand [relop operand] | '!' factor | '(' expr ')'

Evaluation is a structural dispatch over the six node types; see eval_expr().
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Union

from .errors import ExprSyntaxError

# ---------------------------------------------------------------------------
# Symbol names
# ---------------------------------------------------------------------------

# .config files and CVE tooling spell symbols with this prefix; Kconfig
# sources do not. Every entry point normalizes to the bare name.
CONFIG_PREFIX = "CONFIG_"


def symbol_key(name: str) -> str:
    """Return the canonical (prefix-free) spelling of a symbol name."""
    name = name.strip()
    if name.startswith(CONFIG_PREFIX):
        return name[len(CONFIG_PREFIX) :]
    return name


# ---------------------------------------------------------------------------
# Tristate helpers
# ---------------------------------------------------------------------------

TRISTATE_VALUES = ("n", "m", "y")
_TRI_TO_INT = {"n": 0, "m": 1, "y": 2}


def is_tristate_value(value: str) -> bool:
    return value in _TRI_TO_INT


def tri_min(*values: str) -> str:
    """Return the smallest tristate value among values (n < m < y)."""
    return min(values, key=_TRI_TO_INT.__getitem__)


def tri_max(*values: str) -> str:
    """Return the largest tristate value among values."""
    return max(values, key=_TRI_TO_INT.__getitem__)


def tri_not(value: str) -> str:
    # !m is m in Kconfig
    return "n" if value == "y" else "y" if value == "n" else "m"


# ---------------------------------------------------------------------------
# Expression nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Const:
    value: str

    def __str__(self) -> str:
        if is_tristate_value(self.value) or _NUMBER_RE.match(self.value):
            return self.value
        return f'"{self.value}"'


@dataclass(frozen=True)
class Sym:
    name: str

    def __str__(self) -> str:
        return self.name


Operand = Union[Const, Sym]

RELATIONS = ("=", "!=", "<", "<=", ">", ">=")


@dataclass(frozen=True)
class Compare:
    op: str
    left: Operand
    right: Operand

    def __str__(self) -> str:
        return f"{self.left}{self.op}{self.right}"


@dataclass(frozen=True)
class And:
    left: "BoolExpr"
    right: "BoolExpr"

    def __str__(self) -> str:
        return f"{_paren(self.left, Or)} && {_paren(self.right, Or)}"


@dataclass(frozen=True)
class Or:
    left: "BoolExpr"
    right: "BoolExpr"

    def __str__(self) -> str:
        return f"{self.left} || {self.right}"


@dataclass(frozen=True)
class Not:
    operand: "BoolExpr"

    def __str__(self) -> str:
        return f"!{_paren(self.operand, (And, Or))}"


BoolExpr = Union[Const, Sym, Compare, And, Or, Not]

YES = Const("y")
NO = Const("n")


def _paren(expr: BoolExpr, kinds) -> str:
    return f"({expr})" if isinstance(expr, kinds) else str(expr)


def conjoin(exprs: Iterable[Optional[BoolExpr]]) -> Optional[BoolExpr]:
    """AND together every non-None expression. Returns None for an empty input."""
    result: Optional[BoolExpr] = None
    for expr in exprs:
        if expr is None:
            continue
        result = expr if result is None else And(result, expr)
    return result


def expr_symbols(expr: Optional[BoolExpr]) -> list[str]:
    """Return every symbol name referenced by expr, in first-seen order."""
    seen: dict[str, None] = {}
    for name in _iter_symbols(expr):
        seen.setdefault(name, None)
    return list(seen)


def _iter_symbols(expr: Optional[BoolExpr]) -> Iterator[str]:
    if expr is None or isinstance(expr, Const):
        return
    if isinstance(expr, Sym):
        yield expr.name
    elif isinstance(expr, Compare):
        yield from _iter_symbols(expr.left)
        yield from _iter_symbols(expr.right)
    elif isinstance(expr, (And, Or)):
        yield from _iter_symbols(expr.left)
        yield from _iter_symbols(expr.right)
    elif isinstance(expr, Not):
        yield from _iter_symbols(expr.operand)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

# lookup(name) -> (raw value, True if the symbol is bool/tristate)
Lookup = Callable[[str], tuple[str, bool]]


def eval_expr(expr: BoolExpr, lookup: Lookup) -> str:
    """Evaluate expr to "n", "m" or "y".

    Non-bool symbols are "n" in a tristate context regardless of their value;
    their raw values only matter inside comparisons.
    """
    if isinstance(expr, Sym):
        value, is_bool = lookup(expr.name)
        return value if is_bool and is_tristate_value(value) else "n"

    if isinstance(expr, Const):
        return expr.value if is_tristate_value(expr.value) else "n"

    if isinstance(expr, And):
        left = eval_expr(expr.left, lookup)
        # short-circuit
        return "n" if left == "n" else tri_min(left, eval_expr(expr.right, lookup))

    if isinstance(expr, Or):
        left = eval_expr(expr.left, lookup)
        return "y" if left == "y" else tri_max(left, eval_expr(expr.right, lookup))

    if isinstance(expr, Not):
        return tri_not(eval_expr(expr.operand, lookup))

    if isinstance(expr, Compare):
        return "y" if _compare(expr.op, _operand_value(expr.left, lookup), _operand_value(expr.right, lookup)) else "n"

    raise TypeError(f"not a BoolExpr: {expr!r}")


def _operand_value(operand: Operand, lookup: Lookup) -> str:
    if isinstance(operand, Const):
        return operand.value
    return lookup(operand.name)[0]


def _compare(op: str, left: str, right: str) -> bool:
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is not None and right_num is not None:
        a, b = left_num, right_num
    elif is_tristate_value(left) and is_tristate_value(right):
        a, b = _TRI_TO_INT[left], _TRI_TO_INT[right]
    else:
        a, b = left, right

    if op == "=":
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


_NUMBER_RE = re.compile(r"^-?(?:0[xX][0-9a-fA-F]+|\d+)$")


def _to_number(value: str) -> Optional[int]:
    if not _NUMBER_RE.match(value):
        return None
    return int(value, 0) if value.lstrip("-").lower().startswith("0x") else int(value, 10)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>&&|\|\||!=|<=|>=|<|>|=|!|\(|\))
      | "(?P<dq>(?:[^"\\]|\\.)*)"
      | '(?P<sq>(?:[^'\\]|\\.)*)'
      | (?P<macro>\$\([^)]*\))
      | (?P<word>-?[A-Za-z0-9_]+)
    )
    """,
    re.VERBOSE,
)

_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass(frozen=True)
class Token:
    kind: str  # "op" | "str" | "word"
    text: str


def tokenize(text: str, env: Optional[dict[str, str]] = None) -> list[Token]:
    """Split an expression into tokens.

    $(NAME) macros are substituted from env; anything else macro-like (the
    Kconfig preprocessor's function calls) cannot be evaluated statically and
    raises ExprSyntaxError.
    """
    tokens: list[Token] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        if text[pos:].lstrip().startswith("#"):
            break
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise ExprSyntaxError(f"unexpected character {text[pos:].strip()[:1]!r} in {text.strip()!r}")
        pos = m.end()
        if m.group("op") is not None:
            tokens.append(Token("op", m.group("op")))
        elif m.group("dq") is not None or m.group("sq") is not None:
            raw = m.group("dq") if m.group("dq") is not None else m.group("sq")
            tokens.append(Token("str", _ESCAPE_RE.sub(r"\1", raw)))
        elif m.group("macro") is not None:
            tokens.extend(_expand_macro(m.group("macro"), env))
        else:
            tokens.append(Token("word", m.group("word")))
    return tokens


def _expand_macro(macro: str, env: Optional[dict[str, str]]) -> list[Token]:
    name = macro[2:-1].strip()
    if env is not None and name in env:
        value = env[name]
        return tokenize(value, env) if value else [Token("str", "")]
    raise ExprSyntaxError(f"cannot evaluate preprocessor macro {macro}")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, tokens: list[Token], source: str) -> None:
        self.tokens = tokens
        self.pos = 0
        self.source = source

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise ExprSyntaxError(f"unexpected end of expression in {self.source!r}")
        self.pos += 1
        return token

    def check(self, kind: str, text: str) -> bool:
        token = self.peek()
        if token is not None and token.kind == kind and token.text == text:
            self.pos += 1
            return True
        return False

    def at_if(self) -> bool:
        token = self.peek()
        return token is not None and token.kind == "word" and token.text == "if"

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def expect_end(self) -> None:
        if not self.at_end():
            raise ExprSyntaxError(f"trailing tokens after expression in {self.source!r}")

    def expr(self) -> BoolExpr:
        left = self.and_expr()
        return Or(left, self.expr()) if self.check("op", "||") else left

    def and_expr(self) -> BoolExpr:
        left = self.factor()
        return And(left, self.and_expr()) if self.check("op", "&&") else left

    def factor(self) -> BoolExpr:
        token = self.next()
        if token.kind == "op":
            if token.text == "!":
                return Not(self.factor())
            if token.text == "(":
                inner = self.expr()
                if not self.check("op", ")"):
                    raise ExprSyntaxError(f"missing closing parenthesis in {self.source!r}")
                return inner
            raise ExprSyntaxError(f"malformed expression near {token.text!r} in {self.source!r}")

        left = self._operand(token)
        nxt = self.peek()
        if nxt is not None and nxt.kind == "op" and nxt.text in RELATIONS:
            self.pos += 1
            right_token = self.next()
            if right_token.kind == "op":
                raise ExprSyntaxError(f"expected a value after {nxt.text!r} in {self.source!r}")
            return Compare(nxt.text, left, self._operand(right_token))
        return left

    def _operand(self, token: Token) -> Operand:
        if token.kind == "str":
            return Const(token.text)
        if token.text == "if":
            raise ExprSyntaxError(f"missing expression before 'if' in {self.source!r}")
        if is_tristate_value(token.text) or _NUMBER_RE.match(token.text):
            return Const(token.text)
        return Sym(symbol_key(token.text))


def parse_expr(text: str, env: Optional[dict[str, str]] = None) -> BoolExpr:
    """Parse a complete expression such as ``NET && (INET || IPV6) && !BPF``."""
    parser = _Parser(tokenize(text, env), text)
    if parser.at_end():
        raise ExprSyntaxError("empty expression")
    expr = parser.expr()
    parser.expect_end()
    return expr


def _condition(parser: _Parser) -> Optional[BoolExpr]:
    if parser.at_end():
        return None
    if not parser.at_if():
        raise ExprSyntaxError(f"expected 'if' in {parser.source!r}")
    parser.pos += 1
    cond = parser.expr()
    parser.expect_end()
    return cond


def parse_value_and_condition(
    text: str, env: Optional[dict[str, str]] = None
) -> tuple[BoolExpr, Optional[BoolExpr]]:
    """Parse ``<expr> [if <expr>]`` as found on default / def_bool lines."""
    parser = _Parser(tokenize(text, env), text)
    if parser.at_end():
        raise ExprSyntaxError("missing value")
    value = parser.expr()
    return value, _condition(parser)


def parse_symbol_and_condition(
    text: str, env: Optional[dict[str, str]] = None
) -> tuple[str, Optional[BoolExpr]]:
    """Parse ``SYMBOL [if <expr>]`` as found on select / imply lines."""
    parser = _Parser(tokenize(text, env), text)
    token = parser.next()
    if token.kind != "word" or token.text == "if" or _NUMBER_RE.match(token.text):
        raise ExprSyntaxError(f"expected a symbol name in {text!r}")
    return symbol_key(token.text), _condition(parser)


def parse_prompt_and_condition(
    text: str, env: Optional[dict[str, str]] = None
) -> tuple[Optional[str], Optional[BoolExpr]]:
    """Parse ``["prompt text"] [if <expr>]`` as found after a type keyword."""
    parser = _Parser(tokenize(text, env), text)
    prompt: Optional[str] = None
    token = parser.peek()
    if token is not None and token.kind == "str":
        prompt = token.text
        parser.pos += 1
    elif token is not None and not parser.at_if():
        # unquoted prompt text is accepted by the kernel's parser too
        words = []
        while not parser.at_end() and not parser.at_if():
            words.append(parser.next().text)
        prompt = " ".join(words)
    return prompt, _condition(parser)
