"""
Sandboxed evaluator for the JavaScript snippets shipped inside method
descriptors.

Descriptors carry two kinds of code:
- ``{{expr}}`` placeholders in URLs, params and bodies
  (``{{keyword}}``, ``{{page * pageSize}}``, ``{{parseInt(page) + 1}}``)
- a ``transform`` function mapping the raw provider payload to a track list

Neither is executed by a real JS engine. This module tokenizes and parses a
JavaScript subset and walks the tree in Python. Only the bound variables, a
fixed set of globals (``parseInt``, ``Math``, ``JSON``...) and a fixed set of
string/array/number methods are reachable; there is no access to Python
objects, attributes or builtins. Evaluation is bounded by a step budget.
"""

import json
import logging
import math
import random
import re
import time
from functools import partial
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

MAX_STEPS = 200_000
MAX_SAFE_INTEGER = 2 ** 53
# Longest string or array a transform may build
MAX_LENGTH = 1_000_000

PLACEHOLDER_PATTERN = re.compile(r'\{\{(.*?)\}\}', re.DOTALL)
FULL_PLACEHOLDER_PATTERN = re.compile(r'^\s*\{\{(.*?)\}\}\s*$', re.DOTALL)


class ExpressionError(Exception):
    """Raised for syntax errors, forbidden access and runaway evaluation."""
    pass


def _check_length(size: int) -> None:
    if size > MAX_LENGTH:
        raise ExpressionError(f'Value length {size} exceeds {MAX_LENGTH}')


class _Undefined:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'undefined'

    def __bool__(self):
        return False


UNDEFINED = _Undefined()


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

KEYWORDS = {
    'true', 'false', 'null', 'undefined', 'typeof', 'function', 'return',
    'const', 'let', 'var', 'if', 'else', 'for', 'of', 'break', 'continue',
}

PUNCTUATORS = sorted([
    '===', '!==', '...', '=>', '==', '!=', '<=', '>=', '&&', '||', '??',
    '?.', '++', '--', '+=', '-=', '(', ')', '[', ']', '{', '}', ',', '.',
    ';', ':', '?', '+', '-', '*', '/', '%', '!', '<', '>', '=',
], key=len, reverse=True)

ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', 'b': '\b', 'f': '\f', 'v': '\v', '0': '\0'}

NUMBER_PATTERN = re.compile(r'0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')
IDENT_PATTERN = re.compile(r'[A-Za-z_$][\w$]*')


class Token:
    __slots__ = ('kind', 'value', 'pos')

    def __init__(self, kind: str, value: Any, pos: int):
        self.kind = kind
        self.value = value
        self.pos = pos

    def __repr__(self):
        return f'Token({self.kind}, {self.value!r})'


def _read_string(source: str, start: int) -> tuple:
    quote_char = source[start]
    i = start + 1
    chars = []
    while i < len(source):
        ch = source[i]
        if ch == quote_char:
            return ''.join(chars), i + 1
        if ch == '\\':
            i += 1
            if i >= len(source):
                break
            esc = source[i]
            if esc == 'u' and i + 4 < len(source):
                chars.append(chr(int(source[i + 1:i + 5], 16)))
                i += 5
                continue
            chars.append(ESCAPES.get(esc, esc))
            i += 1
            continue
        chars.append(ch)
        i += 1
    raise ExpressionError(f'Unterminated string at {start}')


def _read_template(source: str, start: int) -> tuple:
    """Split a backtick literal into alternating text / expression source."""
    i = start + 1
    parts = []
    chars = []
    while i < len(source):
        ch = source[i]
        if ch == '`':
            parts.append(''.join(chars))
            return parts, i + 1
        if ch == '\\' and i + 1 < len(source):
            chars.append(ESCAPES.get(source[i + 1], source[i + 1]))
            i += 2
            continue
        if ch == '$' and source.startswith('${', i):
            parts.append(''.join(chars))
            chars = []
            depth = 1
            j = i + 2
            while j < len(source) and depth:
                if source[j] in '\'"':
                    _, j = _read_string(source, j)
                    continue
                if source[j] == '{':
                    depth += 1
                elif source[j] == '}':
                    depth -= 1
                j += 1
            if depth:
                break
            parts.append(source[i + 2:j - 1])
            i = j
            continue
        chars.append(ch)
        i += 1
    raise ExpressionError(f'Unterminated template literal at {start}')


def tokenize(source: str) -> List[Token]:
    tokens = []
    i = 0
    length = len(source)
    while i < length:
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        if source.startswith('//', i):
            end = source.find('\n', i)
            i = length if end == -1 else end + 1
            continue
        if source.startswith('/*', i):
            end = source.find('*/', i + 2)
            if end == -1:
                raise ExpressionError('Unterminated comment')
            i = end + 2
            continue
        if ch in '\'"':
            value, i_next = _read_string(source, i)
            tokens.append(Token('str', value, i))
            i = i_next
            continue
        if ch == '`':
            parts, i_next = _read_template(source, i)
            tokens.append(Token('template', parts, i))
            i = i_next
            continue
        if ch.isdigit() or (ch == '.' and i + 1 < length and source[i + 1].isdigit()):
            match = NUMBER_PATTERN.match(source, i)
            text = match.group(0)
            if text[:2].lower() == '0x':
                value = int(text, 16)
            elif any(c in text for c in '.eE'):
                value = _normalize_number(float(text))
            else:
                value = int(text)
            tokens.append(Token('num', value, i))
            i = match.end()
            continue
        match = IDENT_PATTERN.match(source, i)
        if match:
            word = match.group(0)
            tokens.append(Token('kw' if word in KEYWORDS else 'ident', word, i))
            i = match.end()
            continue
        for punct in PUNCTUATORS:
            if source.startswith(punct, i):
                # "a ?.5 : b" is a ternary, not optional chaining
                if punct == '?.' and i + 2 < length and source[i + 2].isdigit():
                    continue
                tokens.append(Token('op', punct, i))
                i += len(punct)
                break
        else:
            raise ExpressionError(f'Unexpected character {ch!r} at {i}')
    tokens.append(Token('eof', None, length))
    return tokens


# ---------------------------------------------------------------------------
# Parser (Pratt for expressions, recursive descent for statements)
# ---------------------------------------------------------------------------

BINARY_PRECEDENCE = {
    '??': 4,
    '||': 5,
    '&&': 6,
    '==': 9, '!=': 9, '===': 9, '!==': 9,
    '<': 10, '>': 10, '<=': 10, '>=': 10,
    '+': 12, '-': 12,
    '*': 13, '/': 13, '%': 13,
}
ASSIGN_OPS = ('=', '+=', '-=')
TERNARY_PRECEDENCE = 3
ASSIGN_PRECEDENCE = 2
PREFIX_PRECEDENCE = 14


class Parser:
    def __init__(self, source: str):
        self.tokens = tokenize(source)
        self.index = 0

    # -- token helpers --
    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def peek(self, offset: int = 1) -> Token:
        idx = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[idx]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != 'eof':
            self.index += 1
        return token

    def at(self, kind: str, value: Any = None) -> bool:
        token = self.current
        return token.kind == kind and (value is None or token.value == value)

    def at_op(self, *values) -> bool:
        return self.current.kind == 'op' and self.current.value in values

    def accept_op(self, value: str) -> bool:
        if self.at_op(value):
            self.advance()
            return True
        return False

    def expect_op(self, value: str) -> Token:
        if not self.at_op(value):
            raise ExpressionError(f'Expected {value!r} at {self.current.pos}, got {self.current.value!r}')
        return self.advance()

    def expect_ident(self) -> str:
        if self.current.kind != 'ident':
            raise ExpressionError(f'Expected identifier at {self.current.pos}')
        return self.advance().value

    # -- entry points --
    def parse_expression_only(self):
        node = self.parse_expression()
        if not self.at('eof'):
            raise ExpressionError(f'Unexpected token {self.current.value!r} at {self.current.pos}')
        return node

    def parse_function_only(self):
        node = self.parse_expression()
        self.accept_op(';')
        if not self.at('eof'):
            raise ExpressionError(f'Unexpected token {self.current.value!r} after function')
        if node[0] != 'func':
            raise ExpressionError('Transform source is not a function')
        return node

    # -- expressions --
    def parse_expression(self, min_bp: int = 0):
        left = self.parse_prefix()

        while True:
            token = self.current
            if token.kind != 'op':
                break
            op = token.value

            if op in ('.', '?.', '[', '('):
                left = self.parse_postfix(left)
                continue
            if op in ('++', '--'):
                self.advance()
                left = ('update', op, left, False)
                continue
            if op in ASSIGN_OPS:
                if min_bp > ASSIGN_PRECEDENCE:
                    break
                self.advance()
                value = self.parse_expression(ASSIGN_PRECEDENCE)
                left = ('assign', op, left, value)
                continue
            if op == '?':
                if min_bp > TERNARY_PRECEDENCE:
                    break
                self.advance()
                consequent = self.parse_expression(ASSIGN_PRECEDENCE)
                self.expect_op(':')
                alternate = self.parse_expression(TERNARY_PRECEDENCE)
                left = ('cond', left, consequent, alternate)
                continue
            bp = BINARY_PRECEDENCE.get(op)
            if bp is None or bp <= min_bp:
                break
            self.advance()
            right = self.parse_expression(bp)
            if op in ('&&', '||', '??'):
                left = ('logical', op, left, right)
            else:
                left = ('binary', op, left, right)
        return left

    def parse_postfix(self, left):
        op = self.advance().value
        if op == '.':
            return ('member', left, ('str', self._property_name()), False)
        if op == '?.':
            if self.accept_op('('):
                return ('call', left, self.parse_arguments(), True)
            if self.accept_op('['):
                key = self.parse_expression()
                self.expect_op(']')
                return ('member', left, key, True)
            return ('member', left, ('str', self._property_name()), True)
        if op == '[':
            key = self.parse_expression()
            self.expect_op(']')
            return ('member', left, key, False)
        return ('call', left, self.parse_arguments(), False)

    def _property_name(self) -> str:
        token = self.advance()
        if token.kind not in ('ident', 'kw'):
            raise ExpressionError(f'Expected property name at {token.pos}')
        return token.value

    def parse_arguments(self) -> list:
        args = []
        while not self.at_op(')'):
            if self.accept_op('...'):
                args.append(('spread', self.parse_expression(ASSIGN_PRECEDENCE)))
            else:
                args.append(self.parse_expression(ASSIGN_PRECEDENCE))
            if not self.accept_op(','):
                break
        self.expect_op(')')
        return args

    def parse_prefix(self):
        token = self.advance()
        kind, value = token.kind, token.value

        if kind == 'num':
            return ('num', value)
        if kind == 'str':
            return ('str', value)
        if kind == 'template':
            return ('template', [
                part if idx % 2 == 0 else Parser(part).parse_expression_only()
                for idx, part in enumerate(value)
            ])
        if kind == 'ident':
            if self.at_op('=>'):
                self.advance()
                return self._arrow_body([value])
            return ('ident', value)
        if kind == 'kw':
            if value == 'true':
                return ('const', True)
            if value == 'false':
                return ('const', False)
            if value == 'null':
                return ('const', None)
            if value == 'undefined':
                return ('const', UNDEFINED)
            if value == 'typeof':
                return ('typeof', self.parse_expression(PREFIX_PRECEDENCE))
            if value == 'function':
                return self.parse_function_expression()
            raise ExpressionError(f'Unexpected keyword {value!r} at {token.pos}')
        if kind == 'op':
            if value in ('!', '-', '+'):
                return ('unary', value, self.parse_expression(PREFIX_PRECEDENCE))
            if value in ('++', '--'):
                return ('update', value, self.parse_expression(PREFIX_PRECEDENCE), True)
            if value == '(':
                if self._looks_like_arrow():
                    params = []
                    while not self.at_op(')'):
                        params.append(self.expect_ident())
                        if not self.accept_op(','):
                            break
                    self.expect_op(')')
                    self.expect_op('=>')
                    return self._arrow_body(params)
                inner = self.parse_expression()
                self.expect_op(')')
                return inner
            if value == '[':
                return self.parse_array_literal()
            if value == '{':
                return self.parse_object_literal()
        raise ExpressionError(f'Unexpected token {value!r} at {token.pos}')

    def _looks_like_arrow(self) -> bool:
        depth = 1
        offset = 0
        while True:
            token = self.peek(offset)
            if token.kind == 'eof':
                return False
            if token.kind == 'op' and token.value in ('(', '[', '{'):
                depth += 1
            elif token.kind == 'op' and token.value in (')', ']', '}'):
                depth -= 1
                if depth == 0:
                    nxt = self.peek(offset + 1)
                    return nxt.kind == 'op' and nxt.value == '=>'
            offset += 1

    def _arrow_body(self, params: list):
        if self.at_op('{'):
            self.advance()
            return ('func', params, self.parse_block_body())
        return ('func', params, ('expr_body', self.parse_expression(ASSIGN_PRECEDENCE)))

    def parse_function_expression(self):
        if self.current.kind == 'ident':
            self.advance()
        self.expect_op('(')
        params = []
        while not self.at_op(')'):
            params.append(self.expect_ident())
            if not self.accept_op(','):
                break
        self.expect_op(')')
        self.expect_op('{')
        return ('func', params, self.parse_block_body())

    def parse_array_literal(self):
        items = []
        while not self.at_op(']'):
            if self.accept_op('...'):
                items.append(('spread', self.parse_expression(ASSIGN_PRECEDENCE)))
            else:
                items.append(self.parse_expression(ASSIGN_PRECEDENCE))
            if not self.accept_op(','):
                break
        self.expect_op(']')
        return ('array', items)

    def parse_object_literal(self):
        props = []
        while not self.at_op('}'):
            if self.accept_op('...'):
                props.append(('spread', self.parse_expression(ASSIGN_PRECEDENCE)))
            else:
                token = self.advance()
                if token.kind in ('ident', 'kw', 'str'):
                    key = ('str', token.value)
                elif token.kind == 'num':
                    key = ('str', _to_string(token.value))
                elif token.kind == 'op' and token.value == '[':
                    key = self.parse_expression()
                    self.expect_op(']')
                else:
                    raise ExpressionError(f'Bad object key at {token.pos}')
                if self.accept_op(':'):
                    value = self.parse_expression(ASSIGN_PRECEDENCE)
                elif token.kind == 'ident':
                    value = ('ident', token.value)
                else:
                    raise ExpressionError(f'Expected ":" at {self.current.pos}')
                props.append(('prop', key, value))
            if not self.accept_op(','):
                break
        self.expect_op('}')
        return ('object', props)

    # -- statements --
    def parse_block_body(self):
        statements = []
        while not self.at_op('}'):
            if self.at('eof'):
                raise ExpressionError('Unterminated block')
            statements.append(self.parse_statement())
        self.expect_op('}')
        return ('block', statements)

    def parse_statement(self):
        token = self.current
        if token.kind == 'op' and token.value == '{':
            self.advance()
            return self.parse_block_body()
        if token.kind == 'op' and token.value == ';':
            self.advance()
            return ('block', [])
        if token.kind == 'kw':
            if token.value in ('const', 'let', 'var'):
                self.advance()
                node = self.parse_declarations()
                self.accept_op(';')
                return node
            if token.value == 'return':
                self.advance()
                if self.at_op(';', '}') or self.at('eof'):
                    value = ('const', UNDEFINED)
                else:
                    value = self.parse_expression()
                self.accept_op(';')
                return ('return', value)
            if token.value == 'if':
                self.advance()
                self.expect_op('(')
                test = self.parse_expression()
                self.expect_op(')')
                consequent = self.parse_statement()
                alternate = None
                if self.at('kw', 'else'):
                    self.advance()
                    alternate = self.parse_statement()
                return ('if', test, consequent, alternate)
            if token.value == 'for':
                return self.parse_for()
            if token.value in ('break', 'continue'):
                self.advance()
                self.accept_op(';')
                return (token.value,)
        expr = self.parse_expression()
        self.accept_op(';')
        return ('expr_stmt', expr)

    def parse_declarations(self):
        declarations = []
        while True:
            name = self.expect_ident()
            init = None
            if self.accept_op('='):
                init = self.parse_expression(ASSIGN_PRECEDENCE)
            declarations.append((name, init))
            if not self.accept_op(','):
                break
        return ('declare', declarations)

    def parse_for(self):
        self.advance()
        self.expect_op('(')
        if self.at('kw') and self.current.value in ('const', 'let', 'var') \
                and self.peek(2).kind == 'kw' and self.peek(2).value == 'of':
            self.advance()
            name = self.expect_ident()
            self.advance()
            iterable = self.parse_expression()
            self.expect_op(')')
            return ('for_of', name, iterable, self.parse_statement())

        init = None
        if not self.at_op(';'):
            if self.at('kw') and self.current.value in ('const', 'let', 'var'):
                self.advance()
                init = self.parse_declarations()
            else:
                init = ('expr_stmt', self.parse_expression())
        self.expect_op(';')
        test = None if self.at_op(';') else self.parse_expression()
        self.expect_op(';')
        update = None if self.at_op(')') else self.parse_expression()
        self.expect_op(')')
        return ('for', init, test, update, self.parse_statement())


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize_number(value):
    """Collapse integral floats to int so JSON bodies keep 30, not 30.0."""
    if isinstance(value, float) and value.is_integer() and abs(value) < MAX_SAFE_INTEGER:
        return int(value)
    return value


def truthy(value) -> bool:
    if value is None or value is UNDEFINED or value is False:
        return False
    if _is_number(value):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ''
    return True


def _to_string(value) -> str:
    if value is None:
        return 'null'
    if value is UNDEFINED:
        return 'undefined'
    if value is True:
        return 'true'
    if value is False:
        return 'false'
    if isinstance(value, str):
        return value
    if _is_number(value):
        if isinstance(value, float):
            if math.isnan(value):
                return 'NaN'
            if math.isinf(value):
                return 'Infinity' if value > 0 else '-Infinity'
            value = _normalize_number(value)
        return str(value)
    if isinstance(value, list):
        return ','.join('' if item is None or item is UNDEFINED else _to_string(item) for item in value)
    if isinstance(value, dict):
        return '[object Object]'
    return 'function'


def _to_number(value):
    if _is_number(value):
        return value
    if value is True:
        return 1
    if value is False or value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            if text[:2].lower() == '0x':
                return int(text, 16)
            return _normalize_number(float(text))
        except ValueError:
            return math.nan
    if isinstance(value, list):
        if not value:
            return 0
        if len(value) == 1:
            return _to_number(_to_string(value[0]))
    return math.nan


def _typeof(value) -> str:
    if value is UNDEFINED:
        return 'undefined'
    if isinstance(value, bool):
        return 'boolean'
    if _is_number(value):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, (JsFunction, Builtin)):
        return 'function'
    return 'object'


def _strict_equals(left, right) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    if isinstance(left, (list, dict)):
        return left is right
    return left == right


def _loose_equals(left, right) -> bool:
    nullish = (None, UNDEFINED)
    if left in nullish or right in nullish:
        return left in nullish and right in nullish
    if _strict_equals(left, right):
        return True
    if isinstance(left, (list, dict)) or isinstance(right, (list, dict)):
        return False
    return _to_number(left) == _to_number(right)


def to_python(value):
    """Convert an evaluation result into plain JSON-compatible Python data."""
    if value is UNDEFINED or isinstance(value, (JsFunction, Builtin)):
        return None
    if isinstance(value, float):
        return _normalize_number(value)
    if isinstance(value, list):
        return [to_python(item) for item in value]
    if isinstance(value, dict):
        return {
            key: to_python(item) for key, item in value.items()
            if item is not UNDEFINED and not isinstance(item, (JsFunction, Builtin))
        }
    return value


class Builtin:
    """Allow-listed native function exposed to sandboxed code."""
    __slots__ = ('func', 'name')

    def __init__(self, func: Callable, name: str):
        self.func = func
        self.name = name

    def __repr__(self):
        return f'Builtin({self.name})'


class JsFunction:
    __slots__ = ('params', 'body', 'scope', 'interpreter')

    def __init__(self, params, body, scope, interpreter):
        self.params = params
        self.body = body
        self.scope = scope
        self.interpreter = interpreter

    def __call__(self, *args):
        return self.interpreter.call(self, list(args))


class Scope:
    __slots__ = ('vars', 'parent')

    def __init__(self, variables: Optional[dict] = None, parent: Optional['Scope'] = None):
        self.vars = dict(variables or {})
        self.parent = parent

    def lookup(self, name: str):
        scope = self
        while scope is not None:
            if name in scope.vars:
                return scope.vars[name]
            scope = scope.parent
        raise KeyError(name)

    def assign(self, name: str, value) -> None:
        scope = self
        while scope is not None:
            if name in scope.vars:
                scope.vars[name] = value
                return
            scope = scope.parent
        raise ExpressionError(f'{name} is not defined')


class _Return(Exception):
    def __init__(self, value):
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------

def _parse_int(value=UNDEFINED, radix=UNDEFINED):
    text = _to_string(value).strip().lower()
    base = 0
    if radix is not UNDEFINED:
        number = _to_number(radix)
        base = 0 if isinstance(number, float) and math.isnan(number) else int(number)

    sign = ''
    if text and text[0] in '+-':
        sign, text = text[0], text[1:]
    if base in (0, 16) and text.startswith('0x'):
        text, base = text[2:], 16
    base = base or 10
    if not 2 <= base <= 36:
        return math.nan

    digits = '0123456789abcdefghijklmnopqrstuvwxyz'[:base]
    match = re.match(f'[{digits}]+', text)
    if not match:
        return math.nan
    number = int(match.group(0), base)
    return -number if sign == '-' else number


def _parse_float(value=UNDEFINED):
    match = re.match(r'^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?', _to_string(value).strip())
    if not match:
        return math.nan
    return _normalize_number(float(match.group(0)))


def _js_round(value=UNDEFINED):
    number = _to_number(value)
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return number
    return math.floor(number + 0.5)


def _slice_bounds(length: int, start=UNDEFINED, end=UNDEFINED) -> tuple:
    def clamp(value, default):
        if value is UNDEFINED:
            return default
        number = int(_to_number(value) or 0)
        if number < 0:
            number = max(length + number, 0)
        return min(number, length)
    return clamp(start, 0), clamp(end, length)


class Interpreter:
    def __init__(self, max_steps: int = MAX_STEPS):
        self.max_steps = max_steps
        self.steps = 0
        self.globals = Scope(self._build_globals())

    # -- globals --
    def _build_globals(self) -> Dict[str, Any]:
        def b(func, name):
            return Builtin(func, name)

        def json_stringify(value=UNDEFINED, *_):
            if value is UNDEFINED:
                return UNDEFINED
            return json.dumps(to_python(value), ensure_ascii=False, separators=(',', ':'))

        def json_parse(text=UNDEFINED, *_):
            try:
                return json.loads(_to_string(text))
            except ValueError as e:
                raise ExpressionError(f'JSON.parse: {e}')

        def math_fn(func):
            def wrapper(*args):
                numbers = [_to_number(arg) for arg in args]
                try:
                    return _normalize_number(func(*numbers))
                except (TypeError, ValueError, OverflowError):
                    return math.nan
            return wrapper

        def object_assign(target=UNDEFINED, *sources):
            if not isinstance(target, dict):
                raise ExpressionError('Object.assign target must be an object')
            for source in sources:
                if isinstance(source, dict):
                    target.update(source)
            return target

        return {
            'parseInt': b(_parse_int, 'parseInt'),
            'parseFloat': b(_parse_float, 'parseFloat'),
            'String': b(lambda value='', *_: _to_string(value), 'String'),
            'Number': b(lambda value=0, *_: _to_number(value), 'Number'),
            'Boolean': b(lambda value=UNDEFINED, *_: truthy(value), 'Boolean'),
            'isNaN': b(lambda value=UNDEFINED, *_: isinstance(_to_number(value), float) and math.isnan(_to_number(value)), 'isNaN'),
            'encodeURIComponent': b(lambda value=UNDEFINED, *_: quote(_to_string(value), safe="-_.!~*'()"), 'encodeURIComponent'),
            'decodeURIComponent': b(lambda value=UNDEFINED, *_: unquote(_to_string(value)), 'decodeURIComponent'),
            'Math': {
                'floor': b(math_fn(math.floor), 'Math.floor'),
                'ceil': b(math_fn(math.ceil), 'Math.ceil'),
                'round': b(_js_round, 'Math.round'),
                'abs': b(math_fn(abs), 'Math.abs'),
                'max': b(math_fn(lambda *n: max(n) if n else -math.inf), 'Math.max'),
                'min': b(math_fn(lambda *n: min(n) if n else math.inf), 'Math.min'),
                'random': b(lambda *_: random.random(), 'Math.random'),
                'PI': math.pi,
            },
            'JSON': {
                'stringify': b(json_stringify, 'JSON.stringify'),
                'parse': b(json_parse, 'JSON.parse'),
            },
            'Array': {
                'isArray': b(lambda value=UNDEFINED, *_: isinstance(value, list), 'Array.isArray'),
            },
            'Object': {
                'keys': b(lambda value=UNDEFINED, *_: list(value.keys()) if isinstance(value, dict) else [], 'Object.keys'),
                'values': b(lambda value=UNDEFINED, *_: list(value.values()) if isinstance(value, dict) else [], 'Object.values'),
                'entries': b(lambda value=UNDEFINED, *_: [[k, v] for k, v in value.items()] if isinstance(value, dict) else [], 'Object.entries'),
                'assign': b(object_assign, 'Object.assign'),
            },
            'Date': {
                'now': b(lambda *_: int(time.time() * 1000), 'Date.now'),
            },
        }

    # -- public --
    def evaluate(self, node, variables: Optional[dict] = None):
        scope = Scope(variables, self.globals)
        return self.eval(node, scope)

    def call(self, func, args: list):
        if isinstance(func, Builtin):
            return func.func(*args)
        if not isinstance(func, JsFunction):
            raise ExpressionError(f'{_typeof(func)} is not a function')
        scope = Scope({
            name: args[idx] if idx < len(args) else UNDEFINED
            for idx, name in enumerate(func.params)
        }, func.scope)
        body = func.body
        if body[0] == 'expr_body':
            return self.eval(body[1], scope)
        try:
            self.execute(body, scope)
        except _Return as ret:
            return ret.value
        return UNDEFINED

    # -- statements --
    def execute(self, node, scope: Scope) -> None:
        self._tick()
        kind = node[0]
        if kind == 'block':
            inner = Scope(parent=scope)
            for statement in node[1]:
                self.execute(statement, inner)
        elif kind == 'declare':
            for name, init in node[1]:
                scope.vars[name] = UNDEFINED if init is None else self.eval(init, scope)
        elif kind == 'return':
            raise _Return(self.eval(node[1], scope))
        elif kind == 'if':
            if truthy(self.eval(node[1], scope)):
                self.execute(node[2], scope)
            elif node[3] is not None:
                self.execute(node[3], scope)
        elif kind == 'for_of':
            iterable = self.eval(node[2], scope)
            if isinstance(iterable, str):
                iterable = list(iterable)
            if not isinstance(iterable, list):
                raise ExpressionError(f'{_typeof(iterable)} is not iterable')
            for item in list(iterable):
                loop_scope = Scope({node[1]: item}, scope)
                try:
                    self.execute(node[3], loop_scope)
                except _Break:
                    break
                except _Continue:
                    continue
        elif kind == 'for':
            loop_scope = Scope(parent=scope)
            if node[1] is not None:
                self.execute(node[1], loop_scope)
            while node[2] is None or truthy(self.eval(node[2], loop_scope)):
                try:
                    self.execute(node[4], loop_scope)
                except _Break:
                    break
                except _Continue:
                    pass
                if node[3] is not None:
                    self.eval(node[3], loop_scope)
        elif kind == 'break':
            raise _Break()
        elif kind == 'continue':
            raise _Continue()
        elif kind == 'expr_stmt':
            self.eval(node[1], scope)
        else:
            raise ExpressionError(f'Unknown statement {kind}')

    # -- expressions --
    def _tick(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise ExpressionError('Evaluation step budget exceeded')

    def eval(self, node, scope: Scope):
        self._tick()
        kind = node[0]

        if kind in ('num', 'str', 'const'):
            return node[1]
        if kind == 'ident':
            try:
                return scope.lookup(node[1])
            except KeyError:
                raise ExpressionError(f'{node[1]} is not defined')
        if kind == 'template':
            pieces = [
                part if idx % 2 == 0 else _to_string(self.eval(part, scope))
                for idx, part in enumerate(node[1])
            ]
            _check_length(sum(len(piece) for piece in pieces))
            return ''.join(pieces)
        if kind == 'member':
            obj = self.eval(node[1], scope)
            if node[3] and obj in (None, UNDEFINED):
                return UNDEFINED
            return self.get_member(obj, self.eval(node[2], scope))
        if kind == 'call':
            return self._eval_call(node, scope)
        if kind == 'unary':
            value = self.eval(node[2], scope)
            if node[1] == '!':
                return not truthy(value)
            number = _to_number(value)
            return _normalize_number(-number) if node[1] == '-' else number
        if kind == 'typeof':
            if node[1][0] == 'ident':
                try:
                    return _typeof(scope.lookup(node[1][1]))
                except KeyError:
                    return 'undefined'
            return _typeof(self.eval(node[1], scope))
        if kind == 'binary':
            return self._binary(node[1], self.eval(node[2], scope), self.eval(node[3], scope))
        if kind == 'logical':
            left = self.eval(node[2], scope)
            op = node[1]
            if op == '&&':
                return self.eval(node[3], scope) if truthy(left) else left
            if op == '||':
                return left if truthy(left) else self.eval(node[3], scope)
            return self.eval(node[3], scope) if left in (None, UNDEFINED) else left
        if kind == 'cond':
            branch = node[2] if truthy(self.eval(node[1], scope)) else node[3]
            return self.eval(branch, scope)
        if kind == 'array':
            items = []
            for item in node[1]:
                if item[0] == 'spread':
                    items.extend(self._spread_items(self.eval(item[1], scope)))
                else:
                    items.append(self.eval(item, scope))
            return items
        if kind == 'object':
            result = {}
            for prop in node[1]:
                if prop[0] == 'spread':
                    source = self.eval(prop[1], scope)
                    if isinstance(source, dict):
                        result.update(source)
                    elif isinstance(source, list):
                        result.update({str(i): v for i, v in enumerate(source)})
                    continue
                key = self._property_key(self.eval(prop[1], scope))
                result[key] = self.eval(prop[2], scope)
            return result
        if kind == 'func':
            return JsFunction(node[1], node[2], scope, self)
        if kind == 'assign':
            return self._assign(node, scope)
        if kind == 'update':
            return self._update(node, scope)
        raise ExpressionError(f'Unknown expression {kind}')

    def _eval_call(self, node, scope: Scope):
        callee = self.eval(node[1], scope)
        if node[3] and callee in (None, UNDEFINED):
            return UNDEFINED
        args = []
        for arg in node[2]:
            if arg[0] == 'spread':
                args.extend(self._spread_items(self.eval(arg[1], scope)))
            else:
                args.append(self.eval(arg, scope))
        return self.call(callee, args)

    def _spread_items(self, value) -> list:
        if isinstance(value, list):
            return list(value)
        if isinstance(value, str):
            return list(value)
        raise ExpressionError(f'{_typeof(value)} is not iterable')

    def _property_key(self, key) -> str:
        name = _to_string(key)
        if name.startswith('__'):
            raise ExpressionError(f'Access to {name!r} is not allowed')
        return name

    def _binary(self, op: str, left, right):
        if op == '+':
            if isinstance(left, (str, list, dict)) or isinstance(right, (str, list, dict)):
                left, right = _to_string(left), _to_string(right)
                _check_length(len(left) + len(right))
                return left + right
            return _normalize_number(_to_number(left) + _to_number(right))
        if op in ('-', '*', '/', '%'):
            a, b = _to_number(left), _to_number(right)
            if op == '-':
                return _normalize_number(a - b)
            if op == '*':
                return _normalize_number(a * b)
            if op == '/':
                if b == 0:
                    if a == 0 or (isinstance(a, float) and math.isnan(a)):
                        return math.nan
                    return math.inf if a > 0 else -math.inf
                return _normalize_number(a / b)
            if b == 0:
                return math.nan
            return _normalize_number(math.fmod(a, b))
        if op == '===':
            return _strict_equals(left, right)
        if op == '!==':
            return not _strict_equals(left, right)
        if op == '==':
            return _loose_equals(left, right)
        if op == '!=':
            return not _loose_equals(left, right)
        if isinstance(left, str) and isinstance(right, str):
            a, b = left, right
        else:
            a, b = _to_number(left), _to_number(right)
        try:
            if op == '<':
                return a < b
            if op == '>':
                return a > b
            if op == '<=':
                return a <= b
            if op == '>=':
                return a >= b
        except TypeError:
            return False
        raise ExpressionError(f'Unknown operator {op}')

    def _assign(self, node, scope: Scope):
        op, target, value_node = node[1], node[2], node[3]
        value = self.eval(value_node, scope)
        if op != '=':
            current = self.eval(target, scope)
            value = self._binary(op[0], current, value)
        self._store(target, value, scope)
        return value

    def _update(self, node, scope: Scope):
        op, target, prefix = node[1], node[2], node[3]
        old = _to_number(self.eval(target, scope))
        new = _normalize_number(old + 1 if op == '++' else old - 1)
        self._store(target, new, scope)
        return new if prefix else old

    def _store(self, target, value, scope: Scope) -> None:
        if target[0] == 'ident':
            scope.assign(target[1], value)
            return
        if target[0] == 'member':
            obj = self.eval(target[1], scope)
            key = self.eval(target[2], scope)
            if isinstance(obj, dict):
                obj[self._property_key(key)] = value
                return
            if isinstance(obj, list) and _is_number(key):
                index = int(key)
                if index < 0:
                    raise ExpressionError('Negative array index')
                _check_length(index + 1)
                while len(obj) <= index:
                    obj.append(UNDEFINED)
                obj[index] = value
                return
            raise ExpressionError(f'Cannot set property on {_typeof(obj)}')
        raise ExpressionError('Invalid assignment target')

    # -- member access --
    def get_member(self, obj, key):
        if obj is None or obj is UNDEFINED:
            raise ExpressionError(f'Cannot read property {_to_string(key)!r} of {_to_string(obj)}')

        if isinstance(obj, list):
            if _is_number(key):
                index = int(key)
                return obj[index] if 0 <= index < len(obj) and index == key else UNDEFINED
            name = self._property_key(key)
            if name == 'length':
                return len(obj)
            if name.isdigit():
                index = int(name)
                return obj[index] if index < len(obj) else UNDEFINED
            method = getattr(self, f'_array_{name}', None)
            return Builtin(partial(method, obj), name) if method else UNDEFINED

        if isinstance(obj, str):
            if _is_number(key):
                index = int(key)
                return obj[index] if 0 <= index < len(obj) else UNDEFINED
            name = self._property_key(key)
            if name == 'length':
                return len(obj)
            method = STRING_METHODS.get(name)
            return Builtin(partial(method, obj), name) if method else UNDEFINED

        if isinstance(obj, dict):
            name = self._property_key(key)
            return obj.get(name, UNDEFINED)

        if _is_number(obj):
            name = self._property_key(key)
            method = NUMBER_METHODS.get(name)
            return Builtin(partial(method, obj), name) if method else UNDEFINED

        return UNDEFINED

    # -- array methods (need the interpreter for callbacks) --
    def _callback(self, func):
        if not isinstance(func, (JsFunction, Builtin)):
            raise ExpressionError(f'{_typeof(func)} is not a function')
        return lambda *args: self.call(func, list(args))

    def _array_map(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        return [cb(item, idx, arr) for idx, item in enumerate(list(arr))]

    def _array_filter(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        return [item for idx, item in enumerate(list(arr)) if truthy(cb(item, idx, arr))]

    def _array_find(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        for idx, item in enumerate(list(arr)):
            if truthy(cb(item, idx, arr)):
                return item
        return UNDEFINED

    def _array_findIndex(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        for idx, item in enumerate(list(arr)):
            if truthy(cb(item, idx, arr)):
                return idx
        return -1

    def _array_some(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        return any(truthy(cb(item, idx, arr)) for idx, item in enumerate(list(arr)))

    def _array_every(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        return all(truthy(cb(item, idx, arr)) for idx, item in enumerate(list(arr)))

    def _array_forEach(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        for idx, item in enumerate(list(arr)):
            cb(item, idx, arr)
        return UNDEFINED

    def _array_reduce(self, arr, func=UNDEFINED, *initial):
        cb = self._callback(func)
        items = list(arr)
        if initial:
            acc, start = initial[0], 0
        elif items:
            acc, start = items[0], 1
        else:
            raise ExpressionError('Reduce of empty array with no initial value')
        for idx in range(start, len(items)):
            acc = cb(acc, items[idx], idx, arr)
        return acc

    def _array_flatMap(self, arr, func=UNDEFINED, *_):
        cb = self._callback(func)
        result = []
        for idx, item in enumerate(list(arr)):
            mapped = cb(item, idx, arr)
            if isinstance(mapped, list):
                result.extend(mapped)
            else:
                result.append(mapped)
        return result

    def _array_flat(self, arr, depth=1, *_):
        depth = int(_to_number(depth)) if depth is not UNDEFINED else 1

        def flatten(items, level):
            out = []
            for item in items:
                if isinstance(item, list) and level > 0:
                    out.extend(flatten(item, level - 1))
                else:
                    out.append(item)
            return out
        return flatten(arr, depth)

    def _array_join(self, arr, sep=UNDEFINED, *_):
        separator = ',' if sep is UNDEFINED else _to_string(sep)
        pieces = ['' if item in (None, UNDEFINED) else _to_string(item) for item in arr]
        _check_length(sum(len(piece) for piece in pieces) + len(separator) * max(len(pieces) - 1, 0))
        return separator.join(pieces)

    def _array_slice(self, arr, start=UNDEFINED, end=UNDEFINED, *_):
        lo, hi = _slice_bounds(len(arr), start, end)
        return arr[lo:hi]

    def _array_concat(self, arr, *others):
        _check_length(len(arr) + sum(len(other) if isinstance(other, list) else 1 for other in others))
        result = list(arr)
        for other in others:
            if isinstance(other, list):
                result.extend(other)
            else:
                result.append(other)
        return result

    def _array_includes(self, arr, value=UNDEFINED, *_):
        return any(_strict_equals(item, value) for item in arr)

    def _array_indexOf(self, arr, value=UNDEFINED, *_):
        for idx, item in enumerate(arr):
            if _strict_equals(item, value):
                return idx
        return -1

    def _array_push(self, arr, *items):
        _check_length(len(arr) + len(items))
        arr.extend(items)
        return len(arr)

    def _array_reverse(self, arr, *_):
        arr.reverse()
        return arr


def _str_split(text, sep=UNDEFINED, limit=UNDEFINED, *_):
    if sep is UNDEFINED:
        parts = [text]
    elif _to_string(sep) == '':
        parts = list(text)
    else:
        parts = text.split(_to_string(sep))
    if limit is not UNDEFINED:
        parts = parts[:int(_to_number(limit))]
    return parts


def _str_slice(text, start=UNDEFINED, end=UNDEFINED, *_):
    lo, hi = _slice_bounds(len(text), start, end)
    return text[lo:hi]


def _str_substring(text, start=UNDEFINED, end=UNDEFINED, *_):
    def clamp(value, default):
        if value is UNDEFINED:
            return default
        number = _to_number(value)
        if isinstance(number, float) and math.isnan(number):
            return 0
        return min(max(int(number), 0), len(text))
    lo, hi = clamp(start, 0), clamp(end, len(text))
    if lo > hi:
        lo, hi = hi, lo
    return text[lo:hi]


def _str_pad_start(text, length=0, fill=' ', *_):
    target = int(_to_number(length))
    _check_length(target)
    fill = _to_string(fill) if fill is not UNDEFINED else ' '
    if len(text) >= target or not fill:
        return text
    padding = (fill * target)[:target - len(text)]
    return padding + text


STRING_METHODS = {
    'toString': lambda text, *_: text,
    'trim': lambda text, *_: text.strip(),
    'toLowerCase': lambda text, *_: text.lower(),
    'toUpperCase': lambda text, *_: text.upper(),
    'split': _str_split,
    'replace': lambda text, old=UNDEFINED, new='', *_: text.replace(_to_string(old), _to_string(new), 1),
    'replaceAll': lambda text, old=UNDEFINED, new='', *_: text.replace(_to_string(old), _to_string(new)),
    'includes': lambda text, sub=UNDEFINED, *_: _to_string(sub) in text,
    'startsWith': lambda text, sub=UNDEFINED, *_: text.startswith(_to_string(sub)),
    'endsWith': lambda text, sub=UNDEFINED, *_: text.endswith(_to_string(sub)),
    'indexOf': lambda text, sub=UNDEFINED, *_: text.find(_to_string(sub)),
    'charAt': lambda text, idx=0, *_: text[int(_to_number(idx))] if 0 <= int(_to_number(idx)) < len(text) else '',
    'slice': _str_slice,
    'substring': _str_substring,
    'padStart': _str_pad_start,
}

NUMBER_METHODS = {
    'toString': lambda number, *_: _to_string(number),
    'toFixed': lambda number, digits=0, *_: f'{number:.{int(_to_number(digits))}f}',
}


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def evaluate(expression: str, variables: Optional[dict] = None, max_steps: int = MAX_STEPS):
    """Evaluate one expression against ``variables``. Raises ExpressionError."""
    try:
        node = Parser(expression).parse_expression_only()
        return to_python(Interpreter(max_steps).evaluate(node, variables))
    except ExpressionError:
        raise
    except RecursionError:
        raise ExpressionError('Expression nested too deeply')
    except (TypeError, ValueError, IndexError, KeyError, AttributeError, OverflowError, ZeroDivisionError, MemoryError) as e:
        raise ExpressionError(f'{type(e).__name__}: {e}')


def compile_function(source: str, max_steps: int = MAX_STEPS) -> Callable[[Any], Any]:
    """
    Compile ``function (x) {...}`` / ``x => ...`` source into a Python callable.

    The callable deep-copies nothing; callers pass data they are prepared to
    see mutated. Each call gets a fresh step budget.
    """
    try:
        node = Parser(source.strip()).parse_function_only()
    except RecursionError:
        raise ExpressionError('Function nested too deeply')

    def run(*args):
        interpreter = Interpreter(max_steps)
        try:
            func = interpreter.evaluate(node)
            return to_python(interpreter.call(func, list(args)))
        except ExpressionError:
            raise
        except (_Return, _Break, _Continue):
            raise ExpressionError('Control flow outside of a function body')
        except RecursionError:
            raise ExpressionError('Function recursed too deeply')
        except (TypeError, ValueError, IndexError, KeyError, AttributeError, OverflowError, ZeroDivisionError, MemoryError) as e:
            raise ExpressionError(f'{type(e).__name__}: {e}')

    return run


def _safe_evaluate(expression: str, variables: dict):
    try:
        return evaluate(expression.strip(), variables)
    except ExpressionError as e:
        logger.debug(f"Placeholder {{{{{expression}}}}} failed: {e}")
        return ''


def render_template(text: str, variables: dict, encode: bool = False) -> str:
    """
    Replace every ``{{expr}}`` in ``text``. Failed expressions render as ''.

    With ``encode`` each substituted value is percent-encoded the way
    encodeURIComponent does, for placeholders sitting inside a URL.
    """
    if not isinstance(text, str) or '{{' not in text:
        return text

    def substitute(match):
        value = _safe_evaluate(match.group(1), variables)
        rendered = '' if value is None else _to_string(value)
        return quote(rendered, safe="-_.!~*'()") if encode else rendered

    return PLACEHOLDER_PATTERN.sub(substitute, text)


def render_value(value: Any, variables: dict) -> Any:
    """
    Recursively render placeholders inside a request body.

    A string that is exactly one placeholder keeps the native result type, so
    ``"{{page}}"`` with ``page=2`` becomes the number 2.
    """
    if isinstance(value, str):
        match = FULL_PLACEHOLDER_PATTERN.match(value)
        if match and '{{' not in match.group(1):
            return _safe_evaluate(match.group(1), variables)
        return render_template(value, variables)
    if isinstance(value, list):
        return [render_value(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: render_value(item, variables) for key, item in value.items()}
    return value
