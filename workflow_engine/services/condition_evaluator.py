"""
Condition evaluation for `condition` nodes.

Grammar:
    expr       := and_expr ('||' and_expr)*
    and_expr   := unary ('&&' unary)*
    unary      := '!' unary | comparison
    comparison := operand (('===' | '!==' | '==' | '!=' | '>=' | '<=' | '>' | '<') operand)?
    operand    := '(' expr ')' | literal | {{path}} | path

Operands are looked up in the execution context; nothing is ever passed to eval().
"""
import re
from functools import lru_cache
from typing import Any, List, Tuple

from ..core.exceptions import ConditionSyntaxError, ConditionEvaluationError
from .execution_context import ExecutionContext

TOKEN_PATTERN = re.compile(r"""
    (?P<space>\s+)
  | (?P<lookup>\{\{\s*[A-Za-z_][\w\-]*(?:\.[\w\-]+)*\s*\}\})
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[<>!()])
  | (?P<ident>[A-Za-z_][\w\-]*(?:\.[\w\-]+)*)
""", re.VERBOSE)

COMPARISON_OPERATORS = ("===", "!==", "==", "!=", ">=", "<=", ">", "<")
KEYWORDS = {"true": True, "false": False, "null": None, "undefined": None}


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0
    while position < len(expression):
        match = TOKEN_PATTERN.match(expression, position)
        if not match:
            raise ConditionSyntaxError(expression, f"unexpected character at position {position}")
        kind = match.lastgroup
        if kind != "space":
            tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.position = 0

    def parse(self):
        if not self.tokens:
            raise ConditionSyntaxError(self.expression, "empty expression")
        node = self._or()
        if self.position != len(self.tokens):
            raise ConditionSyntaxError(
                self.expression, f"unexpected token '{self.tokens[self.position][1]}'"
            )
        return node

    def _peek(self):
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None, None

    def _take(self):
        token = self.tokens[self.position]
        self.position += 1
        return token

    def _or(self):
        node = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            node = ("or", node, self._and())
        return node

    def _and(self):
        node = self._unary()
        while self._peek() == ("op", "&&"):
            self._take()
            node = ("and", node, self._unary())
        return node

    def _unary(self):
        if self._peek() == ("op", "!"):
            self._take()
            return ("not", self._unary())
        return self._comparison()

    def _comparison(self):
        left = self._operand()
        kind, value = self._peek()
        if kind == "op" and value in COMPARISON_OPERATORS:
            self._take()
            return ("cmp", value, left, self._operand())
        return left

    def _operand(self):
        kind, value = self._peek()
        if kind is None:
            raise ConditionSyntaxError(self.expression, "unexpected end of expression")
        self._take()

        if kind == "op" and value == "(":
            node = self._or()
            if self._peek() != ("op", ")"):
                raise ConditionSyntaxError(self.expression, "missing closing parenthesis")
            self._take()
            return node
        if kind == "lookup":
            return ("var", value[2:-2].strip())
        if kind == "string":
            return ("lit", re.sub(r"\\(.)", r"\1", value[1:-1]))
        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "ident":
            if value in KEYWORDS:
                return ("lit", KEYWORDS[value])
            return ("var", value)
        raise ConditionSyntaxError(self.expression, f"unexpected token '{value}'")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any):
    if _is_number(value):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class ConditionEvaluator:
    """Parses and evaluates condition expressions"""

    @staticmethod
    @lru_cache(maxsize=512)
    def parse(expression: str):
        """Parse an expression. Raises ConditionSyntaxError on unsupported syntax."""
        return _Parser(expression).parse()

    @staticmethod
    def validate(expression: str) -> List[str]:
        try:
            ConditionEvaluator.parse(expression)
            return []
        except ConditionSyntaxError as e:
            return [str(e)]

    @staticmethod
    def evaluate(expression: str, context: ExecutionContext) -> bool:
        """
        Evaluate an expression against the context.

        Raises:
            ConditionSyntaxError: the expression cannot be parsed
            ConditionEvaluationError: a referenced value is not in the context
        """
        tree = ConditionEvaluator.parse(expression)
        return ConditionEvaluator._to_bool(ConditionEvaluator._eval(tree, expression, context))

    @staticmethod
    def _eval(node, expression: str, context: ExecutionContext) -> Any:
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "var":
            found, value = context.lookup(node[1])
            if not found:
                raise ConditionEvaluationError(expression, f"'{node[1]}' is not defined")
            return value
        if kind == "not":
            return not ConditionEvaluator._to_bool(ConditionEvaluator._eval(node[1], expression, context))
        if kind == "and":
            return (ConditionEvaluator._to_bool(ConditionEvaluator._eval(node[1], expression, context))
                    and ConditionEvaluator._to_bool(ConditionEvaluator._eval(node[2], expression, context)))
        if kind == "or":
            return (ConditionEvaluator._to_bool(ConditionEvaluator._eval(node[1], expression, context))
                    or ConditionEvaluator._to_bool(ConditionEvaluator._eval(node[2], expression, context)))

        _, operator, left_node, right_node = node
        left = ConditionEvaluator._eval(left_node, expression, context)
        right = ConditionEvaluator._eval(right_node, expression, context)
        return ConditionEvaluator._compare(operator, left, right)

    @staticmethod
    def _compare(operator: str, left: Any, right: Any) -> bool:
        if operator == "===":
            return ConditionEvaluator._strict_equal(left, right)
        if operator == "!==":
            return not ConditionEvaluator._strict_equal(left, right)
        if operator == "==":
            return ConditionEvaluator._loose_equal(left, right)
        if operator == "!=":
            return not ConditionEvaluator._loose_equal(left, right)

        left_number, right_number = _as_number(left), _as_number(right)
        if left_number is not None and right_number is not None:
            left, right = left_number, right_number
        elif isinstance(left, str) and isinstance(right, str):
            pass
        else:
            return False

        if operator == ">":
            return left > right
        if operator == "<":
            return left < right
        if operator == ">=":
            return left >= right
        return left <= right

    @staticmethod
    def _strict_equal(left: Any, right: Any) -> bool:
        if isinstance(left, bool) or isinstance(right, bool):
            return isinstance(left, bool) and isinstance(right, bool) and left == right
        if _is_number(left) and _is_number(right):
            return left == right
        return type(left) is type(right) and left == right

    @staticmethod
    def _loose_equal(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return left is None and right is None
        if isinstance(left, bool) or isinstance(right, bool):
            return ConditionEvaluator._to_bool(left) == ConditionEvaluator._to_bool(right)
        left_number, right_number = _as_number(left), _as_number(right)
        if left_number is not None and right_number is not None:
            return left_number == right_number
        return str(left) == str(right)

    @staticmethod
    def _to_bool(value: Any) -> bool:
        """Convert value to boolean"""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() not in ('', 'false', 'none', 'null', '0')
        if isinstance(value, (int, float)):
            return value != 0
        return bool(value)
