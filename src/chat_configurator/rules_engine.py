from __future__ import annotations

import ast
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if hasattr(value, "__len__"):
        return len(value) > 0
    return True


def _startswith(value: Any, prefix: str) -> bool:
    return isinstance(value, str) and value.startswith(prefix)


ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "len": len,
    "max": max,
    "min": min,
    "present": _present,
    "round": round,
    "sqrt": math.sqrt,
    "startswith": _startswith,
}

DEFAULT_CONSTRAINT_REASON_CODE = "ERR_CONSTRAINT_FAILED"
REASON_CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")
SENSITIVE_VARIABLE_MARKERS = ("password", "secret", "apikey", "masterkey", "credential", "connectionstring", "creds", "jwt")
OVERRIDABLE_SEVERITY_LEVELS = {"BLOCK", "WARN", "INFO"}

logger = logging.getLogger(__name__)

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Tuple,
    ast.List,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.Call,
)


class UnsafeExpressionError(ValueError):
    """Raised when the expression includes unsafe syntax."""


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated, compiled expression that can be reused safely."""

    source: str
    code: Any


@dataclass(slots=True)
class Violation:
    code: str
    recommended_severity: str
    category: str
    field: str
    message: str
    meta: dict[str, Any]


@dataclass(slots=True)
class EvaluationResult:
    valid: bool
    violations: list[Violation] = field(default_factory=list)

    def by_severity(self, severity: str) -> list[Violation]:
        return [violation for violation in self.violations if violation.recommended_severity == severity]


@dataclass(slots=True)
class _ConstraintSpec:
    code: str
    recommended_severity: str
    category: str
    field: str
    message: str
    expression_raw: str
    program: ExpressionProgram
    rule_index: int


class _ReferencedVariableVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.referenced_variables: set[str] = set()

    def visit_Name(self, node: ast.Name) -> Any:
        self.referenced_variables.add(node.id)


def extract_expression_variables(expression: str) -> set[str]:
    tree = ast.parse(expression, mode="eval")
    visitor = _ReferencedVariableVisitor()
    visitor.visit(tree)
    return visitor.referenced_variables - set(ALLOWED_FUNCTIONS)


def _resolve_recommended_severity(raw_value: Any) -> str:
    candidate = str(raw_value or "").strip().upper()
    if candidate not in OVERRIDABLE_SEVERITY_LEVELS:
        return "BLOCK"
    if candidate == "INFO":
        return "WARN"
    return candidate


def _resolve_reason_code(raw_value: Any) -> str:
    candidate = str(raw_value or "").strip()
    return candidate if REASON_CODE_PATTERN.fullmatch(candidate) else DEFAULT_CONSTRAINT_REASON_CODE


@dataclass(slots=True)
class RuleEngine:
    """Compiled cross-field constraints evaluated against a flat configuration."""

    functions: dict[str, Callable[..., Any]]
    constraints: list[_ConstraintSpec]

    @classmethod
    def from_rules(
        cls,
        rules: list[dict[str, Any]] | tuple[dict[str, Any], ...],
        extra_functions: dict[str, Callable[..., Any]] | None = None,
    ) -> RuleEngine:
        functions = _resolve_eval_functions(extra_functions)
        constraints = [
            _ConstraintSpec(
                code=_resolve_reason_code(rule.get("reason_code")),
                recommended_severity=_resolve_recommended_severity(rule.get("recommended_severity", "BLOCK")),
                category=str(rule.get("category") or ""),
                field=str(rule.get("field") or ""),
                message=str(rule.get("message") or "Configuration rule failed"),
                expression_raw=str(rule["expression"]),
                program=compile_expression(str(rule["expression"]), functions),
                rule_index=rule_index,
            )
            for rule_index, rule in enumerate(rules, start=1)
        ]
        return cls(functions=functions, constraints=constraints)

    def evaluate(self, context: dict[str, Any]) -> EvaluationResult:
        violations: list[Violation] = []
        for constraint in self.constraints:
            try:
                passed = bool(evaluate_program(constraint.program, context, self.functions))
            except Exception:
                logger.debug("constraint_evaluation_failed", extra={"code": constraint.code}, exc_info=True)
                passed = False
            if passed:
                continue

            referenced_variables = sorted(extract_expression_variables(constraint.expression_raw))
            snapshot = {
                variable: _safe_snapshot_value(variable, context.get(variable))
                for variable in referenced_variables
                if variable in context
            }
            violation = Violation(
                code=constraint.code,
                recommended_severity=constraint.recommended_severity,
                category=constraint.category,
                field=constraint.field,
                message=constraint.message,
                meta={
                    "expression_raw": constraint.expression_raw,
                    "referenced_variables": referenced_variables,
                    "snapshot": snapshot,
                    "rule_index": constraint.rule_index,
                },
            )
            violations.append(violation)
            logger.info(
                "constraint_violation",
                extra={
                    "code": violation.code,
                    "recommended_severity": violation.recommended_severity,
                    "meta": violation.meta,
                },
            )

        blocking = [violation for violation in violations if violation.recommended_severity == "BLOCK"]
        return EvaluationResult(valid=not blocking, violations=violations)


def _resolve_eval_functions(extra_functions: dict[str, Callable[..., Any]] | None = None) -> dict[str, Callable[..., Any]]:
    functions = dict(ALLOWED_FUNCTIONS)
    if extra_functions:
        functions.update(extra_functions)
    return functions


def _validate_ast(tree: ast.AST, allowed_function_names: set[str]) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in allowed_function_names:
                raise UnsafeExpressionError("Unsupported function call")
            if node.keywords:
                raise UnsafeExpressionError("Keyword arguments are not supported")


def compile_expression(
    expression: str,
    functions: dict[str, Callable[..., Any]] | None = None,
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> ExpressionProgram:
    resolved_functions = functions if functions is not None else _resolve_eval_functions(extra_functions)
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise UnsafeExpressionError(f"Invalid expression: {exc.msg}") from exc
    _validate_ast(tree, set(resolved_functions))
    return ExpressionProgram(source=expression, code=compile(tree, "<rules>", "eval"))


def evaluate_program(
    program: ExpressionProgram,
    context: dict[str, Any],
    functions: dict[str, Callable[..., Any]] | None = None,
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    resolved_functions = functions if functions is not None else _resolve_eval_functions(extra_functions)
    return eval(program.code, {"__builtins__": {}, **resolved_functions}, context)


def safe_eval(
    expression: str,
    context: dict[str, Any],
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    functions = _resolve_eval_functions(extra_functions)
    program = compile_expression(expression, functions=functions)
    return evaluate_program(program, context, functions=functions)


def _contains_sensitive_marker(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_VARIABLE_MARKERS)


def _safe_snapshot_value(variable_name: str, value: Any) -> Any:
    if _contains_sensitive_marker(variable_name):
        return "<redacted>" if value not in (None, "") else None

    if value is None or isinstance(value, bool | int | float):
        return value

    if isinstance(value, str):
        return value if len(value) <= 160 else f"{value[:157]}..."

    if isinstance(value, (list, tuple)):
        if len(value) > 10:
            return f"<sequence len={len(value)}>"
        if all(item is None or isinstance(item, bool | int | float | str) for item in value):
            return [_safe_snapshot_value(variable_name, item) for item in value]
        return f"<sequence len={len(value)}>"

    if isinstance(value, dict):
        return f"<mapping keys={len(value)}>"

    return f"<object type={type(value).__name__}>"


def evaluate_rules(rules: list[dict[str, Any]], context: dict[str, Any]) -> EvaluationResult:
    engine = RuleEngine.from_rules(rules)
    return engine.evaluate(context)
