# conditions.py
from __future__ import annotations

import ast
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Union

from .errors import GraphError
from .model import StepOutcome, Target, TriggerContext

# ---------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------
# Job conditions see only the trigger (and target).
# Step conditions additionally see prior step outcomes, resolver outcomes,
# and whether a fatal step already failed.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ConditionContext:
    trigger: TriggerContext
    target: Optional[Target] = None
    steps: Mapping[str, StepOutcome] = field(default_factory=dict)
    resources: Mapping[str, bool] = field(default_factory=dict)
    job_failed: bool = False


class Predicate:
    """
    A named boolean function over a ConditionContext.

    `uses_status` is True when the predicate already decides about prior
    failures (success()/failure()/always()); otherwise the executor ANDs it
    with success(), so steps stop after a fatal failure unless told otherwise.
    """

    def __init__(
        self,
        fn: Callable[[ConditionContext], Any],
        text: str,
        *,
        uses_status: bool = False,
        step_refs: FrozenSet[str] = frozenset(),
    ):
        self._fn = fn
        self.text = text
        self.uses_status = uses_status
        self.step_refs = step_refs

    def __call__(self, ctx: ConditionContext) -> bool:
        return bool(self._fn(ctx))

    def __and__(self, other: "Predicate") -> "Predicate":
        other = as_predicate(other)
        return Predicate(
            lambda c: self(c) and other(c),
            f"({self.text}) && ({other.text})",
            uses_status=self.uses_status or other.uses_status,
            step_refs=self.step_refs | other.step_refs,
        )

    def __or__(self, other: "Predicate") -> "Predicate":
        other = as_predicate(other)
        return Predicate(
            lambda c: self(c) or other(c),
            f"({self.text}) || ({other.text})",
            uses_status=self.uses_status or other.uses_status,
            step_refs=self.step_refs | other.step_refs,
        )

    def __invert__(self) -> "Predicate":
        return Predicate(
            lambda c: not self(c),
            f"!({self.text})",
            uses_status=self.uses_status,
            step_refs=self.step_refs,
        )

    def __repr__(self) -> str:
        return f"Predicate({self.text!r})"


ConditionLike = Union[Predicate, str, Callable[[ConditionContext], Any]]


def as_predicate(cond: ConditionLike) -> Predicate:
    if isinstance(cond, Predicate):
        return cond
    if isinstance(cond, str):
        return compile_expr(cond)
    if callable(cond):
        return Predicate(cond, getattr(cond, "__name__", repr(cond)))
    raise GraphError(f"Not a condition: {cond!r}")


# ---------------------------------------------------------------------
# Python helpers (used by the DSL)
# ---------------------------------------------------------------------

def success() -> Predicate:
    return Predicate(lambda c: not c.job_failed, "success()", uses_status=True)


def failure() -> Predicate:
    return Predicate(lambda c: c.job_failed, "failure()", uses_status=True)


def always() -> Predicate:
    return Predicate(lambda c: True, "always()", uses_status=True)


def ref_matches(pattern: str) -> Predicate:
    return Predicate(lambda c: fnmatchcase(c.trigger.ref, pattern), f"matches(ref, {pattern!r})")


def ref_is(ref: str) -> Predicate:
    return Predicate(lambda c: c.trigger.ref == ref, f"ref == {ref!r}")


def step_succeeded(step_id: str) -> Predicate:
    return Predicate(
        lambda c: c.steps.get(step_id) == StepOutcome.SUCCEEDED,
        f"steps.{step_id}.outcome == 'success'",
        step_refs=frozenset({step_id}),
    )


def resource_available(name: str) -> Predicate:
    return Predicate(lambda c: bool(c.resources.get(name, False)), f"resources.{name}")


# ---------------------------------------------------------------------
# String expressions
# ---------------------------------------------------------------------
# A small, closed grammar parsed with `ast` and walked by hand; nothing is
# ever passed to eval().
#
#   startsWith(ref, 'refs/tags/v') && steps.sde.outcome == 'success'
#   matches(ref, 'refs/tags/v*') or not resources.sde
# ---------------------------------------------------------------------

_STATUS_FUNCS = {"success", "failure", "always"}
_FUNCS: Dict[str, Callable[..., Any]] = {
    "startsWith": lambda a, b: str(a).startswith(str(b)),
    "endsWith": lambda a, b: str(a).endswith(str(b)),
    "contains": lambda a, b: str(b) in str(a),
    "matches": lambda a, b: fnmatchcase(str(a), str(b)),
}
_NAMES = {"ref", "sha", "event", "target", "steps", "resources", "true", "false"}


def _translate(src: str) -> str:
    """Rewrite `&&`, `||` and `!` outside of string literals into Python keywords."""
    out: list[str] = []
    quote: Optional[str] = None
    i = 0
    while i < len(src):
        ch = src[i]
        if quote:
            out.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
        elif src.startswith("&&", i):
            out.append(" and ")
            i += 1
        elif src.startswith("||", i):
            out.append(" or ")
            i += 1
        elif ch == "!" and not src.startswith("!=", i):
            out.append(" not ")
        else:
            out.append(ch)
        i += 1
    if quote:
        raise GraphError(f"Unterminated string in condition: {src!r}")
    return "".join(out)


class _Checker(ast.NodeVisitor):
    """Rejects anything outside the grammar and collects step references."""

    def __init__(self, src: str):
        self.src = src
        self.step_refs: set[str] = set()
        self.uses_status = False

    def _bad(self, node: ast.AST) -> None:
        raise GraphError(f"Unsupported syntax {type(node).__name__} in condition: {self.src!r}")

    def generic_visit(self, node: ast.AST) -> None:
        allowed = (
            ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not,
            ast.Compare, ast.Eq, ast.NotEq, ast.Load,
        )
        if not isinstance(node, allowed):
            self._bad(node)
        super().generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if not isinstance(node.value, (str, bool, int)):
            self._bad(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id not in _NAMES:
            raise GraphError(f"Unknown name {node.id!r} in condition: {self.src!r}")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        chain: list[str] = [node.attr]
        base = node.value
        while isinstance(base, ast.Attribute):
            chain.append(base.attr)
            base = base.value
        if not isinstance(base, ast.Name):
            self._bad(node)
        chain.reverse()
        root = base.id
        if root == "steps":
            if len(chain) != 2 or chain[1] not in ("outcome", "conclusion"):
                raise GraphError(f"Use steps.<id>.outcome or steps.<id>.conclusion in condition: {self.src!r}")
            self.step_refs.add(chain[0])
        elif root == "resources":
            if len(chain) != 1:
                self._bad(node)
        elif root == "target":
            if len(chain) != 1 or chain[0] not in ("os", "arch", "toolchain"):
                self._bad(node)
        else:
            raise GraphError(f"{root!r} has no attributes in condition: {self.src!r}")

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.keywords:
            self._bad(node)
        name = node.func.id
        if name in _STATUS_FUNCS:
            if node.args:
                raise GraphError(f"{name}() takes no arguments: {self.src!r}")
            self.uses_status = True
            return
        if name not in _FUNCS:
            raise GraphError(f"Unknown function {name!r} in condition: {self.src!r}")
        if len(node.args) != 2:
            raise GraphError(f"{name}() takes two arguments: {self.src!r}")
        for arg in node.args:
            self.visit(arg)


def _eval(node: ast.AST, ctx: ConditionContext) -> Any:
    if isinstance(node, ast.Expression):
        return _eval(node.body, ctx)
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval(v, ctx) for v in node.values)
        return any(_eval(v, ctx) for v in node.values)
    if isinstance(node, ast.UnaryOp):
        return not _eval(node.operand, ctx)
    if isinstance(node, ast.Compare):
        left = _eval(node.left, ctx)
        for op, comp in zip(node.ops, node.comparators):
            right = _eval(comp, ctx)
            ok = (left == right) if isinstance(op, ast.Eq) else (left != right)
            if not ok:
                return False
            left = right
        return True
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id == "true":
            return True
        if node.id == "false":
            return False
        return {
            "ref": ctx.trigger.ref,
            "sha": ctx.trigger.sha,
            "event": ctx.trigger.event,
            "target": str(ctx.target) if ctx.target else "",
        }.get(node.id, "")
    if isinstance(node, ast.Attribute):
        base = node.value
        if isinstance(base, ast.Name) and base.id == "resources":
            return bool(ctx.resources.get(node.attr, False))
        if isinstance(base, ast.Name) and base.id == "target":
            return getattr(ctx.target, node.attr, "") or ""
        # steps.<id>.outcome / steps.<id>.conclusion
        step_id = base.attr  # type: ignore[attr-defined]
        outcome = ctx.steps.get(step_id)
        if outcome is None:
            return ""
        if node.attr == "conclusion" and outcome == StepOutcome.FAILED_IGNORED:
            return StepOutcome.SUCCEEDED.value
        if node.attr == "outcome" and outcome == StepOutcome.FAILED_IGNORED:
            return StepOutcome.FAILED.value
        return outcome.value
    if isinstance(node, ast.Call):
        name = node.func.id  # type: ignore[attr-defined]
        if name == "success":
            return not ctx.job_failed
        if name == "failure":
            return ctx.job_failed
        if name == "always":
            return True
        return _FUNCS[name](*(_eval(a, ctx) for a in node.args))
    raise GraphError(f"Cannot evaluate {type(node).__name__}")


def compile_expr(src: str) -> Predicate:
    """Compile a condition string; raises GraphError on anything outside the grammar."""
    text = src.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    if not text:
        raise GraphError("Empty condition")
    try:
        tree = ast.parse(_translate(text).strip(), mode="eval")
    except SyntaxError as e:
        raise GraphError(f"Invalid condition {src!r}: {e.msg}") from e

    checker = _Checker(src)
    checker.visit(tree)
    return Predicate(
        lambda c: _eval(tree, c),
        text,
        uses_status=checker.uses_status,
        step_refs=frozenset(checker.step_refs),
    )
