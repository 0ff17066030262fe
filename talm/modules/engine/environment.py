"""Sandboxed Jinja2 environment with an evaluation step budget.

Every attribute lookup, item lookup and call made by a template is charged
against a ``StepBudget``. Exhausting the budget, or the wall-clock limit
attached to it, aborts the render with ``TemplateTooComplex``.
"""
import time
from typing import Any

from jinja2 import ChainableUndefined, FileSystemLoader
from jinja2.sandbox import MAX_RANGE, SandboxedEnvironment

from ...errors import TemplateTooComplex

DEFAULT_TIME_LIMIT = 10.0


class StepBudget:
    """Counts evaluation steps of one render."""

    def __init__(self, limit: int, time_limit: float = DEFAULT_TIME_LIMIT):
        self.limit = limit
        self.time_limit = time_limit
        self.steps = 0
        self.started = time.monotonic()

    def charge(self, steps: int = 1) -> None:
        self.steps += steps
        if self.steps > self.limit:
            raise TemplateTooComplex(
                "template exceeded its evaluation step budget",
                details=f"{self.limit} steps",
            )
        # Checking the clock on every step is wasteful
        if self.steps % 1024 == 0 and time.monotonic() - self.started > self.time_limit:
            raise TemplateTooComplex(
                "template exceeded its evaluation time limit",
                details=f"{self.time_limit:g}s",
            )


class ValueTree(dict):
    """A mapping of the value tree that remembers its dotted path."""

    def __init__(self, data, path: str = "Values"):
        super().__init__(data)
        self.value_path = path

    def child(self, key: Any, value: Any) -> Any:
        if isinstance(value, dict) and not isinstance(value, ValueTree):
            return ValueTree(value, f"{self.value_path}.{key}")
        return value


class PathUndefined(ChainableUndefined):
    """Undefined that is falsy and chainable but refuses to be rendered.

    ``{% if Values.missing %}`` and ``Values.missing | default(x)`` work as in
    Helm; printing a missing value fails and names its value path.
    """
    __slots__ = ()

    @property
    def _undefined_message(self) -> str:
        if self._undefined_hint:
            return self._undefined_hint
        obj = self._undefined_obj
        name = self._undefined_name
        if isinstance(obj, ValueTree):
            return f"value path {obj.value_path}.{name} is not defined"
        if isinstance(obj, PathUndefined):
            return f"{obj._undefined_message} (looking up {name!r})"
        if name is not None:
            return f"{name!r} is undefined"
        return "value is undefined"

    def __str__(self) -> str:
        self._fail_with_undefined_error()


class TemplateSandbox(SandboxedEnvironment):
    """Sandboxed environment charging each template operation to a budget."""

    def __init__(self, root: str, budget: StepBudget, **kwargs):
        super().__init__(
            loader=FileSystemLoader(root),
            undefined=PathUndefined,
            keep_trailing_newline=True,
            autoescape=False,
            **kwargs,
        )
        self.budget = budget
        self.globals["range"] = self._budgeted_range

    def _budgeted_range(self, *args):
        rng = range(*args)
        if len(rng) > MAX_RANGE:
            raise TemplateTooComplex("range too big", details=f"{len(rng)} > {MAX_RANGE}")
        self.budget.charge(len(rng))
        return rng

    def getattr(self, obj: Any, attribute: str) -> Any:
        self.budget.charge()
        value = super().getattr(obj, attribute)
        if isinstance(obj, ValueTree) and attribute in obj:
            return obj.child(attribute, obj[attribute])
        return value

    def getitem(self, obj: Any, argument: Any) -> Any:
        self.budget.charge()
        value = super().getitem(obj, argument)
        if isinstance(obj, ValueTree) and isinstance(argument, str) and argument in obj:
            return obj.child(argument, value)
        return value

    def call(__self, __context, __obj, *args, **kwargs):  # noqa: N805
        __self.budget.charge()
        return super().call(__context, __obj, *args, **kwargs)
