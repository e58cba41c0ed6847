"""Strongly-typed workflow variables."""
from __future__ import annotations

import copy
from collections.abc import Mapping
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict

from .errors import UnknownIdentifier, VariableTypeError


class VariableType(str, Enum):
    """Declared type of a workflow variable."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    OBJECT = "object"
    ANY = "any"


class VariableSpec(BaseModel):
    """Declaration of a single workflow variable."""

    model_config = ConfigDict(frozen=True)

    type: VariableType = VariableType.ANY
    default: Any = None
    required: bool = False
    description: str = ""


def matches_type(value: Any, var_type: VariableType) -> bool:
    """Return True if ``value`` is acceptable for ``var_type``.

    ``bool`` is a subclass of ``int`` in Python, so booleans are rejected
    explicitly for the numeric types.
    """
    if var_type is VariableType.ANY:
        return True
    if var_type is VariableType.STRING:
        return isinstance(value, str)
    if var_type is VariableType.BOOLEAN:
        return isinstance(value, bool)
    if var_type is VariableType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if var_type is VariableType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if var_type is VariableType.LIST:
        return isinstance(value, (list, tuple))
    if var_type is VariableType.OBJECT:
        return isinstance(value, dict)
    return False


class VariableBag(Mapping):
    """Workflow-scoped key/value store bound to a declared schema.

    Only declared names can be written and every write is type-checked, so
    guard expressions always see values of the type they were written
    against.
    """

    def __init__(
        self,
        schema: Mapping[str, VariableSpec],
        values: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._schema: Dict[str, VariableSpec] = dict(schema)
        self._values: Dict[str, Any] = {}
        for name, spec in self._schema.items():
            if spec.default is not None:
                self.set(name, copy.deepcopy(spec.default))
        if values:
            self.update(values)

    @property
    def schema(self) -> Dict[str, VariableSpec]:
        return dict(self._schema)

    def set(self, name: str, value: Any) -> None:
        """Set a variable after checking it is declared and correctly typed.

        Raises:
            UnknownIdentifier: If ``name`` is not declared
            VariableTypeError: If ``value`` does not match the declared type
        """
        spec = self._schema.get(name)
        if spec is None:
            raise UnknownIdentifier(name, "workflow variables")
        if not matches_type(value, spec.type):
            raise VariableTypeError(name, spec.type.value, value)
        self._values[name] = value

    def update(self, values: Mapping[str, Any]) -> None:
        """Set several variables; nothing is written if any value is rejected."""
        staged = VariableBag.__new__(VariableBag)
        staged._schema = self._schema
        staged._values = dict(self._values)
        for name, value in values.items():
            staged.set(name, value)
        self._values = staged._values

    def missing_required(self) -> List[str]:
        return [
            name
            for name, spec in self._schema.items()
            if spec.required and name not in self._values
        ]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def copy(self) -> "VariableBag":
        clone = VariableBag.__new__(VariableBag)
        clone._schema = self._schema
        clone._values = copy.deepcopy(self._values)
        return clone

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableBag({self._values!r})"
