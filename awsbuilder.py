"""
Generic configuration builders.

A resource type is declared once as a list of fields, an optional list of
rules and a conversion function. Drafts are immutable; every operation
returns a new draft. Scalars follow last-write-wins, list fields accumulate
in program order. finalize() is the only validation boundary.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union


class ConfigurationError(ValueError):
    """Base class for every error raised by the builders."""


class MissingRequiredField(ConfigurationError):
    def __init__(self, resource_type: str, field_name: str):
        self.resource_type = resource_type
        self.field = field_name
        super().__init__(f"{resource_type}: required field '{field_name}' was never set")


class InvalidFieldCombination(ConfigurationError):
    def __init__(self, resource_type: str, rule: str):
        self.resource_type = resource_type
        self.rule = rule
        super().__init__(f"{resource_type}: {rule}")


class DoubleMaterialization(ConfigurationError):
    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"Resource '{identity}' has already been materialized.")


class UseBeforeMaterialization(ConfigurationError):
    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(
            f"Resource '{identity}' has not been created yet. "
            "Ensure it is added to the stack before referencing it."
        )


class DraftConsumed(ConfigurationError):
    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"Draft '{identity}' was already finalized and accepts no further operations.")


class FieldKind(str, Enum):
    SCALAR = "scalar"
    LIST = "list"


class MergePolicy(str, Enum):
    LAST_WINS = "last_wins"
    APPEND = "append"
    # list field whose latest non-empty contribution replaces earlier ones
    REPLACE = "replace"


_NO_DEFAULT = object()


@dataclass(frozen=True)
class Field:
    name: str
    kind: FieldKind = FieldKind.SCALAR
    required: bool = False
    default: Any = _NO_DEFAULT
    default_from: Optional[str] = None
    merge: Optional[MergePolicy] = None

    def __post_init__(self):
        if self.merge is None:
            policy = MergePolicy.APPEND if self.kind is FieldKind.LIST else MergePolicy.LAST_WINS
            object.__setattr__(self, "merge", policy)
        if self.kind is FieldKind.SCALAR and self.merge is not MergePolicy.LAST_WINS:
            raise ValueError(f"Scalar field '{self.name}' only supports last-write-wins merging")
        if self.kind is FieldKind.LIST and self.merge is MergePolicy.LAST_WINS:
            raise ValueError(f"List field '{self.name}' must append or replace")
        if self.required and (self.default is not _NO_DEFAULT or self.default_from):
            raise ValueError(f"Required field '{self.name}' cannot declare a default")


def scalar(name: str, default: Any = _NO_DEFAULT, required: bool = False,
           default_from: Optional[str] = None) -> Field:
    return Field(name, FieldKind.SCALAR, required=required, default=default, default_from=default_from)


def listing(name: str, replace: bool = False) -> Field:
    return Field(name, FieldKind.LIST, merge=MergePolicy.REPLACE if replace else MergePolicy.APPEND)


@dataclass(frozen=True)
class Rule:
    """A jointly-disallowed combination of fields.

    ``violated`` receives the resolved configuration and returns True when
    the combination must be rejected.
    """
    description: str
    violated: Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True, eq=False)
class Draft:
    resource_type: str
    identity: str
    scalars: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    lists: Mapping[str, Tuple[Any, ...]] = field(default_factory=lambda: MappingProxyType({}))
    # set once by finalize; not part of the draft's value
    _consumed: List["Resource"] = field(default_factory=list, repr=False)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Draft):
            return NotImplemented
        return (
            self.resource_type == other.resource_type
            and self.identity == other.identity
            and dict(self.scalars) == dict(other.scalars)
            and dict(self.lists) == dict(other.lists)
        )

    __hash__ = None

    def is_set(self, name: str) -> bool:
        return name in self.scalars or bool(self.lists.get(name))

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.scalars:
            return self.scalars[name]
        if name in self.lists:
            return list(self.lists[name])
        return default

    @property
    def consumed(self) -> bool:
        return bool(self._consumed)


# Operations form a closed set: one variant per kind of refinement.

@dataclass(frozen=True)
class SetScalar:
    field: str
    value: Any


@dataclass(frozen=True)
class AppendList:
    field: str
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class Nested:
    operations: Tuple["Operation", ...]


Operation = Union[SetScalar, AppendList, Nested]


def set_(field_name: str, value: Any) -> SetScalar:
    return SetScalar(field_name, value)


def append(field_name: str, *items: Any) -> AppendList:
    return AppendList(field_name, tuple(items))


def nested(*operations: Operation) -> Nested:
    return Nested(tuple(operations))


class Resource:
    """A finalized resource plus its write-once materialized handle.

    The handle is filled by whatever instantiates the external object. Reading
    it before that, or writing it twice, raises.
    """

    def __init__(self, resource_type: str, identity: str, config: Dict[str, Any], definition: Any):
        self.resource_type = resource_type
        self.identity = identity
        self.config = MappingProxyType(dict(config))
        self.definition = definition
        self._handle: Any = None
        self._materialized = False
        self._lock = threading.Lock()

    @property
    def is_materialized(self) -> bool:
        return self._materialized

    @property
    def handle(self) -> Any:
        if not self._materialized:
            raise UseBeforeMaterialization(self.identity)
        return self._handle

    def materialize(self, handle: Any) -> None:
        with self._lock:
            if self._materialized:
                raise DoubleMaterialization(self.identity)
            self._handle = handle
            self._materialized = True

    def __repr__(self) -> str:
        state = "materialized" if self._materialized else "pending"
        return f"Resource({self.resource_type}:{self.identity}, {state})"


@dataclass(frozen=True)
class Reference:
    """Points at an attribute of another resource's materialized handle."""
    resource: Resource
    attribute: str = "id"
    transform: Optional[Callable[[Any], Any]] = None


class ResourceBuilder:
    def __init__(
        self,
        resource_type: str,
        fields: Sequence[Field],
        convert: Callable[[str, Mapping[str, Any]], Any],
        rules: Iterable[Rule] = (),
        identity_field: str = "name",
    ):
        self.resource_type = resource_type
        self.identity_field = identity_field
        self.fields: Dict[str, Field] = {}
        for f in fields:
            if f.name == identity_field or f.name in self.fields:
                raise ValueError(f"{resource_type}: duplicate field '{f.name}'")
            self.fields[f.name] = f
        for f in self.fields.values():
            if f.default_from and f.default_from != identity_field and f.default_from not in self.fields:
                raise ValueError(f"{resource_type}: '{f.name}' defaults from unknown field '{f.default_from}'")
        # fields with default_from, ordered so that every source resolves first
        self._derived: List[Field] = []
        for f in self.fields.values():
            self._order_derived(f, ())
        self.convert = convert
        self.rules: Tuple[Rule, ...] = tuple(rules)
        self._finalize_lock = threading.Lock()

    def _order_derived(self, f: Field, path: Tuple[str, ...]) -> None:
        if not f.default_from or f in self._derived:
            return
        if f.name in path:
            chain = " -> ".join(path + (f.name,))
            raise ValueError(f"{self.resource_type}: default_from cycle {chain}")
        source = self.fields.get(f.default_from)
        if source is not None:
            self._order_derived(source, path + (f.name,))
        self._derived.append(f)

    def create(self, identity: str) -> Draft:
        return Draft(self.resource_type, identity or "")

    def build(self, identity: str, *operations: Operation) -> Draft:
        draft = self.create(identity)
        for operation in operations:
            draft = self.apply(draft, operation)
        return draft

    def _field(self, name: str, kind: FieldKind) -> Field:
        f = self.fields.get(name)
        if f is None:
            raise ValueError(f"{self.resource_type}: unknown field '{name}'")
        if f.kind is not kind:
            raise ValueError(f"{self.resource_type}: field '{name}' is a {f.kind.value} field")
        return f

    def _check_type(self, draft: Draft) -> None:
        if draft.resource_type != self.resource_type:
            raise ValueError(f"Expected a {self.resource_type} draft, got {draft.resource_type}")

    def apply(self, draft: Draft, operation: Operation) -> Draft:
        self._check_type(draft)
        if draft.consumed:
            raise DraftConsumed(draft.identity)
        if isinstance(operation, Nested):
            for op in operation.operations:
                draft = self.apply(draft, op)
            return draft
        if isinstance(operation, SetScalar):
            self._field(operation.field, FieldKind.SCALAR)
            scalars = dict(draft.scalars)
            scalars[operation.field] = operation.value
            return Draft(draft.resource_type, draft.identity, MappingProxyType(scalars), draft.lists)
        if isinstance(operation, AppendList):
            f = self._field(operation.field, FieldKind.LIST)
            return self._merge_lists(draft, draft.identity, draft.scalars, {f.name: tuple(operation.items)})
        raise TypeError(f"Unsupported operation: {operation!r}")

    def _merge_lists(self, base: Draft, identity: str, scalars: Mapping[str, Any],
                     extra: Mapping[str, Tuple[Any, ...]]) -> Draft:
        lists = dict(base.lists)
        for name, items in extra.items():
            if not items:
                continue
            if self.fields[name].merge is MergePolicy.REPLACE:
                lists[name] = tuple(items)
            else:
                lists[name] = lists.get(name, ()) + tuple(items)
        return Draft(self.resource_type, identity, MappingProxyType(dict(scalars)), MappingProxyType(lists))

    def combine(self, first: Draft, second: Draft) -> Draft:
        """Merge two independently built drafts, treating ``second`` as applied after ``first``."""
        self._check_type(first)
        self._check_type(second)
        for draft in (first, second):
            if draft.consumed:
                raise DraftConsumed(draft.identity)
        scalars = dict(first.scalars)
        scalars.update(second.scalars)
        identity = first.identity or second.identity
        return self._merge_lists(first, identity, scalars, second.lists)

    def from_mapping(self, draft: Draft, values: Mapping[str, Any]) -> Draft:
        """Apply a plain ``{field: value}`` mapping; list fields are appended."""
        operations: List[Operation] = []
        for name, value in values.items():
            f = self.fields.get(name)
            if f is None:
                raise ValueError(f"{self.resource_type}: unknown field '{name}'")
            if f.kind is FieldKind.LIST:
                items = value if isinstance(value, (list, tuple)) else [value]
                operations.append(AppendList(name, tuple(items)))
            else:
                operations.append(SetScalar(name, value))
        return self.apply(draft, Nested(tuple(operations)))

    def resolve(self, draft: Draft) -> Dict[str, Any]:
        """Validate required fields and fill defaults. Does not consume the draft."""
        self._check_type(draft)
        if not draft.identity:
            raise MissingRequiredField(self.resource_type, self.identity_field)
        resolved: Dict[str, Any] = {self.identity_field: draft.identity}
        for f in self.fields.values():
            if f.kind is FieldKind.LIST:
                resolved[f.name] = list(draft.lists.get(f.name, ()))
            elif f.name in draft.scalars:
                resolved[f.name] = draft.scalars[f.name]
            elif f.required:
                raise MissingRequiredField(self.resource_type, f.name)
            elif f.default is not _NO_DEFAULT:
                resolved[f.name] = f.default
            else:
                resolved[f.name] = None
        for f in self._derived:
            if f.kind is FieldKind.SCALAR and f.name not in draft.scalars:
                resolved[f.name] = resolved[f.default_from]
        for rule in self.rules:
            try:
                violated = rule.violated(resolved)
            except (TypeError, ValueError) as e:
                # values of the wrong type cannot satisfy the rule
                raise InvalidFieldCombination(self.resource_type, rule.description) from e
            if violated:
                raise InvalidFieldCombination(self.resource_type, rule.description)
        return resolved

    def finalize(self, draft: Draft) -> Resource:
        """Produce the finalized resource. Finalizing the same draft again
        returns the same resource; a failed finalize leaves the draft usable.
        """
        with self._finalize_lock:
            if draft.consumed:
                return draft._consumed[0]
            resolved = self.resolve(draft)
            definition = self.convert(draft.identity, MappingProxyType(resolved))
            resource = Resource(self.resource_type, draft.identity, resolved, definition)
            draft._consumed.append(resource)
            return resource

    def __call__(self, identity: str, *operations: Operation) -> Resource:
        return self.finalize(self.build(identity, *operations))
