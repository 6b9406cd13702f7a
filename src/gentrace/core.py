import inspect
import operator
import warnings
from abc import abstractmethod
from dataclasses import dataclass, field
from functools import partial, total_ordering
from typing import overload

import beartype.typing as btyping
import jax
import jax.numpy as jnp
import jax.random as jrand
import jax.tree_util as jtu
import jaxtyping as jtyping
import numpy as np
import penzai.pz as pz
from tensorflow_probability.substrates import jax as tfp
from typing_extensions import dataclass_transform

##########
# Typing #
##########

Any = btyping.Any
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
ArrayLike = jtyping.ArrayLike
FloatArray = jtyping.Float[jtyping.Array, "..."]
Callable = btyping.Callable
Iterator = btyping.Iterator
Generic = btyping.Generic
TypeVar = btyping.TypeVar

X = TypeVar("X")
R = TypeVar("R")

tfd = tfp.distributions

#######################
# Probabilistic types #
#######################

Weight = FloatArray
Score = FloatArray
Density = FloatArray


def _zero() -> Weight:
    return jnp.array(0.0)


##########
# Errors #
##########


class GenTraceError(Exception):
    """Base class for errors raised while building or editing traces."""


class AddressNotFound(GenTraceError, KeyError):
    def __init__(self, address: "Address", where: str = "choice map"):
        self.address = address
        self.where = where
        super().__init__(f"no value at address {address} in {where}")

    def __str__(self):
        return self.args[0]


class InvalidParameter(GenTraceError, ValueError):
    pass


class DimensionMismatch(GenTraceError, ValueError):
    pass


class TypeMismatch(GenTraceError, TypeError):
    pass


class InvalidAddress(GenTraceError, TypeError):
    pass


class AddressCollision(GenTraceError, ValueError):
    pass


class UnvisitedConstraintError(GenTraceError, ValueError):
    pass


class UnvisitedConstraintWarning(UserWarning):
    pass


# What `generate` and `update` do with constraints at addresses the
# program never visits: "ignore", "warn" or "error".
unvisited_constraints = "warn"


def _report_unvisited(addresses: "list[Address]") -> None:
    if not addresses:
        return
    policy = unvisited_constraints
    if policy == "ignore":
        return
    shown = ", ".join(str(a) for a in sorted(addresses))
    msg = f"constraints at addresses the program never visited: {shown}"
    if policy == "warn":
        warnings.warn(msg, UnvisitedConstraintWarning, stacklevel=3)
    elif policy == "error":
        raise UnvisitedConstraintError(msg)
    else:
        raise InvalidParameter(
            f"unknown unvisited_constraints policy {policy!r}; "
            "expected 'ignore', 'warn' or 'error'"
        )


##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` is an abstract base class which registers a class with JAX's `Pytree`
    system, so that traces, choice maps and selections can be flattened,
    mapped over and stored by JAX utilities.

    Inheriting this class provides the implementor with the freedom to
    declare how the subfields of a class should behave:

    * `Pytree.static(...)`: the value of the field is a Python literal or
    constant and is embedded in the `PyTreeDef` of any instance.
    * `Pytree.field(...)` or no annotation: the value is a pytree child.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """
        Denote that a class (which is inheriting `Pytree`) should be treated
        as a frozen dataclass whose pytree structure follows its declared fields.

        Examples
        --------

        ```python
        @Pytree.dataclass
        class MyClass(Pytree):
            my_static_field: int = Pytree.static()
            my_dynamic_field: ArrayLike
        ```
        """

        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static. Fields which
        are provided with default values must come after required fields."""
        return field(metadata={"pytree_node": False}, **kwargs)

    @staticmethod
    def field(**kwargs):
        """Declare a field of a `Pytree` dataclass to be dynamic.
        Alternatively, one can leave the annotation off in the declaration."""
        return field(**kwargs)


###########
# Address #
###########


def _segment(part: Any) -> str | int:
    if isinstance(part, bool):
        raise InvalidAddress(f"address segments must be str or int, got bool {part!r}")
    if isinstance(part, str):
        return part
    try:
        return operator.index(part)
    except TypeError:
        raise InvalidAddress(
            f"address segments must be str or int, got {type(part).__name__} {part!r}"
        ) from None


def _segment_key(s: str | int) -> tuple[int, Any]:
    return (0, s) if isinstance(s, int) else (1, s)


@total_ordering
@dataclass(frozen=True, slots=True)
class Address:
    """A hierarchical path of `str` and `int` segments naming a random choice.

    Addresses compare structurally, hash by their segments, and are totally
    ordered so that iteration over choices is deterministic: segment by
    segment, integers before strings, a prefix before its extensions.

    ```python
    Address.of("data", 3, "y")
    Address.of("data").extend(3, "y")  # same address
    ```
    """

    segments: tuple[str | int, ...] = ()

    @staticmethod
    def of(*parts: Any) -> "Address":
        if len(parts) == 1 and isinstance(parts[0], Address):
            return parts[0]
        segments = []
        for part in parts:
            if isinstance(part, Address):
                segments.extend(part.segments)
            elif isinstance(part, tuple):
                segments.extend(Address.of(*part).segments)
            else:
                segments.append(_segment(part))
        return Address(tuple(segments))

    @staticmethod
    def root() -> "Address":
        return ROOT

    def extend(self, *parts: Any) -> "Address":
        return Address(self.segments + Address.of(*parts).segments)

    def concat(self, other: "Address") -> "Address":
        if not other.segments:
            return self
        return Address(self.segments + other.segments)

    def is_prefix_of(self, other: "Address") -> bool:
        n = len(self.segments)
        return other.segments[:n] == self.segments

    def strip(self, prefix: "Address") -> "Address":
        if not prefix.is_prefix_of(self):
            raise InvalidAddress(f"{prefix} is not a prefix of {self}")
        return Address(self.segments[len(prefix.segments) :])

    def prefixes(self) -> "Iterator[Address]":
        """Every prefix of this address, from the root to the address itself."""
        for i in range(len(self.segments) + 1):
            yield Address(self.segments[:i])

    @property
    def head(self) -> str | int:
        return self.segments[0]

    @property
    def tail(self) -> "Address":
        return Address(self.segments[1:])

    def sort_key(self) -> tuple:
        return tuple(_segment_key(s) for s in self.segments)

    def __lt__(self, other) -> bool:
        if not isinstance(other, Address):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)

    def __str__(self) -> str:
        if not self.segments:
            return "<root>"
        return " => ".join(repr(s) for s in self.segments)

    def __repr__(self) -> str:
        return f"Address{self.segments!r}"


ROOT = Address()


##############
# Choice map #
##############

_MISSING = object()


def _check_leaves(leaves: dict) -> None:
    prefixes = set()
    for addr in leaves:
        for i in range(len(addr.segments)):
            prefixes.add(addr.segments[:i])
    for addr in leaves:
        if addr.segments in prefixes:
            raise AddressCollision(
                f"address {addr} holds a value and is also a prefix of other addresses"
            )


def _plain(v: Any) -> Any:
    return np.asarray(v).tolist()


@Pytree.dataclass
class ChoiceMap(Pytree):
    """An immutable map from leaf `Address` to the value sampled there.

    The map is hierarchical through its addresses: `get_submap("data")`
    returns the choices under the `"data"` prefix with that prefix removed.
    No address is both a leaf and a proper prefix of another leaf.
    """

    leaves: dict[Address, Any] = Pytree.field(default_factory=dict)

    @staticmethod
    def empty() -> "ChoiceMap":
        return _EMPTY

    @staticmethod
    def value(v: Any) -> "ChoiceMap":
        """A choice map holding a single value at the root address."""
        return ChoiceMap({ROOT: v})

    @staticmethod
    def from_leaves(leaves: dict) -> "ChoiceMap":
        checked = {Address.of(a): v for a, v in leaves.items()}
        _check_leaves(checked)
        return ChoiceMap(checked)

    def is_empty(self) -> bool:
        return not self.leaves

    def __len__(self) -> int:
        return len(self.leaves)

    def has_value(self, addr: Any) -> bool:
        return Address.of(addr) in self.leaves

    def __contains__(self, addr: Any) -> bool:
        a = Address.of(addr)
        return a in self.leaves or any(a.is_prefix_of(k) for k in self.leaves)

    def __getitem__(self, addr: Any) -> Any:
        a = Address.of(addr)
        v = self.leaves.get(a, _MISSING)
        if v is _MISSING:
            raise AddressNotFound(a)
        return v

    def get(self, addr: Any, default: Any = None) -> Any:
        return self.leaves.get(Address.of(addr), default)

    def get_submap(self, prefix: Any) -> "ChoiceMap":
        p = Address.of(prefix)
        if not p.segments:
            return self
        n = len(p.segments)
        sub = {
            Address(a.segments[n:]): v
            for a, v in self.leaves.items()
            if a.segments[:n] == p.segments
        }
        return ChoiceMap(sub) if sub else _EMPTY

    def by_head(self) -> "dict[str | int, ChoiceMap]":
        """Group the choices by their first address segment."""
        groups: dict[str | int, dict[Address, Any]] = {}
        for a, v in self.leaves.items():
            if a.segments:
                groups.setdefault(a.head, {})[a.tail] = v
        return {h: ChoiceMap(g) for h, g in groups.items()}

    def addresses(self) -> list[Address]:
        return sorted(self.leaves)

    def items(self) -> list[tuple[Address, Any]]:
        return [(a, self.leaves[a]) for a in self.addresses()]

    def values(self) -> list[Any]:
        return [self.leaves[a] for a in self.addresses()]

    def __iter__(self):
        return iter(self.addresses())

    ############################
    # Typed accessors          #
    ############################

    def _typed(self, addr: Any, kinds: str, what: str) -> np.ndarray:
        v = np.asarray(self[addr])
        if v.ndim != 0 or v.dtype.kind not in kinds:
            raise TypeMismatch(
                f"value at {Address.of(addr)} is {v.dtype}{list(v.shape)}, not {what}"
            )
        return v

    def get_float(self, addr: Any) -> float:
        return float(self._typed(addr, "f", "a float scalar"))

    def get_int(self, addr: Any) -> int:
        return int(self._typed(addr, "iu", "an integer scalar"))

    def get_bool(self, addr: Any) -> bool:
        return bool(self._typed(addr, "b", "a boolean scalar"))

    def get_array(self, addr: Any) -> Array:
        v = self[addr]
        if jnp.ndim(v) == 0:
            raise TypeMismatch(f"value at {Address.of(addr)} is a scalar, not an array")
        return jnp.asarray(v)

    ############################
    # Transformations          #
    ############################

    def set(self, addr: Any, v: Any) -> "ChoiceMap":
        return self.merge(ChoiceMap({Address.of(addr): v}))

    def merge(self, other: "ChoiceMap") -> "ChoiceMap":
        """Combine two choice maps; values in `other` win on equal addresses."""
        if other.is_empty():
            return self
        if self.is_empty():
            return other
        leaves = {**self.leaves, **other.leaves}
        _check_leaves(leaves)
        return ChoiceMap(leaves)

    def prefixed(self, prefix: Any) -> "ChoiceMap":
        p = Address.of(prefix)
        if not p.segments:
            return self
        return ChoiceMap({p.concat(a): v for a, v in self.leaves.items()})

    def filter(self, selection: "Selection") -> "ChoiceMap":
        return ChoiceMap(
            {a: v for a, v in self.leaves.items() if selection.contains(a)}
        )

    def without(self, selection: "Selection") -> "ChoiceMap":
        return self.filter(selection.complement())

    def to_dict(self) -> Any:
        """Nested plain Python structure for display and serialization."""
        if ROOT in self.leaves:
            return _plain(self.leaves[ROOT])
        return {
            head: sub.to_dict()
            for head, sub in sorted(
                self.by_head().items(), key=lambda kv: _segment_key(kv[0])
            )
        }


_EMPTY = ChoiceMap({})


def _coerce_nested(prefix: Address, mapping: dict, out: dict) -> None:
    for k, v in mapping.items():
        addr = prefix.extend(k)
        if isinstance(v, dict):
            _coerce_nested(addr, v, out)
        elif isinstance(v, ChoiceMap):
            for a, x in v.leaves.items():
                out[addr.concat(a)] = x
        else:
            out[addr] = v


def choice_map(mapping: dict | None = None, **kwargs) -> ChoiceMap:
    """Build a `ChoiceMap` from a mapping of addresses to values.

    Keys may be strings, integers, tuples or `Address` values; nested
    dictionaries create hierarchy.

    ```python
    choice_map({"slope": 1.0, ("data", 0, "y"): 2.5})
    choice_map({"data": {0: {"y": 2.5}}}, slope=1.0)  # same choices
    ```
    """
    leaves: dict[Address, Any] = {}
    _coerce_nested(ROOT, dict(mapping or {}), leaves)
    _coerce_nested(ROOT, kwargs, leaves)
    _check_leaves(leaves)
    return ChoiceMap(leaves) if leaves else _EMPTY


def as_choice_map(x: Any) -> ChoiceMap:
    if x is None:
        return _EMPTY
    if isinstance(x, ChoiceMap):
        return x
    if isinstance(x, dict):
        return choice_map(x)
    raise TypeError(f"expected a ChoiceMap or dict of constraints, got {type(x).__name__}")


##############
# Selections #
##############


class Selection(Pytree):
    """A predicate over addresses. Selecting an address selects every
    address below it."""

    @abstractmethod
    def contains(self, addr: Address) -> bool:
        pass

    @abstractmethod
    def descend(self, prefix: Address) -> "Selection":
        """The selection as seen from inside the sub-program at `prefix`."""

    @staticmethod
    def all() -> "Selection":
        return AllSel()

    @staticmethod
    def none() -> "Selection":
        return NoneSel()

    def union(self, other: "Selection") -> "Selection":
        return OrSel(self, other)

    def intersect(self, other: "Selection") -> "Selection":
        return InSel(self, other)

    def complement(self) -> "Selection":
        return ComplSel(self)

    def __contains__(self, addr: Any) -> bool:
        return self.contains(Address.of(addr))

    def __or__(self, other: "Selection") -> "Selection":
        return self.union(other)

    def __and__(self, other: "Selection") -> "Selection":
        return self.intersect(other)

    def __invert__(self) -> "Selection":
        return self.complement()


@Pytree.dataclass
class AllSel(Selection):
    def contains(self, addr: Address) -> bool:
        return True

    def descend(self, prefix: Address) -> Selection:
        return self


@Pytree.dataclass
class NoneSel(Selection):
    def contains(self, addr: Address) -> bool:
        return False

    def descend(self, prefix: Address) -> Selection:
        return self


@Pytree.dataclass
class AddrSel(Selection):
    addrs: frozenset = Pytree.static()

    def contains(self, addr: Address) -> bool:
        return any(p.is_prefix_of(addr) for p in self.addrs)

    def descend(self, prefix: Address) -> Selection:
        if self.contains(prefix):
            return AllSel()
        rest = frozenset(p.strip(prefix) for p in self.addrs if prefix.is_prefix_of(p))
        return AddrSel(rest) if rest else NoneSel()


@Pytree.dataclass
class ComplSel(Selection):
    s: Selection

    def contains(self, addr: Address) -> bool:
        return not self.s.contains(addr)

    def descend(self, prefix: Address) -> Selection:
        return ComplSel(self.s.descend(prefix))


@Pytree.dataclass
class InSel(Selection):
    s1: Selection
    s2: Selection

    def contains(self, addr: Address) -> bool:
        return self.s1.contains(addr) and self.s2.contains(addr)

    def descend(self, prefix: Address) -> Selection:
        return InSel(self.s1.descend(prefix), self.s2.descend(prefix))


@Pytree.dataclass
class OrSel(Selection):
    s1: Selection
    s2: Selection

    def contains(self, addr: Address) -> bool:
        return self.s1.contains(addr) or self.s2.contains(addr)

    def descend(self, prefix: Address) -> Selection:
        return OrSel(self.s1.descend(prefix), self.s2.descend(prefix))


def select(*addrs: Any) -> Selection:
    """Select the given addresses (and everything below them).

    ```python
    select("slope", "intercept")
    select(("data", 3, "is_outlier"))
    ```
    """
    if not addrs:
        return NoneSel()
    return AddrSel(frozenset(Address.of(a) for a in addrs))


##########
# Traces #
##########


class Trace(Generic[X, R], Pytree):
    @abstractmethod
    def get_gen_fn(self) -> "GFI[X, R]":
        pass

    @abstractmethod
    def get_choices(self) -> ChoiceMap:
        pass

    @abstractmethod
    def get_args(self) -> tuple:
        pass

    @abstractmethod
    def get_retval(self) -> R:
        pass

    @abstractmethod
    def get_score(self) -> Score:
        pass

    @abstractmethod
    def project(self, selection: Selection) -> Weight:
        """Sum of the log densities of the selected choices."""

    def update(self, key: PRNGKey, constraints: Any = None, args: tuple | None = None):
        gen_fn = self.get_gen_fn()
        return gen_fn.update(
            key, self, self.get_args() if args is None else args, constraints
        )

    def regenerate(self, key: PRNGKey, selection: Selection, args: tuple | None = None):
        gen_fn = self.get_gen_fn()
        return gen_fn.regenerate(
            key, self, self.get_args() if args is None else args, selection
        )

    def __getitem__(self, addr: Any) -> Any:
        a = Address.of(addr)
        choices = self.get_choices()
        if not choices.has_value(a):
            raise AddressNotFound(a, "trace")
        return choices[a]


@Pytree.dataclass
class Tr(Trace[X, R]):
    """Trace of a single draw from a `Distribution`."""

    gen_fn: "Distribution[X]"
    args: tuple
    value: Any
    score: Score

    def get_gen_fn(self) -> "Distribution[X]":
        return self.gen_fn

    def get_choices(self) -> ChoiceMap:
        return ChoiceMap.value(self.value)

    def get_args(self) -> tuple:
        return self.args

    def get_retval(self) -> X:
        return self.value

    def get_score(self) -> Score:
        return self.score

    def project(self, selection: Selection) -> Weight:
        return self.score if selection.contains(ROOT) else _zero()


def get_choices(x: Trace | ChoiceMap) -> ChoiceMap:
    return x.get_choices() if isinstance(x, Trace) else x


def get_score(x: Trace) -> Score:
    return x.get_score()


def get_retval(x: Trace) -> Any:
    return x.get_retval()


def _same_leaf(x: Any, y: Any) -> bool:
    if x is y:
        return True
    xa, ya = np.asarray(x), np.asarray(y)
    return (
        xa.shape == ya.shape and xa.dtype == ya.dtype and bool(np.array_equal(xa, ya))
    )


def _same_args(args: tuple, args_: tuple) -> bool:
    if args is args_:
        return True
    leaves, tree = jtu.tree_flatten(args)
    leaves_, tree_ = jtu.tree_flatten(args_)
    if tree != tree_:
        return False
    return all(_same_leaf(x, y) for x, y in zip(leaves, leaves_))


def _same_gen_fn(gen_fn: "GFI", gen_fn_: "GFI") -> bool:
    return gen_fn is gen_fn_ or gen_fn == gen_fn_


#######
# GFI #
#######


class GFI(Generic[X, R], Pytree):
    """The generative function interface.

    Every model and proposal implements `simulate`, `generate`, `update`,
    `regenerate` and `assess`. Scores and weights are log densities;
    every operation that draws randomness takes an explicit `jax.random`
    key as its first argument.
    """

    def __call__(self, *args) -> "Thunk[X, R]":
        return Thunk(self, args)

    @abstractmethod
    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> Trace[X, R]:
        pass

    @abstractmethod
    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        constraints: Any,
    ) -> tuple[Trace[X, R], Weight]:
        pass

    @abstractmethod
    def update(
        self,
        key: PRNGKey,
        trace: Trace[X, R],
        args: tuple,
        constraints: Any,
    ) -> tuple[Trace[X, R], Weight, ChoiceMap]:
        pass

    @abstractmethod
    def regenerate(
        self,
        key: PRNGKey,
        trace: Trace[X, R],
        args: tuple,
        selection: Selection,
    ) -> tuple[Trace[X, R], Weight]:
        pass

    @abstractmethod
    def assess(
        self,
        args: tuple,
        choices: Any,
    ) -> tuple[Density, R]:
        pass

    def propose(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> tuple[ChoiceMap, Weight, R]:
        tr = self.simulate(key, args)
        return tr.get_choices(), tr.get_score(), tr.get_retval()

    def log_density(
        self,
        args: tuple,
        choices: Any,
    ) -> Density:
        logp, _ = self.assess(args, choices)
        return logp

    def map(
        self,
        in_axes: int | tuple | None = 0,
        axis_size: int | None = None,
    ) -> "Map":
        return Map(self, in_axes, axis_size)

    def repeat(self, n: int) -> "Map":
        return Map(self, None, n)


@Pytree.dataclass
class Thunk(Generic[X, R], Pytree):
    gen_fn: GFI[X, R]
    args: tuple

    def __matmul__(self, addr: Any) -> "Traced":
        return trace(addr, self.gen_fn, self.args)


@dataclass(frozen=True)
class Traced:
    """A request, yielded by a program body, to run `gen_fn` at `addr`."""

    addr: Address
    gen_fn: GFI
    args: tuple


def trace(addr: Any, gen_fn: GFI, args: tuple) -> Traced:
    return Traced(Address.of(addr), gen_fn, tuple(args))


#################
# Distributions #
#################


@Pytree.dataclass
class Distribution(Generic[X], GFI[X, X]):
    """A `Distribution` is a generative function with a single random choice,
    stored at the root address of its trace.

    Attributes:
        sampler: `(key, *params, sample_shape=()) -> value`
        log_prob: `(value, *params) -> log density`
        name: Optional name used in messages.
        validate: Optional `(*params) -> None` raising `InvalidParameter`.
        discrete: Whether values are discrete (no density gradient).
    """

    sampler: Callable[..., Any] = Pytree.static()
    log_prob: Callable[..., Any] = Pytree.static()
    name: str | None = Pytree.static(default=None)
    validate: Callable[..., Any] | None = Pytree.static(default=None)
    discrete: bool = Pytree.static(default=False)

    def check(self, *args) -> None:
        # Parameters are only validated when concrete.
        if self.validate is not None and not _is_traced(args):
            self.validate(*args)

    def sample(self, key: PRNGKey, *args, sample_shape: tuple = ()) -> Any:
        self.check(*args)
        return self.sampler(key, *args, sample_shape=sample_shape)

    def logpdf(self, v: Any, *args) -> Density:
        self.check(*args)
        return self.log_prob(v, *args)

    def log_density_gradient(self, v: Any, *args) -> Array:
        if self.discrete:
            raise TypeMismatch(
                f"{self.name or 'distribution'} is discrete and has no density gradient"
            )
        self.check(*args)
        v = jnp.asarray(v, dtype=jnp.result_type(float))
        return jax.grad(self.log_prob)(v, *args)

    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> Tr[X, X]:
        self.check(*args)
        v = self.sampler(key, *args)
        return Tr(self, args, v, self.log_prob(v, *args))

    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        constraints: Any,
    ) -> tuple[Tr[X, X], Weight]:
        constraints = as_choice_map(constraints)
        _report_unvisited([a for a in constraints.leaves if a.segments])
        v = constraints.leaves.get(ROOT, _MISSING)
        if v is _MISSING:
            return self.simulate(key, args), _zero()
        self.check(*args)
        logp = self.log_prob(v, *args)
        return Tr(self, args, v, logp), logp

    def assess(
        self,
        args: tuple,
        choices: Any,
    ) -> tuple[Density, X]:
        choices = as_choice_map(choices)
        v = choices.leaves.get(ROOT, _MISSING)
        if v is _MISSING:
            raise AddressNotFound(ROOT)
        return self.logpdf(v, *args), v

    def _rescore(self, trace: Tr[X, X], args: tuple) -> tuple[Tr[X, X], Weight]:
        if _same_args(trace.args, args):
            return trace, _zero()
        self.check(*args)
        logp = self.log_prob(trace.value, *args)
        return Tr(self, args, trace.value, logp), logp - trace.score

    def update(
        self,
        key: PRNGKey,
        trace: Tr[X, X],
        args: tuple,
        constraints: Any,
    ) -> tuple[Tr[X, X], Weight, ChoiceMap]:
        constraints = as_choice_map(constraints)
        _report_unvisited([a for a in constraints.leaves if a.segments])
        v = constraints.leaves.get(ROOT, _MISSING)
        if v is _MISSING:
            new_trace, w = self._rescore(trace, args)
            return new_trace, w, _EMPTY
        self.check(*args)
        logp = self.log_prob(v, *args)
        return (
            Tr(self, args, v, logp),
            logp - trace.score,
            ChoiceMap.value(trace.value),
        )

    def regenerate(
        self,
        key: PRNGKey,
        trace: Tr[X, X],
        args: tuple,
        selection: Selection,
    ) -> tuple[Tr[X, X], Weight]:
        if selection.contains(ROOT):
            return self.simulate(key, args), _zero()
        return self._rescore(trace, args)


def distribution(
    sampler: Callable[..., Any],
    logpdf: Callable[..., Any],
    /,
    name: str | None = None,
    validate: Callable[..., Any] | None = None,
    discrete: bool = False,
) -> Distribution[Any]:
    return Distribution(sampler, logpdf, name, validate, discrete)


def tfp_distribution[X](
    dist: Callable[..., "tfd.Distribution"],
    /,
    name: str | None = None,
    validate: Callable[..., Any] | None = None,
    discrete: bool = False,
    support: Callable[..., Any] | None = None,
) -> Distribution[Any]:
    """Wrap a TensorFlow Probability distribution constructor as a
    `Distribution`. Sampling and scoring are compiled with `jax.jit`.

    `support(v, *args)`, when given, masks the TFP log density so that
    values it rejects score `-inf`."""

    @partial(jax.jit, static_argnames=("sample_shape",))
    def keyful_sampler(key, *args, sample_shape=()):
        d = dist(*args)
        return d.sample(seed=key, sample_shape=sample_shape)

    @jax.jit
    def logpdf(v, *args):
        d = dist(*args)
        if support is None:
            return d.log_prob(v)
        return jnp.where(support(v, *args), d.log_prob(v), -jnp.inf)

    return distribution(
        keyful_sampler,
        logpdf,
        name=name,
        validate=validate,
        discrete=discrete,
    )


def _is_traced(args: tuple) -> bool:
    return any(isinstance(x, jax.core.Tracer) for x in jtu.tree_leaves(args))


######################
# Program execution #
######################


@dataclass
class Handler:
    """Bookkeeping shared by every way of executing a program body: the
    sub-traces recorded so far, the running score, and the key stream."""

    key: Any
    subtraces: dict = field(default_factory=dict)
    score: Any = field(default_factory=_zero)
    inner: set = field(default_factory=set)

    def next_key(self) -> PRNGKey:
        self.key, sub = jrand.split(self.key)
        return sub

    def claim(self, addr: Address) -> None:
        # Sites never nest inside one another.
        if addr in self.inner or any(p in self.subtraces for p in addr.prefixes()):
            raise AddressCollision(
                f"address {addr} collides with an address already visited"
            )
        self.inner.update(list(addr.prefixes())[:-1])

    def record(self, addr: Address, tr: Trace) -> Any:
        self.claim(addr)
        self.subtraces[addr] = tr
        self.score = self.score + tr.get_score()
        return tr.get_retval()

    def to_trace(self, gen_fn: "Fn", args: tuple, retval: Any) -> "FnTr":
        return FnTr(
            gen_fn,
            args,
            self.subtraces,
            _collect_choices(self.subtraces),
            retval,
            self.score,
        )


def _collect_choices(subtraces: dict) -> ChoiceMap:
    leaves = {}
    for addr, sub in subtraces.items():
        if isinstance(sub, Tr):
            leaves[addr] = sub.value
        else:
            for a, v in sub.get_choices().leaves.items():
                leaves[addr.concat(a)] = v
    return ChoiceMap(leaves)


def _constraints_at(constraints: ChoiceMap, addr: Address, gen_fn: GFI) -> ChoiceMap:
    if constraints.is_empty():
        return _EMPTY
    if isinstance(gen_fn, Distribution):
        v = constraints.leaves.get(addr, _MISSING)
        return _EMPTY if v is _MISSING else ChoiceMap.value(v)
    return constraints.get_submap(addr)


def _unvisited(constraints: ChoiceMap, subtraces: dict) -> list[Address]:
    """Constraint addresses not covered by any recorded site. Deeper
    addresses below a nested program are checked by that program."""
    missed = []
    for a in constraints.leaves:
        for p in a.prefixes():
            sub = subtraces.get(p)
            if sub is not None:
                if isinstance(sub, Tr) and p != a:
                    missed.append(a)
                break
        else:
            missed.append(a)
    return missed


@dataclass
class Simulate(Handler):
    def __call__(self, addr: Address, gen_fn: GFI, args: tuple) -> Any:
        tr = gen_fn.simulate(self.next_key(), args)
        return self.record(addr, tr)


@dataclass
class Generate(Handler):
    constraints: ChoiceMap = field(default_factory=ChoiceMap.empty)
    weight: Any = field(default_factory=_zero)

    def __call__(self, addr: Address, gen_fn: GFI, args: tuple) -> Any:
        sub = _constraints_at(self.constraints, addr, gen_fn)
        if isinstance(gen_fn, Distribution) and not sub.is_empty():
            key = self.key
        else:
            key = self.next_key()
        tr, w = gen_fn.generate(key, args, sub)
        self.weight = self.weight + w
        return self.record(addr, tr)


@dataclass
class Assess:
    choices: ChoiceMap
    logp: Any = field(default_factory=_zero)
    visited: set = field(default_factory=set)

    def __call__(self, addr: Address, gen_fn: GFI, args: tuple) -> Any:
        if addr in self.visited:
            raise AddressCollision(f"address {addr} visited twice")
        self.visited.add(addr)
        if isinstance(gen_fn, Distribution):
            v = self.choices.leaves.get(addr, _MISSING)
            if v is _MISSING:
                raise AddressNotFound(addr)
            logp = gen_fn.logpdf(v, *args)
            r = v
        else:
            try:
                logp, r = gen_fn.assess(args, self.choices.get_submap(addr))
            except AddressNotFound as e:
                raise AddressNotFound(addr.concat(e.address)) from e
        self.logp = self.logp + logp
        return r


@dataclass
class Update(Handler):
    prev: Any = None
    constraints: ChoiceMap = field(default_factory=ChoiceMap.empty)
    weight: Any = field(default_factory=_zero)
    discard: dict = field(default_factory=dict)
    kept: set = field(default_factory=set)

    def __call__(self, addr: Address, gen_fn: GFI, args: tuple) -> Any:
        sub = _constraints_at(self.constraints, addr, gen_fn)
        prev = self.prev.subtraces.get(addr)
        if prev is not None and _same_gen_fn(prev.get_gen_fn(), gen_fn):
            key = self.key if isinstance(gen_fn, Distribution) else self.next_key()
            tr, w, discard = gen_fn.update(key, prev, args, sub)
            self.kept.add(addr)
            if not discard.is_empty():
                self.discard[addr] = discard
        else:
            tr, w = gen_fn.generate(self.next_key(), args, sub)
        self.weight = self.weight + w
        return self.record(addr, tr)


@dataclass
class Regenerate(Handler):
    prev: Any = None
    selection: Selection = field(default_factory=NoneSel)
    weight: Any = field(default_factory=_zero)
    kept: set = field(default_factory=set)

    def __call__(self, addr: Address, gen_fn: GFI, args: tuple) -> Any:
        prev = self.prev.subtraces.get(addr)
        if prev is not None and _same_gen_fn(prev.get_gen_fn(), gen_fn):
            if isinstance(gen_fn, Distribution):
                selected = self.selection.contains(addr)
                sub = AllSel() if selected else NoneSel()
                key = self.next_key() if selected else self.key
            else:
                sub = self.selection.descend(addr)
                key = self.next_key()
            tr, w = gen_fn.regenerate(key, prev, args, sub)
            self.kept.add(addr)
            self.weight = self.weight + w
        else:
            tr = gen_fn.simulate(self.next_key(), args)
        return self.record(addr, tr)


######
# Fn #
######


@Pytree.dataclass
class FnTr(Generic[R], Trace[ChoiceMap, R]):
    gen_fn: "Fn[R]"
    args: tuple
    subtraces: dict[Address, Any]
    choices: ChoiceMap
    retval: Any
    score: Score

    def get_gen_fn(self) -> "Fn[R]":
        return self.gen_fn

    def get_choices(self) -> ChoiceMap:
        return self.choices

    def get_args(self) -> tuple:
        return self.args

    def get_retval(self) -> R:
        return self.retval

    def get_score(self) -> Score:
        return self.score

    def project(self, selection: Selection) -> Weight:
        total = _zero()
        for addr, sub in self.subtraces.items():
            if isinstance(sub, Tr):
                if selection.contains(addr):
                    total = total + sub.score
            else:
                total = total + sub.project(selection.descend(addr))
        return total


@Pytree.dataclass
class Fn(Generic[R], GFI[ChoiceMap, R]):
    """A `Fn` is a generative function created from a Python generator
    function with the `@gen` decorator.

    The body yields addressed requests and receives the chosen values
    back; the executing handler decides whether a value is sampled,
    constrained, reused or resampled, and keeps the score.

    Example:
        >>> @gen
        ... def linear_regression(xs):
        ...     slope = yield normal(0.0, 1.0) @ "slope"
        ...     intercept = yield normal(0.0, 1.0) @ "intercept"
        ...     ys = []
        ...     for i, x in enumerate(xs):
        ...         ys.append((yield normal(slope * x + intercept, 0.1) @ ("y", i)))
        ...     return ys
        >>>
        >>> tr = linear_regression.simulate(jax.random.key(0), ([1.0, 2.0, 3.0],))
        >>> tr["slope"], tr["y", 2]
    """

    source: Callable[..., Any] = Pytree.static()

    def _run(self, handler: Callable[..., Any], args: tuple) -> Any:
        program = self.source(*args)
        if not inspect.isgenerator(program):
            return program
        value = None
        try:
            while True:
                try:
                    request = program.send(value)
                except StopIteration as stop:
                    return stop.value
                if not isinstance(request, Traced):
                    raise TypeError(
                        f"{self.source.__name__} yielded {request!r}; program bodies must "
                        "yield addressed calls such as `normal(0.0, 1.0) @ 'x'`"
                    )
                value = handler(request.addr, request.gen_fn, request.args)
        finally:
            program.close()

    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> FnTr[R]:
        handler = Simulate(key)
        r = self._run(handler, args)
        return handler.to_trace(self, args, r)

    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        constraints: Any,
    ) -> tuple[FnTr[R], Weight]:
        constraints = as_choice_map(constraints)
        handler = Generate(key, constraints=constraints)
        r = self._run(handler, args)
        _report_unvisited(_unvisited(constraints, handler.subtraces))
        return handler.to_trace(self, args, r), handler.weight

    def assess(
        self,
        args: tuple,
        choices: Any,
    ) -> tuple[Density, R]:
        handler = Assess(as_choice_map(choices))
        r = self._run(handler, args)
        return handler.logp, r

    def update(
        self,
        key: PRNGKey,
        trace: FnTr[R],
        args: tuple,
        constraints: Any,
    ) -> tuple[FnTr[R], Weight, ChoiceMap]:
        constraints = as_choice_map(constraints)
        handler = Update(key, prev=trace, constraints=constraints)
        r = self._run(handler, args)
        _report_unvisited(_unvisited(constraints, handler.subtraces))
        weight = handler.weight
        discard = {}
        for addr, old in trace.subtraces.items():
            if addr in handler.kept:
                continue
            weight = weight - old.get_score()
            discard[addr] = old.get_choices()
        discard.update(handler.discard)
        leaves = {}
        for addr, cm in discard.items():
            leaves.update(cm.prefixed(addr).leaves)
        return handler.to_trace(self, args, r), weight, ChoiceMap(leaves)

    def regenerate(
        self,
        key: PRNGKey,
        trace: FnTr[R],
        args: tuple,
        selection: Selection,
    ) -> tuple[FnTr[R], Weight]:
        handler = Regenerate(key, prev=trace, selection=selection)
        r = self._run(handler, args)
        # Added and removed sites leave the weight unchanged.
        return handler.to_trace(self, args, r), handler.weight


def gen(fn: Callable[..., Any]) -> Fn[Any]:
    return Fn(source=fn)


#######
# Map #
#######


@Pytree.dataclass
class MapTr(Trace[ChoiceMap, list]):
    gen_fn: "Map"
    args: tuple
    subtraces: tuple
    choices: ChoiceMap
    score: Score

    def get_gen_fn(self) -> "Map":
        return self.gen_fn

    def get_choices(self) -> ChoiceMap:
        return self.choices

    def get_args(self) -> tuple:
        return self.args

    def get_retval(self) -> list:
        return [sub.get_retval() for sub in self.subtraces]

    def get_score(self) -> Score:
        return self.score

    def project(self, selection: Selection) -> Weight:
        total = _zero()
        for i, sub in enumerate(self.subtraces):
            total = total + sub.project(selection.descend(Address((i,))))
        return total


def _map_trace(gen_fn: "Map", args: tuple, subtraces: list) -> MapTr:
    leaves = {}
    score = _zero()
    for i, sub in enumerate(subtraces):
        for a, v in sub.get_choices().leaves.items():
            leaves[Address((i,) + a.segments)] = v
        score = score + sub.get_score()
    return MapTr(gen_fn, args, tuple(subtraces), ChoiceMap(leaves), score)


def _unvisited_indices(groups: dict, constraints: ChoiceMap, n: int) -> list[Address]:
    missed = [a for a in constraints.leaves if not a.segments]
    for head, sub in groups.items():
        if not (isinstance(head, int) and 0 <= head < n):
            missed.extend(Address((head,)).concat(a) for a in sub.leaves)
    return missed


@Pytree.dataclass
class Map(GFI[ChoiceMap, list]):
    """A `Map` applies a generative function independently at indices
    `0..n-1`; the choices made for element `i` live under address `i`.

    Attributes:
        gen_fn: The generative function applied at every index.
        in_axes: `0` to map over an argument's first axis, `None` to
            broadcast it; an int/None or a tuple with one entry per argument.
        axis_size: Number of elements when no argument is mapped.

    Example:
        >>> @gen
        ... def point(x, slope):
        ...     return (yield normal(slope * x, 0.1) @ "y")
        >>>
        >>> points = point.map(in_axes=(0, None))
        >>> tr = points.simulate(key, ([1.0, 2.0, 3.0], 2.0))
        >>> tr[1, "y"]
    """

    gen_fn: GFI[X, R]
    in_axes: Any = Pytree.static(default=0)
    axis_size: int | None = Pytree.static(default=None)

    def _element_args(self, args: tuple) -> list[tuple]:
        axes = self.in_axes if isinstance(self.in_axes, tuple) else (self.in_axes,) * len(args)
        if len(axes) != len(args):
            raise DimensionMismatch(
                f"in_axes has {len(axes)} entries for {len(args)} arguments"
            )
        lengths = set()
        for arg, axis in zip(args, axes):
            if axis is None:
                continue
            if axis != 0:
                raise InvalidParameter(f"Map only maps over axis 0, got in_axes={axis}")
            lengths.add(len(arg))
        if self.axis_size is not None:
            lengths.add(self.axis_size)
        if len(lengths) > 1:
            raise DimensionMismatch(
                f"mapped arguments have inconsistent lengths {sorted(lengths)}"
            )
        if not lengths:
            raise InvalidParameter("Map needs a mapped argument or an explicit axis_size")
        n = lengths.pop()
        return [
            tuple(arg if axis is None else arg[i] for arg, axis in zip(args, axes))
            for i in range(n)
        ]

    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> MapTr:
        elements = self._element_args(args)
        keys = jrand.split(key, max(len(elements), 1))
        subtraces = [
            self.gen_fn.simulate(keys[i], a) for i, a in enumerate(elements)
        ]
        return _map_trace(self, args, subtraces)

    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        constraints: Any,
    ) -> tuple[MapTr, Weight]:
        constraints = as_choice_map(constraints)
        elements = self._element_args(args)
        groups = constraints.by_head()
        _report_unvisited(_unvisited_indices(groups, constraints, len(elements)))
        keys = jrand.split(key, max(len(elements), 1))
        subtraces, weight = [], _zero()
        for i, a in enumerate(elements):
            tr, w = self.gen_fn.generate(keys[i], a, groups.get(i, _EMPTY))
            subtraces.append(tr)
            weight = weight + w
        return _map_trace(self, args, subtraces), weight

    def assess(
        self,
        args: tuple,
        choices: Any,
    ) -> tuple[Density, list]:
        groups = as_choice_map(choices).by_head()
        logp, retvals = _zero(), []
        for i, a in enumerate(self._element_args(args)):
            try:
                density, r = self.gen_fn.assess(a, groups.get(i, _EMPTY))
            except AddressNotFound as e:
                raise AddressNotFound(Address((i,)).concat(e.address)) from e
            logp = logp + density
            retvals.append(r)
        return logp, retvals

    def update(
        self,
        key: PRNGKey,
        trace: MapTr,
        args: tuple,
        constraints: Any,
    ) -> tuple[MapTr, Weight, ChoiceMap]:
        constraints = as_choice_map(constraints)
        elements = self._element_args(args)
        groups = constraints.by_head()
        _report_unvisited(_unvisited_indices(groups, constraints, len(elements)))
        keys = jrand.split(key, max(len(elements), 1))
        subtraces, weight, discard = [], _zero(), {}
        for i, a in enumerate(elements):
            sub = groups.get(i, _EMPTY)
            if i < len(trace.subtraces):
                tr, w, d = self.gen_fn.update(keys[i], trace.subtraces[i], a, sub)
                discard.update(d.prefixed(i).leaves)
            else:
                tr, w = self.gen_fn.generate(keys[i], a, sub)
            subtraces.append(tr)
            weight = weight + w
        for i in range(len(elements), len(trace.subtraces)):
            old = trace.subtraces[i]
            weight = weight - old.get_score()
            discard.update(old.get_choices().prefixed(i).leaves)
        return _map_trace(self, args, subtraces), weight, ChoiceMap(discard)

    def regenerate(
        self,
        key: PRNGKey,
        trace: MapTr,
        args: tuple,
        selection: Selection,
    ) -> tuple[MapTr, Weight]:
        elements = self._element_args(args)
        keys = jrand.split(key, max(len(elements), 1))
        subtraces, weight = [], _zero()
        for i, a in enumerate(elements):
            if i < len(trace.subtraces):
                sub_sel = selection.descend(Address((i,)))
                tr, w = self.gen_fn.regenerate(keys[i], trace.subtraces[i], a, sub_sel)
                weight = weight + w
            else:
                tr = self.gen_fn.simulate(keys[i], a)
            subtraces.append(tr)
        return _map_trace(self, args, subtraces), weight
