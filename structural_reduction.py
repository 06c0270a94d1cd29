"""
Structural reduction of an assembled network into a minimal DAE/ODE system.

Input is a NetworkGraph (components + coupling + current-balance equations,
produced by ``connectome_to_odes.resolve_network``). Reduction:

  1. register every variable in declaration order (neurons, then synapses)
  2. collapse ``A == B`` equations into alias classes; the earliest declared
     member is the canonical representative
  3. rewrite all equations in canonical variables, drop trivial ones
  4. count unknowns vs equations (Underdetermined / Overdetermined are fatal)
  5. move explicit algebraic equations ``x == f`` into observed definitions

The split strategy pre-reduces every neuron and synapse on its own (optionally
in a thread pool) and then runs the same global pass over the pieces.

The result, ReducedSystem, exposes ``to_rhs()`` returning ``f(t, y, p)`` for
an integrator (NumPy or JAX backend).
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import sympy as sp

from equation_system import Component, Equation, EquationSystemReducer, Variable, eq
from modeling_errors import MalformedComponent, OverdeterminedSystem, UnderdeterminedSystem


# =========================
#  INPUT: NETWORK GRAPH
# =========================

@dataclass(frozen=True)
class SynapseRecord:
    pre_id: str
    post_id: str
    kind: str
    component: Component

    @property
    def name(self) -> str:
        return self.component.name


@dataclass(frozen=True)
class NetworkGraph:
    """Components plus the cross-component equations tying them together.

    ``contributions[neuron_id][role]`` lists, in insertion order, the
    current variables summed into that neuron's ``role`` port (intrinsic
    channel currents first, then synaptic ones).
    """
    neurons: Dict[str, Component]
    synapses: Tuple[SynapseRecord, ...]
    couplings: Tuple[Equation, ...]
    contributions: Dict[str, Dict[str, Tuple[Variable, ...]]]
    extra_equations: Tuple[Equation, ...] = ()

    def components(self) -> Tuple[Component, ...]:
        return tuple(self.neurons.values()) + tuple(r.component for r in self.synapses)

    def variables(self) -> Tuple[Variable, ...]:
        out: List[Variable] = []
        for c in self.components():
            out.extend(c.all_variables())
        return tuple(out)

    def balance(self, neuron_id: str, role: str = "i") -> Equation:
        """``port == sum(contributions)``; an empty sum balances to zero."""
        terms = self.contributions[neuron_id][role]
        return eq(self.neurons[neuron_id].port(role), sp.Add(*[v.sym for v in terms]))

    def balances(self) -> List[Equation]:
        return [self.balance(nid, role)
                for nid, per_role in self.contributions.items() for role in per_role]

    def cross_equations(self) -> List[Equation]:
        return list(self.couplings) + self.balances() + list(self.extra_equations)

    def equations(self) -> List[Equation]:
        out: List[Equation] = []
        for c in self.components():
            out.extend(c.all_equations())
        return out + self.cross_equations()

    def with_equations(self, *equations: Equation) -> "NetworkGraph":
        """Copy of the graph with additional cross-component equations."""
        known = {v.sym for v in self.variables()}
        for e in equations:
            missing = sorted(str(s) for s in e.free_symbols if s not in known)
            if missing:
                raise MalformedComponent("network", f"equation `{e}` references undeclared {', '.join(missing)}")
        return replace(self, extra_equations=self.extra_equations + tuple(equations))


# =========================
#  OUTPUT: REDUCED SYSTEM
# =========================

@dataclass(frozen=True)
class ReducedSystem:
    """Minimal equation system plus the provenance needed to interpret it.

    Attributes:
        states:             differential states, in declaration order
        equations:          one differential equation per state (same order),
                            then any residual algebraic equations
        algebraic_unknowns: non-differential unknowns left in ``equations``
        observed:           eliminated quantities as explicit definitions of
                            states and parameters
        parameters:         every parameter referenced by the system
        variables:          every declared variable (declaration order)
        alias_classes:      partition of ``variables``; first member is canonical
    """
    states: Tuple[Variable, ...]
    equations: Tuple[Equation, ...]
    algebraic_unknowns: Tuple[Variable, ...]
    observed: Tuple[Equation, ...]
    parameters: Tuple[Variable, ...]
    variables: Tuple[Variable, ...]
    alias_classes: Tuple[Tuple[Variable, ...], ...]
    neurons: Tuple[str, ...]
    neuron_ports: Dict[str, Dict[str, Variable]]
    synapses: Tuple[SynapseRecord, ...]
    current_balances: Dict[str, Equation]
    strategy: str = "standard"
    _class_index: Dict[str, int] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        index = {v.path: i for i, cls in enumerate(self.alias_classes) for v in cls}
        object.__setattr__(self, "_class_index", index)

    # ---- canonical variables ----
    def canonical(self, var: Union[Variable, str]) -> Variable:
        """Canonical representative of ``var``'s alias class (same object on every call)."""
        path = var if isinstance(var, str) else var.path
        try:
            return self.alias_classes[self._class_index[path]][0]
        except KeyError:
            raise KeyError(f"{path!r} is not a variable of this system") from None

    def aliases(self, var: Union[Variable, str]) -> Tuple[Variable, ...]:
        self.canonical(var)
        path = var if isinstance(var, str) else var.path
        return self.alias_classes[self._class_index[path]]

    @property
    def differential_equations(self) -> Tuple[Equation, ...]:
        return self.equations[:len(self.states)]

    @property
    def algebraic_equations(self) -> Tuple[Equation, ...]:
        return self.equations[len(self.states):]

    @property
    def is_ode(self) -> bool:
        return not self.algebraic_equations

    @property
    def parameter_values(self) -> Dict[str, float]:
        return {p.path: p.default for p in self.parameters}

    # ---- numerics ----
    def default_value(self, var: Union[Variable, str]) -> float:
        """First declared default within ``var``'s alias class, else 0."""
        for v in self.aliases(var):
            if v.default is not None:
                return float(v.default)
        return 0.0

    def _vector(self, variables: Sequence[Variable], overrides: Optional[Mapping], what: str) -> np.ndarray:
        values = [self.default_value(v) for v in variables]
        position = {v.path: i for i, v in enumerate(variables)}
        for key, val in (overrides or {}).items():
            path = self.canonical(key).path
            if path not in position:
                raise KeyError(f"{path!r} is not a {what} of this system")
            values[position[path]] = float(val)
        return np.asarray(values, dtype=float)

    def initial_state(self, overrides: Optional[Mapping[Union[Variable, str], float]] = None) -> np.ndarray:
        """State vector from declared defaults; overrides may name any alias."""
        return self._vector(self.states, overrides, "state")

    def parameter_vector(self, overrides: Optional[Mapping[Union[Variable, str], float]] = None) -> np.ndarray:
        return self._vector(self.parameters, overrides, "parameter")

    def _lambdify(self, exprs: List[sp.Expr], backend: str) -> Callable:
        t = sp.Symbol("t", real=True)
        y = [v.sym for v in self.states]
        p = [v.sym for v in self.parameters]
        if backend == "numpy":
            raw = sp.lambdify((t, y, p), exprs, modules="numpy", dummify=True)

            def f(t, y, p):
                return np.asarray(raw(t, y, p), dtype=float)
            return f
        if backend == "jax":
            import jax.numpy as jnp

            raw = sp.lambdify((t, y, p), exprs, modules=[jnp], dummify=True)

            def f(t, y, p):
                return jnp.asarray(raw(t, y, p), dtype=jnp.result_type(float))
            return f
        raise ValueError(f"Unknown backend {backend!r} (expected 'numpy' or 'jax')")

    def to_rhs(self, backend: str = "numpy") -> Callable:
        """``f(t, y, p) -> dy/dt`` ordered like ``states``; ``p`` like ``parameters``."""
        if not self.is_ode:
            raise ValueError(
                f"System keeps {len(self.algebraic_equations)} implicit algebraic equation(s); "
                "it needs a DAE solver, not an ODE right-hand side"
            )
        return self._lambdify([e.rhs for e in self.differential_equations], backend)

    def observed_function(self, backend: str = "numpy") -> Callable:
        """``g(t, y, p)`` evaluating every observed quantity, ordered like ``observed``."""
        return self._lambdify([e.rhs for e in self.observed], backend)

    def __str__(self) -> str:
        lines = [f"ReducedSystem ({self.strategy}): {len(self.states)} states, "
                 f"{len(self.algebraic_unknowns)} algebraic, {len(self.observed)} observed"]
        lines.extend(f"  {e}" for e in self.equations)
        return "\n".join(lines)


# =========================
#  REDUCTION CORE
# =========================

def _check_balance(reducer: EquationSystemReducer, equations: Sequence[Equation]) -> None:
    seen: Dict[sp.Symbol, int] = {}
    for e in equations:
        if e.differential:
            seen[e.lhs] = seen.get(e.lhs, 0) + 1
    doubled = sorted(str(s) for s, n in seen.items() if n > 1)
    unknowns = reducer.unknowns(equations)
    n_unk, n_eq = len(unknowns), len(equations)
    if doubled:
        raise OverdeterminedSystem(n_unk, n_eq, f"state(s) with more than one differential equation: {', '.join(doubled)}")
    if n_unk > n_eq:
        lhs = {e.lhs for e in equations}
        free = [str(s) for s in unknowns if s not in lhs][:8]
        raise UnderdeterminedSystem(n_unk, n_eq, f"unknowns without a defining equation include {', '.join(free)}")
    if n_eq > n_unk:
        empty = [str(e) for e in equations if not reducer.unknowns([e])][:4]
        detail = f"constraints on known quantities only: {'; '.join(empty)}" if empty else ""
        raise OverdeterminedSystem(n_unk, n_eq, detail)


def _check_result(reducer: EquationSystemReducer, remaining: Sequence[Equation],
                  observed: Sequence[Equation]) -> None:
    defined = {e.lhs for e in observed}
    unknowns = set(reducer.unknowns(list(remaining) + list(observed))) - defined
    n_unk, n_eq = len(unknowns), len(remaining)
    for e in remaining:
        if not (set(reducer.unknowns([e])) - defined):
            raise OverdeterminedSystem(n_unk, n_eq, f"constraint `{e}` involves no unknowns")
    if n_unk > n_eq:
        raise UnderdeterminedSystem(n_unk, n_eq, "after eliminating explicit definitions")
    if n_eq > n_unk:
        raise OverdeterminedSystem(n_unk, n_eq, "after eliminating explicit definitions")


def _reduce_core(
    variables: Iterable[Variable],
    equations: Sequence[Equation],
    *,
    alias_pairs: Iterable[Tuple[sp.Symbol, sp.Symbol]] = (),
    prior_observed: Sequence[Equation] = (),
) -> Tuple[EquationSystemReducer, List[Equation], List[Equation]]:
    reducer = EquationSystemReducer(variables)
    for a, b in alias_pairs:
        reducer.union(a, b)
    rest = reducer.collect_aliases(equations)
    canon = reducer.canonicalize(rest)
    prior = reducer.canonicalize(prior_observed)
    _check_balance(reducer, canon + prior)
    remaining, observed = reducer.eliminate_explicit(canon, prior)
    _check_result(reducer, remaining, observed)
    return reducer, remaining, observed


def _balance_record(reducer: EquationSystemReducer, port: Variable, terms: Sequence[Variable]) -> Equation:
    """``port == sum(terms)`` in canonical variables.

    A term in the same alias class as the port keeps its own symbol, so a
    single-contribution balance never collapses to ``x == x``.
    """
    lhs = reducer.find(port.sym)
    rhs = []
    for t in terms:
        s = reducer.find(t.sym)
        rhs.append(t.sym if s == lhs else s)
    return Equation(lhs, sp.Add(*rhs))


def _assemble(
    reducer: EquationSystemReducer,
    remaining: List[Equation],
    observed: List[Equation],
    *,
    neurons: Tuple[str, ...],
    neuron_ports: Dict[str, Dict[str, Variable]],
    synapses: Tuple[SynapseRecord, ...],
    strategy: str,
    contributions: Optional[Dict[str, Tuple[Variable, Tuple[Variable, ...]]]] = None,
    current_balances: Optional[Dict[str, Equation]] = None,
) -> ReducedSystem:
    rank = reducer.rank
    differential = sorted((e for e in remaining if e.differential), key=lambda e: rank(e.lhs))
    algebraic = [e for e in remaining if not e.differential]
    states = tuple(reducer.variable(e.lhs) for e in differential)

    state_syms = {v.sym for v in states}
    alg_syms = [s for s in reducer.unknowns(algebraic) if s not in state_syms]
    observed = sorted(observed, key=lambda e: rank(e.lhs))

    used = set()
    for e in list(remaining) + observed:
        used |= e.free_symbols
    parameters = tuple(v for v in reducer.variables() if v.is_parameter and v.sym in used)

    if current_balances is None:
        current_balances = {nid: _balance_record(reducer, port, terms)
                            for nid, (port, terms) in (contributions or {}).items()}
    return ReducedSystem(
        states=states,
        equations=tuple(differential) + tuple(algebraic),
        algebraic_unknowns=tuple(reducer.variable(s) for s in alg_syms),
        observed=tuple(observed),
        parameters=parameters,
        variables=reducer.variables(),
        alias_classes=tuple(reducer.alias_classes()),
        neurons=neurons,
        neuron_ports=neuron_ports,
        synapses=synapses,
        current_balances=current_balances,
        strategy=strategy,
    )


def _graph_provenance(graph: NetworkGraph) -> Dict[str, Any]:
    return dict(
        neurons=tuple(graph.neurons),
        neuron_ports={nid: dict(c.ports) for nid, c in graph.neurons.items()},
        synapses=tuple(graph.synapses),
        contributions={nid: (graph.neurons[nid].port("i"), roles["i"])
                       for nid, roles in graph.contributions.items() if "i" in roles},
    )


def _system_provenance(system: ReducedSystem) -> Dict[str, Any]:
    return dict(
        neurons=system.neurons,
        neuron_ports=system.neuron_ports,
        synapses=system.synapses,
        current_balances=system.current_balances,
    )


def _log_result(system: ReducedSystem, n_in: int, started: float) -> None:
    n_alias = sum(len(c) - 1 for c in system.alias_classes)
    print(f"[reduce] {system.strategy}: {n_in} equations, {n_alias} aliases collapsed -> "
          f"{len(system.states)} states, {len(system.algebraic_unknowns)} algebraic, "
          f"{len(system.observed)} observed ({time.perf_counter() - started:.2f}s)")


def reduce(graph: Union[NetworkGraph, ReducedSystem], *, verbose: bool = False) -> ReducedSystem:
    """Standard strategy: one global pass over every equation of the network.

    Reducing an already reduced system returns an equivalent system.
    """
    started = time.perf_counter()
    if isinstance(graph, ReducedSystem):
        alias_pairs = [(m.sym, cls[0].sym) for cls in graph.alias_classes for m in cls[1:]]
        equations = list(graph.equations)
        reducer, remaining, observed = _reduce_core(
            graph.variables, equations, alias_pairs=alias_pairs, prior_observed=graph.observed)
        system = _assemble(reducer, remaining, observed, strategy=graph.strategy, **_system_provenance(graph))
    elif isinstance(graph, NetworkGraph):
        equations = graph.equations()
        reducer, remaining, observed = _reduce_core(graph.variables(), equations)
        system = _assemble(reducer, remaining, observed, strategy="standard", **_graph_provenance(graph))
    else:
        raise TypeError(f"reduce() expects a NetworkGraph or ReducedSystem, got {type(graph).__name__}")
    if verbose:
        _log_result(system, len(equations), started)
    return system


# =========================
#  SPLIT STRATEGY
# =========================

@dataclass(frozen=True)
class _Piece:
    name: str
    equations: Tuple[Equation, ...]
    definitions: Tuple[Equation, ...]
    alias_pairs: Tuple[Tuple[sp.Symbol, sp.Symbol], ...]


def _interface(component: Component) -> List[sp.Symbol]:
    syms = [v.sym for v in component.ports.values()]
    syms += [v.sym for vs in component.currents.values() for v in vs]
    return syms


def pre_reduce(component: Component) -> _Piece:
    """Aliases and internal explicit definitions of one component.

    Port and current variables are kept so the global pass can still wire them.
    """
    reducer = EquationSystemReducer(component.all_variables())
    rest = reducer.collect_aliases(component.all_equations())
    canon = reducer.canonicalize(rest)
    keep = {reducer.find(s) for s in _interface(component)}
    remaining, definitions = reducer.eliminate_explicit(canon, keep=keep)
    return _Piece(
        name=component.name,
        equations=tuple(remaining),
        definitions=tuple(definitions),
        alias_pairs=tuple(reducer.canonical_map().items()),
    )


def reduce_split(graph: NetworkGraph, *, workers: Optional[int] = None, verbose: bool = False) -> ReducedSystem:
    """Split strategy: pre-reduce every component, then one global pass.

    ``workers`` > 1 pre-reduces components in a thread pool; the result does
    not depend on it.
    """
    if not isinstance(graph, NetworkGraph):
        raise TypeError(f"reduce_split() expects a NetworkGraph, got {type(graph).__name__}")
    started = time.perf_counter()
    components = graph.components()
    if workers and workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            pieces = list(pool.map(pre_reduce, components))
    else:
        pieces = [pre_reduce(c) for c in components]
    if verbose:
        print(f"[reduce] split: pre-reduced {len(pieces)} components "
              f"({time.perf_counter() - started:.2f}s)")

    equations = [e for p in pieces for e in p.equations] + graph.cross_equations()
    prior = [d for p in pieces for d in p.definitions]
    alias_pairs = [pair for p in pieces for pair in p.alias_pairs]
    reducer, remaining, observed = _reduce_core(
        graph.variables(), equations, alias_pairs=alias_pairs, prior_observed=prior)
    system = _assemble(reducer, remaining, observed, strategy="split", **_graph_provenance(graph))
    if verbose:
        _log_result(system, len(equations) + len(prior), started)
    return system
