"""
Symbolic component model and the equation-system reduction substrate.

A Component is an immutable bundle of
  - state variables (unknowns: differential states, algebraic quantities, port copies)
  - parameters (Variables carrying a default value)
  - equations (differential ``d(x)/dt = f`` or algebraic ``lhs == rhs``, SymPy expressions)
  - ports (role -> Variable) used for wiring to other components
  - children (for hierarchical components such as neurons)
  - currents (role -> Variables summed into that port by the network resolver)

Every variable is identified by its dotted path (``"AB.soma.v"``); the
SymPy symbol of a variable is named by that path, so two Variables with the
same path are the same unknown wherever they appear.

Conventions:
  - Voltages in mV, time in ms, conductances in mS/cm^2 (channels) or uS (synapses)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import networkx as nx
import sympy as sp

from modeling_errors import MalformedComponent, PortMismatch


# =========================
#  VARIABLES AND EQUATIONS
# =========================

class Domain(str, Enum):
    VOLTAGE = "voltage"
    GATING = "gating"
    CONCENTRATION = "concentration"
    CURRENT = "current"
    PARAMETER = "parameter"
    OTHER = "other"


@dataclass(frozen=True)
class Variable:
    name: str
    domain: Domain = field(default=Domain.OTHER, compare=False)
    default: Optional[float] = field(default=None, compare=False)
    namespace: Tuple[str, ...] = ()

    @property
    def path(self) -> str:
        return ".".join(self.namespace + (self.name,))

    @property
    def sym(self) -> sp.Symbol:
        return sp.Symbol(self.path, real=True)

    @property
    def is_parameter(self) -> bool:
        return self.domain == Domain.PARAMETER

    def prefixed(self, prefix: str) -> "Variable":
        return replace(self, namespace=(prefix,) + self.namespace)

    def __str__(self) -> str:
        return self.path


def state(name: str, domain: Domain = Domain.OTHER, default: Optional[float] = None) -> Variable:
    return Variable(name, domain, default)


def par(name: str, value: float) -> Variable:
    return Variable(name, Domain.PARAMETER, float(value))


ExprLike = Union[Variable, sp.Expr, float, int]


def _expr(x: ExprLike) -> sp.Expr:
    if isinstance(x, Variable):
        return x.sym
    return sp.sympify(x)


@dataclass(frozen=True)
class Equation:
    lhs: sp.Expr
    rhs: sp.Expr
    differential: bool = False

    @property
    def free_symbols(self) -> set:
        return self.lhs.free_symbols | self.rhs.free_symbols

    @property
    def is_alias(self) -> bool:
        """Algebraic ``A == B`` between two bare symbols."""
        return (not self.differential and isinstance(self.lhs, sp.Symbol)
                and isinstance(self.rhs, sp.Symbol) and self.lhs != self.rhs)

    @property
    def is_trivial(self) -> bool:
        return (not self.differential) and self.lhs == self.rhs

    def xreplace(self, mapping: Mapping) -> "Equation":
        if not mapping:
            return self
        return Equation(self.lhs.xreplace(mapping), self.rhs.xreplace(mapping), self.differential)

    def __str__(self) -> str:
        if self.differential:
            return f"d({self.lhs})/dt = {self.rhs}"
        return f"{self.lhs} == {self.rhs}"


def D(var: Variable, rhs: ExprLike) -> Equation:
    """Differential equation d(var)/dt = rhs."""
    return Equation(var.sym, _expr(rhs), differential=True)


def eq(lhs: ExprLike, rhs: ExprLike) -> Equation:
    return Equation(_expr(lhs), _expr(rhs))


def couple(a: Variable, b: Variable) -> Equation:
    """Coupling equation asserting two port variables are the same quantity."""
    return Equation(a.sym, b.sym)


# =========================
#  COMPONENTS
# =========================

@dataclass(frozen=True)
class Component:
    name: str
    kind: str
    state_vars: Tuple[Variable, ...]
    parameters: Tuple[Variable, ...]
    equations: Tuple[Equation, ...]
    ports: Dict[str, Variable]
    children: Tuple["Component", ...] = ()
    currents: Dict[str, Tuple[Variable, ...]] = field(default_factory=dict)
    endpoints: Dict[str, str] = field(default_factory=dict)

    @property
    def parameter_values(self) -> Dict[str, float]:
        return {p.name: p.default for p in self.parameters}

    def port(self, role: str) -> Variable:
        try:
            return self.ports[role]
        except KeyError:
            raise PortMismatch(self.name, role) from None

    def child(self, name: str) -> "Component":
        for c in self.children:
            if c.name.split(".")[-1] == name or c.name == name:
                return c
        raise KeyError(f"{self.name!r} has no child {name!r}")

    def all_variables(self) -> Tuple[Variable, ...]:
        """Every variable of this subtree, in declaration order."""
        out: List[Variable] = list(self.state_vars) + list(self.parameters)
        declared = set(out)
        for c in self.children:
            declared.update(c.all_variables())
        out.extend(v for v in self.ports.values() if v not in declared)
        for c in self.children:
            out.extend(c.all_variables())
        return tuple(out)

    def all_equations(self) -> Tuple[Equation, ...]:
        out: List[Equation] = []
        for c in self.children:
            out.extend(c.all_equations())
        out.extend(self.equations)
        return tuple(out)

    def renamed(self, new_name: str) -> "Component":
        """Return a copy living under ``new_name`` instead of ``self.name``."""
        if new_name == self.name:
            return self
        _check_name(new_name, "component")
        depth = len(self.name.split("."))

        def rename(v: Variable) -> Variable:
            return replace(v, namespace=(new_name,) + v.namespace[depth:])

        mapping = {v: rename(v) for v in self.all_variables()}
        for v in self.ports.values():
            mapping.setdefault(v, rename(v))
        return _remap(self, mapping, new_name)

    def with_endpoints(self, **endpoints: str) -> "Component":
        return replace(self, endpoints={**self.endpoints, **endpoints})

    def __str__(self) -> str:
        lines = [f"{self.kind} {self.name}"]
        lines.extend(f"  {e}" for e in self.all_equations())
        return "\n".join(lines)


def _check_name(name: Any, what: str) -> None:
    if not isinstance(name, str) or not name or "." in name:
        raise MalformedComponent(str(name), f"invalid {what} name (non-empty, no '.')")


def _remap(comp: Component, mapping: Dict[Variable, Variable], new_name: str,
           sym_map: Optional[Dict[sp.Symbol, sp.Symbol]] = None) -> Component:
    if sym_map is None:
        sym_map = {old.sym: new.sym for old, new in mapping.items()}

    def m(v: Variable) -> Variable:
        return mapping.get(v, v)

    children = tuple(_remap(c, mapping, _child_name(c, new_name, comp.name), sym_map)
                     for c in comp.children)
    return Component(
        name=new_name,
        kind=comp.kind,
        state_vars=tuple(m(v) for v in comp.state_vars),
        parameters=tuple(m(v) for v in comp.parameters),
        equations=tuple(e.xreplace(sym_map) for e in comp.equations),
        ports={r: m(v) for r, v in comp.ports.items()},
        children=children,
        currents={r: tuple(m(v) for v in vs) for r, vs in comp.currents.items()},
        endpoints=dict(comp.endpoints),
    )


def _child_name(child: Component, new_parent: str, old_parent: str) -> str:
    # child names carry their parent's path: "AB.soma" -> "<new_parent>.soma"
    return new_parent + child.name[len(old_parent):]


def _as_parameters(parameters: Union[Mapping[str, float], Sequence[Variable], None]) -> Tuple[Variable, ...]:
    if parameters is None:
        return ()
    if isinstance(parameters, Mapping):
        return tuple(par(k, v) for k, v in parameters.items())
    out = []
    for p in parameters:
        if not isinstance(p, Variable):
            raise TypeError(f"parameters must be Variables or a name->value mapping, got {p!r}")
        if not p.is_parameter:
            p = replace(p, domain=Domain.PARAMETER)
        out.append(p)
    return tuple(out)


def make_component(
    name: str,
    state_vars: Iterable[Variable],
    parameters: Union[Mapping[str, float], Sequence[Variable], None],
    equations: Iterable[Equation],
    ports: Mapping[str, Variable],
    *,
    children: Sequence[Component] = (),
    kind: str = "component",
    currents: Optional[Mapping[str, Sequence[Variable]]] = None,
    endpoints: Optional[Mapping[str, str]] = None,
) -> Component:
    """Validate a component definition and place all its variables under ``name``.

    Variables passed in are local (unqualified); children must already be
    built components. Every symbol used by an equation must be one of the
    component's own state variables, parameters, ports, or a variable of a
    declared child.
    """
    _check_name(name, "component")
    state_vars = tuple(state_vars)
    params = _as_parameters(parameters)
    equations = tuple(equations)
    children = tuple(children)

    seen_children = set()
    for c in children:
        if c.name in seen_children:
            raise MalformedComponent(name, f"duplicate child name {c.name!r}")
        seen_children.add(c.name)

    own: Dict[str, Variable] = {}
    for v in state_vars + params:
        if v.path in own:
            raise MalformedComponent(name, f"variable {v.path!r} declared twice")
        own[v.path] = v

    known: Dict[sp.Symbol, Variable] = {v.sym: v for v in own.values()}
    for v in ports.values():
        known.setdefault(v.sym, v)
    for c in children:
        for v in c.all_variables():
            known.setdefault(v.sym, v)

    for e in equations:
        missing = sorted(str(s) for s in e.free_symbols if s not in known)
        if missing:
            raise MalformedComponent(name, f"equation `{e}` references undeclared {', '.join(missing)}")
        if e.differential:
            target = known.get(e.lhs) if isinstance(e.lhs, sp.Symbol) else None
            if target is None or target.is_parameter:
                raise MalformedComponent(name, f"differential equation `{e}` must target a state variable")

    currents = {r: tuple(vs) for r, vs in (currents or {}).items()}
    for role, v in list(ports.items()) + [(r, v) for r, vs in currents.items() for v in vs]:
        if v.sym not in known:
            raise MalformedComponent(name, f"port/current {role!r} refers to undeclared {v.path!r}")

    local = Component(
        name="",
        kind=kind,
        state_vars=state_vars,
        parameters=params,
        equations=equations,
        ports=dict(ports),
        children=(),
        currents=currents,
        endpoints=dict(endpoints or {}),
    )
    mapping = {v: v.prefixed(name) for v in known.values()}
    built = _remap(local, mapping, name)
    return replace(built, children=tuple(_prefix_component(c, name) for c in children))


def _prefix_component(comp: Component, prefix: str) -> Component:
    mapping = {v: v.prefixed(prefix) for v in comp.all_variables()}
    for v in comp.ports.values():
        mapping.setdefault(v, v.prefixed(prefix))
    out = _remap(replace(comp, children=()), mapping, f"{prefix}.{comp.name}")
    return replace(out, children=tuple(_prefix_component(c, prefix) for c in comp.children))


PortRef = Union[Variable, Tuple[str, str], str]


def _resolve_port_ref(parent: str, children: Sequence[Component], ref: PortRef) -> Variable:
    if isinstance(ref, Variable):
        return ref
    if isinstance(ref, str):
        child_name, _, role = ref.partition(".")
    else:
        child_name, role = ref
    for c in children:
        if c.name == child_name:
            if role not in c.ports:
                raise PortMismatch(c.name, role)
            return c.ports[role]
    raise PortMismatch(parent, role, f"no child named {child_name!r}")


def compose_component(
    parent_name: str,
    children: Sequence[Component],
    extra_equations: Iterable[Equation] = (),
    port_wiring: Optional[Mapping[str, PortRef]] = None,
    *,
    state_vars: Iterable[Variable] = (),
    parameters: Union[Mapping[str, float], Sequence[Variable], None] = None,
    currents: Optional[Mapping[str, Sequence[PortRef]]] = None,
    kind: str = "neuron",
) -> Component:
    """Build a hierarchical component from already-built children.

    ``port_wiring`` exposes child ports as ports of the parent:
    ``{"v": ("soma", "v")}`` or ``{"v": "soma.v"}``. ``currents`` lists, per
    parent port role, the child ports whose values sum into it.
    """
    children = tuple(children)
    ports = {role: _resolve_port_ref(parent_name, children, ref)
             for role, ref in (port_wiring or {}).items()}
    resolved_currents = {role: [_resolve_port_ref(parent_name, children, r) for r in refs]
                         for role, refs in (currents or {}).items()}
    return make_component(
        parent_name,
        state_vars,
        parameters,
        extra_equations,
        ports,
        children=children,
        kind=kind,
        currents=resolved_currents,
    )


# ============================================
#  EQUATION SYSTEM REDUCER (symbolic substrate)
# ============================================

class EquationSystemReducer:
    """Alias canonicalization, explicit elimination and structural counting.

    Variables are ranked by the order they are registered; the canonical
    representative of an alias class is its lowest-ranked member, so the
    result depends only on registration order.
    """

    def __init__(self, variables: Iterable[Variable] = ()):
        self._vars: Dict[sp.Symbol, Variable] = {}
        self._rank: Dict[sp.Symbol, int] = {}
        self._aliases = nx.Graph()
        self._canonical: Optional[Dict[sp.Symbol, sp.Symbol]] = None
        for v in variables:
            self.register(v)

    # ---- registry ----
    def register(self, v: Variable) -> None:
        s = v.sym
        if s in self._vars:
            return
        self._vars[s] = v
        self._rank[s] = len(self._rank)
        self._aliases.add_node(s)
        self._canonical = None

    def variable(self, s: sp.Symbol) -> Variable:
        return self._vars[s]

    def rank(self, s: sp.Symbol) -> int:
        return self._rank[s]

    def is_parameter(self, s: sp.Symbol) -> bool:
        v = self._vars.get(s)
        return v is not None and v.is_parameter

    def variables(self) -> Tuple[Variable, ...]:
        return tuple(self._vars.values())

    # ---- alias graph ----
    def union(self, a: sp.Symbol, b: sp.Symbol) -> None:
        """Record that ``a`` and ``b`` are the same quantity."""
        self._aliases.add_edge(a, b)
        self._canonical = None

    def _canonical_of(self) -> Dict[sp.Symbol, sp.Symbol]:
        if self._canonical is None:
            canonical = {}
            for members in nx.connected_components(self._aliases):
                root = min(members, key=self._rank.__getitem__)
                for s in members:
                    canonical[s] = root
            self._canonical = canonical
        return self._canonical

    def find(self, s: sp.Symbol) -> sp.Symbol:
        return self._canonical_of()[s]

    def collect_aliases(self, equations: Iterable[Equation]) -> List[Equation]:
        """Union every ``A == B`` between non-parameter unknowns; return the rest."""
        rest = []
        for e in equations:
            if (e.is_alias and e.lhs in self._vars and e.rhs in self._vars
                    and not self.is_parameter(e.lhs) and not self.is_parameter(e.rhs)):
                self.union(e.lhs, e.rhs)
            else:
                rest.append(e)
        return rest

    def canonical_map(self) -> Dict[sp.Symbol, sp.Symbol]:
        return {s: root for s, root in self._canonical_of().items() if root != s}

    def alias_classes(self) -> List[Tuple[Variable, ...]]:
        """All classes (singletons included), each ordered by rank, classes by canonical rank."""
        canonical = self._canonical_of()
        groups: Dict[sp.Symbol, List[Variable]] = {}
        for s, v in self._vars.items():
            groups.setdefault(canonical[s], []).append(v)
        ordered = sorted(groups.items(), key=lambda kv: self._rank[kv[0]])
        return [tuple(members) for _, members in ordered]

    def canonicalize(self, equations: Iterable[Equation]) -> List[Equation]:
        cmap = self.canonical_map()
        out = []
        for e in equations:
            e2 = e.xreplace(cmap)
            if not e2.is_trivial:
                out.append(e2)
        return out

    # ---- counting ----
    def unknowns(self, equations: Iterable[Equation]) -> List[sp.Symbol]:
        found = set()
        for e in equations:
            for s in e.free_symbols:
                if not self.is_parameter(s):
                    found.add(s)
        return sorted(found, key=lambda s: self._rank.get(s, len(self._rank)))

    # ---- explicit elimination ----
    def eliminate_explicit(
        self,
        equations: Sequence[Equation],
        prior_definitions: Sequence[Equation] = (),
        keep: Iterable[sp.Symbol] = (),
    ) -> Tuple[List[Equation], List[Equation]]:
        """Move explicit algebraic equations ``x == f`` into resolved definitions.

        ``x`` must be a bare non-parameter symbol that is not a differential
        state, not in ``keep`` and not free in ``f``. Definitions forming a
        cycle are left in place as implicit algebraic equations. Returns
        (remaining equations, resolved definitions), both with every
        definition substituted away.
        """
        keep = set(keep)
        differential = {e.lhs for e in equations if e.differential}
        defs: Dict[sp.Symbol, sp.Expr] = {}
        def_eqs: Dict[sp.Symbol, Equation] = {}
        residual: List[Equation] = []

        for e in list(prior_definitions) + [e for e in equations if not e.differential]:
            x = e.lhs
            if (isinstance(x, sp.Symbol) and x not in defs and x not in keep
                    and x not in differential and not self.is_parameter(x)
                    and x not in e.rhs.free_symbols):
                defs[x] = e.rhs
                def_eqs[x] = e
            else:
                residual.append(e)

        # dependency graph: x -> every defined symbol in its right-hand side
        deps = nx.DiGraph()
        deps.add_nodes_from(defs)
        deps.add_edges_from((x, d) for x, expr in defs.items() for d in expr.free_symbols if d in defs)
        position = {x: i for i, x in enumerate(defs)}
        while True:
            try:
                cycle = nx.find_cycle(deps)
            except nx.NetworkXNoCycle:
                break
            # demote the most recently defined member of the cycle
            x = max((u for u, _ in cycle), key=position.__getitem__)
            residual.append(def_eqs.pop(x))
            del defs[x]
            deps.remove_node(x)

        resolved: Dict[sp.Symbol, sp.Expr] = {}
        for x in reversed(list(nx.topological_sort(deps))):
            expr = defs[x]
            sub = {d: resolved[d] for d in deps.successors(x)}
            resolved[x] = expr.xreplace(sub) if sub else expr

        remaining = [e.xreplace(resolved) for e in equations if e.differential]
        remaining += [e.xreplace(resolved) for e in residual]
        remaining = [e for e in remaining if not e.is_trivial]
        definitions = [Equation(x, resolved[x]) for x in defs]
        return remaining, definitions
