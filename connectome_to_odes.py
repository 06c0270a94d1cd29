# connectome_to_odes.py
"""
Connectome -> equation system.

Pipeline:
  1) connectivity map {(pre_id, post_id): [synapse descriptors]} + neurons
  2) resolve_network: instantiate synapses, couple their pre/post ports to
     neuron voltages, accumulate per-neuron current balances -> NetworkGraph
  3) reduce / reduce_split -> ReducedSystem (handed to an external integrator)

Introspection: inspect_network, parse_sol_for_membrane_voltages.
"""
from __future__ import annotations

import collections
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from custom_mechanisms import make_calcium_neuron, make_hh_neuron
from equation_system import Component, Variable, couple
from modeling_errors import (
    MalformedComponent,
    NoVoltageFound,
    NotAssembled,
    PortMismatch,
    SpecificationError,
    UnknownNeuron,
)
from structural_reduction import NetworkGraph, ReducedSystem, SynapseRecord, reduce, reduce_split
from synapse_factory import SynapseKind, canonical_parameter_name, put_synapse


__all__ = [
    "SynapseSpec",
    "resolve_network",
    "build_network",
    "build_network_split",
    "put_synapse",
    "inspect_network",
    "parse_sol_for_membrane_voltages",
    "extract_voltages",
    "MetaRule",
    "MetaPolicy",
    "apply_meta_defaults",
]


# ==========================
#  Connectivity descriptors
# ==========================

@dataclass(frozen=True)
class SynapseSpec:
    type: SynapseKind
    weight: float
    overrides: Dict[str, Any] = field(default_factory=dict)
    identifier: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "type", SynapseKind.parse(self.type))
        object.__setattr__(self, "overrides", dict(self.overrides or {}))


Descriptor = Union[SynapseSpec, Mapping[str, Any]]
Connectivity = Mapping[Tuple[str, str], Sequence[Descriptor]]

_DESCRIPTOR_KEYS = {"type", "kind", "weight", "overrides", "identifier", "id", "name"}


def _as_synapse_spec(d: Descriptor) -> SynapseSpec:
    """Accept a SynapseSpec or a plain dict; loose keys become overrides."""
    if isinstance(d, SynapseSpec):
        return d
    if not isinstance(d, Mapping):
        raise SpecificationError(f"Synapse descriptor must be a SynapseSpec or a mapping, got {d!r}")
    kind = d.get("type", d.get("kind"))
    if kind is None:
        raise SpecificationError(f"Synapse descriptor has no 'type': {dict(d)!r}")
    if "weight" not in d:
        raise SpecificationError(f"Synapse descriptor has no 'weight': {dict(d)!r}")
    overrides = dict(d.get("overrides") or {})
    for k, v in d.items():
        if k not in _DESCRIPTOR_KEYS:
            overrides[k] = v
    ident = d.get("identifier", d.get("id", d.get("name")))
    return SynapseSpec(kind, d["weight"], overrides, ident)


def _as_neuron_map(neurons: Union[Mapping[str, Component], Sequence[Component]]) -> Dict[str, Component]:
    if isinstance(neurons, Mapping):
        items = list(neurons.items())
    else:
        items = [(c.name, c) for c in neurons]
    out: Dict[str, Component] = {}
    for nid, comp in items:
        if not isinstance(comp, Component):
            raise MalformedComponent(str(nid), f"expected a Component, got {type(comp).__name__}")
        if nid in out:
            raise MalformedComponent(str(nid), "neuron id given more than once")
        out[nid] = comp.renamed(nid)
    return out


def _synapse_name_alloc():
    """
    Return a function that hands out deterministic unique synapse names.
    Counters are scoped by (pre, post, type).
    """
    counters = collections.Counter()

    def alloc(pre: str, post: str, kind: SynapseKind) -> str:
        key = (pre, post, kind)
        idx = counters[key]
        counters[key] += 1
        return f"{pre}->{post}:{kind.value.lower()}:{idx}"
    return alloc


# ==========================
#  STEP 1: RESOLVE
# ==========================

def resolve_network(
    connections: Connectivity,
    neurons: Union[Mapping[str, Component], Sequence[Component]],
    *,
    verbose: bool = False,
) -> NetworkGraph:
    """Expand a connectivity map into a NetworkGraph.

    Every id and descriptor is validated (and every synapse instantiated)
    before any cross-component equation is emitted, so a bad entry never
    leaves a partial graph behind.
    """
    neuron_map = _as_neuron_map(neurons)
    if verbose:
        for idx, nid in enumerate(neuron_map):
            if (idx % 100) == 0:
                print(f"[build] neuron {idx} of {len(neuron_map)}: {nid}")

    alloc = _synapse_name_alloc()
    taken = set(neuron_map)
    records: List[SynapseRecord] = []
    for (pre, post), descriptors in connections.items():
        for nid in (pre, post):
            if nid not in neuron_map:
                raise UnknownNeuron(nid)
        for d in descriptors:
            spec = _as_synapse_spec(d)
            name = spec.identifier if spec.identifier is not None else alloc(pre, post, spec.type)
            if name in taken:
                raise MalformedComponent(str(name), "component name already used in this network")
            taken.add(name)
            syn = put_synapse(neuron_map[pre], neuron_map[post], spec.type, spec.weight, spec.overrides, name)
            records.append(SynapseRecord(pre, post, spec.type.value, syn))

    if verbose:
        print(f"[build] synapses: {len(records)}")

    couplings = []
    injected: Dict[str, List[Variable]] = {nid: [] for nid in neuron_map}
    for idx, rec in enumerate(records):
        if verbose and (idx % 200) == 0:
            print(f"[build] synapse {idx} of {len(records)}: {rec.name}")
        syn = rec.component
        couplings.append(couple(syn.port("pre"), neuron_map[rec.pre_id].port("v")))
        couplings.append(couple(syn.port("post"), neuron_map[rec.post_id].port("v")))
        for role, currents in syn.currents.items():
            target = rec.pre_id if role == "pre" else rec.post_id
            injected[target].extend(currents)

    contributions: Dict[str, Dict[str, Tuple[Variable, ...]]] = {}
    for nid, comp in neuron_map.items():
        roles = list(comp.currents)
        if "i" not in roles and ("i" in comp.ports or injected[nid]):
            roles.append("i")
        per_role = {}
        for role in roles:
            if role not in comp.ports:
                raise PortMismatch(nid, role, "neuron declares or receives currents but has no such port")
            terms = list(comp.currents.get(role, ()))
            if role == "i":
                terms += injected[nid]
            per_role[role] = tuple(terms)
        contributions[nid] = per_role

    return NetworkGraph(
        neurons=neuron_map,
        synapses=tuple(records),
        couplings=tuple(couplings),
        contributions=contributions,
    )


# ==========================
#  STEP 2: BUILD + REDUCE
# ==========================

def build_network(connections: Connectivity, neurons, *, verbose: bool = False) -> ReducedSystem:
    """Resolve and reduce in one global pass (preferred for small networks)."""
    return reduce(resolve_network(connections, neurons, verbose=verbose), verbose=verbose)


def build_network_split(
    connections: Connectivity,
    neurons,
    *,
    pre_reduce_workers: int = 1,
    verbose: bool = False,
) -> ReducedSystem:
    """Resolve, pre-reduce each neuron and synapse, then reduce globally.

    Same result as ``build_network``; cheaper global pass for large networks.
    """
    graph = resolve_network(connections, neurons, verbose=verbose)
    return reduce_split(graph, workers=pre_reduce_workers, verbose=verbose)


# ==========================
#  Introspection
# ==========================

def inspect_network(system: ReducedSystem) -> Dict[str, Any]:
    if not isinstance(system, ReducedSystem):
        raise NotAssembled(system)
    counts = {nid: 0 for nid in system.neurons}
    for rec in system.synapses:
        counts[rec.post_id] += 1
    return {
        "neurons": list(system.neurons),
        "neuron_synapses": counts,
        "all_states": list(system.states),
    }


def parse_sol_for_membrane_voltages(system_or_solution: Any) -> List[Variable]:
    """One canonical membrane-voltage variable per neuron, in neuron order.

    Accepts a ReducedSystem or any object carrying one as ``.system``
    (e.g. a solution wrapper).
    """
    system = system_or_solution
    if not isinstance(system, ReducedSystem):
        system = getattr(system_or_solution, "system", None)
    if not isinstance(system, ReducedSystem):
        raise NotAssembled(system_or_solution)

    present = {v.sym for v in system.states} | {v.sym for v in system.algebraic_unknowns}
    present |= {e.lhs for e in system.observed}
    voltages: List[Variable] = []
    for nid in system.neurons:
        port = system.neuron_ports[nid].get("v")
        if port is None:
            raise NoVoltageFound(nid, "neuron has no 'v' port")
        v = system.canonical(port)
        if v.sym not in present:
            raise NoVoltageFound(nid, f"{v.path} is not a state, algebraic unknown or observed quantity")
        if v in voltages:
            raise NoVoltageFound(nid, f"{v.path} is shared with another neuron")
        voltages.append(v)
    return voltages


extract_voltages = parse_sol_for_membrane_voltages


# -----------------------------
# Meta-defaults mapping policy
# -----------------------------
@dataclass
class MetaRule:
    set: Dict[str, Any]                 # override defaults to set if not present
    # selectors (all that are provided must match):
    kind: Optional[str] = None          # synapse type tag, case-insensitive
    pre_regex: Optional[str] = None
    post_regex: Optional[str] = None
    where: Optional[Dict[str, Any]] = None      # matches on explicit overrides


@dataclass
class MetaPolicy:
    rules: List[MetaRule]


def _matches_regex(val: Optional[str], pattern: Optional[str]) -> bool:
    if pattern is None:
        return True
    if val is None:
        return False
    return re.search(pattern, str(val)) is not None


def _matches_where(params: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    for k, v in where.items():
        if params.get(k) != v:
            return False
    return True


def apply_meta_defaults(connections: Connectivity, policy: MetaPolicy) -> Dict[Tuple[str, str], List[SynapseSpec]]:
    """Fill missing synapse overrides from meta defaults (no overwrites).

    Returns a new connectivity map of SynapseSpec values; the input is not mutated.
    """
    out: Dict[Tuple[str, str], List[SynapseSpec]] = {}
    for (pre, post), descriptors in connections.items():
        specs = []
        for d in descriptors:
            spec = _as_synapse_spec(d)
            overrides = dict(spec.overrides)
            for r in policy.rules:
                if r.kind and SynapseKind.parse(r.kind) is not spec.type:
                    continue
                if not _matches_regex(pre, r.pre_regex) or not _matches_regex(post, r.post_regex):
                    continue
                if not _matches_where(spec.overrides, r.where):
                    continue
                present = {canonical_parameter_name(spec.type, k) for k in overrides}
                for k, v in r.set.items():
                    if canonical_parameter_name(spec.type, k) not in present:
                        overrides[k] = v
            specs.append(SynapseSpec(spec.type, spec.weight, overrides, spec.identifier))
        out[(pre, post)] = specs
    return out


# ==========================
#  Demo presets
# ==========================

def pyloric_preset():
    """AB/LP/PY core of the crustacean pyloric circuit (graded Chol/Glut synapses)."""
    neurons = [make_calcium_neuron(n) for n in ("AB", "LP", "PY")]
    connections = {
        ("AB", "LP"): [{"type": "Chol", "weight": 30.0}, {"type": "Glut", "weight": 30.0}],
        ("AB", "PY"): [{"type": "Chol", "weight": 3.0}, {"type": "Glut", "weight": 10.0}],
        ("LP", "AB"): [{"type": "Glut", "weight": 30.0}],
        ("LP", "PY"): [{"type": "Glut", "weight": 1.0}],
        ("PY", "LP"): [{"type": "Glut", "weight": 30.0}],
    }
    return connections, neurons


def pair_preset():
    neurons = [make_hh_neuron("pre"), make_hh_neuron("post")]
    return {("pre", "post"): [{"type": "Exc", "weight": 0.5}]}, neurons


def chain_preset(n: int = 10):
    """n HH neurons, each excites the next and is gap-coupled to it."""
    ids = [f"n{i}" for i in range(n)]
    neurons = [make_hh_neuron(nid) for nid in ids]
    connections = {
        (a, b): [{"type": "Exc", "weight": 0.1}, {"type": "Electrical", "weight": 0.05}]
        for a, b in zip(ids, ids[1:])
    }
    return connections, neurons


PRESETS = {"pyloric": pyloric_preset, "pair": pair_preset, "chain": chain_preset}

# ==========================
#  Minimal CLI runner
# ==========================

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser()
    parser.add_argument("--preset", type=str, default="pyloric", choices=sorted(PRESETS))
    parser.add_argument("--n", type=int, default=10, help="chain length (chain preset only)")
    parser.add_argument("--strategy", type=str, default="standard", choices=["standard", "split"])
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    if args.preset == "chain":
        connections, neurons = chain_preset(args.n)
    else:
        connections, neurons = PRESETS[args.preset]()

    if args.strategy == "split":
        system = build_network_split(connections, neurons, pre_reduce_workers=args.workers, verbose=args.verbose)
    else:
        system = build_network(connections, neurons, verbose=args.verbose)

    info = inspect_network(system)
    print(f"Neurons: {len(info['neurons'])}  synapses: {len(system.synapses)}  "
          f"states: {len(info['all_states'])}  observed: {len(system.observed)}")
    for nid, v in zip(info["neurons"], parse_sol_for_membrane_voltages(system)):
        print(f"  {nid}: {info['neuron_synapses'][nid]} incoming synapse(s), voltage {v.path}")

