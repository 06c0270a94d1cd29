from types import SimpleNamespace

import pytest

from connectome_to_odes import (
    MetaPolicy,
    MetaRule,
    SynapseSpec,
    apply_meta_defaults,
    build_network,
    extract_voltages,
    inspect_network,
    parse_sol_for_membrane_voltages,
    pyloric_preset,
    resolve_network,
)
from custom_mechanisms import make_calcium_neuron, make_hh_neuron
from equation_system import D, Domain, make_component, state
from modeling_errors import NoVoltageFound, NotAssembled
from synapse_factory import SynapseKind


# -------- inspector --------

def test_inspect_reports_neurons_synapses_and_states(ab_lp):
    system = build_network(*ab_lp)
    info = inspect_network(system)
    assert info["neurons"] == ["AB", "LP"]
    assert info["neuron_synapses"] == {"AB": 0, "LP": 2}
    assert info["all_states"] == list(system.states)


def test_inspect_pyloric_counts():
    info = inspect_network(build_network(*pyloric_preset()))
    assert info["neuron_synapses"] == {"AB": 1, "LP": 3, "PY": 3}


@pytest.mark.parametrize("thing", [None, "system", 3])
def test_inspect_rejects_unreduced(thing):
    with pytest.raises(NotAssembled):
        inspect_network(thing)


def test_inspect_rejects_raw_graph(pair):
    with pytest.raises(NotAssembled):
        inspect_network(resolve_network(*pair))


# -------- voltage deduplicator --------

def test_one_voltage_per_neuron_in_order(pair):
    system = build_network(*pair)
    voltages = parse_sol_for_membrane_voltages(system)
    assert [v.path for v in voltages] == ["pre.soma.v", "post.soma.v"]
    assert all(v.domain == Domain.VOLTAGE for v in voltages)
    assert voltages[0] is system.canonical("pre.Na.v")
    assert extract_voltages(system) == voltages


def test_voltage_order_follows_neuron_insertion():
    neurons = {"b": make_hh_neuron("b"), "a": make_calcium_neuron("a")}
    system = build_network({("a", "b"): [{"type": "Glut", "weight": 1.0}]}, neurons)
    assert [v.path for v in parse_sol_for_membrane_voltages(system)] == ["b.soma.v", "a.soma.v"]


def test_solution_wrapper_accepted(pair):
    system = build_network(*pair)
    solution = SimpleNamespace(system=system, t=[0.0], y=[[0.0]])
    assert parse_sol_for_membrane_voltages(solution) == parse_sol_for_membrane_voltages(system)


def test_clamped_voltage_found_among_observed(clamps):
    system = build_network(*clamps)
    assert [v.path for v in parse_sol_for_membrane_voltages(system)] == ["A.v", "B.v"]


def test_neuron_without_voltage_port():
    x = state("x", default=1.0)
    blob = make_component("blob", [x], {"tau": 5.0}, [D(x, -x.sym)], {"x": x})
    system = build_network({}, [blob])
    with pytest.raises(NoVoltageFound) as exc:
        parse_sol_for_membrane_voltages(system)
    assert exc.value.neuron_id == "blob"


def test_voltage_extraction_needs_a_system():
    with pytest.raises(NotAssembled):
        parse_sol_for_membrane_voltages(object())


# -------- meta defaults --------

def test_meta_defaults_fill_without_overwriting():
    connections = {
        ("AB", "LP"): [{"type": "Glut", "weight": 1.0, "overrides": {"reversal": -75.0}},
                       {"type": "Chol", "weight": 1.0}],
        ("LP", "PY"): [{"type": "Glut", "weight": 2.0}],
    }
    policy = MetaPolicy(rules=[
        MetaRule(set={"E_rev": -65.0, "k": 0.02}, kind="glut"),
        MetaRule(set={"V_th": -40.0}, post_regex="^PY$"),
    ])
    out = apply_meta_defaults(connections, policy)

    glut_ab, chol_ab = out[("AB", "LP")]
    assert isinstance(glut_ab, SynapseSpec) and glut_ab.type is SynapseKind.GLUT
    assert glut_ab.overrides == {"reversal": -75.0, "k": 0.02}
    assert chol_ab.overrides == {}
    assert out[("LP", "PY")][0].overrides == {"E_rev": -65.0, "k": 0.02, "V_th": -40.0}
    # input untouched
    assert connections[("AB", "LP")][0]["overrides"] == {"reversal": -75.0}
    assert "overrides" not in connections[("LP", "PY")][0]


def test_meta_defaults_where_selector():
    connections = {("A", "B"): [SynapseSpec("Exc", 1.0, {"delta": 2.0}), SynapseSpec("Exc", 1.0)]}
    policy = MetaPolicy(rules=[MetaRule(set={"k": 0.5}, where={"delta": 2.0})])
    first, second = apply_meta_defaults(connections, policy)[("A", "B")]
    assert first.overrides == {"delta": 2.0, "k": 0.5}
    assert second.overrides == {}


def test_meta_defaults_feed_the_resolver():
    neurons = [make_hh_neuron("A"), make_hh_neuron("B")]
    policy = MetaPolicy(rules=[MetaRule(set={"E_rev": "-20 mV"}, kind="Exc")])
    connections = apply_meta_defaults({("A", "B"): [{"type": "Exc", "weight": 1.0}]}, policy)
    syn = resolve_network(connections, neurons).synapses[0].component
    assert syn.parameter_values["E_rev"] == pytest.approx(-20.0)
