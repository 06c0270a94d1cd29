import pytest
import sympy as sp

from connectome_to_odes import SynapseSpec, build_network, inspect_network, parse_sol_for_membrane_voltages, resolve_network
from custom_mechanisms import make_hh_neuron
from equation_system import D, Domain, make_component, state
from modeling_errors import (
    MalformedComponent,
    MissingSynapseParameter,
    PortMismatch,
    SpecificationError,
    UnknownNeuron,
)
from synapse_factory import SynapseKind


def test_scenario_a_single_excitatory_synapse(pair):
    connections, neurons = pair
    graph = resolve_network(connections, neurons)
    assert len(graph.synapses) == 1
    rec = graph.synapses[0]
    assert (rec.pre_id, rec.post_id, rec.kind) == ("pre", "post", "Exc")
    assert rec.name == "pre->post:exc:0"

    system = build_network(connections, neurons)
    info = inspect_network(system)
    assert info["neuron_synapses"] == {"pre": 0, "post": 1}
    assert len(parse_sol_for_membrane_voltages(system)) == 2


def test_scenario_b_two_synapses_one_pair(ab_lp):
    connections, neurons = ab_lp
    graph = resolve_network(connections, neurons)
    names = [r.name for r in graph.synapses]
    assert names == ["AB->LP:chol:0", "AB->LP:glut:0"]

    terms = graph.contributions["LP"]["i"]
    assert [v.path for v in terms] == [
        "LP.Na.i", "LP.K.i", "LP.leak.i", "AB->LP:chol:0.i", "AB->LP:glut:0.i",
    ]
    balance = graph.balance("LP")
    assert balance.lhs == sp.Symbol("LP.soma.i", real=True)
    assert len(balance.rhs.args) == 5
    assert [v.path for v in graph.contributions["AB"]["i"]] == ["AB.Na.i", "AB.K.i", "AB.leak.i"]

    info = inspect_network(build_network(connections, neurons))
    assert info["neuron_synapses"] == {"AB": 0, "LP": 2}


def test_scenario_c_self_connection():
    neurons = [make_hh_neuron("X")]
    connections = {("X", "X"): [{"type": "Inh", "weight": 1.0}]}
    graph = resolve_network(connections, neurons)
    syn = graph.synapses[0].component
    assert {str(e.rhs) for e in graph.couplings} == {"X.soma.v"}
    assert {str(e.lhs) for e in graph.couplings} == {f"{syn.name}.pre", f"{syn.name}.post"}

    system = build_network(connections, neurons)
    assert inspect_network(system)["neuron_synapses"] == {"X": 1}
    assert [v.path for v in parse_sol_for_membrane_voltages(system)] == ["X.soma.v"]


def test_scenario_d_custom_missing_reversal():
    neurons = [make_hh_neuron("A"), make_hh_neuron("B")]
    connections = {("A", "B"): [{"type": "Custom", "weight": 1.0,
                                 "overrides": {"V_th": -40.0, "k": 0.1, "delta": 2.0}}]}
    with pytest.raises(MissingSynapseParameter) as exc:
        resolve_network(connections, neurons)
    assert "E_rev" in exc.value.missing


def test_unknown_neuron_id(pair):
    _, neurons = pair
    with pytest.raises(UnknownNeuron) as exc:
        resolve_network({("pre", "ghost"): [{"type": "Exc", "weight": 1.0}]}, neurons)
    assert exc.value.neuron_id == "ghost"


def test_unknown_id_reported_even_without_descriptors(pair):
    _, neurons = pair
    with pytest.raises(UnknownNeuron):
        resolve_network({("ghost", "pre"): []}, neurons)


def test_repeated_type_gets_distinct_names(pair):
    connections = {("pre", "post"): [SynapseSpec("Exc", 0.5), SynapseSpec("exc", 0.7)]}
    graph = resolve_network(connections, pair[1])
    assert [r.name for r in graph.synapses] == ["pre->post:exc:0", "pre->post:exc:1"]
    assert graph.synapses[1].component.parameter_values["weight"] == 0.7


def test_supplied_identifiers_must_be_unique(pair):
    _, neurons = pair
    dup = {("pre", "post"): [{"type": "Exc", "weight": 1.0, "id": "s"},
                             {"type": "Inh", "weight": 1.0, "id": "s"}]}
    with pytest.raises(MalformedComponent):
        resolve_network(dup, neurons)
    clash = {("pre", "post"): [{"type": "Exc", "weight": 1.0, "identifier": "post"}]}
    with pytest.raises(MalformedComponent):
        resolve_network(clash, neurons)


def test_descriptor_loose_keys_become_overrides(pair):
    connections = {("pre", "post"): [{"type": "Exc", "weight": 0.5, "E_rev": -10.0}]}
    syn = resolve_network(connections, pair[1]).synapses[0].component
    assert syn.parameter_values["E_rev"] == -10.0


def test_descriptor_without_weight(pair):
    with pytest.raises(SpecificationError, match="weight"):
        resolve_network({("pre", "post"): [{"type": "Exc"}]}, pair[1])


def test_neuron_mapping_renames_components():
    graph = resolve_network({}, {"AB": make_hh_neuron("tmp")})
    assert list(graph.neurons) == ["AB"]
    assert graph.neurons["AB"].port("v").path == "AB.soma.v"


def test_duplicate_neuron_ids_rejected():
    with pytest.raises(MalformedComponent):
        resolve_network({}, [make_hh_neuron("A"), make_hh_neuron("A")])


def test_electrical_synapse_feeds_both_endpoints(pair):
    connections = {("pre", "post"): [{"type": "Electrical", "weight": 0.1}]}
    graph = resolve_network(connections, pair[1])
    assert graph.synapses[0].kind == SynapseKind.ELECTRICAL.value
    assert graph.contributions["pre"]["i"][-1].path == "pre->post:electrical:0.i_pre"
    assert graph.contributions["post"]["i"][-1].path == "pre->post:electrical:0.i"

    info = inspect_network(build_network(connections, pair[1]))
    assert info["neuron_synapses"] == {"pre": 0, "post": 1}


def test_synapse_into_neuron_without_current_port():
    x = state("x", Domain.VOLTAGE, -65.0)
    silent = make_component("S", [x], {}, [D(x, 0)], {"v": x}, kind="neuron")
    connections = {("A", "S"): [{"type": "Exc", "weight": 1.0}]}
    with pytest.raises(PortMismatch) as exc:
        resolve_network(connections, [make_hh_neuron("A"), silent])
    assert exc.value.component == "S"


def test_resolution_is_deterministic(ab_lp):
    connections, neurons = ab_lp
    g1 = resolve_network(connections, neurons)
    g2 = resolve_network(connections, neurons)
    assert [str(e) for e in g1.equations()] == [str(e) for e in g2.equations()]
    assert [v.path for v in g1.variables()] == [v.path for v in g2.variables()]


def test_verbose_progress(pair, capsys):
    resolve_network(*pair, verbose=True)
    out = capsys.readouterr().out
    assert "[build] neuron 0 of 2: pre" in out
    assert "[build] synapses: 1" in out

    resolve_network(*pair)
    assert capsys.readouterr().out == ""
