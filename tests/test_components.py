import pytest
import sympy as sp

from custom_mechanisms import HHSodium, make_calcium_neuron, make_hh_neuron, make_voltage_clamp
from equation_system import D, Domain, Variable, compose_component, couple, eq, make_component, par, state
from modeling_errors import MalformedComponent, PortMismatch


def _decay(name="X"):
    x = state("x", Domain.OTHER, 1.0)
    tau = par("tau", 2.0)
    return make_component(name, [x], [tau], [D(x, -x.sym / tau.sym)], {"x": x})


def test_make_component_qualifies_variables():
    comp = _decay("X")
    assert comp.port("x").path == "X.x"
    assert [p.path for p in comp.parameters] == ["X.tau"]
    assert comp.parameter_values == {"tau": 2.0}
    (e,) = comp.equations
    assert e.differential
    assert {str(s) for s in e.free_symbols} == {"X.x", "X.tau"}


def test_parameters_accept_mapping():
    x = state("x")
    comp = make_component("P", [x], {"a": 1.5}, [D(x, sp.Symbol("a", real=True))], {})
    assert comp.parameter_values == {"a": 1.5}
    assert comp.parameters[0].is_parameter


def test_undeclared_symbol_rejected():
    x = state("x")
    ghost = Variable("ghost")
    with pytest.raises(MalformedComponent, match="ghost"):
        make_component("X", [x], {}, [D(x, ghost.sym)], {})


def test_differential_on_parameter_rejected():
    x = state("x")
    k = par("k", 1.0)
    with pytest.raises(MalformedComponent):
        make_component("X", [x], [k], [D(k, x.sym)], {})


@pytest.mark.parametrize("name", ["", "a.b", None])
def test_invalid_names_rejected(name):
    with pytest.raises(MalformedComponent):
        _decay(name)


def test_duplicate_variable_rejected():
    with pytest.raises(MalformedComponent, match="declared twice"):
        make_component("X", [state("x"), state("x")], {}, [], {})


def test_unknown_port_raises_port_mismatch():
    comp = _decay()
    with pytest.raises(PortMismatch) as exc:
        comp.port("v")
    assert exc.value.role == "v"


def test_compose_rejects_missing_child_port():
    child = _decay("c")
    with pytest.raises(PortMismatch):
        compose_component("N", [child], port_wiring={"v": ("c", "v")})
    with pytest.raises(PortMismatch):
        compose_component("N", [child], port_wiring={"x": "nochild.x"})


def test_compose_rejects_sibling_name_clash():
    with pytest.raises(MalformedComponent) as exc:
        compose_component("N", [_decay("c"), _decay("c")])
    assert exc.value.component == "N"
    assert "duplicate child" in exc.value.reason


def test_compose_prefixes_children_and_couplings():
    a, b = _decay("a"), _decay("b")
    comp = compose_component("N", [a, b], [couple(a.port("x"), b.port("x"))], {"x": "a.x"})
    assert [c.name for c in comp.children] == ["N.a", "N.b"]
    assert comp.port("x").path == "N.a.x"
    (coupling,) = comp.equations
    assert {str(s) for s in coupling.free_symbols} == {"N.a.x", "N.b.x"}
    assert [str(e.lhs) for e in comp.all_equations()] == ["N.a.x", "N.b.x", "N.a.x"]


def test_hh_neuron_layout():
    n = make_hh_neuron("AB")
    assert n.kind == "neuron"
    assert [c.name for c in n.children] == ["AB.soma", "AB.Na", "AB.K", "AB.leak"]
    assert n.port("v").path == "AB.soma.v"
    assert n.port("i").path == "AB.soma.i"
    assert [v.path for v in n.currents["i"]] == ["AB.Na.i", "AB.K.i", "AB.leak.i"]


def test_neuron_overrides_route_to_mechanisms():
    n = make_hh_neuron("AB", gNa=100.0, v=-70.0)
    assert n.child("Na").parameter_values["gNa"] == 100.0
    soma_v = n.child("soma").port("v")
    assert soma_v.default == -70.0


def test_neuron_rejects_unknown_override():
    with pytest.raises(MalformedComponent, match="gFoo"):
        make_hh_neuron("AB", gFoo=1.0)
    with pytest.raises(MalformedComponent):
        HHSodium(gFoo=1.0)


def test_renamed_moves_every_variable():
    n = make_hh_neuron("tmp").renamed("LP")
    assert n.name == "LP"
    assert n.port("v").path == "LP.soma.v"
    assert [c.name for c in n.children][0] == "LP.soma"
    for e in n.all_equations():
        assert all(str(s).startswith("LP.") for s in e.free_symbols)
    assert all(v.path.startswith("LP.") for v in n.all_variables())


def test_calcium_neuron_ports_and_currents():
    n = make_calcium_neuron("PD")
    assert n.port("ca").path == "PD.pool.i_ca"
    assert [v.path for v in n.currents["ca"]] == ["PD.CaV.i"]
    assert "PD.KCa.i" in [v.path for v in n.currents["i"]]


def test_voltage_clamp_is_algebraic():
    c = make_voltage_clamp("C", -40.0)
    assert c.currents == {"i": ()}
    (e,) = c.equations
    assert not e.differential
    assert e.rhs == sp.Symbol("C.V_hold", real=True)
    assert c.parameter_values == {"V_hold": -40.0}


def test_equation_alias_classification():
    a, b = Variable("a", namespace=("X",)), Variable("b", namespace=("X",))
    assert couple(a, b).is_alias
    assert not eq(a, b.sym + 1).is_alias
    assert not D(a, b.sym).is_alias
    assert eq(a, a).is_trivial
