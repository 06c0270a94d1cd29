"""
Symbolic mechanisms used to assemble neurons and synapses:
  1) Soma (membrane capacitance + applied current) and a voltage clamp
  2) Hodgkin-Huxley Na / K / leak channels
  3) Voltage-gated Ca2+ channel (c302-style e/f gates), Ca-activated K channel, Ca pool
  4) Graded chemical synapse (sigmoidal presynaptic activation)
  5) Gap junction (electrical) synapse with voltage-difference gating

Conventions:
  - Voltages in mV, time in ms
  - Channel conductances in mS/cm^2, currents in uA/cm^2, outward positive
  - Synaptic weights are maximal conductances (same unit system as channels)
  - Calcium concentration in uM
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import sympy as sp

from equation_system import (
    Component,
    D,
    Domain,
    Variable,
    compose_component,
    couple,
    eq,
    make_component,
    par,
)
from modeling_errors import MalformedComponent

# lower bound on the synaptic relaxation time constant (ms)
TAU_FLOOR = 1e-9


class Mechanism:
    """Base class: default parameters/states plus a ``build(name)`` method.

    Keyword arguments override ``channel_params`` or the initial values in
    ``channel_states``; anything else is rejected.
    """

    kind = "channel"
    channel_params: Dict[str, float] = {}
    channel_states: Dict[str, float] = {}

    def __init__(self, name: Optional[str] = None, **overrides: float):
        self._name = name if name is not None else type(self).__name__
        unknown = sorted(set(overrides) - set(self.channel_params) - set(self.channel_states))
        if unknown:
            raise MalformedComponent(self._name, f"unknown parameter(s) {', '.join(unknown)}")
        self.params = {k: float(overrides.get(k, v)) for k, v in self.channel_params.items()}
        self.states = {k: float(overrides.get(k, v)) for k, v in self.channel_states.items()}

    def _par(self) -> Dict[str, Variable]:
        return {k: par(k, v) for k, v in self.params.items()}

    def _state(self, key: str, domain: Domain) -> Variable:
        return Variable(key, domain, self.states.get(key))

    @staticmethod
    def _sigmoid(v, mid, slope):
        return 1 / (1 + sp.exp((mid - v) / slope))

    def build(self, name: Optional[str] = None) -> Component:
        raise NotImplementedError


# =========================
#  Membrane
# =========================

class Soma(Mechanism):
    """C dv/dt = I_app - i, where i is the summed membrane current delivered through port ``i``."""

    kind = "soma"
    channel_params = {"C": 1.0, "I_app": 0.0}
    channel_states = {"v": -65.0}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        v = self._state("v", Domain.VOLTAGE)
        i = Variable("i", Domain.CURRENT)
        return make_component(
            name or self._name,
            [v, i],
            list(p.values()),
            [D(v, (p["I_app"].sym - i.sym) / p["C"].sym)],
            {"v": v, "i": i},
            kind=self.kind,
        )


class VoltageClamp(Mechanism):
    """Fixed-voltage source. Port ``i`` carries the current the clamp must supply."""

    kind = "neuron"
    channel_params = {"V_hold": -65.0}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        v = Variable("v", Domain.VOLTAGE, self.params["V_hold"])
        i = Variable("i", Domain.CURRENT)
        return make_component(
            name or self._name,
            [v, i],
            list(p.values()),
            [eq(v, p["V_hold"])],
            {"v": v, "i": i},
            kind=self.kind,
            currents={"i": ()},
        )


# =========================
#  Ion channels
# =========================

class _IonicChannel(Mechanism):
    """Shared layout: port ``v`` (membrane voltage copy) and port ``i`` (channel current)."""

    def _ports(self):
        return Variable("v", Domain.VOLTAGE), Variable("i", Domain.CURRENT)


class HHSodium(_IonicChannel):
    channel_params = {"gNa": 120.0, "ENa": 50.0}
    channel_states = {"m": 0.0529, "h": 0.5961}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        v, i = self._ports()
        m = self._state("m", Domain.GATING)
        h = self._state("h", Domain.GATING)
        V = v.sym
        alpha_m = 0.1 * (V + 40) / (1 - sp.exp(-(V + 40) / 10))
        beta_m = 4 * sp.exp(-(V + 65) / 18)
        alpha_h = 0.07 * sp.exp(-(V + 65) / 20)
        beta_h = 1 / (1 + sp.exp(-(V + 35) / 10))
        return make_component(
            name or self._name,
            [v, m, h, i],
            list(p.values()),
            [
                D(m, alpha_m * (1 - m.sym) - beta_m * m.sym),
                D(h, alpha_h * (1 - h.sym) - beta_h * h.sym),
                eq(i, p["gNa"].sym * m.sym ** 3 * h.sym * (V - p["ENa"].sym)),
            ],
            {"v": v, "i": i},
            kind=self.kind,
        )


class HHPotassium(_IonicChannel):
    channel_params = {"gK": 36.0, "EK": -77.0}
    channel_states = {"n": 0.3177}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        v, i = self._ports()
        n = self._state("n", Domain.GATING)
        V = v.sym
        alpha_n = 0.01 * (V + 55) / (1 - sp.exp(-(V + 55) / 10))
        beta_n = 0.125 * sp.exp(-(V + 65) / 80)
        return make_component(
            name or self._name,
            [v, n, i],
            list(p.values()),
            [
                D(n, alpha_n * (1 - n.sym) - beta_n * n.sym),
                eq(i, p["gK"].sym * n.sym ** 4 * (V - p["EK"].sym)),
            ],
            {"v": v, "i": i},
            kind=self.kind,
        )


class Leak(_IonicChannel):
    channel_params = {"gLeak": 0.3, "eLeak": -54.387}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        v, i = self._ports()
        return make_component(
            name or self._name,
            [v, i],
            list(p.values()),
            [eq(i, p["gLeak"].sym * (v.sym - p["eLeak"].sym))],
            {"v": v, "i": i},
            kind=self.kind,
        )


class VGCaChannel(_IonicChannel):
    """Voltage-gated Ca2+ channel consistent with c302 (Boyle-like).

    Logistic gates e, f relax toward their steady states with fixed time
    constants; i_Ca = gCa * e^2 * f * (v - E_Ca).
    """

    channel_params = {
        "gCa": 0.5,
        "E_Ca": 120.0,
        "e_mid": -20.0,
        "e_slope": 6.0,
        "e_tau": 5.0,
        "f_mid": -25.0,
        "f_slope": -6.0,
        "f_tau": 40.0,
    }
    channel_states = {"e": 0.1, "f": 0.8}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        v, i = self._ports()
        e = self._state("e", Domain.GATING)
        f = self._state("f", Domain.GATING)
        S = {k: x.sym for k, x in p.items()}
        e_inf = self._sigmoid(v.sym, S["e_mid"], S["e_slope"])
        f_inf = self._sigmoid(v.sym, S["f_mid"], S["f_slope"])
        return make_component(
            name or self._name,
            [v, e, f, i],
            list(p.values()),
            [
                D(e, (e_inf - e.sym) / S["e_tau"]),
                D(f, (f_inf - f.sym) / S["f_tau"]),
                eq(i, S["gCa"] * e.sym ** 2 * f.sym * (v.sym - S["E_Ca"])),
            ],
            {"v": v, "i": i},
            kind=self.kind,
        )


class CaActivatedK(_IonicChannel):
    """K current gated instantaneously by intracellular Ca: i = g * ca/(ca + kd) * (v - EK)."""

    channel_params = {"gKCa": 2.0, "EK": -77.0, "kd": 0.5}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        v, i = self._ports()
        ca = Variable("ca", Domain.CONCENTRATION)
        occupancy = ca.sym / (ca.sym + p["kd"].sym)
        return make_component(
            name or self._name,
            [v, ca, i],
            list(p.values()),
            [eq(i, p["gKCa"].sym * occupancy * (v.sym - p["EK"].sym))],
            {"v": v, "i": i, "conc": ca},
            kind=self.kind,
        )


class CalciumPool(Mechanism):
    """d[Ca]/dt = -f * i_Ca - ([Ca] - ca_rest) / tau_Ca, driven through port ``ca`` (Ca flux)."""

    kind = "pool"
    channel_params = {"f_Ca": 0.05, "tau_Ca": 200.0, "ca_rest": 0.05}
    channel_states = {"ca": 0.05}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        ca = self._state("ca", Domain.CONCENTRATION)
        flux = Variable("i_ca", Domain.CURRENT)
        S = {k: x.sym for k, x in p.items()}
        return make_component(
            name or self._name,
            [ca, flux],
            list(p.values()),
            [D(ca, -S["f_Ca"] * flux.sym - (ca.sym - S["ca_rest"]) / S["tau_Ca"])],
            {"ca": flux, "conc": ca},
            kind=self.kind,
        )


# =========================
#  Synapses
# =========================

class GradedChemicalSynapse(Mechanism):
    """Graded chemical synapse with logistic activation on presynaptic voltage.

    Params:
      - weight: maximal conductance
      - E_rev (mV): synaptic reversal potential
      - V_th (mV): presynaptic threshold
      - delta (mV): steepness of presynaptic activation
      - k (1/ms): unbinding rate

    State:
      - s: activation fraction in [0, 1], relaxing toward s_inf with
        tau = (1 - s_inf) / k + TAU_FLOOR, so tau stays positive when s_inf
        saturates at 1
    """

    kind = "synapse"
    channel_params = {"weight": 1.0, "E_rev": 0.0, "V_th": -35.0, "delta": 5.0, "k": 0.025}
    channel_states = {"s": 0.0}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        S = {k: x.sym for k, x in p.items()}
        pre = Variable("pre", Domain.VOLTAGE)
        post = Variable("post", Domain.VOLTAGE)
        s = self._state("s", Domain.GATING)
        s_inf = Variable("s_inf", Domain.GATING)
        i = Variable("i", Domain.CURRENT)
        return make_component(
            name or self._name,
            [pre, post, s, s_inf, i],
            list(p.values()),
            [
                eq(s_inf, self._sigmoid(pre.sym, S["V_th"], S["delta"])),
                D(s, (s_inf.sym - s.sym) / ((1 - s_inf.sym) / S["k"] + TAU_FLOOR)),
                eq(i, S["weight"] * s.sym * (post.sym - S["E_rev"])),
            ],
            {"pre": pre, "post": post, "i": i},
            kind=self.kind,
            currents={"post": (i,)},
        )


class GapJunctionSynapse(Mechanism):
    """Electrical coupling with a conductance gated symmetrically by the junctional voltage.

    g(dv) = weight * (g_residual + (1 - g_residual) * exp(-(dv / v_half)^2))
    i_post = g * (post - pre), i_pre = -i_post
    """

    kind = "synapse"
    channel_params = {"weight": 1.0, "g_residual": 0.2, "v_half": 40.0}

    def build(self, name: Optional[str] = None) -> Component:
        p = self._par()
        S = {k: x.sym for k, x in p.items()}
        pre = Variable("pre", Domain.VOLTAGE)
        post = Variable("post", Domain.VOLTAGE)
        i_post = Variable("i", Domain.CURRENT)
        i_pre = Variable("i_pre", Domain.CURRENT)
        dv = post.sym - pre.sym
        gate = S["g_residual"] + (1 - S["g_residual"]) * sp.exp(-(dv / S["v_half"]) ** 2)
        return make_component(
            name or self._name,
            [pre, post, i_post, i_pre],
            list(p.values()),
            [
                eq(i_post, S["weight"] * gate * dv),
                eq(i_pre, -i_post.sym),
            ],
            {"pre": pre, "post": post, "i": i_post, "i_pre": i_pre},
            kind=self.kind,
            currents={"post": (i_post,), "pre": (i_pre,)},
        )


# =========================
#  Neurons
# =========================

def _split_overrides(mechanisms: Sequence[type], overrides: Mapping[str, float], owner: str) -> List[Dict[str, float]]:
    """Route keyword overrides to every mechanism that declares the key."""
    routed: List[Dict[str, float]] = [{} for _ in mechanisms]
    claimed = set()
    for idx, mech in enumerate(mechanisms):
        for key, val in overrides.items():
            if key in mech.channel_params or key in mech.channel_states:
                routed[idx][key] = val
                claimed.add(key)
    unknown = sorted(set(overrides) - claimed)
    if unknown:
        raise MalformedComponent(owner, f"unknown parameter(s) {', '.join(unknown)}")
    return routed


def _point_neuron(name: str, channels: Iterable[tuple], overrides: Mapping[str, float],
                  pool: bool = False) -> Component:
    channels = list(channels)
    classes = [Soma] + [cls for _, cls in channels] + ([CalciumPool] if pool else [])
    routed = _split_overrides(classes, overrides, name)

    soma = Soma(**routed[0]).build("soma")
    built = [cls(**kw).build(cname) for (cname, cls), kw in zip(channels, routed[1:1 + len(channels)])]
    children = [soma] + built
    extra = [couple(c.port("v"), soma.port("v")) for c in built]
    port_wiring = {"v": ("soma", "v"), "i": ("soma", "i")}
    currents = {"i": [(c.name, "i") for c in built]}

    if pool:
        ca_pool = CalciumPool(**routed[-1]).build("pool")
        children.append(ca_pool)
        port_wiring["ca"] = ("pool", "ca")
        currents["ca"] = [(c.name, "i") for (cname, cls), c in zip(channels, built) if cls is VGCaChannel]
        extra += [couple(c.port("conc"), ca_pool.port("conc"))
                  for (cname, cls), c in zip(channels, built) if cls is CaActivatedK]

    return compose_component(name, children, extra, port_wiring, currents=currents)


def make_hh_neuron(name: str, **overrides: float) -> Component:
    """Single-compartment Hodgkin-Huxley neuron (soma, Na, K, leak)."""
    return _point_neuron(name, [("Na", HHSodium), ("K", HHPotassium), ("leak", Leak)], overrides)


def make_calcium_neuron(name: str, **overrides: float) -> Component:
    """Neuron with Ca dynamics: leak, K, voltage-gated Ca, Ca-activated K and a Ca pool.

    The pool is driven through the neuron's ``ca`` port by the Ca channel current.
    """
    channels = [("leak", Leak), ("K", HHPotassium), ("CaV", VGCaChannel), ("KCa", CaActivatedK)]
    return _point_neuron(name, channels, overrides, pool=True)


def make_voltage_clamp(name: str, V_hold: float = -65.0) -> Component:
    return VoltageClamp(V_hold=V_hold).build(name)
