"""
Synapse factory: synapse-type tag + weight (+ overrides) -> synapse Component.

Chemical presets (reversal, kinetic rate) share one threshold and one
steepness; ``Custom`` takes every biophysical parameter from the overrides;
``Electrical`` uses the gap-junction mechanism with its own defaults.
Override values may be plain numbers (already in mV, 1/ms) or strings with
units ("-70 mV", "0.025 1/ms", "25 Hz").
"""

from __future__ import annotations

import math
import numbers
import re
from dataclasses import asdict, dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from custom_mechanisms import GapJunctionSynapse, GradedChemicalSynapse
from equation_system import Component
from modeling_errors import (
    InvalidWeight,
    MissingSynapseParameter,
    SpecificationError,
    UnknownSynapseParameter,
    UnknownSynapseType,
)


# =========================
#  Small unit helpers
# =========================

_UNIT_SCALE = {
    # Conductance
    "S": 1.0, "mS": 1e-3, "uS": 1e-6, "µS": 1e-6, "nS": 1e-9, "pS": 1e-12,
    # Voltage
    "V": 1.0, "mV": 1e-3, "uV": 1e-6, "µV": 1e-6,
    # Time
    "s": 1.0, "ms": 1e-3, "us": 1e-6, "µs": 1e-6,
    # Rate
    "Hz": 1.0, "kHz": 1e3, "1/s": 1.0, "/s": 1.0, "1/ms": 1e3, "/ms": 1e3,
}

# Allow ".1", "0.1", "1.", scientific notation, optional unit, optional space
_num_unit_re = re.compile(
    r"^\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)\s*((?:1?/)?[a-zA-Zµμ]+(?:\/[a-zA-Z0-9^]+)*)?\s*$"
)


def to_si(x: Any) -> float:
    """
    Parse values like '-70 mV', '0.025 1/ms', '5ms', '1e-9 S' -> float in SI units.
    Plain numbers are returned unchanged.
    """
    if isinstance(x, (int, float)) and not isinstance(x, bool):
        return float(x)
    s = str(x).strip()
    m = _num_unit_re.match(s)
    if not m:
        raise ValueError(f"Cannot parse numeric value with unit: {x!r}")
    val = float(m.group(1))
    unit = (m.group(2) or "").replace("μ", "µ")
    if not unit:
        return val
    if unit not in _UNIT_SCALE:
        raise ValueError(f"Unknown unit {unit!r} in {x!r}")
    return val * _UNIT_SCALE[unit]


# model unit for each physical dimension, expressed in SI
_MODEL_UNIT = {"voltage": 1e-3, "rate": 1e3, "dimensionless": 1.0}


def to_model_units(x: Any, dimension: str) -> float:
    """Numbers pass through (already in mV / 1/ms); unit strings are converted."""
    if isinstance(x, (int, float)) and not isinstance(x, bool):
        return float(x)
    return to_si(x) / _MODEL_UNIT[dimension]


# =========================
#  Synapse types and presets
# =========================

class SynapseKind(str, Enum):
    EXC = "Exc"
    INH = "Inh"
    CHOL = "Chol"
    GLUT = "Glut"
    CUSTOM = "Custom"
    ELECTRICAL = "Electrical"

    @classmethod
    def parse(cls, value: Union["SynapseKind", str]) -> "SynapseKind":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for kind in cls:
                if kind.value.lower() == value.strip().lower():
                    return kind
        raise UnknownSynapseType(value)

    @property
    def is_chemical(self) -> bool:
        return self is not SynapseKind.ELECTRICAL


SHARED_THRESHOLD_MV = -35.0
SHARED_STEEPNESS_MV = 5.0


@dataclass(frozen=True)
class SynapseParams:
    """Biophysical constants of a graded chemical synapse.

    Attributes:
        E_rev: reversal potential (mV)
        k:     kinetic (unbinding) rate (1/ms)
        V_th:  presynaptic threshold (mV)
        delta: steepness of the presynaptic sigmoid (mV)
    """
    E_rev: float
    k: float
    V_th: float = SHARED_THRESHOLD_MV
    delta: float = SHARED_STEEPNESS_MV


SYNAPSE_PRESETS: Mapping[SynapseKind, SynapseParams] = MappingProxyType({
    SynapseKind.EXC: SynapseParams(E_rev=0.0, k=0.025),
    SynapseKind.INH: SynapseParams(E_rev=-70.0, k=0.01),
    SynapseKind.CHOL: SynapseParams(E_rev=-80.0, k=0.01),
    SynapseKind.GLUT: SynapseParams(E_rev=-70.0, k=0.025),
})

ELECTRICAL_DEFAULTS: Mapping[str, float] = MappingProxyType({"g_residual": 0.2, "v_half": 40.0})

# canonical key -> (accepted spellings, dimension)
_CHEMICAL_KEYS = {
    "E_rev": (("E_rev", "e_rev", "e_syn", "E_syn", "Esyn", "reversal"), "voltage"),
    "V_th": (("V_th", "v_th", "Vth", "threshold"), "voltage"),
    "k": (("k", "k_minus", "kinetic_rate"), "rate"),
    "delta": (("delta", "sigma", "steepness"), "voltage"),
}
_ELECTRICAL_KEYS = {
    "g_residual": (("g_residual",), "dimensionless"),
    "v_half": (("v_half", "V_half"), "voltage"),
}
_REQUIRED_CUSTOM = ("E_rev", "V_th", "k", "delta")


def _check_weight(weight: Any) -> float:
    if isinstance(weight, bool) or not isinstance(weight, numbers.Real):
        raise InvalidWeight(weight)
    w = float(weight)
    if not math.isfinite(w) or w <= 0.0:
        raise InvalidWeight(weight)
    return w


def _key_table(kind: SynapseKind):
    return _CHEMICAL_KEYS if kind.is_chemical else _ELECTRICAL_KEYS


def canonical_parameter_name(kind: Union[SynapseKind, str], key: str) -> str:
    """'reversal' -> 'E_rev' etc.; unknown keys are returned unchanged."""
    for canon, (aliases, _) in _key_table(SynapseKind.parse(kind)).items():
        if key in aliases:
            return canon
    return key


def normalize_overrides(kind: SynapseKind, overrides: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """Map override spellings onto canonical parameter names, in model units."""
    table = _key_table(kind)
    lookup = {alias: canon for canon, (aliases, _) in table.items() for alias in aliases}
    out: Dict[str, float] = {}
    unknown = []
    for key, raw in (overrides or {}).items():
        canon = lookup.get(key)
        if canon is None:
            unknown.append(key)
            continue
        if canon in out:
            raise SpecificationError(f"{kind.value} synapse parameter {canon!r} given more than once")
        try:
            val = to_model_units(raw, table[canon][1])
        except ValueError as e:
            raise SpecificationError(f"{kind.value} synapse parameter {key!r}: {e}") from e
        if not math.isfinite(val):
            raise SpecificationError(f"{kind.value} synapse parameter {key!r} must be finite, got {raw!r}")
        out[canon] = val
    if unknown:
        raise UnknownSynapseParameter(kind.value, unknown)
    return out


def synapse_parameters(kind: Union[SynapseKind, str], overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, float]:
    """Effective biophysical parameters (without weight) for a synapse type."""
    kind = SynapseKind.parse(kind)
    given = normalize_overrides(kind, overrides)
    if kind is SynapseKind.ELECTRICAL:
        return {**ELECTRICAL_DEFAULTS, **given}
    if kind is SynapseKind.CUSTOM:
        missing = [k for k in _REQUIRED_CUSTOM if k not in given]
        if missing:
            raise MissingSynapseParameter(kind.value, missing)
        return {k: given[k] for k in _REQUIRED_CUSTOM}
    return {**asdict(SYNAPSE_PRESETS[kind]), **given}


def instantiate_synapse(
    kind: Union[SynapseKind, str],
    weight: float,
    overrides: Optional[Mapping[str, Any]] = None,
    name: Optional[str] = None,
) -> Component:
    kind = SynapseKind.parse(kind)
    w = _check_weight(weight)
    params = synapse_parameters(kind, overrides)
    name = name if name is not None else kind.value.lower()
    if kind is SynapseKind.ELECTRICAL:
        return GapJunctionSynapse(weight=w, **params).build(name)
    return GradedChemicalSynapse(weight=w, **params).build(name)


def _endpoint_id(x: Union[Component, str]) -> str:
    return x.name if isinstance(x, Component) else str(x)


def put_synapse(
    pre: Union[Component, str],
    post: Union[Component, str],
    kind: Union[SynapseKind, str],
    weight: float,
    overrides: Optional[Mapping[str, Any]] = None,
    name: Optional[str] = None,
) -> Component:
    """Instantiate a synapse bound to the ``pre`` and ``post`` neurons."""
    pre_id, post_id = _endpoint_id(pre), _endpoint_id(post)
    kind = SynapseKind.parse(kind)
    if name is None:
        name = f"{pre_id}->{post_id}:{kind.value.lower()}"
    return instantiate_synapse(kind, weight, overrides, name).with_endpoints(pre=pre_id, post=post_id)
