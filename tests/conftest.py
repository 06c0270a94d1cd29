"""
Shared test fixtures.

Provides:
- ``pair``: scenario A, two HH neurons "pre" -> "post" with one Exc synapse.
- ``ab_lp``: scenario B, AB -> LP with a Chol and a Glut synapse.
- ``clamps``: two voltage clamps "A" (-60 mV) and "B" (-50 mV) joined by an Exc synapse.
"""

import os

os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")
os.environ.setdefault("JAX_ENABLE_X64", "1")

import pytest
import sympy as sp

from custom_mechanisms import make_hh_neuron, make_voltage_clamp


def assert_same_expr(a, b):
    diff = a - b
    assert diff == 0 or sp.simplify(diff) == 0, f"{a} != {b}"


@pytest.fixture
def pair():
    neurons = [make_hh_neuron("pre"), make_hh_neuron("post")]
    connections = {("pre", "post"): [{"type": "Exc", "weight": 0.5}]}
    return connections, neurons


@pytest.fixture
def ab_lp():
    neurons = [make_hh_neuron("AB"), make_hh_neuron("LP")]
    connections = {("AB", "LP"): [{"type": "Chol", "weight": 30.0}, {"type": "Glut", "weight": 30.0}]}
    return connections, neurons


@pytest.fixture
def clamps():
    neurons = [make_voltage_clamp("A", -60.0), make_voltage_clamp("B", -50.0)]
    connections = {("A", "B"): [{"type": "Exc", "weight": 1.0}]}
    return connections, neurons
