"""
Error taxonomy for network assembly and reduction.

  - Definition errors      raised while building a Component
  - Specification errors   raised while resolving a connectivity map
  - Structural errors      raised by the reducer (always fatal)
  - Invariant violations   internal defects, never user-recoverable
"""

from __future__ import annotations

from typing import Iterable, Optional


class NetworkModelError(Exception):
    """Root of every error raised by the assembly/reduction core."""


# =========================
#  Definition errors
# =========================

class DefinitionError(NetworkModelError, ValueError):
    pass


class MalformedComponent(DefinitionError):
    def __init__(self, component: str, reason: str):
        self.component = component
        self.reason = reason
        super().__init__(f"Malformed component {component!r}: {reason}")


class PortMismatch(DefinitionError):
    def __init__(self, component: str, role: str, reason: Optional[str] = None):
        self.component = component
        self.role = role
        msg = f"Component {component!r} has no port {role!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


# =========================
#  Specification errors
# =========================

class SpecificationError(NetworkModelError, ValueError):
    pass


class UnknownNeuron(SpecificationError):
    def __init__(self, neuron_id: str):
        self.neuron_id = neuron_id
        super().__init__(f"Connectivity references unknown neuron {neuron_id!r}")


class UnknownSynapseType(SpecificationError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown synapse type {value!r}")


class MissingSynapseParameter(SpecificationError):
    def __init__(self, kind: str, missing: Iterable[str]):
        self.kind = kind
        self.missing = tuple(missing)
        super().__init__(
            f"{kind} synapse is missing required parameter(s): {', '.join(self.missing)}"
        )


class UnknownSynapseParameter(SpecificationError):
    def __init__(self, kind: str, keys: Iterable[str]):
        self.kind = kind
        self.keys = tuple(keys)
        super().__init__(f"{kind} synapse does not accept parameter(s): {', '.join(self.keys)}")


class InvalidWeight(SpecificationError):
    def __init__(self, weight):
        self.weight = weight
        super().__init__(f"Synaptic weight must be a positive finite real, got {weight!r}")


# =========================
#  Structural errors
# =========================

class StructuralError(NetworkModelError, RuntimeError):
    def __init__(self, unknowns: int, equations: int, detail: str = ""):
        self.unknowns = unknowns
        self.equations = equations
        self.detail = detail
        super().__init__(self._message())

    @property
    def imbalance(self) -> int:
        return abs(self.unknowns - self.equations)

    def _message(self) -> str:
        msg = (f"{type(self).__name__}: {self.unknowns} unknowns vs "
               f"{self.equations} equations (imbalance {self.imbalance})")
        if self.detail:
            msg += f"; {self.detail}"
        return msg


class UnderdeterminedSystem(StructuralError):
    pass


class OverdeterminedSystem(StructuralError):
    pass


# =========================
#  Invariant violations / misuse
# =========================

class InvariantViolation(NetworkModelError, AssertionError):
    pass


class NoVoltageFound(InvariantViolation):
    def __init__(self, neuron_id: str, reason: str = ""):
        self.neuron_id = neuron_id
        msg = f"No canonical membrane voltage for neuron {neuron_id!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NotAssembled(NetworkModelError, TypeError):
    def __init__(self, obj):
        super().__init__(
            f"Expected a reduced system, got {type(obj).__name__}; call reduce()/build_network() first"
        )
