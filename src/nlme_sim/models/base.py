"""Base interface for composable ODE model components."""

from __future__ import annotations
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Mapping, Set

import numpy as np


class ComponentType(Enum):
    """Kinds of model components, in the order they are evaluated."""
    ABSORPTION = "absorption"
    DISPOSITION = "disposition"
    DELAY = "delay"
    PHARMACODYNAMIC = "pharmacodynamic"
    HAZARD = "hazard"


class ModelComponent(ABC):
    """Base interface for components of a composed ODE system.

    Every component owns a contiguous slice of the state vector. During each
    right-hand-side evaluation components run in order: a component first
    publishes its algebraic outputs (e.g. ``C = A1/V``) into the shared
    environment and then computes derivatives of its own states, reading
    whatever earlier components published.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this component."""
        pass

    @property
    @abstractmethod
    def component_type(self) -> ComponentType:
        pass

    @property
    @abstractmethod
    def requires(self) -> Set[str]:
        """Environment names this component reads."""
        pass

    @property
    @abstractmethod
    def provides(self) -> Set[str]:
        """Environment names this component publishes (states and algebraic outputs)."""
        pass

    @property
    @abstractmethod
    def state_names(self) -> List[str]:
        pass

    def get_state_size(self) -> int:
        return len(self.state_names)

    def initialize_state(self, params: Mapping[str, float]) -> np.ndarray:
        """Initial state at the start of a simulation.

        Args:
            params: Resolved structural parameters at the first time

        Returns:
            Initial values of this component's states
        """
        return np.zeros(self.get_state_size())

    @abstractmethod
    def compute_outputs(
        self,
        state: np.ndarray,
        env: Dict[str, float],
        params: Mapping[str, float],
    ) -> Dict[str, float]:
        """Algebraic outputs of this component for the current state."""
        pass

    @abstractmethod
    def compute_derivatives(
        self,
        t: float,
        state: np.ndarray,
        env: Mapping[str, float],
        params: Mapping[str, float],
        inputs: Mapping[str, float],
    ) -> np.ndarray:
        """Time derivatives of this component's states.

        Args:
            t: Current time
            state: This component's slice of the state vector
            env: Outputs published so far in this evaluation
            params: Resolved structural parameters
            inputs: Active zero-order input rates by dose target

        Returns:
            Derivative vector with the same size as ``state``
        """
        pass

    def accepts_dose(self, target: str) -> bool:
        return False

    def apply_bolus(
        self, state: np.ndarray, target: str, amount: float, params: Mapping[str, float]
    ) -> None:
        """Apply an instantaneous dose in place."""
        raise NotImplementedError(f"{self.name} does not accept doses")

    def is_linear(self) -> bool:
        """True if the derivatives are affine in the state."""
        return True

    def steady_state_excluded(self) -> Set[str]:
        """States that accumulate without bound and are left out of steady-state solves."""
        return set()
