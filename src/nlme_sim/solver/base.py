"""Base classes for numerical solvers."""

from __future__ import annotations
from abc import ABC, abstractmethod
import numpy as np
from typing import Dict, Any, Callable, Optional, Sequence, Tuple


class SolverBase(ABC):
    """Base class for all numerical solvers."""

    def __init__(self, name: str):
        self.name = name
        self.last_result: Optional[Any] = None
        self.convergence_info: Dict[str, Any] = {}

    @abstractmethod
    def solve(self, *args, **kwargs) -> Any:
        """Solve the numerical problem."""
        pass


class ODESolverBase(SolverBase):
    """Base class for ODE solvers."""

    def __init__(self, name: str, method: str = "RK45"):
        super().__init__(name)
        self.method = method
        self.default_options = {
            'rtol': 1e-6,
            'atol': 1e-9,
            'max_step': np.inf,
        }

    @abstractmethod
    def solve_ode(
        self,
        ode_func: Callable,
        y0: np.ndarray,
        t_span: Tuple[float, float],
        t_eval: Optional[np.ndarray] = None,
        events: Optional[Sequence[Callable]] = None,
        **options
    ) -> Any:
        """Solve an ODE system."""
        pass

    def solve(self, *args, **kwargs) -> Any:
        return self.solve_ode(*args, **kwargs)
