"""Configurable solver settings for population simulations."""

from __future__ import annotations
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field, field_validator

VALID_METHODS = {"RK45", "DOP853", "LSODA", "BDF", "Radau"}


class SolverSettings(BaseModel):
    """Numerical settings for the adaptive ODE solver.

    RK45 is the default: PK/PD systems without stiff turnover are handled
    well by an explicit 4(5) pair, and stiff models can switch to LSODA or BDF.
    """

    method: str = Field("RK45", description="Integration method (RK45, DOP853, LSODA, BDF, Radau)")
    rtol: float = Field(1e-6, gt=0.0, description="Relative tolerance")
    atol: float = Field(1e-9, gt=0.0, description="Absolute tolerance")
    max_step: Optional[float] = Field(None, gt=0.0, description="Maximum step size")
    first_step: Optional[float] = Field(None, gt=0.0, description="Initial step size")

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if v not in VALID_METHODS:
            raise ValueError(f"method must be one of {sorted(VALID_METHODS)}")
        return v

    def get_scipy_options(self) -> Dict[str, Any]:
        """Get options formatted for scipy.integrate.solve_ivp.

        Returns:
            Dictionary with scipy-compatible solver options
        """
        options = {
            'rtol': self.rtol,
            'atol': self.atol,
            'method': self.method
        }

        if self.max_step is not None:
            options['max_step'] = self.max_step

        if self.first_step is not None:
            options['first_step'] = self.first_step

        return options


class SteadyStateSettings(BaseModel):
    """How steady-state (SS) doses initialise the system."""

    policy: str = Field("superposition", description="superposition or periods")
    tolerance: float = Field(1e-8, gt=0.0, description="Relative trough change that ends period iteration")
    max_periods: int = Field(500, ge=1, description="Cap on simulated dosing periods")

    @field_validator("policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        if v not in ("superposition", "periods"):
            raise ValueError("policy must be 'superposition' or 'periods'")
        return v
