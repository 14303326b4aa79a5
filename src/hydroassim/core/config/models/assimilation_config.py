# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Data assimilation configuration models.

Contains LeastSquaresConfig for the iterative weighted least-squares
analysis, ObservationConfig for gauge observations and their retrieval,
SolverConfig for the linear-solve backend, and DataAssimilationConfig as
the parent container.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .base import FROZEN_CONFIG


class LeastSquaresConfig(BaseModel):
    """Configuration for the iterative least-squares analysis."""
    model_config = FROZEN_CONFIG

    model_variant: Literal['254', '254_q', '254_qsp', '254_qst'] = Field(
        default='254_q', alias='ASSIM_MODEL',
        description='Model 254 variant; selects which state components are analysed'
    )
    state_dim: int = Field(
        default=4, alias='ASSIM_STATE_DIM', ge=1,
        description='Number of state components per network node'
    )
    max_iterations: int = Field(
        default=5, alias='LS_MAX_ITERATIONS', ge=1,
        description='Maximum least-squares iterations per pass'
    )
    convergence_tolerance: float = Field(
        default=1e-10, alias='LS_CONVERGENCE_TOLERANCE', ge=0.0,
        description='Squared-error threshold at which a pass stops early'
    )
    trim_network: bool = Field(
        default=True, alias='ASSIM_TRIM_NETWORK',
        description='Restrict the analysis to nodes upstream of gauges'
    )
    discharge_floor: float = Field(
        default=1e-14, alias='ASSIM_DISCHARGE_FLOOR', gt=0.0
    )
    storage_floor: float = Field(
        default=0.0, alias='ASSIM_STORAGE_FLOOR', ge=0.0
    )
    outlier_limit: float = Field(
        default=1.0, alias='ASSIM_OUTLIER_LIMIT', gt=0.0,
        description='Discrepancy limit, scaled per gauge, above which an observation is replaced'
    )
    weighting: Literal['uniform', 'upstream_area'] = Field(
        default='uniform', alias='ASSIM_WEIGHTING'
    )
    prior_weight: float = Field(
        default=1.0, alias='ASSIM_PRIOR_WEIGHT', gt=0.0,
        description='Diagonal weight of the background term (B)'
    )
    observation_weight: float = Field(
        default=1.0, alias='ASSIM_OBSERVATION_WEIGHT', gt=0.0,
        description='Diagonal weight of the observation term (R)'
    )

    @field_validator('model_variant', mode='before')
    @classmethod
    def normalize_variant(cls, v):
        """Accept numeric variants from YAML (254 -> '254') and ignore case"""
        if isinstance(v, int):
            return str(v)
        if isinstance(v, str):
            return v.strip().lower()
        return v


class ObservationConfig(BaseModel):
    """Configuration for gauge observations."""
    model_config = FROZEN_CONFIG

    gauge_link_ids: Optional[List[int]] = Field(
        default=None, alias='ASSIM_GAUGE_LINKS',
        description='Link IDs of the gauged nodes'
    )
    num_steps: int = Field(default=10, alias='ASSIM_NUM_STEPS', ge=1)
    obs_time_step: float = Field(
        default=15.0, alias='ASSIM_OBS_TIME_STEP', gt=0.0,
        description='Time between observations (minutes)'
    )
    retry_delay: float = Field(
        default=5.0, alias='OBS_RETRY_DELAY', ge=0.0,
        description='Delay between observation download attempts (seconds)'
    )
    max_attempts: Optional[int] = Field(
        default=None, alias='OBS_MAX_ATTEMPTS', ge=1,
        description='Download attempt cap (None retries indefinitely)'
    )

    @field_validator('gauge_link_ids', mode='before')
    @classmethod
    def validate_gauge_links(cls, v):
        """Normalize comma-separated link lists"""
        if isinstance(v, str):
            return [int(item.strip()) for item in v.split(",") if item.strip()]
        if isinstance(v, int):
            return [v]
        return v


class SolverConfig(BaseModel):
    """Configuration for the reduced-space linear solve."""
    model_config = FROZEN_CONFIG

    backend: Literal['direct', 'cg'] = Field(default='direct', alias='SOLVER_BACKEND')
    rtol: float = Field(default=1e-10, alias='SOLVER_RTOL', gt=0.0)
    max_krylov_iters: Optional[int] = Field(
        default=None, alias='SOLVER_MAX_ITERS', ge=1
    )


class DataAssimilationConfig(BaseModel):
    """Top-level data assimilation configuration."""
    model_config = FROZEN_CONFIG

    method: Literal['least_squares'] = Field(default='least_squares', alias='DA_METHOD')
    coordinator_rank: int = Field(default=0, alias='DA_COORDINATOR_RANK', ge=0)
    least_squares: LeastSquaresConfig = Field(default_factory=LeastSquaresConfig)
    observations: ObservationConfig = Field(default_factory=ObservationConfig)
    solver: SolverConfig = Field(default_factory=SolverConfig)
