"""
Simulation configuration.

SimulationConfig gathers everything needed to assemble a space-charge run
(see space_charge_sim.build_simulation). It can be written to and read from
JSON; invalid values raise ValueError before any stepping begins.
"""

import json
import numpy as np
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional, Tuple


@dataclass
class IonGroup:
    #Group of identical ions created at random in a start zone
    n_ions: int = 100
    charge_e: float = 1.0
    mass_amu: float = 100.0
    collision_diameter_angstrom: float = 0.0

    def __post_init__(self):
        if self.n_ions < 0:
            raise ValueError(f"n_ions must be >= 0, got {self.n_ions}")
        if self.mass_amu <= 0:
            raise ValueError(f"mass_amu must be > 0, got {self.mass_amu}")


@dataclass
class TrapFieldConfig:
    #Analytic quadrupole trap field (see trap_field.QuadrupoleTrapField)
    V_rf: float = 0.0
    V_dc: float = 0.0
    Omega: float = 0.0
    r0: float = 5e-3
    trap_type: str = "3D"
    escape_radius: Optional[float] = None


@dataclass
class SimulationConfig:
    """Configuration of a space-charge trajectory simulation."""

    # Time stepping
    sim_time_steps: int = 1000
    dt: float = 1e-8                     # s
    trajectory_write_interval: int = 10  # record every n-th step
    trajectory_file: Optional[str] = None  # .npz output (None = keep in memory)

    # Space charge
    space_charge_factor: float = 1.0
    field_evaluator: str = "tree"        # 'tree' or 'full_sum'
    theta: float = 0.5                   # opening angle of the tree
    leaf_capacity: int = 1

    # Execution
    n_workers: int = 1
    seed: Optional[int] = None
    verbose: bool = True

    # Ions: read from ion_cloud_file, or random groups in a start zone
    ion_cloud_file: Optional[str] = None
    ion_groups: List[IonGroup] = field(default_factory=list)
    ion_start_geometry: str = "box"      # 'box' or 'cylinder'
    ion_start_base_position: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    ion_start_box_size: Tuple[float, float, float] = (1e-3, 1e-3, 1e-3)
    ion_start_radius: float = 5e-4
    ion_start_length: float = 1e-3
    ion_start_cylinder_normal: Tuple[float, float, float] = (0.0, 0.0, 1.0)
    ion_time_of_birth_range: float = 0.0  # s

    # External field
    trap_field: Optional[TrapFieldConfig] = None

    # Background gas
    damping_gamma: float = 0.0           # 1/s
    pressure_torr: Optional[float] = None  # buffer gas damping
    collision_pressure_pa: Optional[float] = None  # stochastic hard sphere collisions
    gas_temperature_k: float = 298.0

    def __post_init__(self):
        if int(self.sim_time_steps) != self.sim_time_steps or self.sim_time_steps < 0:
            raise ValueError(f"sim_time_steps must be a non-negative integer, got {self.sim_time_steps}")
        if not np.isfinite(self.dt) or self.dt <= 0:
            raise ValueError(f"dt must be positive, got {self.dt}")
        if self.trajectory_write_interval < 1:
            raise ValueError(f"trajectory_write_interval must be >= 1, got {self.trajectory_write_interval}")
        if self.space_charge_factor < 0:
            raise ValueError(f"space_charge_factor must be >= 0, got {self.space_charge_factor}")
        if self.field_evaluator not in ("tree", "full_sum"):
            raise ValueError(f"Invalid field_evaluator: {self.field_evaluator}. Choose from ['tree', 'full_sum']")
        if not np.isfinite(self.theta) or self.theta < 0:
            raise ValueError(f"theta must be >= 0, got {self.theta}")
        if self.leaf_capacity < 1:
            raise ValueError(f"leaf_capacity must be >= 1, got {self.leaf_capacity}")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        if self.ion_start_geometry not in ("box", "cylinder"):
            raise ValueError(f"Invalid ion start geometry identifier: {self.ion_start_geometry}")
        if self.ion_time_of_birth_range < 0:
            raise ValueError(f"ion_time_of_birth_range must be >= 0, got {self.ion_time_of_birth_range}")

        self.ion_groups = [g if isinstance(g, IonGroup) else IonGroup(**g) for g in self.ion_groups]
        if isinstance(self.trap_field, dict):
            self.trap_field = TrapFieldConfig(**self.trap_field)
        self.ion_start_base_position = tuple(self.ion_start_base_position)
        self.ion_start_box_size = tuple(self.ion_start_box_size)
        self.ion_start_cylinder_normal = tuple(self.ion_start_cylinder_normal)

    @property
    def n_ions(self) -> int:
        return sum(g.n_ions for g in self.ion_groups)

    def to_dict(self) -> dict:
        d = asdict(self)
        d['ion_start_base_position'] = list(self.ion_start_base_position)
        d['ion_start_box_size'] = list(self.ion_start_box_size)
        d['ion_start_cylinder_normal'] = list(self.ion_start_cylinder_normal)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> 'SimulationConfig':
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(d) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**d)

    @classmethod
    def load(cls, path) -> 'SimulationConfig':
        """Load a configuration from a JSON file. Relative file paths are resolved against the file."""
        path = Path(path)
        with open(path, 'r') as f:
            d = json.load(f)
        config = cls.from_dict(d)
        base = path.parent
        if config.ion_cloud_file and not Path(config.ion_cloud_file).is_absolute():
            config.ion_cloud_file = str(base / config.ion_cloud_file)
        if config.trajectory_file and not Path(config.trajectory_file).is_absolute():
            config.trajectory_file = str(base / config.trajectory_file)
        return config

    def save(self, path):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
