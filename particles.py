"""
Particle state and the particle ensemble used by the trajectory integrators.

Particles are created externally (at t=0 or injected during a run) and handed
to a ParticleEnsemble, which assigns each one a stable insertion index and keeps
the per-particle scratch rows the integrator needs (previous acceleration and
staged position). Particles are never removed: a particle that leaves the
domain is deactivated in place so indices stay valid for the whole run.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Iterator, List, Optional
from scipy.constants import e as ELEMENTARY_CHARGE, atomic_mass as AMU_TO_KG


@dataclass(eq=False)
class Particle:
    """A charged point particle (SI units)."""

    position: np.ndarray
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    mass: float = 100.0 * AMU_TO_KG       # kg
    charge: float = ELEMENTARY_CHARGE     # C
    time_of_birth: float = 0.0            # s
    diameter: int = 0                     # collision diameter in pm
    active: bool = True
    index: int = -1                       # assigned by ParticleEnsemble
    born: bool = False                    # set once an integrator has started the particle

    def __post_init__(self):
        self.position = np.array(self.position, dtype=float).reshape(3)
        self.velocity = np.array(self.velocity, dtype=float).reshape(3)
        self.mass = float(self.mass)
        self.charge = float(self.charge)
        self.time_of_birth = float(self.time_of_birth)
        self.diameter = int(self.diameter)
        if not self.mass > 0:
            raise ValueError(f"Particle mass must be positive, got {self.mass}")

    @classmethod
    def from_ion_units(cls, position, velocity=(0.0, 0.0, 0.0), charge_e=1.0, mass_amu=100.0,
                       time_of_birth=0.0, diameter_m=0.0):
        #Create a particle from charge in elementary charges and mass in amu
        return cls(
            position=position,
            velocity=velocity,
            mass=mass_amu * AMU_TO_KG,
            charge=charge_e * ELEMENTARY_CHARGE,
            time_of_birth=time_of_birth,
            diameter=int(round(diameter_m * 1e12)),
        )

    @property
    def collision_diameter(self) -> float:
        #Collision diameter in metres
        return self.diameter * 1e-12

    @property
    def charge_e(self) -> float:
        return self.charge / ELEMENTARY_CHARGE

    @property
    def mass_amu(self) -> float:
        return self.mass / AMU_TO_KG

    @property
    def kinetic_energy(self) -> float:
        return 0.5 * self.mass * float(np.dot(self.velocity, self.velocity))

    def __repr__(self):
        state = "active" if self.active else "inactive"
        return (f"Particle(index={self.index}, pos={self.position.tolist()}, "
                f"q={self.charge_e:.3g} e, m={self.mass_amu:.4g} amu, {state})")


class ParticleEnsemble:
    """
    Ordered collection of particles plus integrator scratch state.

    Row ``i`` of ``prev_acceleration`` and ``staged_position`` belongs to the
    particle with insertion index ``i``. Both are views of preallocated buffers
    whose capacity doubles when full, so appending stays amortized O(1) and
    rows already written survive the regrow.
    """

    def __init__(self, particles: Optional[List[Particle]] = None, capacity: int = 16):
        if capacity < 1:
            raise ValueError("Ensemble capacity must be positive")
        self._particles: List[Particle] = []
        self._prev_acceleration = np.zeros((capacity, 3))
        self._staged_position = np.zeros((capacity, 3))
        for p in particles or []:
            self.add_particle(p)

    def add_particle(self, particle: Particle) -> int:
        """
        Append a particle and allocate its scratch rows.

        Returns:
            The insertion index assigned to the particle
        """
        if particle.index >= 0 and particle.index < len(self._particles) \
                and self._particles[particle.index] is particle:
            raise ValueError(f"Particle {particle.index} is already part of this ensemble")
        idx = len(self._particles)
        particle.index = idx
        self._particles.append(particle)
        if idx == self.capacity:
            self._grow(2 * self.capacity)
        self._prev_acceleration[idx] = 0.0
        self._staged_position[idx] = particle.position
        return idx

    def _grow(self, capacity: int):
        prev_acceleration = np.zeros((capacity, 3))
        staged_position = np.zeros((capacity, 3))
        n = len(self._particles) - 1
        prev_acceleration[:n] = self._prev_acceleration[:n]
        staged_position[:n] = self._staged_position[:n]
        self._prev_acceleration = prev_acceleration
        self._staged_position = staged_position

    @property
    def capacity(self) -> int:
        return self._prev_acceleration.shape[0]

    @property
    def prev_acceleration(self) -> np.ndarray:
        """Acceleration of the previous step, one row per particle (writable view)"""
        return self._prev_acceleration[:len(self._particles)]

    @property
    def staged_position(self) -> np.ndarray:
        """Phase 1 positions awaiting commit, one row per particle (writable view)"""
        return self._staged_position[:len(self._particles)]

    def __len__(self):
        return len(self._particles)

    def __iter__(self) -> Iterator[Particle]:
        return iter(self._particles)

    def __getitem__(self, idx) -> Particle:
        return self._particles[idx]

    @property
    def particles(self) -> List[Particle]:
        return self._particles

    def active_particles(self) -> List[Particle]:
        return [p for p in self._particles if p.active]

    def active_indices(self) -> np.ndarray:
        return np.array([p.index for p in self._particles if p.active], dtype=np.int64)

    def n_active(self) -> int:
        return sum(1 for p in self._particles if p.active)

    def deactivate(self, idx: int):
        #Retire a particle in place; its index stays reserved
        self._particles[idx].active = False

    def positions(self) -> np.ndarray:
        if not self._particles:
            return np.zeros((0, 3))
        return np.array([p.position for p in self._particles])

    def velocities(self) -> np.ndarray:
        if not self._particles:
            return np.zeros((0, 3))
        return np.array([p.velocity for p in self._particles])

    def charges(self) -> np.ndarray:
        return np.array([p.charge for p in self._particles], dtype=float)

    def masses(self) -> np.ndarray:
        return np.array([p.mass for p in self._particles], dtype=float)

    def active_mask(self) -> np.ndarray:
        return np.array([p.active for p in self._particles], dtype=bool)
