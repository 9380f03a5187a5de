"""
Physics modifiers applied by the integrators once per particle and step.

A modifier perturbs a particle's acceleration, velocity or staged position,
e.g. to model interaction with a background gas. The base class is a
complete no-op, so the integrator always calls the hooks and never checks
for a missing modifier.

Hooks are called in this order for every active particle:
    update_particle_parameters  (parallel phase)
    modify_acceleration         (parallel phase)
    modify_velocity             (parallel phase)
    modify_position             (sequential phase)

Hooks called in the parallel phase must only touch the particle they are
given. Randomness has to come from the ``rng`` argument, which is the
worker's own stream from the RandomStreamPool.
"""

import warnings
import numpy as np
from typing import Iterable, List, Optional
from scipy.constants import Boltzmann as K_B, torr as TORR_TO_PA, atomic_mass


class CollisionProbabilityWarning(RuntimeWarning):
    #Per-step collision probability exceeded 1 and was clamped
    pass


class PhysicsModifier:
    """No-op modifier; subclasses override the hooks they need."""

    def update_step_parameters(self, step, time):
        pass

    def update_particle_parameters(self, particle):
        pass

    def modify_acceleration(self, acceleration, particle, dt, rng):
        pass

    def modify_velocity(self, particle, dt, rng):
        pass

    def modify_position(self, position, particle, dt, rng):
        pass


class ModifierChain(PhysicsModifier):
    """Apply several modifiers in a fixed order."""

    def __init__(self, modifiers: Optional[Iterable[PhysicsModifier]] = None):
        self.modifiers: List[PhysicsModifier] = list(modifiers or [])

    def append(self, modifier: PhysicsModifier):
        self.modifiers.append(modifier)

    def __len__(self):
        return len(self.modifiers)

    def update_step_parameters(self, step, time):
        for m in self.modifiers:
            m.update_step_parameters(step, time)

    def update_particle_parameters(self, particle):
        for m in self.modifiers:
            m.update_particle_parameters(particle)

    def modify_acceleration(self, acceleration, particle, dt, rng):
        for m in self.modifiers:
            m.modify_acceleration(acceleration, particle, dt, rng)

    def modify_velocity(self, particle, dt, rng):
        for m in self.modifiers:
            m.modify_velocity(particle, dt, rng)

    def modify_position(self, position, particle, dt, rng):
        for m in self.modifiers:
            m.modify_position(position, particle, dt, rng)


def gas_number_density(pressure_pa, temperature_k):
    #Ideal gas number density [1/m^3]
    return pressure_pa / (K_B * temperature_k)


class BufferGasDamping(PhysicsModifier):
    """
    Velocity damping by a buffer gas, a = -gamma * v.

    gamma is the sum of a fixed damping rate and, if a pressure is given, the
    momentum transfer rate of a hard-sphere collision model:

        gamma = n * sigma * v_rel * (2 * m_gas / (m + m_gas))

    with n = P / (k_B * T), sigma = pi * (r_particle + r_gas)^2 and the mean
    relative thermal speed of the gas v_rel = sqrt(8 k_B T / (pi m_gas)).
    Defaults are helium at 300 K.
    """

    def __init__(self, damping_gamma=0.0, pressure_torr=None, temperature_k=300.0,
                 gas_mass=6.646e-27, gas_radius=140e-12):
        if damping_gamma < 0:
            raise ValueError(f"Damping rate must be >= 0, got {damping_gamma}")
        if pressure_torr is not None and pressure_torr < 0:
            raise ValueError(f"Pressure must be >= 0, got {pressure_torr}")
        self.damping_gamma = float(damping_gamma)
        self.pressure_torr = pressure_torr
        self.temperature_k = float(temperature_k)
        self.gas_mass = float(gas_mass)
        self.gas_radius = float(gas_radius)

    def damping_rate(self, particle) -> float:
        gamma = self.damping_gamma
        if self.pressure_torr:
            n = gas_number_density(self.pressure_torr * TORR_TO_PA, self.temperature_k)
            sigma = np.pi * (0.5 * particle.collision_diameter + self.gas_radius)**2
            v_rel = np.sqrt(8 * K_B * self.temperature_k / (np.pi * self.gas_mass))
            collision_rate = n * sigma * v_rel
            gamma += collision_rate * (2 * self.gas_mass / (particle.mass + self.gas_mass))
        return gamma

    def modify_acceleration(self, acceleration, particle, dt, rng):
        gamma = self.damping_rate(particle)
        if gamma:
            acceleration -= gamma * particle.velocity


class HardSphereCollisions(PhysicsModifier):
    """
    Stochastic elastic hard-sphere collisions with a thermal background gas.

    The per-step collision probability is n * sigma * |v| * dt. When the time
    step is too large relative to the mean free time this exceeds 1; it is then
    clamped to 1 and a CollisionProbabilityWarning is issued once.
    """

    def __init__(self, pressure_pa, temperature_k=298.0, gas_mass=28 * atomic_mass,
                 gas_diameter=3.64e-10):
        if pressure_pa < 0:
            raise ValueError(f"Pressure must be >= 0, got {pressure_pa}")
        if temperature_k <= 0:
            raise ValueError(f"Temperature must be > 0, got {temperature_k}")
        self.pressure_pa = float(pressure_pa)
        self.temperature_k = float(temperature_k)
        self.gas_mass = float(gas_mass)
        self.gas_diameter = float(gas_diameter)
        self.n_gas = gas_number_density(self.pressure_pa, self.temperature_k)
        self._gas_sigma_v = np.sqrt(K_B * self.temperature_k / self.gas_mass)
        self._warned = False

    def cross_section(self, particle) -> float:
        return np.pi * (0.5 * (particle.collision_diameter + self.gas_diameter))**2

    def collision_probability(self, particle, dt) -> float:
        speed = float(np.linalg.norm(particle.velocity))
        p = self.n_gas * self.cross_section(particle) * speed * dt
        if p > 1.0:
            if not self._warned:
                self._warned = True
                warnings.warn(
                    f"Collision probability per time step is {p:.3g} > 1 "
                    f"(dt={dt:.3e} s too large for the mean free path); clamped to 1.",
                    CollisionProbabilityWarning,
                    stacklevel=2,
                )
            p = 1.0
        return p

    def modify_velocity(self, particle, dt, rng):
        if self.n_gas == 0.0:
            return
        if rng.uniform() >= self.collision_probability(particle, dt):
            return

        v_gas = self._gas_sigma_v * rng.normal_vector(3)
        m1, m2 = particle.mass, self.gas_mass
        v_cm = (m1 * particle.velocity + m2 * v_gas) / (m1 + m2)
        v_rel = particle.velocity - v_gas
        speed_rel = float(np.linalg.norm(v_rel))

        # isotropic scattering in the centre of mass frame
        cos_t = 2.0 * rng.uniform() - 1.0
        sin_t = np.sqrt(max(0.0, 1.0 - cos_t * cos_t))
        phi = 2.0 * np.pi * rng.uniform()
        direction = np.array([sin_t * np.cos(phi), sin_t * np.sin(phi), cos_t])

        particle.velocity = v_cm + (m2 / (m1 + m2)) * speed_rel * direction
