"""
External fields and force laws.

QuadrupoleTrapField  - analytic RF/DC quadrupole field of idealized Paul traps
UniformField         - homogeneous static field (acceleration regions, tests)
space_charge_force_law - combines an external field with the space-charge field

External fields raise FieldUndefinedError outside their domain. The force
laws built here catch it and retire the particle instead of failing the run.
"""

import numpy as np
from typing import Callable, Optional


class FieldUndefinedError(Exception):
    #Field requested at a point outside the field's domain
    pass


class UniformField:
    """Static homogeneous field, optionally limited to an axis aligned box."""

    def __init__(self, field, bounds=None):
        self.E = np.array(field, dtype=float).reshape(3)
        if bounds is not None:
            lo, hi = (np.array(b, dtype=float).reshape(3) for b in bounds)
            if np.any(hi <= lo):
                raise ValueError(f"Degenerate field bounds: {lo.tolist()} .. {hi.tolist()}")
            self.bounds = (lo, hi)
        else:
            self.bounds = None

    def field(self, position, t):
        if self.bounds is not None:
            lo, hi = self.bounds
            if np.any(position < lo) or np.any(position > hi):
                raise FieldUndefinedError(f"Position {np.asarray(position).tolist()} outside field bounds")
        return self.E.copy()

    def __call__(self, position, t):
        return self.field(position, t)


class QuadrupoleTrapField:
    """
    Analytic quadrupole field for idealized Paul trap geometries.

    Potential:
        phi(x, y, z, t) = (V_rf cos(Omega t) + V_dc) (a x^2 + b y^2 + c z^2) / (2 r0^2)

    Geometry coefficients (a, b, c) come from the trap type preset or
    ``custom_abc``. Linear traps can add an axial DC confinement
    -2 kappa U / z0^2 * z. Beyond ``escape_radius`` the field is undefined.
    """

    PRESETS = {
        "3D (hyperbolic)": (1, 1, -2),
        "Planar (washer)": (1, 1, -2),
        "Linear": (1, -1, 0),
    }
    ALIASES = {
        "3D": "3D (hyperbolic)",
        "2D": "Planar (washer)",
        "linear": "Linear",
    }

    def __init__(self, V_rf, V_dc, Omega, r0, trap_type="3D", custom_abc=None,
                 axial_dc_kappa=None, axial_dc_z0=None, axial_dc_voltage=None, escape_radius=None):
        if not np.isfinite(r0) or r0 <= 0:
            raise ValueError(f"Trap dimension r0 must be positive, got {r0}")

        key = trap_type.strip() if isinstance(trap_type, str) else trap_type
        trap_type = self.ALIASES.get(key, self.ALIASES.get(str(key).lower(), key))
        if custom_abc is not None:
            self.a, self.b, self.c = (float(v) for v in custom_abc)
        else:
            try:
                self.a, self.b, self.c = self.PRESETS[trap_type]
            except KeyError:
                raise ValueError(f"Invalid trap type: {trap_type}. Choose from {list(self.PRESETS.keys())}, or provide custom_abc.")
        self.trap_type = trap_type

        self.V_rf = float(V_rf)
        self.V_dc = float(V_dc)
        self.Omega = float(Omega)
        self.r0 = float(r0)
        self.coeff_rf = -self.V_rf / self.r0**2
        self.coeff_dc = -self.V_dc / self.r0**2

        self.axial_coeff = 0.0
        if trap_type == "Linear" and axial_dc_voltage is not None:
            if axial_dc_kappa is None or not axial_dc_z0:
                raise ValueError("Axial DC confinement needs axial_dc_kappa and a non-zero axial_dc_z0")
            self.axial_coeff = -(2.0 * axial_dc_kappa * axial_dc_voltage / axial_dc_z0**2)

        self.escape_radius = float(escape_radius) if escape_radius is not None else 20.0 * self.r0

    def potential(self, position, t):
        x, y, z = position
        return ((self.V_rf * np.cos(self.Omega * t) + self.V_dc)
                * (self.a * x**2 + self.b * y**2 + self.c * z**2) / (2 * self.r0**2))

    def field(self, position, t):
        position = np.asarray(position, dtype=float)
        r = float(np.linalg.norm(position))
        if not np.isfinite(r) or r > self.escape_radius:
            raise FieldUndefinedError(
                f"Particle left simulation bounds (|r|={r:.3e} m > {self.escape_radius:.3e} m)")
        x, y, z = position
        coeff = self.coeff_rf * np.cos(self.Omega * t) + self.coeff_dc
        E = np.array([coeff * self.a * x, coeff * self.b * y, coeff * self.c * z])
        if self.axial_coeff != 0.0:
            E[2] += self.axial_coeff * z
        return E

    def __call__(self, position, t):
        return self.field(position, t)

    def mathieu_parameters(self, mass, charge):
        #Mathieu (a, q) of the radial x direction for a particle of given mass and charge
        if self.Omega == 0:
            raise ValueError("Mathieu parameters need a non-zero RF frequency")
        factor = charge / (mass * self.r0**2 * self.Omega**2)
        return 4 * self.V_dc * self.a * factor, 2 * self.V_rf * self.a * factor


def space_charge_force_law(external_field: Optional[Callable] = None, space_charge_factor: float = 1.0,
                           on_splat: Optional[Callable] = None):
    """
    Build a force law a = q/m * (E_ext(r, t) + f * E_sc(r)).

    Args:
        external_field: Callable (position, t) -> E, may raise FieldUndefinedError
        space_charge_factor: Scaling f of the space-charge field (0 disables it)
        on_splat: Called as on_splat(particle, t) when a particle is retired

    Returns:
        Callable (particle, field_evaluator, time, step) -> acceleration
    """
    if space_charge_factor < 0:
        raise ValueError(f"Space charge factor must be >= 0, got {space_charge_factor}")

    def force_law(particle, field_evaluator, t, step):
        try:
            E = np.zeros(3)
            if external_field is not None:
                E = E + external_field(particle.position, t)
            if space_charge_factor > 0:
                E = E + space_charge_factor * field_evaluator.field_at_particle(particle)
            return E * (particle.charge / particle.mass)
        except FieldUndefinedError:
            particle.active = False
            if on_splat is not None:
                on_splat(particle, t)
            return np.zeros(3)

    return force_law
