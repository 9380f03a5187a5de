"""
Initial particle definitions: random start zones and ion cloud files.

Start zones draw random positions (and optionally random times of birth)
from a RandomSource, so initial conditions are reproducible with a seeded
RandomStreamPool.

Ion cloud file format (one particle per line, ';' or ',' separated, '#' comments):
    x; y; z; vx; vy; vz; charge [e]; mass [amu] [; time of birth [s] [; collision diameter [Angstrom]]]
Positions in m, velocities in m/s.
"""

import numpy as np
from pathlib import Path
from typing import List, Sequence, Union

from particles import Particle


class IonCloudFileError(ValueError):
    pass


def _orthonormal_basis(normal):
    n = np.asarray(normal, dtype=float)
    norm = np.linalg.norm(n)
    if not np.isfinite(norm) or norm == 0:
        raise ValueError(f"Cylinder normal vector must be non-zero, got {n.tolist()}")
    n = n / norm
    helper = np.array([1.0, 0.0, 0.0]) if abs(n[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    u = np.cross(n, helper)
    u /= np.linalg.norm(u)
    v = np.cross(n, u)
    return n, u, v


class StartZone:
    """Base class: subclasses implement random_position(rng)."""

    def random_position(self, rng) -> np.ndarray:
        raise NotImplementedError

    def random_particles(self, n_particles, rng, charge_e=1.0, mass_amu=100.0, time_of_birth_range=0.0,
                         diameter_m=0.0) -> List[Particle]:
        """
        Create particles at random positions inside the zone, at rest.

        Args:
            n_particles: Number of particles
            rng: RandomSource
            time_of_birth_range: Times of birth are uniform in [0, range]
        """
        if n_particles < 0:
            raise ValueError(f"Number of particles must be >= 0, got {n_particles}")
        if time_of_birth_range < 0:
            raise ValueError(f"Time of birth range must be >= 0, got {time_of_birth_range}")
        particles = []
        for _ in range(int(n_particles)):
            pos = self.random_position(rng)
            tob = rng.uniform() * time_of_birth_range if time_of_birth_range > 0 else 0.0
            particles.append(Particle.from_ion_units(pos, charge_e=charge_e, mass_amu=mass_amu,
                                                     time_of_birth=tob, diameter_m=diameter_m))
        return particles


class BoxStartZone(StartZone):
    #Axis aligned box centred on base_position
    def __init__(self, size, base_position=(0.0, 0.0, 0.0)):
        self.size = np.array(size, dtype=float).reshape(3)
        if np.any(self.size < 0):
            raise ValueError(f"Box size must be >= 0, got {self.size.tolist()}")
        self.base_position = np.array(base_position, dtype=float).reshape(3)

    def random_position(self, rng) -> np.ndarray:
        return self.base_position + (rng.uniform_vector(3) - 0.5) * self.size


class CylinderStartZone(StartZone):
    """Cylinder of given radius and length; its axis starts at base_position along normal."""

    def __init__(self, radius, length, normal=(0.0, 0.0, 1.0), base_position=(0.0, 0.0, 0.0)):
        if radius < 0 or length < 0:
            raise ValueError(f"Cylinder radius and length must be >= 0, got {radius}, {length}")
        self.radius = float(radius)
        self.length = float(length)
        self.normal, self._u, self._v = _orthonormal_basis(normal)
        self.base_position = np.array(base_position, dtype=float).reshape(3)

    def random_position(self, rng) -> np.ndarray:
        r = self.radius * np.sqrt(rng.uniform())
        phi = 2.0 * np.pi * rng.uniform()
        h = self.length * rng.uniform()
        return (self.base_position + h * self.normal
                + r * np.cos(phi) * self._u + r * np.sin(phi) * self._v)


def make_start_zone(geometry: str, **kwargs) -> StartZone:
    #Create a start zone by name ('box' or 'cylinder')
    if geometry == "box":
        return BoxStartZone(kwargs["size"], kwargs.get("base_position", (0.0, 0.0, 0.0)))
    if geometry == "cylinder":
        return CylinderStartZone(kwargs["radius"], kwargs["length"], kwargs.get("normal", (0.0, 0.0, 1.0)),
                                 kwargs.get("base_position", (0.0, 0.0, 0.0)))
    raise ValueError(f"Invalid ion start geometry identifier: {geometry}")


def read_ion_cloud(path: Union[str, Path]) -> List[Particle]:
    """Read particles from an ion cloud file."""
    path = Path(path)
    if not path.exists():
        raise IonCloudFileError(f"Ion cloud file not found: {path}")

    text = path.read_text()
    delimiter = ";" if ";" in text else ","
    try:
        data = np.loadtxt(path, delimiter=delimiter, comments="#", ndmin=2)
    except ValueError as exc:
        raise IonCloudFileError(f"Malformed ion cloud file {path}: {exc}") from exc

    if data.size == 0:
        return []
    if data.shape[1] < 8 or data.shape[1] > 10:
        raise IonCloudFileError(
            f"Ion cloud file {path} has {data.shape[1]} columns, expected 8 to 10")
    if not np.all(np.isfinite(data)):
        raise IonCloudFileError(f"Ion cloud file {path} contains non-finite values")
    if np.any(data[:, 7] <= 0):
        raise IonCloudFileError(f"Ion cloud file {path} contains non-positive masses")

    particles = []
    for row in data:
        tob = row[8] if data.shape[1] > 8 else 0.0
        diameter = row[9] * 1e-10 if data.shape[1] > 9 else 0.0
        particles.append(Particle.from_ion_units(
            row[0:3], velocity=row[3:6], charge_e=row[6], mass_amu=row[7],
            time_of_birth=tob, diameter_m=diameter))
    return particles


def write_ion_cloud(path: Union[str, Path], particles: Sequence[Particle]):
    #Write particles in the ion cloud format (readable by read_ion_cloud)
    rows = [np.concatenate([p.position, p.velocity,
                            [p.charge_e, p.mass_amu, p.time_of_birth, p.collision_diameter * 1e10]])
            for p in particles]
    header = "x; y; z; vx; vy; vz; charge [e]; mass [amu]; time of birth [s]; collision diameter [A]"
    np.savetxt(path, np.array(rows).reshape(-1, 10), delimiter=";", header=header)
