import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

from particles import Particle


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def random_cloud(rng):
    #200 singly charged ions in a 1 mm cube
    positions = rng.uniform(-5e-4, 5e-4, size=(200, 3))
    return [Particle.from_ion_units(pos) for pos in positions]


@pytest.fixture
def two_clusters(rng):
    #Two well separated clouds of opposite charge
    a = rng.normal(0.0, 1e-5, size=(60, 3))
    b = rng.normal(0.0, 1e-5, size=(60, 3)) + np.array([1e-3, 0.0, 0.0])
    return ([Particle.from_ion_units(p, charge_e=1.0) for p in a]
            + [Particle.from_ion_units(p, charge_e=-2.0) for p in b])
