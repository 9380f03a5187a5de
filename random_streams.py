"""
Random number streams for stochastic physics modifiers.

Every parallel worker of the integrator draws from its own stream so that
stochastic modifiers are race free and reproducible under a fixed seed.
The pool is created explicitly and handed to the integrator; there is no
module level random state.

RandomStreamPool      - production pool, numpy Generators spawned from one SeedSequence
TestRandomStreamPool  - deterministic drop-in cycling through fixed sample tables
"""

import numpy as np
from typing import List, Optional


class RandomSource:
    """A source of uniform [0, 1) and standard normal variates."""

    def uniform(self) -> float:
        raise NotImplementedError

    def normal(self) -> float:
        raise NotImplementedError

    def uniform_vector(self, n=3) -> np.ndarray:
        return np.array([self.uniform() for _ in range(n)])

    def normal_vector(self, n=3) -> np.ndarray:
        return np.array([self.normal() for _ in range(n)])


class GeneratorRandomSource(RandomSource):
    #Random source backed by a numpy Generator (PCG64)
    def __init__(self, generator: np.random.Generator):
        self.generator = generator

    def uniform(self) -> float:
        return float(self.generator.random())

    def normal(self) -> float:
        return float(self.generator.standard_normal())

    def uniform_vector(self, n=3) -> np.ndarray:
        return self.generator.random(n)

    def normal_vector(self, n=3) -> np.ndarray:
        return self.generator.standard_normal(n)


class RandomStreamPool:
    """
    Pool of independent random streams, one per worker.

    Streams are spawned from a single ``numpy.random.SeedSequence`` so that
    the same seed and worker count always give the same streams, and streams
    of different workers are statistically independent.

    Usage:
        pool = RandomStreamPool(seed=1234)
        pool.reset(n_workers=4)
        rng = pool.stream_for_worker(2)
        rng.normal()
    """

    def __init__(self, seed: Optional[int] = None, n_streams: int = 1):
        self.seed = seed
        self._streams: List[RandomSource] = []
        self.reset(n_streams)

    def reset(self, n_streams: int, seed: Optional[int] = None):
        #(Re)create the streams; call once per run before stepping
        if n_streams < 1:
            raise ValueError(f"Random stream pool needs at least one stream, got {n_streams}")
        if seed is not None:
            self.seed = seed
        seq = np.random.SeedSequence(self.seed)
        self._streams = [GeneratorRandomSource(np.random.default_rng(child))
                         for child in seq.spawn(n_streams)]

    @property
    def n_streams(self) -> int:
        return len(self._streams)

    def stream_for_worker(self, worker_id: int) -> RandomSource:
        if worker_id < 0 or worker_id >= len(self._streams):
            raise ValueError(
                f"No random stream for worker {worker_id} (pool has {len(self._streams)} streams)")
        return self._streams[worker_id]


# Fixed sample tables for deterministic tests
UNIFORM_TEST_SAMPLES = (
    0.5, 0.1, 0.9, 0.3, 0.7, 0.05, 0.95, 0.25, 0.75, 0.4,
    0.6, 0.15, 0.85, 0.35, 0.65, 0.45, 0.55, 0.2, 0.8, 0.01,
)

NORMAL_TEST_SAMPLES = (
    0.0, 0.5, -0.5, 1.0, -1.0, 0.25, -0.25, 1.5, -1.5, 0.75,
    -0.75, 2.0, -2.0, 0.1, -0.1, 1.25, -1.25, 0.6, -0.6, 0.3,
)


class TestRandomSource(RandomSource):
    """Non-random source returning the fixed sample tables in order."""

    __test__ = False

    def __init__(self, offset=0):
        self._uniform_idx = offset
        self._normal_idx = offset

    def uniform(self) -> float:
        value = UNIFORM_TEST_SAMPLES[self._uniform_idx % len(UNIFORM_TEST_SAMPLES)]
        self._uniform_idx += 1
        return value

    def normal(self) -> float:
        value = NORMAL_TEST_SAMPLES[self._normal_idx % len(NORMAL_TEST_SAMPLES)]
        self._normal_idx += 1
        return value


class TestRandomStreamPool(RandomStreamPool):
    """
    Deterministic pool for tests. Every worker gets its own TestRandomSource,
    all starting at the beginning of the sample tables.
    """

    __test__ = False

    def __init__(self, n_streams: int = 1):
        super().__init__(seed=0, n_streams=n_streams)

    def reset(self, n_streams: int, seed: Optional[int] = None):
        if n_streams < 1:
            raise ValueError(f"Random stream pool needs at least one stream, got {n_streams}")
        self._streams = [TestRandomSource() for _ in range(n_streams)]
