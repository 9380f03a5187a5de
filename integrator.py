"""
Velocity-Verlet trajectory integrator for charged particle ensembles.

Every time step runs in two phases:

1. Parallel phase: for each active particle a candidate position is staged,
   a new acceleration is computed from the force law (which queries the
   space-charge field evaluator built from the previous step's positions),
   and the velocity is advanced. Each particle only touches its own state,
   so the phase is split into fixed chunks and run on a joblib thread pool.
2. Sequential phase: in ensemble order, position modifiers and the
   "other actions" callback run on the staged positions (the callback may
   inject new particles), then the staged positions are committed.

Only after all positions are committed is the field evaluator rebuilt, so no
particle ever sees a partially updated ensemble.
"""

import heapq
import signal
import sys
import time as walltime
import numpy as np
from enum import Enum
from typing import Callable, Optional
from joblib import Parallel, delayed

from particles import Particle, ParticleEnsemble
from spacecharge import FieldEvaluator, SpatialChargeIndex
from modifiers import PhysicsModifier
from random_streams import RandomStreamPool


def _safe_flush():
    stream = sys.stdout or getattr(sys, "__stdout__", None)
    if stream is None:
        return
    try:
        stream.flush()
    except (OSError, ValueError):
        pass


class RunState(Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    IN_TERMINATION = "in_termination"
    STOPPED = "stopped"


# force_law(particle, field_evaluator, time, step) -> acceleration
ForceLaw = Callable[[Particle, FieldEvaluator, float, int], np.ndarray]
# post_step(integrator, particles, time, step, is_last_step)
PostStepCallback = Callable[["VerletIntegrator", ParticleEnsemble, float, int, bool], None]
# other_actions(staged_position, particle, index, time, step)
OtherActionsCallback = Callable[[np.ndarray, Particle, int, float, int], None]
# start_monitor(particle, time)
StartMonitorCallback = Callable[[Particle, float], None]


class VerletIntegrator:
    """
    Fixed step velocity-Verlet integrator with space charge.

    Args:
        particles: ParticleEnsemble or list of particles to integrate
        force_law: Callable (particle, field_evaluator, time, step) -> acceleration [m/s^2]
        field_evaluator: Space-charge evaluator (default: SpatialChargeIndex())
        post_step: Called after step 0, after every step and once more with
                   is_last_step=True when the run ends
        other_actions: Called for every active particle in the sequential phase
        start_monitor: Called once per particle when it is born
        modifier: PhysicsModifier applied every step (default: no-op)
        random_pool: RandomStreamPool; one stream per worker
        n_workers: Size of the worker pool for the parallel phase
        verbose: Print run and progress messages
        progress_interval: Minimum wall time between progress messages (s)
    """

    def __init__(self, particles=None, force_law: Optional[ForceLaw] = None,
                 field_evaluator: Optional[FieldEvaluator] = None,
                 post_step: Optional[PostStepCallback] = None,
                 other_actions: Optional[OtherActionsCallback] = None,
                 start_monitor: Optional[StartMonitorCallback] = None,
                 modifier: Optional[PhysicsModifier] = None,
                 random_pool: Optional[RandomStreamPool] = None,
                 n_workers: int = 1, verbose: bool = False, progress_interval: float = 2.0):
        if force_law is None or not callable(force_law):
            raise ValueError("A callable force law is required")
        if int(n_workers) != n_workers or n_workers < 1:
            raise ValueError(f"n_workers must be a positive integer, got {n_workers}")

        if isinstance(particles, ParticleEnsemble):
            self.ensemble = particles
        else:
            self.ensemble = ParticleEnsemble(particles)

        self.force_law = force_law
        self.field_evaluator = field_evaluator if field_evaluator is not None else SpatialChargeIndex()
        self.post_step = post_step
        self.other_actions = other_actions
        self.start_monitor = start_monitor
        self.modifier = modifier if modifier is not None else PhysicsModifier()
        self.n_workers = int(n_workers)
        self.random_pool = random_pool if random_pool is not None else RandomStreamPool(n_streams=self.n_workers)
        if self.random_pool.n_streams != self.n_workers:
            self.random_pool.reset(self.n_workers)

        self.verbose = verbose
        self.progress_interval = float(progress_interval)

        self._state = RunState.INITIALIZED
        self._time = 0.0
        self._step = 0
        self._n_registered = 0
        self._unborn = []     # heap of (time_of_birth, index)
        self._parallel = None
        self._register_new_particles()

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def time(self) -> float:
        return self._time

    @property
    def step(self) -> int:
        return self._step

    @property
    def particles(self) -> ParticleEnsemble:
        return self.ensemble

    def add_particle(self, particle: Particle) -> int:
        """Add a particle; it is born at its time of birth (or at the next step)."""
        idx = self.ensemble.add_particle(particle)
        self._register_new_particles()
        return idx

    def set_termination_state(self) -> bool:
        #Request termination; honoured after the current step
        if self._state == RunState.RUNNING:
            self._state = RunState.IN_TERMINATION
            return True
        return False

    def _register_new_particles(self):
        # particles appended to the ensemble wait inactive until their time of birth;
        # particles born under an earlier run keep their state (retired ones stay retired)
        while self._n_registered < len(self.ensemble):
            p = self.ensemble[self._n_registered]
            self._n_registered += 1
            if p.born:
                continue
            p.active = False
            heapq.heappush(self._unborn, (p.time_of_birth, p.index))

    def _bear_particles(self, t) -> int:
        self._register_new_particles()
        n_born = 0
        while self._unborn and self._unborn[0][0] <= t:
            _, idx = heapq.heappop(self._unborn)
            p = self.ensemble[idx]
            p.active = True
            p.born = True
            self.ensemble.prev_acceleration[idx] = 0.0
            self.ensemble.staged_position[idx] = p.position
            if self.start_monitor is not None:
                self.start_monitor(p, t)
            n_born += 1
        return n_born

    def _rebuild_field(self):
        self.field_evaluator.build(self.ensemble.particles)

    def _call_post_step(self, is_last_step):
        if self.post_step is not None:
            self.post_step(self, self.ensemble, self._time, self._step, is_last_step)

    def run(self, n_steps: int, dt: float):
        """
        Integrate ``n_steps`` time steps of size ``dt``.

        The run can be repeated; it continues from the current time and step.
        It ends early, after a complete step, when termination was requested.
        """
        if int(n_steps) != n_steps or n_steps < 0:
            raise ValueError(f"Number of time steps must be a non-negative integer, got {n_steps}")
        if not np.isfinite(dt) or dt <= 0:
            raise ValueError(f"dt must be positive, got {dt}")
        if self._state in (RunState.RUNNING, RunState.IN_TERMINATION):
            raise ValueError("Integrator is already running")

        n_steps = int(n_steps)
        self._state = RunState.RUNNING
        if self.verbose:
            print(f"[VerletIntegrator] Run started: {n_steps} steps, dt={dt:.3e}s, "
                  f"{len(self.ensemble)} particles, {self.n_workers} worker(s), "
                  f"field={self.field_evaluator.name}")
            _safe_flush()

        wall_start = walltime.time()
        last_report = wall_start
        try:
            self._bear_particles(self._time)
            self._rebuild_field()
            self._call_post_step(False)

            with Parallel(n_jobs=self.n_workers, backend="threading") as parallel:
                self._parallel = parallel
                for i in range(n_steps):
                    self.run_single_step(dt)
                    if self.verbose:
                        now = walltime.time()
                        if now - last_report >= self.progress_interval:
                            pct = 100.0 * (i + 1) / n_steps
                            print(f"[VerletIntegrator] Progress: {pct:.1f}% (step {self._step}, "
                                  f"t={self._time:.3e}s, {self.ensemble.n_active()} active)")
                            _safe_flush()
                            last_report = now
                    if self._state == RunState.IN_TERMINATION:
                        if self.verbose:
                            print(f"[VerletIntegrator] Termination requested at step {self._step}")
                        break
        except BaseException:
            self._state = RunState.STOPPED
            raise
        finally:
            self._parallel = None

        self._state = RunState.STOPPED
        self._call_post_step(True)
        if self.verbose:
            print(f"[VerletIntegrator] Run finished: step {self._step}, t={self._time:.3e}s, "
                  f"wall time {walltime.time() - wall_start:.2f}s")
            _safe_flush()

    def run_single_step(self, dt: float):
        """Advance the ensemble by one time step."""
        if self._bear_particles(self._time):
            self._rebuild_field()
        self.modifier.update_step_parameters(self._step, self._time)

        ensemble = self.ensemble
        n_at_start = len(ensemble)
        active = ensemble.active_indices()

        # parallel phase
        chunks = [c for c in np.array_split(active, self.n_workers)] if len(active) else []
        if self.n_workers == 1 or len(active) < 2:
            for worker_id, chunk in enumerate(chunks):
                self._integrate_chunk(chunk, worker_id, dt)
        else:
            parallel = self._parallel
            jobs = (delayed(self._integrate_chunk)(chunk, worker_id, dt)
                    for worker_id, chunk in enumerate(chunks) if len(chunk))
            if parallel is not None:
                parallel(jobs)
            else:
                Parallel(n_jobs=self.n_workers, backend="threading")(jobs)

        # sequential phase
        rng = self.random_pool.stream_for_worker(0)
        for i in range(n_at_start):
            p = ensemble[i]
            if not p.active:
                continue
            staged = ensemble.staged_position[i]
            self.modifier.modify_position(staged, p, dt, rng)
            if self.other_actions is not None:
                self.other_actions(staged, p, i, self._time, self._step)
            p.position = np.array(staged, dtype=float)

        self._register_new_particles()
        self._rebuild_field()

        self._time += dt
        self._step += 1
        self._call_post_step(False)

    def _integrate_chunk(self, indices, worker_id, dt):
        # positions are only staged here; committed in the sequential phase
        rng = self.random_pool.stream_for_worker(worker_id)
        ensemble = self.ensemble
        modifier = self.modifier
        half_dt2 = 0.5 * dt * dt
        for i in indices:
            p = ensemble[i]
            modifier.update_particle_parameters(p)
            a_prev = ensemble.prev_acceleration[i].copy()
            ensemble.staged_position[i] = p.position + p.velocity * dt + a_prev * half_dt2

            a_new = np.array(self.force_law(p, self.field_evaluator, self._time, self._step), dtype=float)
            modifier.modify_acceleration(a_new, p, dt, rng)

            p.velocity = p.velocity + (a_prev + a_new) * (0.5 * dt)
            ensemble.prev_acceleration[i] = a_new
            modifier.modify_velocity(p, dt, rng)


def install_signal_handler(integrator: VerletIntegrator, signals=(signal.SIGINT, signal.SIGTERM)):
    """
    Route termination signals to ``integrator.set_termination_state``.
    Must be called from the main thread. Returns the previous handlers.
    """
    def _handler(signum, frame):
        print(f"[VerletIntegrator] Signal {signum} received, terminating after current step")
        _safe_flush()
        integrator.set_termination_state()

    previous = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    return previous
