import signal

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from integrator import RunState, VerletIntegrator, install_signal_handler
from modifiers import PhysicsModifier
from particles import Particle, ParticleEnsemble
from random_streams import RandomStreamPool, TestRandomStreamPool
from spacecharge import FullSumFieldEvaluator, SpatialChargeIndex
from tracker import ParticleStartSplatTracker, TrackState
from trap_field import space_charge_force_law

ACCELERATION = np.array([10.0, 0.0, 5.0])
DT = 1e-4


def constant_acceleration(particle, field_evaluator, t, step):
    return ACCELERATION


def verlet_displacement(n_steps, dt=DT):
    # previous acceleration starts at zero, so the first step only moves the velocity
    return ACCELERATION * dt * dt * n_steps * (n_steps - 1) / 2.0


class CallCounter:
    def __init__(self):
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)

    def __len__(self):
        return len(self.calls)


def test_run_without_particles():
    integrator = VerletIntegrator(force_law=constant_acceleration)
    integrator.run(1, DT)
    assert integrator.state == RunState.STOPPED
    assert integrator.step == 1


def test_constant_acceleration_closed_form():
    p = Particle.from_ion_units((0.0, 0.0, 0.0))
    integrator = VerletIntegrator([p], constant_acceleration)
    n = 400
    integrator.run(n, DT)

    t = n * DT
    assert integrator.time == pytest.approx(t)
    assert_allclose(p.position, verlet_displacement(n), rtol=1e-10)
    assert_allclose(p.velocity, ACCELERATION * (t - 0.5 * DT), rtol=1e-10)
    # converges to 0.5 a t^2 with a lag of half a step
    assert_allclose(p.position, 0.5 * ACCELERATION * t**2, rtol=2.0 / n)


def test_deferred_particle_addition():
    p1 = Particle.from_ion_units((0.0, 0.0, 0.0))
    p2 = Particle.from_ion_units((0.0, 0.01, 0.0))
    integrator = VerletIntegrator(force_law=constant_acceleration)
    integrator.run(1, DT)

    integrator.add_particle(p1)
    integrator.run(100, DT)
    integrator.add_particle(p2)
    integrator.run(200, DT)
    assert p2.position[0] == pytest.approx(0.00199, rel=1e-6)
    assert p2.position[1] == pytest.approx(0.01)
    assert p2.position[2] == pytest.approx(0.000995, rel=1e-6)

    integrator.run(1000, DT)
    assert p2.position[0] == pytest.approx(0.07194, rel=1e-6)
    assert p2.position[2] == pytest.approx(0.03597, rel=1e-6)
    assert_allclose(p1.position, verlet_displacement(1300), rtol=1e-9)


def test_runs_are_additive():
    a = Particle.from_ion_units((0.0, 0.0, 0.0), velocity=(1.0, 2.0, 0.0))
    b = Particle.from_ion_units((0.0, 0.0, 0.0), velocity=(1.0, 2.0, 0.0))
    split = VerletIntegrator([a], constant_acceleration)
    split.run(30, DT)
    split.run(70, DT)
    whole = VerletIntegrator([b], constant_acceleration)
    whole.run(100, DT)

    assert split.step == whole.step == 100
    assert split.time == pytest.approx(whole.time)
    assert_allclose(a.position, b.position, rtol=1e-12)
    assert_allclose(a.velocity, b.velocity, rtol=1e-12)


def test_callbacks_are_called():
    particles = [Particle.from_ion_units((0.0, 0.01 * i, 0.0)) for i in range(10)]
    post_step = CallCounter()
    other_actions = CallCounter()
    start_monitor = CallCounter()
    integrator = VerletIntegrator(particles, constant_acceleration, post_step=post_step,
                                  other_actions=other_actions, start_monitor=start_monitor)
    n_steps = 60
    integrator.run(n_steps, DT)

    assert integrator.time == pytest.approx(n_steps * DT)
    assert integrator.step == n_steps
    assert len(post_step) == n_steps + 2
    assert [c[4] for c in post_step.calls].count(True) == 1
    assert post_step.calls[-1][4] is True
    assert len(other_actions) == n_steps * len(particles)
    assert len(start_monitor) == len(particles)
    for i, p in enumerate(particles):
        assert p.position[1] == pytest.approx(0.01 * i)


def test_termination_at_step():
    particles = [Particle.from_ion_units((0.0, 0.0, 0.0))]
    k = 15
    steps_seen = []

    def post_step(integrator, ensemble, t, step, is_last_step):
        steps_seen.append((step, is_last_step))
        if step == k and not is_last_step:
            assert integrator.state == RunState.RUNNING
            assert integrator.set_termination_state()

    integrator = VerletIntegrator(particles, constant_acceleration, post_step=post_step)
    integrator.run(100, DT)

    assert integrator.state == RunState.STOPPED
    assert integrator.step == k
    assert integrator.time == pytest.approx(k * DT)
    assert len(steps_seen) == k + 2
    assert steps_seen[-1] == (k, True)
    assert_allclose(particles[0].position, verlet_displacement(k), rtol=1e-10)


def test_termination_outside_a_run_is_ignored():
    integrator = VerletIntegrator(force_law=constant_acceleration)
    assert integrator.state == RunState.INITIALIZED
    assert not integrator.set_termination_state()
    assert integrator.state == RunState.INITIALIZED


def test_time_of_birth():
    n_steps = 60
    births = [(n_steps - 10 - i + 0.5) * DT for i in range(10)]
    particles = [Particle.from_ion_units((0.0, 0.01 * i, 0.0), time_of_birth=tob)
                 for i, tob in enumerate(births)]
    start_monitor = CallCounter()
    other_actions = CallCounter()
    integrator = VerletIntegrator(particles, constant_acceleration, start_monitor=start_monitor,
                                  other_actions=other_actions)
    integrator.run(n_steps, DT)

    assert len(start_monitor) == len(particles)
    for (born, t), tob in zip(start_monitor.calls, sorted(births)):
        assert t >= tob
        assert t < tob + DT
    for p in particles:
        # born at the first step boundary after its time of birth
        steps_alive = n_steps - int(np.ceil(p.time_of_birth / DT))
        assert_allclose(p.position[[0, 2]], verlet_displacement(steps_alive)[[0, 2]], rtol=1e-9)
    assert len(other_actions) == sum(n_steps - int(np.ceil(tob / DT)) for tob in births)


def test_unborn_particles_do_not_move():
    p = Particle.from_ion_units((0.0, 0.0, 0.0), time_of_birth=1.0)
    integrator = VerletIntegrator([p], constant_acceleration)
    integrator.run(10, DT)
    assert not p.active
    assert_allclose(p.position, np.zeros(3))


def test_particles_injected_by_other_actions():
    injected = []

    def run_with_injection():
        source = Particle.from_ion_units((0.0, 0.0, 0.0))
        holder = {}

        def other_actions(staged, particle, index, t, step):
            if step == 5 and index == 0:
                new = Particle.from_ion_units((0.0, 1e-3, 0.0))
                holder['integrator'].add_particle(new)
                injected.append(new)

        integrator = VerletIntegrator([source], constant_acceleration, other_actions=other_actions)
        holder['integrator'] = integrator
        integrator.run(20, DT)
        return integrator

    first = run_with_injection()
    second = run_with_injection()
    assert len(first.particles) == len(second.particles) == 2
    assert_allclose(first.particles[1].position, second.particles[1].position)
    # injected after step 5, present from step 6 on
    assert_allclose(injected[0].position[[0, 2]], verlet_displacement(14)[[0, 2]], rtol=1e-9)


def test_injection_past_ensemble_capacity_keeps_existing_rows():
    source = Particle.from_ion_units((0.0, 0.0, 0.0))
    ensemble = ParticleEnsemble([source], capacity=2)
    holder = {}

    def other_actions(staged, particle, index, t, step):
        if step == 5 and index == 0:
            for k in range(9):
                holder['integrator'].add_particle(Particle.from_ion_units((0.0, 1e-3 * (k + 1), 0.0)))

    integrator = VerletIntegrator(ensemble, constant_acceleration, other_actions=other_actions)
    holder['integrator'] = integrator
    integrator.run(20, DT)

    assert len(ensemble) == 10
    assert ensemble.capacity == 16
    assert ensemble.prev_acceleration.shape == (10, 3)
    # the source kept its previous acceleration through three regrows
    assert_allclose(source.position, verlet_displacement(20), rtol=1e-9)
    assert_allclose(ensemble.prev_acceleration, np.tile(ACCELERATION, (10, 1)))
    for p in list(ensemble)[1:]:
        assert_allclose(p.position[[0, 2]], verlet_displacement(14)[[0, 2]], rtol=1e-9)


def test_mid_run_injection_leaves_earlier_trajectories_untouched():
    n_cloud = 30
    inject_step = 5

    def run_cloud(inject):
        rng = np.random.default_rng(11)
        particles = [Particle.from_ion_units(pos) for pos in rng.normal(0.0, 1e-5, (n_cloud, 3))]
        history = {}
        holder = {}

        def post_step(integrator, ensemble, t, step, is_last_step):
            history[step] = (ensemble.positions()[:n_cloud].copy(), ensemble.velocities()[:n_cloud].copy())

        def other_actions(staged, particle, index, t, step):
            if inject and step == inject_step and index == 0:
                holder['integrator'].add_particle(Particle.from_ion_units((0.0, 0.0, 0.0)))

        integrator = VerletIntegrator(particles, space_charge_force_law(),
                                      field_evaluator=SpatialChargeIndex(theta=0.5),
                                      post_step=post_step, other_actions=other_actions, n_workers=3)
        holder['integrator'] = integrator
        integrator.run(12, 1e-9)
        return integrator, history

    plain, plain_history = run_cloud(inject=False)
    injected, injected_history = run_cloud(inject=True)
    assert len(plain.particles) == n_cloud
    assert len(injected.particles) == n_cloud + 1

    # the newcomer is born at the next step boundary and first pushes velocities in that step
    for step in range(inject_step + 3):
        assert_array_equal(injected_history[step][0], plain_history[step][0])
    for step in range(inject_step + 2):
        assert_array_equal(injected_history[step][1], plain_history[step][1])
    assert np.any(injected_history[12][0] != plain_history[12][0])


def test_retired_particles_stay_retired_under_a_new_integrator():
    tracker = ParticleStartSplatTracker()
    moving = Particle.from_ion_units((0.0, 0.0, 0.0))
    doomed = Particle.from_ion_units((1.0, 0.0, 0.0))

    def retire_far_particles(particle, field_evaluator, t, step):
        if particle.position[0] >= 1.0:
            particle.active = False
            tracker.particle_splat(particle, t)
            return np.zeros(3)
        return ACCELERATION

    ensemble = ParticleEnsemble([moving, doomed])
    VerletIntegrator(ensemble, retire_far_particles, start_monitor=tracker.particle_start).run(10, DT)
    assert doomed.born and not doomed.active
    late = Particle.from_ion_units((0.0, 1e-3, 0.0))
    ensemble.add_particle(late)

    second = VerletIntegrator(ensemble, retire_far_particles, start_monitor=tracker.particle_start)
    second.run(10, DT)

    assert not doomed.active
    assert moving.active and late.active
    assert len(tracker) == 3
    assert list(tracker.splat_states()) == [TrackState.STARTED, TrackState.SPLATTED, TrackState.STARTED]
    # the survivor carries on as if the two runs were one
    assert_allclose(moving.position, verlet_displacement(20), rtol=1e-9)
    assert_allclose(late.position[[0, 2]], verlet_displacement(10)[[0, 2]], rtol=1e-9)


def test_inactive_particles_are_skipped():
    moving = Particle.from_ion_units((0.0, 0.0, 0.0))
    parked = Particle.from_ion_units((1.0, 0.0, 0.0))
    other_actions = CallCounter()

    def deactivate_far_particles(particle, field_evaluator, t, step):
        if particle.position[0] >= 1.0:
            particle.active = False
            return np.zeros(3)
        return ACCELERATION

    integrator = VerletIntegrator([moving, parked], deactivate_far_particles, other_actions=other_actions)
    integrator.run(10, DT)
    assert not parked.active
    assert_allclose(parked.position, [1.0, 0.0, 0.0])
    assert len(other_actions) == 10


def test_parallel_workers_match_single_worker():
    def make_cloud():
        rng = np.random.default_rng(7)
        return [Particle.from_ion_units(pos) for pos in rng.uniform(-1e-4, 1e-4, (40, 3))]

    force_law = space_charge_force_law()
    serial_particles = make_cloud()
    VerletIntegrator(serial_particles, force_law, field_evaluator=FullSumFieldEvaluator(),
                     n_workers=1).run(20, 1e-7)
    parallel_particles = make_cloud()
    VerletIntegrator(parallel_particles, force_law, field_evaluator=FullSumFieldEvaluator(),
                     n_workers=4).run(20, 1e-7)

    for a, b in zip(serial_particles, parallel_particles):
        assert_allclose(a.position, b.position, rtol=1e-12, atol=1e-20)
        assert_allclose(a.velocity, b.velocity, rtol=1e-12, atol=1e-20)


def test_space_charge_expands_cloud():
    rng = np.random.default_rng(3)
    particles = [Particle.from_ion_units(pos) for pos in rng.normal(0.0, 1e-5, (50, 3))]
    initial = np.std([p.position for p in particles])
    integrator = VerletIntegrator(particles, space_charge_force_law(),
                                  field_evaluator=SpatialChargeIndex(theta=0.5))
    integrator.run(50, 1e-9)
    assert np.std([p.position for p in particles]) > initial


class RecordingModifier(PhysicsModifier):
    def __init__(self):
        self.events = []

    def update_step_parameters(self, step, time):
        self.events.append(("step", step))

    def modify_acceleration(self, acceleration, particle, dt, rng):
        self.events.append(("acceleration", particle.index))
        acceleration[:] = 0.0

    def modify_velocity(self, particle, dt, rng):
        self.events.append(("velocity", particle.index))

    def modify_position(self, position, particle, dt, rng):
        self.events.append(("position", particle.index))
        position[1] += 1e-3


def test_modifier_hooks():
    p = Particle.from_ion_units((0.0, 0.0, 0.0))
    modifier = RecordingModifier()
    integrator = VerletIntegrator([p], constant_acceleration, modifier=modifier)
    integrator.run(3, DT)

    assert modifier.events[:4] == [("step", 0), ("acceleration", 0), ("velocity", 0), ("position", 0)]
    assert len(modifier.events) == 12
    assert_allclose(p.position, [0.0, 3e-3, 0.0])
    assert_allclose(p.velocity, np.zeros(3))


def test_random_pool_is_sized_to_workers():
    pool = TestRandomStreamPool()
    VerletIntegrator(force_law=constant_acceleration, random_pool=pool, n_workers=3)
    assert pool.n_streams == 3
    pool = RandomStreamPool(seed=1, n_streams=2)
    VerletIntegrator(force_law=constant_acceleration, random_pool=pool, n_workers=2)
    assert pool.n_streams == 2


def test_callback_exception_stops_integrator():
    def post_step(integrator, ensemble, t, step, is_last_step):
        if step == 3:
            raise RuntimeError("callback failed")

    integrator = VerletIntegrator([Particle.from_ion_units((0.0, 0.0, 0.0))], constant_acceleration,
                                  post_step=post_step)
    with pytest.raises(RuntimeError):
        integrator.run(10, DT)
    assert integrator.state == RunState.STOPPED
    assert integrator.step == 3


def test_run_while_running_is_rejected():
    errors = []

    def post_step(integrator, ensemble, t, step, is_last_step):
        if step == 1 and not is_last_step:
            with pytest.raises(ValueError):
                integrator.run(1, DT)
            errors.append(step)

    VerletIntegrator(force_law=constant_acceleration, post_step=post_step).run(2, DT)
    assert errors == [1]


@pytest.mark.parametrize("n_steps, dt", [(-1, DT), (1.5, DT), (10, 0.0), (10, -DT), (10, float("nan"))])
def test_invalid_run_arguments(n_steps, dt):
    integrator = VerletIntegrator(force_law=constant_acceleration)
    with pytest.raises(ValueError):
        integrator.run(n_steps, dt)
    assert integrator.state == RunState.INITIALIZED


def test_invalid_construction():
    with pytest.raises(ValueError):
        VerletIntegrator()
    with pytest.raises(ValueError):
        VerletIntegrator(force_law=constant_acceleration, n_workers=0)


def test_ensemble_scratch_rows_follow_insertion():
    ensemble = ParticleEnsemble()
    p = Particle.from_ion_units((1.0, 2.0, 3.0))
    assert ensemble.add_particle(p) == 0
    assert ensemble.prev_acceleration.shape == (1, 3)
    assert_allclose(ensemble.staged_position[0], [1.0, 2.0, 3.0])
    with pytest.raises(ValueError):
        ensemble.add_particle(p)
    ensemble.add_particle(Particle.from_ion_units((0.0, 0.0, 0.0)))
    ensemble.deactivate(0)
    assert ensemble.n_active() == 1
    assert list(ensemble.active_indices()) == [1]
    assert len(ensemble) == 2


def test_signal_handler_requests_termination():
    integrator = VerletIntegrator(force_law=constant_acceleration)
    previous = install_signal_handler(integrator, signals=(signal.SIGTERM,))
    try:
        handler = signal.getsignal(signal.SIGTERM)
        integrator._state = RunState.RUNNING
        handler(signal.SIGTERM, None)
        assert integrator.state == RunState.IN_TERMINATION
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
