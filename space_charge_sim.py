"""
Space-charge trajectory simulation driver.

Assembles particles, field evaluator, force law, background gas modifiers,
start/splat tracking and trajectory recording from a SimulationConfig and
runs the velocity-Verlet integrator.

    python space_charge_sim.py simulation.json
"""

import sys
import time
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Optional

from particles import Particle, ParticleEnsemble
from spacecharge import FullSumFieldEvaluator, SpatialChargeIndex, make_field_evaluator
from integrator import VerletIntegrator, install_signal_handler, _safe_flush
from modifiers import ModifierChain, BufferGasDamping, HardSphereCollisions
from random_streams import RandomStreamPool
from tracker import ParticleStartSplatTracker
from trap_field import QuadrupoleTrapField, space_charge_force_law
from ion_cloud import read_ion_cloud, make_start_zone
from trajectory import TrajectoryRecorder
from sim_config import SimulationConfig


@dataclass
class Simulation:
    config: SimulationConfig
    ensemble: ParticleEnsemble
    integrator: VerletIntegrator
    tracker: ParticleStartSplatTracker
    recorder: TrajectoryRecorder
    random_pool: RandomStreamPool


def create_particles(config: SimulationConfig, rng) -> List[Particle]:
    #Initial particles from the ion cloud file or the random ion groups
    if config.ion_cloud_file:
        particles = read_ion_cloud(config.ion_cloud_file)
        print(f"[Simulation] Read {len(particles)} particles from {config.ion_cloud_file}")
        return particles

    zone = make_start_zone(
        config.ion_start_geometry,
        size=config.ion_start_box_size,
        radius=config.ion_start_radius,
        length=config.ion_start_length,
        normal=config.ion_start_cylinder_normal,
        base_position=config.ion_start_base_position,
    )
    particles = []
    for group in config.ion_groups:
        particles.extend(zone.random_particles(
            group.n_ions, rng,
            charge_e=group.charge_e,
            mass_amu=group.mass_amu,
            time_of_birth_range=config.ion_time_of_birth_range,
            diameter_m=group.collision_diameter_angstrom * 1e-10,
        ))
    print(f"[Simulation] Created {len(particles)} random particles ({config.ion_start_geometry} start zone)")
    return particles


def create_modifier(config: SimulationConfig) -> ModifierChain:
    chain = ModifierChain()
    if config.damping_gamma > 0 or config.pressure_torr:
        chain.append(BufferGasDamping(damping_gamma=config.damping_gamma, pressure_torr=config.pressure_torr,
                                      temperature_k=config.gas_temperature_k))
    if config.collision_pressure_pa:
        chain.append(HardSphereCollisions(config.collision_pressure_pa, temperature_k=config.gas_temperature_k))
    return chain


def build_simulation(config: SimulationConfig, particles: Optional[List[Particle]] = None) -> Simulation:
    """Assemble a ready to run simulation. ``particles`` overrides the configured ions."""
    print("[Simulation] Initialization started...")
    _safe_flush()

    # one extra stream for initial conditions, independent of the worker streams
    init_pool = RandomStreamPool(seed=config.seed, n_streams=config.n_workers + 1)
    random_pool = RandomStreamPool(seed=config.seed, n_streams=config.n_workers)
    if particles is None:
        particles = create_particles(config, init_pool.stream_for_worker(config.n_workers))
    ensemble = ParticleEnsemble(particles)

    external_field = None
    if config.trap_field is not None:
        tf = config.trap_field
        external_field = QuadrupoleTrapField(tf.V_rf, tf.V_dc, tf.Omega, tf.r0, trap_type=tf.trap_type,
                                             escape_radius=tf.escape_radius)
        print(f"[Simulation] Trap field: {external_field.trap_type}, V_rf={tf.V_rf:.1f} V, "
              f"V_dc={tf.V_dc:.1f} V, f={tf.Omega / (2 * np.pi):.3e} Hz")

    tracker = ParticleStartSplatTracker()
    force_law = space_charge_force_law(external_field, config.space_charge_factor, on_splat=tracker.particle_splat)
    evaluator = make_field_evaluator(config.field_evaluator, theta=config.theta, capacity=config.leaf_capacity)
    recorder = TrajectoryRecorder(write_interval=config.trajectory_write_interval, verbose=config.verbose)

    integrator = VerletIntegrator(
        ensemble,
        force_law,
        field_evaluator=evaluator,
        post_step=recorder,
        start_monitor=tracker.particle_start,
        modifier=create_modifier(config),
        random_pool=random_pool,
        n_workers=config.n_workers,
        verbose=config.verbose,
    )
    print(f"[Simulation] Initialization complete! ({len(ensemble)} particles, field={evaluator.name})")
    _safe_flush()
    return Simulation(config, ensemble, integrator, tracker, recorder, random_pool)


def run_simulation(config: SimulationConfig, particles: Optional[List[Particle]] = None,
                   handle_signals: bool = False) -> Simulation:
    """Build and run a simulation; saves the trajectory if the config names a file."""
    sim = build_simulation(config, particles)
    if handle_signals:
        install_signal_handler(sim.integrator)

    start = time.time()
    sim.integrator.run(config.sim_time_steps, config.dt)
    elapsed = time.time() - start
    print(f"[Simulation] elapsed secs (wall time) {elapsed:.2f}")

    if config.trajectory_file:
        sim.recorder.save(config.trajectory_file, tracker=sim.tracker,
                          masses=[p.mass_amu for p in sim.ensemble])
    return sim


def compare_evaluators(particles: List[Particle], theta=0.5, capacity=1) -> Dict[str, float]:
    """
    Compare the tree approximation against the exact full sum on one particle set.

    Returns:
        Dict with build/query wall times and the maximum and mean relative field error
    """
    tree = SpatialChargeIndex(theta=theta, capacity=capacity)
    full = FullSumFieldEvaluator()
    active = [p for p in particles if p.active]

    t0 = time.time()
    tree.build(particles)
    tree_fields = np.array([tree.field_at_particle(p) for p in active]).reshape(-1, 3)
    t_tree = time.time() - t0

    t0 = time.time()
    full.build(particles)
    full_fields = np.array([full.field_at_particle(p) for p in active]).reshape(-1, 3)
    t_full = time.time() - t0

    ref = np.linalg.norm(full_fields, axis=1)
    err = np.linalg.norm(tree_fields - full_fields, axis=1)
    valid = ref > 0
    rel = err[valid] / ref[valid] if np.any(valid) else np.zeros(0)

    result = {
        'n_particles': len(active),
        'theta': theta,
        'tree_nodes': tree.n_nodes,
        'tree_time': t_tree,
        'full_sum_time': t_full,
        'max_relative_error': float(np.max(rel)) if rel.size else 0.0,
        'mean_relative_error': float(np.mean(rel)) if rel.size else 0.0,
    }
    print(f"[Benchmark] {len(active)} particles, theta={theta}: tree {t_tree:.3f}s "
          f"({tree.n_nodes} nodes), full sum {t_full:.3f}s, "
          f"max rel. error {result['max_relative_error']:.2e}")
    return result


def grid_particles(n_per_direction, spacing=1e-4, charge_e=1.0, mass_amu=100.0) -> List[Particle]:
    #Cubic lattice of particles at rest
    particles = []
    for i in range(n_per_direction):
        for j in range(n_per_direction):
            for k in range(n_per_direction):
                particles.append(Particle.from_ion_units(
                    (i * spacing, j * spacing, k * spacing), charge_e=charge_e, mass_amu=mass_amu))
    return particles


if __name__ == "__main__":
    if len(sys.argv) > 1:
        config = SimulationConfig.load(sys.argv[1])
        run_simulation(config, handle_signals=True)
    else:
        print("Space charge trajectory simulation")
        print("=" * 50)
        print("Usage: python space_charge_sim.py <config.json>")
        print()
        print("No configuration given, running the tree vs. full sum benchmark:")
        lattice = grid_particles(12)
        for theta in (0.2, 0.5, 0.8):
            compare_evaluators(lattice, theta=theta)
