"""
Trajectory recording and plotting.

TrajectoryRecorder is a post-step callback for VerletIntegrator that keeps
every n-th step (and always the first and the last) in memory and can save
them as a compressed .npz archive. Particles injected during the run appear
from their first recorded frame on; earlier frames hold NaN for them.
"""

import warnings
import numpy as np
import matplotlib.pyplot as plt
from pathlib import Path
from typing import Dict, List, Optional


class TrajectoryRecorder:
    """
    Usage:
        recorder = TrajectoryRecorder(write_interval=10)
        integrator = VerletIntegrator(..., post_step=recorder)
        integrator.run(1000, 1e-8)
        data = recorder.as_arrays()
    """

    def __init__(self, write_interval=1, record_velocities=True, verbose=False):
        if write_interval < 1:
            raise ValueError(f"write_interval must be >= 1, got {write_interval}")
        self.write_interval = int(write_interval)
        self.record_velocities = record_velocities
        self.verbose = verbose
        self.times: List[float] = []
        self.steps: List[int] = []
        self._positions: List[np.ndarray] = []
        self._velocities: List[np.ndarray] = []
        self._active: List[np.ndarray] = []
        self.finished = False

    def __call__(self, integrator, particles, time, step, is_last_step):
        # a step may already be recorded (last step, or the start of a continued run)
        recorded = bool(self.steps) and self.steps[-1] == step
        if is_last_step:
            if not recorded:
                self._record(particles, time, step)
            self.finished = True
            if self.verbose:
                print(f"[Trajectory] finished ts:{step} time:{time:.2e} ({len(self.steps)} frames)")
        elif step % self.write_interval == 0 and not recorded:
            self._record(particles, time, step)
            if self.verbose:
                print(f"[Trajectory] ts:{step} time:{time:.2e}")

    def _record(self, particles, time, step):
        self.times.append(float(time))
        self.steps.append(int(step))
        self._positions.append(particles.positions())
        if self.record_velocities:
            self._velocities.append(particles.velocities())
        self._active.append(particles.active_mask())

    @property
    def n_frames(self) -> int:
        return len(self.steps)

    @staticmethod
    def _stack(frames, fill, dtype=float):
        n_max = max((len(f) for f in frames), default=0)
        shape = (len(frames), n_max) + frames[0].shape[1:] if frames else (0, 0)
        out = np.full(shape, fill, dtype=dtype)
        for i, f in enumerate(frames):
            out[i, :len(f)] = f
        return out

    def as_arrays(self) -> Dict[str, np.ndarray]:
        #Recorded frames as padded arrays: positions (n_frames, n_particles, 3), ...
        data = {
            'times': np.array(self.times),
            'steps': np.array(self.steps, dtype=int),
            'positions': self._stack(self._positions, np.nan),
            'active': self._stack(self._active, False, dtype=bool),
        }
        if self.record_velocities:
            data['velocities'] = self._stack(self._velocities, np.nan)
        return data

    def save(self, path, tracker=None, masses=None):
        """
        Save the trajectory as a compressed .npz archive.

        Args:
            path: Output file
            tracker: Optional ParticleStartSplatTracker; start/splat data are added
            masses: Optional particle masses in amu
        """
        data = self.as_arrays()
        if tracker is not None:
            data['start_times'] = tracker.start_times()
            data['splat_times'] = tracker.splat_times()
            data['splat_states'] = tracker.splat_states()
            data['start_locations'] = tracker.start_locations()
            data['splat_locations'] = tracker.splat_locations()
        if masses is not None:
            data['masses_amu'] = np.asarray(masses, dtype=float)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(path, **data)
        print(f"[Trajectory] Saved {self.n_frames} frames to {path}")
        return path


def load_trajectory(path) -> Dict[str, np.ndarray]:
    with np.load(path) as f:
        return {k: f[k] for k in f.files}


def plot_trajectories(data: Dict[str, np.ndarray], axes=('x', 'z'), ax: Optional[plt.Axes] = None,
                      max_particles: int = 200, **kwargs) -> plt.Figure:
    """
    Plot particle trajectories projected onto two coordinate axes.

    Args:
        data: Output of TrajectoryRecorder.as_arrays() or load_trajectory()
        axes: Pair of axis names from 'x', 'y', 'z'
        ax: Matplotlib axes (creates new figure if None)
        max_particles: Plot at most this many trajectories
        **kwargs: Additional plot kwargs
    """
    axis_map = {'x': 0, 'y': 1, 'z': 2}
    i0, i1 = axis_map[axes[0]], axis_map[axes[1]]

    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 8))
    else:
        fig = ax.figure

    positions = data['positions']
    n_particles = positions.shape[1] if positions.ndim == 3 else 0
    kwargs.setdefault('linewidth', 0.6)
    kwargs.setdefault('alpha', 0.7)
    for p in range(min(n_particles, max_particles)):
        ax.plot(positions[:, p, i0] * 1e3, positions[:, p, i1] * 1e3, **kwargs)

    if positions.shape[0] > 0 and n_particles > 0:
        last = positions[-1]
        ax.scatter(last[:, i0] * 1e3, last[:, i1] * 1e3, s=4, c='k', zorder=3, label='final')
        ax.legend(loc='best')

    ax.set_xlabel(f'{axes[0]} (mm)')
    ax.set_ylabel(f'{axes[1]} (mm)')
    ax.set_aspect('equal', adjustable='datalim')
    ax.grid(True, alpha=0.3)
    return fig


def plot_kinetic_energy(data: Dict[str, np.ndarray], masses_kg, ax: Optional[plt.Axes] = None) -> plt.Figure:
    #Mean kinetic energy of the active particles over time
    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 5))
    else:
        fig = ax.figure
    v = data['velocities']
    masses = np.asarray(masses_kg, dtype=float)
    ke = 0.5 * masses[np.newaxis, :v.shape[1]] * np.sum(v**2, axis=2)
    ke = np.where(data['active'], ke, np.nan)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        mean_ke = np.nanmean(ke, axis=1) if ke.size else np.zeros(0)
    ax.plot(data['times'] * 1e6, mean_ke)
    ax.set_xlabel('time (us)')
    ax.set_ylabel('mean kinetic energy (J)')
    ax.grid(True, alpha=0.3)
    return fig
