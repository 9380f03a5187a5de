"""
Start / splat tracker: records when and where particles start and stop.

Simulations may inject particles mid-run and retire particles at any time,
so start and termination ("splat") events are tracked independently of the
integrator. Records live in a flat table; a particle is mapped to its record
through its ensemble insertion index, never through object identity.
"""

import numpy as np
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import List


class TrackState(IntEnum):
    STARTED = 1
    SPLATTED = 2
    RESTARTED = 3
    SPLATTED_AND_RESTARTED = 4


@dataclass
class TrackRecord:
    global_index: int
    state: TrackState
    start_time: float = 0.0
    splat_time: float = 0.0
    start_location: np.ndarray = field(default_factory=lambda: np.zeros(3))
    splat_location: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def to_dict(self) -> dict:
        return {
            'global_index': self.global_index,
            'state': int(self.state),
            'start_time': self.start_time,
            'splat_time': self.splat_time,
            'start_location': self.start_location.tolist(),
            'splat_location': self.splat_location.tolist(),
        }


class ParticleStartSplatTracker:
    """
    Usage:
        tracker = ParticleStartSplatTracker()
        integrator = VerletIntegrator(..., start_monitor=tracker.particle_start)
        ...
        tracker.particle_splat(particle, time)
        splat_times = tracker.splat_times()
    """

    def __init__(self):
        self._records: List[TrackRecord] = []
        self._slot_of: List[int] = []         # particle insertion index -> record slot, -1 if unregistered
        self._restarted: List[TrackRecord] = []
        self._next_global_index = 0

    def __len__(self):
        return len(self._records)

    def _slot(self, particle) -> int:
        idx = particle.index
        if idx < 0:
            raise ValueError("Particle has no insertion index; add it to a ParticleEnsemble first")
        if idx >= len(self._slot_of):
            return -1
        return self._slot_of[idx]

    def _registered_slot(self, particle, action) -> int:
        slot = self._slot(particle)
        if slot < 0:
            raise ValueError(f"Particle {particle.index} to {action} was not registered as started before")
        return slot

    def particle_start(self, particle, time):
        #Register the start of a particle; registering the same particle twice is an error
        if self._slot(particle) >= 0:
            raise ValueError(
                f"Illegal double insert into start splat tracker: particle {particle.index} is already registered")
        record = TrackRecord(
            global_index=self._next_global_index,
            state=TrackState.STARTED,
            start_time=float(time),
            start_location=np.array(particle.position, dtype=float),
        )
        idx = particle.index
        if idx >= len(self._slot_of):
            self._slot_of.extend([-1] * (idx + 1 - len(self._slot_of)))
        self._slot_of[idx] = len(self._records)
        self._records.append(record)
        self._next_global_index += 1

    def particle_restart(self, particle, old_position, new_position, time):
        """
        Record that a particle terminated at ``old_position`` and was
        immediately restarted at ``new_position``. The terminated trajectory is
        kept as a separate record.
        """
        slot = self._registered_slot(particle, "restart")
        record = self._records[slot]
        self._restarted.append(replace(
            record,
            state=TrackState.SPLATTED_AND_RESTARTED,
            splat_time=float(time),
            splat_location=np.array(old_position, dtype=float),
        ))
        self._records[slot] = TrackRecord(
            global_index=self._next_global_index,
            state=TrackState.RESTARTED,
            start_time=float(time),
            start_location=np.array(new_position, dtype=float),
        )
        self._next_global_index += 1

    def particle_splat(self, particle, time):
        slot = self._registered_slot(particle, "splat")
        record = self._records[slot]
        record.splat_location = np.array(particle.position, dtype=float)
        record.splat_time = float(time)
        record.state = TrackState.SPLATTED

    def get(self, particle) -> TrackRecord:
        return self._records[self._registered_slot(particle, "query")]

    def is_registered(self, particle) -> bool:
        return particle.index >= 0 and self._slot(particle) >= 0

    def sort_start_splat_data(self) -> List[TrackRecord]:
        #All records (live and restarted) ordered by global index
        return sorted(self._records + self._restarted, key=lambda r: r.global_index)

    def splat_states(self) -> np.ndarray:
        return np.array([int(r.state) for r in self.sort_start_splat_data()], dtype=int)

    def start_times(self) -> np.ndarray:
        return np.array([r.start_time for r in self.sort_start_splat_data()])

    def splat_times(self) -> np.ndarray:
        return np.array([r.splat_time for r in self.sort_start_splat_data()])

    def start_locations(self) -> np.ndarray:
        records = self.sort_start_splat_data()
        if not records:
            return np.zeros((0, 3))
        return np.array([r.start_location for r in records])

    def splat_locations(self) -> np.ndarray:
        records = self.sort_start_splat_data()
        if not records:
            return np.zeros((0, 3))
        return np.array([r.splat_location for r in records])
