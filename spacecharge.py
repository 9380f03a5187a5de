"""
Space-charge field evaluation.

Two interchangeable evaluators estimate the electrostatic field that the
ensemble's own charges produce at a point:

SpatialChargeIndex     - Barnes-Hut octree, approximate, better than O(N^2) per step
FullSumFieldEvaluator  - direct pairwise summation, exact, O(N^2) per step

Both follow the same two-call protocol: ``build(particles)`` snapshots the
active particles once per time step, then ``field_at(point, exclude)`` is
queried (possibly from many worker threads) until the next build. Neither
evaluator mutates itself during queries.
"""

import numpy as np
from numba import jit, prange
from scipy.constants import epsilon_0

K_COULOMB = 1.0 / (4.0 * np.pi * epsilon_0)  # Coulomb constant [V m / C]


class FieldEvaluator:
    """Interface of a space-charge field evaluator."""

    name = "abstract"

    def build(self, particles):
        raise NotImplementedError

    def field_at(self, point, exclude=None) -> np.ndarray:
        raise NotImplementedError

    def field_at_particle(self, particle) -> np.ndarray:
        #Field acting on a particle from all other particles
        return self.field_at(particle.position, exclude=particle)

    def _map_slots(self, active):
        """
        Remember the snapshot slot of every active particle.

        Ensemble members are keyed by their insertion index; loose particles
        (index -1) or a mix with repeated indices fall back to object identity.
        """
        indices = [p.index for p in active]
        self._slots_by_index = bool(indices) and min(indices) >= 0 and len(set(indices)) == len(indices)
        if self._slots_by_index:
            self._slots = {idx: slot for slot, idx in enumerate(indices)}
        else:
            self._slots = {id(p): slot for slot, p in enumerate(active)}

    def _exclude_slot(self, exclude) -> int:
        if exclude is None:
            return -1
        if self._slots_by_index:
            return self._slots.get(exclude.index, -1) if exclude.index >= 0 else -1
        return self._slots.get(id(exclude), -1)


class ChargeNode:
    """
    Cubic octree region with its aggregate charge.

    Aggregates are kept as running sums (charge, charge weighted position
    sum, unweighted position sum, count) which are updated each time a
    particle passes through the node during insertion. The centroid is the
    charge weighted mean, or the plain mean position for neutral nodes.
    """

    __slots__ = ("center", "half", "depth", "children", "count", "charge",
                 "_q_pos_sum", "_pos_sum", "_members",
                 "positions", "charges", "slots")

    def __init__(self, center, half, depth):
        self.center = center
        self.half = half
        self.depth = depth
        self.children = None
        self.count = 0
        self.charge = 0.0
        self._q_pos_sum = np.zeros(3)
        self._pos_sum = np.zeros(3)
        self._members = []
        # leaf arrays, filled by SpatialChargeIndex after the build
        self.positions = None
        self.charges = None
        self.slots = None

    @property
    def is_leaf(self) -> bool:
        return self.children is None

    @property
    def size(self) -> float:
        return 2.0 * self.half

    @property
    def centroid(self) -> np.ndarray:
        if self.count == 0:
            return self.center.copy()
        if self.charge != 0.0:
            return self._q_pos_sum / self.charge
        # neutral region: unit weight center
        return self._pos_sum / self.count

    def accumulate(self, pos, q):
        self.count += 1
        self.charge += q
        self._q_pos_sum += q * pos
        self._pos_sum += pos

    def octant(self, pos) -> int:
        o = 0
        if pos[0] >= self.center[0]:
            o |= 1
        if pos[1] >= self.center[1]:
            o |= 2
        if pos[2] >= self.center[2]:
            o |= 4
        return o

    def contains(self, point) -> bool:
        return bool(np.all(np.abs(point - self.center) <= self.half))

    def make_children(self):
        h = 0.5 * self.half
        self.children = []
        for o in range(8):
            offset = np.array([h if (o & 1) else -h,
                               h if (o & 2) else -h,
                               h if (o & 4) else -h])
            self.children.append(ChargeNode(self.center + offset, h, self.depth + 1))


class SpatialChargeIndex(FieldEvaluator):
    """
    Barnes-Hut octree approximation of the space-charge field.

    Args:
        theta: Opening angle. A subtree is summarized as one pseudo-particle at
               its center of charge when region_size / distance < theta.
               theta=0 makes every query an exact sum.
        capacity: Maximum number of particles in a leaf before it is split
        max_depth: Leaves at this depth are never split (coincident particles)
        min_half_size: Smallest half edge length of the root region in metres
    """

    name = "tree"

    def __init__(self, theta=0.5, capacity=1, max_depth=32, min_half_size=1e-9, verbose=False):
        try:
            theta = float(theta)
        except (TypeError, ValueError):
            raise ValueError(f"Opening angle must be a number, got {theta!r}")
        if not np.isfinite(theta) or theta < 0:
            raise ValueError(f"Opening angle must be finite and >= 0, got {theta}")
        if int(capacity) != capacity or capacity < 1:
            raise ValueError(f"Leaf capacity must be a positive integer, got {capacity}")
        if int(max_depth) != max_depth or max_depth < 1:
            raise ValueError(f"Maximum tree depth must be a positive integer, got {max_depth}")
        if not np.isfinite(min_half_size) or min_half_size <= 0:
            raise ValueError(f"Degenerate root region: min_half_size must be > 0, got {min_half_size}")

        self.theta = theta
        self.capacity = int(capacity)
        self.max_depth = int(max_depth)
        self.min_half_size = float(min_half_size)
        self.verbose = verbose

        self.root = None
        self.n_nodes = 0
        self._slots = {}
        self._slots_by_index = False

    @property
    def n_particles(self) -> int:
        return self.root.count if self.root is not None else 0

    @property
    def total_charge(self) -> float:
        return self.root.charge if self.root is not None else 0.0

    @property
    def depth(self) -> int:
        if self.root is None:
            return 0
        deepest = 0
        stack = [self.root]
        while stack:
            node = stack.pop()
            deepest = max(deepest, node.depth)
            if node.children is not None:
                stack.extend(node.children)
        return deepest

    def build(self, particles):
        """Rebuild the tree from the active particles in ``particles``."""
        active = [p for p in particles if p.active]
        self._map_slots(active)

        if not active:
            self.root = ChargeNode(np.zeros(3), self.min_half_size, 0)
            self.n_nodes = 1
            self._finalize_leaves()
            return self

        positions = np.array([p.position for p in active], dtype=float)
        lo = positions.min(axis=0)
        hi = positions.max(axis=0)
        center = 0.5 * (lo + hi)
        half = 0.5 * float(np.max(hi - lo))
        # pad so that particles on the max faces stay strictly inside
        half = max(half * (1.0 + 1e-9), self.min_half_size)

        self.root = ChargeNode(center, half, 0)
        self.n_nodes = 1
        for slot, p in enumerate(active):
            self._insert(self.root, positions[slot], p.charge, slot)

        self._finalize_leaves()
        if self.verbose:
            print(f"[SpaceCharge] Tree built: {len(active)} particles, {self.n_nodes} nodes, "
                  f"depth {self.depth}, total charge {self.total_charge:.3e} C")
        return self

    def _insert(self, node, pos, q, slot):
        while True:
            node.accumulate(pos, q)
            if node.children is None:
                node._members.append((pos, q, slot))
                if len(node._members) > self.capacity and node.depth < self.max_depth:
                    self._split(node)
                return
            node = node.children[node.octant(pos)]

    def _split(self, node):
        node.make_children()
        self.n_nodes += 8
        members = node._members
        node._members = []
        for pos, q, slot in members:
            self._insert(node.children[node.octant(pos)], pos, q, slot)

    def _finalize_leaves(self):
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.children is not None:
                stack.extend(node.children)
                continue
            members = node._members
            if members:
                node.positions = np.array([m[0] for m in members])
                node.charges = np.array([m[1] for m in members])
                node.slots = np.array([m[2] for m in members], dtype=np.int64)
            else:
                node.positions = np.zeros((0, 3))
                node.charges = np.zeros(0)
                node.slots = np.zeros(0, dtype=np.int64)

    def field_at(self, point, exclude=None) -> np.ndarray:
        """
        Approximate space-charge field [V/m] at ``point``.

        Args:
            point: Evaluation point (3-vector)
            exclude: Particle whose own charge is left out (usually the particle
                     sitting at ``point``)
        """
        field = np.zeros(3)
        if self.root is None or self.root.count == 0:
            return field
        point = np.asarray(point, dtype=float)
        exclude_slot = self._exclude_slot(exclude)

        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.count == 0:
                continue
            if node.children is None:
                field += _leaf_field(point, node.positions, node.charges, node.slots, exclude_slot)
                continue

            d_vec = point - node.centroid
            dist = float(np.sqrt(np.dot(d_vec, d_vec)))
            if dist > 0.0 and node.size / dist < self.theta and not node.contains(point):
                field += (K_COULOMB * node.charge / dist**3) * d_vec
            else:
                stack.extend(node.children)
        return field


def _leaf_field(point, positions, charges, slots, exclude_slot):
    #Exact field of the particles in one leaf
    d = point - positions
    r2 = np.einsum("ij,ij->i", d, d)
    keep = (r2 > 0.0) & (slots != exclude_slot)
    if not np.any(keep):
        return np.zeros(3)
    d = d[keep]
    r2 = r2[keep]
    w = charges[keep] / (r2 * np.sqrt(r2))
    return K_COULOMB * (w[:, np.newaxis] * d).sum(axis=0)


@jit(nopython=True, cache=True)
def _full_sum_field_at(point, positions, charges, exclude_slot):
    ex, ey, ez = 0.0, 0.0, 0.0
    for j in range(positions.shape[0]):
        if j == exclude_slot:
            continue
        dx = point[0] - positions[j, 0]
        dy = point[1] - positions[j, 1]
        dz = point[2] - positions[j, 2]
        r2 = dx*dx + dy*dy + dz*dz
        if r2 == 0.0:
            continue
        f = charges[j] / (r2 * np.sqrt(r2))
        ex += f * dx
        ey += f * dy
        ez += f * dz
    out = np.empty(3)
    out[0] = K_COULOMB * ex
    out[1] = K_COULOMB * ey
    out[2] = K_COULOMB * ez
    return out


@jit(nopython=True, parallel=True, cache=True)
def full_sum_fields(positions, charges):
    #Field at every particle from all the others. Returns: array of shape (n_particles, 3)
    n = positions.shape[0]
    fields = np.zeros((n, 3))

    for i in prange(n):
        ex, ey, ez = 0.0, 0.0, 0.0
        for j in range(n):
            if i != j:
                dx = positions[i, 0] - positions[j, 0]
                dy = positions[i, 1] - positions[j, 1]
                dz = positions[i, 2] - positions[j, 2]
                r2 = dx*dx + dy*dy + dz*dz
                if r2 == 0.0:
                    continue
                f = charges[j] / (r2 * np.sqrt(r2))
                ex += f * dx
                ey += f * dy
                ez += f * dz
        fields[i, 0] = K_COULOMB * ex
        fields[i, 1] = K_COULOMB * ey
        fields[i, 2] = K_COULOMB * ez

    return fields


class FullSumFieldEvaluator(FieldEvaluator):
    """Exact pairwise space-charge field, same protocol as SpatialChargeIndex."""

    name = "full_sum"

    def __init__(self, verbose=False):
        self.verbose = verbose
        self.positions = np.zeros((0, 3))
        self.charges = np.zeros(0)
        self._slots = {}
        self._slots_by_index = False

    @property
    def n_particles(self) -> int:
        return self.positions.shape[0]

    @property
    def total_charge(self) -> float:
        return float(np.sum(self.charges))

    def build(self, particles):
        active = [p for p in particles if p.active]
        self._map_slots(active)
        if active:
            self.positions = np.array([p.position for p in active], dtype=float)
            self.charges = np.array([p.charge for p in active], dtype=float)
        else:
            self.positions = np.zeros((0, 3))
            self.charges = np.zeros(0)
        if self.verbose:
            print(f"[SpaceCharge] Full sum snapshot: {len(active)} particles")
        return self

    def field_at(self, point, exclude=None) -> np.ndarray:
        if self.positions.shape[0] == 0:
            return np.zeros(3)
        exclude_slot = self._exclude_slot(exclude)
        return _full_sum_field_at(np.asarray(point, dtype=float), self.positions, self.charges,
                                  exclude_slot)

    def fields_at_particles(self) -> np.ndarray:
        #Field at every snapshot particle, in snapshot order
        if self.positions.shape[0] == 0:
            return np.zeros((0, 3))
        return full_sum_fields(self.positions, self.charges)


def make_field_evaluator(mode="tree", theta=0.5, capacity=1, max_depth=32, verbose=False):
    #Create a field evaluator by name ('tree' or 'full_sum')
    if mode == "tree":
        return SpatialChargeIndex(theta=theta, capacity=capacity, max_depth=max_depth, verbose=verbose)
    if mode == "full_sum":
        return FullSumFieldEvaluator(verbose=verbose)
    raise ValueError(f"Invalid field evaluator: {mode}. Choose from ['tree', 'full_sum']")
