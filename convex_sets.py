"""
Convex set representations used by the reachability engine

StarSet   - {x | x = c + V*α, C*α <= d, lb <= α <= ub}
Zonotope  - {x | x = c + V*α, -1 <= α <= 1}
Box       - axis-aligned interval [lb, ub]
HalfSpace - {y | G*y <= g}, used to describe unsafe output regions

Every operation returns a new set; existing sets are never modified in
place. Linear programs are solved with scipy's HiGHS backend.
"""

from typing import Optional, Tuple

import numpy as np
from scipy.optimize import linprog

from verification_errors import DimensionMismatchError, InvalidArgumentError

# Slack used when checking sampled predicates against C*α <= d
CONSTRAINT_TOLERANCE = 1e-9


def _as_vector(x) -> np.ndarray:
    return np.asarray(x, dtype=float).reshape(-1)


def _lp_bounds(lb: Optional[np.ndarray], ub: Optional[np.ndarray], m: int):
    if lb is None or ub is None:
        return [(None, None)] * m
    return [(None if np.isinf(l) else float(l), None if np.isinf(u) else float(u))
            for l, u in zip(lb, ub)]


class HalfSpace:
    """
    Half-space {y | G*y <= g}

    G may hold several rows, in which case the region is the intersection
    of the individual inequalities.
    """

    def __init__(self, G, g):
        G = np.atleast_2d(np.asarray(G, dtype=float))
        g = _as_vector(g)
        if G.shape[0] != g.shape[0]:
            raise InvalidArgumentError(
                f"Inconsistent half-space: G has {G.shape[0]} rows, g has {g.shape[0]} entries")
        self.G = G
        self.g = g

    @property
    def normal(self) -> np.ndarray:
        return self.G

    @property
    def offset(self) -> np.ndarray:
        return self.g

    @property
    def dim(self) -> int:
        return self.G.shape[1]

    def contains(self, y: np.ndarray) -> bool:
        """Check whether point y satisfies every inequality"""
        y = _as_vector(y)
        if y.shape[0] != self.dim:
            raise DimensionMismatchError(
                f"Point has dimension {y.shape[0]}, half-space has dimension {self.dim}")
        return bool(np.all(self.G @ y <= self.g))

    def __repr__(self):
        return f"HalfSpace(G={self.G.tolist()}, g={self.g.tolist()})"


class Box:
    """Axis-aligned box [lb, ub]"""

    def __init__(self, lb, ub):
        lb = _as_vector(lb)
        ub = _as_vector(ub)
        if lb.shape != ub.shape:
            raise InvalidArgumentError(
                f"Inconsistent box bounds: lb has {lb.shape[0]} entries, ub has {ub.shape[0]}")
        if np.any(lb > ub):
            raise InvalidArgumentError("Box lower bound exceeds upper bound")
        self.lb = lb
        self.ub = ub

    @property
    def dim(self) -> int:
        return self.lb.shape[0]

    def to_zono(self) -> 'Zonotope':
        """One generator per dimension with non-zero width"""
        center = (self.lb + self.ub) / 2
        radius = (self.ub - self.lb) / 2
        idx = np.flatnonzero(radius > 0)
        generators = np.zeros((self.dim, idx.shape[0]))
        generators[idx, np.arange(idx.shape[0])] = radius[idx]
        return Zonotope(center, generators)

    def to_star(self) -> 'StarSet':
        return self.to_zono().to_star()

    def sample(self, n: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        """Draw n points uniformly, one per row"""
        rng = rng if rng is not None else np.random.default_rng()
        return rng.uniform(self.lb, self.ub, size=(n, self.dim))

    def __repr__(self):
        return f"Box(lb={self.lb.tolist()}, ub={self.ub.tolist()})"


class Zonotope:
    """Zonotope {c + V*α | α in [-1, 1]^k}"""

    def __init__(self, center, generators=None):
        self.center = _as_vector(center)
        n = self.center.shape[0]
        if generators is None:
            generators = np.zeros((n, 0))
        generators = np.asarray(generators, dtype=float)
        if generators.ndim == 1:
            generators = generators.reshape(n, -1)
        if generators.shape[0] != n:
            raise DimensionMismatchError(
                f"Zonotope center has dimension {n}, generators have {generators.shape[0]} rows")
        self.generators = generators

    @property
    def dim(self) -> int:
        return self.center.shape[0]

    @property
    def num_generators(self) -> int:
        return self.generators.shape[1]

    def affine_map(self, W: np.ndarray, b: Optional[np.ndarray] = None) -> 'Zonotope':
        center = W @ self.center
        if b is not None:
            center = center + b
        return Zonotope(center, W @ self.generators)

    def get_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        radius = np.sum(np.abs(self.generators), axis=1)
        return self.center - radius, self.center + radius

    def get_box(self) -> Box:
        return Box(*self.get_bounds())

    def to_star(self) -> 'StarSet':
        k = self.num_generators
        C = np.vstack([np.eye(k), -np.eye(k)])
        d = np.ones(2 * k)
        return StarSet(self.center, self.generators, C, d,
                       predicate_lb=-np.ones(k), predicate_ub=np.ones(k))

    def sample(self, n: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        rng = rng if rng is not None else np.random.default_rng()
        alpha = rng.uniform(-1.0, 1.0, size=(n, self.num_generators))
        return self.center + alpha @ self.generators.T

    def __repr__(self):
        return f"Zonotope(dim={self.dim}, generators={self.num_generators})"


class StarSet:
    """
    Star set representation: {x | x = c + V*α, C*α <= d, lb <= α <= ub}
    where c is center, V is basis matrix, C and d define constraints on the
    predicate variables α, and lb/ub are optional predicate bounds.
    """

    def __init__(self, center: np.ndarray, basis: Optional[np.ndarray] = None,
                 C: Optional[np.ndarray] = None, d: Optional[np.ndarray] = None,
                 predicate_lb: Optional[np.ndarray] = None,
                 predicate_ub: Optional[np.ndarray] = None):
        self.center = _as_vector(center)
        n = self.center.shape[0]
        if basis is None:
            basis = np.eye(n)
        basis = np.asarray(basis, dtype=float)
        if basis.ndim == 1:
            basis = basis.reshape(n, -1)
        if basis.shape[0] != n:
            raise DimensionMismatchError(
                f"Star center has dimension {n}, basis has {basis.shape[0]} rows")
        self.basis = basis
        m = basis.shape[1]

        if C is None:
            self.C = np.zeros((0, m))
            self.d = np.zeros(0)
        else:
            C = np.asarray(C, dtype=float)
            self.d = _as_vector(d)
            if C.size != self.d.shape[0] * m:
                raise DimensionMismatchError(
                    f"Constraint matrix of shape {C.shape} does not match "
                    f"{self.d.shape[0]} constraints on {m} predicates")
            # rows are kept even when there are no predicates: they decide emptiness
            self.C = C.reshape(self.d.shape[0], m)

        if (predicate_lb is None) != (predicate_ub is None):
            raise InvalidArgumentError("Predicate bounds must be given together")
        if predicate_lb is not None:
            predicate_lb = _as_vector(predicate_lb)
            predicate_ub = _as_vector(predicate_ub)
            if predicate_lb.shape[0] != m or predicate_ub.shape[0] != m:
                raise DimensionMismatchError(
                    f"Predicate bounds must have {m} entries")
        self.predicate_lb = predicate_lb
        self.predicate_ub = predicate_ub

    @classmethod
    def from_bounds(cls, lb, ub) -> 'StarSet':
        """Star for the box [lb, ub]"""
        return Box(lb, ub).to_star()

    @property
    def dim(self) -> int:
        return self.center.shape[0]

    @property
    def num_pred(self) -> int:
        return self.basis.shape[1]

    def _solve_lp(self, objective: np.ndarray, sense: str = "min") -> Optional[float]:
        """
        Optimize objective @ α over the predicate polytope

        Returns:
            Optimal value, ±inf when unbounded, None when infeasible
        """
        m = self.num_pred
        if m == 0:
            feasible = bool(np.all(self.d >= -CONSTRAINT_TOLERANCE))
            return 0.0 if feasible else None

        c = -objective if sense == "max" else objective
        res = linprog(
            c,
            A_ub=self.C if self.C.shape[0] else None,
            b_ub=self.d if self.C.shape[0] else None,
            bounds=_lp_bounds(self.predicate_lb, self.predicate_ub, m),
            method="highs",
        )
        if res.status == 2:
            return None
        if res.status == 3:
            return np.inf if sense == "max" else -np.inf
        if not res.success:
            raise RuntimeError(f"LP solver failed: {res.message}")
        return -res.fun if sense == "max" else res.fun

    def is_empty_set(self) -> bool:
        return self._solve_lp(np.zeros(self.num_pred)) is None

    def get_min(self, i: int) -> Optional[float]:
        """Exact lower bound of dimension i, None if the star is empty"""
        value = self._solve_lp(self.basis[i, :], "min")
        return None if value is None else self.center[i] + value

    def get_max(self, i: int) -> Optional[float]:
        """Exact upper bound of dimension i, None if the star is empty"""
        value = self._solve_lp(self.basis[i, :], "max")
        return None if value is None else self.center[i] + value

    def get_bounds(self) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        """
        Compute the axis-aligned bounding box by solving two LPs per dimension

        Returns:
            (lb, ub), or (None, None) if the star is empty
        """
        if self.is_empty_set():
            return None, None
        lb = np.array([self.get_min(i) for i in range(self.dim)])
        ub = np.array([self.get_max(i) for i in range(self.dim)])
        return lb, ub

    def estimate_bounds(self) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        """
        Cheap over-approximate bounds using only the predicate bounds

        Falls back to get_bounds() when predicate bounds are unknown, which
        returns (None, None) for an empty star.
        """
        if self.predicate_lb is None:
            return self.get_bounds()
        pos = np.maximum(self.basis, 0)
        neg = np.minimum(self.basis, 0)
        lb = self.center + pos @ self.predicate_lb + neg @ self.predicate_ub
        ub = self.center + pos @ self.predicate_ub + neg @ self.predicate_lb
        return lb, ub

    def get_box(self) -> Optional[Box]:
        lb, ub = self.get_bounds()
        if lb is None:
            return None
        return Box(lb, ub)

    def get_predicate_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        if self.predicate_lb is not None:
            return self.predicate_lb, self.predicate_ub
        m = self.num_pred
        lb = np.empty(m)
        ub = np.empty(m)
        for j in range(m):
            e = np.zeros(m)
            e[j] = 1.0
            lo = self._solve_lp(e, "min")
            if lo is None:
                raise InvalidArgumentError("Star set is empty")
            lb[j] = lo
            ub[j] = self._solve_lp(e, "max")
        return lb, ub

    def affine_map(self, W: np.ndarray, b: Optional[np.ndarray] = None) -> 'StarSet':
        """Image of the star under x -> W*x + b"""
        W = np.atleast_2d(np.asarray(W, dtype=float))
        if W.shape[1] != self.dim:
            raise DimensionMismatchError(
                f"Affine map expects dimension {W.shape[1]}, star has dimension {self.dim}")
        center = W @ self.center
        if b is not None:
            center = center + _as_vector(b)
        return StarSet(center, W @ self.basis, self.C, self.d,
                       self.predicate_lb, self.predicate_ub)

    def intersect_half_space(self, G: np.ndarray, g: np.ndarray) -> Optional['StarSet']:
        """
        Intersect with {x | G*x <= g}

        Returns:
            The intersection as a new star, or None if it is empty
        """
        G = np.atleast_2d(np.asarray(G, dtype=float))
        g = _as_vector(g)
        if G.shape[1] != self.dim:
            raise DimensionMismatchError(
                f"Half-space has dimension {G.shape[1]}, star has dimension {self.dim}")
        C = np.vstack([self.C, G @ self.basis])
        d = np.concatenate([self.d, g - G @ self.center])
        S = StarSet(self.center, self.basis, C, d, self.predicate_lb, self.predicate_ub)
        if S.is_empty_set():
            return None
        return S

    def to_zono(self) -> Zonotope:
        """Zonotope over-approximation built from the predicate bounds"""
        lb, ub = self.get_predicate_bounds()
        center = self.center + self.basis @ ((lb + ub) / 2)
        generators = self.basis * ((ub - lb) / 2)
        return Zonotope(center, generators)

    def contains(self, x: np.ndarray, tol: float = 1e-7) -> bool:
        """Check membership of point x with an LP feasibility test"""
        x = _as_vector(x)
        if x.shape[0] != self.dim:
            raise DimensionMismatchError(
                f"Point has dimension {x.shape[0]}, star has dimension {self.dim}")
        m = self.num_pred
        if m == 0:
            return bool(np.allclose(x, self.center, atol=tol)
                        and np.all(self.d >= -CONSTRAINT_TOLERANCE))

        # V*α = x - c relaxed to |V*α - (x - c)| <= tol
        A_ub = np.vstack([self.C, self.basis, -self.basis])
        b_ub = np.concatenate([self.d, x - self.center + tol, self.center - x + tol])
        res = linprog(
            np.zeros(m),
            A_ub=A_ub,
            b_ub=b_ub,
            bounds=_lp_bounds(self.predicate_lb, self.predicate_ub, m),
            method="highs",
        )
        return res.status == 0

    def sample(self, n: int, rng: Optional[np.random.Generator] = None,
               max_batches: int = 10) -> np.ndarray:
        """
        Draw up to n points by rejection sampling in the predicate box

        Returns:
            Array with one point per row; fewer than n rows if the
            constraints reject most of the predicate box.
        """
        rng = rng if rng is not None else np.random.default_rng()
        m = self.num_pred
        if m == 0:
            if self.is_empty_set():
                return np.zeros((0, self.dim))
            return np.tile(self.center, (n, 1))

        lb, ub = self.get_predicate_bounds()
        if np.any(np.isinf(lb)) or np.any(np.isinf(ub)):
            raise InvalidArgumentError("Cannot sample a star with unbounded predicates")

        accepted = []
        count = 0
        for _ in range(max_batches):
            alpha = rng.uniform(lb, ub, size=(n, m))
            if self.C.shape[0]:
                ok = np.all(alpha @ self.C.T <= self.d + CONSTRAINT_TOLERANCE, axis=1)
                alpha = alpha[ok]
            accepted.append(alpha)
            count += alpha.shape[0]
            if count >= n:
                break
        alpha = np.vstack(accepted)[:n]
        return self.center + alpha @ self.basis.T

    def __repr__(self):
        return f"StarSet(dim={self.dim}, predicates={self.num_pred}, constraints={self.C.shape[0]})"
