"""
Fully-connected layer y = f(W*x + b) with set-based reachability

Supported activations are 'relu' and 'linear'. For ReLU layers:

- exact-star:  splits a star on the sign of every uncertain neuron, so one
               input star may produce several output stars whose union is
               exactly the reachable set
- approx-star: triangle relaxation, one new predicate per uncertain neuron,
               always a single output star
- approx-zono: DeepZ relaxation, one new generator per uncertain neuron,
               always a single output zonotope
"""

import logging
from typing import List, Optional, Union

import numpy as np

from convex_sets import StarSet, Zonotope
from verification_errors import DimensionMismatchError, InvalidArgumentError

logger = logging.getLogger(__name__)

ACTIVATIONS = ('relu', 'linear')

ReachSet = Union[StarSet, Zonotope]


class Layer:
    """Fully-connected layer with ReLU or linear activation"""

    def __init__(self, W: np.ndarray, b: Optional[np.ndarray] = None, activation: str = 'relu'):
        """
        Args:
            W: Weight matrix of shape (output_dim, input_dim)
            b: Bias vector of length output_dim (zeros if omitted)
            activation: 'relu' or 'linear'
        """
        W = np.atleast_2d(np.array(W, dtype=float))
        if b is None:
            b = np.zeros(W.shape[0])
        b = np.array(b, dtype=float).reshape(-1)
        if b.shape[0] != W.shape[0]:
            raise DimensionMismatchError(
                f"Bias has {b.shape[0]} entries but weight matrix has {W.shape[0]} rows")
        if activation not in ACTIVATIONS:
            raise InvalidArgumentError(
                f"Unknown activation: {activation}. Use one of {ACTIVATIONS}")
        self._W = W
        self._b = b
        self._activation = activation
        self._W.flags.writeable = False
        self._b.flags.writeable = False

    @property
    def W(self) -> np.ndarray:
        return self._W

    @property
    def b(self) -> np.ndarray:
        return self._b

    @property
    def activation(self) -> str:
        return self._activation

    @property
    def input_dim(self) -> int:
        return self._W.shape[1]

    @property
    def output_dim(self) -> int:
        return self._W.shape[0]

    @property
    def num_neurons(self) -> int:
        return self._W.shape[0]

    def _activate(self, y: np.ndarray) -> np.ndarray:
        if self._activation == 'relu':
            return np.maximum(0, y)
        return y

    def evaluate(self, x: np.ndarray) -> np.ndarray:
        """Forward pass of a single input vector"""
        x = np.asarray(x, dtype=float).reshape(-1)
        if x.shape[0] != self.input_dim:
            raise DimensionMismatchError(
                f"Layer expects input dimension {self.input_dim}, got {x.shape[0]}")
        return self._activate(self._W @ x + self._b)

    def sample(self, X: np.ndarray) -> np.ndarray:
        """Forward pass of a batch, one input per row"""
        X = np.atleast_2d(np.asarray(X, dtype=float))
        return self._activate(X @ self._W.T + self._b)

    def reach(self, input_set: ReachSet, method: str) -> List[ReachSet]:
        """
        Compute the reachable sets of this layer for one input set

        Args:
            input_set: StarSet for the star methods, Zonotope for approx-zono
            method: 'exact-star', 'approx-star' or 'approx-zono'

        Returns:
            List of output sets (possibly several for exact-star, exactly
            one for the approximate methods, empty if the input is empty)
        """
        if input_set.dim != self.input_dim:
            raise DimensionMismatchError(
                f"Layer expects input dimension {self.input_dim}, set has dimension {input_set.dim}")

        if method in ('exact-star', 'approx-star'):
            if not isinstance(input_set, StarSet):
                raise InvalidArgumentError(
                    f"Method {method} propagates StarSet, got {type(input_set).__name__}")
            S = input_set.affine_map(self._W, self._b)
            if self._activation == 'linear':
                return [S]
            if method == 'exact-star':
                return relu_reach_star_exact(S)
            return [relu_reach_star_approx(S)]

        if method == 'approx-zono':
            if not isinstance(input_set, Zonotope):
                raise InvalidArgumentError(
                    f"Method approx-zono propagates Zonotope, got {type(input_set).__name__}")
            Z = input_set.affine_map(self._W, self._b)
            if self._activation == 'linear':
                return [Z]
            return [relu_reach_zono_approx(Z)]

        raise InvalidArgumentError(f"Unknown reachability method: {method}")

    def __repr__(self):
        return f"Layer({self.input_dim} -> {self.output_dim}, {self._activation})"


def _reset_row(S: StarSet, i: int) -> StarSet:
    """Star with dimension i mapped to zero"""
    center = S.center.copy()
    basis = S.basis.copy()
    center[i] = 0
    basis[i, :] = 0
    return StarSet(center, basis, S.C, S.d, S.predicate_lb, S.predicate_ub)


def relu_step_exact(S: StarSet, i: int, lb: float, ub: float) -> List[StarSet]:
    """
    Exact ReLU on dimension i of star S

    Returns:
        One star when the neuron is stable, up to two when it is split
        (empty branches are dropped)
    """
    if lb >= 0:
        return [S]
    if ub <= 0:
        return [_reset_row(S, i)]

    e = np.zeros(S.dim)
    e[i] = 1.0
    # x_i >= 0 branch keeps the identity, x_i <= 0 branch is reset to zero
    active = S.intersect_half_space(-e, np.zeros(1))
    inactive = S.intersect_half_space(e, np.zeros(1))
    outputs = []
    if active is not None:
        outputs.append(active)
    if inactive is not None:
        outputs.append(_reset_row(inactive, i))
    return outputs


def relu_reach_star_exact(S: StarSet) -> List[StarSet]:
    """Exact ReLU reachable set of a star, neuron by neuron"""
    stars = [S]
    for i in range(S.dim):
        next_stars = []
        for star in stars:
            est_lb, est_ub = star.estimate_bounds()
            if est_lb is None:
                continue
            lb, ub = est_lb[i], est_ub[i]
            if lb < 0 < ub:
                lb = star.get_min(i)
                if lb is None:
                    continue
                if lb < 0:
                    ub = star.get_max(i)
            next_stars.extend(relu_step_exact(star, i, lb, ub))
        logger.debug("Neuron %d: %d -> %d stars", i, len(stars), len(next_stars))
        stars = next_stars
    return stars


def relu_reach_star_approx(S: StarSet) -> StarSet:
    """
    Over-approximate ReLU reachable set of a star (triangle relaxation)

    For every neuron with lb < 0 < ub a new predicate y_i is introduced
    with y_i >= 0, y_i >= x_i and y_i <= ub*(x_i - lb)/(ub - lb).
    """
    if S.is_empty_set():
        return S
    est_lb, est_ub = S.estimate_bounds()
    lb = est_lb.copy()
    ub = est_ub.copy()
    for i in np.flatnonzero((est_lb < 0) & (est_ub > 0)):
        lb[i] = S.get_min(i)
        ub[i] = S.get_max(i)

    center = S.center.copy()
    basis = S.basis.copy()
    inactive = np.flatnonzero(ub <= 0)
    center[inactive] = 0
    basis[inactive, :] = 0

    crossing = np.flatnonzero((lb < 0) & (ub > 0))
    if crossing.shape[0] == 0:
        return StarSet(center, basis, S.C, S.d, S.predicate_lb, S.predicate_ub)

    m = S.num_pred
    k = crossing.shape[0]
    new_basis = np.hstack([basis, np.zeros((S.dim, k))])
    rows = []
    d_rows = []
    for j, i in enumerate(crossing):
        Vi = S.basis[i, :]
        ci = S.center[i]
        slope = ub[i] / (ub[i] - lb[i])
        ej = np.zeros(k)
        ej[j] = 1.0
        # y >= 0
        rows.append(np.concatenate([np.zeros(m), -ej]))
        d_rows.append(0.0)
        # y >= x_i
        rows.append(np.concatenate([Vi, -ej]))
        d_rows.append(-ci)
        # y <= slope * (x_i - lb)
        rows.append(np.concatenate([-slope * Vi, ej]))
        d_rows.append(slope * (ci - lb[i]))
        center[i] = 0
        new_basis[i, :] = 0
        new_basis[i, m + j] = 1.0

    C = np.vstack([np.hstack([S.C, np.zeros((S.C.shape[0], k))]), np.array(rows)])
    d = np.concatenate([S.d, np.array(d_rows)])

    pred_lb = pred_ub = None
    if S.predicate_lb is not None:
        pred_lb = np.concatenate([S.predicate_lb, np.zeros(k)])
        pred_ub = np.concatenate([S.predicate_ub, ub[crossing]])
    return StarSet(center, new_basis, C, d, pred_lb, pred_ub)


def relu_reach_zono_approx(Z: Zonotope) -> Zonotope:
    """
    Over-approximate ReLU reachable set of a zonotope (DeepZ relaxation)

    For lb < 0 < ub: x_i -> λ*x_i + μ + μ*ε_new with λ = ub/(ub - lb)
    and μ = -λ*lb/2.
    """
    lb, ub = Z.get_bounds()
    center = Z.center.copy()
    generators = Z.generators.copy()

    inactive = np.flatnonzero(ub <= 0)
    center[inactive] = 0
    generators[inactive, :] = 0

    crossing = np.flatnonzero((lb < 0) & (ub > 0))
    if crossing.shape[0] == 0:
        return Zonotope(center, generators)

    lam = ub[crossing] / (ub[crossing] - lb[crossing])
    mu = -lam * lb[crossing] / 2
    center[crossing] = lam * center[crossing] + mu
    generators[crossing, :] = lam[:, None] * generators[crossing, :]
    new_generators = np.zeros((Z.dim, crossing.shape[0]))
    new_generators[crossing, np.arange(crossing.shape[0])] = mu
    return Zonotope(center, np.hstack([generators, new_generators]))
