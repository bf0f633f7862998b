"""
Safety and local robustness verification of feedforward networks using
star/zonotope reachability

- SafetyChecker.is_safe:   does the output reachable set intersect an unsafe
                           region (a union of half-spaces)?
- SafetyChecker.falsify:   random simulation fallback for approximate methods
- RobustnessVerifier.is_robust:             safety of an ℓ∞-ball around a point
- RobustnessVerifier.get_robustness_bound:  largest robust ℓ∞ radius
"""

import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from functools import partial
from typing import List, Optional, Tuple

import numpy as np

from convex_sets import HalfSpace, StarSet, Zonotope
from reachability import (
    EXACT_METHODS, ReachabilityEngine, ReachOptions, as_method_input, start_pool,
    validate_method
)
from verification_errors import (
    DimensionMismatchError, InvalidArgumentError, MissingSpecificationError
)

logger = logging.getLogger(__name__)


class VerificationResult(IntEnum):
    """Verification outcome, encoded as 1 = safe, 0 = unsafe, 2 = unknown"""
    UNSAFE = 0  # Counterexample found
    SAFE = 1  # Proven safe / robust
    UNKNOWN = 2  # Over-approximation flagged a possible violation, sampling found none


@dataclass
class SafetyOptions(ReachOptions):
    """
    Options for safety checking

    Attributes:
        method: Reachability method (default 'exact-star')
        num_cores: Worker processes, used by 'exact-star' only (default 1)
        n_samples: Samples for falsification when the method is approximate;
                   0 disables falsification (default 1000)
        seed: Seed of the falsification sampler (default None, not seeded)
    """
    n_samples: int = 1000
    seed: Optional[int] = None


@dataclass
class RobustnessOptions(SafetyOptions):
    """
    Options for robustness checking

    Attributes:
        lb_allowable: Allowable lower bound of disturbed inputs (default None,
                      no clipping)
        ub_allowable: Allowable upper bound of disturbed inputs (default None)
    """
    lb_allowable: Optional[np.ndarray] = None
    ub_allowable: Optional[np.ndarray] = None


@dataclass
class BoundSearchOptions(RobustnessOptions):
    """
    Options for the robustness bound search

    Attributes:
        init_dis_bound: First disturbance bound to check (default 0.01)
        tolerance: Step by which the bound grows or shrinks (default 0.01)
        max_steps: Maximum number of robustness checks (default 100)
    """
    init_dis_bound: float = 0.01
    tolerance: float = 0.01
    max_steps: int = 100


def _as_region_list(unsafe_regions) -> List[HalfSpace]:
    if unsafe_regions is None:
        return []
    if isinstance(unsafe_regions, HalfSpace):
        return [unsafe_regions]
    return list(unsafe_regions)


def _check_reach_set(reach_set: StarSet, unsafe_regions: List[HalfSpace],
                     input_star: Optional[StarSet]) -> list:
    """
    Intersect one output star with every unsafe region

    With input_star given (exact-star) each non-empty intersection is mapped
    back to the input space: same center and basis as the input star, the
    constraints of the intersection.
    """
    violations = []
    for U in unsafe_regions:
        S = reach_set.intersect_half_space(U.G, U.g)
        if S is None:
            continue
        if input_star is not None:
            S = StarSet(input_star.center, input_star.basis, S.C, S.d,
                        input_star.predicate_lb, input_star.predicate_ub)
        violations.append(S)
    return violations


class SafetyChecker:
    """Checks output reachable sets against unsafe half-space regions"""

    def __init__(self, network):
        self.network = network
        self.engine = ReachabilityEngine(network)

    def is_safe(self, input_set, unsafe_regions,
                options: Optional[SafetyOptions] = None) -> Tuple[VerificationResult, float, list]:
        """
        Verify that no output reachable from input_set lies in an unsafe region

        Args:
            input_set: StarSet or Box (a Zonotope with approx-zono only)
            unsafe_regions: HalfSpace or list of HalfSpaces (union semantics)
            options: SafetyOptions; defaults to exact-star on one core

        Returns:
            (result, elapsed_time, counter_inputs)
            - SAFE: no intersection, counter_inputs is empty
            - UNSAFE: counter_inputs holds input-space stars (exact-star) or
              concrete inputs found by falsification
            - UNKNOWN: approximate method flagged a violation that sampling
              could not confirm, counter_inputs is empty
        """
        start = time.perf_counter()
        options = options if options is not None else SafetyOptions()
        regions = _as_region_list(unsafe_regions)
        if not regions:
            raise MissingSpecificationError("Please specify the unsafe region using HalfSpace objects")
        self._validate_regions(regions)
        validate_method(options.method)
        if isinstance(input_set, (list, tuple)):
            raise InvalidArgumentError("is_safe expects a single input set")
        exact = options.method in EXACT_METHODS

        result = self.engine.reach(input_set, ReachOptions(options.method, options.num_cores))

        # intersections are computed on stars only
        reach_stars = [R.get_box().to_star() if isinstance(R, Zonotope) else R
                       for R in result.output_sets]

        input_star = as_method_input(input_set, options.method) if exact else None
        check = partial(_check_reach_set, unsafe_regions=regions, input_star=input_star)
        if result.num_cores > 1:
            pool = start_pool(result.num_cores)
            per_set = pool.map(check, reach_stars)
        else:
            per_set = [check(R) for R in reach_stars]
        violations = [S for sets in per_set for S in sets]

        if not violations:
            verdict, counter_inputs = VerificationResult.SAFE, []
            logger.info("The network is safe")
        elif exact:
            verdict, counter_inputs = VerificationResult.UNSAFE, violations
            logger.info("The network is unsafe, counter inputs contain %d stars", len(counter_inputs))
        elif options.n_samples == 0:
            verdict, counter_inputs = VerificationResult.UNKNOWN, []
            logger.info("Falsification skipped since n_samples = 0")
        else:
            rng = np.random.default_rng(options.seed)
            counter_inputs = self.falsify(input_set, regions, options.n_samples, rng)
            if counter_inputs:
                verdict = VerificationResult.UNSAFE
                logger.info("The network is unsafe, %d counter inputs found using %d samples",
                            len(counter_inputs), options.n_samples)
            else:
                verdict = VerificationResult.UNKNOWN
                logger.info("Safety is uncertain, no counter input found using %d samples",
                            options.n_samples)

        return verdict, time.perf_counter() - start, counter_inputs

    def falsify(self, input_set, unsafe_regions, n_samples: int,
                rng: Optional[np.random.Generator] = None) -> List[np.ndarray]:
        """
        Search for counter inputs by random simulation

        Every returned input x satisfies U.contains(network.evaluate(x)) for
        some unsafe region U. Finding none proves nothing.
        """
        if not callable(getattr(input_set, 'sample', None)):
            raise InvalidArgumentError(f"Input set {type(input_set).__name__} cannot be sampled")
        regions = _as_region_list(unsafe_regions)
        for i, U in enumerate(regions):
            if not isinstance(U, HalfSpace):
                raise InvalidArgumentError(f"Unsafe region {i} is not a HalfSpace")
        if isinstance(n_samples, bool) or not isinstance(n_samples, (int, np.integer)) or n_samples < 1:
            raise InvalidArgumentError(f"Invalid number of samples: {n_samples}")

        samples = input_set.sample(n_samples, rng)
        outputs = self.network.sample(samples)
        counter_inputs = []
        for x, y in zip(samples, outputs):
            if any(U.contains(y) for U in regions):
                counter_inputs.append(x)
        return counter_inputs

    def _validate_regions(self, regions: List[HalfSpace]):
        for i, U in enumerate(regions):
            if not isinstance(U, HalfSpace):
                raise InvalidArgumentError(f"Unsafe region {i} is not a HalfSpace")
            if U.dim != self.network.output_dim:
                raise DimensionMismatchError(
                    f"Unsafe region {i} has dimension {U.dim}, network has {self.network.output_dim} outputs")


class RobustnessVerifier:
    """Local robustness verification against an ℓ∞-bounded disturbance"""

    def __init__(self, network):
        self.network = network
        self.safety_checker = SafetyChecker(network)

    def get_input_domain(self, x0: np.ndarray, dis_bound: float,
                         options: Optional[RobustnessOptions] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Get the disturbed input domain

        [x0 - e, x0 + e], clipped to [lb_allowable, ub_allowable] when the
        options carry allowable bounds.

        Returns:
            (lower_bound, upper_bound)
        """
        options = options if options is not None else RobustnessOptions()
        x0 = np.asarray(x0, dtype=float).reshape(-1)
        if dis_bound < 0:
            raise InvalidArgumentError(f"Disturbance bound must be non-negative, got {dis_bound}")

        lb = x0 - dis_bound
        ub = x0 + dis_bound
        if (options.lb_allowable is None) != (options.ub_allowable is None):
            raise InvalidArgumentError("lb_allowable and ub_allowable must be given together")
        if options.lb_allowable is not None:
            lb_allowable = np.asarray(options.lb_allowable, dtype=float).reshape(-1)
            ub_allowable = np.asarray(options.ub_allowable, dtype=float).reshape(-1)
            if lb_allowable.shape != x0.shape or ub_allowable.shape != x0.shape:
                raise InvalidArgumentError(
                    "Inconsistent dimensions between allowable lower-, upper- bound vectors and input vector")
            lb = np.maximum(lb, lb_allowable)
            ub = np.minimum(ub, ub_allowable)
        return lb, ub

    def is_robust(self, x0: np.ndarray, dis_bound: float, unsafe_region,
                  options: Optional[RobustnessOptions] = None) -> Tuple[VerificationResult, float, list]:
        """
        Check that every input within dis_bound of x0 avoids the unsafe region

        Returns:
            (result, elapsed_time, adv_inputs) where SAFE means robust,
            UNSAFE means not robust and UNKNOWN means undetermined
        """
        start = time.perf_counter()
        options = options if options is not None else RobustnessOptions()
        lb, ub = self.get_input_domain(x0, dis_bound, options)
        input_set = StarSet.from_bounds(lb, ub)

        robust, _, adv_inputs = self.safety_checker.is_safe(input_set, unsafe_region, options)

        if robust == VerificationResult.SAFE:
            logger.info("The network is robust with the disturbance dis_bound = %.5f", dis_bound)
        elif robust == VerificationResult.UNSAFE:
            logger.info("The network is not robust with the disturbance dis_bound = %.5f, "
                        "counter examples are found", dis_bound)
        else:
            logger.info("The robustness of the network is uncertain with the disturbance "
                        "dis_bound = %.5f", dis_bound)
        return robust, time.perf_counter() - start, adv_inputs

    def get_robustness_bound(self, x0: np.ndarray, unsafe_region,
                             options: Optional[BoundSearchOptions] = None) -> Tuple[Optional[float], float]:
        """
        Find the largest disturbance bound for which the network is robust

        The bound moves by a fixed tolerance per step: up after a robust
        check, down otherwise, until it steps back onto the largest bound
        already proven robust.

        Returns:
            (robustness_bound, elapsed_time); robustness_bound is None when
            the search does not converge within max_steps
        """
        start = time.perf_counter()
        options = options if options is not None else BoundSearchOptions()
        if options.tolerance <= 0:
            raise InvalidArgumentError(f"Tolerance must be positive, got {options.tolerance}")
        if options.max_steps < 1:
            raise InvalidArgumentError(f"max_steps must be >= 1, got {options.max_steps}")

        # equality of b and bmax, up to float error accumulated by the steps
        slack = 1e-9 * options.tolerance
        k = 1
        b = options.init_dis_bound
        bmax = 0.0
        while k < options.max_steps:
            if b < -slack:
                logger.info("Disturbance bound dropped below zero at step k = %d", k)
                k = options.max_steps
                break
            logger.info("Searching maximum robustness value at step k = %d, dis_bound = %.5f", k, b)
            robust, _, _ = self.is_robust(x0, max(b, 0.0), unsafe_region, options)
            if robust == VerificationResult.SAFE:
                bmax = b
                b = b + options.tolerance
            else:
                b = b - options.tolerance
                if abs(b - bmax) <= slack:
                    break
            k += 1

        elapsed = time.perf_counter() - start
        if k >= options.max_steps:
            logger.info("Cannot find robustness value, increase max_steps and try again")
            return None, elapsed
        logger.info("Maximum robustness value = %.5f is found at k = %d with tolerance %.5f",
                    bmax, k, options.tolerance)
        return bmax, elapsed
