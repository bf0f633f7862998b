"""
Layer-by-layer reachable set computation for feedforward networks

The engine pushes a set (or a list of sets) through every layer of a
network and keeps the reachable sets of each layer. Only 'exact-star' can
produce more than one set per input set, so it is the only method that
distributes work over a process pool.
"""

import atexit
import logging
import multiprocessing
import time
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional

from convex_sets import Box, StarSet, Zonotope
from verification_errors import (
    DimensionMismatchError, InvalidArgumentError, UnsupportedMethodError
)

logger = logging.getLogger(__name__)

EXACT_METHODS = ('exact-star',)
APPROX_METHODS = ('approx-star', 'approx-zono')
# Reserved names that are accepted by the option parser but not implemented
RESERVED_METHODS = ('abs-dom',)
REACH_METHODS = EXACT_METHODS + APPROX_METHODS + RESERVED_METHODS

_POOL = None
_POOL_SIZE = 0


def start_pool(num_cores: int):
    """
    Return the shared worker pool with num_cores processes

    The pool is reused across calls with the same size; asking for a
    different size terminates the running pool first. Call from a single
    control thread only.
    """
    global _POOL, _POOL_SIZE
    if _POOL is not None and _POOL_SIZE == num_cores:
        return _POOL
    shutdown_pool()
    logger.info("Starting worker pool with %d processes", num_cores)
    _POOL = multiprocessing.Pool(num_cores)
    _POOL_SIZE = num_cores
    return _POOL


def shutdown_pool():
    """Terminate the shared worker pool if one is running"""
    global _POOL, _POOL_SIZE
    if _POOL is None:
        return
    logger.info("Shutting down worker pool with %d processes", _POOL_SIZE)
    _POOL.terminate()
    _POOL.join()
    _POOL = None
    _POOL_SIZE = 0


atexit.register(shutdown_pool)


def validate_method(method: str):
    if method in RESERVED_METHODS:
        raise UnsupportedMethodError(f"Reachability method '{method}' is not supported yet")
    if method not in REACH_METHODS:
        raise InvalidArgumentError(
            f"Unknown reachability method: {method}. Use one of {EXACT_METHODS + APPROX_METHODS}")


@dataclass
class ReachOptions:
    """
    Options for reachable set computation

    Attributes:
        method: 'exact-star' (default), 'approx-star', 'approx-zono'
                ('abs-dom' is reserved and raises UnsupportedMethodError)
        num_cores: Worker processes for 'exact-star' (default 1); other
                   methods always run on one core
    """
    method: str = 'exact-star'
    num_cores: int = 1


@dataclass
class ReachResult:
    """Reachable sets and timing of one reach() call"""
    method: str
    num_cores: int
    reach_sets: List[list] = field(default_factory=list)   # one list of sets per layer
    reach_times: List[float] = field(default_factory=list)  # seconds per layer
    output_sets: list = field(default_factory=list)
    total_time: float = 0.0


def as_method_input(input_set, method: str):
    """
    Convert an input set to the representation the method propagates

    approx-zono propagates zonotopes, so a StarSet or Box input is
    converted to its zonotope; the star methods accept a Box as a star.
    """
    if method == 'approx-zono':
        if isinstance(input_set, (StarSet, Box)):
            return input_set.to_zono()
        return input_set
    if isinstance(input_set, Box):
        return input_set.to_star()
    return input_set


def _reach_one(input_set, layer, method: str) -> list:
    return layer.reach(input_set, method)


class ReachabilityEngine:
    """Star/zonotope reachability analysis for a FeedForwardNetwork"""

    def __init__(self, network):
        self.network = network

    def reach(self, input_set, options: Optional[ReachOptions] = None) -> ReachResult:
        """
        Compute the reachable sets of every layer

        Args:
            input_set: A StarSet/Zonotope/Box, or a list of them; empty
                       stars and an empty list give empty reachable sets.
                       A Zonotope is only accepted by approx-zono
            options: ReachOptions; defaults to exact-star on one core

        Returns:
            ReachResult with the per-layer sets and times
        """
        options = options if options is not None else ReachOptions()
        method = options.method
        validate_method(method)
        if options.num_cores < 1:
            raise InvalidArgumentError(f"num_cores must be >= 1, got {options.num_cores}")

        # approximate methods give one set per layer, nothing to parallelize
        num_cores = options.num_cores if method in EXACT_METHODS else 1

        sets = list(input_set) if isinstance(input_set, (list, tuple)) else [input_set]
        for S in sets:
            if S.dim != self.network.input_dim:
                raise DimensionMismatchError(
                    f"Input set has dimension {S.dim}, network expects {self.network.input_dim}")
            if isinstance(S, Zonotope) and method != 'approx-zono':
                raise InvalidArgumentError(
                    f"Method {method} propagates StarSet, input set is a Zonotope")
        # an empty input set reaches nothing
        sets = [as_method_input(S, method) for S in sets
                if not (isinstance(S, StarSet) and S.is_empty_set())]

        pool = start_pool(num_cores) if num_cores > 1 else None
        result = ReachResult(method=method, num_cores=num_cores)
        layers = self.network.layers

        for i, layer in enumerate(layers):
            logger.info("Computing reach set for layer %d ...", i + 1)
            if i > 0:
                n_prev = len(result.reach_sets[i - 1])
                n_prev2 = 1 if i == 1 else len(result.reach_sets[i - 2])
                if n_prev2 > 0:
                    estimated = (result.reach_times[i - 1] * (n_prev / n_prev2)
                                 * (layer.num_neurons / layers[i - 1].num_neurons))
                    logger.info("Estimated computation time: ~ %.5f seconds", estimated)

            start = time.perf_counter()
            if pool is None:
                outputs = [layer.reach(S, method) for S in sets]
            else:
                outputs = pool.map(partial(_reach_one, layer=layer, method=method), sets)
            sets = [S for per_set in outputs for S in per_set]
            elapsed = time.perf_counter() - start

            result.reach_sets.append(sets)
            result.reach_times.append(elapsed)
            logger.info("Computation time: %.5f seconds", elapsed)
            logger.info("Number of reachable sets at the output of layer %d: %d", i + 1, len(sets))

        result.output_sets = sets
        result.total_time = sum(result.reach_times)
        logger.info("Total reach set computation time: %.5f seconds", result.total_time)
        logger.info("Total number of output reach sets: %d", len(result.output_sets))
        return result
