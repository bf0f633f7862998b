"""
Tests for the layer-by-layer reachability engine
"""
import numpy as np
import pytest

from convex_sets import Box, HalfSpace, StarSet, Zonotope
from ffnn import FeedForwardNetwork
from reachability import (
    ReachabilityEngine, ReachOptions, shutdown_pool, start_pool
)
from robustness_verifier import SafetyChecker, SafetyOptions, VerificationResult
from verification_errors import (
    DimensionMismatchError, InvalidArgumentError, UnsupportedMethodError
)


def _random_network(seed=3):
    rng = np.random.default_rng(seed)
    return FeedForwardNetwork.from_weights(
        [rng.standard_normal((4, 2)), rng.standard_normal((3, 4)), rng.standard_normal((2, 3))],
        [rng.standard_normal(4) * 0.1, rng.standard_normal(3) * 0.1, np.zeros(2)])


def test_reach_result_layout():
    net = _random_network()
    result = ReachabilityEngine(net).reach(StarSet.from_bounds([-1, -1], [1, 1]))
    assert result.method == 'exact-star'
    assert result.num_cores == 1
    assert len(result.reach_sets) == net.num_layers
    assert len(result.reach_times) == net.num_layers
    assert result.output_sets is result.reach_sets[-1]
    assert result.total_time == pytest.approx(sum(result.reach_times))
    assert len(result.output_sets) >= 1


def test_reach_sets_are_sound_at_every_layer():
    """Samples pushed through the first i layers lie in the layer i reach sets"""
    net = _random_network()
    S = StarSet.from_bounds([-1, -1], [1, 1])
    X = S.sample(30, np.random.default_rng(0))
    for method in ['exact-star', 'approx-star', 'approx-zono']:
        result = ReachabilityEngine(net).reach(S, ReachOptions(method))
        stars = [[R.to_star() if isinstance(R, Zonotope) else R for R in sets]
                 for sets in result.reach_sets]
        Y = X
        for i, layer in enumerate(net.layers):
            Y = layer.sample(Y)
            for y in Y:
                assert any(R.contains(y, tol=1e-6) for R in stars[i]), (method, i)


def test_approx_methods_give_one_set_per_layer():
    net = _random_network()
    S = StarSet.from_bounds([-1, -1], [1, 1])
    for method in ['approx-star', 'approx-zono']:
        result = ReachabilityEngine(net).reach(S, ReachOptions(method, num_cores=4))
        assert result.num_cores == 1
        assert all(len(sets) == 1 for sets in result.reach_sets)


def test_approx_methods_are_sound():
    net = _random_network()
    S = StarSet.from_bounds([-1, -1], [1, 1])
    Y = net.sample(S.sample(100, np.random.default_rng(5)))

    R = ReachabilityEngine(net).reach(S, ReachOptions('approx-star')).output_sets[0]
    lb, ub = R.get_bounds()
    assert np.all(Y >= lb - 1e-6) and np.all(Y <= ub + 1e-6)

    Z = ReachabilityEngine(net).reach(S, ReachOptions('approx-zono')).output_sets[0]
    assert isinstance(Z, Zonotope)
    lb, ub = Z.get_bounds()
    assert np.all(Y >= lb - 1e-6) and np.all(Y <= ub + 1e-6)


def test_approx_star_is_tighter_than_approx_zono():
    net = _random_network()
    S = StarSet.from_bounds([-1, -1], [1, 1])
    star_lb, star_ub = ReachabilityEngine(net).reach(
        S, ReachOptions('approx-star')).output_sets[0].get_bounds()
    zono_lb, zono_ub = ReachabilityEngine(net).reach(
        S, ReachOptions('approx-zono')).output_sets[0].get_bounds()
    assert np.all(star_lb >= zono_lb - 1e-6)
    assert np.all(star_ub <= zono_ub + 1e-6)


def test_box_and_list_inputs():
    net = _random_network()
    box = Box([-1, -1], [1, 1])
    result = ReachabilityEngine(net).reach(box, ReachOptions('approx-star'))
    assert isinstance(result.output_sets[0], StarSet)

    result = ReachabilityEngine(net).reach([box.to_star(), box.to_star()], ReachOptions('approx-star'))
    assert len(result.output_sets) == 2

    result = ReachabilityEngine(net).reach([])
    assert result.output_sets == []
    assert result.reach_sets == [[], [], []]


def test_invalid_options():
    net = _random_network()
    S = StarSet.from_bounds([-1, -1], [1, 1])
    engine = ReachabilityEngine(net)
    with pytest.raises(UnsupportedMethodError):
        engine.reach(S, ReachOptions('abs-dom'))
    with pytest.raises(InvalidArgumentError):
        engine.reach(S, ReachOptions('interval'))
    with pytest.raises(InvalidArgumentError):
        engine.reach(S, ReachOptions(num_cores=0))
    with pytest.raises(DimensionMismatchError):
        engine.reach(StarSet.from_bounds([-1, -1, -1], [1, 1, 1]))


def _empty_star():
    """Infeasible star: α0 <= -0.5 and α0 >= 0.5"""
    S = StarSet.from_bounds([0.5, 0.5], [1, 1])
    return StarSet(S.center, S.basis, np.vstack([S.C, [[1, 0]], [[-1, 0]]]),
                   np.concatenate([S.d, [-0.5, -0.5]]), S.predicate_lb, S.predicate_ub)


def test_empty_input_set_reaches_nothing():
    net = FeedForwardNetwork.from_weights([np.eye(2), np.eye(2)], [np.zeros(2), np.zeros(2)])
    E = _empty_star()
    everything = HalfSpace([[1, 0]], [1e9])
    checker = SafetyChecker(net)
    for method in ['exact-star', 'approx-star', 'approx-zono']:
        result = ReachabilityEngine(net).reach(E, ReachOptions(method))
        assert result.reach_sets == [[], []], method
        assert result.output_sets == []

        verdict, _, cex = checker.is_safe(E, everything, SafetyOptions(method=method, n_samples=5))
        assert verdict == VerificationResult.SAFE, method
        assert cex == []


def test_zonotope_input_needs_approx_zono():
    net = _random_network()
    Z = StarSet.from_bounds([-1, -1], [1, 1]).to_zono()
    engine = ReachabilityEngine(net)
    for method in ['exact-star', 'approx-star']:
        with pytest.raises(InvalidArgumentError, match="input set is a Zonotope"):
            engine.reach(Z, ReachOptions(method))
    assert len(engine.reach(Z, ReachOptions('approx-zono')).output_sets) == 1


def test_parallel_exact_star_matches_serial():
    net = _random_network()
    S = StarSet.from_bounds([-1, -1], [1, 1])
    engine = ReachabilityEngine(net)
    try:
        serial = engine.reach(S, ReachOptions('exact-star', num_cores=1))
        parallel = engine.reach(S, ReachOptions('exact-star', num_cores=2))
    finally:
        shutdown_pool()
    assert parallel.num_cores == 2
    assert [len(sets) for sets in parallel.reach_sets] == [len(sets) for sets in serial.reach_sets]

    lb_s = np.min([R.get_bounds()[0] for R in serial.output_sets], axis=0)
    lb_p = np.min([R.get_bounds()[0] for R in parallel.output_sets], axis=0)
    assert np.allclose(lb_s, lb_p, atol=1e-6)


def test_pool_is_reused():
    try:
        p1 = start_pool(2)
        assert start_pool(2) is p1
        p2 = start_pool(3)
        assert p2 is not p1
    finally:
        shutdown_pool()
    # shutting down twice is harmless
    shutdown_pool()
