"""
Tests for SafetyChecker.is_safe and falsification
"""
import numpy as np
import pytest

from convex_sets import Box, HalfSpace, StarSet
from ffnn import FeedForwardNetwork
from reachability import shutdown_pool
from robustness_verifier import SafetyChecker, SafetyOptions, VerificationResult
from verification_errors import (
    DimensionMismatchError, InvalidArgumentError, MissingSpecificationError,
    UnsupportedMethodError
)

INPUT_BOX = ([-1, -1], [1, 1])
FAR_REGION = HalfSpace([[-1, 0]], [-2])      # y[0] >= 2
NEAR_REGION = HalfSpace([[-1, 0]], [-0.5])   # y[0] >= 0.5


def _identity_network():
    return FeedForwardNetwork.from_weights([np.eye(2), np.eye(2)], [np.zeros(2), np.zeros(2)])


def test_safe_when_region_is_unreachable():
    """Test 1: outputs stay in [0, 1]^2, y[0] >= 2 is unreachable"""
    checker = SafetyChecker(_identity_network())
    for method in ['exact-star', 'approx-star', 'approx-zono']:
        verdict, t, cex = checker.is_safe(StarSet.from_bounds(*INPUT_BOX), FAR_REGION,
                                          SafetyOptions(method=method))
        assert verdict == VerificationResult.SAFE
        assert cex == []
        assert t >= 0


def test_exact_star_counter_inputs():
    """Test 2: y[0] >= 0.5 is reachable, counter inputs are input-space stars"""
    net = _identity_network()
    verdict, _, cex = SafetyChecker(net).is_safe(StarSet.from_bounds(*INPUT_BOX), NEAR_REGION)
    assert verdict == VerificationResult.UNSAFE
    assert len(cex) > 0

    rng = np.random.default_rng(0)
    for S in cex:
        assert isinstance(S, StarSet)
        assert S.dim == net.input_dim
        X = S.sample(50, rng)
        assert X.shape[0] > 0
        assert np.all(X[:, 0] >= 0.5 - 1e-9)
        for x in X:
            y = net.evaluate(x)
            assert y[0] >= 0.5 - 1e-9


def test_union_of_regions():
    checker = SafetyChecker(_identity_network())
    verdict, _, cex = checker.is_safe(StarSet.from_bounds(*INPUT_BOX), [FAR_REGION, NEAR_REGION])
    assert verdict == VerificationResult.UNSAFE
    assert len(cex) > 0


def test_box_input():
    checker = SafetyChecker(_identity_network())
    verdict, _, _ = checker.is_safe(Box(*INPUT_BOX), NEAR_REGION)
    assert verdict == VerificationResult.UNSAFE


def test_approx_falsification_finds_real_counter_inputs():
    net = _identity_network()
    options = SafetyOptions(method='approx-star', n_samples=500, seed=0)
    verdict, _, cex = SafetyChecker(net).is_safe(StarSet.from_bounds(*INPUT_BOX), NEAR_REGION, options)
    assert verdict == VerificationResult.UNSAFE
    assert len(cex) > 0
    for x in cex:
        assert NEAR_REGION.contains(net.evaluate(x))


def test_approx_without_samples_is_unknown():
    options = SafetyOptions(method='approx-star', n_samples=0)
    verdict, _, cex = SafetyChecker(_identity_network()).is_safe(
        StarSet.from_bounds(*INPUT_BOX), NEAR_REGION, options)
    assert verdict == VerificationResult.UNKNOWN
    assert cex == []


def test_spurious_zono_violation_is_unknown():
    """
    DeepZ lets y[0] reach -0.5 although ReLU outputs are never negative:
    y[0] <= -0.25 is flagged but no sample can confirm it
    """
    region = HalfSpace([[1, 0]], [-0.25])
    checker = SafetyChecker(_identity_network())
    verdict, _, cex = checker.is_safe(StarSet.from_bounds(*INPUT_BOX), region,
                                      SafetyOptions(method='approx-zono', n_samples=200, seed=1))
    assert verdict == VerificationResult.UNKNOWN
    assert cex == []

    verdict, _, _ = checker.is_safe(StarSet.from_bounds(*INPUT_BOX), region)
    assert verdict == VerificationResult.SAFE


def test_seeded_falsification_is_deterministic():
    checker = SafetyChecker(_identity_network())
    options = SafetyOptions(method='approx-zono', n_samples=100, seed=42)
    first = checker.is_safe(StarSet.from_bounds(*INPUT_BOX), NEAR_REGION, options)
    second = checker.is_safe(StarSet.from_bounds(*INPUT_BOX), NEAR_REGION, options)
    assert first[0] == second[0]
    assert len(first[2]) == len(second[2])
    for a, b in zip(first[2], second[2]):
        assert np.array_equal(a, b)


def test_parallel_verdict_matches_serial():
    checker = SafetyChecker(_identity_network())
    S = StarSet.from_bounds(*INPUT_BOX)
    try:
        serial = checker.is_safe(S, NEAR_REGION, SafetyOptions(num_cores=1))
        parallel = checker.is_safe(S, NEAR_REGION, SafetyOptions(num_cores=2))
    finally:
        shutdown_pool()
    assert serial[0] == parallel[0] == VerificationResult.UNSAFE
    assert len(serial[2]) == len(parallel[2])


def test_invalid_specifications():
    checker = SafetyChecker(_identity_network())
    S = StarSet.from_bounds(*INPUT_BOX)
    with pytest.raises(MissingSpecificationError):
        checker.is_safe(S, [])
    with pytest.raises(MissingSpecificationError):
        checker.is_safe(S, None)
    with pytest.raises(InvalidArgumentError):
        checker.is_safe(S, ["y0 >= 0.5"])
    with pytest.raises(DimensionMismatchError):
        checker.is_safe(S, HalfSpace([[1, 0, 0]], [0]))
    with pytest.raises(UnsupportedMethodError):
        checker.is_safe(S, NEAR_REGION, SafetyOptions(method='abs-dom'))
    with pytest.raises(InvalidArgumentError):
        checker.is_safe([S, S], NEAR_REGION)


def test_falsify():
    net = _identity_network()
    checker = SafetyChecker(net)
    rng = np.random.default_rng(3)
    points = checker.falsify(Box(*INPUT_BOX), [NEAR_REGION], 200, rng)
    assert 0 < len(points) <= 200
    for x in points:
        assert NEAR_REGION.contains(net.evaluate(x))

    assert checker.falsify(Box(*INPUT_BOX), FAR_REGION, 200, rng) == []


def test_falsify_invalid_arguments():
    checker = SafetyChecker(_identity_network())
    with pytest.raises(InvalidArgumentError):
        checker.falsify(Box(*INPUT_BOX), NEAR_REGION, 0)
    with pytest.raises(InvalidArgumentError):
        checker.falsify(Box(*INPUT_BOX), NEAR_REGION, 2.5)
    with pytest.raises(InvalidArgumentError):
        checker.falsify(Box(*INPUT_BOX), ["not a region"], 10)
    with pytest.raises(InvalidArgumentError):
        checker.falsify(object(), NEAR_REGION, 10)
