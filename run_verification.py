#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""Run safety/robustness verification on small networks and save the records"""

import logging
import sys

import numpy as np

from convex_sets import HalfSpace, StarSet
from ffnn import FeedForwardNetwork
from reachability import ReachabilityEngine, ReachOptions, shutdown_pool
from robustness_verifier import (
    BoundSearchOptions, RobustnessOptions, RobustnessVerifier, SafetyChecker,
    VerificationResult
)
from verification_report import VerificationRecord, format_network_info, save_records

STATUS = {
    VerificationResult.SAFE: "✓ SAFE",
    VerificationResult.UNSAFE: "✗ UNSAFE",
    VerificationResult.UNKNOWN: "? UNKNOWN",
}


def main(output_file: str = 'verification_results.json'):
    logging.basicConfig(level=logging.WARNING, format='%(levelname)s %(name)s: %(message)s')

    print("=" * 70)
    print("Star Reachability Safety Verification")
    print("=" * 70)

    # Identity network: y = x
    print("\n[Step 1] Creating 2-layer identity network...")
    identity = FeedForwardNetwork.from_weights([np.eye(2), np.eye(2)], [np.zeros(2), np.zeros(2)])
    print(f"  ✓ {identity}")

    input_set = StarSet.from_bounds([-1, -1], [1, 1])
    far_region = HalfSpace([[-1, 0]], [-2])     # y[0] >= 2
    near_region = HalfSpace([[-1, 0]], [-0.5])  # y[0] >= 0.5
    checker = SafetyChecker(identity)
    records = []

    print("\n[Step 2] Safety of the box [-1, 1]^2...")
    for name, region in [("y[0] >= 2", far_region), ("y[0] >= 0.5", near_region)]:
        verdict, t, cex = checker.is_safe(input_set, region)
        print(f"  unsafe {name}: {STATUS[verdict]} ({t:.3f}s, {len(cex)} counter input sets)")
        records.append(VerificationRecord(f"identity_{name}", 'exact-star', verdict, t, cex))

    print("\n[Step 3] Robustness of [0, 0] with disturbance 0.1...")
    verifier = RobustnessVerifier(identity)
    verdict, t, _ = verifier.is_robust(np.zeros(2), 0.1, near_region)
    print(f"  {STATUS[verdict]} ({t:.3f}s)")
    records.append(VerificationRecord("identity_robust", 'exact-star', verdict, t, dis_bound=0.1))

    bound, t = verifier.get_robustness_bound(
        np.zeros(2), near_region, BoundSearchOptions(init_dis_bound=0.1, tolerance=0.05))
    print(f"  Robustness bound: {bound} ({t:.3f}s)")

    print("\n[Step 4] Random ReLU network, all methods...")
    rng = np.random.default_rng(42)
    network = FeedForwardNetwork.from_weights(
        [rng.standard_normal((8, 3)), rng.standard_normal((8, 8)), rng.standard_normal((2, 8))],
        [rng.standard_normal(8) * 0.1, rng.standard_normal(8) * 0.1, np.zeros(2)])
    x0 = np.array([0.5, 0.5, 0.5])
    y0 = network.evaluate(x0)
    # unsafe: first output exceeds its nominal value by 0.5
    region = HalfSpace([[-1, 0]], [-(y0[0] + 0.5)])
    verifier = RobustnessVerifier(network)
    for method in ['exact-star', 'approx-star', 'approx-zono']:
        options = RobustnessOptions(method=method, lb_allowable=np.zeros(3), ub_allowable=np.ones(3),
                                    n_samples=500, seed=0)
        for eps in [0.01, 0.05, 0.1]:
            verdict, t, adv = verifier.is_robust(x0, eps, region, options)
            print(f"  {method:12s} ε={eps:.3f}: {STATUS[verdict]} ({t:.3f}s)")
            records.append(VerificationRecord(f"random_{method}_{eps}", method, verdict, t, adv, eps))

    result = ReachabilityEngine(network).reach(
        StarSet.from_bounds(x0 - 0.1, x0 + 0.1), ReachOptions('exact-star'))
    print()
    print(format_network_info(network, result))

    save_records(records, output_file, network)
    shutdown_pool()

    print("\n" + "=" * 70)
    print(f"Saved {len(records)} verification records to {output_file}")
    print("=" * 70)


if __name__ == "__main__":
    main(*sys.argv[1:2])
