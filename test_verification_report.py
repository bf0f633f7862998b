"""
Tests for network reports and JSON verification records
"""
import json

import numpy as np

from convex_sets import HalfSpace, StarSet
from ffnn import FeedForwardNetwork
from reachability import ReachabilityEngine, ReachOptions
from robustness_verifier import SafetyChecker, VerificationResult
from verification_report import (
    VerificationRecord, format_network_info, print_info, save_records
)


def _identity_network():
    return FeedForwardNetwork.from_weights([np.eye(2), np.eye(2)], [np.zeros(2), np.zeros(2)])


def test_network_info():
    text = format_network_info(_identity_network())
    assert "Number of layers: 2" in text
    assert "Number of neurons: 4" in text
    assert "Number of inputs: 2" in text
    assert "Number of outputs: 2" in text
    assert "Reach Set Information" not in text


def test_network_info_with_reach_sets():
    net = _identity_network()
    result = ReachabilityEngine(net).reach(StarSet.from_bounds([-1, -1], [1, 1]), ReachOptions('exact-star'))
    text = format_network_info(net, result)
    assert "Reachability method: exact-star" in text
    assert "Number of cores used in computation: 1" in text
    assert "Layer 1 reach set consists of 4 sets" in text
    assert "Output Layer reach set consists of 4 sets" in text


def test_print_info(tmp_path):
    path = tmp_path / "info.txt"
    print_info(_identity_network(), str(path))
    assert "Number of layers: 2" in path.read_text(encoding='utf-8')


def test_record_to_dict():
    net = _identity_network()
    verdict, t, cex = SafetyChecker(net).is_safe(StarSet.from_bounds([-1, -1], [1, 1]),
                                                  HalfSpace([[-1, 0]], [-0.5]))
    record = VerificationRecord("identity", 'exact-star', verdict, t, cex)
    data = record.to_dict()
    assert data['verdict'] == 'UNSAFE'
    assert data['code'] == 0
    assert len(data['counterexamples']) == len(cex)
    assert data['counterexamples'][0]['type'] == 'StarSet'
    assert data['counterexamples'][0]['dim'] == 2

    points = VerificationRecord("points", 'approx-star', VerificationResult.UNSAFE, 0.1,
                                [np.array([0.7, 0.1])], dis_bound=0.1)
    assert json.loads(points.to_json())['counterexamples'] == [[0.7, 0.1]]


def test_save_records(tmp_path):
    records = [
        VerificationRecord("a", 'exact-star', VerificationResult.SAFE, 0.01),
        VerificationRecord("b", 'approx-zono', VerificationResult.UNKNOWN, 0.02, dis_bound=0.05),
    ]
    path = tmp_path / "records.json"
    save_records(records, str(path), _identity_network())

    data = json.loads(path.read_text(encoding='utf-8'))
    assert data['metadata']['network_layers'] == 2
    assert data['metadata']['input_dim'] == 2
    assert [r['verdict'] for r in data['records']] == ['SAFE', 'UNKNOWN']
    assert [r['code'] for r in data['records']] == [1, 2]
    assert data['records'][1]['dis_bound'] == 0.05
