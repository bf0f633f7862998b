"""Human-readable network/reachability reports and JSON verification records"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from robustness_verifier import VerificationResult


def format_network_info(network, reach_result=None) -> str:
    """
    Describe the network and, if given, the reachable sets of one reach run

    The text is meant for people; its layout is not stable.
    """
    lines = ["Feedforward Neural Network Information", ""]
    lines.append(f"Number of layers: {network.num_layers}")
    lines.append(f"Number of neurons: {network.num_neurons}")
    lines.append(f"Number of inputs: {network.input_dim}")
    lines.append(f"Number of outputs: {network.output_dim}")

    if reach_result is not None and reach_result.reach_sets:
        lines.append("")
        lines.append("Reach Set Information")
        lines.append(f"Reachability method: {reach_result.method}")
        lines.append(f"Number of cores used in computation: {reach_result.num_cores}")
        n = len(reach_result.reach_sets)
        for i in range(n - 1):
            lines.append(f"Layer {i + 1} reach set consists of {len(reach_result.reach_sets[i])} sets "
                         f"that are computed in {reach_result.reach_times[i]:.5f} seconds")
        lines.append(f"Output Layer reach set consists of {len(reach_result.reach_sets[-1])} sets "
                     f"that are computed in {reach_result.reach_times[-1]:.5f} seconds")
        lines.append(f"Total reachable set computation time: {reach_result.total_time:.5f}")
    return "\n".join(lines)


def print_info(network, file_name: str, reach_result=None):
    """Write format_network_info() to file_name"""
    with open(file_name, 'w', encoding='utf-8') as f:
        f.write(format_network_info(network, reach_result))
        f.write("\n")


def _counterexample_to_json(ce) -> Any:
    if isinstance(ce, np.ndarray):
        return ce.tolist()
    # symbolic counterexample (star set): record its shape only
    return {'type': type(ce).__name__, 'dim': ce.dim, 'predicates': ce.num_pred,
            'constraints': int(ce.C.shape[0])}


@dataclass
class VerificationRecord:
    """Record of one safety or robustness check"""
    test_id: str
    method: str
    verdict: VerificationResult
    elapsed: float
    counterexamples: list = field(default_factory=list)
    dis_bound: Optional[float] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary for JSON serialization"""
        return {
            'test_id': self.test_id,
            'method': self.method,
            'verdict': self.verdict.name,
            'code': int(self.verdict),
            'elapsed': float(self.elapsed),
            'dis_bound': None if self.dis_bound is None else float(self.dis_bound),
            'counterexamples': [_counterexample_to_json(ce) for ce in self.counterexamples],
            'timestamp': self.timestamp,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


def save_records(records: List[VerificationRecord], filename: str, network=None):
    """
    Save verification records to JSON file

    Args:
        records: List of VerificationRecords
        filename: Output filename
        network: Optional network whose size is stored as metadata
    """
    metadata = {'timestamp': datetime.now().isoformat()}
    if network is not None:
        metadata.update({
            'network_layers': network.num_layers,
            'network_neurons': network.num_neurons,
            'input_dim': network.input_dim,
            'output_dim': network.output_dim,
        })
    data = {'metadata': metadata, 'records': [r.to_dict() for r in records]}

    with open(filename, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
