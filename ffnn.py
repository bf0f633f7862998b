"""
Feedforward neural network model built from a chain of fully-connected layers
"""

import logging
import os
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.io as sio

from nn_layers import Layer
from reachability import ReachabilityEngine
from verification_errors import DimensionMismatchError, InvalidLayerTypeError

try:
    import onnx
    from onnx import numpy_helper
    ONNX_AVAILABLE = True
except ImportError:
    ONNX_AVAILABLE = False

logger = logging.getLogger(__name__)

# What the network needs from each element of its layer chain
LAYER_CAPABILITIES = ('reach', 'evaluate', 'sample', 'input_dim', 'output_dim', 'num_neurons')


class FeedForwardNetwork:
    """Immutable, dimension-checked sequence of layers"""

    def __init__(self, layers: Sequence[Layer]):
        """
        Args:
            layers: Layers in forward order; adjacent widths must agree

        Raises:
            InvalidLayerTypeError: an element does not provide the layer interface
            DimensionMismatchError: the chain is empty or adjacent widths disagree
        """
        layers = tuple(layers)
        if not layers:
            raise DimensionMismatchError("A network needs at least one layer")

        for i, layer in enumerate(layers):
            missing = [name for name in LAYER_CAPABILITIES if not hasattr(layer, name)]
            if missing:
                raise InvalidLayerTypeError(
                    f"Element {i} of the layer list is not a layer (missing {', '.join(missing)})")

        for i in range(len(layers) - 1):
            if layers[i].output_dim != layers[i + 1].input_dim:
                raise DimensionMismatchError(
                    f"Inconsistent dimensions between layer {i} ({layers[i].output_dim} outputs) "
                    f"and layer {i + 1} ({layers[i + 1].input_dim} inputs)")

        self._layers = layers
        self._num_neurons = sum(layer.num_neurons for layer in layers)

    @classmethod
    def from_weights(cls, weights: List[np.ndarray], biases: Optional[List[np.ndarray]] = None,
                     activation: str = 'relu') -> 'FeedForwardNetwork':
        """
        Build a network with the given activation on all but the last layer,
        which is linear

        Args:
            weights: List of weight matrices [W1, W2, ...]
            biases: List of bias vectors [b1, b2, ...] (zeros if omitted)
        """
        if biases is None:
            biases = [None] * len(weights)
        if len(biases) != len(weights):
            raise DimensionMismatchError(
                f"Got {len(weights)} weight matrices but {len(biases)} bias vectors")
        layers = []
        for i, (W, b) in enumerate(zip(weights, biases)):
            f = activation if i < len(weights) - 1 else 'linear'
            layers.append(Layer(W, b, f))
        return cls(layers)

    @classmethod
    def from_mat(cls, mat_path: str) -> 'FeedForwardNetwork':
        """Load network from .mat file"""
        if not os.path.exists(mat_path):
            raise FileNotFoundError(f"Model file not found: {mat_path}")

        data = sio.loadmat(mat_path)
        weights = []
        biases = []

        # W1, b1, W2, b2, ... format
        i = 1
        while f'W{i}' in data:
            weights.append(np.asarray(data[f'W{i}'], dtype=float))
            if f'b{i}' in data:
                biases.append(np.asarray(data[f'b{i}'], dtype=float).flatten())
            else:
                biases.append(np.zeros(weights[-1].shape[0]))
            i += 1

        # Alternative format: weights, biases cell arrays
        if not weights and 'weights' in data:
            for w in np.asarray(data['weights']).flatten():
                weights.append(np.asarray(w, dtype=float))
            if 'biases' in data:
                for b in np.asarray(data['biases']).flatten():
                    biases.append(np.asarray(b, dtype=float).flatten())
            else:
                biases = [np.zeros(w.shape[0]) for w in weights]

        if not weights:
            raise ValueError(f"Could not find weights in {mat_path}. Available keys: {list(data.keys())}")

        logger.info("Loaded %d layers from %s", len(weights), mat_path)
        return cls.from_weights(weights, biases)

    @classmethod
    def from_onnx(cls, onnx_path: str) -> 'FeedForwardNetwork':
        """Load network from ONNX file (Gemm/MatMul + Add/Relu graphs)"""
        if not ONNX_AVAILABLE:
            raise ImportError("ONNX libraries not available. Install with: pip install onnx")

        if not os.path.exists(onnx_path):
            raise FileNotFoundError(f"Model file not found: {onnx_path}")

        model = onnx.load(onnx_path)
        initializers = {init.name: numpy_helper.to_array(init) for init in model.graph.initializer}
        weights = []
        biases = []

        for node in model.graph.node:
            if node.op_type == 'Gemm':
                attrs = {a.name: onnx.helper.get_attribute_value(a) for a in node.attribute}
                W = initializers[node.input[1]].astype(float)
                # Gemm computes x @ B' (+ C), layers store (out, in)
                if not attrs.get('transB', 0):
                    W = W.T
                weights.append(W)
                if len(node.input) > 2 and node.input[2] in initializers:
                    biases.append(initializers[node.input[2]].astype(float).flatten())
                else:
                    biases.append(np.zeros(W.shape[0]))
            elif node.op_type == 'MatMul':
                weights.append(initializers[node.input[1]].astype(float).T)
                biases.append(np.zeros(weights[-1].shape[0]))
            elif node.op_type == 'Add' and weights:
                for name in node.input:
                    if name in initializers:
                        biases[-1] = biases[-1] + initializers[name].astype(float).flatten()

        if not weights:
            raise ValueError(f"Could not find Gemm/MatMul layers in {onnx_path}")

        logger.info("Loaded %d layers from %s", len(weights), onnx_path)
        return cls.from_weights(weights, biases)

    @property
    def layers(self) -> Tuple[Layer, ...]:
        return self._layers

    @property
    def num_layers(self) -> int:
        return len(self._layers)

    @property
    def num_neurons(self) -> int:
        return self._num_neurons

    @property
    def input_dim(self) -> int:
        return self._layers[0].input_dim

    @property
    def output_dim(self) -> int:
        return self._layers[-1].output_dim

    def evaluate(self, x: np.ndarray) -> np.ndarray:
        """Forward pass through the network"""
        y = x
        for layer in self._layers:
            y = layer.evaluate(y)
        return y

    def sample(self, X: np.ndarray) -> np.ndarray:
        """Forward pass of a batch of inputs, one per row"""
        Y = X
        for layer in self._layers:
            Y = layer.sample(Y)
        return Y

    def reach(self, input_set, options=None):
        """
        Compute the output reachable sets of the network

        Returns:
            (output_sets, total_time)
        """
        result = ReachabilityEngine(self).reach(input_set, options)
        return result.output_sets, result.total_time

    def __repr__(self):
        return (f"FeedForwardNetwork(layers={self.num_layers}, neurons={self.num_neurons}, "
                f"inputs={self.input_dim}, outputs={self.output_dim})")
