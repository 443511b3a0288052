"""Influence graph among state dimensions read off the PLRNN coupling matrix."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config.defaults import resolve_labels

EDGE_THRESHOLD = 0.1


@dataclass
class CausalNode:
    """A state dimension in the causal network."""
    id: str
    label: str
    self_weight: float
    centrality: float
    value: float = 0.0


@dataclass
class CausalEdge:
    """Directed influence ``source -> target`` with weight ``W[target, source]``."""
    source: str
    target: str
    weight: float
    lag: float
    significance: float


@dataclass
class CausalNetwork:
    """Nodes, edges and summary metrics of the influence graph.

    Attributes
    ----------
    nodes : List[CausalNode]
    edges : List[CausalEdge]
    metrics : Dict
        ``density``, ``central_node`` and ``feedback_loops`` (list of
        two-node cycles as (a, b) label pairs)
    """
    nodes: List[CausalNode]
    edges: List[CausalEdge]
    metrics: Dict = field(default_factory=dict)

    def has_edge(self, source: str, target: str) -> bool:
        return any(e.source == source and e.target == target for e in self.edges)

    def to_adjacency(self) -> np.ndarray:
        """Signed adjacency matrix indexed [target, source]."""
        index = {node.id: i for i, node in enumerate(self.nodes)}
        adjacency = np.zeros((len(self.nodes), len(self.nodes)))
        for edge in self.edges:
            adjacency[index[edge.target], index[edge.source]] = edge.weight
        return adjacency


def extract_causal_network(A: np.ndarray, W: np.ndarray,
                           labels: Optional[Sequence[str]] = None,
                           dt: float = 1.0,
                           values: Optional[np.ndarray] = None) -> CausalNetwork:
    """Build the influence graph from autoregression ``A`` and coupling ``W``.

    Parameters
    ----------
    A : np.ndarray, shape (n,)
        Diagonal autoregression, reported as each node's self weight
    W : np.ndarray, shape (n, n)
        Coupling; an edge j → i exists iff i ≠ j and ``|W[i, j]| > 0.1``
    labels : Sequence[str], optional
        Dimension labels used as node ids
    dt : float
        Lag assigned to every edge, in hours
    values : np.ndarray, shape (n,), optional
        Current state values attached to the nodes

    Returns
    -------
    CausalNetwork
    """
    A = np.asarray(A, dtype=float)
    W = np.asarray(W, dtype=float)
    n = W.shape[0]
    labels = resolve_labels(labels, n)
    values = np.zeros(n) if values is None else np.asarray(values, dtype=float)

    abs_W = np.abs(W)
    centrality = (abs_W.sum(axis=1) + abs_W.sum(axis=0)) / (2.0 * n)

    nodes = [
        CausalNode(id=labels[i], label=labels[i], self_weight=float(A[i]),
                   centrality=float(centrality[i]), value=float(values[i]))
        for i in range(n)
    ]

    edges = []
    for i in range(n):
        for j in range(n):
            if i == j or abs_W[i, j] <= EDGE_THRESHOLD:
                continue
            edges.append(CausalEdge(
                source=labels[j],
                target=labels[i],
                weight=float(W[i, j]),
                lag=dt,
                significance=float(min(1.0, abs_W[i, j] * n)),
            ))

    loops: List[Tuple[str, str]] = []
    for i in range(n):
        for j in range(i + 1, n):
            if abs_W[i, j] > EDGE_THRESHOLD and abs_W[j, i] > EDGE_THRESHOLD:
                loops.append((labels[i], labels[j]))

    density = len(edges) / (n * (n - 1)) if n > 1 else 0.0
    central = labels[int(np.argmax(centrality))] if n > 0 else None

    return CausalNetwork(
        nodes=nodes,
        edges=edges,
        metrics={'density': density, 'central_node': central, 'feedback_loops': loops},
    )
