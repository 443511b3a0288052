"""Tests for causal network extraction."""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from ema_dynamics.core import extract_causal_network


@pytest.fixture
def coupling():
    return np.array([
        [0.0, 0.4, -0.2],
        [0.3, 0.0, 0.05],
        [0.0, -0.6, 0.0],
    ])


class TestExtractCausalNetwork:

    def test_edges_follow_threshold(self, coupling):
        network = extract_causal_network(np.full(3, 0.9), coupling, ['a', 'b', 'c'])
        pairs = {(e.source, e.target) for e in network.edges}
        assert pairs == {('b', 'a'), ('c', 'a'), ('a', 'b'), ('b', 'c')}

    def test_edge_attributes(self, coupling):
        network = extract_causal_network(np.full(3, 0.9), coupling, ['a', 'b', 'c'], dt=4.0)
        edge = next(e for e in network.edges if e.source == 'b' and e.target == 'c')
        assert edge.weight == pytest.approx(-0.6)
        assert edge.lag == 4.0
        assert edge.significance == pytest.approx(1.0)

        weak = next(e for e in network.edges if e.source == 'c' and e.target == 'a')
        assert weak.significance == pytest.approx(0.6)

    def test_nodes(self, coupling):
        A = np.array([0.8, 0.85, 0.9])
        network = extract_causal_network(A, coupling, ['a', 'b', 'c'], values=np.array([1.0, 2.0, 3.0]))

        assert [n.self_weight for n in network.nodes] == pytest.approx([0.8, 0.85, 0.9])
        assert [n.value for n in network.nodes] == pytest.approx([1.0, 2.0, 3.0])
        abs_W = np.abs(coupling)
        expected = (abs_W.sum(axis=1) + abs_W.sum(axis=0)) / 6.0
        assert_allclose([n.centrality for n in network.nodes], expected)

    def test_metrics(self, coupling):
        network = extract_causal_network(np.full(3, 0.9), coupling, ['a', 'b', 'c'])
        assert network.metrics['density'] == pytest.approx(4 / 6)
        assert network.metrics['central_node'] == 'b'
        assert network.metrics['feedback_loops'] == [('a', 'b')]

    def test_adjacency_keeps_only_edges(self, coupling):
        network = extract_causal_network(np.full(3, 0.9), coupling, ['a', 'b', 'c'])
        expected = np.where(np.abs(coupling) > 0.1, coupling, 0.0)
        assert_allclose(network.to_adjacency(), expected)

    def test_default_labels(self):
        network = extract_causal_network(np.ones(2), np.zeros((2, 2)))
        assert [n.label for n in network.nodes] == ['valence', 'arousal']
        assert network.edges == []

    def test_single_dimension(self):
        network = extract_causal_network(np.ones(1), np.zeros((1, 1)), ['only'])
        assert network.metrics['density'] == 0.0
        assert network.metrics['central_node'] == 'only'
