"""Tests for stack_opr.graph module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import chain_resources, make_stack
from errors import CycleError, UnresolvedReferenceError
from stack_opr.graph import ResourceGraph, kahn_waves, reverse_waves


def _addresses(waves):
    return [[n.address for n in wave] for wave in waves]


def _hub_resources():
    """Diamond-ish layout similar to the JupyterHub deployment."""
    return [
        {'type': 'network', 'name': 'net'},
        {'type': 'service-account', 'name': 'dns'},
        {'type': 'cluster', 'name': 'hub', 'configuration': {'net': '${network.net.id}'}},
        {'type': 'node-pool', 'name': 'core', 'configuration': {'c': '${cluster.hub.name}'}},
        {'type': 'helm-release', 'name': 'ingress', 'depends_on': ['node-pool.core']},
        {'type': 'helm-release', 'name': 'certs', 'depends_on': ['node-pool.core']},
        {'type': 'helm-release', 'name': 'external-dns', 'depends_on': ['node-pool.core'],
         'configuration': {'sa': '${service-account.dns.email}'}},
        {'type': 'helm-release', 'name': 'jupyterhub',
         'depends_on': ['helm-release.ingress', 'helm-release.certs',
                        'helm-release.external-dns']},
    ]


class TestKahnWaves:
    """Tests for the kahn_waves() helper."""

    def test_independent_nodes_single_wave(self):
        assert kahn_waves(['a', 'b', 'c'], {}) == [['a', 'b', 'c']]

    def test_declaration_order_within_wave(self):
        edges = {'c': ['a'], 'b': ['a']}
        assert kahn_waves(['a', 'c', 'b'], edges) == [['a'], ['c', 'b']]

    def test_cycle_names_remaining_nodes(self):
        edges = {'a': ['c'], 'b': ['a'], 'c': ['b'], 'd': []}
        with pytest.raises(CycleError) as exc_info:
            kahn_waves(['a', 'b', 'c', 'd'], edges)
        assert exc_info.value.addresses == ['a', 'b', 'c']


class TestResourceGraph:
    """Tests for ResourceGraph construction and ordering."""

    def test_chain_waves(self):
        graph = ResourceGraph(make_stack(chain_resources()))
        assert _addresses(graph.waves()) == [['network.net1'], ['cluster.c1'], ['pool.p1']]

    def test_edges_from_references_and_depends_on(self):
        graph = ResourceGraph(make_stack(_hub_resources()))
        node = graph.get_node('helm-release.external-dns')
        assert node.dependencies == ['node-pool.core', 'service-account.dns']
        assert 'helm-release.external-dns' in graph.get_node('service-account.dns').dependents

    def test_hub_waves(self):
        graph = ResourceGraph(make_stack(_hub_resources()))
        assert _addresses(graph.waves()) == [
            ['network.net', 'service-account.dns'],
            ['cluster.hub'],
            ['node-pool.core'],
            ['helm-release.ingress', 'helm-release.certs', 'helm-release.external-dns'],
            ['helm-release.jupyterhub'],
        ]
        assert graph.get_node('helm-release.jupyterhub').depth == 4

    def test_no_backward_edges(self):
        graph = ResourceGraph(make_stack(_hub_resources()))
        position = {}
        for i, wave in enumerate(graph.waves()):
            for node in wave:
                position[node.address] = i
        for address, i in position.items():
            for dep in graph.get_node(address).dependencies:
                assert position[dep] < i

    def test_destroy_waves_reverse(self):
        graph = ResourceGraph(make_stack(chain_resources()))
        assert _addresses(graph.destroy_waves()) == [['pool.p1'], ['cluster.c1'], ['network.net1']]

    def test_create_and_destroy_order(self):
        graph = ResourceGraph(make_stack(chain_resources()))
        assert [n.address for n in graph.create_order()] == \
            ['network.net1', 'cluster.c1', 'pool.p1']
        assert [n.address for n in graph.destroy_order()] == \
            ['pool.p1', 'cluster.c1', 'network.net1']

    def test_dependents_wired(self):
        graph = ResourceGraph(make_stack(chain_resources()))
        assert graph.get_node('network.net1').dependents == ['cluster.c1']
        assert graph.get_node('pool.p1').dependents == []

    def test_contains_and_len(self):
        graph = ResourceGraph(make_stack(chain_resources()))
        assert len(graph) == 3
        assert 'cluster.c1' in graph
        assert 'cluster.c2' not in graph

    def test_empty_stack(self):
        graph = ResourceGraph(make_stack([]))
        assert graph.waves() == []
        assert graph.create_order() == []

    def test_unknown_reference(self):
        resources = [{'type': 'cluster', 'name': 'c1',
                      'configuration': {'network': '${network.missing.id}'}}]
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            ResourceGraph(make_stack(resources))
        assert exc_info.value.source == 'cluster.c1'
        assert exc_info.value.target == 'network.missing'

    def test_unknown_depends_on(self):
        resources = [{'type': 'cluster', 'name': 'c1', 'depends_on': ['network.nope']}]
        with pytest.raises(UnresolvedReferenceError):
            ResourceGraph(make_stack(resources))

    def test_self_reference(self):
        resources = [{'type': 'cluster', 'name': 'c1',
                      'configuration': {'me': '${cluster.c1.id}'}}]
        with pytest.raises(CycleError, match='cluster.c1'):
            ResourceGraph(make_stack(resources))

    def test_transitive_cycle(self):
        resources = [
            {'type': 'a', 'name': 'x', 'configuration': {'v': '${c.z.id}'}},
            {'type': 'b', 'name': 'y', 'depends_on': ['a.x']},
            {'type': 'c', 'name': 'z', 'configuration': {'v': '${b.y.id}'}},
        ]
        with pytest.raises(CycleError) as exc_info:
            ResourceGraph(make_stack(resources))
        assert sorted(exc_info.value.addresses) == ['a.x', 'b.y', 'c.z']


class TestReverseWaves:
    """Tests for reverse_waves() used to order deletions."""

    def test_dependent_deleted_first(self):
        waves = reverse_waves(['b', 'a'], {'a': ['b']})
        assert waves == [['a'], ['b']]

    def test_outside_dependencies_ignored(self):
        waves = reverse_waves(['a'], {'a': ['kept']})
        assert waves == [['a']]

    def test_tie_break_order(self):
        waves = reverse_waves(['c', 'a', 'b'], {}, order=['a', 'b', 'c'])
        assert waves == [['a', 'b', 'c']]
