"""Tests for stack_opr.executor module.

Uses an in-memory FakeProvider to test wave ordering, retries, readiness,
partial failure, cancellation and dry-run behavior without real
infrastructure.
"""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import FakeProvider, chain_resources, make_stack
from errors import PermanentProviderError, StateConflictError, TransientProviderError
from stack_opr.executor import (
    FAILED,
    PENDING,
    RUN_CANCELLED,
    RUN_PARTIAL_FAILURE,
    RUN_SUCCESS,
    SKIPPED,
    SUCCEEDED,
    UNCHANGED,
    OperationOutcome,
    RunResult,
    WaveExecutor,
)
from stack_opr.graph import ResourceGraph
from stack_opr.planner import plan, plan_destroy
from stack_opr.state import StateStore


def _executor(provider, store, config, sleep=lambda s: None, **kwargs):
    return WaveExecutor(providers={'fake': provider}, store=store, config=config,
                        sleep=sleep, **kwargs)


def _apply(stack, provider, store, config, **kwargs):
    p = plan(ResourceGraph(stack), store)
    return _executor(provider, store, config, **kwargs).apply(p)


@pytest.fixture
def store(engine_config):
    return StateStore.load(engine_config.state_file('test'), 'test')


class TestOperationOutcome:
    """Tests for OperationOutcome dataclass."""

    def test_lifecycle(self):
        outcome = OperationOutcome(address='network.n', action='create')
        assert outcome.status == PENDING
        outcome.start()
        outcome.succeed()
        assert outcome.status == SUCCEEDED
        assert outcome.duration is not None

    def test_fail(self):
        outcome = OperationOutcome(address='network.n', action='create')
        outcome.start()
        outcome.fail('quota exceeded')
        assert outcome.to_dict()['error'] == 'quota exceeded'

    def test_to_dict_minimal(self):
        outcome = OperationOutcome(address='network.n', action='create')
        assert outcome.to_dict() == {
            'address': 'network.n', 'action': 'create', 'status': 'pending', 'attempts': 0,
        }


class TestRunResult:
    """Tests for RunResult status derivation."""

    def _result(self, *statuses, cancelled=False):
        result = RunResult(stack_name='t', cancelled=cancelled)
        for i, status in enumerate(statuses):
            result.outcomes[f'x.{i}'] = OperationOutcome(address=f'x.{i}', action='create',
                                                          status=status)
        return result

    def test_success(self):
        assert self._result(SUCCEEDED, SUCCEEDED).status == RUN_SUCCESS

    def test_partial_failure(self):
        assert self._result(SUCCEEDED, FAILED, SKIPPED).status == RUN_PARTIAL_FAILURE

    def test_cancelled(self):
        result = self._result(SUCCEEDED, SKIPPED, cancelled=True)
        assert result.status == RUN_CANCELLED
        assert not result.success

    def test_cancel_after_last_wave_is_success(self):
        assert self._result(SUCCEEDED, cancelled=True).status == RUN_SUCCESS


class TestApply:
    """Tests for WaveExecutor.apply() happy paths."""

    def test_chain_applies_in_order_and_resolves_references(self, store, engine_config):
        provider = FakeProvider()
        result = _apply(make_stack(chain_resources()), provider, store, engine_config)

        assert result.status == RUN_SUCCESS
        assert provider.calls == [
            ('create', 'network.net1'), ('create', 'cluster.c1'), ('create', 'pool.p1'),
        ]
        cluster = store.get('cluster.c1')
        assert cluster.inputs == {'network': 'fake://network/net1'}
        assert cluster.configuration == {'network': '${network.net1.self_link}'}
        assert store.get('pool.p1').inputs == {'cluster': 'cluster/c1', 'size': 3}
        assert store.get('pool.p1').dependencies == ['cluster.c1']

    def test_name_passed_to_create(self, store, engine_config):
        provider = FakeProvider()
        _apply(make_stack(chain_resources()), provider, store, engine_config)
        assert provider.objects['network.net1']['name'] == 'net1'
        assert 'name' not in store.get('network.net1').inputs

    def test_second_apply_is_noop(self, store, engine_config):
        stack = make_stack(chain_resources())
        provider = FakeProvider()
        _apply(stack, provider, store, engine_config)

        p = plan(ResourceGraph(stack), store)
        assert p.operations == []

    def test_state_written_after_each_operation(self, store, engine_config):
        stack = make_stack(chain_resources())
        _apply(stack, FakeProvider(), store, engine_config)
        data = json.loads(engine_config.state_file('test').read_text())
        assert data['serial'] == 3
        assert sorted(data['resources']) == ['cluster.c1', 'network.net1', 'pool.p1']

    def test_update_calls_provider_update(self, store, engine_config):
        provider = FakeProvider()
        _apply(make_stack(chain_resources()), provider, store, engine_config)

        changed = chain_resources()
        changed[2]['configuration']['size'] = 5
        result = _apply(make_stack(changed), provider, store, engine_config)
        assert result.success
        assert provider.calls[-1] == ('update', 'pool.p1')
        assert store.get('pool.p1').inputs['size'] == 5

    def test_upstream_change_propagates_in_same_run(self, store, engine_config):
        def resources(version):
            return [
                {'type': 'cluster', 'name': 'c1', 'configuration': {'version': version}},
                {'type': 'pool', 'name': 'p1',
                 'configuration': {'cluster_version': '${cluster.c1.version}'}},
                {'type': 'dns', 'name': 'd1', 'configuration': {'target': '${cluster.c1.id}'}},
            ]

        provider = FakeProvider()
        _apply(make_stack(resources('1.27')), provider, store, engine_config)
        provider.calls.clear()

        stack = make_stack(resources('1.28'))
        result = _apply(stack, provider, store, engine_config)
        assert result.success
        assert provider.calls == [('update', 'cluster.c1'), ('update', 'pool.p1')]
        assert provider.objects['pool.p1']['cluster_version'] == '1.28'
        assert result.outcomes['dns.d1'].status == UNCHANGED
        assert plan(ResourceGraph(stack), store).operations == []

    def test_removed_dependency_deleted_after_dependent_moves(self, store, engine_config):
        provider = FakeProvider()
        _apply(make_stack([
            {'type': 'sa', 'name': 'old'},
            {'type': 'release', 'name': 'hub', 'configuration': {'account': '${sa.old.id}'}},
        ]), provider, store, engine_config)
        provider.calls.clear()

        result = _apply(make_stack([
            {'type': 'sa', 'name': 'new'},
            {'type': 'release', 'name': 'hub', 'configuration': {'account': '${sa.new.id}'}},
        ]), provider, store, engine_config)
        assert result.success
        assert provider.calls == [
            ('create', 'sa.new'), ('update', 'release.hub'), ('delete', 'sa.old'),
        ]
        assert store.get('release.hub').dependencies == ['sa.new']

    def test_parallel_wave(self, store, engine_config):
        resources = [{'type': 'helm-release', 'name': n} for n in ('a', 'b', 'c', 'd')]
        provider = FakeProvider()
        result = _apply(make_stack(resources), provider, store, engine_config)
        assert len(result.succeeded) == 4
        assert sorted(a for _, a in provider.calls) == [
            'helm-release.a', 'helm-release.b', 'helm-release.c', 'helm-release.d',
        ]

    def test_unknown_provider_fails_resource(self, store, engine_config):
        stack = make_stack(chain_resources())
        p = plan(ResourceGraph(stack), store)
        executor = WaveExecutor(providers={}, store=store, config=engine_config)
        result = executor.apply(p)
        assert "Provider 'fake' is not configured" in result.outcomes['network.net1'].error


class TestRetries:
    """Tests for transient/permanent error handling."""

    def test_transient_twice_then_success(self, store, engine_config):
        provider = FakeProvider(failures={
            'network.net1': [TransientProviderError('rate limited'),
                             TransientProviderError('rate limited')],
        })
        delays = []
        result = _apply(make_stack(chain_resources()), provider, store, engine_config,
                        sleep=delays.append)
        assert result.success
        assert result.outcomes['network.net1'].attempts == 3
        assert result.outcomes['cluster.c1'].attempts == 1
        assert len(delays) == 2

    def test_backoff_delays_grow(self, store, engine_config):
        config = engine_config.with_overrides({'max_attempts': 4, 'backoff_base': 1.0,
                                               'backoff_max': 3.0})
        provider = FakeProvider(failures={
            'network.net1': [TransientProviderError('busy')] * 3,
        })
        delays = []
        _apply(make_stack(chain_resources()[:1]), provider, store, config, sleep=delays.append)
        assert delays == [1.0, 2.0, 3.0]

    def test_transient_exhausted(self, store, engine_config):
        provider = FakeProvider(failures={
            'network.net1': [TransientProviderError('busy')] * 5,
        })
        result = _apply(make_stack(chain_resources()), provider, store, engine_config)
        outcome = result.outcomes['network.net1']
        assert outcome.status == FAILED
        assert outcome.attempts == engine_config.max_attempts
        assert 'gave up after 3 attempts' in outcome.error

    def test_permanent_not_retried(self, store, engine_config):
        provider = FakeProvider(failures={
            'network.net1': [PermanentProviderError('invalid cidr')],
        })
        result = _apply(make_stack(chain_resources()), provider, store, engine_config)
        outcome = result.outcomes['network.net1']
        assert outcome.status == FAILED
        assert outcome.attempts == 1
        assert outcome.error == 'invalid cidr'

    def test_unexpected_exception_fails_resource(self, store, engine_config):
        provider = FakeProvider(failures={'network.net1': [RuntimeError('boom')]})
        result = _apply(make_stack(chain_resources()), provider, store, engine_config)
        assert result.outcomes['network.net1'].error == 'RuntimeError: boom'


class TestPartialFailure:
    """Tests for failure isolation and re-run after failure."""

    def _resources(self):
        return [
            {'type': 'network', 'name': 'net1'},
            {'type': 'cluster', 'name': 'c1', 'configuration': {'n': '${network.net1.id}'}},
            {'type': 'service-account', 'name': 'sa', 'depends_on': ['network.net1']},
            {'type': 'pool', 'name': 'p1', 'configuration': {'c': '${cluster.c1.id}'}},
        ]

    def test_siblings_finish_later_waves_skipped(self, store, engine_config):
        provider = FakeProvider(failures={'cluster.c1': [PermanentProviderError('quota')]})
        result = _apply(make_stack(self._resources()), provider, store, engine_config)

        assert result.status == RUN_PARTIAL_FAILURE
        assert result.outcomes['network.net1'].status == SUCCEEDED
        assert result.outcomes['cluster.c1'].status == FAILED
        assert result.outcomes['service-account.sa'].status == SUCCEEDED
        assert result.outcomes['pool.p1'].status == SKIPPED
        assert ('create', 'pool.p1') not in provider.calls
        assert store.get('cluster.c1') is None
        assert store.get('service-account.sa') is not None

    def test_replan_after_failure_contains_only_remaining_work(self, store, engine_config):
        stack = make_stack(self._resources())
        provider = FakeProvider(failures={'cluster.c1': [PermanentProviderError('quota')]})
        _apply(stack, provider, store, engine_config)

        p = plan(ResourceGraph(stack), store)
        assert [op.address for op in p.operations] == ['cluster.c1', 'pool.p1']

        result = _executor(provider, store, engine_config).apply(p)
        assert result.success
        assert plan(ResourceGraph(stack), store).operations == []


class TestReadiness:
    """Tests for readiness waiting."""

    def test_waits_until_ready(self, store, engine_config):
        resources = chain_resources()
        resources[1]['readiness'] = {'timeout': 60, 'interval': 1}
        provider = FakeProvider(ready_after={'cluster.c1': 3})
        sleeps = []
        result = _apply(make_stack(resources), provider, store, engine_config,
                        sleep=sleeps.append)
        assert result.success
        assert sleeps == [1.0, 1.0]

    def test_timeout_fails_and_taints(self, store, engine_config):
        resources = chain_resources()
        resources[1]['readiness'] = {'timeout': 0}
        provider = FakeProvider(ready_after={'cluster.c1': None})
        result = _apply(make_stack(resources), provider, store, engine_config)

        assert result.outcomes['cluster.c1'].status == FAILED
        assert 'Timed out' in result.outcomes['cluster.c1'].error
        assert result.outcomes['pool.p1'].status == SKIPPED
        assert store.get('cluster.c1').tainted

        p = plan(ResourceGraph(make_stack(resources)), store)
        assert [(op.action, op.address) for op in p.operations] == [
            ('update', 'cluster.c1'), ('create', 'pool.p1'),
        ]

    def test_provider_without_ready_is_ready(self, store, engine_config):
        class NoReady(FakeProvider):
            ready = None

        resources = chain_resources()
        resources[0]['readiness'] = True
        result = _apply(make_stack(resources), NoReady(), store, engine_config)
        assert result.success


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_before_apply_skips_everything(self, store, engine_config):
        provider = FakeProvider()
        p = plan(ResourceGraph(make_stack(chain_resources())), store)
        executor = _executor(provider, store, engine_config)
        executor.cancel()
        result = executor.apply(p)
        assert result.status == RUN_CANCELLED
        assert provider.calls == []
        assert all(o.status == SKIPPED for o in result.outcomes.values())

    def test_cancel_during_wave_finishes_in_flight(self, store, engine_config):
        provider = FakeProvider()
        executor = _executor(provider, store, engine_config)
        original_create = provider.create

        def create_then_cancel(resource_type, config):
            out = original_create(resource_type, config)
            if resource_type == 'network':
                executor.cancel()
            return out

        provider.create = create_then_cancel
        p = plan(ResourceGraph(make_stack(chain_resources())), store)
        result = executor.apply(p)

        assert result.status == RUN_CANCELLED
        assert result.outcomes['network.net1'].status == SUCCEEDED
        assert result.outcomes['cluster.c1'].status == SKIPPED
        assert result.outcomes['cluster.c1'].error == 'cancelled'
        assert store.get('network.net1') is not None


class TestDestroyAndConflicts:
    """Tests for destroy plans, dry-run and state conflicts."""

    def test_destroy_reverse_order(self, store, engine_config):
        provider = FakeProvider()
        _apply(make_stack(chain_resources()), provider, store, engine_config)

        result = _executor(provider, store, engine_config).apply(plan_destroy(store))
        assert result.success
        assert [c for c in provider.calls if c[0] == 'delete'] == [
            ('delete', 'pool.p1'), ('delete', 'cluster.c1'), ('delete', 'network.net1'),
        ]
        assert store.records == {}

    def test_dry_run_calls_nothing(self, store, engine_config, capsys):
        provider = FakeProvider()
        p = plan(ResourceGraph(make_stack(chain_resources())), store)
        result = _executor(provider, store, engine_config, dry_run=True).apply(p)
        assert provider.calls == []
        assert all(o.status == PENDING for o in result.outcomes.values())
        assert not engine_config.state_file('test').exists()
        out = capsys.readouterr().out
        assert 'DRY-RUN APPLY' in out
        assert '+ create cluster.c1' in out

    def test_stale_plan_rejected(self, store, engine_config):
        stack = make_stack(chain_resources())
        p = plan(ResourceGraph(stack), store)

        other = StateStore.load(engine_config.state_file('test'), 'test')
        _apply(make_stack(chain_resources()[:1]), FakeProvider(), other, engine_config)

        provider = FakeProvider()
        with pytest.raises(StateConflictError):
            _executor(provider, store, engine_config).apply(p)
        assert provider.calls == []
