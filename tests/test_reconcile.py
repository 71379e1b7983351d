"""Tests for the reconcile planner, the reconciler and background monitors.

USE THIS FILE FOR:
- Pure diff planning (no nodes)
- End-to-end reconcile passes over the fake fleet
- Monitor loops driving reconcile and topology changes
"""
import threading
import time
from unittest.mock import Mock

import pytest
from asserts import assert_equal

from alarmsync.client import AlarmSync, ReconcileMonitor, Reconciler, TopologyMonitor
from alarmsync.client import compute_reconcile_plan
from alarmsync.models import ForeignTask, ListError, Task, UnsupportedTrigger
from fixtures import FakeFleet, make_alarm, make_config


class TestPlan:
    """Test the pure desired-vs-observed diff."""

    @pytest.mark.parametrize(('desired', 'observed', 'expected'), [
        ({}, {}, ([], [])),
        ({'v1': 1}, {}, (['v1'], [])),
        ({}, {'loda_v2': 1}, ([], ['loda_v2'])),
        ({'v3': 1}, {'v3': 1}, ([], [])),
        ({'b': 1, 'a': 1, 'c': 1}, {'c': 1, 'd': 1}, (['a', 'b'], ['d'])),
    ])
    def test_plan(self, desired, observed, expected):
        assert compute_reconcile_plan(desired, observed) == expected

    def test_content_changes_are_ignored(self):
        """Verify an alarm already observed under its id is not updated.
        """
        desired = {'loda_v1': make_alarm('loda_v1', value='10')}
        observed = {'loda_v1': Task('loda_v1', script='old body')}
        assert compute_reconcile_plan(desired, observed) == ([], [])


class TestReconciler:
    """Test plan execution against mocked node operations."""

    def test_issues_creates_and_removes(self):
        operations = Mock()
        reconciler = Reconciler(operations, make_config())
        alarm = make_alarm('v1')

        report = reconciler.run({'v1': alarm}, {'loda_old': Task('loda_old')})

        operations.create.assert_called_once_with(alarm)
        operations.remove.assert_called_once_with('loda_old')
        assert report.created == ['v1']
        assert report.removed == ['loda_old']
        assert report.ok

    def test_nothing_to_do(self):
        operations = Mock()
        report = Reconciler(operations, make_config()).run({'v3': make_alarm('v3')}, {'v3': Task('v3')})
        operations.create.assert_not_called()
        operations.remove.assert_not_called()
        assert report.operations == 0

    def test_failures_are_collected(self):
        """Verify one failing alarm does not stop the others.
        """
        def create(alarm):
            if alarm.version == 'bad':
                raise UnsupportedTrigger('deadman')

        operations = Mock()
        operations.create.side_effect = create
        report = Reconciler(operations, make_config()).run(
            {'good': make_alarm('good'), 'bad': make_alarm('bad')}, {})

        assert report.created == ['good']
        assert isinstance(report.failed['bad'], UnsupportedTrigger)
        assert not report.ok


class TestEndToEnd:
    """Test reconcile passes through the engine and fake fleet."""

    def test_missing_alarm_is_created(self, sync, fleet):
        """Verify one desired alarm and no tasks yields exactly one create.
        """
        report = sync.reconcile({'v1': make_alarm('v1')})

        assert report.created == ['v1']
        assert fleet.total_created == 1
        assert fleet.total_deleted == 0
        task = fleet.nodes[sync.node_for('v1')].created[0]
        assert task.id == 'v1'
        assert 'SELECT mean(value)' in task.script
        assert '.crit(lambda: "mean" > 90 )' in task.script
        assert 'hour("time")' not in task.script

    def test_stale_task_is_broadcast_deleted(self, sync, fleet):
        """Verify an observed task not desired is deleted on every node.
        """
        fleet.node('node-b').add_task('loda_v2')

        report = sync.reconcile({})

        assert report.removed == ['loda_v2']
        assert fleet.total_created == 0
        for node in fleet.nodes.values():
            assert node.deleted == ['loda_v2']

    def test_matching_state_is_untouched(self, sync, fleet):
        fleet.node('node-a').add_task('v3')

        report = sync.reconcile({'v3': make_alarm('v3')})

        assert report.operations == 0
        assert fleet.total_created == 0
        assert fleet.total_deleted == 0

    def test_second_pass_is_a_no_op(self, sync, fleet):
        """Verify reconcile is idempotent once the first pass succeeded.
        """
        fleet.node('node-c').add_task('loda_gone')
        desired = {f'loda_{i}': make_alarm(f'loda_{i}') for i in range(20)}

        first = sync.reconcile(desired)
        created, deleted = fleet.total_created, fleet.total_deleted
        second = sync.reconcile(desired)

        assert_equal(len(first.created), 20)
        assert_equal(first.removed, ['loda_gone'])
        assert_equal(second.operations, 0)
        assert (fleet.total_created, fleet.total_deleted) == (created, deleted)

    def test_alarms_spread_over_nodes(self, sync, fleet):
        desired = {f'loda_{i}': make_alarm(f'loda_{i}') for i in range(60)}
        sync.reconcile(desired)
        assert all(node.created for node in fleet.nodes.values())

    def test_foreign_task_is_reported_not_deleted(self, sync, fleet):
        fleet.node('node-a').add_task('someone_else')

        report = sync.reconcile({})

        assert isinstance(report.failed['someone_else'], ForeignTask)
        assert fleet.total_deleted == 0

    def test_alarm_dicts_are_accepted(self, sync, fleet):
        report = sync.reconcile({'loda_d': {'version': 'loda_d', 'db': 'd', 'rp': 'r', 'measurement': 'm'}})
        assert report.created == ['loda_d']

    def test_listing_failure_aborts_pass(self, sync, fleet):
        """Verify an unlistable node stops the pass so its tasks are not recreated.
        """
        fleet.node('node-a').fail_list = True
        with pytest.raises(ListError):
            sync.reconcile({'v1': make_alarm('v1')})
        assert fleet.total_created == 0

    def test_partial_failure_corrected_next_pass(self, sync, fleet):
        """Verify a create that failed is issued again by the next pass.
        """
        owner = fleet.nodes[sync.node_for('loda_v1')]
        owner.fail_create = True
        first = sync.reconcile({'loda_v1': make_alarm('loda_v1')})
        owner.fail_create = False
        second = sync.reconcile({'loda_v1': make_alarm('loda_v1')})

        assert 'loda_v1' in first.failed
        assert second.created == ['loda_v1']

    def test_skipped_measurements(self, fleet):
        """Verify opted-out measurements are neither created nor removed.
        """
        engine = AlarmSync(['node-a'], make_config(skip_measurements=('agent.alive',)), fleet)
        fleet.node('node-a').add_task('loda_alive_old')
        desired = {
            'loda_alive': make_alarm('loda_alive', measurement='agent.alive'),
            'loda_alive_old': make_alarm('loda_alive_old', measurement='agent.alive'),
        }

        report = engine.reconcile(desired)

        assert report.skipped == ['loda_alive']
        assert report.operations == 0

    def test_topology_change_keeps_tasks_in_place(self, sync, fleet):
        """Verify a node join does not recreate tasks already running elsewhere.
        """
        desired = {f'loda_{i}': make_alarm(f'loda_{i}') for i in range(30)}
        sync.reconcile(desired)
        sync.set_topology(['node-a', 'node-b', 'node-c', 'node-d'])

        report = sync.reconcile(desired)

        assert report.operations == 0

    def test_status(self, sync):
        sync.reconcile({'v1': make_alarm('v1')})
        status = sync.get_status()
        assert len(status['addresses']) == 3
        assert status['last_report']['created'] == 1
        assert status['list_policy'] == 'fail_fast'


class TestMonitors:
    """Test background loops."""

    def test_topology_monitor_rebuilds_on_change_only(self):
        sync = Mock()
        addresses = ['node-a']
        monitor = TopologyMonitor(sync, lambda: addresses, 1.0, threading.Event())

        monitor.check()
        monitor.check()
        addresses.append('node-b')
        monitor.check()

        assert sync.set_topology.call_count == 2
        sync.set_topology.assert_called_with(('node-a', 'node-b'))

    def test_reconcile_monitor_calls_provider(self):
        sync = Mock()
        alarms = {'v1': make_alarm('v1')}
        monitor = ReconcileMonitor(sync, lambda: alarms, 1.0, threading.Event())
        monitor.check()
        sync.reconcile.assert_called_once_with(alarms)

    def test_monitors_drive_engine(self, fleet):
        """Verify started monitors reconcile in the background until stopped.
        """
        desired = {'loda_bg': make_alarm('loda_bg')}

        def created():
            return 'http://node-a:9092' in fleet.nodes and fleet.node('node-a').created

        with AlarmSync(config=make_config(), client_factory=fleet) as engine:
            engine.start_monitors(alarm_provider=lambda: desired, address_provider=lambda: ['node-a'])
            deadline = time.time() + 5
            while not created() and time.time() < deadline:
                time.sleep(0.01)
            assert set(engine.get_status()['monitors']) == {'reconcile', 'topology'}

        assert engine.get_status()['monitors'] == []
        assert [t.id for t in fleet.node('node-a').created] == ['loda_bg']

    def test_monitor_survives_errors(self):
        """Verify an exception in one check does not end the loop.
        """
        calls = []
        done = threading.Event()

        def provider():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError('provider down')

        shutdown = threading.Event()
        monitor = ReconcileMonitor(Mock(), provider, 0.01, shutdown)
        monitor.start()
        assert done.wait(timeout=5)
        shutdown.set()
        monitor.thread.join(timeout=5)
        assert len(calls) >= 2
