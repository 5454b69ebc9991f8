import unittest
from datetime import timedelta

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from pool_autoscaler.common.timestamps import utcnow
from pool_autoscaler.metrics import QueueSnapshot
from pool_autoscaler.state import schema
from pool_autoscaler.state.events import EventRecorder


def sqlite_engine():
    return create_engine('sqlite://', poolclass=StaticPool, connect_args={'check_same_thread': False})


class TestEventRecorder(unittest.TestCase):

    def setUp(self):
        self.engine = sqlite_engine()
        schema.create_tables(self.engine, locks=False, cooldowns=False, events=True)
        self.recorder = EventRecorder(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def test_append_stores_snapshot(self):
        snapshot = QueueSnapshot(queue_depth=150, oldest_job_age_seconds=400.0, claimed_jobs=3)

        event = self.recorder.append('default', 'scale_up', 2, 3, 'queue_depth=150 >= 100', snapshot=snapshot)

        self.assertIsNotNone(event.id)
        self.assertTrue(event.scaled)
        self.assertEqual(event.queue_depth, 150)
        self.assertEqual(event.snapshot['claimed_jobs'], 3)

        stored = self.recorder.recent(limit=1)[0]
        self.assertEqual(stored.reason, 'queue_depth=150 >= 100')
        self.assertEqual(stored.latency_seconds, 400.0)
        self.assertFalse(stored.dry_run)

    def test_unknown_action_is_not_recorded(self):
        self.assertIsNone(self.recorder.append('default', 'exploded', 0, 0, 'bad'))
        self.assertEqual(self.recorder.count(), 0)

    def test_missing_table_disables_recording(self):
        recorder = EventRecorder(sqlite_engine())

        self.assertFalse(recorder.available)
        self.assertIsNone(recorder.append('default', 'skipped', 0, 0, 'lock held'))
        self.assertEqual(recorder.recent(), [])
        self.assertEqual(recorder.stats()['total'], 0)

    def test_recent_filters_by_pool(self):
        self.recorder.append('critical', 'scale_up', 1, 2, 'up')
        self.recorder.append('batch', 'scale_down', 3, 2, 'down')
        self.recorder.append('critical', 'skipped', 2, 3, 'cooldown, 30 s remaining')

        critical = self.recorder.recent(pool='critical')

        self.assertEqual([e.action for e in critical], ['skipped', 'scale_up'])

    def test_by_action(self):
        self.recorder.append('default', 'error', 0, 0, 'MetricsError: boom')
        self.recorder.append('default', 'scale_up', 1, 2, 'up')

        errors = self.recorder.by_action('error')

        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].reason, 'MetricsError: boom')

    def test_stats(self):
        self.recorder.append('default', 'scale_up', 1, 2, 'up', snapshot=QueueSnapshot(queue_depth=100))
        self.recorder.append('default', 'scale_up', 2, 3, 'up', snapshot=QueueSnapshot(queue_depth=200))
        self.recorder.append('default', 'scale_down', 3, 2, 'down', snapshot=QueueSnapshot(queue_depth=0))
        self.recorder.append('other', 'error', 0, 0, 'boom')

        stats = self.recorder.stats(pool='default')

        self.assertEqual(stats['total'], 3)
        self.assertEqual(stats['scale_up_count'], 2)
        self.assertEqual(stats['scale_down_count'], 1)
        self.assertEqual(stats['error_count'], 0)
        self.assertAlmostEqual(stats['avg_queue_depth'], 100.0)

    def test_count_since(self):
        self.recorder.append('default', 'scale_up', 1, 2, 'old', at=utcnow() - timedelta(days=2))
        self.recorder.append('default', 'scale_up', 2, 3, 'new')

        self.assertEqual(self.recorder.count(), 2)
        self.assertEqual(self.recorder.count(since=utcnow() - timedelta(days=1)), 1)

    def test_cleanup_removes_old_events(self):
        self.recorder.append('default', 'scale_up', 1, 2, 'old', at=utcnow() - timedelta(days=45))
        self.recorder.append('default', 'scale_up', 2, 3, 'new')

        self.assertEqual(self.recorder.cleanup(keep_days=30), 1)
        self.assertEqual([e.reason for e in self.recorder.recent()], ['new'])

    def test_dry_run_flag(self):
        event = self.recorder.append('default', 'scale_down', 2, 1, 'idle', dry_run=True)

        self.assertTrue(event.dry_run)
        self.assertTrue(self.recorder.recent()[0].dry_run)


if __name__ == '__main__':
    unittest.main()
