# tasks/tests.py
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest import mock

from django.test import TestCase, override_settings
from rest_framework.test import APITestCase

from . import views
from .models import Project, Task, build_records
from .scheduling import (
    CyclicDependencyError,
    DependencyScheduler,
    HierarchyCycleError,
    SelfDependencyError,
    TaskNotFoundError,
    TaskRecord,
    TaskStatus,
    link_records,
)


def day(n):
    """Midnight on day `n` of January 2025."""
    return datetime(2025, 1, 1) + timedelta(days=n - 1)


def make_task(task_id, start=1, days=1, **kwargs):
    return TaskRecord(id=task_id, start_date=day(start), end_date=day(start + days), **kwargs)


class TaskRecordTestCase(TestCase):
    """Tests for the derived accessors of a task record."""

    def test_duration(self):
        """Duration is end minus start."""
        task = make_task(1, start=1, days=4)
        self.assertEqual(task.duration, timedelta(days=4))
        self.assertEqual(task.duration_days, 4.0)

    def test_milestone_when_dates_equal(self):
        """A task with equal start and end dates is a milestone."""
        task = make_task(1, start=3, days=0)
        self.assertTrue(task.is_milestone)
        self.assertEqual(task.duration_display, 'Milestone')

    def test_duration_display(self):
        self.assertEqual(make_task(1, days=1).duration_display, '1 day')
        self.assertEqual(make_task(1, days=3).duration_display, '3.0 days')

    def test_overdue(self):
        """Past end date and still open means overdue; completed or cancelled never is."""
        today = day(20)
        self.assertTrue(make_task(1, start=1, days=2, status=TaskStatus.IN_PROGRESS).is_overdue(today))
        self.assertFalse(make_task(2, start=1, days=2, status=TaskStatus.COMPLETED).is_overdue(today))
        self.assertFalse(make_task(3, start=1, days=2, status=TaskStatus.CANCELLED).is_overdue(today))
        self.assertFalse(make_task(4, start=25, days=2).is_overdue(today))

    def test_overdue_defaults_to_now_for_aware_dates(self):
        """Timezone-aware records compare against an aware current time."""
        start = datetime(2000, 1, 1, tzinfo=dt_timezone.utc)
        task = TaskRecord(id=1, start_date=start, end_date=start + timedelta(days=1))
        self.assertTrue(task.is_overdue())

    def test_completion_variance(self):
        """Positive when finished early, negative when late, zero when not completed."""
        task = make_task(1, start=5, days=5)
        self.assertEqual(task.completion_variance_days, 0.0)

        task.completion_date = day(8)
        self.assertEqual(task.completion_variance_days, 2.0)
        self.assertTrue(task.is_completed_early)

        task.completion_date = day(13)
        self.assertEqual(task.completion_variance_days, -3.0)
        self.assertFalse(task.is_completed_early)

    def test_link_records_fills_inverse_edges(self):
        """Dependents and subtasks are derived from dependencies and parent ids."""
        parent = make_task(1)
        child = make_task(2, parent_id=1, dependency_ids=[3])
        other = make_task(3)
        orphan = make_task(4, dependency_ids=[99], parent_id=98)

        link_records([parent, child, other, orphan])

        self.assertEqual(parent.subtask_ids, [2])
        self.assertEqual(other.dependent_ids, [2])
        self.assertTrue(child.is_leaf)
        self.assertTrue(parent.is_parent)
        self.assertEqual(orphan.dependent_ids, [])


class GraphValidationTestCase(TestCase):
    """Tests for dependency cycle detection."""

    def setUp(self):
        self.scheduler = DependencyScheduler()
        # A depends on B, B depends on C
        self.a = make_task(1, dependency_ids=[2])
        self.b = make_task(2, dependency_ids=[3])
        self.c = make_task(3)
        self.tasks = [self.a, self.b, self.c]

    def test_self_dependency_rejected(self):
        """A task can never depend on itself."""
        for task in self.tasks:
            with self.assertRaises(SelfDependencyError) as ctx:
                self.scheduler.validate_no_cycle(task.id, task.id, self.tasks)
            self.assertEqual(ctx.exception.code, 'self_dependency')

    def test_self_dependency_rejected_before_lookup(self):
        """Same ids are a self edge even when the task is not in the set."""
        with self.assertRaises(SelfDependencyError):
            self.scheduler.validate_no_cycle(99, 99, self.tasks)

    def test_closing_cycle_rejected(self):
        """Proposing C depends on A closes A -> B -> C -> A."""
        with self.assertRaises(CyclicDependencyError) as ctx:
            self.scheduler.validate_no_cycle(self.c.id, self.a.id, self.tasks)
        self.assertEqual(ctx.exception.code, 'cyclic_dependency')

    def test_direct_back_edge_rejected(self):
        with self.assertRaises(CyclicDependencyError):
            self.scheduler.validate_no_cycle(self.b.id, self.a.id, self.tasks)

    def test_valid_edge_accepted(self):
        """Edges that follow the existing direction are fine and nothing is mutated."""
        self.assertIsNone(self.scheduler.validate_no_cycle(self.a.id, self.c.id, self.tasks))
        self.assertEqual(self.a.dependency_ids, [2])

    def test_unknown_task(self):
        with self.assertRaises(TaskNotFoundError) as ctx:
            self.scheduler.validate_no_cycle(self.a.id, 42, self.tasks)
        self.assertEqual(ctx.exception.task_ids, (42,))

    def test_shared_ancestors_terminate(self):
        """Diamond-shaped graphs are walked once per node."""
        top = make_task(10, dependency_ids=[11, 12])
        left = make_task(11, dependency_ids=[13])
        right = make_task(12, dependency_ids=[13])
        bottom = make_task(13)
        tasks = [top, left, right, bottom]
        self.scheduler.validate_no_cycle(top.id, bottom.id, tasks)
        with self.assertRaises(CyclicDependencyError):
            self.scheduler.validate_no_cycle(bottom.id, top.id, tasks)

    def test_gated_insertions_stay_acyclic(self):
        """Graphs built only through validated insertions never contain a cycle."""
        tasks = [make_task(i) for i in range(1, 7)]
        task_map = {t.id: t for t in tasks}
        proposals = [(1, 2), (2, 3), (3, 1), (4, 1), (1, 4), (5, 4), (3, 5), (6, 6), (6, 3), (2, 6)]

        for dependent_id, prerequisite_id in proposals:
            try:
                self.scheduler.validate_no_cycle(dependent_id, prerequisite_id, tasks)
            except (SelfDependencyError, CyclicDependencyError):
                continue
            task_map[dependent_id].dependency_ids.append(prerequisite_id)

        for task in tasks:
            self.assertFalse(self.scheduler.has_cycle(task, tasks))
        self.assertEqual(self.scheduler.detect_circular_dependencies(tasks), [])

    def test_has_cycle_on_legacy_data(self):
        """Cycles that slipped into stored data are detected."""
        self.c.dependency_ids = [1]
        self.assertTrue(self.scheduler.has_cycle(self.a, self.tasks))

    def test_has_cycle_false_for_chain(self):
        self.assertFalse(self.scheduler.has_cycle(self.a, self.tasks))

    def test_detect_circular_dependencies(self):
        """Each detected cycle closes on its starting task."""
        self.c.dependency_ids = [1]
        cycles = self.scheduler.detect_circular_dependencies(self.tasks)

        self.assertEqual(len(cycles), 1)
        self.assertEqual(cycles[0], (1, 2, 3, 1))


class HierarchyTestCase(TestCase):
    """Tests for progress roll-up and hierarchy guards."""

    def setUp(self):
        self.scheduler = DependencyScheduler()

    def test_leaf_reports_stored_progress(self):
        task = make_task(1, progress=37)
        self.assertEqual(self.scheduler.calculated_progress(task, [task]), 37)

    def test_weighted_rollup(self):
        """X at 100% over 10h and Y at 0% over 30h gives the parent 25%."""
        parent = make_task(1, progress=90)
        x = make_task(2, parent_id=1, progress=100, estimated_hours=10)
        y = make_task(3, parent_id=1, progress=0, estimated_hours=30)

        self.assertEqual(self.scheduler.calculated_progress(parent, [parent, x, y]), 25)
        self.assertEqual(parent.progress, 90, "Roll-up must not write stored progress")

    def test_rollup_independent_of_child_order(self):
        parent = make_task(1)
        x = make_task(2, parent_id=1, progress=100, estimated_hours=10)
        y = make_task(3, parent_id=1, progress=0, estimated_hours=30)

        forward = self.scheduler.calculated_progress(parent, [parent, x, y])
        backward = self.scheduler.calculated_progress(parent, [y, x, parent])
        self.assertEqual(forward, backward)

    def test_unestimated_children_weigh_one(self):
        """Zero-estimate children still count with weight 1.0."""
        parent = make_task(1)
        done = make_task(2, parent_id=1, progress=100, estimated_hours=0)
        todo = make_task(3, parent_id=1, progress=0, estimated_hours=0)
        self.assertEqual(self.scheduler.calculated_progress(parent, [parent, done, todo]), 50)

    def test_nested_rollup(self):
        """Grandchildren roll up through their own parent first."""
        root = make_task(1)
        phase = make_task(2, parent_id=1, estimated_hours=1)
        leaf_a = make_task(3, parent_id=2, progress=100, estimated_hours=1)
        leaf_b = make_task(4, parent_id=2, progress=0, estimated_hours=3)
        sibling = make_task(5, parent_id=1, progress=75, estimated_hours=1)
        tasks = [root, phase, leaf_a, leaf_b, sibling]

        self.assertEqual(self.scheduler.calculated_progress(phase, tasks), 25)
        self.assertEqual(self.scheduler.calculated_progress(root, tasks), 50)

    def test_ancestors_and_descendants(self):
        root = make_task(1)
        child = make_task(2, parent_id=1)
        grandchild = make_task(3, parent_id=2)
        other = make_task(4, parent_id=1)
        tasks = [root, child, grandchild, other]

        self.assertEqual([t.id for t in self.scheduler.get_all_descendants(root, tasks)], [2, 3, 4])
        self.assertEqual([t.id for t in self.scheduler.get_all_ancestors(grandchild, tasks)], [2, 1])
        self.assertEqual(self.scheduler.hierarchy_level(grandchild, tasks), 2)
        self.assertEqual(self.scheduler.root_task(grandchild, tasks).id, 1)
        self.assertEqual(self.scheduler.root_task(root, tasks).id, 1)

    def test_reparent_under_descendant_rejected(self):
        root = make_task(1)
        child = make_task(2, parent_id=1)
        grandchild = make_task(3, parent_id=2)
        tasks = [root, child, grandchild]

        with self.assertRaises(HierarchyCycleError):
            self.scheduler.validate_parent(1, 3, tasks)
        with self.assertRaises(HierarchyCycleError):
            self.scheduler.validate_parent(2, 2, tasks)
        with self.assertRaises(TaskNotFoundError):
            self.scheduler.validate_parent(2, 99, tasks)

        self.assertIsNone(self.scheduler.validate_parent(3, 1, tasks))
        self.assertIsNone(self.scheduler.validate_parent(2, None, tasks))

    def test_progress_map_rolls_up_every_task(self):
        """One pass gives the same numbers as asking task by task."""
        root = make_task(1)
        phase = make_task(2, parent_id=1, estimated_hours=1)
        leaf_a = make_task(3, parent_id=2, progress=100, estimated_hours=1)
        leaf_b = make_task(4, parent_id=2, progress=0, estimated_hours=3)
        sibling = make_task(5, parent_id=1, progress=75, estimated_hours=1)
        tasks = [leaf_b, sibling, root, leaf_a, phase]

        with mock.patch.object(
            self.scheduler, 'build_children_map', wraps=self.scheduler.build_children_map
        ) as children_map:
            progress = self.scheduler.progress_map(tasks)

        self.assertEqual(progress, {1: 50, 2: 25, 3: 100, 4: 0, 5: 75})
        self.assertEqual(children_map.call_count, 1, "Maps should be built once for the whole set")


class CriticalPathTestCase(TestCase):
    """Tests for the longest-duration dependency chain."""

    def setUp(self):
        self.scheduler = DependencyScheduler()

    def test_longest_chain_wins(self):
        """A(5d) -> B(3d) -> C(4d) beats a lone D(2d)."""
        a = make_task(1, start=1, days=5)
        b = make_task(2, start=6, days=3, dependency_ids=[1])
        c = make_task(3, start=9, days=4, dependency_ids=[2])
        d = make_task(4, start=1, days=2)

        path = self.scheduler.critical_path([a, b, c, d])

        self.assertEqual([t.id for t in path], [1, 2, 3])
        self.assertEqual(self.scheduler.path_duration_days(path), 12)

    def test_branch_choice(self):
        """At a fork the longer branch is followed."""
        a = make_task(1, days=1)
        short = make_task(2, days=1, dependency_ids=[1])
        long = make_task(3, days=6, dependency_ids=[1])
        tail = make_task(4, days=1, dependency_ids=[2])

        path = self.scheduler.critical_path([a, short, long, tail])
        self.assertEqual([t.id for t in path], [1, 3])

    def test_tie_keeps_first_source(self):
        first = make_task(1, days=3)
        second = make_task(2, days=3)
        path = self.scheduler.critical_path([first, second])
        self.assertEqual([t.id for t in path], [1])

    def test_empty_input(self):
        self.assertEqual(self.scheduler.critical_path([]), [])

    def test_no_sources(self):
        """A fully cyclic task set has no source tasks."""
        a = make_task(1, dependency_ids=[2])
        b = make_task(2, dependency_ids=[1])
        self.assertEqual(self.scheduler.critical_path([a, b]), [])

    def test_cyclic_data_terminates(self):
        """A cycle downstream of a source does not hang the search."""
        source = make_task(1, days=1)
        b = make_task(2, days=2, dependency_ids=[1, 3])
        c = make_task(3, days=2, dependency_ids=[2])
        path = self.scheduler.critical_path([source, b, c])
        self.assertEqual([t.id for t in path], [1, 2, 3])

    def test_layered_graph_walks_each_task_once(self):
        """
        20 layers of 2 tasks, each depending on both tasks of the layer
        before. There are 2**20 chains but shared tails are only walked once.
        """
        tasks = []
        for layer in range(20):
            previous = [2 * layer - 1, 2 * layer] if layer else []
            tasks.append(make_task(2 * layer + 1, start=layer + 1, dependency_ids=previous))
            tasks.append(make_task(2 * layer + 2, start=layer + 1, dependency_ids=previous))

        original = DependencyScheduler._longest_path
        with mock.patch.object(
            DependencyScheduler, '_longest_path', autospec=True, side_effect=original
        ) as walk:
            path = self.scheduler.critical_path(tasks)

        self.assertEqual(len(path), 20)
        self.assertEqual([t.id for t in path], list(range(1, 40, 2)), "Ties keep the first chain found")
        self.assertEqual(self.scheduler.path_duration_days(path), 20)
        self.assertLess(walk.call_count, 200)


class RescheduleTestCase(TestCase):
    """Tests for cascading date shifts after a task completes."""

    def setUp(self):
        self.scheduler = DependencyScheduler()
        # T planned day 5 -> day 10
        self.t = make_task(1, start=5, days=5, status=TaskStatus.COMPLETED)
        self.u = make_task(2, start=11, days=1, dependency_ids=[1])
        self.v = make_task(3, start=12, days=2, dependency_ids=[2])
        self.tasks = [self.t, self.u, self.v]

    def test_on_time_completion_is_noop(self):
        self.t.completion_date = day(10)
        self.assertEqual(self.scheduler.shift_dependents(self.t, self.tasks), [])
        self.assertEqual(self.u.start_date, day(11))

    def test_within_tolerance_is_noop(self):
        """A couple of hours late counts as on schedule."""
        self.t.completion_date = day(10) + timedelta(hours=2)
        self.assertEqual(self.scheduler.shift_dependents(self.t, self.tasks), [])

    def test_no_completion_date_is_noop(self):
        self.assertEqual(self.scheduler.shift_dependents(self.t, self.tasks), [])

    def test_late_finish_cascades(self):
        """Three days late pushes U to day 14 and V after U, in that order."""
        self.t.completion_date = day(13)

        shifted = self.scheduler.shift_dependents(self.t, self.tasks)

        self.assertEqual([t.id for t in shifted], [2, 3])
        self.assertEqual(self.u.start_date, day(14))
        self.assertEqual(self.u.end_date, day(15), "Duration must be preserved")
        self.assertEqual(self.v.start_date, day(16))
        self.assertEqual(self.v.end_date, day(18))

    def test_early_finish_never_pulls_forward(self):
        self.t.completion_date = day(8)

        shifted = self.scheduler.shift_dependents(self.t, self.tasks)

        self.assertEqual(shifted, [])
        self.assertEqual(self.u.start_date, day(11))
        self.assertEqual(self.v.start_date, day(12))

    def test_terminal_dependents_untouched(self):
        self.u.status = TaskStatus.CANCELLED
        self.t.completion_date = day(13)

        shifted = self.scheduler.shift_dependents(self.t, self.tasks)

        self.assertEqual(shifted, [])
        self.assertEqual(self.u.start_date, day(11))
        self.assertEqual(self.v.start_date, day(12))

    def test_dependent_with_slack_stops_cascade(self):
        """A dependent already starting after the new date is not moved."""
        self.v.start_date = day(30)
        self.v.end_date = day(31)
        self.t.completion_date = day(13)

        shifted = self.scheduler.shift_dependents(self.t, self.tasks)

        self.assertEqual([t.id for t in shifted], [2])
        self.assertEqual(self.v.start_date, day(30))

    def test_diamond_reported_once(self):
        """A task reached along two branches ends after the later one, listed once."""
        w = make_task(4, start=11, days=4, dependency_ids=[1])
        self.v.dependency_ids = [2, 4]
        tasks = self.tasks + [w]
        self.t.completion_date = day(13)

        shifted = self.scheduler.shift_dependents(self.t, tasks)

        self.assertEqual([t.id for t in shifted], [2, 3, 4])
        self.assertEqual(w.end_date, day(18))
        self.assertEqual(self.v.start_date, day(19))

    def test_cyclic_data_terminates(self):
        self.u.dependency_ids = [1, 3]
        self.t.completion_date = day(13)

        shifted = self.scheduler.shift_dependents(self.t, self.tasks)

        self.assertEqual([t.id for t in shifted], [2, 3])

    def test_custom_gap(self):
        scheduler = DependencyScheduler(gap_days=0)
        self.t.completion_date = day(13)
        scheduler.shift_dependents(self.t, self.tasks)
        self.assertEqual(self.u.start_date, day(13))


class StatusAndStatisticsTestCase(TestCase):

    def setUp(self):
        self.scheduler = DependencyScheduler()

    def test_status_cycle(self):
        self.assertEqual(self.scheduler.next_status(TaskStatus.NOT_STARTED), TaskStatus.IN_PROGRESS)
        self.assertEqual(self.scheduler.next_status(TaskStatus.IN_PROGRESS), TaskStatus.COMPLETED)
        self.assertEqual(self.scheduler.next_status(TaskStatus.COMPLETED), TaskStatus.NOT_STARTED)
        self.assertEqual(self.scheduler.next_status(TaskStatus.ON_HOLD), TaskStatus.IN_PROGRESS)

    def test_apply_status_progress_and_completion(self):
        task = make_task(1, progress=0)

        self.scheduler.apply_status(task, TaskStatus.IN_PROGRESS, day(3))
        self.assertEqual(task.progress, 1)
        self.assertIsNone(task.completion_date)

        self.scheduler.apply_status(task, TaskStatus.COMPLETED, day(4))
        self.assertEqual(task.progress, 100)
        self.assertEqual(task.completion_date, day(4))

        self.scheduler.apply_status(task, TaskStatus.NOT_STARTED, day(5))
        self.assertEqual(task.progress, 0)
        self.assertIsNone(task.completion_date)

    def test_apply_status_leaves_parent_progress(self):
        """A parent's stored progress is never written by a status change."""
        parent = make_task(1, progress=40)
        child = make_task(2, parent_id=1, progress=10)
        link_records([parent, child])

        self.scheduler.apply_status(parent, TaskStatus.COMPLETED, day(4))
        self.assertEqual(parent.progress, 40)
        self.assertEqual(parent.completion_date, day(4))

        self.scheduler.apply_status(parent, TaskStatus.NOT_STARTED, day(5))
        self.assertEqual(parent.progress, 40)
        self.assertIsNone(parent.completion_date)

    def test_apply_status_keeps_given_completion_date(self):
        task = make_task(1, completion_date=day(2))
        self.scheduler.apply_status(task, TaskStatus.COMPLETED, day(9))
        self.assertEqual(task.completion_date, day(2))

    def test_project_statistics(self):
        tasks = [
            make_task(1, start=1, days=2, status=TaskStatus.COMPLETED, estimated_hours=4, actual_hours=5),
            make_task(2, start=2, days=3, status=TaskStatus.IN_PROGRESS, estimated_hours=6),
            make_task(3, start=10, days=5, estimated_hours=2),
            make_task(4, start=3, days=1, status=TaskStatus.CANCELLED),
        ]

        stats = self.scheduler.project_statistics(tasks, today=day(8))

        self.assertEqual(stats['total_tasks'], 4)
        self.assertEqual(stats['completed_tasks'], 1)
        self.assertEqual(stats['in_progress_tasks'], 1)
        self.assertEqual(stats['overdue_tasks'], 1)
        self.assertEqual(stats['progress_percentage'], 25.0)
        self.assertEqual(stats['total_estimated_hours'], 12)
        self.assertEqual(stats['total_actual_hours'], 5)
        self.assertEqual(stats['earliest_start_date'], day(1))
        self.assertEqual(stats['latest_end_date'], day(15))

    def test_empty_statistics(self):
        stats = self.scheduler.project_statistics([])
        self.assertEqual(stats['progress_percentage'], 0.0)
        self.assertIsNone(stats['earliest_start_date'])


def aware_day(n):
    return day(n).replace(tzinfo=dt_timezone.utc)


class TaskModelTestCase(TestCase):
    """Tests for turning stored tasks into scheduler records."""

    def test_build_records(self):
        project = Project.objects.create(name='Hull')
        a = Task.objects.create(project=project, name='A', start_date=aware_day(1), end_date=aware_day(3))
        b = Task.objects.create(project=project, name='B', start_date=aware_day(4), end_date=aware_day(5), parent=a)
        b.dependencies.add(a)

        records = build_records(Task.objects.filter(project=project).order_by('id'))

        self.assertEqual([r.id for r in records], [a.id, b.id])
        self.assertEqual(records[0].dependent_ids, [b.id])
        self.assertEqual(records[0].subtask_ids, [b.id])
        self.assertEqual(records[1].dependency_ids, [a.id])
        self.assertEqual(records[1].status, TaskStatus.NOT_STARTED)
        self.assertEqual(list(a.dependents.all()), [b])


@override_settings(GANTT_SCHEDULER={'ON_SCHEDULE_TOLERANCE_DAYS': 0.1, 'RESCHEDULE_GAP_DAYS': 1})
class TaskApiTestCase(APITestCase):
    """End-to-end tests of the REST endpoints."""

    def setUp(self):
        self.project = Project.objects.create(name='Refit')
        self.t = self.create_task('T', 5, 10)
        self.u = self.create_task('U', 11, 12)
        self.v = self.create_task('V', 12, 13)
        self.u.dependencies.add(self.t)
        self.v.dependencies.add(self.u)

    def create_task(self, name, start, end, **kwargs):
        return Task.objects.create(
            project=self.project, name=name,
            start_date=aware_day(start), end_date=aware_day(end), **kwargs
        )

    def test_health(self):
        response = self.client.get('/api/tasks/health/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'healthy')

    def test_create_project_and_task(self):
        response = self.client.post('/api/tasks/projects/', {'name': 'Drydock'}, format='json')
        self.assertEqual(response.status_code, 201)
        project_id = response.data['project_id']

        response = self.client.post('/api/tasks/add/', {
            'project': project_id,
            'name': 'Paint',
            'start_date': '2025-01-02T00:00:00Z',
            'end_date': '2025-01-04T00:00:00Z',
            'estimated_hours': 8,
        }, format='json')
        self.assertEqual(response.status_code, 201)
        self.assertTrue(Task.objects.filter(id=response.data['task_id'], project_id=project_id).exists())

    def test_create_task_rejects_inverted_dates(self):
        response = self.client.post('/api/tasks/add/', {
            'project': self.project.id,
            'name': 'Backwards',
            'start_date': '2025-01-05T00:00:00Z',
            'end_date': '2025-01-02T00:00:00Z',
        }, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data['success'])

    def test_add_dependency(self):
        response = self.client.post(f'/api/tasks/{self.v.id}/dependencies/', {'prerequisite': self.t.id}, format='json')
        self.assertEqual(response.status_code, 201)
        self.assertTrue(self.v.dependencies.filter(id=self.t.id).exists())

        response = self.client.post(f'/api/tasks/{self.v.id}/dependencies/', {'prerequisite': self.t.id}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['created'])

    def test_add_dependency_rejects_cycle(self):
        response = self.client.post(f'/api/tasks/{self.t.id}/dependencies/', {'prerequisite': self.v.id}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'cyclic_dependency')
        self.assertFalse(self.t.dependencies.exists())

    def test_add_dependency_rejects_self(self):
        response = self.client.post(f'/api/tasks/{self.t.id}/dependencies/', {'prerequisite': self.t.id}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'self_dependency')

    def test_add_dependency_unknown_prerequisite(self):
        response = self.client.post(f'/api/tasks/{self.t.id}/dependencies/', {'prerequisite': 9999}, format='json')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data['code'], 'task_not_found')

    def test_remove_dependency(self):
        response = self.client.delete(f'/api/tasks/{self.v.id}/dependencies/{self.u.id}/')
        self.assertEqual(response.status_code, 200)
        self.assertFalse(self.v.dependencies.exists())

        response = self.client.delete(f'/api/tasks/{self.v.id}/dependencies/{self.u.id}/')
        self.assertEqual(response.status_code, 404)

    def test_late_completion_shifts_and_persists(self):
        response = self.client.post(f'/api/tasks/{self.t.id}/status/', {
            'status': 'completed',
            'completion_date': '2025-01-13T00:00:00Z',
        }, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual([t['id'] for t in response.data['shifted_tasks']], [self.u.id, self.v.id])

        self.t.refresh_from_db()
        self.u.refresh_from_db()
        self.v.refresh_from_db()
        self.assertEqual(self.t.status, TaskStatus.COMPLETED)
        self.assertEqual(self.t.progress, 100)
        self.assertEqual(self.u.start_date, aware_day(14))
        self.assertEqual(self.u.end_date, aware_day(15))
        self.assertEqual(self.v.start_date, aware_day(16))

    def test_status_advance_without_body(self):
        response = self.client.post(f'/api/tasks/{self.u.id}/status/', {}, format='json')
        self.assertEqual(response.status_code, 200)
        self.u.refresh_from_db()
        self.assertEqual(self.u.status, TaskStatus.IN_PROGRESS)
        self.assertEqual(self.u.progress, 1)

    def test_unknown_status(self):
        response = self.client.post(f'/api/tasks/{self.u.id}/status/', {'status': 'exploded'}, format='json')
        self.assertEqual(response.status_code, 400)

    def test_critical_path(self):
        response = self.client.get(f'/api/tasks/projects/{self.project.id}/critical-path/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual([t['id'] for t in response.data['tasks']], [self.t.id, self.u.id, self.v.id])
        self.assertEqual(response.data['total_duration_days'], 7)

    def test_progress_rollup_in_listing(self):
        parent = self.create_task('Phase', 1, 20)
        self.create_task('X', 1, 2, parent=parent, progress=100, estimated_hours=10)
        self.create_task('Y', 1, 2, parent=parent, progress=0, estimated_hours=30)

        response = self.client.get(f'/api/tasks/{parent.id}/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['task']['calculated_progress'], 25)
        self.assertEqual(len(response.data['task']['descendants']), 2)

    def test_reparent_guard(self):
        child = self.create_task('Child', 5, 6, parent=self.t)
        response = self.client.post(f'/api/tasks/{self.t.id}/parent/', {'parent': child.id}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'hierarchy_cycle')

        response = self.client.post(f'/api/tasks/{child.id}/parent/', {'parent': None}, format='json')
        self.assertEqual(response.status_code, 200)
        child.refresh_from_db()
        self.assertIsNone(child.parent_id)

    def test_statistics(self):
        response = self.client.get(f'/api/tasks/projects/{self.project.id}/statistics/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['statistics']['total_tasks'], 3)

    def test_validate_reports_legacy_cycle(self):
        response = self.client.get(f'/api/tasks/projects/{self.project.id}/validate/')
        self.assertTrue(response.data['valid'])

        self.t.dependencies.add(self.v)
        response = self.client.get(f'/api/tasks/projects/{self.project.id}/validate/')
        self.assertFalse(response.data['valid'])
        self.assertIn('circular_dependencies', response.data)

    def test_missing_project(self):
        response = self.client.get('/api/tasks/projects/9999/critical-path/')
        self.assertEqual(response.status_code, 404)

    def test_dependency_check_runs_under_project_lock(self):
        """The cycle check sees the graph only after the project row is locked."""
        calls = []
        real_lock = views.lock_project
        real_validate = DependencyScheduler.validate_no_cycle

        def lock(project_id):
            calls.append('lock')
            return real_lock(project_id)

        def validate(scheduler, *args):
            calls.append('validate')
            return real_validate(scheduler, *args)

        with mock.patch.object(views, 'lock_project', side_effect=lock), \
                mock.patch.object(DependencyScheduler, 'validate_no_cycle', autospec=True, side_effect=validate):
            response = self.client.post(
                f'/api/tasks/{self.v.id}/dependencies/', {'prerequisite': self.t.id}, format='json'
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(calls, ['lock', 'validate'])

    def test_reparent_runs_under_project_lock(self):
        child = self.create_task('Child', 5, 6)
        with mock.patch.object(views, 'lock_project', wraps=views.lock_project) as lock:
            response = self.client.post(f'/api/tasks/{child.id}/parent/', {'parent': self.t.id}, format='json')

        self.assertEqual(response.status_code, 200)
        lock.assert_called_once_with(self.project.id)
        child.refresh_from_db()
        self.assertEqual(child.parent_id, self.t.id)

    def test_list_projects(self):
        Project.objects.create(name='Mothballed', is_archived=True)

        response = self.client.get('/api/tasks/projects/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual([p['name'] for p in response.data['projects']], ['Refit'])
        self.assertEqual(response.data['projects'][0]['task_count'], 3)

        response = self.client.get('/api/tasks/projects/?include_archived=true')
        self.assertEqual(response.data['total_projects'], 2)

    def test_update_task(self):
        response = self.client.patch(f'/api/tasks/{self.u.id}/', {
            'name': 'Upholstery',
            'end_date': '2025-01-14T00:00:00Z',
            'estimated_hours': 6,
        }, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['task']['name'], 'Upholstery')
        self.u.refresh_from_db()
        self.assertEqual(self.u.end_date, aware_day(14))
        self.assertEqual(self.u.start_date, aware_day(11), "Fields not sent keep their value")
        self.assertEqual(self.u.estimated_hours, 6)

    def test_update_task_checks_dates_against_stored_values(self):
        """Only the end date is sent; it still may not precede the stored start."""
        response = self.client.patch(f'/api/tasks/{self.t.id}/', {
            'end_date': '2025-01-03T00:00:00Z',
        }, format='json')
        self.assertEqual(response.status_code, 400)
        self.t.refresh_from_db()
        self.assertEqual(self.t.end_date, aware_day(10))

    def test_update_task_guards(self):
        child = self.create_task('Child', 5, 6, parent=self.t, progress=20)
        other = Project.objects.create(name='Other')

        response = self.client.patch(f'/api/tasks/{self.t.id}/', {'parent': child.id}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'hierarchy_cycle')

        response = self.client.patch(f'/api/tasks/{self.t.id}/', {'progress': 80}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'derived_progress')

        response = self.client.patch(f'/api/tasks/{self.t.id}/', {'project': other.id}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'project_change')

        response = self.client.patch(f'/api/tasks/{child.id}/', {'progress': 80}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['task']['progress'], 80)

    def test_delete_task(self):
        child = self.create_task('Child', 11, 12, parent=self.u)

        response = self.client.delete(f'/api/tasks/{self.u.id}/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['detached_subtasks'], [child.id])
        self.assertFalse(Task.objects.filter(id=self.u.id).exists())
        self.assertFalse(self.v.dependencies.exists())
        child.refresh_from_db()
        self.assertIsNone(child.parent_id)

        response = self.client.delete(f'/api/tasks/{self.u.id}/')
        self.assertEqual(response.status_code, 404)

    def test_filter_tasks_by_status_and_overdue(self):
        Task.objects.filter(id=self.t.id).update(status=TaskStatus.COMPLETED.value)
        url = f'/api/tasks/projects/{self.project.id}/tasks/'

        response = self.client.get(url, {'status': 'completed'})
        self.assertEqual([t['id'] for t in response.data['tasks']], [self.t.id])

        # All three tasks ended in January 2025; completed ones are never overdue
        response = self.client.get(url, {'overdue': 'true'})
        self.assertEqual([t['id'] for t in response.data['tasks']], [self.u.id, self.v.id])

        response = self.client.get(url, {'status': 'in_progress', 'overdue': 'true'})
        self.assertEqual(response.data['total_tasks'], 0)

        response = self.client.get(url, {'status': 'exploded'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['code'], 'invalid_status')

    def test_listing_rolls_up_progress_once(self):
        parent = self.create_task('Phase', 1, 20)
        self.create_task('X', 1, 2, parent=parent, progress=100, estimated_hours=10)
        self.create_task('Y', 1, 2, parent=parent, progress=0, estimated_hours=30)

        original = DependencyScheduler.build_children_map
        with mock.patch.object(
            DependencyScheduler, 'build_children_map', autospec=True, side_effect=original
        ) as children_map:
            response = self.client.get(f'/api/tasks/projects/{self.project.id}/tasks/')

        self.assertEqual(response.status_code, 200)
        progress = {t['id']: t['calculated_progress'] for t in response.data['tasks']}
        self.assertEqual(progress[parent.id], 25)
        self.assertEqual(children_map.call_count, 1)

    def test_parent_status_change_keeps_stored_progress(self):
        parent = self.create_task('Phase', 1, 20, progress=30)
        self.create_task('X', 1, 2, parent=parent, progress=50)

        response = self.client.post(f'/api/tasks/{parent.id}/status/', {'status': 'completed'}, format='json')

        self.assertEqual(response.status_code, 200)
        parent.refresh_from_db()
        self.assertEqual(parent.status, TaskStatus.COMPLETED)
        self.assertEqual(parent.progress, 30)
        self.assertEqual(response.data['task']['calculated_progress'], 50)
