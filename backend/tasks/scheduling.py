# tasks/scheduling.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class TaskStatus(IntEnum):
    NOT_STARTED = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    ON_HOLD = 3
    CANCELLED = 4

    @property
    def label(self) -> str:
        return self.name.replace('_', ' ').title()


class TaskPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.title()


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class DependencyError(Exception):
    """Base class for rejected dependency or hierarchy operations."""

    code = 'dependency_error'

    def __init__(self, message: str, task_ids: Iterable[int] = ()):
        super().__init__(message)
        self.task_ids = tuple(task_ids)


class SelfDependencyError(DependencyError):
    code = 'self_dependency'


class CyclicDependencyError(DependencyError):
    code = 'cyclic_dependency'


class TaskNotFoundError(DependencyError):
    code = 'task_not_found'


class HierarchyCycleError(DependencyError):
    code = 'hierarchy_cycle'


@dataclass
class TaskRecord:
    """
    In-memory snapshot of a task, as handed to the scheduler.

    Dependency and hierarchy edges are stored as task ids. `dependent_ids`
    and `subtask_ids` are the inverse edges and are filled in by
    `link_records`.
    """

    id: int
    start_date: datetime
    end_date: datetime
    name: str = ''
    status: TaskStatus = TaskStatus.NOT_STARTED
    priority: TaskPriority = TaskPriority.NORMAL
    progress: int = 0
    estimated_hours: float = 0.0
    actual_hours: float = 0.0
    assignee: str = ''
    category: str = 'General'
    completion_date: Optional[datetime] = None
    parent_id: Optional[int] = None
    dependency_ids: List[int] = field(default_factory=list)
    dependent_ids: List[int] = field(default_factory=list)
    subtask_ids: List[int] = field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def duration_days(self) -> float:
        return self.duration.total_seconds() / 86400

    @property
    def is_milestone(self) -> bool:
        return self.duration_days <= 0

    @property
    def is_leaf(self) -> bool:
        return not self.subtask_ids

    @property
    def is_parent(self) -> bool:
        return bool(self.subtask_ids)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_completed_early(self) -> bool:
        return self.completion_date is not None and self.completion_date < self.end_date

    @property
    def completion_variance_days(self) -> float:
        """Days finished early (positive) or late (negative); 0 when not completed."""
        if self.completion_date is None:
            return 0.0
        return (self.end_date - self.completion_date).total_seconds() / 86400

    @property
    def duration_display(self) -> str:
        days = self.duration_days
        if days <= 0:
            return 'Milestone'
        if days == 1:
            return '1 day'
        return f'{days:.1f} days'

    def is_overdue(self, today: Optional[datetime] = None) -> bool:
        if today is None:
            today = datetime.now(self.end_date.tzinfo)
        return self.end_date < today and not self.is_terminal


def link_records(records: Iterable[TaskRecord]) -> List[TaskRecord]:
    """
    Fill the inverse edges (`dependent_ids`, `subtask_ids`) of a task set.

    Ids that point outside the supplied set are ignored. Returns the records
    as a list in their original order.
    """
    records = list(records)
    task_map = {r.id: r for r in records}

    for record in records:
        record.dependent_ids = []
        record.subtask_ids = []

    for record in records:
        for dep_id in record.dependency_ids:
            prerequisite = task_map.get(dep_id)
            if prerequisite is None:
                logger.warning("Task %s depends on unknown task %s", record.id, dep_id)
                continue
            if record.id not in prerequisite.dependent_ids:
                prerequisite.dependent_ids.append(record.id)
        if record.parent_id is not None and record.parent_id in task_map:
            task_map[record.parent_id].subtask_ids.append(record.id)

    return records


class DependencyScheduler:
    """
    Dependency and scheduling engine for a single project's task set.

    Every public method takes the full task set of the project and works on
    it as a transient snapshot; nothing is kept between calls.

    Components:
    - Graph validation: rejects dependency edges that would close a cycle
    - Hierarchy roll-up: weighted progress of parent tasks
    - Critical path: longest cumulative-duration dependency chain
    - Rescheduling: forward-only cascade of late finishes
    """

    def __init__(self, tolerance_days: float = 0.1, gap_days: float = 1):
        """
        Args:
            tolerance_days: Completion variance below which a task counts as
                finished on schedule
            gap_days: Days between a prerequisite's finish and the earliest
                start of its dependents
        """
        self.tolerance_days = tolerance_days
        self.gap = timedelta(days=gap_days)

    # Graph helpers

    def build_task_map(self, all_tasks: Iterable[TaskRecord]) -> Dict[int, TaskRecord]:
        return {task.id: task for task in all_tasks}

    def build_dependency_map(self, all_tasks: Iterable[TaskRecord]) -> Dict[int, List[int]]:
        """
        Build reverse dependency map: task_id -> ids of tasks depending on it.

        Dependent ids keep the order in which tasks appear in `all_tasks`.
        Dependencies on ids outside the task set are skipped.
        """
        all_tasks = list(all_tasks)
        task_ids = {task.id for task in all_tasks}
        dependency_map: Dict[int, List[int]] = {task.id: [] for task in all_tasks}

        for task in all_tasks:
            for dep_id in task.dependency_ids:
                if dep_id in task_ids and task.id not in dependency_map[dep_id]:
                    dependency_map[dep_id].append(task.id)

        return dependency_map

    def build_children_map(self, all_tasks: Iterable[TaskRecord]) -> Dict[int, List[int]]:
        all_tasks = list(all_tasks)
        children_map: Dict[int, List[int]] = {task.id: [] for task in all_tasks}
        for task in all_tasks:
            if task.parent_id is not None and task.parent_id in children_map:
                children_map[task.parent_id].append(task.id)
        return children_map

    def get_task(self, task_id: int, task_map: Dict[int, TaskRecord]) -> TaskRecord:
        try:
            return task_map[task_id]
        except KeyError:
            raise TaskNotFoundError(f'Task {task_id} not found', [task_id]) from None

    # Graph validation

    def validate_no_cycle(
        self,
        candidate_dependent: int,
        candidate_prerequisite: int,
        all_tasks: Iterable[TaskRecord]
    ) -> None:
        """
        Check that `candidate_dependent` may start depending on `candidate_prerequisite`.

        Walks the existing dependencies of the prerequisite depth-first; if the
        walk reaches the dependent, the new edge would close a cycle.

        Args:
            candidate_dependent: Id of the task that would wait
            candidate_prerequisite: Id of the task that would be waited on
            all_tasks: Full task set of the project

        Raises:
            SelfDependencyError: Both ids are the same task, checked before lookup
            TaskNotFoundError: Either id is not in the task set
            CyclicDependencyError: The edge would create a cycle
        """
        if candidate_dependent == candidate_prerequisite:
            raise SelfDependencyError(
                f'Task {candidate_dependent} cannot depend on itself', [candidate_dependent]
            )

        task_map = self.build_task_map(all_tasks)
        dependent = self.get_task(candidate_dependent, task_map)
        prerequisite = self.get_task(candidate_prerequisite, task_map)

        visited: Set[int] = set()
        stack = [prerequisite.id]
        while stack:
            task_id = stack.pop()
            if task_id == dependent.id:
                raise CyclicDependencyError(
                    f'Task {dependent.id} depending on task {prerequisite.id} '
                    f'would create a circular dependency',
                    [dependent.id, prerequisite.id]
                )
            if task_id in visited:
                continue
            visited.add(task_id)

            task = task_map.get(task_id)
            if task:
                stack.extend(d for d in task.dependency_ids if d in task_map)

    def has_cycle(self, task: TaskRecord, all_tasks: Iterable[TaskRecord]) -> bool:
        """Return True if a dependency cycle is reachable from `task`."""
        task_map = self.build_task_map(all_tasks)
        visited: Set[int] = set()
        rec_stack: Set[int] = set()

        def dfs(task_id: int) -> bool:
            if task_id in rec_stack:
                return True
            if task_id in visited:
                return False

            visited.add(task_id)
            rec_stack.add(task_id)

            current = task_map.get(task_id)
            if current:
                for dep_id in current.dependency_ids:
                    if dep_id in task_map and dfs(dep_id):
                        return True

            rec_stack.remove(task_id)
            return False

        task_map.setdefault(task.id, task)
        return dfs(task.id)

    def detect_circular_dependencies(self, all_tasks: Iterable[TaskRecord]) -> List[tuple]:
        """
        Detect circular dependencies using depth-first search.

        Returns list of cycles found as tuples of task IDs, each closing on
        the id it starts with.
        """
        task_map = self.build_task_map(all_tasks)
        visited: Set[int] = set()
        rec_stack: Set[int] = set()
        cycles = []

        def dfs(task_id: int, path: List[int]):
            if task_id in rec_stack:
                cycle_start = path.index(task_id)
                cycles.append(tuple(path[cycle_start:] + [task_id]))
                return

            if task_id in visited:
                return

            visited.add(task_id)
            rec_stack.add(task_id)

            for dep_id in task_map[task_id].dependency_ids:
                if dep_id in task_map:
                    dfs(dep_id, path + [task_id])

            rec_stack.remove(task_id)

        for task_id in task_map:
            if task_id not in visited:
                dfs(task_id, [])

        return cycles

    def validate_parent(
        self,
        task_id: int,
        new_parent_id: Optional[int],
        all_tasks: Iterable[TaskRecord]
    ) -> None:
        """
        Check that `task_id` may be placed under `new_parent_id`.

        Raises:
            TaskNotFoundError: Either id is not in the task set
            HierarchyCycleError: The task would become its own ancestor
        """
        task_map = self.build_task_map(all_tasks)
        task = self.get_task(task_id, task_map)
        if new_parent_id is None:
            return

        parent = self.get_task(new_parent_id, task_map)
        if parent.id == task.id:
            raise HierarchyCycleError(f'Task {task.id} cannot be its own parent', [task.id])

        descendant_ids = {d.id for d in self.get_all_descendants(task, task_map.values())}
        if parent.id in descendant_ids:
            raise HierarchyCycleError(
                f'Task {parent.id} is a subtask of task {task.id}',
                [task.id, parent.id]
            )

    # Hierarchy roll-up

    def calculated_progress(self, task: TaskRecord, all_tasks: Iterable[TaskRecord]) -> int:
        """
        Effective progress of a task, 0-100.

        Leaf tasks report their own progress. Parent tasks report the mean of
        their children's effective progress weighted by estimated hours, where
        every child weighs at least 1.0.
        """
        task_map = self.build_task_map(all_tasks)
        children_map = self.build_children_map(task_map.values())
        return self._rollup(task, task_map, children_map, set())

    def progress_map(self, all_tasks: Iterable[TaskRecord]) -> Dict[int, int]:
        """Effective progress of every task, keyed by id, from one pass over shared maps."""
        task_map = self.build_task_map(all_tasks)
        children_map = self.build_children_map(task_map.values())
        memo: Dict[int, int] = {}
        for task in task_map.values():
            if task.id not in memo:
                self._rollup(task, task_map, children_map, set(), memo)
        return memo

    def _rollup(
        self,
        task: TaskRecord,
        task_map: Dict[int, TaskRecord],
        children_map: Dict[int, List[int]],
        visited: Set[int],
        memo: Optional[Dict[int, int]] = None
    ) -> int:
        if memo is not None and task.id in memo:
            return memo[task.id]
        visited.add(task.id)
        children = [
            task_map[child_id]
            for child_id in children_map.get(task.id, [])
            if child_id not in visited
        ]
        if not children:
            progress = task.progress
        else:
            total_weight = 0.0
            weighted_progress = 0.0
            for child in children:
                weight = max(child.estimated_hours, 1.0)
                total_weight += weight
                weighted_progress += self._rollup(child, task_map, children_map, visited, memo) * weight
            progress = int(round(weighted_progress / total_weight)) if total_weight else 0

        if memo is not None:
            memo[task.id] = progress
        return progress

    def get_all_descendants(self, task: TaskRecord, all_tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
        """All subtasks below `task`, depth-first in pre-order."""
        task_map = self.build_task_map(all_tasks)
        children_map = self.build_children_map(task_map.values())
        descendants: List[TaskRecord] = []
        seen = {task.id}

        def walk(task_id: int):
            for child_id in children_map.get(task_id, []):
                if child_id in seen:
                    continue
                seen.add(child_id)
                descendants.append(task_map[child_id])
                walk(child_id)

        walk(task.id)
        return descendants

    def get_all_ancestors(self, task: TaskRecord, all_tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
        """Parent first, root last."""
        task_map = self.build_task_map(all_tasks)
        ancestors: List[TaskRecord] = []
        seen = {task.id}
        current = task_map.get(task.parent_id) if task.parent_id is not None else None
        while current is not None and current.id not in seen:
            seen.add(current.id)
            ancestors.append(current)
            current = task_map.get(current.parent_id) if current.parent_id is not None else None
        return ancestors

    def hierarchy_level(self, task: TaskRecord, all_tasks: Iterable[TaskRecord]) -> int:
        return len(self.get_all_ancestors(task, all_tasks))

    def root_task(self, task: TaskRecord, all_tasks: Iterable[TaskRecord]) -> TaskRecord:
        ancestors = self.get_all_ancestors(task, all_tasks)
        return ancestors[-1] if ancestors else task

    # Critical path

    def critical_path(self, all_tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
        """
        Find the dependency chain with the greatest total duration.

        Chains start at source tasks (no dependencies) and follow dependents
        forward. Ties keep the chain found first, so callers should pass tasks
        in a stable order.

        Args:
            all_tasks: Full task set of the project

        Returns:
            Tasks on the critical path in dependency order; empty if there are
            no tasks or no source tasks
        """
        all_tasks = list(all_tasks)
        if not all_tasks:
            return []

        task_map = self.build_task_map(all_tasks)
        dependency_map = self.build_dependency_map(all_tasks)

        sources = [
            task for task in all_tasks
            if not any(dep_id in task_map for dep_id in task.dependency_ids)
        ]

        critical: List[TaskRecord] = []
        critical_days = None
        memo: Dict[int, Tuple[List[TaskRecord], float]] = {}
        for source in sources:
            path, days = self._longest_path(source, task_map, dependency_map, frozenset(), memo)
            if critical_days is None or days > critical_days:
                critical, critical_days = path, days

        logger.info(
            "Critical path identified with %d tasks and %.1f day duration",
            len(critical), critical_days or 0.0
        )
        return critical

    def _longest_path(
        self,
        task: TaskRecord,
        task_map: Dict[int, TaskRecord],
        dependency_map: Dict[int, List[int]],
        visited: frozenset,
        memo: Dict[int, Tuple[List[TaskRecord], float]]
    ) -> Tuple[List[TaskRecord], float]:
        """
        Longest chain starting at `task` as (tasks, days).

        `memo` holds the best chain per task id so shared suffixes are walked
        once. `visited` is the current branch and only guards against cycles;
        a remembered chain that runs into it is recomputed.
        """
        if task.id in visited:
            return [], 0.0
        cached = memo.get(task.id)
        if cached is not None and visited.isdisjoint(t.id for t in cached[0]):
            return cached
        visited = visited | {task.id}

        best_sub_path: List[TaskRecord] = []
        best_days = None
        for dependent_id in dependency_map.get(task.id, []):
            sub_path, days = self._longest_path(
                task_map[dependent_id], task_map, dependency_map, visited, memo
            )
            if not sub_path:
                continue
            if best_days is None or days > best_days:
                best_sub_path, best_days = sub_path, days

        result = ([task] + best_sub_path, task.duration_days + (best_days or 0.0))
        memo[task.id] = result
        return result

    def path_duration_days(self, path: Iterable[TaskRecord]) -> float:
        return sum(task.duration_days for task in path)

    # Rescheduling

    def shift_dependents(self, completed_task: TaskRecord, all_tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
        """
        Push dependents of a late-finishing task forward.

        Dependents that would now start before the completed task finished are
        moved to start `gap_days` after it, keeping their duration, and the
        shift is carried on to their own dependents. Dependents are never moved
        earlier, and completed or cancelled tasks are never moved.

        Args:
            completed_task: Task whose completion date was just recorded
            all_tasks: Full task set of the project

        Returns:
            Shifted tasks in the order they were visited, for the caller to
            persist
        """
        if completed_task.completion_date is None:
            logger.debug("Task %s has no completion date, no dependency shifting needed", completed_task.id)
            return []

        variance = completed_task.completion_variance_days
        if abs(variance) < self.tolerance_days:
            logger.debug("Task %s completed on schedule, no dependency shifting needed", completed_task.id)
            return []

        logger.info(
            "Task %s completed with %.1f day variance, checking dependencies",
            completed_task.id, variance
        )

        all_tasks = list(all_tasks)
        task_map = self.build_task_map(all_tasks)
        task_map.setdefault(completed_task.id, completed_task)
        dependency_map = self.build_dependency_map(task_map.values())

        updated: Dict[int, TaskRecord] = {}
        self._cascade(
            completed_task, completed_task.completion_date,
            task_map, dependency_map, {completed_task.id}, updated
        )
        return list(updated.values())

    def _cascade(
        self,
        anchor: TaskRecord,
        anchor_finish: datetime,
        task_map: Dict[int, TaskRecord],
        dependency_map: Dict[int, List[int]],
        path: Set[int],
        updated: Dict[int, TaskRecord]
    ) -> None:
        new_start = anchor_finish + self.gap

        for dependent_id in dependency_map.get(anchor.id, []):
            dependent = task_map[dependent_id]
            # Tasks on the current chain can only be reached again through a cycle
            if dependent.is_terminal or dependent.id in path:
                continue
            if new_start <= dependent.start_date:
                continue

            original_start = dependent.start_date
            duration = dependent.duration
            dependent.start_date = new_start
            dependent.end_date = new_start + duration
            updated.setdefault(dependent.id, dependent)

            logger.info(
                "Shifted dependent task %s from %s to %s",
                dependent.id, original_start.date(), new_start.date()
            )

            path.add(dependent.id)
            self._cascade(dependent, dependent.end_date, task_map, dependency_map, path, updated)
            path.remove(dependent.id)

    # Status transitions

    def next_status(self, status: TaskStatus) -> TaskStatus:
        transitions = {
            TaskStatus.NOT_STARTED: TaskStatus.IN_PROGRESS,
            TaskStatus.IN_PROGRESS: TaskStatus.COMPLETED,
            TaskStatus.COMPLETED: TaskStatus.NOT_STARTED,
        }
        return transitions.get(status, TaskStatus.IN_PROGRESS)

    def apply_status(self, task: TaskRecord, new_status: TaskStatus, now: Optional[datetime] = None) -> TaskRecord:
        """
        Move a task to `new_status`, adjusting progress and completion date.

        Stored progress is only touched on leaf tasks; a parent's progress
        is always derived from its subtasks. Returns the same record.
        """
        if now is None:
            now = datetime.now(task.end_date.tzinfo)
        original_status = task.status
        task.status = TaskStatus(new_status)

        if task.is_leaf:
            if task.status == TaskStatus.NOT_STARTED:
                task.progress = 0
            elif task.status == TaskStatus.IN_PROGRESS:
                task.progress = max(task.progress, 1)
            elif task.status == TaskStatus.COMPLETED:
                task.progress = 100

        if task.status == TaskStatus.COMPLETED:
            if original_status != TaskStatus.COMPLETED and task.completion_date is None:
                task.completion_date = now
        else:
            task.completion_date = None

        return task

    # Statistics

    def project_statistics(self, all_tasks: Iterable[TaskRecord], today: Optional[datetime] = None) -> Dict:
        all_tasks = list(all_tasks)
        total = len(all_tasks)
        completed = sum(1 for t in all_tasks if t.status == TaskStatus.COMPLETED)

        return {
            'total_tasks': total,
            'completed_tasks': completed,
            'in_progress_tasks': sum(1 for t in all_tasks if t.status == TaskStatus.IN_PROGRESS),
            'overdue_tasks': sum(1 for t in all_tasks if t.is_overdue(today)),
            'progress_percentage': round(completed / total * 100, 2) if total else 0.0,
            'total_estimated_hours': sum(t.estimated_hours for t in all_tasks),
            'total_actual_hours': sum(t.actual_hours for t in all_tasks),
            'earliest_start_date': min((t.start_date for t in all_tasks), default=None),
            'latest_end_date': max((t.end_date for t in all_tasks), default=None),
        }
