# tasks/views.py
import logging

from django.conf import settings
from django.db import transaction
from django.db.models import Count
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .models import Project, Task, build_records
from .scheduling import (
    DependencyError,
    DependencyScheduler,
    TaskNotFoundError,
    TaskStatus,
)
from .serializers import (
    DependencyInputSerializer,
    ParentInputSerializer,
    ProjectInputSerializer,
    StatusInputSerializer,
    TaskInputSerializer,
    parse_status,
)

logger = logging.getLogger(__name__)

TRUE_VALUES = {'1', 'true', 'yes'}


def scheduler_from_settings() -> DependencyScheduler:
    config = getattr(settings, 'GANTT_SCHEDULER', {})
    return DependencyScheduler(
        tolerance_days=config.get('ON_SCHEDULE_TOLERANCE_DAYS', 0.1),
        gap_days=config.get('RESCHEDULE_GAP_DAYS', 1),
    )


def project_tasks(project_id):
    """All tasks of a project with their dependencies prefetched, in a stable order."""
    return list(
        Task.objects.filter(project_id=project_id)
        .prefetch_related('dependencies')
        .order_by('start_date', 'id')
    )


def lock_project(project_id):
    """Take the project row lock that serializes writers of its task graph."""
    return Project.objects.select_for_update().get(id=project_id)


def serialize_record(record, progress, now):
    """`progress` is the effective (rolled-up) progress from `progress_map`."""
    return {
        'id': record.id,
        'name': record.name,
        'start_date': record.start_date.isoformat(),
        'end_date': record.end_date.isoformat(),
        'duration_days': round(record.duration_days, 2),
        'duration_display': record.duration_display,
        'status': record.status.label,
        'priority': record.priority.label,
        'progress': record.progress,
        'calculated_progress': progress[record.id],
        'estimated_hours': record.estimated_hours,
        'assignee': record.assignee,
        'category': record.category,
        'parent': record.parent_id,
        'dependencies': record.dependency_ids,
        'dependents': record.dependent_ids,
        'subtasks': record.subtask_ids,
        'is_leaf': record.is_leaf,
        'is_milestone': record.is_milestone,
        'is_overdue': record.is_overdue(now),
        'completion_date': record.completion_date.isoformat() if record.completion_date else None,
        'completion_variance_days': round(record.completion_variance_days, 2),
    }


def serialize_project(project):
    return {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'start_date': project.start_date.isoformat(),
        'end_date': project.end_date.isoformat() if project.end_date else None,
        'project_manager': project.project_manager,
        'priority': project.priority,
        'is_archived': project.is_archived,
        'color': project.color,
        'task_count': project.task_count,
    }


def error_response(error, http_status=status.HTTP_400_BAD_REQUEST):
    if isinstance(error, TaskNotFoundError):
        http_status = status.HTTP_404_NOT_FOUND
    return Response({
        'success': False,
        'error': str(error),
        'code': error.code
    }, status=http_status)


def bad_request(message, code):
    return Response({
        'success': False,
        'error': message,
        'code': code
    }, status=status.HTTP_400_BAD_REQUEST)


def not_found(kind, object_id):
    return Response({
        'success': False,
        'error': f'{kind} with ID "{object_id}" not found',
        'code': 'task_not_found' if kind == 'Task' else 'project_not_found'
    }, status=status.HTTP_404_NOT_FOUND)


def server_error(e):
    logger.exception("Unexpected error while handling request")
    return Response({
        'success': False,
        'error': str(e)
    }, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


@api_view(['GET'])
def health_check(request):
    """
    GET /api/tasks/health/

    Simple health check endpoint to verify API is running.
    """
    return Response({
        'status': 'healthy',
        'message': 'Gantt Planner API is running',
        'projects': Project.objects.filter(is_archived=False).count(),
        'timestamp': timezone.now().isoformat()
    }, status=status.HTTP_200_OK)


@api_view(['GET', 'POST'])
def projects(request):
    """
    GET /api/tasks/projects/?include_archived=true
    POST /api/tasks/projects/

    GET lists projects, archived ones only on request.
    POST required fields: name
    Optional: description, start_date, end_date, project_manager, priority, color
    """
    if request.method == 'GET':
        try:
            queryset = Project.objects.annotate(task_count=Count('tasks'))
            if request.query_params.get('include_archived', '').lower() not in TRUE_VALUES:
                queryset = queryset.filter(is_archived=False)
            project_list = [serialize_project(p) for p in queryset]
            return Response({
                'success': True,
                'total_projects': len(project_list),
                'projects': project_list
            }, status=status.HTTP_200_OK)
        except Exception as e:
            return server_error(e)

    serializer = ProjectInputSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({'success': False, 'error': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

    try:
        project = Project.objects.create(**serializer.validated_data)
        logger.info("Created project %s - %s", project.id, project.name)
        return Response({
            'success': True,
            'message': f'Project "{project.name}" created successfully',
            'project_id': project.id
        }, status=status.HTTP_201_CREATED)
    except Exception as e:
        return server_error(e)


@api_view(['GET'])
def list_project_tasks(request, project_id):
    """
    GET /api/tasks/projects/<id>/tasks/?status=in_progress&overdue=true

    Tasks of a project with their effective (rolled-up) progress. Both
    filters are optional; roll-up always uses the whole project.
    """
    if not Project.objects.filter(id=project_id).exists():
        return not_found('Project', project_id)

    status_filter = request.query_params.get('status')
    if status_filter:
        try:
            status_filter = parse_status(status_filter)
        except ValueError as e:
            return bad_request(str(e), 'invalid_status')
    overdue_only = request.query_params.get('overdue', '').lower() in TRUE_VALUES

    try:
        scheduler = scheduler_from_settings()
        records = build_records(project_tasks(project_id))
        progress = scheduler.progress_map(records)
        now = timezone.now()

        selected = records
        if status_filter:
            selected = [r for r in selected if r.status == status_filter]
        if overdue_only:
            selected = [r for r in selected if r.is_overdue(now)]

        return Response({
            'success': True,
            'project_id': project_id,
            'total_tasks': len(selected),
            'tasks': [serialize_record(r, progress, now) for r in selected]
        }, status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


@api_view(['POST'])
def add_task(request):
    """
    POST /api/tasks/add/

    Required fields: project, name, start_date, end_date
    Optional: description, progress, priority, assignee, category,
    estimated_hours, actual_hours, parent
    A new task has no subtasks yet, so any existing task of the project
    is a valid parent.
    """
    serializer = TaskInputSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({'success': False, 'error': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

    data = dict(serializer.validated_data)
    project_id = data.pop('project')
    parent_id = data.pop('parent', None)

    try:
        project = Project.objects.get(id=project_id)
    except Project.DoesNotExist:
        return not_found('Project', project_id)

    if parent_id is not None and not Task.objects.filter(id=parent_id, project=project).exists():
        return not_found('Task', parent_id)

    try:
        task = Task.objects.create(project=project, parent_id=parent_id, **data)
        logger.info("Created task %s - %s", task.id, task.name)
        return Response({
            'success': True,
            'message': f'Task "{task.name}" added successfully',
            'task_id': task.id
        }, status=status.HTTP_201_CREATED)
    except Exception as e:
        return server_error(e)


@api_view(['GET', 'PATCH', 'DELETE'])
def task_detail(request, task_id):
    """
    GET /api/tasks/<id>/
    PATCH /api/tasks/<id>/
    DELETE /api/tasks/<id>/

    GET returns the task with its effective progress and position in the
    hierarchy. PATCH edits any task field but the project. DELETE removes
    the task and its dependency edges; its subtasks move to the top level.
    """
    try:
        task = Task.objects.get(id=task_id)
    except Task.DoesNotExist:
        return not_found('Task', task_id)

    if request.method == 'PATCH':
        return update_task(request, task)
    if request.method == 'DELETE':
        return delete_task(task)

    try:
        scheduler = scheduler_from_settings()
        records = build_records(project_tasks(task.project_id))
        return Response({'success': True, 'task': describe_task(scheduler, task.id, records)},
                        status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


def describe_task(scheduler, task_id, records):
    record = scheduler.get_task(task_id, scheduler.build_task_map(records))
    data = serialize_record(record, scheduler.progress_map(records), timezone.now())
    data['hierarchy_level'] = scheduler.hierarchy_level(record, records)
    data['ancestors'] = [t.id for t in scheduler.get_all_ancestors(record, records)]
    data['descendants'] = [t.id for t in scheduler.get_all_descendants(record, records)]
    return data


def update_task(request, task):
    serializer = TaskInputSerializer(task, data=request.data, partial=True)
    if not serializer.is_valid():
        return Response({'success': False, 'error': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

    data = dict(serializer.validated_data)
    if data.pop('project', task.project_id) != task.project_id:
        return bad_request('Tasks cannot move between projects', 'project_change')

    try:
        scheduler = scheduler_from_settings()
        with transaction.atomic():
            lock_project(task.project_id)
            rows = {t.id: t for t in project_tasks(task.project_id)}
            records = build_records(rows.values())
            record = scheduler.get_task(task.id, scheduler.build_task_map(records))

            if 'parent' in data:
                scheduler.validate_parent(task.id, data['parent'], records)
                data['parent_id'] = data.pop('parent')
            if 'progress' in data and not record.is_leaf:
                return bad_request(
                    f'Progress of task {task.id} is derived from its subtasks',
                    'derived_progress'
                )

            row = rows[task.id]
            for field_name, value in data.items():
                setattr(row, field_name, value)
            row.save()
    except DependencyError as e:
        logger.warning("Rejected update of task %s: %s", task.id, e)
        return error_response(e)
    except Exception as e:
        return server_error(e)

    try:
        logger.info("Updated task %s: %s", task.id, ', '.join(sorted(data)))
        records = build_records(project_tasks(task.project_id))
        return Response({'success': True, 'task': describe_task(scheduler, task.id, records)},
                        status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


def delete_task(task):
    task_id = task.id
    try:
        with transaction.atomic():
            lock_project(task.project_id)
            detached = list(task.subtasks.values_list('id', flat=True))
            task.delete()
        logger.info("Deleted task %s - %s, %d subtask(s) detached", task_id, task.name, len(detached))
        return Response({
            'success': True,
            'message': f'Task "{task.name}" deleted',
            'detached_subtasks': detached
        }, status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


@api_view(['POST'])
def set_parent(request, task_id):
    """
    POST /api/tasks/<id>/parent/

    Request body: { "parent": <task id> | null }
    Rejects moving a task under itself or one of its own subtasks.
    """
    serializer = ParentInputSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({'success': False, 'error': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    parent_id = serializer.validated_data['parent']

    try:
        task = Task.objects.get(id=task_id)
    except Task.DoesNotExist:
        return not_found('Task', task_id)

    try:
        scheduler = scheduler_from_settings()
        with transaction.atomic():
            lock_project(task.project_id)
            records = build_records(project_tasks(task.project_id))
            scheduler.validate_parent(task.id, parent_id, records)
            task.parent_id = parent_id
            task.save(update_fields=['parent', 'updated_at'])
    except DependencyError as e:
        logger.warning("Rejected parent %s for task %s: %s", parent_id, task_id, e)
        return error_response(e)
    except Exception as e:
        return server_error(e)

    return Response({
        'success': True,
        'message': f'Task "{task.name}" moved',
        'parent': parent_id
    }, status=status.HTTP_200_OK)


@api_view(['POST'])
def add_dependency(request, task_id):
    """
    POST /api/tasks/<id>/dependencies/

    Request body: { "prerequisite": <task id> }
    The task will wait on the prerequisite. Edges that would create a
    circular dependency are rejected. The check and the insert run under
    the project lock, so two requests cannot each close half of a cycle.
    """
    serializer = DependencyInputSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({'success': False, 'error': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)
    prerequisite_id = serializer.validated_data['prerequisite']

    try:
        task = Task.objects.get(id=task_id)
    except Task.DoesNotExist:
        return not_found('Task', task_id)

    try:
        scheduler = scheduler_from_settings()
        with transaction.atomic():
            lock_project(task.project_id)
            records = build_records(project_tasks(task.project_id))
            scheduler.validate_no_cycle(task.id, prerequisite_id, records)

            created = not task.dependencies.filter(id=prerequisite_id).exists()
            if created:
                task.dependencies.add(prerequisite_id)
    except DependencyError as e:
        logger.warning("Rejected dependency %s -> %s: %s", task_id, prerequisite_id, e)
        return error_response(e)
    except Exception as e:
        return server_error(e)

    if not created:
        logger.warning("Dependency already exists between tasks %s and %s", task_id, prerequisite_id)
        return Response({
            'success': True,
            'message': 'Dependency already exists',
            'created': False
        }, status=status.HTTP_200_OK)

    logger.info("Task %s now depends on task %s", task_id, prerequisite_id)
    return Response({
        'success': True,
        'message': f'Task {task_id} now depends on task {prerequisite_id}',
        'created': True
    }, status=status.HTTP_201_CREATED)


@api_view(['DELETE'])
def remove_dependency(request, task_id, prerequisite_id):
    """
    DELETE /api/tasks/<id>/dependencies/<prerequisite id>/
    """
    try:
        task = Task.objects.get(id=task_id)
    except Task.DoesNotExist:
        return not_found('Task', task_id)

    try:
        if not task.dependencies.filter(id=prerequisite_id).exists():
            logger.warning("Dependency not found between tasks %s and %s", task_id, prerequisite_id)
            return Response({
                'success': False,
                'error': f'Task {task_id} does not depend on task {prerequisite_id}',
                'code': 'dependency_not_found'
            }, status=status.HTTP_404_NOT_FOUND)

        task.dependencies.remove(prerequisite_id)
        return Response({
            'success': True,
            'message': f'Removed dependency of task {task_id} on task {prerequisite_id}'
        }, status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


@api_view(['POST'])
def update_status(request, task_id):
    """
    POST /api/tasks/<id>/status/

    Request body (all optional): { "status": "completed" | 2, "completion_date": ISO }
    Without a status the task advances NotStarted -> InProgress -> Completed.
    When the task becomes completed late, its dependents are pushed back and
    returned under 'shifted_tasks'.
    """
    serializer = StatusInputSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({'success': False, 'error': serializer.errors}, status=status.HTTP_400_BAD_REQUEST)

    try:
        task = Task.objects.get(id=task_id)
    except Task.DoesNotExist:
        return not_found('Task', task_id)

    try:
        scheduler = scheduler_from_settings()
        now = timezone.now()

        with transaction.atomic():
            lock_project(task.project_id)
            tasks = project_tasks(task.project_id)
            rows = {t.id: t for t in tasks}
            records = build_records(tasks)
            record = scheduler.get_task(task.id, scheduler.build_task_map(records))

            original_status = record.status
            original_completion = record.completion_date
            new_status = serializer.validated_data.get('status', scheduler.next_status(record.status))
            if 'completion_date' in serializer.validated_data and new_status == TaskStatus.COMPLETED:
                record.completion_date = serializer.validated_data['completion_date']
            scheduler.apply_status(record, new_status, now)

            row = rows[record.id]
            row.apply_record(record)
            row.save()

            shifted = []
            if record.status == TaskStatus.COMPLETED and record.completion_date != original_completion:
                shifted = scheduler.shift_dependents(record, records)
                for shifted_record in shifted:
                    shifted_row = rows[shifted_record.id]
                    shifted_row.apply_record(shifted_record)
                    shifted_row.save(update_fields=['start_date', 'end_date', 'updated_at'])

        logger.info(
            "Task %s status changed from %s to %s, %d dependent task(s) shifted",
            task_id, original_status.label, record.status.label, len(shifted)
        )
        progress = scheduler.progress_map(records)
        return Response({
            'success': True,
            'task': serialize_record(record, progress, now),
            'shifted_tasks': [serialize_record(r, progress, now) for r in shifted]
        }, status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


@api_view(['GET'])
def critical_path(request, project_id):
    """
    GET /api/tasks/projects/<id>/critical-path/
    """
    if not Project.objects.filter(id=project_id).exists():
        return not_found('Project', project_id)

    try:
        scheduler = scheduler_from_settings()
        records = build_records(project_tasks(project_id))
        path = scheduler.critical_path(records)
        progress = scheduler.progress_map(records)
        now = timezone.now()
        return Response({
            'success': True,
            'project_id': project_id,
            'task_count': len(path),
            'total_duration_days': round(scheduler.path_duration_days(path), 2),
            'tasks': [serialize_record(r, progress, now) for r in path]
        }, status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


@api_view(['GET'])
def project_statistics(request, project_id):
    """
    GET /api/tasks/projects/<id>/statistics/
    """
    if not Project.objects.filter(id=project_id).exists():
        return not_found('Project', project_id)

    try:
        scheduler = scheduler_from_settings()
        records = build_records(project_tasks(project_id))
        stats = scheduler.project_statistics(records, timezone.now())
        for key in ('earliest_start_date', 'latest_end_date'):
            if stats[key] is not None:
                stats[key] = stats[key].isoformat()
        return Response({'success': True, 'project_id': project_id, 'statistics': stats},
                        status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)


@api_view(['GET'])
def validate_project(request, project_id):
    """
    GET /api/tasks/projects/<id>/validate/

    Re-checks stored dependencies for circular references (legacy data).
    """
    if not Project.objects.filter(id=project_id).exists():
        return not_found('Project', project_id)

    try:
        scheduler = scheduler_from_settings()
        records = build_records(project_tasks(project_id))
        cycles = scheduler.detect_circular_dependencies(records)

        response_data = {
            'success': True,
            'project_id': project_id,
            'valid': not cycles,
            'timestamp': timezone.now().isoformat()
        }
        if cycles:
            response_data['circular_dependencies'] = [list(cycle) for cycle in cycles]
            response_data['warning'] = 'Circular dependencies detected'
            logger.warning("Project %s has %d circular dependencies", project_id, len(cycles))

        return Response(response_data, status=status.HTTP_200_OK)
    except Exception as e:
        return server_error(e)
