from rest_framework import serializers

from .scheduling import TaskPriority, TaskStatus

STATUS_NAMES = {s.name.lower(): s for s in TaskStatus}


def parse_status(value):
    """Map a status value ("2") or name ("completed", "In_Progress") to TaskStatus."""
    value = str(value).strip()
    if value.isdigit() and int(value) in TaskStatus._value2member_map_:
        return TaskStatus(int(value))
    status = STATUS_NAMES.get(value.lower().replace(' ', '_'))
    if status is None:
        raise ValueError(f'Unknown status: {value}')
    return status


class ProjectInputSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True, max_length=2000)
    start_date = serializers.DateTimeField(required=False)
    end_date = serializers.DateTimeField(required=False, allow_null=True)
    project_manager = serializers.CharField(required=False, allow_blank=True, max_length=100)
    priority = serializers.ChoiceField(choices=[p.value for p in TaskPriority], required=False)
    color = serializers.RegexField(r'^#[0-9a-fA-F]{6}$', required=False)


class TaskInputSerializer(serializers.Serializer):
    """
    Task fields for create and, with partial=True and the stored task as
    instance, for edits. Date order is checked against stored values when
    only one end is sent.
    """

    project = serializers.IntegerField()
    name = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True, max_length=1000)
    start_date = serializers.DateTimeField()
    end_date = serializers.DateTimeField()
    progress = serializers.IntegerField(required=False, min_value=0, max_value=100)
    priority = serializers.ChoiceField(choices=[p.value for p in TaskPriority], required=False)
    assignee = serializers.CharField(required=False, allow_blank=True, max_length=100)
    category = serializers.CharField(required=False, max_length=50)
    estimated_hours = serializers.FloatField(required=False, min_value=0)
    actual_hours = serializers.FloatField(required=False, min_value=0)
    parent = serializers.IntegerField(required=False, allow_null=True)

    def validate(self, attrs):
        start_date = attrs.get('start_date', getattr(self.instance, 'start_date', None))
        end_date = attrs.get('end_date', getattr(self.instance, 'end_date', None))
        if start_date is not None and end_date is not None and end_date < start_date:
            raise serializers.ValidationError({'end_date': 'End date cannot be before start date'})
        return attrs


class DependencyInputSerializer(serializers.Serializer):
    prerequisite = serializers.IntegerField()


class ParentInputSerializer(serializers.Serializer):
    parent = serializers.IntegerField(allow_null=True)


class StatusInputSerializer(serializers.Serializer):
    """Either an explicit status (value or name) or nothing, meaning "advance"."""

    status = serializers.CharField(required=False)
    completion_date = serializers.DateTimeField(required=False)

    def validate_status(self, value):
        try:
            return parse_status(value)
        except ValueError as e:
            raise serializers.ValidationError(str(e))
