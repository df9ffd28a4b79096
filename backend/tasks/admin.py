from django.contrib import admin
from .models import Project, Task


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ['name', 'project_manager', 'status', 'priority', 'start_date', 'end_date', 'is_archived']
    list_filter = ['status', 'priority', 'is_archived']
    search_fields = ['name', 'description', 'project_manager']
    readonly_fields = ['created_at', 'updated_at']


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ['name', 'project', 'status', 'priority', 'start_date', 'end_date', 'progress', 'assignee']
    list_filter = ['project', 'status', 'priority', 'category']
    search_fields = ['name', 'description', 'assignee']
    ordering = ['project', 'start_date']
    filter_horizontal = ['dependencies']
    readonly_fields = ['completion_date', 'created_at', 'updated_at']
