# tasks/urls.py
from django.urls import path
from . import views

urlpatterns = [
    path('health/', views.health_check, name='health_check'),
    path('add/', views.add_task, name='add_task'),
    path('projects/', views.projects, name='projects'),
    path('projects/<int:project_id>/tasks/', views.list_project_tasks, name='list_project_tasks'),
    path('projects/<int:project_id>/critical-path/', views.critical_path, name='critical_path'),
    path('projects/<int:project_id>/statistics/', views.project_statistics, name='project_statistics'),
    path('projects/<int:project_id>/validate/', views.validate_project, name='validate_project'),
    path('<int:task_id>/', views.task_detail, name='task_detail'),
    path('<int:task_id>/parent/', views.set_parent, name='set_parent'),
    path('<int:task_id>/status/', views.update_status, name='update_status'),
    path('<int:task_id>/dependencies/', views.add_dependency, name='add_dependency'),
    path('<int:task_id>/dependencies/<int:prerequisite_id>/', views.remove_dependency, name='remove_dependency'),
]
