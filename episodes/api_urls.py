from __future__ import annotations

from django.urls import path

from .api_views import project_deleted, project_paused, project_recurrence, project_resumed, workflow_complete

app_name = "episodes_api"

urlpatterns = [
    path("workflow/complete/", workflow_complete, name="workflow_complete"),
    path("projects/<str:project_id>/paused/", project_paused, name="project_paused"),
    path("projects/<str:project_id>/resumed/", project_resumed, name="project_resumed"),
    path("projects/<str:project_id>/deleted/", project_deleted, name="project_deleted"),
    path("projects/<str:project_id>/recurrence/", project_recurrence, name="project_recurrence"),
]
