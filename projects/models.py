import uuid

from django.conf import settings
from django.db import models
from django.db.models.functions import Lower


class Project(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=8, unique=True, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="projects")
    is_legacy = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "code"]
        indexes = [
            models.Index(fields=["owner", "created_at"], name="project_owner_created_idx"),
            models.Index(fields=["owner", "is_legacy"], name="project_owner_legacy_idx"),
        ]
        constraints = [
            models.UniqueConstraint(Lower("name"), name="projects_project_name_ci_unique"),
        ]

    def __str__(self) -> str:  # pragma: no cover - human readable only
        return f"{self.code} ({self.name})"


class ProjectCodeCounter(models.Model):
    """Row-locked counter behind project codes; never decremented."""

    key = models.CharField(max_length=32, primary_key=True)
    value = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)
