import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count
from rest_framework.exceptions import ValidationError

from common.exceptions import CapacityExceeded, DuplicateName, ProjectNotFound
from devices.identifiers import format_project_code
from projects.models import Project, ProjectCodeCounter

logger = logging.getLogger(__name__)

PROJECT_CODE_COUNTER_KEY = "project_code"


def allocate_project_code():
    """Return the next project code from the shared counter.

    The counter row is locked for the rest of the caller's transaction, so
    concurrent callers queue behind it instead of racing on ``MAX(code)``.
    Deleting projects never gives a number back.
    """
    ceiling = settings.PROJECT_CODE_CEILING
    with transaction.atomic():
        counter, _ = ProjectCodeCounter.objects.select_for_update().get_or_create(key=PROJECT_CODE_COUNTER_KEY)
        next_value = counter.value + 1
        if next_value > ceiling:
            logger.error("project_code_capacity_exceeded ceiling=%s", ceiling)
            raise CapacityExceeded(f"Project code capacity of {ceiling} projects has been reached.")
        counter.value = next_value
        counter.save(update_fields=["value", "updated_at"])
    return format_project_code(next_value)


def _normalized_name(name):
    name = (name or "").strip()
    if not name:
        raise ValidationError({"name": ["Project name cannot be empty."]})
    return name


def create_project(*, name, owner, description="", is_legacy=False):
    name = _normalized_name(name)
    try:
        with transaction.atomic():
            code = allocate_project_code()
            project = Project.objects.create(
                code=code,
                name=name,
                description=description or "",
                owner=owner,
                is_legacy=is_legacy,
            )
    except IntegrityError as exc:
        raise DuplicateName(f'Project name "{name}" already exists. Please choose a different name.') from exc

    logger.info("project_created", extra={"project_code": project.code, "user_id": str(owner.pk)})
    return project


def get_owned_project(code, owner, *, for_update=False):
    queryset = Project.objects.filter(code=code, owner=owner)
    if for_update:
        queryset = queryset.select_for_update()
    project = queryset.first()
    if project is None:
        raise ProjectNotFound(f'Project "{code}" was not found.')
    return project


def delete_project(code, owner):
    with transaction.atomic():
        project = get_owned_project(code, owner, for_update=True)
        project.delete()
    logger.info("project_deleted", extra={"project_code": code, "user_id": str(owner.pk)})
    return True


def list_projects_for_owner(owner):
    return Project.objects.filter(owner=owner).annotate(device_count=Count("devices")).order_by("created_at", "code")
