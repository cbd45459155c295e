from django.contrib import admin

from projects.models import Project


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "owner", "is_legacy", "created_at")
    list_filter = ("is_legacy",)
    search_fields = ("code", "name", "owner__username", "owner__email")
    readonly_fields = ("code", "created_at", "updated_at")
