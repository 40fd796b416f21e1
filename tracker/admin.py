from django.contrib import admin, messages

from .models import BatchError, BatchJob, BatchPlatformTally, PerformanceHistory, PlatformSnapshot, Student
from .services.batches import cancel_batch

admin.site.site_header = "Skorly Administration"
admin.site.site_title = "Skorly Admin"
admin.site.index_title = "Platform tracking"


class ReadOnlyAdmin(admin.ModelAdmin):
    """
    Rows written only by the pipeline.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


class PlatformSnapshotInline(admin.TabularInline):
    model = PlatformSnapshot
    extra = 0
    can_delete = False
    fields = ('platform', 'identifier', 'rating', 'problems_solved', 'contests_participated', 'fetch_status', 'last_fetched')
    readonly_fields = fields


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = (
        'reg_no',
        'name',
        'department',
        'year',
        'total_problems',
        'average_rating',
        'active_platforms',
        'is_active',
    )
    list_filter = ('department', 'year', 'is_active')
    search_fields = ('reg_no', 'name', 'handle_codeforces', 'handle_leetcode', 'handle_codechef', 'handle_github')
    readonly_fields = ('total_problems', 'total_contests', 'average_rating', 'active_platforms', 'last_batch')
    inlines = [PlatformSnapshotInline]


@admin.register(PlatformSnapshot)
class PlatformSnapshotAdmin(ReadOnlyAdmin):
    list_display = ('student', 'platform', 'rating', 'change_rating', 'problems_solved', 'fetch_status', 'last_fetched')
    list_filter = ('platform', 'fetch_status')
    search_fields = ('student__reg_no', 'identifier')


@admin.register(PerformanceHistory)
class PerformanceHistoryAdmin(ReadOnlyAdmin):
    list_display = ('student', 'week_label', 'overall_score', 'performance_level', 'active_platforms', 'total_platforms')
    list_filter = ('performance_level', 'week_number')
    search_fields = ('student__reg_no',)
    ordering = ('-week_number',)


class BatchPlatformTallyInline(admin.TabularInline):
    model = BatchPlatformTally
    extra = 0
    can_delete = False
    readonly_fields = ('platform', 'attempted', 'successful', 'failed')

    def has_add_permission(self, request, obj=None):
        return False


class BatchErrorInline(admin.TabularInline):
    model = BatchError
    extra = 0
    can_delete = False
    readonly_fields = ('error_type', 'reg_no', 'platform', 'message', 'created_at')
    fields = readonly_fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(BatchJob)
class BatchJobAdmin(ReadOnlyAdmin):
    list_display = ('job_id', 'source', 'status', 'week_label', 'progress', 'successful', 'failed', 'created_at')
    list_filter = ('status', 'source')
    search_fields = ('job_id',)
    ordering = ('-created_at',)
    inlines = [BatchPlatformTallyInline, BatchErrorInline]
    actions = ['cancel_batches']

    @admin.display(description="Progress")
    def progress(self, obj: BatchJob):
        return f"{obj.processed}/{obj.total_students} ({obj.percentage}%)"

    @admin.action(description="Cancel selected batches")
    def cancel_batches(self, request, queryset):
        cancelled = 0
        for batch in queryset.filter(status__in=BatchJob.ACTIVE_STATUSES):
            if cancel_batch(batch.job_id, reason=f"Cancelled by {request.user}"):
                cancelled += 1
        if cancelled:
            self.message_user(request, f"{cancelled} batch(es) cancelled.", level=messages.SUCCESS)
        else:
            self.message_user(request, "No active batch selected.", level=messages.WARNING)


@admin.register(BatchError)
class BatchErrorAdmin(ReadOnlyAdmin):
    list_display = ('batch', 'error_type', 'reg_no', 'platform', 'message', 'created_at')
    list_filter = ('error_type', 'platform')
    search_fields = ('reg_no', 'message', 'batch__job_id')
