from django.http import Http404, JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET

from .models import BatchJob
from .services.reports import batch_status, student_progress, summarize_batch


def _int_param(request, name, default, maximum):
    try:
        value = int(request.GET.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(1, min(value, maximum))


@require_GET
def batch_list(request):
    limit = _int_param(request, 'limit', 20, 100)
    batches = BatchJob.objects.all()
    status = request.GET.get('status')
    if status:
        batches = batches.filter(status=status)
    return JsonResponse({
        'batches': [
            {
                'jobId': batch.job_id,
                'source': batch.source,
                'status': batch.status,
                'weekLabel': batch.week_label,
                'totalStudents': batch.total_students,
                'processed': batch.processed,
                'percentage': batch.percentage,
                'createdAt': batch.created_at.isoformat(),
            }
            for batch in batches[:limit]
        ]
    })


@require_GET
def batch_detail(request, job_id):
    batch = get_object_or_404(BatchJob, job_id=job_id)
    payload = batch_status(batch)
    if batch.status == BatchJob.STATUS_COMPLETED:
        payload['summary'] = summarize_batch(batch)
    return JsonResponse(payload)


@require_GET
def student_history(request, reg_no):
    limit = _int_param(request, 'limit', 5, 52)
    progress = student_progress(reg_no, limit=limit)
    if progress is None:
        raise Http404("No history for this student.")
    return JsonResponse(progress)
