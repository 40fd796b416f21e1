"""
Read-side summaries built from performance history rows.
"""
from __future__ import annotations

import logging

from django.db.models import Avg

from ..constants import FETCH_SUCCESS, LEVEL_HIGH, LEVEL_LOW, LEVEL_MEDIUM, TREND_DOWN, TREND_STABLE, TREND_UP
from ..models import BatchJob, PerformanceHistory, normalize_reg_no
from .scoring import classify_score_change

logger = logging.getLogger(__name__)

TOP_MOVERS = 5


def analyze_trend(values) -> str:
    """Majority direction of consecutive steps, oldest value first."""
    increases = decreases = 0
    for before, after in zip(values, values[1:]):
        if after > before:
            increases += 1
        elif after < before:
            decreases += 1
    if increases > decreases:
        return TREND_UP
    if decreases > increases:
        return TREND_DOWN
    return TREND_STABLE


def is_consistent_improvement(scores) -> bool:
    if len(scores) < 3:
        return False
    return all(after > before for before, after in zip(scores, scores[1:]))


def _previous_entry(entry: PerformanceHistory):
    return (
        PerformanceHistory.objects.filter(student_id=entry.student_id, week_number__lt=entry.week_number)
        .exclude(batch_id=entry.batch_id)
        .order_by('-week_number', '-created_at')
        .first()
    )


def summarize_batch(batch: BatchJob) -> dict:
    entries = list(batch.history_entries.select_related('student'))
    summary = {
        'jobId': batch.job_id,
        'weekNumber': batch.week_number,
        'weekLabel': batch.week_label,
        'totalStudents': len(entries),
        'improvements': 0,
        'declines': 0,
        'stable': 0,
        'newStudents': 0,
        'performanceLevelDistribution': {LEVEL_HIGH: 0, LEVEL_MEDIUM: 0, LEVEL_LOW: 0},
        'platformSummary': {},
        'topImprovers': [],
        'topDecliners': [],
        'averageScore': 0,
        'averageScoreChange': 0,
    }
    if not entries:
        return summary

    changes = []
    for entry in entries:
        previous = _previous_entry(entry)
        if previous is None:
            # First appearance counts as an improvement.
            summary['newStudents'] += 1
            summary['improvements'] += 1
            score_change = 0
        else:
            score_change = entry.overall_score - previous.overall_score
            outcome = classify_score_change(score_change)
            if outcome == 'improved':
                summary['improvements'] += 1
            elif outcome == 'declined':
                summary['declines'] += 1
            else:
                summary['stable'] += 1

        changes.append({
            'regNo': entry.student.reg_no,
            'name': entry.student.name,
            'currentScore': entry.overall_score,
            'previousScore': previous.overall_score if previous else 0,
            'scoreChange': score_change,
        })
        summary['performanceLevelDistribution'][entry.performance_level] += 1

        for stat in entry.platform_stats:
            platform = summary['platformSummary'].setdefault(stat.get('platform'), {
                'totalStudents': 0,
                'successfulFetches': 0,
                'totalRating': 0,
                'totalProblems': 0,
                'averageRating': 0,
                'averageProblems': 0,
            })
            platform['totalStudents'] += 1
            if stat.get('fetchStatus') == FETCH_SUCCESS:
                platform['successfulFetches'] += 1
                platform['totalRating'] += stat.get('rating') or 0
                platform['totalProblems'] += stat.get('problemsSolved') or 0

    for platform in summary['platformSummary'].values():
        if platform['successfulFetches']:
            platform['averageRating'] = round(platform['totalRating'] / platform['successfulFetches'])
            platform['averageProblems'] = round(platform['totalProblems'] / platform['successfulFetches'])

    ranked = sorted(changes, key=lambda item: item['scoreChange'], reverse=True)
    summary['topImprovers'] = [item for item in ranked[:TOP_MOVERS] if item['scoreChange'] > 0]
    summary['topDecliners'] = [item for item in reversed(ranked[-TOP_MOVERS:]) if item['scoreChange'] < 0]
    summary['averageScore'] = round(sum(entry.overall_score for entry in entries) / len(entries))
    summary['averageScoreChange'] = round(sum(item['scoreChange'] for item in changes) / len(entries))
    return summary


def _platform_trends(entries):
    """entries are oldest first."""
    latest = entries[-1]
    trends = {}
    for stat in latest.platform_stats:
        platform = stat.get('platform')
        series = [
            next((s for s in entry.platform_stats if s.get('platform') == platform), None)
            for entry in entries
        ]
        series = [s for s in series if s is not None]
        if len(series) < 2:
            continue
        rating_trend = analyze_trend([s.get('rating') or 0 for s in series])
        problems_trend = analyze_trend([s.get('problemsSolved') or 0 for s in series])
        if TREND_UP in (rating_trend, problems_trend):
            overall = TREND_UP
        elif rating_trend == problems_trend == TREND_DOWN:
            overall = TREND_DOWN
        else:
            overall = TREND_STABLE
        trends[platform] = {
            'ratingTrend': rating_trend,
            'problemsTrend': problems_trend,
            'overallTrend': overall,
        }
    return trends


def _history_row(entry: PerformanceHistory) -> dict:
    return {
        'jobId': entry.batch.job_id,
        'weekNumber': entry.week_number,
        'weekLabel': entry.week_label,
        'uploadDate': entry.upload_date.isoformat(),
        'overallScore': entry.overall_score,
        'performanceLevel': entry.performance_level,
        'totalPlatforms': entry.total_platforms,
        'activePlatforms': entry.active_platforms,
        'platformStats': entry.platform_stats,
        'errors': entry.errors,
    }


def student_progress(reg_no: str, limit: int = 5):
    """Recent history and trend analysis for one student, or None."""
    recent = list(
        PerformanceHistory.objects.filter(student__reg_no=normalize_reg_no(reg_no))
        .select_related('batch')
        .order_by('-week_number', '-created_at')[:limit]
    )
    if not recent:
        return None

    entries = list(reversed(recent))
    scores = [entry.overall_score for entry in entries]
    best = max(entries, key=lambda entry: entry.overall_score)
    worst = min(entries, key=lambda entry: entry.overall_score)
    return {
        'regNo': normalize_reg_no(reg_no),
        'current': _history_row(recent[0]),
        'history': [_history_row(entry) for entry in recent],
        'trends': _platform_trends(entries),
        'progressAnalysis': {
            'overallTrend': analyze_trend(scores),
            'consistentImprovement': is_consistent_improvement(scores),
            'bestWeek': best.week_label,
            'worstWeek': worst.week_label,
            'averageScore': round(sum(scores) / len(scores)),
            'scoreVariation': max(scores) - min(scores),
        },
    }


def batch_status(batch: BatchJob) -> dict:
    tallies = {
        tally.platform: {
            'attempted': tally.attempted,
            'successful': tally.successful,
            'failed': tally.failed,
        }
        for tally in batch.platform_tallies.all()
    }
    average = batch.history_entries.aggregate(Avg('overall_score'))['overall_score__avg']
    return {
        'jobId': batch.job_id,
        'source': batch.source,
        'status': batch.status,
        'weekNumber': batch.week_number,
        'weekLabel': batch.week_label,
        'totalStudents': batch.total_students,
        'processed': batch.processed,
        'successful': batch.successful,
        'failed': batch.failed,
        'percentage': batch.percentage,
        'averageScore': round(average) if average is not None else None,
        'platformStats': tallies,
        'startedAt': batch.started_at.isoformat() if batch.started_at else None,
        'endedAt': batch.ended_at.isoformat() if batch.ended_at else None,
        'durationMs': batch.duration_ms,
        'errors': [
            {
                'type': error.error_type,
                'message': error.message,
                'regNo': error.reg_no or None,
                'platform': error.platform or None,
                'details': error.details,
                'at': error.created_at.isoformat(),
            }
            for error in batch.errors.all()
        ],
    }
