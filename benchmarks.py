#!/usr/bin/env python3
"""
Benchmark engine for the 360 Development Catalyst.

Builds agency-wide normative statistics for one template from every
completed assessment that used it. Each run recomputes the whole row from
the stored snapshots; nothing is updated incrementally.

Statistics per competency, over the competency ``overallAverage`` of each
assessment:

- mean
- median, p25, p75: linear interpolation between closest ranks
  (numpy's default ``linear`` method: position ``p/100 * (n - 1)``)
- stdDev: population standard deviation
- sampleSize
"""

import logging
import math
import sqlite3
import time
from datetime import datetime, timezone

import numpy as np

from assessment_errors import BenchmarkRecomputationConflict, NotFound
from database import is_lock_error
from scoring import round2
from settings import settings

logger = logging.getLogger(__name__)


# ============================================
# STATISTICS
# ============================================

def competency_benchmark(scores):
    """Normative statistics for one competency's scores."""
    if not scores:
        return {
            'mean': None, 'median': None, 'p25': None, 'p75': None,
            'stdDev': None, 'sampleSize': 0,
        }

    values = np.asarray(scores, dtype=float)
    p25, median, p75 = np.percentile(values, [25, 50, 75])
    return {
        'mean': round2(values.mean()),
        'median': round2(median),
        'p25': round2(p25),
        'p75': round2(p75),
        'stdDev': round2(values.std()),
        'sampleSize': int(values.size),
    }


def compute_benchmark_data(template, snapshots):
    """
    Per-competency statistics keyed by competency id, in template order.

    Competencies in a snapshot that the template no longer defines are ignored.
    """
    scores = {comp.id: [] for comp in template.competencies}
    for results in snapshots:
        for comp in results.get('competencyScores', []):
            value = comp.get('overallAverage')
            if comp['competencyId'] in scores and value is not None:
                scores[comp['competencyId']].append(value)

    return {comp_id: competency_benchmark(values) for comp_id, values in scores.items()}


def percentile_rank(score, benchmark):
    """
    Approximate percentile of ``score`` within a competency benchmark.

    Uses the logistic approximation of the normal CDF, clamped to 1-99.
    Returns 50 when there is no spread to compare against.
    """
    if not benchmark or not benchmark.get('sampleSize') or not benchmark.get('stdDev'):
        return 50
    z = (score - benchmark['mean']) / benchmark['stdDev']
    percentile = 100 / (1 + math.exp(-1.7 * z))
    return int(round(min(max(percentile, 1), 99)))


def annotate_with_benchmark(results, benchmark):
    """
    Read-time comparison of a snapshot against a benchmark row.

    Returns ``{competencyId: {score, benchmarkMean, percentileRank, position}}``.
    The snapshot itself is not modified, so it stays reproducible from the
    assessment's own inputs.
    """
    annotations = {}
    if not benchmark:
        return annotations

    data = benchmark.get('benchmark_data') or {}
    for comp in results.get('competencyScores', []):
        stats = data.get(comp['competencyId'])
        score = comp.get('overallAverage')
        if not stats or score is None or not stats.get('sampleSize'):
            continue

        if score > stats['mean']:
            position = 'above'
        elif score < stats['mean']:
            position = 'below'
        else:
            position = 'at'

        annotations[comp['competencyId']] = {
            'score': score,
            'benchmarkMean': stats['mean'],
            'percentileRank': percentile_rank(score, stats),
            'position': position,
        }
    return annotations


# ============================================
# RECOMPUTATION
# ============================================

def _read_snapshots(db, template_id):
    try:
        return db.get_completed_results_for_template(template_id)
    except sqlite3.OperationalError as exc:
        if not is_lock_error(exc):
            raise
        raise BenchmarkRecomputationConflict(
            f"Could not read snapshots for template {template_id}: {exc}",
            {'templateId': template_id},
        ) from exc


def recompute_benchmark(db, agency_id, template_id, rebuild=False, retries=None, retry_delay=None):
    """
    Recompute and store the benchmark row for ``(agency_id, template_id)``.

    Safe to re-run: the whole row is replaced. Concurrent writers for the same
    key are serialized by the database. A run that finds the database locked,
    while reading the snapshots or writing the row, is retried ``retries``
    times before BenchmarkRecomputationConflict propagates.

    With ``rebuild=False`` a run that would lower the stored sample size is
    refused (BenchmarkSampleShrank).
    """
    retries = settings.benchmark_retries if retries is None else retries
    retry_delay = settings.benchmark_retry_delay if retry_delay is None else retry_delay

    template = db.get_template(template_id)
    if template is None or template.agency_id != agency_id:
        raise NotFound(f"Template {template_id} not found for agency {agency_id}",
                       {'agencyId': agency_id, 'templateId': template_id})

    attempt = 0
    while True:
        try:
            snapshots = _read_snapshots(db, template_id)
            data = compute_benchmark_data(template, snapshots)
            computed_at = datetime.now(timezone.utc).isoformat()
            row = db.upsert_benchmark(agency_id, template_id, data, len(snapshots),
                                      computed_at, rebuild=rebuild)
        except BenchmarkRecomputationConflict:
            attempt += 1
            if attempt > retries:
                logger.error("Giving up benchmark recompute for template %s after %d attempts",
                             template_id, attempt)
                raise
            logger.warning("Benchmark recompute for template %s conflicted; retry %d of %d",
                           template_id, attempt, retries)
            time.sleep(retry_delay * attempt)
            continue

        logger.info("Benchmark for agency %s template %s recomputed from %d assessments",
                    agency_id, template_id, len(snapshots))
        return row
