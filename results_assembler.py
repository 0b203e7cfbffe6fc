#!/usr/bin/env python3
"""
Results assembler for the 360 Development Catalyst.

``compute_results`` is the pure scoring pipeline: scorer, gap and Johari
analysis, CCI, and trend, merged into one ``ComputedAssessmentResults``
document. Given the same template, invitations, responses and previous
snapshot it produces the same document apart from ``computedAt``.

``complete_assessment`` is the only way an assessment reaches 'completed'.
It scores the assessment, then writes the status change and the snapshot
in a single transaction. ``rescore_assessment`` replaces the snapshot of an
already completed assessment and records why in the scoring audit.
"""

import logging
from datetime import datetime, timezone

from assessment_errors import InsufficientData, InvalidTransition, NotFound
from benchmarks import recompute_benchmark
from cci import compute_cci
from framework import ANONYMITY_THRESHOLD
from gap_analysis import (
    analyze_gaps,
    current_ceiling,
    rank_items,
    strengths_and_development,
    suggest_goals,
)
from logging_setup import assessment_context
from scoring import mean, round2, score_assessment
from trends import compute_trend

logger = logging.getLogger(__name__)


def compute_results(template, invitations, responses, anonymize=False, previous=None,
                    computed_at=None, anonymity_threshold=None):
    """
    Build the analytic snapshot for one assessment.

    Args:
        template: validated Template the assessment was created from
        invitations: every invitation of the assessment (``id``, ``rater_type``, ``status``)
        responses: the completed responses (``invitation_id``, ``items``, ``overall_comments``)
        anonymize: the assessment's anonymization flag
        previous: prior completed snapshot for trend comparison, or None
        computed_at: timestamp to stamp; defaults to now (UTC)
        anonymity_threshold: smallest group reported on its own when anonymizing

    Optional sections (``cciResult``, ``currentCeiling``, ``trend``) are left
    out entirely when there is nothing to report.
    """
    if anonymity_threshold is None:
        anonymity_threshold = ANONYMITY_THRESHOLD

    scored = score_assessment(template, invitations, responses, anonymize=anonymize,
                              anonymity_threshold=anonymity_threshold)
    competency_scores = scored['competencyScores']
    item_scores = scored['itemScores']

    gap_entries, johari_window = analyze_gaps(competency_scores, template.gap_threshold, template.midpoint)
    names = {comp.id: comp.name for comp in template.competencies}
    top_items, bottom_items = rank_items(item_scores, names, template.top_n)
    strengths, development_areas = strengths_and_development(competency_scores)

    overall = [c['overallAverage'] for c in competency_scores if c['overallAverage'] is not None]

    results = {
        'computedAt': computed_at or datetime.now(timezone.utc).isoformat(),
        'overallScore': round2(mean(overall)),
        'responseRateByType': scored['responseRateByType'],
        'competencyScores': competency_scores,
        'itemScores': item_scores,
        'gapAnalysis': gap_entries,
        'topItems': top_items,
        'bottomItems': bottom_items,
        'strengths': strengths,
        'developmentAreas': development_areas,
        'comments': scored['comments'],
        'johariWindow': johari_window,
        'goalSuggestions': suggest_goals(competency_scores, template.goal_suggestion_rules),
    }

    cci_result = compute_cci(template, item_scores, scored['othersMeans'])
    if cci_result is not None:
        results['cciResult'] = cci_result

    ceiling = current_ceiling(competency_scores, template)
    if ceiling is not None:
        results['currentCeiling'] = ceiling

    trend = compute_trend(competency_scores, previous, template.gap_threshold)
    if trend is not None:
        results['trend'] = trend

    return results


def _score(db, assessment):
    template = db.get_template(assessment['template_id'])
    if template is None:
        raise NotFound(f"Template {assessment['template_id']} not found",
                       {'templateId': assessment['template_id']})

    invitations = db.get_invitations(assessment['id'])
    responses = db.get_completed_responses(assessment['id'])
    if not responses:
        raise InsufficientData(
            f"Assessment {assessment['id']} has no completed responses to score",
            {'assessmentId': assessment['id'], 'invitations': len(invitations)},
        )

    previous = db.find_previous_completed(assessment)
    results = compute_results(template, invitations, responses,
                              anonymize=assessment['anonymize'], previous=previous,
                              anonymity_threshold=assessment['anonymity_threshold'])
    return template, results


def _refresh_benchmark(db, template):
    try:
        recompute_benchmark(db, template.agency_id, template.id)
    except Exception:
        # Completion is already committed
        logger.exception("Benchmark refresh after completion failed for template %s", template.id)


def complete_assessment(db, assessment_id, actor=None, refresh_benchmark=False,
                        rescore=False, reason=None):
    """
    Score a closed assessment and move it to 'completed' with its snapshot.

    With ``rescore=True`` an already completed assessment is re-scored
    instead (see ``rescore_assessment``; ``reason`` is required).

    Raises:
        InvalidTransition: the assessment is not closed (including already completed)
        InsufficientData: no rater has completed a response
        InvalidTemplateConfiguration / InvalidResponse: scoring aborted, nothing written
        ConcurrentCompletionConflict: another request completed it first
    """
    if rescore:
        return rescore_assessment(db, assessment_id, reason, actor=actor,
                                  refresh_benchmark=refresh_benchmark)

    with assessment_context(assessment_id):
        assessment = db.get_assessment(assessment_id)
        if assessment is None:
            raise NotFound(f"Assessment {assessment_id} not found", {'assessmentId': assessment_id})

        status = assessment['status']
        if status == 'completed':
            raise InvalidTransition(
                f"Assessment {assessment_id} is already completed; re-score it explicitly",
                {'assessmentId': assessment_id, 'from': status, 'to': 'completed'},
            )
        if status != 'closed':
            raise InvalidTransition(
                f"Assessment {assessment_id} must be closed before completion (is '{status}')",
                {'assessmentId': assessment_id, 'from': status, 'to': 'completed'},
            )

        logger.info("Scoring assessment %s for completion", assessment_id)
        template, results = _score(db, assessment)
        db.write_completion(assessment_id, results, actor=actor)
        logger.info("Assessment %s completed (overall score %s)", assessment_id, results['overallScore'])

        if refresh_benchmark:
            _refresh_benchmark(db, template)

        return results


def rescore_assessment(db, assessment_id, reason, actor=None, refresh_benchmark=False):
    """
    Recompute the snapshot of a completed assessment, e.g. after a late
    correction. The old snapshot is replaced, never merged into.
    """
    if not reason or not reason.strip():
        raise ValueError("A re-score needs a reason for the audit trail")

    with assessment_context(assessment_id):
        assessment = db.get_assessment(assessment_id)
        if assessment is None:
            raise NotFound(f"Assessment {assessment_id} not found", {'assessmentId': assessment_id})
        if assessment['status'] != 'completed':
            raise InvalidTransition(
                f"Only completed assessments can be re-scored (is '{assessment['status']}')",
                {'assessmentId': assessment_id, 'from': assessment['status']},
            )

        logger.warning("Re-scoring assessment %s: %s", assessment_id, reason,
                       extra={'actor': actor, 'previous_computed_at': assessment['computed_at']})
        template, results = _score(db, assessment)
        db.write_rescore(assessment_id, results, assessment['computed_at'], reason.strip(), actor=actor)

        if refresh_benchmark:
            _refresh_benchmark(db, template)

        return results
