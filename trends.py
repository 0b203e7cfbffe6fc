#!/usr/bin/env python3
"""
Trend comparison against the subject's previous completed assessment.

The previous assessment is found by the database layer (same subject, a
template in the same version lineage, status completed with a snapshot).
This module only compares the two sets of competency scores.
"""

from scoring import mean, round2

IMPROVED = 'improved'
DECLINED = 'declined'
STABLE = 'stable'


def classify_change(change, threshold):
    """Same inclusive boundaries as the gap classification."""
    if change >= threshold:
        return IMPROVED
    if change <= -threshold:
        return DECLINED
    return STABLE


def compute_trend(current_competency_scores, previous, threshold):
    """
    Compare current competency scores with a previous snapshot.

    Args:
        current_competency_scores: ``competencyScores`` of the run in progress
        previous: dict with ``id``, ``completed_at`` and ``results`` (the prior
            snapshot), or None
        threshold: material-difference threshold shared with the gap analyzer

    Returns the trend dict, or None when there is no previous assessment or
    no competency scored in both.
    """
    if not previous or not previous.get('results'):
        return None

    previous_scores = {
        c['competencyId']: c for c in previous['results'].get('competencyScores', [])
    }

    changes = []
    for comp in current_competency_scores:
        prior = previous_scores.get(comp['competencyId'])
        if prior is None:
            continue
        current_score = comp['overallAverage']
        previous_score = prior.get('overallAverage')
        if current_score is None or previous_score is None:
            continue

        change = round2(current_score - previous_score)
        if previous_score == 0:
            change_percent = None
        else:
            change_percent = round(change / previous_score * 100, 1) + 0.0

        changes.append({
            'competencyId': comp['competencyId'],
            'competencyName': comp['competencyName'],
            'previousScore': previous_score,
            'currentScore': current_score,
            'change': change,
            'changePercent': change_percent,
            'direction': classify_change(change, threshold),
        })

    if not changes:
        return None

    overall_change = round2(mean([c['change'] for c in changes]))

    return {
        'previousAssessmentId': previous['id'],
        'previousCompletedAt': previous['completed_at'],
        'competencyChanges': changes,
        'overallChange': overall_change,
        'overallDirection': classify_change(overall_change, threshold),
    }
