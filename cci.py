#!/usr/bin/env python3
"""
Coaching Capacity Index (CCI).

Averages the others' effective score of every item flagged ``isCCI`` (at most
one per competency) and maps the result to a band. Band cutoffs are fractions
of the scale range, so a 1-5 and a 1-7 template with proportionally the same
responses land in the same band.
"""

from framework import CCI_BANDS
from scoring import mean, round2


def cci_band(score, scale_min, scale_max):
    fraction = (score - scale_min) / (scale_max - scale_min)
    for upper, band in CCI_BANDS:
        if fraction <= upper:
            return band
    return CCI_BANDS[-1][1]


def compute_cci(template, item_scores, others_means=None):
    """
    Return the CCI result, or None when the template has no CCI items or no
    non-self rater answered any of them.

    ``others_means`` maps ``(competencyId, questionId)`` to the unrounded
    others' mean. When given, the score and band are taken from those means
    and only the reported numbers are rounded.
    """
    by_key = {(i['competencyId'], i['questionId']): i for i in item_scores}
    others_means = others_means or {}

    items, means = [], []
    for comp in template.competencies:
        question = comp.cci_question
        if question is None:
            continue
        item = by_key.get((comp.id, question.id))
        if item is None or item['othersAverage'] is None:
            continue
        effective = others_means.get((comp.id, question.id))
        if effective is None:
            effective = item['othersAverage']
        means.append(effective)
        items.append({
            'competencyId': comp.id,
            'competencyName': comp.name,
            'questionId': question.id,
            'questionText': question.text,
            # Others' average as answered, before reverse-scoring
            'rawScore': _raw_score(template, question, effective),
            'effectiveScore': round2(effective),
        })

    if not items:
        return None

    score = mean(means)
    normalized = (score - template.scale_min) / template.scale_range * 100

    return {
        'score': round2(score),
        'normalizedScore': round(normalized, 1) + 0.0,
        'band': cci_band(score, template.scale_min, template.scale_max),
        'items': items,
    }


def _raw_score(template, question, effective):
    if question.reverse_scored:
        return round2(template.scale_max + template.scale_min - effective)
    return round2(effective)
