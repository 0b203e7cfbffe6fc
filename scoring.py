#!/usr/bin/env python3
"""
Competency and item scorer.

Reduces the completed responses of one assessment to per-item and
per-competency averages broken out by rater type. Reverse-scored items are
inverted before any averaging. Self ratings are reported separately and never
feed the others' aggregates.
"""

import logging
import math

import numpy as np

from framework import ANONYMITY_EXEMPT_GROUPS, ANONYMITY_THRESHOLD, FOLDED_GROUP, RATER_TYPES, SELF
from assessment_errors import InvalidResponse, InvalidTemplateConfiguration

logger = logging.getLogger(__name__)

GROUP_ORDER = RATER_TYPES + [FOLDED_GROUP]


# ============================================
# NUMERIC HELPERS
# ============================================

def mean(values):
    """Arithmetic mean, or None for an empty sequence."""
    if not values:
        return None
    return float(np.mean(values))


def round2(value):
    if value is None:
        return None
    # Adding 0.0 turns -0.0 into 0.0
    return round(float(value), 2) + 0.0


def population_std(values):
    if not values:
        return None
    return float(np.std(values))


def _ordered_groups(groups):
    return sorted(groups, key=lambda g: GROUP_ORDER.index(g) if g in GROUP_ORDER else len(GROUP_ORDER))


def _bucket(value):
    # Half-up rounding so 3.5 lands in 4
    return int(math.floor(value + 0.5))


# ============================================
# RATER GROUPS
# ============================================

def fold_small_groups(counts, anonymize, threshold=ANONYMITY_THRESHOLD):
    """
    Map each rater type to the group it is reported under.

    With anonymization on, any non-exempt type with fewer than ``threshold``
    completed respondents is reported under the combined ``other`` group.
    """
    group_map = {}
    for rater_type, count in counts.items():
        if anonymize and rater_type not in ANONYMITY_EXEMPT_GROUPS and 0 < count < threshold:
            group_map[rater_type] = FOLDED_GROUP
        else:
            group_map[rater_type] = rater_type
    return group_map


def response_rate_table(template, invitations):
    """Invited / completed counts per rater type, flagging under-response."""
    table = {}
    present = set(template.rater_types) | {inv['rater_type'] for inv in invitations}
    for rater_type in _ordered_groups(present):
        invited = [inv for inv in invitations if inv['rater_type'] == rater_type]
        completed = sum(1 for inv in invited if inv['status'] == 'completed')
        min_required = template.min_raters_per_type.get(rater_type, 0)
        table[rater_type] = {
            'invited': len(invited),
            'completed': completed,
            'rate': int(math.floor(completed / len(invited) * 100 + 0.5)) if invited else 0,
            'minRequired': min_required,
            'belowMinimum': completed < min_required,
        }
    return table


# ============================================
# SCORE MATRIX
# ============================================

def build_score_matrix(template, invitations, responses):
    """
    Collect effective ratings and comments from completed responses.

    Returns ``(matrix, comments, rater_types)`` where ``matrix`` maps
    ``(competency_id, question_id) -> {invitation_id: effective_rating}`` and
    ``rater_types`` maps invitation id -> rater type for the responses used.
    """
    rater_type_by_invitation = {}
    for inv in invitations:
        if inv['rater_type'] not in template.rater_types:
            raise InvalidTemplateConfiguration(
                f"Invitation {inv['id']} has rater type '{inv['rater_type']}' "
                f"which the template does not permit",
                {'invitationId': inv['id'], 'raterType': inv['rater_type']},
            )
        rater_type_by_invitation[inv['id']] = inv['rater_type']

    matrix = {}
    comments = []
    used = {}

    for response in sorted(responses, key=lambda r: r['invitation_id']):
        invitation_id = response['invitation_id']
        rater_type = rater_type_by_invitation.get(invitation_id)
        if rater_type is None:
            logger.warning("Skipping response for unknown invitation %s", invitation_id)
            continue
        used[invitation_id] = rater_type

        for item in response.get('items') or []:
            comp_id = item.get('competencyId')
            q_id = item.get('questionId')
            question = template.question(comp_id, q_id)
            if question is None:
                logger.warning("Skipping answer to unknown question %s/%s", comp_id, q_id)
                continue

            rating = item.get('rating')
            if rating is not None and question.is_rating:
                if not template.rating_in_scale(rating):
                    raise InvalidResponse(
                        f"Rating {rating!r} for {comp_id}/{q_id} is outside "
                        f"[{template.scale_min}, {template.scale_max}]",
                        {'invitationId': invitation_id, 'competencyId': comp_id, 'questionId': q_id},
                    )
                cell = matrix.setdefault((comp_id, q_id), {})
                if invitation_id not in cell:
                    cell[invitation_id] = template.effective_rating(question, rating)

            for text in (item.get('text'), item.get('comment')):
                if text and text.strip():
                    comments.append({
                        'competencyId': comp_id,
                        'questionId': q_id,
                        'raterType': rater_type,
                        'comment': text.strip(),
                    })

        overall = response.get('overall_comments')
        if overall and overall.strip():
            comments.append({
                'competencyId': None,
                'questionId': None,
                'raterType': rater_type,
                'comment': overall.strip(),
            })

    return matrix, comments, used


# ============================================
# SCORER
# ============================================

def _group_ratings(cell, rater_types, group_map):
    by_group = {}
    for invitation_id, rating in cell.items():
        group = group_map[rater_types[invitation_id]]
        by_group.setdefault(group, []).append(rating)
    return by_group


def score_items(template, matrix, rater_types, group_map):
    """Unrounded per-question aggregates in template order."""
    items = []
    for comp in template.competencies:
        for question in comp.rating_questions:
            cell = matrix.get((comp.id, question.id), {})
            by_group = _group_ratings(cell, rater_types, group_map)

            self_ratings = [r for inv, r in cell.items() if rater_types[inv] == SELF]
            other_ratings = [r for inv, r in cell.items() if rater_types[inv] != SELF]

            items.append({
                'competency': comp,
                'question': question,
                'scores': {g: mean(by_group[g]) for g in _ordered_groups(by_group)},
                'self': mean(self_ratings),
                'others': mean(other_ratings),
            })
    return items


def score_competencies(template, matrix, rater_types, items):
    """Unrounded per-competency aggregates: unweighted means of item averages."""
    competencies = []
    for comp in template.competencies:
        comp_items = [i for i in items if i['competency'] is comp]

        groups = set()
        for item in comp_items:
            groups.update(item['scores'])
        scores = {}
        for group in _ordered_groups(groups):
            scores[group] = mean([i['scores'][group] for i in comp_items if group in i['scores']])

        self_score = mean([i['self'] for i in comp_items if i['self'] is not None])
        others = mean([i['others'] for i in comp_items if i['others'] is not None])

        distribution = {}
        if float(template.scale_min).is_integer() and float(template.scale_max).is_integer():
            for value in range(int(template.scale_min), int(template.scale_max) + 1):
                distribution[str(value)] = 0
        per_rater = {}
        for item in comp_items:
            for invitation_id, rating in matrix.get((comp.id, item['question'].id), {}).items():
                key = str(_bucket(rating))
                distribution[key] = distribution.get(key, 0) + 1
                if rater_types[invitation_id] != SELF:
                    per_rater.setdefault(invitation_id, []).append(rating)

        rater_averages = [mean(per_rater[inv]) for inv in sorted(per_rater)]
        agreement = population_std(rater_averages) if len(rater_averages) > 1 else None

        competencies.append({
            'competency': comp,
            'scores': scores,
            'self': self_score,
            'others': others,
            'distribution': distribution,
            'agreement': agreement,
        })
    return competencies


def _gap(self_score, others):
    if self_score is None or others is None:
        return None
    return round2(round2(self_score) - round2(others))


def score_assessment(template, invitations, responses, anonymize=False,
                     anonymity_threshold=ANONYMITY_THRESHOLD):
    """
    Score one assessment.

    Args:
        template: validated Template
        invitations: list of dicts with ``id``, ``rater_type``, ``status``
        responses: completed responses, dicts with ``invitation_id``, ``items``
            and optional ``overall_comments``
        anonymize: fold small rater groups into ``other``

    Returns a dict with ``itemScores``, ``competencyScores``,
    ``responseRateByType`` and ``comments`` in the snapshot's camelCase shape,
    plus ``othersMeans``: the unrounded others' mean per
    ``(competencyId, questionId)`` for callers that aggregate further.
    """
    matrix, comments, rater_types = build_score_matrix(template, invitations, responses)

    counts = {}
    for rater_type in rater_types.values():
        counts[rater_type] = counts.get(rater_type, 0) + 1
    group_map = fold_small_groups(counts, anonymize, anonymity_threshold)

    items = score_items(template, matrix, rater_types, group_map)
    competencies = score_competencies(template, matrix, rater_types, items)

    item_scores = []
    for item in items:
        others = round2(item['others'])
        item_scores.append({
            'competencyId': item['competency'].id,
            'questionId': item['question'].id,
            'questionText': item['question'].text,
            'reverseScored': item['question'].reverse_scored,
            'scores': {g: round2(v) for g, v in item['scores'].items()},
            'selfScore': round2(item['self']),
            'othersAverage': others,
            'overallAverage': others,
            'gap': _gap(item['self'], item['others']),
        })

    competency_scores = []
    for comp in competencies:
        others = round2(comp['others'])
        competency_scores.append({
            'competencyId': comp['competency'].id,
            'competencyName': comp['competency'].name,
            'scores': {g: round2(v) for g, v in comp['scores'].items()},
            'selfScore': round2(comp['self']),
            'othersAverage': others,
            'overallAverage': others,
            'gap': _gap(comp['self'], comp['others']),
            'responseDistribution': comp['distribution'],
            'raterAgreement': round2(comp['agreement']),
        })

    for comment in comments:
        comment['raterType'] = group_map.get(comment['raterType'], comment['raterType'])

    logger.info(
        "Scored %d items across %d competencies from %d responses",
        len(item_scores), len(competency_scores), len(rater_types),
    )

    return {
        'itemScores': item_scores,
        'competencyScores': competency_scores,
        'responseRateByType': response_rate_table(template, invitations),
        'comments': comments,
        'othersMeans': {(i['competency'].id, i['question'].id): i['others'] for i in items},
    }
