#!/usr/bin/env python3
"""
Gap and Johari analysis for the 360 Development Catalyst.

Compares each competency's self score with the others' average:

- ``blind_spot``      self >= others + threshold (others see a weakness the subject does not)
- ``hidden_strength`` self <= others - threshold (others see a strength the subject underrates)
- ``aligned``         otherwise

The Johari window is a separate, absolute reading of the same two numbers
against the scale midpoint (score >= midpoint counts as high):

- ``openArea``    self high, others high
- ``blindSpot``   self low,  others high (a strength the subject does not see)
- ``hiddenArea``  self high, others low  (a weakness the subject does not see)
- ``unknownArea`` self low,  others low

A ``blind_spot`` gap therefore pairs with the ``hiddenArea`` quadrant when
the two scores straddle the midpoint, and a ``hidden_strength`` gap pairs
with ``blindSpot``. Each gap entry records the quadrant it fell in so the
two readings can be cross-referenced.
"""

from framework import TOP_N_COMPETENCIES
from scoring import round2

BLIND_SPOT = 'blind_spot'
HIDDEN_STRENGTH = 'hidden_strength'
ALIGNED = 'aligned'

QUADRANTS = ['openArea', 'blindSpot', 'hiddenArea', 'unknownArea']


# ============================================
# GAPS
# ============================================

def classify_gap(gap, threshold):
    """Classify a self-minus-others gap; both boundaries are inclusive."""
    if gap >= threshold:
        return BLIND_SPOT
    if gap <= -threshold:
        return HIDDEN_STRENGTH
    return ALIGNED


def johari_quadrant(self_score, others_average, midpoint):
    self_high = self_score >= midpoint
    others_high = others_average >= midpoint
    if self_high and others_high:
        return 'openArea'
    if others_high:
        return 'blindSpot'
    if self_high:
        return 'hiddenArea'
    return 'unknownArea'


def _interpretation(classification, name):
    if classification == BLIND_SPOT:
        return (f"You rated yourself higher than others did on {name}. "
                f"Others may be experiencing this area differently from how you see it.")
    if classification == HIDDEN_STRENGTH:
        return (f"Others rated you higher than you rated yourself on {name}. "
                f"This is a strength others recognise that you may be underplaying.")
    return f"Your self-assessment and others' ratings on {name} are well aligned."


def analyze_gaps(competency_scores, threshold, midpoint):
    """
    Build gap entries and the Johari window.

    Competencies missing either a self score or an others' average are left
    out of both: there is nothing to compare.
    """
    entries = []
    window = {q: [] for q in QUADRANTS}

    for comp in competency_scores:
        self_score = comp['selfScore']
        others = comp['othersAverage']
        if self_score is None or others is None:
            continue

        gap = round2(self_score - others)
        classification = classify_gap(gap, threshold)
        quadrant = johari_quadrant(self_score, others, midpoint)
        window[quadrant].append(comp['competencyName'])

        entries.append({
            'competencyId': comp['competencyId'],
            'competencyName': comp['competencyName'],
            'selfScore': self_score,
            'othersAverage': others,
            'gap': gap,
            'classification': classification,
            'johariQuadrant': quadrant,
            'interpretation': _interpretation(classification, comp['competencyName']),
        })

    return entries, window


# ============================================
# RANKINGS
# ============================================

def rank_items(item_scores, competency_names, top_n):
    """
    Top and bottom ``top_n`` items by others' average.

    ``item_scores`` must be in template order; ties keep that order
    (competency display order, then question order) in both lists.
    """
    scored = [(pos, item) for pos, item in enumerate(item_scores) if item['overallAverage'] is not None]

    def ranked(item):
        return {
            'competencyId': item['competencyId'],
            'competencyName': competency_names.get(item['competencyId'], ''),
            'questionId': item['questionId'],
            'questionText': item['questionText'],
            'overallAverage': item['overallAverage'],
            'selfScore': item['selfScore'],
            'gap': item['gap'],
        }

    descending = sorted(scored, key=lambda pair: (-pair[1]['overallAverage'], pair[0]))
    ascending = sorted(scored, key=lambda pair: (pair[1]['overallAverage'], pair[0]))

    top = [ranked(item) for _, item in descending[:top_n]]
    bottom = [ranked(item) for _, item in ascending[:top_n]]
    return top, bottom


def strengths_and_development(competency_scores, count=TOP_N_COMPETENCIES):
    """Highest and lowest competencies by others' average, by name."""
    scored = [(pos, c) for pos, c in enumerate(competency_scores) if c['othersAverage'] is not None]
    descending = sorted(scored, key=lambda pair: (-pair[1]['othersAverage'], pair[0]))
    ascending = sorted(scored, key=lambda pair: (pair[1]['othersAverage'], pair[0]))
    strengths = [c['competencyName'] for _, c in descending[:count]]
    development = [c['competencyName'] for _, c in ascending[:count]]
    return strengths, development


def current_ceiling(competency_scores, template):
    """The lowest-scoring competency, framed as the current constraint."""
    scored = [c for c in competency_scores if c['overallAverage'] is not None]
    if not scored:
        return None

    lowest = scored[0]
    for comp in scored[1:]:
        if comp['overallAverage'] < lowest['overallAverage']:
            lowest = comp

    definition = template.competency(lowest['competencyId'])
    subtitle = definition.subtitle if definition else ''
    name = lowest['competencyName']
    focus = f"{name} ({subtitle})" if subtitle else name

    return {
        'competencyId': lowest['competencyId'],
        'competencyName': name,
        'subtitle': subtitle,
        'score': lowest['overallAverage'],
        'narrative': (f"The data suggests that {focus} is the current constraint on leadership "
                      f"capacity. Until this area is addressed, growth in other areas may be limited."),
    }


# ============================================
# GOAL SUGGESTIONS
# ============================================

def _rule_matches(score, operator, threshold):
    if operator == 'less_than':
        return score < threshold
    if operator == 'less_than_equal':
        return score <= threshold
    if operator == 'equals':
        return score == threshold
    if operator == 'greater_than':
        return score > threshold
    return False


def suggest_goals(competency_scores, rules):
    """Apply the template's threshold rules to competency averages."""
    by_id = {c['competencyId']: c for c in competency_scores}
    suggestions = []
    for rule in rules:
        comp = by_id.get(rule['competencyId'])
        if comp is None or comp['overallAverage'] is None:
            continue
        if _rule_matches(comp['overallAverage'], rule['operator'], rule['threshold']):
            suggestions.append({
                'competencyId': comp['competencyId'],
                'competencyName': comp['competencyName'],
                'score': comp['overallAverage'],
                'suggestedGoal': rule['suggestedGoal'],
                'suggestedProgram': rule.get('suggestedProgram'),
            })
    return suggestions
