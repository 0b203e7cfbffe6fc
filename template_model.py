#!/usr/bin/env python3
"""
Template model for the 360 Development Catalyst.

A template is the immutable-once-published definition of an assessment:
ordered competencies, each with ordered questions, a rating scale, the
permitted rater types and optional rater-count limits. The stored config is
the camelCase JSON document edited by the admin layer; ``Template.from_config``
turns it into typed objects and validates it.

Questions are tagged by ``type``. Only rating questions carry the
``reverseScored`` and ``isCCI`` flags, so a reverse-scored text question
cannot be expressed.
"""

from framework import (
    GOAL_RULE_OPERATORS,
    QUESTION_MULTIPLE_CHOICE,
    QUESTION_RANKING,
    QUESTION_RATING,
    QUESTION_TEXT,
    RATER_TYPES,
    SIGNIFICANT_GAP,
    TOP_N_ITEMS,
)
from assessment_errors import InvalidTemplateConfiguration


# ============================================
# QUESTION VARIANTS
# ============================================

class Question:
    type = None

    def __init__(self, id, text):
        self.id = id
        self.text = text

    @property
    def is_rating(self):
        return self.type == QUESTION_RATING

    def to_config(self):
        return {'id': self.id, 'text': self.text, 'type': self.type}


class RatingQuestion(Question):
    type = QUESTION_RATING

    def __init__(self, id, text, reverse_scored=False, is_cci=False):
        super().__init__(id, text)
        self.reverse_scored = reverse_scored
        self.is_cci = is_cci

    def to_config(self):
        config = super().to_config()
        config['reverseScored'] = self.reverse_scored
        config['isCCI'] = self.is_cci
        return config


class TextQuestion(Question):
    type = QUESTION_TEXT


class ChoiceQuestion(Question):
    def __init__(self, id, text, options=None):
        super().__init__(id, text)
        self.options = list(options or [])

    def to_config(self):
        config = super().to_config()
        config['options'] = list(self.options)
        return config


class MultipleChoiceQuestion(ChoiceQuestion):
    type = QUESTION_MULTIPLE_CHOICE


class RankingQuestion(ChoiceQuestion):
    type = QUESTION_RANKING


def question_from_config(raw, competency_id):
    """Build the question variant named by ``raw['type']`` (default: rating)."""
    qtype = raw.get('type') or QUESTION_RATING
    qid = raw.get('id')
    if not qid:
        raise InvalidTemplateConfiguration(
            f"Question in competency '{competency_id}' has no id",
            {'competencyId': competency_id},
        )

    flagged = raw.get('reverseScored') or raw.get('isCCI')
    if qtype != QUESTION_RATING and flagged:
        raise InvalidTemplateConfiguration(
            f"Question '{qid}' is '{qtype}'; only rating questions can be reverse-scored or CCI",
            {'competencyId': competency_id, 'questionId': qid},
        )

    text = raw.get('text', '')

    if qtype == QUESTION_RATING:
        return RatingQuestion(qid, text,
                              reverse_scored=bool(raw.get('reverseScored')),
                              is_cci=bool(raw.get('isCCI')))
    if qtype == QUESTION_TEXT:
        return TextQuestion(qid, text)
    if qtype == QUESTION_MULTIPLE_CHOICE:
        return MultipleChoiceQuestion(qid, text, raw.get('options'))
    if qtype == QUESTION_RANKING:
        return RankingQuestion(qid, text, raw.get('options'))

    raise InvalidTemplateConfiguration(
        f"Unknown question type '{qtype}' for question '{qid}'",
        {'competencyId': competency_id, 'questionId': qid},
    )


# ============================================
# COMPETENCIES AND TEMPLATES
# ============================================

class Competency:
    def __init__(self, id, name, questions, subtitle='', description=''):
        self.id = id
        self.name = name
        self.questions = questions
        self.subtitle = subtitle or ''
        self.description = description or ''

    @property
    def rating_questions(self):
        return [q for q in self.questions if q.is_rating]

    @property
    def cci_question(self):
        """The competency's single CCI item, or None."""
        for q in self.rating_questions:
            if q.is_cci:
                return q
        return None

    def to_config(self):
        return {
            'id': self.id,
            'name': self.name,
            'subtitle': self.subtitle,
            'description': self.description,
            'questions': [q.to_config() for q in self.questions],
        }


class Template:
    def __init__(self, competencies, scale_min, scale_max, rater_types,
                 scale_labels=None, min_raters_per_type=None, max_raters_per_type=None,
                 gap_threshold=SIGNIFICANT_GAP, top_n=TOP_N_ITEMS, goal_suggestion_rules=None,
                 allow_comments=True, anonymize_responses=True,
                 id=None, agency_id=None, name='', version=1, parent_template_id=None,
                 status='draft'):
        self.competencies = competencies
        self.scale_min = scale_min
        self.scale_max = scale_max
        self.rater_types = list(rater_types)
        self.scale_labels = list(scale_labels or [])
        self.min_raters_per_type = dict(min_raters_per_type or {})
        self.max_raters_per_type = dict(max_raters_per_type or {})
        self.gap_threshold = gap_threshold
        self.top_n = top_n
        self.goal_suggestion_rules = list(goal_suggestion_rules or [])
        self.allow_comments = allow_comments
        self.anonymize_responses = anonymize_responses

        # Row metadata
        self.id = id
        self.agency_id = agency_id
        self.name = name
        self.version = version
        self.parent_template_id = parent_template_id
        self.status = status

        self._questions = {}
        for comp in competencies:
            for q in comp.questions:
                self._questions[(comp.id, q.id)] = q

    @classmethod
    def from_config(cls, config, **meta):
        """Parse and validate a camelCase template config document."""
        if not isinstance(config, dict):
            raise InvalidTemplateConfiguration("Template config must be an object")

        default_gap_threshold = meta.pop('default_gap_threshold', SIGNIFICANT_GAP)
        default_top_n = meta.pop('default_top_n', TOP_N_ITEMS)

        competencies = []
        for raw_comp in config.get('competencies') or []:
            comp_id = raw_comp.get('id')
            if not comp_id:
                raise InvalidTemplateConfiguration("Competency has no id")
            questions = [question_from_config(q, comp_id) for q in raw_comp.get('questions') or []]
            competencies.append(Competency(
                comp_id,
                raw_comp.get('name', comp_id),
                questions,
                subtitle=raw_comp.get('subtitle'),
                description=raw_comp.get('description'),
            ))

        template = cls(
            competencies,
            config.get('scaleMin', 1),
            config.get('scaleMax', 5),
            config.get('raterTypes', list(RATER_TYPES)) or [],
            scale_labels=config.get('scaleLabels'),
            min_raters_per_type=config.get('minRatersPerType'),
            max_raters_per_type=config.get('maxRatersPerType'),
            gap_threshold=config.get('gapThreshold', default_gap_threshold),
            top_n=config.get('topN', default_top_n),
            goal_suggestion_rules=config.get('goalSuggestionRules'),
            allow_comments=config.get('allowComments', True),
            anonymize_responses=config.get('anonymizeResponses', True),
            **meta
        )
        template.validate()
        return template

    def to_config(self):
        return {
            'competencies': [c.to_config() for c in self.competencies],
            'scaleMin': self.scale_min,
            'scaleMax': self.scale_max,
            'scaleLabels': list(self.scale_labels),
            'raterTypes': list(self.rater_types),
            'minRatersPerType': dict(self.min_raters_per_type),
            'maxRatersPerType': dict(self.max_raters_per_type),
            'gapThreshold': self.gap_threshold,
            'topN': self.top_n,
            'goalSuggestionRules': list(self.goal_suggestion_rules),
            'allowComments': self.allow_comments,
            'anonymizeResponses': self.anonymize_responses,
        }

    def validate(self):
        """Raise InvalidTemplateConfiguration on the first structural problem."""
        if not isinstance(self.scale_min, (int, float)) or not isinstance(self.scale_max, (int, float)):
            raise InvalidTemplateConfiguration("Scale bounds must be numbers")
        if self.scale_min >= self.scale_max:
            raise InvalidTemplateConfiguration(
                f"scaleMin ({self.scale_min}) must be below scaleMax ({self.scale_max})"
            )

        unknown = [rt for rt in self.rater_types if rt not in RATER_TYPES]
        if unknown:
            raise InvalidTemplateConfiguration(f"Unknown rater types: {', '.join(unknown)}")
        if not self.rater_types:
            raise InvalidTemplateConfiguration("Template permits no rater types")

        for limits_name, limits in (('minRatersPerType', self.min_raters_per_type),
                                    ('maxRatersPerType', self.max_raters_per_type)):
            for rater_type, count in limits.items():
                if rater_type not in self.rater_types:
                    raise InvalidTemplateConfiguration(
                        f"{limits_name} names rater type '{rater_type}' which the template does not permit"
                    )
                if not isinstance(count, int) or count < 0:
                    raise InvalidTemplateConfiguration(f"{limits_name}['{rater_type}'] must be a non-negative integer")
        for rater_type, low in self.min_raters_per_type.items():
            high = self.max_raters_per_type.get(rater_type)
            if high is not None and low > high:
                raise InvalidTemplateConfiguration(
                    f"minRatersPerType exceeds maxRatersPerType for '{rater_type}'"
                )

        if not isinstance(self.gap_threshold, (int, float)) or self.gap_threshold <= 0:
            raise InvalidTemplateConfiguration("gapThreshold must be a positive number")
        if not isinstance(self.top_n, int) or self.top_n < 1:
            raise InvalidTemplateConfiguration("topN must be a positive integer")

        seen_competencies = set()
        for comp in self.competencies:
            if comp.id in seen_competencies:
                raise InvalidTemplateConfiguration(f"Duplicate competency id '{comp.id}'")
            seen_competencies.add(comp.id)

            seen_questions = set()
            for q in comp.questions:
                if q.id in seen_questions:
                    raise InvalidTemplateConfiguration(
                        f"Duplicate question id '{q.id}' in competency '{comp.id}'",
                        {'competencyId': comp.id, 'questionId': q.id},
                    )
                seen_questions.add(q.id)

            cci_ids = [q.id for q in comp.rating_questions if q.is_cci]
            if len(cci_ids) > 1:
                raise InvalidTemplateConfiguration(
                    f"Competency '{comp.id}' has {len(cci_ids)} CCI items; at most one is allowed",
                    {'competencyId': comp.id, 'questionIds': cci_ids},
                )

        for rule in self.goal_suggestion_rules:
            if rule.get('competencyId') not in seen_competencies:
                raise InvalidTemplateConfiguration(
                    f"Goal rule references unknown competency '{rule.get('competencyId')}'"
                )
            if rule.get('operator') not in GOAL_RULE_OPERATORS:
                raise InvalidTemplateConfiguration(f"Unknown goal rule operator '{rule.get('operator')}'")
            if not isinstance(rule.get('threshold'), (int, float)):
                raise InvalidTemplateConfiguration("Goal rule threshold must be a number")

    # ------------------------------------------
    # Lookups used by the scorer
    # ------------------------------------------

    def question(self, competency_id, question_id):
        return self._questions.get((competency_id, question_id))

    def competency(self, competency_id):
        for comp in self.competencies:
            if comp.id == competency_id:
                return comp
        return None

    @property
    def midpoint(self):
        return (self.scale_min + self.scale_max) / 2

    @property
    def scale_range(self):
        return self.scale_max - self.scale_min

    def effective_rating(self, question, rating):
        """Invert reverse-scored ratings onto the same scale."""
        if question.reverse_scored:
            return (self.scale_max + self.scale_min) - rating
        return rating

    def rating_in_scale(self, rating):
        return (isinstance(rating, (int, float)) and not isinstance(rating, bool)
                and self.scale_min <= rating <= self.scale_max)


# ============================================
# LINEAGE
# ============================================

def lineage_root(template_id, templates_by_id, max_hops):
    """
    Walk parent pointers from ``template_id`` to the root of its version chain.

    ``templates_by_id`` maps id -> row (dict with ``parent_template_id``). The
    walk stops at a missing parent or after ``max_hops`` steps and returns the
    last id reached. A misconfigured chain that loops back on itself resolves
    to the smallest id in the loop, so every member agrees on one root.
    """
    path = [template_id]
    for _ in range(max_hops):
        row = templates_by_id.get(path[-1])
        parent = row.get('parent_template_id') if row else None
        if not parent or parent not in templates_by_id:
            break
        if parent in path:
            return min(path[path.index(parent):])
        path.append(parent)
    return path[-1]


def lineage_members(template_id, templates_by_id, max_hops):
    """All template ids that share a lineage root with ``template_id``."""
    root = lineage_root(template_id, templates_by_id, max_hops)
    return {
        tid for tid in templates_by_id
        if lineage_root(tid, templates_by_id, max_hops) == root
    }
