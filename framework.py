#!/usr/bin/env python3
"""
Framework configuration for the 360 Development Catalyst scoring engine.

Contains rater groups, lifecycle states, thresholds, and the demo template.
"""

# ============================================
# RESPONDENT GROUPS
# ============================================

SELF = 'self'
MANAGER = 'manager'
PEER = 'peer'
DIRECT_REPORT = 'direct_report'

# Display order is also the order used for deterministic output
RATER_TYPES = [SELF, MANAGER, PEER, DIRECT_REPORT]

# Small groups are folded into this bucket when anonymity applies
FOLDED_GROUP = 'other'

GROUP_DISPLAY = {
    SELF: 'Self',
    MANAGER: 'Line Manager',
    PEER: 'Peers',
    DIRECT_REPORT: 'Direct Reports',
    FOLDED_GROUP: 'Others',
}

# Groups that are never folded, even when below the anonymity threshold
ANONYMITY_EXEMPT_GROUPS = [SELF, MANAGER]

# ============================================
# QUESTION TYPES
# ============================================

QUESTION_RATING = 'rating'
QUESTION_TEXT = 'text'
QUESTION_MULTIPLE_CHOICE = 'multiple_choice'
QUESTION_RANKING = 'ranking'

QUESTION_TYPES = [QUESTION_RATING, QUESTION_TEXT, QUESTION_MULTIPLE_CHOICE, QUESTION_RANKING]

# ============================================
# LIFECYCLES
# ============================================

TEMPLATE_STATUSES = ['draft', 'published', 'archived']

ASSESSMENT_STATUSES = ['draft', 'open', 'closed', 'completed']

# Moves an administrator may make; closed -> completed belongs to the results assembler
ADMIN_TRANSITIONS = {
    'draft': 'open',
    'open': 'closed',
}

# Forward-only main chain; declined/expired are side exits
INVITATION_FLOW = ['pending', 'sent', 'viewed', 'started', 'completed']
INVITATION_SIDE_EXITS = ['declined', 'expired']
INVITATION_TERMINAL = ['completed', 'declined', 'expired']

# ============================================
# THRESHOLDS
# ============================================

SIGNIFICANT_GAP = 0.5
TOP_N_ITEMS = 5
TOP_N_COMPETENCIES = 2
ANONYMITY_THRESHOLD = 3
MAX_LINEAGE_HOPS = 32

# Upper bound of each CCI band as a fraction of the scale range
CCI_BANDS = [
    (0.25, 'Low'),
    (0.50, 'Moderate'),
    (0.75, 'High'),
    (1.00, 'Very High'),
]

GOAL_RULE_OPERATORS = ['less_than', 'less_than_equal', 'equals', 'greater_than']

# ============================================
# DEMO TEMPLATE
# ============================================

RATING_SCALE = {
    1: "Strongly Disagree",
    2: "Disagree",
    3: "Neither Agree nor Disagree",
    4: "Agree",
    5: "Strongly Agree",
}

DEMO_TEMPLATE_CONFIG = {
    'competencies': [
        {
            'id': 'leading-self',
            'name': 'Leading Self',
            'subtitle': 'Composure Must Hold Under Pressure',
            'questions': [
                {'id': 'ls-1', 'text': 'Stays calm and composed under pressure', 'type': 'rating'},
                {'id': 'ls-2', 'text': 'Gets pulled into firefighting at the expense of priorities',
                 'type': 'rating', 'reverseScored': True},
                {'id': 'ls-3', 'text': 'Is open to feedback and actively works to improve',
                 'type': 'rating', 'isCCI': True},
            ],
        },
        {
            'id': 'developing-others',
            'name': 'Developing Others',
            'subtitle': 'Capability Must Outlast the Leader',
            'questions': [
                {'id': 'do-1', 'text': 'Has meaningful development conversations', 'type': 'rating'},
                {'id': 'do-2', 'text': 'Helps people think through problems rather than giving answers',
                 'type': 'rating', 'isCCI': True},
                {'id': 'do-3', 'text': 'What should this person do more of?', 'type': 'text'},
            ],
        },
        {
            'id': 'building-trust',
            'name': 'Building Trust',
            'subtitle': 'Credibility Must Be Earned Daily',
            'questions': [
                {'id': 'bt-1', 'text': 'Does what they say they will do', 'type': 'rating'},
                {'id': 'bt-2', 'text': 'Keeps people in the dark about decisions that affect them',
                 'type': 'rating', 'reverseScored': True},
                {'id': 'bt-3', 'text': 'Creates an environment where people feel safe to speak up',
                 'type': 'rating', 'isCCI': True},
            ],
        },
    ],
    'scaleMin': 1,
    'scaleMax': 5,
    'scaleLabels': list(RATING_SCALE.values()),
    'raterTypes': list(RATER_TYPES),
    'minRatersPerType': {MANAGER: 1, PEER: 3, DIRECT_REPORT: 3},
    'maxRatersPerType': {SELF: 1, MANAGER: 2},
    'gapThreshold': SIGNIFICANT_GAP,
    'goalSuggestionRules': [
        {
            'competencyId': 'building-trust',
            'threshold': 3.0,
            'operator': 'less_than',
            'suggestedGoal': 'Agree and keep one visible commitment to the team each week',
        },
    ],
}
