#!/usr/bin/env python3
"""
Demo data for the 360 Development Catalyst admin app.

Seeds one agency template, two assessment cycles for three leaders, and
random but reproducible responses, then scores them.
"""

import numpy as np

from framework import DEMO_TEMPLATE_CONFIG, DIRECT_REPORT, MANAGER, PEER, SELF
from results_assembler import complete_assessment

DEMO_AGENCY = 'demo-agency'
DEMO_TENANT = 'demo-tenant'

DEMO_LEADERS = [
    {'id': 'u-sarah', 'name': 'Sarah Mitchell'},
    {'id': 'u-james', 'name': 'James Thompson'},
    {'id': 'u-emma', 'name': 'Emma Richardson'},
]

RATER_MIX = [(SELF, 1), (MANAGER, 1), (PEER, 4), (DIRECT_REPORT, 3)]

COMMENTS_POOL = [
    "Always makes time for us even when busy.",
    "Could step back from operational detail more often.",
    "Really invests in their people.",
    "Communication during change could be earlier.",
    "Completely trustworthy.",
]


def _answers(config, rng, base, self_bonus, rater_type):
    items = []
    for comp in config['competencies']:
        for question in comp['questions']:
            if question.get('type', 'rating') != 'rating':
                if rng.random() < 0.3:
                    items.append({'competencyId': comp['id'], 'questionId': question['id'],
                                  'text': str(rng.choice(COMMENTS_POOL))})
                continue

            score = base + rng.uniform(-0.8, 0.8) + (self_bonus if rater_type == SELF else 0)
            score = int(round(min(5.0, max(1.0, score))))
            if question.get('reverseScored'):
                score = 6 - score
            item = {'competencyId': comp['id'], 'questionId': question['id'], 'rating': score}
            if rng.random() < 0.1:
                item['comment'] = str(rng.choice(COMMENTS_POOL))
            items.append(item)
    return items


def seed_demo_data(db, cycles=2):
    """Load demo data. Returns the demo template id."""
    rng = np.random.default_rng(42)

    template_id = db.add_template(DEMO_AGENCY, 'Leadership 360', DEMO_TEMPLATE_CONFIG)
    db.publish_template(template_id)

    for cycle in range(cycles):
        for leader in DEMO_LEADERS:
            assessment_id = db.add_assessment(
                DEMO_TENANT, template_id,
                name=f"{leader['name']} - cycle {cycle + 1}",
                subject_id=leader['id'],
            )
            for rater_type, count in RATER_MIX:
                for _ in range(count):
                    db.add_invitation(assessment_id, rater_type)

            db.transition_assessment(assessment_id, 'open')

            base = 3.2 + 0.3 * cycle + rng.uniform(-0.4, 0.4)
            for invitation in db.get_invitations(assessment_id):
                items = _answers(DEMO_TEMPLATE_CONFIG, rng, base, 0.5, invitation['rater_type'])
                db.submit_response(invitation['id'], items)

            db.transition_assessment(assessment_id, 'closed')
            complete_assessment(db, assessment_id, actor='demo')

    return template_id


def load_demo_data_if_empty(db):
    """Load demo data if no assessments exist."""
    if db.get_all_assessments():
        return None
    return seed_demo_data(db)
