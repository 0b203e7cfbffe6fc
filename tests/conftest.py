import copy

import pytest

from database import Database

AGENCY = "agency-1"
TENANT = "tenant-1"


def build_config(**overrides):
    """Two competencies on a 1-5 scale; every rater type permitted, no limits."""
    config = {
        "competencies": [
            {
                "id": "comm",
                "name": "Communication",
                "subtitle": "Clarity First",
                "questions": [
                    {"id": "q1", "text": "Explains decisions clearly", "type": "rating"},
                    {"id": "q2", "text": "Leaves people guessing", "type": "rating", "reverseScored": True},
                ],
            },
            {
                "id": "deleg",
                "name": "Delegation",
                "questions": [
                    {"id": "q3", "text": "Coaches rather than tells", "type": "rating", "isCCI": True},
                    {"id": "q4", "text": "Anything else?", "type": "text"},
                ],
            },
        ],
        "scaleMin": 1,
        "scaleMax": 5,
        "raterTypes": ["self", "manager", "peer", "direct_report"],
    }
    config.update(overrides)
    return config


def single_competency_config():
    """One competency, one normal and one reverse-scored question."""
    return {
        "competencies": [
            {
                "id": "lead",
                "name": "Leadership",
                "questions": [
                    {"id": "a", "text": "Sets direction", "type": "rating"},
                    {"id": "b", "text": "Avoids hard calls", "type": "rating", "reverseScored": True},
                ],
            },
        ],
        "scaleMin": 1,
        "scaleMax": 5,
        "raterTypes": ["self", "manager", "peer", "direct_report"],
    }


def answers(config, ratings):
    """``{question_id: rating}`` -> response items, looking up each competency."""
    competency_of = {}
    for comp in config["competencies"]:
        for question in comp["questions"]:
            competency_of[question["id"]] = comp["id"]
    return [
        {"competencyId": competency_of[qid], "questionId": qid, "rating": rating}
        for qid, rating in ratings.items()
    ]


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "catalyst.db"), timeout=0.5)


@pytest.fixture
def config():
    return copy.deepcopy(build_config())


@pytest.fixture
def published_template(db):
    def _make(config=None, agency_id=AGENCY):
        template_id = db.add_template(agency_id, "Leadership 360", config or build_config())
        db.publish_template(template_id)
        return template_id
    return _make


@pytest.fixture
def seed_assessment(db, published_template):
    """
    Create a closed assessment with one completed response per entry of
    ``raters`` (a list of ``(rater_type, {question_id: rating})``).
    """
    def _seed(raters, config=None, template_id=None, subject_id="subject-1",
              anonymize=False, extra_invitations=()):
        config = config or build_config()
        if template_id is None:
            template_id = published_template(config)
        assessment_id = db.add_assessment(TENANT, template_id, name="Cycle", subject_id=subject_id,
                                          anonymize=anonymize)
        invitation_ids = []
        for rater_type, _ in raters:
            invitation_id, _ = db.add_invitation(assessment_id, rater_type)
            invitation_ids.append(invitation_id)
        for rater_type in extra_invitations:
            db.add_invitation(assessment_id, rater_type)

        db.transition_assessment(assessment_id, "open")
        for invitation_id, (_, ratings) in zip(invitation_ids, raters):
            db.submit_response(invitation_id, answers(config, ratings))
        db.transition_assessment(assessment_id, "closed")
        return assessment_id
    return _seed
