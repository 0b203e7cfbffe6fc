#!/usr/bin/env python3
"""
Database module for the 360 Development Catalyst scoring engine.

Handles persistence of templates, assessments, invitations, responses,
computed result snapshots, benchmarks and the scoring audit trail using
SQLite.

Writes that must not interleave (assessment completion, re-scoring,
benchmark upserts, response submission) run inside ``BEGIN IMMEDIATE``
transactions, so a second writer either waits for the first or fails
cleanly without touching stored state.
"""

import json
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from framework import (
    ADMIN_TRANSITIONS,
    ANONYMITY_THRESHOLD,
    INVITATION_FLOW,
    INVITATION_SIDE_EXITS,
    INVITATION_TERMINAL,
    RATER_TYPES,
)
from assessment_errors import (
    BenchmarkRecomputationConflict,
    BenchmarkSampleShrank,
    ConcurrentCompletionConflict,
    InvalidResponse,
    InvalidTemplateConfiguration,
    InvalidTransition,
    NotFound,
    ResponseAlreadyComplete,
)
from settings import settings
from template_model import Template, lineage_members


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


def canonical_dumps(value):
    """Deterministic JSON with sorted keys and tight separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _loads(text):
    return json.loads(text) if text else None


def is_lock_error(exc):
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class Database:
    def __init__(self, db_path=None, timeout=None):
        """Open (and create if needed) the SQLite database at ``db_path``."""
        self.db_path = db_path or settings.db_path
        self.timeout = settings.lock_timeout if timeout is None else timeout
        self.init_database()

    def get_connection(self):
        """Get a database connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _fetchall(self, query, params=()):
        """Execute a query and fetch all results as list of dicts."""
        conn = self.get_connection()
        try:
            return [dict(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def _fetchone(self, query, params=()):
        """Execute a query and fetch one result as dict."""
        conn = self.get_connection()
        try:
            row = conn.execute(query, params).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self, conflict_error=None):
        """
        Yield a connection inside BEGIN IMMEDIATE; commit on success.

        When the write lock cannot be acquired and ``conflict_error`` is given,
        that error is raised instead of sqlite's OperationalError.
        """
        conn = self.get_connection()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                if conflict_error is not None and is_lock_error(exc):
                    raise conflict_error(f"Could not acquire write lock: {exc}") from exc
                raise
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def init_database(self):
        """Initialize the database schema."""
        conn = self.get_connection()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agency_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'draft',
                    version INTEGER NOT NULL DEFAULT 1,
                    parent_template_id INTEGER REFERENCES templates(id),
                    config TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS assessments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    template_id INTEGER NOT NULL REFERENCES templates(id),
                    name TEXT,
                    subject_id TEXT,
                    subject_name TEXT,
                    subject_email TEXT,
                    program_id TEXT,
                    status TEXT NOT NULL DEFAULT 'draft',
                    open_date TEXT,
                    close_date TEXT,
                    anonymize INTEGER NOT NULL DEFAULT 1,
                    anonymity_threshold INTEGER NOT NULL,
                    computed_results TEXT,
                    computed_at TEXT,
                    completed_at TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CHECK ((subject_id IS NULL) <> (subject_email IS NULL))
                );

                CREATE TABLE IF NOT EXISTS invitations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    assessment_id INTEGER NOT NULL REFERENCES assessments(id),
                    rater_type TEXT NOT NULL,
                    rater_name TEXT,
                    rater_email TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    token TEXT UNIQUE NOT NULL,
                    completed_at TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    invitation_id INTEGER NOT NULL REFERENCES invitations(id),
                    items TEXT NOT NULL,
                    overall_comments TEXT,
                    is_complete INTEGER NOT NULL DEFAULT 0,
                    submitted_at TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE UNIQUE INDEX IF NOT EXISTS responses_one_complete_idx
                    ON responses(invitation_id) WHERE is_complete = 1;

                CREATE TABLE IF NOT EXISTS benchmarks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agency_id TEXT NOT NULL,
                    template_id INTEGER NOT NULL REFERENCES templates(id),
                    sample_size INTEGER NOT NULL DEFAULT 0,
                    benchmark_data TEXT NOT NULL,
                    computed_at TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (agency_id, template_id)
                );

                CREATE TABLE IF NOT EXISTS scoring_audit (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    assessment_id INTEGER NOT NULL REFERENCES assessments(id),
                    action TEXT NOT NULL,
                    reason TEXT,
                    actor TEXT,
                    computed_at TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """)

            # Databases created before assessments stored their anonymity threshold
            columns = [row['name'] for row in conn.execute("PRAGMA table_info(assessments)")]
            if 'anonymity_threshold' not in columns:
                conn.execute(f"""
                    ALTER TABLE assessments
                    ADD COLUMN anonymity_threshold INTEGER NOT NULL DEFAULT {int(ANONYMITY_THRESHOLD)}
                """)
        finally:
            conn.close()

    # ==========================================
    # TEMPLATES
    # ==========================================

    def add_template(self, agency_id, name, config, parent_template_id=None, version=1):
        """Validate and store a draft template. Returns its id."""
        config = self._resolve_config(config)

        with self._write_transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO templates (agency_id, name, version, parent_template_id, config)
                VALUES (?, ?, ?, ?, ?)
            """, (agency_id, name, version, parent_template_id, canonical_dumps(config)))
            return cursor.lastrowid

    @staticmethod
    def _resolve_config(config):
        """
        Validate ``config`` and return a copy with the configured gap threshold
        and top-N written in wherever the template leaves them out, so later
        scoring never depends on the settings of the day.
        """
        Template.from_config(config)
        resolved = dict(config)
        resolved.setdefault('gapThreshold', settings.gap_threshold)
        resolved.setdefault('topN', settings.top_n)
        Template.from_config(resolved)
        return resolved

    def get_template_row(self, template_id):
        row = self._fetchone("SELECT * FROM templates WHERE id = ?", (template_id,))
        if row:
            row['config'] = _loads(row['config'])
        return row

    def get_template(self, template_id):
        """Get a template as a validated Template, or None."""
        row = self.get_template_row(template_id)
        if row is None:
            return None
        return Template.from_config(
            row['config'],
            id=row['id'],
            agency_id=row['agency_id'],
            name=row['name'],
            version=row['version'],
            parent_template_id=row['parent_template_id'],
            status=row['status'],
        )

    def get_templates_by_id(self):
        """Id -> row map of every template, used to walk version lineage."""
        rows = self._fetchall("SELECT id, parent_template_id, version, status FROM templates")
        return {row['id']: row for row in rows}

    def update_template_config(self, template_id, config):
        """Replace the config of a draft template. Published templates are immutable."""
        config = self._resolve_config(config)
        with self._write_transaction() as conn:
            cursor = conn.execute("""
                UPDATE templates SET config = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = 'draft'
            """, (canonical_dumps(config), template_id))
            if cursor.rowcount == 0:
                raise InvalidTransition(
                    f"Template {template_id} is not a draft; create a new version instead",
                    {'templateId': template_id},
                )

    def _set_template_status(self, template_id, from_status, to_status):
        with self._write_transaction() as conn:
            cursor = conn.execute("""
                UPDATE templates SET status = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = ?
            """, (to_status, template_id, from_status))
            if cursor.rowcount == 0:
                raise InvalidTransition(
                    f"Template {template_id} cannot move to '{to_status}'",
                    {'templateId': template_id, 'expected': from_status},
                )

    def publish_template(self, template_id):
        self._set_template_status(template_id, 'draft', 'published')

    def archive_template(self, template_id):
        self._set_template_status(template_id, 'published', 'archived')

    def create_template_version(self, template_id, config=None):
        """Create a new draft version whose parent is ``template_id``."""
        parent = self.get_template_row(template_id)
        if parent is None:
            raise NotFound(f"Template {template_id} not found", {'templateId': template_id})
        return self.add_template(
            parent['agency_id'],
            parent['name'],
            config if config is not None else parent['config'],
            parent_template_id=template_id,
            version=parent['version'] + 1,
        )

    # ==========================================
    # ASSESSMENTS
    # ==========================================

    def add_assessment(self, tenant_id, template_id, name=None, subject_id=None,
                       subject_name=None, subject_email=None, anonymize=None,
                       program_id=None, open_date=None, close_date=None, anonymity_threshold=None):
        """
        Create a draft assessment of one subject from a published template.

        The subject is either an internal user (``subject_id``) or an external
        person (``subject_name`` + ``subject_email``), never both.

        ``anonymize`` defaults to the template's ``anonymizeResponses``. The
        anonymity threshold in force at creation is stored with the assessment
        and used by every later scoring of it.
        """
        if subject_id is not None and (subject_name is not None or subject_email is not None):
            raise ValueError("An assessment subject is either internal or external, not both")
        if subject_id is None and not (subject_name and subject_email):
            raise ValueError("External subjects need both a name and an email")

        template = self.get_template_row(template_id)
        if template is None:
            raise NotFound(f"Template {template_id} not found", {'templateId': template_id})
        if template['status'] != 'published':
            raise InvalidTemplateConfiguration(
                f"Template {template_id} is '{template['status']}'; assessments need a published template",
                {'templateId': template_id},
            )

        if anonymize is None:
            anonymize = template['config'].get('anonymizeResponses', True)
        if anonymity_threshold is None:
            anonymity_threshold = settings.anonymity_threshold

        with self._write_transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO assessments (tenant_id, template_id, name, subject_id, subject_name,
                                         subject_email, program_id, anonymize, anonymity_threshold,
                                         open_date, close_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (tenant_id, template_id, name, subject_id, subject_name, subject_email,
                  program_id, 1 if anonymize else 0, anonymity_threshold, open_date, close_date))
            return cursor.lastrowid

    def _assessment_from_row(self, row):
        row['anonymize'] = bool(row['anonymize'])
        row['computed_results'] = _loads(row['computed_results'])
        return row

    def get_assessment(self, assessment_id):
        """Get a specific assessment by ID, with its snapshot decoded."""
        row = self._fetchone("SELECT * FROM assessments WHERE id = ?", (assessment_id,))
        return self._assessment_from_row(row) if row else None

    def get_all_assessments(self, tenant_id=None):
        """Get assessments with invitation counts, newest first."""
        query = """
            SELECT
                a.id, a.tenant_id, a.template_id, a.name, a.subject_id, a.subject_name,
                a.subject_email, a.status, a.anonymize, a.computed_at, a.completed_at,
                t.name as template_name,
                t.version as template_version,
                COUNT(DISTINCT i.id) as total_invitations,
                COUNT(DISTINCT CASE WHEN i.status = 'completed' THEN i.id END) as completed_invitations
            FROM assessments a
            JOIN templates t ON a.template_id = t.id
            LEFT JOIN invitations i ON i.assessment_id = a.id
        """
        params = ()
        if tenant_id is not None:
            query += " WHERE a.tenant_id = ?"
            params = (tenant_id,)
        query += " GROUP BY a.id ORDER BY a.id DESC"
        return self._fetchall(query, params)

    def transition_assessment(self, assessment_id, new_status):
        """
        Administrative status move: draft -> open or open -> closed.

        Completion is not available here; it belongs to the results assembler.
        """
        assessment = self.get_assessment(assessment_id)
        if assessment is None:
            raise NotFound(f"Assessment {assessment_id} not found", {'assessmentId': assessment_id})

        current = assessment['status']
        if ADMIN_TRANSITIONS.get(current) != new_status:
            raise InvalidTransition(
                f"Assessment {assessment_id} cannot move from '{current}' to '{new_status}'",
                {'assessmentId': assessment_id, 'from': current, 'to': new_status},
            )

        with self._write_transaction() as conn:
            cursor = conn.execute("""
                UPDATE assessments SET status = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = ?
            """, (new_status, assessment_id, current))
            if cursor.rowcount == 0:
                raise InvalidTransition(
                    f"Assessment {assessment_id} changed status concurrently",
                    {'assessmentId': assessment_id, 'from': current, 'to': new_status},
                )

    # ==========================================
    # INVITATIONS
    # ==========================================

    def generate_token(self):
        """Generate a unique, URL-safe token."""
        return secrets.token_urlsafe(16)

    def add_invitation(self, assessment_id, rater_type, rater_name=None, rater_email=None):
        """Invite a rater. Returns ``(invitation_id, token)``."""
        assessment = self.get_assessment(assessment_id)
        if assessment is None:
            raise NotFound(f"Assessment {assessment_id} not found", {'assessmentId': assessment_id})
        if assessment['status'] not in ('draft', 'open'):
            raise InvalidTransition(
                f"Assessment {assessment_id} is '{assessment['status']}' and no longer takes raters",
                {'assessmentId': assessment_id},
            )

        template = self.get_template(assessment['template_id'])
        if rater_type not in template.rater_types:
            raise InvalidTemplateConfiguration(
                f"Rater type '{rater_type}' is not permitted by template {template.id}",
                {'raterType': rater_type, 'permitted': template.rater_types},
            )

        token = self.generate_token()
        with self._write_transaction() as conn:
            limit = template.max_raters_per_type.get(rater_type)
            if limit is not None:
                active = conn.execute("""
                    SELECT COUNT(*) FROM invitations
                    WHERE assessment_id = ? AND rater_type = ? AND status NOT IN ('declined', 'expired')
                """, (assessment_id, rater_type)).fetchone()[0]
                if active >= limit:
                    raise InvalidTemplateConfiguration(
                        f"maxRatersPerType for '{rater_type}' is {limit}",
                        {'raterType': rater_type, 'limit': limit},
                    )

            cursor = conn.execute("""
                INSERT INTO invitations (assessment_id, rater_type, rater_name, rater_email, token)
                VALUES (?, ?, ?, ?, ?)
            """, (assessment_id, rater_type, rater_name, rater_email, token))
            return cursor.lastrowid, token

    def get_invitation(self, invitation_id):
        return self._fetchone("SELECT * FROM invitations WHERE id = ?", (invitation_id,))

    def get_invitation_by_token(self, token):
        """Get invitation information by its unique token."""
        return self._fetchone("""
            SELECT i.*, a.status as assessment_status, a.template_id
            FROM invitations i
            JOIN assessments a ON i.assessment_id = a.id
            WHERE i.token = ?
        """, (token,))

    def get_invitations(self, assessment_id):
        """Get all invitations for an assessment, self first."""
        rows = self._fetchall("SELECT * FROM invitations WHERE assessment_id = ? ORDER BY id",
                              (assessment_id,))
        return sorted(rows, key=lambda r: (RATER_TYPES.index(r['rater_type'])
                                           if r['rater_type'] in RATER_TYPES else len(RATER_TYPES), r['id']))

    @staticmethod
    def _check_invitation_move(current, new_status):
        if current in INVITATION_TERMINAL:
            return False
        if new_status in INVITATION_SIDE_EXITS:
            return True
        if new_status not in INVITATION_FLOW:
            return False
        return INVITATION_FLOW.index(new_status) > INVITATION_FLOW.index(current)

    def update_invitation_status(self, invitation_id, new_status):
        """
        Move an invitation forward (pending -> sent -> viewed -> started), or
        out through declined/expired. Completion happens via submit_response.
        """
        if new_status == 'completed':
            raise InvalidTransition("Invitations complete by submitting a response",
                                    {'invitationId': invitation_id})

        with self._write_transaction() as conn:
            row = conn.execute("SELECT status FROM invitations WHERE id = ?", (invitation_id,)).fetchone()
            if row is None:
                raise NotFound(f"Invitation {invitation_id} not found", {'invitationId': invitation_id})
            if not self._check_invitation_move(row['status'], new_status):
                raise InvalidTransition(
                    f"Invitation {invitation_id} cannot move from '{row['status']}' to '{new_status}'",
                    {'invitationId': invitation_id, 'from': row['status'], 'to': new_status},
                )
            conn.execute("""
                UPDATE invitations SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?
            """, (new_status, invitation_id))

    # ==========================================
    # RESPONSE STORE
    # ==========================================

    def _validate_items(self, template, items, overall_comments=None):
        if overall_comments is not None:
            if not isinstance(overall_comments, str):
                raise InvalidResponse("Overall comments must be text")
            if not template.allow_comments:
                raise InvalidResponse("This template does not take comments")
        if not isinstance(items, list):
            raise InvalidResponse("Response items must be a list")

        seen = set()
        for item in items:
            if not isinstance(item, dict):
                raise InvalidResponse("Each response item must be an object")
            comp_id = item.get('competencyId')
            q_id = item.get('questionId')
            question = None
            if isinstance(comp_id, str) and isinstance(q_id, str):
                question = template.question(comp_id, q_id)
            if question is None:
                raise InvalidResponse(f"Unknown question {comp_id}/{q_id}",
                                      {'competencyId': comp_id, 'questionId': q_id})
            if (comp_id, q_id) in seen:
                raise InvalidResponse(f"Question {comp_id}/{q_id} is answered more than once",
                                      {'competencyId': comp_id, 'questionId': q_id})
            seen.add((comp_id, q_id))

            for field in ('text', 'comment'):
                value = item.get(field)
                if value is not None and not isinstance(value, str):
                    raise InvalidResponse(f"'{field}' for {comp_id}/{q_id} must be text",
                                          {'competencyId': comp_id, 'questionId': q_id})
            if item.get('comment') is not None and not template.allow_comments:
                raise InvalidResponse("This template does not take comments",
                                      {'competencyId': comp_id, 'questionId': q_id})

            rating = item.get('rating')
            if rating is None:
                continue
            if not question.is_rating:
                raise InvalidResponse(f"Question {comp_id}/{q_id} does not take a rating",
                                      {'competencyId': comp_id, 'questionId': q_id})
            if not template.rating_in_scale(rating):
                raise InvalidResponse(
                    f"Rating {rating!r} for {comp_id}/{q_id} is outside "
                    f"[{template.scale_min}, {template.scale_max}]",
                    {'competencyId': comp_id, 'questionId': q_id, 'rating': rating},
                )

    def _load_for_response(self, conn, invitation_id):
        row = conn.execute("""
            SELECT i.id, i.status, i.assessment_id, a.status as assessment_status, a.template_id
            FROM invitations i
            JOIN assessments a ON i.assessment_id = a.id
            WHERE i.id = ?
        """, (invitation_id,)).fetchone()
        if row is None:
            raise NotFound(f"Invitation {invitation_id} not found", {'invitationId': invitation_id})
        if row['status'] == 'completed':
            raise ResponseAlreadyComplete(
                f"Invitation {invitation_id} already has a completed response",
                {'invitationId': invitation_id},
            )
        if row['status'] in INVITATION_SIDE_EXITS:
            raise InvalidResponse(f"Invitation {invitation_id} is '{row['status']}'",
                                  {'invitationId': invitation_id})
        if row['assessment_status'] != 'open':
            raise InvalidResponse(
                f"Assessment {row['assessment_id']} is '{row['assessment_status']}', not open",
                {'assessmentId': row['assessment_id']},
            )
        return row

    def save_response_draft(self, invitation_id, items, overall_comments=None):
        """Append an in-progress draft and mark the invitation started."""
        invitation = self.get_invitation(invitation_id)
        if invitation is None:
            raise NotFound(f"Invitation {invitation_id} not found", {'invitationId': invitation_id})
        assessment = self.get_assessment(invitation['assessment_id'])
        self._validate_items(self.get_template(assessment['template_id']), items, overall_comments)

        with self._write_transaction() as conn:
            row = self._load_for_response(conn, invitation_id)
            cursor = conn.execute("""
                INSERT INTO responses (invitation_id, items, overall_comments, is_complete)
                VALUES (?, ?, ?, 0)
            """, (invitation_id, canonical_dumps(items), overall_comments))
            if INVITATION_FLOW.index(row['status']) < INVITATION_FLOW.index('started'):
                conn.execute("""
                    UPDATE invitations SET status = 'started', updated_at = CURRENT_TIMESTAMP WHERE id = ?
                """, (invitation_id,))
            return cursor.lastrowid

    def get_latest_draft(self, invitation_id):
        row = self._fetchone("""
            SELECT * FROM responses WHERE invitation_id = ? AND is_complete = 0
            ORDER BY id DESC LIMIT 1
        """, (invitation_id,))
        if row:
            row['items'] = _loads(row['items'])
        return row

    def submit_response(self, invitation_id, items, overall_comments=None):
        """
        Submit the one completed response for an invitation.

        The response and the invitation's move to 'completed' are written
        together. A completed response can never be replaced.
        """
        invitation = self.get_invitation(invitation_id)
        if invitation is None:
            raise NotFound(f"Invitation {invitation_id} not found", {'invitationId': invitation_id})
        assessment = self.get_assessment(invitation['assessment_id'])
        self._validate_items(self.get_template(assessment['template_id']), items, overall_comments)

        submitted_at = utc_now_iso()
        with self._write_transaction() as conn:
            self._load_for_response(conn, invitation_id)
            try:
                cursor = conn.execute("""
                    INSERT INTO responses (invitation_id, items, overall_comments, is_complete, submitted_at)
                    VALUES (?, ?, ?, 1, ?)
                """, (invitation_id, canonical_dumps(items), overall_comments, submitted_at))
            except sqlite3.IntegrityError as exc:
                raise ResponseAlreadyComplete(
                    f"Invitation {invitation_id} already has a completed response",
                    {'invitationId': invitation_id},
                ) from exc
            conn.execute("""
                UPDATE invitations SET status = 'completed', completed_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (submitted_at, invitation_id))
            return cursor.lastrowid

    def get_completed_responses(self, assessment_id):
        """Completed responses of completed invitations, ordered by invitation."""
        rows = self._fetchall("""
            SELECT r.invitation_id, r.items, r.overall_comments, r.submitted_at, i.rater_type
            FROM responses r
            JOIN invitations i ON r.invitation_id = i.id
            WHERE i.assessment_id = ? AND r.is_complete = 1 AND i.status = 'completed'
            ORDER BY r.invitation_id
        """, (assessment_id,))
        for row in rows:
            row['items'] = _loads(row['items'])
        return rows

    # ==========================================
    # RESULT SNAPSHOTS
    # ==========================================

    def _audit(self, conn, assessment_id, action, computed_at, reason=None, actor=None):
        conn.execute("""
            INSERT INTO scoring_audit (assessment_id, action, reason, actor, computed_at)
            VALUES (?, ?, ?, ?, ?)
        """, (assessment_id, action, reason, actor, computed_at))

    def write_completion(self, assessment_id, results, actor=None):
        """
        closed -> completed together with the first snapshot, as one write.

        Raises ConcurrentCompletionConflict when another writer got there first.
        """
        computed_at = results['computedAt']
        with self._write_transaction(ConcurrentCompletionConflict) as conn:
            cursor = conn.execute("""
                UPDATE assessments
                SET status = 'completed', computed_results = ?, computed_at = ?, completed_at = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = 'closed' AND computed_results IS NULL
            """, (canonical_dumps(results), computed_at, computed_at, assessment_id))
            if cursor.rowcount == 0:
                raise ConcurrentCompletionConflict(
                    f"Assessment {assessment_id} was completed by another request",
                    {'assessmentId': assessment_id},
                )
            self._audit(conn, assessment_id, 'complete', computed_at, actor=actor)

    def write_rescore(self, assessment_id, results, expected_computed_at, reason, actor=None):
        """
        Replace the snapshot of a completed assessment.

        ``expected_computed_at`` is the stamp the caller scored against; if the
        stored stamp has moved on, another re-score won and this one fails.
        """
        computed_at = results['computedAt']
        with self._write_transaction(ConcurrentCompletionConflict) as conn:
            cursor = conn.execute("""
                UPDATE assessments
                SET computed_results = ?, computed_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status = 'completed' AND computed_at = ?
            """, (canonical_dumps(results), computed_at, assessment_id, expected_computed_at))
            if cursor.rowcount == 0:
                raise ConcurrentCompletionConflict(
                    f"Assessment {assessment_id} was re-scored by another request",
                    {'assessmentId': assessment_id},
                )
            self._audit(conn, assessment_id, 'rescore', computed_at, reason=reason, actor=actor)

    def get_scoring_audit(self, assessment_id):
        return self._fetchall("""
            SELECT * FROM scoring_audit WHERE assessment_id = ? ORDER BY id
        """, (assessment_id,))

    def find_previous_completed(self, assessment, max_hops=None):
        """
        Most recent other completed assessment of the same subject whose
        template shares this assessment's version lineage.

        When ``assessment`` is itself completed, only assessments completed
        before it count. Returns ``{'id', 'completed_at', 'results'}`` or None.
        """
        max_hops = settings.max_lineage_hops if max_hops is None else max_hops
        members = sorted(lineage_members(assessment['template_id'], self.get_templates_by_id(), max_hops))

        if assessment.get('subject_id') is not None:
            subject_clause, subject_value = "subject_id = ?", assessment['subject_id']
        else:
            subject_clause, subject_value = "subject_email = ?", assessment['subject_email']

        placeholders = ", ".join("?" for _ in members)
        query = f"""
            SELECT id, completed_at, computed_results FROM assessments
            WHERE {subject_clause}
              AND template_id IN ({placeholders})
              AND status = 'completed'
              AND computed_results IS NOT NULL
              AND id != ?
        """
        params = [subject_value] + members + [assessment['id']]
        if assessment.get('completed_at'):
            query += " AND completed_at < ?"
            params.append(assessment['completed_at'])
        query += " ORDER BY completed_at DESC, id DESC LIMIT 1"

        row = self._fetchone(query, tuple(params))
        if row is None:
            return None
        return {'id': row['id'], 'completed_at': row['completed_at'], 'results': _loads(row['computed_results'])}

    # ==========================================
    # BENCHMARKS
    # ==========================================

    def get_completed_results_for_template(self, template_id):
        rows = self._fetchall("""
            SELECT computed_results FROM assessments
            WHERE template_id = ? AND status = 'completed' AND computed_results IS NOT NULL
            ORDER BY id
        """, (template_id,))
        return [_loads(row['computed_results']) for row in rows]

    def _benchmark_from_row(self, row):
        row['benchmark_data'] = _loads(row['benchmark_data'])
        return row

    def get_benchmark(self, agency_id, template_id):
        row = self._fetchone("""
            SELECT * FROM benchmarks WHERE agency_id = ? AND template_id = ?
        """, (agency_id, template_id))
        return self._benchmark_from_row(row) if row else None

    def get_benchmarks_for_agency(self, agency_id):
        rows = self._fetchall("""
            SELECT b.*, t.name as template_name, t.version as template_version
            FROM benchmarks b
            JOIN templates t ON b.template_id = t.id
            WHERE b.agency_id = ?
            ORDER BY b.template_id
        """, (agency_id,))
        return [self._benchmark_from_row(row) for row in rows]

    def upsert_benchmark(self, agency_id, template_id, data, sample_size, computed_at, rebuild=False):
        """
        Replace the benchmark row for ``(agency_id, template_id)`` in one write.

        Refuses to lower the stored sample size unless ``rebuild`` is set.
        """
        with self._write_transaction(BenchmarkRecomputationConflict) as conn:
            existing = conn.execute("""
                SELECT sample_size FROM benchmarks WHERE agency_id = ? AND template_id = ?
            """, (agency_id, template_id)).fetchone()
            if existing is not None and sample_size < existing['sample_size'] and not rebuild:
                raise BenchmarkSampleShrank(
                    f"Benchmark sample would shrink from {existing['sample_size']} to {sample_size}; "
                    f"run an explicit rebuild",
                    {'agencyId': agency_id, 'templateId': template_id,
                     'stored': existing['sample_size'], 'computed': sample_size},
                )
            conn.execute("""
                INSERT INTO benchmarks (agency_id, template_id, sample_size, benchmark_data, computed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (agency_id, template_id) DO UPDATE SET
                    sample_size = excluded.sample_size,
                    benchmark_data = excluded.benchmark_data,
                    computed_at = excluded.computed_at,
                    updated_at = CURRENT_TIMESTAMP
            """, (agency_id, template_id, sample_size, canonical_dumps(data), computed_at))

        return self.get_benchmark(agency_id, template_id)

    # ==========================================
    # STATISTICS
    # ==========================================

    def get_dashboard_stats(self):
        """Get overall statistics for the admin dashboard."""
        return self._fetchone("""
            SELECT
                (SELECT COUNT(*) FROM templates WHERE status = 'published') as published_templates,
                (SELECT COUNT(*) FROM assessments) as total_assessments,
                (SELECT COUNT(*) FROM assessments WHERE status = 'completed') as completed_assessments,
                (SELECT COUNT(*) FROM assessments WHERE status = 'closed') as awaiting_scoring,
                (SELECT COUNT(*) FROM invitations) as total_invitations,
                (SELECT COUNT(*) FROM invitations WHERE status = 'completed') as completed_invitations
        """)

    def get_connection_info(self):
        """Return info about the current database connection."""
        return {
            'type': 'Local SQLite',
            'path': self.db_path,
            'status': 'Connected',
        }
