#!/usr/bin/env python3
"""
Admin dashboard for the 360 Development Catalyst.
Provides the management interface for assessments, scoring, results and benchmarks.
"""
import streamlit as st
import pandas as pd

from framework import GROUP_DISPLAY
from assessment_errors import AssessmentError
from benchmarks import annotate_with_benchmark, recompute_benchmark
from results_assembler import complete_assessment, rescore_assessment
from scoring import GROUP_ORDER
from settings import settings


# ============================================
# TABLE BUILDERS
# ============================================

def _group_label(group):
    return GROUP_DISPLAY.get(group, group.replace('_', ' ').title())


def assessments_frame(assessments):
    """One row per assessment for the overview table."""
    rows = []
    for a in assessments:
        rows.append({
            'ID': a['id'],
            'Name': a.get('name') or '',
            'Subject': a.get('subject_name') or a.get('subject_id') or a.get('subject_email'),
            'Template': f"{a['template_name']} v{a['template_version']}",
            'Status': a['status'].title(),
            'Responses': f"{a['completed_invitations']}/{a['total_invitations']}",
            'Completed At': a.get('completed_at') or '',
        })
    return pd.DataFrame(rows, columns=['ID', 'Name', 'Subject', 'Template', 'Status',
                                       'Responses', 'Completed At'])


def competency_frame(results, annotations=None):
    """Competency scores with one column per reported rater group."""
    annotations = annotations or {}
    competencies = results.get('competencyScores', [])

    groups = []
    for comp in competencies:
        for group in comp['scores']:
            if group not in groups:
                groups.append(group)
    groups.sort(key=lambda g: GROUP_ORDER.index(g) if g in GROUP_ORDER else len(GROUP_ORDER))

    rows = []
    for comp in competencies:
        row = {'Competency': comp['competencyName']}
        for group in groups:
            row[_group_label(group)] = comp['scores'].get(group)
        row['Self'] = comp['selfScore']
        row['Others'] = comp['othersAverage']
        row['Gap'] = comp['gap']
        row['Agreement (SD)'] = comp['raterAgreement']
        note = annotations.get(comp['competencyId'])
        if annotations:
            row['Benchmark'] = note['benchmarkMean'] if note else None
            row['Percentile'] = note['percentileRank'] if note else None
        rows.append(row)
    return pd.DataFrame(rows)


def item_frame(results):
    """Item-level scores in template order."""
    rows = []
    for item in results.get('itemScores', []):
        rows.append({
            'Competency': item['competencyId'],
            'Question': item['questionText'],
            'Reverse': item['reverseScored'],
            'Self': item['selfScore'],
            'Others': item['othersAverage'],
            'Gap': item['gap'],
        })
    return pd.DataFrame(rows, columns=['Competency', 'Question', 'Reverse', 'Self', 'Others', 'Gap'])


def gap_frame(results):
    rows = [{
        'Competency': g['competencyName'],
        'Self': g['selfScore'],
        'Others': g['othersAverage'],
        'Gap': g['gap'],
        'Classification': g['classification'].replace('_', ' ').title(),
        'Johari': g['johariQuadrant'],
    } for g in results.get('gapAnalysis', [])]
    return pd.DataFrame(rows, columns=['Competency', 'Self', 'Others', 'Gap', 'Classification', 'Johari'])


def response_rate_frame(results):
    rows = []
    for group, rate in results.get('responseRateByType', {}).items():
        rows.append({
            'Group': _group_label(group),
            'Invited': rate['invited'],
            'Completed': rate['completed'],
            'Rate %': rate['rate'],
            'Minimum': rate['minRequired'],
            'Below Minimum': rate['belowMinimum'],
        })
    return pd.DataFrame(rows, columns=['Group', 'Invited', 'Completed', 'Rate %', 'Minimum', 'Below Minimum'])


def benchmark_frame(benchmark, template=None):
    """Per-competency benchmark statistics; names come from the template when given."""
    if not benchmark:
        return pd.DataFrame(columns=['Competency', 'Mean', 'Median', 'P25', 'P75', 'Std Dev', 'N'])

    names = {}
    if template is not None:
        names = {comp.id: comp.name for comp in template.competencies}

    rows = []
    for comp_id, stats in benchmark['benchmark_data'].items():
        rows.append({
            'Competency': names.get(comp_id, comp_id),
            'Mean': stats['mean'],
            'Median': stats['median'],
            'P25': stats['p25'],
            'P75': stats['p75'],
            'Std Dev': stats['stdDev'],
            'N': stats['sampleSize'],
        })
    return pd.DataFrame(rows, columns=['Competency', 'Mean', 'Median', 'P25', 'P75', 'Std Dev', 'N'])


def results_export_frame(db, tenant_id=None):
    """Flat competency-level export of every completed assessment."""
    rows = []
    for a in db.get_all_assessments(tenant_id):
        if a['status'] != 'completed':
            continue
        results = db.get_assessment(a['id'])['computed_results'] or {}
        for comp in results.get('competencyScores', []):
            rows.append({
                'assessment_id': a['id'],
                'assessment_name': a['name'],
                'subject': a.get('subject_name') or a.get('subject_id') or a.get('subject_email'),
                'template': a['template_name'],
                'template_version': a['template_version'],
                'competency': comp['competencyName'],
                'self_score': comp['selfScore'],
                'others_average': comp['othersAverage'],
                'gap': comp['gap'],
                'computed_at': results.get('computedAt'),
            })
    return pd.DataFrame(rows)


def _show_error(err):
    st.error(f"❌ {err.message}")
    st.json(err.to_dict())


# ============================================
# PAGES
# ============================================

def render_admin_dashboard(db):
    """Render the admin dashboard."""

    # Header
    st.markdown('<p class="main-title">THE 360 DEVELOPMENT CATALYST</p>', unsafe_allow_html=True)
    st.markdown('<p class="subtitle">Scoring & Analytics</p>', unsafe_allow_html=True)

    tab1, tab2, tab3, tab4 = st.tabs(["📊 Overview", "📋 Assessments", "📈 Benchmarks", "⚙️ Settings"])

    with tab1:
        render_overview_tab(db)

    with tab2:
        render_assessments_tab(db)

    with tab3:
        render_benchmarks_tab(db)

    with tab4:
        render_settings_tab(db)


def render_overview_tab(db):
    """Render the overview/statistics tab."""
    stats = db.get_dashboard_stats()

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Published Templates", stats['published_templates'])
    with col2:
        st.metric("Assessments", stats['total_assessments'])
    with col3:
        st.metric("Completed", stats['completed_assessments'])
    with col4:
        st.metric("Awaiting Scoring", stats['awaiting_scoring'])

    if stats['total_invitations']:
        rate = stats['completed_invitations'] / stats['total_invitations'] * 100
        st.progress(min(rate / 100, 1.0), text=f"Rater completion: {rate:.0f}%")

    st.markdown("---")
    assessments = db.get_all_assessments()
    if not assessments:
        st.info("No assessments yet.")
        return
    st.dataframe(assessments_frame(assessments), use_container_width=True, hide_index=True)


def render_assessments_tab(db):
    """Render scoring actions and results for one assessment."""
    assessments = db.get_all_assessments()
    if not assessments:
        st.info("No assessments yet.")
        return

    labels = {a['id']: f"#{a['id']} {a['name'] or ''} ({a['status']})" for a in assessments}
    assessment_id = st.selectbox("Assessment", list(labels), format_func=labels.get)
    assessment = db.get_assessment(assessment_id)

    if assessment['status'] == 'closed':
        st.info("This assessment is closed and ready to be scored.")
        if st.button("✅ Complete & Score", type="primary"):
            try:
                complete_assessment(db, assessment_id, actor='admin', refresh_benchmark=True)
                st.success("Assessment completed.")
                st.rerun()
            except AssessmentError as err:
                _show_error(err)

    elif assessment['status'] == 'completed':
        with st.expander("🔁 Re-score"):
            reason = st.text_input("Reason for re-scoring", key=f"rescore_reason_{assessment_id}")
            if st.button("Re-score", key=f"rescore_{assessment_id}"):
                if not reason.strip():
                    st.error("Please enter a reason")
                else:
                    try:
                        rescore_assessment(db, assessment_id, reason, actor='admin', refresh_benchmark=True)
                        st.success("Assessment re-scored.")
                        st.rerun()
                    except AssessmentError as err:
                        _show_error(err)

            audit = db.get_scoring_audit(assessment_id)
            if audit:
                st.dataframe(pd.DataFrame(audit)[['action', 'reason', 'actor', 'computed_at']],
                             use_container_width=True, hide_index=True)

    else:
        st.caption(f"Status: {assessment['status'].title()}. Results are available once completed.")

    results = assessment['computed_results']
    if results:
        render_results(db, assessment, results)


def render_results(db, assessment, results):
    """Render a completed snapshot."""
    template = db.get_template(assessment['template_id'])
    benchmark = db.get_benchmark(template.agency_id, template.id)
    annotations = annotate_with_benchmark(results, benchmark)

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Overall Score", results['overallScore'])
    with col2:
        cci = results.get('cciResult')
        st.metric("CCI", f"{cci['normalizedScore']}" if cci else "n/a",
                  help=cci['band'] if cci else None)
    with col3:
        trend = results.get('trend')
        st.metric("Trend", trend['overallDirection'].title() if trend else "n/a",
                  delta=trend['overallChange'] if trend else None)

    st.subheader("Competencies")
    st.dataframe(competency_frame(results, annotations), use_container_width=True, hide_index=True)

    st.subheader("Self vs Others")
    st.dataframe(gap_frame(results), use_container_width=True, hide_index=True)

    col1, col2 = st.columns(2)
    with col1:
        st.markdown("**Highest rated items**")
        for item in results['topItems']:
            st.markdown(f"- {item['questionText']} ({item['overallAverage']})")
    with col2:
        st.markdown("**Lowest rated items**")
        for item in results['bottomItems']:
            st.markdown(f"- {item['questionText']} ({item['overallAverage']})")

    ceiling = results.get('currentCeiling')
    if ceiling:
        st.warning(ceiling['narrative'])

    for goal in results['goalSuggestions']:
        st.info(f"🎯 {goal['competencyName']}: {goal['suggestedGoal']}")

    with st.expander("Response rates"):
        st.dataframe(response_rate_frame(results), use_container_width=True, hide_index=True)

    with st.expander("Items"):
        st.dataframe(item_frame(results), use_container_width=True, hide_index=True)

    if results['comments']:
        with st.expander(f"Comments ({len(results['comments'])})"):
            for comment in results['comments']:
                st.markdown(f"*{_group_label(comment['raterType'])}*: {comment['comment']}")


def render_benchmarks_tab(db):
    """Render agency benchmarks with a recompute action."""
    agency_id = st.text_input("Agency", value="demo-agency")
    if not agency_id:
        return

    benchmarks = db.get_benchmarks_for_agency(agency_id)
    if not benchmarks:
        st.info("No benchmarks for this agency yet.")

    for row in benchmarks:
        st.subheader(f"{row['template_name']} v{row['template_version']}")
        st.caption(f"{row['sample_size']} assessments, computed {row['computed_at']}")
        st.dataframe(benchmark_frame(row, db.get_template(row['template_id'])),
                     use_container_width=True, hide_index=True)

    st.markdown("---")
    template_id = st.number_input("Template ID", min_value=1, step=1)
    rebuild = st.checkbox("Full rebuild (allow the sample to shrink)")
    if st.button("🔄 Recompute Benchmark"):
        try:
            row = recompute_benchmark(db, agency_id, int(template_id), rebuild=rebuild)
            st.success(f"Benchmark recomputed from {row['sample_size']} assessments.")
        except AssessmentError as err:
            _show_error(err)


def render_settings_tab(db):
    """Render the settings/admin tab."""
    settings_subtab1, settings_subtab2 = st.tabs(["🗄️ Database", "ℹ️ App Info"])

    with settings_subtab1:
        render_database_management(db)

    with settings_subtab2:
        render_app_info(db)


def render_database_management(db):
    st.subheader("Database")
    info = db.get_connection_info()
    st.markdown(f"**Type:** {info['type']}")
    st.markdown(f"**Path:** `{info['path']}`")

    export = results_export_frame(db)
    if export.empty:
        st.caption("No completed assessments to export.")
    else:
        st.download_button(
            label="📥 Export Results (CSV)",
            data=export.to_csv(index=False),
            file_name="catalyst_360_results.csv",
            mime="text/csv",
        )


def render_app_info(db):
    st.subheader("Configuration")
    st.json(settings.as_dict())
