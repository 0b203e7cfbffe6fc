#!/usr/bin/env python3
"""
THE 360 DEVELOPMENT CATALYST - Scoring & Analytics
==================================================

A Streamlit front end over the multi-rater scoring engine.

Features:
- Assessment overview and rater completion tracking
- Completion, scoring and audited re-scoring of closed assessments
- Competency, gap, Johari, CCI and trend results per assessment
- Agency benchmarks with on-demand recomputation

Run with: streamlit run app.py
"""

import streamlit as st

from admin_dashboard import render_admin_dashboard, render_results
from database import Database
from demo_data import load_demo_data_if_empty
from logging_setup import setup_logging
from settings import settings

# Page config
st.set_page_config(
    page_title="The 360 Development Catalyst",
    page_icon="🧭",
    layout="wide",
    initial_sidebar_state="collapsed"
)

st.markdown("""
<style>
    .main-title {
        font-family: 'Cormorant Garamond', serif;
        font-size: 2.8rem;
        font-weight: 600;
        color: #024731;
        text-align: center;
        margin-bottom: 0.5rem;
        letter-spacing: 0.05em;
    }

    .subtitle {
        font-size: 1.1rem;
        color: #666;
        text-align: center;
        margin-bottom: 2rem;
        font-weight: 300;
    }
</style>
""", unsafe_allow_html=True)

setup_logging(settings.log_level, settings.log_json)

# Initialize database
db = Database()

# Auto-load demo data on first run if database is empty
load_demo_data_if_empty(db)


def get_route():
    """Determine which page to show based on URL parameters."""
    params = st.query_params

    # Direct link to one assessment's results
    if 'assessment' in params:
        return 'results', params['assessment']

    return 'admin', None


def render_results_page(assessment_id):
    try:
        assessment = db.get_assessment(int(assessment_id))
    except ValueError:
        assessment = None

    if assessment is None:
        st.error("Assessment not found.")
        return
    if not assessment['computed_results']:
        st.info("Results are available once the assessment has been completed.")
        return

    st.markdown(f'<p class="main-title">{assessment["name"] or "Assessment"}</p>', unsafe_allow_html=True)
    render_results(db, assessment, assessment['computed_results'])


def main():
    """Main application entry point."""
    route, param = get_route()

    if route == 'results':
        render_results_page(param)
    else:
        render_admin_dashboard(db)


if __name__ == "__main__":
    main()
