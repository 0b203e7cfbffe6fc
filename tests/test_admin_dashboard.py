from admin_dashboard import (
    assessments_frame,
    benchmark_frame,
    competency_frame,
    gap_frame,
    item_frame,
    response_rate_frame,
    results_export_frame,
)
from benchmarks import annotate_with_benchmark, recompute_benchmark
from demo_data import DEMO_AGENCY, DEMO_LEADERS, load_demo_data_if_empty, seed_demo_data


def test_demo_data_completes_every_cycle(db):
    template_id = seed_demo_data(db, cycles=2)

    assessments = db.get_all_assessments()
    assert len(assessments) == 2 * len(DEMO_LEADERS)
    assert all(a["status"] == "completed" for a in assessments)

    latest = db.get_assessment(assessments[0]["id"])
    assert latest["computed_results"]["trend"]["previousAssessmentId"] is not None
    assert "cciResult" in latest["computed_results"]

    row = recompute_benchmark(db, DEMO_AGENCY, template_id)
    assert row["sample_size"] == 2 * len(DEMO_LEADERS)


def test_demo_data_loads_only_into_empty_database(db):
    assert load_demo_data_if_empty(db) is not None
    count = len(db.get_all_assessments())
    assert load_demo_data_if_empty(db) is None
    assert len(db.get_all_assessments()) == count


def test_frames_from_demo_snapshot(db):
    template_id = seed_demo_data(db, cycles=1)
    assessment = db.get_assessment(db.get_all_assessments()[0]["id"])
    results = assessment["computed_results"]

    competencies = competency_frame(results)
    assert list(competencies["Competency"]) == ["Leading Self", "Developing Others", "Building Trust"]
    assert "Self" in competencies.columns
    assert "Benchmark" not in competencies.columns

    assert len(item_frame(results)) == 8
    assert len(gap_frame(results)) == 3
    assert "Peers" in list(response_rate_frame(results)["Group"])

    benchmark = recompute_benchmark(db, DEMO_AGENCY, template_id)
    annotated = competency_frame(results, annotate_with_benchmark(results, benchmark))
    assert annotated["Percentile"].between(1, 99).all()

    stats = benchmark_frame(benchmark, db.get_template(template_id))
    assert list(stats["N"]) == [len(DEMO_LEADERS)] * 3
    assert list(stats["Competency"])[0] == "Leading Self"


def test_assessments_frame(db):
    seed_demo_data(db, cycles=1)
    frame = assessments_frame(db.get_all_assessments())
    assert len(frame) == len(DEMO_LEADERS)
    assert set(frame["Status"]) == {"Completed"}
    assert list(frame["Responses"])[0] == "9/9"


def test_empty_frames_keep_their_columns():
    assert list(benchmark_frame(None).columns) == ["Competency", "Mean", "Median", "P25", "P75", "Std Dev", "N"]
    assert item_frame({}).empty
    assert gap_frame({}).empty


def test_results_export(db):
    seed_demo_data(db, cycles=1)
    export = results_export_frame(db)
    assert len(export) == 3 * len(DEMO_LEADERS)
    assert {"assessment_id", "competency", "self_score", "others_average", "gap"} <= set(export.columns)
