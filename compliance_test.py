"""
Tests for compliance aggregation, trend building and rubric scoring.

Reference moment is Wednesday 2024-11-06: week 10 runs 04/11-10/11 and
fortnight 5 runs 28/10-10/11.

Run with: pytest compliance_test.py -v
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from compliance import (
    ViewerScope,
    build_trend,
    compliance_metric,
    compliance_rate,
    compliance_status,
    compute_compliance,
    coordinator_history,
    day_bounds,
    domain_metric,
    fetch_floor,
    index_observations,
    parse_timestamp,
    unassigned_teachers,
    windows_at_period_end,
)
from period_calendar import PeriodType, fortnight_range, week_range
from rubric import DANIELSON_FRAMEWORK, domain_percentages, observation_score

NOW = datetime(2024, 11, 6, 10, 0)
WEEK = week_range(10, NOW)
FORTNIGHT = fortnight_range(5, NOW)

COORDINATORS = [{"id": "coord-1", "full_name": "María González", "school_id": "north"}]


def teacher(teacher_id, name, tenure, coordinator_id="coord-1", school_id="north", **extra):
    row = {
        "id": teacher_id,
        "full_name": name,
        "school_id": school_id,
        "coordinator_id": coordinator_id,
        "tenure_status": tenure,
        "is_active": True,
    }
    row.update(extra)
    return row


def observation(teacher_id, created_at, template_data=None):
    return {"teacher_id": teacher_id, "created_at": created_at, "template_data": template_data or {}}


@pytest.fixture
def scenario():
    teachers = [
        teacher("t-1", "Ana López", "new"),
        teacher("t-2", "Carlos Ruiz", "new"),
        teacher("t-3", "Elena Torres", "tenured"),
    ]
    observations = [
        observation("t-1", "2024-11-05T10:00:00"),
        observation("t-2", "2024-10-30T09:00:00"),
        observation("t-3", "2024-10-29T12:00:00"),
    ]
    return teachers, observations


class TestDayBounds:
    def test_bounds_cover_whole_days(self):
        start, end = day_bounds(date(2024, 11, 4), date(2024, 11, 10))
        assert start == datetime(2024, 11, 4, 0, 0, 0)
        assert end == datetime(2024, 11, 10, 23, 59, 59, 999000)

    def test_parse_timestamp_formats(self):
        assert parse_timestamp("2024-11-05T10:00:00Z", timezone.utc) == datetime(2024, 11, 5, 10, 0)
        assert parse_timestamp("2024-11-05T10:00:00.250000") == datetime(2024, 11, 5, 10, 0, 0, 250000)
        assert parse_timestamp(date(2024, 11, 5)) == datetime(2024, 11, 5)
        assert parse_timestamp("") is None
        assert parse_timestamp("not a date") is None

    def test_aware_timestamps_convert_to_local_time(self):
        local = timezone(timedelta(hours=-6))
        assert parse_timestamp("2024-11-11T05:30:00+00:00", local) == datetime(2024, 11, 10, 23, 30)

    def test_aware_timestamps_without_zone_use_host_local_time(self):
        expected = datetime(2024, 11, 11, 5, 30, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        assert parse_timestamp("2024-11-11T05:30:00+00:00") == expected

    def test_naive_timestamps_are_already_local(self):
        local = timezone(timedelta(hours=-6))
        assert parse_timestamp("2024-11-11T05:30:00", local) == datetime(2024, 11, 11, 5, 30)


class TestComputeCompliance:
    def test_tenure_dependent_windows(self, scenario):
        teachers, observations = scenario
        summary = compute_compliance(COORDINATORS, teachers, observations, None, WEEK, FORTNIGHT)
        row = summary.coordinators[0]
        assert row.total_teachers == 3
        assert row.observed_count == 2
        assert row.compliance_rate == 66.7
        assert row.status == "partial"
        assert row.pending_teachers == ["Carlos Ruiz"]
        assert row.pending_names == "Carlos Ruiz"
        assert summary.total_teachers == 3
        assert summary.observed_count == 2
        assert summary.overall_compliance_rate == 66.7

    def test_new_teacher_needs_an_observation_this_week(self):
        teachers = [teacher("t-1", "Ana López", "new")]
        observations = [observation("t-1", "2024-10-30T09:00:00")]
        summary = compute_compliance(COORDINATORS, teachers, observations, None, WEEK, FORTNIGHT)
        assert summary.observed_count == 0

    def test_tenured_teacher_is_covered_by_the_fortnight(self):
        teachers = [teacher("t-3", "Elena Torres", "tenured")]
        observations = [observation("t-3", "2024-10-28T00:00:00")]
        summary = compute_compliance(COORDINATORS, teachers, observations, None, WEEK, FORTNIGHT)
        assert summary.observed_count == 1

    @pytest.mark.parametrize(
        "created_at,expected",
        [
            ("2024-11-04T00:00:00.000", 1),
            ("2024-11-03T23:59:59.999", 0),
            ("2024-11-10T23:59:59.999", 1),
            ("2024-11-11T00:00:00.000", 0),
        ],
    )
    def test_window_edges(self, created_at, expected):
        teachers = [teacher("t-1", "Ana López", "new")]
        summary = compute_compliance(
            COORDINATORS, teachers, [observation("t-1", created_at)], None, WEEK, FORTNIGHT
        )
        assert summary.observed_count == expected

    def test_zero_teachers_gives_zero_rate(self):
        summary = compute_compliance(COORDINATORS, [], [], None, WEEK, FORTNIGHT)
        assert summary.coordinators[0].compliance_rate == 0
        assert summary.overall_compliance_rate == 0
        assert summary.total_coordinators == 1

    def test_no_coordinators_gives_empty_summary(self, scenario):
        teachers, observations = scenario
        summary = compute_compliance([], teachers, observations, None, WEEK, FORTNIGHT)
        assert summary.total_coordinators == 0
        assert summary.total_teachers == 0
        assert summary.overall_compliance_rate == 0
        assert summary.coordinators == []

    def test_unassigned_and_inactive_teachers_are_left_out(self, scenario):
        teachers, observations = scenario
        teachers = teachers + [
            teacher("t-5", "Sofía Mora", "new", coordinator_id=None),
            teacher("t-6", "Raúl Díaz", "new", is_active=False),
        ]
        summary = compute_compliance(COORDINATORS, teachers, observations, None, WEEK, FORTNIGHT)
        assert summary.total_teachers == 3
        assert [t["id"] for t in unassigned_teachers(teachers)] == ["t-5"]

    def test_director_sees_only_their_school(self, scenario):
        teachers, observations = scenario
        teachers = teachers + [teacher("t-7", "Marta Gil", "tenured", school_id="south")]
        director = ViewerScope(role="director", school_id="south")
        summary = compute_compliance(COORDINATORS, teachers, observations, director, WEEK, FORTNIGHT)
        assert summary.total_teachers == 1
        assert summary.coordinators[0].pending_names == "Marta Gil"

    def test_partial_snapshot_degrades_gracefully(self, scenario):
        teachers, _ = scenario
        broken = [{"teacher_id": "t-1"}, {"created_at": "2024-11-05T10:00:00"}, observation("t-1", None)]
        summary = compute_compliance(COORDINATORS, teachers, broken, None, WEEK, FORTNIGHT)
        assert summary.observed_count == 0
        assert summary.total_teachers == 3

    def test_observations_from_other_teachers_do_not_count(self):
        teachers = [teacher("t-1", "Ana López", "new")]
        summary = compute_compliance(
            COORDINATORS, teachers, [observation("t-9", "2024-11-05T10:00:00")], None, WEEK, FORTNIGHT
        )
        assert summary.observed_count == 0

    def test_accepts_prebuilt_index(self, scenario):
        teachers, observations = scenario
        index = index_observations(observations)
        summary = compute_compliance(COORDINATORS, teachers, index, None, WEEK, FORTNIGHT)
        assert summary.observed_count == 2


class TestRates:
    def test_rate_rounding(self):
        assert compliance_rate(2, 3) == 66.7
        assert compliance_rate(1, 3) == 33.3
        assert compliance_rate(0, 0) == 0.0

    @pytest.mark.parametrize("rate,status", [(100, "compliant"), (50, "partial"), (49.9, "non-compliant")])
    def test_status(self, rate, status):
        assert compliance_status(rate) == status


class TestTrend:
    def test_weekly_trend_ends_at_current_week(self):
        seen = []

        def metric(period):
            seen.append(period.number)
            return {"value": period.number}

        points = build_trend(PeriodType.WEEKLY, 4, metric, NOW)
        assert [p.period for p in points] == [7, 8, 9, 10]
        assert [p.label for p in points] == ["S7", "S8", "S9", "S10"]
        assert points[-1].full_label == "Semana 10"
        assert points[-1].date_range == "04/11/2024 - 10/11/2024"
        assert seen == [7, 8, 9, 10]

    def test_fortnightly_labels(self):
        points = build_trend("fortnightly", 2, lambda period: None, NOW)
        assert [p.label for p in points] == ["Q4", "Q5"]
        assert [p.full_label for p in points] == ["Quincena 4", "Quincena 5"]

    def test_missing_data_is_explicit(self):
        points = build_trend(PeriodType.WEEKLY, 3, lambda period: None, NOW)
        assert all(not p.has_data and p.values is None for p in points)

    def test_early_weeks_are_clamped(self):
        points = build_trend(PeriodType.WEEKLY, 3, lambda period: {}, date(2024, 9, 3))
        assert [p.period for p in points] == [1, 1, 1]

    def test_windows_at_period_end(self):
        week, fortnight = windows_at_period_end(week_range(9, NOW), NOW)
        assert (week.number, fortnight.number) == (9, 5)
        week, fortnight = windows_at_period_end(fortnight_range(4, NOW), NOW)
        assert (week.number, fortnight.number) == (8, 4)

    def test_compliance_metric_over_history(self, scenario):
        teachers, observations = scenario
        metric = compliance_metric(COORDINATORS, teachers, observations, None, NOW)
        points = build_trend(PeriodType.WEEKLY, 4, metric, NOW)
        by_week = {p.period: p.values for p in points}
        assert by_week[10]["compliance_rate"] == 66.7
        # Week 9: Carlos is observed that week, Elena through fortnight 5, Ana not yet.
        assert by_week[9]["observed_count"] == 2
        assert by_week[7]["compliance_rate"] == 0.0
        assert by_week[7]["status"] == "non-compliant"

    def test_compliance_metric_without_teachers_has_no_data(self):
        metric = compliance_metric(COORDINATORS, [], [], None, NOW)
        assert metric(WEEK) is None

    def test_coordinator_history(self, scenario):
        teachers, observations = scenario
        history = coordinator_history("coord-1", COORDINATORS, teachers, observations, 4, NOW)
        assert [h["week_number"] for h in history] == [7, 8, 9, 10]
        assert history[-1]["compliance_rate"] == 66.7
        assert history[-1]["status"] == "partial"
        assert coordinator_history("missing", COORDINATORS, teachers, observations, 4, NOW) == []

    def test_fetch_floor_reaches_before_the_earliest_window(self):
        floor = fetch_floor([WEEK, FORTNIGHT])
        assert floor == datetime(2024, 10, 28) - timedelta(days=30)
        assert fetch_floor([]) is None


class TestRubric:
    def test_observation_score_averages_scored_indicators(self):
        data = {"1a": 4, "1b": 3, "2a": {"score": 2}, "3a": 0, "metadata": {"subject": "Math"}}
        assert observation_score(data) == 3.0
        assert observation_score({}) == 0.0

    def test_rubric_indicators_carry_descriptions(self):
        indicators = [i for d in DANIELSON_FRAMEWORK["domains"] for i in d["indicators"]]
        assert len(indicators) == 22
        assert all(i["description"] for i in indicators)
        assert indicators[0]["description"] == "Knowledge of content and the structure of the discipline."

    def test_domain_percentages(self):
        result = domain_percentages({"1a": 4, "1b": {"score": 2}, "2a": 3})
        assert result["d1"] == 75.0
        assert result["d2"] == 75.0
        assert result["d3"] is None
        assert result["d4"] is None

    def test_domain_metric(self):
        observations = [
            observation("t-1", "2024-11-05T10:00:00", {"1a": 4, "1b": 2}),
            observation("t-2", "2024-11-06T10:00:00", {"1a": 2}),
        ]
        metric = domain_metric(observations)
        values = metric(WEEK)
        assert values["d1"] == 62.5
        assert values["d2"] is None
        assert metric(week_range(8, NOW)) is None
