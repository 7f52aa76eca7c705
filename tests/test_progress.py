"""
Tests for progress estimation and data-quality scoring.
"""

from qualifier.catalog import DEFAULT_CATALOG, CatalogStep
from qualifier.progress import analyze_data_quality, calculate_progress


def progress(step, data, is_complete=False):
    return calculate_progress(
        step, data, DEFAULT_CATALOG.get_step(step), DEFAULT_CATALOG.total_steps, is_complete
    )


class TestCalculateProgress:
    """Each of the four steps owns 25 points."""

    def test_fresh_session(self):
        assert progress(1, {}) == 0

    def test_half_of_step_one_rounds_up(self):
        assert progress(1, {"problemType": "customer_support"}) == 13

    def test_step_one_filled(self):
        assert progress(1, {"problemType": "customer_support", "jobFunction": "vp"}) == 25

    def test_start_of_step_two(self):
        assert progress(2, {"problemType": "customer_support", "jobFunction": "vp"}) == 25

    def test_optional_fields_do_not_count(self):
        assert progress(2, {"techCapabilityCategory": "technical"}) == 25

    def test_last_step_filled_but_not_completed(self):
        assert progress(4, {"budgetStatus": "allocated"}) == 100

    def test_completed_is_always_100(self):
        assert progress(1, {}, is_complete=True) == 100

    def test_step_without_required_fields_counts_as_filled(self):
        entry = CatalogStep(step=2, title="Extras", prompt="?", target_fields=("industry",), required_fields=())
        # 33 for step one plus a full 33 slice
        assert calculate_progress(2, {}, entry, total_steps=3) == 66

    def test_never_exceeds_100(self):
        for step in range(1, 5):
            data = {f: "x" for f in DEFAULT_CATALOG.get_step(step).required_fields}
            assert 0 <= progress(step, data) <= 100


class TestDataQuality:
    def test_five_of_six_critical_is_high(self):
        data = {
            "problemType": "customer_support",
            "jobFunction": "vp",
            "solutionType": "off_shelf",
            "businessUrgency": "immediate",
            "budgetStatus": "allocated",
        }

        quality = analyze_data_quality(data)

        assert quality["completeness"] == 83
        assert quality["quality"] == "High"
        assert quality["filled_fields"] == 5
        assert quality["total_fields"] == 6
        assert quality["missing_critical"] == ["industry"]

    def test_medium_band(self):
        data = {"problemType": "other", "jobFunction": "cto", "solutionType": "hybrid", "budgetStatus": "unknown"}
        quality = analyze_data_quality(data)
        assert quality["completeness"] == 67
        assert quality["quality"] == "Medium"

    def test_low_band(self):
        assert analyze_data_quality({"problemType": "other"})["quality"] == "Low"

    def test_custom_critical_fields(self):
        quality = analyze_data_quality({"budgetAmount": 0}, critical_fields=["budgetAmount"])
        assert quality["completeness"] == 100
        assert quality["missing_critical"] == []
