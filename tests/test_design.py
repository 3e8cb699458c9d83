"""Tests for design-matrix construction and per-model row exclusion."""

import numpy as np
import pandas as pd
import pytest

from count_model_comparison.candidates import CandidateModel
from count_model_comparison.data import SurveyData
from count_model_comparison.design import build_design, build_matrix


@pytest.fixture()
def frame():
    return pd.DataFrame(
        {
            "count": [0, 3, 5, 2, np.nan, 7],
            "x": [0.1, 0.5, np.nan, 1.2, 0.3, 0.8],
            "habitat": ["forest", "grass", "wetland", "forest", "grass", "wetland"],
            "site": ["a", "b", "a", "b", "c", "c"],
            "log_effort": [0.0, 0.1, 0.2, 0.3, 0.4, 0.5],
        }
    )


class TestBuildMatrix:
    def test_numeric_with_intercept(self, frame):
        X, names = build_matrix(frame.dropna(), ["x"])
        assert names == ("Intercept", "x")
        np.testing.assert_array_equal(X[:, 0], 1.0)

    def test_categorical_treatment_coding(self, frame):
        X, names = build_matrix(frame, ["habitat"])
        assert names == ("Intercept", "habitat[grass]", "habitat[wetland]")
        np.testing.assert_array_equal(X[:, 1], [0, 1, 0, 0, 1, 0])

    def test_interaction(self, frame):
        clean = frame.dropna()
        X, names = build_matrix(clean, ["x:habitat"], fit_intercept=False)
        # Without an x main effect patsy codes habitat full-rank inside the slope.
        assert names == ("x:habitat[forest]", "x:habitat[grass]", "x:habitat[wetland]")
        expected = clean["x"].to_numpy() * (clean["habitat"] == "grass").to_numpy()
        np.testing.assert_allclose(X[:, 1], expected)

    def test_categorical_interaction_is_full_rank_cell_model(self):
        cells = pd.DataFrame(
            {
                "a": np.repeat(["p", "q", "r"], 4),
                "b": np.tile(["s", "t"], 6),
            }
        )
        X, names = build_matrix(cells, ["a:b"])
        assert X.shape == (12, 6)
        assert len(names) == 6
        assert names[0] == "Intercept"
        assert np.linalg.matrix_rank(X) == 6

    def test_main_effects_and_interaction(self):
        cells = pd.DataFrame(
            {
                "a": np.repeat(["p", "q", "r"], 4),
                "b": np.tile(["s", "t"], 6),
            }
        )
        X, names = build_matrix(cells, ["a", "b", "a:b"])
        assert names == (
            "Intercept",
            "a[q]",
            "a[r]",
            "b[t]",
            "a[q]:b[t]",
            "a[r]:b[t]",
        )
        assert np.linalg.matrix_rank(X) == 6

    def test_categorical_terms_precede_numeric(self, frame):
        X, names = build_matrix(frame.dropna(), ["x", "habitat"])
        assert names == ("Intercept", "habitat[grass]", "habitat[wetland]", "x")

    def test_column_names_need_no_quoting(self):
        frame = pd.DataFrame({"log effort": [0.1, 0.4, 0.2], "site-type": ["u", "v", "u"]})
        X, names = build_matrix(frame, ["log effort", "site-type"])
        assert names == ("Intercept", "site-type[v]", "log effort")
        np.testing.assert_allclose(X[:, 2], [0.1, 0.4, 0.2])

    def test_boolean_column_is_categorical(self):
        frame = pd.DataFrame({"flooded": [True, False, True, False]})
        X, names = build_matrix(frame, ["flooded"])
        assert names == ("Intercept", "flooded[True]")
        np.testing.assert_array_equal(X[:, 1], [1, 0, 1, 0])

    def test_intercept_only(self, frame):
        X, names = build_matrix(frame, [])
        assert names == ("Intercept",)
        assert X.shape == (len(frame), 1)


class TestBuildDesign:
    def test_cell_model_columns(self):
        frame = pd.DataFrame(
            {
                "count": np.arange(12),
                "a": np.repeat(["p", "q", "r"], 4),
                "b": np.tile(["s", "t"], 6),
            }
        )
        spec = CandidateModel("cells", "poisson", terms=("a:b",))
        design = build_design(SurveyData(frame), spec, "count")
        assert design.X.shape == (12, 6)
        assert len(design.coef_names) == 6

    def test_rows_excluded_per_model(self, frame):
        data = SurveyData(frame)
        with_x = build_design(data, CandidateModel("x", "poisson", terms=("x",)), "count")
        without_x = build_design(
            data, CandidateModel("h", "poisson", terms=("habitat",)), "count"
        )
        # Row 2 lacks x, row 4 lacks the count.
        assert with_x.row_index == (0, 1, 3, 5)
        assert without_x.row_index == (0, 1, 2, 3, 5)

    def test_dataset_not_mutated(self, frame):
        data = SurveyData(frame)
        build_design(data, CandidateModel("x", "poisson", terms=("x",)), "count")
        assert data.n_rows == 6
        assert data.to_pandas()["x"].isna().sum() == 1

    def test_restrict_rows(self, frame):
        data = SurveyData(frame)
        design = build_design(
            data,
            CandidateModel("h", "poisson", terms=("habitat",)),
            "count",
            rows=pd.Index([0, 1, 3]),
        )
        assert design.row_index == (0, 1, 3)
        np.testing.assert_array_equal(design.y, [0, 3, 2])

    def test_offset_and_groups(self, frame):
        data = SurveyData(frame)
        spec = CandidateModel(
            "re", "poisson", terms=("x",), random_effects="site", offset="log_effort"
        )
        design = build_design(data, spec, "count")
        np.testing.assert_allclose(design.offset, [0.0, 0.1, 0.3, 0.5])
        assert design.group_labels == ("a", "b", "c")
        np.testing.assert_array_equal(design.groups, [0, 1, 1, 2])
        assert design.n_groups == 3

    def test_eta_offset_defaults_to_zero(self, frame):
        design = build_design(SurveyData(frame), CandidateModel("m", "poisson"), "count")
        np.testing.assert_array_equal(design.eta_offset, np.zeros(design.n_obs))

    def test_dispersion_design(self, frame):
        spec = CandidateModel("d", "negative_binomial", dispersion_terms=("habitat",))
        design = build_design(SurveyData(frame), spec, "count")
        assert design.dispersion_names == ("Intercept", "habitat[grass]", "habitat[wetland]")
        assert design.Z.shape == (design.n_obs, 3)

    def test_missing_column(self, frame):
        with pytest.raises(KeyError, match="not in dataset"):
            build_design(
                SurveyData(frame), CandidateModel("m", "poisson", terms=("depth",)), "count"
            )

    def test_rejects_fractional_response(self, frame):
        frame["count"] = frame["count"] + 0.5
        with pytest.raises(ValueError, match="integer counts"):
            build_design(SurveyData(frame), CandidateModel("m", "poisson"), "count")

    def test_no_complete_rows(self, frame):
        frame["x"] = np.nan
        with pytest.raises(ValueError, match="no complete rows"):
            build_design(
                SurveyData(frame), CandidateModel("m", "poisson", terms=("x",)), "count"
            )

    def test_with_response(self, frame):
        design = build_design(SurveyData(frame), CandidateModel("m", "poisson"), "count")
        replaced = design.with_response(np.arange(design.n_obs))
        np.testing.assert_array_equal(replaced.y, np.arange(design.n_obs))
        with pytest.raises(ValueError, match="shape"):
            design.with_response(np.zeros(2))
