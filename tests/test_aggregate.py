import math

import numpy as np
import polars as pl
import pytest
from polars.testing import assert_frame_equal

from lifetables.aggregate import agg_lt, gen_summary_lt, scale_qx
from lifetables.ages import abridged_age_mapping, single_year_age_mapping
from lifetables.errors import ConfigError
from lifetables.life_table import lifetable

ID_COLS = ["location", "age_start", "age_end"]


def ten_year_mapping():
    starts = [float(age) for age in range(0, 111, 10)]
    return pl.DataFrame({"age_start": starts, "age_end": [*starts[1:], math.inf]})


class TestAggLt:
    def test_abridged_from_single_year(self, single_year_qx):
        result = agg_lt(single_year_qx, ID_COLS, abridged_age_mapping(110))

        assert result.columns == ["location", "age_start", "age_end", "qx", "ax"]
        assert result.height == 24
        # 1 - 0.8 ** 4 and 1 - 0.8 ** 5
        expected_qx = [0.2, 0.5904] + [0.67232] * 21 + [1.0]
        expected_ax = [0.5, 1.7249] + [2.06306] * 21 + [0.5]
        assert result["qx"].to_list() == pytest.approx(expected_qx, rel=0.01)
        assert result["ax"].to_list() == pytest.approx(expected_ax, rel=0.01)

    def test_ten_year_groups(self, single_year_qx):
        result = agg_lt(single_year_qx, ID_COLS, ten_year_mapping())
        assert result.height == 12
        assert result["qx"][0] == pytest.approx(1 - 0.8**10)

    def test_mapping_order_does_not_matter(self, single_year_qx):
        shuffled = ten_year_mapping().reverse()
        assert_frame_equal(
            agg_lt(single_year_qx, ID_COLS, shuffled),
            agg_lt(single_year_qx, ID_COLS, ten_year_mapping()),
        )

    def test_mapping_beyond_input_ages(self, single_year_qx):
        mapping = pl.concat(
            [
                pl.DataFrame({"age_start": [-20.0], "age_end": [0.0]}),
                ten_year_mapping(),
            ]
        )
        with pytest.raises(ConfigError, match="missing intervals"):
            agg_lt(single_year_qx, ID_COLS, mapping)

    def test_mapping_with_gap(self, single_year_qx):
        mapping = pl.DataFrame({"age_start": [0.0, 20.0], "age_end": [10.0, math.inf]})
        with pytest.raises(ConfigError, match="missing intervals"):
            agg_lt(single_year_qx, ID_COLS, mapping)

    def test_overlapping_mapping(self, single_year_qx):
        mapping = pl.DataFrame({"age_start": [0.0, 5.0], "age_end": [10.0, math.inf]})
        with pytest.raises(ConfigError, match="non-overlapping"):
            agg_lt(single_year_qx, ID_COLS, mapping)

    def test_mapping_splits_open_interval(self, single_year_qx):
        mapping = pl.concat(
            [
                ten_year_mapping().filter(pl.col("age_end").is_finite()),
                pl.DataFrame(
                    {"age_start": [110.0, 500.0], "age_end": [500.0, math.inf]}
                ),
            ]
        )
        with pytest.raises(ConfigError, match="missing intervals"):
            agg_lt(single_year_qx, ID_COLS, mapping)

    def test_qx_only(self, qx_only):
        mapping = pl.DataFrame({"age_start": [15], "age_end": [40]})
        result = agg_lt(qx_only, ["sex", "age_start", "age_end"], mapping)

        assert result.columns == ["sex", "age_start", "age_end", "qx"]
        assert result["sex"].to_list() == ["female", "male"]
        assert result["qx"].to_list() == pytest.approx([0.40951, 0.67232])

    def test_single_year_mapping_is_identity(self, single_year_qx):
        result = agg_lt(single_year_qx, ID_COLS, single_year_age_mapping(110))
        assert result["qx"].to_list() == pytest.approx(single_year_qx["qx"].to_list())
        assert result["ax"].to_list() == pytest.approx(single_year_qx["ax"].to_list())

    def test_consistent_with_builder(self, abridged_mx, id_cols):
        """Aggregated qx and ax reproduce the full table's lx and nLx."""
        table = lifetable(abridged_mx, id_cols).filter(pl.col("sex") == "male")
        mapping = pl.DataFrame(
            {
                "age_start": [0.0, 5.0, 45.0, 85.0],
                "age_end": [5.0, 45.0, 85.0, math.inf],
            }
        )
        result = agg_lt(table, id_cols, mapping)

        lx = dict(zip(table["age_start"], table["lx"]))
        l_start = np.array([lx[0.0], lx[5.0], lx[45.0]])
        l_end = np.array([lx[5.0], lx[45.0], lx[85.0]])
        np.testing.assert_allclose(result["qx"][:3], 1 - l_end / l_start)

        nLx = [
            table.filter(
                (pl.col("age_start") >= start) & (pl.col("age_end") <= end)
            )["nLx"].sum()
            for start, end in [(0, 5), (5, 45), (45, 85)]
        ]
        width = np.array([5.0, 40.0, 40.0])
        ax = result["ax"].to_numpy()[:3]
        np.testing.assert_allclose(
            ax * (l_start - l_end), np.array(nLx) - width * l_end, rtol=1e-8
        )

    def test_groups_are_independent(self, qx_only):
        mapping = pl.DataFrame({"age_start": [15, 25], "age_end": [25, 40]})
        together = agg_lt(qx_only, ["sex", "age_start", "age_end"], mapping)
        female = agg_lt(
            qx_only.filter(pl.col("sex") == "female"),
            ["sex", "age_start", "age_end"],
            mapping,
        )
        assert_frame_equal(together.filter(pl.col("sex") == "female"), female)

    def test_lazy_input(self, single_year_qx):
        mapping = abridged_age_mapping(110)
        assert_frame_equal(
            agg_lt(single_year_qx.lazy(), ID_COLS, mapping.lazy()),
            agg_lt(single_year_qx, ID_COLS, mapping),
        )


class TestAggLtErrors:
    ID_COLS = ["sex", "age_start", "age_end"]
    MAPPING = pl.DataFrame({"age_start": [15], "age_end": [40]})

    def test_not_square(self, qx_only):
        ragged = qx_only.filter(
            ~((pl.col("sex") == "male") & (pl.col("age_start") == 35))
        )
        with pytest.raises(ConfigError, match="same age intervals"):
            agg_lt(ragged, self.ID_COLS, self.MAPPING)

    def test_not_unique(self, qx_only):
        with pytest.raises(ConfigError, match="same `id_cols`"):
            agg_lt(pl.concat([qx_only, qx_only[:1]]), self.ID_COLS, self.MAPPING)

    def test_age_end_not_in_id_cols(self, qx_only):
        with pytest.raises(ConfigError, match="age columns"):
            agg_lt(qx_only, ["sex", "age_start"], self.MAPPING)

    def test_id_cols_given_as_string(self, qx_only):
        with pytest.raises(ConfigError):
            agg_lt(qx_only, "sex", self.MAPPING)

    def test_table_not_a_frame(self, qx_only):
        with pytest.raises(ConfigError):
            agg_lt(qx_only.to_dict(as_series=False), self.ID_COLS, self.MAPPING)

    def test_mapping_not_a_frame(self, qx_only):
        with pytest.raises(ConfigError):
            agg_lt(qx_only, self.ID_COLS, {"age_start": [15], "age_end": [40]})

    def test_missing_qx(self, qx_only):
        with pytest.raises(ConfigError, match="qx"):
            agg_lt(qx_only.drop("qx"), self.ID_COLS, self.MAPPING)


class TestScaleQx:
    @pytest.fixture
    def target(self):
        return abridged_age_mapping(110).with_columns(
            pl.lit("Canada").alias("location"),
            pl.when(pl.col("age_end").is_infinite())
            .then(1.0)
            .when(pl.col("age_start") == 0)
            .then(0.1)
            .when(pl.col("age_start") == 1)
            .then(0.3)
            .otherwise(0.5)
            .alias("qx"),
        )

    def test_matches_target(self, single_year_qx, target):
        scaled = scale_qx(single_year_qx, target, ID_COLS)
        assert scaled.height == single_year_qx.height

        result = agg_lt(scaled, ID_COLS, abridged_age_mapping(110))
        assert result["qx"].to_list() == pytest.approx(target["qx"].to_list())

    def test_keeps_shape_within_target(self, single_year_qx, target):
        """A flat schedule stays flat: every year gets 1 - 0.5 ** (1 / 5)."""
        scaled = scale_qx(single_year_qx, target, ID_COLS)
        five_to_ten = scaled.filter(pl.col("age_start").is_between(5, 9))["qx"]
        assert five_to_ten.to_list() == pytest.approx([1 - 0.5**0.2] * 5)

    def test_ax_kept_derived_columns_dropped(self, single_year_qx, target):
        with_mx = single_year_qx.with_columns(pl.lit(0.1).alias("mx"))
        scaled = scale_qx(with_mx, target, ID_COLS)
        assert "mx" not in scaled.columns
        assert scaled["ax"].to_list() == single_year_qx["ax"].to_list()

    def test_missing_target(self, single_year_qx, target):
        elsewhere = target.with_columns(pl.lit("Mexico").alias("location"))
        with pytest.raises(ConfigError, match="no target qx"):
            scale_qx(single_year_qx, elsewhere, ID_COLS)

    def test_target_missing_columns(self, single_year_qx, target):
        with pytest.raises(ConfigError, match="target table"):
            scale_qx(single_year_qx, target.drop("qx"), ID_COLS)


class TestGenSummaryLt:
    def test_compound_probabilities(self, single_year_qx):
        result = gen_summary_lt(single_year_qx, ID_COLS)

        assert result.columns == ["location", "5q0", "45q15"]
        assert result["5q0"][0] == pytest.approx(0.67232)
        assert result["45q15"][0] == pytest.approx(1 - 0.8**45)

    def test_e0_from_built_table(self, abridged_mx, id_cols):
        table = lifetable(abridged_mx, id_cols)
        result = gen_summary_lt(table, id_cols)

        assert result.columns == ["location", "sex", "5q0", "45q15", "e0"]
        at_birth = table.filter(pl.col("age_start") == 0)
        assert result["e0"].to_list() == pytest.approx(at_birth["ex"].to_list())
        expected_5q0 = 1 - (1 - table["qx"][0]) * (1 - table["qx"][1])
        assert result["5q0"][0] == pytest.approx(expected_5q0)

    def test_needs_ages_through_60(self, single_year_qx):
        with pytest.raises(ConfigError, match="45q15"):
            gen_summary_lt(single_year_qx.filter(pl.col("age_start") < 50), ID_COLS)
