"""
Tests for the gridjoin orchestrator and CLI parsing
"""
import json
from datetime import date

import pytest

from gridjoin.src.config import GridJoinConfig
from gridjoin.src.orchestrator import (
    GridJoinOrchestrator,
    build_arg_parser,
    derived_path,
    forecast_file_prefix,
    forecast_folder_name,
    main,
)

RUN_DATE = date(2025, 6, 3)


@pytest.fixture
def config(tmp_path):
    return GridJoinConfig(data_root=str(tmp_path))


@pytest.fixture
def run_inputs(population_csv, write_csv, forecast_header):
    """Population grid plus two forecast shards for RUN_DATE"""
    write_csv(
        "06-03-2025/06_03_2025_000000000000.csv",
        forecast_header,
        [
            ("2025-06-03 00:00:00 UTC", 37.77, 237.58, 15.2, 0.3),
            ("2025-06-03 00:00:00 UTC", 35.0, 260.0, 22.0, 0.5),
            ("2025-06-03 00:00:00 UTC", 1.0, 1.0, 30.0, 0.5),
            ("2025-06-03 00:00:00 UTC", 50.0, 10.0, 9.0, 0.4),
        ],
    )
    write_csv(
        "06-03-2025/06_03_2025_000000000001.csv",
        forecast_header,
        [
            ("2025-06-03 12:00:00 UTC", 37.77, 237.58, 16.0, 0.4),
            ("2025-06-03 12:00:00 UTC", 35.0, 260.0, 23.0, 0.5),
        ],
    )
    # Different run date, never selected
    write_csv(
        "06-03-2025/06_02_2025_000000000000.csv",
        forecast_header,
        [("2025-06-02 00:00:00 UTC", 37.77, 237.58, 99.0, 0.1)],
    )
    return population_csv


def test_date_derived_names():
    """Test folder, prefix and derived output names"""
    assert forecast_folder_name(RUN_DATE) == "06-03-2025"
    assert forecast_file_prefix(RUN_DATE) == "06_03_2025"
    assert derived_path("/data/master_06-03-2025.csv", "filtered") == (
        "/data/filtered_master_06-03-2025.csv"
    )


def test_merge_stage(spark, config, run_inputs, tmp_path, read_csv):
    """Test merge joins the run's shards into the master table"""
    orchestrator = GridJoinOrchestrator(spark, config)
    results = orchestrator.merge(run_date=RUN_DATE)

    assert results["status"] == "success"
    assert results["output_path"] == str(tmp_path / "master_06-03-2025.csv")
    assert len(results["forecast_files"]) == 2
    assert results["join_metrics"] == {
        "records_seen": 6,
        "records_matched": 5,
        "malformed_records": 0,
    }
    assert results["population_metrics"]["entry_count"] == 4
    assert results["summary"] == "Matched 5 out of 6 records (0 malformed)"

    header, rows = read_csv(results["output_path"])
    assert header == [
        "forecast_time", "latitude", "longitude", "population", "temp_2m", "temp_2m_stddev"
    ]
    assert rows[0] == [
        "2025-06-03 00:00:00 UTC", "37.770000", "-122.420000", "1000.000000",
        "15.200000", "0.300000",
    ]
    assert [r[0][11:13] for r in rows] == ["00", "00", "00", "12", "12"]


def test_zero_population_in_joined_not_in_filtered(spark, config, run_inputs, read_csv):
    """Test a population-0 cell survives the join but not the filter"""
    orchestrator = GridJoinOrchestrator(spark, config)
    merged = orchestrator.merge(run_date=RUN_DATE)
    filtered = orchestrator.filter_population(merged["output_path"])

    assert filtered["status"] == "success"
    assert filtered["filter_metrics"] == {"total_rows": 5, "kept_rows": 3, "removed_rows": 2}

    _, joined_rows = read_csv(merged["output_path"])
    _, kept_rows = read_csv(filtered["output_path"])
    assert any(r[1] == "35.000000" for r in joined_rows)
    assert not any(r[1] == "35.000000" for r in kept_rows)
    assert all(r in joined_rows for r in kept_rows)


def test_full_run(spark, config, run_inputs, tmp_path, read_csv):
    """Test merge -> filter -> group produces one row per populated location"""
    orchestrator = GridJoinOrchestrator(spark, config)
    results = orchestrator.run(run_date=RUN_DATE)

    assert results["status"] == "success"
    assert [s["stage"] for s in results["stages"]] == ["merge", "filter", "group"]

    grouped_path = results["stages"][-1]["output_path"]
    assert grouped_path == str(tmp_path / "grouped_filtered_master_06-03-2025.csv")

    header, rows = read_csv(grouped_path)
    assert header == ["forecast_time", "latitude", "longitude", "population", "forecasts"]
    assert [r[1:4] for r in rows] == [
        ["37.770000", "-122.420000", "1000.000000"],
        ["50.000000", "10.000000", "42.000000"],
    ]
    assert rows[0][0] == "2025-06-03 00:00:00 UTC"
    assert json.loads(rows[0][4]) == [
        {"time": "2025-06-03 00:00:00 UTC", "value": 15.2, "stddev": 0.3},
        {"time": "2025-06-03 12:00:00 UTC", "value": 16.0, "stddev": 0.4},
    ]


def test_full_run_with_region_filter(spark, config, run_inputs, read_csv):
    """Test the region stage drops locations outside the box"""
    orchestrator = GridJoinOrchestrator(spark, config)
    results = orchestrator.run(run_date=RUN_DATE, keep_region=True)

    assert [s["stage"] for s in results["stages"]] == ["merge", "filter", "keep-region", "group"]

    _, rows = read_csv(results["stages"][-1]["output_path"])
    assert [r[1] for r in rows] == ["37.770000"]


def test_merge_missing_forecast_directory(spark, config, population_csv, tmp_path):
    """Test a missing forecast folder fails before any output exists"""
    orchestrator = GridJoinOrchestrator(spark, config)
    results = orchestrator.merge(run_date=date(2024, 1, 1))

    assert results["status"] == "failed"
    assert "does not exist" in results["error"]
    assert not (tmp_path / "master_01-01-2024.csv").exists()


def test_merge_missing_population_file(spark, config, run_inputs, tmp_path):
    """Test a missing population file fails the stage"""
    orchestrator = GridJoinOrchestrator(spark, config)
    results = orchestrator.merge(
        run_date=RUN_DATE, population_path=str(tmp_path / "nope.csv")
    )

    assert results["status"] == "failed"
    assert "population" in results["error"]
    assert not (tmp_path / "master_06-03-2025.csv").exists()


def test_run_stops_after_failed_stage(spark, config):
    """Test a failed merge ends the chain"""
    orchestrator = GridJoinOrchestrator(spark, config)
    results = orchestrator.run(run_date=date(2024, 1, 1))

    assert results["status"] == "failed"
    assert len(results["stages"]) == 1


def test_filter_missing_input(spark, config, tmp_path):
    """Test filter on a missing table reports failure"""
    orchestrator = GridJoinOrchestrator(spark, config)
    results = orchestrator.filter_population(str(tmp_path / "master_x.csv"))

    assert results["status"] == "failed"
    assert results["output_path"] == str(tmp_path / "filtered_master_x.csv")
    assert not (tmp_path / "filtered_master_x.csv").exists()


def test_arg_parser_merge():
    """Test merge arguments"""
    args = build_arg_parser().parse_args(
        ["merge", "--date", "2025-06-03", "--population", "pop.csv"]
    )
    assert args.command == "merge"
    assert args.date == RUN_DATE
    assert args.population == "pop.csv"
    assert args.forecast_dir is None


def test_arg_parser_stage_commands():
    """Test filter/group/keep-region take an input path"""
    parser = build_arg_parser()
    for command in ["filter", "keep-region", "group"]:
        args = parser.parse_args([command, "master.csv", "--output", "out.csv"])
        assert args.command == command
        assert args.input_path == "master.csv"
        assert args.output == "out.csv"


def test_arg_parser_rejects_bad_date():
    """Test malformed dates are rejected"""
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args(["run", "--date", "06-03-2025"])


def _persisted_rdd_count(spark):
    return spark.sparkContext._jsc.getPersistentRDDs().size()


def test_run_releases_cached_tables(spark, config, run_inputs):
    """Test a full run leaves no cached DataFrames behind"""
    orchestrator = GridJoinOrchestrator(spark, config)
    before = _persisted_rdd_count(spark)

    results = orchestrator.run(run_date=RUN_DATE, keep_region=True)

    assert results["status"] == "success"
    assert _persisted_rdd_count(spark) == before


def test_failed_write_releases_cached_tables(spark, config, run_inputs, tmp_path):
    """Test a stage failing at write time still releases its cached tables"""
    orchestrator = GridJoinOrchestrator(spark, config)
    before = _persisted_rdd_count(spark)

    results = orchestrator.merge(
        run_date=RUN_DATE, output_path=str(tmp_path / "missing" / "master.csv")
    )

    assert results["status"] == "failed"
    assert _persisted_rdd_count(spark) == before


class _SharedSession:
    """Hands the test session to main() and records stop() instead of stopping"""

    def __init__(self, spark):
        self._spark = spark
        self.stopped = False

    def __getattr__(self, name):
        return getattr(self._spark, name)

    def stop(self):
        self.stopped = True


@pytest.fixture
def cli_session(spark, tmp_path, monkeypatch):
    session = _SharedSession(spark)
    monkeypatch.setattr(
        "gridjoin.src.orchestrator.create_spark_session",
        lambda *args, **kwargs: session,
    )
    monkeypatch.setenv("GRIDJOIN_DATA_ROOT", str(tmp_path))
    return session


def test_main_exits_zero_on_success(cli_session, run_inputs, tmp_path, capsys):
    """Test the CLI prints stage results and exits 0"""
    with pytest.raises(SystemExit) as exc_info:
        main(["run", "--date", "2025-06-03"])

    assert exc_info.value.code == 0
    results = json.loads(capsys.readouterr().out)
    assert results["status"] == "success"
    assert [s["stage"] for s in results["stages"]] == ["merge", "filter", "group"]
    assert (tmp_path / "grouped_filtered_master_06-03-2025.csv").exists()
    assert cli_session.stopped


def test_main_exits_one_on_failure(cli_session, tmp_path, capsys):
    """Test a failed stage is reported on stdout with exit code 1"""
    with pytest.raises(SystemExit) as exc_info:
        main(["filter", str(tmp_path / "master_x.csv")])

    assert exc_info.value.code == 1
    results = json.loads(capsys.readouterr().out)
    assert results["status"] == "failed"
    assert results["stage"] == "filter"
    assert cli_session.stopped
