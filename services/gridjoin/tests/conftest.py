"""
Pytest configuration and fixtures for gridjoin service tests.
"""
import csv

import pytest
from pyspark.sql import SparkSession


@pytest.fixture(scope="session")
def spark():
    """Create Spark session for tests"""
    spark = (
        SparkSession.builder
        .appName("Gridjoin-Tests")
        .master("local[2]")
        .config("spark.sql.shuffle.partitions", "2")
        .getOrCreate()
    )

    yield spark

    spark.stop()


@pytest.fixture
def split_reads(spark):
    """Read input files in many small splits, as Spark does for large files"""
    overrides = {
        "spark.sql.files.maxPartitionBytes": "512",
        "spark.sql.files.openCostInBytes": "64",
    }
    previous = {key: spark.conf.get(key) for key in overrides}
    for key, value in overrides.items():
        spark.conf.set(key, value)

    yield

    for key, value in previous.items():
        spark.conf.set(key, value)


@pytest.fixture
def write_csv(tmp_path):
    """Write a header plus rows to a CSV file under tmp_path"""
    def _write(name, header, rows):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(header)
            writer.writerows(rows)
        return str(path)

    return _write


@pytest.fixture
def read_csv():
    """Read a CSV file back as (header, rows)"""
    def _read(path):
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        return rows[0], rows[1:]

    return _read


@pytest.fixture
def population_csv(write_csv):
    """Small population grid, columns in source order (lon, lat, pop)"""
    return write_csv(
        "population_2020.csv",
        ["longitude", "latitude", "population"],
        [
            (-122.42, 37.77, 1000.0),
            (-74.01, 40.71, 25000.5),
            (-100.0, 35.0, 0.0),
            (10.0, 50.0, 42.0),
        ],
    )


@pytest.fixture
def forecast_header():
    return ["forecast_time", "latitude", "longitude", "temp_2m", "temp_2m_stddev"]
