"""
Spatial join engine

Reads forecast exports, brings their coordinates onto the population
index's keys and keeps the rows that land on a populated cell.
"""
import logging
from typing import Dict, List

from pyspark.sql import SparkSession, DataFrame
from pyspark.sql import functions as F

from .columns import (
    OUTPUT_DECIMALS,
    canonical_latitude,
    canonical_longitude,
    count_valid,
    format_decimal,
    parse_decimal,
)
from .population import KEY_COLUMNS, PopulationIndex
from .reader import ROW_ID, read_table

logger = logging.getLogger(__name__)


FORECAST_COLUMNS = ["forecast_time", "raw_latitude", "raw_longitude", "raw_temp_2m"]
STDDEV_COLUMN = "raw_temp_2m_stddev"

MATCHED_COLUMNS = ["forecast_time", "latitude", "longitude", "population", "temp_2m"]
STDDEV_OUTPUT = "temp_2m_stddev"

FILE_INDEX = "_file_index"


class SpatialJoinEngine:
    """Joins forecast rows to an injected PopulationIndex"""

    def __init__(self, spark: SparkSession, index: PopulationIndex):
        """
        Initialize join engine

        Args:
            spark: SparkSession instance
            index: Built population index, used read-only
        """
        self.spark = spark
        self.index = index
        self.precision = index.precision
        self.counters = {
            "records_seen": 0,
            "records_matched": 0,
            "malformed_records": 0,
        }
        self.has_stddev = False
        logger.info(
            f"Initialized SpatialJoinEngine with {index.entry_count} population cells"
        )

    def read_forecasts(self, paths: List[str]) -> DataFrame:
        """
        Read forecast files into one DataFrame tagged with file/row order

        Files missing the stddev column get NULL there; the stddev column
        is kept if any file carries it.

        Args:
            paths: Forecast files, in processing order

        Returns:
            DataFrame of string columns plus FILE_INDEX and ROW_ID
        """
        if not paths:
            raise ValueError("No forecast files to join")

        frames = []
        for file_index, path in enumerate(paths):
            df = read_table(self.spark, path, FORECAST_COLUMNS, [STDDEV_COLUMN])
            frames.append(df.withColumn(FILE_INDEX, F.lit(file_index)))

        self.has_stddev = any(STDDEV_COLUMN in df.columns for df in frames)

        forecasts = frames[0]
        for df in frames[1:]:
            forecasts = forecasts.unionByName(df, allowMissingColumns=True)

        logger.info(
            f"Loaded {len(paths)} forecast files "
            f"({'with' if self.has_stddev else 'without'} stddev column)"
        )
        return forecasts

    def join(self, forecasts: DataFrame) -> DataFrame:
        """
        Match forecast rows against the population index

        Rows whose timestamp is empty or whose coordinates do not parse are
        skipped and counted. Rows on cells missing from the index are
        dropped. Output keeps input order and numeric columns as doubles.

        Args:
            forecasts: DataFrame from read_forecasts

        Returns:
            Matched rows with FILE_INDEX and ROW_ID for ordering
        """
        logger.info("Joining forecasts with population index")

        self.has_stddev = STDDEV_COLUMN in forecasts.columns
        stddev = (
            parse_decimal(STDDEV_COLUMN)
            if self.has_stddev
            else F.lit(None).cast("double")
        )

        parsed = forecasts.select(
            F.col("forecast_time"),
            parse_decimal("raw_latitude").alias("latitude"),
            parse_decimal("raw_longitude").alias("longitude"),
            parse_decimal("raw_temp_2m").alias("temp_2m"),
            stddev.alias(STDDEV_OUTPUT),
            F.col(FILE_INDEX),
            F.col(ROW_ID),
        )

        is_valid = (
            F.col("forecast_time").isNotNull()
            & (F.length(F.col("forecast_time")) > 0)
            & F.col("latitude").isNotNull()
            & F.col("longitude").isNotNull()
        )
        valid = parsed.filter(is_valid)

        keyed = valid.select(
            F.col("forecast_time"),
            canonical_latitude(F.col("latitude"), self.precision).alias("latitude"),
            canonical_longitude(F.col("longitude"), self.precision).alias("longitude"),
            F.col("temp_2m"),
            F.col(STDDEV_OUTPUT),
            F.col(FILE_INDEX),
            F.col(ROW_ID),
        )

        matched = (
            keyed.join(self.index.broadcast(), on=KEY_COLUMNS, how="inner")
            .select(*MATCHED_COLUMNS, STDDEV_OUTPUT, FILE_INDEX, ROW_ID)
            .orderBy(FILE_INDEX, ROW_ID)
            .cache()
        )

        seen, valid_count = count_valid(parsed, is_valid)
        self.counters["records_seen"] += seen
        self.counters["malformed_records"] += seen - valid_count
        self.counters["records_matched"] += matched.count()

        logger.info(f"Join counters: {self.counters}")
        if self.counters["malformed_records"]:
            logger.warning(
                f"Skipped {self.counters['malformed_records']} malformed forecast rows"
            )

        return matched

    def join_files(self, paths: List[str]) -> DataFrame:
        """Read and join forecast files in one step"""
        return self.join(self.read_forecasts(paths))

    def format_output(
        self, matched: DataFrame, decimals: int = OUTPUT_DECIMALS
    ) -> DataFrame:
        """
        Render matched rows as the joined table

        Args:
            matched: DataFrame from join
            decimals: Fractional digits for numeric columns

        Returns:
            String DataFrame with columns
            forecast_time,latitude,longitude,population,temp_2m[,temp_2m_stddev]
        """
        columns = [F.col("forecast_time")]
        for name in MATCHED_COLUMNS[1:]:
            columns.append(format_decimal(F.col(name), decimals).alias(name))
        if self.has_stddev:
            columns.append(format_decimal(F.col(STDDEV_OUTPUT), decimals).alias(STDDEV_OUTPUT))

        return matched.orderBy(FILE_INDEX, ROW_ID).select(*columns)

    def summary(self) -> str:
        return (
            f"Matched {self.counters['records_matched']} out of "
            f"{self.counters['records_seen']} records "
            f"({self.counters['malformed_records']} malformed)"
        )

    def stats(self) -> Dict[str, int]:
        return dict(self.counters)


def create_join_engine(spark: SparkSession, index: PopulationIndex) -> SpatialJoinEngine:
    """
    Factory function to create a join engine

    Args:
        spark: SparkSession
        index: Built population index

    Returns:
        SpatialJoinEngine instance
    """
    return SpatialJoinEngine(spark, index)
