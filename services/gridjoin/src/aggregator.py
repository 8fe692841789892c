"""
Location aggregation

Folds the filtered joined table into one record per location, carrying
the location's forecasts as an ordered list of {time, value, stddev}.
"""
import logging
from typing import Dict

from pyspark.sql import DataFrame
from pyspark.sql import functions as F

from .columns import OUTPUT_DECIMALS, count_valid, format_decimal, parse_decimal
from .join import STDDEV_OUTPUT
from .reader import ROW_ID

logger = logging.getLogger(__name__)


# Grouping uses population too; see conflicting_locations in stats()
GROUP_KEY = ["latitude", "longitude", "population"]
GROUPED_COLUMNS = ["forecast_time", "latitude", "longitude", "population", "forecasts"]

# Keep explicit nulls so a missing value never reads as 0
JSON_OPTIONS = {"ignoreNullFields": "false"}


class LocationAggregator:
    """Groups matched rows by location and collects their forecast samples"""

    def __init__(self, decimals: int = OUTPUT_DECIMALS):
        """
        Initialize aggregator

        Args:
            decimals: Fractional digits for numeric output columns
        """
        self.decimals = decimals
        self.counters = {
            "total_rows": 0,
            "malformed_rows": 0,
            "groups": 0,
            "conflicting_locations": 0,
        }

    def aggregate(self, df: DataFrame) -> DataFrame:
        """
        Build one group per (latitude, longitude, population)

        The first row of a group (by input order) provides its base
        forecast_time; samples keep input order. Rows whose coordinates or
        population do not parse, or with an empty timestamp, are skipped
        and counted.

        Args:
            df: Filtered table as read by reader.read_table

        Returns:
            DataFrame with forecast_time, latitude, longitude, population
            (doubles), samples (array of structs), ordered by first
            appearance
        """
        logger.info("Aggregating rows by location")

        stddev = (
            parse_decimal(STDDEV_OUTPUT)
            if STDDEV_OUTPUT in df.columns
            else F.lit(None).cast("double")
        )

        parsed = df.select(
            F.col("forecast_time"),
            parse_decimal("latitude").alias("latitude"),
            parse_decimal("longitude").alias("longitude"),
            parse_decimal("population").alias("population"),
            parse_decimal("temp_2m").alias("value"),
            stddev.alias("stddev"),
            F.col(ROW_ID),
        )

        is_valid = (
            F.col("forecast_time").isNotNull()
            & (F.length(F.col("forecast_time")) > 0)
            & F.col("latitude").isNotNull()
            & F.col("longitude").isNotNull()
            & F.col("population").isNotNull()
        )
        valid = parsed.filter(is_valid)

        # seq first so sort_array orders samples by input position
        sample = F.struct(
            F.col(ROW_ID).alias("seq"),
            F.col("forecast_time").alias("time"),
            F.col("value"),
            F.col("stddev"),
        )

        folded = valid.groupBy(*GROUP_KEY).agg(
            F.sort_array(F.collect_list(sample)).alias("_samples"),
            F.min(ROW_ID).alias("_first_seen"),
        )

        groups = (
            folded.select(
                F.col("_samples")[0]["time"].alias("forecast_time"),
                *GROUP_KEY,
                F.transform(
                    "_samples",
                    lambda s: F.struct(
                        s["time"].alias("time"),
                        s["value"].alias("value"),
                        s["stddev"].alias("stddev"),
                    ),
                ).alias("samples"),
                F.col("_first_seen"),
            )
            .orderBy("_first_seen")
            .cache()
        )

        total, valid_count = count_valid(parsed, is_valid)
        self.counters["total_rows"] += total
        self.counters["malformed_rows"] += total - valid_count
        self.counters["groups"] += groups.count()

        conflicts = (
            valid.select(*GROUP_KEY)
            .distinct()
            .groupBy("latitude", "longitude")
            .count()
            .filter(F.col("count") > 1)
            .count()
        )
        self.counters["conflicting_locations"] += conflicts

        logger.info(f"Aggregation counters: {self.counters}")
        if conflicts:
            logger.warning(
                f"{conflicts} locations carry more than one population value "
                f"and were split into separate groups"
            )
        if self.counters["malformed_rows"]:
            logger.warning(f"Skipped {self.counters['malformed_rows']} malformed rows")

        return groups

    def format_output(self, groups: DataFrame) -> DataFrame:
        """
        Render groups as the upload table

        Returns:
            String DataFrame with columns
            forecast_time,latitude,longitude,population,forecasts where
            forecasts is a JSON array of {time, value, stddev}
        """
        return groups.orderBy("_first_seen").select(
            F.col("forecast_time"),
            format_decimal(F.col("latitude"), self.decimals).alias("latitude"),
            format_decimal(F.col("longitude"), self.decimals).alias("longitude"),
            format_decimal(F.col("population"), self.decimals).alias("population"),
            F.to_json(F.col("samples"), JSON_OPTIONS).alias("forecasts"),
        )

    def summary(self) -> str:
        return (
            f"Grouped {self.counters['total_rows'] - self.counters['malformed_rows']} "
            f"rows into {self.counters['groups']} locations "
            f"({self.counters['malformed_rows']} malformed, "
            f"{self.counters['conflicting_locations']} conflicting locations)"
        )

    def stats(self) -> Dict[str, int]:
        return dict(self.counters)


def create_aggregator(decimals: int = OUTPUT_DECIMALS) -> LocationAggregator:
    """
    Factory function to create an aggregator instance

    Args:
        decimals: Fractional digits for numeric output columns

    Returns:
        LocationAggregator instance
    """
    return LocationAggregator(decimals)
