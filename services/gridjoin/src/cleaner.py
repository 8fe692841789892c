"""
Row filters for joined tables

Drops rows without a usable population and, optionally, rows outside a
geographic bounding box. Both filters are row-level: kept rows are passed
through unchanged and in input order.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Tuple

from pyspark.sql import Column, DataFrame
from pyspark.sql import functions as F

from .columns import (
    COORDINATE_PRECISION,
    canonical_latitude,
    canonical_longitude,
    parse_decimal,
)
from .reader import ROW_ID

logger = logging.getLogger(__name__)


class RowFilter(ABC):
    """Base for order-preserving row filters that track kept/removed counts"""

    name = "row"

    def __init__(self):
        self.counters = {"total_rows": 0, "kept_rows": 0, "removed_rows": 0}

    @abstractmethod
    def predicate(self) -> Column:
        """Boolean column selecting the rows to keep; NULL drops the row"""

    def apply(self, df: DataFrame) -> DataFrame:
        """
        Keep rows matching the predicate

        Args:
            df: String DataFrame as read by reader.read_table

        Returns:
            Kept rows, same columns, in input order
        """
        logger.info(f"Applying {self.name} filter")

        kept = (
            df.filter(F.coalesce(self.predicate(), F.lit(False)))
            .orderBy(ROW_ID)
            .cache()
        )

        total = df.count()
        kept_count = kept.count()
        self.counters["total_rows"] += total
        self.counters["kept_rows"] += kept_count
        self.counters["removed_rows"] += total - kept_count

        logger.info(f"{self.name} filter: {self.summary()}")
        return kept

    def summary(self) -> str:
        return (
            f"Kept {self.counters['kept_rows']} out of "
            f"{self.counters['total_rows']} rows "
            f"({self.counters['removed_rows']} removed)"
        )

    def stats(self) -> Dict[str, int]:
        return dict(self.counters)


class PopulationFilter(RowFilter):
    """Keeps rows whose population is a finite number > 0"""

    name = "population"

    def predicate(self):
        return parse_decimal("population") > 0


class RegionFilter(RowFilter):
    """Keeps rows whose quantized coordinates fall inside a bounding box"""

    name = "region"

    def __init__(
        self,
        bounds: Tuple[float, float, float, float],
        precision: int = COORDINATE_PRECISION,
    ):
        """
        Initialize region filter

        Args:
            bounds: (min_lat, max_lat, min_lon, max_lon), inclusive,
                longitudes in signed degrees
            precision: Decimal places applied before comparing
        """
        super().__init__()
        self.min_lat, self.max_lat, self.min_lon, self.max_lon = bounds
        self.precision = precision
        logger.info(f"Initialized RegionFilter with bounds {bounds}")

    def predicate(self):
        lat = canonical_latitude(parse_decimal("latitude"), self.precision)
        lon = canonical_longitude(parse_decimal("longitude"), self.precision)
        return lat.between(self.min_lat, self.max_lat) & lon.between(
            self.min_lon, self.max_lon
        )


def create_population_filter() -> PopulationFilter:
    """Factory function to create a population filter"""
    return PopulationFilter()


def create_region_filter(
    bounds: Tuple[float, float, float, float],
    precision: int = COORDINATE_PRECISION,
) -> RegionFilter:
    """
    Factory function to create a region filter

    Args:
        bounds: (min_lat, max_lat, min_lon, max_lon)
        precision: Decimal places applied before comparing

    Returns:
        RegionFilter instance
    """
    return RegionFilter(bounds, precision)
