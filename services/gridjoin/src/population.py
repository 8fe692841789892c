"""
Population index

Loads the population grid (longitude, latitude, population) and keys it by
canonical (latitude, longitude) so forecast rows can be matched with an
equality join instead of tolerance comparisons.
"""
import logging
from typing import Dict, List, Optional

from pyspark.sql import SparkSession, DataFrame
from pyspark.sql import functions as F
from pyspark.sql.window import Window

from .columns import (
    COORDINATE_PRECISION,
    canonical_latitude,
    canonical_longitude,
    count_valid,
    parse_decimal,
)
from .reader import ROW_ID, read_table

logger = logging.getLogger(__name__)


# Source order is longitude first; the index key is (latitude, longitude)
POPULATION_COLUMNS = ["raw_longitude", "raw_latitude", "raw_population"]
KEY_COLUMNS = ["latitude", "longitude"]
SAMPLE_ENTRIES = 5


class PopulationIndex:
    """Read-only population lookup keyed by canonical (latitude, longitude)"""

    def __init__(
        self,
        spark: SparkSession,
        entries: DataFrame,
        source_rows: int = 0,
        malformed_rows: int = 0,
        precision: int = COORDINATE_PRECISION,
    ):
        """
        Wrap an already keyed and deduplicated entries DataFrame

        Args:
            spark: SparkSession instance
            entries: DataFrame with latitude, longitude, population
            source_rows: Data rows read from the population file
            malformed_rows: Rows skipped because a field did not parse
            precision: Decimal places used for the keys
        """
        self.spark = spark
        self._entries = entries
        self.source_rows = source_rows
        self.malformed_rows = malformed_rows
        self.precision = precision
        self._entry_count: Optional[int] = None

    @property
    def df(self) -> DataFrame:
        """Index entries: latitude, longitude, population"""
        return self._entries

    @property
    def entry_count(self) -> int:
        """Number of distinct quantized cells"""
        if self._entry_count is None:
            self._entry_count = self._entries.count()
        return self._entry_count

    def broadcast(self) -> DataFrame:
        """Entries marked for a broadcast join"""
        return F.broadcast(self._entries)

    def lookup(self, latitude: float, longitude: float) -> Optional[float]:
        """
        Population for a raw coordinate, either longitude convention

        Returns:
            Population value, or None when the cell is not in the index
        """
        query = self.spark.createDataFrame(
            [(float(latitude), float(longitude))], ["latitude", "longitude"]
        ).select(
            canonical_latitude(F.col("latitude"), self.precision).alias("latitude"),
            canonical_longitude(F.col("longitude"), self.precision).alias("longitude"),
        )

        rows = query.join(self._entries, on=KEY_COLUMNS, how="inner").collect()
        return rows[0]["population"] if rows else None

    def sample(self, n: int = SAMPLE_ENTRIES) -> List[Dict[str, float]]:
        """First n entries, for diagnostics"""
        return [row.asDict() for row in self._entries.limit(n).collect()]

    def release(self):
        """Drop the cached entries once no more joins will use the index"""
        self._entries.unpersist()

    def stats(self) -> Dict[str, int]:
        return {
            "source_rows": self.source_rows,
            "malformed_rows": self.malformed_rows,
            "entry_count": self.entry_count,
        }


class PopulationIndexBuilder:
    """Builds a PopulationIndex from a population grid file"""

    def __init__(self, spark: SparkSession, precision: int = COORDINATE_PRECISION):
        """
        Initialize builder

        Args:
            spark: SparkSession instance
            precision: Decimal places for coordinate quantization
        """
        self.spark = spark
        self.precision = precision
        logger.info(f"Initialized PopulationIndexBuilder, precision: {precision}")

    def build(self, path: str) -> PopulationIndex:
        """
        Load the population grid and key it by canonical coordinates

        Rows with a field that is not a finite number are skipped and
        counted. When a cell appears more than once, the row that comes
        last in the file wins.

        Args:
            path: Path to the population CSV (longitude, latitude, population)

        Returns:
            Fully built PopulationIndex
        """
        logger.info(f"Reading population data: {path}")

        try:
            raw = read_table(self.spark, path, POPULATION_COLUMNS)

            parsed = raw.select(
                parse_decimal("raw_latitude").alias("latitude"),
                parse_decimal("raw_longitude").alias("longitude"),
                parse_decimal("raw_population").alias("population"),
                F.col(ROW_ID),
            )

            is_valid = (
                F.col("latitude").isNotNull()
                & F.col("longitude").isNotNull()
                & F.col("population").isNotNull()
            )
            valid = parsed.filter(is_valid)

            keyed = valid.select(
                canonical_latitude(F.col("latitude"), self.precision).alias("latitude"),
                canonical_longitude(F.col("longitude"), self.precision).alias("longitude"),
                F.col("population"),
                F.col(ROW_ID),
            )

            # Last write wins
            latest_first = Window.partitionBy(*KEY_COLUMNS).orderBy(F.col(ROW_ID).desc())
            entries = (
                keyed.withColumn("_rank", F.row_number().over(latest_first))
                .filter(F.col("_rank") == 1)
                .select(*KEY_COLUMNS, "population")
                .cache()
            )

            source_rows, valid_rows = count_valid(parsed, is_valid)
            index = PopulationIndex(
                self.spark,
                entries,
                source_rows=source_rows,
                malformed_rows=source_rows - valid_rows,
                precision=self.precision,
            )

            logger.info(f"Population index stats: {index.stats()}")
            if index.malformed_rows:
                logger.warning(
                    f"Skipped {index.malformed_rows} malformed population rows in {path}"
                )
            for entry in index.sample():
                logger.info(
                    f"Population entry: lat={entry['latitude']}, "
                    f"lon={entry['longitude']}, pop={entry['population']}"
                )

            return index

        except Exception as e:
            logger.error(f"Failed to build population index from {path}: {e}")
            raise


def create_index_builder(
    spark: SparkSession, precision: int = COORDINATE_PRECISION
) -> PopulationIndexBuilder:
    """
    Factory function to create a population index builder

    Args:
        spark: SparkSession
        precision: Decimal places for coordinate quantization

    Returns:
        PopulationIndexBuilder instance
    """
    return PopulationIndexBuilder(spark, precision)
