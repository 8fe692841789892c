"""
Table writer

Writes a DataFrame as a single header-prefixed CSV file. Spark output is
staged in a hidden sibling directory and renamed onto the target, so the
target either holds the complete table or does not exist.
"""
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Dict, Any

from pyspark.sql import DataFrame

from .reader import CSV_OPTIONS

logger = logging.getLogger(__name__)


class CsvTableWriter:
    """Write DataFrames to single local CSV files"""

    def __init__(self, output_path: str):
        """
        Initialize writer

        Args:
            output_path: Final CSV path
        """
        self.output_path = Path(output_path)
        self.staging_path = self.output_path.parent / (
            f".{self.output_path.name}.{uuid.uuid4().hex}.staging"
        )
        logger.info(f"Initialized CsvTableWriter: path={self.output_path}")

    def write(self, df: DataFrame) -> Dict[str, Any]:
        """
        Write DataFrame rows, in their current order, to output_path

        Args:
            df: DataFrame whose columns are the output header

        Returns:
            Dictionary with write statistics
        """
        if not self.output_path.parent.is_dir():
            raise FileNotFoundError(
                f"Output directory does not exist: {self.output_path.parent}"
            )

        logger.info(f"Writing table to {self.output_path}")

        try:
            # Counted before anything reaches output_path
            rows_written = df.count()

            # One partition keeps the global row order of a sorted DataFrame
            (
                df.coalesce(1)
                .write.mode("overwrite")
                .options(header=True, emptyValue="", **CSV_OPTIONS)
                .csv(str(self.staging_path))
            )

            parts = sorted(self.staging_path.glob("part-*.csv"))
            if parts:
                staged = parts[0]
            else:
                # Nothing but a _SUCCESS marker for an empty DataFrame
                staged = self.staging_path / "header.csv"
                staged.write_text(",".join(df.columns) + "\n", encoding="utf-8")

            os.replace(staged, self.output_path)

            stats = {
                "output_path": str(self.output_path),
                "rows_written": rows_written,
                "columns": df.columns,
            }
            logger.info(f"Write complete: {stats}")
            return stats

        except Exception as e:
            logger.error(f"Failed to write {self.output_path}: {e}")
            raise

        finally:
            shutil.rmtree(self.staging_path, ignore_errors=True)


def create_writer(output_path: str) -> CsvTableWriter:
    """
    Factory function to create a writer instance

    Args:
        output_path: Final CSV path

    Returns:
        CsvTableWriter instance
    """
    return CsvTableWriter(output_path)
