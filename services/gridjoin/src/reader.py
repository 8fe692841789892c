"""
Delimited text reader

Reads header-prefixed comma-delimited tables into Spark DataFrames of
string columns, renaming columns by position and tagging every row with
its position in the file.
"""
import logging
from pathlib import Path
from typing import List, Optional

from pyspark.sql import SparkSession, DataFrame
from pyspark.sql import functions as F

logger = logging.getLogger(__name__)


# Shared by reads and writes so quoted fields round-trip (RFC 4180 quoting).
# Field text passes through untrimmed; Spark trims on write unless told not to.
CSV_OPTIONS = {
    "sep": ",",
    "quote": '"',
    "escape": '"',
    "ignoreLeadingWhiteSpace": False,
    "ignoreTrailingWhiteSpace": False,
}

ROW_ID = "_row_id"


def read_table(
    spark: SparkSession,
    path: str,
    column_names: List[str],
    optional_columns: Optional[List[str]] = None,
) -> DataFrame:
    """
    Read a delimited table, mapping its columns by position

    Header names in the file are ignored: the first len(column_names)
    columns are renamed to column_names, the next ones to optional_columns
    when present. All values stay strings; parsing happens per stage.

    Args:
        spark: SparkSession instance
        path: Local path to the table
        column_names: Required column names, in file order
        optional_columns: Trailing columns that may be absent

    Returns:
        DataFrame with the named string columns plus ROW_ID
    """
    optional_columns = optional_columns or []
    file_path = Path(path)

    if not file_path.is_file():
        raise FileNotFoundError(f"Input table not found: {path}")

    logger.info(f"Reading table: {path}")

    df = spark.read.csv(
        str(file_path),
        header=True,
        inferSchema=False,
        mode="PERMISSIVE",
        **CSV_OPTIONS,
    )

    source_columns = df.columns
    if len(source_columns) < len(column_names):
        raise ValueError(
            f"{path} has {len(source_columns)} columns, "
            f"expected at least {len(column_names)}: {column_names}"
        )

    wanted = column_names + optional_columns
    positional = [
        wanted[i] if i < len(wanted) else f"_extra_{i}"
        for i in range(len(source_columns))
    ]
    present = [name for name in wanted if name in positional]

    # Rows of a single file keep file order in partition order, so the
    # generated ids increase along the file.
    return (
        df.toDF(*positional)
        .select(*present)
        .withColumn(ROW_ID, F.monotonically_increasing_id())
    )


def select_forecast_files(folder: str, prefix: str) -> List[str]:
    """
    List forecast files in a folder whose names start with prefix

    Args:
        folder: Directory holding exported forecast shards
        prefix: Filename prefix, e.g. 06_03_2025

    Returns:
        Matching paths in sorted filename order
    """
    directory = Path(folder)
    if not directory.is_dir():
        raise FileNotFoundError(f"Directory does not exist: {folder}")

    files = sorted(
        str(entry)
        for entry in directory.iterdir()
        if entry.is_file() and entry.name.startswith(prefix)
    )

    logger.info(f"Found {len(files)} forecast files with prefix {prefix} in {folder}")

    if not files:
        raise FileNotFoundError(
            f"No forecast files with prefix {prefix} in {folder}"
        )

    return files
