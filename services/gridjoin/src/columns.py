"""
Column expressions shared by every stage

Coordinate canonicalization (longitude convention + quantization),
lenient numeric parsing and fixed-point output formatting.
"""
from typing import Tuple

from pyspark.sql import Column, DataFrame
from pyspark.sql import functions as F

COORDINATE_PRECISION = 2
OUTPUT_DECIMALS = 6

_INFINITIES = [float("inf"), float("-inf")]


def quantize(col: Column, precision: int = COORDINATE_PRECISION) -> Column:
    """
    Round a coordinate column to a fixed number of decimals

    Spark rounds doubles HALF_UP on their decimal representation, i.e.
    half away from zero: 0.125 -> 0.13, -0.125 -> -0.13.
    """
    return F.round(col, precision)


def normalize_longitude(col: Column) -> Column:
    """Wrap a longitude into the signed [-180, 180) convention"""
    return (
        F.when(col >= 180.0, col - 360.0)
        .when(col < -180.0, col + 360.0)
        .otherwise(col)
    )


def to_unsigned_longitude(col: Column) -> Column:
    """Convert a signed longitude to the 0-360 convention"""
    return F.when(col < 0.0, col + 360.0).otherwise(col)


def canonical_latitude(col: Column, precision: int = COORDINATE_PRECISION) -> Column:
    return quantize(col, precision)


def canonical_longitude(col: Column, precision: int = COORDINATE_PRECISION) -> Column:
    """
    Map a longitude in either convention onto the canonical lookup key

    Normalizing after rounding wraps values that round up to 180.00, and the
    final rounding drops the float noise left by the subtraction.
    """
    wrapped = quantize(normalize_longitude(col), precision)
    return quantize(normalize_longitude(wrapped), precision)


def parse_decimal(col_name: str) -> Column:
    """
    Parse a string column as a finite double

    Unparseable text, NaN and infinities all become NULL so every stage can
    apply the same skip-and-count rule.
    """
    value = F.expr(f"try_cast(`{col_name}` AS DOUBLE)")
    return (
        F.when(F.isnan(value) | value.isin(_INFINITIES), F.lit(None).cast("double"))
        .otherwise(value)
    )


def format_decimal(col: Column, decimals: int = OUTPUT_DECIMALS) -> Column:
    """Fixed-point text with `decimals` fractional digits, NULL stays NULL"""
    return F.when(col.isNotNull(), F.format_string(f"%.{decimals}f", col))


def count_valid(df: DataFrame, is_valid: Column) -> Tuple[int, int]:
    """
    Total and valid row counts in a single pass over df

    Returns:
        (total rows, rows where is_valid is true)
    """
    row = df.agg(
        F.count(F.lit(1)).alias("total"),
        F.coalesce(F.sum(F.when(is_valid, 1).otherwise(0)), F.lit(0)).alias("valid"),
    ).first()
    return int(row["total"]), int(row["valid"])
