"""
Configuration for the gridjoin service
"""
from pathlib import Path

from pydantic_settings import BaseSettings


class GridJoinConfig(BaseSettings):
    """Gridjoin service configuration"""

    # Input locations
    data_root: str = "."
    population_file: str = "population_2020.csv"

    # Spark configuration
    spark_app_name: str = "Gridjoin"
    spark_master: str = "local[*]"
    shuffle_partitions: int = 8
    broadcast_threshold_mb: int = 64

    # Matching and formatting
    coordinate_precision: int = 2  # ~1.1 km buckets
    output_decimals: int = 6

    # Contiguous US bounding box, inclusive
    region_min_latitude: float = 24.25
    region_max_latitude: float = 49.25
    region_min_longitude: float = -125.00
    region_max_longitude: float = -67.00

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "GRIDJOIN_"

    @property
    def population_path(self) -> Path:
        """Full path to the population grid file"""
        return Path(self.data_root) / self.population_file

    @property
    def region_bounds(self) -> tuple:
        """(min_lat, max_lat, min_lon, max_lon) for the region filter"""
        return (
            self.region_min_latitude,
            self.region_max_latitude,
            self.region_min_longitude,
            self.region_max_longitude,
        )


def get_config() -> GridJoinConfig:
    """Get gridjoin configuration instance"""
    return GridJoinConfig()
