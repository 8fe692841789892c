"""
Gridjoin Service

Spark-based join of gridded temperature forecasts against a population
density grid. Builds the population index, joins forecast files, filters
degenerate rows and folds each location's forecasts into one record.
"""

__version__ = "0.1.0"
