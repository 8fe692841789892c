"""
Gridjoin orchestrator

Main entry point for the gridjoin pipeline.
Coordinates the merge, filter, region and group stages.
"""
import argparse
import json
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pyspark.sql import SparkSession

from .aggregator import create_aggregator
from .cleaner import create_population_filter, create_region_filter
from .config import GridJoinConfig, get_config
from .join import MATCHED_COLUMNS, STDDEV_OUTPUT, create_join_engine
from .population import create_index_builder
from .reader import ROW_ID, read_table, select_forecast_files
from .writer import create_writer

logger = logging.getLogger(__name__)


def forecast_folder_name(run_date: date) -> str:
    """Directory holding a run's forecast exports, e.g. 06-03-2025"""
    return run_date.strftime("%m-%d-%Y")


def forecast_file_prefix(run_date: date) -> str:
    """Filename prefix of a run's forecast exports, e.g. 06_03_2025"""
    return run_date.strftime("%m_%d_%Y")


def derived_path(input_path: str, prefix: str) -> str:
    """Output path next to input_path, named <prefix>_<input name>"""
    path = Path(input_path)
    return str(path.parent / f"{prefix}_{path.name}")


class GridJoinOrchestrator:
    """Orchestrates the forecast/population pipeline stages"""

    def __init__(self, spark: SparkSession, config: Optional[GridJoinConfig] = None):
        """
        Initialize orchestrator

        Args:
            spark: SparkSession instance
            config: Service configuration (default: from environment)
        """
        self.spark = spark
        self.config = config or get_config()
        logger.info("GridJoinOrchestrator initialized")

    def _run_stage(self, stage: str, inputs: Dict[str, Any], body) -> Dict[str, Any]:
        """Run a stage body, wrapping its outcome in a result dictionary"""
        logger.info(f"Starting stage {stage}: {inputs}")
        start_time = datetime.utcnow()

        try:
            results = body()
            end_time = datetime.utcnow()
            duration = (end_time - start_time).total_seconds()

            results.update({
                "stage": stage,
                **inputs,
                "processing_time_seconds": duration,
                "started_at": start_time.isoformat(),
                "completed_at": end_time.isoformat(),
                "status": "success",
            })
            logger.info(f"Stage {stage} complete in {duration:.2f}s: {results['summary']}")
            return results

        except Exception as e:
            logger.error(f"Stage {stage} failed: {e}", exc_info=True)

            end_time = datetime.utcnow()
            duration = (end_time - start_time).total_seconds()

            return {
                "stage": stage,
                **inputs,
                "status": "failed",
                "error": str(e),
                "summary": f"{stage} failed: {e}",
                "processing_time_seconds": duration,
                "started_at": start_time.isoformat(),
                "failed_at": end_time.isoformat(),
            }

    def merge(
        self,
        run_date: Optional[date] = None,
        forecast_dir: Optional[str] = None,
        population_path: Optional[str] = None,
        output_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Join a run's forecast files with the population grid

        Args:
            run_date: Run date driving folder, prefix and output names
            forecast_dir: Override for the forecast folder
            population_path: Override for the population file
            output_path: Override for the joined table path

        Returns:
            Stage results with population and join counters
        """
        run_date = run_date or date.today()
        data_root = Path(self.config.data_root)
        folder_name = forecast_folder_name(run_date)

        forecast_dir = forecast_dir or str(data_root / folder_name)
        population_path = population_path or str(self.config.population_path)
        output_path = output_path or str(data_root / f"master_{folder_name}.csv")
        prefix = forecast_file_prefix(run_date)

        def body():
            files = select_forecast_files(forecast_dir, prefix)
            if not Path(population_path).is_file():
                raise FileNotFoundError(f"Could not open population file: {population_path}")

            index = create_index_builder(
                self.spark, self.config.coordinate_precision
            ).build(population_path)

            try:
                engine = create_join_engine(self.spark, index)
                matched = engine.join_files(files)
                try:
                    write_stats = create_writer(output_path).write(
                        engine.format_output(matched, self.config.output_decimals)
                    )
                finally:
                    matched.unpersist()
            finally:
                index.release()

            return {
                "forecast_files": files,
                "population_metrics": index.stats(),
                "join_metrics": engine.stats(),
                "write_stats": write_stats,
                "summary": engine.summary(),
            }

        return self._run_stage("merge", {
            "run_date": run_date.isoformat(),
            "forecast_dir": forecast_dir,
            "population_path": population_path,
            "output_path": output_path,
        }, body)

    def _filter(self, stage: str, row_filter, input_path: str, output_path: str):
        def body():
            table = read_table(
                self.spark, input_path, MATCHED_COLUMNS, [STDDEV_OUTPUT]
            )
            kept = row_filter.apply(table)
            try:
                write_stats = create_writer(output_path).write(kept.drop(ROW_ID))
            finally:
                kept.unpersist()
            return {
                "filter_metrics": row_filter.stats(),
                "write_stats": write_stats,
                "summary": row_filter.summary(),
            }

        return self._run_stage(stage, {
            "input_path": input_path,
            "output_path": output_path,
        }, body)

    def filter_population(
        self, input_path: str, output_path: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Drop joined rows without a positive population

        Args:
            input_path: Joined table
            output_path: Output path (default: filtered_<input name>)
        """
        output_path = output_path or derived_path(input_path, "filtered")
        return self._filter("filter", create_population_filter(), input_path, output_path)

    def keep_region(
        self, input_path: str, output_path: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Keep joined rows inside the configured bounding box

        Args:
            input_path: Joined or filtered table
            output_path: Output path (default: us_<input name>)
        """
        output_path = output_path or derived_path(input_path, "us")
        row_filter = create_region_filter(
            self.config.region_bounds, self.config.coordinate_precision
        )
        return self._filter("keep-region", row_filter, input_path, output_path)

    def group(
        self, input_path: str, output_path: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Fold a filtered table into one row per location

        Args:
            input_path: Filtered joined table
            output_path: Output path (default: grouped_<input name>)
        """
        output_path = output_path or derived_path(input_path, "grouped")

        def body():
            table = read_table(
                self.spark, input_path, MATCHED_COLUMNS, [STDDEV_OUTPUT]
            )
            aggregator = create_aggregator(self.config.output_decimals)
            groups = aggregator.aggregate(table)
            try:
                write_stats = create_writer(output_path).write(
                    aggregator.format_output(groups)
                )
            finally:
                groups.unpersist()
            return {
                "aggregation_metrics": aggregator.stats(),
                "write_stats": write_stats,
                "summary": aggregator.summary(),
            }

        return self._run_stage("group", {
            "input_path": input_path,
            "output_path": output_path,
        }, body)

    def run(
        self,
        run_date: Optional[date] = None,
        keep_region: bool = False,
    ) -> Dict[str, Any]:
        """
        Run merge, filter, optional region filter and group in sequence

        A failed stage stops the chain.

        Returns:
            Combined results for all executed stages
        """
        stages: List[Dict[str, Any]] = []

        result = self.merge(run_date=run_date)
        stages.append(result)

        steps = [self.filter_population]
        if keep_region:
            steps.append(self.keep_region)
        steps.append(self.group)

        for step in steps:
            if result["status"] != "success":
                break
            result = step(result["output_path"])
            stages.append(result)

        succeeded = all(r["status"] == "success" for r in stages) and len(stages) == len(steps) + 1

        summary = {
            "status": "success" if succeeded else "failed",
            "stages": stages,
            "summary": "; ".join(r["summary"] for r in stages),
        }

        logger.info(f"Pipeline {'complete' if succeeded else 'failed'}: {summary['summary']}")
        return summary


def create_spark_session(
    app_name: str,
    master: Optional[str] = None,
    config: Optional[GridJoinConfig] = None,
) -> SparkSession:
    """
    Create and configure Spark session

    Args:
        app_name: Spark application name
        master: Spark master URL (None for local mode)
        config: Service configuration

    Returns:
        Configured SparkSession
    """
    config = config or get_config()

    builder = SparkSession.builder.appName(app_name)
    builder = builder.master(master or config.spark_master)

    builder = builder.config("spark.sql.shuffle.partitions", str(config.shuffle_partitions))
    builder = builder.config(
        "spark.sql.autoBroadcastJoinThreshold",
        str(config.broadcast_threshold_mb * 1024 * 1024),
    )
    builder = builder.config("spark.sql.session.timeZone", "UTC")

    spark = builder.getOrCreate()

    logger.info(f"Spark session created: {spark.version}")
    return spark


def parse_run_date(value: str) -> date:
    """argparse type for YYYY-MM-DD dates"""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forecast / population grid join")
    parser.add_argument(
        "--spark-master",
        default=None,
        help="Spark master URL (default: from config)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    merge = subparsers.add_parser("merge", help="Join forecast files with population")
    merge.add_argument("--date", type=parse_run_date, default=None,
                       help="Run date YYYY-MM-DD (default: today)")
    merge.add_argument("--forecast-dir", default=None,
                       help="Forecast folder (default: <data_root>/MM-DD-YYYY)")
    merge.add_argument("--population", default=None,
                       help="Population grid CSV (default: from config)")
    merge.add_argument("--output", default=None,
                       help="Joined table path (default: master_MM-DD-YYYY.csv)")

    for name, help_text in [
        ("filter", "Drop rows with zero or invalid population"),
        ("keep-region", "Keep rows inside the configured bounding box"),
        ("group", "Fold rows into one record per location"),
    ]:
        stage = subparsers.add_parser(name, help=help_text)
        stage.add_argument("input_path", help="Input table")
        stage.add_argument("--output", default=None, help="Output table path")

    run = subparsers.add_parser("run", help="Run merge, filter and group")
    run.add_argument("--date", type=parse_run_date, default=None,
                     help="Run date YYYY-MM-DD (default: today)")
    run.add_argument("--keep-region", action="store_true",
                     help="Apply the region filter before grouping")

    return parser


def dispatch(orchestrator: GridJoinOrchestrator, args: argparse.Namespace) -> Dict[str, Any]:
    """Invoke the orchestrator method selected on the command line"""
    if args.command == "merge":
        return orchestrator.merge(
            run_date=args.date,
            forecast_dir=args.forecast_dir,
            population_path=args.population,
            output_path=args.output,
        )
    if args.command == "filter":
        return orchestrator.filter_population(args.input_path, args.output)
    if args.command == "keep-region":
        return orchestrator.keep_region(args.input_path, args.output)
    if args.command == "group":
        return orchestrator.group(args.input_path, args.output)
    return orchestrator.run(run_date=args.date, keep_region=args.keep_region)


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args = build_arg_parser().parse_args(argv)
    config = get_config()

    spark = create_spark_session(config.spark_app_name, args.spark_master, config)

    try:
        orchestrator = GridJoinOrchestrator(spark, config)
        results = dispatch(orchestrator, args)

        print(json.dumps(results, indent=2, default=str))

        sys.exit(0 if results["status"] == "success" else 1)

    finally:
        spark.stop()


if __name__ == "__main__":
    main()
