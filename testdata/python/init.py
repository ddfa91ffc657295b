"""Run setup statements against a Spark Connect server.

Usage:
    python init.py -s sc://172.18.0.3:15002 --sql "CREATE SCHEMA s1" "CREATE TABLE ..."

Exits non-zero on the first statement that fails.
"""

import argparse
import sys

from pyspark.sql import SparkSession


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Seed reference tables with Spark")
    parser.add_argument("-s", "--server", required=True, help="Spark Connect URL")
    parser.add_argument("--sql", nargs="+", required=True, help="Statements, run in order")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    spark = SparkSession.builder.remote(args.server).getOrCreate()
    try:
        for statement in args.sql:
            print(f"[SQL] {statement}")
            spark.sql(statement).collect()
    finally:
        spark.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
