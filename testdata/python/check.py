"""Compare the results of two queries on a Spark Connect server.

Usage:
    python check.py -s sc://172.18.0.3:15002 -q1 "SELECT * FROM s1.t2 ORDER BY id" \
        -q2 "SELECT * FROM s1.t1 ORDER BY id"

Rows are compared in order, by value. Exits 1 when the results differ.
"""

import argparse
import sys

from pyspark.sql import SparkSession


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Check two queries return the same rows")
    parser.add_argument("-s", "--server", required=True, help="Spark Connect URL")
    parser.add_argument("-q1", "--expected", required=True, help="Query producing expected rows")
    parser.add_argument("-q2", "--actual", required=True, help="Query producing actual rows")
    return parser.parse_args(argv)


def collect(spark, query):
    print(f"[SQL] {query}")
    return [tuple(row) for row in spark.sql(query).collect()]


def main(argv=None) -> int:
    args = parse_args(argv)
    spark = SparkSession.builder.remote(args.server).getOrCreate()
    try:
        expected = collect(spark, args.expected)
        actual = collect(spark, args.actual)
    finally:
        spark.stop()

    if expected == actual:
        print(f"OK: {len(actual)} rows match")
        return 0

    print("MISMATCH", file=sys.stderr)
    print(f"  expected ({len(expected)} rows):", file=sys.stderr)
    for row in expected:
        print(f"    {row}", file=sys.stderr)
    print(f"  actual ({len(actual)} rows):", file=sys.stderr)
    for row in actual:
        print(f"    {row}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
