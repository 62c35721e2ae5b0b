"""
Example 03: Aggregates and Paging

This example demonstrates Count/Sum/Min/Max/Avg, several aggregates in one
query with agg and get_aggs, and page calculation.
"""

import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rowmap import ConnectionConfig, DataClient, Where, table


@table("sales")
@dataclass
class Sale:
    id: int = 0
    region: str = ""
    amount: float = 0.0
    units: int = 0


def main():
    db_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    db_path = db_file.name
    db_file.close()

    conn = sqlite3.connect(db_path)
    conn.execute(
        "CREATE TABLE sales (id INTEGER PRIMARY KEY, region TEXT, amount REAL, units INTEGER)"
    )
    conn.commit()
    conn.close()

    config = ConnectionConfig(driver="sqlite", database=db_path)

    print("=== Aggregates and Paging ===\n")

    with DataClient(config) as client:
        client.insert_range(
            [
                Sale(region="north", amount=120.0, units=3),
                Sale(region="north", amount=80.5, units=1),
                Sale(region="south", amount=42.0, units=2),
                Sale(region="south", amount=300.0, units=6),
                Sale(region="east", amount=15.25, units=1),
            ]
        )

        print(f"count: {client.count(Sale)}")
        print(f"count (north): {client.count(Sale, where={'region': 'north'})}")
        print(f"sum(amount): {client.sum(Sale, 'amount')}")
        print(f"min(amount): {client.min(Sale, 'amount')}")
        print(f"max(units): {client.max(Sale, 'units')}")
        print(f"avg(units): {client.avg(Sale, 'units')}\n")

        # Several aggregates in one round trip
        print(client.agg(Sale, ("amount", "SUM"), ("units", "MAX"), where=Where("units > :u", u=1)))

        # COUNT, MIN, MAX, SUM and AVG of every numeric column
        for column, aggs in client.get_aggs(Sale).items():
            print(f"{column}: {aggs}")

        # Pages of 2 rows: {page: (offset, count)}
        print(f"\npages: {client.get_pages(Sale, 2)}")
        print(f"pages count: {client.get_pages_count(Sale, 2)}")
        for page, (offset, size) in client.get_pages(Sale, 2).items():
            rows = client.to_list(Sale, fetch_rows=size, offset_rows=offset)
            print(f"  page {page}: {[s.id for s in rows]}")

        # Any SELECT can be counted
        print(f"\ncount_query: {client.count_query('SELECT DISTINCT region FROM sales')}")

    Path(db_path).unlink()


if __name__ == "__main__":
    main()
