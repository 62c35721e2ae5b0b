"""
Example 05: Async Operations

This example demonstrates AsyncDataClient, which mirrors DataClient with
coroutines and accepts a cancellation event on every operation.
"""

import asyncio
import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rowmap import AsyncDataClient, ConnectionConfig, table


@table("users")
@dataclass
class User:
    id: int = 0
    name: str = ""
    age: int = 0


async def main():
    db_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    db_path = db_file.name
    db_file.close()

    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, age INTEGER)")
    conn.commit()
    conn.close()

    config = ConnectionConfig(driver="sqlite", database=db_path)

    print("=== Async Operations ===\n")

    async with AsyncDataClient(config) as client:
        await client.insert_range([User(name="Alice", age=30), User(name="Bob", age=41)])

        users = await client.to_list(User, order_by="name")
        print(f"to_list: {users}")

        oldest = await client.first(User, order_by="-age")
        print(f"first by age desc: {oldest}")

        print(f"avg age: {await client.avg(User, 'age')}")

        tx = await client.begin_transaction()
        await client.insert(User(name="Charlie", age=25), transaction=tx)
        await client.rollback_transaction(tx)
        print(f"count after rollback: {await client.count(User)}")

        # A set cancellation event stops the operation before it runs
        cancellation = asyncio.Event()
        cancellation.set()
        try:
            await client.insert(User(name="Dave", age=50), cancellation=cancellation)
        except asyncio.CancelledError:
            print("insert cancelled")
        print(f"count after cancel: {await client.count(User)}")

    Path(db_path).unlink()


if __name__ == "__main__":
    asyncio.run(main())
