"""
Example 04: Transaction Management

This example demonstrates explicit transaction handles, range operations
that roll back as a whole, and command hooks.
"""

import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rowmap import CommandExecutionError, ConnectionConfig, DataClient, TransactionStateError, table


@table("users")
@dataclass
class User:
    id: int = 0
    name: str = ""
    email: str = ""


def main():
    db_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    db_path = db_file.name
    db_file.close()

    conn = sqlite3.connect(db_path)
    conn.execute(
        "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email TEXT NOT NULL UNIQUE)"
    )
    conn.commit()
    conn.close()

    config = ConnectionConfig(driver="sqlite", database=db_path)

    print("=== Transaction Management ===\n")

    with DataClient(config) as client:
        client.command_executed.append(lambda event: print(f"   [{event.method}] {event.sql}"))

        # Example 1: Explicit handle, committed
        print("1. Commit:")
        tx = client.begin_transaction()
        client.insert(User(name="Alice", email="alice@example.com"), transaction=tx)
        client.end_transaction(tx)
        print(f"   Users after commit: {client.count(User)}\n")

        # Example 2: Context manager rolls back on error
        print("2. Rollback on error:")
        try:
            with client.begin_transaction() as tx:
                client.insert(User(name="Bob", email="bob@example.com"), transaction=tx)
                client.insert(User(name="Charlie", email="alice@example.com"), transaction=tx)
        except CommandExecutionError as e:
            print(f"   Error occurred in {e.method}; transaction rolled back")
        print(f"   Users after rollback: {client.count(User)} (Bob was not added)\n")

        # Example 3: Transactions are not reentrant
        print("3. Nested begin:")
        tx = client.begin_transaction()
        try:
            client.begin_transaction()
        except TransactionStateError as e:
            print(f"   {e}")
        client.rollback_transaction(tx)

        # Example 4: Range operations are all-or-nothing
        print("\n4. insert_range:")
        client.command_executed.clear()
        try:
            client.insert_range(
                [
                    User(name="Dave", email="dave@example.com"),
                    User(name="Eve", email="alice@example.com"),
                ]
            )
        except CommandExecutionError as e:
            print(f"   {e.method} failed: {e.sql}")
        print(f"   Users after failed range: {client.count(User)}")

    Path(db_path).unlink()


if __name__ == "__main__":
    main()
