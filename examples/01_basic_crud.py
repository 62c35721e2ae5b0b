"""
Example 01: Basic CRUD

This example inserts, reads, updates and deletes a mapped dataclass with
RowMap's DataClient. No SQL is written by hand: statements are generated
from the type's descriptor.
"""

import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rowmap import ConnectionConfig, DataClient, table


@table("users")
@dataclass
class User:
    id: int = 0
    name: str = ""
    email: str = ""
    active: bool = True


def main():
    # Create a temporary database
    db_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    db_path = db_file.name
    db_file.close()

    conn = sqlite3.connect(db_path)
    conn.execute("""
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            active INTEGER DEFAULT 1
        )
    """)
    conn.commit()
    conn.close()

    config = ConnectionConfig(driver="sqlite", database=db_path)

    print("=== Basic CRUD ===\n")

    with DataClient(config) as client:
        # insert: the generated key is returned and stored on the item
        alice = User(name="Alice", email="alice@example.com")
        new_id = client.insert(alice)
        print(f"insert returned id {new_id}; alice.id = {alice.id}")

        # create: build and insert in one call
        bob = client.create(User, name="Bob", email="bob@example.com")
        print(f"create returned {bob}\n")

        # first: filter by member values
        found = client.first(User, {"email": "bob@example.com"})
        print(f"first result: {found}")

        # update: by primary key
        found.active = False
        affected = client.update(found)
        print(f"update affected {affected} row(s)")

        # to_list: all rows, ordered
        for user in client.to_list(User, order_by="name"):
            print(f"  {user.id}: {user.name} (active={user.active})")

        # delete: by primary key
        client.delete(alice)
        print(f"\nRows after delete: {client.count(User)}")

        # get_raw_sql: parameters inlined for diagnostics
        print(client.get_raw_sql("SELECT * FROM users WHERE name = :name", {"name": "O'Brien"}))

    # Clean up
    Path(db_path).unlink()


if __name__ == "__main__":
    main()
