"""
Example 02: Mapping Configuration

This example shows the three ways a type's table mapping is declared:
naming conventions, Annotated markers and explicit MappingConfig
registration, plus materializing raw SQL results into objects.
"""

import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

from rowmap import (
    Column,
    ConnectionConfig,
    DataClient,
    Key,
    MappingConfig,
    NotMapped,
    TypeDescriptorRegistry,
    table,
)


# Conventions: table name is the class name, "id" is the key
@dataclass
class Product:
    id: int = 0
    name: str = ""
    price: float = 0.0


# Markers: key, renamed column, excluded member
@table("orders")
@dataclass
class Order:
    order_no: Annotated[int, Key()] = 0
    customer: Annotated[str, Column("customer_name")] = ""
    total: Annotated[float, Column()] = 0.0
    summary: Annotated[str, NotMapped()] = ""


# Explicit configuration, no changes to the class
@dataclass
class Customer:
    code: str = ""
    display: str = ""


@dataclass
class OrderLine:
    product: str
    quantity: int


def main():
    db_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    db_path = db_file.name
    db_file.close()

    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE Product (id INTEGER PRIMARY KEY, name TEXT, price REAL);
        CREATE TABLE orders (order_no INTEGER PRIMARY KEY, customer_name TEXT, total REAL);
        CREATE TABLE customers (customer_code TEXT PRIMARY KEY, customer_name TEXT);
        INSERT INTO customers VALUES ('C1', 'Alice'), ('C2', 'Bob');
    """)
    conn.commit()
    conn.close()

    registry = TypeDescriptorRegistry()
    registry.register(
        Customer,
        MappingConfig()
        .table("customers")
        .key("code")
        .column("code", "customer_code")
        .column("display", "customer_name"),
    )

    config = ConnectionConfig(driver="sqlite", database=db_path)

    print("=== Mapping Configuration ===\n")

    with DataClient(config, registry=registry) as client:
        order_desc = registry.get_or_create(Order)
        print(f"Order table: {order_desc.table_name}")
        print(f"Order key: {[m.name for m in order_desc.primary_keys]}")
        print(f"Order columns: {order_desc.column_names}\n")

        client.insert_range([Product(name="Pen", price=1.5), Product(name="Book", price=12.0)])
        client.insert(Order(order_no=1, customer="Alice", total=13.5))

        print(f"Products: {client.to_list(Product)}")
        print(f"Orders: {client.to_list(Order)}")
        print(f"Customers: {client.to_list(Customer, order_by='code')}\n")

        # Raw SQL into a type with a required-argument constructor
        lines = client.query(
            OrderLine,
            "SELECT name AS product, 2 AS quantity FROM Product WHERE price < :max_price",
            {"max_price": 5},
        )
        print(f"Order lines: {lines}")

        # Scalars and dictionaries
        names = client.query(str, "SELECT name FROM Product ORDER BY name")
        print(f"Product names: {names}")
        prices = client.to_dictionary(tp=Product, key="name", value="price")
        print(f"Prices: {prices}")

    Path(db_path).unlink()


if __name__ == "__main__":
    main()
