#!/usr/bin/env python3
"""
Database initialization script for the order pipeline.

- Creates tables (optionally dropping them first) in PostgreSQL.
- Optionally seeds a few sample orders covering the pipeline states
  (ONLY FOR LOCAL/DEV USE).
"""

import asyncio
import argparse
from datetime import timedelta

from sqlalchemy.ext.asyncio import create_async_engine
from core.config import settings
from core.database import Base, db_manager, initialize_db, utc_now
from models import AutomatedGiftExecution, Order, OrderItem, OrderStatus, PaymentStatus


async def create_tables(drop: bool = False):
    """Create all database tables in PostgreSQL."""
    db_uri = settings.SQLALCHEMY_DATABASE_URI
    if 'postgresql' not in db_uri:
        print("⚠️  WARNING: Database URI does not appear to be PostgreSQL!")
        print(f"   Current URI: {db_uri}")
        response = input("   Continue anyway? (yes/no): ")
        if response.lower() != 'yes':
            print("❌ Aborted.")
            return

    print(f"🔗 Connecting to PostgreSQL: {db_uri.split('@')[-1] if '@' in db_uri else 'database'}")
    engine = create_async_engine(db_uri, echo=settings.ENVIRONMENT == "local")

    try:
        async with engine.begin() as conn:
            if drop:
                print("🗑️  Dropping existing tables...")
                await conn.run_sync(Base.metadata.drop_all)
            print("🏗️  Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
        print("✅ Database tables created successfully!")
    finally:
        await engine.dispose()


def sample_orders():
    now = utc_now()
    multi_recipient = Order(
        order_number="ORD-SEED-0001",
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.SUCCEEDED,
        stripe_payment_intent_id="pi_seed_0001",
        subtotal=150.0,
        shipping_cost=15.0,
        tax_amount=10.0,
        total_amount=175.0,
        cart_data={
            "deliveryGroups": [
                {"id": "group-a", "connectionName": "Alex", "items": ["prod-a"],
                 "shippingAddress": {"address": "1 Main St", "zipCode": "10001"}},
                {"id": "group-b", "connectionName": "Sam", "items": ["prod-b"],
                 "shippingAddress": {"address": "2 Side St", "zipCode": "94105"}},
            ]
        },
        items=[
            OrderItem(product_id="prod-a", product_name="Gift A", quantity=1, unit_price=100.0, total_price=100.0),
            OrderItem(product_id="prod-b", product_name="Gift B", quantity=1, unit_price=50.0, total_price=50.0),
        ],
    )
    awaiting_retry = Order(
        order_number="ORD-SEED-0002",
        status=OrderStatus.RETRY_PENDING,
        payment_status=PaymentStatus.SUCCEEDED,
        stripe_payment_intent_id="pi_seed_0002",
        fulfillment_method="zinc_api",
        subtotal=40.0,
        total_amount=40.0,
        retry_count=1,
        next_retry_at=now - timedelta(minutes=5),
        items=[OrderItem(product_id="prod-c", quantity=2, unit_price=20.0, total_price=40.0)],
    )
    unverified = Order(
        order_number="ORD-SEED-0003",
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        stripe_payment_intent_id="pi_seed_0003",
        subtotal=25.0,
        total_amount=25.0,
        items=[OrderItem(product_id="prod-d", quantity=1, unit_price=25.0, total_price=25.0)],
    )
    return [multi_recipient, awaiting_retry, unverified]


async def seed_sample_data():
    async with db_manager.session_factory() as db:
        orders = sample_orders()
        db.add_all(orders)
        await db.flush()
        db.add(AutomatedGiftExecution(order_id=orders[1].id, rule_id="seed-rule", status="processing"))
        await db.commit()
    print(f"🌱 Seeded {len(orders)} sample orders")


async def main():
    parser = argparse.ArgumentParser(
        description="Initialize the order pipeline database and optionally seed sample orders.")
    parser.add_argument("--drop", action="store_true",
                        help="Drop existing tables before creating them")
    parser.add_argument("--seed", action="store_true",
                        help="Seed sample orders after creating tables")
    args = parser.parse_args()

    print("🚀 Initializing order pipeline database...")

    initialize_db(settings.SQLALCHEMY_DATABASE_URI, settings.ENVIRONMENT == "local")

    try:
        await create_tables(drop=args.drop)
        if args.seed:
            await seed_sample_data()
        print("✅ Database initialization complete!")
    finally:
        await db_manager.dispose()


if __name__ == "__main__":
    asyncio.run(main())
