#!/usr/bin/env python3
"""
Seed script: demo users, catalog items and inventories.

WHAT: Populates the configured database with two traders and a few items
WHY: Lets two browser tabs try a live trade without the account subsystem
HOW: init_db() then idempotent inserts through get_db()

Usage:
    python seed_demo_data.py
"""

import sys

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.database import get_db, init_db
from app.core.models import User, Item, Inventory

DEMO_ITEMS = [
    ("Iron Sword", "/images/items/iron_sword.png", True),
    ("Wooden Shield", "/images/items/wooden_shield.png", True),
    ("Ruby", "/images/items/ruby.png", True),
    ("Soulbound Amulet", "/images/items/amulet.png", False),
]

DEMO_INVENTORY = {
    "alice": {"Iron Sword": 3, "Wooden Shield": 1, "Soulbound Amulet": 1},
    "bob": {"Ruby": 5, "Iron Sword": 1},
}


def get_or_create_user(db, username: str) -> User:
    user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is None:
        user = User(username=username)
        db.add(user)
        db.flush()
        print(f"[+] Created user {username} (id={user.id})")
    return user


def get_or_create_item(db, name: str, image_url: str, is_tradeable: bool) -> Item:
    item = db.execute(select(Item).where(Item.name == name)).scalar_one_or_none()
    if item is None:
        item = Item(name=name, image_url=image_url, is_tradeable=is_tradeable)
        db.add(item)
        db.flush()
        print(f"[+] Created item {name} (id={item.item_id})")
    return item


def seed():
    """Create demo rows that don't exist yet; existing quantities are left alone."""
    print(f"[*] Seeding database: {settings.DATABASE_URL}")
    init_db()

    with get_db() as db:
        items = {
            name: get_or_create_item(db, name, image_url, tradeable)
            for name, image_url, tradeable in DEMO_ITEMS
        }
        for username, holdings in DEMO_INVENTORY.items():
            user = get_or_create_user(db, username)
            for item_name, quantity in holdings.items():
                item = items[item_name]
                exists = db.execute(
                    select(Inventory).where(Inventory.user_id == user.id, Inventory.item_id == item.item_id)
                ).scalar_one_or_none()
                if exists is None:
                    db.add(Inventory(user_id=user.id, item_id=item.item_id, quantity=quantity))
                    print(f"[+] Gave {username} {quantity} x {item_name}")


if __name__ == "__main__":
    print("=" * 60)
    print("Live Trade Demo Data")
    print("=" * 60)
    try:
        seed()
    except SQLAlchemyError as e:
        print(f"[ERROR] Seeding failed: {e}")
        sys.exit(1)
    print("=" * 60)
    print("\n[SUCCESS] Demo data ready!")
    print("\nNext steps:")
    print("  1. Start the backend: python -m app.main")
    print("  2. Connect two clients to /api/v1/live-trade/ws?user_id=<id>&username=<name>")
