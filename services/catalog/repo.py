"""SQLAlchemy repository for the food catalog and its stock.

One ``food_items`` table maps a food id to its name, price, availability
and stock quantity. Stock adjustments lock the row (``SELECT ... FOR
UPDATE``) and refuse to go below zero, so concurrent checkouts can never
oversell an item.

The connection comes from ``CATALOG_DATABASE_URL`` when set, otherwise it
is assembled from the ``DB_*`` variables (Postgres through psycopg).
"""

import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import Boolean, Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "catalog-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "catalog")
DB_USER = os.getenv("DB_USER", "catalog_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "catalog-pass")

DATABASE_URL = os.getenv(
    "CATALOG_DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)


class Base(DeclarativeBase): pass


class FoodItem(Base):
    __tablename__ = "food_items"
    food_id = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(100), nullable=False)
    price = mapped_column(Integer, nullable=False)
    stock_quantity = mapped_column(Integer, nullable=False, default=0)
    is_available = mapped_column(Boolean, nullable=False, default=True)


class FoodMissing(LookupError):
    pass


class StockExhausted(ValueError):
    pass


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    with Session(engine) as s:
        yield s


class CatalogRepo:
    """Catalog reads, upserts and locked stock adjustments."""

    def get(self, food_id: str) -> Optional[dict]:
        with get_session() as s:
            obj = s.get(FoodItem, food_id)
            return _as_dict(obj) if obj else None

    def upsert(self, food_id: str, name: str, price: int, stock_quantity: int, is_available: bool = True) -> dict:
        with get_session() as s:
            obj = s.get(FoodItem, food_id) or FoodItem(food_id=food_id)
            obj.name = name
            obj.price = price
            obj.stock_quantity = stock_quantity
            obj.is_available = is_available
            s.merge(obj)
            s.commit()
            return _as_dict(s.get(FoodItem, food_id))

    def adjust_stock(self, food_id: str, delta: int) -> int:
        """Add ``delta`` to the stock of one item under a row lock.

        Returns:
            int: The new stock quantity.

        Raises:
            FoodMissing: If the item does not exist.
            StockExhausted: If the result would be negative (nothing changes).
        """
        with get_session() as s:
            obj = s.execute(select(FoodItem).where(FoodItem.food_id == food_id).with_for_update()).scalar_one_or_none()
            if obj is None:
                raise FoodMissing(food_id)
            new_qty = obj.stock_quantity + delta
            if new_qty < 0:
                s.rollback()
                raise StockExhausted(food_id)
            obj.stock_quantity = new_qty
            s.commit()
            return new_qty


def _as_dict(obj: FoodItem) -> dict:
    return {
        "food_id": obj.food_id,
        "name": obj.name,
        "price": obj.price,
        "stock_quantity": obj.stock_quantity,
        "is_available": obj.is_available,
    }
