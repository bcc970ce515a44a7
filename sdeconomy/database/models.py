"""
Database Models - Current Schema

Tables:
- schema_version: key/value constants, including the schema version marker
- products: persisted ProductRecord state, alias unique and lower-case
- actors: external actor identity -> compact internal id
- ledger: append-only economic actions; rows cascade away with their product

Historical table shapes live in ``sdeconomy.persistence.legacy``.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class SchemaConstant(Base):
    """Key/value constants table holding the schema version marker"""
    __tablename__ = "schema_version"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)


class ProductRow(Base):
    """
    Product Table

    One row per tradeable product. ``id`` is a storage-internal surrogate key
    referenced by the ledger; ``alias`` is the logical key.
    """
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alias: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    item_type: Mapped[str] = mapped_column(String(255), nullable=False)
    variant_tag: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)

    # Pricing
    mod_factor: Mapped[float] = mapped_column(Float(precision=53), nullable=False, default=0.1)
    base_price: Mapped[float] = mapped_column(Float(precision=53), nullable=False, default=1.0)
    supply: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    demand: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Decay
    decay_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=64)
    decay_interval: Mapped[int] = mapped_column(BigInteger, nullable=False, default=43_200_000)
    decay_type: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)


class Actor(Base):
    """Actor identity table; includes the reserved system actor"""
    __tablename__ = "actors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)


class LedgerRow(Base):
    """
    Ledger Table

    Append-only. ``amount`` is units for trades and decay, or the new value for
    SET_PRICE / SET_MOD_FACTOR.
    """
    __tablename__ = "ledger"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("actors.id", name="fk_ledger_actor"), nullable=False
    )
    action: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    product_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("products.id", name="fk_ledger_product", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    amount: Mapped[float] = mapped_column(Float(precision=53), nullable=False)
    money_exchanged: Mapped[float] = mapped_column(Float(precision=53), nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_ledger_actor", "actor_id"),
        Index("ix_ledger_product", "product_id"),
        Index("ix_ledger_created_at", "created_at"),
    )
