"""
SQLAlchemy models for the catalog import system.

This module defines the catalog side of the database schema using
SQLAlchemy ORM, matching the schema defined in Alembic migrations.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON, Column, Integer, String, Text, Numeric, TIMESTAMP,
    Index, UniqueConstraint, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), 'postgresql')


def generate_uuid() -> str:
    """Generate a string UUID primary key."""
    return str(uuid.uuid4())


class Product(Base):
    """Represents a catalog product owned by a business."""

    __tablename__ = 'products'
    __table_args__ = (
        UniqueConstraint('business_id', 'sku', name='uq_products_business_sku'),
        Index('idx_products_business_barcode', 'business_id', 'primary_barcode'),
        Index('idx_products_business_name', 'business_id', 'name'),
        {'comment': 'Catalog products, one row per sellable item'}
    )

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        nullable=False
    )
    business_id = Column(
        String(36),
        nullable=False,
        index=True,
        comment='Owning business'
    )
    name = Column(
        String(255),
        nullable=False,
        comment='Display name'
    )
    sku = Column(
        String(64),
        nullable=False,
        comment='Stock keeping unit, unique per business'
    )
    primary_barcode = Column(
        String(64),
        nullable=True,
        comment='UPC/EAN/GTIN'
    )
    description = Column(Text, nullable=True)
    category_name = Column(String(255), nullable=True)
    brand = Column(String(255), nullable=True)
    selling_price = Column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal('0')
    )
    purchase_price = Column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal('0')
    )
    quantity = Column(Integer, nullable=False, default=0)
    tax_class = Column(String(50), nullable=False, default='standard')
    unit_of_measure = Column(String(50), nullable=False, default='each')
    weight = Column(Numeric(10, 3), nullable=True)
    weight_unit = Column(String(10), nullable=False, default='kg')
    tags = Column(JSONType, nullable=False, default=list)
    created_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )
    updated_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )

    def __repr__(self):
        return f"<Product(id='{self.id}', sku='{self.sku}', name='{self.name}')>"
