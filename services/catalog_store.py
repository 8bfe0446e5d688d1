"""
Catalog Store - the product persistence the import engine writes through.

``CatalogStore`` is the contract the executor and rollback manager rely on.
``SqlAlchemyCatalogStore`` implements it over the ``products`` table, one
short session per operation so it can be shared by worker threads.

Database errors are translated at this boundary:
    * connection-level failures -> CatalogUnavailableError (fatal for a run)
    * constraint violations     -> RowImportError (fails only that row)
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from backend.models.schema import Product
from services.duplicate_detector import CatalogEntry, CatalogIndex
from services.errors import CatalogUnavailableError, RowImportError

logger = logging.getLogger(__name__)

# Import field key -> Product column
FIELD_COLUMNS: Dict[str, str] = {
    'name': 'name',
    'sku': 'sku',
    'barcode': 'primary_barcode',
    'description': 'description',
    'categoryName': 'category_name',
    'brand': 'brand',
    'sellingPrice': 'selling_price',
    'purchasePrice': 'purchase_price',
    'quantity': 'quantity',
    'taxClass': 'tax_class',
    'unitOfMeasure': 'unit_of_measure',
    'weight': 'weight',
    'weightUnit': 'weight_unit',
    'tags': 'tags',
}

NUMERIC_COLUMNS = frozenset({'selling_price', 'purchase_price', 'weight'})


def to_json_value(column: str, value: Any) -> Any:
    """Make a column value safe to store in a JSON pre-image."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, list):
        return list(value)
    return value


def from_json_value(column: str, value: Any) -> Any:
    """Inverse of ``to_json_value``."""
    if value is not None and column in NUMERIC_COLUMNS:
        return Decimal(str(value))
    return value


class CatalogStore(ABC):
    """Operations the import engine needs from the product catalog."""

    @abstractmethod
    def build_index(self, business_id: str) -> CatalogIndex:
        """Snapshot of every product's identifying fields for a business."""

    @abstractmethod
    def find_by_sku(self, business_id: str, sku: str) -> Optional[CatalogEntry]:
        """Exact SKU lookup."""

    @abstractmethod
    def find_by_barcode(self, business_id: str, barcode: str) -> Optional[CatalogEntry]:
        """Exact barcode lookup."""

    @abstractmethod
    def find_by_name(self, business_id: str, name: str) -> Optional[CatalogEntry]:
        """Case-insensitive exact name lookup (smallest id on ties)."""

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[CatalogEntry]:
        """Lookup by id."""

    @abstractmethod
    def create_product(self, business_id: str, fields: Dict[str, Any]) -> CatalogEntry:
        """Insert a product; ``fields`` are Product column values."""

    @abstractmethod
    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Overwrite ``fields`` on a product.

        Returns:
            Pre-image: the previous values of exactly the overwritten
            columns, JSON-safe.
        """

    @abstractmethod
    def restore_product(self, product_id: str, snapshot: Dict[str, Any]) -> None:
        """Write a pre-image back."""

    @abstractmethod
    def delete_product(self, product_id: str) -> None:
        """Delete a product by id."""


def _entry(product: Product) -> CatalogEntry:
    return CatalogEntry(
        id=product.id,
        name=product.name,
        sku=product.sku,
        barcode=product.primary_barcode,
    )


class SqlAlchemyCatalogStore(CatalogStore):
    """CatalogStore over the ``products`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError, DisconnectionError) as exc:
            session.rollback()
            logger.error(f"Catalog store unreachable: {exc}")
            raise CatalogUnavailableError(f"Catalog store unavailable: {exc.__class__.__name__}") from exc
        except IntegrityError as exc:
            session.rollback()
            raise RowImportError(f"Catalog rejected the change: {exc.orig}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def build_index(self, business_id: str) -> CatalogIndex:
        with self._session() as session:
            rows = session.execute(
                select(Product.id, Product.name, Product.sku, Product.primary_barcode)
                .where(Product.business_id == business_id)
            ).all()
        index = CatalogIndex(
            CatalogEntry(id=row.id, name=row.name, sku=row.sku, barcode=row.primary_barcode)
            for row in rows
        )
        logger.debug(f"Built catalog index for business {business_id}: {len(rows)} products")
        return index

    def _first(self, session: Session, *criteria) -> Optional[CatalogEntry]:
        product = session.execute(
            select(Product).where(*criteria).order_by(Product.id).limit(1)
        ).scalars().first()
        return _entry(product) if product else None

    def find_by_sku(self, business_id: str, sku: str) -> Optional[CatalogEntry]:
        with self._session() as session:
            return self._first(session, Product.business_id == business_id, Product.sku == sku)

    def find_by_barcode(self, business_id: str, barcode: str) -> Optional[CatalogEntry]:
        with self._session() as session:
            return self._first(
                session, Product.business_id == business_id, Product.primary_barcode == barcode
            )

    def find_by_name(self, business_id: str, name: str) -> Optional[CatalogEntry]:
        with self._session() as session:
            return self._first(
                session,
                Product.business_id == business_id,
                func.lower(Product.name) == name.strip().lower(),
            )

    def get_product(self, product_id: str) -> Optional[CatalogEntry]:
        with self._session() as session:
            product = session.get(Product, product_id)
            return _entry(product) if product else None

    def create_product(self, business_id: str, fields: Dict[str, Any]) -> CatalogEntry:
        with self._session() as session:
            product = Product(business_id=business_id, **fields)
            session.add(product)
            session.flush()
            entry = _entry(product)
        logger.debug(f"Created product {entry.id} ({entry.sku})")
        return entry

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        with self._session() as session:
            product = session.get(Product, product_id, with_for_update=True)
            if product is None:
                raise RowImportError(f"Product {product_id} no longer exists")
            pre_image = {
                column: to_json_value(column, getattr(product, column)) for column in fields
            }
            for column, value in fields.items():
                setattr(product, column, value)
            product.updated_at = datetime.utcnow()
        logger.debug(f"Updated product {product_id}: {sorted(fields)}")
        return pre_image

    def restore_product(self, product_id: str, snapshot: Dict[str, Any]) -> None:
        with self._session() as session:
            product = session.get(Product, product_id, with_for_update=True)
            if product is None:
                raise RowImportError(f"Product {product_id} no longer exists")
            for column, value in snapshot.items():
                setattr(product, column, from_json_value(column, value))
            product.updated_at = datetime.utcnow()

    def delete_product(self, product_id: str) -> None:
        with self._session() as session:
            product = session.get(Product, product_id)
            if product is None:
                raise RowImportError(f"Product {product_id} no longer exists")
            session.delete(product)
