"""
Pytest configuration and fixtures for catalog import tests.
"""

import os
import tempfile
import threading
import time
import uuid

# Must be set before api/ or tasks/ are imported: both build their
# database engines and log handlers at import time.
_TMP_DIR = tempfile.mkdtemp(prefix='catalog_import_tests_')
os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('TEMP_UPLOAD_DIR', os.path.join(_TMP_DIR, 'uploads'))
os.environ.setdefault('LOG_FILE', os.path.join(_TMP_DIR, 'test.log'))

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.models.schema import Base, Product
from services.cancellation import LocalCancellationRegistry
from services.catalog_store import CatalogStore, to_json_value, from_json_value
from services.duplicate_detector import CatalogEntry, CatalogIndex
from services.errors import CatalogUnavailableError, RowImportError
from services.import_engine import ImportEngine

# Load environment
load_dotenv()

# In-memory SQLite unless a real database is configured
TEST_DATABASE_URL = os.getenv('TEST_DATABASE_URL', 'sqlite://')


@pytest.fixture
def db_engine():
    """Create a fresh test database engine per test."""
    if TEST_DATABASE_URL.startswith('sqlite'):
        eng = create_engine(
            TEST_DATABASE_URL,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    else:
        eng = create_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """A database session for direct assertions."""
    sess = session_factory()
    yield sess
    sess.close()


@pytest.fixture
def make_product(session_factory):
    """Insert a product straight into the catalog table."""
    def _make(business_id='biz-1', name='Widget', sku=None, barcode=None, **fields):
        with session_factory() as sess:
            product = Product(
                business_id=business_id,
                name=name,
                sku=sku or f"SKU-{uuid.uuid4().hex[:8].upper()}",
                primary_barcode=barcode,
                **fields
            )
            sess.add(product)
            sess.commit()
            sess.refresh(product)
            sess.expunge(product)
            return product
    return _make


class MemoryCatalogStore(CatalogStore):
    """
    Thread-safe in-memory catalog with fault injection.

    Args:
        fail_names: Product names whose create/update raises RowImportError.
        unavailable_after: Number of successful writes after which every
            call raises CatalogUnavailableError.
        delay: Seconds to sleep inside lookups and writes, to widen race
            windows in concurrency tests.
    """

    def __init__(self, fail_names=(), unavailable_after=None, delay=0.0):
        self.products = {}
        self.fail_names = set(fail_names)
        self.unavailable_after = unavailable_after
        self.delay = delay
        self.writes = 0
        self.deleted = []
        self._lock = threading.Lock()
        self._counter = 0

    def _check_available(self):
        if self.unavailable_after is not None and self.writes >= self.unavailable_after:
            raise CatalogUnavailableError("Catalog store unavailable: OperationalError")

    def _pause(self):
        if self.delay:
            time.sleep(self.delay)

    def add(self, business_id, name, sku, barcode=None, **fields):
        """Seed a product; returns its id."""
        with self._lock:
            self._counter += 1
            product_id = f"p{self._counter:05d}"
            self.products[product_id] = dict(
                id=product_id, business_id=business_id, name=name, sku=sku,
                primary_barcode=barcode, **fields
            )
            return product_id

    @staticmethod
    def _entry(product):
        return CatalogEntry(
            id=product['id'], name=product['name'], sku=product['sku'],
            barcode=product.get('primary_barcode'),
        )

    def _find(self, business_id, predicate):
        self._check_available()
        self._pause()
        with self._lock:
            matches = sorted(
                (p for p in self.products.values()
                 if p['business_id'] == business_id and predicate(p)),
                key=lambda p: p['id'],
            )
        return self._entry(matches[0]) if matches else None

    def build_index(self, business_id):
        self._check_available()
        with self._lock:
            return CatalogIndex(
                self._entry(p) for p in self.products.values() if p['business_id'] == business_id
            )

    def find_by_sku(self, business_id, sku):
        return self._find(business_id, lambda p: p['sku'] == sku)

    def find_by_barcode(self, business_id, barcode):
        return self._find(business_id, lambda p: p.get('primary_barcode') == barcode)

    def find_by_name(self, business_id, name):
        return self._find(business_id, lambda p: p['name'].lower() == name.strip().lower())

    def get_product(self, product_id):
        with self._lock:
            product = self.products.get(product_id)
        return self._entry(product) if product else None

    def create_product(self, business_id, fields):
        self._check_available()
        if fields.get('name') in self.fail_names:
            raise RowImportError(f"Injected failure for {fields.get('name')}")
        self._pause()
        with self._lock:
            if any(p['business_id'] == business_id and p['sku'] == fields['sku']
                   for p in self.products.values()):
                raise RowImportError(f"Duplicate SKU {fields['sku']}")
            self._counter += 1
            product_id = f"p{self._counter:05d}"
            self.products[product_id] = dict(id=product_id, business_id=business_id, **fields)
            self.writes += 1
            return self._entry(self.products[product_id])

    def update_product(self, product_id, fields):
        self._check_available()
        if fields.get('name') in self.fail_names:
            raise RowImportError(f"Injected failure for {fields.get('name')}")
        self._pause()
        with self._lock:
            product = self.products.get(product_id)
            if product is None:
                raise RowImportError(f"Product {product_id} no longer exists")
            pre_image = {column: to_json_value(column, product.get(column)) for column in fields}
            product.update(fields)
            self.writes += 1
            return pre_image

    def restore_product(self, product_id, snapshot):
        with self._lock:
            product = self.products.get(product_id)
            if product is None:
                raise RowImportError(f"Product {product_id} no longer exists")
            for column, value in snapshot.items():
                product[column] = from_json_value(column, value)

    def delete_product(self, product_id):
        with self._lock:
            if self.products.pop(product_id, None) is None:
                raise RowImportError(f"Product {product_id} no longer exists")
            self.deleted.append(product_id)


@pytest.fixture
def memory_store():
    return MemoryCatalogStore()


@pytest.fixture
def import_engine(session_factory):
    """ImportEngine on the test database with the SQL catalog store."""
    return ImportEngine(session_factory, cancellation=LocalCancellationRegistry())


@pytest.fixture
def memory_engine(session_factory, memory_store):
    """ImportEngine whose catalog lives in a MemoryCatalogStore."""
    return ImportEngine(
        session_factory, catalog_store=memory_store, cancellation=LocalCancellationRegistry()
    )


def csv_bytes(*lines):
    """Join CSV lines into upload bytes."""
    return ('\n'.join(lines) + '\n').encode('utf-8')
