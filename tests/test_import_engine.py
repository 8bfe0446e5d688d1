"""
Tests for the import engine: the full job lifecycle from upload to rollback.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from backend.models.job import ImportJobStatus
from backend.models.schema import Product
from conftest import MemoryCatalogStore, csv_bytes
from services.cancellation import LocalCancellationRegistry
from services.errors import (
    FileDecodeError, InvalidTransition, JobConflictError, JobNotFoundError,
    MappingError, RollbackNotAllowedError, StructuralImportError
)
from services.file_decoder import decode_file
from services.import_engine import ImportEngine, generate_template

BIZ = 'biz-1'


def validate_csv(engine, content, business_id=BIZ, mapping=None):
    return engine.validate(
        business_id=business_id,
        file_name='products.csv',
        file_type='csv',
        file_size=len(content),
        read_rows=lambda: decode_file(content, 'csv'),
        column_mapping=mapping,
    )


def run_import(engine, content, duplicate_action='skip', business_id=BIZ):
    report = validate_csv(engine, content, business_id)
    engine.start_processing(report.job_id, duplicate_action=duplicate_action)
    return engine.execute(report.job_id, decode_file(content, 'csv'))


def numbered_file(count, missing_price_at=None):
    lines = ['Product,SKU,Price,Qty']
    for n in range(1, count + 1):
        price = '' if n == missing_price_at else f"{n}.50"
        lines.append(f"Item {n},IT-{n:03d},{price},{n}")
    return csv_bytes(*lines)


class TestValidate:
    """Test the validation phase."""

    def test_widget_file(self, import_engine):
        report = validate_csv(import_engine, csv_bytes('Product,Price,Qty', 'Widget,9.99,5'))

        assert report.suggested_mapping == {'Product': 'name', 'Price': 'sellingPrice', 'Qty': 'quantity'}
        assert report.column_mapping == report.suggested_mapping
        assert report.sample_data == [{'rowNumber': 2, 'name': 'Widget', 'sellingPrice': '9.99', 'quantity': '5'}]
        assert report.total_rows == 1

        job = import_engine.get_job(report.job_id)
        assert job.status == ImportJobStatus.VALIDATED.value
        assert job.total_rows == 1
        assert job.valid_rows == 1
        assert job.column_mapping == report.column_mapping

    def test_row_errors_still_validate(self, import_engine):
        report = validate_csv(import_engine, csv_bytes('Product,Price', 'Widget,9.99', 'Gadget,cheap'))
        assert not report.validation.is_valid
        job = import_engine.get_job(report.job_id)
        assert job.status == ImportJobStatus.VALIDATED.value
        assert job.errors == [{'row': 3, 'field': 'sellingPrice',
                               'message': 'sellingPrice must be a valid number', 'value': 'cheap'}]

    def test_row_numbers_survive_blank_lines(self, import_engine):
        """A blank line still counts when numbering the rows after it."""
        content = csv_bytes('Product,Price', 'Alpha,1.00', ',', 'Bravo,')
        report = validate_csv(import_engine, content)

        assert [row['rowNumber'] for row in report.sample_data] == [2, 4]
        assert [(e.row, e.field) for e in report.validation.errors] == [(4, 'sellingPrice')]

        import_engine.start_processing(report.job_id)
        job = import_engine.execute(report.job_id, decode_file(content, 'csv'))
        assert [(r['row'], r['status']) for r in job.results] == [(2, 'created'), (4, 'failed')]

    def test_sample_data_is_limited(self, session_factory):
        engine = ImportEngine(session_factory, sample_rows=3)
        report = validate_csv(engine, numbered_file(10))
        assert [row['rowNumber'] for row in report.sample_data] == [2, 3, 4]

    def test_missing_required_mapping_fails_job(self, import_engine):
        with pytest.raises(MappingError) as exc_info:
            validate_csv(import_engine, csv_bytes('Product,Colour', 'Widget,Red'))

        exc = exc_info.value
        assert exc.missing_fields == ['sellingPrice']
        job = import_engine.get_job(exc.job_id)
        assert job.status == ImportJobStatus.FAILED.value
        assert 'sellingPrice' in job.error_message
        assert job.processed_rows == 0

    def test_unreadable_file_fails_job(self, import_engine):
        with pytest.raises(FileDecodeError) as exc_info:
            validate_csv(import_engine, csv_bytes('Product,Price'))
        job = import_engine.get_job(exc_info.value.job_id)
        assert job.status == ImportJobStatus.FAILED.value

    def test_row_limit_is_structural(self, session_factory):
        engine = ImportEngine(session_factory, max_rows=5)
        with pytest.raises(StructuralImportError, match='at most 5'):
            validate_csv(engine, numbered_file(6))

    def test_unexpected_error_fails_job_and_propagates(self, import_engine):
        def explode():
            raise RuntimeError('disk on fire')

        with pytest.raises(RuntimeError):
            import_engine.validate(BIZ, 'products.csv', 'csv', 10, read_rows=explode)

        jobs = import_engine.list_history(BIZ)['jobs']
        assert jobs[0]['status'] == 'failed'
        assert jobs[0]['errorMessage'] == 'Validation failed unexpectedly'

    def test_validation_is_repeatable(self, import_engine):
        content = numbered_file(20, missing_price_at=4)
        first = validate_csv(import_engine, content)
        second = validate_csv(import_engine, content)
        assert first.validation == second.validation

    def test_template_validates_cleanly(self, import_engine):
        content = generate_template().encode('utf-8')
        report = validate_csv(import_engine, content)
        assert len(report.column_mapping) == 14
        assert report.validation.is_valid


class TestExecute:
    """Test processing end to end."""

    def test_widget_is_created(self, import_engine, session):
        job = run_import(import_engine, csv_bytes('Product,Price,Qty', 'Widget,9.99,5'))

        assert job.status == ImportJobStatus.COMPLETED.value
        assert job.created_count == 1
        assert job.processed_rows == 1
        assert job.started_at is not None
        assert job.completed_at is not None

        product = session.query(Product).filter_by(business_id=BIZ, name='Widget').one()
        assert product.selling_price == Decimal('9.99')
        assert product.quantity == 5
        assert product.sku.startswith('SKU-')
        assert job.results == [{'row': 2, 'status': 'created', 'productId': product.id,
                                'sku': product.sku, 'name': 'Widget'}]

    def test_bad_row_is_isolated(self, import_engine):
        """Ten rows, the fifth lacks its price: one failure, nine products."""
        job = run_import(import_engine, numbered_file(10, missing_price_at=5))

        assert job.status == ImportJobStatus.COMPLETED.value
        assert job.processed_rows == 10
        assert job.failed_count == 1
        assert job.created_count == 9
        failed = [r for r in job.results if r['status'] == 'failed']
        assert failed == [{'row': 6, 'status': 'failed', 'sku': 'IT-005', 'name': 'Item 5',
                           'error': 'sellingPrice is required'}]
        assert [r['row'] for r in job.results] == list(range(2, 12))

    def test_counters_consistent_at_every_update(self, session_factory):
        store = MemoryCatalogStore(fail_names={'Item 3'})
        store.add(BIZ, 'Item 2', 'IT-002')
        engine = ImportEngine(session_factory, catalog_store=store)
        observed = []

        def on_progress(stage, percent, message):
            if stage == 'processing' and current['job_id']:
                job = engine.get_job(current['job_id'])
                observed.append(job.counters_consistent())

        current = {'job_id': None}
        engine.progress_callback = on_progress
        content = numbered_file(12, missing_price_at=7)
        report = validate_csv(engine, content)
        current['job_id'] = report.job_id
        engine.start_processing(report.job_id)
        job = engine.execute(report.job_id, decode_file(content, 'csv'))

        assert len(observed) == 13
        assert all(observed)
        assert job.summary() == {'totalRows': 12, 'created': 9, 'updated': 0, 'skipped': 1, 'failed': 2}

    def test_update_policy_persists_pre_images(self, import_engine, make_product):
        existing = make_product(name='Old Name', sku='IT-001', quantity=3)
        job = run_import(import_engine, numbered_file(2), duplicate_action='update')

        assert job.updated_count == 1
        assert job.created_count == 1
        pre_image = job.pre_images['2']
        assert set(job.pre_images) == {'2'}
        assert pre_image['name'] == 'Old Name'
        assert pre_image['quantity'] == 3
        assert Decimal(pre_image['selling_price']) == 0
        assert job.results[0]['productId'] == existing.id

    def test_mapping_confirmed_at_start_is_used(self, import_engine, session):
        content = csv_bytes('Title,Retail,Cost', 'Widget,9.99,4.00')
        report = validate_csv(import_engine, content,
                              mapping={'Title': 'name', 'Retail': 'sellingPrice'})
        import_engine.start_processing(
            report.job_id, {'Title': 'name', 'Retail': 'sellingPrice', 'Cost': 'purchasePrice'}
        )
        job = import_engine.execute(report.job_id, decode_file(content, 'csv'))

        assert job.status == ImportJobStatus.COMPLETED.value
        product = session.query(Product).filter_by(business_id=BIZ).one()
        assert product.purchase_price == Decimal('4.00')

    def test_catalog_outage_fails_job_keeping_committed_rows(self, session_factory):
        store = MemoryCatalogStore(unavailable_after=3)
        engine = ImportEngine(session_factory, catalog_store=store)
        report = validate_csv(engine, numbered_file(5))
        engine.start_processing(report.job_id)

        # build_index happens before any write, so the outage hits mid-run
        job = engine.execute(report.job_id, decode_file(numbered_file(5), 'csv'))

        assert job.status == ImportJobStatus.FAILED.value
        assert job.error_message.startswith('Import aborted after 3 of 5 rows')
        assert job.processed_rows == 3
        assert job.counters_consistent()
        assert len(store.products) == 3

    def test_execute_requires_processing(self, import_engine):
        report = validate_csv(import_engine, numbered_file(1))
        with pytest.raises(InvalidTransition):
            import_engine.execute(report.job_id, decode_file(numbered_file(1), 'csv'))

    def test_structural_error_at_execute_fails_job(self, session_factory):
        engine = ImportEngine(session_factory, max_rows=3)
        report = validate_csv(engine, numbered_file(3))
        engine.start_processing(report.job_id)
        job = engine.execute(report.job_id, decode_file(numbered_file(4), 'csv'))
        assert job.status == ImportJobStatus.FAILED.value
        assert job.processed_rows == 0

    def test_abandon_fails_processing_job(self, import_engine):
        report = validate_csv(import_engine, numbered_file(1))
        import_engine.start_processing(report.job_id)
        job = import_engine.abandon(report.job_id, 'Could not queue import')
        assert job.status == ImportJobStatus.FAILED.value
        assert job.error_message == 'Could not queue import'


class TestStartProcessing:
    """Test the single-writer rule and start checks."""

    def test_second_start_conflicts(self, import_engine):
        report = validate_csv(import_engine, numbered_file(2))
        job = import_engine.start_processing(report.job_id, duplicate_action='create_new')
        assert job.status == ImportJobStatus.PROCESSING.value
        assert job.duplicate_action == 'create_new'

        with pytest.raises(JobConflictError):
            import_engine.start_processing(report.job_id)

    def test_failed_job_cannot_start(self, import_engine):
        with pytest.raises(MappingError) as exc_info:
            validate_csv(import_engine, csv_bytes('Product', 'Widget'))
        with pytest.raises(InvalidTransition):
            import_engine.start_processing(exc_info.value.job_id, {'Product': 'name', 'Price': 'sellingPrice'})

    def test_unusable_mapping_keeps_job_validated(self, import_engine):
        report = validate_csv(import_engine, numbered_file(2))
        with pytest.raises(MappingError):
            import_engine.start_processing(report.job_id, {'Product': 'name'})
        assert import_engine.get_job(report.job_id).status == ImportJobStatus.VALIDATED.value

    def test_other_business_cannot_start(self, import_engine):
        report = validate_csv(import_engine, numbered_file(2))
        with pytest.raises(JobNotFoundError):
            import_engine.start_processing(report.job_id, business_id='biz-2')

    def test_start_while_validating_conflicts_before_mapping_checks(self, import_engine):
        job = import_engine.jobs.create(business_id=BIZ, status=ImportJobStatus.VALIDATING.value,
                                        file_name='products.csv', file_type='csv', file_size=1)
        with pytest.raises(JobConflictError):
            import_engine.start_processing(job.id)
        with pytest.raises(JobConflictError):
            import_engine.start_processing(job.id, {'Product': 'name'})
        assert import_engine.get_job(job.id).status == ImportJobStatus.VALIDATING.value


class TestCancel:
    """Test cooperative cancellation through the engine."""

    def test_cancel_after_fifty_of_hundred_rows(self, session_factory):
        engine = ImportEngine(session_factory, catalog_store=MemoryCatalogStore(),
                              cancellation=LocalCancellationRegistry())
        state = {'job_id': None}

        def on_progress(stage, percent, message):
            if message == 'Processed 50 of 100 rows':
                engine.cancel(state['job_id'])

        engine.progress_callback = on_progress
        content = numbered_file(100)
        report = validate_csv(engine, content)
        state['job_id'] = report.job_id
        engine.start_processing(report.job_id)
        job = engine.execute(report.job_id, decode_file(content, 'csv'))

        assert job.status == ImportJobStatus.CANCELLED.value
        assert 50 <= job.processed_rows <= 50 + engine.max_workers
        assert job.counters_consistent()
        recorded = [r['row'] for r in job.results]
        assert recorded == list(range(2, 2 + job.processed_rows))
        assert 101 not in recorded

    def test_cancel_requires_processing(self, import_engine):
        report = validate_csv(import_engine, numbered_file(1))
        with pytest.raises(InvalidTransition):
            import_engine.cancel(report.job_id)

    def test_cancel_signal_is_cleared_after_run(self, memory_engine):
        report = validate_csv(memory_engine, numbered_file(3))
        memory_engine.start_processing(report.job_id)
        memory_engine.cancel(report.job_id)
        job = memory_engine.execute(report.job_id, decode_file(numbered_file(3), 'csv'))

        assert job.status == ImportJobStatus.CANCELLED.value
        assert job.processed_rows == 0
        assert not memory_engine.cancellation.token_for(report.job_id).is_cancelled()


class TestRollback:
    """Test reverting a finished import."""

    def test_rollback_three_created_two_updated(self, import_engine, make_product, session):
        first = make_product(name='Existing One', sku='IT-004', quantity=1)
        second = make_product(name='Existing Two', sku='IT-005', quantity=2)
        job = run_import(import_engine, numbered_file(5), duplicate_action='update')
        assert (job.created_count, job.updated_count) == (3, 2)

        job = import_engine.rollback(job.id)

        assert job.status == ImportJobStatus.ROLLED_BACK.value
        assert job.rollback_at is not None
        assert job.error_message is None
        products = {p.sku: p for p in session.query(Product).filter_by(business_id=BIZ)}
        assert set(products) == {'IT-004', 'IT-005'}
        assert products['IT-004'].name == 'Existing One'
        assert products['IT-004'].quantity == 1
        assert products['IT-005'].quantity == 2
        assert products['IT-005'].selling_price == Decimal('0')
        assert products['IT-004'].id == first.id
        assert products['IT-005'].id == second.id

    def test_partial_rollback_names_rows(self, import_engine, session):
        job = run_import(import_engine, numbered_file(3))
        session.query(Product).filter_by(sku='IT-002').delete()
        session.commit()

        job = import_engine.rollback(job.id)

        assert job.status == ImportJobStatus.ROLLED_BACK.value
        assert job.error_message == 'Rollback incomplete: rows 3 could not be reverted'
        assert session.query(Product).filter_by(business_id=BIZ).count() == 0

    def test_cancelled_job_can_be_rolled_back(self, session_factory):
        store = MemoryCatalogStore()
        engine = ImportEngine(session_factory, catalog_store=store)
        state = {}

        def on_progress(stage, percent, message):
            if message == 'Processed 2 of 6 rows':
                engine.cancel(state['job_id'])

        engine.progress_callback = on_progress
        report = validate_csv(engine, numbered_file(6))
        state['job_id'] = report.job_id
        engine.start_processing(report.job_id)
        engine.execute(report.job_id, decode_file(numbered_file(6), 'csv'))

        job = engine.rollback(report.job_id)
        assert job.status == ImportJobStatus.ROLLED_BACK.value
        assert store.products == {}

    def test_rollback_twice_is_refused(self, import_engine):
        job = run_import(import_engine, numbered_file(1))
        import_engine.rollback(job.id)
        with pytest.raises(InvalidTransition):
            import_engine.rollback(job.id)

    def test_nothing_committed(self, import_engine, make_product):
        make_product(name='Item 1', sku='IT-001')
        job = run_import(import_engine, numbered_file(1), duplicate_action='skip')
        assert job.skipped_count == 1
        with pytest.raises(RollbackNotAllowedError):
            import_engine.rollback(job.id)

    def test_window_has_passed(self, import_engine):
        job = run_import(import_engine, numbered_file(1))
        with pytest.raises(RollbackNotAllowedError, match='window'):
            import_engine.rollback(job.id, now=job.completed_at + timedelta(hours=25))

    def test_inside_window(self, import_engine):
        job = run_import(import_engine, numbered_file(1))
        job = import_engine.rollback(job.id, now=job.completed_at + timedelta(hours=23))
        assert job.status == ImportJobStatus.ROLLED_BACK.value

    def test_validated_job_cannot_roll_back(self, import_engine):
        report = validate_csv(import_engine, numbered_file(1))
        with pytest.raises(InvalidTransition):
            import_engine.rollback(report.job_id)

    def test_running_job_conflicts(self, import_engine):
        report = validate_csv(import_engine, numbered_file(1))
        import_engine.start_processing(report.job_id)
        with pytest.raises(JobConflictError):
            import_engine.rollback(report.job_id)


class TestQueries:
    """Test duplicate checks, job lookup and history."""

    def test_check_duplicates(self, import_engine, make_product):
        make_product(name='Item 2', sku='OTHER-1')
        make_product(name='Something', sku='IT-003')
        decoded = decode_file(numbered_file(4), 'csv')

        result = import_engine.check_duplicates(BIZ, decoded.headers, decoded.rows)

        assert result.to_dict()['duplicateCount'] == 2
        assert [(d.row, d.match_field) for d in result.duplicates] == [(3, 'name'), (4, 'sku')]

    def test_check_duplicates_is_business_scoped(self, import_engine, make_product):
        make_product(business_id='biz-2', name='Item 1', sku='IT-001')
        decoded = decode_file(numbered_file(1), 'csv')
        assert import_engine.check_duplicates(BIZ, decoded.headers, decoded.rows).duplicate_count == 0

    def test_get_job_is_business_scoped(self, import_engine):
        report = validate_csv(import_engine, numbered_file(1))
        assert import_engine.get_job(report.job_id, BIZ).id == report.job_id
        with pytest.raises(JobNotFoundError):
            import_engine.get_job(report.job_id, 'biz-2')

    def test_history_pages(self, import_engine):
        for _ in range(5):
            validate_csv(import_engine, numbered_file(1))
        validate_csv(import_engine, numbered_file(1), business_id='biz-2')

        history = import_engine.list_history(BIZ, page=2, limit=2)

        assert history['total'] == 5
        assert history['totalPages'] == 3
        assert history['page'] == 2
        assert len(history['jobs']) == 2
        assert all(job['businessId'] == BIZ for job in history['jobs'])
