"""
Tests for the Celery import tasks, run eagerly against the test database.
"""

import json
import os
from datetime import datetime, timedelta

import pytest

import tasks.import_tasks as import_tasks
from api.config import settings
from backend.models.job import ImportJob
from conftest import csv_bytes
from services.cancellation import RedisCancellationRegistry
from services.file_decoder import decode_file
from services.import_engine import ImportEngine
from services.storage_service import StorageService
from tasks.celery_app import celery_app


class FakeRedis:
    """The handful of Redis commands the tasks use."""

    def __init__(self):
        self.values = {}

    def setex(self, key, ttl, value):
        self.values[key] = value

    def get(self, key):
        return self.values.get(key)

    def exists(self, key):
        return int(key in self.values)

    def delete(self, key):
        self.values.pop(key, None)


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(import_tasks, 'redis_client', client)
    return client


@pytest.fixture
def worker_env(session_factory, fake_redis, tmp_path, monkeypatch):
    upload_dir = str(tmp_path / 'uploads')
    monkeypatch.setattr(import_tasks, 'SessionLocal', session_factory)
    monkeypatch.setattr(import_tasks, 'TEMP_UPLOAD_DIR', upload_dir)
    return StorageService(upload_dir=upload_dir)


def started_job(session_factory, storage, content):
    engine = ImportEngine(session_factory)
    file_path = storage.save_upload(content, 'products.csv')
    report = engine.validate('biz-1', 'products.csv', 'csv', len(content),
                             read_rows=lambda: decode_file(content, 'csv'), file_path=file_path)
    engine.start_processing(report.job_id)
    return engine, report.job_id, file_path


class TestProcessImportJob:
    """Test the worker task."""

    def test_applies_rows_and_publishes_progress(self, session_factory, worker_env, fake_redis):
        engine, job_id, file_path = started_job(
            session_factory, worker_env, csv_bytes('Product,Price', 'Widget,9.99', 'Gadget,x')
        )

        outcome = import_tasks.process_import_job.apply(args=[job_id]).get()

        assert outcome['status'] == 'completed'
        assert outcome['summary'] == {'totalRows': 2, 'created': 1, 'updated': 0, 'skipped': 0, 'failed': 1}
        assert not os.path.exists(file_path)

        progress = json.loads(fake_redis.values[f'job_progress:{job_id}'])
        assert progress['stage'] == 'completed'
        assert progress['percent'] == 100

    def test_missing_upload_fails_job(self, session_factory, worker_env):
        engine, job_id, file_path = started_job(
            session_factory, worker_env, csv_bytes('Product,Price', 'Widget,9.99')
        )
        os.remove(file_path)

        outcome = import_tasks.process_import_job.apply(args=[job_id]).get()

        assert outcome['status'] == 'failed'
        assert 'Could not read stored file' in outcome['error_message']
        assert engine.get_job(job_id).processed_rows == 0

    def test_unexpected_error_fails_job_and_reraises(self, session_factory, worker_env, fake_redis, monkeypatch):
        engine, job_id, file_path = started_job(
            session_factory, worker_env, csv_bytes('Product,Price', 'Widget,9.99')
        )

        def broken_decode(source, file_type):
            raise RuntimeError('xml parse error')

        monkeypatch.setattr(import_tasks, 'decode_file', broken_decode)

        with pytest.raises(RuntimeError):
            import_tasks.process_import_job.apply(args=[job_id], throw=True)

        job = engine.get_job(job_id)
        assert job.status == 'failed'
        assert job.error_message == 'Import failed: xml parse error'
        assert json.loads(fake_redis.values[f'job_progress:{job_id}'])['stage'] == 'failed'
        assert not os.path.exists(file_path)

    def test_cancel_flag_in_redis_stops_job(self, session_factory, worker_env, fake_redis):
        engine, job_id, _ = started_job(
            session_factory, worker_env, csv_bytes('Product,Price', 'Widget,9.99', 'Gadget,1.50')
        )
        RedisCancellationRegistry(fake_redis).request(job_id)

        outcome = import_tasks.process_import_job.apply(args=[job_id]).get()

        assert outcome['status'] == 'cancelled'
        assert outcome['summary']['created'] == 0
        assert f'import_cancel:{job_id}' not in fake_redis.values


class TestCleanupOldJobs:
    """Test the periodic cleanup task."""

    def test_deletes_only_old_finished_jobs(self, session_factory, session, worker_env):
        old = datetime.utcnow() - timedelta(days=40)
        common = dict(business_id='biz-1', file_name='products.csv', file_type='csv', file_size=1)
        session.add_all([
            ImportJob(status='completed', completed_at=old, **common),
            ImportJob(status='completed', completed_at=datetime.utcnow(), **common),
            ImportJob(status='validated', **common),
        ])
        session.commit()

        stats = import_tasks.cleanup_old_jobs(30)

        assert stats['deleted_jobs'] == 1
        assert stats['deleted_files'] == 0
        with session_factory() as check:
            assert check.query(ImportJob).count() == 2

    def test_default_retention_comes_from_settings(self, session_factory, session, worker_env, monkeypatch):
        monkeypatch.setattr(settings, 'JOB_RETENTION_DAYS', 10)
        common = dict(business_id='biz-1', file_name='products.csv', file_type='csv', file_size=1)
        session.add(ImportJob(status='failed', completed_at=datetime.utcnow() - timedelta(days=15), **common))
        session.commit()

        stats = import_tasks.cleanup_old_jobs()

        assert stats['deleted_jobs'] == 1

    def test_beat_schedule_uses_configured_retention(self):
        schedule = celery_app.conf.beat_schedule['cleanup-old-jobs']
        assert schedule['kwargs'] == {'days_to_keep': settings.JOB_RETENTION_DAYS}
