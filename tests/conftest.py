from datetime import datetime, timezone

import pytest

from app import create_app
from directory import LocalDirectory

NOW = datetime(2025, 11, 3, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def directory(tmp_path):
    return LocalDirectory(str(tmp_path / 'data'), clock=lambda: NOW)


@pytest.fixture
def app(directory, tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'DATA_DIR': str(tmp_path / 'data'),
        'CLOCK': lambda: NOW,
    }, directory=directory)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
