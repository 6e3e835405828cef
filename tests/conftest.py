from datetime import datetime, timedelta
from unittest.mock import MagicMock

import jwt
import pytest

from app import create_app
from core.database_models import Profile, UserRole, db as _db


@pytest.fixture
def aws_clients(monkeypatch):
    """boto3 clients handed out by service name"""
    ses = MagicMock(name='ses')
    ses.send_raw_email.return_value = {'MessageId': 'ses-message-1'}
    s3 = MagicMock(name='s3')
    s3.generate_presigned_url.return_value = 'https://acct123.r2.cloudflarestorage.com/signed'
    clients = {'ses': ses, 's3': s3}

    monkeypatch.setattr('boto3.client', lambda service, *args, **kwargs: clients[service])
    return clients


@pytest.fixture
def app(aws_clients):
    app = create_app('testing')
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


def _make_token(user_id, email=None, secret='testing-jwt-secret', expires_in=3600):
    claims = {
        'sub': user_id,
        'email': email,
        'aud': 'authenticated',
        'exp': datetime.utcnow() + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, secret, algorithm='HS256')


@pytest.fixture
def auth_headers():
    def _headers(user_id, email=None):
        return {'Authorization': f"Bearer {_make_token(user_id, email)}"}
    return _headers


@pytest.fixture
def user(db):
    profile = Profile(id='user-1', email='member@example.com', first_name='Mia', username='mia')
    db.session.add(profile)
    db.session.commit()
    return profile


@pytest.fixture
def admin(db):
    profile = Profile(id='admin-1', email='admin@example.com', first_name='Ada')
    db.session.add(profile)
    db.session.add(UserRole(user_id='admin-1', role='admin'))
    db.session.commit()
    return profile


@pytest.fixture
def admin_headers(admin, auth_headers):
    return auth_headers(admin.id, admin.email)


@pytest.fixture
def user_headers(user, auth_headers):
    return auth_headers(user.id, user.email)


@pytest.fixture
def make_token():
    return _make_token
