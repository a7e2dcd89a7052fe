"""Shared pytest fixtures: app on in-memory SQLite, client, user factories."""
import pytest

from app import create_app
from config import TestingConfig
from extensions import get_auth_service
from models import db
from roles import assign_role

DEFAULT_PASSWORD = 'Sup3rSecret!'


@pytest.fixture
def app():
    """
    Fresh application per test

    No app context stays pushed, so every client request gets its own
    context (and its own session and flask.g) like in production.
    """
    application = create_app(TestingConfig)
    yield application

    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """
    Create a user directly through AuthService

    Returns a dict with id, email and password so nothing outlives the
    app context it was loaded in.
    """
    counter = {'n': 0}

    def _make_user(email=None, password=DEFAULT_PASSWORD, name='Test User',
                   roles=(), admin=False, active=True):
        counter['n'] += 1
        email = email or f'user{counter["n"]}@example.com'
        data = {'email': email, 'password': password, 'name': name}

        with app.app_context():
            service = get_auth_service()
            user = service.create_admin(data) if admin else service.register(data)
            for role in roles:
                assign_role(user.id, role, assigned_by=user.id)
            if not active:
                user.is_active = False
                db.session.commit()
            return {'id': user.id, 'email': user.email, 'password': password}

    return _make_user


@pytest.fixture
def login(client):
    """Log in through the API and return the token payload"""
    def _login(user):
        response = client.post('/auth/login', json={
            'email': user['email'],
            'password': user['password']
        })
        assert response.status_code == 200, response.get_json()
        return response.get_json()['data']

    return _login


@pytest.fixture
def auth_headers(login):
    """Authorization header for a user created by make_user"""
    def _auth_headers(user):
        return {'Authorization': f"Bearer {login(user)['access_token']}"}

    return _auth_headers


@pytest.fixture
def admin(make_user):
    return make_user(email='admin@example.com', name='Admin', roles=('admin',), admin=True)


@pytest.fixture
def project_manager(make_user):
    return make_user(email='pm@example.com', name='Project Manager', roles=('responsable_proyecto',))


@pytest.fixture
def task_manager(make_user):
    return make_user(email='worker@example.com', name='Worker', roles=('responsable_tarea',))
