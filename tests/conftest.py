"""
Pytest configuration and fixtures for Gigline backend tests
"""
import os
from datetime import datetime

import pytest

from auth import generate_token
from extensions import socketio
from models import db, User, Event
from server import create_app
from services import envelopes


@pytest.fixture(scope='function')
def app():
    """Create a fresh application (and in-memory database) per test"""
    os.environ['FLASK_ENV'] = 'testing'
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture
def presence(app):
    return app.extensions['presence']


def _create_user(name, role):
    user = User(name=name, role=role)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def organizer(app):
    return _create_user('Olivia Organizer', 'organizer')


@pytest.fixture
def professional(app):
    return _create_user('Pat Photographer', 'professional')


@pytest.fixture
def other_professional(app):
    return _create_user('Cam Caterer', 'professional')


@pytest.fixture
def event(app, organizer):
    """An event owned by the organizer fixture"""
    event = Event(
        organizer_id=organizer.id,
        title='Summer Gala',
        start_time=datetime(2030, 6, 1, 18, 0),
        location='Harbor Hall',
        budget=12000,
    )
    db.session.add(event)
    db.session.commit()
    return event


def _headers(user):
    return {
        'Authorization': f'Bearer {generate_token(user.id)}',
        'Content-Type': 'application/json',
    }


@pytest.fixture
def organizer_headers(app, organizer):
    """Generate auth headers with JWT token for the organizer"""
    return _headers(organizer)


@pytest.fixture
def pro_headers(app, professional):
    """Generate auth headers with JWT token for the professional"""
    return _headers(professional)


@pytest.fixture
def hire_request(app, organizer, professional, event):
    """Organizer hires the professional for photography and catering at 5000"""
    return envelopes.send_envelope(organizer.id, {
        'receiver_id': professional.id,
        'kind': 'hire_request',
        'body': 'Can you cover our gala?',
        'event_id': event.id,
        'services': ['photographer', 'caterer'],
        'price': 5000,
    })


@pytest.fixture
def engagement(app, hire_request, professional):
    """Engagement created by the professional accepting the hire request"""
    _, engagement = envelopes.accept(hire_request.id, professional.id)
    return engagement


@pytest.fixture
def socket_client_factory(app):
    """Build Flask-SocketIO test clients authenticated as a given user"""
    clients = []

    def _connect(user=None, token=None):
        if token is None and user is not None:
            token = generate_token(user.id)
        client = socketio.test_client(app, auth={'token': token} if token else None)
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        if client.is_connected():
            client.disconnect()
