from datetime import date, timedelta

import pytest
from flask_jwt_extended import create_access_token, create_refresh_token

from app import create_app
from config import TestingConfig
from models import db, User, GlobalRole

PASSWORD = 'Passw0rd!'


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _make_user(email, fname, role, **kwargs):
    from account_service import hash_secret
    user = User(
        email=email,
        fname=fname,
        lname=kwargs.pop('lname', 'Tester'),
        global_role=role,
        password_hash=hash_secret(kwargs.pop('password', PASSWORD)),
        is_temp_password_active=False,
        project_assignments=[],
        **kwargs
    )
    db.session.add(user)
    return user


@pytest.fixture
def users(app):
    """每個角色各建一個 (PM 與成員各兩個),回傳 id"""
    with app.app_context():
        seeded = {
            'admin': _make_user('admin@example.com', 'Ada', GlobalRole.ADMIN),
            'pm': _make_user('pm@example.com', 'Paul', GlobalRole.PROJECT_MANAGER),
            'pm2': _make_user('pm2@example.com', 'Pia', GlobalRole.PROJECT_MANAGER),
            'member': _make_user('member@example.com', 'Mia', GlobalRole.TEAM_MEMBER),
            'member2': _make_user('member2@example.com', 'Max', GlobalRole.TEAM_MEMBER),
        }
        db.session.commit()
        return {key: user.id for key, user in seeded.items()}


def bearer(app, user_id, refresh=False):
    with app.app_context():
        maker = create_refresh_token if refresh else create_access_token
        token = maker(identity=str(user_id))
    return {'Authorization': f"Bearer {token}"}


@pytest.fixture
def headers(app, users):
    return {key: bearer(app, user_id) for key, user_id in users.items()}


@pytest.fixture
def project(client, users, headers):
    """pm 帶領的專案,member 是後端工程師"""
    response = client.post('/projects', headers=headers['admin'], json={
        'title': 'Website Revamp',
        'description': 'Rebuild the marketing site',
        'startDate': '2025-01-01',
        'endDate': '2025-12-31',
        'leaderId': users['pm'],
        'members': [{'userId': users['member'], 'projectRole': 'backend_developer'}],
    })
    assert response.status_code == 201, response.get_json()
    return response.get_json()['project']


@pytest.fixture
def task(client, project, users, headers):
    """指派給 member 的任務"""
    response = client.post('/tasks', headers=headers['pm'], json={
        'title': 'Landing page',
        'projectId': project['id'],
        'assignedTo': users['member'],
        'estimatedHours': 10,
    })
    assert response.status_code == 201, response.get_json()
    return response.get_json()['task']


@pytest.fixture
def yesterday():
    return (date.today() - timedelta(days=1)).isoformat()
