from models import db, User, Notification


def test_non_admin_is_forbidden(client, headers):
    response = client.get('/users', headers=headers['pm'])
    assert response.status_code == 403
    assert response.get_json()['message'] == 'Access denied. Insufficient permissions.'


def test_list_and_search(client, headers):
    body = client.get('/users', headers=headers['admin']).get_json()
    assert body['pagination']['total'] == 5

    body = client.get('/users?search=mia', headers=headers['admin']).get_json()
    assert [u['email'] for u in body['users']] == ['member@example.com']

    body = client.get('/users?globalRole=project_manager', headers=headers['admin']).get_json()
    assert len(body['users']) == 2


def test_duplicate_email_rejected(client, headers):
    response = client.post('/users', headers=headers['admin'], json={
        'email': 'PM@example.com', 'fname': 'Copy', 'globalRole': 'team_member'
    })
    assert response.status_code == 409
    assert response.get_json()['message'] == 'User with this email already exists.'


def test_create_user_starts_with_temp_password(app, client, headers):
    response = client.post('/users', headers=headers['admin'], json={
        'email': 'fresh@example.com', 'fname': 'Finn', 'globalRole': 'project_manager'
    })
    assert response.status_code == 201
    user = response.get_json()['user']
    assert user['isTempPassword'] is True

    # welcome 只寄信,不寫站內通知
    with app.app_context():
        assert Notification.query.filter_by(user_id=user['id']).count() == 0


def test_update_user(client, users, headers):
    response = client.put(f"/users/{users['member']}", headers=headers['admin'], json={
        'fname': 'Mila', 'globalRole': 'project_manager'
    })
    assert response.status_code == 200
    assert response.get_json()['user']['fname'] == 'Mila'
    assert response.get_json()['user']['globalRole'] == 'project_manager'


def test_status_changes(app, client, users, headers):
    response = client.patch(f"/users/{users['admin']}/status", headers=headers['admin'],
                            json={'isActive': False})
    assert response.status_code == 409
    assert response.get_json()['message'] == 'You cannot change your own status.'

    response = client.patch(f"/users/{users['member']}/status", headers=headers['admin'],
                            json={'isActive': True})
    assert response.status_code == 409
    assert response.get_json()['message'] == 'User is already active.'

    response = client.patch(f"/users/{users['member']}/status", headers=headers['admin'],
                            json={'isActive': False})
    assert response.status_code == 200
    assert response.get_json()['user']['isActive'] is False

    with app.app_context():
        kinds = [n.type for n in Notification.query.filter_by(user_id=users['member'])]
    assert kinds == ['account_status']

    # 停用後 token 失效
    assert client.get('/auth/me', headers=headers['member']).status_code == 401


def test_delete_and_restore(app, client, users, headers):
    response = client.delete(f"/users/{users['admin']}", headers=headers['admin'])
    assert response.status_code == 409

    assert client.delete(f"/users/{users['member2']}", headers=headers['admin']).status_code == 200
    assert client.get(f"/users/{users['member2']}", headers=headers['admin']).status_code == 404

    with app.app_context():
        user = db.session.get(User, users['member2'])
        assert user.is_deleted and user.deleted_by == users['admin']

    response = client.put(f"/users/{users['member2']}/restore", headers=headers['admin'])
    assert response.status_code == 200
    assert response.get_json()['user']['isDeleted'] is False
    assert response.get_json()['user']['deletedAt'] is None
