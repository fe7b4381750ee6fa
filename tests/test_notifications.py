from unittest import mock

import effects
from effects import Effect
from models import db, Notification


def _list(client, headers, query=''):
    return client.get(f"/notifications{query}", headers=headers).get_json()


def test_member_sees_own_notifications(client, task, headers):
    body = _list(client, headers['member'])
    kinds = sorted(n['type'] for n in body['notifications'])
    assert kinds == ['project_assigned', 'task_assigned']
    assert body['unreadCount'] == 2

    assert _list(client, headers['member2'])['notifications'] == []


def test_filter_by_type(client, task, headers):
    body = _list(client, headers['member'], '?type=task_assigned')
    assert [n['type'] for n in body['notifications']] == ['task_assigned']


def test_mark_read_and_read_all(client, task, headers):
    first = _list(client, headers['member'])['notifications'][0]

    response = client.patch(f"/notifications/{first['id']}/read", headers=headers['member'])
    assert response.status_code == 200
    assert response.get_json()['notification']['readAt'] is not None
    assert _list(client, headers['member'])['unreadCount'] == 1

    response = client.patch('/notifications/read-all', headers=headers['member'])
    assert response.get_json()['updated'] == 1
    assert _list(client, headers['member'], '?unreadOnly=true')['notifications'] == []


def test_cannot_touch_others_notifications(client, task, headers):
    first = _list(client, headers['member'])['notifications'][0]
    response = client.patch(f"/notifications/{first['id']}/read", headers=headers['member2'])
    assert response.status_code == 404


def test_delete_is_soft(app, client, task, headers):
    first = _list(client, headers['member'])['notifications'][0]

    assert client.delete(f"/notifications/{first['id']}", headers=headers['member']).status_code == 200
    assert client.delete(f"/notifications/{first['id']}", headers=headers['member']).status_code == 404
    assert len(_list(client, headers['member'])['notifications']) == 1

    with app.app_context():
        assert db.session.get(Notification, first['id']).is_deleted is True


def test_sensitive_payload_is_not_stored(app, users):
    with app.app_context():
        delivered = effects.dispatch_effects([
            Effect('account_status', users['member'], {'isActive': True, 'otp': '123456'})
        ])
        assert delivered == 1
        notification = Notification.query.filter_by(user_id=users['member']).one()
        assert 'otp' not in notification.details


def test_mail_failure_does_not_stop_other_effects(app, users):
    with app.app_context():
        with mock.patch('mailer.send_mail', side_effect=[OSError('smtp down'), True]):
            delivered = effects.dispatch_effects([
                Effect('account_status', users['member'], {'isActive': False}),
                Effect('account_status', users['member2'], {'isActive': False}),
            ])
        assert delivered == 1


def test_failed_mail_does_not_fail_request(client, project, users, headers):
    with mock.patch('mailer.send_mail', side_effect=OSError('smtp down')):
        response = client.post('/tasks', headers=headers['pm'], json={
            'title': 'Still created', 'projectId': project['id'], 'assignedTo': users['member']
        })
    assert response.status_code == 201


def test_frontend_link_uses_configured_url(app):
    import mailer
    app.config['FRONTEND_URL'] = 'https://tracker.example.com/'
    with app.app_context():
        assert mailer.frontend_link('tasks', 7) == 'https://tracker.example.com/tasks/7'
