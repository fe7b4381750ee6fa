import pytest

import project_service
from errors import StateError
from models import db, User, Notification, ProjectRole


def _payload(users, **overrides):
    payload = {
        'title': 'Mobile App',
        'description': 'Customer facing app',
        'startDate': '2025-02-01',
        'endDate': '2025-06-30',
        'leaderId': users['pm'],
        'members': [],
    }
    payload.update(overrides)
    return payload


def test_leader_is_added_as_member(project, users):
    roles = {m['userId']: m['projectRole'] for m in project['members']}
    assert roles == {
        users['member']: 'backend_developer',
        users['pm']: ProjectRole.LEADER,
    }


def test_leader_role_is_forced_when_listed(client, users, headers):
    response = client.post('/projects', headers=headers['admin'], json=_payload(
        users, members=[{'userId': users['pm'], 'projectRole': 'qa_engineer'}]
    ))
    assert response.status_code == 201
    members = response.get_json()['project']['members']
    assert [(m['userId'], m['projectRole']) for m in members] == [(users['pm'], ProjectRole.LEADER)]


def test_assignment_cache_is_updated(app, project, users):
    with app.app_context():
        user = db.session.get(User, users['member'])
        assert [a['projectId'] for a in user.project_assignments] == [project['id']]


def test_only_admin_creates(client, users, headers):
    response = client.post('/projects', headers=headers['pm'], json=_payload(users))
    assert response.status_code == 403
    assert response.get_json()['message'] == 'Only admin can create projects.'


def test_start_must_precede_end(client, users, headers):
    response = client.post('/projects', headers=headers['admin'], json=_payload(
        users, startDate='2025-07-01', endDate='2025-06-30'
    ))
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Start date must be before end date.'


def test_leader_must_be_project_manager(client, users, headers):
    response = client.post('/projects', headers=headers['admin'], json=_payload(
        users, leaderId=users['member']
    ))
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Project leader must be an active project manager.'


def test_duplicate_members_rejected(client, users, headers):
    member = {'userId': users['member']}
    response = client.post('/projects', headers=headers['admin'], json=_payload(
        users, members=[member, member]
    ))
    assert response.status_code == 409
    assert response.get_json()['message'] == f"Duplicate user {users['member']} in members array."


def test_admin_cannot_be_member(client, users, headers):
    response = client.post('/projects', headers=headers['admin'], json=_payload(
        users, members=[{'userId': users['admin']}]
    ))
    assert response.status_code == 400
    assert 'must be a team member or project manager' in response.get_json()['message']


def test_validate_members_raises_on_duplicate(app, users):
    with app.app_context():
        with pytest.raises(StateError):
            project_service.validate_members(
                [{'user_id': users['member']}, {'user_id': users['member']}], users['pm']
            )


def test_visibility(client, project, headers):
    assert client.get(f"/projects/{project['id']}", headers=headers['member']).status_code == 200
    assert client.get(f"/projects/{project['id']}", headers=headers['member2']).status_code == 403

    assert len(client.get('/projects', headers=headers['member']).get_json()['projects']) == 1
    assert client.get('/projects', headers=headers['member2']).get_json()['projects'] == []
    assert client.get('/projects', headers=headers['pm2']).get_json()['projects'] == []


def test_leader_updates_project(client, project, headers):
    response = client.patch(f"/projects/{project['id']}", headers=headers['pm'], json={
        'status': 'active'
    })
    assert response.status_code == 200
    assert response.get_json()['project']['status'] == 'active'

    response = client.patch(f"/projects/{project['id']}", headers=headers['member'], json={
        'status': 'cancelled'
    })
    assert response.status_code == 403


def test_update_checks_merged_dates(client, project, headers):
    response = client.patch(f"/projects/{project['id']}", headers=headers['pm'], json={
        'endDate': '2024-12-31'
    })
    assert response.status_code == 400


def test_change_leader_keeps_members(client, project, users, headers):
    response = client.put(f"/projects/{project['id']}", headers=headers['admin'], json={
        'leaderId': users['pm2']
    })
    assert response.status_code == 200

    body = response.get_json()['project']
    assert body['leader']['id'] == users['pm2']
    roles = {m['userId']: m['projectRole'] for m in body['members']}
    assert roles[users['pm2']] == ProjectRole.LEADER
    assert users['member'] in roles


def test_delete_hides_project_and_tasks(client, project, task, headers):
    response = client.delete(f"/projects/{project['id']}", headers=headers['pm'])
    assert response.status_code == 403

    assert client.delete(f"/projects/{project['id']}", headers=headers['admin']).status_code == 200
    assert client.get(f"/projects/{project['id']}", headers=headers['admin']).status_code == 404
    assert client.get(f"/tasks/{task['id']}", headers=headers['pm']).status_code == 404

    response = client.put(f"/projects/{project['id']}/restore", headers=headers['admin'])
    assert response.status_code == 200
    assert response.get_json()['project']['isDeleted'] is False
    assert client.get(f"/tasks/{task['id']}", headers=headers['pm']).status_code == 200


def test_restore_live_project_is_not_found(client, project, headers):
    response = client.put(f"/projects/{project['id']}/restore", headers=headers['admin'])
    assert response.status_code == 404


def test_project_stats(client, project, task, headers):
    response = client.get(f"/projects/{project['id']}/stats", headers=headers['member'])
    assert response.status_code == 200

    body = response.get_json()
    assert body['tasks']['total'] == 1
    assert body['members'] == 2
    assert body['completionRate'] == 0


def test_leader_change_ignores_stale_members(client, project, users, headers):
    client.put(f"/projects/{project['id']}", headers=headers['admin'], json={
        'members': [{'userId': users['member']}, {'userId': users['member2']}]
    })
    assert client.delete(f"/users/{users['member2']}", headers=headers['admin']).status_code == 200

    response = client.put(f"/projects/{project['id']}", headers=headers['admin'], json={
        'leaderId': users['pm2']
    })
    assert response.status_code == 200, response.get_json()

    roles = {m['userId']: m['projectRole'] for m in response.get_json()['project']['members']}
    assert roles[users['pm2']] == ProjectRole.LEADER
    # 舊 leader 與其他成員原樣保留
    assert roles[users['pm']] == ProjectRole.LEADER
    assert roles[users['member']] == 'backend_developer'
    assert users['member2'] in roles


def test_leader_change_after_member_role_change(client, project, users, headers):
    response = client.put(f"/users/{users['member']}", headers=headers['admin'], json={
        'globalRole': 'admin'
    })
    assert response.status_code == 200

    response = client.put(f"/projects/{project['id']}", headers=headers['admin'], json={
        'leaderId': users['pm2']
    })
    assert response.status_code == 200
    assert response.get_json()['project']['leaderId'] == users['pm2']


def test_existing_member_promoted_to_leader(app, client, project, users, headers):
    client.put(f"/projects/{project['id']}", headers=headers['admin'], json={
        'members': [
            {'userId': users['member']},
            {'userId': users['pm2'], 'projectRole': 'qa_engineer'},
        ]
    })

    response = client.put(f"/projects/{project['id']}", headers=headers['admin'], json={
        'leaderId': users['pm2']
    })
    members = response.get_json()['project']['members']
    assert len(members) == 3
    assert {m['userId']: m['projectRole'] for m in members}[users['pm2']] == ProjectRole.LEADER

    with app.app_context():
        user = db.session.get(User, users['pm2'])
        assert user.project_assignments[0]['projectRole'] == ProjectRole.LEADER


def test_project_assignment_notification_links_to_project(app, project, users):
    with app.app_context():
        notification = Notification.query.filter_by(
            user_id=users['member'], type='project_assigned'
        ).one()
        assert notification.details['link'].endswith(f"/projects/{project['id']}")
