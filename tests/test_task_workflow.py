from types import SimpleNamespace

import pytest

import task_workflow
from errors import StateError
from models import db, Task, Notification, TaskStatus

# ============================================
# 狀態機 (純函數)
# ============================================

@pytest.mark.parametrize('old, new', [
    ('pending', 'open'),
    ('open', 'in_progress'),
    ('in_progress', 'review'),
    ('review', 'done'),
    ('review', 'in_progress'),
    ('done', 'done'),
])
def test_allowed_transitions(old, new):
    assert task_workflow.can_transition(old, new)


@pytest.mark.parametrize('old, new', [
    ('pending', 'done'),
    ('open', 'review'),
    ('review', 'pending'),
    ('done', 'in_progress'),
    ('in_progress', 'open'),
])
def test_rejected_transitions(old, new):
    assert not task_workflow.can_transition(old, new)


def test_check_transition_message():
    with pytest.raises(StateError, match='Invalid transition from review to pending.'):
        task_workflow.check_transition('review', 'pending')


def test_completed_at_is_stamped_once():
    task = SimpleNamespace(status=TaskStatus.REVIEW, completed_at=None)
    assert task_workflow.apply_status(task, TaskStatus.DONE) is True
    first = task.completed_at
    assert first is not None

    assert task_workflow.apply_status(task, TaskStatus.DONE) is False
    assert task.completed_at == first

# ============================================
# API
# ============================================

def _move(client, task_id, status, headers):
    return client.patch(f"/tasks/{task_id}", headers=headers, json={'status': status})


def test_task_numbers_are_sequential_per_project(client, project, headers):
    numbers = []
    for title in ('First', 'Second'):
        response = client.post('/tasks', headers=headers['pm'], json={
            'title': title, 'projectId': project['id']
        })
        assert response.status_code == 201
        numbers.append(response.get_json()['task']['taskNumber'])

    assert numbers == ['WEB-1', 'WEB-2']


def test_new_task_defaults(task):
    assert task['status'] == 'pending'
    assert task['priority'] == 'low'
    assert task['actualHours'] == 0
    assert task['completedAt'] is None


def test_member_cannot_create_task(client, project, headers):
    response = client.post('/tasks', headers=headers['member'], json={
        'title': 'Sneaky', 'projectId': project['id']
    })
    assert response.status_code == 403


def test_assignee_must_be_project_member(client, project, users, headers):
    response = client.post('/tasks', headers=headers['pm'], json={
        'title': 'Outsourced', 'projectId': project['id'], 'assignedTo': users['member2']
    })
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Assigned user is not a member of this project.'


def test_full_lifecycle_by_assignee(app, client, task, users, headers):
    for status in ('open', 'in_progress', 'review', 'done'):
        response = _move(client, task['id'], status, headers['member'])
        assert response.status_code == 200, response.get_json()

    body = response.get_json()['task']
    assert body['status'] == 'done'
    assert body['completedAt'] is not None

    # leader 收到完成通知
    with app.app_context():
        kinds = [n.type for n in Notification.query.filter_by(user_id=users['pm']).all()]
    assert 'task_completed' in kinds


def test_invalid_transition_leaves_task_unchanged(app, client, task, headers):
    response = _move(client, task['id'], 'done', headers['member'])
    assert response.status_code == 409
    assert response.get_json()['message'] == 'Invalid transition from pending to done.'

    with app.app_context():
        assert db.session.get(Task, task['id']).status == 'pending'


def test_review_cannot_go_back_to_pending(client, task, headers):
    for status in ('open', 'in_progress', 'review'):
        _move(client, task['id'], status, headers['pm'])

    response = _move(client, task['id'], 'pending', headers['pm'])
    assert response.status_code == 409
    assert response.get_json()['error'] == 'state_error'


def test_assignee_cannot_edit_other_fields(client, task, headers):
    response = client.patch(f"/tasks/{task['id']}", headers=headers['member'], json={
        'status': 'open', 'title': 'Renamed'
    })
    assert response.status_code == 403
    assert response.get_json()['message'] == 'You can only update status and actual hours.'


def test_non_member_cannot_read_task(client, task, headers):
    response = client.get(f"/tasks/{task['id']}", headers=headers['member2'])
    assert response.status_code == 403


def test_assignment_notifies_member(app, task, users):
    with app.app_context():
        notification = Notification.query.filter_by(
            user_id=users['member'], type='task_assigned'
        ).first()
        assert notification is not None
        assert notification.related_id == task['id']
        assert notification.details['link'].endswith(f"/tasks/{task['id']}")


def test_unknown_field_is_rejected(client, task, headers):
    response = client.patch(f"/tasks/{task['id']}", headers=headers['pm'], json={
        'parentTaskId': 99
    })
    assert response.status_code == 400
    assert 'parentTaskId' in response.get_json()['details']

# ============================================
# 子任務
# ============================================

def _create_subtask(client, parent_id, headers, **extra):
    payload = {'title': 'Hero banner'}
    payload.update(extra)
    return client.post(f"/tasks/{parent_id}/subtasks", headers=headers, json=payload)


def test_subtask_inherits_assignee(client, task, users, headers):
    response = _create_subtask(client, task['id'], headers['pm'])
    assert response.status_code == 201

    subtask = response.get_json()['task']
    assert subtask['parentTask']['id'] == task['id']
    assert subtask['assignedTo']['id'] == users['member']


def test_cannot_delete_task_with_live_subtasks(client, task, headers):
    subtask = _create_subtask(client, task['id'], headers['pm']).get_json()['task']

    response = client.delete(f"/tasks/{task['id']}", headers=headers['pm'])
    assert response.status_code == 409
    assert response.get_json()['message'] == 'Cannot delete task with subtasks.'

    response = client.delete(f"/tasks/{task['id']}/subtasks/{subtask['id']}", headers=headers['pm'])
    assert response.status_code == 200

    response = client.delete(f"/tasks/{task['id']}", headers=headers['pm'])
    assert response.status_code == 200


def test_subtask_restore_requires_live_parent(client, task, headers):
    subtask = _create_subtask(client, task['id'], headers['pm']).get_json()['task']
    client.delete(f"/tasks/{task['id']}/subtasks/{subtask['id']}", headers=headers['pm'])
    client.delete(f"/tasks/{task['id']}", headers=headers['pm'])

    response = client.put(f"/tasks/{task['id']}/subtasks/{subtask['id']}/restore", headers=headers['pm'])
    assert response.status_code == 409
    assert response.get_json()['message'] == 'Parent task is deleted or not found.'

    assert client.put(f"/tasks/{task['id']}/restore", headers=headers['pm']).status_code == 200
    response = client.put(f"/tasks/{task['id']}/subtasks/{subtask['id']}/restore", headers=headers['pm'])
    assert response.status_code == 200
    assert response.get_json()['task']['isDeleted'] is False


def test_subtask_under_wrong_parent_is_not_found(client, project, task, headers):
    other = client.post('/tasks', headers=headers['pm'], json={
        'title': 'Other', 'projectId': project['id']
    }).get_json()['task']
    subtask = _create_subtask(client, task['id'], headers['pm']).get_json()['task']

    response = client.get(f"/tasks/{other['id']}/subtasks/{subtask['id']}", headers=headers['pm'])
    assert response.status_code == 404


def test_deleted_task_is_hidden_from_list(client, project, task, headers):
    client.delete(f"/tasks/{task['id']}", headers=headers['pm'])

    response = client.get(f"/tasks?projectId={project['id']}", headers=headers['pm'])
    assert response.status_code == 200
    assert response.get_json()['tasks'] == []
    assert client.get(f"/tasks/{task['id']}", headers=headers['pm']).status_code == 404


def test_task_stats(client, project, task, headers):
    response = client.get(f"/tasks/stats?projectId={project['id']}", headers=headers['pm'])
    assert response.status_code == 200

    stats = response.get_json()
    assert stats['total'] == 1
    assert stats['byStatus']['pending'] == 1
    assert stats['estimatedHours'] == 10


def test_delete_restore_round_trip(app, client, task, users, headers):
    before = client.get(f"/tasks/{task['id']}", headers=headers['pm']).get_json()['task']

    assert client.delete(f"/tasks/{task['id']}", headers=headers['pm']).status_code == 200
    with app.app_context():
        deleted = db.session.get(Task, task['id'])
        assert deleted.is_deleted is True
        assert deleted.deleted_at is not None
        assert deleted.deleted_by == users['pm']

    response = client.put(f"/tasks/{task['id']}/restore", headers=headers['pm'])
    assert response.status_code == 200
    after = response.get_json()['task']

    assert after['deletedAt'] is None
    assert after['deletedBy'] is None
    before.pop('updatedAt')
    after.pop('updatedAt')
    assert after == before
