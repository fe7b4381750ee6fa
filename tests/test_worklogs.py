from datetime import date, timedelta

import pytest

import worklog_service
from models import db, Task, Worklog, utcnow


def _log(client, headers, task_id, day, hours, description='Work'):
    return client.post('/worklogs', headers=headers, json={
        'taskId': task_id, 'date': day, 'hours': hours, 'description': description
    })


def _actual_hours(app, task_id):
    with app.app_context():
        return db.session.get(Task, task_id).actual_hours


def test_is_overtime_uses_daily_limit():
    assert not worklog_service.is_overtime(0, 8, limit=8)
    assert worklog_service.is_overtime(5, 4, limit=8)
    assert not worklog_service.is_overtime(4, 4, limit=8)


def test_second_log_over_limit_is_overtime(app, client, task, headers, yesterday):
    first = _log(client, headers['member'], task['id'], yesterday, 5)
    assert first.status_code == 201, first.get_json()
    assert first.get_json()['worklog']['isOvertime'] is False

    second = _log(client, headers['member'], task['id'], yesterday, 4)
    assert second.status_code == 201
    assert second.get_json()['worklog']['isOvertime'] is True
    assert second.get_json()['taskActualHours'] == 9

    assert _actual_hours(app, task['id']) == pytest.approx(9)


def test_actual_hours_follow_update_delete_restore(app, client, task, headers, yesterday):
    first = _log(client, headers['member'], task['id'], yesterday, 5).get_json()['worklog']
    second = _log(client, headers['member'], task['id'], yesterday, 4).get_json()['worklog']

    response = client.put(f"/worklogs/{first['id']}", headers=headers['member'], json={'hours': 3})
    assert response.status_code == 200
    assert _actual_hours(app, task['id']) == pytest.approx(7)

    response = client.delete(f"/worklogs/{second['id']}", headers=headers['member'])
    assert response.status_code == 200
    assert _actual_hours(app, task['id']) == pytest.approx(3)

    response = client.put(f"/worklogs/{second['id']}/restore", headers=headers['member'])
    assert response.status_code == 200
    assert _actual_hours(app, task['id']) == pytest.approx(7)


def test_update_recomputes_overtime(client, task, headers, yesterday):
    _log(client, headers['member'], task['id'], yesterday, 5)
    second = _log(client, headers['member'], task['id'], yesterday, 4).get_json()['worklog']
    assert second['isOvertime'] is True

    response = client.put(f"/worklogs/{second['id']}", headers=headers['member'], json={'hours': 2})
    assert response.get_json()['worklog']['isOvertime'] is False


def test_future_date_rejected(client, task, headers):
    tomorrow = (date.today() + timedelta(days=1)).isoformat()
    response = _log(client, headers['member'], task['id'], tomorrow, 2)
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Date cannot be in the future.'


@pytest.mark.parametrize('hours', [0.1, 25])
def test_hours_out_of_range(client, task, headers, yesterday, hours):
    response = _log(client, headers['member'], task['id'], yesterday, hours)
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Hours must be between 0.25 and 24.'


def test_missing_description_rejected(client, task, headers, yesterday):
    response = client.post('/worklogs', headers=headers['member'], json={
        'taskId': task['id'], 'date': yesterday, 'hours': 2
    })
    assert response.status_code == 400


def test_only_assignee_member_can_log(client, project, task, users, headers, yesterday):
    # member2 加入專案但沒被指派
    client.put(f"/projects/{project['id']}", headers=headers['admin'], json={
        'members': [{'userId': users['member']}, {'userId': users['member2']}]
    })

    response = _log(client, headers['member2'], task['id'], yesterday, 2)
    assert response.status_code == 403
    assert response.get_json()['message'] == 'You are not assigned to this task.'


def test_other_pm_cannot_log(client, task, headers, yesterday):
    response = _log(client, headers['pm2'], task['id'], yesterday, 2)
    assert response.status_code == 403
    assert response.get_json()['message'] == "You don't manage this project."


def test_owner_delete_window(app, client, task, headers, yesterday):
    worklog = _log(client, headers['member'], task['id'], yesterday, 2).get_json()['worklog']

    with app.app_context():
        db.session.get(Worklog, worklog['id']).created_at = utcnow() - timedelta(hours=25)
        db.session.commit()

    response = client.delete(f"/worklogs/{worklog['id']}", headers=headers['member'])
    assert response.status_code == 403
    assert response.get_json()['message'] == 'Can only delete worklog within 24 hours of creation.'
    assert _actual_hours(app, task['id']) == pytest.approx(2)

    response = client.delete(f"/worklogs/{worklog['id']}", headers=headers['admin'])
    assert response.status_code == 200
    assert _actual_hours(app, task['id']) == pytest.approx(0)


def test_list_is_scoped_by_role(client, task, headers, yesterday):
    _log(client, headers['member'], task['id'], yesterday, 2)

    assert len(client.get('/worklogs', headers=headers['member']).get_json()['worklogs']) == 1
    assert len(client.get('/worklogs', headers=headers['pm']).get_json()['worklogs']) == 1
    assert len(client.get('/worklogs', headers=headers['pm2']).get_json()['worklogs']) == 0
    assert len(client.get('/worklogs', headers=headers['member2']).get_json()['worklogs']) == 0


def test_overtime_only_filter(client, task, headers, yesterday):
    _log(client, headers['member'], task['id'], yesterday, 6)
    _log(client, headers['member'], task['id'], yesterday, 3)

    response = client.get('/worklogs?overtimeOnly=true', headers=headers['member'])
    worklogs = response.get_json()['worklogs']
    assert [w['hours'] for w in worklogs] == [3]


def test_summary_by_user(client, task, users, headers, yesterday):
    _log(client, headers['member'], task['id'], yesterday, 6)
    _log(client, headers['member'], task['id'], yesterday, 3)

    response = client.get('/worklogs/summary?groupBy=user', headers=headers['admin'])
    assert response.status_code == 200

    body = response.get_json()
    assert body['groupBy'] == 'user'
    assert len(body['summary']) == 1
    row = body['summary'][0]
    assert row['userId'] == users['member']
    assert row['totalHours'] == 9
    assert row['regularHours'] == 6
    assert row['overtimeHours'] == 3
    assert row['worklogCount'] == 2
    assert body['overallStats']['totalHours'] == 9


def test_insights_by_task(client, task, headers, yesterday):
    _log(client, headers['member'], task['id'], yesterday, 2)

    response = client.get('/worklogs/insights?groupBy=task', headers=headers['pm'])
    row = response.get_json()['summary'][0]
    assert row['taskId'] == task['id']
    assert row['taskNumber'] == task['taskNumber']


def test_invalid_group_by(client, headers):
    response = client.get('/worklogs/summary?groupBy=weekday', headers=headers['admin'])
    assert response.status_code == 400


def test_outsider_cannot_read_worklog(client, task, headers, yesterday):
    worklog = _log(client, headers['member'], task['id'], yesterday, 2).get_json()['worklog']

    assert client.get(f"/worklogs/{worklog['id']}", headers=headers['pm']).status_code == 200
    assert client.get(f"/worklogs/{worklog['id']}", headers=headers['pm2']).status_code == 403


def test_deleted_worklog_does_not_count_toward_overtime(client, task, headers, yesterday):
    first = _log(client, headers['member'], task['id'], yesterday, 5).get_json()['worklog']
    assert client.delete(f"/worklogs/{first['id']}", headers=headers['member']).status_code == 200

    response = _log(client, headers['member'], task['id'], yesterday, 4)
    assert response.status_code == 201
    assert response.get_json()['worklog']['isOvertime'] is False
