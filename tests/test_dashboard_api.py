"""Dashboard aggregates and activity feeds, scoped to the caller."""
import pytest


@pytest.fixture
def workload(client, auth_headers, project_manager, task_manager):
    """
    One project with three tasks: one completed and one overdue, both
    assigned to the worker, plus one unassigned
    """
    pm_headers = auth_headers(project_manager)
    worker_headers = auth_headers(task_manager)

    project = client.post('/projects', headers=pm_headers, json={'name': 'Mercury'}).get_json()['data']['project']
    url = f"/projects/{project['id']}/tasks"

    done = client.post(url, headers=pm_headers, json={
        'title': 'Done', 'assigned_to': task_manager['id']
    }).get_json()['data']['task']
    late = client.post(url, headers=pm_headers, json={
        'title': 'Late', 'assigned_to': task_manager['id'], 'priority': 'urgent',
        'due_date': '2020-01-01T00:00:00'
    }).get_json()['data']['task']
    client.post(url, headers=pm_headers, json={'title': 'Unassigned', 'priority': 'low'})

    for status in ('in_progress', 'completed'):
        client.patch(f"/tasks/{done['id']}/status", headers=worker_headers, json={'status': status})

    return {'project': project, 'done': done, 'late': late}


class TestSummary:

    def test_project_manager_summary(self, client, auth_headers, project_manager, workload):
        data = client.get('/dashboard/summary', headers=auth_headers(project_manager)).get_json()['data']

        assert data['projects']['total'] == 1
        assert data['projects']['planning'] == 1
        assert data['tasks']['total'] == 3
        assert data['tasks']['by_status']['completed'] == 1
        assert data['tasks']['overdue'] == 1
        assert data['tasks']['completion_rate'] == 33.3
        assert 'users' not in data

    def test_admin_summary_includes_users(self, client, admin, auth_headers, workload):
        data = client.get('/dashboard/summary', headers=auth_headers(admin)).get_json()['data']
        assert data['users']['total'] == 3
        assert data['tasks']['total'] == 3

    def test_outsider_sees_nothing(self, client, make_user, auth_headers, workload):
        data = client.get('/dashboard/summary', headers=auth_headers(make_user())).get_json()['data']
        assert data['projects']['total'] == 0
        assert data['tasks']['total'] == 0
        assert data['tasks']['completion_rate'] == 0.0

    def test_requires_token(self, client):
        assert client.get('/dashboard/summary').status_code == 401


class TestStats:

    def test_project_progress(self, client, auth_headers, task_manager, workload):
        data = client.get('/dashboard/projects/stats', headers=auth_headers(task_manager)).get_json()['data']

        assert data['overview']['total'] == 1
        [project] = data['projects']
        assert project['name'] == 'Mercury'
        assert project['total_tasks'] == 3
        assert project['completed_tasks'] == 1
        assert project['progress'] == 33.3

    def test_stats_require_a_role(self, client, make_user, auth_headers, workload):
        headers = auth_headers(make_user())
        assert client.get('/dashboard/projects/stats', headers=headers).status_code == 403
        assert client.get('/dashboard/tasks/stats', headers=headers).status_code == 403

    def test_task_stats(self, client, auth_headers, task_manager, workload):
        stats = client.get('/dashboard/tasks/stats', headers=auth_headers(task_manager)).get_json()['data']['stats']
        assert stats['assigned_to_me'] == 2
        assert stats['by_priority']['urgent'] == 1

    def test_admin_stats(self, client, admin, auth_headers, workload):
        data = client.get('/dashboard/admin/stats', headers=auth_headers(admin)).get_json()['data']

        assert data['projects'] == {'total': 1, 'by_status': {'planning': 1}}
        assert data['tasks']['total'] == 3
        assert data['tasks']['users_with_tasks'] == 1
        assert data['active_sessions'] >= 1

    def test_admin_stats_refused_for_others(self, client, auth_headers, project_manager):
        response = client.get('/dashboard/admin/stats', headers=auth_headers(project_manager))
        assert response.status_code == 403


class TestPendingTasks:

    def test_open_tasks_only_with_overdue_flag(self, client, auth_headers, task_manager, workload):
        data = client.get('/dashboard/tasks/pending', headers=auth_headers(task_manager)).get_json()['data']

        assert [t['id'] for t in data['tasks']] == [workload['late']['id']]
        assert data['tasks'][0]['is_overdue'] is True
        assert data['tasks'][0]['project']['name'] == 'Mercury'
        assert data['overdue_count'] == 1


class TestActivity:

    def test_recent_activity_is_scoped(self, client, make_user, auth_headers, workload):
        outsider = make_user()
        entries = client.get('/dashboard/activity/recent', headers=auth_headers(outsider)).get_json()['data']['activities']
        assert all(entry['user']['id'] == outsider['id'] for entry in entries)

    def test_member_sees_project_activity(self, client, auth_headers, task_manager, workload):
        response = client.get('/dashboard/activity/recent?limit=50', headers=auth_headers(task_manager))
        actions = {entry['action'] for entry in response.get_json()['data']['activities']}
        assert {'create_project', 'create_task', 'change_task_status'} <= actions

    def test_full_log_needs_logs_read(self, client, auth_headers, project_manager, workload):
        assert client.get('/activity', headers=auth_headers(project_manager)).status_code == 403

    def test_full_log_filters(self, client, admin, auth_headers, workload):
        response = client.get('/activity?action=create_task', headers=auth_headers(admin))
        data = response.get_json()['data']
        assert data['pagination']['total'] == 3
        assert {entry['project_id'] for entry in data['activities']} == {workload['project']['id']}

    def test_my_activity(self, client, auth_headers, task_manager, workload):
        entries = client.get('/activity/me', headers=auth_headers(task_manager)).get_json()['data']['activities']
        assert entries
        assert {entry['user']['id'] for entry in entries} == {task_manager['id']}
