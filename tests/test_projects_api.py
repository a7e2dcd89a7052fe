"""Projects: creation, visibility, ownership overrides and status workflow."""
import pytest


@pytest.fixture
def pm_headers(auth_headers, project_manager):
    return auth_headers(project_manager)


@pytest.fixture
def project(client, pm_headers):
    response = client.post('/projects', headers=pm_headers, json={
        'name': 'Apollo',
        'description': 'Moon shot',
        'start_date': '2026-01-01T00:00:00',
        'end_date': '2026-12-31T00:00:00'
    })
    assert response.status_code == 201
    return response.get_json()['data']['project']


class TestCreate:

    def test_creator_becomes_responsible(self, client, pm_headers, project, project_manager):
        assert project['status'] == 'planning'
        assert project['created_by']['id'] == project_manager['id']

        data = client.get(f"/projects/{project['id']}", headers=pm_headers).get_json()['data']['project']
        assert [r['user_id'] for r in data['responsibles']] == [project_manager['id']]
        assert data['can_manage'] is True

    def test_requires_capability(self, client, auth_headers, task_manager):
        response = client.post('/projects', headers=auth_headers(task_manager), json={'name': 'Nope'})
        assert response.status_code == 403

    def test_name_is_unique(self, client, pm_headers, project):
        response = client.post('/projects', headers=pm_headers, json={'name': 'apollo'})
        assert response.status_code == 409

    def test_dates_must_be_ordered(self, client, pm_headers):
        response = client.post('/projects', headers=pm_headers, json={
            'name': 'Backwards',
            'start_date': '2026-06-01T00:00:00',
            'end_date': '2026-01-01T00:00:00'
        })
        assert response.status_code == 400
        assert 'end_date' in response.get_json()['errors']

    def test_creation_is_logged(self, client, admin, auth_headers, project):
        response = client.get("/activity?action=create_project", headers=auth_headers(admin))
        entries = response.get_json()['data']['activities']
        assert [e['resource_id'] for e in entries] == [project['id']]


class TestVisibility:

    def test_outsider_cannot_read(self, client, make_user, auth_headers, project):
        outsider = make_user()
        assert client.get(f"/projects/{project['id']}", headers=auth_headers(outsider)).status_code == 403
        listed = client.get('/projects', headers=auth_headers(outsider)).get_json()['data']['projects']
        assert listed == []

    def test_admin_sees_everything(self, client, admin, auth_headers, project):
        headers = auth_headers(admin)
        assert client.get(f"/projects/{project['id']}", headers=headers).status_code == 200
        listed = client.get('/projects', headers=headers).get_json()['data']['projects']
        assert [p['id'] for p in listed] == [project['id']]

    def test_assignee_can_read(self, client, pm_headers, auth_headers, task_manager, project):
        client.post(f"/projects/{project['id']}/tasks", headers=pm_headers, json={
            'title': 'Build rocket', 'assigned_to': task_manager['id']
        })
        headers = auth_headers(task_manager)

        assert client.get(f"/projects/{project['id']}", headers=headers).status_code == 200
        listed = client.get('/projects', headers=headers).get_json()['data']['projects']
        assert listed[0]['task_count'] == 1

    def test_status_filter(self, client, pm_headers, project):
        listed = client.get('/projects?status=completed', headers=pm_headers).get_json()['data']['projects']
        assert listed == []
        assert client.get('/projects?status=bogus', headers=pm_headers).status_code == 400

    def test_missing_project(self, client, pm_headers):
        assert client.get('/projects/999', headers=pm_headers).status_code == 404


class TestUpdateAndDelete:

    def test_manager_updates(self, client, pm_headers, project):
        response = client.patch(f"/projects/{project['id']}", headers=pm_headers, json={'description': 'Revised'})
        assert response.status_code == 200
        assert response.get_json()['data']['project']['description'] == 'Revised'

    def test_other_project_manager_is_refused(self, client, make_user, auth_headers, project):
        rival = make_user(roles=('responsable_proyecto',))
        response = client.patch(f"/projects/{project['id']}", headers=auth_headers(rival), json={'name': 'Mine'})
        assert response.status_code == 403

    def test_admin_overrides(self, client, admin, auth_headers, project):
        response = client.patch(f"/projects/{project['id']}", headers=auth_headers(admin), json={'name': 'Artemis'})
        assert response.status_code == 200

    def test_delete_removes_tasks(self, client, admin, auth_headers, pm_headers, project):
        client.post(f"/projects/{project['id']}/tasks", headers=pm_headers, json={'title': 'T1'})
        headers = auth_headers(admin)

        assert client.delete(f"/projects/{project['id']}", headers=headers).status_code == 200
        assert client.get(f"/projects/{project['id']}", headers=headers).status_code == 404
        assert client.get('/tasks/1', headers=headers).status_code == 404

    def test_project_manager_role_cannot_delete(self, client, pm_headers, project):
        # responsable_proyecto has no projects:delete, even on its own project
        assert client.delete(f"/projects/{project['id']}", headers=pm_headers).status_code == 403

    def test_responsible_without_role_is_refused(self, client, make_user, pm_headers, auth_headers, project):
        helper = make_user()
        client.post(f"/projects/{project['id']}/responsibles", headers=pm_headers, json={'user_id': helper['id']})
        headers = auth_headers(helper)

        # Being responsible scopes the project, the role still has to grant the action
        assert client.get(f"/projects/{project['id']}", headers=headers).status_code == 403
        response = client.patch(f"/projects/{project['id']}", headers=headers, json={'description': 'Mine now'})
        assert response.status_code == 403


class TestStatus:

    def test_valid_path(self, client, pm_headers, project):
        url = f"/projects/{project['id']}/status"
        for status in ('in_progress', 'completed'):
            response = client.patch(url, headers=pm_headers, json={'status': status})
            assert response.status_code == 200
            assert response.get_json()['data']['project']['status'] == status

    @pytest.mark.parametrize('path', [
        ['completed'],
        ['in_progress', 'planning'],
        ['cancelled', 'in_progress'],
        ['in_progress', 'completed', 'in_progress'],
    ])
    def test_invalid_transitions(self, client, pm_headers, project, path):
        url = f"/projects/{project['id']}/status"
        *allowed, refused = path
        for status in allowed:
            assert client.patch(url, headers=pm_headers, json={'status': status}).status_code == 200
        assert client.patch(url, headers=pm_headers, json={'status': refused}).status_code == 400

    def test_cancelled_project_can_be_replanned(self, client, pm_headers, project):
        url = f"/projects/{project['id']}/status"
        client.patch(url, headers=pm_headers, json={'status': 'cancelled'})
        assert client.patch(url, headers=pm_headers, json={'status': 'planning'}).status_code == 200


class TestResponsibles:

    def test_add_and_remove(self, client, make_user, pm_headers, auth_headers, project):
        colleague = make_user(roles=('responsable_proyecto',))
        url = f"/projects/{project['id']}/responsibles"

        response = client.post(url, headers=pm_headers, json={'user_id': colleague['id']})
        assert response.status_code == 201
        assert client.post(url, headers=pm_headers, json={'user_id': colleague['id']}).status_code == 409

        # A responsible manages the project like its creator
        response = client.patch(f"/projects/{project['id']}", headers=auth_headers(colleague),
                                json={'description': 'Co-managed'})
        assert response.status_code == 200

        assert client.delete(f"{url}/{colleague['id']}", headers=pm_headers).status_code == 200
        response = client.patch(f"/projects/{project['id']}", headers=auth_headers(colleague),
                                json={'description': 'Still mine?'})
        assert response.status_code == 403

        # Re-adding reactivates the removed row
        assert client.post(url, headers=pm_headers, json={'user_id': colleague['id']}).status_code == 201
        listed = client.get(url, headers=pm_headers).get_json()['data']['responsibles']
        assert sorted(r['user_id'] for r in listed) == sorted([colleague['id'], project['created_by']['id']])

    def test_inactive_user_cannot_be_responsible(self, client, make_user, pm_headers, project):
        inactive = make_user(active=False)
        response = client.post(f"/projects/{project['id']}/responsibles", headers=pm_headers,
                               json={'user_id': inactive['id']})
        assert response.status_code == 400

    def test_remove_unknown_responsible(self, client, pm_headers, project):
        assert client.delete(f"/projects/{project['id']}/responsibles/999", headers=pm_headers).status_code == 404
