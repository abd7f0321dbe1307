from types import SimpleNamespace

import pytest

from sitecrew.services.time_rules import local_today

from conftest import SITE_CENTER

ON_SITE = {"latitude": SITE_CENTER[0], "longitude": SITE_CENTER[1], "accuracy": 8}
OFF_SITE = {"latitude": SITE_CENTER[0] + 0.01, "longitude": SITE_CENTER[1]}


@pytest.fixture
def crew(site, make_user, auth_headers):
    supervisor = make_user("sam.supervisor", ["supervisor"], site.supervisor)
    worker = make_user("wendy.worker", ["worker"], site.worker)
    return SimpleNamespace(
        site=site,
        supervisor=auth_headers(supervisor),
        worker=auth_headers(worker),
        today=local_today(site.project.timezone).isoformat(),
    )


def _assign(client, crew, tasks):
    return client.post(
        "/supervisor/assign-task",
        json={
            "employee_id": crew.site.worker.id,
            "project_id": crew.site.project.id,
            "task_ids": [t.id for t in tasks],
            "date": crew.today,
        },
        headers=crew.supervisor,
    )


def _types(client, headers):
    resp = client.get("/notifications", headers=headers)
    assert resp.status_code == 200
    return [n["type"] for n in resp.json()]


def test_requests_without_token_are_rejected(client):
    assert client.get("/tasks/today").status_code == 401


def test_invalid_token_is_rejected(client):
    resp = client.get("/tasks/today", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_workers_cannot_assign_tasks(client, crew):
    resp = client.post(
        "/supervisor/assign-task",
        json={"employee_id": crew.site.worker.id, "project_id": crew.site.project.id,
              "task_ids": [crew.site.tasks[0].id], "date": crew.today},
        headers=crew.worker,
    )
    assert resp.status_code == 403


def test_assign_start_complete_flow(client, crew):
    a, b = crew.site.tasks[:2]
    resp = _assign(client, crew, [a, b])
    assert resp.status_code == 200
    first, second = resp.json()["assignments"]
    assert (first["sequence"], second["sequence"]) == (1, 2)
    assert first["status"] == "queued"
    assert first["task_name"] == "A"

    mine = client.get("/tasks/today", params={"date": crew.today}, headers=crew.worker).json()
    assert [t["id"] for t in mine["tasks"]] == [first["id"], second["id"]]

    resp = client.post(f"/tasks/{first['id']}/start", headers=crew.worker)
    assert resp.status_code == 412
    assert resp.json()["error"] == "precondition_failed"

    resp = client.post("/attendance/check-in", json={"project_id": crew.site.project.id, **ON_SITE}, headers=crew.worker)
    assert resp.status_code == 200
    assert resp.json()["attendance"]["inside_geofence_at_checkin"] is True

    resp = client.post(f"/tasks/{first['id']}/start", headers=crew.worker)
    assert resp.status_code == 200
    assert resp.json()["assignment"]["status"] == "in_progress"

    resp = client.post(f"/tasks/{second['id']}/start", headers=crew.worker)
    assert resp.status_code == 409
    assert resp.json() == {"error": "conflict", "message": "Worker already has an active task"}

    assert client.post(f"/tasks/{first['id']}/complete", headers=crew.worker).status_code == 200
    assert client.post(f"/tasks/{second['id']}/start", headers=crew.worker).status_code == 200

    assert "task_assigned" in _types(client, crew.worker)
    assert {"task_started", "task_completed"} <= set(_types(client, crew.supervisor))


def test_rejected_check_in_still_alerts_supervisor(client, crew):
    resp = client.post("/attendance/check-in", json={"project_id": crew.site.project.id, **OFF_SITE}, headers=crew.worker)
    assert resp.status_code == 412
    assert resp.json()["error"] == "precondition_failed"
    assert "geofence_violation" in _types(client, crew.supervisor)

    today = client.get("/attendance/today", params={"project_id": crew.site.project.id}, headers=crew.worker).json()
    assert today == {"attendance": None, "eligible_to_work": False}


def test_double_check_in_conflicts(client, crew):
    body = {"project_id": crew.site.project.id, **ON_SITE}
    assert client.post("/attendance/check-in", json=body, headers=crew.worker).status_code == 200
    assert client.post("/attendance/check-in", json=body, headers=crew.worker).status_code == 409


def test_check_out_before_check_in_is_validation_error(client, crew):
    resp = client.post("/attendance/check-out", json={"project_id": crew.site.project.id, **ON_SITE}, headers=crew.worker)
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_geofence_validate(client, crew):
    resp = client.post(
        "/attendance/geofence/validate",
        json={"project_id": crew.site.project.id, **OFF_SITE},
        headers=crew.worker,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["inside_geofence"] is False
    assert body["can_proceed"] is False
    assert body["strict_mode"] is True


def test_geofence_validate_unknown_project(client, crew):
    resp = client.post("/attendance/geofence/validate", json={"project_id": 9999, **ON_SITE}, headers=crew.worker)
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_eligibility_endpoint(client, crew):
    params = {"employee_id": crew.site.worker.id, "project_id": crew.site.project.id}
    assert client.get("/attendance/eligibility", params=params, headers=crew.supervisor).json()["eligible"] is False
    client.post("/attendance/check-in", json={"project_id": crew.site.project.id, **ON_SITE}, headers=crew.worker)
    assert client.get("/attendance/eligibility", params=params, headers=crew.worker).json()["eligible"] is True


def test_remove_and_resequence_over_http(client, crew):
    rows = _assign(client, crew, crew.site.tasks[:3]).json()["assignments"]

    resp = client.delete(f"/supervisor/task-assignments/{rows[0]['id']}", headers=crew.supervisor)
    assert resp.status_code == 200
    assert resp.json()["resequenced"] == 2

    resp = client.delete(f"/supervisor/task-assignments/{rows[0]['id']}", headers=crew.supervisor)
    assert resp.status_code == 404

    listed = client.get(
        "/supervisor/worker-tasks",
        params={"employee_id": crew.site.worker.id, "date": crew.today},
        headers=crew.supervisor,
    ).json()["tasks"]
    assert [t["sequence"] for t in listed] == [1, 2]
    assert "task_removed" in _types(client, crew.worker)


def test_patch_rejects_state_fields(client, crew):
    [row] = _assign(client, crew, crew.site.tasks[:1]).json()["assignments"]
    resp = client.patch(
        f"/supervisor/task-assignments/{row['id']}",
        json={"status": "completed"},
        headers=crew.supervisor,
    )
    assert resp.status_code == 422


def test_patch_location_notifies_worker(client, crew):
    [row] = _assign(client, crew, crew.site.tasks[:1]).json()["assignments"]
    resp = client.patch(
        f"/supervisor/task-assignments/{row['id']}",
        json={"work_area": "Core B", "priority": "Critical"},
        headers=crew.supervisor,
    )
    assert resp.status_code == 200
    assert resp.json()["assignment"]["priority"] == "critical"
    assert {"task_modified", "task_location_changed"} <= set(_types(client, crew.worker))


def test_daily_targets_endpoint(client, crew):
    rows = _assign(client, crew, crew.site.tasks[:2]).json()["assignments"]
    resp = client.put(
        "/supervisor/daily-targets",
        json={"assignment_updates": [
            {"assignment_id": rows[0]["id"], "daily_target": {"quantity": 20, "unit": "m2"}},
            {"assignment_id": 9999, "daily_target": {"quantity": 1}},
        ]},
        headers=crew.supervisor,
    )
    assert resp.status_code == 200
    [updated] = resp.json()["updated_assignments"]
    assert updated["daily_target"] == {"quantity": 20, "unit": "m2"}


def test_supervisor_dashboards(client, crew):
    rows = _assign(client, crew, crew.site.tasks[:2]).json()["assignments"]
    client.post("/attendance/check-in", json={"project_id": crew.site.project.id, **ON_SITE}, headers=crew.worker)
    client.post(f"/tasks/{rows[0]['id']}/start", headers=crew.worker)

    board = client.get(f"/supervisor/active-tasks/{crew.site.project.id}", headers=crew.supervisor).json()
    assert board["summary"] == {"total_active": 2, "queued": 1, "in_progress": 1}

    workers = client.get(f"/supervisor/checked-in-workers/{crew.site.project.id}", headers=crew.supervisor).json()
    assert [w["assignment_id"] for w in workers["workers"]] == [rows[0]["id"]]


def test_other_workers_cannot_start_my_task(client, crew, make_employee, make_user, auth_headers):
    [row] = _assign(client, crew, crew.site.tasks[:1]).json()["assignments"]
    stranger = make_user("sid.stranger", ["worker"], make_employee("Sid Stranger"))
    resp = client.post(f"/tasks/{row['id']}/start", headers=auth_headers(stranger))
    assert resp.status_code == 403


def test_supervisors_only_manage_their_team(client, crew, make_employee, make_user, auth_headers):
    other_sup = make_employee("Olive Other")
    other = make_user("olive.other", ["supervisor"], other_sup)
    resp = client.post(
        "/supervisor/assign-task",
        json={"employee_id": crew.site.worker.id, "project_id": crew.site.project.id,
              "task_ids": [crew.site.tasks[0].id], "date": crew.today},
        headers=auth_headers(other),
    )
    assert resp.status_code == 403


def test_notification_read_and_preferences(client, crew):
    _assign(client, crew, crew.site.tasks[:1])
    [notif] = client.get("/notifications", headers=crew.worker).json()
    assert notif["read"] is False

    resp = client.post(f"/notifications/{notif['id']}/read", headers=crew.worker)
    assert resp.status_code == 200
    assert client.get("/notifications", params={"unread_only": True}, headers=crew.worker).json() == []

    assert client.get("/notifications/preferences", headers=crew.worker).json()["push"] is True
    resp = client.put(
        "/notifications/preferences",
        json={"push": False, "quiet_hours": {"start": "22:00", "end": "06:00"}},
        headers=crew.worker,
    )
    assert resp.status_code == 200
    assert resp.json()["push"] is False
    assert resp.json()["quiet_hours"] == {"start": "22:00", "end": "06:00"}

    _assign(client, crew, crew.site.tasks[1:2])
    assert len(client.get("/notifications", headers=crew.worker).json()) == 1


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "abc-123"


def test_worker_tasks_status_filter(client, crew):
    _assign(client, crew, crew.site.tasks[:2])
    params = {"employee_id": crew.site.worker.id, "date": crew.today}

    resp = client.get("/supervisor/worker-tasks", params={**params, "status": "QUEUED"}, headers=crew.supervisor)
    assert len(resp.json()["tasks"]) == 2
    resp = client.get("/supervisor/worker-tasks", params={**params, "status": "in_progress"}, headers=crew.supervisor)
    assert resp.json()["tasks"] == []

    resp = client.get("/supervisor/worker-tasks", params={**params, "status": "paused"}, headers=crew.supervisor)
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_location_ping_and_check_out(client, crew):
    project = {"project_id": crew.site.project.id}
    client.post("/attendance/check-in", json={**project, **ON_SITE}, headers=crew.worker)

    resp = client.post("/attendance/location", json={**project, **OFF_SITE}, headers=crew.worker)
    assert resp.status_code == 200
    assert resp.json()["inside_geofence"] is False
    assert "geofence_violation" in _types(client, crew.supervisor)

    resp = client.post("/attendance/check-out", json={**project, **ON_SITE}, headers=crew.worker)
    assert resp.status_code == 200
    assert resp.json()["attendance"]["inside_geofence_at_checkout"] is True


def test_patch_can_clear_work_area(client, crew):
    [row] = _assign(client, crew, crew.site.tasks[:1]).json()["assignments"]
    url = f"/supervisor/task-assignments/{row['id']}"
    client.patch(url, json={"work_area": "Core B"}, headers=crew.supervisor)

    resp = client.patch(url, json={"work_area": None}, headers=crew.supervisor)
    assert resp.status_code == 200
    assert resp.json()["assignment"]["work_area"] is None
    assert resp.json()["assignment"]["priority"] == "medium"
    assert _types(client, crew.worker).count("task_location_changed") == 2


def test_assign_to_unknown_project_is_validation_error(client, crew):
    resp = client.post(
        "/supervisor/assign-task",
        json={"employee_id": crew.site.worker.id, "project_id": 9999,
              "task_ids": [crew.site.tasks[0].id], "date": crew.today},
        headers=crew.supervisor,
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


def test_progress_reporting(client, crew):
    [row] = _assign(client, crew, crew.site.tasks[:1]).json()["assignments"]
    url = f"/tasks/{row['id']}/progress"
    body = {"progress_percent": 25, "description": "Rebar tied on grid A"}

    resp = client.post(url, json=body, headers=crew.worker)
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"

    client.post("/attendance/check-in", json={"project_id": crew.site.project.id, **ON_SITE}, headers=crew.worker)
    client.post(f"/tasks/{row['id']}/start", headers=crew.worker)

    resp = client.post(url, json=body, headers=crew.worker)
    assert resp.status_code == 200
    assert resp.json()["assignment"]["progress_percent"] == 25
    assert "task_progress_updated" in _types(client, crew.supervisor)

    assert client.post(url, json={**body, "progress_percent": 150}, headers=crew.worker).status_code == 422


def test_history_endpoints(client, crew, make_employee, make_user, auth_headers):
    _assign(client, crew, crew.site.tasks[:2])
    client.post("/attendance/check-in", json={"project_id": crew.site.project.id, **ON_SITE}, headers=crew.worker)

    tasks = client.get("/tasks/history", headers=crew.worker).json()
    assert tasks["employee_id"] == crew.site.worker.id
    assert [t["sequence"] for t in tasks["tasks"]] == [1, 2]
    assert tasks["pagination"]["total"] == 2

    records = client.get("/attendance/history", headers=crew.worker).json()
    assert [r["date"] for r in records["records"]] == [crew.today]

    params = {"employee_id": crew.site.worker.id}
    assert client.get("/attendance/history", params=params, headers=crew.supervisor).status_code == 200

    stranger = auth_headers(make_user("sid.stranger", ["worker"], make_employee("Sid Stranger")))
    assert client.get("/tasks/history", params=params, headers=stranger).status_code == 403
    assert client.get("/attendance/history", params=params, headers=stranger).status_code == 403


def test_project_geofence_endpoint(client, crew):
    resp = client.get(f"/attendance/geofence/{crew.site.project.id}", headers=crew.worker)
    assert resp.status_code == 200
    fence = resp.json()["geofence"]
    assert fence["center"] == {"latitude": SITE_CENTER[0], "longitude": SITE_CENTER[1]}
    assert (fence["radius"], fence["strictMode"], fence["allowedVariance"]) == (100, True, 10)

    assert client.get("/attendance/geofence/9999", headers=crew.worker).status_code == 404


def test_assignment_audit_trail(client, crew):
    [row] = _assign(client, crew, crew.site.tasks[:1]).json()["assignments"]
    url = f"/supervisor/task-assignments/{row['id']}"
    client.patch(url, json={"zone": "C"}, headers=crew.supervisor)
    client.delete(url, headers=crew.supervisor)

    resp = client.get(f"{url}/audit", headers=crew.supervisor)
    assert resp.status_code == 200
    assert sorted(e["action"] for e in resp.json()["entries"]) == ["CREATE", "DELETE", "UPDATE"]

    assert client.get("/supervisor/task-assignments/9999/audit", headers=crew.supervisor).status_code == 404
