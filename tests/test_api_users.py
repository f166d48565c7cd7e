def test_user_listing_requires_user_manage(client, make_user):
    teacher = make_user("teacher")
    manager = make_user("manager", region="North")
    assert client.get("/users", headers=teacher.headers).status_code == 403

    resp = client.get("/users?role=teacher", headers=manager.headers)
    assert resp.status_code == 200
    assert [u["id"] for u in resp.get_json()["data"]] == [teacher.id]
    assert client.get("/users?region=North", headers=manager.headers).get_json()["meta"]["total"] == 1


def test_profile_update_rejects_admin_fields(client, make_user):
    teacher = make_user("teacher")
    assert client.put("/users/me", json={"role": "admin"}, headers=teacher.headers).status_code == 403
    assert client.put("/users/me", json={"region": "North"}, headers=teacher.headers).status_code == 403
    assert client.put("/users/me", json={"name": "  "}, headers=teacher.headers).status_code == 400

    resp = client.put("/users/me", json={"name": "Ms Chen"}, headers=teacher.headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["name"] == "Ms Chen"


def test_activity_heartbeat(client, make_user):
    teacher = make_user("teacher")
    resp = client.post("/users/me/activity", headers=teacher.headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["last_active"] is not None


def test_role_changes_cannot_escalate(client, make_user):
    manager = make_user("manager")
    teacher = make_user("teacher")

    up = client.put(f"/users/{teacher.id}", json={"role": "admin"}, headers=manager.headers)
    assert up.status_code == 403
    same = client.put(f"/users/{teacher.id}", json={"role": "manager"}, headers=manager.headers)
    assert same.status_code == 200
    assert same.get_json()["data"]["role"]["name"] == "manager"

    unknown = client.put(f"/users/{teacher.id}", json={"role": "wizard"}, headers=manager.headers)
    assert unknown.status_code == 400


def test_manager_cannot_edit_higher_ranked_user(client, make_user):
    manager = make_user("manager")
    admin = make_user("admin")
    assert client.put(f"/users/{admin.id}", json={"region": "South"}, headers=manager.headers).status_code == 403
    assert client.get(f"/users/{admin.id}", headers=manager.headers).status_code == 200


def test_role_change_by_id(client, make_user):
    admin = make_user("admin")
    candidate = make_user("candidate")
    roles = client.get("/roles", headers=admin.headers).get_json()["data"]
    assert [r["name"] for r in roles] == [
        "root", "admin", "manager", "class-teacher", "teacher", "candidate", "new-registrant",
    ]
    teacher_role = next(r["id"] for r in roles if r["name"] == "teacher")
    resp = client.put(f"/users/{candidate.id}", json={"role_id": teacher_role, "region": "East"}, headers=admin.headers)
    data = resp.get_json()["data"]
    assert data["role"]["name"] == "teacher"
    assert data["region"] == "East"


def test_self_edit_cannot_touch_admin_fields(client, make_user):
    teacher = make_user("teacher")
    resp = client.put(f"/users/{teacher.id}", json={"role": "teacher"}, headers=teacher.headers)
    assert resp.status_code == 403


def test_cannot_deactivate_or_delete_self(client, make_user):
    admin = make_user("admin")
    assert client.put(f"/users/{admin.id}", json={"is_active": False}, headers=admin.headers).status_code == 400
    assert client.delete(f"/users/{admin.id}", headers=admin.headers).status_code == 403


def test_delete_user_keeps_their_forms(client, make_user):
    admin = make_user("admin")
    author = make_user("class-teacher")
    form_id = client.post("/forms", json={"title": "Kept"}, headers=author.headers).get_json()["data"]["id"]

    assert client.delete(f"/users/{author.id}", headers=admin.headers).get_json()["data"]["deleted"] is True
    assert client.get(f"/users/{author.id}", headers=admin.headers).status_code == 404
    form = client.get(f"/forms/{form_id}", headers=admin.headers).get_json()["data"]
    assert form["created_by"] is None


def test_analytics_is_root_only(client, make_user, make_student):
    root = make_user("root")
    admin = make_user("admin")
    make_student("North", is_disadvantaged=True)
    assert client.get("/analytics", headers=admin.headers).status_code == 403

    data = client.get("/analytics", headers=root.headers).get_json()["data"]
    assert data["users"]["total"] == 2
    assert data["users"]["by_role"] == {"root": 1, "admin": 1}
    assert data["students"] == {"total": 1, "by_region": {"North": 1}, "disadvantaged": 1}
