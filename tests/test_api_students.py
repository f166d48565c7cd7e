import pytest


@pytest.fixture()
def roster(make_student):
    return {
        "north": [make_student("North", name=f"North {i}") for i in range(3)],
        "south": [make_student("South", name=f"South {i}") for i in range(2)],
        "none": [make_student(None, name="Nowhere")],
    }


def ids(resp):
    return {s["id"] for s in resp.get_json()["data"]}


def test_manager_lists_only_own_region(client, make_user, roster):
    manager = make_user("manager", region="North")
    resp = client.get("/students", headers=manager.headers)
    assert resp.status_code == 200
    assert ids(resp) == set(roster["north"])
    assert all(s["region"] == "North" for s in resp.get_json()["data"])
    # Asking for another region does not widen the scope
    assert client.get("/students?region=South", headers=manager.headers).get_json()["data"] == []


def test_manager_without_region_gets_empty_list(client, make_user, roster):
    manager = make_user("manager")
    resp = client.get("/students", headers=manager.headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"] == []
    assert resp.get_json()["meta"]["total"] == 0


def test_manager_cannot_touch_other_regions(client, make_user, roster):
    manager = make_user("manager", region="North")
    south_id = roster["south"][0]
    assert client.get(f"/students/{south_id}", headers=manager.headers).status_code == 403
    assert client.put(f"/students/{south_id}", json={"grade": "5"}, headers=manager.headers).status_code == 403
    assert client.get("/students/missing", headers=manager.headers).status_code == 404

    north_id = roster["north"][0]
    moved = client.put(f"/students/{north_id}", json={"region": "South"}, headers=manager.headers)
    assert moved.status_code == 403


def test_manager_creates_in_own_region_only(client, make_user):
    manager = make_user("manager", region="North")
    resp = client.post("/students", json={"name": "Amy", "region": "South"}, headers=manager.headers)
    assert resp.status_code == 403
    resp = client.post("/students", json={"name": "Amy", "region": "North", "class": "3A"}, headers=manager.headers)
    assert resp.status_code == 201
    assert resp.get_json()["data"]["class"] == "3A"


def test_admin_sees_everyone_and_filters(client, make_user, roster):
    admin = make_user("admin")
    everyone = client.get("/students", headers=admin.headers)
    assert everyone.get_json()["meta"]["total"] == 6
    south = client.get("/students?region=South", headers=admin.headers)
    assert ids(south) == set(roster["south"])
    page = client.get("/students?limit=2&offset=0", headers=admin.headers).get_json()
    assert len(page["data"]) == 2
    assert page["meta"]["total"] == 6
    search = client.get("/students?q=Nowhere", headers=admin.headers)
    assert ids(search) == set(roster["none"])


def test_student_email_is_unique(client, make_user):
    ct = make_user("class-teacher")
    first = client.post("/students", json={"name": "A", "email": "kid@example.com"}, headers=ct.headers)
    assert first.status_code == 201
    dup = client.post("/students", json={"name": "B", "email": "KID@example.com"}, headers=ct.headers)
    assert dup.status_code == 409
    assert client.post("/students", json={"name": "C", "email": "nope"}, headers=ct.headers).status_code == 400
    assert client.post("/students", json={"region": "North"}, headers=ct.headers).status_code == 400


def test_teacher_needs_an_assignment(client, make_user, roster):
    admin = make_user("admin")
    teacher = make_user("teacher")
    assert client.get("/students", headers=teacher.headers).get_json()["data"] == []
    assert client.post("/students", json={"name": "X"}, headers=teacher.headers).status_code == 403

    mine = roster["north"][:2]
    resp = client.post("/permissions/assign", json={"teacher_id": teacher.id, "student_ids": mine},
                       headers=admin.headers)
    assert resp.status_code == 200
    assert resp.get_json()["data"] == {"added": 2, "removed": 0}

    assert ids(client.get("/students", headers=teacher.headers)) == set(mine)
    detail = client.get(f"/students/{mine[0]}", headers=teacher.headers).get_json()["data"]
    assert detail["access_type"] == "read"
    assert client.put(f"/students/{mine[0]}", json={"grade": "6"}, headers=teacher.headers).status_code == 403
    assert client.get(f"/students/{roster['south'][0]}", headers=teacher.headers).status_code == 403


def test_bulk_reassignment_over_http(client, make_user, roster):
    admin = make_user("admin")
    teacher = make_user("teacher")
    s1, s2, s3 = roster["north"]
    s4 = roster["south"][0]
    client.post("/permissions/assign", json={"teacher_id": teacher.id, "student_ids": [s1, s2, s3]},
                headers=admin.headers)
    resp = client.post("/permissions/assign", json={"teacher_id": teacher.id, "student_ids": [s2, s3, s4]},
                       headers=admin.headers)
    assert resp.get_json()["data"] == {"added": 1, "removed": 1}

    again = client.post("/permissions/assign", json={"teacher_id": teacher.id, "student_ids": [s2, s3, s4]},
                        headers=admin.headers)
    assert again.get_json()["data"] == {"added": 0, "removed": 0}

    assigned = client.get(f"/permissions/assigned/students/{teacher.id}", headers=teacher.headers)
    assert ids(assigned) == {s2, s3, s4}


def test_assignment_validation_and_permissions(client, make_user, roster):
    admin = make_user("admin")
    manager = make_user("manager", region="North")
    teacher = make_user("teacher")
    other = make_user("teacher")
    body = {"teacher_id": teacher.id, "student_ids": roster["north"]}

    assert client.post("/permissions/assign", json=body, headers=manager.headers).status_code == 403

    bad = client.post("/permissions/assign", json={"teacher_id": teacher.id, "student_ids": ["ghost"]},
                      headers=admin.headers)
    assert bad.status_code == 400
    assert bad.get_json()["error"]["details"]["invalid_ids"] == ["ghost"]

    not_list = client.post("/permissions/assign", json={"teacher_id": teacher.id, "student_ids": "all"},
                           headers=admin.headers)
    assert not_list.status_code == 400

    missing = client.post("/permissions/assign", json={"teacher_id": "nobody", "student_ids": []},
                          headers=admin.headers)
    assert missing.status_code == 404

    assert client.get(f"/permissions/assigned/students/{teacher.id}", headers=other.headers).status_code == 403
    assert client.get(f"/permissions/assigned/students/{teacher.id}", headers=manager.headers).status_code == 200


def test_regions_list_is_refreshed_after_writes(client, make_user, roster):
    ct = make_user("class-teacher")
    assert client.get("/students/regions", headers=ct.headers).get_json()["data"] == ["North", "South"]
    client.post("/students", json={"name": "East kid", "region": "East"}, headers=ct.headers)
    assert client.get("/students/regions", headers=ct.headers).get_json()["data"] == ["East", "North", "South"]


def test_delete_student_removes_assignments(client, make_user, roster):
    admin = make_user("admin")
    teacher = make_user("teacher")
    target = roster["north"][0]
    client.post("/permissions/assign", json={"teacher_id": teacher.id, "student_ids": [target]},
                headers=admin.headers)
    assert client.delete(f"/students/{target}", headers=teacher.headers).status_code == 403
    assert client.delete(f"/students/{target}", headers=admin.headers).status_code == 200
    assert client.get(f"/permissions/assigned/students/{teacher.id}", headers=teacher.headers).get_json()["data"] == []
