MOBILE = [{"field": "device", "operator": "equals", "value": "mobile"}]


def _seed(db, add_session):
    for i in range(10):
        add_session(f"s{i}", f"u{i}", device_type="mobile" if i < 3 else "desktop")
    db.commit()


def test_create_counts_users_and_lists(client, db, add_session):
    _seed(db, add_session)

    r = client.post("/api/cohorts", json={"name": "Mobile", "conditions": MOBILE})
    assert r.status_code == 201
    cohort = r.json()["cohort"]
    assert cohort["userCount"] == 3
    assert cohort["conditions"] == MOBILE

    listed = client.get("/api/cohorts", params={"projectId": "default"}).json()["cohorts"]
    assert [c["id"] for c in listed] == [cohort["id"]]


def test_user_count_follows_new_sessions(client, db, add_session):
    _seed(db, add_session)
    cohort_id = client.post("/api/cohorts", json={"name": "Mobile", "conditions": MOBILE}).json()["cohort"]["id"]

    add_session("late", "u-late", device_type="mobile")
    db.commit()

    assert client.get(f"/api/cohorts/{cohort_id}").json()["cohort"]["userCount"] == 4


def test_update_conditions_and_delete(client, db, add_session):
    _seed(db, add_session)
    cohort_id = client.post("/api/cohorts", json={"name": "Mobile", "conditions": MOBILE}).json()["cohort"]["id"]

    r = client.put(
        f"/api/cohorts/{cohort_id}",
        json={"conditions": {"properties": [{"key": "device", "operator": "not_equals", "value": "mobile"}]}},
    )
    assert r.json()["cohort"]["userCount"] == 7

    assert client.delete(f"/api/cohorts/{cohort_id}").status_code == 200
    assert client.get(f"/api/cohorts/{cohort_id}").status_code == 404


def test_rejects_missing_name_conditions_and_unknown_fields(client):
    assert client.post("/api/cohorts", json={"conditions": MOBILE}).status_code == 400
    assert client.post("/api/cohorts", json={"name": "Empty"}).status_code == 400
    assert client.post("/api/cohorts", json={"name": "Empty", "conditions": []}).status_code == 400

    r = client.post(
        "/api/cohorts",
        json={"name": "Odd", "conditions": [{"field": "shoeSize", "operator": "equals", "value": 9}]},
    )
    assert r.status_code == 400
    assert "shoeSize" in r.json()["message"]


def test_analyze_endpoint(client, db, add_session):
    _seed(db, add_session)
    cohort_id = client.post("/api/cohorts", json={"name": "Mobile", "conditions": MOBILE}).json()["cohort"]["id"]

    body = client.get(f"/api/cohorts/{cohort_id}/analyze", params={"dateRange": "7d"}).json()

    assert body["cohortId"] == cohort_id
    assert body["dateRange"] == "7d"
    assert body["userCount"] == 3
    assert body["retention"][0] == {"week": "Week 1", "retention": 100.0, "users": 3}
    assert [m["metric"] for m in body["behavior"]] == [
        "Avg Sessions",
        "Avg Events",
        "Avg Duration (sec)",
        "Active Users (7d)",
    ]

    assert client.get(f"/api/cohorts/{cohort_id}/analyze", params={"dateRange": "forever"}).status_code == 400
    assert client.get("/api/cohorts/missing/analyze").status_code == 404
