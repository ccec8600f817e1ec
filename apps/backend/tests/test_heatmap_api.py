from app.services.heatmap import point_of

PAGE = "https://shop.test/products/1"


def _seed(add_event, db):
    add_event("u1", "click", page_url=PAGE, payload={"x": 12, "y": 25}, device_type="desktop")
    add_event("u1", "click", page_url=PAGE, payload={"x": 18.6, "y": 39}, device_type="desktop")
    add_event("u2", "click", page_url=PAGE, payload={"x": 45, "y": 5}, device_type="mobile")
    # no coordinates
    add_event("u3", "click", page_url=PAGE, payload={"tag": "button"})
    add_event("u3", "mousemove", page_url=PAGE, payload={"x": 300, "y": 410})
    add_event("u4", "click", page_url="https://shop.test/products/2", payload={"x": 1, "y": 1})
    # outside the default 7d window
    add_event("u5", "click", page_url=PAGE, payload={"x": 12, "y": 25}, minutes_ago=8 * 24 * 60)
    db.commit()


def test_clicks_are_bucketed_hottest_first(client, add_event, db):
    _seed(add_event, db)

    r = client.get("/api/tracking/heatmap", params={"pageURL": PAGE})
    assert r.status_code == 200
    body = r.json()
    assert body["eventType"] == "click"
    assert body["gridSize"] == 20
    assert body["points"] == [{"x": 0, "y": 20, "value": 2}, {"x": 40, "y": 0, "value": 1}]
    assert body["totalInteractions"] == 3
    assert body["uniqueUsers"] == 2
    assert body["maxValue"] == 2


def test_type_device_and_grid_size(client, add_event, db):
    _seed(add_event, db)

    moves = client.get("/api/tracking/heatmap", params={"pageURL": PAGE, "type": "move"}).json()
    assert moves["eventType"] == "mousemove"
    assert moves["points"] == [{"x": 300, "y": 400, "value": 1}]

    mobile = client.get("/api/tracking/heatmap", params={"pageURL": PAGE, "device": "mobile"}).json()
    assert mobile["points"] == [{"x": 40, "y": 0, "value": 1}]

    fine = client.get("/api/tracking/heatmap", params={"pageURL": PAGE, "gridSize": 1}).json()
    assert len(fine["points"]) == 3


def test_wildcard_pages_are_aggregated_together(client, add_event, db):
    _seed(add_event, db)

    body = client.get("/api/tracking/heatmap", params={"pageURL": "https://shop.test/products/*"}).json()
    assert body["totalInteractions"] == 4
    assert body["uniqueUsers"] == 3


def test_raw_points_skip_events_without_coordinates(client, add_event, db):
    _seed(add_event, db)

    r = client.get("/api/tracking/heatmap/raw", params={"pageURL": PAGE, "limit": 10})
    assert r.status_code == 200
    points = r.json()["points"]
    assert sorted((p["x"], p["y"]) for p in points) == [(12.0, 25.0), (18.6, 39.0), (45.0, 5.0)]
    assert all("timestamp" in p for p in points)


def test_bad_heatmap_queries_are_rejected(client):
    for params in (
        {},
        {"pageURL": PAGE, "type": "scroll"},
        {"pageURL": PAGE, "gridSize": 0},
        {"pageURL": PAGE, "dateRange": "1y"},
    ):
        r = client.get("/api/tracking/heatmap", params=params)
        assert r.status_code == 400, params
        assert r.json()["error"] == "validation_error"

    assert client.get("/api/tracking/heatmap/raw", params={"pageURL": PAGE, "limit": 0}).status_code == 400


def test_point_of_needs_two_numbers():
    assert point_of({"x": 3, "y": 4.5}) == (3.0, 4.5)
    assert point_of({"x": True, "y": 1}) is None
    assert point_of({"x": "3", "y": 1}) is None
    assert point_of({"x": float("nan"), "y": 1}) is None
    assert point_of(None) is None
