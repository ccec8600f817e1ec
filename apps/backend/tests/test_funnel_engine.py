import pytest

from app.core.errors import NotFoundError, ValidationError
from app.core.store import AnalyticsStore
from app.models.analysis import Funnel
from app.services.funnel_engine import FunnelEngine, SegmentFilters, normalize_steps

CHECKOUT_STEPS = [
    {"order": 1, "name": "Landing", "eventType": "pageview", "pageURL": "/"},
    {"order": 2, "name": "Add to cart", "eventType": "click", "elementSelector": ".add-to-cart"},
    {"order": 3, "name": "Checkout", "eventType": "submit"},
]


def _funnel(db, steps=CHECKOUT_STEPS, **kw):
    f = Funnel(name=kw.pop("name", "Checkout"), project_id="default", steps=steps, **kw)
    db.add(f)
    db.commit()
    return f


def test_conversion_100_50_20(db, add_event):
    for i in range(100):
        add_event(f"u{i}", "pageview", "/")
    for i in range(50):
        add_event(f"u{i}", "click", "/product/1", element_class="btn add-to-cart")
    for i in range(20):
        add_event(f"u{i}", "submit", "/checkout")
    funnel = _funnel(db)

    result = FunnelEngine(AnalyticsStore(db)).analyze(funnel.id)

    assert [s.users for s in result.steps] == [100, 50, 20]
    assert [(s.conversion_rate, s.dropoff_rate) for s in result.steps] == [
        (100.0, 0.0),
        (50.0, 50.0),
        (40.0, 60.0),
    ]
    assert result.total_entered == 100
    assert result.completed == 20
    assert result.overall_conversion == 20.0


def test_no_filters_means_zero_lift(db, add_event):
    for i in range(10):
        add_event(f"u{i}", "pageview", "/")
    for i in range(3):
        add_event(f"u{i}", "click", "/", element_id="add-to-cart")
        add_event(f"u{i}", "submit", "/checkout")
    funnel = _funnel(db)

    result = FunnelEngine(AnalyticsStore(db)).analyze(funnel.id, "30d")

    assert result.filters_applied is False
    assert result.conversion_lift_pct == 0
    assert result.baseline_rate == result.filtered_rate == 30.0
    assert result.baseline_steps is None


def test_segment_filter_reports_lift_against_baseline(db, add_event):
    steps = [
        {"name": "Landing", "eventType": "pageview"},
        {"name": "Purchase", "eventType": "submit"},
    ]
    # 10 users enter, 5 buy; 4 of the entrants are mobile and 3 of those buy
    for i in range(10):
        device = "mobile" if i < 4 else "desktop"
        add_event(f"u{i}", "pageview", "/", device_type=device)
        if i < 3 or 6 <= i < 8:
            add_event(f"u{i}", "submit", "/checkout", device_type=device)
    funnel = _funnel(db, steps=steps)

    result = FunnelEngine(AnalyticsStore(db)).analyze(funnel.id, "7d", SegmentFilters(device="mobile"))

    assert result.filters_applied is True
    assert result.filters == {"device": "mobile"}
    assert [s.users for s in result.steps] == [4, 3]
    assert [s.users for s in result.baseline_steps] == [10, 5]
    assert result.baseline_rate == 50.0
    assert result.filtered_rate == 75.0
    assert result.conversion_lift_pct == 50.0


def test_avg_time_to_next_uses_earliest_event_and_next_after_it(db, add_event):
    steps = [
        {"name": "View", "eventType": "pageview"},
        {"name": "Click", "eventType": "click"},
    ]
    add_event("a", "pageview", minutes_ago=60)
    add_event("a", "pageview", minutes_ago=55)
    add_event("a", "click", minutes_ago=50)  # 600 s after the earliest view
    add_event("b", "click", minutes_ago=40)  # before b's view, ignored
    add_event("b", "pageview", minutes_ago=30)
    add_event("b", "click", minutes_ago=25)  # 300 s
    add_event("c", "pageview", minutes_ago=10)  # never clicks
    funnel = _funnel(db, steps=steps)

    result = FunnelEngine(AnalyticsStore(db)).analyze(funnel.id)

    assert result.steps[0].avg_time_to_next == 450
    assert result.steps[1].avg_time_to_next is None


def test_avg_time_to_next_is_none_when_nobody_advances(db, add_event):
    steps = [
        {"name": "View", "eventType": "pageview"},
        {"name": "Click", "eventType": "click"},
    ]
    add_event("a", "click", minutes_ago=30)
    add_event("a", "pageview", minutes_ago=10)
    funnel = _funnel(db, steps=steps)

    result = FunnelEngine(AnalyticsStore(db)).analyze(funnel.id)

    assert result.steps[0].avg_time_to_next is None


def test_events_outside_window_and_project_are_ignored(db, add_event):
    steps = [
        {"name": "View", "eventType": "pageview"},
        {"name": "Click", "eventType": "click"},
    ]
    add_event("old", "pageview", minutes_ago=60 * 24 * 10)
    add_event("other", "pageview", project_id="shop-2")
    add_event("fresh", "pageview", minutes_ago=5)
    funnel = _funnel(db, steps=steps)

    result = FunnelEngine(AnalyticsStore(db)).analyze(funnel.id, "7d")

    assert result.steps[0].users == 1
    # previous step empty -> rate 0, not a division error
    assert result.steps[1].conversion_rate == 0.0
    assert result.steps[1].dropoff_rate == 100.0


def test_stats_snapshot_is_written_once_for_unchanged_data(db, add_event):
    add_event("a", "pageview", "/")
    funnel = _funnel(db)
    engine = FunnelEngine(AnalyticsStore(db))

    engine.analyze(funnel.id)
    db.refresh(funnel)
    first = funnel.stats
    assert first["totalEntered"] == 1
    assert first["dateRange"] == "7d"

    engine.analyze(funnel.id)
    db.refresh(funnel)
    assert funnel.stats["analyzedAt"] == first["analyzedAt"]


def test_unknown_date_range_and_funnel(db):
    funnel = _funnel(db)
    engine = FunnelEngine(AnalyticsStore(db))

    with pytest.raises(ValidationError):
        engine.analyze(funnel.id, "1y")
    with pytest.raises(NotFoundError):
        engine.analyze("missing")


def test_normalize_steps_assigns_orders_and_rejects_bad_input():
    steps = normalize_steps([
        {"name": "B", "eventType": "click", "order": 5},
        {"name": "A", "eventType": "pageview", "order": 1},
    ])
    assert [s["name"] for s in steps] == ["A", "B"]

    positional = normalize_steps([
        {"name": "A", "eventType": "pageview"},
        {"name": "B", "eventType": "click"},
    ])
    assert [s["order"] for s in positional] == [1, 2]

    with pytest.raises(ValidationError):
        normalize_steps([{"name": "Only", "eventType": "pageview"}])
    with pytest.raises(ValidationError):
        normalize_steps([
            {"name": "A", "eventType": "pageview", "order": 1},
            {"name": "B", "eventType": "click", "order": 1},
        ])
