import asyncio

from pagepulse import storage as keys
from pagepulse.dom import Element, InputEvent, Page, PointerEvent, ScrollEvent, VisibilityEvent

BUTTON = Element("button", id="buy", class_name="btn primary", text="Buy now")


def _types(events):
    return [(e["eventType"], e["eventName"]) for e in events]


def test_init_tracks_a_page_view(make_capture, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        events = cap.buffer.snapshot()
        await cap.destroy()
        return cap, events

    cap, events = run(scenario())

    assert _types(events) == [("pageview", "page_view")]
    assert events[0]["pageURL"] == "https://shop.test/products/1"
    assert events[0]["metadata"] == {"path": "/products/1"}
    assert events[0]["sessionId"] == cap.session_id


def test_reaching_batch_size_delivers_without_the_timer(make_capture, transport, run, wait):
    async def scenario():
        cap = make_capture(batch_size=3)
        await cap.init()
        cap.dispatch("click", PointerEvent(BUTTON, 10, 20))
        assert transport.batches == []
        cap.dispatch("click", PointerEvent(BUTTON, 11, 21))
        await wait()
        remaining = len(cap.buffer)
        await cap.destroy()
        return remaining

    assert run(scenario()) == 0
    assert len(transport.batches) == 1
    assert _types(transport.batches[0]) == [("pageview", "page_view"), ("click", "click"), ("click", "click")]
    assert transport.batches[0][1]["elementId"] == "buy"
    assert transport.batches[0][1]["metadata"]["text"] == "Buy now"


def test_failed_batch_is_requeued_ahead_of_newer_events(make_capture, transport, run, wait):
    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.dispatch("click", PointerEvent(Element("button", id="first")))

        transport.gate = asyncio.Event()
        transport.fail = True
        cap.request_flush()
        await wait()
        # in flight: the buffer is empty and new activity queues behind it
        assert len(cap.buffer) == 0
        cap.dispatch("click", PointerEvent(Element("button", id="second")))

        transport.gate.set()
        await wait()
        after_failure = [e["elementId"] for e in cap.buffer.snapshot()]

        transport.fail = False
        transport.gate = None
        await cap.flush()
        await cap.destroy()
        return after_failure

    assert run(scenario()) == [None, "first", "second"]
    assert len(transport.batches) == 1
    assert [e["elementId"] for e in transport.batches[0]] == [None, "first", "second"]


def test_auto_flush_waits_out_the_backoff(make_capture, transport, clock, run, wait):
    async def scenario():
        cap = make_capture(batch_size=2, retry_base_ms=1000)
        await cap.init()
        transport.fail = True
        cap.dispatch("click", PointerEvent(BUTTON))
        await wait()
        assert transport.batches == []

        transport.fail = False
        cap.dispatch("click", PointerEvent(BUTTON))
        await wait()
        held = len(cap.buffer)

        clock.advance(1500)
        cap.dispatch("click", PointerEvent(BUTTON))
        await wait()
        await cap.destroy()
        return held

    assert run(scenario()) == 3
    assert [len(b) for b in transport.batches] == [4]


def test_becoming_admin_discards_and_suppresses(make_capture, transport, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.set_admin_status(True)
        cap.dispatch("click", PointerEvent(BUTTON))
        await cap.flush()
        pending = len(cap.buffer)
        await cap.destroy()
        return cap, pending

    cap, pending = run(scenario())

    assert pending == 0
    assert transport.batches == []
    assert cap.dropped["admin_user"] == 2
    assert cap.storage.get(keys.IS_ADMIN) == "true"


def test_admin_page_is_never_tracked(make_capture, run):
    async def scenario():
        cap = make_capture(url="https://shop.test/admin/orders")
        await cap.init()
        tracked = cap.track_custom_event("export")
        events = cap.buffer.snapshot()
        await cap.destroy()
        return tracked, events

    assert run(scenario()) == (False, [])


def test_navigating_into_admin_area_stops_capture(make_capture, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.dispatch("navigate", Page(url="https://shop.test/admin"))
        cap.dispatch("click", PointerEvent(BUTTON))
        events = cap.buffer.snapshot()
        await cap.destroy()
        return events

    assert _types(run(scenario())) == [("pageview", "page_view")]


def test_opt_out_and_opt_in(make_capture, storage, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.opt_out()
        out = cap.track_custom_event("newsletter")
        cap.opt_in()
        back = cap.track_custom_event("newsletter")
        names = [e["eventName"] for e in cap.buffer.snapshot()]
        await cap.destroy()
        return out, back, names

    assert run(scenario()) == (False, True, ["newsletter"])
    assert storage.get(keys.OPT_OUT) is None


def test_tracking_disabled_in_storage(make_capture, storage, run):
    storage.set(keys.TRACKING_ENABLED, "false")

    async def scenario():
        cap = make_capture()
        await cap.init()
        events = cap.buffer.snapshot()
        await cap.destroy()
        return cap, events

    cap, events = run(scenario())
    assert events == []
    assert cap.dropped["tracking_disabled"] == 1


def test_hover_needs_the_dwell_threshold(make_capture, clock, run):
    link = Element("a", id="promo")

    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.dispatch("mouseover", PointerEvent(link))
        clock.advance(600)
        cap.dispatch("mouseout", PointerEvent(link))
        short = [e for e in cap.buffer.snapshot() if e["eventType"] == "hover"]

        cap.dispatch("mouseover", PointerEvent(link))
        clock.advance(1200)
        cap.dispatch("mouseout", PointerEvent(link))
        long = [e for e in cap.buffer.snapshot() if e["eventType"] == "hover"]
        await cap.destroy()
        return short, long

    short, long = run(scenario())
    assert short == []
    assert len(long) == 1
    assert long[0]["metadata"]["duration"] == 1200
    assert long[0]["elementId"] == "promo"


def test_scroll_is_throttled(make_capture, clock, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        for step in (0, 100, 499, 600, 1200):
            clock.now = 1_700_000_000_000.0 + step
            cap.dispatch("scroll", ScrollEvent(scroll_y=step, page_height=3000, viewport_height=1000))
        scrolls = [e["metadata"] for e in cap.buffer.snapshot() if e["eventType"] == "scroll"]
        await cap.destroy()
        return scrolls

    assert [s["scrollY"] for s in run(scenario())] == [0, 600, 1200]


def test_mousemove_only_with_heatmaps(make_capture, run):
    async def scenario(**cfg):
        cap = make_capture(**cfg)
        await cap.init()
        cap.dispatch("mousemove", PointerEvent(BUTTON, 5, 5))
        moves = [e for e in cap.buffer.snapshot() if e["eventType"] == "mousemove"]
        await cap.destroy()
        return moves

    assert run(scenario()) == []
    assert len(run(scenario(enable_heatmaps=True))) == 1


def test_inputs_never_carry_values(make_capture, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.dispatch("input", InputEvent(Element("input", name="pw", input_type="password"), "hunter2"))
        cap.dispatch("change", InputEvent(Element("input", name="email", input_type="email"), "a@b.c"))
        inputs = [e["metadata"] for e in cap.buffer.snapshot() if e["eventType"] == "input"]
        await cap.destroy()
        return inputs

    assert run(scenario()) == [{"inputType": "email", "fieldName": "email", "hasValue": True}]


def test_a_failing_listener_does_not_stop_the_others(make_capture, run):
    seen = []

    def boom(evt):
        raise RuntimeError("host bug")

    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.on("click", boom)
        cap.on("click", seen.append)
        cap.dispatch("click", PointerEvent(BUTTON))
        clicks = [e for e in cap.buffer.snapshot() if e["eventType"] == "click"]
        await cap.destroy()
        return clicks

    assert len(run(scenario())) == 1
    assert len(seen) == 1


def test_identity_and_super_properties(make_capture, storage, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.set_super_properties({"plan": "pro"})
        cap.identify("user-42", {"tier": "gold"})
        cap.dispatch("click", PointerEvent(BUTTON))
        click = cap.buffer.snapshot()[-1]
        await cap.destroy()
        return click

    click = run(scenario())
    assert click["userId"] == "user-42"
    assert click["metadata"]["plan"] == "pro"
    assert click["metadata"]["tier"] == "gold"
    assert storage.get(keys.USER_ID) == "user-42"


def test_reset_starts_a_new_anonymous_session(make_capture, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.identify("user-1")
        before = cap.session_id
        cap.reset()
        state = (before != cap.session_id, cap.user_id, cap.super_properties, len(cap.buffer))
        await cap.destroy()
        return state

    assert run(scenario()) == (True, "anonymous", {}, 0)


def test_hiding_the_page_delivers_right_away(make_capture, transport, clock, run, wait):
    async def scenario():
        cap = make_capture()
        await cap.init()
        clock.advance(5000)
        cap.dispatch("visibilitychange", VisibilityEvent(hidden=True))
        await wait()
        await cap.destroy()

    run(scenario())
    sent = transport.batches[0]
    assert _types(sent)[-1] == ("custom", "page_hidden")
    assert sent[-1]["metadata"]["timeOnPage"] == 5000


def test_pagehide_uses_the_beacon_and_runs_hooks(make_capture, transport, run):
    hooks = []

    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.add_unload_hook(lambda: hooks.append("relay"))
        cap.dispatch("click", PointerEvent(BUTTON))
        cap.dispatch("pagehide")
        pending = len(cap.buffer)
        await cap.destroy()
        return cap, pending

    cap, pending = run(scenario())

    assert pending == 0
    assert hooks == ["relay"]
    path, payload = transport.beacons[0]
    assert path == cap.config.batch_path
    assert payload["sessionId"] == cap.session_id
    assert len(payload["interactions"]) == 2


def test_lost_beacon_is_counted(make_capture, transport, run):
    async def scenario():
        cap = make_capture()
        await cap.init()
        transport.fail = True
        cap.flush_on_unload()
        transport.fail = False
        await cap.destroy()
        return cap

    assert run(scenario()).dropped["unload_lost"] == 1


def test_buffer_keeps_the_newest_events(make_capture, run):
    async def scenario():
        cap = make_capture(max_buffer=3, batch_size=100)
        await cap.init()
        for i in range(4):
            cap.track_custom_event(f"e{i}")
        names = [e["eventName"] for e in cap.buffer.snapshot()]
        dropped = cap.buffer.dropped
        cap.buffer.clear()
        await cap.destroy()
        return names, dropped

    assert run(scenario()) == (["e1", "e2", "e3"], 2)


def test_repeated_mouseover_keeps_the_first_start(make_capture, clock, run):
    link = Element("a", id="promo")

    async def scenario():
        cap = make_capture()
        await cap.init()
        cap.dispatch("mouseover", PointerEvent(link))
        clock.advance(600)
        cap.dispatch("mouseover", PointerEvent(link))
        clock.advance(600)
        cap.dispatch("mouseout", PointerEvent(link))
        hovers = [e for e in cap.buffer.snapshot() if e["eventType"] == "hover"]
        await cap.destroy()
        return hovers

    hovers = run(scenario())
    assert len(hovers) == 1
    assert hovers[0]["metadata"]["duration"] == 1200


def test_destroy_leaves_no_retry_behind(make_capture, transport, run):
    async def scenario():
        cap = make_capture(retry_base_ms=10)
        await cap.init()
        cap.dispatch("click", PointerEvent(BUTTON))
        transport.fail = True
        await cap.destroy()
        handle = cap._retry_handle

        transport.fail = False
        await asyncio.sleep(0.05)
        return cap, handle

    cap, handle = run(scenario())
    assert handle is None
    assert transport.batches == []
    assert transport.closed
    assert cap.request_flush() is None
    assert len(cap.buffer) == 2
