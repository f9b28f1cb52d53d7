from voxrelay.streaming.pacing import PacingFilter


def test_pacing_accepts_first_result_without_history():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    d = p.evaluate("hola", is_final=False, now_ms=0.0)
    assert d.accept is True
    assert d.reason == "first"
    assert p.last_text == "hola"


def test_pacing_drops_interim_inside_interval():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    p.evaluate("hola", is_final=False, now_ms=0.0)
    d = p.evaluate("hola que", is_final=False, now_ms=300.0)
    assert d.accept is False
    assert d.reason == "interval"
    assert p.last_text == "hola"


def test_pacing_accepts_interim_after_interval():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    p.evaluate("hola", is_final=False, now_ms=0.0)
    d = p.evaluate("hola que tal", is_final=False, now_ms=850.0)
    assert d.accept is True
    assert d.reason == "interim"


def test_pacing_final_bypasses_interval():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    p.evaluate("hola", is_final=False, now_ms=0.0)
    d = p.evaluate("hola mundo", is_final=True, now_ms=100.0)
    assert d.accept is True
    assert d.reason == "final"


def test_pacing_drops_final_repeating_last_text_inside_window():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    p.evaluate("hola mundo", is_final=False, now_ms=0.0)
    d = p.evaluate("hola mundo", is_final=True, now_ms=1200.0)
    assert d.accept is False
    assert d.reason == "duplicate"


def test_pacing_accepts_repeated_final_after_window_expires():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    p.evaluate("sí", is_final=True, now_ms=0.0)
    d = p.evaluate("sí", is_final=True, now_ms=1600.0)
    assert d.accept is True
    assert d.reason == "final"


def test_pacing_identical_interims_faster_than_interval_emit_once():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    accepted = 0
    for i in range(8):
        if p.evaluate("buenos días", is_final=False, now_ms=i * 90.0).accept:
            accepted += 1
    final = p.evaluate("buenos días", is_final=True, now_ms=8 * 90.0)
    assert accepted == 1
    assert final.accept is False


def test_pacing_ignores_blank_text():
    p = PacingFilter()
    d = p.evaluate("   ", is_final=True, now_ms=0.0)
    assert d.accept is False
    assert d.reason == "empty"
    assert p.last_accepted_ms is None


def test_pacing_reset_forgets_last_text():
    p = PacingFilter(min_interval_ms=800, duplicate_window_ms=1500)
    p.evaluate("hola", is_final=True, now_ms=0.0)
    p.reset()
    d = p.evaluate("hola", is_final=True, now_ms=10.0)
    assert d.accept is True
    assert d.reason == "first"
