import base64

import pytest
import requests

from fileconv.client.polling import (
    ClientPollError,
    PollingClient,
    PollState,
    SubmissionError,
    TaskProgress,
    convert_file,
)


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self.text = str(body)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class ManualScheduler:
    """Virtual timers: nothing fires until run_next() advances the clock to the next due timer."""

    def __init__(self, clock):
        self.clock = clock
        self.timers = []

    def call_later(self, delay, fn):
        handle = {"due": self.clock.now + delay, "delay": delay, "fn": fn, "cancelled": False}
        self.timers.append(handle)
        return handle

    def cancel(self, handle):
        handle["cancelled"] = True

    @property
    def live(self):
        return [t for t in self.timers if not t["cancelled"]]

    def run_next(self):
        handle = min(self.live, key=lambda t: t["due"])
        self.timers.remove(handle)
        self.clock.now = handle["due"]
        handle["fn"]()
        return handle

    def run_until_idle(self, limit=1000):
        for _ in range(limit):
            if not self.live:
                return
            self.run_next()
        raise AssertionError("timers never went idle")


class ScriptedFetch:
    def __init__(self, *responses, default=None):
        self.responses = list(responses)
        self.default = default
        self.calls = []

    def __call__(self, task_id):
        self.calls.append(task_id)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item()
        return item


PENDING = FakeResponse(200, {"status": "pending", "progress": 10})
DONE = FakeResponse(200, {"status": "done", "progress": 100, "mime": "image/webp", "dataBase64": "UklGRg=="})


@pytest.fixture
def timers(clock):
    return ManualScheduler(clock)


def make_client(fetch, timers, clock, **kwargs):
    return PollingClient(fetch=fetch, scheduler=timers, clock=clock, **kwargs)


def test_starts_idle_and_schedules_first_poll(timers, clock):
    client = make_client(ScriptedFetch(DONE), timers, clock)
    assert client.state is PollState.IDLE
    client.start("t1", lambda u: None)
    assert client.state is PollState.POLLING
    assert [t["delay"] for t in timers.live] == [0.8]


def test_done_stops_after_forwarding(timers, clock):
    updates = []
    client = make_client(ScriptedFetch(PENDING, DONE), timers, clock)
    client.start("t1", updates.append)
    timers.run_until_idle()

    assert [u.status for u in updates] == ["pending", "done"]
    assert updates[-1].mime == "image/webp"
    assert client.state is PollState.STOPPED
    assert client.wait(0) is True
    assert timers.live == []


def test_retry_after_header_sets_next_delay(timers, clock):
    fetch = ScriptedFetch(FakeResponse(429, {"detail": {}}, {"Retry-After": "2"}), DONE)
    updates = []
    client = make_client(fetch, timers, clock)
    client.start("t1", updates.append)

    timers.run_next()
    (next_timer,) = timers.live
    assert 2.0 <= next_timer["delay"] <= client.max_delay_ms / 1000
    assert client.state is PollState.POLLING
    assert updates == []

    timers.run_next()
    assert [u.status for u in updates] == ["done"]


def test_rate_limit_without_header_backs_off_to_max(timers, clock):
    too_many = FakeResponse(429, None)
    client = make_client(ScriptedFetch(too_many, too_many, too_many, DONE), timers, clock)
    client.start("t1", lambda u: None)
    delays = []
    for _ in range(3):
        timers.run_next()
        delays.append(timers.live[0]["delay"])
    assert delays == pytest.approx([1.2, 1.8, 2.0])


def test_server_hint_is_clamped(timers, clock):
    slow = FakeResponse(200, {"status": "pending", "retryAfterMs": 5000})
    fast = FakeResponse(200, {"status": "pending", "retryAfterMs": 100})
    client = make_client(ScriptedFetch(slow, fast, DONE), timers, clock)
    client.start("t1", lambda u: None)
    timers.run_next()
    assert timers.live[0]["delay"] == pytest.approx(2.0)
    timers.run_next()
    assert timers.live[0]["delay"] == pytest.approx(0.8)


def test_never_finishing_task_times_out_once(timers, clock):
    updates = []
    client = make_client(ScriptedFetch(default=PENDING), timers, clock, timeout_ms=30_000)
    started = clock.now
    client.start("t1", updates.append)
    timers.run_until_idle()

    timeouts = [u for u in updates if u.error is ClientPollError.TIMEOUT]
    assert len(timeouts) == 1
    assert updates[-1] is timeouts[0]
    assert client.state is PollState.STOPPED
    assert clock.now - started <= 30.0 + 0.8


def test_timeout_also_applies_while_rate_limited(timers, clock):
    updates = []
    limited = FakeResponse(429, None, {"Retry-After": "1"})
    client = make_client(ScriptedFetch(default=limited), timers, clock, timeout_ms=5_000)
    client.start("t1", updates.append)
    timers.run_until_idle()
    assert [u.error for u in updates] == [ClientPollError.TIMEOUT]


@pytest.mark.parametrize("code", [404, 500])
def test_other_http_errors_are_terminal(timers, clock, code):
    updates = []
    client = make_client(ScriptedFetch(FakeResponse(code, {"detail": "x"})), timers, clock)
    client.start("t1", updates.append)
    timers.run_until_idle()
    assert len(updates) == 1
    assert updates[0].status == "error"
    assert updates[0].message == f"error ({code})"
    assert updates[0].error is ClientPollError.TERMINAL


def test_network_error_is_terminal_without_retry(timers, clock):
    updates = []
    fetch = ScriptedFetch(requests.ConnectionError("connection refused"), default=DONE)
    client = make_client(fetch, timers, clock)
    client.start("t1", updates.append)
    timers.run_until_idle()
    assert len(fetch.calls) == 1
    assert updates[0].error is ClientPollError.NETWORK_ERROR
    assert updates[0].message.startswith("network error:")


def test_unparsable_body_is_terminal(timers, clock):
    updates = []
    client = make_client(ScriptedFetch(FakeResponse(200, ValueError("bad json"))), timers, clock)
    client.start("t1", updates.append)
    timers.run_until_idle()
    assert updates[0].error is ClientPollError.TERMINAL
    assert client.state is PollState.STOPPED


@pytest.mark.parametrize("hint", ["1500", None, True, [1500]])
def test_non_numeric_server_hint_is_ignored(timers, clock, hint):
    updates = []
    odd = FakeResponse(200, {"status": "pending", "retryAfterMs": hint})
    client = make_client(ScriptedFetch(odd, DONE), timers, clock)
    client.start("t1", updates.append)

    timers.run_next()
    assert updates[0].retry_after_ms is None
    assert timers.live[0]["delay"] == pytest.approx(0.8)

    timers.run_until_idle()
    assert [u.status for u in updates] == ["pending", "done"]
    assert client.state is PollState.STOPPED


def test_raising_update_callback_stops_the_session(timers, clock):
    calls = []

    def on_update(update):
        calls.append(update)
        raise RuntimeError("display went away")

    client = make_client(ScriptedFetch(default=PENDING), timers, clock)
    client.start("t1", on_update)
    timers.run_until_idle()

    assert len(calls) == 1
    assert client.state is PollState.STOPPED
    assert client.wait(0) is True
    assert client.progress.error is ClientPollError.TERMINAL
    assert "display went away" in client.message
    assert timers.live == []


def test_raising_callback_on_final_update_still_stops(timers, clock):
    def on_update(update):
        raise RuntimeError("boom")

    client = make_client(ScriptedFetch(FakeResponse(500, None)), timers, clock)
    client.start("t1", on_update)
    timers.run_until_idle()

    assert client.state is PollState.STOPPED
    assert client.wait(0) is True
    assert client.message == "error (500)"


def test_unexpected_fetch_exception_is_terminal(timers, clock):
    updates = []
    fetch = ScriptedFetch(KeyError("session closed"), default=DONE)
    client = make_client(fetch, timers, clock)
    client.start("t1", updates.append)
    timers.run_until_idle()

    assert len(fetch.calls) == 1
    assert [u.error for u in updates] == [ClientPollError.TERMINAL]
    assert updates[0].message.startswith("unexpected error:")
    assert client.wait(0) is True


def test_cancel_while_fetch_in_flight_drops_the_response(timers, clock):
    updates = []
    client = None

    def cancel_then_respond():
        client.cancel()
        return PENDING

    client = make_client(ScriptedFetch(cancel_then_respond), timers, clock)
    client.start("t1", updates.append)
    timers.run_next()

    assert updates == []
    assert timers.live == []
    assert client.state is PollState.STOPPED
    assert client.message == "polling cancelled"


def test_cancel_stops_pending_timer(timers, clock):
    fetch = ScriptedFetch(default=PENDING)
    client = make_client(fetch, timers, clock)
    client.start("t1", lambda u: None)
    client.cancel()
    assert timers.live == []
    assert fetch.calls == []
    client.cancel()
    assert client.state is PollState.STOPPED


def test_restart_ignores_timers_from_previous_generation(timers, clock):
    fetch = ScriptedFetch(default=PENDING)
    seen = []
    client = make_client(fetch, timers, clock)
    client.start("old", lambda u: seen.append(("old", u.status)))
    old_timer = timers.live[0]
    client.start("new", lambda u: seen.append(("new", u.status)))

    assert old_timer["cancelled"]
    old_timer["fn"]()
    assert fetch.calls == []

    timers.run_next()
    assert fetch.calls == ["new"]
    assert seen == [("new", "pending")]
    assert client.generation == 2


def test_task_progress_from_dict_and_content():
    progress = TaskProgress.from_dict(
        {"status": "done", "progress": 100, "dataBase64": base64.b64encode(b"abc").decode(), "fileName": "a.png"}
    )
    assert progress.terminal
    assert progress.content() == b"abc"
    assert progress.file_name == "a.png"
    with pytest.raises(ValueError):
        TaskProgress.from_dict({"progress": 3})
    with pytest.raises(ValueError):
        TaskProgress(status="pending").content()


class FakeSession:
    def __init__(self, post_response, get_responses):
        self.post_response = post_response
        self.get_responses = list(get_responses)
        self.posted = []

    def post(self, url, files=None, data=None, timeout=None):
        self.posted.append((url, data))
        return self.post_response

    def get(self, url, timeout=None):
        return self.get_responses.pop(0)


def test_convert_file_submits_and_polls(tmp_path):
    src = tmp_path / "photo.png"
    src.write_bytes(b"\x89PNG\r\n\x1a\n")
    session = FakeSession(FakeResponse(200, {"taskId": "abc"}), [DONE])
    result = convert_file("http://converter", src, "webp", "image", session=session)
    assert result.status == "done"
    assert session.posted == [("http://converter/api/tasks", {"to": "webp", "category": "image"})]


def test_convert_file_raises_on_rejected_upload(tmp_path):
    src = tmp_path / "big.docx"
    src.write_bytes(b"PK\x03\x04")
    rejected = FakeResponse(413, {"detail": {"error": "PayloadTooLarge", "message": "File exceeds 10 MB"}})
    with pytest.raises(SubmissionError) as info:
        convert_file("http://converter", src, "pdf", "doc", session=FakeSession(rejected, []))
    assert info.value.status_code == 413
    assert info.value.detail["error"] == "PayloadTooLarge"
