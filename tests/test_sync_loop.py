import pytest

from services import admin_setup
from services.store import StoreUnavailable
from services.sync_loop import ClientSyncLoop, Phase


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event, payload):
        self.events.append((event, payload))

    def phases(self):
        return [p["phase"] for e, p in self.events if e == "phase"]

    def last(self, name):
        return [p for e, p in self.events if e == name][-1]


def make_loop(store, code=None, **kw):
    rec = Recorder()
    sleeps = []
    loop = ClientSyncLoop(store, rec, entry_code=code, sleep=sleeps.append, **kw)
    return loop, rec, sleeps


def test_no_entry_code_goes_straight_to_idle(store):
    loop, rec, sleeps = make_loop(store)
    loop.start()

    assert loop.phase == Phase.IDLE
    assert rec.phases() == ["idle"]
    assert rec.last("state")["status"] == "waiting"
    assert sleeps == []


def test_entry_code_resolves_after_delay(store):
    state = admin_setup.upload_photo(store, "img", 4)
    results = []
    loop, rec, sleeps = make_loop(store, state.sections[5].code, on_result=results.append)

    loop.start()

    assert rec.phases() == ["verifying", "resolved"]
    assert sleeps == [0.8]
    assert loop.outcome == {"status": "newly_unlocked", "section_id": 5, "piece": 6}
    assert rec.last("state")["unlocked"] == 1
    assert rec.last("state")["sections"][5]["isUnlocked"] is True
    assert results[0].section_id == 5


def test_entry_code_waits_for_a_photo(store):
    loop, rec, sleeps = make_loop(store, "WED-ABCDE")
    loop.start()

    assert loop.phase == Phase.VERIFYING
    assert sleeps == []

    state = admin_setup.upload_photo(store, "img", 2)
    # the freshly issued codes do not include the old one
    assert loop.phase == Phase.RESOLVED
    assert loop.outcome["status"] == "not_found"
    assert state.unlocked_count == 0


def test_unknown_code_then_dismiss(store):
    admin_setup.upload_photo(store, "img", 2)
    loop, rec, _ = make_loop(store, "WED-ZZZZZ")
    loop.start()

    assert loop.outcome["status"] == "not_found"
    loop.dismiss()
    assert loop.phase == Phase.IDLE
    assert rec.phases() == ["verifying", "resolved", "idle"]
    assert store.load().unlocked_count == 0


def test_repeated_code_is_already_unlocked(store):
    state = admin_setup.upload_photo(store, "img", 4)
    code = state.sections[5].code
    loop, rec, _ = make_loop(store, code)
    loop.start()
    loop.dismiss()

    loop.submit(code)

    assert loop.outcome["status"] == "already_unlocked"
    assert rec.last("state")["unlocked"] == 1
    assert store.load().unlocked_count == 1


def test_other_clients_see_unlocks(store):
    state = admin_setup.upload_photo(store, "img", 2)
    watcher, watcher_rec, _ = make_loop(store)
    watcher.start()
    guest, _, _ = make_loop(store, state.sections[0].code)

    guest.start()

    assert watcher.phase == Phase.IDLE
    assert watcher_rec.last("state")["unlocked"] == 1


def test_stop_unsubscribes(store):
    loop, rec, _ = make_loop(store)
    loop.start()
    loop.stop()
    count = len(rec.events)

    admin_setup.upload_photo(store, "img", 2)

    assert len(rec.events) == count
    assert not loop.running


def test_submit_ignored_while_verifying(store):
    loop, rec, _ = make_loop(store, "WED-ABCDE")
    loop.start()
    loop.submit("WED-OTHER")
    assert loop.pending_code == "WED-ABCDE"


def test_store_failure_is_retryable(store, monkeypatch):
    state = admin_setup.upload_photo(store, "img", 2)
    code = state.sections[1].code
    real = store.apply_unlock

    def broken(*a, **kw):
        raise StoreUnavailable("down")

    monkeypatch.setattr(store, "apply_unlock", broken)
    loop, rec, _ = make_loop(store, code)
    loop.start()

    assert loop.phase == Phase.RESOLVED
    assert loop.outcome == {"status": "store_unavailable", "section_id": None, "piece": None, "retry": True}
    assert loop.running

    monkeypatch.setattr(store, "apply_unlock", real)
    loop.retry()

    assert loop.outcome["status"] == "newly_unlocked"
    assert store.load().sections[1].is_unlocked


def test_custom_spawn_is_used(store):
    state = admin_setup.upload_photo(store, "img", 1)
    queued = []
    loop, _, _ = make_loop(store, state.sections[0].code, spawn=lambda fn, *a: queued.append((fn, a)))
    loop.start()

    assert loop.phase == Phase.VERIFYING
    fn, args = queued.pop()
    fn(*args)
    assert loop.phase == Phase.RESOLVED


@pytest.mark.parametrize("code", ["", "   ", None])
def test_blank_entry_code_means_idle(store, code):
    loop, _, _ = make_loop(store, code)
    assert loop.phase == Phase.IDLE
