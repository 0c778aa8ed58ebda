import json
from datetime import date

import pytest

from fakes import DESIGN_SPACE
from sibflo.models import Design, IdeationInput, ScreenDescription
from sibflo.session_manager import USER_BEHAVIOR_PREFIX, SessionManager
from sibflo.state_storage import APP_STATE_KEY, KeyValueStore, ViewStateStore
from sibflo.trial_logger import TRIALS_STORAGE_KEY, TrialLogger

IDEATION = IdeationInput(context="weekend", user="parent", goal="engage child", tasks=["Plan a weekend"])


@pytest.fixture
def trials(store):
    return TrialLogger(store)


@pytest.fixture
def sessions(store, trials):
    return SessionManager(store, trials)


def a_design(name="Quest Board"):
    return Design(name=name, core_concept="Plans as quests", screens=[ScreenDescription(title="Board")])


class TestKeyValueStore:
    def test_set_get_overwrite(self, store):
        assert store.get("missing", "dflt") == "dflt"
        store.set("k", {"a": [1, 2]})
        store.set("k", {"a": [3]})
        assert store.get("k") == {"a": [3]}

    def test_get_returns_a_copy(self, store):
        store.set("k", {"a": [1]})
        value = store.get("k")
        value["a"].append(2)
        assert store.get("k") == {"a": [1]}

    def test_keys_and_delete_prefix(self, store):
        for key in ("user_behavior_1", "user_behavior_2", "user_x", "other"):
            store.set(key, [])
        assert store.keys("user_behavior_") == ["user_behavior_1", "user_behavior_2"]
        assert store.delete_prefix("user_behavior_") == 2
        assert store.keys() == ["other", "user_x"]
        with pytest.raises(ValueError):
            store.delete_prefix("")

    def test_delete(self, store):
        store.set("k", 1)
        assert store.delete("k")
        assert not store.delete("k")

    def test_data_survives_a_new_store(self, session_factory):
        KeyValueStore(session_factory).set("k", [1])
        assert KeyValueStore(session_factory, create_tables=False).get("k") == [1]


class TestViewStateStore:
    def test_save_and_load(self, store):
        views = ViewStateStore(store)
        saved = views.save("app", {"panel": "left"})
        assert saved["panel"] == "left"
        assert views.load("app") == saved
        assert store.get(APP_STATE_KEY) == saved
        assert views.load("canvas") is None

    def test_unknown_view_and_bad_state(self, store):
        views = ViewStateStore(store)
        with pytest.raises(ValueError):
            views.save("toolbar", {})
        with pytest.raises(ValueError):
            views.save("app", ["not", "a", "dict"])

    def test_clear(self, store):
        views = ViewStateStore(store)
        views.save("app", {})
        views.save("sliders", {"x": 1})
        views.clear("app")
        assert views.load("app") is None
        assert views.load("sliders") is not None
        views.clear()
        assert views.load("sliders") is None


class TestTrialLogger:
    def test_trial_lifecycle(self, trials):
        trial_id = trials.create_trial(IDEATION)
        assert trial_id.startswith("trial_")
        assert trials.update_trial_design_space(trial_id, DESIGN_SPACE)
        design_id = trials.add_design_to_trial(trial_id, a_design())
        assert design_id.startswith("design_")

        trial = trials.get_trial(trial_id)
        assert trial.input.tasks == ["Plan a weekend"]
        assert [d.name for d in trial.design_space] == ["Planning Style", "Child Involvement", "Inspiration Source"]
        assert trial.designs[0].id == design_id
        assert trial.designs[0].timestamp

    def test_unknown_trial(self, trials):
        assert not trials.update_trial_design_space("trial_x", DESIGN_SPACE)
        assert trials.add_design_to_trial("trial_x", a_design()) is None
        assert not trials.update_design_in_trial("trial_x", "design_x", {})
        assert trials.get_trial("trial_x") is None
        assert not trials.delete_trial("trial_x")

    def test_update_design_merges_and_keeps_id(self, trials):
        trial_id = trials.create_trial(IDEATION)
        design_id = trials.add_design_to_trial(trial_id, a_design())
        assert trials.update_design_in_trial(trial_id, design_id, {"name": "Renamed", "id": "design_other"})
        design = trials.get_trial(trial_id).designs[0]
        assert design.id == design_id
        assert design.name == "Renamed"
        assert design.screens[0].title == "Board"
        assert not trials.update_design_in_trial(trial_id, "design_missing", {"name": "x"})

    def test_ordering_latest_and_delete(self, trials):
        first = trials.create_trial(IDEATION)
        second = trials.create_trial({"tasks": ["Another"]})
        assert trials.get_all_trial_ids() == [first, second]
        assert trials.get_latest_trial().id == second
        assert trials.delete_trial(second)
        assert trials.get_latest_trial().id == first
        trials.clear_all_trials()
        assert trials.get_all_trials() == []
        assert trials.get_latest_trial() is None

    def test_stats(self, trials):
        assert trials.get_trial_stats()["average_designs_per_trial"] == 0
        one = trials.create_trial(IDEATION)
        trials.create_trial(IDEATION)
        trials.create_trial(IDEATION)
        trials.update_trial_design_space(one, DESIGN_SPACE)
        trials.add_design_to_trial(one, a_design())
        assert trials.get_trial_stats() == {
            "total_trials": 3,
            "total_designs": 1,
            "total_design_spaces": 1,
            "average_designs_per_trial": 0.33,
        }

    def test_export_then_import_replaces_log(self, trials, store):
        trial_id = trials.create_trial(IDEATION)
        trials.add_design_to_trial(trial_id, a_design())
        exported = trials.export_trials()
        trials.clear_all_trials()
        assert trials.import_trials(exported)
        assert trials.get_all_trial_ids() == [trial_id]
        assert json.loads(exported) == store.get(TRIALS_STORAGE_KEY)

    @pytest.mark.parametrize("payload", ["{not json", '{"id": "trial_1"}', '[{"timestamp": 1}]'])
    def test_import_rejects_bad_payloads(self, trials, payload):
        trial_id = trials.create_trial(IDEATION)
        assert not trials.import_trials(payload)
        assert trials.get_all_trial_ids() == [trial_id]


class TestSessionManager:
    def test_append_events(self, sessions, store):
        assert sessions.append_events("s1", [{"type": "click", "timestamp": 5}, {"type": "drag"}]) == 2
        assert sessions.append_events("s1", [{"type": "zoom"}, "junk"]) == 3
        events = store.get(f"{USER_BEHAVIOR_PREFIX}s1")
        assert [e["type"] for e in events] == ["click", "drag", "zoom"]
        assert events[0]["timestamp"] == 5
        assert all(e["timestamp"] for e in events)

    def test_append_needs_a_session(self, sessions):
        with pytest.raises(ValueError):
            sessions.append_events("", [{"type": "click"}])

    def test_all_sessions_newest_first(self, sessions, trials):
        sessions.append_events("old", [{"type": "click", "timestamp": 1}])
        sessions.append_events("empty", [])
        trial_id = trials.create_trial(IDEATION)
        trials.add_design_to_trial(trial_id, a_design())

        found = sessions.all_sessions()
        assert [s["id"] for s in found] == [trial_id, "old"]
        assert found[0]["type"] == "trial"
        assert found[0]["event_count"] == 1
        assert found[1]["type"] == "user-behavior"
        assert sessions.session_by_id("old")["events"][0]["type"] == "click"
        assert sessions.session_by_id("nope") is None

    def test_exports(self, sessions):
        sessions.append_events("s1", [{"type": "click"}])
        today = date.today().isoformat()
        everything = sessions.export_all()
        assert everything["filename"] == f"sibflo-sessions-{today}.json"
        assert len(everything["sessions"]) == 1
        assert sessions.export_session("s1")["filename"] == f"sibflo-session-s1-{today}.json"
        with pytest.raises(KeyError):
            sessions.export_session("missing")

    def test_clear_and_stats(self, sessions, trials):
        sessions.append_events("s1", [{"type": "click"}, {"type": "drag"}])
        sessions.append_events("s2", [{"type": "click"}])
        trial_id = trials.create_trial(IDEATION)
        trials.add_design_to_trial(trial_id, a_design())
        assert sessions.session_stats() == {
            "total_sessions": 3,
            "user_behavior_sessions": 2,
            "trial_sessions": 1,
            "total_events": 3,
            "total_designs": 1,
        }
        assert sessions.clear_all_sessions() == {"behavior_sessions": 2, "trials": 1}
        assert sessions.all_sessions() == []
