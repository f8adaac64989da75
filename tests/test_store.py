import json

from conftest import make_store
from captionrelay.store import StateStore
from captionrelay.types import AppState, Channel, GlobalRules, ScheduleGroup, Step

STATE = {
    "channels": [
        {"id": "c1", "name": "Main", "apiUrl": "https://api.example.com/v1", "apiKeys": ["k1", "k2"]},
    ],
    "scheduleGroups": [
        {
            "id": "g1",
            "name": "Default",
            "systemInject": "front",
            "systemInjectText": "be brief",
            "timeoutSec": 45,
            "steps": [
                {"channelId": "c1", "model": "m1", "retries": 2, "interval": 1, "timeoutSec": 20},
            ],
        }
    ],
    "globalRules": {"minChars": 50, "maxChars": 400, "autoRetry": False},
    "prompts": {"system": [{"id": "p1", "name": "tags", "content": "Tag it"}], "user": []},
    "unknownKey": "ignored",
}


def test_load_camel_case_state(tmp_path):
    path = tmp_path / "data.json"
    path.write_text(json.dumps(STATE), encoding="utf-8")

    store = StateStore.load(path)

    channel = store.get_channel("c1")
    assert channel.api_url == "https://api.example.com/v1"
    assert channel.api_keys == ["k1", "k2"]
    group = store.get_schedule_group("g1")
    assert group.system_inject_text == "be brief"
    assert group.steps[0].channel_id == "c1"
    assert group.step_timeout(group.steps[0]) == 20
    assert store.global_rules().min_chars == 50
    assert store.global_rules().auto_retry is False
    assert store.get_channel("missing") is None
    assert store.get_schedule_group("missing") is None


def test_missing_file_uses_defaults(tmp_path):
    store = StateStore.load(tmp_path / "nope.json")

    assert store.state.channels == []
    rules = store.global_rules()
    assert (rules.min_chars, rules.max_chars, rules.auto_retry) == (200, 200, True)


def test_broken_file_uses_defaults(tmp_path):
    path = tmp_path / "data.json"
    path.write_text("{not json", encoding="utf-8")

    store = StateStore.load(path)

    assert store.state.schedule_groups == []


def test_save_writes_camel_case_and_round_trips(tmp_path):
    path = tmp_path / "data.json"
    path.write_text(json.dumps(STATE), encoding="utf-8")
    store = StateStore.load(path)
    store.append_label_log({"id": "log-1", "status": "ok"})

    saved = store.save(tmp_path / "out.json")
    data = json.loads(saved.read_text(encoding="utf-8"))

    assert "scheduleGroups" in data
    assert data["globalRules"] == {"minChars": 50, "maxChars": 400, "autoRetry": False}
    assert data["channels"][0]["apiUrl"] == "https://api.example.com/v1"
    assert data["scheduleGroups"][0]["steps"][0]["channelId"] == "c1"
    assert data["labelLogs"] == [{"id": "log-1", "status": "ok"}]

    reloaded = StateStore.load(saved)
    assert reloaded.state == store.state


def test_overview_counts():
    store = make_store(
        [Channel(id="a"), Channel(id="b")],
        [ScheduleGroup(id="g")],
        GlobalRules(min_chars=10, max_chars=None, auto_retry=True),
    )
    store.append_label_log({"id": "x"})

    overview = store.overview()

    assert overview["counts"]["channels"] == 2
    assert overview["counts"]["scheduleGroups"] == 1
    assert overview["counts"]["logs"] == 1
    assert overview["counts"]["prompts"]["total"] == 0
    assert overview["globalRules"] == {"minChars": 10, "maxChars": None, "autoRetry": True}


def test_diagnostics_clean_config():
    store = make_store(
        [Channel(id="c", api_url="https://h", api_keys=["k"])],
        [ScheduleGroup(id="g", steps=[Step(channel_id="c", model="m")])],
    )

    report = store.diagnostics()

    assert [item["code"] for item in report["items"]] == ["CONFIG_CHECK_PASSED"]
    assert report["summary"] == {"error": 0, "warning": 0, "info": 1, "total": 1}


def test_diagnostics_reports_problems():
    store = make_store(
        [Channel(id="c", api_url=" ", api_keys=[""])],
        [
            ScheduleGroup(
                id="g",
                steps=[Step(channel_id="ghost", model="m"), Step(channel_id="c", model=" ")],
            )
        ],
        GlobalRules(min_chars=300, max_chars=100),
    )

    report = store.diagnostics()
    codes = [item["code"] for item in report["items"]]

    assert codes == [
        "CHANNEL_API_URL_MISSING",
        "CHANNEL_API_KEYS_MISSING",
        "STEP_CHANNEL_NOT_FOUND",
        "STEP_MODEL_MISSING",
        "GLOBAL_RULES_RANGE_INVALID",
    ]
    assert report["summary"] == {"error": 2, "warning": 3, "info": 0, "total": 5}
    assert report["items"][2]["location"] == {"scheduleGroupId": "g", "stepIndex": 0}


def test_prompt_content_survives_save(tmp_path):
    path = tmp_path / "data.json"
    path.write_text(json.dumps(STATE), encoding="utf-8")

    store = StateStore.load(path)
    assert store.state.prompts.system[0].content == "Tag it"

    store.save()
    data = json.loads(path.read_text(encoding="utf-8"))

    assert data["prompts"]["system"] == [{"id": "p1", "name": "tags", "content": "Tag it"}]
    assert StateStore.load(path).state.prompts.system[0].content == "Tag it"


def test_prompt_text_key_is_read_as_content():
    store = StateStore(
        AppState.model_validate({"prompts": {"user": [{"id": "u1", "text": "Describe"}]}})
    )
    assert store.state.prompts.user[0].content == "Describe"


def test_unknown_keys_survive_save(tmp_path):
    state = {
        "channels": [
            {"id": "c1", "apiUrl": "https://h", "apiKeys": ["k"], "note": "primary", "createdAt": 1700000000},
        ],
        "groups": [{"id": "ig1", "path": "/data/imgs", "name": "Cats", "tagged": 12}],
        "scheduleGroups": [
            {
                "id": "g1",
                "color": "#ff0000",
                "steps": [{"channelId": "c1", "model": "m", "label": "first"}],
            }
        ],
        "tags": {"ig1": ["cat"]},
        "globalRules": {"minChars": 200, "maxChars": 200, "autoRetry": True},
        "prompts": {"system": [], "user": []},
        "previewResults": [{"name": "a.png", "text": "a cat"}],
        "labelLogs": [],
        "uiSettings": {"theme": "dark"},
    }
    path = tmp_path / "data.json"
    path.write_text(json.dumps(state), encoding="utf-8")

    store = StateStore.load(path)
    store.append_label_log({"id": "log-1"})
    store.save()
    saved = json.loads(path.read_text(encoding="utf-8"))

    assert saved["previewResults"] == [{"name": "a.png", "text": "a cat"}]
    assert saved["uiSettings"] == {"theme": "dark"}
    assert saved["channels"][0]["note"] == "primary"
    assert saved["channels"][0]["createdAt"] == 1700000000
    assert saved["groups"][0]["tagged"] == 12
    assert saved["scheduleGroups"][0]["color"] == "#ff0000"
    assert saved["scheduleGroups"][0]["steps"][0]["label"] == "first"
    assert saved["labelLogs"] == [{"id": "log-1"}]


def test_default_state_shape_round_trips(tmp_path):
    default = {
        "channels": [],
        "groups": [],
        "scheduleGroups": [],
        "tags": {},
        "globalRules": {"minChars": 200, "maxChars": 200, "autoRetry": True},
        "prompts": {"system": [], "user": []},
        "previewResults": [],
        "labelLogs": [],
    }
    path = tmp_path / "data.json"
    path.write_text(json.dumps(default), encoding="utf-8")

    StateStore.load(path).save()

    assert json.loads(path.read_text(encoding="utf-8")) == default
