from __future__ import annotations

import json
from typing import Any

import pytest

from projectsync.bus import BroadcastChannel, CommandBus
from projectsync.documents import DocumentError, project_key
from projectsync.registry import ProjectRegistry


class RecordingLoader:
    def __init__(self) -> None:
        self.loaded: list[tuple[Any, str | None]] = []
        self.unloaded = 0

    def load(self, value: Any, origin_tab_uid: str | None = None) -> None:
        self.loaded.append((value, origin_tab_uid))

    def unload(self) -> None:
        self.unloaded += 1


def test_bootstrap_synthesizes_default_project(open_tab, store) -> None:
    tab = open_tab()

    assert len(tab) == 1
    uid = tab.most_recent()
    document = tab.get(uid)
    assert document["device"] == {"target": "esp32"}
    assert document["files"]["tree"]["files"][0]["name"] == "script.py"
    assert document["project"]["shared"] == {"uid": "", "token": ""}
    assert document["project"]["author"] == "a user"
    assert document["project"]["createdAt"] == document["project"]["lastEdited"]
    assert json.loads(store.fetch(project_key(uid))) == document


def test_bootstrap_skips_unparseable_entries(open_tab, store, caplog) -> None:
    store.set(project_key("broken"), "{not json")
    store.set(project_key("list"), "[1, 2]")

    with caplog.at_level("WARNING"):
        tab = open_tab()

    assert "broken" not in tab
    assert "list" not in tab
    assert len(tab) == 1
    assert "skipping unreadable project" in caplog.text


def test_bootstrap_reads_existing_projects_without_creating(open_tab) -> None:
    first = open_tab()
    uid = first.most_recent()

    second = open_tab()

    assert list(second.projects) == [uid]


def test_create_remove_scenario(open_tab) -> None:
    tab = open_tab()
    for uid in list(tab.projects):
        tab.projects.pop(uid)

    uid1 = tab.create()
    assert len(tab) == 1
    assert tab.most_recent() == uid1

    existing = tab.get(uid1)
    uid2 = tab.create(existing)
    assert uid2 != uid1
    assert len(tab) == 2

    tab.remove(uid1)
    assert list(tab.projects) == [uid2]

    tab.remove(uid2)
    assert len(tab) == 1
    (uid3,) = tab.projects
    assert uid3 not in {uid1, uid2}


def test_remove_never_empties_registry(open_tab) -> None:
    tab = open_tab()
    seen: set[str] = set()
    for _ in range(5):
        (uid,) = tab.projects
        seen.add(uid)
        tab.remove(uid)
        assert len(tab) == 1
    assert len(seen) == 5


def test_remove_last_project_selects_replacement(open_tab) -> None:
    tab = open_tab()
    tab.start()
    only = tab.current_uid

    tab.remove(only)

    assert tab.current_uid is not None
    assert tab.current_uid != only
    assert tab.current_uid in tab


def test_remove_unknown_uid_raises(open_tab) -> None:
    tab = open_tab()
    with pytest.raises(KeyError):
        tab.remove("missing")


def test_create_returns_fresh_uids(open_tab) -> None:
    tab = open_tab()
    uids = set(tab.projects)
    for _ in range(20):
        uid = tab.create()
        assert uid not in uids
        uids.add(uid)


def test_create_accepts_serialized_document(open_tab) -> None:
    tab = open_tab()
    source = tab.get(tab.most_recent())
    source["project"]["name"] = "Imported"

    uid = tab.create(json.dumps(source))

    assert tab.get(uid)["project"]["name"] == "Imported"


def test_create_rejects_malformed_text_before_broadcast(open_tab, store) -> None:
    tab = open_tab()
    before = dict(tab.projects)
    writes = len(store.writes)

    with pytest.raises(DocumentError):
        tab.create("definitely not json")

    assert tab.projects == before
    assert len(store.writes) == writes


def test_create_is_seen_by_other_tabs_and_written_once(open_tab, store, channel) -> None:
    tabs = [open_tab() for _ in range(3)]
    channel.flush()
    writes = len(store.writes)

    uid = tabs[0].create()
    channel.flush()

    assert all(uid in tab for tab in tabs)
    assert store.writes[writes:] == [project_key(uid)]


def test_update_written_once_across_tabs(open_tab, store, channel) -> None:
    tabs = [open_tab() for _ in range(4)]
    uid = tabs[0].most_recent()
    writes = len(store.writes)

    tabs[2].update({"blocks": {"xml": "<xml/>"}}, uid)
    channel.flush()

    assert store.writes[writes:] == [project_key(uid)]
    assert all(tab.get(uid)["blocks"] == {"xml": "<xml/>"} for tab in tabs)


def test_remove_written_once_across_tabs(open_tab, store, channel) -> None:
    tabs = [open_tab() for _ in range(3)]
    uid = tabs[0].create()
    channel.flush()

    tabs[1].remove(uid)
    channel.flush()

    assert store.removals == [project_key(uid)]
    assert all(uid not in tab for tab in tabs)
    assert store.fetch(project_key(uid)) is None


def test_closed_tab_misses_broadcast_but_sees_store_on_restart(open_tab, channel) -> None:
    live = open_tab()
    sleeper = open_tab()
    sleeper.bus.close()

    uid = live.create()
    channel.flush()

    assert uid not in sleeper
    assert uid in open_tab()


def test_update_replaces_sections_wholesale(open_tab, channel) -> None:
    tab_a = open_tab()
    tab_b = open_tab()
    uid = tab_a.most_recent()

    tab_a.update({"device": {"target": "rp2040", "port": "/dev/ttyACM0"}}, uid)
    channel.flush()
    tab_b.update({"device": {"target": "esp8266"}}, uid)
    channel.flush()

    assert tab_a.get(uid)["device"] == {"target": "esp8266"}
    assert tab_b.get(uid)["device"] == {"target": "esp8266"}


def test_update_different_sections_do_not_conflict(open_tab, channel) -> None:
    tab_a = open_tab()
    tab_b = open_tab()
    uid = tab_a.most_recent()

    tab_a.update({"device": {"target": "rp2040"}}, uid)
    channel.flush()
    tab_b.update({"blocks": {"xml": "<xml>b</xml>"}}, uid)
    channel.flush()

    for tab in (tab_a, tab_b):
        assert tab.get(uid)["device"] == {"target": "rp2040"}
        assert tab.get(uid)["blocks"] == {"xml": "<xml>b</xml>"}


def test_update_bumps_last_edited_and_keeps_metadata(open_tab) -> None:
    tab = open_tab()
    uid = tab.most_recent()
    tab.get(uid)["project"]["lastEdited"] = 1

    tab.update({"files": {"tree": {"name": "", "files": []}}}, uid)

    meta = tab.get(uid)["project"]
    assert meta["lastEdited"] > 1
    assert meta["name"] == "Empty project"


def test_update_rejects_unknown_sections(open_tab) -> None:
    tab = open_tab()
    with pytest.raises(ValueError, match="unknown project sections"):
        tab.update({"colour": "red"}, tab.most_recent())


def test_update_applied_twice_is_idempotent(store) -> None:
    channel = BroadcastChannel()
    sender = ProjectRegistry(store, CommandBus(channel))
    uid = sender.most_recent()
    payload = {"blocks": {"xml": "<xml>x</xml>"}, "project": dict(sender.get(uid)["project"])}

    once = ProjectRegistry(store, CommandBus(BroadcastChannel()))
    twice = ProjectRegistry(store, CommandBus(BroadcastChannel()))
    once._apply_update(uid, payload, True, sender.tab_uid)
    twice._apply_update(uid, payload, True, sender.tab_uid)
    twice._apply_update(uid, payload, True, sender.tab_uid)

    assert once.get(uid) == twice.get(uid)


def test_update_notifies_loaders_of_current_project(open_tab, channel) -> None:
    sender = open_tab()
    receiver = open_tab()
    loader = RecordingLoader()
    receiver.register_loader("blocks", loader)
    receiver.start()
    loader.loaded.clear()

    sender.update({"blocks": {"xml": "<xml>1</xml>"}}, receiver.current_uid)
    channel.flush()

    assert loader.loaded == [({"xml": "<xml>1</xml>"}, sender.tab_uid)]


def test_update_with_load_false_merges_silently(open_tab, channel) -> None:
    sender = open_tab()
    receiver = open_tab()
    loader = RecordingLoader()
    events: list[tuple[str, str]] = []
    receiver.register_loader("blocks", loader)
    receiver.watch(lambda event, uid: events.append((event, uid)))
    receiver.start()
    loader.loaded.clear()
    uid = receiver.current_uid

    sender.update({"blocks": {"xml": "<xml>2</xml>"}, "load": False}, uid)
    channel.flush()

    assert receiver.get(uid)["blocks"] == {"xml": "<xml>2</xml>"}
    assert loader.loaded == []
    assert events == []


def test_update_only_silenced_by_explicit_false_load_key(open_tab, channel) -> None:
    sender = open_tab()
    receiver = open_tab()
    loader = RecordingLoader()
    receiver.register_loader("blocks", loader)
    receiver.start()
    loader.loaded.clear()
    uid = receiver.current_uid

    sender.update({"blocks": {"xml": "<xml>3</xml>"}, "load": None}, uid)
    sender.update({"blocks": {"xml": "<xml>4</xml>"}, "load": ""}, uid)
    channel.flush()

    assert [value for value, _ in loader.loaded] == [
        {"xml": "<xml>3</xml>"},
        {"xml": "<xml>4</xml>"},
    ]


def test_watchers_see_remote_mutations(open_tab, channel) -> None:
    sender = open_tab()
    receiver = open_tab()
    events: list[tuple[str, str]] = []
    receiver.watch(lambda event, uid: events.append((event, uid)))

    uid = sender.create()
    sender.rename(uid, "Robot")
    channel.flush()

    assert events == [("new", uid), ("update", uid)]
    assert receiver.get(uid)["project"]["name"] == "Robot"


def test_rename_ignores_empty_name(open_tab) -> None:
    tab = open_tab()
    uid = tab.most_recent()

    tab.rename(uid, "   ")

    assert tab.get(uid)["project"]["name"] == "Empty project"


def test_set_is_local_until_written(open_tab, store, channel) -> None:
    tab_a = open_tab()
    tab_b = open_tab()
    uid = tab_a.most_recent()
    writes = len(store.writes)

    tab_a.set({"device": {"target": "local-only"}}, uid)
    channel.flush()

    assert tab_b.get(uid)["device"] == {"target": "esp32"}
    assert len(store.writes) == writes

    tab_a.write(uid)
    assert json.loads(store.fetch(project_key(uid)))["device"] == {"target": "local-only"}


def test_save_bumps_last_edited(open_tab, store) -> None:
    tab = open_tab()
    uid = tab.most_recent()
    tab.get(uid)["project"]["lastEdited"] = 5

    tab.save(uid)

    assert json.loads(store.fetch(project_key(uid)))["project"]["lastEdited"] > 5


def test_select_is_tab_local(open_tab, channel) -> None:
    tab_a = open_tab()
    tab_b = open_tab()
    first = tab_a.most_recent()
    second = tab_a.create()
    channel.flush()

    tab_a.select(first)
    tab_b.select(second)
    channel.flush()

    assert tab_a.current_uid == first
    assert tab_b.current_uid == second


def test_select_unknown_or_current_is_noop(open_tab) -> None:
    tab = open_tab()
    loader = RecordingLoader()
    tab.register_loader("device", loader)
    tab.start()
    loader.loaded.clear()

    tab.select(tab.current_uid)
    tab.select("missing")

    assert loader.loaded == []
    assert loader.unloaded == 0


def test_select_unloads_previous_and_loads_sections(open_tab) -> None:
    tab = open_tab()
    loader = RecordingLoader()
    tab.register_loader("device", loader)
    tab.start()
    other = tab.create()
    tab.update({"device": {"target": "rp2040"}}, other)
    loader.loaded.clear()

    tab.select(other)

    assert loader.unloaded == 1
    assert loader.loaded == [({"target": "rp2040"}, None)]


def test_removing_current_project_elsewhere_selects_most_recent(open_tab, channel) -> None:
    tab_a = open_tab()
    tab_b = open_tab()
    older = tab_a.most_recent()
    newer = tab_a.create()
    tab_a.update({"blocks": {"xml": "<xml/>"}}, newer)
    channel.flush()
    tab_b.select(older)

    tab_a.remove(older)
    channel.flush()

    assert tab_b.current_uid == newer


def test_most_recent_picks_greatest_last_edited(open_tab) -> None:
    tab = open_tab()
    first = tab.most_recent()
    second = tab.create()
    tab.get(first)["project"]["lastEdited"] = 200
    tab.get(second)["project"]["lastEdited"] = 100

    assert tab.most_recent() == first


def test_register_loader_rejects_metadata_section(open_tab) -> None:
    tab = open_tab()
    with pytest.raises(ValueError):
        tab.register_loader("project", RecordingLoader())


def test_export_strips_sharing_credentials(open_tab) -> None:
    tab = open_tab()
    uid = tab.most_recent()
    meta = dict(tab.get(uid)["project"])
    meta["shared"] = {"uid": "abc", "token": "secret"}
    meta["name"] = "My/Robot"
    tab.update({"project": meta}, uid)

    exported = json.loads(tab.export(uid))

    assert exported["project"]["shared"] == {"uid": "", "token": ""}
    assert tab.get(uid)["project"]["shared"]["token"] == "secret"
    assert tab.export_filename(uid) == "My_Robot.bipes.json"


def test_import_document_roundtrips_export(open_tab) -> None:
    tab = open_tab()
    uid = tab.most_recent()
    tab.rename(uid, "Roundtrip")

    imported = tab.import_document(tab.export(uid))

    assert imported != uid
    assert tab.get(imported)["project"]["name"] == "Roundtrip"


def test_concurrent_same_section_updates_keep_last_applied(open_tab, channel) -> None:
    tab_a = open_tab()
    tab_b = open_tab()
    uid = tab_a.most_recent()

    tab_a.update({"device": {"target": "rp2040"}}, uid)
    tab_b.update({"device": {"target": "esp8266"}}, uid)
    channel.flush()

    # Each tab applied the other's broadcast last.
    assert tab_a.get(uid)["device"] == {"target": "esp8266"}
    assert tab_b.get(uid)["device"] == {"target": "rp2040"}
