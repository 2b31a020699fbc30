import threading
import unittest
from unittest.mock import MagicMock

import pytest

from toolpipe.model.parsing import config_from_yaml
from toolpipe.model.projection import (
    ChangeKind,
    ConfigProjection,
    ListChangeEvent,
    ObservableList,
    RegisteredToolManager,
)
from toolpipe.model.tools import Config, ToolKind
from toolpipe.persistence.codec import decode_config
from toolpipe.persistence.store import CONFIG_KEY, ConfigRepository, MemorySettingsStore

SAMPLE = config_from_yaml("""
macros:
- name: First
  prefix: [cat]
  inputMethod: stdin
- name: Second
  prefix: [tac]
  inputMethod: stdin
  enabled: false
commentators:
- name: Size
  prefix: [wc, -c]
  inputMethod: stdin
""")


class TestObservableList(unittest.TestCase):

    def setUp(self):
        self.events = []
        self.items = ObservableList(["a", "b", "c"])
        self.items.add_listener(self.events.append)

    def test_set_at_reports_single_index(self):
        self.items.set_at(1, "B")
        assert list(self.items) == ["a", "B", "c"]
        assert self.events == [ListChangeEvent(ChangeKind.CHANGED, 1, 1)]

    def test_insert_and_remove(self):
        self.items.insert(0, "z")
        self.items.append("d")
        removed = self.items.remove_at(1)
        assert removed == "a"
        assert list(self.items) == ["z", "b", "c", "d"]
        assert self.events == [
            ListChangeEvent(ChangeKind.ADDED, 0, 0),
            ListChangeEvent(ChangeKind.ADDED, 4, 4),
            ListChangeEvent(ChangeKind.REMOVED, 1, 1),
        ]

    def test_replace_all_reports_removal_then_addition(self):
        self.items.replace_all(["x", "y"])
        assert list(self.items) == ["x", "y"]
        assert self.events == [
            ListChangeEvent(ChangeKind.REMOVED, 0, 2),
            ListChangeEvent(ChangeKind.ADDED, 0, 1),
        ]

    def test_replace_with_empty(self):
        self.items.replace_all([])
        assert len(self.items) == 0
        assert self.events == [ListChangeEvent(ChangeKind.REMOVED, 0, 2)]

    def test_out_of_range(self):
        with self.assertRaises(IndexError):
            self.items.set_at(3, "x")
        with self.assertRaises(IndexError):
            self.items.remove_at(-1)
        assert self.events == []

    def test_failed_commit_changes_nothing(self):
        def refuse(snapshot):
            raise OSError("disk full")

        items = ObservableList(["a"], before_commit=refuse)
        items.add_listener(self.events.append)
        with self.assertRaises(OSError):
            items.set_at(0, "b")
        assert list(items) == ["a"]
        assert self.events == []

    def test_listener_sees_committed_snapshot(self):
        seen = []
        self.items.add_listener(lambda event: seen.append(self.items.snapshot))
        self.items.set_at(0, "A")
        assert seen == [("A", "b", "c")]


def make_projection(config=SAMPLE):
    store = MemorySettingsStore()
    repository = ConfigRepository(store)
    repository.save(config)
    return ConfigProjection(repository.load(), repository), store


def stored(store) -> Config:
    return decode_config(store.get_bytes(CONFIG_KEY), padded=True)


def test_toggle_persists_before_notifying():
    projection, store = make_projection()
    seen = []
    projection[ToolKind.MACRO].add_listener(lambda event: seen.append((event, stored(store).macros[1].enabled)))

    tool = projection.toggle_enabled(ToolKind.MACRO, 1)
    assert tool.enabled is True
    assert stored(store).macros[1].enabled is True
    assert projection.config.macros[1].enabled is True
    assert seen == [(ListChangeEvent(ChangeKind.CHANGED, 1, 1), True)]


def test_toggle_to_explicit_value():
    projection, store = make_projection()
    projection.toggle_enabled(ToolKind.MACRO, 0, False)
    projection.toggle_enabled(ToolKind.MACRO, 0, False)
    assert stored(store).macros[0].enabled is False
    # Other collections are untouched
    assert stored(store).commentators == SAMPLE.commentators


def test_toggle_out_of_range():
    projection, _ = make_projection()
    with pytest.raises(IndexError):
        projection.toggle_enabled(ToolKind.HIGHLIGHTER, 0)


def test_persist_failure_leaves_projection_unchanged():
    repository = MagicMock()
    repository.save.side_effect = OSError("read-only")
    projection = ConfigProjection(SAMPLE, repository)
    events = []
    projection[ToolKind.MACRO].add_listener(events.append)

    with pytest.raises(OSError):
        projection.toggle_enabled(ToolKind.MACRO, 0)
    assert projection[ToolKind.MACRO][0].enabled is True
    assert projection.config == SAMPLE
    assert events == []


def test_replace_config_refreshes_every_list():
    projection, store = make_projection()
    events = []
    projection[ToolKind.COMMENTATOR].add_listener(events.append)
    replacement = config_from_yaml("highlighters:\n- name: H\n  prefix: [grep]\n  inputMethod: stdin\n  color: red")

    projection.replace_config(replacement)
    assert stored(store) == replacement
    assert len(projection[ToolKind.COMMENTATOR]) == 0
    assert len(projection[ToolKind.HIGHLIGHTER]) == 1
    assert events == [ListChangeEvent(ChangeKind.REMOVED, 0, 0)]



def test_toggle_during_replace_applies_to_new_config(monkeypatch):
    projection, store = make_projection()
    replacement = SAMPLE.replace_collection(ToolKind.MACRO, SAMPLE.macros[:1])
    toggler = threading.Thread(target=projection.toggle_enabled, args=(ToolKind.MACRO, 0))
    save = projection.repository.save

    def save_then_toggle(config):
        save(config)
        if toggler.ident is None:
            toggler.start()
            # The toggle waits until every list shows the replacement
            toggler.join(timeout=0.2)
            assert toggler.is_alive()

    monkeypatch.setattr(projection.repository, "save", save_then_toggle)
    projection.replace_config(replacement)
    toggler.join(timeout=5)

    assert not toggler.is_alive()
    expected = (SAMPLE.macros[0].with_enabled(False),)
    assert projection[ToolKind.MACRO].snapshot == expected
    assert projection.config.macros == expected
    assert stored(store) == projection.config
    assert projection.config.commentators == SAMPLE.commentators


def test_set_developer():
    projection, store = make_projection()
    projection.set_developer(True)
    assert stored(store).developer is True
    assert projection.snapshot().developer is True


class TestRegisteredToolManager(unittest.TestCase):

    def setUp(self):
        self.projection, _ = make_projection()
        self.registered = []
        self.manager = RegisteredToolManager(
            self.projection[ToolKind.MACRO],
            register=self._register,
            unregister=self.registered.remove,
        )

    def _register(self, tool):
        handle = f"handle:{tool.name}"
        self.registered.append(handle)
        return handle

    def test_only_enabled_entries_are_registered(self):
        assert self.registered == ["handle:First"]
        assert self.manager.registrations == ("handle:First",)

    def test_toggle_registers_and_unregisters(self):
        self.projection.toggle_enabled(ToolKind.MACRO, 1)
        assert sorted(self.registered) == ["handle:First", "handle:Second"]
        self.projection.toggle_enabled(ToolKind.MACRO, 0)
        assert self.registered == ["handle:Second"]

    def test_replace_all_resyncs(self):
        replacement = config_from_yaml(
            "macros:\n- name: New\n  prefix: [cat]\n  inputMethod: stdin\n"
            "- name: Newer\n  prefix: [cat]\n  inputMethod: stdin\n"
        )
        self.projection.replace_config(replacement)
        assert self.registered == ["handle:New", "handle:Newer"]
        assert self.manager.registrations == ("handle:New", "handle:Newer")

    def test_close_unregisters_everything(self):
        self.manager.close()
        assert self.registered == []
        self.projection.toggle_enabled(ToolKind.MACRO, 1)
        assert self.registered == []
