import random
from typing import Dict, List

import pytest

from entry_saver import (
    EntrySaver,
    EntrySink,
    EntryToSave,
    InMemoryEntrySink,
    choose_entry_value,
    delimiter_from_choice,
)
from variable_store import VariableStore


@pytest.fixture
def store() -> VariableStore:
    s = VariableStore()
    s.set("title", ["A", "B", "C"])
    s.set("records", [
        {"name": "Ann", "tags": ["x", "y"]},
        {"name": "Bob", "tags": []},
    ])
    return s


@pytest.fixture
def sink() -> InMemoryEntrySink:
    return InMemoryEntrySink()


@pytest.mark.parametrize("choice, expected", [
    (":; ", "; "),
    (":", ", "),
    ("", ", "),
    (None, ", "),
    ("foo", ", "),
])
def test_delimiter_from_choice(choice, expected):
    assert delimiter_from_choice(choice) == expected


@pytest.mark.parametrize("choice, expected", [
    ("first", "A"),
    ("LAST", "C"),
    (":|", "A|B|C"),
    ("", "A, B, C"),
])
def test_choose_entry_value(choice, expected):
    assert choose_entry_value(["A", "B", "C"], choice) == expected


def test_choose_entry_value_random_and_empty():
    assert choose_entry_value(["A", "B", "C"], "random", random.Random(1)) in ("A", "B", "C")
    assert choose_entry_value([], "first") == ""


def test_save_property_joined(store, sink):
    entry = EntryToSave(type="property", name="titles", value="$title", choice=":/")
    assert EntrySaver(sink).save(entry, store)
    assert sink.properties == {"titles": ["A/B/C"]}


def test_save_metadata_each(store, sink):
    entry = EntryToSave(type="Metadata", name="dc.title", value="{$title}", choice="each")
    assert EntrySaver(sink).save(entry, store)
    assert sink.metadata == {"dc.title": ["A", "B", "C"]}


def test_overwrite_reuses_existing_record(store, sink):
    saver = EntrySaver(sink)
    saver.save(EntryToSave(type="property", name="p", value="$title", choice="first"), store)
    saver.save(EntryToSave(type="property", name="p", value="$title", choice="last", overwrite=True), store)
    saver.save(EntryToSave(type="property", name="p", value="$title", choice="first"), store)
    assert sink.properties == {"p": ["C", "A"]}


def test_unknown_variable_saves_its_name(sink):
    entry = EntryToSave(type="property", name="p", value="$missing", choice="first")
    assert EntrySaver(sink).save(entry, VariableStore())
    assert sink.properties == {"p": ["$missing"]}


def test_save_group_one_per_record(store, sink):
    entry = EntryToSave(type="group", name="people", value="$records", fields={"who": "name", "tag": "tags"})
    assert EntrySaver(sink).save(entry, store)
    assert sink.groups == [
        {"name": "people", "fields": {"who": ["Ann"], "tag": ["x", "y"]}},
        {"name": "people", "fields": {"who": ["Bob"], "tag": []}},
    ]


def test_save_group_missing_variable(sink):
    entry = EntryToSave(type="group", name="people", value="$records")
    assert EntrySaver(sink).save(entry, VariableStore())
    assert sink.groups == []


def test_unknown_type_returns_false(store, sink):
    assert EntrySaver(sink).save(EntryToSave(type="bogus", name="x", value="$title"), store) is False


def test_sink_failure_returns_false(store):
    class FailingSink(EntrySink):
        def save_property(self, name: str, value: str, *, overwrite: bool) -> None:
            raise RuntimeError("host unavailable")

        def save_metadata(self, name: str, value: str, *, overwrite: bool) -> None:
            pass

        def save_group(self, name: str, fields: Dict[str, List[str]]) -> None:
            pass

    entry = EntryToSave(type="property", name="p", value="$title")
    assert EntrySaver(FailingSink()).save(entry, store) is False
