"""
Write-back of extracted variables into the host system.

After every command of a pipeline has run, each configured `EntryToSave` picks values
from the variable store and hands them to an `EntrySink`. The host system sub-classes
`EntrySink` and implements the three save methods; `InMemoryEntrySink` keeps everything
in dictionaries and is what the tests use.

● Entry types:
    - `property` : one process property per saved value.
    - `metadata` : one metadata field per saved value.
    - `group`    : every stored record becomes one metadata group whose fields are
                   read from the record by JSON path.
● Choices (property / metadata):
    - `first` | `last` | `random` : a single value.
    - `each`                      : every value is saved separately.
    - `:<delimiter>`              : all values joined with <delimiter>.
    - anything else               : all values joined with ", ".
"""

from __future__ import annotations
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from json_path import stringify, values_at
from variable_store import VariableStore

logger = logging.getLogger("ApiRunner.entries")

DEFAULT_DELIMITER = ", "


class EntryToSave(BaseModel):
    type: str = Field(..., description="property | metadata | group")
    name: str = Field(..., description="Name of the property, metadata type or metadata group")
    value: str = Field(..., description="Variable whose values are saved, e.g. '$title' or '{$record}'")
    choice: str = Field("", description="first | last | random | each | :<delimiter> (default: join with ', ')")
    overwrite: bool = Field(False, description="Reuse an existing record of the same name instead of adding a new one")
    fields: Dict[str, str] = Field(default_factory=dict, description="Group only: field name -> JSON path inside each record")

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("type")
    def normalize_type(cls, v):
        return v.strip().lower()


def delimiter_from_choice(choice: Optional[str]) -> str:
    """':; ' -> '; '. Anything not starting with a colon (or a lone colon) gives ', '."""
    if choice and choice.startswith(":") and len(choice) > 1:
        return choice[1:]
    return DEFAULT_DELIMITER


def choose_entry_value(values: List[Any], choice: Optional[str], rng: Optional[random.Random] = None) -> str:
    """Reduce a variable's values to the single string that will be saved."""
    strings = [stringify(value) for value in values]
    normalized = (choice or "").lower()
    if not strings:
        return ""
    if normalized == "first":
        return strings[0]
    if normalized == "last":
        return strings[-1]
    if normalized == "random":
        return (rng or random.Random()).choice(strings)

    delimiter = delimiter_from_choice(choice)
    logger.debug(f"Combining {len(strings)} value(s) using delimiter '{delimiter}'")
    return delimiter.join(strings)


class EntrySink(ABC):
    """
    Host-side destination of saved entries.

    `overwrite=True` asks the host to update an existing record with the same name if there
    is one; otherwise a new record is always created.
    """

    @abstractmethod
    def save_property(self, name: str, value: str, *, overwrite: bool) -> None: ...

    @abstractmethod
    def save_metadata(self, name: str, value: str, *, overwrite: bool) -> None: ...

    @abstractmethod
    def save_group(self, name: str, fields: Dict[str, List[str]]) -> None: ...


class InMemoryEntrySink(EntrySink):
    """Keeps saved entries in dictionaries of name -> list of record values."""

    def __init__(self) -> None:
        self.properties: Dict[str, List[str]] = {}
        self.metadata: Dict[str, List[str]] = {}
        self.groups: List[Dict[str, Any]] = []

    @staticmethod
    def _store(records: Dict[str, List[str]], name: str, value: str, overwrite: bool) -> None:
        existing = records.setdefault(name, [])
        if overwrite and existing:
            existing[0] = value
        else:
            existing.append(value)

    def save_property(self, name: str, value: str, *, overwrite: bool) -> None:
        self._store(self.properties, name, value, overwrite)

    def save_metadata(self, name: str, value: str, *, overwrite: bool) -> None:
        self._store(self.metadata, name, value, overwrite)

    def save_group(self, name: str, fields: Dict[str, List[str]]) -> None:
        self.groups.append({"name": name, "fields": fields})


class EntrySaver:
    """Applies `EntryToSave` definitions against a variable store."""

    def __init__(self, sink: EntrySink, rng: Optional[random.Random] = None):
        self.sink = sink
        self.rng = rng or random.Random()

    def save(self, entry: EntryToSave, store: VariableStore) -> bool:
        """
        Save one entry. Returns True on success, False for unknown entry types or when the
        sink raised.
        """
        try:
            if entry.type == "property":
                self._save_values(entry, store, self.sink.save_property)
            elif entry.type == "metadata":
                self._save_values(entry, store, self.sink.save_metadata)
            elif entry.type == "group":
                self._save_group(entry, store)
            else:
                logger.warning(f"Ignoring unknown entry type: {entry.type}.")
                return False
        except Exception as e:
            logger.error(f"Exception caught while saving {entry.type} '{entry.name}': {e}")
            return False
        return True

    def _save_values(self, entry: EntryToSave, store: VariableStore, save_one) -> None:
        values = store.get(entry.value)
        if entry.choice.lower() == "each":
            for value in values:
                save_one(entry.name, stringify(value), overwrite=entry.overwrite)
            logger.debug(f"Saved {len(values)} value(s) of {entry.value} as {entry.type} '{entry.name}'")
            return

        value = choose_entry_value(values, entry.choice, self.rng)
        logger.debug(f"{entry.type} value to be saved: {entry.name} = {value}")
        save_one(entry.name, value, overwrite=entry.overwrite)

    def _save_group(self, entry: EntryToSave, store: VariableStore) -> None:
        if not store.contains(entry.value):
            logger.warning(f"No records stored under {entry.value}; group '{entry.name}' not saved.")
            return
        for record in store.get(entry.value):
            fields = {
                field_name: [stringify(value) for value in values_at(path, record)]
                for field_name, path in entry.fields.items()
            }
            self.sink.save_group(entry.name, fields)
