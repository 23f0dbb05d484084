# variable_store.py

import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("ApiRunner.store")

__all__ = ["VariableStore", "wrap_key"]


def wrap_key(key: str) -> str:
    """
    Canonicalize a variable name into its wrapped form: x, $x, {x} and {$x} all become {$x}.
    """
    if key.startswith("{$"):
        return key + ("" if key.endswith("}") else "}")
    if key.startswith("$"):
        return "{" + key + ("" if key.endswith("}") else "}")
    if key.startswith("{"):
        return "{$" + key[1:] + ("" if key.endswith("}") else "}")
    return "{$" + key + ("" if key.endswith("}") else "}")


class VariableStore:
    """
    Keyed store of multi-valued variables shared by every command of one pipeline run.

    Every access goes through wrap_key(), so callers may use any of the accepted
    spellings of a name. A stored value list is never empty.
    Not thread-safe: a store belongs to exactly one run.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._variables: Dict[str, List[Any]] = {}
        for name, value in (initial or {}).items():
            added = self.set(name, value) if isinstance(value, list) else self.set_value(name, value)
            if not added:
                logger.error(f"Failed to add initial variable '{name}'.")

    def set(self, name: Optional[str], values: Optional[Iterable[Any]]) -> bool:
        """
        Store `values` under `name`, replacing any previous value list.
        Returns True on success (or when no name was given at all), False when the
        value list is None or empty, in which case the previous value is kept.
        """
        if name is None or not name.strip():
            # nothing was requested, so there is nothing to update
            return True

        values_list = list(values) if values is not None else []
        if not values_list:
            logger.debug(f"The value of the new variable '{name}' should not be empty or None.")
            return False

        wrapped_key = wrap_key(name.strip())
        if wrapped_key in self._variables:
            logger.debug(f"The variable '{wrapped_key}' already exists. Updating...")

        self._variables[wrapped_key] = values_list
        if logger.isEnabledFor(logging.DEBUG):
            preview = repr(values_list)
            logger.debug(f"Variable updated: {wrapped_key} -> {preview[:200]}{'...' if len(preview) > 200 else ''}")
        return True

    def set_value(self, name: Optional[str], value: Any) -> bool:
        """Store a single value. None and blank strings are rejected."""
        if value is None or (isinstance(value, str) and not value.strip()):
            logger.debug(f"The value of the variable '{name}' should not be blank.")
            return False
        return self.set(name, [value])

    def get(self, name: str) -> List[Any]:
        """
        Return the values of `name`, or a one-element list holding `name` itself if the
        variable is unknown.
        """
        wrapped_key = wrap_key(name)
        if wrapped_key in self._variables:
            return list(self._variables[wrapped_key])
        return [name]

    def first(self, name: str) -> Any:
        return self.get(name)[0]

    def contains(self, name: str) -> bool:
        return wrap_key(name) in self._variables

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.contains(name)

    def __len__(self) -> int:
        return len(self._variables)

    def snapshot(self) -> Dict[str, List[Any]]:
        """Shallow copy of the store, keyed by canonical names."""
        return {key: list(values) for key, values in self._variables.items()}
