# command_template.py

import itertools
import json
import logging
import re
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from json_path import stringify
from variable_store import VariableStore

logger = logging.getLogger("ApiRunner.template")

__all__ = [
    "UnknownVariableError",
    "JSON_MEDIA_TYPE",
    "XML_MEDIA_TYPE",
    "normalize_media_type",
    "find_configured_placeholders",
    "resolve_configured_placeholders",
    "find_store_placeholders",
    "expand_store_placeholders",
    "substitute_first_values",
    "wrap_body",
]

JSON_MEDIA_TYPE = "application/json"
XML_MEDIA_TYPE = "application/xml"

# {name}: configured placeholder, filled once from literal configuration
_CONFIGURED_PLACEHOLDER = re.compile(r"\{([^{}$][^{}]*)\}")
# {$name}: store placeholder, filled from the variable store on every run of the command
_STORE_PLACEHOLDER = re.compile(r"\{\$[^{}]*\}")


class UnknownVariableError(LookupError):
    """A template references store variables that have not been set."""

    def __init__(self, template: str, names: List[str]):
        self.template = template
        self.names = names
        super().__init__(f"Unknown variable(s) {', '.join(names)} in '{template}'")


def normalize_media_type(value: Optional[str], what: str = "media") -> str:
    """
    Map a configured accept/body type to a media type. Only the part after the last '/'
    counts: 'xml' and 'application/xml' both give application/xml. Unknown or missing
    types fall back to JSON.
    """
    subtype = (value or "").split("/")[-1].strip().lower()
    if subtype in ("json", "xml"):
        return f"application/{subtype}"
    logger.warning(f"Unknown {what} type: '{value}'. Using JSON instead.")
    return JSON_MEDIA_TYPE


# ---------------------------
# Configured placeholders
# ---------------------------

def find_configured_placeholders(template: str) -> Dict[str, str]:
    """Map every '{name}' occurrence in `template` to 'name'."""
    return {match.group(0): match.group(1) for match in _CONFIGURED_PLACEHOLDER.finditer(template or "")}


def resolve_configured_placeholders(template: str, values: Mapping[str, str]) -> Tuple[str, List[str]]:
    """
    Replace every '{name}' with its configured value.

    Placeholders without a configured value are left untouched and reported back, so the
    caller can log them as configuration errors.
    Returns (resolved template, list of unresolved names).
    """
    result = template or ""
    missing: List[str] = []
    for placeholder, name in find_configured_placeholders(result).items():
        value = values.get(name)
        if value is None:
            missing.append(name)
            logger.error(f"No value configured for placeholder '{placeholder}' in '{template}'. Leaving it unresolved.")
            continue
        result = result.replace(placeholder, stringify(value))
    return result, missing


# ---------------------------
# Store placeholders
# ---------------------------

def find_store_placeholders(template: str) -> List[str]:
    """Distinct '{$name}' placeholders in order of first appearance."""
    seen: List[str] = []
    for match in _STORE_PLACEHOLDER.finditer(template or ""):
        if match.group(0) not in seen:
            seen.append(match.group(0))
    return seen


def expand_store_placeholders(template: str, store: VariableStore) -> Iterator[str]:
    """
    Expand `template` into one string per combination of the values of the store variables
    it references (the cartesian product of their value lists).

    Raises UnknownVariableError right away if any referenced variable is not in the store;
    otherwise returns a lazy iterator. A template without store placeholders yields itself.
    """
    placeholders = find_store_placeholders(template)
    unknown = [name for name in placeholders if not store.contains(name)]
    if unknown:
        raise UnknownVariableError(template, unknown)

    value_lists = [store.get(name) for name in placeholders]
    logger.debug(
        f"Expanding '{template}' over {len(placeholders)} variable(s): "
        + ", ".join(f"{name} x{len(values)}" for name, values in zip(placeholders, value_lists))
    )
    return _combinations(template, placeholders, value_lists)


def _combinations(template: str, placeholders: List[str], value_lists: List[List]) -> Iterator[str]:
    for combination in itertools.product(*value_lists):
        endpoint = template
        for placeholder, value in zip(placeholders, combination):
            endpoint = endpoint.replace(placeholder, stringify(value))
        yield endpoint


def substitute_first_values(template: str, store: VariableStore) -> str:
    """
    Replace every '{$name}' with the first value of that variable (no fan-out). Unknown
    variables resolve to themselves, so their placeholders stay in the text.
    """
    result = template or ""
    for placeholder in find_store_placeholders(result):
        result = result.replace(placeholder, stringify(store.first(placeholder)))
    return result


# ---------------------------
# Body wrapping
# ---------------------------

def wrap_body(content: str, wrapper: Optional[str], content_type: str) -> str:
    """
    Nest `content` inside the space-separated tags of `wrapper`, first tag innermost.
    JSON bodies become {"tag": content}, XML bodies <tag>content</tag>; other content
    types are returned unchanged.
    """
    tags = (wrapper or "").split()
    if not tags:
        return content

    media = content_type.split(";")[0].strip().lower()
    if media not in (JSON_MEDIA_TYPE, XML_MEDIA_TYPE):
        logger.debug(f"Not wrapping body for content type '{content_type}'.")
        return content

    body = content.strip()
    for tag in tags:
        if media == JSON_MEDIA_TYPE:
            body = f"{{{json.dumps(tag)}: {body or 'null'}}}"
        else:
            body = f"<{tag}>{body}</{tag}>"
    return body
