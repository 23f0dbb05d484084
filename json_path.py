# json_path.py

import json
import logging
import random
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger("ApiRunner.json_path")

__all__ = [
    "AlternativeOption",
    "parse_alternative_option",
    "stringify",
    "is_blank",
    "split_path",
    "values_at",
    "common_heading",
    "common_heading_of",
    "common_parents",
    "filtered_extract",
    "set_values_at",
]


class AlternativeOption(str, Enum):
    """What to return for a target when no row satisfies the filter."""
    ALL = "all"
    FIRST = "first"
    LAST = "last"
    RANDOM = "random"
    NONE = "none"


def parse_alternative_option(option: Optional[str]) -> AlternativeOption:
    """
    Parse a configured alternative option. Anything unknown falls back to NONE.
    """
    normalized = (option or "").strip().lower()
    try:
        return AlternativeOption(normalized)
    except ValueError:
        if normalized:
            logger.warning(f"Unknown filter alternative option '{option}'. Using '{AlternativeOption.NONE.value}' instead.")
        return AlternativeOption.NONE


def stringify(value: Any) -> str:
    """String form of a JSON value as used for comparisons and template substitution."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def split_path(path: Optional[str]) -> List[str]:
    """'a.b.c' -> ['a', 'b', 'c']; blank paths have no segments."""
    if path is None or not path.strip():
        return []
    return [segment.strip() for segment in path.strip().split(".")]


def _join(segments: List[str]) -> str:
    return ".".join(segments)


# ---------------------------
# Navigation
# ---------------------------

def values_at(path: Optional[str], node: Any) -> List[Any]:
    """
    Collect every value reachable from `node` by following the dot-separated `path`.

    Lists are distributed over transparently: each element is queried and the results
    are flattened, so 'reviewers.name' works whether 'reviewers' is one object or a list.
    Missing fields, fields requested on scalars and JSON nulls contribute nothing.
    """
    return _values_at_segments(split_path(path), node)


def _values_at_segments(segments: List[str], node: Any) -> List[Any]:
    if node is None:
        return []
    if isinstance(node, list):
        results: List[Any] = []
        for element in node:
            results.extend(_values_at_segments(segments, element))
        return results
    if not segments:
        return [node]
    if not isinstance(node, dict):
        # path continues but there is nothing to descend into
        return []

    head, rest = segments[0], segments[1:]
    if head not in node:
        return []
    return _values_at_segments(rest, node[head])


def common_heading(path1: Optional[str], path2: Optional[str]) -> str:
    """Longest shared dot-delimited prefix of two paths: ('a.b.c', 'a.b.d') -> 'a.b'."""
    shared: List[str] = []
    for left, right in zip(split_path(path1), split_path(path2)):
        if left != right:
            break
        shared.append(left)
    return _join(shared)


def common_heading_of(paths: List[Optional[str]]) -> str:
    """
    Common heading of every non-blank path in `paths`. Blank paths impose no constraint;
    if all paths are blank the heading is blank as well.
    """
    heading: Optional[str] = None
    for path in paths:
        if path is None or not path.strip():
            continue
        heading = path.strip() if heading is None else common_heading(heading, path)
    return heading or ""


def common_parents(heading: Optional[str], node: Any) -> List[Any]:
    """The rows over which filtering is evaluated: every node found at `heading`."""
    return values_at(heading, node)


def _suffix(path: Optional[str], heading: str) -> str:
    """Part of `path` below `heading`; heading is known to be a segment prefix of path."""
    return _join(split_path(path)[len(split_path(heading)):])


# ---------------------------
# Filtering
# ---------------------------

def _row_matches(row: Any, filter_suffix: str, fallback_suffix: str, filter_value: str) -> bool:
    primary = values_at(filter_suffix, row)
    if all(is_blank(value) for value in primary):
        # only an unpopulated primary filter falls through to the fallback path
        logger.debug(f"Primary filter empty for row, trying fallback suffix '{fallback_suffix}'.")
        candidates = values_at(fallback_suffix, row)
    else:
        candidates = primary
    return any(stringify(value) == filter_value for value in candidates)


def filtered_extract(
    targets: Dict[str, str],
    filter_path: Optional[str],
    filter_fallback_path: Optional[str],
    filter_value: Any,
    alternative_option: Any,
    root: Any,
    rng: Optional[random.Random] = None,
) -> Dict[str, List[Any]]:
    """
    Extract the values of several target paths at once, keeping only the rows whose
    filter path carries `filter_value`.

    The rows are the nodes at the common heading of all target and filter paths, so for
    targets 'reviewers.name' and filter 'reviewers.role' every reviewer is one row and
    only the names of reviewers with the requested role are returned.

    For each row the filter is checked at the filter path below the heading; if that row has
    no non-blank value there, the fallback path is checked instead. A blank filter path or a
    blank filter value disables filtering. A target for which no matching row yielded a
    value is filled according to `alternative_option` (all | first | last | random | none),
    always evaluated over the complete row list.

    Returns a mapping of target name to list of values (possibly empty).
    """
    if not isinstance(alternative_option, AlternativeOption):
        alternative_option = parse_alternative_option(alternative_option)
    rng = rng or random.Random()

    filter_value_str = "" if is_blank(filter_value) else stringify(filter_value)
    filter_enabled = not is_blank(filter_path) and filter_value_str != ""
    fallback_path = filter_fallback_path if not is_blank(filter_fallback_path) else filter_path

    heading_paths: List[Optional[str]] = list(targets.values())
    if filter_enabled:
        heading_paths.extend([filter_path, fallback_path])
    heading = common_heading_of(heading_paths)
    rows = common_parents(heading, root)
    logger.debug(f"Filtered extraction: heading='{heading}', rows={len(rows)}, filter_enabled={filter_enabled}")

    target_suffixes = {name: _suffix(path, heading) for name, path in targets.items()}
    filter_suffix = _suffix(filter_path, heading) if filter_enabled else ""
    fallback_suffix = _suffix(fallback_path, heading) if filter_enabled else ""

    results: Dict[str, List[Any]] = {name: [] for name in targets}
    for row in rows:
        if filter_enabled and not _row_matches(row, filter_suffix, fallback_suffix, filter_value_str):
            continue
        for name, suffix in target_suffixes.items():
            results[name].extend(values_at(suffix, row))

    chosen_row_index: Optional[int] = None
    for name, suffix in target_suffixes.items():
        if results[name] or not rows:
            continue

        if alternative_option is AlternativeOption.ALL:
            for row in rows:
                results[name].extend(values_at(suffix, row))
        elif alternative_option is AlternativeOption.FIRST:
            results[name] = values_at(suffix, rows[0])
        elif alternative_option is AlternativeOption.LAST:
            results[name] = values_at(suffix, rows[-1])
        elif alternative_option is AlternativeOption.RANDOM:
            if chosen_row_index is None:
                # one row per extraction so all targets describe the same row
                chosen_row_index = rng.randrange(len(rows))
            results[name] = values_at(suffix, rows[chosen_row_index])
        else:
            logger.debug(f"No match found for target '{name}' and no alternative configured.")
            continue

        logger.debug(f"No match found for target '{name}', applied alternative '{alternative_option.value}'.")

    return results


# ---------------------------
# Writing
# ---------------------------

def set_values_at(document: Any, path: Optional[str], value: Any) -> int:
    """
    Write `value` at `path` inside `document` (in place).

    The parent path is navigated like values_at(), distributing over lists, and the last
    segment is set on every object reached. Missing intermediate objects are created.
    Returns the number of objects updated.
    """
    segments = split_path(path)
    if not segments:
        logger.warning("Cannot set a value at a blank path.")
        return 0
    return _set_at_segments(document, segments, value)


def _set_at_segments(node: Any, segments: List[str], value: Any) -> int:
    if isinstance(node, list):
        return sum(_set_at_segments(element, segments, value) for element in node)
    if not isinstance(node, dict):
        return 0

    head = segments[0]
    if len(segments) == 1:
        node[head] = value
        return 1

    child = node.get(head)
    if child is None:
        child = {}
        node[head] = child
    return _set_at_segments(child, segments[1:], value)
