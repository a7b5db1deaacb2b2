"""Host selection for fleetplay.

Resolves the host selector of a play (`hosts:`) and the `--limit` option
against an inventory. A selector is a list of terms separated by commas
or colons:

- `all` or `*`: every host
- Group names: nginx (all members, children included)
- Host names: web01
- Glob patterns: web* (matched against host and group names)
- Subscripts: nginx[0] (first member), nginx[-1], nginx[0:2] (inclusive)
- Intersection: &staging
- Exclusion: !db*

Terms are applied left to right; the result keeps the order in which hosts
were first selected.
"""

import fnmatch
import logging
import re
from dataclasses import dataclass

from .exceptions import IndexOutOfRangeError, SelectorError, UnknownGroupError
from .inventory import ALL_GROUP, Inventory

logger = logging.getLogger(__name__)

_SUBSCRIPT_RE = re.compile(r"^(?P<name>[^\[\]]+)\[(?P<start>-?\d+)(?::(?P<end>-?\d*))?\]$")


@dataclass(frozen=True)
class SelectorTerm:
    """One term of a host selector.

    Attributes:
        op: "union", "intersect" or "exclude"
        name: Group name, host name or glob
        start: Subscript start index, if any
        end: Inclusive subscript end index; None for a single index
        is_slice: The subscript was written with a colon
    """

    op: str
    name: str
    start: int | None = None
    end: int | None = None
    is_slice: bool = False


def _split_terms(pattern: str) -> list[str]:
    """Split on commas and on colons that are not inside a subscript."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    for char in pattern:
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(0, depth - 1)
        if char in ",:" and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def parse_selector(pattern: str) -> list[SelectorTerm]:
    """Parse a selector string into terms.

    Args:
        pattern: Selector such as "nginx[0]" or "web*,&staging,!web03"

    Returns:
        Terms in evaluation order

    Raises:
        SelectorError: If the selector is empty or malformed
    """
    terms: list[SelectorTerm] = []
    for part in _split_terms(pattern or ""):
        op = "union"
        if part.startswith("!"):
            op, part = "exclude", part[1:]
        elif part.startswith("&"):
            op, part = "intersect", part[1:]
        if part.startswith("@"):
            part = part[1:]
        if not part:
            raise SelectorError(f"Empty term in selector '{pattern}'")

        match = _SUBSCRIPT_RE.match(part)
        if match:
            end = match.group("end")
            is_slice = end is not None
            terms.append(
                SelectorTerm(
                    op=op,
                    name=match.group("name"),
                    start=int(match.group("start")),
                    end=int(end) if end else None,
                    is_slice=is_slice,
                )
            )
        else:
            terms.append(SelectorTerm(op=op, name=part))

    if not terms:
        raise SelectorError("Host selector is empty")
    return terms


def _is_glob(name: str) -> bool:
    return any(c in name for c in "*?[")


def _subscript(members: list[str], term: SelectorTerm) -> list[str]:
    size = len(members)
    start = term.start if term.start is not None else 0
    if not -size <= start < size:
        raise IndexOutOfRangeError(term.name, start, size)
    start %= size
    if not term.is_slice:
        return [members[start]]
    if term.end is None:
        return members[start:]
    end = term.end % size if term.end < 0 else min(term.end, size - 1)
    return members[start: end + 1]


def _expand_term(inventory: Inventory, term: SelectorTerm) -> list[str]:
    """Host names matched by a single term, in declaration order."""
    name = term.name

    if name in (ALL_GROUP, "*") and term.start is None:
        return list(inventory.hosts)

    if term.start is not None:
        if name in inventory.groups:
            return _subscript(inventory.members(name), term)
        raise UnknownGroupError(name)

    if name in inventory.groups:
        return inventory.members(name)

    if inventory.has_host(name):
        return [name]

    if _is_glob(name):
        matched: list[str] = []
        for group_name in inventory.groups:
            if fnmatch.fnmatchcase(group_name, name):
                matched.extend(h for h in inventory.members(group_name) if h not in matched)
        for host_name in inventory.hosts:
            if fnmatch.fnmatchcase(host_name, name) and host_name not in matched:
                matched.append(host_name)
        if not matched:
            logger.warning(f"Selector pattern '{name}' matched no hosts")
        return matched

    raise UnknownGroupError(name)


def resolve_selector(inventory: Inventory, pattern: str) -> list[str]:
    """Resolve a selector to host names.

    Args:
        inventory: Inventory to select from
        pattern: Selector string

    Returns:
        Selected host names, without duplicates

    Raises:
        UnknownGroupError: If a term names no group or host
        IndexOutOfRangeError: If a subscript is past the end of a group

    Example:
        >>> resolve_selector(inventory, "nginx[0]")
        ['web01']
    """
    selected: list[str] = []
    for term in parse_selector(pattern):
        hosts = _expand_term(inventory, term)
        if term.op == "union":
            selected.extend(h for h in hosts if h not in selected)
        elif term.op == "intersect":
            keep = set(hosts)
            selected = [h for h in selected if h in keep]
        else:
            drop = set(hosts)
            selected = [h for h in selected if h not in drop]
    return selected


def select_hosts(
    inventory: Inventory,
    pattern: str,
    limit: str | None = None,
) -> list[str]:
    """Apply a play's host selector and an optional --limit selector.

    The limit narrows the play's hosts; it never adds hosts the play did
    not target. Order follows the play selector.
    """
    hosts = resolve_selector(inventory, pattern)
    if limit:
        allowed = set(resolve_selector(inventory, limit))
        filtered = [h for h in hosts if h in allowed]
        logger.info(format_filter_summary(len(hosts), len(filtered), limit))
        hosts = filtered
    return hosts


def format_filter_summary(
    original_count: int,
    filtered_count: int,
    limit_pattern: str,
) -> str:
    """Format a summary of host filtering.

    Returns:
        Human-readable summary string
    """
    if filtered_count == original_count:
        return f"All {original_count} host(s) matched limit: {limit_pattern}"

    excluded = original_count - filtered_count
    return (
        f"Limit '{limit_pattern}': {filtered_count}/{original_count} hosts "
        f"({excluded} excluded)"
    )
