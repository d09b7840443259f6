"""Helpers for walking the recursive filter tree.

every traversal dispatches on the two concrete filter classes and raises on
anything else, so adding a third variant breaks loudly instead of silently
skipping nodes.
"""

from typing import Any

from pydantic import TypeAdapter

from queryforge.models.query import Filter, GroupFilter, SimpleFilter

_filter_list = TypeAdapter(list[Filter])


def parse_filters(raw: list[dict[str, Any]] | None) -> list[Filter]:
    """Validate raw dicts (client or server shape) into filter models."""
    if not raw:
        return []
    return _filter_list.validate_python(raw)


def extract_members(filters: list[Filter]) -> list[str]:
    """All members referenced anywhere in the tree, first-seen order."""
    members: list[str] = []
    for f in filters:
        if isinstance(f, SimpleFilter):
            found = [f.member]
        elif isinstance(f, GroupFilter):
            found = extract_members(f.filters)
        else:
            raise TypeError(f"Unknown filter type: {type(f).__name__}")
        for member in found:
            if member not in members:
                members.append(member)
    return members


def to_server_format(filters: list[Filter]) -> list[dict[str, Any]]:
    """Convert to the server's {"and": [...]} / {"or": [...]} shape."""
    return [_filter_to_server(f) for f in filters]


def _filter_to_server(f: Filter) -> dict[str, Any]:
    if isinstance(f, SimpleFilter):
        return f.model_dump(by_alias=True, exclude_none=True, mode="json")
    if isinstance(f, GroupFilter):
        return {f.logic: [_filter_to_server(child) for child in f.filters]}
    raise TypeError(f"Unknown filter type: {type(f).__name__}")


def from_server_format(raw: list[dict[str, Any]]) -> list[Filter]:
    # the GroupFilter validator already understands {"and": [...]}
    return parse_filters(raw)


def has_filter_for_member(filters: list[Filter], member: str) -> bool:
    return member in extract_members(filters)


def remove_member_filters(filters: list[Filter], members: list[str]) -> list[Filter]:
    """Drop top-level simple filters on any of the given members.

    groups are kept as they are.
    """
    kept: list[Filter] = []
    for f in filters:
        if isinstance(f, SimpleFilter):
            if f.member not in members:
                kept.append(f)
        elif isinstance(f, GroupFilter):
            kept.append(f)
        else:
            raise TypeError(f"Unknown filter type: {type(f).__name__}")
    return kept


def add_member_filter(filters: list[Filter], member: str) -> list[Filter]:
    """Add an empty "is set" filter on member, the way a dropped field lands.

    - nothing there yet: it becomes the only filter
    - a single group at the top: appended into that group
    - anything else: everything gets wrapped in an AND group
    skips entirely if the member is already filtered on.
    """
    if has_filter_for_member(filters, member):
        return list(filters)

    new_filter = SimpleFilter(member=member, operator="set", values=[])
    if not filters:
        return [new_filter]

    if len(filters) == 1 and isinstance(filters[0], GroupFilter):
        group = filters[0]
        return [group.model_copy(update={"filters": [*group.filters, new_filter]})]

    return [GroupFilter(logic="and", filters=[*filters, new_filter])]
