"""Tag construction and utilities."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping

from tagsync.types import Tag, TagLike

_ESCAPE_MAP = {"\\": "\\\\", ":": "\\:"}


def tag(type_: str, id: object | None = None) -> Tag:
    """Build a collection tag ``("lectures",)`` or entity tag ``("lecture", "l1")``."""
    if not type_:
        raise ValueError("Tag type must be a non-empty string")
    if id is None:
        return Tag((type_,))
    return Tag((type_, str(id)))


def define_tags(
    definitions: dict[str, Callable[..., tuple[str, ...]]],
) -> dict[str, Callable[..., Tag]]:
    """
    Define a family of tags in one place.

    Example:
        tags = define_tags({
            "lecture": lambda id: ("lecture", id),
            "creator": lambda teacher_id: ("creator", teacher_id),
        })

        tags["lecture"]("l1")     # Tag: ("lecture", "l1")
    """
    result: dict[str, Callable[..., Tag]] = {}
    for name, fn in definitions.items():

        def make_tag(*args: object, _fn: Callable[..., tuple[str, ...]] = fn) -> Tag:
            return Tag(tuple(str(part) for part in _fn(*args)))

        result[name] = make_tag
    return result


def normalize_tag(value: TagLike) -> Tag:
    """Coerce a string, tuple, or ``{"type", "id"}`` mapping into a Tag."""
    if isinstance(value, str):
        return tag(value)
    if isinstance(value, Mapping):
        if "type" not in value:
            raise TypeError(f"Tag mapping needs a 'type' key: {value!r}")
        return tag(value["type"], value.get("id"))
    if isinstance(value, tuple) and value:
        return Tag(tuple(str(part) for part in value))
    raise TypeError(f"Expected a tag, got {value!r}")


def normalize_tags(values: Iterable[TagLike]) -> frozenset[Tag]:
    return frozenset(normalize_tag(v) for v in values)


def expand_tags(tags: Iterable[Tag]) -> frozenset[Tag]:
    """Add the collection tag for every entity tag in ``tags``."""
    result = set(tags)
    for t in list(result):
        if len(t) > 1:
            result.add(Tag(t[:1]))
    return frozenset(result)


def tag_prefixes(t: Tag) -> list[Tag]:
    """Every prefix of ``t``, shortest first, including ``t`` itself."""
    return [Tag(t[:i]) for i in range(1, len(t) + 1)]


def serialize_tag(t: Tag) -> str:
    """Serialize a tag to a readable string for logs."""

    def escape(part: str) -> str:
        result = part
        for char, escaped in _ESCAPE_MAP.items():
            result = result.replace(char, escaped)
        return result

    return ":".join(escape(str(p)) for p in t)


def is_tag_prefix(parent: Tag, child: Tag) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return child[: len(parent)] == parent
