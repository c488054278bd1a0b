"""Resource identities and attribute references.

Addresses identify a resource across declarations, plans and state:

    certificate.site
    storage_object.redirects["/old-page"]

References point from an attribute to another resource's output:

    "${certificate.site.arn}"                       -> value taken verbatim
    "https://${cdn_distribution.site.domain_name}/" -> interpolated as text
    "${each.key}" / "${each.value}"                 -> for_each substitution
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

_KEY_PART = r'\[\s*("(?:[^"\\]|\\.)*")\s*\]'

REFERENCE_PATTERN = re.compile(
    r"\$\{([a-z][a-z0-9_]*)\.([A-Za-z][A-Za-z0-9_-]*)(?:" + _KEY_PART + r")?\.([A-Za-z_][A-Za-z0-9_]*)\}"
)
EACH_PATTERN = re.compile(r"\$\{each\.(key|value)\}")
ADDRESS_PATTERN = re.compile(
    r"^([a-z][a-z0-9_]*)\.([A-Za-z][A-Za-z0-9_-]*)(?:" + _KEY_PART + r")?(#deposed)?$"
)

DEPOSED_SUFFIX = "#deposed"


@dataclass(frozen=True)
class ResourceId:
    """Identity of a resource node: type, logical name and optional instance key."""

    type: str
    name: str
    key: str | None = None

    @property
    def address(self) -> str:
        if self.key is None:
            return f"{self.type}.{self.name}"
        return f"{self.type}.{self.name}[{json.dumps(self.key)}]"

    @property
    def template_address(self) -> str:
        """Address of the declaration this identity was expanded from."""
        return f"{self.type}.{self.name}"

    def with_key(self, key: str) -> ResourceId:
        return ResourceId(self.type, self.name, key)

    @classmethod
    def parse(cls, address: str) -> ResourceId:
        """Parse an address; a deposed suffix is ignored."""
        match = ADDRESS_PATTERN.match(address)
        if not match:
            raise ValueError(f"Invalid resource address: {address}")
        resource_type, name, raw_key, _ = match.groups()
        key = json.loads(raw_key) if raw_key is not None else None
        return cls(resource_type, name, key)

    def __str__(self) -> str:
        return self.address


def deposed_address(address: str) -> str:
    return f"{address}{DEPOSED_SUFFIX}"


def is_deposed(address: str) -> bool:
    return address.endswith(DEPOSED_SUFFIX)


def base_address(address: str) -> str:
    """Strip a deposed suffix."""
    if is_deposed(address):
        return address[: -len(DEPOSED_SUFFIX)]
    return address


@dataclass(frozen=True)
class Reference:
    """Directed edge from an attribute to another node's computed output."""

    target: str  # Address of the referenced node
    output: str
    attribute: str  # Top-level attribute on the referencing node

    def __str__(self) -> str:
        return f"{self.target}.{self.output}"


def _iter_strings(value: Any, attribute: str) -> Iterator[tuple[str, str]]:
    if isinstance(value, str):
        yield attribute, value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item, attribute)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_strings(item, attribute)


def find_references(attributes: dict[str, Any]) -> list[Reference]:
    """Collect every reference in an attribute mapping, in declaration order."""
    found: list[Reference] = []
    seen: set[Reference] = set()
    for attribute, value in attributes.items():
        for attr, text in _iter_strings(value, attribute):
            for match in REFERENCE_PATTERN.finditer(text):
                resource_type, name, raw_key, output = match.groups()
                key = json.loads(raw_key) if raw_key is not None else None
                ref = Reference(
                    target=ResourceId(resource_type, name, key).address,
                    output=output,
                    attribute=attr,
                )
                if ref not in seen:
                    seen.add(ref)
                    found.append(ref)
    return found


def map_strings(value: Any, fn: Callable[[str], Any]) -> Any:
    """Apply ``fn`` to every string inside a nested attribute value."""
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, dict):
        return {k: map_strings(v, fn) for k, v in value.items()}
    if isinstance(value, list):
        return [map_strings(v, fn) for v in value]
    return value


def substitute_each(value: Any, key: str, item: str) -> Any:
    """Replace ``${each.key}`` and ``${each.value}`` inside a value."""

    def replace(text: str) -> str:
        return EACH_PATTERN.sub(lambda m: key if m.group(1) == "key" else item, text)

    return map_strings(value, replace)


def contains_each(value: Any) -> bool:
    return any(EACH_PATTERN.search(text) for _, text in _iter_strings(value, ""))


def resolve_references(value: Any, lookup: Callable[[str, str], Any]) -> Any:
    """Resolve references inside a value.

    Args:
        value: Attribute value, possibly nested.
        lookup: Called with (address, output); raises KeyError when unknown.

    Returns:
        The value with every reference replaced.
    """

    def resolve(text: str) -> Any:
        whole = REFERENCE_PATTERN.fullmatch(text)
        if whole:
            return lookup(*_target_of(whole))

        def interpolate(match: re.Match[str]) -> str:
            return str(lookup(*_target_of(match)))

        return REFERENCE_PATTERN.sub(interpolate, text)

    return map_strings(value, resolve)


def _target_of(match: re.Match[str]) -> tuple[str, str]:
    resource_type, name, raw_key, output = match.groups()
    key = json.loads(raw_key) if raw_key is not None else None
    return ResourceId(resource_type, name, key).address, output
