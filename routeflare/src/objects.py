from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple

from routeflare.src.errors import MalformedObject


class RouteKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class EventKind(str, Enum):
    """Watch event types delivered by the Kubernetes API."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, raw: str) -> EventKind:
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"unknown watch event type: {raw!r}") from None


def _as_dict(obj: Any) -> dict[str, Any]:
    """Return the plain-dict form of a cluster object.

    The custom objects API already yields dicts; typed client models expose
    ``to_dict()`` which uses snake_case keys, so both spellings are accepted
    by the readers below.
    """
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        converted = to_dict()
        if isinstance(converted, dict):
            return converted
    raise MalformedObject(f"expected a mapping, got {type(obj).__name__}")


def _metadata(obj: dict[str, Any], kind: str) -> tuple[str, str, dict[str, Any]]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        raise MalformedObject(f"{kind} has no metadata")
    name = metadata.get("name")
    namespace = metadata.get("namespace")
    if not isinstance(name, str) or not name:
        raise MalformedObject(f"{kind} metadata.name is missing")
    if not isinstance(namespace, str) or not namespace:
        raise MalformedObject(f"{kind} {name} metadata.namespace is missing")
    return namespace, name, metadata


def _optional_list(container: dict[str, Any], key: str, where: str) -> list[Any]:
    value = container.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedObject(f"{where}.{key} must be a list")
    return value


def _resource_version(metadata: dict[str, Any]) -> str | None:
    value = metadata.get("resourceVersion", metadata.get("resource_version"))
    return str(value) if value else None


@dataclass(frozen=True)
class ParentRef:
    name: str
    namespace: str


@dataclass(frozen=True)
class HTTPRoute:
    """The subset of a ``gateway.networking.k8s.io/v1`` HTTPRoute routeflare reads."""

    namespace: str
    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    hostnames: tuple[str, ...] = ()
    parent_refs: tuple[ParentRef, ...] = ()
    resource_version: str | None = None

    @property
    def key(self) -> RouteKey:
        return RouteKey(self.namespace, self.name)

    @classmethod
    def from_object(cls, obj: Any) -> HTTPRoute:
        data = _as_dict(obj)
        namespace, name, metadata = _metadata(data, "HTTPRoute")

        raw_annotations = metadata.get("annotations") or {}
        if not isinstance(raw_annotations, dict):
            raise MalformedObject(f"HTTPRoute {namespace}/{name} annotations must be a mapping")
        annotations = {
            str(k): "" if v is None else str(v) for k, v in raw_annotations.items()
        }

        spec = data.get("spec") or {}
        if not isinstance(spec, dict):
            raise MalformedObject(f"HTTPRoute {namespace}/{name} spec must be a mapping")
        where = f"HTTPRoute {namespace}/{name} spec"

        hostnames = []
        for hostname in _optional_list(spec, "hostnames", where):
            if not isinstance(hostname, str):
                raise MalformedObject(f"{where}.hostnames must contain strings")
            hostnames.append(hostname)

        raw_parents = _optional_list(spec, "parentRefs", where) or _optional_list(
            spec, "parent_refs", where
        )
        parent_refs = []
        for parent in raw_parents:
            if not isinstance(parent, dict) or not isinstance(parent.get("name"), str):
                raise MalformedObject(f"{where}.parentRefs entries need a name")
            parent_refs.append(
                ParentRef(name=parent["name"], namespace=parent.get("namespace") or namespace)
            )

        return cls(
            namespace=namespace,
            name=name,
            annotations=annotations,
            hostnames=tuple(hostnames),
            parent_refs=tuple(parent_refs),
            resource_version=_resource_version(metadata),
        )


@dataclass(frozen=True)
class GatewayAddress:
    type: str
    value: str


@dataclass(frozen=True)
class Gateway:
    namespace: str
    name: str
    addresses: tuple[GatewayAddress, ...] = ()

    @property
    def key(self) -> RouteKey:
        return RouteKey(self.namespace, self.name)

    @classmethod
    def from_object(cls, obj: Any) -> Gateway:
        data = _as_dict(obj)
        namespace, name, _ = _metadata(data, "Gateway")

        status = data.get("status") or {}
        if not isinstance(status, dict):
            raise MalformedObject(f"Gateway {namespace}/{name} status must be a mapping")

        addresses = []
        for entry in _optional_list(status, "addresses", f"Gateway {namespace}/{name} status"):
            if not isinstance(entry, dict) or not isinstance(entry.get("value"), str):
                continue
            addresses.append(
                GatewayAddress(type=str(entry.get("type") or "IPAddress"), value=entry["value"])
            )
        return cls(namespace=namespace, name=name, addresses=tuple(addresses))
