"""CapabilityRegistry: name-keyed table of invocable capabilities.

Capabilities are declared with explicit ``param(...)`` specs, either by
passing a descriptor to ``register()`` or by decorating functions and methods
with ``@capability`` and handing them to ``register_function()`` /
``register_instance()``.
"""

from __future__ import annotations

import inspect
import logging
import threading
from typing import TYPE_CHECKING, Any

from mender.capabilities.models import CapabilityDescriptor, RegisteredCapability
from mender.exceptions import CapabilityNotFoundError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from mender.capabilities.models import ParameterSpec

logger = logging.getLogger(__name__)

_CAPABILITY_ATTR = "__mender_capability__"


def capability(
    name: str | None = None,
    description: str | None = None,
    parameters: Iterable[ParameterSpec] = (),
    *,
    mutating: bool = False,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Attach capability metadata to a function or method.

    The decorated callable is returned unchanged; the metadata is read by
    ``CapabilityRegistry.register_function`` and ``register_instance``.

    Args:
        name: Capability name. Defaults to the function's ``__name__``.
        description: Defaults to the first paragraph of the docstring.
        parameters: Ordered parameter specs.
        mutating: Whether a successful call changes the artifact on disk.
            Mutating calls are reported as applied fixes.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        doc = inspect.getdoc(fn) or ""
        descriptor = CapabilityDescriptor(
            name=name or fn.__name__,
            description=description or doc.split("\n\n", 1)[0].strip(),
            parameters=tuple(parameters),
        )
        setattr(fn, _CAPABILITY_ATTR, (descriptor, mutating))
        return fn

    return decorator


def capability_metadata(fn: Any) -> tuple[CapabilityDescriptor, bool] | None:
    """Return ``(descriptor, mutating)`` declared on *fn*, if any."""
    return getattr(fn, _CAPABILITY_ATTR, None)


class CapabilityRegistry:
    """Thread-safe registry of capabilities.

    Writes are serialized by a lock and replace the whole table, so readers
    never observe a half-applied registration and lookups need no lock.

    Usage::

        registry = CapabilityRegistry()
        registry.register_instance(FileCapabilities(workspace))
        registry.lookup("edit_file").handler(...)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, RegisteredCapability] = {}
        self._mutating: frozenset[str] = frozenset()

    def register(
        self,
        descriptor: CapabilityDescriptor,
        handler: Callable[..., Any],
        *,
        mutating: bool = False,
    ) -> RegisteredCapability:
        """Register (or replace) a capability.

        Returns:
            The stored RegisteredCapability.
        """
        entry = RegisteredCapability(descriptor=descriptor, handler=handler)
        with self._lock:
            if descriptor.name in self._entries:
                logger.debug("Replacing capability %s", descriptor.name)
            entries = dict(self._entries)
            entries[descriptor.name] = entry
            mutating_names = set(self._mutating)
            if mutating:
                mutating_names.add(descriptor.name)
            else:
                mutating_names.discard(descriptor.name)
            self._entries = entries
            self._mutating = frozenset(mutating_names)
        logger.debug(
            "Registered capability %s (%d params)",
            descriptor.name,
            len(descriptor.parameters),
        )
        return entry

    def register_function(
        self,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        parameters: Iterable[ParameterSpec] | None = None,
        mutating: bool | None = None,
    ) -> RegisteredCapability:
        """Register a plain callable.

        Metadata from ``@capability`` is used when present; explicit keyword
        arguments override it.
        """
        declared = capability_metadata(fn)
        if declared is not None:
            base, declared_mutating = declared
        else:
            doc = inspect.getdoc(fn) or ""
            base = CapabilityDescriptor(
                name=getattr(fn, "__name__", "capability"),
                description=doc.split("\n\n", 1)[0].strip(),
            )
            declared_mutating = False

        descriptor = CapabilityDescriptor(
            name=name or base.name,
            description=description if description is not None else base.description,
            parameters=tuple(parameters) if parameters is not None else base.parameters,
        )
        return self.register(
            descriptor,
            fn,
            mutating=declared_mutating if mutating is None else mutating,
        )

    def register_instance(self, obj: object) -> list[RegisteredCapability]:
        """Register every bound method of *obj* decorated with ``@capability``.

        Returns:
            The registered entries, in attribute order.
        """
        registered: list[RegisteredCapability] = []
        for attr_name in dir(type(obj)):
            if attr_name.startswith("_"):
                continue
            member = getattr(type(obj), attr_name, None)
            declared = capability_metadata(member)
            if declared is None:
                continue
            descriptor, mutating = declared
            bound = getattr(obj, attr_name)
            registered.append(self.register(descriptor, bound, mutating=mutating))
        return registered

    def unregister(self, name: str) -> bool:
        """Remove a capability. Returns True if it was present."""
        with self._lock:
            if name not in self._entries:
                return False
            entries = dict(self._entries)
            del entries[name]
            self._entries = entries
            self._mutating = self._mutating - {name}
        return True

    def lookup(self, name: str) -> RegisteredCapability:
        """Resolve a capability by name.

        Raises:
            CapabilityNotFoundError: If no capability has that name.
        """
        entry = self._entries.get(name)
        if entry is None:
            raise CapabilityNotFoundError(name)
        return entry

    def get(self, name: str) -> RegisteredCapability | None:
        return self._entries.get(name)

    def is_mutating(self, name: str) -> bool:
        return name in self._mutating

    def names(self) -> list[str]:
        return list(self._entries)

    def list_all(self) -> list[CapabilityDescriptor]:
        """Return descriptors of all registered capabilities."""
        return [entry.descriptor for entry in self._entries.values()]

    def as_tools(self, format: str = "openai") -> list[dict]:
        """Render every descriptor in a provider's tool format.

        Args:
            format: "openai" or "anthropic".

        Raises:
            ValueError: For an unknown format.
        """
        if format == "openai":
            return [d.to_openai() for d in self.list_all()]
        if format == "anthropic":
            return [d.to_anthropic() for d in self.list_all()]
        raise ValueError(f"Unknown tool format: {format!r}")

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries.values()))
