"""ResourceLocator: idempotent find-or-create for uniquely named remote resources.

Resolution order, stopping at the first hit:

1. the reference persisted on the owning local record (no remote call);
2. a remote search for the deterministic name, persisted as the reference;
3. a remote create, persisted as the reference.

A uniqueness conflict on create means a concurrent caller won the race, so
the search is run again and its result adopted.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from ..connectors.exceptions import RemoteConflictError
from ..observability import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResolutionSource(str, enum.Enum):
    REFERENCE = "reference"
    SEARCH = "search"
    CREATED = "created"
    CONFLICT = "conflict"


async def _no_reference():
    return None


async def _keep(value):
    return value


@dataclass
class ResourceSpec(Generic[T]):
    """How to find, create and remember one kind of named resource.

    ``store_reference`` returns the value that ended up persisted, which is
    an earlier caller's value when that caller stored first.
    """

    kind: str
    name: str
    search: Callable[[str], Awaitable[Optional[T]]]
    create: Callable[[str], Awaitable[T]]
    load_reference: Callable[[], Awaitable[Optional[T]]] = _no_reference
    store_reference: Callable[[T], Awaitable[T]] = _keep


@dataclass(frozen=True)
class Resolved(Generic[T]):
    value: T
    source: ResolutionSource

    @property
    def created(self) -> bool:
        return self.source == ResolutionSource.CREATED


class ResourceLocator:
    async def find_or_create(self, spec: ResourceSpec[T]) -> Resolved[T]:
        existing = await spec.load_reference()
        if existing is not None:
            return self._resolved(spec, existing, ResolutionSource.REFERENCE)

        found = await spec.search(spec.name)
        if found is not None:
            logger.info("Adopting existing %s '%s'", spec.kind, spec.name)
            stored = await spec.store_reference(found)
            return self._resolved(spec, stored, ResolutionSource.SEARCH)

        try:
            value = await spec.create(spec.name)
            source = ResolutionSource.CREATED
            logger.info("Created %s '%s'", spec.kind, spec.name)
        except RemoteConflictError:
            logger.info("%s '%s' was created concurrently, searching again", spec.kind, spec.name)
            value = await spec.search(spec.name)
            if value is None:
                raise
            source = ResolutionSource.CONFLICT

        stored = await spec.store_reference(value)
        return self._resolved(spec, stored, source)

    @staticmethod
    def _resolved(spec: ResourceSpec, value, source: ResolutionSource) -> Resolved:
        metrics.resource_resolution_total().labels(kind=spec.kind, source=source.value).inc()
        return Resolved(value=value, source=source)
