"""In-memory desired-state model of declared resources."""

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from stackapply.errors import DuplicateIdError, UnknownResourceError
from stackapply.models import Resource

logger = logging.getLogger(__name__)


class ResourceModel:
    """Declared resources keyed by logical id, kept in declaration order.

    References are checked eagerly by `reference()`. Inside `building()`
    both explicit and property references may point forward; they are
    resolved in a second pass when the block exits.
    """

    def __init__(self):
        self._resources: dict[str, Resource] = {}
        self._deferred = 0

    def declare(
        self,
        kind: str,
        logical_id: str,
        properties: Mapping[str, Any] | None = None,
        depends_on: list[str] | tuple[str, ...] = (),
    ) -> Resource:
        """Declare a resource. Raises DuplicateIdError if the id is taken."""
        if logical_id in self._resources:
            raise DuplicateIdError(logical_id)
        resource = Resource(
            kind=kind,
            logical_id=logical_id,
            properties=dict(properties or {}),
        )
        if not self._deferred:
            for target in resource.references():
                if target not in self._resources:
                    raise UnknownResourceError(target, referenced_by=logical_id)
        self._resources[logical_id] = resource
        for target in depends_on:
            self.reference(resource, target)
        return resource

    def reference(self, resource: Resource, target_logical_id: str) -> None:
        """Record that `resource` requires `target_logical_id` to exist first."""
        if not self._deferred and target_logical_id not in self._resources:
            raise UnknownResourceError(target_logical_id, referenced_by=resource.logical_id)
        if target_logical_id not in resource.depends_on:
            resource.depends_on.append(target_logical_id)

    @contextmanager
    def building(self) -> Iterator["ResourceModel"]:
        """Defer reference checks until the block exits, then validate the whole model."""
        self._deferred += 1
        try:
            yield self
        finally:
            self._deferred -= 1
        if not self._deferred:
            self.validate()

    def validate(self) -> None:
        """Check that every reference points at a declared resource."""
        for resource in self._resources.values():
            for target in resource.references():
                if target not in self._resources:
                    raise UnknownResourceError(target, referenced_by=resource.logical_id)
        logger.debug("Validated model with %d resources", len(self._resources))

    def get(self, logical_id: str) -> Resource:
        try:
            return self._resources[logical_id]
        except KeyError:
            raise UnknownResourceError(logical_id) from None

    def dependencies(self, logical_id: str) -> list[str]:
        return self.get(logical_id).references()

    def all_resources(self) -> Iterator[Resource]:
        """Yield resources in declaration order."""
        yield from self._resources.values()

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[Resource]:
        return self.all_resources()
