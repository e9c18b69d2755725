"""Per-kind update semantics: which properties force replacement and how."""

from collections.abc import Mapping
from dataclasses import dataclass

from stackapply.models import ReplaceStrategy


@dataclass(frozen=True)
class KindSpec:
    """Update behaviour of one resource kind.

    Properties not listed in `immutable` can be updated in place.
    """

    name: str
    immutable: frozenset[str] = frozenset()
    strategy: ReplaceStrategy = ReplaceStrategy.DELETE_BEFORE_CREATE

    def is_immutable(self, prop: str) -> bool:
        return prop in self.immutable


KIND_SPECS: dict[str, KindSpec] = {
    "network": KindSpec(
        "network",
        immutable=frozenset({"cidr", "ipv6"}),
    ),
    "subnet": KindSpec(
        "subnet",
        immutable=frozenset({"network", "cidr", "availability_zone"}),
    ),
    "gateway_endpoint": KindSpec(
        "gateway_endpoint",
        immutable=frozenset({"network", "service"}),
    ),
    # Security group descriptions cannot be edited; rules can.
    "security_group": KindSpec(
        "security_group",
        immutable=frozenset({"network", "description"}),
        strategy=ReplaceStrategy.CREATE_BEFORE_DELETE,
    ),
    "role": KindSpec(
        "role",
        immutable=frozenset({"name", "assumed_by"}),
    ),
    "log_group": KindSpec(
        "log_group",
        immutable=frozenset({"name"}),
    ),
    "function": KindSpec(
        "function",
        immutable=frozenset({"name"}),
        strategy=ReplaceStrategy.CREATE_BEFORE_DELETE,
    ),
}


def kind_spec(kind: str, specs: Mapping[str, KindSpec] | None = None) -> KindSpec:
    """Return the spec for a kind; unknown kinds are treated as fully mutable."""
    specs = KIND_SPECS if specs is None else specs
    return specs.get(kind) or KindSpec(kind)
