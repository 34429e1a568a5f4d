from __future__ import annotations


class RouteflareError(Exception):
    """Base class for every error raised by routeflare."""


class ConfigInvalid(RouteflareError, ValueError):
    """Configuration cannot be used; the process must not start."""


class MalformedObject(RouteflareError):
    """A cluster object lacks fields required to interpret it."""


class ConnectivityError(RouteflareError):
    """A remote dependency could not be reached or answered with a failure.

    Drivers retry these with backoff; they are never fatal.
    """


class ClusterUnavailable(ConnectivityError):
    """A Kubernetes API call failed for a reason other than not-found."""


class ProviderError(ConnectivityError):
    """A Cloudflare API call failed or returned an unsuccessful envelope."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class OwnershipConflict(RouteflareError):
    """A DNS record is owned by another writer and must not be touched."""

    def __init__(self, record_type: str, name: str, existing_owner: str, expected_owner: str) -> None:
        super().__init__(
            f"record ownership conflict for {record_type} {name}: existing owner "
            f"{existing_owner!r} does not match expected owner {expected_owner!r}"
        )
        self.record_type = record_type
        self.name = name
        self.existing_owner = existing_owner
        self.expected_owner = expected_owner


class RouteSkipped(RouteflareError):
    """The route cannot be reconciled right now; tracked state is left as is."""


class NoHostname(RouteSkipped):
    pass


class InvalidZoneDerivation(RouteSkipped):
    pass


class UnsupportedRecordType(RouteSkipped):
    pass


class MissingParentRef(RouteSkipped):
    pass


class NoAddressDetected(RouteSkipped):
    pass


class NoMatchingAddress(RouteSkipped):
    pass


class ZoneNotFound(RouteSkipped):
    pass
