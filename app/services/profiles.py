"""PPPoE profile-name resolution strategies.

Isolation and restoration share one profile-switch routine; what differs
is only how the target profile name is derived from the service.
"""

from __future__ import annotations

from typing import Protocol

from app.config import settings
from app.models.catalog import Package, Service


class ProfileResolver(Protocol):
    def resolve(self, service: Service) -> str | None: ...


class FixedProfile:
    """Always the same profile, e.g. the isolation profile."""

    def __init__(self, name: str):
        self.name = name

    def resolve(self, service: Service) -> str | None:
        return self.name


class PackageProfile:
    """Package override if set, otherwise ``{prefix}{package.name}``."""

    def __init__(self, prefix: str | None = None):
        self.prefix = settings.default_profile_prefix if prefix is None else prefix

    def resolve(self, service: Service) -> str | None:
        package = service.package
        if package is None:
            return None
        if package.mikrotik_profile:
            return package.mikrotik_profile
        return f"{self.prefix}{package.name}"


class UnderscoredPackageProfile:
    """Package name with spaces replaced by underscores."""

    def resolve(self, service: Service) -> str | None:
        if service.package is None:
            return None
        return package_profile_name(service.package)


def package_profile_name(package: Package) -> str:
    return package.name.replace(" ", "_")


def isolation_profile() -> FixedProfile:
    return FixedProfile(settings.isolation_profile)
