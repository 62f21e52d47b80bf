"""Platform descriptors and the adapter registry used by the orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterator

from platforms.base import PlatformAdapter, UnsupportedPlatformError


@dataclass(frozen=True)
class PlatformDescriptor:
    name: str
    official: bool
    experimental: bool
    auth_type: str
    sync_supported: bool
    playtime_supported: bool
    requires_user_token: bool
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "name": data["name"],
            "official": data["official"],
            "experimental": data["experimental"],
            "authType": data["auth_type"],
            "syncSupported": data["sync_supported"],
            "playtimeSupported": data["playtime_supported"],
            "requiresUserToken": data["requires_user_token"],
            "warning": data["warning"],
        }


PLATFORM_CONFIG: dict[str, PlatformDescriptor] = {
    "steam": PlatformDescriptor(
        name="Steam",
        official=True,
        experimental=False,
        auth_type="openid",
        sync_supported=True,
        playtime_supported=True,
        requires_user_token=False,
    ),
    "xbox": PlatformDescriptor(
        name="Xbox",
        official=True,
        experimental=False,
        auth_type="oauth2",
        sync_supported=True,
        playtime_supported=True,
        requires_user_token=False,
    ),
    "psn": PlatformDescriptor(
        name="PlayStation Network",
        official=False,
        experimental=True,
        auth_type="npsso",
        sync_supported=True,
        playtime_supported=False,
        requires_user_token=True,
        warning="Experimental: Requires NPSSO token from your PlayStation account cookies",
    ),
    "nintendo": PlatformDescriptor(
        name="Nintendo Switch",
        official=False,
        experimental=True,
        auth_type="custom",
        sync_supported=True,
        playtime_supported=True,
        requires_user_token=True,
        warning="Experimental: Requires Nintendo Switch Online subscription",
    ),
    "epic": PlatformDescriptor(
        name="Epic Games",
        official=False,
        experimental=True,
        auth_type="custom",
        sync_supported=True,
        playtime_supported=False,
        requires_user_token=True,
        warning="Experimental: Uses unofficial API - may be unstable",
    ),
}


def get_platform_config(platform: str) -> PlatformDescriptor:
    descriptor = PLATFORM_CONFIG.get((platform or "").strip().lower())
    if descriptor is None:
        raise UnsupportedPlatformError(f"Unknown platform: {platform}")
    return descriptor


def is_sync_supported(platform: str) -> bool:
    descriptor = PLATFORM_CONFIG.get((platform or "").strip().lower())
    return bool(descriptor and descriptor.sync_supported)


def is_playtime_supported(platform: str) -> bool:
    descriptor = PLATFORM_CONFIG.get((platform or "").strip().lower())
    return bool(descriptor and descriptor.playtime_supported)


class AdapterRegistry:
    """Maps platform keys to adapter instances.

    Adding a platform means registering an adapter; the orchestrator never
    branches on platform names.
    """

    def __init__(self, adapters: dict[str, PlatformAdapter] | None = None) -> None:
        self._adapters: dict[str, PlatformAdapter] = {}
        for key, adapter in (adapters or {}).items():
            self.register(adapter, platform=key)

    def register(self, adapter: PlatformAdapter, *, platform: str | None = None) -> None:
        key = (platform or adapter.platform or "").strip().lower()
        if not key:
            raise ValueError("adapter must declare a platform key")
        self._adapters[key] = adapter

    def get(self, platform: str) -> PlatformAdapter:
        key = (platform or "").strip().lower()
        adapter = self._adapters.get(key)
        if adapter is None:
            if key in PLATFORM_CONFIG:
                raise UnsupportedPlatformError(f"{key} sync not yet implemented")
            raise UnsupportedPlatformError(f"Unknown platform: {platform}")
        return adapter

    def __contains__(self, platform: object) -> bool:
        return isinstance(platform, str) and platform.strip().lower() in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._adapters))

    def describe(self) -> dict[str, dict[str, Any]]:
        """Return every known platform descriptor with its adapter availability."""

        described: dict[str, dict[str, Any]] = {}
        for key, descriptor in PLATFORM_CONFIG.items():
            payload = descriptor.to_dict()
            payload["available"] = key in self._adapters
            described[key] = payload
        return described


__all__ = [
    "AdapterRegistry",
    "PLATFORM_CONFIG",
    "PlatformDescriptor",
    "get_platform_config",
    "is_playtime_supported",
    "is_sync_supported",
]
