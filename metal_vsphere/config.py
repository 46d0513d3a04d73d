"""Driver URL handling and configuration defaults.

A driver URL identifies one vSphere endpoint:

    vsphere://vcenter.example.com:443/sdk?use_ssl=true&insecure=false

canonicalize_url() merges the URL, the caller's configuration and the
driver defaults into one configuration dict, and returns the canonical URL
so the same endpoint always produces the same string.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ConfigurationError
from .schemas import (
    DEFAULT_CREATE_TIMEOUT,
    DEFAULT_START_TIMEOUT,
    MachineOptions,
)

SCHEME = "vsphere"

DEFAULT_CONNECT_OPTIONS: Dict[str, Any] = {
    "port": 443,
    "use_ssl": True,
    "insecure": False,
    "path": "/sdk",
}

DEFAULT_MACHINE_OPTIONS: Dict[str, Any] = {
    "start_timeout": DEFAULT_START_TIMEOUT,
    "create_timeout": DEFAULT_CREATE_TIMEOUT,
    "bootstrap_options": {"ssh": {"port": 22, "user": "root"}},
}

REQUIRED_CONNECT_OPTIONS = ("host", "user", "password")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "0").lower() in ("1", "true", "yes")


def is_dry_run() -> bool:
    """Use the in-memory platform instead of a live vCenter."""
    return _env_flag("METAL_VSPHERE_DRY_RUN")


def is_local_mode() -> bool:
    """Running against a local/offline configuration server."""
    return _env_flag("METAL_VSPHERE_LOCAL_MODE")


def _parse_bool(value: str, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


@dataclass(frozen=True)
class VsphereUrl:
    host: str
    port: int = DEFAULT_CONNECT_OPTIONS["port"]
    path: str = DEFAULT_CONNECT_OPTIONS["path"]
    use_ssl: bool = DEFAULT_CONNECT_OPTIONS["use_ssl"]
    insecure: bool = DEFAULT_CONNECT_OPTIONS["insecure"]

    @classmethod
    def parse(cls, url: str) -> "VsphereUrl":
        parsed = urlparse(url)
        if parsed.scheme != SCHEME:
            raise ConfigurationError(f"driver URL must use the {SCHEME}:// scheme: {url}")
        if not parsed.hostname:
            raise ConfigurationError(f"driver URL has no host: {url}")
        query = {k: v[-1] for k, v in parse_qs(parsed.query).items()}
        try:
            port = parsed.port or DEFAULT_CONNECT_OPTIONS["port"]
        except ValueError as e:
            raise ConfigurationError(f"invalid port in driver URL {url}: {e}")
        return cls(
            host=parsed.hostname,
            port=port,
            path=parsed.path or DEFAULT_CONNECT_OPTIONS["path"],
            use_ssl=_parse_bool(query.get("use_ssl"), DEFAULT_CONNECT_OPTIONS["use_ssl"]),
            insecure=_parse_bool(query.get("insecure"), DEFAULT_CONNECT_OPTIONS["insecure"]),
        )

    @classmethod
    def from_config(cls, connect_options: Mapping[str, Any]) -> "VsphereUrl":
        if not connect_options.get("host"):
            raise ConfigurationError("connect options have no host")
        return cls(
            host=connect_options["host"],
            port=int(connect_options.get("port", DEFAULT_CONNECT_OPTIONS["port"])),
            path=connect_options.get("path") or DEFAULT_CONNECT_OPTIONS["path"],
            use_ssl=bool(connect_options.get("use_ssl", DEFAULT_CONNECT_OPTIONS["use_ssl"])),
            insecure=bool(connect_options.get("insecure", DEFAULT_CONNECT_OPTIONS["insecure"])),
        )

    def __str__(self) -> str:
        query = urlencode({
            "use_ssl": str(self.use_ssl).lower(),
            "insecure": str(self.insecure).lower(),
        })
        return f"{SCHEME}://{self.host}:{self.port}{self.path}?{query}"


class ConnectOptions(BaseModel):
    """Connection parameters for the platform client. Immutable once built."""
    model_config = ConfigDict(frozen=True, extra="allow")

    provider: str = SCHEME
    host: str = Field(..., min_length=1)
    port: int = DEFAULT_CONNECT_OPTIONS["port"]
    path: str = DEFAULT_CONNECT_OPTIONS["path"]
    use_ssl: bool = DEFAULT_CONNECT_OPTIONS["use_ssl"]
    insecure: bool = DEFAULT_CONNECT_OPTIONS["insecure"]
    user: str
    password: str = Field(..., repr=False)
    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None


def normalize_keys(value: Any) -> Any:
    """Recursively turn mapping keys into plain strings."""
    if isinstance(value, Mapping):
        return {str(k): normalize_keys(v) for k, v in value.items()}
    return value


def merge_config(*configs: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Deep-merge mappings; earlier arguments take precedence."""
    merged: Dict[str, Any] = {}
    for config in reversed(configs):
        if not config:
            continue
        for key, value in config.items():
            if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
                merged[key] = merge_config(value, merged[key])
            elif isinstance(value, Mapping):
                merged[key] = merge_config(value)
            else:
                merged[key] = value
    return merged


def _environment_connect_options() -> Dict[str, Any]:
    env = {}
    if os.environ.get("METAL_VSPHERE_USER"):
        env["user"] = os.environ["METAL_VSPHERE_USER"]
    if os.environ.get("METAL_VSPHERE_PASSWORD"):
        env["password"] = os.environ["METAL_VSPHERE_PASSWORD"]
    return env


def canonicalize_url(driver_url: Optional[str], config: Optional[Mapping[str, Any]] = None) -> Tuple[str, Dict[str, Any]]:
    """Return ``(canonical_url, merged_config)`` for a driver URL.

    Precedence, highest first: explicit driver_options.connect_options,
    values from the URL, credentials from the environment, defaults.
    """
    config = normalize_keys(config or {})

    url_options: Dict[str, Any] = {"provider": SCHEME}
    if driver_url:
        url = VsphereUrl.parse(driver_url)
        url_options.update(
            host=url.host,
            port=url.port,
            path=url.path,
            use_ssl=url.use_ssl,
            insecure=url.insecure,
        )

    explicit = config.get("driver_options", {}).get("connect_options", {})
    connect_options = merge_config(
        explicit, url_options, _environment_connect_options(), DEFAULT_CONNECT_OPTIONS
    )

    missing = [opt for opt in REQUIRED_CONNECT_OPTIONS if not connect_options.get(opt)]
    if missing:
        raise ConfigurationError(f"missing required options: {', '.join(missing)}")

    merged = merge_config(
        {"driver_options": {"connect_options": connect_options}},
        config,
        {"machine_options": DEFAULT_MACHINE_OPTIONS},
    )
    return str(VsphereUrl.from_config(connect_options)), merged


def machine_options_for(config: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None) -> MachineOptions:
    """Build MachineOptions from driver config plus per-machine overrides."""
    data = merge_config(normalize_keys(overrides or {}), config.get("machine_options", {}))
    return MachineOptions.model_validate(data)
