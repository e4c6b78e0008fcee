"""Launch configuration: environment variables, optional services file."""
from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

SERVICES_FILENAME = ".fetchdata/services.json"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool | None = None) -> bool | None:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be true or false, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class ServiceConfig:
    """One local service the orchestrator brings up."""

    name: str          # "api", "preview"
    command: str       # "node server/index.js"
    port: int
    host: str = "0.0.0.0"  # bind address handed to the process as HOST
    tunnel: bool = False   # expose through the tunnel (first one wins)
    required: bool = True  # a failed readiness check is logged as an error

    def resolve_command(self) -> list[str]:
        """Substitute ``{port}`` and split into argv."""
        return shlex.split(self.command.replace("{port}", str(self.port)))

    def env_overrides(self) -> dict[str, str]:
        return {"HOST": self.host, "PORT": str(self.port)}


@dataclass
class LaunchConfig:
    """Top-level orchestrator settings."""

    services: list[ServiceConfig] = field(default_factory=list)
    use_tunnel: bool = False
    tunnel_command: list[str] = field(
        default_factory=lambda: ["cloudflared", "tunnel", "--url"],
    )
    detection_timeout: float = 15.0
    probe_attempts: int = 5
    probe_interval: float = 2.0
    ready_timeout: float = 15.0
    recovery_file: Path = field(default_factory=lambda: Path(".tunnel-info"))
    pid_file: Path | None = None
    control_port: int = 7777
    log_file: str = "/tmp/fetchdata.log"

    @property
    def tunnel_service(self) -> ServiceConfig | None:
        """The service placed behind the tunnel (only one tunnel per run)."""
        for svc in self.services:
            if svc.tunnel:
                return svc
        return self.services[0] if self.services else None

    @property
    def ports(self) -> dict[str, int]:
        return {svc.name: svc.port for svc in self.services}

    @classmethod
    def from_env(cls, cwd: str | Path | None = None) -> LaunchConfig:
        """Build a config from ``.env`` + environment. Raises ValueError on bad values."""
        load_dotenv()
        root = Path(cwd) if cwd else Path.cwd()

        use_tunnel = _env_bool("FETCHDATA_USE_TUNNEL")
        if use_tunnel is None:
            # Built app outside development mode implies tunnel mode
            use_tunnel = (
                (root / "dist").is_dir()
                and os.environ.get("NODE_ENV", "") != "development"
            )

        services = load_services_file(root)
        if services is None:
            services = _services_from_env()

        tunnel_binary = os.environ.get("FETCHDATA_CLOUDFLARED", "").strip() or "cloudflared"
        recovery_file = Path(os.environ.get("FETCHDATA_RECOVERY_FILE", "") or ".tunnel-info")
        if not recovery_file.is_absolute():
            recovery_file = root / recovery_file

        config = cls(
            services=services,
            use_tunnel=use_tunnel,
            tunnel_command=[tunnel_binary, "tunnel", "--url"],
            detection_timeout=_env_float("FETCHDATA_TUNNEL_TIMEOUT", 15.0),
            probe_attempts=_env_int("FETCHDATA_PROBE_ATTEMPTS", 5),
            probe_interval=_env_float("FETCHDATA_PROBE_INTERVAL", 2.0),
            ready_timeout=_env_float("FETCHDATA_READY_TIMEOUT", 15.0),
            recovery_file=recovery_file,
            pid_file=root / ".fetchdata" / "children.pid",
            control_port=_env_int("FETCHDATA_CONTROL_PORT", 7777),
            log_file=os.environ.get("FETCHDATA_LOG_FILE", "") or "/tmp/fetchdata.log",
        )
        if config.probe_attempts < 1:
            raise ValueError("FETCHDATA_PROBE_ATTEMPTS must be at least 1")
        if not config.services:
            raise ValueError("No services configured")
        return config


def _services_from_env() -> list[ServiceConfig]:
    services = [
        ServiceConfig(
            name="api",
            command=os.environ.get("FETCHDATA_API_COMMAND", "") or "node server/index.js",
            port=_env_int("FETCHDATA_API_PORT", 3001),
            host=os.environ.get("FETCHDATA_API_HOST", "") or "0.0.0.0",
            tunnel=True,
        ),
    ]
    preview_command = os.environ.get("FETCHDATA_PREVIEW_COMMAND", "").strip()
    if preview_command:
        services.append(ServiceConfig(
            name="preview",
            command=preview_command,
            port=_env_int("FETCHDATA_PREVIEW_PORT", 4173),
            tunnel=False,
            required=False,
        ))
    return services


def services_from_dict(data: dict) -> list[ServiceConfig]:
    return [
        ServiceConfig(
            name=s["name"],
            command=s["command"],
            port=int(s["port"]),
            host=s.get("host", "0.0.0.0"),
            tunnel=s.get("tunnel", False),
            required=s.get("required", True),
        )
        for s in data.get("services", [])
    ]


def load_services_file(root: str | Path) -> list[ServiceConfig] | None:
    """Load ``.fetchdata/services.json``. Returns None if absent.

    Raises ValueError if the file exists but cannot be used.
    """
    path = Path(root) / SERVICES_FILENAME
    if not path.exists():
        return None
    try:
        services = services_from_dict(json.loads(path.read_text()))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid services file {path}: {e}") from e
    if not services:
        raise ValueError(f"Services file {path} defines no services")
    logger.info("Loaded %d service(s) from %s", len(services), path)
    return services
