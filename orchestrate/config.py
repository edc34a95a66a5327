# orchestrate/config.py
import os
from dataclasses import dataclass


def _env(name: str, default: str) -> str:
    return os.environ.get(f"ORCHESTRATE_{name}", default)


@dataclass(frozen=True)
class Settings:
    """
    Process-wide settings, read once from ORCHESTRATE_* environment variables.

    Args:
        database_url: SQLAlchemy URL of the metadata store.
        provider: Compute backend, 'gce' or 'libvirt'.
        libvirt_uri: Hypervisor connection URI for the libvirt backend.
        image_dir: Directory holding base and captured qcow2 images (libvirt).
        steps_url: Location the guest fetches provisioning step scripts from.
        operation_timeout: Seconds to wait on a provider long-running operation.
        step_timeout: Seconds to wait for a single provisioning step.
        poll_interval: Seconds between provider status polls.
        max_workers: Size of the worker pool running accepted requests.
        default_user: Value of the {user} naming token when the caller gives none.
        log_level: Root logging level.
        port: HTTP port of the WSGI server.
    """
    database_url: str = "sqlite:///orchestrate.db"
    provider: str = "gce"
    libvirt_uri: str = "qemu:///system"
    image_dir: str = "/var/lib/libvirt/images"
    steps_url: str = "gs://orchestrate-steps"
    operation_timeout: float = 600.0
    step_timeout: float = 1800.0
    poll_interval: float = 10.0
    max_workers: int = 8
    default_user: str = "orchestrate"
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=_env("DATABASE_URL", defaults.database_url),
            provider=_env("PROVIDER", defaults.provider).lower(),
            libvirt_uri=_env("LIBVIRT_URI", defaults.libvirt_uri),
            image_dir=_env("IMAGE_DIR", defaults.image_dir),
            steps_url=_env("STEPS_URL", defaults.steps_url),
            operation_timeout=float(_env("OPERATION_TIMEOUT", str(defaults.operation_timeout))),
            step_timeout=float(_env("STEP_TIMEOUT", str(defaults.step_timeout))),
            poll_interval=float(_env("POLL_INTERVAL", str(defaults.poll_interval))),
            max_workers=int(_env("MAX_WORKERS", str(defaults.max_workers))),
            default_user=_env("DEFAULT_USER", defaults.default_user),
            log_level=_env("LOG_LEVEL", defaults.log_level).upper(),
            port=int(_env("PORT", str(defaults.port))),
        )
