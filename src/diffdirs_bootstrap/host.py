"""Host platform identity and artifact naming.

The prebuilt artifact is selected by three facts about the host: OS
family, CPU architecture and the editor's version tier. Names follow the
release assets: ``diffdirs-<os>-<arch>-<tier>.<ext>``, all lower-cased.
"""

from __future__ import annotations

import logging
import platform
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import UnsupportedHostError
from .runtime import ProcessRunner, ProcessSpec

if TYPE_CHECKING:
    from .config import Config

__all__ = [
    "HostInfo",
    "artifact_name",
    "built_artifact_candidates",
    "detect_host",
    "detect_platform",
    "detect_version_tier",
    "download_url",
    "parse_version_tier",
    "shared_library_suffix",
]

logger = logging.getLogger(__name__)

# (minimum (major, minor), tier), newest first
VERSION_TIERS: list[tuple[tuple[int, int], str]] = [
    ((0, 10), "neovim-0-10"),
    ((0, 9), "neovim-0-9"),
]

_NVIM_VERSION_RE = re.compile(r"NVIM\s+v?(\d+)\.(\d+)(?:\.(\d+))?")


@dataclass(frozen=True)
class HostInfo:
    """Platform facts the artifact name is composed from."""

    os_name: str
    arch: str
    version_tier: str

    def __post_init__(self) -> None:
        # frozen: bypass __setattr__ to normalise case
        object.__setattr__(self, "os_name", self.os_name.lower())
        object.__setattr__(self, "arch", self.arch.lower())
        object.__setattr__(self, "version_tier", self.version_tier.lower())


def detect_platform() -> tuple[str, str]:
    """Return ``(os_name, arch)`` of the running host, lower-cased."""
    return platform.system().lower(), platform.machine().lower()


def shared_library_suffix(os_name: str) -> str:
    """Extension of the artifact the editor loads.

    The editor only searches ``.so`` modules outside Windows, macOS included.
    """
    return "dll" if os_name.lower() == "windows" else "so"


def artifact_name(host: HostInfo, prefix: str = "diffdirs") -> str:
    ext = shared_library_suffix(host.os_name)
    return f"{prefix}-{host.os_name}-{host.arch}-{host.version_tier}.{ext}".lower()


def download_url(base_url: str, name: str) -> str:
    return f"{base_url.rstrip('/')}/{name}"


def built_artifact_candidates(
    target_dir: Path,
    os_name: str,
    crate: str = "diffdirs",
) -> list[Path]:
    """Files a release build may have produced, most likely first."""
    os_name = os_name.lower()
    if os_name == "windows":
        names = [f"{crate}.dll", f"lib{crate}.dll"]
    elif os_name == "darwin":
        names = [f"lib{crate}.dylib", f"lib{crate}.so"]
    else:
        names = [f"lib{crate}.so", f"lib{crate}.dylib"]
    return [target_dir / name for name in names]


def parse_version_tier(version_output: str) -> str:
    """Map ``<editor> --version`` output to a version tier.

    Raises:
        UnsupportedHostError: If no version is found or it predates every tier
    """
    match = _NVIM_VERSION_RE.search(version_output)
    if not match:
        raise UnsupportedHostError(
            f"cannot find an editor version in: {version_output.strip()[:80]!r}"
        )

    version = (int(match.group(1)), int(match.group(2)))
    for minimum, tier in VERSION_TIERS:
        if version >= minimum:
            return tier

    raise UnsupportedHostError(
        f"editor version {version[0]}.{version[1]} is older than "
        f"{VERSION_TIERS[-1][0][0]}.{VERSION_TIERS[-1][0][1]}"
    )


async def detect_version_tier(
    runner: ProcessRunner,
    editor: str = "nvim",
    timeout: float | None = None,
) -> str:
    """Ask the editor for its version and map it to a tier."""
    result = await runner.run(
        ProcessSpec(argv=[editor, "--version"], timeout=timeout)
    )
    if not result.succeeded:
        detail = result.spawn_error or f"exit code {result.exit_code}"
        raise UnsupportedHostError(f"cannot query {editor} version: {detail}")

    tier = parse_version_tier(result.stdout_text)
    logger.debug(f"Detected version tier {tier} from {editor}")
    return tier


async def detect_host(runner: ProcessRunner, config: Config) -> HostInfo:
    """Collect HostInfo, honouring a configured version tier override."""
    os_name, arch = detect_platform()
    tier = config.version_tier
    if tier is None:
        tier = await detect_version_tier(runner, config.editor, config.step_timeout)
    return HostInfo(os_name=os_name, arch=arch, version_tier=tier)
