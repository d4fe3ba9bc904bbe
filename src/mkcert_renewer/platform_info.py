"""
Host platform detection, used to print mkcert installation hints.
"""

import platform
import shutil
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional

LINUX_PACKAGE_MANAGERS = ["apt", "yum", "dnf", "pacman", "zypper", "apk"]

_MKCERT_DOWNLOAD = (
    'curl -JLO "https://dl.filippo.io/mkcert/latest?for=linux/amd64" '
    "&& chmod +x mkcert-v*-linux-amd64 && sudo mv mkcert-v*-linux-amd64 /usr/local/bin/mkcert"
)

INSTALL_COMMANDS: Dict[str, str] = {
    "choco": "choco install mkcert",
    "brew": "brew install mkcert",
    "apt": f"sudo apt install libnss3-tools && {_MKCERT_DOWNLOAD}",
    "yum": f"sudo yum install nss-tools && {_MKCERT_DOWNLOAD}",
    "dnf": f"sudo dnf install nss-tools && {_MKCERT_DOWNLOAD}",
    "pacman": "sudo pacman -S mkcert",
    "zypper": "sudo zypper install mkcert",
    "apk": "apk add mkcert",
    "manual": "See https://github.com/FiloSottile/mkcert#installation",
}


@dataclass(frozen=True)
class PlatformInfo:
    system: str
    release: str
    machine: str
    package_manager: str
    install_command: str

    @property
    def is_windows(self) -> bool:
        return self.system == "Windows"

    @property
    def is_macos(self) -> bool:
        return self.system == "Darwin"

    @property
    def is_linux(self) -> bool:
        return self.system == "Linux"


def command_exists(command: str) -> bool:
    return shutil.which(command) is not None


def get_package_manager(system: Optional[str] = None) -> str:
    system = system or platform.system()
    if system == "Windows":
        return "choco"
    if system == "Darwin":
        return "brew"
    if system == "Linux":
        for manager in LINUX_PACKAGE_MANAGERS:
            if command_exists(manager):
                return manager
    return "manual"


def get_install_command(package_manager: str) -> str:
    return INSTALL_COMMANDS.get(package_manager, INSTALL_COMMANDS["manual"])


def detect() -> PlatformInfo:
    system = platform.system()
    package_manager = get_package_manager(system)
    return PlatformInfo(
        system=system,
        release=platform.release(),
        machine=platform.machine(),
        package_manager=package_manager,
        install_command=get_install_command(package_manager),
    )


def check_compatibility(info: Optional[PlatformInfo] = None) -> dict:
    """Report missing prerequisites for running mkcert-renewer on this host."""
    info = info or detect()
    issues: List[str] = []

    if sys.version_info < (3, 9):
        issues.append(f"Python 3.9+ is required (current: {platform.python_version()})")

    if info.is_windows and not command_exists("choco"):
        issues.append("Chocolatey is not installed (recommended)")
    elif info.is_macos and not command_exists("brew"):
        issues.append("Homebrew is not installed (recommended)")
    elif info.is_linux and not command_exists("openssl"):
        issues.append("OpenSSL is not installed")

    recommendations = []
    if info.is_windows:
        recommendations.append("Run commands from an elevated PowerShell prompt")
    else:
        recommendations.append("Installing the mkcert root CA may require sudo")
    recommendations.append("Use `mkcert-renewer schedule` or a system scheduler for periodic renewal")

    return {"compatible": not issues, "issues": issues, "recommendations": recommendations}
