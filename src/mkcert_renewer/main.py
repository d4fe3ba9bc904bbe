"""
mkcert-renewer command line interface.

Usage:
    mkcert-renewer generate [-d localhost,127.0.0.1,::1] [-p ./certs] [-n localhost+3]
    mkcert-renewer check [-p ./certs] [-n localhost+3] [-w 10]
    mkcert-renewer monitor [-p ./certs] [-n localhost+3]
    mkcert-renewer schedule [-c "0 2 * * 0"] [-d ...] [-p ...] [-n ...]
    mkcert-renewer install
"""

import argparse
import logging
import os
import sys
import time
from typing import List, Optional

from mkcert_renewer import events, platform_info
from mkcert_renewer.config import load_config, load_config_file
from mkcert_renewer.errors import CertManagerError
from mkcert_renewer.manager import CertificateManager

logger = logging.getLogger("mkcert-renewer")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "fatal": logging.FATAL,
}


def _domains(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [d.strip() for d in value.split(",") if d.strip()]


def build_manager(args: argparse.Namespace) -> CertificateManager:
    overrides = {
        "cert_path": getattr(args, "path", None),
        "cert_name": getattr(args, "name", None),
        "domains": _domains(getattr(args, "domains", None)),
        "cron_pattern": getattr(args, "cron", None),
        "warning_days": getattr(args, "warning_days", None),
    }
    if args.config:
        config = load_config_file(args.config, **overrides)
    else:
        config = load_config(**overrides)
    return CertificateManager(config=config)


def _wait_forever():
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping...")


def cmd_generate(args: argparse.Namespace) -> int:
    manager = build_manager(args)
    manager.on(events.BACKUP_CREATED, lambda e: print(f"Backup: {e.payload['backup_cert_file']}"))
    manager.on(events.GENERATION_PROGRESS, lambda e: print(e.payload["text"], end=""))
    print("Generating certificate...")
    try:
        result = manager.generate(manager.config.domains)
    finally:
        manager.destroy()

    print("Certificate generated")
    print(f"Certificate: {result.cert_file}")
    print(f"Private key: {result.key_file}")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    manager = build_manager(args)
    try:
        decision = manager.check_renewal()
    finally:
        manager.destroy()

    if decision.expiry is None:
        print(f"No valid certificate found at {manager.cert_file}")
        return 1

    print(f"Expires: {decision.expiry.isoformat()}")
    print(f"Days remaining: {decision.days_until_expiry}")
    if decision.needs_renewal:
        print("Certificate needs renewal")
        return 1
    print("Certificate is valid")
    return 0


def cmd_monitor(args: argparse.Namespace) -> int:
    manager = build_manager(args)
    manager.start_monitoring(lambda path, ts: print(f"Change detected: {path} ({ts.isoformat()})"))
    print(f"Monitoring {manager.cert_file} and {manager.key_file} (Ctrl+C to stop)")
    try:
        _wait_forever()
    finally:
        manager.destroy()
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    manager = build_manager(args)
    manager.on(events.AUTO_RENEWAL_TRIGGERED, lambda e: print("Renewal triggered"))
    manager.on(events.AUTO_RENEWAL_COMPLETED, lambda e: print("Renewal completed"))
    manager.on(
        events.AUTO_RENEWAL_FAILED, lambda e: print(f"Renewal failed: {e.payload['message']}")
    )
    try:
        handle = manager.schedule_auto_renewal()
        print(f"Auto-renewal scheduled: '{handle.cron_pattern}'")
        print(f"Domains: {', '.join(handle.domains)}")
        print("Press Ctrl+C to stop")
        _wait_forever()
    finally:
        manager.destroy()
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    info = platform_info.detect()
    print(f"Platform: {info.system} {info.release} ({info.machine})")
    print(f"Package manager: {info.package_manager}")
    print("Install mkcert with:")
    print(f"  {info.install_command}")
    print("Then install the local CA with:")
    print("  mkcert -install")

    compatibility = platform_info.check_compatibility(info)
    for issue in compatibility["issues"]:
        print(f"Warning: {issue}")
    for recommendation in compatibility["recommendations"]:
        print(f"Note: {recommendation}")
    return 0


def _add_identity_options(parser: argparse.ArgumentParser):
    parser.add_argument("-p", "--path", help="Certificate directory (env: HTTPS_CERT_PATH).")
    parser.add_argument("-n", "--name", help="Certificate base name (env: HTTPS_CERT_NAME).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mkcert-renewer",
        description="Cross-platform mkcert certificate auto-renewal.",
    )
    parser.add_argument("--config", help="JSON configuration file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Generate new certificates.")
    generate.add_argument("-d", "--domains", help="Comma-separated list of domains.")
    _add_identity_options(generate)
    generate.set_defaults(func=cmd_generate)

    check = subparsers.add_parser("check", help="Check certificate expiry.")
    check.add_argument("-w", "--warning-days", type=int, help="Renewal window in days.")
    _add_identity_options(check)
    check.set_defaults(func=cmd_check)

    monitor = subparsers.add_parser("monitor", help="Watch certificate files for changes.")
    _add_identity_options(monitor)
    monitor.set_defaults(func=cmd_monitor)

    schedule = subparsers.add_parser("schedule", help="Schedule automatic renewal.")
    schedule.add_argument("-c", "--cron", help="Cron pattern (default: '0 2 * * 0').")
    schedule.add_argument("-d", "--domains", help="Comma-separated list of domains.")
    _add_identity_options(schedule)
    schedule.set_defaults(func=cmd_schedule)

    install = subparsers.add_parser("install", help="Show how to install mkcert.")
    install.set_defaults(func=cmd_install)

    return parser


def configure_logging(verbose: bool = False):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    log_level = os.getenv("LOG_LEVEL", "").lower()
    if log_level in LOG_LEVELS.keys():
        logger.setLevel(LOG_LEVELS[log_level])
        logger.debug(f"Logging level set to {log_level.upper()} from LOG_LEVEL env variable")
    if verbose:
        logger.setLevel(logging.DEBUG)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        return args.func(args)
    except (CertManagerError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
