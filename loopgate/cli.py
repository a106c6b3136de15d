#!/usr/bin/env python3
"""
loopgate command line.

Usage:
    loopgate serve
    loopgate init-ca
    loopgate install-ca
    loopgate hosts add demo.local
    loopgate certs issue demo.local
"""

import argparse
import asyncio
import sys

from .certs import LocalCertificateAuthority, create_signer
from .config import get_settings
from .errors import LoopgateError
from .hosts import HostRegistry
from .main import configure_logging
from .trust import create_installer, install_root


def _ca(settings) -> LocalCertificateAuthority:
    return LocalCertificateAuthority(
        settings.certs_dir,
        signer=create_signer(settings.signer, settings.openssl_bin),
        root_key_size=settings.root_key_size,
        ca_validity_days=settings.ca_validity_days,
        leaf_validity_days=settings.leaf_validity_days,
    )


async def _hosts_command(args, settings) -> int:
    registry = HostRegistry(settings.hosts_file)

    if args.action == "list":
        entries = await (registry.read() if args.all else registry.read_local())
        for entry in entries:
            flags = []
            if entry.is_managed:
                flags.append("managed")
            if entry.is_disabled:
                flags.append("disabled")
            print(f"{entry.ip:<16} {entry.domain:<40} {' '.join(flags)}")
        return 0

    if args.action == "import":
        count = await registry.import_all()
        print(f"{count} hosts imported")
        return 0

    operations = {
        "add": lambda: registry.add(args.domain, args.ip),
        "adopt": lambda: registry.adopt(args.domain, args.ip),
        "remove": lambda: registry.remove(args.domain, args.ip),
        "enable": lambda: registry.set_enabled(args.domain, True, args.ip),
        "disable": lambda: registry.set_enabled(args.domain, False, args.ip),
    }
    if await operations[args.action]():
        print(f"{args.action}: {args.ip} {args.domain}")
        return 0
    print(f"{args.domain} not found or not managed by loopgate", file=sys.stderr)
    return 1


async def _certs_command(args, settings) -> int:
    ca = _ca(settings)

    if args.action == "list":
        for info in await ca.list():
            state = "valid" if info.is_valid else "invalid"
            print(f"{info.domain:<40} {state:<8} until {info.valid_to.date().isoformat()}")
        return 0

    if args.action == "issue":
        info = await ca.issue(args.domain)
        print(f"Issued {info.cert_path} (valid until {info.valid_to.isoformat()})")
        return 0

    if args.action == "verify":
        info = await ca.verify(args.domain)
        if info is None:
            print(f"No certificate for {args.domain}", file=sys.stderr)
            return 1
        print(f"{info.domain}: {'valid' if info.is_valid else 'invalid'}, "
              f"issuer {info.issuer}, {info.valid_from.isoformat()} - {info.valid_to.isoformat()}")
        return 0 if info.is_valid else 1

    if args.action == "delete":
        if await ca.delete(args.domain):
            print(f"Deleted certificate for {args.domain}")
            return 0
        print(f"No certificate for {args.domain}", file=sys.stderr)
        return 1

    return 2


async def _ca_command(args, settings) -> int:
    ca = _ca(settings)
    cert_path, _ = await ca.initialize()
    if args.command == "init-ca":
        print(f"Root CA: {cert_path}")
        return 0

    ok, message = await install_root(create_installer(), cert_path)
    print(message, file=sys.stdout if ok else sys.stderr)
    return 0 if ok else 1


def _serve(args, settings) -> int:
    import uvicorn

    uvicorn.run(
        "loopgate.main:create_app",
        factory=True,
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loopgate",
        description="Local domains over trusted HTTPS",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOOPGATE_LOG_LEVEL",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the admin API and proxy")
    serve.add_argument("--host", default=None, help="API bind address")
    serve.add_argument("--port", type=int, default=None, help="API port (default: 10191)")

    commands.add_parser("init-ca", help="Generate the root CA if missing")
    commands.add_parser("install-ca", help="Install the root CA in the OS trust store")

    hosts = commands.add_parser("hosts", help="Manage hosts file entries")
    hosts_actions = hosts.add_subparsers(dest="action", required=True)
    listing = hosts_actions.add_parser("list", help="List loopback entries")
    listing.add_argument("--all", action="store_true", help="Include non-loopback entries")
    hosts_actions.add_parser("import", help="Adopt all unmanaged loopback entries")
    for action in ("add", "adopt", "remove", "enable", "disable"):
        sub = hosts_actions.add_parser(action)
        sub.add_argument("domain")
        sub.add_argument("--ip", default="127.0.0.1")

    certs = commands.add_parser("certs", help="Manage domain certificates")
    certs_actions = certs.add_subparsers(dest="action", required=True)
    certs_actions.add_parser("list", help="List issued certificates")
    for action in ("issue", "verify", "delete"):
        sub = certs_actions.add_parser(action)
        sub.add_argument("domain")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    try:
        if args.command == "serve":
            return _serve(args, settings)
        if args.command == "hosts":
            return asyncio.run(_hosts_command(args, settings))
        if args.command == "certs":
            return asyncio.run(_certs_command(args, settings))
        return asyncio.run(_ca_command(args, settings))
    except LoopgateError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
