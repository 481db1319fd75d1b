from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .config import Config, config_path, load_config, save_config, validate_config, validate_gateway_url
from .errors import SkillsError, ValidationError, exit_code_for
from .install import InstallProgress, InstallService, resolve_install_root, uninstall_skill
from .lockfile import LockLedger
from .models import SkillMetadata, parse_package_spec
from .publish import PublishService
from .registry import RegistryClient
from .search import search_skills
from .signing import Signer, load_wallet
from .transport import BundleTransport

WINSTON_PER_AR = 10**12


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _status(args: argparse.Namespace, message: str) -> None:
    # Progress goes to stderr so --json output stays parseable.
    if not getattr(args, "json", False):
        print(message, file=sys.stderr)


def _format_ar(winston: int) -> str:
    return f"{winston / WINSTON_PER_AR:.6f} AR"


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def _runtime_config(args: argparse.Namespace) -> Config:
    # Config file < env < CLI flags.
    cfg = load_config(getattr(args, "config", None))
    overrides: dict[str, Any] = {}
    if getattr(args, "registry", None):
        overrides["registry"] = args.registry
    if getattr(args, "gateway", None):
        overrides["gateway"] = validate_gateway_url(args.gateway)
    if getattr(args, "timeout_s", None):
        overrides["timeout_s"] = args.timeout_s
    if getattr(args, "wallet", None):
        overrides["wallet"] = args.wallet
    return replace(cfg, **overrides) if overrides else cfg


def _make_registry(cfg: Config, signer: Signer | None = None) -> RegistryClient:
    return RegistryClient(
        cfg.require_registry(),
        cu_url=cfg.cu_url,
        mu_url=cfg.mu_url,
        signer=signer,
        timeout_s=cfg.timeout_s,
    )


def _make_transport(cfg: Config) -> BundleTransport:
    return BundleTransport(
        gateway=cfg.gateway,
        upload_url=cfg.upload_url,
        free_tier_threshold=cfg.free_tier_threshold,
        timeout_s=cfg.timeout_s,
    )


def _install_root(args: argparse.Namespace) -> Path:
    if getattr(args, "global_", False) and getattr(args, "local", False):
        raise ValidationError("Use either --global or --local, not both.")
    return resolve_install_root(global_=bool(getattr(args, "global_", False)), install_dir=getattr(args, "install_dir", None))


def _confirm_overwrite(path: Path) -> bool:
    if not sys.stdin.isatty():
        return False
    answer = input(f"{path} already exists. Overwrite? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _skill_row(s: SkillMetadata) -> list[str]:
    return [s.name, s.version, s.author or "-", _truncate(s.description, 60)]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skills",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Publish, search and install agent skills from a permanent registry.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              AO_REGISTRY_PROCESS_ID, SKILLS_GATEWAY, SKILLS_UPLOAD_URL, SKILLS_WALLET,
              SKILLS_TIMEOUT_S, SKILLS_CONFIG_PATH

            Exit codes:
              0 success, 1 invalid input or configuration, 2 network or filesystem failure,
              3 authorization or insufficient funds
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skills {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    p.add_argument("--config", help="Config file path (overrides SKILLS_CONFIG_PATH)")
    p.add_argument("--registry", help="Registry process id")
    p.add_argument("--timeout-s", type=float, help="Network timeout in seconds")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _add_location(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("-g", "--global", dest="global_", action="store_true", help="Use ~/.claude/skills")
        parser.add_argument("-l", "--local", action="store_true", help="Use ./.claude/skills (default)")
        parser.add_argument("--install-dir", help="Explicit install directory")

    # install
    inst = sub.add_parser("install", aliases=["i"], help="Install a skill and its dependencies")
    inst.add_argument("package", help="<name> or <name>@<version>")
    _add_location(inst)
    inst.add_argument("-f", "--force", action="store_true", help="Reinstall and overwrite existing directories")
    inst.add_argument("--skip-lock", action="store_true", help="Do not record installs in skills-lock.json")
    inst.add_argument("--max-depth", type=int, default=10, help="Maximum dependency depth (default: 10)")
    inst.add_argument("--gateway", help="Storage gateway URL")
    inst.add_argument("--json", action="store_true", help="Print JSON")

    # uninstall
    rm = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove an installed skill")
    rm.add_argument("name")
    _add_location(rm)
    rm.add_argument("--json", action="store_true", help="Print JSON")

    # publish
    pub = sub.add_parser("publish", help="Publish a skill directory")
    pub.add_argument("directory", help="Directory containing SKILL.md")
    pub.add_argument("--wallet", help="Path to a JWK wallet file")
    pub.add_argument("--gateway", help="Storage gateway URL")
    pub.add_argument(
        "--skip-confirmation", action="store_true", help="Do not wait for the storage network to confirm the upload"
    )
    pub.add_argument("--skip-receipt", action="store_true", help="Do not wait for the registry receipt")
    pub.add_argument("--json", action="store_true", help="Print JSON")

    # search
    se = sub.add_parser("search", help="Search the registry")
    se.add_argument("query", nargs="?", default="", help="Search text (empty lists everything)")
    se.add_argument("--tag", action="append", default=[], help="Require tag (repeatable, all must match)")
    se.add_argument("--json", action="store_true", help="Print JSON")

    # info
    info = sub.add_parser("info", help="Show a skill, or the registry itself when no name is given")
    info.add_argument("package", nargs="?", help="<name> or <name>@<version>")
    info.add_argument("--json", action="store_true", help="Print JSON")

    # list
    ls = sub.add_parser("list", aliases=["ls"], help="List registry skills, or installed skills with --installed")
    ls.add_argument("--installed", action="store_true", help="List skills recorded in skills-lock.json")
    _add_location(ls)
    ls.add_argument("--limit", type=int, default=10)
    ls.add_argument("--offset", type=int, default=0)
    ls.add_argument("--author", help="Filter by author")
    ls.add_argument("--tag", action="append", default=[], help="Filter by tag (repeatable)")
    ls.add_argument("--name", help="Filter by name substring")
    ls.add_argument("--json", action="store_true", help="Print JSON")

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show effective config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry", dest="set_registry")
    cfg_set.add_argument("--gateway", dest="set_gateway")
    cfg_set.add_argument("--upload-url")
    cfg_set.add_argument("--cu-url")
    cfg_set.add_argument("--mu-url")
    cfg_set.add_argument("--wallet", dest="set_wallet")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)
    cfg_set.add_argument("--free-tier-threshold", type=int)
    cfg_set.add_argument("--max-bundle-size", type=int)

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path(args.config)))
        return 0

    if args.subcmd == "show":
        _print_json(asdict(load_config(args.config)))
        return 0

    if args.subcmd == "set":
        cfg = load_config(args.config)
        updates: dict[str, Any] = {
            "registry": args.set_registry,
            "gateway": args.set_gateway,
            "upload_url": args.upload_url,
            "cu_url": args.cu_url,
            "mu_url": args.mu_url,
            "wallet": args.set_wallet,
            "timeout_s": args.set_timeout_s,
            "free_tier_threshold": args.free_tier_threshold,
            "max_bundle_size": args.max_bundle_size,
        }
        new_cfg = replace(cfg, **{k: v for k, v in updates.items() if v is not None})
        validate_config(new_cfg)
        path = save_config(new_cfg, args.config)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    root = _install_root(args)

    def _progress(ev: InstallProgress) -> None:
        prefix = f"[{ev.current}/{ev.total}] " if ev.current is not None and ev.total else ""
        _status(args, f"{prefix}{ev.message}")

    registry = _make_registry(cfg)
    transport = _make_transport(cfg)
    try:
        service = InstallService(
            registry,
            transport,
            install_root=root,
            max_depth=args.max_depth,
            on_progress=_progress,
            confirm=_confirm_overwrite,
        )
        result = service.install(args.package, force=args.force, skip_lock=args.skip_lock)
    finally:
        registry.close()
        transport.close()

    if args.json:
        _print_json(
            {
                "name": result.name,
                "version": result.version,
                "install_root": str(result.install_root),
                "installed": [r.to_dict() for r in result.installed],
                "skipped": list(result.skipped),
                "lock_path": str(result.ledger_path) if result.ledger_path else None,
                "warnings": list(result.warnings),
            }
        )
        return 0

    print(f"install_root: {result.install_root}")
    if result.ledger_path:
        print(f"lock: {result.ledger_path}")
    rows = [["NAME", "VERSION", "STATUS"]]
    for node in result.plan.ordered():
        rows.append([node.name, node.version, "already installed" if node.from_cache else "installed"])
    _print_table(rows)
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    removed = uninstall_skill(_install_root(args), args.name)
    if args.json:
        _print_json({"removed": args.name, "path": str(removed)})
        return 0
    print(f"removed: {args.name} ({removed})")
    return 0


def cmd_publish(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    signer = load_wallet(cfg.require_wallet())
    directory = Path(args.directory).expanduser()

    registry = _make_registry(cfg, signer)
    transport = _make_transport(cfg)
    try:
        service = PublishService(
            registry,
            transport,
            signer,
            max_bundle_size=cfg.max_bundle_size,
            on_progress=lambda _step, message: _status(args, message),
        )
        result = service.publish(
            directory,
            skip_confirmation=args.skip_confirmation,
            skip_receipt=args.skip_receipt,
        )
    finally:
        registry.close()
        transport.close()

    if args.json:
        payload = asdict(result)
        _print_json(payload)
        return 0

    if result.exceeded_limit:
        print(f"warning: bundle is larger than {cfg.max_bundle_size} bytes", file=sys.stderr)
    _print_table(
        [
            ["FIELD", "VALUE"],
            ["name", result.name],
            ["version", result.version],
            ["action", result.action],
            ["content_id", result.content_id],
            ["message_id", result.message_id],
            ["size", f"{result.size} bytes ({result.file_count} files)"],
            ["cost", "free tier" if result.free_tier else _format_ar(result.cost)],
        ]
    )
    if result.receipt is None:
        print("registry receipt: skipped")
    if result.confirmed is None:
        print("durability: skipped")
    else:
        print("durability: confirmed" if result.confirmed else "durability: not yet confirmed (check again later)")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    registry = _make_registry(cfg)
    try:
        results = search_skills(registry, args.query, tags=args.tag)
    finally:
        registry.close()

    if args.json:
        _print_json([s.to_payload() for s in results])
        return 0
    if not results:
        print("No skills found.")
        return 0
    _print_table([["NAME", "VERSION", "AUTHOR", "DESCRIPTION"]] + [_skill_row(s) for s in results])
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    registry = _make_registry(cfg)
    try:
        if not args.package:
            info = registry.info()
            if args.json:
                _print_json(info)
            else:
                _print_table([["FIELD", "VALUE"]] + [[k, json.dumps(v) if not isinstance(v, str) else v] for k, v in sorted(info.items())])
            return 0

        name, version = parse_package_spec(args.package)
        skill = registry.get_skill(name, version)
        if skill is None:
            label = f"{name}@{version}" if version else name
            raise ValidationError(f"Skill {label} not found in registry.", hint="Check the name with `skills search`.")
        versions = registry.get_versions(name)
    finally:
        registry.close()

    if args.json:
        payload = skill.to_payload()
        payload["versions"] = versions
        _print_json(payload)
        return 0
    _print_table(
        [
            ["FIELD", "VALUE"],
            ["name", skill.name],
            ["version", skill.version],
            ["author", skill.author or "-"],
            ["owner", skill.owner or "-"],
            ["license", skill.license or "-"],
            ["tags", ", ".join(skill.tags) or "-"],
            ["dependencies", ", ".join(str(d) for d in skill.dependencies) or "-"],
            ["content_id", skill.content_id or "-"],
            ["versions", ", ".join(versions) or skill.version],
        ]
    )
    if skill.description:
        print()
        print(skill.description)
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    if args.installed:
        ledger = LockLedger.for_install_root(_install_root(args))
        records = ledger.records()
        if args.json:
            _print_json([r.to_dict() for r in records])
            return 0
        if not records:
            print(f"No skills recorded in {ledger.path}.")
            return 0
        rows = [["NAME", "VERSION", "DIRECT", "PATH"]]
        for r in records:
            rows.append([r.name, r.version, "yes" if r.is_direct else "no", r.install_path])
        _print_table(rows)
        return 0

    cfg = _runtime_config(args)
    registry = _make_registry(cfg)
    try:
        page = registry.list_skills(
            limit=args.limit,
            offset=args.offset,
            author=args.author,
            tags=args.tag,
            name_filter=args.name,
        )
    finally:
        registry.close()

    if args.json:
        _print_json(
            {
                "skills": [s.to_payload() for s in page.skills],
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
                "has_next_page": page.has_next_page,
            }
        )
        return 0
    if not page.skills:
        print("No skills found.")
        return 0
    _print_table([["NAME", "VERSION", "AUTHOR", "DESCRIPTION"]] + [_skill_row(s) for s in page.skills])
    shown_to = page.offset + len(page.skills)
    print(f"showing {page.offset + 1}-{shown_to} of {page.total}")
    if page.has_next_page:
        print(f"next page: --offset {shown_to}")
    return 0


def _report(err: SkillsError, *, verbose: bool) -> None:
    print(f"error: {err}", file=sys.stderr)
    if err.hint:
        print(f"hint: {err.hint}", file=sys.stderr)
    if verbose:
        cause = err.__cause__
        while cause is not None:
            print(f"caused by: {type(cause).__name__}: {cause}", file=sys.stderr)
            cause = cause.__cause__


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd == "publish":
            return cmd_publish(args)
        if args.cmd == "search":
            return cmd_search(args)
        if args.cmd == "info":
            return cmd_info(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        raise AssertionError("unreachable")
    except SkillsError as e:
        _report(e, verbose=args.verbose)
        return exit_code_for(e)
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
