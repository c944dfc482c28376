from __future__ import annotations

import getpass
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import click
import typer
from rich.console import Console

from . import __version__
from .clock import parse_duration, parse_iso, utcnow
from .broker import Broker
from .config import Settings
from .context import background
from .errors import SentinelError, ValidationError
from .policy import AccessRequest, evaluate, load_policy, parse_policy, policy_to_dict
from .policy_lint import lint_policy
from .session import RevokeInput, SessionManager

_ERROR_CONSOLE = Console(stderr=True)

DEFAULT_LIST_LIMIT = 100

app = typer.Typer(
    name="sentinel-admin",
    help="Policy checks and session administration for the credential broker.",
    no_args_is_help=True,
    add_completion=False,
)
policy_app = typer.Typer(help="Validate, lint and dry-run access policies", no_args_is_help=True)
session_app = typer.Typer(help="Inspect and revoke issued sessions", no_args_is_help=True)
request_app = typer.Typer(help="Create and decide access requests", no_args_is_help=True)
break_glass_app = typer.Typer(help="Invoke and close emergency access", no_args_is_help=True)
app.add_typer(policy_app, name="policy")
app.add_typer(session_app, name="session")
app.add_typer(request_app, name="request")
app.add_typer(break_glass_app, name="break-glass")


@dataclass(frozen=True)
class GlobalOpts:
    settings: Settings
    pretty: bool


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"sentinel-admin {__version__}")
        raise typer.Exit(code=0)


@app.callback()
def app_callback(
    ctx: typer.Context,
    pretty: bool = typer.Option(False, "--pretty", help="Indent JSON output"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    ctx.obj = {"g": GlobalOpts(settings=Settings.from_env(), pretty=pretty)}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    root = ctx.find_root()
    if isinstance(root.obj, dict) and isinstance(root.obj.get("g"), GlobalOpts):
        return root.obj["g"]
    return GlobalOpts(settings=Settings.from_env(), pretty=False)


def _read_policy_text(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ValidationError(f"cannot read policy file {path}: {e}") from e


def _broker(g: GlobalOpts) -> Broker:
    return Broker.from_settings(g.settings)


def _session_manager(g: GlobalOpts) -> SessionManager:
    return _broker(g).sessions()


def _actor(raw: str) -> str:
    return raw.strip() or getpass.getuser()


def _duration_option(raw: str, flag: str) -> timedelta:
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise ValidationError(f"invalid {flag} {raw!r}: {e}") from e


def _parse_since(raw: str, now: datetime) -> datetime:
    try:
        return now - parse_duration(raw)
    except ValueError:
        pass
    try:
        return parse_iso(raw)
    except ValueError as e:
        raise ValidationError(f"invalid --since {raw!r} (use a duration like 2h or an ISO timestamp)") from e


@policy_app.command("validate", help="Parse and validate a policy file.")
def policy_validate(ctx: typer.Context, path: Path = typer.Argument(..., help="Policy YAML file")) -> None:
    g = _ctx_global(ctx)
    policy = load_policy(_read_policy_text(path))
    _print_json(
        {
            "kind": "sentinel.policy.validate.v1",
            "valid": True,
            "path": str(path),
            "version": policy.version,
            "rules": len(policy.rules),
        },
        pretty=g.pretty,
    )


@policy_app.command("lint", help="Report advisory findings for a policy file (never fails on findings).")
def policy_lint(ctx: typer.Context, path: Path = typer.Argument(..., help="Policy YAML file")) -> None:
    g = _ctx_global(ctx)
    policy = parse_policy(_read_policy_text(path))
    issues = lint_policy(policy)
    _print_json(
        {
            "kind": "sentinel.policy.lint.v1",
            "path": str(path),
            "issues": [i.to_dict() for i in issues],
        },
        pretty=g.pretty,
    )


@policy_app.command("evaluate", help="Evaluate a policy for one user/profile without overrides.")
def policy_evaluate(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Policy YAML file"),
    user: str = typer.Option(..., "--user"),
    profile: str = typer.Option(..., "--profile"),
    at: str = typer.Option("", "--at", help="ISO timestamp to evaluate at (default: now)"),
) -> None:
    g = _ctx_global(ctx)
    policy = load_policy(_read_policy_text(path))
    when = utcnow()
    if at:
        try:
            when = parse_iso(at)
        except ValueError as e:
            raise ValidationError(f"invalid --at {at!r}: {e}") from e
    decision = evaluate(policy, AccessRequest(user=user, profile=profile, time=when))
    _print_json(
        {
            "kind": "sentinel.policy.decision.v1",
            "user": user,
            "profile": profile,
            "effect": decision.effect,
            "rule": decision.matched_rule,
            "rule_index": decision.rule_index,
            "reason": decision.reason,
        },
        pretty=g.pretty,
    )


@policy_app.command("show", help="Print the normalized policy as JSON.")
def policy_show(ctx: typer.Context, path: Path = typer.Argument(..., help="Policy YAML file")) -> None:
    g = _ctx_global(ctx)
    _print_json(policy_to_dict(load_policy(_read_policy_text(path))), pretty=g.pretty)


@session_app.command("list", help="List sessions (default: active).")
def session_list(
    ctx: typer.Context,
    user: str = typer.Option("", "--user"),
    status: str = typer.Option("", "--status", help="active, revoked or expired"),
    profile: str = typer.Option("", "--profile"),
    since: str = typer.Option("", "--since", help="Duration (2h) or ISO timestamp"),
    limit: int = typer.Option(DEFAULT_LIST_LIMIT, "--limit", min=1),
) -> None:
    g = _ctx_global(ctx)
    now = utcnow()
    since_at = _parse_since(since, now) if since else None
    sessions = _session_manager(g).list_sessions(
        background(),
        limit=limit,
        user=user,
        status=status,
        profile=profile,
        since=since_at,
        now=now,
    )
    _print_json(
        {"kind": "sentinel.session.list.v1", "sessions": [s.to_dict() for s in sessions]},
        pretty=g.pretty,
    )


@session_app.command("show", help="Show one session.")
def session_show(ctx: typer.Context, session_id: str = typer.Argument(...)) -> None:
    g = _ctx_global(ctx)
    sess = _session_manager(g).get(background(), session_id)
    _print_json(sess.to_dict(), pretty=g.pretty)


@session_app.command("revoke", help="Revoke an active session.")
def session_revoke(
    ctx: typer.Context,
    session_id: str = typer.Argument(...),
    reason: str = typer.Option("", "--reason", help="Required"),
    revoked_by: str = typer.Option("", "--by", help="Revoking identity (default: local user)"),
) -> None:
    g = _ctx_global(ctx)
    who = _actor(revoked_by)
    sess = _session_manager(g).revoke(
        background(),
        RevokeInput(session_id=session_id, revoked_by=who, reason=reason.strip()),
    )
    _print_json(sess.to_dict(), pretty=g.pretty)


@app.command("check", help="Decide one access request against the configured policy and overrides.")
def check(
    ctx: typer.Context,
    user: str = typer.Option("", "--user", help="Requesting identity (default: local user)"),
    profile: str = typer.Option(..., "--profile"),
    duration: str = typer.Option("1h", "--duration", help="Requested session duration"),
    role_arn: str = typer.Option("", "--role-arn", help="Also run the advisory drift check for this role"),
) -> None:
    g = _ctx_global(ctx)
    out = _broker(g).decide(
        background(),
        _actor(user),
        profile,
        requested_duration=_duration_option(duration, "--duration"),
        role_arn=role_arn,
    )
    body: dict[str, Any] = {
        "kind": "sentinel.decision.v1",
        "effect": out.effect,
        "policy_effect": out.policy_decision.effect,
        "rule": out.policy_decision.matched_rule,
        "rule_index": out.policy_decision.rule_index,
        "reason": out.policy_decision.reason,
        "override": out.override,
        "approved_request_id": out.approved_request_id,
        "break_glass_event_id": out.break_glass_event_id,
        "effective_duration_seconds": int(out.effective_duration.total_seconds()),
        "lookup_errors": [{"resolver": f.resolver, "error": f.error} for f in out.lookup_errors],
    }
    if out.drift is not None:
        body["drift"] = out.drift.to_dict()
    _print_json(body, pretty=g.pretty)


@request_app.command("create", help="Open an access request (auto-approved when the approval policy allows).")
def request_create(
    ctx: typer.Context,
    profile: str = typer.Option(..., "--profile"),
    justification: str = typer.Option(..., "--justification"),
    duration: str = typer.Option("1h", "--duration"),
    requester: str = typer.Option("", "--as", help="Requesting identity (default: local user)"),
) -> None:
    g = _ctx_global(ctx)
    req = _broker(g).create_request(
        background(),
        requester=_actor(requester),
        profile=profile,
        justification=justification.strip(),
        duration=_duration_option(duration, "--duration"),
    )
    _print_json(req.to_dict(), pretty=g.pretty)


@request_app.command("approve", help="Approve a pending request.")
def request_approve(
    ctx: typer.Context,
    request_id: str = typer.Argument(...),
    comment: str = typer.Option("", "--comment"),
    approver: str = typer.Option("", "--by", help="Approving identity (default: local user)"),
) -> None:
    g = _ctx_global(ctx)
    req = _broker(g).approve_request(background(), request_id, approver=_actor(approver), comment=comment)
    _print_json(req.to_dict(), pretty=g.pretty)


@request_app.command("deny", help="Deny a pending request.")
def request_deny(
    ctx: typer.Context,
    request_id: str = typer.Argument(...),
    comment: str = typer.Option("", "--comment"),
    approver: str = typer.Option("", "--by", help="Denying identity (default: local user)"),
) -> None:
    g = _ctx_global(ctx)
    req = _broker(g).deny_request(background(), request_id, approver=_actor(approver), comment=comment)
    _print_json(req.to_dict(), pretty=g.pretty)


@break_glass_app.command("invoke", help="Open emergency access for one profile.")
def break_glass_invoke(
    ctx: typer.Context,
    profile: str = typer.Option(..., "--profile"),
    reason_code: str = typer.Option(..., "--reason-code", help="incident, maintenance, security, recovery or other"),
    justification: str = typer.Option(..., "--justification"),
    duration: str = typer.Option("1h", "--duration"),
    invoker: str = typer.Option("", "--as", help="Invoking identity (default: local user)"),
) -> None:
    g = _ctx_global(ctx)
    event = _broker(g).invoke_break_glass(
        background(),
        invoker=_actor(invoker),
        profile=profile,
        reason_code=reason_code.strip().lower(),
        justification=justification.strip(),
        duration=_duration_option(duration, "--duration"),
    )
    _print_json(event.to_dict(), pretty=g.pretty)


@break_glass_app.command("close", help="Close an active break-glass event.")
def break_glass_close(
    ctx: typer.Context,
    event_id: str = typer.Argument(...),
    reason: str = typer.Option("", "--reason", help="Required"),
    closed_by: str = typer.Option("", "--by", help="Closing identity (default: local user)"),
) -> None:
    g = _ctx_global(ctx)
    event = _broker(g).close_break_glass(background(), event_id, closed_by=_actor(closed_by), reason=reason.strip())
    _print_json(event.to_dict(), pretty=g.pretty)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        result = app(args=argv, prog_name="sentinel-admin", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except ValidationError as e:
        _rich_error(str(e))
        return 2
    except SentinelError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
