from __future__ import annotations

import argparse
import json
import os
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.text import Text

__version__ = "0.3.0"

console = Console()
err_console = Console(stderr=True)

DEFAULT_API_URL = "https://api.github.com"
TEAM_PRIVACY = "secret"
VALID_ROLES = ("member", "maintainer")
MIN_TEAM_LENGTH = 4


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class SessionContext:
    """Inputs gathered once at startup."""
    token: str
    owner: str
    org: str
    team: str


@dataclass
class TeamRecord:
    """Identifying state of the target team. Empty when the team was not found."""
    id: int | None = None
    url: str | None = None
    slug: str | None = None

    @property
    def exists(self) -> bool:
        return self.id is not None and bool(self.url) and bool(self.slug)

    @classmethod
    def from_api(cls, data: Any, org: str) -> TeamRecord:
        # A slug can exist in another org; only trust teams owned by the requested one.
        if not isinstance(data, dict):
            return cls()
        login = (data.get("organization") or {}).get("login") or ""
        if login.casefold() != org.casefold():
            return cls()
        team_id, url, slug = data.get("id"), data.get("html_url"), data.get("slug")
        if team_id is None or not url or not slug:
            return cls()
        return cls(id=team_id, url=url, slug=slug)


@dataclass
class InviteResult:
    """Outcome of a single invitation or membership add."""
    invitee: str
    kind: str  # "email" or "username"
    status: str  # "ok", "would" or "fail"
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status != "fail"


class UsageError(ValueError):
    """Raised when required inputs are missing or invalid."""


# =============================================================================
# GitHub API Client
# =============================================================================


class GitHubError(RuntimeError):
    """A failed GitHub API call, classified by cause."""

    def __init__(self, message: str, *, kind: str = "unknown", status: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status = status

    @classmethod
    def from_response(cls, response: httpx.Response, *, what: str) -> GitHubError:
        status = response.status_code
        message = ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("message") or ""
        details = message or response.text.strip()[:200] or response.reason_phrase
        return cls(
            f"Failed to {what}: HTTP {status} {details}".rstrip(),
            kind=_classify_status(status, response.headers),
            status=status,
        )


def _classify_status(status: int, headers: httpx.Headers) -> str:
    if status == 404:
        return "not_found"
    if status == 429:
        return "rate_limit"
    if status == 403 and headers.get("x-ratelimit-remaining") == "0":
        return "rate_limit"
    if status in (401, 403):
        return "auth"
    if status == 422:
        return "validation"
    if status >= 500:
        return "server"
    return "unknown"


def _segment(value: str) -> str:
    # Every user-supplied value is exactly one path segment, dot segments included.
    if value in (".", ".."):
        return value.replace(".", "%2E")
    return quote(value, safe="")


class GitHubClient:
    """Thin wrapper over the GitHub REST endpoints used for team management."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_API_URL,
        timeout_s: float = 30,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "authorization": f"Bearer {token}",
                "accept": "application/vnd.github+json",
                "x-github-api-version": "2022-11-28",
                "user-agent": f"orgteam/{__version__}",
            },
            timeout=timeout_s,
            transport=transport,
        )

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, *, what: str, payload: dict | None = None) -> Any:
        try:
            resp = self._client.request(method, path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GitHubError.from_response(exc.response, what=what) from exc
        except httpx.RequestError as exc:
            raise GitHubError(f"Network error while trying to {what}: {exc}", kind="network") from exc
        except httpx.InvalidURL as exc:
            raise GitHubError(f"Invalid request URL while trying to {what}: {exc}", kind="validation") from exc

        if not resp.content:
            return {}
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise GitHubError(f"Unexpected non-JSON output while trying to {what}: {resp.text[:200]}") from exc

    def get_authenticated_login(self) -> str:
        data = self._request("GET", "/user", what="resolve authenticated user")
        return data.get("login", "") if isinstance(data, dict) else ""

    def get_team(self, org: str, team_slug: str) -> dict:
        return self._request(
            "GET",
            f"/orgs/{_segment(org)}/teams/{_segment(team_slug)}",
            what=f"fetch team {org}/{team_slug}",
        )

    def create_team(self, org: str, name: str, description: str) -> dict:
        payload = {"name": name, "description": description, "privacy": TEAM_PRIVACY}
        return self._request(
            "POST", f"/orgs/{_segment(org)}/teams", what=f"create team {name!r} in {org}", payload=payload
        )

    def create_invitation(self, org: str, email: str, team_id: int) -> dict:
        return self._request(
            "POST",
            f"/orgs/{_segment(org)}/invitations",
            what=f"invite {email}",
            payload={"email": email, "team_ids": [team_id], "role": "direct_member"},
        )

    def add_team_membership(self, org: str, team_slug: str, username: str, role: str = "member") -> dict:
        return self._request(
            "PUT",
            f"/orgs/{_segment(org)}/teams/{_segment(team_slug)}/memberships/{_segment(username)}",
            what=f"add {username} to {org}/{team_slug}",
            payload={"role": role},
        )


# =============================================================================
# Prompt Helpers
# =============================================================================


def _ask(message: str, *, default: str | None = None, password: bool = False) -> str:
    if default is None:
        default = ""
    answer = Prompt.ask(message, default=default, password=password, show_default=not password and bool(default))
    return answer.strip()


def _confirm(message: str) -> bool:
    return Confirm.ask(message, default=False)


def _validate_team(value: str) -> str | None:
    if len(value) < MIN_TEAM_LENGTH:
        return f"Please provide at least {MIN_TEAM_LENGTH} characters."
    return None


# =============================================================================
# Context Collection
# =============================================================================


def _collect_context(args: argparse.Namespace) -> SessionContext:
    """
    Gather token, owner, org and team.

    Each value comes from its flag, then the environment, and is offered as
    the default of an interactive prompt unless --no-input is set.
    """
    token_default = args.token or os.getenv("GH_PAT") or ""
    owner_default = args.user or os.getenv("GH_USER") or ""
    org_default = args.org or os.getenv("GH_ORG") or ""
    team_default = args.team or ""

    if args.no_input:
        token, owner, org, team = token_default, owner_default, org_default, team_default
    else:
        token = _ask("What's your GitHub PAT?", default=token_default, password=True)
        owner = _ask("Your username?", default=owner_default)
        org = _ask("Which organization?", default=org_default)
        while True:
            team = _ask(
                "Which team? [dim](slug of an existing team, or the full name of the team being created)[/dim]",
                default=team_default,
            )
            problem = _validate_team(team)
            if not problem:
                break
            console.print(f"[red]>>[/red] {problem}")

    token, owner, org, team = token.strip(), owner.strip().lstrip("@"), org.strip(), team.strip()

    if not token:
        raise UsageError("a GitHub token is required (--token or $GH_PAT)")
    if not org:
        raise UsageError("an organization is required (--org or $GH_ORG)")
    problem = _validate_team(team)
    if problem:
        raise UsageError(f"invalid team {team!r}: {problem}")

    return SessionContext(token=token, owner=owner, org=org, team=team)


# =============================================================================
# Invitee Parsing
# =============================================================================


def _parse_invitees(text: str) -> list[str]:
    """Split a comma or newline separated list, dropping blanks and duplicates."""
    seen: set[str] = set()
    invitees: list[str] = []
    for raw in re.split(r"[,\n]", text or ""):
        entry = raw.strip()
        if not entry or entry in seen:
            continue
        seen.add(entry)
        invitees.append(entry)
    return invitees


def _load_invitees_file(path: Path) -> list[str]:
    """
    Load invitees from a file.

    Plain text files list one entry per line (commas also work) and may carry
    `#` comments. YAML files (.yaml/.yml) use a top-level list or a
    `members:` key:

        members:
          - alice
          - bob@example.com
    """
    if not path.exists():
        raise FileNotFoundError(f"{path.as_posix()} not found")
    content = path.read_text()

    if path.suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path.as_posix()}: {exc}") from exc
        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("members") or []
        if not isinstance(data, list):
            raise ValueError(f"{path.as_posix()}: expected a list of members")
        return _parse_invitees("\n".join(str(item) for item in data if item is not None))

    lines = [line for line in content.splitlines() if not line.strip().startswith("#")]
    return _parse_invitees("\n".join(lines))


def _invite_kind(entry: str) -> str:
    return "email" if "@" in entry else "username"


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9_]+", "-", name.casefold()).strip("-")


# =============================================================================
# Pipeline Stages
# =============================================================================


def _find_team(client: GitHubClient, org: str, team: str, *, quiet: bool = False) -> TeamRecord:
    """Look the team up by slug. A 404 means the team does not exist."""
    if not quiet:
        console.print(f"  [dim][1/3][/dim] Verifying team [green]{escape(team)}[/green] exists...")

    try:
        data = client.get_team(org, team)
    except GitHubError as exc:
        if exc.kind != "not_found":
            raise
        return TeamRecord()

    record = TeamRecord.from_api(data, org)
    if record.exists and not quiet:
        console.print(f"  [dim][2/3][/dim] Team [green]{escape(team)}[/green] found.")
    return record


def _create_team(
    client: GitHubClient,
    ctx: SessionContext,
    *,
    assume_yes: bool = False,
    no_input: bool = False,
    dry_run: bool = False,
    quiet: bool = False,
) -> TeamRecord | None:
    """Offer to create the missing team. Returns None when the user declines."""
    if not quiet:
        console.print(f"  [dim][2/3][/dim] Team [green]{escape(ctx.team)}[/green] not found.")

    if assume_yes:
        confirmed = True
    elif no_input:
        if not quiet:
            console.print("  [dim]not creating it without --yes[/dim]")
        confirmed = False
    else:
        confirmed = _confirm("  Create it now?")

    if not confirmed:
        return None

    if no_input:
        name, description = ctx.team, ""
    else:
        name = _ask("  Team name", default=ctx.team) or ctx.team
        description = _ask("  Team description")

    if dry_run:
        slug = _slugify(name)
        if not quiet:
            console.print(
                f"  [blue]○[/blue] would create {TEAM_PRIVACY} team [bold]{escape(name)}[/bold] "
                f"[dim](predicted slug {escape(slug)})[/dim]"
            )
        return TeamRecord(id=0, url=f"https://github.com/orgs/{ctx.org}/teams/{slug}", slug=slug)

    data = client.create_team(ctx.org, name, description)
    record = TeamRecord()
    if isinstance(data, dict):
        record = TeamRecord(id=data.get("id"), url=data.get("html_url"), slug=data.get("slug"))
    if not record.exists:
        raise GitHubError(f"Unexpected response while creating team {name!r}")

    if not quiet:
        console.print(f"  [green]✓[/green] created team [bold]{escape(record.slug)}[/bold]")
    return record


def _invite_members(
    client: GitHubClient,
    org: str,
    team: TeamRecord,
    invitees: list[str],
    *,
    role: str = "member",
    dry_run: bool = False,
) -> list[InviteResult]:
    """
    Invite each entry in order.

    Emails get an org invitation scoped to the team id, usernames are added to
    the team directly. One failure does not stop the rest of the batch.
    """
    if not team.exists:
        raise ValueError("cannot invite members to a team that does not exist")

    results: list[InviteResult] = []
    for entry in invitees:
        kind = _invite_kind(entry)

        if dry_run:
            action = "invite by email" if kind == "email" else f"add as {role}"
            results.append(InviteResult(entry, kind, "would", action))
            continue

        try:
            if kind == "email":
                client.create_invitation(org, entry, team.id)
                results.append(InviteResult(entry, kind, "ok", "invited by email"))
            else:
                data = client.add_team_membership(org, team.slug, entry, role)
                state = data.get("state", "active") if isinstance(data, dict) else "active"
                results.append(InviteResult(entry, kind, "ok", f"{role} ({state})"))
        except GitHubError as exc:
            results.append(InviteResult(entry, kind, "fail", str(exc)))

    return results


# =============================================================================
# Output Helpers
# =============================================================================


def _print_header(ctx: SessionContext, mode: str | None = None) -> None:
    title = Text()
    title.append("orgteam", style="bold magenta")
    title.append(f" v{__version__}", style="dim")
    if mode:
        title.append(f"  [{mode}]", style="bold yellow")

    console.print()
    console.print(title)
    console.print()
    console.print(f"  [bold]{escape(ctx.team)}[/bold] [dim]({escape(ctx.org)})[/dim]")
    if ctx.owner:
        console.print(f"  [dim]authenticated as[/dim] {escape(ctx.owner)}")
    console.print()


def _print_separator() -> None:
    console.print("  " + "─" * 50, style="dim")
    console.print()


def _print_results(results: list[InviteResult]) -> None:
    for r in results:
        detail = escape(r.detail)
        if len(detail) > 60:
            detail = detail[:57] + "..."
        if r.status == "ok":
            console.print(f"  [green]✓[/green] {escape(r.invitee):<24} [dim]{detail}[/dim]")
        elif r.status == "would":
            console.print(f"  [blue]○[/blue] {escape(r.invitee):<24} [dim]{detail}[/dim]")
        else:
            console.print(f"  [red]✗[/red] {escape(r.invitee):<24} [red]{detail}[/red]")
    console.print()


def _print_summary(results: list[InviteResult], team: TeamRecord, *, dry_run: bool) -> None:
    _print_separator()

    ok = sum(1 for r in results if r.status == "ok")
    would = sum(1 for r in results if r.status == "would")
    failed = sum(1 for r in results if r.status == "fail")

    parts = []
    if dry_run:
        parts.append(f"[blue]{would} would invite[/blue]")
    elif ok:
        parts.append(f"[green]{ok} invited[/green]")
    if failed:
        parts.append(f"[red]{failed} failed[/red]")

    summary = " · ".join(parts) if parts else "[dim]nothing to do[/dim]"
    console.print(f"  [bold]done[/bold]  {summary}")
    console.print()
    console.print("  [dim][OK][/dim] Done. Review invitations at:")
    console.print(f"  {team.url}")
    console.print()


def _error(message: str) -> None:
    err_console.print(f"[red]error:[/red] {escape(message)}", soft_wrap=True)


# =============================================================================
# Main Entry Point
# =============================================================================


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orgteam",
        description="Verify or create a GitHub team, then invite members to it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  orgteam                                  # prompt for everything
  orgteam -o acme -T platform              # check acme/platform, prompt for members
  orgteam -o acme -T platform -m "alice, bob@example.com"
  orgteam -o acme -T platform -f members.yaml -n
  orgteam -o acme -T "New Team" -y --no-input -m alice
""",
    )
    parser.add_argument("-t", "--token", metavar="PAT", help="GitHub PAT (default: $GH_PAT, else prompt)")
    parser.add_argument("-u", "--user", metavar="NAME", help="Your GitHub username (default: $GH_USER, else prompt)")
    parser.add_argument("-o", "--org", metavar="ORG", help="Organization name (default: $GH_ORG, else prompt)")
    parser.add_argument("-T", "--team", metavar="TEAM",
                        help="Team slug, or the full name of the team being created")
    parser.add_argument("-m", "--members", metavar="LIST", help="Comma separated usernames or emails")
    parser.add_argument("-f", "--file", metavar="FILE", help="Read invitees from a text or YAML file")
    parser.add_argument("-r", "--role", default="member", choices=list(VALID_ROLES),
                        help="Team role for usernames (default: member)")
    parser.add_argument("-y", "--yes", action="store_true", help="Create the team without asking")
    parser.add_argument("-n", "--dry-run", action="store_true", help="Preview without making changes")
    parser.add_argument("--no-input", action="store_true", help="Never prompt; fail if inputs are missing")
    parser.add_argument("--timeout", type=float, default=30, metavar="SECONDS",
                        help="Per-request timeout (default: 30)")
    parser.add_argument("--api-url", default=os.getenv("GH_API_URL", DEFAULT_API_URL), metavar="URL",
                        help="GitHub API base URL (default: $GH_API_URL or https://api.github.com)")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal output")
    return parser


def run(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    load_dotenv()
    args = _build_parser().parse_args(argv)

    if args.members is not None and args.file:
        _error("--members cannot be used with --file")
        return 2

    invitees: list[str] | None = None
    if args.file:
        try:
            invitees = _load_invitees_file(Path(args.file))
        except (FileNotFoundError, ValueError) as exc:
            _error(str(exc))
            return 1
    elif args.members is not None:
        invitees = _parse_invitees(args.members)

    try:
        ctx = _collect_context(args)
    except UsageError as exc:
        _error(str(exc))
        return 2

    with GitHubClient(ctx.token, base_url=args.api_url, timeout_s=args.timeout) as client:
        try:
            if not ctx.owner:
                ctx = replace(ctx, owner=client.get_authenticated_login())

            if not args.quiet:
                _print_header(ctx, "dry-run" if args.dry_run else None)

            team = _find_team(client, ctx.org, ctx.team, quiet=args.quiet)
            if not team.exists:
                team = _create_team(
                    client,
                    ctx,
                    assume_yes=args.yes,
                    no_input=args.no_input,
                    dry_run=args.dry_run,
                    quiet=args.quiet,
                )
                if team is None:
                    return 0
        except GitHubError as exc:
            _error(str(exc))
            return 1

        if invitees is None:
            if args.no_input:
                invitees = []
            else:
                invitees = _parse_invitees(_ask("  Provide a comma separated list of usernames or email"))

        if not invitees:
            if not args.quiet:
                console.print("  [dim]no invitees given[/dim]")
                console.print()
            return 0

        if not args.quiet:
            console.print(f"  [dim][3/3][/dim] Sending invitation to [yellow]{len(invitees)}[/yellow] users:")
            for entry in invitees:
                console.print(f"  [yellow]- {escape(entry)}[/yellow]")
            console.print()

        results = _invite_members(client, ctx.org, team, invitees, role=args.role, dry_run=args.dry_run)

    if not args.quiet:
        _print_results(results)
        _print_summary(results, team, dry_run=args.dry_run)

    return 0 if all(r.ok for r in results) else 1


def main() -> None:
    try:
        raise SystemExit(run())
    except KeyboardInterrupt:
        err_console.print()
        raise SystemExit(130)


if __name__ == "__main__":
    main()
