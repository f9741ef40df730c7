import typer, getpass, pathlib, sys, os, asyncio
from typing import List
from datetime import datetime, timezone
from uuid import UUID, uuid4

from .bootstrap import Services, open_services
from .config import Settings
from .doctor import Severity, StoreDoctor
from .errors import FamilyVaultError, ItemNotFound
from .logging import configure_logging, get_logger
from .models import (
    AccessPolicy,
    LegacyRule,
    Member,
    SecureKeyReference,
    SharingRule,
    UserProfile,
    Vault,
    VaultItemMetadata,
    VaultItemType,
    VaultRole,
    VitalCategory,
)

app = typer.Typer(no_args_is_help=True)
LOG = get_logger("cli")


def _log_error(event: str, message: str, **details):
    LOG.error(event, message=message, **details)


def ask_pw(prompt="Keystore passphrase: ") -> bytes:
    """Read the keystore passphrase from FAMILYVAULT_PASSPHRASE or prompt with getpass."""
    pw = os.environ.get("FAMILYVAULT_PASSPHRASE")
    if pw is None:
        pw = getpass.getpass(prompt)
    return pw.encode("utf-8")


def _settings() -> Settings:
    return Settings.from_env()


def _services(need_keys: bool = False) -> Services:
    # only commands that wrap or unwrap keys touch the keystore
    return open_services(_settings(), ask_pw() if need_keys else b"")


def _run(event: str, coro, **details):
    """Drive a coroutine to completion, turning core failures into exit status 1."""
    try:
        return asyncio.run(coro)
    except FamilyVaultError as exc:
        _log_error(event, message=str(exc), error=type(exc).__name__, **details)
        typer.echo(f"✖ {exc}")
        raise typer.Exit(1)


def default_policy(required_confirmations: int, time_lock_seconds: float) -> AccessPolicy:
    full = SharingRule(can_view=True, can_upload=True, can_manage_members=True)
    return AccessPolicy(
        sharing_rules={
            VaultRole.OWNER: full,
            VaultRole.ADMIN: full,
            VaultRole.MEMBER: SharingRule(can_view=True, can_upload=True),
            VaultRole.LEGACY_CONTACT: SharingRule(can_view=True),
        },
        legacy_rules=LegacyRule(
            time_lock_interval=time_lock_seconds,
            required_confirmations=required_confirmations,
        ),
    )


def new_member(name: str, email: str, role: VaultRole) -> Member:
    profile_id = uuid4()
    profile = UserProfile(
        id=profile_id,
        name=name,
        email=email,
        key_reference=SecureKeyReference(identifier=f"familyvault.member.{profile_id}"),
    )
    return Member(profile=profile, role=role)


async def _acting(services: Services, vault_id: UUID, member_id: UUID) -> tuple[Vault, Member]:
    vault = await services.repository.fetch_vault(vault_id)
    member = vault.member(member_id)
    if member is None:
        _log_error("unknown_member", message="Acting member is not in vault", vault=str(vault_id), member=str(member_id))
        typer.echo(f"✖ Member {member_id} does not belong to vault {vault_id}")
        raise typer.Exit(1)
    return vault, member


def _parse_attrs(attrs: List[str]) -> dict:
    parsed = {}
    for entry in attrs or []:
        if "=" not in entry:
            raise typer.BadParameter(f"Attribute '{entry}' must look like key=value")
        k, v = entry.split("=", 1)
        parsed[k.strip()] = v.strip()
    return parsed


@app.callback()
def main(debug: bool = typer.Option(False, "--debug", help="Log to stderr instead of the log file")):
    """Encrypted family document vault."""
    configure_logging(debug, _settings().log_path)


@app.command()
def create(
    name: str,
    owner_name: str = typer.Option(..., "--owner-name"),
    owner_email: str = typer.Option(..., "--owner-email"),
    required_confirmations: int = typer.Option(1, "--required-confirmations", help="Distinct confirmations needed for legacy access"),
    time_lock_days: float = typer.Option(0.0, "--time-lock-days", help="Days between scheduling a legacy check and unlock"),
):
    """Create a vault owned by a new member and wrap its key for the owner."""
    services = _services(need_keys=True)
    owner = new_member(owner_name, owner_email, VaultRole.OWNER)
    policy = default_policy(required_confirmations, time_lock_days * 86400)
    vault = _run("create_failed", services.vaults.create_vault(name, owner, policy), name=name)
    typer.echo(f"✔ Created vault {vault.name}")
    typer.echo(f"vault={vault.id}\towner={owner.id}")


@app.command("vaults")
def vaults_cmd():
    """List vaults with their member counts."""
    services = _services()
    for vault in _run("list_vaults_failed", services.vaults.list_vaults()):
        typer.echo(f"{vault.name}\tid={vault.id}\tmembers={len(vault.members)}")


@app.command()
def members(vault: UUID):
    """List the members of a vault and their roles."""
    services = _services()
    record = _run("members_failed", services.repository.fetch_vault(vault), vault=str(vault))
    for m in record.members:
        typer.echo(f"{m.profile.name}\t{m.role.value}\tid={m.id}")


@app.command()
def invite(
    vault: UUID,
    name: str = typer.Option(..., "--name"),
    email: str = typer.Option(..., "--email"),
    role: VaultRole = typer.Option(VaultRole.MEMBER, "--role"),
    member: UUID = typer.Option(..., "--member", help="Acting member id (needs member management rights)"),
):
    """Invite a new member. The vault key is not re-wrapped for them."""
    services = _services()

    async def _invite():
        record, acting = await _acting(services, vault, member)
        if not record.policy.rule_for(acting.role).can_manage_members:
            _log_error("invite_refused", message="Acting member cannot manage members", vault=str(vault), member=str(member))
            typer.echo("✖ You are not authorized for this action.")
            raise typer.Exit(1)
        invitee = new_member(name, email, role)
        await services.vaults.invite(invitee, vault)
        return invitee

    invitee = _run("invite_failed", _invite(), vault=str(vault))
    typer.echo(f"✔ Invited {name} as {role.value}")
    typer.echo(f"member={invitee.id}")


@app.command()
def add(
    vault: UUID,
    paths: List[str] = typer.Argument(..., metavar="PATH", help="One or more files to add"),
    member: UUID = typer.Option(..., "--member"),
    title: str = typer.Option(None, "--title", help="Title hint (only valid for a single file)"),
    tag: List[str] = typer.Option(None, "--tag"),
    attr: List[str] = typer.Option(None, "--attr", help="Cleartext label sealed alongside the document, key=value"),
    item_type: VaultItemType = typer.Option(VaultItemType.DOCUMENT, "--type"),
    category: VitalCategory = typer.Option(None, "--category", help="Vital-document checklist category"),
    expires: datetime = typer.Option(None, "--expires", formats=["%Y-%m-%d"], help="Document expiry date (UTC)"),
):
    """Encrypt and store one or more files in the vault."""
    if len(paths) > 1 and title is not None:
        _log_error("add_invalid_usage", message="--title used with multiple files", vault=str(vault))
        typer.echo("✖ --title can only be used when adding a single file")
        raise typer.Exit(1)
    attributes = _parse_attrs(attr)
    expires_at = expires.replace(tzinfo=timezone.utc) if expires else None
    services = _services()

    async def _add():
        _, acting = await _acting(services, vault, member)
        errors = 0
        for raw_path in paths:
            p = pathlib.Path(raw_path)
            if not p.is_file():
                _log_error("add_missing_file", message="Not a regular file", vault=str(vault), path=str(p))
                typer.echo(f"✖ Add failed for {p}: not a regular file")
                errors += 1
                continue
            metadata = VaultItemMetadata(
                title_hint=title or p.name,
                redacted_attributes=attributes,
                expires_at=expires_at,
                checklist_category=category,
            )
            item = await services.vaults.upload(p.read_bytes(), metadata, vault, acting, item_type, tag or ())
            typer.echo(f"✔ Added {p}\tid={item.id}")
        return errors

    if _run("add_failed", _add(), vault=str(vault)):
        raise typer.Exit(1)


@app.command("lst")
def lst_cmd(vault: UUID):
    """List vault items, newest replica of each."""
    services = _services()
    for item in _run("list_items_failed", services.vaults.items(vault), vault=str(vault)):
        added = item.created_at.strftime("%H:%M:%S %d.%m.%Y")
        tags = ",".join(item.tags)
        typer.echo(f"{item.metadata.title_hint}\t{item.type.value}\tid={item.id}\tadded={added}\ttags={tags}")


@app.command()
def get(
    vault: UUID,
    item: UUID,
    member: UUID = typer.Option(..., "--member"),
    out: str = typer.Option("-", "--out", help="Destination path or '-' for stdout"),
):
    """Decrypt one item to a file or stdout."""
    services = _services()

    async def _get():
        _, acting = await _acting(services, vault, member)
        for candidate in await services.vaults.items(vault):
            if candidate.id == item:
                return await services.vaults.decrypt(candidate, acting)
        raise ItemNotFound()

    data = _run("get_failed", _get(), vault=str(vault), item=str(item))
    if out == "-":
        sys.stdout.buffer.write(data)
        return
    target = pathlib.Path(out)
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "wb", buffering=0) as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    typer.echo(f"✔ Retrieved {item} -> {target}")


@app.command()
def rm(vault: UUID, item: UUID, member: UUID = typer.Option(..., "--member")):
    """Delete an item from every replica."""
    services = _services()

    async def _rm():
        _, acting = await _acting(services, vault, member)
        await services.vaults.remove_item(item, vault, acting)

    _run("rm_failed", _rm(), vault=str(vault), item=str(item))
    typer.echo(f"✔ Removed {item}")


def _echo_legacy(state):
    typer.echo(
        f"phase={state.phase.value}\tconfirmations={state.confirmations}"
        f"/{state.policy.legacy_rules.required_confirmations}\tunlocked={state.is_unlocked}"
    )
    if state.unlock_not_before is not None and not state.is_unlocked:
        typer.echo(f"time lock ends {state.unlock_not_before.isoformat()}")


@app.command("legacy-schedule")
def legacy_schedule(vault: UUID):
    """Start a legacy access check; the time lock runs from now."""
    services = _services()
    _echo_legacy(_run("legacy_schedule_failed", services.legacy.schedule_legacy_access_check(vault), vault=str(vault)))


@app.command("legacy-confirm")
def legacy_confirm(vault: UUID, member: UUID = typer.Option(..., "--member")):
    """Record a confirmation for legacy access."""
    services = _services()

    async def _confirm():
        _, acting = await _acting(services, vault, member)
        return await services.legacy.confirm_legacy_access(vault, acting)

    _echo_legacy(_run("legacy_confirm_failed", _confirm(), vault=str(vault), member=str(member)))


@app.command("legacy-status")
def legacy_status(vault: UUID):
    """Show where the legacy access check stands."""
    services = _services()
    _echo_legacy(_run("legacy_status_failed", services.legacy.legacy_access_state(vault), vault=str(vault)))


@app.command()
def sync():
    """Replay pending remote writes and synchronize both replicas."""
    services = _services()
    _run("sync_failed", services.storage.synchronize())
    typer.echo("✔ Storage synchronized")


@app.command("check")
def check():
    """Audit local blob store permissions, index consistency and envelopes."""
    root = _settings().blobs_dir
    results = StoreDoctor(root).run()
    has_error = False
    for r in results:
        mark = {"OK": "✔", "WARNING": "WARNING:", "ERROR": "✖"}[r.severity.value]
        location = f" ({r.path})" if r.path else ""
        typer.echo(f"{mark} {r.message}{location}")
        has_error = has_error or r.severity == Severity.ERROR
    if has_error:
        raise typer.Exit(1)


@app.command("checklist")
def checklist_cmd(vault: UUID):
    """Show which vital documents the vault holds, from the items' checklist categories."""
    services = _services()

    async def _build():
        for item in await services.vaults.items(vault):
            await services.checklist.link_vault_item(item)
        return await services.checklist.items(), await services.checklist.checklist_progress()

    entries, progress = _run("checklist_failed", _build(), vault=str(vault))
    for entry in entries:
        due = f"\tdue={entry.due_date.strftime('%d.%m.%Y')}" if entry.due_date else ""
        typer.echo(f"{entry.title}\t{entry.category.value}\t{entry.status.value}{due}")
    typer.echo(f"progress={progress:.0%}")
