"""
Tollgate CLI: budgeted x402 payments for AI agents.

Commands:
    tollgate policy   Encode / decode agent policies
    tollgate budget   Encode / decode x402 budgets, show ledger status
    tollgate session  Issue, show and revoke session keys
    tollgate header   Parse and verify payment headers
    tollgate pay      Pay for an x402-protected URL
    tollgate audit    View audit trail
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .audit import AuditTrail, EventType
from .budget import BudgetLedger, BudgetState
from .client import X402Client
from .codec import (
    decode_agent_policy,
    decode_budget_state,
    decode_x402_budget,
    encode_agent_policy,
    encode_budget_state,
    encode_x402_budget,
    to_hex,
)
from .config import PaymentConfig, tollgate_home
from .errors import DecodeError, InvalidKeyMaterialError, TollgateError
from .money import format_base_units
from .payment import PaymentRequirement, parse_payment_header, verify_payment_header
from .policy import (
    create_agent_policy,
    create_x402_policy,
    validate_agent_policy,
    validate_x402_budget,
)
from .session import (
    SessionKey,
    deserialize_session_key,
    generate_session_key,
    get_session_key_remaining_time,
    is_session_key_active,
    serialize_session_key,
)
from .storage import ensure_private_dir, safe_child_path, write_private_text


# ── Storage ───────────────────────────────────────────────────────


def _sessions_dir() -> Path:
    path = tollgate_home() / "sessions"
    ensure_private_dir(path)
    return path


def _ledgers_dir() -> Path:
    path = tollgate_home() / "ledgers"
    ensure_private_dir(path)
    return path


def _session_path(agent_id: str) -> Path:
    return safe_child_path(_sessions_dir(), agent_id, ".json")


def _ledger_path(agent_id: str) -> Path:
    return safe_child_path(_ledgers_dir(), agent_id, ".json")


def _load_session_key(agent_id: str) -> Optional[SessionKey]:
    path = _session_path(agent_id)
    if not path.exists():
        return None
    return deserialize_session_key(path.read_text())


def _save_ledger(agent_id: str, ledger: BudgetLedger) -> Path:
    path = _ledger_path(agent_id)
    doc = {
        "budget": to_hex(encode_x402_budget(ledger.budget)),
        "state": to_hex(encode_budget_state(ledger.state)),
    }
    write_private_text(path, json.dumps(doc, indent=2))
    return path


def _load_ledger(agent_id: str):
    path = _ledger_path(agent_id)
    if not path.exists():
        return None
    doc = json.loads(path.read_text())
    return decode_x402_budget(doc["budget"]), decode_budget_state(doc["state"])


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 90s, 30m, 1h, 7d)")
    return int(raw[:-1]) * units[raw[-1]]


def _now() -> int:
    return int(time.time())


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging verbosity",
)
def main(log_level: str):
    """Tollgate: budgeted x402 payments for AI agents."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Policies ──────────────────────────────────────────────────────


@main.group("policy")
def policy_group():
    """Agent policy encoding."""
    pass


@policy_group.command("encode")
@click.option("--target", "targets", multiple=True, help="Allowed contract address (repeatable)")
@click.option("--selector", "selectors", multiple=True, help="Allowed 4-byte selector (repeatable)")
@click.option("--max-per-tx", type=int, required=True, help="Max amount per transaction (base units)")
@click.option("--daily", type=int, required=True, help="Daily limit (base units)")
@click.option("--weekly", type=int, required=True, help="Weekly limit (base units)")
@click.option("--expires-in", default=None, help="Duration until expiry (e.g., 72h, 30d)")
@click.option("--unrestricted", is_flag=True, help="Allow any target and selector")
def policy_encode(
    targets: tuple[str, ...],
    selectors: tuple[str, ...],
    max_per_tx: int,
    daily: int,
    weekly: int,
    expires_in: Optional[str],
    unrestricted: bool,
):
    """Validate an agent policy and print its hex encoding."""
    now = _now()
    try:
        expires_at = now + _parse_duration_to_seconds(expires_in) if expires_in else None
    except ValueError as e:
        _fail(str(e))

    policy = create_agent_policy(
        allowed_targets=targets,
        allowed_selectors=selectors,
        max_amount_per_tx=max_per_tx,
        daily_limit=daily,
        weekly_limit=weekly,
        created_at=now,
        expires_at=expires_at,
        unrestricted=unrestricted,
    )
    issues = validate_agent_policy(policy)
    if issues:
        click.echo("❌ Policy is invalid:", err=True)
        for issue in issues:
            click.echo(f"   - {issue}", err=True)
        sys.exit(1)

    encoded = to_hex(encode_agent_policy(policy))
    AuditTrail().log(
        EventType.POLICY_ENCODED,
        details={"kind": "agent_policy", "bytes": (len(encoded) - 2) // 2},
    )
    click.echo(encoded)


@policy_group.command("decode")
@click.argument("encoded")
def policy_decode(encoded: str):
    """Decode a hex agent policy."""
    try:
        policy = decode_agent_policy(encoded)
    except DecodeError as e:
        _fail(f"Cannot decode policy: {e}")
    click.echo(json.dumps(policy.to_dict(), indent=2))
    issues = validate_agent_policy(policy)
    if issues:
        click.echo("⚠️  Decoded policy has issues:")
        for issue in issues:
            click.echo(f"   - {issue}")


# ── Budgets ───────────────────────────────────────────────────────


@main.group("budget")
def budget_group():
    """x402 budget encoding and ledger status."""
    pass


@budget_group.command("encode")
@click.option("--max-per-request", type=int, required=True, help="Per-request ceiling (base units)")
@click.option("--daily", type=int, required=True, help="Daily budget (base units)")
@click.option("--total", type=int, required=True, help="Total budget (base units)")
@click.option("--domain", "domains", multiple=True, help="Allowed service domain (repeatable)")
@click.option("--asset", "assets", multiple=True, help="Allowed token contract (repeatable)")
def budget_encode(
    max_per_request: int, daily: int, total: int, domains: tuple[str, ...], assets: tuple[str, ...]
):
    """Validate an x402 budget and print its hex encoding."""
    budget = create_x402_policy(
        max_per_request=max_per_request,
        daily_budget=daily,
        total_budget=total,
        allowed_domains=domains,
        allowed_assets=assets,
    )
    issues = validate_x402_budget(budget)
    if issues:
        click.echo("❌ Budget is invalid:", err=True)
        for issue in issues:
            click.echo(f"   - {issue}", err=True)
        sys.exit(1)
    click.echo(to_hex(encode_x402_budget(budget)))


@budget_group.command("decode")
@click.argument("encoded")
def budget_decode(encoded: str):
    """Decode a hex x402 budget."""
    try:
        budget = decode_x402_budget(encoded)
    except DecodeError as e:
        _fail(f"Cannot decode budget: {e}")
    click.echo(json.dumps(budget.to_dict(), indent=2))


@budget_group.command("status")
@click.argument("agent_id")
def budget_status(agent_id: str):
    """Show spend and remaining budget for an agent."""
    try:
        loaded = _load_ledger(agent_id)
    except (DecodeError, KeyError, ValueError) as e:
        _fail(f"Ledger for {agent_id} is corrupt: {e}")
    if loaded is None:
        _fail(f"No ledger for agent: {agent_id}")
    budget, state = loaded
    ledger = BudgetLedger(budget, state=state)
    remaining = ledger.get_remaining_budget(_now())

    click.echo(f"📊 Budget for {agent_id}")
    click.echo(f"   Spent today:  {format_base_units(state.spent_today)} of {format_base_units(budget.daily_budget)}")
    click.echo(f"   Spent total:  {format_base_units(state.spent_total)} of {format_base_units(budget.total_budget)}")
    click.echo(f"   Remaining:    {format_base_units(remaining.daily)} today, {format_base_units(remaining.total)} total")
    click.echo(f"   Next request: up to {format_base_units(remaining.per_request)}")
    click.echo(f"   Payments:     {len(state.records)}")
    click.echo(f"   Domains:      {', '.join(sorted(budget.allowed_domains)) or '(none)'}")
    click.echo(f"   Assets:       {', '.join(sorted(budget.allowed_assets)) or '(network USDC)'}")


# ── Session keys ──────────────────────────────────────────────────


@main.group("session")
def session_group():
    """Session key management."""
    pass


@session_group.command("new")
@click.argument("agent_id")
@click.option("--ttl", default="1h", help="Session lifetime (e.g., 30m, 1h, 7d)")
def session_new(agent_id: str, ttl: str):
    """Generate a session key for an agent."""
    try:
        duration = _parse_duration_to_seconds(ttl)
        key = generate_session_key(duration, _now())
        path = _session_path(agent_id)
    except ValueError as e:
        _fail(str(e))

    write_private_text(path, serialize_session_key(key))
    AuditTrail().log(
        EventType.SESSION_KEY_ISSUED,
        agent_id=agent_id,
        details={"address": key.address, "expires_at": key.expires_at},
    )
    click.echo(f"✅ Session key issued for {agent_id}")
    click.echo(f"   Address:  {key.address}")
    click.echo(f"   Expires:  {time.strftime('%Y-%m-%d %H:%M', time.localtime(key.expires_at))}")
    click.echo(f"   Saved to: {path}")


@session_group.command("show")
@click.argument("agent_id")
def session_show(agent_id: str):
    """Show an agent's session key (never the private key)."""
    try:
        key = _load_session_key(agent_id)
    except (DecodeError, InvalidKeyMaterialError) as e:
        _fail(f"Session key for {agent_id} is corrupt: {e}")
    if key is None:
        _fail(f"No session key for agent: {agent_id}")
    now = _now()
    status = "active" if is_session_key_active(key, now) else "expired"
    click.echo(f"🔑 Session key for {agent_id}")
    click.echo(f"   Address:   {key.address}")
    click.echo(f"   Status:    {status}")
    click.echo(f"   Remaining: {get_session_key_remaining_time(key, now)}s")


@session_group.command("revoke")
@click.argument("agent_id")
def session_revoke(agent_id: str):
    """Delete an agent's session key file."""
    path = _session_path(agent_id)
    if not path.exists():
        _fail(f"No session key for agent: {agent_id}")
    path.unlink()
    AuditTrail().log(EventType.SESSION_KEY_REVOKED, agent_id=agent_id)
    click.echo(f"✅ Session key revoked for {agent_id}")


# ── Headers ───────────────────────────────────────────────────────


@main.group("header")
def header_group():
    """Payment header inspection."""
    pass


@header_group.command("parse")
@click.argument("raw")
@click.option(
    "--verify",
    "requirement_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Verify against a payment requirement JSON file",
)
def header_parse(raw: str, requirement_file: Optional[Path]):
    """Parse a payment header and optionally verify it."""
    try:
        header = parse_payment_header(raw)
    except DecodeError as e:
        _fail(f"Cannot parse header: {e}")
    click.echo(json.dumps(header.to_dict(), indent=2))

    if requirement_file is None:
        return
    try:
        requirement = PaymentRequirement.from_dict(json.loads(requirement_file.read_text()))
        config = PaymentConfig.from_env()
    except (ValueError, TollgateError) as e:
        _fail(f"Invalid requirement: {e}")
    valid, reason = verify_payment_header(header, requirement, _now(), config=config)
    if valid:
        click.echo(f"✅ {reason}")
    else:
        _fail(reason)


# ── Payments ──────────────────────────────────────────────────────


@main.command()
@click.argument("url")
@click.option("--agent", "agent_id", required=True, help="Agent whose session key pays")
@click.option("--max-per-request", type=int, required=True, help="Per-request ceiling (base units)")
@click.option("--daily", type=int, required=True, help="Daily budget (base units)")
@click.option("--total", type=int, required=True, help="Total budget (base units)")
@click.option("--domain", "domains", multiple=True, required=True, help="Allowed service domain (repeatable)")
@click.option("--asset", "assets", multiple=True, help="Allowed token contract (repeatable, default network USDC)")
@click.option("--method", default="GET", help="HTTP method")
def pay(
    url: str,
    agent_id: str,
    max_per_request: int,
    daily: int,
    total: int,
    domains: tuple[str, ...],
    assets: tuple[str, ...],
    method: str,
):
    """Request URL, paying via x402 if the server asks for it."""
    try:
        key = _load_session_key(agent_id)
    except (DecodeError, InvalidKeyMaterialError) as e:
        _fail(f"Session key for {agent_id} is corrupt: {e}")
    if key is None:
        _fail(f"No session key for agent: {agent_id} (run `tollgate session new {agent_id}`)")

    budget = create_x402_policy(
        max_per_request=max_per_request,
        daily_budget=daily,
        total_budget=total,
        allowed_domains=domains,
        allowed_assets=assets,
    )
    issues = validate_x402_budget(budget)
    if issues:
        _fail("Budget is invalid: " + "; ".join(str(i) for i in issues))

    try:
        loaded = _load_ledger(agent_id)
        config = PaymentConfig.from_env()
    except (DecodeError, KeyError, ValueError) as e:
        _fail(f"Cannot load ledger or config: {e}")
    state = loaded[1] if loaded is not None else BudgetState.initial(_now())
    ledger = BudgetLedger(budget, state=state)

    with X402Client(ledger, key, config=config, audit=AuditTrail(), agent_id=agent_id) as client:
        result = client.pay(url, method=method.upper())
    _save_ledger(agent_id, ledger)

    if result.success:
        click.echo(f"✅ {result.status_code} {url}")
        if result.amount:
            click.echo(f"   Paid:      {format_base_units(result.amount)}")
        remaining = ledger.get_remaining_budget(_now())
        click.echo(f"   Remaining: {format_base_units(remaining.daily)} today, {format_base_units(remaining.total)} total")
        if result.response is not None and result.response.text:
            click.echo(result.response.text[:2000])
    else:
        _fail(f"Payment failed: {result.reason}")


@main.command()
@click.option("--agent", "agent_id", default=None, help="Filter by agent ID")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(agent_id: Optional[str], limit: int):
    """View the audit trail."""
    trail = AuditTrail()
    events = trail.read_events(agent_id=agent_id, limit=limit)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_base_units(event.amount)}" if event.amount else ""
        resource = f" → {event.resource}" if event.resource else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{resource}{reason}")


if __name__ == "__main__":
    main()
