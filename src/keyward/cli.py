"""
Keyward CLI — Nostr identity, request auth and wallet state.

Commands:
    keyward keygen          Generate a new keypair
    keyward login           Log in with a key, a public key, or a remote signer
    keyward whoami          Show the current identity
    keyward logout          End the current session
    keyward auth-header     Sign a NIP-98 Authorization header for a request
    keyward verify-header   Check a NIP-98 Authorization header
    keyward audit           View audit trail
    keyward wallet balance  Show live wallet balance from relays
    keyward demo            Run an offline spend/receive demo
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource

from .audit import AuditTrail
from .auth import RequestAuthenticator, verify_auth_header
from .config import KeywardConfig
from .errors import AuditTamperedError, KeywardError, VerificationFailedError
from .identity import IdentityManager
from .keys import generate_private_key, npub_encode, nsec_encode, public_key_hex
from .reconciler import SpendingReconciler
from .relay import InMemoryRelay, WebSocketRelayPool
from .remote import parse_bunker_uri
from .session import SessionStore
from .signer import SigningMethod
from .wallet_events import Proof, WalletConfig, WalletEventCodec


def _config() -> KeywardConfig:
    return KeywardConfig.from_env()


def _audit(config: KeywardConfig) -> AuditTrail:
    return AuditTrail(config.audit_path, config.audit_key_path)


def _manager(config: KeywardConfig) -> IdentityManager:
    return IdentityManager(SessionStore(config.session_dir), config=config, audit=_audit(config))


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


async def _restored(config: KeywardConfig) -> IdentityManager:
    manager = _manager(config)
    if await manager.initialize() is None:
        _fail("Not logged in. Run `keyward login` first.")
    return manager


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
def main():
    """Keyward — Nostr identity, signing and wallet state."""
    pass


@main.command()
def keygen():
    """Generate a new keypair."""
    private_key = generate_private_key()
    click.echo("🔑 New keypair")
    click.echo(f"   npub: {npub_encode(public_key_hex(private_key))}")
    click.echo(f"   nsec: {nsec_encode(private_key)}")
    click.echo("   ⚠️  Store the nsec somewhere safe; anyone holding it controls this identity.")


@main.command()
@click.option("--nsec", "private_key", default=None, help="Private key (nsec or hex); prompted if omitted")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --nsec via argv (unsafe; can leak in shell/process history).",
)
@click.option("--pubkey", default=None, help="Log in read-only with an npub or hex public key")
@click.option("--bunker", default=None, help="bunker:// connection string from a remote signer")
@click.option("--connect", is_flag=True, default=False, help="Bind a remote signer via nostrconnect://")
@click.option("--mobile", is_flag=True, default=False, help="Print the nostrsigner: hand-off URI instead")
@click.option("--timeout", type=float, default=None, help="Remote signer handshake timeout (seconds)")
def login(
    private_key: Optional[str],
    unsafe_allow_key_arg: bool,
    pubkey: Optional[str],
    bunker: Optional[str],
    connect: bool,
    mobile: bool,
    timeout: Optional[float],
):
    """Log in and persist a 24h session."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and private_key is not None
        and ctx.get_parameter_source("private_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        _fail(
            "Refusing --nsec from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk."
        )

    chosen = [bool(private_key), bool(pubkey), bool(bunker), connect]
    if sum(chosen) > 1:
        _fail("Choose one of --nsec, --pubkey, --bunker or --connect")

    config = _config()
    if timeout is not None:
        config.handshake_timeout = timeout
    manager = _manager(config)

    async def run():
        if pubkey:
            return await manager.login(SigningMethod.READ_ONLY, public_key=pubkey)
        if bunker or connect:
            relays = parse_bunker_uri(bunker).relays if bunker else None
            handshake = manager.start_handshake(mobile=mobile, relays=relays)
            if bunker:
                handshake.supply_bunker_uri(bunker)
            else:
                click.echo("📱 Open this in your signer app (or scan it):")
                click.echo(f"   {handshake.mobile_uri if mobile else handshake.uri}")
                click.echo(f"   Waiting up to {config.handshake_timeout:.0f}s for approval...")
            return await manager.login(SigningMethod.REMOTE_SIGNER, handshake=handshake)
        key = private_key or click.prompt("Private key (nsec or hex)", hide_input=True)
        return await manager.login(SigningMethod.LOCAL_KEY, private_key=key)

    try:
        identity = asyncio.run(run())
    except (KeywardError, ValueError) as e:
        _fail(f"Login failed: {e}")

    click.echo(f"✅ Logged in as {identity.display_id}")
    click.echo(f"   Method: {identity.signing_method.value}")


@main.command()
def whoami():
    """Show the current identity."""
    config = _config()

    async def run():
        manager = await _restored(config)
        return manager.session

    session = asyncio.run(run())
    expires = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(session.expires_at))
    click.echo(f"👤 {session.identity.display_id}")
    click.echo(f"   Public key: {session.identity.public_key}")
    click.echo(f"   Method:     {session.identity.signing_method.value}")
    click.echo(f"   Expires:    {expires}")


@main.command()
def logout():
    """End the current session."""
    config = _config()

    async def run():
        manager = _manager(config)
        identity = await manager.initialize()
        await manager.logout()
        return identity

    identity = asyncio.run(run())
    if identity is None:
        click.echo("No active session.")
    else:
        click.echo(f"✅ Logged out {identity.display_id}")


@main.command("auth-header")
@click.argument("url")
@click.option("--method", default="GET", help="HTTP method")
@click.option("--content-type", default="application/json", help="Declared payload content type")
def auth_header(url: str, method: str, content_type: str):
    """Sign a NIP-98 Authorization header for URL."""
    config = _config()

    async def run():
        manager = await _restored(config)
        authenticator = RequestAuthenticator(manager, enabled=True, login_url=config.login_url)
        try:
            return await authenticator.auth_header(url, method, content_type)
        finally:
            await manager.teardown()

    try:
        header = asyncio.run(run())
    except KeywardError as e:
        _fail(f"Could not sign request: {e}")
    click.echo(header)


@main.command("verify-header")
@click.argument("header")
@click.option("--url", required=True, help="Full request URL")
@click.option("--method", default="GET", help="HTTP method")
@click.option("--max-age", type=int, default=300, help="Maximum event age (seconds)")
@click.option("--allow", "allowed", multiple=True, help="Allowed npub/hex (repeatable)")
def verify_header(header: str, url: str, method: str, max_age: int, allowed: tuple[str, ...]):
    """Check a NIP-98 Authorization header."""
    try:
        event = verify_auth_header(header, url, method, max_age=max_age, allowed_pubkeys=list(allowed))
    except (VerificationFailedError, ValueError) as e:
        _fail(f"Invalid: {e}")
    click.echo(f"✅ Valid request from {npub_encode(event.pubkey)}")


@main.command()
@click.option("--identity", default=None, help="Filter by npub")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(identity: Optional[str], limit: int):
    """View the audit trail."""
    trail = _audit(_config())
    try:
        events = trail.read_events(identity=identity, limit=limit)
        summary = trail.summary(identity=identity)
    except AuditTamperedError as e:
        _fail(str(e))
        return

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount} sat" if event.amount else ""
        who = f" {event.identity[:16]}…" if event.identity else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{who}{reason}")
    if summary["degraded_spends"]:
        click.echo(f"⚠️  {summary['degraded_spends']} wallet change(s) with incomplete relay records")


@main.group()
def wallet():
    """Wallet state stored on relays."""
    pass


@wallet.command()
def balance():
    """Show live wallet balance from relays."""
    config = _config()

    async def run():
        manager = await _restored(config)
        relay = WebSocketRelayPool(config.wallet_relays)
        try:
            return await WalletEventCodec(manager.signer, relay).fetch_wallet_state()
        finally:
            await relay.close()
            await manager.teardown()

    try:
        state = asyncio.run(run())
    except KeywardError as e:
        _fail(f"Could not load wallet: {e}")

    click.echo(f"💰 Balance: {state.balance} sat")
    for mint_url, amount in sorted(state.balance_by_mint.items()):
        click.echo(f"   {mint_url}: {amount}")
    pending = [q for q in state.quotes if not q.is_expired]
    if pending:
        click.echo(f"   Pending quotes: {len(pending)}")


@main.command()
def demo():
    """Run an offline demo of the wallet event protocol."""
    click.echo("🎬 Keyward Demo — Spend/Receive Reconciliation")
    click.echo("=" * 50)

    async def run():
        with tempfile.TemporaryDirectory() as tmp:
            config = KeywardConfig(home=Path(tmp) / "home")
            audit_trail = AuditTrail(config.audit_path, Path(tmp) / "secrets" / "audit.key")
            manager = IdentityManager(SessionStore(config.session_dir), config=config, audit=audit_trail)

            click.echo("\n1️⃣  Logging in with a fresh local key...")
            identity = await manager.login(SigningMethod.LOCAL_KEY, private_key=generate_private_key())
            click.echo(f"   ✅ {identity.display_id}")

            relay = InMemoryRelay()
            codec = WalletEventCodec(manager.signer, relay)
            reconciler = SpendingReconciler(codec, audit_trail)
            mint = "https://mint.example.com"

            click.echo("\n2️⃣  Publishing wallet config...")
            await codec.publish_wallet_config(WalletConfig(privkey=generate_private_key(), mints=[mint]))

            click.echo("\n3️⃣  Receiving 60 + 40 sat...")
            received = [Proof("00ad", 60, "s-60", "c-60"), Proof("00ad", 40, "s-40", "c-40")]
            result = await reconciler.process_receiving(received, mint)
            click.echo(f"   {'✅' if result.success else '❌'} token set {result.token_set_id[:12]}")
            state = await codec.fetch_wallet_state()
            click.echo(f"   Balance: {state.balance} sat")

            click.echo("\n4️⃣  Spending 100 sat, 10 returned as change...")
            change = [Proof("00ad", 10, "s-10", "c-10")]
            result = await reconciler.spend_from_state(state, received, change, mint)
            click.echo(f"   {'✅' if result.success else '❌'} spent {result.amount} sat")
            click.echo(f"   Tombstone: {result.tombstone_id[:12] if result.tombstone_id else 'none'}")
            state = await codec.fetch_wallet_state()
            click.echo(f"   Balance: {state.balance} sat")

            click.echo("\n5️⃣  Spending history...")
            for entry in state.history:
                click.echo(f"   {entry.direction:>3} {entry.amount} sat")

            click.echo("\n6️⃣  Audit trail...")
            for event in audit_trail.read_events(limit=10):
                status = "✅" if event.success else "❌"
                click.echo(f"   {status} {event.event_type}")

            await manager.logout()

    asyncio.run(run())
    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Login → Receive → Spend → Reconcile → Audit")


if __name__ == "__main__":
    main()
