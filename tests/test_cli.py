"""CLI command tests."""

from pathlib import Path

from click.testing import CliRunner

from keyward.cli import main
from keyward.keys import generate_private_key, npub_encode, nsec_encode, public_key_hex


def _base_env(tmp_path: Path) -> dict[str, str]:
    return {
        "HOME": str(tmp_path),
        "KEYWARD_HOME": str(tmp_path / ".keyward"),
    }


def _login(runner, env, private_key):
    return runner.invoke(main, ["login"], input=nsec_encode(private_key) + "\n", env=env)


def test_login_rejects_raw_key_on_argv(tmp_path):
    runner = CliRunner()
    result = runner.invoke(
        main,
        ["login", "--nsec", nsec_encode(generate_private_key())],
        env=_base_env(tmp_path),
    )

    assert result.exit_code != 0
    assert "Refusing --nsec from argv" in result.output
    assert not (tmp_path / ".keyward" / "session" / "session.json").exists()


def test_login_with_unsafe_flag_accepts_argv_key(tmp_path):
    runner = CliRunner()
    private_key = generate_private_key()
    result = runner.invoke(
        main,
        ["login", "--nsec", private_key, "--unsafe-allow-key-arg"],
        env=_base_env(tmp_path),
    )

    assert result.exit_code == 0, result.output
    assert npub_encode(public_key_hex(private_key)) in result.output


def test_login_whoami_logout(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    private_key = generate_private_key()
    npub = npub_encode(public_key_hex(private_key))

    result = _login(runner, env, private_key)
    assert result.exit_code == 0, result.output
    assert f"Logged in as {npub}" in result.output
    assert "local_key" in result.output

    result = runner.invoke(main, ["whoami"], env=env)
    assert result.exit_code == 0, result.output
    assert npub in result.output
    assert public_key_hex(private_key) in result.output

    result = runner.invoke(main, ["logout"], env=env)
    assert result.exit_code == 0
    assert f"Logged out {npub}" in result.output

    result = runner.invoke(main, ["whoami"], env=env)
    assert result.exit_code == 1
    assert "Not logged in" in result.output


def test_login_rejects_two_methods(tmp_path):
    runner = CliRunner()
    pubkey = public_key_hex(generate_private_key())
    result = runner.invoke(
        main,
        ["login", "--pubkey", pubkey, "--connect"],
        env=_base_env(tmp_path),
    )
    assert result.exit_code == 1
    assert "Choose one of" in result.output


def test_bad_key_fails_cleanly(tmp_path):
    runner = CliRunner()
    result = runner.invoke(main, ["login"], input="nsec1notakey\n", env=_base_env(tmp_path))
    assert result.exit_code == 1
    assert "Login failed" in result.output


def test_auth_header_round_trips_through_verify(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    private_key = generate_private_key()
    assert _login(runner, env, private_key).exit_code == 0

    url = "http://localhost:3333/api/mints"
    result = runner.invoke(main, ["auth-header", url, "--method", "GET"], env=env)
    assert result.exit_code == 0, result.output
    header = result.output.strip().splitlines()[-1]
    assert header.startswith("Nostr ")

    result = runner.invoke(
        main,
        ["verify-header", header, "--url", url, "--method", "GET", "--allow", npub_encode(public_key_hex(private_key))],
        env=env,
    )
    assert result.exit_code == 0, result.output
    assert "Valid request" in result.output

    result = runner.invoke(main, ["verify-header", header, "--url", url, "--method", "POST"], env=env)
    assert result.exit_code == 1
    assert "Method tag mismatch" in result.output


def test_read_only_session_cannot_sign(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    pubkey = public_key_hex(generate_private_key())

    result = runner.invoke(main, ["login", "--pubkey", npub_encode(pubkey)], env=env)
    assert result.exit_code == 0, result.output
    assert "read_only" in result.output

    result = runner.invoke(main, ["auth-header", "http://localhost:3333/api/mints"], env=env)
    assert result.exit_code == 1
    assert "read-only identity" in result.output


def test_audit_lists_logins(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    assert _login(runner, env, generate_private_key()).exit_code == 0

    result = runner.invoke(main, ["audit"], env=env)
    assert result.exit_code == 0
    assert "login" in result.output


def test_audit_reports_broken_chain(tmp_path):
    runner = CliRunner()
    env = _base_env(tmp_path)
    assert _login(runner, env, generate_private_key()).exit_code == 0
    audit_path = tmp_path / ".keyward" / "audit.jsonl"
    audit_path.write_text(audit_path.read_text().replace('"login"', '"logout"'))

    result = runner.invoke(main, ["audit"], env=env)
    assert result.exit_code == 1
    assert "Audit chain broken at line 1" in result.output


def test_keygen(tmp_path):
    runner = CliRunner()
    result = runner.invoke(main, ["keygen"], env=_base_env(tmp_path))
    assert result.exit_code == 0
    assert "npub1" in result.output
    assert "nsec1" in result.output


def test_demo_runs(tmp_path):
    runner = CliRunner()
    result = runner.invoke(main, ["demo"], env=_base_env(tmp_path))
    assert result.exit_code == 0, result.output
    assert "Balance: 100 sat" in result.output
    assert "Balance: 10 sat" in result.output
    assert "Demo complete" in result.output
