from unittest.mock import Mock

import pytest

from vmunlock.cli import main as cli
from vmunlock.cli.keystore import KeyStore
from vmunlock.protocol.config.params import ENV_KEY_DIR, ENV_RPC_URL, NETWORKS
from vmunlock.protocol.crypto.addresses import b58encode
from vmunlock.protocol.types.common import KeyRole, RpcTransientError, TimelockState, TransactionRejectedError

from conftest import MNEMONIC, StaticSecretInput


@pytest.fixture
def key_dir(tmp_path, owner, payer):
    store = KeyStore(str(tmp_path))
    store.save(KeyRole.OWNER, owner)
    store.save(KeyRole.PAYER, payer)
    return tmp_path

@pytest.fixture
def eligible(ledger, ctx, clock):
    """Unlock account initialized exactly one lock period ago."""
    unlock = ctx.unlock_address()
    ledger.put_state(unlock.address, ctx.owner.public_key, ctx.vm_state, int(clock.now),
                     TimelockState.WAITING_FOR_TIMEOUT)
    return unlock

@pytest.fixture
def fake_gateway(monkeypatch, ledger):
    factory = Mock(return_value=ledger)
    monkeypatch.setattr(cli, "ChainGateway", factory)
    return factory


def parse(*argv):
    return cli.make_parser().parse_args(list(argv))


# ═══════════════════════════════════════════════════════════════════
# CONFIG
# ═══════════════════════════════════════════════════════════════════

def test_rpc_url_precedence(monkeypatch):
    default = NETWORKS["mainnet"].rpc_url
    monkeypatch.delenv(ENV_RPC_URL, raising=False)
    assert cli.build_config(parse()).rpc_url == default

    monkeypatch.setenv(ENV_RPC_URL, "http://env.test")
    assert cli.build_config(parse()).rpc_url == "http://env.test"
    assert cli.build_config(parse("--rpc-url", "http://flag.test")).rpc_url == "http://flag.test"


def test_key_dir_precedence(monkeypatch):
    monkeypatch.delenv(ENV_KEY_DIR, raising=False)
    assert cli.get_key_dir(parse()) == "."

    monkeypatch.setenv(ENV_KEY_DIR, "/keys")
    assert cli.get_key_dir(parse()) == "/keys"
    assert cli.get_key_dir(parse("--key-dir", "/other")) == "/other"


def test_overrides_only_replace_given_values():
    config = cli.build_config(parse("--poll-interval", "5", "--max-retries", "9"))
    assert config.poll_interval == 5.0
    assert config.max_retries == 9
    assert config.confirm_timeout == NETWORKS["mainnet"].confirm_timeout


# ═══════════════════════════════════════════════════════════════════
# RUN
# ═══════════════════════════════════════════════════════════════════

def test_successful_unlock_exits_zero(key_dir, eligible, fake_gateway, ledger, owner, capsys):
    assert cli.main(["--key-dir", str(key_dir)]) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert f"Owner: {b58encode(owner.public_key)}" in out
    assert "Unlock process completed successfully!" in out
    assert ledger.actions == ["finalize"]
    assert ledger.state_of(eligible.address).is_unlocked()


def test_cli_config_reaches_gateway(key_dir, eligible, fake_gateway):
    cli.main(["--key-dir", str(key_dir), "--rpc-url", "http://flag.test"])

    config = fake_gateway.call_args.args[0]
    assert config.rpc_url == "http://flag.test"


def test_owner_key_created_on_first_run(tmp_path, payer, eligible, fake_gateway):
    KeyStore(str(tmp_path)).save(KeyRole.PAYER, payer)
    secret_input = StaticSecretInput([MNEMONIC])

    code = cli.run_unlock(parse("--key-dir", str(tmp_path)), secret_input=secret_input)

    assert code == cli.EXIT_OK
    assert (tmp_path / "owner_key.json").exists()
    assert len(secret_input.prompts) == 1


def test_missing_payer_reports_stage(tmp_path, owner, fake_gateway, capsys):
    KeyStore(str(tmp_path)).save(KeyRole.OWNER, owner)

    code = cli.main(["--key-dir", str(tmp_path)])

    assert code == cli.EXIT_ERROR
    assert "Error [load_keys] MissingPayerError:" in capsys.readouterr().err
    fake_gateway.assert_not_called()


def test_corrupt_key_fails_before_network(key_dir, owner, payer, fake_gateway, capsys):
    path = key_dir / "owner_key.json"
    path.write_text('{"private_key": %s, "pubkey": "%s"}' % (list(owner.private_key), b58encode(payer.public_key)))

    code = cli.main(["--key-dir", str(key_dir)])

    assert code == cli.EXIT_ERROR
    assert "Error [load_keys] KeyIntegrityError:" in capsys.readouterr().err
    fake_gateway.assert_not_called()


def test_rejection_reports_action_stage(key_dir, fake_gateway, ledger, capsys):
    ledger.reject_next = TransactionRejectedError("insufficient funds for fee")

    code = cli.main(["--key-dir", str(key_dir)])

    err = capsys.readouterr().err
    assert code == cli.EXIT_ERROR
    assert "Error [initialize] TransactionRejectedError: transaction rejected: insufficient funds for fee" in err


def test_interrupt_exits_130(key_dir, monkeypatch, capsys):
    gateway = Mock()
    gateway.fetch_account.side_effect = KeyboardInterrupt
    monkeypatch.setattr(cli, "ChainGateway", Mock(return_value=gateway))

    assert cli.main(["--key-dir", str(key_dir)]) == cli.EXIT_INTERRUPTED
    assert "Re-run to resume" in capsys.readouterr().err


def test_unusable_rpc_url_is_reported(key_dir, capsys):
    # No scheme: requests refuses it before any network access
    code = cli.main(["--key-dir", str(key_dir), "--rpc-url", "localhost:8899"])

    err = capsys.readouterr().err
    assert code == cli.EXIT_ERROR
    assert "Error [fetch] RpcError: getAccountInfo: request failed:" in err


def test_transient_exhaustion_is_reported(key_dir, monkeypatch, capsys):
    gateway = Mock()
    gateway.fetch_account.side_effect = RpcTransientError("getAccountInfo failed after 5 attempts: HTTP 503")
    monkeypatch.setattr(cli, "ChainGateway", Mock(return_value=gateway))

    assert cli.main(["--key-dir", str(key_dir)]) == cli.EXIT_ERROR
    assert "Error [fetch] RpcTransientError: getAccountInfo failed after 5 attempts" in capsys.readouterr().err
