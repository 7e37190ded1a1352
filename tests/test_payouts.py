import asyncio
import json
from types import SimpleNamespace

import base58
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

import payouts
from config import settings


class FakeClient:
    """Stands in for solana's AsyncClient; records what the payout path sends."""

    def __init__(self, ata_exists=False, fail_first_send=False):
        self.ata_exists = ata_exists
        self.fail_first_send = fail_first_send
        self.sent = []
        self.confirmed = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def get_account_info(self, pubkey, commitment=None):
        return SimpleNamespace(value=object() if self.ata_exists else None)

    async def get_latest_blockhash(self):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    async def send_transaction(self, tx, opts=None):
        self.sent.append((tx, opts.skip_preflight))
        if self.fail_first_send and len(self.sent) == 1:
            raise RuntimeError("preflight failed")
        return SimpleNamespace(value=Signature.default())

    async def confirm_transaction(self, sig, commitment=None):
        self.confirmed.append(sig)


def _program_ids(tx):
    keys = tx.message.account_keys
    return [keys[ix.program_id_index] for ix in tx.message.instructions]


# -------------------------
# Key decoding
# -------------------------
def test_keypair_from_base58_keypair():
    kp = Keypair()
    assert payouts.keypair_from_secret(base58.b58encode(bytes(kp)).decode()).pubkey() == kp.pubkey()


def test_keypair_from_base58_seed():
    seed = bytes(range(32))
    expected = Keypair.from_seed(seed)
    assert payouts.keypair_from_secret(base58.b58encode(seed).decode()).pubkey() == expected.pubkey()


def test_keypair_from_json_byte_array():
    kp = Keypair()
    secret = " " + json.dumps(list(bytes(kp))) + "\n"
    assert payouts.keypair_from_secret(secret).pubkey() == kp.pubkey()


@pytest.mark.parametrize("secret", ["", base58.b58encode(b"\x01" * 16).decode(), "[1, 2, 3]"])
def test_keypair_rejects_bad_secrets(secret):
    with pytest.raises(ValueError):
        payouts.keypair_from_secret(secret)


def test_to_public_key_accepts_str_bytes_and_pubkey():
    pk = Keypair().pubkey()
    assert payouts.to_public_key(str(pk)) == pk
    assert payouts.to_public_key(f"  {pk}  ") == pk
    assert payouts.to_public_key(bytes(pk)) == pk
    assert payouts.to_public_key(bytearray(bytes(pk))) == pk
    assert payouts.to_public_key(pk) is pk


@pytest.mark.parametrize("addr", [None, ""])
def test_to_public_key_rejects_empty(addr):
    with pytest.raises(ValueError):
        payouts.to_public_key(addr)


def test_owner_mismatch_is_refused():
    kp = Keypair()
    payouts._assert_owner_matches(kp.pubkey(), kp)
    with pytest.raises(RuntimeError, match="does not match"):
        payouts._assert_owner_matches(Keypair().pubkey(), kp)


# -------------------------
# Transfer
# -------------------------
def test_transfer_creates_missing_ata_and_retries_without_preflight():
    treasury = Keypair()
    winner = Keypair().pubkey()
    client = FakeClient(ata_exists=False, fail_first_send=True)

    sig = asyncio.run(payouts._send_spl_from_treasury(client, treasury, treasury.pubkey(), winner, 1_000))

    assert sig == str(Signature.default())
    assert [skip for _, skip in client.sent] == [False, True]
    tx = client.sent[-1][0]
    assert _program_ids(tx) == [ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID]
    assert tx.message.account_keys[0] == treasury.pubkey()
    assert client.confirmed == [Signature.default()]


def test_transfer_to_existing_ata_sends_once():
    treasury = Keypair()
    client = FakeClient(ata_exists=True)

    asyncio.run(payouts._send_spl_from_treasury(client, treasury, treasury.pubkey(), Keypair().pubkey(), 5))

    assert [skip for _, skip in client.sent] == [False]
    assert _program_ids(client.sent[0][0]) == [TOKEN_PROGRAM_ID]


def test_transfer_rejects_non_positive_amount():
    treasury = Keypair()
    with pytest.raises(ValueError):
        asyncio.run(payouts._send_spl_from_treasury(
            FakeClient(), treasury, treasury.pubkey(), Keypair().pubkey(), 0))


def test_transfer_requires_token_mint(monkeypatch):
    monkeypatch.setattr(settings, "TOKEN_MINT", "")
    treasury = Keypair()
    with pytest.raises(RuntimeError, match="TOKEN_MINT"):
        asyncio.run(payouts._send_spl_from_treasury(
            FakeClient(), treasury, treasury.pubkey(), Keypair().pubkey(), 10))


# -------------------------
# pay_raffle_winner
# -------------------------
def test_pay_raffle_winner_requires_secret(monkeypatch):
    monkeypatch.setattr(settings, "TREASURY_SECRET", None)
    with pytest.raises(RuntimeError, match="TREASURY_SECRET"):
        asyncio.run(payouts.pay_raffle_winner(str(Keypair().pubkey()), 10))


def test_pay_raffle_winner_checks_treasury_key(monkeypatch):
    monkeypatch.setattr(settings, "TREASURY_SECRET", base58.b58encode(bytes(Keypair())).decode())
    monkeypatch.setattr(settings, "TREASURY_PUBKEY", str(Keypair().pubkey()))
    with pytest.raises(RuntimeError, match="does not match"):
        asyncio.run(payouts.pay_raffle_winner(str(Keypair().pubkey()), 10))


def test_pay_raffle_winner_sends_from_treasury(monkeypatch):
    treasury = Keypair()
    winner = Keypair().pubkey()
    client = FakeClient(ata_exists=True)
    opened = []

    def fake_client(url, commitment=None):
        opened.append(url)
        return client

    monkeypatch.setattr(settings, "TREASURY_SECRET", json.dumps(list(bytes(treasury))))
    monkeypatch.setattr(settings, "TREASURY_PUBKEY", "")
    monkeypatch.setattr(payouts, "AsyncClient", fake_client)

    sig = asyncio.run(payouts.pay_raffle_winner(str(winner), 42))

    assert sig == str(Signature.default())
    assert opened == [settings.RPC_URL]
    tx = client.sent[0][0]
    assert tx.message.account_keys[0] == treasury.pubkey()
    assert isinstance(tx.message.account_keys[0], Pubkey)
